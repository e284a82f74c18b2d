"""Logging setup for the backend process."""

from __future__ import annotations

import logging

from app.core.config import load_settings

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """root logger を設定する。uvicorn 側のハンドラは触らない。"""

    level_name = (level or load_settings().log_level).upper()
    numeric = logging.getLevelName(level_name)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(handler)
    root.setLevel(numeric)

    # aiortc / websockets のデバッグ出力は多すぎるので抑える
    for name in ("aioice", "aiortc", "websockets"):
        logging.getLogger(name).setLevel(max(numeric, logging.INFO))
