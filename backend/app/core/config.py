"""Runtime configuration for the FastAPI backend.

core 配下に設定読み込みを集約する。
依存を増やさないため pydantic-settings は使わず、環境変数から読む。
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


@dataclass(frozen=True)
class Settings:
    """バックエンド設定"""

    cors_allow_origins: list[str]
    presenter_token: Optional[str]
    signal_max_message_bytes: int
    log_level: str


def load_settings() -> Settings:
    """環境変数から Settings を生成する。"""

    cors = os.environ.get("CORS_ALLOW_ORIGINS", "*")
    cors_allow_origins = [o.strip() for o in cors.split(",") if o.strip()]

    # 未設定なら書き込み API は認証なし (ローカル開発用)
    presenter_token = os.environ.get("PRESENTER_TOKEN") or None

    signal_max_message_bytes = int(os.environ.get("SIGNAL_MAX_MESSAGE_BYTES", "65536"))
    if signal_max_message_bytes < 1024:
        signal_max_message_bytes = 1024

    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    return Settings(
        cors_allow_origins=cors_allow_origins,
        presenter_token=presenter_token,
        signal_max_message_bytes=signal_max_message_bytes,
        log_level=log_level,
    )
