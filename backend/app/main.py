"""Live Broadcast Backend - FastAPI Application

- シグナリング中継 (WS /api/ws/signal)
- セッション記録の保存と参照 (/api/sessions)
- SSE によるセッション状態通知 (/api/events)

メディアはこのサーバーを経由しない (presenter と各視聴者の直接接続)。
API ドキュメントは `/docs` で確認できる。
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.endpoints import healthz
from app.api.router import api_router
from app.api.schemas.session import SessionRecord
from app.core.config import load_settings
from app.core.logging import configure_logging
from app.services.session_repository import get_session_repository
from app.services.signal_relay import get_signal_relay
from app.services.sse_manager import get_sse_manager

logger = logging.getLogger(__name__)


def _setup_session_change_notifier() -> None:
    """セッション記録の変更時に SSE で通知する設定"""

    sse_manager = get_sse_manager()

    def on_session_change(record: SessionRecord) -> None:
        asyncio.create_task(sse_manager.broadcast("session", record.model_dump(mode="json", by_alias=True)))

    get_session_repository().on_change(on_session_change)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    app.state.settings = settings

    logger.info("Starting services...")
    if settings.presenter_token is None:
        logger.warning("PRESENTER_TOKEN is not set; session writes are unauthenticated")
    _setup_session_change_notifier()

    yield

    logger.info("Stopping services...")
    await get_signal_relay().close_all()


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="Live Broadcast",
        description="presenter -> 多数の視聴者へのライブ配信 (シグナリング & セッション記録)",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Health check"},
            {"name": "sessions", "description": "Broadcast session records"},
            {"name": "events", "description": "SSE events"},
            {"name": "signal", "description": "WebSocket signaling relay"},
        ],
    )

    settings = load_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # root level
    app.include_router(healthz.router, tags=["health"])

    # /api
    app.include_router(api_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
