"""Top-level API router (prefixed under /api)."""

from __future__ import annotations

from fastapi import APIRouter

from app.api.endpoints import events, sessions, signal

api_router = APIRouter(prefix="/api")

api_router.include_router(sessions.router, tags=["sessions"])
api_router.include_router(events.router, tags=["events"])
api_router.include_router(signal.router, tags=["signal"])
