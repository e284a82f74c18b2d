"""Shared request dependencies."""

from __future__ import annotations

import secrets

from fastapi import Header, HTTPException, Request, status

from app.core.config import Settings, load_settings


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else load_settings()


async def require_presenter(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    """PRESENTER_TOKEN が設定されていれば Bearer トークンを要求する"""

    token = get_settings(request).presenter_token
    if token is None:
        return

    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(credentials.strip(), token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid presenter token",
            headers={"WWW-Authenticate": "Bearer"},
        )
