"""API schemas for health endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class HealthzResponse(BaseModel):
    status: str
    version: str
    signal_connections: int = 0
