"""API schemas for broadcast session records."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from live_broadcast.models import AudienceScope, SessionMode, SessionStatus


class SessionRecord(BaseModel):
    """presenter が書き込むセッション記録 (API 上は camelCase)"""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, description="Session id")
    title: str = Field(min_length=1, description="Session title")
    description: str = ""
    mode: SessionMode = SessionMode.VIDEO
    audience_scope: AudienceScope = Field(default=AudienceScope.ALL, alias="audienceScope")
    status: SessionStatus
    duration: int | None = Field(default=None, ge=0, description="Seconds between start and end")
    presenter_id: str | None = Field(default=None, alias="presenterId")
    presenter_name: str = Field(default="", alias="presenterName")
    target_viewer_ids: list[str] = Field(default_factory=list, alias="targetViewerIds")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    ended_at: datetime | None = Field(default=None, alias="endedAt")
    viewer_count: int = Field(default=0, ge=0, alias="viewerCount")
    total_views: int = Field(default=0, ge=0, alias="totalViews")
    peak_viewers: int = Field(default=0, ge=0, alias="peakViewers")


class SessionsResponse(BaseModel):
    sessions: list[SessionRecord]
