"""Broadcast domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionMode(str, Enum):
    """配信モード"""

    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"

    @property
    def requires_media(self) -> bool:
        return self is not SessionMode.TEXT

    @property
    def wants_video(self) -> bool:
        return self is SessionMode.VIDEO


class AudienceScope(str, Enum):
    """視聴対象"""

    ALL = "all"
    SPECIFIC = "specific"


class SessionStatus(str, Enum):
    """セッションの状態 (setup -> live -> ended)"""

    SETUP = "setup"
    LIVE = "live"
    ENDED = "ended"


@dataclass(frozen=True)
class Presenter:
    """Resolved presenter identity. Required before any session call."""

    id: str
    display_name: str = ""


@dataclass
class BroadcastSession:
    """配信セッション情報"""

    id: str
    title: str
    presenter_id: str
    presenter_name: str = ""
    description: str = ""
    mode: SessionMode = SessionMode.VIDEO
    audience_scope: AudienceScope = AudienceScope.ALL
    target_viewer_ids: frozenset[str] = frozenset()
    status: SessionStatus = SessionStatus.SETUP
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    viewer_count: int = 0
    total_views: int = 0
    peak_viewers: int = 0

    @property
    def topic(self) -> str:
        return f"session:{self.id}"

    @property
    def is_live(self) -> bool:
        return self.status == SessionStatus.LIVE

    def allows_viewer(self, viewer_id: str) -> bool:
        if self.audience_scope == AudienceScope.ALL:
            return True
        return viewer_id in self.target_viewer_ids

    def to_record(self) -> dict:
        """永続化用のレコード"""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "mode": self.mode.value,
            "audienceScope": self.audience_scope.value,
            "status": self.status.value,
            "duration": self.duration_seconds,
            "presenterId": self.presenter_id,
            "presenterName": self.presenter_name,
            "targetViewerIds": sorted(self.target_viewer_ids),
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "viewerCount": self.viewer_count,
            "totalViews": self.total_views,
            "peakViewers": self.peak_viewers,
        }


@dataclass
class Viewer:
    """視聴者 (セッション中のみ存在し、永続化しない)"""

    id: str
    display_name: str = ""
    joined_at: datetime = field(default_factory=utcnow)
    ui_minimized: bool = False
    address: Optional[str] = None

    def watch_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return max(0, int((now - self.joined_at).total_seconds()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "joinedAt": self.joined_at.isoformat(),
            "uiMinimized": self.ui_minimized,
        }
