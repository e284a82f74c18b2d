"""In-memory repository for broadcast session records.

presenter (live_broadcast.HttpSessionStore) が PUT した記録を保持し、
変更があれば登録済みのコールバックに通知する (SSE 配信用)。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from app.api.schemas.session import SessionRecord
from live_broadcast.models import SessionStatus

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[SessionRecord], None]


class SessionTransitionError(Exception):
    """ended のセッションを再び live/setup に戻そうとした"""


class SessionRepository:
    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._callbacks: list[ChangeCallback] = []

    def on_change(self, callback: ChangeCallback) -> None:
        self._callbacks.append(callback)

    async def upsert(self, record: SessionRecord) -> bool:
        """記録を保存する。新規作成なら True

        Raises:
            SessionTransitionError: ended から他の状態へ戻す更新
        """
        async with self._lock:
            existing = self._records.get(record.id)
            if (
                existing is not None
                and existing.status == SessionStatus.ENDED
                and record.status != SessionStatus.ENDED
            ):
                raise SessionTransitionError(f"session {record.id} has already ended")
            self._records[record.id] = record

        logger.info(f"Session {record.id} saved (status={record.status.value})")
        self._notify(record)
        return existing is None

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        async with self._lock:
            return self._records.get(session_id)

    async def list(self, status: Optional[SessionStatus] = None) -> list[SessionRecord]:
        async with self._lock:
            records = list(self._records.values())
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    def _notify(self, record: SessionRecord) -> None:
        for callback in self._callbacks:
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Session change callback error: {e}")


# シングルトンインスタンス
_session_repository: SessionRepository | None = None


def get_session_repository() -> SessionRepository:
    """SessionRepository のシングルトンインスタンスを取得"""
    global _session_repository
    if _session_repository is None:
        _session_repository = SessionRepository()
    return _session_repository
