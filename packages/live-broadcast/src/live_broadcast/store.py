"""Persistence collaborator for session records.

Only the record fields of ``BroadcastSession.to_record()`` cross this boundary;
storage schema beyond them is the backend's concern.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from .errors import BroadcastError

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def save(self, record: dict) -> None: ...


class MemorySessionStore:
    """プロセス内に記録を保持する (テスト/オフライン用)"""

    def __init__(self) -> None:
        self.records: dict[str, dict] = {}

    async def save(self, record: dict) -> None:
        self.records[record["id"]] = dict(record)


class HttpSessionStore:
    """backend の PUT /api/sessions/{id} に記録を書き込む"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    async def save(self, record: dict) -> None:
        try:
            response = await self._client.put(f"/api/sessions/{record['id']}", json=record)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to persist session {record['id']}: {e}")
            raise BroadcastError(f"cannot persist session {record['id']}: {e}", code="PERSISTENCE_FAILED")
        logger.debug(f"Persisted session {record['id']} status={record['status']}")

    async def aclose(self) -> None:
        await self._client.aclose()
