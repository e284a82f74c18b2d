"""SSE (Server-Sent Events) 管理 - セッションのライフサイクル通知"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator

logger = logging.getLogger(__name__)


def format_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class SSEManager:
    """SSE 購読者ごとのキューにイベントを配る"""

    def __init__(self, max_queue_size: int = 100) -> None:
        self._queues: list[asyncio.Queue[str]] = []
        self._lock = asyncio.Lock()
        self._max_queue_size = max_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    async def subscribe(self) -> AsyncGenerator[str, None]:
        """SSE ストリームを購読"""
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self._max_queue_size)

        async with self._lock:
            self._queues.append(queue)
        logger.info(f"SSE client connected. Total: {len(self._queues)}")

        try:
            while True:
                yield await queue.get()
        finally:
            async with self._lock:
                if queue in self._queues:
                    self._queues.remove(queue)
            logger.info(f"SSE client disconnected. Total: {len(self._queues)}")

    async def broadcast(self, event: str, data: Any) -> int:
        """全購読者にイベントを送信し、キューに積めた数を返す"""
        message = format_event(event, data)

        async with self._lock:
            queues = self._queues.copy()

        queued = 0
        for queue in queues:
            try:
                queue.put_nowait(message)
                queued += 1
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping message")
        return queued


# シングルトンインスタンス
_sse_manager: SSEManager | None = None


def get_sse_manager() -> SSEManager:
    """SSEManager のシングルトンインスタンスを取得"""
    global _sse_manager
    if _sse_manager is None:
        _sse_manager = SSEManager()
    return _sse_manager
