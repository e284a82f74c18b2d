"""受信した制御メッセージを live セッションのエントリポイントへ振り分ける

1件のメッセージの処理失敗で受信ループが止まることはない。
sessionId が live セッションと一致しないメッセージは捨てる。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from . import signaling
from .errors import BroadcastError, SessionStateViolation
from .session import LiveSession, SessionRegistry
from .signaling import SignalingChannel, SignalMessage

logger = logging.getLogger(__name__)

Handler = Callable[[LiveSession, SignalMessage], Awaitable[Any]]

# sessionId を持たないメッセージ
_SESSIONLESS = (signaling.ICE_CANDIDATE, signaling.RELAY_DISCONNECT)


def _text(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if isinstance(value, str) and value:
        return value
    return None


class SignalDispatcher:
    """SignalingChannel の受信ストリームを SessionRegistry に流す

    Usage:
        dispatcher = SignalDispatcher(registry, channel)
        await dispatcher.run()   # チャネル切断で終了
    """

    def __init__(self, registry: SessionRegistry, channel: SignalingChannel):
        self.registry = registry
        self.channel = channel
        self.handled = 0
        self.dropped = 0
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            signaling.VIEWER_JOIN: self._on_viewer_join,
            signaling.VIEWER_LEAVE: self._on_viewer_leave,
            signaling.VIEWER_UPDATE: self._on_viewer_update,
            signaling.OFFER_REQUEST: self._on_offer_request,
            signaling.ANSWER: self._on_answer,
            signaling.ICE_CANDIDATE: self._on_candidate,
            signaling.RELAY_DISCONNECT: self._on_disconnect,
        }

    async def run(self) -> None:
        """チャネルが閉じるまで受信し、メッセージごとに処理タスクを起動する

        視聴者間の処理は並行に進む。同じ視聴者への操作の順序はオーケストレータの
        視聴者ごとのロックで保たれる。終了時 (キャンセル含む) に未完了のタスクを片付ける。
        """
        try:
            async for message in self.channel.messages():
                task = asyncio.create_task(self.dispatch(message))
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            pending = [t for t in self._tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            logger.info(f"Dispatcher stopped (handled={self.handled}, dropped={self.dropped})")

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Dispatch task failed: {exc!r}")

    async def dispatch(self, message: SignalMessage) -> bool:
        """1件処理する。live セッションに適用した場合 True"""
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug(f"Ignoring message type {message.type}")
            return self._drop()

        live = self.registry.active
        if live is None:
            logger.debug(f"No live session; dropping {message.type}")
            return self._drop()

        session_id = message.payload.get("sessionId")
        if session_id is not None and session_id != live.id:
            logger.debug(f"Dropping {message.type} for session {session_id} (live={live.id})")
            return self._drop()
        if session_id is None and message.type not in _SESSIONLESS:
            logger.warning(f"Dropping {message.type} without sessionId")
            return self._drop()

        try:
            result = await handler(live, message)
        except SessionStateViolation as e:
            logger.warning(f"{message.type} rejected: {e}")
            return self._drop()
        except BroadcastError as e:
            logger.error(f"{message.type} failed: {e}")
            return self._drop()
        except Exception as e:
            logger.exception(f"Unexpected error handling {message.type}: {e}")
            return self._drop()

        if result is False or result is None:
            return self._drop()
        self.handled += 1
        return True

    def _drop(self) -> bool:
        self.dropped += 1
        return False

    async def _on_viewer_join(self, live: LiveSession, message: SignalMessage) -> Optional[bool]:
        viewer_id = _text(message.payload, "viewerId")
        if viewer_id is None:
            logger.warning("viewer.join without viewerId")
            return None
        display_name = message.payload.get("displayName")
        return await live.on_viewer_join(
            viewer_id,
            display_name if isinstance(display_name, str) else "",
            message.sender,
        )

    async def _on_viewer_leave(self, live: LiveSession, message: SignalMessage) -> Optional[bool]:
        viewer_id = _text(message.payload, "viewerId")
        if viewer_id is None:
            logger.warning("viewer.leave without viewerId")
            return None
        await live.on_viewer_leave(viewer_id)
        return True

    async def _on_viewer_update(self, live: LiveSession, message: SignalMessage) -> Optional[bool]:
        viewer_id = _text(message.payload, "viewerId")
        minimized = message.payload.get("uiMinimized")
        if viewer_id is None or not isinstance(minimized, bool):
            logger.warning("Malformed viewer.update")
            return None
        return live.on_viewer_update(viewer_id, minimized)

    async def _on_offer_request(self, live: LiveSession, message: SignalMessage) -> Optional[bool]:
        viewer_id = _text(message.payload, "viewerId")
        address = _text(message.payload, "viewerAddress") or message.sender
        if viewer_id is None or address is None:
            logger.warning("Malformed negotiation.offerRequest")
            return None
        link = await live.on_offer_requested(viewer_id, address)
        return link is not None

    async def _on_answer(self, live: LiveSession, message: SignalMessage) -> bool:
        address = _text(message.payload, "viewerAddress") or message.sender
        if address is None:
            logger.warning("negotiation.answer without viewer address")
            return False
        return await live.on_answer(address, message.payload.get("answer"))

    async def _on_candidate(self, live: LiveSession, message: SignalMessage) -> bool:
        address = _text(message.payload, "senderAddress") or message.sender
        if address is None:
            logger.warning("negotiation.iceCandidate without sender address")
            return False
        return await live.on_remote_candidate(address, message.payload.get("candidate"))

    async def _on_disconnect(self, live: LiveSession, message: SignalMessage) -> bool:
        address = _text(message.payload, "address") or message.sender
        if address is None:
            return False
        return await live.on_viewer_disconnect(address)
