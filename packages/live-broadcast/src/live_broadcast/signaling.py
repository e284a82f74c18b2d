"""Signaling contract and the WebSocket relay client.

Envelope (JSON, text frames)::

    {"type": "negotiation.offer", "payload": {...}, "sender": "<address>"}

``sender`` is stamped by the relay on delivery. Client -> relay operations::

    {"op": "join", "topic": "session:abc"}
    {"op": "leave", "topic": "session:abc"}
    {"op": "broadcast", "topic": "session:abc", "message": {...}}
    {"op": "send", "to": "<address>", "message": {...}}

The relay greets every connection with ``relay.welcome`` carrying the address
other participants use to direct-message it. When a connection drops, the
relay tells the members of its topics with ``relay.disconnect``
(``payload.address``, ``sender`` is the departed address).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
from types import TracebackType
from typing import Any, AsyncIterator, Optional, Protocol, Self

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from .errors import SignalingSendFailure

logger = logging.getLogger(__name__)

SESSION_START = "session.start"
SESSION_END = "session.end"
VIEWER_JOIN = "viewer.join"
VIEWER_LEAVE = "viewer.leave"
VIEWER_UPDATE = "viewer.update"
OFFER_REQUEST = "negotiation.offerRequest"
OFFER = "negotiation.offer"
ANSWER = "negotiation.answer"
ICE_CANDIDATE = "negotiation.iceCandidate"

RELAY_WELCOME = "relay.welcome"
RELAY_ERROR = "relay.error"
RELAY_DISCONNECT = "relay.disconnect"


@dataclass
class SignalMessage:
    """制御メッセージ (メディアは流さない)"""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    sender: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "payload": self.payload}
        if self.sender is not None:
            data["sender"] = self.sender
        return data

    @classmethod
    def from_wire(cls, data: Any) -> "SignalMessage":
        """受信データを検証して SignalMessage にする。不正なら ValueError"""
        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        msg_type = data.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            raise ValueError("message has no type")
        payload = data.get("payload", {})
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")
        sender = data.get("sender")
        if sender is not None and not isinstance(sender, str):
            raise ValueError("sender must be a string")
        return cls(type=msg_type, payload=payload, sender=sender)


def session_start(session_id: str, title: str, **extra: Any) -> SignalMessage:
    return SignalMessage(SESSION_START, {"sessionId": session_id, "title": title, **extra})


def session_end(session_id: str) -> SignalMessage:
    return SignalMessage(SESSION_END, {"sessionId": session_id})


def offer(viewer_address: str, description: dict) -> SignalMessage:
    return SignalMessage(OFFER, {"viewerAddress": viewer_address, "offer": description})


def ice_candidate(target_address: str, candidate: dict, **extra: Any) -> SignalMessage:
    return SignalMessage(ICE_CANDIDATE, {"targetAddress": target_address, "candidate": candidate, **extra})


class SignalingChannel(Protocol):
    """Join a topic, broadcast to a topic, direct-message an address."""

    @property
    def address(self) -> Optional[str]: ...

    async def join(self, topic: str) -> None: ...

    async def leave(self, topic: str) -> None: ...

    async def broadcast(self, topic: str, message: SignalMessage) -> None: ...

    async def send_to(self, address: str, message: SignalMessage) -> None: ...

    def messages(self) -> AsyncIterator[SignalMessage]: ...


class WebSocketSignalingChannel:
    """WebSocket relay (backend の /api/ws/signal) への接続

    Usage:
        async with WebSocketSignalingChannel("ws://localhost:8000") as channel:
            await channel.join("broadcasts")
            async for message in channel.messages():
                ...
    """

    def __init__(
        self,
        backend_url: str = "ws://localhost:8000",
        connect_timeout: float = 10.0,
        path: str = "/api/ws/signal",
    ):
        self.backend_url = backend_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self.path = path

        self._ws: ClientConnection | None = None
        self._address: Optional[str] = None
        self._send_lock = asyncio.Lock()

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._address is not None

    async def connect(self) -> None:
        """接続して relay.welcome でアドレスを受け取る

        Raises:
            ConnectionError: 接続できない / welcome が来ない場合
        """
        if self.is_connected:
            return

        ws_url = f"{self.backend_url}{self.path}"
        logger.info(f"Connecting to signaling relay {ws_url}")
        try:
            self._ws = await asyncio.wait_for(websockets.connect(ws_url), timeout=self.connect_timeout)
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.disconnect()
            raise ConnectionError(f"Connection timeout to {ws_url}")
        except (OSError, ConnectionClosed) as e:
            await self.disconnect()
            raise ConnectionError(f"Failed to connect to {ws_url}: {e}")

        try:
            welcome = SignalMessage.from_wire(json.loads(raw))
        except ValueError as e:
            await self.disconnect()
            raise ConnectionError(f"Invalid welcome from relay: {e}")
        address = welcome.payload.get("address")
        if welcome.type != RELAY_WELCOME or not isinstance(address, str):
            await self.disconnect()
            raise ConnectionError(f"Unexpected first message from relay: {welcome.type}")

        self._address = address
        logger.info(f"Connected to signaling relay as {address}")

    async def disconnect(self) -> None:
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning(f"Error closing signaling WebSocket: {e}")
            finally:
                self._ws = None
                self._address = None

    async def join(self, topic: str) -> None:
        await self._send_op({"op": "join", "topic": topic})

    async def leave(self, topic: str) -> None:
        await self._send_op({"op": "leave", "topic": topic})

    async def broadcast(self, topic: str, message: SignalMessage) -> None:
        await self._send_op({"op": "broadcast", "topic": topic, "message": message.to_wire()})

    async def send_to(self, address: str, message: SignalMessage) -> None:
        await self._send_op({"op": "send", "to": address, "message": message.to_wire()})

    async def messages(self) -> AsyncIterator[SignalMessage]:
        """受信メッセージを順に返す。切断で終了する。"""
        if self._ws is None:
            raise ConnectionError("Not connected. Call connect() first.")
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    logger.warning("Ignoring binary frame from relay")
                    continue
                try:
                    message = SignalMessage.from_wire(json.loads(raw))
                except ValueError as e:
                    logger.warning(f"Dropping malformed relay message: {e}")
                    continue
                if message.type == RELAY_ERROR:
                    logger.warning(
                        f"Relay error {message.payload.get('code')}: {message.payload.get('message')}"
                    )
                    continue
                yield message
        except ConnectionClosed as e:
            logger.info(f"Signaling relay connection closed: {e}")

    async def _send_op(self, op: dict[str, Any]) -> None:
        if self._ws is None:
            raise SignalingSendFailure(f"not connected (op={op.get('op')})")
        data = json.dumps(op)
        async with self._send_lock:
            try:
                await self._ws.send(data)
            except (ConnectionClosed, OSError) as e:
                raise SignalingSendFailure(f"{op.get('op')} failed: {e}")

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.disconnect()
