"""WebSocket signaling relay endpoint.

WS /api/ws/signal

Protocol:
- server -> client (接続直後):
    {"type": "relay.welcome", "payload": {"address": "<address>"}}

- client -> server (text JSON):
    {"op": "join", "topic": "session:abc"}
    {"op": "leave", "topic": "session:abc"}
    {"op": "broadcast", "topic": "session:abc", "message": {"type": "...", "payload": {...}}}
    {"op": "send", "to": "<address>", "message": {"type": "...", "payload": {...}}}

- server -> client: 中継されたメッセージ (``sender`` 付き)
- server -> client: 同じ topic のメンバーが切断したとき
    {"type": "relay.disconnect", "payload": {"address": "<address>"}, "sender": "<address>"}

エラーレスポンス (接続は維持):
    {"type": "relay.error", "payload": {"code": "BAD_REQUEST", "message": "..."}}
    {"type": "relay.error", "payload": {"code": "UNKNOWN_ADDRESS", "message": "...", "to": "..."}}
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket

from app.core.config import load_settings
from app.services.signal_relay import get_signal_relay
from live_broadcast.signaling import RELAY_ERROR, RELAY_WELCOME

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"type": RELAY_ERROR, "payload": {"code": code, "message": message, **extra}}


def _valid_message(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and isinstance(message.get("type"), str)
        and bool(message["type"])
        and isinstance(message.get("payload", {}), dict)
    )


def _valid_name(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


@router.websocket("/ws/signal")
async def websocket_signal(websocket: WebSocket) -> None:
    """参加者間で制御メッセージを中継する"""

    await websocket.accept()

    app = websocket.scope.get("app")
    settings = getattr(app.state, "settings", None) if app else None
    max_bytes = (settings or load_settings()).signal_max_message_bytes

    relay = get_signal_relay()
    address = await relay.register(websocket)

    try:
        await relay.send(None, address, {"type": RELAY_WELCOME, "payload": {"address": address}})

        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                break

            text = event.get("text")
            if text is None:
                await relay.send(None, address, _error("BAD_REQUEST", "binary frames are not supported"))
                continue
            if len(text.encode("utf-8")) > max_bytes:
                await relay.send(None, address, _error("BAD_REQUEST", f"message exceeds {max_bytes} bytes"))
                continue

            try:
                data = json.loads(text)
            except ValueError:
                await relay.send(None, address, _error("BAD_REQUEST", "invalid JSON"))
                continue
            if not isinstance(data, dict):
                await relay.send(None, address, _error("BAD_REQUEST", "request must be an object"))
                continue

            op = data.get("op")
            if op in ("join", "leave"):
                topic = data.get("topic")
                if not _valid_name(topic):
                    await relay.send(None, address, _error("BAD_REQUEST", f"{op} requires a topic"))
                    continue
                if op == "join":
                    await relay.join(address, topic)
                else:
                    await relay.leave(address, topic)

            elif op == "broadcast":
                topic = data.get("topic")
                message = data.get("message")
                if not _valid_name(topic) or not _valid_message(message):
                    await relay.send(None, address, _error("BAD_REQUEST", "broadcast requires topic and message"))
                    continue
                await relay.broadcast(address, topic, message)

            elif op == "send":
                to = data.get("to")
                message = data.get("message")
                if not _valid_name(to) or not _valid_message(message):
                    await relay.send(None, address, _error("BAD_REQUEST", "send requires to and message"))
                    continue
                if not await relay.send(address, to, message):
                    await relay.send(
                        None,
                        address,
                        _error("UNKNOWN_ADDRESS", f"no participant at {to}", to=to, messageType=message["type"]),
                    )

            else:
                await relay.send(None, address, _error("BAD_REQUEST", "Unknown op"))

    finally:
        await relay.unregister(address)
