"""Signaling relay - WebSocket 接続間で制御メッセージを中継する

各接続にはアドレス (不透明な文字列) を割り当てる。
- topic へのブロードキャスト (送信者自身には返さない)
- アドレス指定のダイレクト送信
メディアは流さない。メッセージの中身は解釈せず、``sender`` を付けて届けるだけ。
接続が切れたら、そのトピックの残りのメンバーに ``relay.disconnect`` を送る。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Optional
import uuid

from fastapi import WebSocket

from live_broadcast.signaling import RELAY_DISCONNECT

logger = logging.getLogger(__name__)


@dataclass
class _Peer:
    address: str
    websocket: WebSocket
    topics: set[str] = field(default_factory=set)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SignalRelay:
    """WebSocket 接続とトピック購読を管理"""

    def __init__(self) -> None:
        self._peers: dict[str, _Peer] = {}
        self._topics: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._peers)

    def topic_members(self, topic: str) -> set[str]:
        return set(self._topics.get(topic, ()))

    def topics_of(self, address: str) -> set[str]:
        peer = self._peers.get(address)
        return set(peer.topics) if peer else set()

    async def register(self, websocket: WebSocket) -> str:
        """accept 済みの接続を登録してアドレスを返す"""
        address = uuid.uuid4().hex
        async with self._lock:
            self._peers[address] = _Peer(address=address, websocket=websocket)
        logger.info(f"Signal client connected: {address}. Total: {len(self._peers)}")
        return address

    async def unregister(self, address: str, *, notify: bool = True) -> None:
        """接続を削除し、全トピックから外す

        notify が True なら、そのトピックの残りのメンバーに relay.disconnect を届ける。
        """
        async with self._lock:
            peer = self._peers.pop(address, None)
            if peer is None:
                return
            for topic in peer.topics:
                members = self._topics.get(topic)
                if members is None:
                    continue
                members.discard(address)
                if not members:
                    del self._topics[topic]
        logger.info(f"Signal client disconnected: {address}. Total: {len(self._peers)}")

        if notify:
            notice = {"type": RELAY_DISCONNECT, "payload": {"address": address}}
            for topic in sorted(peer.topics):
                await self.broadcast(address, topic, notice)

    async def join(self, address: str, topic: str) -> None:
        async with self._lock:
            peer = self._peers.get(address)
            if peer is None:
                return
            peer.topics.add(topic)
            self._topics.setdefault(topic, set()).add(address)
        logger.debug(f"{address} joined {topic}")

    async def leave(self, address: str, topic: str) -> None:
        async with self._lock:
            peer = self._peers.get(address)
            if peer is not None:
                peer.topics.discard(topic)
            members = self._topics.get(topic)
            if members is not None:
                members.discard(address)
                if not members:
                    del self._topics[topic]
        logger.debug(f"{address} left {topic}")

    async def broadcast(self, sender: str, topic: str, message: dict[str, Any]) -> int:
        """topic の購読者 (送信者以外) に配信し、配信できた数を返す"""
        async with self._lock:
            targets = [
                self._peers[a] for a in self._topics.get(topic, ()) if a != sender and a in self._peers
            ]

        if not targets:
            return 0

        data = json.dumps({**message, "sender": sender})
        delivered = 0
        dead: list[str] = []
        for peer in targets:
            if await self._send(peer, data):
                delivered += 1
            else:
                dead.append(peer.address)

        for address in dead:
            await self.unregister(address)
        return delivered

    async def send(self, sender: Optional[str], to: str, message: dict[str, Any]) -> bool:
        """アドレス指定で1接続に送信する。宛先がなければ False"""
        peer = self._peers.get(to)
        if peer is None:
            return False

        payload = {**message, "sender": sender} if sender is not None else message
        if await self._send(peer, json.dumps(payload)):
            return True
        await self.unregister(to)
        return False

    async def close_all(self) -> None:
        async with self._lock:
            peers = list(self._peers.values())
        for peer in peers:
            try:
                await peer.websocket.close(code=1001, reason="Server shutting down")
            except Exception as e:
                logger.debug(f"Error closing {peer.address}: {e}")
            await self.unregister(peer.address, notify=False)

    async def _send(self, peer: _Peer, data: str) -> bool:
        async with peer.send_lock:
            try:
                await peer.websocket.send_text(data)
                return True
            except Exception as e:
                logger.warning(f"Failed to send to {peer.address}: {e}")
                return False


# シングルトンインスタンス
_signal_relay: SignalRelay | None = None


def get_signal_relay() -> SignalRelay:
    """SignalRelay のシングルトンインスタンスを取得"""
    global _signal_relay
    if _signal_relay is None:
        _signal_relay = SignalRelay()
    return _signal_relay
