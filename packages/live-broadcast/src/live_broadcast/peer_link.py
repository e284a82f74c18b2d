"""PeerLink - presenter と視聴者1人の間の接続ステートマシン

State flow:
- IDLE -> OFFER_CREATED (offer 生成)
- OFFER_CREATED -> OFFER_SENT (local description 設定 + offer 送信)
- OFFER_SENT -> ANSWER_RECEIVED (answer を remote description に適用)
- ANSWER_RECEIVED -> CONNECTED (トランスポートが connected を通知)
- 非終端状態 -> FAILED (ネゴシエーション/トランスポート失敗)
- 全状態 -> CLOSED (離脱、セッション終了、置き換え)

各 PeerLink は自分の状態と候補キューを持ち、他の視聴者のリンクを参照しない。
トランスポートのコールバックはリンクオブジェクトに束縛される。
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from aiortc import MediaStreamTrack

from .errors import NegotiationFailure
from .models import utcnow
from .rtc import PeerConnection

logger = logging.getLogger(__name__)

# 1リンクあたりのキューに保持する ICE candidate の上限 (超えたら古いものから捨てる)
MAX_QUEUED_CANDIDATES = 64


class PeerLinkState(str, Enum):
    IDLE = "idle"
    OFFER_CREATED = "offer-created"
    OFFER_SENT = "offer-sent"
    ANSWER_RECEIVED = "answer-received"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TRANSITIONS: dict[PeerLinkState, set[PeerLinkState]] = {
    PeerLinkState.IDLE: {PeerLinkState.OFFER_CREATED, PeerLinkState.FAILED, PeerLinkState.CLOSED},
    PeerLinkState.OFFER_CREATED: {PeerLinkState.OFFER_SENT, PeerLinkState.FAILED, PeerLinkState.CLOSED},
    PeerLinkState.OFFER_SENT: {PeerLinkState.ANSWER_RECEIVED, PeerLinkState.FAILED, PeerLinkState.CLOSED},
    PeerLinkState.ANSWER_RECEIVED: {PeerLinkState.CONNECTED, PeerLinkState.FAILED, PeerLinkState.CLOSED},
    PeerLinkState.CONNECTED: {PeerLinkState.FAILED, PeerLinkState.CLOSED},
    PeerLinkState.FAILED: {PeerLinkState.CLOSED},
    PeerLinkState.CLOSED: set(),
}


def can_transition(current: PeerLinkState, new: PeerLinkState) -> bool:
    return new in TRANSITIONS.get(current, set())


class PeerLink:
    """視聴者1人分の接続ハンドル"""

    def __init__(self, viewer_id: str, viewer_address: str, pc: PeerConnection):
        self.viewer_id = viewer_id
        self.viewer_address = viewer_address
        self.pc = pc
        self.state = PeerLinkState.IDLE
        self.senders: list[Any] = []
        self.tracks: list[MediaStreamTrack] = []
        self.pending_local_candidates: list[dict] = []
        self.pending_remote_candidates: list[dict] = []
        self.remote_description_set = False
        self.created_at: datetime = utcnow()
        self.connected_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.state == PeerLinkState.CLOSED

    @property
    def is_connected(self) -> bool:
        return self.state == PeerLinkState.CONNECTED

    @property
    def awaiting_answer(self) -> bool:
        return self.state == PeerLinkState.OFFER_SENT

    def transition(self, new: PeerLinkState) -> None:
        if not can_transition(self.state, new):
            raise NegotiationFailure(
                self.viewer_id, f"invalid transition {self.state.value} -> {new.value}"
            )
        logger.debug(f"PeerLink {self.viewer_id}: {self.state.value} -> {new.value}")
        self.state = new
        if new == PeerLinkState.CONNECTED:
            self.connected_at = utcnow()

    def attach(self, tracks: list[MediaStreamTrack]) -> None:
        """リンク専用トラックを送信専用で追加"""
        for track in tracks:
            self.tracks.append(track)
            self.senders.append(self.pc.add_track(track))

    def queue_remote_candidate(self, candidate: dict) -> None:
        self._enqueue(self.pending_remote_candidates, candidate, "remote")

    def queue_local_candidate(self, candidate: dict) -> None:
        self._enqueue(self.pending_local_candidates, candidate, "local")

    def _enqueue(self, queue: list[dict], candidate: dict, kind: str) -> None:
        queue.append(candidate)
        overflow = len(queue) - MAX_QUEUED_CANDIDATES
        if overflow > 0:
            del queue[:overflow]
            logger.warning(f"PeerLink {self.viewer_id}: {kind} candidate queue full, dropped {overflow} oldest")

    def take_remote_candidates(self) -> list[dict]:
        queued, self.pending_remote_candidates = self.pending_remote_candidates, []
        return queued

    def take_local_candidates(self) -> list[dict]:
        queued, self.pending_local_candidates = self.pending_local_candidates, []
        return queued

    def mark_failed(self) -> None:
        if can_transition(self.state, PeerLinkState.FAILED):
            self.state = PeerLinkState.FAILED

    async def close(self) -> None:
        """接続を閉じ、送信トラックを解放する（共有キャプチャは止めない）"""
        if self.is_closed:
            return
        self.state = PeerLinkState.CLOSED
        try:
            await self.pc.close()
        except Exception as e:
            logger.warning(f"Error closing peer connection for {self.viewer_id}: {e}")
        finally:
            for track in self.tracks:
                track.stop()
            self.tracks.clear()
            self.senders.clear()
            self.pending_local_candidates.clear()
            self.pending_remote_candidates.clear()

    def to_dict(self) -> dict:
        return {
            "viewerId": self.viewer_id,
            "viewerAddress": self.viewer_address,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
        }
