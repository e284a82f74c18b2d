"""aiortc adapter for one presenter -> viewer peer connection.

The orchestrator only talks to the small surface below (``PeerConnection``), so
tests can drive the negotiation state machine with an in-memory fake.

Descriptions and candidates cross this boundary as plain dicts in the browser's
JSON shape::

    {"type": "offer", "sdp": "..."}
    {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

logger = logging.getLogger(__name__)

CandidateCallback = Callable[[dict], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]

DESCRIPTION_TYPES = ("offer", "answer", "pranswer", "rollback")


class PeerConnection(Protocol):
    @property
    def connection_state(self) -> str: ...

    @property
    def local_description(self) -> Optional[dict]: ...

    def on_ice_candidate(self, callback: CandidateCallback) -> None: ...

    def on_connection_state_change(self, callback: StateCallback) -> None: ...

    def add_track(self, track: MediaStreamTrack) -> Any: ...

    async def create_offer(self) -> dict: ...

    async def set_local_description(self, description: dict) -> None: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    async def close(self) -> None: ...


def parse_description(description: Any, *, expected_type: Optional[str] = None) -> RTCSessionDescription:
    """dict -> RTCSessionDescription. 形式が不正なら ValueError"""
    if not isinstance(description, dict):
        raise ValueError("description must be an object")
    sdp = description.get("sdp")
    sdp_type = description.get("type")
    if not isinstance(sdp, str) or not sdp.strip():
        raise ValueError("description has no sdp")
    if sdp_type not in DESCRIPTION_TYPES:
        raise ValueError(f"invalid description type: {sdp_type!r}")
    if expected_type is not None and sdp_type != expected_type:
        raise ValueError(f"expected {expected_type}, got {sdp_type}")
    return RTCSessionDescription(sdp=sdp, type=sdp_type)


def candidates_from_sdp(sdp: str) -> list[dict]:
    """ローカル SDP に含まれる a=candidate 行を trickle 用の dict に変換"""
    out: list[dict] = []
    index = -1
    mid: Optional[str] = None
    section: list[str] = []

    def flush() -> None:
        for line in section:
            out.append({"candidate": line, "sdpMid": mid, "sdpMLineIndex": index})

    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("m="):
            if index >= 0:
                flush()
            index += 1
            mid = None
            section = []
        elif index >= 0 and line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif index >= 0 and line.startswith("a=candidate:"):
            section.append(line[len("a="):])
    if index >= 0:
        flush()
    return out


class AiortcPeerConnection:
    """RTCPeerConnection (aiortc) を PeerConnection として包む

    aiortc は setLocalDescription の中で ICE 候補収集を完了させるため、
    収集済みの候補をその場で1つずつ ``on_ice_candidate`` に流す。
    """

    def __init__(self, configuration: Optional[RTCConfiguration] = None):
        self._pc = RTCPeerConnection(configuration=configuration)
        self._on_candidate: Optional[CandidateCallback] = None
        self._on_state: Optional[StateCallback] = None
        self._pc.on("connectionstatechange", self._handle_state_change)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> Optional[dict]:
        local = self._pc.localDescription
        if local is None:
            return None
        return {"type": local.type, "sdp": local.sdp}

    def on_ice_candidate(self, callback: CandidateCallback) -> None:
        self._on_candidate = callback

    def on_connection_state_change(self, callback: StateCallback) -> None:
        self._on_state = callback

    def add_track(self, track: MediaStreamTrack) -> Any:
        transceiver = self._pc.addTransceiver(track, direction="sendonly")
        return transceiver.sender

    async def create_offer(self) -> dict:
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def set_local_description(self, description: dict) -> None:
        await self._pc.setLocalDescription(parse_description(description))
        local = self._pc.localDescription
        if local is None or self._on_candidate is None:
            return
        for candidate in candidates_from_sdp(local.sdp):
            await self._on_candidate(candidate)

    async def set_remote_description(self, description: dict) -> None:
        await self._pc.setRemoteDescription(parse_description(description))

    async def add_ice_candidate(self, candidate: dict) -> None:
        line = candidate.get("candidate") or ""
        if not line:
            # end-of-candidates
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)
        logger.debug(f"Remote candidate added: {candidate_to_sdp(ice)}")

    async def close(self) -> None:
        await self._pc.close()

    async def _handle_state_change(self) -> None:
        if self._on_state is not None:
            await self._on_state(self._pc.connectionState)
