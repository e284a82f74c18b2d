from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional

import pytest
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from live_broadcast.capture import LocalCaptureController
from live_broadcast.config import BroadcastConfig
from live_broadcast.errors import SignalingSendFailure
from live_broadcast.models import Presenter
from live_broadcast.session import SessionRegistry
from live_broadcast.signaling import SignalMessage
from live_broadcast.store import MemorySessionStore

PRESENTER_ADDRESS = "presenter-addr"


class FakePeerConnection:
    """In-memory stand-in for the aiortc adapter."""

    def __init__(self, name: str, *, local_candidates: Optional[list[dict]] = None) -> None:
        self.name = name
        self.connection_state = "new"
        self.local_description: Optional[dict] = None
        self.remote_description: Optional[dict] = None
        self.tracks: list[Any] = []
        self.added_candidates: list[dict] = []
        self.closed = False
        self.local_candidates = local_candidates if local_candidates is not None else [
            {"candidate": f"candidate:1 1 udp 2122260223 10.0.0.1 5000{len(name)} typ host", "sdpMid": "0", "sdpMLineIndex": 0}
        ]
        self.fail_remote = False
        self.offer_gate: Optional[asyncio.Event] = None
        self._on_candidate = None
        self._on_state = None

    def on_ice_candidate(self, callback) -> None:
        self._on_candidate = callback

    def on_connection_state_change(self, callback) -> None:
        self._on_state = callback

    def add_track(self, track: Any) -> Any:
        self.tracks.append(track)
        return f"sender-{len(self.tracks)}"

    async def create_offer(self) -> dict:
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        return {"type": "offer", "sdp": f"v=0 offer-for-{self.name}"}

    async def set_local_description(self, description: dict) -> None:
        self.local_description = description
        if self._on_candidate is not None:
            for candidate in self.local_candidates:
                await self._on_candidate(candidate)

    async def set_remote_description(self, description: dict) -> None:
        if self.fail_remote:
            raise ValueError("remote description rejected")
        self.remote_description = description

    async def add_ice_candidate(self, candidate: dict) -> None:
        if candidate.get("candidate") == "bad":
            raise ValueError("unparseable candidate")
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connection_state = "closed"

    async def report_state(self, state: str) -> None:
        self.connection_state = state
        if self._on_state is not None:
            await self._on_state(state)


class FakePeerConnectionFactory:
    def __init__(self) -> None:
        self.created: list[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection(f"pc{len(self.created) + 1}")
        self.created.append(pc)
        return pc


class FakeChannel:
    """Records relay operations; failures are switched on per test."""

    def __init__(self, address: str = PRESENTER_ADDRESS) -> None:
        self.address = address
        self.topics: set[str] = set()
        self.broadcasts: list[tuple[str, SignalMessage]] = []
        self.sent: list[tuple[str, SignalMessage]] = []
        self.fail_broadcasts = False
        self.fail_addresses: set[str] = set()
        self._inbox: asyncio.Queue[Optional[SignalMessage]] = asyncio.Queue()

    async def join(self, topic: str) -> None:
        self.topics.add(topic)

    async def leave(self, topic: str) -> None:
        self.topics.discard(topic)

    async def broadcast(self, topic: str, message: SignalMessage) -> None:
        if self.fail_broadcasts:
            raise SignalingSendFailure("relay unavailable")
        self.broadcasts.append((topic, message))

    async def send_to(self, address: str, message: SignalMessage) -> None:
        if address in self.fail_addresses:
            raise SignalingSendFailure(f"cannot reach {address}")
        self.sent.append((address, message))

    async def messages(self) -> AsyncIterator[SignalMessage]:
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            yield message

    def deliver(self, message: SignalMessage) -> None:
        self._inbox.put_nowait(message)

    def close(self) -> None:
        self._inbox.put_nowait(None)

    def sent_to(self, address: str, msg_type: Optional[str] = None) -> list[SignalMessage]:
        return [m for a, m in self.sent if a == address and (msg_type is None or m.type == msg_type)]

    def broadcast_types(self, topic: str) -> list[str]:
        return [m.type for t, m in self.broadcasts if t == topic]


class FakePlayer:
    def __init__(self, file: str, *, format: Optional[str] = None, options: Optional[dict] = None) -> None:
        self.file = file
        self.format = format
        self.options = options or {}
        self.audio = AudioStreamTrack() if "video" not in file else None
        self.video = VideoStreamTrack() if "video" in file else None


class FakePlayerFactory:
    def __init__(self) -> None:
        self.opened: list[FakePlayer] = []
        self.denied: set[str] = set()

    def __call__(self, file: str, **kwargs: Any) -> FakePlayer:
        if file in self.denied:
            raise PermissionError(f"permission denied: {file}")
        player = FakePlayer(file, **kwargs)
        self.opened.append(player)
        return player


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 26, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def config() -> BroadcastConfig:
    return BroadcastConfig(video_device="/dev/video0", audio_device="default")


@pytest.fixture
def player_factory() -> FakePlayerFactory:
    return FakePlayerFactory()


@pytest.fixture
def capture(config: BroadcastConfig, player_factory: FakePlayerFactory) -> LocalCaptureController:
    return LocalCaptureController(config, player_factory=player_factory)


@pytest.fixture
def pc_factory() -> FakePeerConnectionFactory:
    return FakePeerConnectionFactory()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(
    channel: FakeChannel,
    store: MemorySessionStore,
    config: BroadcastConfig,
    capture: LocalCaptureController,
    pc_factory: FakePeerConnectionFactory,
    clock: FakeClock,
) -> SessionRegistry:
    ids = iter(f"session-{n}" for n in range(1, 100))
    return SessionRegistry(
        Presenter(id="arl-1", display_name="Dana"),
        channel=channel,
        store=store,
        config=config,
        capture=capture,
        pc_factory=pc_factory,
        clock=clock,
        id_factory=lambda: next(ids),
    )
