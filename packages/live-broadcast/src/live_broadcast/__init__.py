"""
live-broadcast - One presenter to many viewers over per-viewer WebRTC links

Usage:
    from live_broadcast import (
        Presenter, SessionRegistry, SignalDispatcher,
        WebSocketSignalingChannel, HttpSessionStore,
    )

    async with WebSocketSignalingChannel("ws://localhost:8000") as channel:
        registry = SessionRegistry(
            Presenter(id="arl-1", display_name="Dana"),
            channel=channel,
            store=HttpSessionStore("http://localhost:8000"),
        )
        session = await registry.create("Morning Huddle")
        await SignalDispatcher(registry, channel).run()
"""

from .capture import LocalCaptureController, LocalCaptureHandle
from .config import BroadcastConfig
from .dispatcher import SignalDispatcher
from .errors import (
    BroadcastError,
    CaptureDenied,
    InvalidSessionRequest,
    NegotiationFailure,
    SessionStateViolation,
    SignalingSendFailure,
)
from .models import (
    AudienceScope,
    BroadcastSession,
    Presenter,
    SessionMode,
    SessionStatus,
    Viewer,
)
from .orchestrator import PeerLinkOrchestrator
from .peer_link import PeerLink, PeerLinkState
from .session import LiveSession, SessionRegistry
from .signaling import SignalMessage, WebSocketSignalingChannel
from .store import HttpSessionStore, MemorySessionStore
from .viewers import ViewerRegistry

__version__ = "0.1.0"

__all__ = [
    "AudienceScope",
    "BroadcastConfig",
    "BroadcastError",
    "BroadcastSession",
    "CaptureDenied",
    "HttpSessionStore",
    "InvalidSessionRequest",
    "LiveSession",
    "LocalCaptureController",
    "LocalCaptureHandle",
    "MemorySessionStore",
    "NegotiationFailure",
    "PeerLink",
    "PeerLinkOrchestrator",
    "PeerLinkState",
    "Presenter",
    "SessionMode",
    "SessionRegistry",
    "SessionStateViolation",
    "SessionStatus",
    "SignalDispatcher",
    "SignalMessage",
    "SignalingSendFailure",
    "Viewer",
    "ViewerRegistry",
    "WebSocketSignalingChannel",
]
