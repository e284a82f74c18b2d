"""Error types for live-broadcast.

viewer 単位の失敗 (NegotiationFailure 等) は PeerLink の境界で止まり、
セッション全体の障害としては扱わない。presenter に見せるのは
CaptureDenied と制御系の SignalingSendFailure のみ。
"""

from __future__ import annotations


class BroadcastError(Exception):
    """Base class for broadcast operation failures."""

    code = "BROADCAST_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"{self.code}: {message}")


class CaptureDenied(BroadcastError):
    """Camera / microphone could not be opened (hardware or permission)."""

    code = "CAPTURE_DENIED"


class SignalingSendFailure(BroadcastError):
    """A control message could not be handed to the relay."""

    code = "SIGNALING_SEND_FAILED"


class NegotiationFailure(BroadcastError):
    """Offer/answer/candidate exchange for one viewer did not reach connected."""

    code = "NEGOTIATION_FAILED"

    def __init__(self, viewer_id: str, message: str):
        self.viewer_id = viewer_id
        super().__init__(f"[{viewer_id}] {message}")


class SessionStateViolation(BroadcastError):
    """Operation attempted against a session that is not in the required state."""

    code = "SESSION_STATE_VIOLATION"


class InvalidSessionRequest(BroadcastError, ValueError):
    """Session request rejected by validation (e.g. blank title)."""

    code = "INVALID_REQUEST"
