from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.endpoints import healthz
from app.api.router import api_router
from app.core.config import Settings
from app.services.session_repository import SessionRepository
from app.services.signal_relay import SignalRelay

PRESENTER_TOKEN = "test-presenter-token"


class FakeSSEManager:
    def __init__(self, *, next_message: str | None = None) -> None:
        self._next_message = next_message

    async def subscribe(self):
        # yield at most 1 message to let tests finish
        if self._next_message is not None:
            yield self._next_message


@pytest.fixture
def settings() -> Settings:
    return Settings(
        cors_allow_origins=["*"],
        presenter_token=PRESENTER_TOKEN,
        signal_max_message_bytes=4096,
        log_level="DEBUG",
    )


@pytest.fixture
def repository() -> SessionRepository:
    return SessionRepository()


@pytest.fixture
def relay() -> SignalRelay:
    return SignalRelay()


@pytest.fixture
def app(
    monkeypatch: pytest.MonkeyPatch,
    settings: Settings,
    repository: SessionRepository,
    relay: SignalRelay,
) -> FastAPI:
    # Build an app without the production lifespan.
    app = FastAPI()
    app.include_router(healthz.router, tags=["health"])
    app.include_router(api_router)
    app.state.settings = settings

    # Patch singleton accessors imported into endpoint modules.
    from app.api.endpoints import events as events_ep
    from app.api.endpoints import sessions as sessions_ep
    from app.api.endpoints import signal as signal_ep

    fake_sse_manager = FakeSSEManager(next_message="event: ping\ndata: {}\n\n")

    monkeypatch.setattr(sessions_ep, "get_session_repository", lambda: repository)
    monkeypatch.setattr(events_ep, "get_session_repository", lambda: repository)
    monkeypatch.setattr(events_ep, "get_sse_manager", lambda: fake_sse_manager)
    monkeypatch.setattr(signal_ep, "get_signal_relay", lambda: relay)
    monkeypatch.setattr(healthz, "get_signal_relay", lambda: relay)

    return app


@pytest.fixture
def client(app: FastAPI):
    # Ensure background threads started by TestClient are properly stopped.
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {PRESENTER_TOKEN}"}


def _make_record(session_id: str = "s1", **overrides) -> dict:
    record = {
        "id": session_id,
        "title": "Morning Huddle",
        "description": "",
        "mode": "video",
        "audienceScope": "all",
        "status": "live",
        "duration": None,
        "presenterId": "arl-1",
        "presenterName": "Dana",
        "targetViewerIds": [],
        "createdAt": "2026-01-26T09:00:00+00:00",
        "startedAt": "2026-01-26T09:00:01+00:00",
        "endedAt": None,
        "viewerCount": 0,
        "totalViews": 0,
        "peakViewers": 0,
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_record():
    return _make_record
