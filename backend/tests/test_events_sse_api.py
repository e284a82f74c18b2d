from __future__ import annotations

import asyncio
import json

import pytest

from app.api.schemas.session import SessionRecord
from app.services.sse_manager import SSEManager


def _extract_first_event(chunk: str) -> tuple[str, str]:
    # expects: event: <name>\ndata: <json>\n\n
    lines = [ln for ln in chunk.splitlines() if ln.strip()]
    assert lines[0].startswith("event: ")
    assert lines[1].startswith("data: ")
    return lines[0].removeprefix("event: "), lines[1].removeprefix("data: ")


def test_events_sends_initial_live_sessions(client, repository, make_record):
    asyncio.run(repository.upsert(SessionRecord.model_validate(make_record("live-1"))))
    asyncio.run(repository.upsert(SessionRecord.model_validate(make_record("old", status="ended"))))

    with client.stream("GET", "/api/events") as r:
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")

        first = next(r.iter_text())

    event_name, data = _extract_first_event(first)
    assert event_name == "sessions"

    sessions = json.loads(data)
    assert [s["id"] for s in sessions] == ["live-1"]
    assert sessions[0]["presenterName"] == "Dana"


@pytest.mark.asyncio
async def test_sse_manager_broadcasts_to_subscribers():
    manager = SSEManager()
    stream = manager.subscribe()
    pending = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)
    assert manager.subscriber_count == 1

    queued = await manager.broadcast("session", {"id": "s1", "status": "ended"})
    assert queued == 1

    message = await asyncio.wait_for(pending, timeout=1)
    assert message == 'event: session\ndata: {"id": "s1", "status": "ended"}\n\n'
    await stream.aclose()
    assert manager.subscriber_count == 0


@pytest.mark.asyncio
async def test_repository_notifies_on_change(make_record):
    from app.services.session_repository import SessionRepository

    repository = SessionRepository()
    seen: list[str] = []
    repository.on_change(lambda record: seen.append(f"{record.id}:{record.status.value}"))

    assert await repository.upsert(SessionRecord.model_validate(make_record("s1"))) is True
    assert await repository.upsert(SessionRecord.model_validate(make_record("s1", status="ended"))) is False

    assert seen == ["s1:live", "s1:ended"]
