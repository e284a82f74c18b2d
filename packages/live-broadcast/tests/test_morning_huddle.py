"""End-to-end presenter flow against fake transports and a fake relay."""

from __future__ import annotations

import asyncio

import pytest

from live_broadcast.dispatcher import SignalDispatcher
from live_broadcast.models import SessionStatus
from live_broadcast.peer_link import PeerLinkState
from live_broadcast.signaling import SignalMessage


def _msg(msg_type: str, sender: str, **payload) -> SignalMessage:
    return SignalMessage(msg_type, payload, sender)


async def _chroma_of_next_frames(track, count: int = 4) -> int:
    # relay proxies may still hold a frame produced before a toggle
    frame = None
    for _ in range(count):
        frame = await asyncio.wait_for(track.recv(), timeout=2)
    return bytes(frame.planes[1])[0]


def _video_track(link):
    return next(t for t in link.tracks if t.kind == "video")


@pytest.mark.asyncio
async def test_morning_huddle(registry, channel, pc_factory, capture, store, clock) -> None:
    dispatcher = SignalDispatcher(registry, channel)
    session = await registry.create("Morning Huddle", mode="video")
    sid = session.id
    live = registry.active

    # viewer A joins, then asks for media
    await dispatcher.dispatch(_msg("viewer.join", "addr-a", sessionId=sid, viewerId="A", displayName="Ana"))
    await dispatcher.dispatch(_msg("negotiation.offerRequest", "addr-a", sessionId=sid, viewerId="A", viewerAddress="addr-a"))
    assert len(channel.sent_to("addr-a", "negotiation.offer")) == 1
    pc_a = pc_factory.created[0]

    # viewer B joins while A is still negotiating
    await dispatcher.dispatch(_msg("viewer.join", "addr-b", sessionId=sid, viewerId="B", displayName="Ben"))
    await dispatcher.dispatch(_msg("negotiation.offerRequest", "addr-b", sessionId=sid, viewerId="B", viewerAddress="addr-b"))
    pc_b = pc_factory.created[1]
    link_a = live.orchestrator.get("A")
    link_b = live.orchestrator.get("B")
    assert link_a.state == PeerLinkState.OFFER_SENT
    assert link_b.state == PeerLinkState.OFFER_SENT

    # A answers and exchanges candidates
    await dispatcher.dispatch(
        _msg("negotiation.answer", "addr-a", sessionId=sid, viewerAddress="addr-a", answer={"type": "answer", "sdp": "v=0 A"})
    )
    await dispatcher.dispatch(
        _msg("negotiation.iceCandidate", "addr-a", targetAddress="presenter-addr", sessionId=sid,
             candidate={"candidate": "candidate:1 1 udp 1 10.0.0.10 6000 typ host", "sdpMid": "0", "sdpMLineIndex": 0})
    )
    await pc_a.report_state("connected")
    assert link_a.state == PeerLinkState.CONNECTED
    assert link_b.state == PeerLinkState.OFFER_SENT
    assert pc_b.remote_description is None

    # B completes independently
    await dispatcher.dispatch(
        _msg("negotiation.answer", "addr-b", sessionId=sid, viewerAddress="addr-b", answer={"type": "answer", "sdp": "v=0 B"})
    )
    await pc_b.report_state("connected")
    assert link_b.state == PeerLinkState.CONNECTED
    assert pc_a.remote_description["sdp"] == "v=0 A"
    assert pc_b.remote_description["sdp"] == "v=0 B"

    # presenter disables video: both viewers get black frames, no new negotiation
    offers_before = len([m for _, m in channel.sent if m.type == "negotiation.offer"])
    assert await _chroma_of_next_frames(_video_track(link_a)) == 0x00
    registry.set_video_enabled(False)
    assert await _chroma_of_next_frames(_video_track(link_a)) == 0x80
    assert await _chroma_of_next_frames(_video_track(link_b)) == 0x80
    assert len([m for _, m in channel.sent if m.type == "negotiation.offer"]) == offers_before
    assert link_a.state == link_b.state == PeerLinkState.CONNECTED

    # A leaves; B is unaffected
    await dispatcher.dispatch(_msg("viewer.leave", "addr-a", sessionId=sid, viewerId="A"))
    assert link_a.state == PeerLinkState.CLOSED
    assert pc_a.closed
    assert live.orchestrator.get("A") is None
    assert live.orchestrator.get("B") is link_b
    assert link_b.state == PeerLinkState.CONNECTED
    assert not pc_b.closed

    # presenter ends the session
    clock.advance(15 * 60)
    await registry.end(sid)

    assert link_b.state == PeerLinkState.CLOSED
    assert pc_b.closed
    assert len(live.orchestrator) == 0
    assert capture.handle is None
    assert session.status == SessionStatus.ENDED
    assert session.duration_seconds == 15 * 60
    assert store.records[sid]["status"] == "ended"
    assert store.records[sid]["peakViewers"] == 2
    assert store.records[sid]["totalViews"] == 2
    assert channel.broadcast_types(session.topic)[-1] == "session.end"


@pytest.mark.asyncio
async def test_stale_answer_leaves_existing_links_alone(registry, channel, pc_factory) -> None:
    dispatcher = SignalDispatcher(registry, channel)
    session = await registry.create("Morning Huddle")
    sid = session.id

    await dispatcher.dispatch(_msg("negotiation.offerRequest", "addr-a", sessionId=sid, viewerId="A", viewerAddress="addr-a"))
    link_a = registry.active.orchestrator.get("A")

    handled = await dispatcher.dispatch(
        _msg("negotiation.answer", "addr-x", sessionId=sid, viewerAddress="addr-x", answer={"type": "answer", "sdp": "v=0 X"})
    )
    malformed = await dispatcher.dispatch(
        _msg("negotiation.answer", "addr-a", sessionId=sid, viewerAddress="addr-a", answer="garbage")
    )

    assert handled is False and malformed is False
    assert link_a.state == PeerLinkState.OFFER_SENT
    assert pc_factory.created[0].remote_description is None


@pytest.mark.asyncio
async def test_many_viewers_reach_connected_and_fail_independently(registry, channel, pc_factory) -> None:
    dispatcher = SignalDispatcher(registry, channel)
    session = await registry.create("All hands")
    sid = session.id
    viewers = [f"v{n}" for n in range(8)]

    await asyncio.gather(
        *(
            dispatcher.dispatch(
                _msg("negotiation.offerRequest", f"addr-{v}", sessionId=sid, viewerId=v, viewerAddress=f"addr-{v}")
            )
            for v in viewers
        )
    )
    await asyncio.gather(
        *(
            dispatcher.dispatch(
                _msg("negotiation.answer", f"addr-{v}", sessionId=sid, viewerAddress=f"addr-{v}",
                     answer={"type": "answer", "sdp": f"v=0 {v}"})
            )
            for v in reversed(viewers)
        )
    )
    for pc in pc_factory.created:
        await pc.report_state("connected")

    orchestrator = registry.active.orchestrator
    assert all(orchestrator.get(v).state == PeerLinkState.CONNECTED for v in viewers)

    await pc_factory.created[3].report_state("failed")

    assert orchestrator.get("v3") is None
    assert all(orchestrator.get(v).state == PeerLinkState.CONNECTED for v in viewers if v != "v3")
    for v, pc in zip(viewers, pc_factory.created):
        assert pc.remote_description["sdp"] == f"v=0 {v}"
