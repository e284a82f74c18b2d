"""SSE event endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from app.services.session_repository import get_session_repository
from app.services.sse_manager import format_event, get_sse_manager
from live_broadcast.models import SessionStatus

router = APIRouter()


@router.get(
    "/events",
    summary="Broadcast session events (SSE)",
    description=(
        "Server-Sent Events endpoint.\n\n"
        "- 接続直後に `event: sessions` で live 中のセッション一覧を1回送信\n"
        "- 以降はセッション記録の更新ごとに `event: session` を送信"
    ),
)
async def events() -> StreamingResponse:
    sse_manager = get_sse_manager()

    async def event_generator():
        repository = get_session_repository()
        live = await repository.list(SessionStatus.LIVE)
        yield format_event("sessions", [r.model_dump(mode="json", by_alias=True) for r in live])

        async for message in sse_manager.subscribe():
            yield message

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
