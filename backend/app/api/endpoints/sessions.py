"""Broadcast session record endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi import status as http_status

from app.api.deps import require_presenter
from app.api.schemas.session import SessionRecord, SessionsResponse
from app.services.session_repository import SessionTransitionError, get_session_repository
from live_broadcast.models import SessionStatus

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/sessions", response_model=SessionsResponse, summary="List broadcast sessions")
async def list_sessions(status: SessionStatus | None = None) -> SessionsResponse:
    repository = get_session_repository()
    return SessionsResponse(sessions=await repository.list(status))


@router.get(
    "/sessions/{session_id}",
    response_model=SessionRecord,
    summary="Get a broadcast session",
    responses={404: {"description": "Session not found"}},
)
async def get_session(session_id: str) -> SessionRecord:
    repository = get_session_repository()
    record = await repository.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return record


@router.put(
    "/sessions/{session_id}",
    response_model=SessionRecord,
    summary="Create or update a broadcast session record (presenter only)",
    dependencies=[Depends(require_presenter)],
    responses={
        400: {"description": "Path and body ids differ"},
        401: {"description": "Missing or invalid presenter token"},
        409: {"description": "Session already ended"},
    },
)
async def put_session(session_id: str, record: SessionRecord, response: Response) -> SessionRecord:
    if record.id != session_id:
        raise HTTPException(status_code=400, detail="Session id in path and body differ")

    repository = get_session_repository()
    try:
        created = await repository.upsert(record)
    except SessionTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    response.status_code = http_status.HTTP_201_CREATED if created else http_status.HTTP_200_OK
    return record
