from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import BaseModel

from cardsync.game.errors import MalformedEventError, StoreUnavailable
from cardsync.game.session_supervisor import SessionSupervisor

router = APIRouter(prefix="/api", tags=["sessions"])


def get_supervisor(request: Request) -> SessionSupervisor:
    return request.app.state.supervisor


class SubmitResponse(BaseModel):
    status: str
    session_id: str | None = None
    seq: int | None = None
    result: dict | None = None


class BatchRequest(BaseModel):
    events: list[Any]


class BatchError(BaseModel):
    index: int
    detail: str


class BatchResponse(BaseModel):
    accepted: int = 0
    duplicates: int = 0
    errors: list[BatchError] = []


class CheckpointResponse(BaseModel):
    session_id: str
    clock: int
    status: str
    state: dict
    checksum: str


@router.post("/events", response_model=SubmitResponse, status_code=202)
async def submit_event(
    raw: Any = Body(...),
    wait: bool = False,
    supervisor: SessionSupervisor = Depends(get_supervisor),
):
    """Ingest one raw event.  With ``?wait=true`` the reply carries its apply result."""
    try:
        if wait:
            event, result = await supervisor.submit_and_wait(raw)
        else:
            event, result = await supervisor.submit(raw), None
    except MalformedEventError as exc:
        raise HTTPException(status_code=422, detail=exc.reason)

    if event is None:
        return SubmitResponse(status="duplicate")
    return SubmitResponse(
        status="accepted",
        session_id=event.session_id,
        seq=event.seq,
        result=result.as_dict() if result is not None else None,
    )


@router.post("/events/batch", response_model=BatchResponse, status_code=202)
async def submit_batch(
    req: BatchRequest,
    supervisor: SessionSupervisor = Depends(get_supervisor),
):
    resp = BatchResponse()
    for index, raw in enumerate(req.events):
        try:
            event = await supervisor.submit(raw)
        except MalformedEventError as exc:
            resp.errors.append(BatchError(index=index, detail=exc.reason))
            continue
        if event is None:
            resp.duplicates += 1
        else:
            resp.accepted += 1
    return resp


@router.get("/sessions")
async def list_sessions(supervisor: SessionSupervisor = Depends(get_supervisor)):
    return supervisor.active_sessions()


async def _latest_checkpoint(
    supervisor: SessionSupervisor, session_id: str, missing: str
):
    try:
        record = await supervisor.store.get_latest_checkpoint(session_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Session store unavailable")
    if record is None:
        raise HTTPException(status_code=404, detail=missing)
    return record


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    supervisor: SessionSupervisor = Depends(get_supervisor),
):
    snap = supervisor.snapshot(session_id)
    if snap is not None:
        snap["live"] = True
        return snap

    # Not held by a worker: serve the last checkpoint, if any.
    record = await _latest_checkpoint(supervisor, session_id, "Session not found")
    state = dict(record.state)
    state["live"] = False
    return state


@router.get("/sessions/{session_id}/checkpoint", response_model=CheckpointResponse)
async def get_checkpoint(
    session_id: str,
    supervisor: SessionSupervisor = Depends(get_supervisor),
):
    record = await _latest_checkpoint(
        supervisor, session_id, "No checkpoint for this session"
    )
    return CheckpointResponse(**record.as_dict())
