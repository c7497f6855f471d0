import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from services.story_service import StoryTurnService, TurnHandle

router = APIRouter(prefix="/api/story", tags=["story"])
logger = logging.getLogger("questline.api")


class CreateSessionRequest(BaseModel):
    session_id: Optional[str] = None
    world_state: Dict[str, Any] = Field(default_factory=dict)
    skills_state: Dict[str, Any] = Field(default_factory=dict)
    arc_name: Optional[str] = None


class TurnRequest(BaseModel):
    user_input: str


def _service(request: Request) -> StoryTurnService:
    return request.app.state.story_service


async def _sse(handle: TurnHandle):
    # Only reads the turn's channel; a disconnect stops this generator, not the turn
    async for event in handle.stream():
        yield event.to_sse()


@router.post("/sessions")
async def create_session(request: Request, body: CreateSessionRequest):
    service = _service(request)
    try:
        record = service.create_session(
            body.session_id,
            world_state=body.world_state,
            skills_state=body.skills_state,
            arc_name=body.arc_name,
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return record.to_dict()


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str):
    record = _service(request).sessions.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return record.to_dict()


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: str):
    if not await _service(request).delete_session(session_id):
        raise HTTPException(status_code=404, detail="Unknown session")
    return {"deleted": session_id}


@router.post("/sessions/{session_id}/turn")
async def stream_turn(request: Request, session_id: str, body: TurnRequest):
    """
    Run one story turn and stream it as server-sent events.
    Event kinds: message, retry, complete, error.
    """
    if not body.user_input.strip():
        raise HTTPException(status_code=400, detail="Empty input")

    service = _service(request)
    try:
        handle = service.start_turn(session_id, body.user_input)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown session")

    logger.info(f"Turn {handle.turn_id} started for session {session_id}")
    return StreamingResponse(
        _sse(handle),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Turn-ID": handle.turn_id},
    )


@router.get("/sessions/{session_id}/events")
async def get_events(request: Request, session_id: str, limit: Optional[int] = None):
    service = _service(request)
    if not service.sessions.exists(session_id):
        raise HTTPException(status_code=404, detail="Unknown session")
    if limit is not None:
        events = service.event_log.latest(session_id, limit)
    else:
        events = service.event_log.events(session_id)
    return {
        "session_id": session_id,
        "count": service.event_log.count(session_id),
        "events": [e.to_dict() for e in events],
    }


@router.get("/sessions/{session_id}/convergence")
async def get_convergence(request: Request, session_id: str):
    service = _service(request)
    if not service.sessions.exists(session_id):
        raise HTTPException(status_code=404, detail="Unknown session")
    status = service.tracker.get(session_id)
    return {
        "status": status.to_dict() if status else None,
        "summary": service.tracker.summary(session_id),
    }
