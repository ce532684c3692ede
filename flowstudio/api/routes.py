from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from flowstudio.api.schemas import (
    Envelope,
    PlannerRequest,
    RunAccepted,
    RunRequest,
    RunResponse,
    SessionResponse,
    ToolInfo,
)
from flowstudio.logging import get_correlation_id, get_logger
from flowstudio.service.errors import InvalidSessionError
from flowstudio.service.runtime import get_runtime
from flowstudio.service.stream import SSE_HEADERS

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return envelope


@router.post("/sessions", response_model=Envelope, tags=["sessions"])
async def create_session():
    runtime = get_runtime()
    session_id = await runtime.channel.create_session()
    logger.info("session_created", session_id=session_id, backend=runtime.channel.backend)
    return _ok(SessionResponse(session_id=session_id).model_dump())


@router.post("/runs", response_model=Envelope, tags=["runs"])
async def submit_run(body: RunRequest):
    runtime = get_runtime()
    # Unknown sessions are accepted; their events are dropped by the channel
    if not await runtime.channel.has_session(body.session_id):
        logger.info("run_for_unknown_session", session_id=body.session_id)

    if not body.wait:
        runtime.start_background_run(body.session_id, body.graph, body.input)
        return _ok(RunAccepted().model_dump())

    result = await runtime.executor.run(body.session_id, body.graph, body.input)
    return _ok(
        RunResponse(
            final_states=result.final_states,
            visit_order=result.visit_order,
            unreachable=result.unreachable,
            metrics=result.metrics,
        ).model_dump()
    )


@router.get("/stream", tags=["runs"])
async def stream_events(
    request: Request,
    session_id: Optional[str] = Query(None, max_length=255),
):
    runtime = get_runtime()
    if not session_id or not await runtime.channel.has_session(session_id):
        raise InvalidSessionError("invalid session", detail={"session_id": session_id})
    return StreamingResponse(
        runtime.streamer.frames(session_id, request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/llm", response_model=Envelope, tags=["runs"])
async def run_planner(body: PlannerRequest):
    runtime = get_runtime()
    if not body.session_id:
        raise InvalidSessionError("invalid session")
    messages = [message.model_dump(exclude_none=True) for message in body.messages]
    outcome = await runtime.planner_step.run(
        body.session_id, body.node_id, messages, body.tools or []
    )
    return _ok(outcome.to_dict())


@router.get("/tools", response_model=Envelope, tags=["tools"])
async def list_tools():
    runtime = get_runtime()
    items = [ToolInfo(**schema).model_dump() for schema in runtime.registry.schemas()]
    return _ok({"items": items})
