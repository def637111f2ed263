"""Chat routes: health check and the streaming chat endpoint."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from loguru import logger

from marketplace_assistant.application.exceptions import EmptyQueryError, MissingUserError
from marketplace_assistant.application.orchestrator import StreamOrchestrator
from marketplace_assistant.auth import AuthenticatedUser, get_current_user
from marketplace_assistant.domain.models import TurnRequest
from marketplace_assistant.presentation.schemas import ChatRequest

router = APIRouter(tags=["chat"])

GENERATION_FAILED = "Response generation failed. Please try again."


def sse(payload: dict | str) -> str:
    """Format one server-sent event line."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health")
async def health():
    """Simple liveness / readiness check."""
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Chat (streaming, server-sent events)
# ---------------------------------------------------------------------------


@router.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Stream an answer as ``data: {json}`` events, ending with ``data: [DONE]``.

    Event types:
    - ``content`` with ``text``: a prose delta
    - ``tool`` with ``name`` and ``result`` or ``error``: the turn's tool outcome
    - ``error`` with ``detail``: generation failed, the turn is over
    - ``done`` with ``cached``, ``context_ids`` and ``tool``
    """
    orchestrator: StreamOrchestrator = raw_request.app.state.orchestrator

    if not request.message.strip():
        raise HTTPException(status_code=422, detail="message must not be empty")

    turn_request = TurnRequest(
        user_id=current_user.user_id,
        message=request.message,
        history=request.history,
        current_filters=request.current_filters,
    )
    logger.info(
        "POST /chat/stream | user={} msg={} history={}",
        current_user.user_id,
        request.message[:60],
        len(request.history),
    )

    async def event_generator():
        with logger.contextualize(user=current_user.user_id):
            try:
                async for event in orchestrator.stream(turn_request):
                    yield sse(event.to_payload())
            except (EmptyQueryError, MissingUserError) as exc:
                yield sse({"type": "error", "detail": str(exc)})
            except Exception:
                logger.exception("Chat turn failed")
                yield sse({"type": "error", "detail": GENERATION_FAILED})
        yield sse("[DONE]")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
