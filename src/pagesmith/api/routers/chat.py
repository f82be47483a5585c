from __future__ import annotations

import logging
from fastapi import APIRouter, HTTPException, Request, status, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ...domain.chat_models import ChatRequest, ErrorResponse
from ...security.auth import User, get_current_user
from ...services.generation import ProviderUnavailable, get_generation_client
from ...services.history_adapter import EmptyTurn, adapt_turn
from ...services.stream_relay import (
    NDJSON_MEDIA_TYPE,
    persist_turn,
    relay_fragments,
    start_generation,
    stream_max_seconds,
)
from ...observability.metrics import record_stream_outcome


logger = logging.getLogger(__name__)

GENERIC_CHAT_ERROR = "An error occurred during chat"

router = APIRouter(prefix="/chat", tags=["chat"])


async def read_chat_request(request: Request, _user: User = Depends(get_current_user)) -> ChatRequest:
    """Parse the chat body only once the caller is authenticated.

    A declared body parameter would be parsed before any dependency runs, so a
    malformed body from an anonymous caller would win over the 401.
    """
    raw = await request.body()
    try:
        return ChatRequest.model_validate_json(raw)
    except ValidationError as exc:
        errors = [{**err, "loc": ("body", *err["loc"])} for err in exc.errors(include_url=False)]
        raise RequestValidationError(errors, body=raw)


@router.post(
    "",
    response_class=StreamingResponse,
    responses={
        200: {"content": {NDJSON_MEDIA_TYPE: {}}, "description": 'One {"text": ...} record per line'},
        400: {"model": ErrorResponse, "description": "Empty turn or a body that is not a ChatRequest"},
        401: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def chat(user: User = Depends(get_current_user), req: ChatRequest = Depends(read_chat_request)):
    try:
        turn = adapt_turn(req.messages)
    except EmptyTurn:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Conversation must contain at least one message",
        )

    try:
        # Recorded before generation starts; the outcome never gates the stream
        await run_in_threadpool(persist_turn, user.user_id, req.messages)
        session = get_generation_client().start_chat(turn.history)
        max_seconds = stream_max_seconds()
        stream, first = await start_generation(session, turn.prompt, max_seconds=max_seconds)
    except ProviderUnavailable as exc:
        record_stream_outcome("unavailable")
        logger.error("chat_provider_unavailable", extra={"user_id": user.user_id, "err": str(exc)})
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": GENERIC_CHAT_ERROR})
    except Exception:
        logger.exception("Chat API error")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": GENERIC_CHAT_ERROR})

    return StreamingResponse(
        relay_fragments(stream, first, max_seconds=max_seconds),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
