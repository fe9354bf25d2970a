"""Routes for speech synthesis and the TTS message log."""

from __future__ import annotations

import logging
import math

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from ..auth import Principal, client_address, get_optional_principal, require_principal
from ..repository import MESSAGE_STATUSES, MessageRepository
from ..schemas.tts import (
    TTSMessage,
    TTSMessageCreate,
    TTSMessageDurationUpdate,
    TTSMessageStatusUpdate,
    TTSStreamRequest,
)
from ..services.speech_client import DEFAULT_VOICE
from ..services.tts_errors import RateLimited, TTSPipelineError
from ..services.tts_pipeline import SynthesisRequest, TTSPipeline

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/tts", tags=["tts"])

_MAX_DURATION_SECONDS = 86_400


def get_tts_pipeline(request: Request) -> TTSPipeline:
    pipeline = getattr(request.app.state, "tts_pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=500, detail="TTS pipeline unavailable")
    return pipeline


def get_message_repository(request: Request) -> MessageRepository:
    repository = getattr(request.app.state, "message_repository", None)
    if repository is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return repository


def _error_response(exc: TTSPipelineError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(),
        headers=headers or None,
    )


@router.post(
    "/stream",
    response_class=Response,
    responses={200: {"content": {"audio/wav": {}}}},
)
async def stream_tts(
    payload: TTSStreamRequest,
    request: Request,
    principal: Principal | None = Depends(get_optional_principal),
    pipeline: TTSPipeline = Depends(get_tts_pipeline),
) -> Response:
    try:
        result = await pipeline.synthesize(
            SynthesisRequest(
                text=payload.text or "",
                voice=payload.voice or DEFAULT_VOICE,
                language=payload.language,
                speed=payload.speed,
                pitch=payload.pitch,
                meeting_id=payload.meeting_id,
            ),
            user_id=principal.user_id if principal else None,
            client_address=client_address(request),
        )
    except TTSPipelineError as exc:
        if exc.status_code >= 500:
            logger.error("TTS request failed (%s): %s", exc.status_code, exc.details or exc.message)
        else:
            logger.info("TTS request rejected (%s): %s", exc.status_code, exc.message)
        return _error_response(exc)

    return Response(
        content=result.audio,
        media_type=result.media_type,
        headers={"Content-Length": str(result.content_length)},
    )


@router.get("/messages", response_model=list[TTSMessage])
async def list_messages(
    meeting_id: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> list[dict]:
    return await repository.list_messages(
        user_id=principal.user_id,
        meeting_id=meeting_id,
        status=status,
        limit=limit,
        offset=offset,
    )


@router.get("/messages/{message_id}", response_model=TTSMessage)
async def get_message(
    message_id: str,
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> dict:
    record = await repository.get_message(message_id, user_id=principal.user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="TTS message not found")
    return record


@router.post("/messages", response_model=TTSMessage, status_code=201)
async def create_message(
    payload: TTSMessageCreate,
    request: Request,
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> dict:
    """Log an attempt that was generated elsewhere; it is stored as ``sent``."""

    max_chars = get_tts_pipeline(request).max_chars
    if not payload.text_input:
        raise HTTPException(status_code=400, detail="text_input is required")
    if len(payload.text_input) > max_chars:
        raise HTTPException(
            status_code=400,
            detail=f"Text input exceeds {max_chars} character limit",
        )

    if payload.meeting_id and not await repository.meeting_belongs_to(
        payload.meeting_id, principal.user_id
    ):
        raise HTTPException(status_code=404, detail="Meeting not found")

    return await repository.create_message(
        user_id=principal.user_id,
        meeting_id=payload.meeting_id,
        text_input=payload.text_input,
        voice_used=payload.voice_used or DEFAULT_VOICE,
        language=payload.language,
        speed=payload.speed or 1.0,
        pitch=payload.pitch or 1.0,
        status="sent",
    )


@router.put("/messages/{message_id}/status", response_model=TTSMessage)
async def update_message_status(
    message_id: str,
    payload: TTSMessageStatusUpdate,
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> dict:
    if not payload.status or payload.status not in MESSAGE_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")

    existing = await repository.get_message(message_id, user_id=principal.user_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="TTS message not found")
    if existing["status"] == payload.status:
        return existing

    updated = await repository.update_status(
        message_id,
        payload.status,  # type: ignore[arg-type]
        error_message=payload.error_message,
        user_id=principal.user_id,
    )
    if updated is None:
        raise HTTPException(
            status_code=409,
            detail=f"TTS message is already {existing['status']}",
        )
    return updated


@router.patch("/messages/{message_id}/duration", response_model=TTSMessage)
async def update_message_duration(
    message_id: str,
    payload: TTSMessageDurationUpdate,
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> dict:
    try:
        duration = float(payload.audio_duration_seconds)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        duration = math.nan
    if math.isnan(duration) or duration < 0 or duration > _MAX_DURATION_SECONDS:
        raise HTTPException(
            status_code=400,
            detail="audio_duration_seconds must be a number between 0 and 86400",
        )

    updated = await repository.set_duration(
        message_id, round(duration), user_id=principal.user_id
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="TTS message not found")
    return updated


__all__ = ["get_message_repository", "get_tts_pipeline", "router"]
