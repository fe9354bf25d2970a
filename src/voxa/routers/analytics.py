"""Usage analytics aggregated from the TTS message log."""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import TypeVar

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import Principal, require_principal
from ..repository import MessageRepository
from ..schemas.analytics import DailyActivity, MonthlyUsage, UsageStats, VoiceUsage
from .tts import get_message_repository

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/analytics", tags=["analytics"])

DEFAULT_MONTHS = 6
MAX_MONTHS = 24

T = TypeVar("T")


async def _query(awaitable: Awaitable[T], what: str) -> T:
    try:
        return await awaitable
    except aiosqlite.Error as exc:
        logger.error("Failed to fetch %s: %s", what, exc)
        raise HTTPException(
            status_code=503,
            detail="Database is temporarily unavailable. Try again shortly.",
        ) from exc


@router.get("/stats", response_model=UsageStats)
async def usage_stats(
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> dict:
    return await _query(repository.usage_stats(user_id=principal.user_id), "usage stats")


@router.get("/voices", response_model=list[VoiceUsage])
async def voice_usage(
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> list[dict]:
    return await _query(repository.voice_usage(user_id=principal.user_id), "voice usage")


@router.get("/monthly", response_model=list[MonthlyUsage])
async def monthly_usage(
    months: int = Query(default=DEFAULT_MONTHS),
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> list[dict]:
    months = min(MAX_MONTHS, max(1, months))
    return await _query(
        repository.monthly_usage(user_id=principal.user_id, months=months),
        "monthly usage",
    )


@router.get("/daily-activity", response_model=list[DailyActivity])
async def daily_activity(
    principal: Principal = Depends(require_principal),
    repository: MessageRepository = Depends(get_message_repository),
) -> list[dict]:
    return await _query(
        repository.daily_activity(user_id=principal.user_id), "daily activity"
    )


__all__ = ["router"]
