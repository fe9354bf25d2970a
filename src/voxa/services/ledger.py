"""Best-effort persistence of TTS attempts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Coroutine

from ..repository import MessageRepository

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_CHARS = 500


@dataclass(frozen=True)
class TTSAttempt:
    user_id: str
    text: str
    voice: str = "alloy"
    language: str | None = None
    speed: float = 1.0
    pitch: float = 1.0
    meeting_id: str | None = None


def truncate_error(message: str | None, limit: int = ERROR_MESSAGE_MAX_CHARS) -> str:
    text = (message or "").strip() or "Unknown error"
    return text[:limit]


class MessageLedger:
    """Record one row per synthesis attempt without ever failing the caller.

    Every public method logs and swallows its own errors. Updates scheduled
    with :meth:`schedule` run as detached tasks tracked until completion.
    """

    def __init__(self, repository: MessageRepository | None) -> None:
        self._repository = repository
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def enabled(self) -> bool:
        return self._repository is not None

    def disable(self) -> None:
        """Stop persisting; later calls become no-ops."""

        self._repository = None

    async def create(self, attempt: TTSAttempt) -> str | None:
        if self._repository is None:
            return None
        try:
            meeting_id = attempt.meeting_id
            if meeting_id and not await self._repository.meeting_belongs_to(
                meeting_id, attempt.user_id
            ):
                logger.warning(
                    "Meeting %s not found for user %s; logging without it",
                    meeting_id,
                    attempt.user_id,
                )
                meeting_id = None

            record = await self._repository.create_message(
                user_id=attempt.user_id,
                meeting_id=meeting_id,
                text_input=attempt.text,
                voice_used=attempt.voice,
                language=attempt.language,
                speed=attempt.speed,
                pitch=attempt.pitch,
                status="pending",
            )
        except Exception as exc:
            logger.error("Failed to log TTS message to database: %s", exc)
            return None
        return str(record["id"])

    async def mark_sent(self, message_id: str | None, *, duration_seconds: float | None = None) -> None:
        if self._repository is None or message_id is None:
            return
        try:
            await self._repository.update_status(message_id, "sent")
            if duration_seconds is not None:
                await self._repository.set_duration(message_id, duration_seconds)
        except Exception as exc:
            logger.warning("Failed to mark TTS message %s as sent: %s", message_id, exc)

    async def mark_failed(self, message_id: str | None, message: str | None) -> None:
        if self._repository is None or message_id is None:
            return
        try:
            await self._repository.update_status(
                message_id, "failed", error_message=truncate_error(message)
            )
        except Exception as exc:
            logger.warning("Failed to mark TTS message %s as failed: %s", message_id, exc)

    async def set_duration(self, message_id: str | None, seconds: float) -> None:
        if self._repository is None or message_id is None:
            return
        try:
            await self._repository.set_duration(message_id, seconds)
        except Exception as exc:
            logger.warning(
                "Failed to store duration for TTS message %s: %s", message_id, exc
            )

    def schedule(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        """Run ``coro`` in the background; failures only reach the log."""

        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background ledger update failed: %s", exc)

    async def drain(self) -> None:
        """Wait for scheduled updates to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = [
    "ERROR_MESSAGE_MAX_CHARS",
    "MessageLedger",
    "TTSAttempt",
    "truncate_error",
]
