"""Orchestrate a synthesis request from validated text to WAV bytes."""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Literal
from uuid import uuid4

from .ledger import MessageLedger, TTSAttempt
from .rate_limit import RateLimiter
from .speech_client import (
    DEFAULT_VOICE,
    SpeechRequest,
    SpeechResponse,
    SpeechSynthesisClient,
    clamp_speed,
)
from .transcoder import (
    WAV_MEDIA_TYPE,
    AudioTranscoder,
    TranscodeError,
    compute_wav_duration,
)
from .tts_errors import (
    InvalidInput,
    ProviderError,
    RateLimited,
    ServiceUnavailable,
    TTSPipelineError,
    TranscodeUnavailable,
    Unexpected,
    UpstreamEmptyResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 500
PROVIDER_MESSAGE_MAX_CHARS = 200

AttemptStatus = Literal["pending", "sent", "failed"]


class PipelineState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RATE_LIMITED = "rate_limited"
    SYNTHESIZING = "synthesizing"
    TRANSCODING = "transcoding"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class SynthesisRequest:
    text: str
    voice: str = DEFAULT_VOICE
    language: str | None = None
    speed: float | None = None
    pitch: float | None = None
    meeting_id: str | None = None


@dataclass(frozen=True)
class SynthesisResult:
    request_id: str
    audio: bytes
    duration_seconds: float
    message_id: str | None = None
    media_type: str = WAV_MEDIA_TYPE

    @property
    def content_length(self) -> int:
        return len(self.audio)


class StatusTracker:
    """Last known status per request id, bounded to the most recent entries."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max_entries
        self._statuses: OrderedDict[str, AttemptStatus] = OrderedDict()

    def set(self, request_id: str, status: AttemptStatus) -> None:
        self._statuses[request_id] = status
        self._statuses.move_to_end(request_id)
        while len(self._statuses) > self._max_entries:
            self._statuses.popitem(last=False)

    def get(self, request_id: str) -> AttemptStatus | None:
        return self._statuses.get(request_id)

    def __len__(self) -> int:
        return len(self._statuses)


def build_instructions(language: str | None, pitch: float | None) -> str | None:
    """Describe language and pitch for providers without native parameters."""

    parts: list[str] = []
    if language:
        parts.append(f"Speak in {language}.")
    if pitch is not None:
        parts.append(f"Use a pitch of {pitch:.1f}x (best-effort).")
    return " ".join(parts) or None


def extract_provider_error(body: str) -> tuple[str, str]:
    """Return ``(message, details)`` for a provider error body.

    Prefers ``error.message``, then ``message``, then the raw text truncated
    to a bounded length.
    """

    message = "TTS provider error"
    details = body
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        if body:
            message = body[:PROVIDER_MESSAGE_MAX_CHARS]
        return message, details

    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
            return error["message"], error["message"]
        if isinstance(parsed.get("message"), str) and parsed["message"]:
            return parsed["message"], parsed["message"]
    return message, details


class TTSPipeline:
    """Validate, rate limit, synthesize, transcode, and log one request."""

    def __init__(
        self,
        *,
        speech_client: SpeechSynthesisClient | None,
        transcoder: AudioTranscoder,
        rate_limiter: RateLimiter,
        ledger: MessageLedger,
        max_chars: int = DEFAULT_MAX_CHARS,
        status_tracker: StatusTracker | None = None,
    ) -> None:
        self._speech_client = speech_client
        self._transcoder = transcoder
        self._rate_limiter = rate_limiter
        self._ledger = ledger
        self._max_chars = max_chars
        self.statuses = status_tracker or StatusTracker()

    @property
    def max_chars(self) -> int:
        return self._max_chars

    def validate(self, request: SynthesisRequest) -> str:
        """Return the trimmed text or raise :class:`InvalidInput`."""

        text = request.text.strip() if isinstance(request.text, str) else ""
        if not text:
            raise InvalidInput("Text is required.")
        if len(text) > self._max_chars:
            raise InvalidInput(
                f"Text is too long. Maximum allowed length is {self._max_chars} characters."
            )
        return text

    async def synthesize(
        self,
        request: SynthesisRequest,
        *,
        user_id: str | None = None,
        client_address: str | None = None,
    ) -> SynthesisResult:
        request_id = uuid4().hex
        self._transition(request_id, PipelineState.VALIDATING)
        text = self.validate(request)
        if self._speech_client is None:
            raise ServiceUnavailable("OPENAI_API_KEY is not configured on the server.")

        await self._enforce_rate_limit(request_id, user_id or client_address or "anonymous")

        voice = request.voice or DEFAULT_VOICE
        self.statuses.set(request_id, "pending")
        message_id: str | None = None
        if user_id:
            message_id = await self._ledger.create(
                TTSAttempt(
                    user_id=user_id,
                    text=text,
                    voice=voice,
                    language=request.language,
                    speed=request.speed if request.speed is not None else 1.0,
                    pitch=request.pitch if request.pitch is not None else 1.0,
                    meeting_id=request.meeting_id,
                )
            )

        try:
            self._transition(request_id, PipelineState.SYNTHESIZING)
            response = await self._speech_client.synthesize(
                SpeechRequest(
                    text=text,
                    voice=voice,
                    speed=clamp_speed(request.speed),
                    instructions=build_instructions(request.language, request.pitch),
                )
            )
            audio = self._require_audio(response)

            self._transition(request_id, PipelineState.TRANSCODING)
            try:
                wav = await self._transcoder.transcode(audio)
            except TranscodeError as exc:
                raise TranscodeUnavailable(
                    "Audio conversion unavailable.", details=str(exc)
                ) from exc
        except TTSPipelineError as exc:
            await self._fail(request_id, message_id, exc.details or exc.message)
            raise
        except Exception as exc:
            logger.exception("Unexpected error while generating TTS audio")
            message = str(exc) or "Unexpected error while generating TTS audio."
            await self._fail(request_id, message_id, message)
            raise Unexpected(message) from exc

        self._transition(request_id, PipelineState.STREAMING)
        duration = compute_wav_duration(wav)
        self.statuses.set(request_id, "sent")
        if message_id is not None:
            self._ledger.schedule(
                self._ledger.mark_sent(message_id, duration_seconds=duration)
            )
        self._transition(request_id, PipelineState.DONE)
        return SynthesisResult(
            request_id=request_id,
            audio=wav,
            duration_seconds=duration,
            message_id=message_id,
        )

    async def _enforce_rate_limit(self, request_id: str, key: str) -> None:
        decision = await self._rate_limiter.check(key)
        if decision.allowed:
            return
        self._transition(request_id, PipelineState.RATE_LIMITED)
        logger.info("Rate limit exceeded for %s (retry in %ss)", key, decision.retry_after)
        raise RateLimited(
            "Too many TTS requests",
            retry_after=decision.retry_after,
            limit=decision.limit,
            window_seconds=self._rate_limiter.window_seconds,
        )

    @staticmethod
    def _require_audio(response: SpeechResponse) -> bytes:
        if not response.ok:
            message, details = extract_provider_error(response.error_body)
            raise ProviderError(
                message, details=details, status_code=response.status_code
            )
        if not response.audio:
            raise UpstreamEmptyResponse("TTS provider returned no audio stream.")
        return response.audio

    async def _fail(self, request_id: str, message_id: str | None, message: str) -> None:
        self.statuses.set(request_id, "failed")
        self._transition(request_id, PipelineState.FAILED)
        await self._ledger.mark_failed(message_id, message)

    @staticmethod
    def _transition(request_id: str, state: PipelineState) -> None:
        logger.debug("TTS request %s -> %s", request_id, state.value)


__all__ = [
    "DEFAULT_MAX_CHARS",
    "PipelineState",
    "StatusTracker",
    "SynthesisRequest",
    "SynthesisResult",
    "TTSPipeline",
    "build_instructions",
    "extract_provider_error",
]
