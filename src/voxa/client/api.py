"""HTTP access to the synthesis endpoint from the client side."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

TTS_STREAM_PATH = "/api/tts/stream"
_DETAILS_MAX_CHARS = 200


@dataclass(frozen=True)
class TTSSpeakRequest:
    input: str
    voice: str = "alloy"
    language: str | None = None
    speed: float | None = None
    pitch: float | None = None
    meeting_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "text": self.input,
            "voice": self.voice,
            "language": self.language,
            "speed": self.speed,
            "pitch": self.pitch,
            "meeting_id": self.meeting_id or None,
        }


class TTSRequestError(RuntimeError):
    """The server refused or failed a synthesis request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: int | None = None,
        provider_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        # Only set when the speech provider itself rejected the request.
        self.provider_status = provider_status


class PlaybackCancelled(Exception):
    """Raised when the active request or playback is stopped by the user."""


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _rate_limit_error(response: httpx.Response) -> TTSRequestError:
    retry_after = _parse_retry_after(response.headers.get("retry-after"))
    message = "Too many requests. Please wait a moment and try again."
    if retry_after is not None:
        minutes = max(1, math.ceil(retry_after / 60))
        plural = "s" if minutes != 1 else ""
        message = (
            f"Rate limit exceeded. Please wait {minutes} minute{plural} "
            "before trying again."
        )
    if "application/json" in response.headers.get("content-type", ""):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            message = body.get("error") or body.get("message") or message
            if retry_after is None and isinstance(body.get("retryAfter"), int):
                retry_after = body["retryAfter"]
    return TTSRequestError(message, status_code=429, retry_after=retry_after)


def _json_error_message(body: dict[str, Any], status_code: int) -> str:
    message = body.get("error") or body.get("message") or f"TTS failed ({status_code})"
    details = body.get("details")
    if isinstance(details, str) and details and details != message:
        try:
            parsed = json.loads(details)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
            provider_message = parsed["error"].get("message")
            if provider_message:
                return str(provider_message)
        if parsed is None:
            return details[:_DETAILS_MAX_CHARS]
    return str(message)


async def raise_for_tts_error(response: httpx.Response) -> None:
    """Translate a non-success response into :class:`TTSRequestError`."""

    if response.is_success:
        return
    await response.aread()
    if response.status_code == 429:
        raise _rate_limit_error(response)

    if "application/json" in response.headers.get("content-type", ""):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        provider_status = body.get("statusCode")
        raise TTSRequestError(
            _json_error_message(body, response.status_code),
            status_code=response.status_code,
            provider_status=provider_status if isinstance(provider_status, int) else None,
        )
    raise TTSRequestError(
        response.text or f"TTS failed ({response.status_code})",
        status_code=response.status_code,
    )


async def fetch_tts_audio(
    request: TTSSpeakRequest,
    *,
    base_url: str,
    http_client: httpx.AsyncClient,
    token: str | None = None,
    cancel: asyncio.Event | None = None,
) -> bytes:
    """Request synthesis and accumulate the response body into one buffer.

    The body is read chunk by chunk; when ``cancel`` is set the read loop
    stops with :class:`PlaybackCancelled`.
    """

    url = f"{base_url.rstrip('/')}{TTS_STREAM_PATH}"
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    chunks: list[bytes] = []
    async with http_client.stream(
        "POST", url, headers=headers, json=request.to_payload()
    ) as response:
        await raise_for_tts_error(response)
        async for chunk in response.aiter_bytes():
            if cancel is not None and cancel.is_set():
                raise PlaybackCancelled()
            if chunk:
                chunks.append(chunk)

    if cancel is not None and cancel.is_set():
        raise PlaybackCancelled()
    audio = b"".join(chunks)
    if not audio:
        raise TTSRequestError("TTS response missing body.")
    logger.debug("Received %d bytes of audio", len(audio))
    return audio


__all__ = [
    "PlaybackCancelled",
    "TTSRequestError",
    "TTSSpeakRequest",
    "TTS_STREAM_PATH",
    "fetch_tts_audio",
    "raise_for_tts_error",
]
