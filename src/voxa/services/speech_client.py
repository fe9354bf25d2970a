"""HTTP client for the external text-to-speech provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

SPEED_MIN = 0.25
SPEED_MAX = 4.0
DEFAULT_VOICE = "alloy"
RESPONSE_FORMAT = "mp3"
DEFAULT_REQUEST_TIMEOUT = 120.0


def clamp_speed(value: float | None) -> float:
    """Clamp a speed multiplier into the range the provider accepts."""

    if value is None:
        return 1.0
    return min(SPEED_MAX, max(SPEED_MIN, float(value)))


@dataclass(frozen=True)
class SpeechRequest:
    text: str
    voice: str = DEFAULT_VOICE
    speed: float = 1.0
    instructions: str | None = None
    response_format: str = RESPONSE_FORMAT


@dataclass
class SpeechResponse:
    """Outcome of a single provider call.

    ``audio`` is the fully buffered body on success; ``error_body`` holds the
    raw text of a non-success response.
    """

    status_code: int
    audio: bytes | None = None
    error_body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class SpeechSynthesisClient:
    """Call the provider's speech endpoint once per request.

    Requests are never retried: a retried synthesis would be billed twice and
    the provider offers no idempotency key.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        endpoint: str,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._request_timeout = request_timeout
        self._model = model
        self._endpoint = endpoint
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            timeout = httpx.Timeout(self._request_timeout, connect=10.0)
            self._http_client = httpx.AsyncClient(timeout=timeout)
            logger.debug("Created httpx.AsyncClient for speech provider")
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, request: SpeechRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model,
            "voice": request.voice or DEFAULT_VOICE,
            "input": request.text,
            "response_format": request.response_format,
            "speed": clamp_speed(request.speed),
        }
        if request.instructions:
            payload["instructions"] = request.instructions
        return payload

    async def synthesize(self, request: SpeechRequest) -> SpeechResponse:
        payload = self.build_payload(request)
        client = self._get_http_client()
        logger.info(
            "Requesting speech (model=%s, voice=%s, speed=%s, chars=%d)",
            payload["model"],
            payload["voice"],
            payload["speed"],
            len(request.text),
        )

        async with client.stream(
            "POST", self._endpoint, headers=self._headers, json=payload
        ) as response:
            if response.status_code < 200 or response.status_code >= 300:
                body = await response.aread()
                text = body.decode("utf-8", errors="replace")
                logger.warning(
                    "Speech provider returned %s: %s",
                    response.status_code,
                    text[:200],
                )
                return SpeechResponse(status_code=response.status_code, error_body=text)

            # The transcoder needs the whole file, so chunks are only concatenated.
            chunks: list[bytes] = []
            async for chunk in response.aiter_bytes():
                if chunk:
                    chunks.append(chunk)

        audio = b"".join(chunks)
        return SpeechResponse(status_code=response.status_code, audio=audio or None)


__all__ = [
    "DEFAULT_REQUEST_TIMEOUT",
    "DEFAULT_VOICE",
    "RESPONSE_FORMAT",
    "SPEED_MAX",
    "SPEED_MIN",
    "SpeechRequest",
    "SpeechResponse",
    "SpeechSynthesisClient",
    "clamp_speed",
]
