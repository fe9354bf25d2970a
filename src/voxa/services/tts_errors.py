"""Error taxonomy for the text-to-speech pipeline."""

from __future__ import annotations

from typing import Any

from fastapi import status


class TTSPipelineError(RuntimeError):
    """Base error raised when a synthesis request cannot be fulfilled."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        details: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class InvalidInput(TTSPipelineError):
    """Raised when the request text is empty or too long."""

    status_code = status.HTTP_400_BAD_REQUEST


class ServiceUnavailable(TTSPipelineError):
    """Raised when local configuration required for synthesis is missing."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class RateLimited(TTSPipelineError):
    """Raised when a principal exceeds the synthesis quota."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        limit: int,
        window_seconds: int,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit
        self.window_seconds = window_seconds

    @property
    def window_minutes(self) -> int:
        return max(1, -(-self.window_seconds // 60))

    def to_payload(self) -> dict[str, Any]:
        minutes = self.window_minutes
        plural = "s" if minutes != 1 else ""
        return {
            "error": self.message,
            "message": (
                f"Please wait {minutes} minute{plural} before making more requests. "
                "Consider upgrading your plan for higher limits."
            ),
            "retryAfter": self.retry_after,
            "limit": self.limit,
            "window": minutes,
        }


class ProviderError(TTSPipelineError):
    """Raised when the speech provider answers with a non-success status."""

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["statusCode"] = self.status_code
        return payload


class UpstreamEmptyResponse(TTSPipelineError):
    """Raised when the speech provider reports success without audio."""

    status_code = status.HTTP_502_BAD_GATEWAY


class TranscodeUnavailable(TTSPipelineError):
    """Raised when the local audio transcoder is missing or failing."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class Unexpected(TTSPipelineError):
    """Raised for failures outside the known taxonomy."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
    "InvalidInput",
    "ProviderError",
    "RateLimited",
    "ServiceUnavailable",
    "TTSPipelineError",
    "TranscodeUnavailable",
    "Unexpected",
    "UpstreamEmptyResponse",
]
