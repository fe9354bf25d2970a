"""Turn synthesis failures into one user-facing message."""

from __future__ import annotations

import math
from enum import Enum

import httpx

from .api import TTSRequestError


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    NETWORK = "network"
    LOCAL_TOOL = "local_tool"
    PROVIDER_CONFIG = "provider_config"
    EMPTY_INPUT = "empty_input"
    GENERIC = "generic"


_QUOTA_HINTS = ("insufficient_quota", "exceeded your current quota")
_RATE_LIMIT_HINTS = ("too many requests", "rate limit")
_LOCAL_TOOL_HINTS = ("audio conversion", "ffmpeg")
_PROVIDER_CONFIG_HINTS = ("tts provider", "openai_api_key", "not configured")
_NETWORK_HINTS = ("network", "failed to fetch", "connection", "timed out")
_EMPTY_INPUT_HINTS = ("text is required", "text_input is required")


def _contains(message: str, hints: tuple[str, ...]) -> bool:
    return any(hint in message for hint in hints)


def classify_error(error: BaseException) -> ErrorCategory:
    """Best-effort display category; status codes win over message text."""

    if isinstance(error, httpx.TransportError):
        return ErrorCategory.NETWORK

    status_code = getattr(error, "status_code", None)
    provider_status = getattr(error, "provider_status", None)
    message = str(error).lower()

    if _contains(message, _QUOTA_HINTS):
        return ErrorCategory.QUOTA
    if status_code == 429 or _contains(message, _RATE_LIMIT_HINTS):
        return ErrorCategory.RATE_LIMIT
    if provider_status is not None:
        if provider_status in (401, 403):
            return ErrorCategory.PROVIDER_CONFIG
        return ErrorCategory.GENERIC
    if status_code == 503 or _contains(message, _LOCAL_TOOL_HINTS):
        return ErrorCategory.LOCAL_TOOL
    if _contains(message, _EMPTY_INPUT_HINTS):
        return ErrorCategory.EMPTY_INPUT
    if _contains(message, _PROVIDER_CONFIG_HINTS) or (
        status_code is None and "500" in message
    ):
        return ErrorCategory.PROVIDER_CONFIG
    if status_code is None and _contains(message, _NETWORK_HINTS):
        return ErrorCategory.NETWORK
    return ErrorCategory.GENERIC


def friendly_error_message(error: BaseException) -> str:
    category = classify_error(error)

    if category is ErrorCategory.RATE_LIMIT:
        retry_after = error.retry_after if isinstance(error, TTSRequestError) else None
        if retry_after:
            minutes = max(1, math.ceil(retry_after / 60))
            plural = "s" if minutes != 1 else ""
            return f"Rate limit exceeded. Please wait {minutes} minute{plural} before trying again."
        return "Too many requests. Please wait a moment and try again."
    if category is ErrorCategory.QUOTA:
        return (
            "Your OpenAI account has no remaining quota. Add a payment method at "
            "https://platform.openai.com/account/billing to use text-to-speech."
        )
    if category is ErrorCategory.NETWORK:
        return "Could not reach the Voxa server. Check your connection and try again."
    if category is ErrorCategory.LOCAL_TOOL:
        return (
            "The server could not convert the audio. Make sure ffmpeg is installed "
            "on the server and available on PATH."
        )
    if category is ErrorCategory.PROVIDER_CONFIG:
        return (
            "The server's text-to-speech service isn't configured or is temporarily "
            "unavailable. Make sure OPENAI_API_KEY is set in the server .env file "
            "and the server has been restarted."
        )
    if category is ErrorCategory.EMPTY_INPUT:
        return "Type something to say first."
    return "Something went wrong while generating speech. Please try again."


__all__ = ["ErrorCategory", "classify_error", "friendly_error_message"]
