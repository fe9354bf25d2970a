"""Request and response models for the TTS endpoints."""

from __future__ import annotations

import math
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Voices offered by the composer UI; the server forwards any voice string.
OPENAI_VOICES = [
    "alloy",    # Neutral, balanced
    "ash",      # Warm
    "ballad",   # Soft
    "coral",    # Warm, friendly
    "echo",     # Neutral
    "fable",    # Expressive, British
    "nova",     # Warm, female
    "onyx",     # Deep, authoritative
    "sage",     # Calm
    "shimmer",  # Expressive, female
]


class TTSStreamRequest(BaseModel):
    """Body of ``POST /api/tts/stream``.

    Mistyped fields never fail model validation: ``text`` is handed to the
    pipeline as-is so it can answer with its own 400, and the optional
    fields fall back to their defaults.
    """

    model_config = ConfigDict(extra="ignore")

    text: Any = None
    voice: Optional[str] = None
    language: Optional[str] = None
    speed: Optional[float] = None
    pitch: Optional[float] = None
    meeting_id: Optional[str] = None

    @field_validator("voice", "language", "meeting_id", mode="before")
    @classmethod
    def _drop_non_strings(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None

    @field_validator("speed", "pitch", mode="before")
    @classmethod
    def _drop_non_numbers(cls, value: Any) -> Optional[float]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value):
            return None
        return float(value)


class TTSMessageCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text_input: Optional[str] = None
    meeting_id: Optional[str] = None
    voice_used: Optional[str] = None
    language: Optional[str] = None
    speed: Optional[float] = Field(default=None, allow_inf_nan=False)
    pitch: Optional[float] = Field(default=None, allow_inf_nan=False)


class TTSMessageStatusUpdate(BaseModel):
    status: Optional[str] = None
    error_message: Optional[str] = None


class TTSMessageDurationUpdate(BaseModel):
    audio_duration_seconds: float | str | None = None


class TTSMessage(BaseModel):
    """A persisted synthesis attempt."""

    id: str
    user_id: str
    meeting_id: Optional[str] = None
    meeting_title: Optional[str] = None
    text_input: str
    text_length: int
    voice_used: str
    language: Optional[str] = None
    speed: float
    pitch: float
    status: str
    error_message: Optional[str] = None
    audio_duration_seconds: Optional[float] = None
    created_at: Optional[str] = None


__all__ = [
    "OPENAI_VOICES",
    "TTSMessage",
    "TTSMessageCreate",
    "TTSMessageDurationUpdate",
    "TTSMessageStatusUpdate",
    "TTSStreamRequest",
]
