"""Response models for the usage analytics endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class UsageStats(BaseModel):
    total_meetings: int
    total_tts_messages: int
    total_characters: int
    total_audio_seconds: float


class VoiceUsage(BaseModel):
    voice: str
    count: int


class MonthlyUsage(BaseModel):
    month: str
    meetings: int
    characters: int


class DailyActivity(BaseModel):
    day: str
    messages: int


__all__ = ["DailyActivity", "MonthlyUsage", "UsageStats", "VoiceUsage"]
