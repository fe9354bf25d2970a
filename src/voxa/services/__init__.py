"""
TTS (Text-to-Speech) Services Package.

This package contains the synthesis request pipeline and its collaborators:

- speech_client: single HTTP call to the speech provider (MP3 out)
- transcoder: ffmpeg subprocess converting MP3 to 48 kHz mono 16-bit WAV
- rate_limit: fixed-window request counters (in-memory or SQLite-backed)
- ledger: best-effort persistence of one row per attempt
- tts_pipeline: orchestration and the error taxonomy mapping

Architecture Overview:

    ┌──────────┐   ┌─────────────┐   ┌────────────┐   ┌──────────────┐
    │ Validate │──▶│ RateLimiter │──▶│ Ledger row │──▶│ SpeechClient │
    └──────────┘   └─────────────┘   │ (pending)  │   └──────────────┘
                                     └────────────┘          │ MP3
                                                             ▼
                   ┌─────────────┐   ┌────────────┐   ┌──────────────┐
                   │ WAV response│◀──│ Ledger row │◀──│  Transcoder  │
                   │             │   │ (sent)     │   └──────────────┘
                   └─────────────┘   └────────────┘

Both legs are fully buffered: the WAV header depends on the total sample
count, so the provider's output is collected before transcoding starts.
"""

from .ledger import MessageLedger, TTSAttempt
from .rate_limit import InMemoryRateLimiter, SQLiteRateLimiter, build_rate_limiter
from .speech_client import SpeechSynthesisClient
from .transcoder import FfmpegTranscoder, compute_wav_duration
from .tts_pipeline import SynthesisRequest, SynthesisResult, TTSPipeline

__all__ = [
    "FfmpegTranscoder",
    "InMemoryRateLimiter",
    "MessageLedger",
    "SQLiteRateLimiter",
    "SpeechSynthesisClient",
    "SynthesisRequest",
    "SynthesisResult",
    "TTSAttempt",
    "TTSPipeline",
    "build_rate_limiter",
    "compute_wav_duration",
]
