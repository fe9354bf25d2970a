"""Client-side helpers for requesting and playing synthesized speech."""

from .api import (
    PlaybackCancelled,
    TTSRequestError,
    TTSSpeakRequest,
    fetch_tts_audio,
    raise_for_tts_error,
)
from .messages import ErrorCategory, classify_error, friendly_error_message
from .playback import (
    OutputDevice,
    OutputDeviceWatcher,
    PlaybackClient,
    PlaybackState,
    SoundDeviceOutput,
    decode_wav,
    list_output_devices,
)

__all__ = [
    "ErrorCategory",
    "OutputDevice",
    "OutputDeviceWatcher",
    "PlaybackCancelled",
    "PlaybackClient",
    "PlaybackState",
    "SoundDeviceOutput",
    "TTSRequestError",
    "TTSSpeakRequest",
    "classify_error",
    "decode_wav",
    "fetch_tts_audio",
    "friendly_error_message",
    "list_output_devices",
    "raise_for_tts_error",
]
