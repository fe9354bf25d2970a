"""Client-side playback of synthesized speech through a chosen output device."""

from __future__ import annotations

import asyncio
import logging
import struct
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import httpx
import numpy as np

from .api import PlaybackCancelled, TTSSpeakRequest, fetch_tts_audio
from .messages import friendly_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUCCESS_HOLD_SECONDS = 1.5
_POLL_INTERVAL_SECONDS = 0.05


class AudioOutputUnavailable(RuntimeError):
    """Raised when no audio backend can be loaded on this platform."""


class PlaybackError(RuntimeError):
    """Raised when decoded audio cannot be played."""


class PlaybackState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    PLAYING = "playing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class OutputDevice:
    index: int
    name: str
    channels: int
    is_default: bool = False


@dataclass(frozen=True)
class DecodedAudio:
    samples: np.ndarray
    sample_rate: int
    channels: int

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate


def decode_wav(buffer: bytes) -> DecodedAudio:
    """Decode a 16-bit PCM WAV buffer into an int16 sample array.

    Streamed WAV headers may carry placeholder chunk sizes, so the data
    chunk is taken to run to the end of the buffer when its size overflows.
    """

    if len(buffer) < 12 or buffer[:4] != b"RIFF" or buffer[8:12] != b"WAVE":
        raise PlaybackError("Audio is not a RIFF/WAVE buffer")

    offset = 12
    channels = sample_rate = bits = 0
    while offset + 8 <= len(buffer):
        chunk_id = buffer[offset : offset + 4]
        (chunk_size,) = struct.unpack("<I", buffer[offset + 4 : offset + 8])
        body_start = offset + 8
        if chunk_id == b"fmt ":
            audio_format, channels, sample_rate = struct.unpack(
                "<HHI", buffer[body_start : body_start + 8]
            )
            (bits,) = struct.unpack("<H", buffer[body_start + 14 : body_start + 16])
            if audio_format not in (1, 0xFFFE) or bits != 16:
                raise PlaybackError("Only 16-bit PCM WAV audio is supported")
        elif chunk_id == b"data":
            if not channels:
                raise PlaybackError("WAV data chunk precedes its format chunk")
            end = min(len(buffer), body_start + chunk_size)
            payload = buffer[body_start:end]
            payload = payload[: len(payload) - (len(payload) % (2 * channels))]
            samples = np.frombuffer(payload, dtype="<i2")
            if channels > 1:
                samples = samples.reshape(-1, channels)
            return DecodedAudio(samples=samples, sample_rate=sample_rate, channels=channels)
        offset = body_start + chunk_size + (chunk_size & 1)

    raise PlaybackError("WAV buffer has no data chunk")


def _load_sounddevice() -> Any:
    try:
        import sounddevice as sd
    except OSError as exc:  # PortAudio shared library missing
        raise AudioOutputUnavailable(str(exc)) from exc
    return sd


def _stream_active(sd: Any) -> bool:
    try:
        return bool(sd.get_stream().active)
    except (RuntimeError, sd.PortAudioError):
        # No stream was ever started, or it was closed by a re-initialisation.
        return False


def list_output_devices(*, rescan: bool = False) -> list[OutputDevice]:
    """Enumerate output-capable devices; empty when the platform exposes none.

    PortAudio snapshots the device list when it initialises. With ``rescan``
    the library is re-initialised first so hot-plugged devices show up; the
    re-scan is skipped while a stream is playing.
    """

    try:
        sd = _load_sounddevice()
        if rescan:
            if _stream_active(sd):
                logger.debug("Skipping device re-scan during playback")
            else:
                sd._terminate()
                sd._initialize()
        devices = sd.query_devices()
        default_output = sd.default.device[1]
    except Exception as exc:
        logger.debug("Output device enumeration unavailable: %s", exc)
        return []

    outputs: list[OutputDevice] = []
    for index, info in enumerate(devices):
        channels = int(info.get("max_output_channels", 0))
        if channels <= 0:
            continue
        outputs.append(
            OutputDevice(
                index=index,
                name=str(info.get("name", f"Device {index}")),
                channels=channels,
                is_default=index == default_output,
            )
        )
    return outputs


def find_output_device(
    query: str | int, devices: list[OutputDevice]
) -> OutputDevice | None:
    """Match by index or by case-insensitive name fragment."""

    if isinstance(query, int) or (isinstance(query, str) and query.isdigit()):
        index = int(query)
        return next((device for device in devices if device.index == index), None)
    needle = query.lower()
    return next((device for device in devices if needle in device.name.lower()), None)


class AudioOutput(Protocol):
    async def play(
        self, audio: bytes, *, device: int | None, cancel: asyncio.Event
    ) -> None: ...

    def stop(self) -> None: ...


class SoundDeviceOutput:
    """Play WAV buffers with sounddevice, polling for completion or cancel."""

    def __init__(self) -> None:
        self._sd: Any | None = None

    def _backend(self) -> Any:
        if self._sd is None:
            self._sd = _load_sounddevice()
        return self._sd

    async def play(
        self, audio: bytes, *, device: int | None, cancel: asyncio.Event
    ) -> None:
        decoded = decode_wav(audio)
        sd = self._backend()
        try:
            sd.play(decoded.samples, samplerate=decoded.sample_rate, device=device)
        except (ValueError, sd.PortAudioError) as exc:
            if device is None:
                raise PlaybackError(f"Audio playback error: {exc}") from exc
            # Selected device vanished; the system default still works.
            logger.debug("Output device %s unavailable (%s); using default", device, exc)
            sd.play(decoded.samples, samplerate=decoded.sample_rate)

        try:
            while sd.get_stream().active:
                if cancel.is_set():
                    raise PlaybackCancelled()
                await asyncio.sleep(_POLL_INTERVAL_SECONDS)
        finally:
            if cancel.is_set():
                sd.stop()

    def stop(self) -> None:
        if self._sd is not None:
            self._sd.stop()


class OutputDeviceWatcher:
    """Poll the device list and report changes without touching playback."""

    def __init__(
        self,
        on_change: Callable[[list[OutputDevice]], None],
        *,
        interval: float = 2.0,
        lister: Callable[[], list[OutputDevice]] = partial(list_output_devices, rescan=True),
    ) -> None:
        self._on_change = on_change
        self._interval = interval
        self._lister = lister
        self._task: asyncio.Task[None] | None = None
        self.devices: list[OutputDevice] = []

    def refresh(self) -> bool:
        devices = self._lister()
        if devices == self.devices:
            return False
        self.devices = devices
        self._on_change(devices)
        return True

    async def _run(self) -> None:
        while True:
            try:
                self.refresh()
            except Exception as exc:
                logger.debug("Device refresh failed: %s", exc)
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None


TokenProvider = Callable[[], Awaitable[str | None]]


class PlaybackClient:
    """One synthesis-and-playback cycle at a time, with stop support.

    Starting a new cycle aborts the previous one. ``stop`` and cancellation
    are idempotent and always release the buffered audio.
    """

    def __init__(
        self,
        base_url: str,
        *,
        output: AudioOutput,
        http_client: httpx.AsyncClient | None = None,
        token_provider: TokenProvider | None = None,
        on_state_change: Callable[[PlaybackState], None] | None = None,
        success_hold: float = SUCCESS_HOLD_SECONDS,
    ) -> None:
        self._base_url = base_url
        self._output = output
        self._http_client = http_client
        self._owns_client = http_client is None
        self._token_provider = token_provider
        self._on_state_change = on_state_change
        self._success_hold = success_hold

        self._state = PlaybackState.IDLE
        self._cancel: asyncio.Event | None = None
        self._reset_handle: asyncio.TimerHandle | None = None
        self._audio: bytes | None = None
        self.device: int | None = None
        self.error_message: str | None = None

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def buffered_audio(self) -> bytes | None:
        return self._audio

    def _set_state(self, state: PlaybackState) -> None:
        if state is self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        return self._http_client

    async def aclose(self) -> None:
        self.stop()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def select_device(self, device: OutputDevice | int | None) -> None:
        self.device = device.index if isinstance(device, OutputDevice) else device

    async def speak(self, request: TTSSpeakRequest) -> bool:
        """Fetch and play ``request``; return ``True`` when playback finished.

        Returns ``False`` when the cycle was stopped. Failures leave the client
        in ``ERROR`` with :attr:`error_message` set, then re-raise.
        """

        if self._cancel is not None:
            self._cancel.set()
        self._output.stop()
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

        cancel = asyncio.Event()
        self._cancel = cancel
        self.error_message = None
        self._set_state(PlaybackState.GENERATING)

        try:
            token = await self._token_provider() if self._token_provider else None
            self._audio = await self._until_cancelled(
                fetch_tts_audio(
                    request,
                    base_url=self._base_url,
                    http_client=self._get_http_client(),
                    token=token,
                    cancel=cancel,
                ),
                cancel,
            )
            self._set_state(PlaybackState.PLAYING)
            await self._output.play(self._audio, device=self.device, cancel=cancel)
        except PlaybackCancelled:
            if self._cancel is cancel:
                self._set_state(PlaybackState.IDLE)
            return False
        except Exception as exc:
            if self._cancel is not cancel or cancel.is_set():
                # Stopped or superseded; the newer state wins.
                return False
            self.error_message = friendly_error_message(exc)
            self._set_state(PlaybackState.ERROR)
            raise
        finally:
            if self._cancel is cancel:
                self._audio = None

        if cancel.is_set():
            return False
        self._set_state(PlaybackState.SUCCESS)
        loop = asyncio.get_running_loop()
        self._reset_handle = loop.call_later(self._success_hold, self._return_to_idle, cancel)
        return True

    def _return_to_idle(self, cancel: asyncio.Event) -> None:
        if self._cancel is cancel and self._state is PlaybackState.SUCCESS:
            self._set_state(PlaybackState.IDLE)

    async def _until_cancelled(self, coro: Awaitable[T], cancel: asyncio.Event) -> T:
        work = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        with suppress(asyncio.CancelledError, PlaybackCancelled):
            await work
        raise PlaybackCancelled()

    def stop(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
        self._output.stop()
        self._audio = None
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        self._set_state(PlaybackState.IDLE)


__all__ = [
    "AudioOutput",
    "AudioOutputUnavailable",
    "DecodedAudio",
    "OutputDevice",
    "OutputDeviceWatcher",
    "PlaybackClient",
    "PlaybackError",
    "PlaybackState",
    "SoundDeviceOutput",
    "decode_wav",
    "find_output_device",
    "list_output_devices",
]
