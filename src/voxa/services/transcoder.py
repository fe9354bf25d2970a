"""Convert compressed speech audio into 48 kHz mono 16-bit PCM WAV."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

WAV_SAMPLE_RATE = 48_000
WAV_CHANNELS = 1
WAV_SAMPLE_WIDTH = 2  # bytes per sample (pcm_s16le)
WAV_HEADER_BYTES = 44
WAV_BYTES_PER_SECOND = WAV_SAMPLE_RATE * WAV_CHANNELS * WAV_SAMPLE_WIDTH
WAV_MEDIA_TYPE = "audio/wav"

_FFMPEG_HINT = (
    "Install ffmpeg and ensure it is on PATH for 48kHz mono WAV output."
)


class TranscodeError(RuntimeError):
    """Base error raised when the transcoder cannot produce output."""


class TranscoderNotFound(TranscodeError):
    """Raised when the transcoder executable cannot be launched."""


class TranscoderExitError(TranscodeError):
    """Raised when the transcoder exits with a non-zero status."""

    def __init__(self, message: str, returncode: int) -> None:
        super().__init__(message)
        self.returncode = returncode


class TranscoderKilled(TranscodeError):
    """Raised when the transcoder is terminated by a signal."""

    def __init__(self, message: str, signal_number: int) -> None:
        super().__init__(message)
        self.signal_number = signal_number


class TranscoderInputError(TranscodeError):
    """Raised when audio cannot be written to the transcoder's stdin."""


class AudioTranscoder(Protocol):
    async def transcode(self, data: bytes) -> bytes: ...


def compute_wav_duration(buffer: bytes | bytearray | memoryview | None) -> float:
    """Return the playback length in seconds of a transcoded WAV buffer.

    Assumes the fixed output format: a canonical 44-byte header followed by
    48 kHz mono 16-bit samples. Buffers shorter than the header yield ``0.0``.
    """

    if not buffer:
        return 0.0
    size = len(buffer)
    if size < WAV_HEADER_BYTES:
        return 0.0
    return (size - WAV_HEADER_BYTES) / WAV_BYTES_PER_SECOND


def _signal_name(signal_number: int) -> str:
    try:
        return signal.Signals(signal_number).name
    except ValueError:
        return str(signal_number)


class FfmpegTranscoder:
    """Run ffmpeg as a subprocess, piping audio through stdin and stdout."""

    def __init__(self, executable: str = "ffmpeg", *, log_stderr: bool = False) -> None:
        self._executable = executable
        self._log_stderr = log_stderr

    @property
    def command(self) -> list[str]:
        return [
            self._executable,
            "-nostdin",
            "-hide_banner",
            "-i",
            "pipe:0",
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(WAV_SAMPLE_RATE),
            "-ac",
            str(WAV_CHANNELS),
            # Drop metadata chunks so the header is exactly 44 bytes.
            "-map_metadata",
            "-1",
            "-fflags",
            "+bitexact",
            "-flags:a",
            "+bitexact",
            "-f",
            "wav",
            "pipe:1",
        ]

    async def transcode(self, data: bytes) -> bytes:
        command = self.command
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscoderNotFound(
                f"ffmpeg not available: {exc}. {_FFMPEG_HINT}"
            ) from exc

        feed_error: BaseException | None = None

        async def _feed() -> None:
            nonlocal feed_error
            assert process.stdin is not None
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                feed_error = exc
            finally:
                process.stdin.close()

        assert process.stdout is not None
        assert process.stderr is not None
        _, stdout, stderr = await asyncio.gather(
            _feed(),
            process.stdout.read(),
            process.stderr.read(),
        )
        returncode = await process.wait()

        self._log_diagnostics(stderr)
        self._raise_for_status(command, returncode, feed_error)

        logger.debug(
            "Transcoded %d bytes of compressed audio into %d bytes of WAV",
            len(data),
            len(stdout),
        )
        return stdout

    def _log_diagnostics(self, stderr: bytes) -> None:
        if not self._log_stderr or not stderr:
            return
        for line in stderr.decode("utf-8", errors="replace").splitlines():
            line = line.strip()
            if line and not line.startswith(("frame=", "size=")):
                logger.debug("[ffmpeg] %s", line)

    @staticmethod
    def _raise_for_status(
        command: Sequence[str],
        returncode: int,
        feed_error: BaseException | None,
    ) -> None:
        if returncode < 0:
            name = _signal_name(-returncode)
            raise TranscoderKilled(f"ffmpeg killed by signal {name}", -returncode)
        if feed_error is not None:
            raise TranscoderInputError(
                f"Failed to write audio to ffmpeg: {feed_error}"
            ) from feed_error
        if returncode != 0:
            raise TranscoderExitError(
                f"ffmpeg exited with code {returncode}. Ensure ffmpeg is installed "
                "and supports the requested format.",
                returncode,
            )


__all__ = [
    "AudioTranscoder",
    "FfmpegTranscoder",
    "TranscodeError",
    "TranscoderExitError",
    "TranscoderInputError",
    "TranscoderKilled",
    "TranscoderNotFound",
    "WAV_BYTES_PER_SECOND",
    "WAV_CHANNELS",
    "WAV_HEADER_BYTES",
    "WAV_MEDIA_TYPE",
    "WAV_SAMPLE_RATE",
    "WAV_SAMPLE_WIDTH",
    "compute_wav_duration",
]
