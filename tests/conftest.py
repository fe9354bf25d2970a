import pathlib
import struct
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def make_wav(
    pcm: bytes,
    *,
    sample_rate: int = 48_000,
    channels: int = 1,
    data_size: int | None = None,
) -> bytes:
    """Build a canonical 44-byte-header PCM WAV around ``pcm``."""

    size = len(pcm) if data_size is None else data_size
    byte_rate = sample_rate * channels * 2
    header = b"RIFF" + struct.pack("<I", min(36 + size, 0xFFFFFFFF)) + b"WAVE"
    header += b"fmt " + struct.pack("<IHHIIHH", 16, 1, channels, sample_rate, byte_rate, channels * 2, 16)
    header += b"data" + struct.pack("<I", size)
    return header + pcm


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def wav_factory():
    return make_wav
