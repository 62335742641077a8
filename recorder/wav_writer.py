"""WAV capture of the negotiated session audio."""

from __future__ import annotations

import asyncio
import wave
from pathlib import Path
from typing import Any

import numpy as np

from recorder.errors import AudioWriterError

SUPPORTED_FORMATS = ("PCMU", "L16")


def _build_ulaw_table() -> np.ndarray:
    codes = ~np.arange(256, dtype=np.int32) & 0xFF
    magnitude = (((codes & 0x0F) << 3) + 0x84) << ((codes & 0x70) >> 4)
    linear = np.where(codes & 0x80, 0x84 - magnitude, magnitude - 0x84)
    return linear.astype(np.int16)


_ULAW_TO_LINEAR = _build_ulaw_table()


def decode_samples(fmt: str, samples: Any) -> np.ndarray:
    """Convert wire samples to 16-bit linear PCM."""

    if isinstance(samples, np.ndarray):
        if fmt == "PCMU" and samples.dtype == np.uint8:
            return _ULAW_TO_LINEAR[samples]
        return samples.astype(np.int16, copy=False)
    raw = bytes(samples)
    if fmt == "PCMU":
        return _ULAW_TO_LINEAR[np.frombuffer(raw, dtype=np.uint8)]
    # L16 travels big-endian; trailing odd byte is dropped
    usable = len(raw) - (len(raw) % 2)
    return np.frombuffer(raw[:usable], dtype=">i2").astype(np.int16)


class WavFileWriter:
    """Writes 16-bit little-endian PCM; ``close`` returns frames written."""

    def __init__(self, path: str | Path, fmt: str, rate: int, channels: int) -> None:
        fmt = str(fmt).upper()
        if fmt not in SUPPORTED_FORMATS:
            raise AudioWriterError(f"unsupported audio format: {fmt}")
        if rate <= 0 or channels <= 0:
            raise AudioWriterError(f"invalid audio parameters: rate={rate} channels={channels}")
        self.path = Path(path)
        self.format = fmt
        self.rate = int(rate)
        self.channels = int(channels)
        self.samples_written = 0
        self._wave: wave.Wave_write | None = wave.open(str(self.path), "wb")
        self._wave.setnchannels(self.channels)
        self._wave.setsampwidth(2)
        self._wave.setframerate(self.rate)

    @classmethod
    def start(cls, path: str | Path, fmt: str, rate: int, channels: int) -> "WavFileWriter":
        return cls(path, fmt, rate, channels)

    @property
    def closed(self) -> bool:
        return self._wave is None

    def write_audio(self, samples: Any) -> int:
        if self._wave is None:
            raise AudioWriterError(f"WAV writer already closed: {self.path}")
        pcm = decode_samples(self.format, samples)
        frames = pcm.size // self.channels
        if frames <= 0:
            return 0
        pcm = pcm[: frames * self.channels]
        self._wave.writeframesraw(pcm.astype("<i2", copy=False).tobytes())
        self.samples_written += frames
        return frames

    async def close(self) -> int:
        if self._wave is None:
            raise AudioWriterError(f"WAV writer already closed: {self.path}")
        handle = self._wave
        self._wave = None
        await asyncio.to_thread(handle.close)
        return self.samples_written

    def duration_seconds(self) -> float:
        return self.samples_written / self.rate
