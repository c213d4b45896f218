"""
Audio chunk primitives.

Pure data containers only.
No queues, no timing logic.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import numpy as np

from audio.pcm import pcm16_to_base64, pcm16_to_bytes
from constants import AUDIO_SAMPLE_RATE_HZ


@dataclass(frozen=True, eq=False)
class AudioChunk:
    """
    Ordered run of PCM16 mono samples at a fixed sample rate.

    samples:
        int16 array. Every value is within [-32768, 32767] by construction
        (see audio.pcm.float32_to_pcm16).

    sample_rate_hz:
        24 kHz for everything sent upstream.
    """
    samples: np.ndarray
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ

    def __len__(self) -> int:
        return int(self.samples.size)

    @property
    def duration_ms(self) -> float:
        return (self.samples.size / self.sample_rate_hz) * 1000.0

    def to_bytes(self) -> bytes:
        return pcm16_to_bytes(self.samples)

    def to_base64(self) -> str:
        return pcm16_to_base64(self.samples)


def concat_chunks(chunks: Iterable[AudioChunk]) -> AudioChunk:
    """
    Concatenate chunks into one contiguous chunk, preserving order.

    All chunks must share a sample rate.
    """
    parts = list(chunks)
    if not parts:
        return AudioChunk(samples=np.zeros(0, dtype=np.int16))

    rate = parts[0].sample_rate_hz
    if any(p.sample_rate_hz != rate for p in parts):
        raise ValueError("cannot concatenate chunks with different sample rates")

    return AudioChunk(
        samples=np.concatenate([p.samples for p in parts]).astype(np.int16),
        sample_rate_hz=rate,
    )
