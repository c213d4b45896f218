"""PCM conversion utilities."""
from __future__ import annotations

import base64
from typing import Sequence

import numpy as np

from constants import PCM16_MAX, PCM16_MIN, PCM16_SCALE


def count_non_finite(samples: Sequence[float] | np.ndarray) -> int:
    """Number of NaN / +-inf values in a float frame."""
    arr = np.asarray(samples, dtype=np.float64)
    return int(arr.size - np.count_nonzero(np.isfinite(arr)))


def float32_to_pcm16(samples: Sequence[float] | np.ndarray) -> np.ndarray:
    """
    Convert float samples in approximately [-1.0, 1.0] to int16 PCM.

    - Non-finite values become 0
    - Values are clamped to [-1, 1]
    - Scaled by 32767 and rounded to nearest
    - Result clamped to [-32768, 32767]

    Pure. Output length always equals input length.
    """
    arr = np.asarray(samples, dtype=np.float64).reshape(-1)
    arr = np.where(np.isfinite(arr), arr, 0.0)
    arr = np.clip(arr, -1.0, 1.0)
    scaled = np.rint(arr * PCM16_SCALE)
    return np.clip(scaled, PCM16_MIN, PCM16_MAX).astype(np.int16)


def pcm16_to_float32(pcm: np.ndarray) -> np.ndarray:
    """Inverse of float32_to_pcm16 (within one quantization step)."""
    return np.asarray(pcm, dtype=np.int16).astype(np.float32) / PCM16_SCALE


def pcm16_to_bytes(pcm: np.ndarray) -> bytes:
    """Serialize int16 samples as little-endian PCM16 bytes."""
    return np.asarray(pcm, dtype=np.int16).astype("<i2").tobytes()


def pcm16le_to_array(pcm_bytes: bytes) -> np.ndarray:
    """
    Parse PCM16 little-endian mono bytes into int16 samples.

    A trailing odd byte is a truncated sample and is ignored.
    """
    if len(pcm_bytes) % 2 != 0:
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - 1]
    return np.frombuffer(pcm_bytes, dtype="<i2").astype(np.int16)


def pcm16_to_base64(pcm: np.ndarray) -> str:
    """Base64 of the little-endian byte form; no length limit."""
    return base64.b64encode(pcm16_to_bytes(pcm)).decode("ascii")
