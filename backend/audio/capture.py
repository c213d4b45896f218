"""
Audio capture boundary.

The media transport is a black box that hands us float32 mono frames.
This module defines the contract the orchestrator relies on, plus an
in-process source a host can push frames into.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Sequence

import numpy as np

FrameCallback = Callable[[np.ndarray], None]


class MicrophonePermissionError(Exception):
    """Capture permission was denied. Fatal for the current connect attempt."""


class AudioSource(ABC):
    """
    Abstract capture device.

    Lifecycle: open() -> start(on_frame) -> close()

    on_frame is called synchronously from the capture callback and must not
    block. Frame size and cadence are decided by the platform.
    """

    @abstractmethod
    async def open(self) -> None:
        """
        Acquire capture permission and the device.

        Raises:
            MicrophonePermissionError if access is denied.
        """
        raise NotImplementedError

    @abstractmethod
    def start(self, on_frame: FrameCallback) -> None:
        """Begin delivering frames to on_frame."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery and release the device. Idempotent."""
        raise NotImplementedError


class PushAudioSource(AudioSource):
    """
    Source fed by its host.

    Whatever owns the real device (a media bridge, a test) calls push()
    with each captured frame. Frames pushed before start() or after close()
    are ignored.
    """

    def __init__(self, *, permission_granted: bool = True) -> None:
        self._permission_granted = permission_granted
        self._on_frame: FrameCallback | None = None
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    async def open(self) -> None:
        if not self._permission_granted:
            raise MicrophonePermissionError(
                "Microphone access denied. Please allow microphone permissions."
            )
        self._opened = True

    def start(self, on_frame: FrameCallback) -> None:
        if not self._opened:
            raise RuntimeError("start() called before open()")
        self._on_frame = on_frame

    def push(self, samples: Sequence[float] | np.ndarray) -> None:
        on_frame = self._on_frame
        if on_frame is None:
            return
        on_frame(np.asarray(samples, dtype=np.float32))

    async def close(self) -> None:
        self._on_frame = None
        self._opened = False
