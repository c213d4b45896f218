"""
Audio chunker.

Bridges a continuous capture stream to the discrete, rate-limited
session protocol.

Responsibilities:
- Encode every captured float frame to PCM16
- Accumulate frames and emit one contiguous batch per batch interval
- Bound the accumulator (drop OLDEST frames under backpressure)
- Emit a finalize signal once enough audio was sent and the finalize
  interval elapsed

Non-responsibilities:
- No network access; batches and finalize signals go to injected callbacks
- No readiness logic; the session decides whether to send or queue

feed() is synchronous and never awaits: it is called from the capture
callback. Delivery happens on a single drain task so callbacks run one at
a time, in production order.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Sequence

import numpy as np

from audio.frames import AudioChunk, concat_chunks
from audio.pcm import count_non_finite, float32_to_pcm16
from audio.queues import AudioChunkQueue
from constants import (
    AUDIO_SAMPLE_RATE_HZ,
    CHUNK_BATCH_INTERVAL_MS,
    CHUNK_FINALIZE_INTERVAL_MS,
    CHUNK_MAX_PENDING_FRAMES,
    CHUNK_MIN_AUDIO_BEFORE_FINALIZE_MS,
)
from observability import metrics
from observability.logger import log_event

BatchCallback = Callable[[AudioChunk], Awaitable[Any]]
FinalizeCallback = Callable[[], Awaitable[Any]]

_BATCH = "batch"
_FINALIZE = "finalize"


def _monotonic_ms() -> float:
    return time.monotonic_ns() / 1_000_000


class AudioChunker:
    """
    Frame accumulator with batch and finalize timers.

    Timers are evaluated on frame arrival against an injectable clock,
    so cadence is bounded below by the capture callback frequency.
    """

    def __init__(
        self,
        *,
        on_batch: BatchCallback,
        on_finalize: FinalizeCallback,
        batch_interval_ms: int = CHUNK_BATCH_INTERVAL_MS,
        finalize_interval_ms: int = CHUNK_FINALIZE_INTERVAL_MS,
        min_audio_before_finalize_ms: int = CHUNK_MIN_AUDIO_BEFORE_FINALIZE_MS,
        max_pending_frames: int = CHUNK_MAX_PENDING_FRAMES,
        sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self._on_batch = on_batch
        self._on_finalize = on_finalize
        self._batch_interval_ms = batch_interval_ms
        self._finalize_interval_ms = finalize_interval_ms
        self._min_audio_before_finalize_ms = min_audio_before_finalize_ms
        self._max_pending_frames = max_pending_frames
        self._sample_rate_hz = sample_rate_hz
        self._clock = clock

        self._frames = AudioChunkQueue(max_items=max_pending_frames)
        self._outbox: asyncio.Queue[tuple[str, AudioChunk | None]] | None = None
        self._drain_task: asyncio.Task[None] | None = None

        self._accepting = False
        self._last_batch_ms = 0.0
        self._last_finalize_ms = 0.0
        self._sent_since_finalize_ms = 0.0

        self.outbox_drops = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def accepting(self) -> bool:
        return self._accepting

    def start(self) -> None:
        """Start accepting frames. Must be called from the event loop."""
        if self._drain_task is not None and not self._drain_task.done():
            self._accepting = True
            return

        now = self._clock()
        self._last_batch_ms = now
        self._last_finalize_ms = now
        self._sent_since_finalize_ms = 0.0
        self._outbox = asyncio.Queue(maxsize=self._max_pending_frames)
        self._drain_task = asyncio.create_task(self._drain())
        self._accepting = True

    def stop_accepting(self) -> None:
        """
        Reject further frames immediately.

        Synchronous so a disconnect can flip it before any await.
        """
        self._accepting = False

    async def stop(self) -> None:
        """Stop accepting, discard undelivered audio, end the drain task."""
        self._accepting = False
        self._frames.clear()

        task = self._drain_task
        self._drain_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._outbox = None

    # ------------------------------------------------------------------
    # Capture callback
    # ------------------------------------------------------------------

    def feed(self, samples: Sequence[float] | np.ndarray) -> None:
        """
        Accept one captured frame.

        Never blocks and never raises for bad sample values: non-finite
        samples are zeroed by the encoder and counted here.
        """
        if not self._accepting:
            return

        invalid = count_non_finite(samples)
        if invalid:
            metrics.count("audio_non_finite_samples", invalid)

        chunk = AudioChunk(
            samples=float32_to_pcm16(samples),
            sample_rate_hz=self._sample_rate_hz,
        )
        if not self._frames.append(chunk):
            log_event({
                "event_type": "AUDIO_FRAME_DROPPED",
                "reason": "accumulator_full",
                "max_pending_frames": self._max_pending_frames,
            })

        now = self._clock()

        if (
            now - self._last_batch_ms >= self._batch_interval_ms
            and not self._frames.is_empty()
        ):
            self._last_batch_ms = now
            batch = concat_chunks(self._frames.drain())
            self._sent_since_finalize_ms += batch.duration_ms
            self._post(_BATCH, batch)

        if (
            now - self._last_finalize_ms >= self._finalize_interval_ms
            and self._sent_since_finalize_ms >= self._min_audio_before_finalize_ms
        ):
            self._last_finalize_ms = now
            log_event({
                "event_type": "AUDIO_FINALIZE_TRIGGERED",
                "audio_sent_ms": round(self._sent_since_finalize_ms),
            })
            self._sent_since_finalize_ms = 0.0
            self._post(_FINALIZE, None)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _post(self, kind: str, payload: AudioChunk | None) -> None:
        outbox = self._outbox
        if outbox is None:
            return

        if outbox.full():
            # Delivery is stalled; keep the newest work
            dropped_kind, dropped = outbox.get_nowait()
            outbox.task_done()
            if dropped_kind == _BATCH and dropped is not None:
                # Evicted audio never reaches the session
                self._sent_since_finalize_ms = max(
                    0.0, self._sent_since_finalize_ms - dropped.duration_ms
                )
            self.outbox_drops += 1
            metrics.count("audio_batches_dropped")

        outbox.put_nowait((kind, payload))

    async def _drain(self) -> None:
        outbox = self._outbox
        assert outbox is not None

        while True:
            kind, payload = await outbox.get()
            try:
                if kind == _BATCH:
                    assert payload is not None
                    await self._on_batch(payload)
                else:
                    await self._on_finalize()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                # Capture keeps running; the session surfaces its own errors
                log_event({
                    "event_type": "AUDIO_DELIVERY_FAILED",
                    "kind": kind,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
            finally:
                outbox.task_done()

    async def wait_delivered(self) -> None:
        """Wait until every posted batch/finalize has been handed off."""
        outbox = self._outbox
        if outbox is not None:
            await outbox.join()
