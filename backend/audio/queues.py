# backend/audio/queues.py
"""
Bounded audio chunk queue.

Used twice:
- the chunker's accumulator (frames waiting for the next batch)
- the session's pending audio (batches waiting for readiness)

Rules:
- Bounded by item count
- Overflow drops the OLDEST item to keep audio fresh
- Drops are counted, never silent
- Deterministic, synchronous behavior
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Deque

from audio.frames import AudioChunk


@dataclass
class DropCounters:
    """
    Drop counters for observability.

    overflow:
        Oldest item evicted because the queue was full on append.
    truncated:
        Item discarded by drain_latest() because it was too old to replay.
    """
    overflow: int = 0
    truncated: int = 0


class AudioChunkQueue:
    """
    Bounded FIFO of AudioChunk objects, newest kept.
    """

    def __init__(self, *, max_items: int) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be > 0")

        self._max_items: int = max_items
        self._chunks: Deque[AudioChunk] = deque()
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Core queue operations
    # -------------------------

    def append(self, chunk: AudioChunk) -> bool:
        """
        Append a chunk, evicting the oldest one if the queue is full.

        Returns:
            True if nothing was evicted
            False if an older chunk was dropped to make room
        """
        evicted = False
        while len(self._chunks) >= self._max_items:
            self._chunks.popleft()
            self.drops.overflow += 1
            evicted = True

        self._chunks.append(chunk)
        return not evicted

    def drain(self) -> list[AudioChunk]:
        """Remove and return every queued chunk, oldest first."""
        out = list(self._chunks)
        self._chunks.clear()
        return out

    def drain_latest(self, keep: int) -> list[AudioChunk]:
        """
        Remove everything, returning only the newest `keep` chunks.

        Order among the returned chunks is preserved (oldest first).
        Discarded chunks are gone for good.
        """
        if keep < 0:
            raise ValueError("keep must be >= 0")

        chunks = self.drain()
        if keep == 0:
            self.drops.truncated += len(chunks)
            return []

        kept = chunks[-keep:]
        self.drops.truncated += len(chunks) - len(kept)
        return kept

    def clear(self) -> None:
        """
        Drop all queued chunks without counting them as drops.

        Used on transport close and explicit disconnect.
        """
        self._chunks.clear()

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._chunks)

    def is_empty(self) -> bool:
        """Check if the queue is empty."""
        return not self._chunks

    def total_samples(self) -> int:
        return sum(len(c) for c in self._chunks)

    def total_drops(self) -> int:
        return self.drops.overflow + self.drops.truncated

    def snapshot(self) -> dict[str, int]:
        """
        Lightweight snapshot for logging.
        """
        return {
            "chunks": len(self._chunks),
            "samples": self.total_samples(),
            "dropped_overflow": self.drops.overflow,
            "dropped_truncated": self.drops.truncated,
            "dropped_total": self.total_drops(),
        }
