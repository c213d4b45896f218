"""
Session timing configuration.

Every settle delay, timeout and pacing interval of the realtime session.
The upstream's initialization behavior is not fully deterministic from
the client side, so none of these are contracts: they are tuning.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from constants import (
    AUDIO_NEGOTIATE_DELAY_MS,
    COMMIT_TO_RESPONSE_MS,
    CONNECT_TIMEOUT_MS,
    DEFAULT_VOICE,
    FLUSH_PACING_MS,
    MANUAL_RETRY_DELAY_MS,
    NEGOTIATE_SETTLE_MS,
    PENDING_AUDIO_FLUSH_KEEP,
    PENDING_AUDIO_MAX_CHUNKS,
    READY_POLL_ATTEMPTS,
    READY_POLL_INTERVAL_MS,
    READY_SETTLE_MS,
)
from session.reconnect import ReconnectPolicy


@dataclass(frozen=True)
class SessionTimings:
    """
    connect_timeout_ms:
        Open acknowledgment deadline for one dial.
    negotiate_settle_ms:
        Pause between transport open and the text-only session.update.
    audio_negotiate_delay_ms:
        Pause between the text-only and the audio session.update.
    ready_settle_ms:
        Pause between an audio-capable acknowledgment and READY.
    flush_pacing_ms:
        Pause before and between replayed pending chunks.
    commit_to_response_ms:
        Pause between input_audio_buffer.commit and response.create.
    ready_poll_*:
        Bounded wait for READY when a submission has to dial first;
        stretched to cover negotiation (see ready_poll_budget).
    """
    connect_timeout_ms: int = CONNECT_TIMEOUT_MS
    negotiate_settle_ms: int = NEGOTIATE_SETTLE_MS
    audio_negotiate_delay_ms: int = AUDIO_NEGOTIATE_DELAY_MS
    ready_settle_ms: int = READY_SETTLE_MS
    flush_pacing_ms: int = FLUSH_PACING_MS
    commit_to_response_ms: int = COMMIT_TO_RESPONSE_MS
    ready_poll_attempts: int = READY_POLL_ATTEMPTS
    ready_poll_interval_ms: int = READY_POLL_INTERVAL_MS
    manual_retry_delay_ms: int = MANUAL_RETRY_DELAY_MS
    pending_max_chunks: int = PENDING_AUDIO_MAX_CHUNKS
    pending_flush_keep: int = PENDING_AUDIO_FLUSH_KEEP
    voice: str = DEFAULT_VOICE
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    @property
    def ready_poll_budget(self) -> int:
        """
        Readiness polls for a dial started by a submission.

        Never fewer than ready_poll_attempts, and always long enough to
        cover the settle delays of the full two-step negotiation.
        """
        interval_ms = max(1, self.ready_poll_interval_ms)
        negotiation_ms = (
            self.negotiate_settle_ms
            + self.audio_negotiate_delay_ms
            + self.ready_settle_ms
        )
        return max(self.ready_poll_attempts, -(-negotiation_ms // interval_ms) + 1)
