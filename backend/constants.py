"""
Tuning constants
----------------
Single source of truth for every behavioral value in the system.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Durations are integer milliseconds unless the name says otherwise.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Audio format (PCM16 mono @ 24kHz)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 24_000

PCM16_MIN: Final[int] = -32_768
PCM16_MAX: Final[int] = 32_767
PCM16_SCALE: Final[float] = 32_767.0

# =============================================================================
# Audio chunker
# =============================================================================

CHUNK_BATCH_INTERVAL_MS: Final[int] = 500
CHUNK_FINALIZE_INTERVAL_MS: Final[int] = 3_000
CHUNK_MIN_AUDIO_BEFORE_FINALIZE_MS: Final[int] = 2_000
CHUNK_MAX_PENDING_FRAMES: Final[int] = 10

# =============================================================================
# Session pending audio
# =============================================================================

PENDING_AUDIO_MAX_CHUNKS: Final[int] = 10
PENDING_AUDIO_FLUSH_KEEP: Final[int] = 2

# =============================================================================
# Session timing
# =============================================================================

CONNECT_TIMEOUT_MS: Final[int] = 10_000
NEGOTIATE_SETTLE_MS: Final[int] = 300
AUDIO_NEGOTIATE_DELAY_MS: Final[int] = 1_000
READY_SETTLE_MS: Final[int] = 2_000
FLUSH_PACING_MS: Final[int] = 200
COMMIT_TO_RESPONSE_MS: Final[int] = 100
READY_POLL_ATTEMPTS: Final[int] = 20
READY_POLL_INTERVAL_MS: Final[int] = 100
MANUAL_RETRY_DELAY_MS: Final[int] = 500

# =============================================================================
# Reconnect policy
# =============================================================================

RECONNECT_MAX_ATTEMPTS: Final[int] = 3
RECONNECT_BASE_DELAY_MS: Final[int] = 1_000
RECONNECT_MAX_DELAY_MS: Final[int] = 10_000

# =============================================================================
# Orchestrator
# =============================================================================

DISCONNECT_GRACE_MS: Final[int] = 500

# =============================================================================
# Negotiation payload
# =============================================================================

MODALITY_TEXT: Final[str] = "text"
MODALITY_AUDIO: Final[str] = "audio"
RESPONSE_MODALITIES: Final[Tuple[str, ...]] = (MODALITY_TEXT, MODALITY_AUDIO)
DEFAULT_VOICE: Final[str] = "alloy"
AUDIO_FORMAT_PCM16: Final[str] = "pcm16"

# =============================================================================
# WebSocket close codes
# =============================================================================

CLOSE_NORMAL: Final[int] = 1000
CLOSE_UPSTREAM_FAILURE: Final[int] = 1011
CLOSE_MISSING_CREDENTIAL: Final[int] = 4000

# Reserved codes that may be reported locally but never sent in a close frame.
UNSENDABLE_CLOSE_CODES: Final[Tuple[int, ...]] = (1005, 1006, 1015)

# Close frame reasons are limited to 123 bytes of UTF-8.
CLOSE_REASON_MAX_BYTES: Final[int] = 123
