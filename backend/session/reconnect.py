"""
Reconnect policy helpers.

Purpose:
- Centralize the reconnect rules for the upstream control connection
- Let the session make deterministic reconnect decisions

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass

from constants import (
    CLOSE_NORMAL,
    RECONNECT_BASE_DELAY_MS,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY_MS,
)


# =============================================================================
# Policy parameters
# =============================================================================

@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Exponential backoff: base * 2^(attempt-1), capped at max_delay_ms.
    """
    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    base_delay_ms: int = RECONNECT_BASE_DELAY_MS
    max_delay_ms: int = RECONNECT_MAX_DELAY_MS


# =============================================================================
# Attempt state
# =============================================================================

@dataclass(frozen=True)
class ReconnectAttempt:
    """
    Immutable reconnect attempt counter.

    Semantics:
    - attempt == 0: no reconnect attempted since the last successful open
    - attempt == k: the k-th reconnect attempt has been scheduled
    """
    attempt: int = 0


def next_attempt(current: ReconnectAttempt) -> ReconnectAttempt:
    """Return a new ReconnectAttempt with attempt incremented by 1."""
    return ReconnectAttempt(attempt=current.attempt + 1)


def reset_attempt() -> ReconnectAttempt:
    """Fresh counter; used after every successful open."""
    return ReconnectAttempt(attempt=0)


# =============================================================================
# Decisions
# =============================================================================

def is_normal_closure(code: int | None) -> bool:
    """
    True for a normal (user-initiated) close.

    Normal closes never trigger reconnection. A missing code means the
    transport vanished without a close frame and is treated as abnormal.
    """
    return code == CLOSE_NORMAL


def should_reconnect(
    *,
    policy: ReconnectPolicy,
    close_code: int | None,
    attempt: ReconnectAttempt,
) -> bool:
    """
    attempt = number of reconnects already scheduled since the last open.
    """
    if is_normal_closure(close_code):
        return False
    return attempt.attempt < policy.max_attempts


def get_reconnect_delay_ms(
    *,
    policy: ReconnectPolicy,
    attempt: ReconnectAttempt,
) -> int:
    """
    Delay before reconnect attempt N (N >= 1).

    1 -> base, 2 -> 2*base, 3 -> 4*base, ... capped at max_delay_ms.
    """
    if attempt.attempt <= 0:
        return 0
    delay = policy.base_delay_ms * (2 ** (attempt.attempt - 1))
    return min(delay, policy.max_delay_ms)
