"""
Metrics helpers for observability.

Responsibilities:
- Measure durations using monotonic time
- Count corrective actions (sanitized samples, dropped chunks)
- Emit every measurement as one JSONL event via observability.logger

Design notes:
- Never aggregate: one measurement = one log event
- Durations use monotonic time; ts_ms stays wall-clock for readability
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


def count(
    name: str,
    value: int = 1,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a counter increment. Zero values are not logged."""
    if value == 0:
        return

    log_event({
        "event_type": "METRIC_COUNT",
        "metric": name,
        "value": value,
        "session_id": session_id,
        "details": details or {},
    })


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[None]:
    """
    Measure the duration of a block.

    The metric is emitted exactly once, including when the block raises.

    Usage:
        with timed("upstream_connect", session_id=relay_id):
            upstream = await connector(url, headers)
    """
    start_ns = time.monotonic_ns()
    ok = False
    try:
        yield
        ok = True
    finally:
        log_event({
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": (time.monotonic_ns() - start_ns) // 1_000_000,
            "ok": ok,
            "session_id": session_id,
            "details": details or {},
        })
