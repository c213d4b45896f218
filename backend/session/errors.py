"""
Session error taxonomy.

Two halves:
- Exceptions raised to callers of the session API (transport failures)
- Classification of upstream-reported error events into user-facing text

Upstream error events never raise; they are classified, surfaced through
the status snapshot, and end the connection.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


# =============================================================================
# Exceptions
# =============================================================================

class SessionError(Exception):
    """Base class for realtime session errors."""


class SessionConnectError(SessionError):
    """The control connection could not be established."""


class ConnectTimeoutError(SessionConnectError):
    """No open acknowledgment within the connect timeout."""


# =============================================================================
# User-facing transport messages
# =============================================================================

CONNECT_TIMEOUT_MESSAGE = "Connection timeout. Please try again."
CONNECT_FAILED_MESSAGE = "Connection error occurred. Please try again."
RECONNECT_EXHAUSTED_MESSAGE = "Connection failed after multiple attempts. Please try again."
NEGOTIATION_SLOW_MESSAGE = "Session is still initializing; audio has been queued."


def reconnecting_message(attempt: int, max_attempts: int) -> str:
    return f"Connection lost. Reconnecting... ({attempt}/{max_attempts})"


# =============================================================================
# Upstream error events
# =============================================================================

class UpstreamErrorKind(str, Enum):
    """
    Classification of an upstream `error` event.

    SERVER_ERROR and UNKNOWN are transient: no automatic reconnect, but the
    next audio submission may dial again. The rest need user action.
    """
    SERVER_ERROR = "server_error"
    INVALID_REQUEST = "invalid_request_error"
    AUTHENTICATION = "authentication_error"
    RATE_LIMIT = "rate_limit_error"
    UNKNOWN = "unknown_error"

    @property
    def is_transient(self) -> bool:
        return self in (UpstreamErrorKind.SERVER_ERROR, UpstreamErrorKind.UNKNOWN)


_USER_MESSAGES: dict[UpstreamErrorKind, str] = {
    UpstreamErrorKind.SERVER_ERROR: (
        "The AI service encountered an error. This may be a temporary issue. "
        "Please try again."
    ),
    UpstreamErrorKind.INVALID_REQUEST: "Invalid request. Please check your configuration.",
    UpstreamErrorKind.AUTHENTICATION: "Authentication failed. Please check your API key.",
    UpstreamErrorKind.RATE_LIMIT: "Rate limit exceeded. Please wait a moment and try again.",
    UpstreamErrorKind.UNKNOWN: "An error occurred while processing your request.",
}


def classify_upstream_error(event: dict[str, Any]) -> UpstreamErrorKind:
    """Map the `error.type` of an error event onto the taxonomy."""
    details = event.get("error")
    error_type = details.get("type") if isinstance(details, dict) else None
    try:
        return UpstreamErrorKind(error_type)
    except ValueError:
        return UpstreamErrorKind.UNKNOWN


def user_message(kind: UpstreamErrorKind) -> str:
    return _USER_MESSAGES[kind]
