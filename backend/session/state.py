"""
Session lifecycle state.

Owned exclusively by the realtime session. Ready is the only state in
which audio may be transmitted.
"""
from enum import Enum


class SessionState(str, Enum):
    """
    Connection and negotiation lifecycle of one upstream session.

    DISCONNECTED -> CONNECTING -> NEGOTIATING -> READY
    Any state -> CLOSING -> DISCONNECTED on explicit disconnect.
    """
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    NEGOTIATING = "NEGOTIATING"   # transport open, capabilities pending
    READY = "READY"
    CLOSING = "CLOSING"


class ConnectionStatus(str, Enum):
    """Coarse status shown to the presentation layer."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def connection_status_of(state: SessionState) -> ConnectionStatus:
    if state in (SessionState.NEGOTIATING, SessionState.READY):
        return ConnectionStatus.CONNECTED
    if state is SessionState.CONNECTING:
        return ConnectionStatus.CONNECTING
    return ConnectionStatus.DISCONNECTED
