"""
Conversation backend contract.

This module defines the *interface only*. The orchestrator drives a
backend through it and never touches a transport directly, so a
low-latency streaming backend and a transcribe-then-chat backend are
interchangeable.

Key invariants:
- submit_audio() never raises for "not ready yet"; it returns None and
  keeps (or drops) the chunk according to the backend's own policy.
- Transcript buffers are append-only within a conversation and cleared
  only by reset_transcript().
- Listener callbacks are invoked synchronously and never propagate
  exceptions back into the backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from audio.frames import AudioChunk
from session.state import ConnectionStatus, SessionState
from session.transcript import TranscriptListener


@dataclass(frozen=True)
class TranscriptSnapshot:
    transcription: str
    response: str


@dataclass(frozen=True)
class SessionStatus:
    """Everything the presentation layer shows about a backend."""
    state: SessionState
    connection: ConnectionStatus
    processing: bool
    error: str | None


StatusListener = Callable[[SessionStatus], None]


class ConversationBackend(ABC):
    """
    Abstract conversation backend.

    Implementations are responsible for:
    - Owning their upstream connection(s)
    - Turning audio chunks and finalize requests into upstream traffic
    - Maintaining the transcript and notifying subscribers

    Non-responsibilities:
    - No audio capture or chunking
    - No UI state beyond the status snapshot
    """

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the backend connection.

        Raises:
            SessionConnectError if it cannot be established.
        """
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        """User-initiated teardown. Idempotent; never reconnects."""
        raise NotImplementedError

    @abstractmethod
    async def submit_audio(self, chunk: AudioChunk) -> TranscriptSnapshot | None:
        """
        Send or queue one chunk.

        Returns the current transcript when the chunk was sent, None when
        it was queued (not an error).
        """
        raise NotImplementedError

    @abstractmethod
    async def request_response(self) -> bool:
        """
        Ask the upstream to finalize input and respond.

        Returns True if sent now, False if deferred until ready.
        """
        raise NotImplementedError

    @abstractmethod
    def reset_transcript(self) -> None:
        """Clear both buffers. Called when a new conversation starts."""
        raise NotImplementedError

    @abstractmethod
    def subscribe_transcript(self, listener: TranscriptListener) -> Callable[[], None]:
        raise NotImplementedError

    @abstractmethod
    def subscribe_status(self, listener: StatusListener) -> Callable[[], None]:
        raise NotImplementedError

    @property
    @abstractmethod
    def status(self) -> SessionStatus:
        raise NotImplementedError

    @property
    @abstractmethod
    def transcript(self) -> TranscriptSnapshot:
        raise NotImplementedError
