"""
Conversation transcript and its subscribers.

Two independently growing text buffers: what the upstream transcribed and
what it answered. Append-only within a connection; cleared only when a new
conversation starts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from observability.logger import log_event

TranscriptListener = Callable[[str, str], None]

L = TypeVar("L", bound=Callable[..., None])


@dataclass
class ConversationTranscript:
    """Mutable transcript record, written only by the session's message handler."""

    transcription: str = ""
    response: str = ""

    def append_transcription(self, text: str) -> bool:
        if not text:
            return False
        self.transcription += text
        return True

    def set_transcription(self, text: str) -> bool:
        self.transcription = text
        return True

    def append_response(self, text: str) -> bool:
        if not text:
            return False
        self.response += text
        return True

    def set_response(self, text: str) -> bool:
        self.response = text
        return True

    def clear(self) -> None:
        self.transcription = ""
        self.response = ""


class Subscribers(Generic[L]):
    """
    Ordered set of listeners with isolated invocation.

    A listener that raises is logged and skipped; it never breaks the
    notifier or the other listeners.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[L] = []

    def subscribe(self, listener: L) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, *args: object) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "LISTENER_FAILED",
                    "channel": self._name,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

    def __len__(self) -> int:
        return len(self._listeners)
