"""
Conversation orchestrator.

Wires capture -> chunker -> conversation backend and exposes one view of
the whole conversation to the presentation layer.

Responsibilities:
- Acquire the capture device, connect the backend, start chunking
- Tear down in a fixed order on disconnect
- Merge backend status, transcript and local flags into a ConversationView

Non-responsibilities:
- No transport access; the backend owns its connection
- No readiness or queueing policy; submit/request_response decide
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from audio.capture import AudioSource, MicrophonePermissionError
from audio.chunker import AudioChunker
from constants import DISCONNECT_GRACE_MS
from observability.logger import log_event
from session.backend import ConversationBackend, SessionStatus
from session.errors import SessionConnectError
from session.state import ConnectionStatus
from session.transcript import Subscribers

ChunkerFactory = Callable[..., AudioChunker]


@dataclass(frozen=True)
class ConversationView:
    """What the UI renders. Rebuilt on every backend notification."""
    connection: ConnectionStatus
    mic_active: bool
    processing: bool
    error: str | None
    transcription: str
    response: str


ViewListener = Callable[[ConversationView], None]


class ConversationOrchestrator:
    """
    One conversation at a time over an interchangeable backend.

    The transcript is reset only when a new conversation starts; teardown
    never clears text that is already displayed.
    """

    def __init__(
        self,
        *,
        backend: ConversationBackend,
        audio_source: AudioSource,
        grace_ms: int = DISCONNECT_GRACE_MS,
        chunker_factory: ChunkerFactory = AudioChunker,
    ) -> None:
        self._backend = backend
        self._source = audio_source
        self._grace_ms = grace_ms
        self._chunker_factory = chunker_factory

        self._chunker: AudioChunker | None = None
        self._mic_active = False
        self._error: str | None = None
        self._subs: Subscribers[ViewListener] = Subscribers("conversation")

        self._unsubscribe: list[Callable[[], None]] = [
            backend.subscribe_status(self._on_status),
            backend.subscribe_transcript(self._on_transcript),
        ]

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    @property
    def view(self) -> ConversationView:
        status = self._backend.status
        transcript = self._backend.transcript
        return ConversationView(
            connection=status.connection,
            mic_active=self._mic_active,
            processing=status.processing,
            error=self._error or status.error,
            transcription=transcript.transcription,
            response=transcript.response,
        )

    @property
    def chunker(self) -> AudioChunker | None:
        return self._chunker

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        return self._subs.subscribe(listener)

    def close(self) -> None:
        """Detach from the backend's notifications."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def _publish(self) -> None:
        self._subs.notify(self.view)

    def _on_status(self, _status: SessionStatus) -> None:
        self._publish()

    def _on_transcript(self, _transcription: str, _response: str) -> None:
        self._publish()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Start a new conversation.

        Returns False when capture permission is denied or the backend
        cannot connect; the reason is in view.error.
        """
        if self._chunker is not None:
            return True

        self._error = None
        self._backend.reset_transcript()

        try:
            await self._source.open()
        except MicrophonePermissionError as e:
            self._error = str(e)
            log_event({
                "event_type": "MIC_PERMISSION_DENIED",
                "message": str(e),
            })
            self._publish()
            return False

        try:
            await self._backend.connect()
        except SessionConnectError as e:
            log_event({
                "event_type": "CONVERSATION_CONNECT_FAILED",
                "exception": type(e).__name__,
                "message": str(e),
            })
            await self._source.close()
            self._publish()
            return False

        chunker = self._chunker_factory(
            on_batch=self._backend.submit_audio,
            on_finalize=self._backend.request_response,
        )
        chunker.start()
        self._chunker = chunker
        self._source.start(chunker.feed)
        self._mic_active = True

        log_event({"event_type": "CONVERSATION_STARTED"})
        self._publish()
        return True

    async def disconnect(self) -> None:
        """
        End the conversation.

        Order:
        1) chunker stops accepting frames (synchronous, before any await)
        2) best-effort final response request
        3) grace window for trailing transcript events
        4) capture, chunker and backend teardown
        5) transient flags cleared, transcript kept
        """
        chunker = self._chunker
        if chunker is not None:
            chunker.stop_accepting()

        log_event({
            "event_type": "CONVERSATION_STOPPING",
            "grace_ms": self._grace_ms,
        })

        await self._request_final_response()
        await asyncio.sleep(self._grace_ms / 1000)

        await self._source.close()
        self._chunker = None
        if chunker is not None:
            await chunker.stop()
        await self._backend.disconnect()

        self._mic_active = False
        self._error = None

        log_event({"event_type": "CONVERSATION_STOPPED"})
        self._publish()

    async def _request_final_response(self) -> Any:
        try:
            return await self._backend.request_response()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            # Teardown proceeds regardless
            log_event({
                "event_type": "FINAL_RESPONSE_FAILED",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return False
