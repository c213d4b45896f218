"""
Realtime session: the client-side state machine for one upstream
control connection (reached through the relay).

Responsibilities:
- Own the control connection and the SessionState
- Two-step capability negotiation (text, then text+audio)
- Gate audio on READY; queue (bounded, newest kept) otherwise
- Flush at most the newest N queued chunks on READY, paced
- Commit + response.create, deferred until READY when necessary
- Parse inbound events into the transcript and notify subscribers
- Classify upstream errors; reconnect with backoff on abnormal closes

Concurrency model:
- Everything runs on one event loop
- Timers are tasks keyed by name; a newer schedule replaces an older one
- Every delayed action captures the transport it was scheduled for and
  becomes a no-op when that transport is no longer current
- Sends are serialized through one lock so a READY flush cannot be
  overtaken by a fresh submission
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol
from uuid import uuid4

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from audio.frames import AudioChunk
from audio.queues import AudioChunkQueue
from constants import CLOSE_NORMAL, MODALITY_AUDIO
from observability import metrics
from observability.logger import log_event
from protocol.realtime import (
    InboundEventType,
    RealtimeProtocolError,
    audio_append,
    audio_commit,
    decode_event,
    delta_text,
    done_text,
    encode_message,
    modalities_of,
    response_create,
    session_update_text_only,
    session_update_with_audio,
)
from session.backend import (
    ConversationBackend,
    SessionStatus,
    StatusListener,
    TranscriptSnapshot,
)
from session.errors import (
    CONNECT_FAILED_MESSAGE,
    CONNECT_TIMEOUT_MESSAGE,
    NEGOTIATION_SLOW_MESSAGE,
    RECONNECT_EXHAUSTED_MESSAGE,
    ConnectTimeoutError,
    SessionConnectError,
    classify_upstream_error,
    reconnecting_message,
    user_message,
)
from session.reconnect import (
    ReconnectAttempt,
    get_reconnect_delay_ms,
    is_normal_closure,
    next_attempt,
    reset_attempt,
    should_reconnect,
)
from session.state import SessionState, connection_status_of
from session.timings import SessionTimings
from session.transcript import ConversationTranscript, Subscribers, TranscriptListener


class Transport(Protocol):
    """The subset of a websockets client connection the session uses."""

    @property
    def close_code(self) -> int | None: ...

    @property
    def close_reason(self) -> str | None: ...

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Transport]]

_UNSET: Any = object()


async def _websocket_connector(url: str) -> Transport:
    # Deadline is enforced by the caller
    return await ws_connect(url, max_size=None, open_timeout=None)


def _new_session_id() -> str:
    return f"rt_{uuid4().hex[:12]}"


class RealtimeSession(ConversationBackend):
    """
    One upstream control connection and its lifecycle.

    Public surface: connect, disconnect, retry, submit_audio,
    request_response, reset_transcript, subscribe_*, status, transcript.
    """

    def __init__(
        self,
        *,
        url: str,
        timings: SessionTimings | None = None,
        connector: Connector | None = None,
    ) -> None:
        self._url = url
        self._timings = timings or SessionTimings()
        self._connector: Connector = connector or _websocket_connector
        self.session_id = _new_session_id()

        self._state = SessionState.DISCONNECTED
        self._ws: Transport | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._dial_generation = 0
        self._send_lock = asyncio.Lock()

        self._pending = AudioChunkQueue(max_items=self._timings.pending_max_chunks)
        self._transcript = ConversationTranscript()
        self._transcript_subs: Subscribers[TranscriptListener] = Subscribers("transcript")
        self._status_subs: Subscribers[StatusListener] = Subscribers("status")

        self._attempt: ReconnectAttempt = reset_attempt()
        self._processing = False
        self._error: str | None = None

        self._audio_ack = False
        self._response_pending = False
        self._audio_since_commit = False
        self._user_closed = False
        self._terminal = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self._state,
            connection=connection_status_of(self._state),
            processing=self._processing,
            error=self._error,
        )

    @property
    def transcript(self) -> TranscriptSnapshot:
        return TranscriptSnapshot(
            transcription=self._transcript.transcription,
            response=self._transcript.response,
        )

    @property
    def pending_chunks(self) -> int:
        return len(self._pending)

    @property
    def response_pending(self) -> bool:
        return self._response_pending

    def subscribe_transcript(self, listener: TranscriptListener) -> Callable[[], None]:
        return self._transcript_subs.subscribe(listener)

    def subscribe_status(self, listener: StatusListener) -> Callable[[], None]:
        return self._status_subs.subscribe(listener)

    def reset_transcript(self) -> None:
        self._transcript.clear()
        self._transcript_subs.notify(self._transcript.transcription, self._transcript.response)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Explicit connect request.

        Clears terminal/user-closed flags and the reconnect counter.

        Raises:
            ConnectTimeoutError if the transport does not open in time.
            SessionConnectError if the dial fails.
        """
        self._user_closed = False
        self._terminal = False
        self._attempt = reset_attempt()
        self._response_pending = False
        await self._dial()

    async def disconnect(self) -> None:
        """
        User-initiated teardown.

        Sends one final commit + response.create when audio went out since
        the last commit, then closes with a normal-closure code. Never
        schedules a reconnect. The transcript is left intact.
        """
        self._user_closed = True
        self._dial_generation += 1
        ws = self._ws
        was_ready = self._state is SessionState.READY

        if ws is None and self._state is SessionState.DISCONNECTED:
            self._cancel_all_timers()
            self._reset_connection_scoped()
            return

        self._set_state(SessionState.CLOSING)
        self._cancel_all_timers()

        if was_ready and ws is not None and self._audio_since_commit:
            await self._send_response_request(ws)

        self._ws = None
        await self._stop_recv_task()
        if ws is not None:
            await self._close_transport(ws, CLOSE_NORMAL, "User requested disconnect")

        self._reset_connection_scoped()
        self._attempt = reset_attempt()
        self._set_state(SessionState.DISCONNECTED, error=None)

    async def retry(self) -> None:
        """Manual retry: full teardown, short pause, fresh connect."""
        await self.disconnect()
        await asyncio.sleep(self._timings.manual_retry_delay_ms / 1000)
        await self.connect()

    async def wait_until_ready(self) -> bool:
        """Bounded poll for READY. Returns whether READY was reached."""
        for _ in range(self._timings.ready_poll_budget):
            if self._state is SessionState.READY:
                return True
            await asyncio.sleep(self._timings.ready_poll_interval_ms / 1000)
        return self._state is SessionState.READY

    async def _dial(self) -> None:
        # One dial in flight at most
        if self._ws is not None or self._state is SessionState.CONNECTING:
            return

        self._set_state(SessionState.CONNECTING)
        self._dial_generation += 1
        generation = self._dial_generation

        try:
            with metrics.timed("realtime_connect", session_id=self.session_id):
                ws = await asyncio.wait_for(
                    self._connector(self._url),
                    timeout=self._timings.connect_timeout_ms / 1000,
                )
        except asyncio.TimeoutError as e:
            log_event({
                "event_type": "SESSION_CONNECT_TIMEOUT",
                "session_id": self.session_id,
                "timeout_ms": self._timings.connect_timeout_ms,
            })
            if generation != self._dial_generation:
                return
            self._set_state(SessionState.DISCONNECTED, error=CONNECT_TIMEOUT_MESSAGE)
            raise ConnectTimeoutError("connection timeout") from e
        except (OSError, WebSocketException) as e:
            log_event({
                "event_type": "SESSION_CONNECT_FAILED",
                "session_id": self.session_id,
                "exception": type(e).__name__,
                "message": str(e),
            })
            if generation != self._dial_generation:
                return
            self._set_state(SessionState.DISCONNECTED, error=CONNECT_FAILED_MESSAGE)
            raise SessionConnectError(str(e)) from e

        if generation != self._dial_generation or self._ws is not None:
            # Superseded by disconnect() or a newer dial while this one was in flight
            log_event({
                "event_type": "STALE_DIAL_DISCARDED",
                "session_id": self.session_id,
                "generation": generation,
            })
            await self._close_transport(ws, CLOSE_NORMAL, "User requested disconnect")
            return

        self._ws = ws
        self._attempt = reset_attempt()
        self._audio_ack = False
        self._audio_since_commit = False
        self._set_state(SessionState.NEGOTIATING, error=None)

        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        self._schedule(
            "negotiate",
            self._timings.negotiate_settle_ms,
            lambda: self._negotiate(ws),
        )

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def _negotiate(self, ws: Transport) -> None:
        if self._ws is not ws:
            return

        if self._audio_ack:
            log_event({
                "event_type": "NEGOTIATION_SKIPPED",
                "session_id": self.session_id,
                "reason": "audio_already_acknowledged",
            })
            return

        await self._send(ws, session_update_text_only())
        self._schedule(
            "negotiate_audio",
            self._timings.audio_negotiate_delay_ms,
            lambda: self._negotiate_audio(ws),
        )

    async def _negotiate_audio(self, ws: Transport) -> None:
        if self._ws is not ws or self._audio_ack:
            return
        await self._send(ws, session_update_with_audio(voice=self._timings.voice))

    def _on_session_ack(self, ws: Transport, event: dict[str, Any]) -> None:
        modalities = modalities_of(event)
        log_event({
            "event_type": "SESSION_ACK",
            "session_id": self.session_id,
            "ack_type": event["type"],
            "modalities": modalities,
        })

        if MODALITY_AUDIO not in modalities or self._audio_ack:
            return

        self._audio_ack = True
        self._cancel_timer("negotiate_audio")
        self._schedule(
            "ready",
            self._timings.ready_settle_ms,
            lambda: self._become_ready(ws),
        )

    async def _become_ready(self, ws: Transport) -> None:
        async with self._send_lock:
            if self._ws is not ws:
                return
            self._set_state(SessionState.READY)
            await self._flush_pending_locked(ws)

        if self._response_pending and self._ws is ws and self._state is SessionState.READY:
            self._response_pending = False
            log_event({
                "event_type": "RESPONSE_REPLAYED",
                "session_id": self.session_id,
            })
            await self._send_response_request(ws)

    async def _flush_pending_locked(self, ws: Transport) -> None:
        queued = len(self._pending)
        chunks = self._pending.drain_latest(self._timings.pending_flush_keep)
        if not queued:
            return

        log_event({
            "event_type": "PENDING_AUDIO_FLUSH",
            "session_id": self.session_id,
            "queued": queued,
            "sending": len(chunks),
            "discarded": queued - len(chunks),
        })
        metrics.count(
            "pending_audio_discarded",
            queued - len(chunks),
            session_id=self.session_id,
        )

        for chunk in chunks:
            await asyncio.sleep(self._timings.flush_pacing_ms / 1000)
            if self._ws is not ws or self._state is not SessionState.READY:
                break
            if not await self._send_audio(ws, chunk):
                break

    # ------------------------------------------------------------------
    # Audio and response requests
    # ------------------------------------------------------------------

    async def submit_audio(self, chunk: AudioChunk) -> TranscriptSnapshot | None:
        """
        Send the chunk if READY, otherwise queue it and return None.

        From DISCONNECTED (and not terminal / user-closed / awaiting a
        scheduled reconnect) this also dials and polls for READY; the
        chunk rides along in the pending queue either way. A failed dial
        hands over to the reconnect backoff.
        """
        ws = self._ws
        if self._state is SessionState.READY and ws is not None:
            async with self._send_lock:
                if self._ws is ws and self._state is SessionState.READY:
                    if await self._send_audio(ws, chunk):
                        return self.transcript
            self._enqueue(chunk)
            return None

        self._enqueue(chunk)

        if self._state is SessionState.DISCONNECTED and self._may_autodial():
            try:
                await self._dial()
            except SessionConnectError as e:
                log_event({
                    "event_type": "AUTODIAL_FAILED",
                    "session_id": self.session_id,
                    "message": str(e),
                })
                # Same backoff and attempt limit as a lost transport
                self._on_transport_closed(None, str(e))
                return None
            if not await self.wait_until_ready():
                log_event({
                    "event_type": "NEGOTIATION_SLOW",
                    "session_id": self.session_id,
                    "message": NEGOTIATION_SLOW_MESSAGE,
                    "pending": len(self._pending),
                })

        return None

    async def request_response(self) -> bool:
        """
        Commit the input buffer and ask for a response.

        Not READY: remember the request; it is replayed once on READY.
        """
        ws = self._ws
        if self._state is SessionState.CLOSING:
            return False

        if self._state is not SessionState.READY or ws is None:
            if not self._response_pending:
                log_event({
                    "event_type": "RESPONSE_DEFERRED",
                    "session_id": self.session_id,
                    "state": self._state.value,
                })
            self._response_pending = True
            return False

        return await self._send_response_request(ws)

    async def _send_response_request(self, ws: Transport) -> bool:
        async with self._send_lock:
            if not await self._send(ws, audio_commit()):
                return False
            self._audio_since_commit = False
            await asyncio.sleep(self._timings.commit_to_response_ms / 1000)
            return await self._send(ws, response_create())

    async def _send_audio(self, ws: Transport, chunk: AudioChunk) -> bool:
        message = audio_append(chunk)
        if not await self._send(ws, message):
            return False
        self._audio_since_commit = True
        self._set_processing(True)
        log_event({
            "event_type": "AUDIO_CHUNK_SENT",
            "session_id": self.session_id,
            "samples": len(chunk),
            "duration_ms": round(chunk.duration_ms),
            "base64_chars": len(message["audio"]),
        })
        return True

    def _enqueue(self, chunk: AudioChunk) -> None:
        if not self._pending.append(chunk):
            metrics.count("pending_audio_overflow", session_id=self.session_id)
        log_event({
            "event_type": "AUDIO_CHUNK_QUEUED",
            "session_id": self.session_id,
            "state": self._state.value,
            **self._pending.snapshot(),
        })

    def _may_autodial(self) -> bool:
        return (
            not self._user_closed
            and not self._terminal
            and "reconnect" not in self._timers
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _recv_loop(self, ws: Transport) -> None:
        try:
            async for raw in ws:
                try:
                    event = decode_event(raw)
                except RealtimeProtocolError as e:
                    log_event({
                        "event_type": "UPSTREAM_DECODE_ERROR",
                        "session_id": self.session_id,
                        "error": str(e),
                    })
                    continue
                self._handle_event(ws, event)
                if self._ws is not ws:
                    # An upstream error event ended this connection
                    await self._close_transport(ws, CLOSE_NORMAL, "upstream error")
                    return
        except ConnectionClosed:
            pass
        except OSError as e:
            log_event({
                "event_type": "UPSTREAM_RECV_FAILED",
                "session_id": self.session_id,
                "exception": type(e).__name__,
                "message": str(e),
            })

        if self._ws is ws:
            self._on_transport_closed(ws.close_code, ws.close_reason)

    def _handle_event(self, ws: Transport, event: dict[str, Any]) -> None:
        """Dispatch one inbound event. Runs to completion; never awaits."""
        if self._ws is not ws:
            return

        msg_type = event["type"]
        changed = False

        if msg_type == InboundEventType.TRANSCRIPT_DELTA:
            changed = self._transcript.append_transcription(delta_text(event, "transcript"))
        elif msg_type == InboundEventType.TRANSCRIPT_DONE:
            text = done_text(event, "transcript")
            if text is not None:
                changed = self._transcript.set_transcription(text)
        elif msg_type == InboundEventType.CONTENT_DELTA:
            changed = self._transcript.append_response(delta_text(event, "content"))
        elif msg_type == InboundEventType.CONTENT_DONE:
            text = done_text(event, "content")
            if text is not None:
                changed = self._transcript.set_response(text)
        elif msg_type == InboundEventType.AUDIO_DELTA:
            self._set_processing(True)
        elif msg_type == InboundEventType.AUDIO_DONE:
            self._set_processing(False)
        elif msg_type in (InboundEventType.SESSION_CREATED, InboundEventType.SESSION_UPDATED):
            self._on_session_ack(ws, event)
        elif msg_type == InboundEventType.ERROR:
            self._on_upstream_error(ws, event)
        elif msg_type in (InboundEventType.SPEECH_STARTED, InboundEventType.SPEECH_STOPPED):
            log_event({
                "event_type": "UPSTREAM_SPEECH_EVENT",
                "session_id": self.session_id,
                "upstream_type": msg_type,
            })
        # anything else: forward-compatible no-op

        if changed:
            self._transcript_subs.notify(
                self._transcript.transcription,
                self._transcript.response,
            )

    def _on_upstream_error(self, ws: Transport, event: dict[str, Any]) -> None:
        kind = classify_upstream_error(event)
        details = event.get("error") if isinstance(event.get("error"), dict) else {}
        log_event({
            "event_type": "UPSTREAM_ERROR",
            "session_id": self.session_id,
            "kind": kind.value,
            "code": details.get("code"),
            "param": details.get("param"),
            "message": details.get("message"),
        })

        # No automatic reconnect for any upstream-reported error. Transient
        # kinds leave the next submission free to dial again.
        self._terminal = not kind.is_transient

        # The receive loop notices the swap and closes the transport
        self._ws = None
        self._recv_task = None
        self._cancel_all_timers()
        self._reset_connection_scoped()
        self._set_state(SessionState.DISCONNECTED, error=user_message(kind))

    # ------------------------------------------------------------------
    # Transport loss and reconnection
    # ------------------------------------------------------------------

    def _on_transport_closed(self, code: int | None, reason: str | None) -> None:
        self._ws = None
        self._recv_task = None
        for name in ("negotiate", "negotiate_audio", "ready"):
            self._cancel_timer(name)
        self._reset_connection_scoped(keep_response_pending=True)

        log_event({
            "event_type": "TRANSPORT_CLOSED",
            "session_id": self.session_id,
            "code": code,
            "reason": reason,
            "user_closed": self._user_closed,
        })

        if self._user_closed:
            self._set_state(SessionState.DISCONNECTED)
            return

        policy = self._timings.reconnect
        if should_reconnect(policy=policy, close_code=code, attempt=self._attempt):
            self._attempt = next_attempt(self._attempt)
            delay_ms = get_reconnect_delay_ms(policy=policy, attempt=self._attempt)
            log_event({
                "event_type": "RECONNECT_SCHEDULED",
                "session_id": self.session_id,
                "attempt": self._attempt.attempt,
                "max_attempts": policy.max_attempts,
                "delay_ms": delay_ms,
            })
            self._set_state(
                SessionState.DISCONNECTED,
                error=reconnecting_message(self._attempt.attempt, policy.max_attempts),
            )
            self._schedule("reconnect", delay_ms, self._reconnect)
            return

        if is_normal_closure(code):
            self._set_state(SessionState.DISCONNECTED)
            return

        self._terminal = True
        log_event({
            "event_type": "RECONNECT_EXHAUSTED",
            "session_id": self.session_id,
            "attempts": self._attempt.attempt,
        })
        self._set_state(SessionState.DISCONNECTED, error=RECONNECT_EXHAUSTED_MESSAGE)

    async def _reconnect(self) -> None:
        if self._ws is not None or self._user_closed:
            return
        try:
            await self._dial()
        except SessionConnectError as e:
            log_event({
                "event_type": "RECONNECT_FAILED",
                "session_id": self.session_id,
                "attempt": self._attempt.attempt,
                "message": str(e),
            })
            self._on_transport_closed(None, str(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send(self, ws: Transport, message: dict[str, Any]) -> bool:
        try:
            await ws.send(encode_message(message))
        except (ConnectionClosed, OSError) as e:
            log_event({
                "event_type": "SEND_FAILED",
                "session_id": self.session_id,
                "message_type": message.get("type"),
                "exception": type(e).__name__,
            })
            return False
        if message.get("type") != "input_audio_buffer.append":
            log_event({
                "event_type": "CONTROL_MESSAGE_SENT",
                "session_id": self.session_id,
                "message_type": message.get("type"),
            })
        return True

    async def _close_transport(self, ws: Transport, code: int, reason: str) -> None:
        try:
            await ws.close(code, reason)
        except (ConnectionClosed, OSError) as e:
            log_event({
                "event_type": "TRANSPORT_CLOSE_FAILED",
                "session_id": self.session_id,
                "exception": type(e).__name__,
            })

    async def _stop_recv_task(self) -> None:
        task = self._recv_task
        self._recv_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _reset_connection_scoped(self, *, keep_response_pending: bool = False) -> None:
        self._pending.clear()
        self._audio_ack = False
        self._audio_since_commit = False
        if not keep_response_pending:
            self._response_pending = False
        self._set_processing(False)

    def _schedule(
        self,
        name: str,
        delay_ms: int,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        self._cancel_timer(name)

        async def _run() -> None:
            me = asyncio.current_task()
            try:
                await asyncio.sleep(delay_ms / 1000)
                await action()
            finally:
                if self._timers.get(name) is me:
                    del self._timers[name]

        self._timers[name] = asyncio.create_task(_run())

    def _cancel_timer(self, name: str) -> None:
        task = self._timers.get(name)
        if task is None or task is asyncio.current_task():
            return
        del self._timers[name]
        task.cancel()

    def _cancel_all_timers(self) -> None:
        for name in list(self._timers):
            self._cancel_timer(name)

    def _set_processing(self, processing: bool) -> None:
        if processing == self._processing:
            return
        self._processing = processing
        self._status_subs.notify(self.status)

    def _set_state(self, state: SessionState, *, error: str | None = _UNSET) -> None:
        changed = False
        if state is not self._state:
            log_event({
                "event_type": "SESSION_STATE_CHANGED",
                "session_id": self.session_id,
                "from": self._state.value,
                "to": state.value,
            })
            self._state = state
            changed = True
        if error is not _UNSET and error != self._error:
            self._error = error
            changed = True
        if changed:
            self._status_subs.notify(self.status)
