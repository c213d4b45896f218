# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import base64
import dataclasses
import json
import time
from typing import Any, Callable

import numpy as np
import pytest

import session.realtime_session as rt_mod
from audio.frames import AudioChunk
from session.backend import SessionStatus, TranscriptSnapshot
from session.errors import (
    CONNECT_TIMEOUT_MESSAGE,
    RECONNECT_EXHAUSTED_MESSAGE,
    ConnectTimeoutError,
    SessionConnectError,
)
from session.realtime_session import RealtimeSession
from session.reconnect import ReconnectPolicy
from session.state import ConnectionStatus, SessionState
from session.timings import SessionTimings

_CLOSED = object()

FAST = SessionTimings(
    connect_timeout_ms=1000,
    negotiate_settle_ms=1,
    audio_negotiate_delay_ms=5,
    ready_settle_ms=5,
    flush_pacing_ms=5,
    commit_to_response_ms=1,
    ready_poll_attempts=5,
    ready_poll_interval_ms=5,
    manual_retry_delay_ms=1,
    reconnect=ReconnectPolicy(max_attempts=3, base_delay_ms=10, max_delay_ms=1000),
)


class FakeTransport:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.sent_at: list[float] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.closed_with: tuple[int, str] | None = None
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.close_code is not None:
            raise ConnectionResetError("transport closed")
        self.sent.append(json.loads(message))
        self.sent_at.append(time.monotonic())

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed_with is None:
            self.closed_with = (code, reason)
            self.close_code = code
            self.close_reason = reason
            self._inbox.put_nowait(_CLOSED)

    def push(self, event: dict[str, Any]) -> None:
        self._inbox.put_nowait(json.dumps(event))

    def drop(self, code: int | None = 1006) -> None:
        """Remote side goes away."""
        self.close_code = code
        self._inbox.put_nowait(_CLOSED)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def __aiter__(self) -> "FakeTransport":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class Dialer:
    """Connector returning a fresh FakeTransport per call, optionally failing."""

    def __init__(
        self,
        *,
        fail_after: int | None = None,
        delay: float = 0.0,
        ack_on_open: bool = False,
    ) -> None:
        self.calls = 0
        self.urls: list[str] = []
        self.transports: list[FakeTransport] = []
        self._fail_after = fail_after
        self._delay = delay
        self._ack_on_open = ack_on_open

    async def __call__(self, url: str) -> FakeTransport:
        self.calls += 1
        self.urls.append(url)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail_after is not None and self.calls > self._fail_after:
            raise ConnectionRefusedError("refused")
        transport = FakeTransport()
        if self._ack_on_open:
            transport.push(audio_ack())
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


def make_session(dialer: Dialer, timings: SessionTimings = FAST) -> RealtimeSession:
    return RealtimeSession(url="ws://relay/realtime-proxy", timings=timings, connector=dialer)


def make_chunk(value: int, samples: int = 4000) -> AudioChunk:
    return AudioChunk(samples=np.full(samples, value, dtype=np.int16))


def audio_ack(event_type: str = "session.created") -> dict[str, Any]:
    return {"type": event_type, "session": {"modalities": ["text", "audio"]}}


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


async def connect_ready(session: RealtimeSession, dialer: Dialer) -> FakeTransport:
    await session.connect()
    transport = dialer.last
    transport.push(audio_ack())
    await eventually(lambda: session.state is SessionState.READY)
    return transport


@pytest.fixture
def logged(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    monkeypatch.setattr(rt_mod, "log_event", events.append)
    return events


# ---------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_two_step_negotiation_reaches_ready(logged: list[dict[str, Any]]):
    dialer = Dialer()
    session = make_session(dialer)

    await session.connect()
    transport = dialer.last
    assert session.state is SessionState.NEGOTIATING
    assert session.status.connection is ConnectionStatus.CONNECTED

    await eventually(lambda: transport.types().count("session.update") == 2)
    first, second = [m for m in transport.sent if m["type"] == "session.update"]
    assert first["session"]["modalities"] == ["text"]
    assert second["session"]["modalities"] == ["text", "audio"]
    assert second["session"]["input_audio_format"] == "pcm16"

    transport.push(audio_ack("session.updated"))
    await eventually(lambda: session.state is SessionState.READY)

    states = [e["to"] for e in logged if e["event_type"] == "SESSION_STATE_CHANGED"]
    assert states == ["CONNECTING", "NEGOTIATING", "READY"]
    await session.disconnect()


@pytest.mark.asyncio
async def test_audio_ack_skips_second_negotiation_step():
    dialer = Dialer()
    timings = dataclasses.replace(FAST, audio_negotiate_delay_ms=100)
    session = make_session(dialer, timings)

    await session.connect()
    transport = dialer.last
    await eventually(lambda: "session.update" in transport.types())

    transport.push(audio_ack("session.updated"))
    await eventually(lambda: session.state is SessionState.READY)
    await asyncio.sleep(0.15)

    assert transport.types().count("session.update") == 1
    await session.disconnect()


@pytest.mark.asyncio
async def test_text_only_ack_does_not_make_ready():
    dialer = Dialer()
    timings = dataclasses.replace(FAST, audio_negotiate_delay_ms=1000)
    session = make_session(dialer, timings)

    await session.connect()
    dialer.last.push({"type": "session.created", "session": {"modalities": ["text"]}})
    await asyncio.sleep(0.05)

    assert session.state is SessionState.NEGOTIATING
    await session.disconnect()


# ---------------------------------------------------------------------
# Audio submission
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submit_before_ready_only_queues():
    dialer = Dialer()
    timings = dataclasses.replace(FAST, ready_settle_ms=1000)
    session = make_session(dialer, timings)
    await session.connect()

    result = await session.submit_audio(make_chunk(1))

    assert result is None
    assert session.pending_chunks == 1
    assert "input_audio_buffer.append" not in dialer.last.types()
    await session.disconnect()


@pytest.mark.asyncio
async def test_submit_when_ready_sends_immediately():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)

    result = await session.submit_audio(make_chunk(7, samples=2))

    assert isinstance(result, TranscriptSnapshot)
    assert session.status.processing is True
    append = transport.sent[-1]
    assert append["type"] == "input_audio_buffer.append"
    assert base64.b64decode(append["audio"]) == b"\x07\x00\x07\x00"
    await session.disconnect()


@pytest.mark.asyncio
async def test_flush_on_ready_sends_newest_two_paced():
    dialer = Dialer()
    timings = dataclasses.replace(FAST, ready_settle_ms=100, flush_pacing_ms=50)
    session = make_session(dialer, timings)

    await session.connect()
    transport = dialer.last
    transport.push(audio_ack())

    chunks = [make_chunk(i) for i in (1, 2, 3)]
    for chunk in chunks:
        assert await session.submit_audio(chunk) is None
    assert "input_audio_buffer.append" not in transport.types()

    await eventually(lambda: transport.types().count("input_audio_buffer.append") == 2)
    await asyncio.sleep(0.1)

    appends = [
        (m, at) for m, at in zip(transport.sent, transport.sent_at)
        if m["type"] == "input_audio_buffer.append"
    ]
    assert len(appends) == 2
    assert [m["audio"] for m, _ in appends] == [chunks[1].to_base64(), chunks[2].to_base64()]
    assert appends[1][1] - appends[0][1] >= 0.04
    assert session.pending_chunks == 0
    await session.disconnect()


@pytest.mark.asyncio
async def test_submit_while_disconnected_dials_and_queues():
    dialer = Dialer()
    timings = dataclasses.replace(FAST, ready_settle_ms=50)
    session = make_session(dialer, timings)

    # No acknowledgment arrives, so the readiness wait runs out
    result = await session.submit_audio(make_chunk(1))

    assert result is None
    assert dialer.calls == 1
    assert session.state is SessionState.NEGOTIATING
    assert session.pending_chunks == 1
    await session.disconnect()


# ---------------------------------------------------------------------
# Response requests
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_request_response_when_ready():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)

    assert await session.request_response() is True
    assert transport.types()[-2:] == ["input_audio_buffer.commit", "response.create"]
    assert transport.sent[-1]["response"]["modalities"] == ["text", "audio"]
    await session.disconnect()


@pytest.mark.asyncio
async def test_pending_response_replayed_once_on_ready():
    dialer = Dialer()
    timings = dataclasses.replace(FAST, ready_settle_ms=20)
    session = make_session(dialer, timings)
    await session.connect()
    transport = dialer.last

    assert await session.request_response() is False
    assert await session.request_response() is False
    assert session.response_pending is True

    transport.push(audio_ack())
    await eventually(lambda: "response.create" in transport.types())
    await asyncio.sleep(0.05)

    assert transport.types().count("input_audio_buffer.commit") == 1
    assert transport.types().count("response.create") == 1
    assert session.response_pending is False
    await session.disconnect()


@pytest.mark.asyncio
async def test_pending_response_dropped_if_never_ready():
    dialer = Dialer()
    timings = dataclasses.replace(FAST, ready_settle_ms=1000)
    session = make_session(dialer, timings)
    await session.connect()
    transport = dialer.last

    await session.request_response()
    await session.disconnect()

    assert "input_audio_buffer.commit" not in transport.types()
    assert "response.create" not in transport.types()
    assert session.response_pending is False


# ---------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_final_transcript_overrides_deltas():
    dialer = Dialer()
    session = make_session(dialer)
    calls: list[tuple[str, str]] = []
    session.subscribe_transcript(lambda t, r: calls.append((t, r)))

    await session.connect()
    transport = dialer.last
    transport.push({"type": "response.audio_transcript.delta", "delta": "Hel"})
    transport.push({"type": "response.audio_transcript.delta", "delta": "lo"})
    transport.push({"type": "response.audio_transcript.done", "transcript": "Hello world"})
    await eventually(lambda: len(calls) == 3)

    assert [t for t, _ in calls] == ["Hel", "Hello", "Hello world"]
    assert session.transcript.transcription == "Hello world"
    await session.disconnect()


@pytest.mark.asyncio
async def test_response_content_and_audio_processing_flag():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)

    transport.push({"type": "response.content.delta", "delta": "Hi"})
    transport.push({"type": "response.content.delta", "delta": " there"})
    transport.push({"type": "response.audio.delta", "delta": "AAAA"})
    await eventually(lambda: session.status.processing)
    assert session.transcript.response == "Hi there"

    transport.push({"type": "response.content.done", "content": "Hi there!"})
    transport.push({"type": "response.audio.done"})
    await eventually(lambda: not session.status.processing)
    assert session.transcript.response == "Hi there!"
    await session.disconnect()


@pytest.mark.asyncio
async def test_unknown_and_malformed_events_ignored(logged: list[dict[str, Any]]):
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)

    transport.push({"type": "response.created", "response": {}})
    transport._inbox.put_nowait("not json")  # pylint: disable=protected-access
    transport.push({"type": "input_audio_buffer.speech_started"})
    await eventually(
        lambda: any(e["event_type"] == "UPSTREAM_SPEECH_EVENT" for e in logged)
    )

    assert session.state is SessionState.READY
    assert any(e["event_type"] == "UPSTREAM_DECODE_ERROR" for e in logged)
    await session.disconnect()


@pytest.mark.asyncio
async def test_failing_listener_is_isolated():
    dialer = Dialer()
    session = make_session(dialer)
    seen: list[str] = []

    def broken(_t: str, _r: str) -> None:
        raise RuntimeError("ui crashed")

    session.subscribe_transcript(broken)
    unsubscribe = session.subscribe_transcript(lambda t, _r: seen.append(t))

    await session.connect()
    dialer.last.push({"type": "response.audio_transcript.delta", "delta": "a"})
    await eventually(lambda: seen == ["a"])

    unsubscribe()
    dialer.last.push({"type": "response.audio_transcript.delta", "delta": "b"})
    await eventually(lambda: session.transcript.transcription == "ab")
    assert seen == ["a"]
    await session.disconnect()


# ---------------------------------------------------------------------
# Upstream errors
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rate_limit_error_disconnects_without_reconnect(logged: list[dict[str, Any]]):
    dialer = Dialer()
    session = make_session(dialer)
    statuses: list[SessionStatus] = []
    session.subscribe_status(statuses.append)
    transport = await connect_ready(session, dialer)

    transport.push({
        "type": "error",
        "error": {"type": "rate_limit_error", "message": "slow down"},
    })
    await eventually(lambda: session.state is SessionState.DISCONNECTED)
    await asyncio.sleep(0.1)

    assert session.status.error == "Rate limit exceeded. Please wait a moment and try again."
    assert statuses[-1].error == session.status.error
    assert transport.closed_with == (1000, "upstream error")
    assert dialer.calls == 1
    assert not any(e["event_type"] == "RECONNECT_SCHEDULED" for e in logged)

    # Needs user action: audio does not re-dial
    await session.submit_audio(make_chunk(1))
    assert dialer.calls == 1


@pytest.mark.asyncio
async def test_server_error_lets_next_submission_redial():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)

    transport.push({"type": "error", "error": {"type": "server_error"}})
    await eventually(lambda: session.state is SessionState.DISCONNECTED)
    await asyncio.sleep(0.05)
    assert dialer.calls == 1

    await session.submit_audio(make_chunk(1))

    assert dialer.calls == 2
    await session.disconnect()


@pytest.mark.asyncio
async def test_refused_redial_after_server_error_backs_off(logged: list[dict[str, Any]]):
    dialer = Dialer(fail_after=1)
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)

    transport.push({"type": "error", "error": {"type": "server_error"}})
    await eventually(lambda: session.state is SessionState.DISCONNECTED)

    for value in range(8):
        await session.submit_audio(make_chunk(value))
    await eventually(lambda: session.status.error == RECONNECT_EXHAUSTED_MESSAGE)

    # Initial dial, one redial from audio, then three scheduled reconnects
    assert dialer.calls == 1 + 1 + 3
    delays = [e["delay_ms"] for e in logged if e["event_type"] == "RECONNECT_SCHEDULED"]
    assert delays == [10, 20, 40]
    assert any(e["event_type"] == "AUTODIAL_FAILED" for e in logged)

    # Terminal: further audio does not dial
    await session.submit_audio(make_chunk(9))
    await asyncio.sleep(0.1)
    assert dialer.calls == 5


@pytest.mark.asyncio
async def test_overlapping_dials_leave_one_owned_transport(logged: list[dict[str, Any]]):
    dialer = Dialer(delay=0.05)
    session = make_session(dialer)

    first = asyncio.create_task(session.connect())
    await asyncio.sleep(0.01)
    await session.disconnect()
    await session.connect()
    await first

    assert dialer.calls == 2
    stale, current = dialer.transports
    assert stale.closed_with is not None
    assert current.closed_with is None
    assert session.state is SessionState.NEGOTIATING
    assert any(e["event_type"] == "STALE_DIAL_DISCARDED" for e in logged)

    current.push(audio_ack())
    await eventually(lambda: session.state is SessionState.READY)
    await session.disconnect()
    assert current.closed_with == (1000, "User requested disconnect")


@pytest.mark.asyncio
async def test_dial_from_submission_waits_through_negotiation(logged: list[dict[str, Any]]):
    dialer = Dialer(ack_on_open=True)
    timings = dataclasses.replace(FAST, ready_poll_attempts=2, ready_settle_ms=30)
    session = make_session(dialer, timings)

    await session.submit_audio(make_chunk(1))

    assert session.state is SessionState.READY
    assert not any(e["event_type"] == "NEGOTIATION_SLOW" for e in logged)
    await session.disconnect()


def test_default_ready_poll_covers_negotiation():
    timings = SessionTimings()
    negotiation_ms = (
        timings.negotiate_settle_ms
        + timings.audio_negotiate_delay_ms
        + timings.ready_settle_ms
    )

    assert timings.ready_poll_budget >= timings.ready_poll_attempts
    assert timings.ready_poll_budget * timings.ready_poll_interval_ms > negotiation_ms


@pytest.mark.asyncio
async def test_retry_after_error_reconnects():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)
    transport.push({"type": "error", "error": {"type": "authentication_error"}})
    await eventually(lambda: session.state is SessionState.DISCONNECTED)

    await session.retry()

    assert dialer.calls == 2
    assert session.state is SessionState.NEGOTIATING
    assert session.status.error is None
    await session.disconnect()


# ---------------------------------------------------------------------
# Transport loss and reconnection
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reconnect_backoff_then_terminal(logged: list[dict[str, Any]]):
    dialer = Dialer(fail_after=1)
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)
    await session.submit_audio(make_chunk(1))

    transport.drop(1006)
    await eventually(lambda: session.status.error == RECONNECT_EXHAUSTED_MESSAGE)

    delays = [e["delay_ms"] for e in logged if e["event_type"] == "RECONNECT_SCHEDULED"]
    assert delays == [10, 20, 40]
    assert dialer.calls == 4
    assert session.state is SessionState.DISCONNECTED
    assert session.pending_chunks == 0
    assert any(e["event_type"] == "RECONNECT_EXHAUSTED" for e in logged)

    await asyncio.sleep(0.2)
    assert dialer.calls == 4

    # Terminal: audio does not dial again
    await session.submit_audio(make_chunk(2))
    assert dialer.calls == 4


@pytest.mark.asyncio
async def test_reconnect_success_resets_counter(logged: list[dict[str, Any]]):
    dialer = Dialer()
    session = make_session(dialer)
    await connect_ready(session, dialer)

    dialer.last.drop(1006)
    await eventually(lambda: dialer.calls == 2 and session.state is SessionState.NEGOTIATING)
    assert session.status.error is None

    dialer.last.drop(1011)
    await eventually(lambda: dialer.calls == 3)

    attempts = [e["attempt"] for e in logged if e["event_type"] == "RECONNECT_SCHEDULED"]
    assert attempts == [1, 1]
    await session.disconnect()


@pytest.mark.asyncio
async def test_reconnecting_message_while_waiting():
    dialer = Dialer()
    timings = dataclasses.replace(
        FAST,
        reconnect=ReconnectPolicy(max_attempts=3, base_delay_ms=500, max_delay_ms=1000),
    )
    session = make_session(dialer, timings)
    await connect_ready(session, dialer)

    dialer.last.drop(None)
    await eventually(lambda: session.state is SessionState.DISCONNECTED)

    assert session.status.error == "Connection lost. Reconnecting... (1/3)"
    await session.disconnect()
    await asyncio.sleep(0.6)
    assert dialer.calls == 1


@pytest.mark.asyncio
async def test_normal_remote_close_does_not_reconnect():
    dialer = Dialer()
    session = make_session(dialer)
    await connect_ready(session, dialer)

    dialer.last.drop(1000)
    await eventually(lambda: session.state is SessionState.DISCONNECTED)
    await asyncio.sleep(0.05)

    assert dialer.calls == 1
    assert session.status.error is None


# ---------------------------------------------------------------------
# Connect failures
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_timeout():
    async def never(_url: str) -> FakeTransport:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")

    timings = dataclasses.replace(FAST, connect_timeout_ms=20)
    session = RealtimeSession(url="ws://relay", timings=timings, connector=never)

    with pytest.raises(ConnectTimeoutError):
        await session.connect()

    assert session.state is SessionState.DISCONNECTED
    assert session.status.error == CONNECT_TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_connect_refused():
    dialer = Dialer(fail_after=0)
    session = make_session(dialer)

    with pytest.raises(SessionConnectError):
        await session.connect()

    assert session.state is SessionState.DISCONNECTED
    assert session.status.error is not None


# ---------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_disconnect_sends_final_response_after_audio():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)
    await session.submit_audio(make_chunk(1))

    await session.disconnect()

    assert transport.types()[-2:] == ["input_audio_buffer.commit", "response.create"]
    assert transport.closed_with == (1000, "User requested disconnect")
    assert session.state is SessionState.DISCONNECTED
    assert session.status.processing is False


@pytest.mark.asyncio
async def test_disconnect_without_new_audio_skips_commit():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)
    await session.submit_audio(make_chunk(1))
    await session.request_response()
    commits = transport.types().count("input_audio_buffer.commit")

    await session.disconnect()

    assert transport.types().count("input_audio_buffer.commit") == commits


@pytest.mark.asyncio
async def test_disconnect_keeps_transcript_and_never_reconnects():
    dialer = Dialer()
    session = make_session(dialer)
    transport = await connect_ready(session, dialer)
    transport.push({"type": "response.audio_transcript.delta", "delta": "keep me"})
    await eventually(lambda: session.transcript.transcription == "keep me")

    await session.disconnect()
    await session.disconnect()
    await asyncio.sleep(0.1)

    assert session.transcript.transcription == "keep me"
    assert dialer.calls == 1

    session.reset_transcript()
    assert session.transcript == TranscriptSnapshot(transcription="", response="")
