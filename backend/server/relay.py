"""
Realtime relay.

One inbound client WebSocket <-> one outbound upstream WebSocket.

Responsibilities:
- Dial the upstream with the server-held credential
- Forward frames both ways unmodified (binary upstream frames holding
  UTF-8 are delivered to the client as text)
- Propagate a close from either side to the other, exactly once

Non-responsibilities:
- No message validation or transformation; upstream session and error
  events are parsed for logging only
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from constants import (
    CLOSE_NORMAL,
    CLOSE_REASON_MAX_BYTES,
    CLOSE_UPSTREAM_FAILURE,
    CONNECT_TIMEOUT_MS,
    UNSENDABLE_CLOSE_CODES,
)
from observability.logger import log_event

_LOGGED_UPSTREAM_TYPES = frozenset({"session.created", "session.updated", "error"})


class UpstreamConnection(Protocol):
    """The subset of a websockets client connection the relay uses."""

    @property
    def close_code(self) -> int | None: ...

    @property
    def close_reason(self) -> str | None: ...

    async def send(self, message: str | bytes) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


UpstreamConnector = Callable[[str, dict[str, str]], Awaitable[UpstreamConnection]]


# ------------------------------------------------------------------
# Upstream dialing
# ------------------------------------------------------------------

def upstream_headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "OpenAI-Beta": "realtime=v1",
    }


async def connect_upstream(url: str, headers: dict[str, str]) -> UpstreamConnection:
    """Default connector: a websockets client connection."""
    return await ws_connect(
        url,
        additional_headers=headers,
        max_size=None,
        open_timeout=CONNECT_TIMEOUT_MS / 1000,
    )


def new_relay_id() -> str:
    return f"relay_{uuid4().hex[:12]}"


# ------------------------------------------------------------------
# Close code handling
# ------------------------------------------------------------------

def is_sendable_close_code(code: int | None) -> bool:
    """Whether a close frame may carry this code."""
    if code is None or code in UNSENDABLE_CLOSE_CODES:
        return False
    if 1000 <= code <= 1014:
        return code != 1004
    return 3000 <= code <= 4999


def propagated_close_code(code: int | None, *, fallback: int) -> int:
    return code if is_sendable_close_code(code) else fallback


def truncate_reason(reason: str | None) -> str:
    if not reason:
        return ""
    return reason.encode("utf-8")[:CLOSE_REASON_MAX_BYTES].decode("utf-8", errors="ignore")


# ------------------------------------------------------------------
# Pairing
# ------------------------------------------------------------------

class RelaySession:
    """
    A client/upstream pair.

    run() returns once both directions have stopped. Whichever side closes
    first decides the close sent to the other; later closes are ignored.
    """

    def __init__(
        self,
        *,
        client: WebSocket,
        upstream: UpstreamConnection,
        relay_id: str,
    ) -> None:
        self._client = client
        self._upstream = upstream
        self.relay_id = relay_id
        self._closing: asyncio.Task[None] | None = None

        self.client_frames = 0
        self.upstream_frames = 0

    @property
    def closed(self) -> bool:
        return self._closing is not None

    async def run(self) -> None:
        tasks = {
            asyncio.create_task(self._client_to_upstream()),
            asyncio.create_task(self._upstream_to_client()),
        }
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            if isinstance(result, Exception):
                log_event({
                    "event_type": "RELAY_PUMP_FAILED",
                    "relay_id": self.relay_id,
                    "exception": type(result).__name__,
                    "message": str(result),
                })

        if self._closing is None:
            await self._shutdown(initiator="relay", code=None, reason="relay error")
        elif not self._closing.done():
            await self._closing

    async def _client_to_upstream(self) -> None:
        while not self.closed:
            message = await self._client.receive()

            if message["type"] == "websocket.disconnect":
                await self._shutdown(
                    initiator="client",
                    code=message.get("code"),
                    reason=message.get("reason"),
                )
                return

            payload: str | bytes | None = message.get("text")
            if payload is None:
                payload = message.get("bytes")
            if payload is None or self.closed:
                continue

            try:
                await self._upstream.send(payload)
            except ConnectionClosed:
                await self._shutdown(
                    initiator="upstream",
                    code=self._upstream.close_code,
                    reason=self._upstream.close_reason,
                )
                return
            self.client_frames += 1

    async def _upstream_to_client(self) -> None:
        try:
            async for message in self._upstream:
                if self.closed:
                    return

                if isinstance(message, bytes):
                    try:
                        message = message.decode("utf-8")
                    except UnicodeDecodeError:
                        pass

                if isinstance(message, str):
                    self._log_upstream_event(message)
                    send = self._client.send_text(message)
                else:
                    send = self._client.send_bytes(message)

                try:
                    await send
                except (WebSocketDisconnect, RuntimeError, OSError):
                    await self._shutdown(
                        initiator="client",
                        code=None,
                        reason="client send failed",
                    )
                    return
                self.upstream_frames += 1
        except ConnectionClosed:
            pass

        await self._shutdown(
            initiator="upstream",
            code=self._upstream.close_code,
            reason=self._upstream.close_reason,
        )

    async def _shutdown(self, *, initiator: str, code: int | None, reason: str | None) -> None:
        """
        Close the other side once.

        The close runs in its own task so cancelling the pump that
        triggered it cannot interrupt the close handshake.
        """
        if self._closing is None:
            self._closing = asyncio.create_task(self._close_pair(initiator, code, reason))
        await asyncio.shield(self._closing)

    async def _close_pair(self, initiator: str, code: int | None, reason: str | None) -> None:
        if initiator == "client":
            sent_code = propagated_close_code(code, fallback=CLOSE_NORMAL)
            await self._close_upstream(sent_code, truncate_reason(reason))
        elif initiator == "relay":
            sent_code = CLOSE_UPSTREAM_FAILURE
            await self._close_upstream(CLOSE_NORMAL, truncate_reason(reason))
            await self._close_client(sent_code, truncate_reason(reason))
        else:
            sent_code = propagated_close_code(code, fallback=CLOSE_UPSTREAM_FAILURE)
            await self._close_client(sent_code, truncate_reason(reason))

        log_event({
            "event_type": "RELAY_CLOSED",
            "relay_id": self.relay_id,
            "initiator": initiator,
            "code": code,
            "propagated_code": sent_code,
            "reason": reason or "",
            "client_frames": self.client_frames,
            "upstream_frames": self.upstream_frames,
        })

    async def _close_upstream(self, code: int, reason: str) -> None:
        try:
            await self._upstream.close(code, reason)
        except (ConnectionClosed, OSError) as exc:
            log_event({
                "event_type": "RELAY_UPSTREAM_CLOSE_FAILED",
                "relay_id": self.relay_id,
                "exception": type(exc).__name__,
            })

    async def _close_client(self, code: int, reason: str) -> None:
        try:
            await self._client.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            log_event({
                "event_type": "RELAY_CLIENT_CLOSE_FAILED",
                "relay_id": self.relay_id,
                "exception": type(exc).__name__,
            })

    def _log_upstream_event(self, text: str) -> None:
        try:
            event: Any = json.loads(text)
        except ValueError:
            return
        if not isinstance(event, dict) or event.get("type") not in _LOGGED_UPSTREAM_TYPES:
            return

        record: dict[str, Any] = {
            "event_type": "RELAY_UPSTREAM_EVENT",
            "relay_id": self.relay_id,
            "upstream_type": event["type"],
        }
        if event["type"] == "error":
            record["error"] = event.get("error")
        else:
            session = event.get("session")
            if isinstance(session, dict):
                record["modalities"] = session.get("modalities")
        log_event(record)
