# backend/protocol/realtime.py
"""
Realtime control message helpers.

Outbound (client -> upstream, JSON text frames):
    session.update              capability negotiation
    input_audio_buffer.append   base64 PCM16 audio
    input_audio_buffer.commit   finalize current input
    response.create             generate a response

Inbound (upstream -> client): one JSON object per frame with a "type" key
from InboundEventType. Unknown types are passed through to the caller,
which ignores them.

Usage example:

    event = decode_event(raw)
    if event["type"] == InboundEventType.SESSION_UPDATED:
        audio_on = MODALITY_AUDIO in modalities_of(event)
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from audio.frames import AudioChunk
from constants import (
    AUDIO_FORMAT_PCM16,
    DEFAULT_VOICE,
    MODALITY_AUDIO,
    MODALITY_TEXT,
    RESPONSE_MODALITIES,
)


# -------------------------
# Exceptions
# -------------------------

class RealtimeProtocolError(Exception):
    """Inbound frame is not a decodable realtime event."""


# -------------------------
# Vocabulary
# -------------------------

class InboundEventType(str, Enum):
    """Inbound event types the session understands."""
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    TRANSCRIPT_DELTA = "response.audio_transcript.delta"
    TRANSCRIPT_DONE = "response.audio_transcript.done"
    CONTENT_DELTA = "response.content.delta"
    CONTENT_DONE = "response.content.done"
    AUDIO_DELTA = "response.audio.delta"
    AUDIO_DONE = "response.audio.done"
    SPEECH_STARTED = "input_audio_buffer.speech_started"
    SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
    ERROR = "error"


# -------------------------
# Outbound builders
# -------------------------

def session_update_text_only() -> dict[str, Any]:
    """First negotiation step: the smallest accepted configuration."""
    return {
        "type": "session.update",
        "session": {"modalities": [MODALITY_TEXT]},
    }


def session_update_with_audio(*, voice: str = DEFAULT_VOICE) -> dict[str, Any]:
    """Second negotiation step: add the audio modality and PCM16 formats."""
    return {
        "type": "session.update",
        "session": {
            "modalities": [MODALITY_TEXT, MODALITY_AUDIO],
            "voice": voice,
            "input_audio_format": AUDIO_FORMAT_PCM16,
            "output_audio_format": AUDIO_FORMAT_PCM16,
        },
    }


def audio_append(chunk: AudioChunk) -> dict[str, Any]:
    return {
        "type": "input_audio_buffer.append",
        "audio": chunk.to_base64(),
    }


def audio_commit() -> dict[str, Any]:
    return {"type": "input_audio_buffer.commit"}


def response_create() -> dict[str, Any]:
    return {
        "type": "response.create",
        "response": {"modalities": list(RESPONSE_MODALITIES)},
    }


def encode_message(message: dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


# -------------------------
# Inbound parsing
# -------------------------

def decode_event(raw: str | bytes) -> dict[str, Any]:
    """
    Parse one inbound frame.

    Binary frames carrying UTF-8 text are accepted.

    Raises:
        RealtimeProtocolError on undecodable bytes, malformed JSON,
        a non-object payload, or a missing "type".
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise RealtimeProtocolError(f"binary frame is not UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RealtimeProtocolError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise RealtimeProtocolError("event is not a JSON object")

    if not isinstance(data.get("type"), str):
        raise RealtimeProtocolError("event has no type")

    return data


def modalities_of(event: dict[str, Any]) -> list[str]:
    """session.modalities of a session.created / session.updated event."""
    session = event.get("session")
    if not isinstance(session, dict):
        return []
    modalities = session.get("modalities")
    if not isinstance(modalities, list):
        return []
    return [m for m in modalities if isinstance(m, str)]


def delta_text(event: dict[str, Any], key: str) -> str:
    """
    Incremental text of a *.delta event.

    The delta is either a plain string or an object holding `key`.
    """
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    if isinstance(delta, dict):
        value = delta.get(key)
        if isinstance(value, str):
            return value
    return ""


def done_text(event: dict[str, Any], key: str) -> str | None:
    """
    Final text of a *.done event, top level first, then under "item".

    None means the event carried no text (keep what was accumulated).
    """
    value = event.get(key)
    if isinstance(value, str):
        return value
    item = event.get("item")
    if isinstance(item, dict):
        value = item.get(key)
        if isinstance(value, str):
            return value
    return None
