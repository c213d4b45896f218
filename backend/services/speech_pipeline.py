"""
Transcribe-then-chat pipeline.

The non-realtime fallback path: one request transcribes a recorded clip,
another asks the chat model for a reply. Both go through a shared
AsyncOpenAI client built once per process.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Iterable, Mapping

from openai import AsyncOpenAI

from observability import metrics
from observability.logger import log_event

TRANSCRIBE_FILENAME = "audio.webm"
TRANSCRIBE_MIME_TYPE = "audio/webm"


class InvalidAudioError(ValueError):
    """The submitted audio payload is missing or not valid base64."""


def decode_audio_payload(audio_base64: str | None) -> bytes:
    if not audio_base64:
        raise InvalidAudioError("No audio data provided")
    try:
        audio = base64.b64decode(audio_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidAudioError("Audio data is not valid base64") from e
    if not audio:
        raise InvalidAudioError("No audio data provided")
    return audio


async def transcribe_audio(
    client: AsyncOpenAI,
    *,
    audio_base64: str | None,
    model: str,
) -> str:
    """
    Transcribe a base64-encoded recording.

    Raises:
        InvalidAudioError for a missing or undecodable payload.
        openai.OpenAIError when the upstream call fails.
    """
    audio = decode_audio_payload(audio_base64)

    with metrics.timed("transcribe", details={"bytes": len(audio), "model": model}):
        result = await client.audio.transcriptions.create(
            model=model,
            file=(TRANSCRIBE_FILENAME, audio, TRANSCRIBE_MIME_TYPE),
        )

    text = result.text
    log_event({
        "event_type": "TRANSCRIPTION_DONE",
        "model": model,
        "audio_bytes": len(audio),
        "chars": len(text),
    })
    return text


async def generate_reply(
    client: AsyncOpenAI,
    *,
    messages: Iterable[Mapping[str, Any]],
    model: str,
    temperature: float,
) -> str:
    """Single non-streaming chat completion. Returns "" for an empty choice."""
    payload = [dict(m) for m in messages]

    with metrics.timed("chat_completion", details={"messages": len(payload), "model": model}):
        completion = await client.chat.completions.create(
            model=model,
            messages=payload,  # type: ignore[arg-type]
            temperature=temperature,
        )

    content = completion.choices[0].message.content if completion.choices else None
    reply = content or ""
    log_event({
        "event_type": "CHAT_REPLY_DONE",
        "model": model,
        "messages": len(payload),
        "chars": len(reply),
    })
    return reply
