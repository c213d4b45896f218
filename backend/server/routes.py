"""
Route registration.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire the realtime relay to its WebSocket path
- Pull config, the upstream connector and the OpenAI client from app.state
"""

from __future__ import annotations

import asyncio
from typing import Literal

from fastapi import FastAPI, HTTPException, WebSocket
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel
from websockets.exceptions import WebSocketException

from config import AppConfig
from constants import CLOSE_MISSING_CREDENTIAL, CLOSE_UPSTREAM_FAILURE
from observability import metrics
from observability.logger import log_event
from server.relay import RelaySession, UpstreamConnector, new_relay_id, upstream_headers
from services.speech_pipeline import InvalidAudioError, generate_reply, transcribe_audio

MISSING_KEY_DETAIL = "OpenAI API key not configured"


# ------------------------------------------------------------------
# Request / response models
# ------------------------------------------------------------------

class TranscribeRequest(BaseModel):
    audioBase64: str | None = None


class TranscribeResponse(BaseModel):
    transcription: str


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class RespondRequest(BaseModel):
    messages: list[ChatMessage] | None = None


class RespondResponse(BaseModel):
    response: str


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    config: AppConfig = app.state.config

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.websocket(config.relay_path)
    async def realtime_relay(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()
        relay_id = new_relay_id()

        if not config.openai_api_key:
            log_event({
                "event_type": "RELAY_REJECTED",
                "relay_id": relay_id,
                "reason": "missing_credential",
            })
            await ws.close(code=CLOSE_MISSING_CREDENTIAL, reason=MISSING_KEY_DETAIL)
            return

        connector: UpstreamConnector = app.state.upstream_connector
        try:
            with metrics.timed("upstream_connect", session_id=relay_id):
                upstream = await connector(
                    config.upstream_url,
                    upstream_headers(config.openai_api_key),
                )
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            log_event({
                "event_type": "RELAY_UPSTREAM_CONNECT_FAILED",
                "relay_id": relay_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await ws.close(code=CLOSE_UPSTREAM_FAILURE, reason="Upstream connection failed")
            return

        log_event({
            "event_type": "RELAY_OPENED",
            "relay_id": relay_id,
            "model": config.realtime_model,
        })
        await RelaySession(client=ws, upstream=upstream, relay_id=relay_id).run()

    @app.post("/transcribe", response_model=TranscribeResponse)
    async def transcribe(body: TranscribeRequest) -> TranscribeResponse: # pyright: ignore[reportUnusedFunction]
        client = _require_client(app)
        try:
            text = await transcribe_audio(
                client,
                audio_base64=body.audioBase64,
                model=config.transcribe_model,
            )
        except InvalidAudioError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except OpenAIError as exc:
            _log_upstream_failure("transcribe", exc)
            raise HTTPException(
                status_code=502,
                detail=f"Failed to transcribe audio: {exc}",
            ) from exc
        return TranscribeResponse(transcription=text)

    @app.post("/respond", response_model=RespondResponse)
    async def respond(body: RespondRequest) -> RespondResponse: # pyright: ignore[reportUnusedFunction]
        client = _require_client(app)
        if not body.messages:
            raise HTTPException(status_code=400, detail="Invalid messages format")
        try:
            reply = await generate_reply(
                client,
                messages=[m.model_dump() for m in body.messages],
                model=config.chat_model,
                temperature=config.chat_temperature,
            )
        except OpenAIError as exc:
            _log_upstream_failure("respond", exc)
            raise HTTPException(
                status_code=502,
                detail=f"Failed to generate response: {exc}",
            ) from exc
        return RespondResponse(response=reply)


def _require_client(app: FastAPI) -> AsyncOpenAI:
    client: AsyncOpenAI | None = app.state.openai_client
    if client is None:
        raise HTTPException(status_code=500, detail=MISSING_KEY_DETAIL)
    return client


def _log_upstream_failure(route: str, exc: Exception) -> None:
    log_event({
        "event_type": "PIPELINE_UPSTREAM_FAILED",
        "route": route,
        "exception": type(exc).__name__,
        "message": str(exc),
    })
