"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (OpenAI client, upstream connector)
- Register routes
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI

from config import AppConfig
from observability import logger
from server.relay import connect_upstream
from server.routes import register_routes


def create_app(config: AppConfig | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    A missing OpenAI key does not prevent startup: the relay rejects each
    connection and the pipeline routes answer 500 instead.
    """
    config = config or AppConfig.load_from_env()
    logger.configure(enabled=config.enable_json_logs)

    app = FastAPI(title="Realtime Voice Relay")

    app.state.config = config
    app.state.upstream_connector = connect_upstream

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Create OpenAI client ONCE per process
    app.state.openai_client = build_openai_client(config)

    # Routes
    register_routes(app)

    return app


def build_openai_client(config: AppConfig) -> AsyncOpenAI | None:
    if not config.openai_api_key:
        return None
    return AsyncOpenAI(api_key=config.openai_api_key)
