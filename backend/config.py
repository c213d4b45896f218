"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No relay logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the relay and the speech pipeline routes.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3001

    # ------------------------------------------------------------------
    # Upstream realtime service
    # ------------------------------------------------------------------

    openai_api_key: str | None = None
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-realtime-preview-2024-10-01"
    relay_path: str = "/realtime-proxy"

    # ------------------------------------------------------------------
    # Transcribe-then-chat pipeline
    # ------------------------------------------------------------------

    chat_model: str = "gpt-4o"
    chat_temperature: float = 0.8
    transcribe_model: str = "whisper-1"

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool = True

    @property
    def upstream_url(self) -> str:
        """Upstream realtime endpoint with the model selector attached."""
        separator = "&" if "?" in self.realtime_url else "?"
        return f"{self.realtime_url}{separator}model={self.realtime_model}"

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        The upstream credential is optional here: its absence is reported
        per connection by the relay rather than at startup.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3001")),

            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            realtime_url=os.environ.get("REALTIME_URL", "wss://api.openai.com/v1/realtime"),
            realtime_model=os.environ.get(
                "REALTIME_MODEL", "gpt-4o-realtime-preview-2024-10-01"
            ),
            relay_path=os.environ.get("RELAY_PATH", "/realtime-proxy"),

            chat_model=os.environ.get("CHAT_MODEL", "gpt-4o"),
            chat_temperature=float(os.environ.get("CHAT_TEMPERATURE", "0.8")),
            transcribe_model=os.environ.get("TRANSCRIBE_MODEL", "whisper-1"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )
