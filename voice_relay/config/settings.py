"""
Environment-based settings for the voice relay.

Values are read from the process environment (optionally populated from a
``.env`` file) into a validated pydantic model. Credentials are optional at
construction time so the application can be imported without them; the server
calls :meth:`RelaySettings.require_credentials` before accepting calls.
"""

import os
from pathlib import Path
from typing import List, Literal, Optional

import dotenv
from pydantic import BaseModel, Field, field_validator

from voice_relay.config.constants import (
    DEFAULT_CHAT_MODEL,
    DEFAULT_GREETING,
    DEFAULT_MAX_IDLE_SECONDS,
    DEFAULT_MAX_REPLY_SECONDS,
    DEFAULT_STT_MODEL,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TTS_MODEL,
    SYNTHESIS_MODE_INCREMENTAL,
)
from voice_relay.errors import ConfigurationError


class RelaySettings(BaseModel):
    """Runtime configuration for the relay and its provider adapters."""

    openai_api_key: Optional[str] = Field(None, description="OpenAI API key")
    deepgram_api_key: Optional[str] = Field(None, description="Deepgram API key")
    server_base_url: Optional[str] = Field(
        None, description="Public base URL Twilio uses to reach this server"
    )
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    openai_model: str = DEFAULT_CHAT_MODEL
    stt_model: str = DEFAULT_STT_MODEL
    tts_model: str = DEFAULT_TTS_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    greeting: str = DEFAULT_GREETING
    synthesis_mode: Literal["incremental", "whole"] = SYNTHESIS_MODE_INCREMENTAL
    max_idle_seconds: float = Field(DEFAULT_MAX_IDLE_SECONDS, gt=0)
    max_reply_seconds: float = Field(DEFAULT_MAX_REPLY_SECONDS, gt=0)

    @field_validator("system_prompt")
    def validate_system_prompt(cls, v):
        """The system turn must carry instructions."""
        if not v.strip():
            raise ValueError("System prompt cannot be empty")
        return v

    @field_validator("log_level")
    def validate_log_level(cls, v):
        return v.upper()

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "RelaySettings":
        """
        Build settings from environment variables.

        Args:
            env_file: Optional .env file to load first; defaults to ./.env when present

        Returns:
            A validated RelaySettings instance
        """
        env_path = env_file or Path(".") / ".env"
        if env_path.exists():
            dotenv.load_dotenv(env_path)

        values = {
            "openai_api_key": os.getenv("OPENAI_API_KEY") or None,
            "deepgram_api_key": os.getenv("DEEPGRAM_API_KEY") or None,
            "server_base_url": os.getenv("SERVER_BASE_URL") or None,
            "host": os.getenv("HOST", "0.0.0.0"),
            "port": os.getenv("PORT", "8000"),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "openai_model": os.getenv("OPENAI_MODEL", DEFAULT_CHAT_MODEL),
            "stt_model": os.getenv("DEEPGRAM_STT_MODEL", DEFAULT_STT_MODEL),
            "tts_model": os.getenv("DEEPGRAM_TTS_MODEL", DEFAULT_TTS_MODEL),
            "system_prompt": os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            "greeting": os.getenv("GREETING", DEFAULT_GREETING),
            "synthesis_mode": os.getenv("SYNTHESIS_MODE", SYNTHESIS_MODE_INCREMENTAL).lower(),
            "max_idle_seconds": os.getenv("MAX_IDLE_SECONDS", str(DEFAULT_MAX_IDLE_SECONDS)),
            "max_reply_seconds": os.getenv("MAX_REPLY_SECONDS", str(DEFAULT_MAX_REPLY_SECONDS)),
        }
        return cls(**values)

    def missing_credentials(self) -> List[str]:
        """Return the names of required environment variables that are not set."""
        missing = []
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        return missing

    def require_credentials(self) -> None:
        """
        Fail fast when provider credentials are missing.

        Raises:
            ConfigurationError: If any required credential is unset
        """
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
