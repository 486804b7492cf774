"""
Lumora configuration

Settings are read from the environment (and a local .env file):

- LUMORA_PROVIDER        -> openrouter (live) or gemini (not wired)
- OPENROUTER_API_KEY     -> bearer credential for OpenRouter
- LUMORA_MODEL           -> model identifier sent to the provider
- OPENROUTER_BASE_URL    -> chat-completion endpoint base
- LUMORA_APP_URL         -> sent as HTTP-Referer
- LUMORA_APP_TITLE       -> sent as X-Title
- LUMORA_REQUEST_TIMEOUT -> seconds; empty means no timeout
- LOGLEVEL               -> logging level (default INFO)
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from lumora_types import AppConfig, DEFAULT_MODEL, LLMProvider

load_dotenv()


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


class Settings(BaseModel):
    """Process-wide settings. Values are read when the object is created."""

    provider: str = Field(default_factory=lambda: _env("LUMORA_PROVIDER", LLMProvider.OPENROUTER.value))
    openrouter_api_key: str = Field(default_factory=lambda: _env("OPENROUTER_API_KEY"), repr=False)
    model: str = Field(default_factory=lambda: _env("LUMORA_MODEL", DEFAULT_MODEL))
    openrouter_base_url: str = Field(
        default_factory=lambda: _env("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    )
    app_url: str = Field(default_factory=lambda: _env("LUMORA_APP_URL", "http://localhost:8501"))
    app_title: str = Field(default_factory=lambda: _env("LUMORA_APP_TITLE", "Lumora"))
    request_timeout: Optional[float] = Field(default_factory=lambda: _optional_float("LUMORA_REQUEST_TIMEOUT"))
    log_level: str = Field(default_factory=lambda: _env("LOGLEVEL", "INFO").upper())

    def default_app_config(self) -> AppConfig:
        """Initial provider config for a new conversation."""
        try:
            provider = LLMProvider(self.provider.lower())
        except ValueError:
            logging.getLogger(__name__).warning(
                f"Unknown LUMORA_PROVIDER '{self.provider}', falling back to openrouter"
            )
            provider = LLMProvider.OPENROUTER
        return AppConfig(provider=provider, api_key=self.openrouter_api_key, model=self.model)


def configure_logging(settings: Optional[Settings] = None):
    level = (settings or Settings()).log_level
    logging.basicConfig(level=level)


settings = Settings()
