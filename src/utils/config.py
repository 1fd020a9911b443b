"""Application configuration utilities."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


LOGGER = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "anthropic", "mock")

DEFAULT_MODELS = {
    "openai": "gpt-5-mini",
    "anthropic": "claude-sonnet-4-5-20250929",
    "mock": "mock",
}


@dataclass(slots=True)
class Settings:
    """Container for runtime configuration values."""

    llm_provider: str = "openai"
    llm_model: str = DEFAULT_MODELS["openai"]
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    llm_temperature: Optional[float] = None
    llm_max_output_tokens: int = 8192
    max_retries: int = 3
    chunk_size: int = 2000
    max_concurrency: int = 1
    rate_limit_requests_per_second: float = 1.0
    rate_limit_check_interval: float = 0.1
    rate_limit_max_bucket_size: int = 5
    database_url: str = "sqlite+aiosqlite:///./translations.db"
    prompt_dir: str = "prompts"
    max_upload_size_mb: int = 50
    event_queue_size: int = 100

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        LOGGER.warning("Invalid %s=%s; falling back to %d.", name, raw, default)
        return default


def _float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Invalid %s=%s; falling back to %s.", name, raw, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment and from `.env` if available.

    Returns:
        Loaded :class:`Settings` instance.
    """

    load_dotenv()

    provider = (os.getenv("LLM_PROVIDER") or "openai").strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        LOGGER.warning("Unsupported LLM_PROVIDER=%s; falling back to openai.", provider)
        provider = "openai"

    settings = Settings(
        llm_provider=provider,
        llm_model=os.getenv("LLM_MODEL") or DEFAULT_MODELS[provider],
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        llm_temperature=_float_env("LLM_TEMPERATURE", None),
        llm_max_output_tokens=_int_env("LLM_MAX_OUTPUT_TOKENS", 8192),
        max_retries=_int_env("LLM_MAX_RETRIES", 3),
        chunk_size=_int_env("CHUNK_SIZE", 2000),
        max_concurrency=_int_env("TRANSLATION_MAX_CONCURRENCY", 1),
        rate_limit_requests_per_second=_float_env("RATE_LIMIT_RPS", 1.0) or 1.0,
        rate_limit_check_interval=_float_env("RATE_LIMIT_CHECK_INTERVAL", 0.1) or 0.1,
        rate_limit_max_bucket_size=_int_env("RATE_LIMIT_MAX_BUCKET_SIZE", 5),
        database_url=os.getenv("DATABASE_URL") or "sqlite+aiosqlite:///./translations.db",
        prompt_dir=os.getenv("PROMPT_DIR") or "prompts",
        max_upload_size_mb=_int_env("MAX_UPLOAD_SIZE_MB", 50),
        event_queue_size=_int_env("EVENT_QUEUE_SIZE", 100),
    )

    if provider == "openai" and not settings.openai_api_key:
        LOGGER.warning("OPENAI_API_KEY is not set. The app will fail when translating.")
    if provider == "anthropic" and not settings.anthropic_api_key:
        LOGGER.warning("ANTHROPIC_API_KEY is not set. The app will fail when translating.")

    return settings
