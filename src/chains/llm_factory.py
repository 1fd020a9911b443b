"""Chat model construction from settings and the stored translation config."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.rate_limiters import InMemoryRateLimiter

from src.services.models import TranslationConfig
from src.utils.config import Settings

LOGGER = logging.getLogger(__name__)

CHAT_PROVIDERS = ("openai", "anthropic")

SUGGESTED_MODELS: Dict[str, List[str]] = {
    "openai": ["gpt-5.2", "gpt-5-mini"],
    "anthropic": ["claude-sonnet-4-5-20250929", "claude-opus-4-5-20251101", "claude-haiku-4-5"],
    "mock": ["mock"],
}


def get_models_for_provider(provider: str) -> list[str]:
    """Return the suggested models for ``provider`` (empty when unknown)."""
    return list(SUGGESTED_MODELS.get(provider, []))


def create_rate_limiter(settings: Settings) -> InMemoryRateLimiter:
    """Shared limiter for every model built for this process."""
    return InMemoryRateLimiter(
        requests_per_second=settings.rate_limit_requests_per_second,
        check_every_n_seconds=settings.rate_limit_check_interval,
        max_bucket_size=settings.rate_limit_max_bucket_size,
    )


def model_kwargs(settings: Settings, config: Optional[TranslationConfig] = None) -> Dict[str, Any]:
    """Build chat model keyword arguments for the configured provider.

    Values from ``config`` take precedence over the environment defaults in
    ``settings``. Options left unset are omitted so the provider default
    applies. OpenAI has no ``top_k``; it is dropped there.

    Raises:
        ValueError: If the provider has no chat model.
    """
    provider = settings.llm_provider
    if provider not in CHAT_PROVIDERS:
        raise ValueError(f"Provider {provider!r} has no chat model")

    if config is None:
        kwargs: Dict[str, Any] = {"model": settings.llm_model, "max_tokens": settings.llm_max_output_tokens}
        temperature, top_p, top_k = settings.llm_temperature, None, None
    else:
        kwargs = {"model": config.model, "max_tokens": config.max_output_tokens}
        temperature, top_p, top_k = config.temperature, config.top_p, config.top_k

    if temperature is not None:
        kwargs["temperature"] = temperature
    if top_p is not None:
        kwargs["top_p"] = top_p

    api_key = settings.anthropic_api_key if provider == "anthropic" else settings.openai_api_key
    if api_key:
        kwargs["api_key"] = api_key

    if top_k is not None:
        if provider == "anthropic":
            kwargs["top_k"] = top_k
        else:
            LOGGER.debug("Ignoring top_k=%d: not supported by %s", top_k, provider)
    return kwargs


def create_llm(
    settings: Settings,
    config: Optional[TranslationConfig] = None,
    rate_limiter: Optional[InMemoryRateLimiter] = None,
) -> BaseChatModel:
    """Create the chat model for ``settings.llm_provider``.

    Args:
        settings: Provider, API keys and environment defaults.
        config: Stored translation config; overrides the model options.
        rate_limiter: Limiter to attach. A new one is built from settings if omitted.

    Returns:
        Configured LangChain chat model instance.
    """
    kwargs = model_kwargs(settings, config)
    kwargs["rate_limiter"] = rate_limiter if rate_limiter is not None else create_rate_limiter(settings)

    if settings.llm_provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        LOGGER.debug("Creating ChatAnthropic with model=%s, max_tokens=%d", kwargs["model"], kwargs["max_tokens"])
        return ChatAnthropic(**kwargs)

    from langchain_openai import ChatOpenAI

    LOGGER.debug("Creating ChatOpenAI with model=%s", kwargs["model"])
    return ChatOpenAI(**kwargs)
