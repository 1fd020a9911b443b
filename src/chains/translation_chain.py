"""LangChain-backed text generation for chunk translation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from src.chains.llm_factory import create_llm, create_rate_limiter
from src.services.exceptions import ProviderError
from src.services.models import ChatMessage, GenerationResult, RenderedPrompt, TranslationConfig
from src.utils.config import Settings
from src.utils.helpers import approximate_tokens, strip_html_comments

LOGGER = logging.getLogger(__name__)


def to_langchain_messages(messages: List[ChatMessage]) -> List[BaseMessage]:
    """Convert ChatML messages into LangChain chat messages.

    All SYSTEM blocks are merged into one leading system message; USER maps
    to a human turn and every other role to an assistant turn.
    """

    system_parts = [m.content for m in messages if m.role == "SYSTEM"]
    converted: List[BaseMessage] = []
    if system_parts:
        converted.append(SystemMessage(content="\n\n".join(system_parts)))
    for message in messages:
        if message.role == "SYSTEM":
            continue
        if message.role == "USER":
            converted.append(HumanMessage(content=message.content))
        else:
            converted.append(AIMessage(content=message.content))
    return converted


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    # Anthropic may return a list of content blocks
    parts = []
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif isinstance(block, str):
            parts.append(block)
    return "".join(parts)


def _total_tokens(response: Any) -> Optional[int]:
    usage = getattr(response, "usage_metadata", None) or {}
    total = usage.get("total_tokens")
    return int(total) if total is not None else None


class LangChainGenerator:
    """Translate a rendered prompt with a LangChain chat model."""

    def __init__(
        self,
        llm: BaseChatModel,
        max_retries: int = 3,
        llm_builder: Optional[Callable[[TranslationConfig], BaseChatModel]] = None,
    ) -> None:
        self._llm = llm
        self._max_retries = max(1, max_retries)
        self._llm_builder = llm_builder

    def configure(self, config: TranslationConfig) -> None:
        """Swap in a model built for ``config``; calls in flight keep the old one."""
        if self._llm_builder is None:
            return
        self._llm = self._llm_builder(config)
        LOGGER.info("Chat model reconfigured (model=%s)", config.model)

    async def generate(self, prompt: RenderedPrompt) -> GenerationResult:
        """Invoke the model with retry logic to mitigate transient API issues.

        Raises:
            ProviderError: When the model keeps failing or returns nothing.
        """

        messages = to_langchain_messages(prompt.messages)
        llm = self._llm
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                reraise=True,
            ):
                with attempt:
                    response = await llm.ainvoke(messages)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Model invocation failed: %s", exc)
            raise ProviderError(str(exc) or type(exc).__name__, code=type(exc).__name__) from exc

        text = strip_html_comments(_response_text(response))
        if not text:
            raise ProviderError("Model returned an empty translation", code="EMPTY_RESPONSE")
        return GenerationResult(text=text, token_usage=_total_tokens(response))


class MockGenerator:
    """Offline generator that echoes the last user message.

    Used for local development (``LLM_PROVIDER=mock``) and tests.
    """

    def __init__(self, prefix: str = "[translated] ", delay: float = 0.0) -> None:
        self._prefix = prefix
        self._delay = delay

    async def generate(self, prompt: RenderedPrompt) -> GenerationResult:
        if self._delay:
            await asyncio.sleep(self._delay)
        user_messages = [m.content for m in prompt.messages if m.role == "USER"]
        source = user_messages[-1] if user_messages else ""
        text = f"{self._prefix}{source.strip()}"
        return GenerationResult(text=text, token_usage=approximate_tokens(source))


def create_generator(settings: Settings, config: Optional[TranslationConfig] = None):
    """Return the generator configured by ``LLM_PROVIDER``.

    LangChain generators rebuild their chat model whenever the translation
    config changes; all rebuilt models share one rate limiter.
    """
    if settings.llm_provider == "mock":
        LOGGER.info("Using mock generator")
        return MockGenerator()

    rate_limiter = create_rate_limiter(settings)

    def build_llm(current: Optional[TranslationConfig]) -> BaseChatModel:
        return create_llm(settings, current, rate_limiter=rate_limiter)

    model = config.model if config else settings.llm_model
    LOGGER.info("Using %s generator with model %s", settings.llm_provider, model)
    return LangChainGenerator(build_llm(config), max_retries=settings.max_retries, llm_builder=build_llm)
