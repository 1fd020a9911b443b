"""Render a prompt template for one chunk and parse it into messages."""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

from jinja2 import Template, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from src.chains.template_store import PromptTemplate
from src.core.chatml import ChatMLError, parse_chatml
from src.services.models import ChatMessage, Chunk, ChunkStatus, RenderedPrompt, Session
from src.utils.glossary_loader import GlossaryLoader, parse_custom_dictionary

LOGGER = logging.getLogger(__name__)

_ENVIRONMENT = SandboxedEnvironment(keep_trailing_newline=True, autoescape=False)

# Templates mentioning any of these render the dictionary themselves
_GLOSSARY_REFERENCE = re.compile(r"\b(glossary|dictionary|custom_dict)\b")

GLOSSARY_HEADER = "Glossary (always use these translations):"


class PromptBuildError(ValueError):
    """Raised when a template cannot be rendered into valid ChatML."""


@lru_cache(maxsize=64)
def _compile(source: str) -> Template:
    return _ENVIRONMENT.from_string(source)


class ChunkContext:
    """Template helpers bound to the chunk being translated."""

    def __init__(self, current: Chunk, chunks: Sequence[Chunk]) -> None:
        self._current_order = current.order
        self._by_order = {chunk.order: chunk for chunk in chunks}

    def _at(self, offset: Any) -> Optional[Chunk]:
        try:
            step = int(offset)
        except (TypeError, ValueError):
            step = 0
        return self._by_order.get(self._current_order + step)

    def chunk(self, offset: Any = 0, field: str = "source") -> str:
        target = self._at(offset)
        if target is None:
            return ""
        if field == "translated":
            return target.translated_text or ""
        if field == "status":
            return target.status.value
        return target.source_text

    def has_chunk(self, offset: Any = 0) -> bool:
        return self._at(offset) is not None

    def has_translated(self, offset: Any = 0) -> bool:
        target = self._at(offset)
        return target is not None and target.status == ChunkStatus.COMPLETED and target.translated_text is not None

    def chunk_count(self) -> int:
        return len(self._by_order)

    def current_order(self) -> int:
        return self._current_order

    def is_first_chunk(self) -> bool:
        return self._current_order == 0

    def is_last_chunk(self) -> bool:
        return bool(self._by_order) and self._current_order == max(self._by_order)


def build_context(
    template: PromptTemplate,
    session: Session,
    chunk: Chunk,
    chunks: Sequence[Chunk],
    glossary: Dict[str, str],
) -> Dict[str, Any]:
    """Assemble the variables visible to a prompt template."""

    helpers = ChunkContext(chunk, chunks)
    previous = next(
        (
            c
            for c in chunks
            if c.order == chunk.order - 1 and c.status == ChunkStatus.COMPLETED and c.translated_text is not None
        ),
        None,
    )
    return {
        "session": {
            "id": session.id,
            "title": session.title,
            "memo": session.memo,
            "custom_dict": session.custom_dict,
        },
        "current": {"order": chunk.order, "source_text": chunk.source_text},
        "previous": (
            {"order": previous.order, "source_text": previous.source_text, "translated_text": previous.translated_text}
            if previous
            else None
        ),
        "source_language": template.source_language,
        "target_language": template.target_language,
        "glossary": GlossaryLoader.format_glossary_terms(glossary),
        "dictionary": glossary,
        "has_previous": lambda: previous is not None,
        "chunk": helpers.chunk,
        "has_chunk": helpers.has_chunk,
        "has_translated": helpers.has_translated,
        "chunk_count": helpers.chunk_count,
        "current_order": helpers.current_order,
        "is_first_chunk": helpers.is_first_chunk,
        "is_last_chunk": helpers.is_last_chunk,
    }


def inject_glossary(messages: List[ChatMessage], glossary: Dict[str, str]) -> List[ChatMessage]:
    """Append the glossary to the first system message, adding one if needed."""
    block = f"{GLOSSARY_HEADER}\n{GlossaryLoader.format_glossary_terms(glossary)}"
    for index, message in enumerate(messages):
        if message.role == "SYSTEM":
            content = f"{message.content.rstrip()}\n\n{block}" if message.content.strip() else block
            return [*messages[:index], ChatMessage(role="SYSTEM", content=content), *messages[index + 1:]]
    return [ChatMessage(role="SYSTEM", content=block), *messages]


def build_prompt(
    template: PromptTemplate,
    session: Session,
    chunk: Chunk,
    chunks: Sequence[Chunk],
) -> RenderedPrompt:
    """Render ``template`` for ``chunk`` and parse the result.

    The session's custom dictionary is parsed on every call; malformed lines
    are skipped. When the template does not reference the glossary itself,
    non-empty dictionaries are injected into the system prompt.

    Args:
        template: Prompt template selected for the run.
        session: Owning session.
        chunk: Chunk being translated.
        chunks: All chunks of the session, used by the context helpers.

    Returns:
        Messages ready for the generator.

    Raises:
        PromptBuildError: On template syntax, render or ChatML errors.
    """

    glossary = parse_custom_dictionary(session.custom_dict)
    context = build_context(template, session, chunk, chunks, glossary)
    try:
        rendered = _compile(template.content).render(**context)
    except TemplateError as exc:
        raise PromptBuildError(f"Template '{template.id}' failed to render: {exc}") from exc

    try:
        messages = parse_chatml(rendered)
    except ChatMLError as exc:
        raise PromptBuildError(f"Template '{template.id}' produced invalid ChatML: {exc}") from exc

    if glossary and not _GLOSSARY_REFERENCE.search(template.content):
        messages = inject_glossary(messages, glossary)

    LOGGER.debug("Built %d prompt messages for chunk %s (order %d)", len(messages), chunk.id, chunk.order)
    return RenderedPrompt(messages=messages)
