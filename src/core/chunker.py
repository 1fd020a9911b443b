"""Lossless splitting of source text into ordered chunks and reassembly."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from src.services.exceptions import ValidationError

LOGGER = logging.getLogger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\r?\n[ \t]*\r?\n\s*")
_SENTENCE_END = re.compile(r"[.!?。？！…]+[\"'”’)\]」』]*\s+")
_WHITESPACE = re.compile(r"\s+")

# (pattern, minimum cut position as a fraction of the window)
_BOUNDARY_RULES: Sequence[Tuple[Pattern[str], float]] = (
    (_PARAGRAPH_BREAK, 0.0),
    (_SENTENCE_END, 0.3),
    (_WHITESPACE, 0.5),
)

_ZERO_WIDTH_JOINER = "\u200d"


def split_into_chunks(text: str, target_size: int) -> List[str]:
    """Split text into ordered chunks of at most ``target_size`` characters.

    The split is lossless: ``"".join(chunks) == text``. Within every window
    the cut prefers, in order, the end of a paragraph break, the end of a
    sentence (when past 30% of the window), the end of a whitespace run
    (when past 50% of the window). Without any of these a hard cut is made,
    moved back so it never detaches combining marks, zero-width joiner
    sequences or a ``\\r\\n`` pair. No chunk exceeds ``target_size``.

    Args:
        text: Source text to split.
        target_size: Maximum characters per chunk.

    Returns:
        Non-empty list of chunk texts.

    Raises:
        ValidationError: If the text is empty or the size is not positive.
    """

    if target_size <= 0:
        raise ValidationError(f"Chunk size must be positive, got {target_size}")
    if not text:
        raise ValidationError("Source text is empty")

    chunks: List[str] = []
    start = 0
    length = len(text)
    while length - start > target_size:
        cut = _find_cut(text, start, start + target_size)
        chunks.append(text[start:cut])
        start = cut
    chunks.append(text[start:])

    LOGGER.debug("Split %d characters into %d chunks (target %d).", length, len(chunks), target_size)
    return chunks


def _find_cut(text: str, start: int, limit: int) -> int:
    window = text[start:limit]
    size = limit - start

    for pattern, min_fraction in _BOUNDARY_RULES:
        cut = _last_match_end(pattern, window)
        if cut and cut >= size * min_fraction and _is_safe_cut(text, start + cut):
            return start + cut

    cut = limit
    while cut > start + 1 and not _is_safe_cut(text, cut):
        cut -= 1
    if cut == start + 1 and not _is_safe_cut(text, cut):
        # A single unbreakable cluster longer than the window
        return limit
    return cut


def _last_match_end(pattern: Pattern[str], window: str) -> Optional[int]:
    last_end: Optional[int] = None
    for match in pattern.finditer(window):
        last_end = match.end()
    return last_end


def _is_safe_cut(text: str, index: int) -> bool:
    """Return True when cutting before ``text[index]`` keeps clusters whole."""
    if index <= 0 or index >= len(text):
        return True
    before, after = text[index - 1], text[index]
    if before == "\r" and after == "\n":
        return False
    if before == _ZERO_WIDTH_JOINER or after == _ZERO_WIDTH_JOINER:
        return False
    if unicodedata.combining(after) or unicodedata.category(after) in ("Mn", "Me", "Mc"):
        return False
    return True


def _split_boundary_whitespace(text: str) -> Tuple[str, str]:
    stripped = text.strip()
    if not stripped:
        return text, ""
    leading = text[: len(text) - len(text.lstrip())]
    trailing = text[len(text.rstrip()):]
    return leading, trailing


def assemble_translation(chunks: Iterable[Tuple[str, str]]) -> str:
    """Reassemble translated chunks in order.

    Args:
        chunks: ``(source_text, translated_text)`` pairs already sorted by
            chunk order.

    Returns:
        Concatenated translation. Each translation is wrapped in the leading
        and trailing whitespace of its source chunk so paragraph breaks that
        fell on chunk boundaries survive.
    """

    parts: List[str] = []
    for source_text, translated_text in chunks:
        leading, trailing = _split_boundary_whitespace(source_text)
        parts.append(f"{leading}{(translated_text or '').strip()}{trailing}")
    return "".join(parts)
