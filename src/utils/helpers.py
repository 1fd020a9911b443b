"""General helper functions for the translation server."""

from __future__ import annotations

import re

_HTML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)


def strip_html_comments(text: str) -> str:
    """Remove ``<!-- ... -->`` blocks that models use for notes, then trim.

    Args:
        text: Raw model output.

    Returns:
        Cleaned translation text.
    """

    return _HTML_COMMENT.sub("", text or "").strip()


def approximate_tokens(text: str) -> int:
    """Rudimentary character-based token estimate."""
    if not text:
        return 0
    return max(1, len(text) // 4)
