"""ChatML parsing for rendered prompt templates.

A rendered template is a sequence of blocks::

    <|im_start|>SYSTEM
    You are a translator.
    <|im_end|>

Tag lines are recognised only when they stand alone on a line (surrounding
whitespace allowed). Outside of blocks only blank lines and ``#`` comments
are permitted.
"""

from __future__ import annotations

from typing import List, Optional

from src.services.models import ChatMessage

START_TAG = "<|im_start|>"
END_TAG = "<|im_end|>"

VALID_ROLES = frozenset({"SYSTEM", "USER", "ASSISTANT", "MODEL", "ALTERNATIVE"})


class ChatMLError(ValueError):
    """Raised when a rendered template is not well-formed ChatML."""

    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


def parse_chatml(text: str) -> List[ChatMessage]:
    """Parse ChatML text into messages.

    Args:
        text: Rendered ChatML string.

    Returns:
        Messages in document order.

    Raises:
        ChatMLError: With every problem found, if any.
    """

    if not text or not text.strip():
        raise ChatMLError(["Empty input"])

    errors: List[str] = []
    messages: List[ChatMessage] = []
    inside_block = False
    role: Optional[str] = None
    content_lines: List[str] = []

    def flush() -> None:
        nonlocal inside_block, role, content_lines
        if inside_block and role is not None:
            messages.append(ChatMessage(role=role, content="\n".join(content_lines)))
        inside_block = False
        role = None
        content_lines = []

    lines = text.replace("\r\n", "\n").split("\n")
    for line_number, raw_line in enumerate(lines, start=1):
        stripped = raw_line.strip()

        if stripped.startswith(START_TAG):
            if inside_block:
                errors.append("Unexpected <|im_start|> before closing previous block.")
                flush()
            role_part = stripped[len(START_TAG):].strip()
            inside_block = True
            content_lines = []
            if role_part in VALID_ROLES:
                role = role_part
            else:
                role = None
                errors.append(f"Invalid role: '{role_part}'")
            continue

        if stripped == END_TAG:
            if inside_block:
                flush()
            else:
                errors.append("Unexpected <|im_end|> without a matching start.")
            continue

        if inside_block:
            content_lines.append(raw_line)
            continue

        if stripped and not stripped.startswith("#"):
            errors.append(
                f"Unexpected text outside of message block at line {line_number}: '{stripped}'. "
                "Prepend '#' to mark comments."
            )

    if inside_block:
        errors.append("Unclosed message block: missing <|im_end|>.")
        flush()

    if not messages:
        errors.append("No valid ChatML messages found.")

    if errors:
        raise ChatMLError(errors)
    return messages


def to_chatml(messages: List[ChatMessage]) -> str:
    """Serialise messages back to ChatML."""
    return "\n".join(f"{START_TAG}{message.role}\n{message.content}\n{END_TAG}" for message in messages)
