"""Error taxonomy for the translation orchestration layer.

Kept in its own module so the repository, provider adapters and the
orchestrator can raise the same errors without importing each other.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TranslationError(Exception):
    """Base error with an optional machine-readable code and details."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ValidationError(TranslationError):
    """Malformed input such as blank source text or an invalid page size."""


class InvalidStateError(TranslationError):
    """Operation is not legal in the current session or chunk status."""


class NotFoundError(TranslationError):
    """Unknown session, chunk or prompt template id."""


class ConflictError(TranslationError):
    """Entity is no longer in the expected state (lost a concurrent claim)."""


class ProviderError(TranslationError):
    """Upstream generation failure, recorded on the chunk that caused it."""
