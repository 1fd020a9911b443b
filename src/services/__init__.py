"""Service layer for chunked translation sessions.

The orchestrator lives in :mod:`src.services.orchestrator` and is imported
from there; it depends on ``src.core`` and ``src.chains``, which in turn use
the models and errors exported here.
"""

from src.services.event_bus import EventBus, EventStream
from src.services.events import SessionEvent
from src.services.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ProviderError,
    TranslationError,
    ValidationError,
)
from src.services.models import (
    Chunk,
    ChunkPage,
    ChunkStatus,
    GenerationResult,
    IngestResult,
    Progress,
    RenderedPrompt,
    Session,
    SessionProgress,
    SessionStatus,
)
from src.services.progress import calculate_progress
from src.services.repository import InMemoryRepository, Repository
from src.services.run_registry import Run, RunRegistry

__all__ = [
    "Chunk",
    "ChunkPage",
    "ChunkStatus",
    "ConflictError",
    "EventBus",
    "EventStream",
    "GenerationResult",
    "IngestResult",
    "InMemoryRepository",
    "InvalidStateError",
    "NotFoundError",
    "Progress",
    "ProviderError",
    "RenderedPrompt",
    "Repository",
    "Run",
    "RunRegistry",
    "Session",
    "SessionEvent",
    "SessionProgress",
    "SessionStatus",
    "TranslationError",
    "ValidationError",
    "calculate_progress",
]
