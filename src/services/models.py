"""Data models for the translation service."""

from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(str, Enum):
    """Translation session lifecycle status."""

    DRAFT = "draft"
    READY = "ready"
    TRANSLATING = "translating"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkStatus(str, Enum):
    """Per-chunk execution status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Chunks a bulk run picks up
RUNNABLE_CHUNK_STATUSES = frozenset({ChunkStatus.PENDING, ChunkStatus.FAILED})


@dataclass
class Session:
    """A unit of work: source text, its chunks and the assembled result."""

    title: str
    id: str = field(default_factory=new_id)
    memo: Optional[str] = None
    custom_dict: Optional[str] = None
    original_file_name: Optional[str] = None
    source_text: Optional[str] = None
    translated_text: Optional[str] = None
    status: SessionStatus = SessionStatus.DRAFT
    total_chunks: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "memo": self.memo,
            "customDict": self.custom_dict,
            "originalFileName": self.original_file_name,
            "sourceText": self.source_text,
            "translatedText": self.translated_text,
            "status": self.status.value,
            "totalChunks": self.total_chunks,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class Chunk:
    """One ordered unit of source text scheduled for translation."""

    session_id: str
    order: int
    source_text: str
    id: str = field(default_factory=new_id)
    translated_text: Optional[str] = None
    status: ChunkStatus = ChunkStatus.PENDING
    error_message: Optional[str] = None
    retry_count: int = 0
    token_count: Optional[int] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "order": self.order,
            "sourceText": self.source_text,
            "translatedText": self.translated_text,
            "status": self.status.value,
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
            "tokenCount": self.token_count,
            "processingTime": self.processing_time_ms,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class Progress:
    """Aggregate counts derived from chunk statuses."""

    completed: int = 0
    failed: int = 0
    pending: int = 0
    total: int = 0
    percent: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class SessionProgress:
    """Progress snapshot of one session."""

    session_id: str
    status: SessionStatus
    progress: Progress

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status.value,
            "totalChunks": self.progress.total,
            "completedChunks": self.progress.completed,
            "failedChunks": self.progress.failed,
            "pendingChunks": self.progress.pending,
            "percent": self.progress.percent,
        }


@dataclass
class ChunkPage:
    """One page of a session's chunk listing."""

    chunks: List[Chunk]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "totalPages": self.total_pages,
            },
        }


@dataclass
class IngestResult:
    """Result of splitting source text into a session's chunks."""

    session: Session
    total_chunks: int
    original_file_name: Optional[str]
    file_size: int
    char_count: int


@dataclass
class TranslationConfig:
    """Runtime-editable translation options shared by every session.

    ``chunk_size`` is the default for new ingests; the remaining fields are
    handed to the chat model.
    """

    model: str
    chunk_size: int = 2000
    temperature: Optional[float] = None
    max_output_tokens: int = 8192
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "chunkSize": self.chunk_size,
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
            "topP": self.top_p,
            "topK": self.top_k,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class ChatMessage:
    """A single role-tagged prompt message."""

    role: str  # SYSTEM, USER, ASSISTANT, MODEL, ALTERNATIVE
    content: str


@dataclass(frozen=True)
class RenderedPrompt:
    """Prompt ready to hand to a generation provider."""

    messages: List[ChatMessage]


@dataclass(frozen=True)
class GenerationResult:
    """Translated text returned by a provider."""

    text: str
    token_usage: Optional[int] = None


class TextGenerator(Protocol):
    """Generation capability consumed by the orchestrator."""

    async def generate(self, prompt: RenderedPrompt) -> GenerationResult:
        """Return generated text or raise :class:`ProviderError`."""
        ...
