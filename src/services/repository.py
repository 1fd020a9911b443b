"""Persistence boundary for sessions and chunks."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Collection, Dict, List, Optional, Protocol, Sequence

from src.services.exceptions import ConflictError, NotFoundError
from src.services.models import Chunk, ChunkStatus, Session, SessionStatus, TranslationConfig, utcnow

LOGGER = logging.getLogger(__name__)

SESSION_FIELDS = frozenset(
    {
        "title",
        "memo",
        "custom_dict",
        "original_file_name",
        "source_text",
        "translated_text",
        "status",
        "total_chunks",
    }
)
CHUNK_FIELDS = frozenset(
    {
        "translated_text",
        "status",
        "error_message",
        "retry_count",
        "token_count",
        "processing_time_ms",
    }
)


def check_fields(fields: Dict[str, Any], allowed: Collection[str]) -> None:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")


class Repository(Protocol):
    """Async storage operations used by the orchestrator.

    Conditional writes take ``expected_statuses``: the write only happens if
    the stored status is one of them, otherwise :class:`ConflictError` is
    raised. Missing rows raise :class:`NotFoundError`.
    """

    async def create_session(self, session: Session) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def list_sessions(self, status: Optional[SessionStatus] = None) -> List[Session]: ...

    async def update_session(
        self,
        session_id: str,
        expected_statuses: Optional[Collection[SessionStatus]] = None,
        **fields: Any,
    ) -> Session: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def replace_chunks(self, session_id: str, texts: Sequence[str], **session_fields: Any) -> Session: ...

    async def list_chunks(
        self,
        session_id: str,
        status: Optional[ChunkStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Chunk]: ...

    async def count_chunks(self, session_id: str, status: Optional[ChunkStatus] = None) -> int: ...

    async def get_chunk(self, chunk_id: str) -> Optional[Chunk]: ...

    async def claim_chunk(self, chunk_id: str, from_statuses: Collection[ChunkStatus]) -> Chunk: ...

    async def update_chunk(
        self,
        chunk_id: str,
        expected_statuses: Optional[Collection[ChunkStatus]] = None,
        **fields: Any,
    ) -> Chunk: ...

    async def get_translation_config(self) -> Optional[TranslationConfig]: ...

    async def save_translation_config(self, config: TranslationConfig) -> TranslationConfig: ...


class InMemoryRepository:
    """Dictionary-backed repository for tests and single-process use.

    Every operation completes without awaiting, so check-and-write pairs are
    atomic on the event loop. Callers receive copies, never stored objects.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._chunks: Dict[str, Chunk] = {}
        self._session_chunks: Dict[str, List[str]] = {}
        self._config: Optional[TranslationConfig] = None

    async def create_session(self, session: Session) -> Session:
        self._sessions[session.id] = replace(session)
        self._session_chunks[session.id] = []
        return replace(session)

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    async def list_sessions(self, status: Optional[SessionStatus] = None) -> List[Session]:
        sessions = [s for s in self._sessions.values() if status is None or s.status == status]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return [replace(s) for s in sessions]

    async def update_session(
        self,
        session_id: str,
        expected_statuses: Optional[Collection[SessionStatus]] = None,
        **fields: Any,
    ) -> Session:
        check_fields(fields, SESSION_FIELDS)
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", code="SESSION_NOT_FOUND")
        if expected_statuses is not None and session.status not in expected_statuses:
            raise ConflictError(
                f"Session {session_id} is {session.status.value}",
                code="SESSION_STATE_CONFLICT",
                details={"status": session.status.value},
            )
        for name, value in fields.items():
            setattr(session, name, value)
        session.updated_at = utcnow()
        return replace(session)

    async def delete_session(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        chunk_ids = self._session_chunks.pop(session_id, [])
        for chunk_id in chunk_ids:
            self._chunks.pop(chunk_id, None)
        LOGGER.debug("Deleted session %s with %d chunks", session_id, len(chunk_ids))
        return True

    async def replace_chunks(self, session_id: str, texts: Sequence[str], **session_fields: Any) -> Session:
        check_fields(session_fields, SESSION_FIELDS)
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", code="SESSION_NOT_FOUND")

        for chunk_id in self._session_chunks.get(session_id, []):
            self._chunks.pop(chunk_id, None)
        new_chunks = [Chunk(session_id=session_id, order=order, source_text=text) for order, text in enumerate(texts)]
        for chunk in new_chunks:
            self._chunks[chunk.id] = chunk
        self._session_chunks[session_id] = [chunk.id for chunk in new_chunks]

        for name, value in session_fields.items():
            setattr(session, name, value)
        session.total_chunks = len(new_chunks)
        session.updated_at = utcnow()
        return replace(session)

    async def list_chunks(
        self,
        session_id: str,
        status: Optional[ChunkStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Chunk]:
        chunks = [self._chunks[cid] for cid in self._session_chunks.get(session_id, [])]
        if status is not None:
            chunks = [c for c in chunks if c.status == status]
        chunks.sort(key=lambda c: c.order)
        end = None if limit is None else offset + limit
        return [replace(c) for c in chunks[offset:end]]

    async def count_chunks(self, session_id: str, status: Optional[ChunkStatus] = None) -> int:
        return sum(
            1
            for cid in self._session_chunks.get(session_id, [])
            if status is None or self._chunks[cid].status == status
        )

    async def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        chunk = self._chunks.get(chunk_id)
        return replace(chunk) if chunk else None

    async def claim_chunk(self, chunk_id: str, from_statuses: Collection[ChunkStatus]) -> Chunk:
        chunk = self._get_chunk_or_raise(chunk_id)
        if chunk.status not in from_statuses:
            raise ConflictError(
                f"Chunk {chunk_id} is {chunk.status.value}",
                code="CHUNK_STATE_CONFLICT",
                details={"status": chunk.status.value},
            )
        if chunk.status == ChunkStatus.FAILED:
            chunk.retry_count += 1
        chunk.status = ChunkStatus.PROCESSING
        chunk.translated_text = None
        chunk.error_message = None
        chunk.updated_at = utcnow()
        return replace(chunk)

    async def update_chunk(
        self,
        chunk_id: str,
        expected_statuses: Optional[Collection[ChunkStatus]] = None,
        **fields: Any,
    ) -> Chunk:
        check_fields(fields, CHUNK_FIELDS)
        chunk = self._get_chunk_or_raise(chunk_id)
        if expected_statuses is not None and chunk.status not in expected_statuses:
            raise ConflictError(
                f"Chunk {chunk_id} is {chunk.status.value}",
                code="CHUNK_STATE_CONFLICT",
                details={"status": chunk.status.value},
            )
        for name, value in fields.items():
            setattr(chunk, name, value)
        chunk.updated_at = utcnow()
        return replace(chunk)

    def _get_chunk_or_raise(self, chunk_id: str) -> Chunk:
        chunk = self._chunks.get(chunk_id)
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_id} not found", code="CHUNK_NOT_FOUND")
        return chunk

    async def get_translation_config(self) -> Optional[TranslationConfig]:
        return replace(self._config) if self._config else None

    async def save_translation_config(self, config: TranslationConfig) -> TranslationConfig:
        self._config = replace(config, updated_at=utcnow())
        return replace(self._config)
