"""Repository implementation over SQLAlchemy async sessions."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Dict, List, Optional, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.services.exceptions import ConflictError, NotFoundError
from src.services.models import Chunk, ChunkStatus, Session, SessionStatus, TranslationConfig, utcnow
from src.services.repository import CHUNK_FIELDS, SESSION_FIELDS, check_fields
from src.storage.database import CONFIG_ROW_ID, ChunkRecord, Database, SessionRecord, TranslationConfigRecord

LOGGER = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {name: value.value if isinstance(value, Enum) else value for name, value in fields.items()}


def _status_values(statuses: Collection[Enum]) -> List[str]:
    return [status.value for status in statuses]


def _to_session(record: SessionRecord) -> Session:
    return Session(
        id=record.id,
        title=record.title,
        memo=record.memo,
        custom_dict=record.custom_dict,
        original_file_name=record.original_file_name,
        source_text=record.source_text,
        translated_text=record.translated_text,
        status=SessionStatus(record.status),
        total_chunks=record.total_chunks,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def _to_chunk(record: ChunkRecord) -> Chunk:
    return Chunk(
        id=record.id,
        session_id=record.session_id,
        order=record.order,
        source_text=record.source_text,
        translated_text=record.translated_text,
        status=ChunkStatus(record.status),
        error_message=record.error_message,
        retry_count=record.retry_count,
        token_count=record.token_count,
        processing_time_ms=record.processing_time_ms,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def _to_config(record: TranslationConfigRecord) -> TranslationConfig:
    return TranslationConfig(
        model=record.model,
        chunk_size=record.chunk_size,
        temperature=record.temperature,
        max_output_tokens=record.max_output_tokens,
        top_p=record.top_p,
        top_k=record.top_k,
        updated_at=_aware(record.updated_at),
    )


class SqlRepository:
    """Stores sessions and chunks in a relational database.

    Conditional writes are single ``UPDATE ... WHERE status IN (...)``
    statements, so a lost race shows up as zero affected rows.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def _session(self) -> AsyncSession:
        return self._database.session_maker()

    async def create_session(self, session: Session) -> Session:
        async with self._session() as db:
            record = SessionRecord(
                id=session.id,
                title=session.title,
                memo=session.memo,
                custom_dict=session.custom_dict,
                original_file_name=session.original_file_name,
                source_text=session.source_text,
                translated_text=session.translated_text,
                status=session.status.value,
                total_chunks=session.total_chunks,
                created_at=session.created_at,
                updated_at=session.updated_at,
            )
            db.add(record)
            await db.commit()
            return _to_session(record)

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._session() as db:
            record = await db.get(SessionRecord, session_id)
            return _to_session(record) if record else None

    async def list_sessions(self, status: Optional[SessionStatus] = None) -> List[Session]:
        stmt = select(SessionRecord).order_by(SessionRecord.created_at.desc())
        if status is not None:
            stmt = stmt.where(SessionRecord.status == status.value)
        async with self._session() as db:
            result = await db.execute(stmt)
            return [_to_session(record) for record in result.scalars()]

    async def update_session(
        self,
        session_id: str,
        expected_statuses: Optional[Collection[SessionStatus]] = None,
        **fields: Any,
    ) -> Session:
        check_fields(fields, SESSION_FIELDS)
        stmt = (
            update(SessionRecord)
            .where(SessionRecord.id == session_id)
            .values(**_column_values(fields), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if expected_statuses is not None:
            stmt = stmt.where(SessionRecord.status.in_(_status_values(expected_statuses)))

        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount == 0:
                record = await db.get(SessionRecord, session_id)
                if record is None:
                    raise NotFoundError(f"Session {session_id} not found", code="SESSION_NOT_FOUND")
                raise ConflictError(
                    f"Session {session_id} is {record.status}",
                    code="SESSION_STATE_CONFLICT",
                    details={"status": record.status},
                )
            await db.commit()
            record = await db.get(SessionRecord, session_id, populate_existing=True)
            return _to_session(record)

    async def delete_session(self, session_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                delete(SessionRecord)
                .where(SessionRecord.id == session_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            deleted = result.rowcount > 0
        if deleted:
            LOGGER.debug("Deleted session %s", session_id)
        return deleted

    async def replace_chunks(self, session_id: str, texts: Sequence[str], **session_fields: Any) -> Session:
        check_fields(session_fields, SESSION_FIELDS)
        async with self._session() as db:
            async with db.begin():
                record = await db.get(SessionRecord, session_id)
                if record is None:
                    raise NotFoundError(f"Session {session_id} not found", code="SESSION_NOT_FOUND")

                await db.execute(
                    delete(ChunkRecord)
                    .where(ChunkRecord.session_id == session_id)
                    .execution_options(synchronize_session=False)
                )
                now = utcnow()
                db.add_all(
                    ChunkRecord(session_id=session_id, order=order, source_text=text, created_at=now, updated_at=now)
                    for order, text in enumerate(texts)
                )
                for name, value in _column_values(session_fields).items():
                    setattr(record, name, value)
                record.total_chunks = len(texts)
                record.updated_at = now
            return _to_session(record)

    async def list_chunks(
        self,
        session_id: str,
        status: Optional[ChunkStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Chunk]:
        stmt = select(ChunkRecord).where(ChunkRecord.session_id == session_id).order_by(ChunkRecord.order)
        if status is not None:
            stmt = stmt.where(ChunkRecord.status == status.value)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as db:
            result = await db.execute(stmt)
            return [_to_chunk(record) for record in result.scalars()]

    async def count_chunks(self, session_id: str, status: Optional[ChunkStatus] = None) -> int:
        stmt = select(func.count()).select_from(ChunkRecord).where(ChunkRecord.session_id == session_id)
        if status is not None:
            stmt = stmt.where(ChunkRecord.status == status.value)
        async with self._session() as db:
            return int((await db.execute(stmt)).scalar_one())

    async def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        async with self._session() as db:
            record = await db.get(ChunkRecord, chunk_id)
            return _to_chunk(record) if record else None

    async def claim_chunk(self, chunk_id: str, from_statuses: Collection[ChunkStatus]) -> Chunk:
        stmt = (
            update(ChunkRecord)
            .where(ChunkRecord.id == chunk_id, ChunkRecord.status.in_(_status_values(from_statuses)))
            .values(
                status=ChunkStatus.PROCESSING.value,
                translated_text=None,
                error_message=None,
                retry_count=case(
                    (ChunkRecord.status == ChunkStatus.FAILED.value, ChunkRecord.retry_count + 1),
                    else_=ChunkRecord.retry_count,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return await self._conditional_chunk_update(chunk_id, stmt)

    async def update_chunk(
        self,
        chunk_id: str,
        expected_statuses: Optional[Collection[ChunkStatus]] = None,
        **fields: Any,
    ) -> Chunk:
        check_fields(fields, CHUNK_FIELDS)
        stmt = (
            update(ChunkRecord)
            .where(ChunkRecord.id == chunk_id)
            .values(**_column_values(fields), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if expected_statuses is not None:
            stmt = stmt.where(ChunkRecord.status.in_(_status_values(expected_statuses)))
        return await self._conditional_chunk_update(chunk_id, stmt)

    async def _conditional_chunk_update(self, chunk_id: str, stmt) -> Chunk:
        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount == 0:
                record = await db.get(ChunkRecord, chunk_id)
                if record is None:
                    raise NotFoundError(f"Chunk {chunk_id} not found", code="CHUNK_NOT_FOUND")
                raise ConflictError(
                    f"Chunk {chunk_id} is {record.status}",
                    code="CHUNK_STATE_CONFLICT",
                    details={"status": record.status},
                )
            await db.commit()
            record = await db.get(ChunkRecord, chunk_id, populate_existing=True)
            return _to_chunk(record)

    async def get_translation_config(self) -> Optional[TranslationConfig]:
        async with self._session() as db:
            record = await db.get(TranslationConfigRecord, CONFIG_ROW_ID)
            return _to_config(record) if record else None

    async def save_translation_config(self, config: TranslationConfig) -> TranslationConfig:
        """Insert or overwrite the single config row."""
        async with self._session() as db:
            async with db.begin():
                record = await db.get(TranslationConfigRecord, CONFIG_ROW_ID)
                if record is None:
                    record = TranslationConfigRecord(id=CONFIG_ROW_ID)
                    db.add(record)
                record.model = config.model
                record.chunk_size = config.chunk_size
                record.temperature = config.temperature
                record.max_output_tokens = config.max_output_tokens
                record.top_p = config.top_p
                record.top_k = config.top_k
                record.updated_at = utcnow()
            return _to_config(record)
