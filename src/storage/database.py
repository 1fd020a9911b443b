"""SQLAlchemy tables and async engine setup."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.services.models import ChunkStatus, SessionStatus, new_id, utcnow

LOGGER = logging.getLogger(__name__)

CONFIG_ROW_ID = 1


class Base(DeclarativeBase):
    """Declarative base for persistence tables."""


class SessionRecord(Base):
    """Translation session row."""

    __tablename__ = "translation_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(Text)
    custom_dict: Mapped[Optional[str]] = mapped_column(Text)
    original_file_name: Mapped[Optional[str]] = mapped_column(String(500))
    source_text: Mapped[Optional[str]] = mapped_column(Text)
    translated_text: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=SessionStatus.DRAFT.value, index=True)
    total_chunks: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ChunkRecord(Base):
    """Ordered chunk row, deleted with its session."""

    __tablename__ = "chunks"
    __table_args__ = (
        UniqueConstraint("session_id", "chunk_order", name="uq_chunks_session_order"),
        Index("ix_chunks_session_status", "session_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("translation_sessions.id", ondelete="CASCADE"), nullable=False
    )
    order: Mapped[int] = mapped_column("chunk_order", Integer, nullable=False)
    source_text: Mapped[str] = mapped_column(Text, nullable=False)
    translated_text: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=ChunkStatus.PENDING.value)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    token_count: Mapped[Optional[int]] = mapped_column(Integer)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class TranslationConfigRecord(Base):
    """Single-row table holding the editable translation config."""

    __tablename__ = "translation_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=CONFIG_ROW_ID)
    model: Mapped[str] = mapped_column(String(200), nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    temperature: Mapped[Optional[float]] = mapped_column(Float)
    max_output_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    top_p: Mapped[Optional[float]] = mapped_column(Float)
    top_k: Mapped[Optional[int]] = mapped_column(Integer)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the async engine and session factory."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    async def init(self) -> None:
        """Create missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        LOGGER.info("Database ready at %s", self.engine.url.render_as_string(hide_password=True))

    async def dispose(self) -> None:
        await self.engine.dispose()
