"""Session event payloads published during translation runs."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from src.services.models import Chunk, Progress, Session, SessionStatus

CHUNK_START = "chunk:start"
CHUNK_PROGRESS = "chunk:progress"
SESSION_STATUS = "session:status"
SESSION_COMPLETE = "session:complete"
SESSION_DELETED = "session:deleted"
KEEPALIVE = "keepalive"


@dataclass
class SessionEvent:
    """Event emitted for a single session."""

    event_type: str
    session_id: str
    data: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type,
            "sessionId": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


def chunk_start(session_id: str, chunk: Chunk) -> SessionEvent:
    return SessionEvent(CHUNK_START, session_id, {"chunkId": chunk.id, "order": chunk.order})


def chunk_progress(session_id: str, chunk: Chunk, progress: Progress) -> SessionEvent:
    return SessionEvent(
        CHUNK_PROGRESS,
        session_id,
        {"chunk": chunk.to_dict(), "progress": progress.to_dict()},
    )


def session_status(
    session_id: str, status: SessionStatus, progress: Optional[Progress] = None
) -> SessionEvent:
    data: Dict[str, Any] = {"status": status.value}
    if progress is not None:
        data["progress"] = progress.to_dict()
    return SessionEvent(SESSION_STATUS, session_id, data)


def session_complete(session: Session) -> SessionEvent:
    return SessionEvent(
        SESSION_COMPLETE,
        session.id,
        {"session": session.to_dict(), "translatedText": session.translated_text},
    )


def session_deleted(session_id: str) -> SessionEvent:
    return SessionEvent(SESSION_DELETED, session_id, {})


def keepalive(session_id: str) -> SessionEvent:
    return SessionEvent(KEEPALIVE, session_id, {})
