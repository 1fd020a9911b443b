"""Progress aggregation over chunk statuses."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from src.services.models import Chunk, ChunkStatus, Progress


def _percent(completed: int, total: int) -> int:
    if total <= 0 or completed <= 0:
        return 0
    if completed >= total:
        return 100
    value = int((Decimal(completed) * 100 / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    # Partial progress never reads as "not started" or "done"
    return min(99, max(1, value))


def calculate_progress(chunks: Iterable[Chunk]) -> Progress:
    """Aggregate chunk statuses into a :class:`Progress` snapshot.

    ``pending`` counts both pending and processing chunks. ``percent`` is
    ``completed / total * 100`` rounded half-up, ``0`` for an empty session.
    """

    completed = failed = pending = total = 0
    for chunk in chunks:
        total += 1
        if chunk.status == ChunkStatus.COMPLETED:
            completed += 1
        elif chunk.status == ChunkStatus.FAILED:
            failed += 1
        else:
            pending += 1

    return Progress(
        completed=completed,
        failed=failed,
        pending=pending,
        total=total,
        percent=_percent(completed, total),
    )
