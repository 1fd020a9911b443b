"""Registry of background translation runs, one per session."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

LOGGER = logging.getLogger(__name__)


class RunState(str, Enum):
    """Lifecycle of a background run."""

    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"


_TERMINAL_STATES = frozenset({RunState.FINISHED, RunState.CANCELLED})


@dataclass
class Run:
    """A bulk translation run over one session's chunks."""

    session_id: str
    template_id: str
    state: RunState = RunState.RUNNING
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    translated: int = 0
    failed: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.state not in _TERMINAL_STATES


class RunRegistry:
    """Tracks the at-most-one active run per session."""

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}

    def start(self, session_id: str, template_id: str, task: asyncio.Task) -> Run:
        """Register ``task`` as the active run of a session."""
        existing = self._runs.get(session_id)
        if existing is not None and existing.active and existing.task is not task:
            raise RuntimeError(f"Session {session_id} already has an active run")
        run = Run(session_id=session_id, template_id=template_id, task=task)
        self._runs[session_id] = run
        LOGGER.info("Started run for session %s with template %s", session_id, template_id)
        return run

    def get(self, session_id: str) -> Optional[Run]:
        return self._runs.get(session_id)

    def is_active(self, session_id: str) -> bool:
        run = self._runs.get(session_id)
        return run is not None and run.active

    def finish(self, session_id: str, task: Optional[asyncio.Task] = None) -> None:
        """Mark the run finished and drop it from the registry.

        When ``task`` is given only the run owning that task is removed, so a
        late finishing task never evicts its successor.
        """
        run = self._runs.get(session_id)
        if run is None or (task is not None and run.task is not task):
            return
        if run.state not in _TERMINAL_STATES:
            run.state = RunState.FINISHED
        run.completed_at = time.time()
        del self._runs[session_id]
        LOGGER.info(
            "Run for session %s ended (%d translated, %d failed)",
            session_id,
            run.translated,
            run.failed,
        )

    async def wait(self, session_id: str) -> None:
        """Wait until the session's current run task has finished."""
        run = self._runs.get(session_id)
        if run is None or run.task is None:
            return
        await asyncio.wait({run.task})

    async def cancel(self, session_id: str) -> bool:
        """Cancel a session's run and wait for it to unwind."""
        run = self._runs.get(session_id)
        if run is None:
            return False

        run.state = RunState.CANCELLED
        task = run.task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._runs.pop(session_id, None)
        LOGGER.info("Cancelled run for session %s", session_id)
        return True

    def get_running_count(self) -> int:
        return sum(1 for run in self._runs.values() if run.active)

    def get_all_runs(self) -> List[Run]:
        return list(self._runs.values())

    async def shutdown(self) -> None:
        """Cancel every active run."""
        for session_id in list(self._runs):
            await self.cancel(session_id)
