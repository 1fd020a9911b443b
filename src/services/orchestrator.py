"""Translation orchestration: sessions, runs, chunk execution and settling."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Collection, Deque, Dict, Iterable, List, Optional, Tuple

from src.chains.prompt_builder import PromptBuildError, build_prompt
from src.chains.template_store import PromptTemplate, PromptTemplateStore
from src.core.chunker import assemble_translation, split_into_chunks
from src.services import events as ev
from src.services.event_bus import EventBus, EventHandler, EventStream, Unsubscribe
from src.services.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from src.services.models import (
    RUNNABLE_CHUNK_STATUSES,
    Chunk,
    ChunkPage,
    ChunkStatus,
    IngestResult,
    RenderedPrompt,
    Session,
    SessionProgress,
    SessionStatus,
    TextGenerator,
    TranslationConfig,
)
from src.services.progress import calculate_progress
from src.services.repository import Repository
from src.services.run_registry import Run, RunRegistry
from src.utils.config import Settings, get_settings
from src.utils.security import build_download_filename, decode_text

LOGGER = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

_MANUAL_FROM_STATUSES = frozenset({ChunkStatus.PENDING, ChunkStatus.FAILED, ChunkStatus.COMPLETED})


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TranslationOrchestrator:
    """Coordinates sessions, chunk runs and event publication.

    All collaborators are injected. Session status transitions are serialised
    per session with an :class:`asyncio.Lock`; chunk claims rely on the
    repository's conditional updates so a chunk is never executed twice.
    """

    def __init__(
        self,
        repository: Repository,
        generator: TextGenerator,
        templates: PromptTemplateStore,
        event_bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        registry: Optional[RunRegistry] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            repository: Session and chunk storage.
            generator: Provider used to translate rendered prompts.
            templates: Catalogue of prompt templates.
            event_bus: Event bus; a private one is created if omitted.
            settings: Configuration settings. Uses default if not provided.
            registry: Run registry; a private one is created if omitted.
        """
        self._repository = repository
        self._generator = generator
        self._templates = templates
        self._bus = event_bus or EventBus()
        self._settings = settings or get_settings()
        self._registry = registry or RunRegistry()
        self._session_locks: Dict[str, _SessionLock] = {}
        self._run_tasks: Dict[str, asyncio.Task] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    @property
    def templates(self) -> PromptTemplateStore:
        return self._templates

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialise status transitions of one session.

        Locks are reference counted and dropped once nobody holds or waits
        on them, so the table only covers sessions with work in progress.
        """
        entry = self._session_locks.get(session_id)
        if entry is None:
            entry = self._session_locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._session_locks.get(session_id) is entry:
                del self._session_locks[session_id]

    @property
    def locked_session_count(self) -> int:
        return len(self._session_locks)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self, title: str, memo: Optional[str] = None, custom_dict: Optional[str] = None
    ) -> Session:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Session title must not be empty", code="INVALID_TITLE")
        session = await self._repository.create_session(Session(title=title, memo=memo, custom_dict=custom_dict))
        LOGGER.info("Created session %s (%s)", session.id, title)
        return session

    async def get_session(self, session_id: str) -> Session:
        session = await self._repository.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", code="SESSION_NOT_FOUND")
        return session

    async def list_sessions(self, status: Optional[SessionStatus] = None) -> List[Session]:
        return await self._repository.list_sessions(status)

    async def update_session(
        self,
        session_id: str,
        title: Optional[str] = None,
        memo: Optional[str] = None,
        custom_dict: Optional[str] = None,
    ) -> Session:
        """Apply a partial update; ``None`` leaves a field unchanged."""
        fields = {}
        if title is not None:
            if not title.strip():
                raise ValidationError("Session title must not be empty", code="INVALID_TITLE")
            fields["title"] = title.strip()
        if memo is not None:
            fields["memo"] = memo
        if custom_dict is not None:
            fields["custom_dict"] = custom_dict

        async with self._session_lock(session_id):
            if not fields:
                return await self.get_session(session_id)
            return await self._repository.update_session(session_id, **fields)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its chunks, cancelling any active run.

        Returns:
            ``True`` when a session was deleted, ``False`` if it did not exist.
        """
        await self._registry.cancel(session_id)
        task = self._run_tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        deleted = await self._repository.delete_session(session_id)
        self._bus.discard(session_id)
        if deleted:
            LOGGER.info("Deleted session %s", session_id)
        return deleted

    # ------------------------------------------------------------------
    # Source ingestion
    # ------------------------------------------------------------------

    async def ingest_source(
        self,
        session_id: str,
        text: Optional[str] = None,
        file_bytes: Optional[bytes] = None,
        filename: Optional[str] = None,
        chunk_size: Optional[int] = None,
    ) -> IngestResult:
        """Split source text into chunks, replacing any previous chunks.

        Exactly one of ``text`` or ``file_bytes`` is expected. Chunk
        translations, errors and retry counts are reset.

        Raises:
            ValidationError: Blank or undecodable text, or a bad chunk size.
            InvalidStateError: A run or chunk execution is in progress.
        """
        await self.get_session(session_id)
        if file_bytes is not None:
            try:
                text = decode_text(file_bytes)
            except UnicodeDecodeError as exc:
                raise ValidationError("Source file must be UTF-8 encoded text", code="INVALID_ENCODING") from exc
            file_size = len(file_bytes)
        else:
            file_size = len((text or "").encode("utf-8"))

        if text is None or not text.strip():
            raise ValidationError("Source text is empty", code="EMPTY_SOURCE")

        size = chunk_size if chunk_size is not None else (await self.get_translation_config()).chunk_size
        texts = split_into_chunks(text, size)

        async with self._session_lock(session_id):
            session = await self.get_session(session_id)
            if session.status == SessionStatus.TRANSLATING or self._registry.is_active(session_id):
                raise InvalidStateError("Cannot replace source while translating", code="SESSION_BUSY")
            if await self._repository.count_chunks(session_id, ChunkStatus.PROCESSING):
                raise InvalidStateError("Cannot replace source while a chunk is processing", code="SESSION_BUSY")

            session = await self._repository.replace_chunks(
                session_id,
                texts,
                source_text=text,
                translated_text=None,
                original_file_name=filename,
                status=SessionStatus.READY,
            )

        LOGGER.info("Ingested %d characters into %d chunks for session %s", len(text), len(texts), session_id)
        await self._publish_status(session)
        return IngestResult(
            session=session,
            total_chunks=len(texts),
            original_file_name=filename,
            file_size=file_size,
            char_count=len(text),
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _resolve_template(self, template_id: Optional[str]) -> PromptTemplate:
        if not template_id:
            raise InvalidStateError("No prompt template selected", code="TEMPLATE_REQUIRED")
        return self._templates.get_or_raise(template_id)

    async def start_run(self, session_id: str, template_id: Optional[str]) -> Session:
        """Begin translating every chunk of a ready session in the background."""
        async with self._session_lock(session_id):
            session = await self.get_session(session_id)
            if session.status != SessionStatus.READY:
                raise InvalidStateError(
                    f"Session is {session.status.value}; only ready sessions can start",
                    code="INVALID_SESSION_STATE",
                    details={"status": session.status.value},
                )
            if session.total_chunks <= 0:
                raise InvalidStateError("Session has no chunks", code="NO_CHUNKS")
            template = self._resolve_template(template_id)
            try:
                session = await self._repository.update_session(
                    session_id, expected_statuses={SessionStatus.READY}, status=SessionStatus.TRANSLATING
                )
            except ConflictError as exc:
                raise InvalidStateError(exc.message, code=exc.code, details=exc.details) from exc
            self._launch_run(session_id, template)

        await self._publish_status(session)
        return session

    async def pause_run(self, session_id: str) -> Session:
        """Stop scheduling new chunks; in-flight chunks finish normally."""
        async with self._session_lock(session_id):
            session = await self.get_session(session_id)
            if session.status == SessionStatus.PAUSED:
                return session
            if session.status != SessionStatus.TRANSLATING:
                raise InvalidStateError(
                    f"Session is {session.status.value}; only translating sessions can pause",
                    code="INVALID_SESSION_STATE",
                    details={"status": session.status.value},
                )
            session = await self._repository.update_session(
                session_id, expected_statuses={SessionStatus.TRANSLATING}, status=SessionStatus.PAUSED
            )

        LOGGER.info("Paused session %s", session_id)
        await self._publish_status(session)
        return session

    async def resume_run(self, session_id: str, template_id: Optional[str]) -> Session:
        """Continue a paused or failed session from its first unfinished chunk."""
        resumable = {SessionStatus.PAUSED, SessionStatus.FAILED}
        while True:
            async with self._session_lock(session_id):
                session = await self.get_session(session_id)
                if session.status not in resumable:
                    raise InvalidStateError(
                        f"Session is {session.status.value}; only paused or failed sessions can resume",
                        code="INVALID_SESSION_STATE",
                        details={"status": session.status.value},
                    )
                template = self._resolve_template(template_id)
                if not self._registry.is_active(session_id):
                    session = await self._repository.update_session(
                        session_id, expected_statuses=resumable, status=SessionStatus.TRANSLATING
                    )
                    self._launch_run(session_id, template)
                    break
            # The previous run is still draining its in-flight chunks
            await self._registry.wait(session_id)

        LOGGER.info("Resumed session %s", session_id)
        await self._publish_status(session)
        return session

    def _launch_run(self, session_id: str, template: PromptTemplate) -> None:
        self._bus.acquire(session_id)
        task = asyncio.create_task(self._run(session_id, template), name=f"translation-run-{session_id}")
        self._registry.start(session_id, template.id, task)
        self._run_tasks[session_id] = task

    async def wait_for_run(self, session_id: str) -> None:
        """Wait until the latest run of a session has finished settling."""
        task = self._run_tasks.get(session_id)
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _run(self, session_id: str, template: PromptTemplate) -> None:
        task = asyncio.current_task()
        run = self._registry.get(session_id)
        aborted = False
        try:
            chunks = await self._repository.list_chunks(session_id)
            queue: Deque[Chunk] = deque(c for c in chunks if c.status in RUNNABLE_CHUNK_STATUSES)
            worker_count = max(1, min(self._settings.max_concurrency, len(queue)))
            LOGGER.info(
                "Run for session %s: %d chunks queued, %d workers", session_id, len(queue), worker_count
            )
            dispatch_lock = asyncio.Lock()
            await _run_all(
                [self._worker(session_id, template, queue, dispatch_lock, run) for _ in range(worker_count)]
            )
        except asyncio.CancelledError:
            LOGGER.info("Run for session %s cancelled", session_id)
            self._end_run(session_id, task)
            raise
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Run for session %s aborted", session_id)
            aborted = True

        self._registry.finish(session_id, task)
        try:
            if aborted:
                await self._fail_session(session_id)
            else:
                await self._settle(session_id)
        except NotFoundError:
            LOGGER.debug("Session %s disappeared before settling", session_id)
        finally:
            self._end_run(session_id, task)

    def _end_run(self, session_id: str, task: Optional[asyncio.Task]) -> None:
        self._registry.finish(session_id, task)
        self._bus.release(session_id)
        if self._run_tasks.get(session_id) is task:
            del self._run_tasks[session_id]

    async def _worker(
        self,
        session_id: str,
        template: PromptTemplate,
        queue: Deque[Chunk],
        dispatch_lock: asyncio.Lock,
        run: Optional[Run],
    ) -> None:
        while True:
            async with dispatch_lock:
                # Cooperative pause point: re-read the persisted status
                session = await self._repository.get_session(session_id)
                if session is None or session.status != SessionStatus.TRANSLATING or not queue:
                    return
                chunk = queue.popleft()
                try:
                    claimed = await self._repository.claim_chunk(chunk.id, RUNNABLE_CHUNK_STATUSES)
                except (ConflictError, NotFoundError) as exc:
                    LOGGER.debug("Skipping chunk %s: %s", chunk.id, exc)
                    continue
                self._bus.publish(session_id, ev.chunk_start(session_id, claimed))
                prompt, build_error = await self._prepare_prompt(template, session, claimed)

            updated = await self._finish_claimed(session_id, claimed, prompt, build_error)

            if run is not None:
                if updated.status == ChunkStatus.COMPLETED:
                    run.translated += 1
                else:
                    run.failed += 1

    async def _prepare_prompt(
        self, template: PromptTemplate, session: Session, chunk: Chunk
    ) -> Tuple[Optional[RenderedPrompt], Optional[str]]:
        """Render the prompt for a claimed chunk, or return why it could not be built."""
        try:
            chunks = await self._repository.list_chunks(session.id)
            return build_prompt(template, session, chunk, chunks), None
        except PromptBuildError as exc:
            LOGGER.warning("Prompt build failed for chunk %s: %s", chunk.id, exc)
            return None, str(exc)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Could not prepare prompt for chunk %s", chunk.id)
            return None, str(exc) or type(exc).__name__

    async def _finish_claimed(
        self, session_id: str, chunk: Chunk, prompt: Optional[RenderedPrompt], error: Optional[str]
    ) -> Chunk:
        """Translate a claimed chunk so it never stays ``processing``.

        Unexpected failures while recording the result mark the chunk failed;
        only a failure of that last write propagates.
        """
        if prompt is None:
            return await self._mark_failed(session_id, chunk, error or "Prompt could not be built", 0)
        try:
            return await self._execute_chunk(session_id, chunk, prompt)
        except (ConflictError, NotFoundError):
            raise
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Could not record result of chunk %s", chunk.id)
            return await self._mark_failed(session_id, chunk, str(exc) or type(exc).__name__, 0)

    async def _execute_chunk(self, session_id: str, chunk: Chunk, prompt: RenderedPrompt) -> Chunk:
        started = time.monotonic()
        try:
            result = await self._generator.generate(prompt)
        except ProviderError as exc:
            error = exc.message
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unexpected generator failure on chunk %s", chunk.id)
            error = str(exc) or type(exc).__name__
        else:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            updated = await self._repository.update_chunk(
                chunk.id,
                expected_statuses={ChunkStatus.PROCESSING},
                status=ChunkStatus.COMPLETED,
                translated_text=result.text,
                error_message=None,
                token_count=result.token_usage,
                processing_time_ms=elapsed_ms,
            )
            LOGGER.debug("Chunk %s (order %d) translated in %d ms", chunk.id, chunk.order, elapsed_ms)
            await self._publish_chunk_progress(session_id, updated)
            return updated

        return await self._mark_failed(session_id, chunk, error, int((time.monotonic() - started) * 1000))

    async def _mark_failed(self, session_id: str, chunk: Chunk, error: str, elapsed_ms: int) -> Chunk:
        LOGGER.warning("Chunk %s (order %d) failed: %s", chunk.id, chunk.order, error)
        updated = await self._repository.update_chunk(
            chunk.id,
            expected_statuses={ChunkStatus.PROCESSING},
            status=ChunkStatus.FAILED,
            translated_text=None,
            error_message=error,
            processing_time_ms=elapsed_ms,
        )
        await self._publish_chunk_progress(session_id, updated)
        return updated

    # ------------------------------------------------------------------
    # Manual chunk execution
    # ------------------------------------------------------------------

    async def retry_chunk(self, chunk_id: str, template_id: Optional[str]) -> Chunk:
        """Re-run a single failed chunk outside of any bulk run."""
        return await self._run_single(chunk_id, template_id, {ChunkStatus.FAILED})

    async def translate_chunk(self, chunk_id: str, template_id: Optional[str]) -> Chunk:
        """(Re)translate a single chunk regardless of its previous outcome."""
        return await self._run_single(chunk_id, template_id, _MANUAL_FROM_STATUSES)

    async def _run_single(
        self, chunk_id: str, template_id: Optional[str], from_statuses: Collection[ChunkStatus]
    ) -> Chunk:
        chunk = await self._repository.get_chunk(chunk_id)
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_id} not found", code="CHUNK_NOT_FOUND")
        if chunk.status not in from_statuses:
            raise InvalidStateError(
                f"Chunk is {chunk.status.value}",
                code="INVALID_CHUNK_STATE",
                details={"status": chunk.status.value},
            )
        template = self._resolve_template(template_id)
        session_id = chunk.session_id

        status_changed = False
        async with self._session_lock(session_id):
            session = await self.get_session(session_id)
            try:
                claimed = await self._repository.claim_chunk(chunk_id, from_statuses)
            except ConflictError as exc:
                raise InvalidStateError(exc.message, code="INVALID_CHUNK_STATE", details=exc.details) from exc
            if session.status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
                session = await self._repository.update_session(
                    session_id, status=SessionStatus.TRANSLATING, translated_text=None
                )
                status_changed = True

        if status_changed:
            await self._publish_status(session)
        self._bus.publish(session_id, ev.chunk_start(session_id, claimed))
        prompt, build_error = await self._prepare_prompt(template, session, claimed)
        updated = await self._finish_claimed(session_id, claimed, prompt, build_error)

        await self._settle(session_id)
        return updated

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------

    async def _settle(self, session_id: str) -> None:
        """Derive the session status once no work is in flight.

        All chunks completed -> completed (with the assembled translation).
        Otherwise a translating session becomes paused while pending chunks
        remain, or failed when only failed chunks remain.
        """
        events_to_publish: List[ev.SessionEvent] = []
        async with self._session_lock(session_id):
            if self._registry.is_active(session_id):
                return
            session = await self._repository.get_session(session_id)
            if session is None:
                return
            chunks = await self._repository.list_chunks(session_id)
            if any(c.status == ChunkStatus.PROCESSING for c in chunks):
                return

            progress = calculate_progress(chunks)
            if progress.total and progress.completed == progress.total:
                if session.status == SessionStatus.COMPLETED and session.translated_text is not None:
                    return
                text = assemble_translation((c.source_text, c.translated_text or "") for c in chunks)
                session = await self._repository.update_session(
                    session_id, status=SessionStatus.COMPLETED, translated_text=text
                )
                LOGGER.info("Session %s completed (%d chunks)", session_id, progress.total)
                events_to_publish.append(ev.session_status(session_id, session.status, progress))
                events_to_publish.append(ev.session_complete(session))
            elif session.status == SessionStatus.TRANSLATING:
                new_status = SessionStatus.PAUSED if progress.pending else SessionStatus.FAILED
                session = await self._repository.update_session(
                    session_id, expected_statuses={SessionStatus.TRANSLATING}, status=new_status
                )
                LOGGER.info(
                    "Session %s settled as %s (%d completed, %d failed, %d pending)",
                    session_id,
                    new_status.value,
                    progress.completed,
                    progress.failed,
                    progress.pending,
                )
                events_to_publish.append(ev.session_status(session_id, session.status, progress))

        for event in events_to_publish:
            self._bus.publish(session_id, event)

    async def _fail_session(self, session_id: str) -> None:
        async with self._session_lock(session_id):
            if self._registry.is_active(session_id):
                return
            try:
                session = await self._repository.update_session(
                    session_id,
                    expected_statuses={SessionStatus.TRANSLATING, SessionStatus.PAUSED},
                    status=SessionStatus.FAILED,
                )
            except ConflictError:
                return
        await self._publish_status(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_progress(self, session_id: str) -> SessionProgress:
        session = await self.get_session(session_id)
        chunks = await self._repository.list_chunks(session_id)
        return SessionProgress(session_id=session_id, status=session.status, progress=calculate_progress(chunks))

    async def get_partial_translation(self, session_id: str) -> str:
        """Assemble the completed chunks in order, skipping unfinished ones."""
        await self.get_session(session_id)
        chunks = await self._repository.list_chunks(session_id, status=ChunkStatus.COMPLETED)
        return assemble_translation((c.source_text, c.translated_text or "") for c in chunks)

    async def list_chunks(
        self,
        session_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[ChunkStatus] = None,
    ) -> ChunkPage:
        if page < 1:
            raise ValidationError("page must be >= 1", code="INVALID_PAGINATION")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", code="INVALID_PAGINATION")
        await self.get_session(session_id)
        total = await self._repository.count_chunks(session_id, status)
        chunks = await self._repository.list_chunks(session_id, status=status, offset=(page - 1) * limit, limit=limit)
        return ChunkPage(chunks=chunks, page=page, limit=limit, total=total)

    async def get_chunk(self, chunk_id: str) -> Chunk:
        chunk = await self._repository.get_chunk(chunk_id)
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_id} not found", code="CHUNK_NOT_FOUND")
        return chunk

    async def get_translation_for_download(self, session_id: str) -> Tuple[str, str]:
        """Return ``(content, filename)`` for a completed session."""
        session = await self.get_session(session_id)
        if session.status != SessionStatus.COMPLETED or session.translated_text is None:
            raise InvalidStateError("Translation is not complete", code="NOT_COMPLETED")
        return session.translated_text, build_download_filename(session.original_file_name, session.title)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def subscribe(self, session_id: str, handler: EventHandler) -> Unsubscribe:
        await self.get_session(session_id)
        return self._bus.subscribe(session_id, handler)

    async def open_stream(self, session_id: str) -> EventStream:
        """Open a queue-backed event stream for a transport."""
        await self.get_session(session_id)
        return EventStream(self._bus, session_id, max_queue_size=self._settings.event_queue_size)

    async def _publish_status(self, session: Session) -> None:
        if not self._bus.has_channel(session.id):
            return
        chunks = await self._repository.list_chunks(session.id)
        self._bus.publish(session.id, ev.session_status(session.id, session.status, calculate_progress(chunks)))

    async def _publish_chunk_progress(self, session_id: str, chunk: Chunk) -> None:
        if not self._bus.has_channel(session_id):
            return
        chunks = await self._repository.list_chunks(session_id)
        self._bus.publish(session_id, ev.chunk_progress(session_id, chunk, calculate_progress(chunks)))

    # ------------------------------------------------------------------
    # Translation config
    # ------------------------------------------------------------------

    async def get_translation_config(self) -> TranslationConfig:
        """Return the stored config, seeding it from the environment on first use."""
        config = await self._repository.get_translation_config()
        if config is None:
            config = await self._repository.save_translation_config(default_translation_config(self._settings))
            LOGGER.info("Initialised translation config (model=%s)", config.model)
        return config

    async def update_translation_config(self, **fields: Any) -> TranslationConfig:
        """Apply a partial config update; ``None`` values are ignored.

        Chunk size applies to later ingests. Model options are pushed to the
        generator immediately, so chunks dispatched afterwards use them.

        Raises:
            ValidationError: Unknown field or out-of-range value.
        """
        changes = {name: value for name, value in fields.items() if value is not None}
        _validate_config_changes(changes)
        config = await self.get_translation_config()
        config = await self._repository.save_translation_config(replace(config, **changes))
        self._apply_translation_config(config)
        LOGGER.info("Updated translation config: %s", ", ".join(sorted(changes)) or "no changes")
        return config

    async def load_translation_config(self) -> TranslationConfig:
        """Read the stored config and hand its model options to the generator."""
        config = await self.get_translation_config()
        self._apply_translation_config(config)
        return config

    def _apply_translation_config(self, config: TranslationConfig) -> None:
        # Only generators backed by a configurable model expose configure()
        configure = getattr(self._generator, "configure", None)
        if configure is not None:
            configure(config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover_interrupted_sessions(self) -> int:
        """Reset work left behind by an unclean shutdown.

        Processing chunks go back to pending and translating sessions become
        paused so they can be resumed.

        Returns:
            Number of sessions moved to paused.
        """
        recovered = 0
        for session in await self._repository.list_sessions():
            for chunk in await self._repository.list_chunks(session.id, status=ChunkStatus.PROCESSING):
                await self._repository.update_chunk(
                    chunk.id, expected_statuses={ChunkStatus.PROCESSING}, status=ChunkStatus.PENDING
                )
            if session.status == SessionStatus.TRANSLATING:
                await self._repository.update_session(
                    session.id, expected_statuses={SessionStatus.TRANSLATING}, status=SessionStatus.PAUSED
                )
                recovered += 1
        if recovered:
            LOGGER.info("Recovered %d interrupted sessions", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Cancel every active run."""
        await self._registry.shutdown()
        tasks = [task for task in self._run_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        self._run_tasks.clear()


def default_translation_config(settings: Settings) -> TranslationConfig:
    """Initial translation config taken from environment settings."""
    return TranslationConfig(
        model=settings.llm_model,
        chunk_size=settings.chunk_size,
        temperature=settings.llm_temperature,
        max_output_tokens=settings.llm_max_output_tokens,
    )


# field -> (minimum, maximum); None means unbounded
_CONFIG_BOUNDS: Dict[str, Tuple[Optional[float], Optional[float]]] = {
    "chunk_size": (1, None),
    "temperature": (0.0, 2.0),
    "max_output_tokens": (1, None),
    "top_p": (0.0, 1.0),
    "top_k": (1, None),
}


def _validate_config_changes(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - set(_CONFIG_BOUNDS) - {"model"}
    if unknown:
        raise ValidationError(f"Unknown config fields: {sorted(unknown)}", code="INVALID_CONFIG")
    if "model" in changes and not str(changes["model"]).strip():
        raise ValidationError("Model must not be empty", code="INVALID_CONFIG")
    for name, (minimum, maximum) in _CONFIG_BOUNDS.items():
        if name not in changes:
            continue
        value = changes[name]
        if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
            raise ValidationError(
                f"{name} is out of range",
                code="INVALID_CONFIG",
                details={"field": name, "min": minimum, "max": maximum},
            )


async def _run_all(coros: Iterable[Awaitable[None]]) -> None:
    """Run coroutines concurrently; the first failure cancels the rest."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    for task in pending:
        task.cancel()
    if pending:
        await asyncio.wait(pending)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
