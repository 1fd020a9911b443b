"""Tests for TranslationOrchestrator runs, pausing, retries and settling."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from src.chains.template_store import PromptTemplate, PromptTemplateStore
from src.services import events as ev
from src.services.exceptions import InvalidStateError, NotFoundError, ProviderError, ValidationError
from src.services.models import ChunkStatus, GenerationResult, RenderedPrompt, SessionStatus, TranslationConfig
from src.services.orchestrator import TranslationOrchestrator
from src.services.repository import InMemoryRepository
from src.utils.config import Settings

PARAGRAPHS = ["Alpha one.", "Bravo two.", "Charlie 3.", "Delta four.", "Echo five."]
SOURCE = "\n\n".join(PARAGRAPHS)
CHUNK_SIZE = 15

PLAIN_TEMPLATE = PromptTemplate(
    id="plain",
    title="Plain",
    source_language="English",
    target_language="Korean",
    content=(
        "<|im_start|>SYSTEM\nTranslate from {{ source_language }} to {{ target_language }}.\n<|im_end|>\n"
        "<|im_start|>USER\n{{ current.source_text }}\n<|im_end|>\n"
    ),
)


class ScriptedGenerator:
    """Fake provider that records submissions and can block or fail."""

    def __init__(self, fail_on=(), gate: Optional[asyncio.Event] = None, delay: float = 0.0) -> None:
        self.calls: List[str] = []
        self.prompts: List[RenderedPrompt] = []
        self.fail_on = set(fail_on)
        self.gate = gate
        self.delay = delay
        self.started = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self.active_per_source: Dict[str, int] = {}
        self.max_active_per_source: Dict[str, int] = {}

    async def generate(self, prompt: RenderedPrompt) -> GenerationResult:
        source = [m.content for m in prompt.messages if m.role == "USER"][-1].strip()
        self.calls.append(source)
        self.prompts.append(prompt)
        self.started.set()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        active = self.active_per_source.get(source, 0) + 1
        self.active_per_source[source] = active
        self.max_active_per_source[source] = max(self.max_active_per_source.get(source, 0), active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if source in self.fail_on:
                raise ProviderError(f"cannot translate {source}", code="SCRIPTED")
            return GenerationResult(text=f"<{source}>", token_usage=len(source))
        finally:
            self.in_flight -= 1
            self.active_per_source[source] -= 1


class ConfigurableScriptedGenerator(ScriptedGenerator):
    """Scripted provider that records the configs pushed to it."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.configs: List[TranslationConfig] = []

    def configure(self, config: TranslationConfig) -> None:
        self.configs.append(config)


class FailingCompletionRepository(InMemoryRepository):
    """Repository whose first writes of a completed translation fail."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def update_chunk(self, chunk_id, expected_statuses=None, **fields):
        if fields.get("status") == ChunkStatus.COMPLETED and self.failures:
            self.failures -= 1
            raise RuntimeError("disk full")
        return await super().update_chunk(chunk_id, expected_statuses, **fields)


def _expected_translation(paragraphs=PARAGRAPHS) -> str:
    return "\n\n".join(f"<{p}>" for p in paragraphs)


def _orchestrator(generator, max_concurrency: int = 1, repository=None) -> TranslationOrchestrator:
    templates = PromptTemplateStore()
    templates.register(PLAIN_TEMPLATE)
    settings = Settings(llm_provider="mock", llm_model="mock", chunk_size=CHUNK_SIZE, max_concurrency=max_concurrency)
    return TranslationOrchestrator(
        repository=repository or InMemoryRepository(),
        generator=generator,
        templates=templates,
        settings=settings,
    )


async def _ready_session(orchestrator: TranslationOrchestrator, custom_dict=None, filename=None):
    session = await orchestrator.create_session("Novel", custom_dict=custom_dict)
    result = await orchestrator.ingest_source(session.id, text=SOURCE, filename=filename)
    assert result.total_chunks == len(PARAGRAPHS)
    return result.session


async def _chunk_statuses(orchestrator: TranslationOrchestrator, session_id: str) -> List[ChunkStatus]:
    page = await orchestrator.list_chunks(session_id, limit=100)
    return [chunk.status for chunk in page.chunks]


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_requires_title(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        with pytest.raises(ValidationError):
            await orchestrator.create_session("   ")

    @pytest.mark.asyncio
    async def test_update_is_partial(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await orchestrator.create_session("Novel", memo="keep")
        updated = await orchestrator.update_session(session.id, custom_dict="a=b")
        assert updated.memo == "keep"
        assert updated.custom_dict == "a=b"
        with pytest.raises(ValidationError):
            await orchestrator.update_session(session.id, title="")

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        with pytest.raises(NotFoundError):
            await orchestrator.get_session("missing")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        assert await orchestrator.delete_session(session.id) is True
        assert await orchestrator.delete_session(session.id) is False


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_makes_session_ready(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator, filename="chapter.txt")
        assert session.status == SessionStatus.READY
        assert session.source_text == SOURCE
        assert session.original_file_name == "chapter.txt"
        page = await orchestrator.list_chunks(session.id)
        assert "".join(c.source_text for c in page.chunks) == SOURCE

    @pytest.mark.asyncio
    async def test_ingest_rejects_blank_text(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await orchestrator.create_session("Novel")
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.ingest_source(session.id, text="  \n ")
        assert excinfo.value.code == "EMPTY_SOURCE"

    @pytest.mark.asyncio
    async def test_ingest_rejects_invalid_encoding(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await orchestrator.create_session("Novel")
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.ingest_source(session.id, file_bytes=b"\xff\xfe\xfa")
        assert excinfo.value.code == "INVALID_ENCODING"

    @pytest.mark.asyncio
    async def test_reingest_resets_completed_session(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        result = await orchestrator.ingest_source(session.id, text="Only one.", chunk_size=100)

        assert result.session.status == SessionStatus.READY
        assert result.session.translated_text is None
        assert result.total_chunks == 1

    @pytest.mark.asyncio
    async def test_ingest_rejected_while_translating(self):
        gate = asyncio.Event()
        generator = ScriptedGenerator(gate=gate)
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()

        with pytest.raises(InvalidStateError) as excinfo:
            await orchestrator.ingest_source(session.id, text="replacement")
        assert excinfo.value.code == "SESSION_BUSY"

        gate.set()
        await orchestrator.wait_for_run(session.id)


class TestRuns:
    @pytest.mark.asyncio
    async def test_full_run_completes_in_order(self):
        generator = ScriptedGenerator()
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        received: List[ev.SessionEvent] = []
        await orchestrator.subscribe(session.id, received.append)

        started = await orchestrator.start_run(session.id, "plain")
        assert started.status == SessionStatus.TRANSLATING
        await orchestrator.wait_for_run(session.id)

        session = await orchestrator.get_session(session.id)
        assert session.status == SessionStatus.COMPLETED
        assert session.translated_text == _expected_translation()
        assert generator.calls == PARAGRAPHS

        types = [event.event_type for event in received]
        assert types[0] == ev.SESSION_STATUS
        assert received[0].data["status"] == "translating"
        assert types[-1] == ev.SESSION_COMPLETE
        assert received[-1].data["translatedText"] == _expected_translation()
        assert types.count(ev.CHUNK_START) == len(PARAGRAPHS)
        assert types.count(ev.CHUNK_PROGRESS) == len(PARAGRAPHS)
        orders = [event.data["order"] for event in received if event.event_type == ev.CHUNK_START]
        assert orders == sorted(orders)

        progress = await orchestrator.get_progress(session.id)
        assert progress.progress.percent == 100

    @pytest.mark.asyncio
    async def test_completed_chunks_record_metrics(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        chunk = (await orchestrator.list_chunks(session.id)).chunks[0]
        assert chunk.token_count == len(PARAGRAPHS[0])
        assert chunk.processing_time_ms is not None
        assert chunk.error_message is None

    @pytest.mark.asyncio
    async def test_start_requires_ready_session(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await orchestrator.create_session("Draft")
        with pytest.raises(InvalidStateError) as excinfo:
            await orchestrator.start_run(session.id, "plain")
        assert excinfo.value.code == "INVALID_SESSION_STATE"

    @pytest.mark.asyncio
    async def test_start_requires_template(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)

        with pytest.raises(InvalidStateError) as excinfo:
            await orchestrator.start_run(session.id, None)
        assert excinfo.value.code == "TEMPLATE_REQUIRED"

        with pytest.raises(NotFoundError):
            await orchestrator.start_run(session.id, "missing")

        assert (await orchestrator.get_session(session.id)).status == SessionStatus.READY

    @pytest.mark.asyncio
    async def test_dictionary_reaches_provider(self):
        generator = ScriptedGenerator()
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator, custom_dict="Alpha=알파\nbroken")
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        system = generator.prompts[0].messages[0]
        assert system.role == "SYSTEM"
        assert "- Alpha => 알파" in system.content

    @pytest.mark.asyncio
    async def test_concurrent_run_submits_each_chunk_once_in_order(self):
        generator = ScriptedGenerator(delay=0.01)
        orchestrator = _orchestrator(generator, max_concurrency=3)
        session = await _ready_session(orchestrator)

        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        assert generator.calls == PARAGRAPHS
        assert generator.max_in_flight == 3
        session = await orchestrator.get_session(session.id)
        assert session.translated_text == _expected_translation()

    @pytest.mark.asyncio
    async def test_manual_and_bulk_execution_never_overlap_on_a_chunk(self):
        generator = ScriptedGenerator(delay=0.01)
        orchestrator = _orchestrator(generator, max_concurrency=3)
        session = await _ready_session(orchestrator)
        chunks = (await orchestrator.list_chunks(session.id)).chunks

        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()
        results = await asyncio.gather(
            *(orchestrator.translate_chunk(c.id, "plain") for c in chunks),
            *(orchestrator.retry_chunk(c.id, "plain") for c in chunks),
            return_exceptions=True,
        )
        await orchestrator.wait_for_run(session.id)

        errors = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(e, InvalidStateError) for e in errors)
        assert max(generator.max_active_per_source.values()) == 1
        assert set(generator.calls) == set(PARAGRAPHS)
        assert await _chunk_statuses(orchestrator, session.id) == [ChunkStatus.COMPLETED] * len(PARAGRAPHS)
        session = await orchestrator.get_session(session.id)
        assert session.status == SessionStatus.COMPLETED
        assert session.translated_text == _expected_translation()


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_stops_after_in_flight_chunk(self):
        gate = asyncio.Event()
        generator = ScriptedGenerator(gate=gate)
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)

        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()
        paused = await orchestrator.pause_run(session.id)
        assert paused.status == SessionStatus.PAUSED

        gate.set()
        await orchestrator.wait_for_run(session.id)

        statuses = await _chunk_statuses(orchestrator, session.id)
        assert statuses[0] == ChunkStatus.COMPLETED
        assert statuses[1:] == [ChunkStatus.PENDING] * (len(PARAGRAPHS) - 1)
        assert (await orchestrator.get_session(session.id)).status == SessionStatus.PAUSED
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_pause_is_idempotent(self):
        gate = asyncio.Event()
        generator = ScriptedGenerator(gate=gate)
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()

        await orchestrator.pause_run(session.id)
        again = await orchestrator.pause_run(session.id)
        assert again.status == SessionStatus.PAUSED

        gate.set()
        await orchestrator.wait_for_run(session.id)

    @pytest.mark.asyncio
    async def test_pause_requires_translating(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        with pytest.raises(InvalidStateError):
            await orchestrator.pause_run(session.id)

    @pytest.mark.asyncio
    async def test_resume_continues_from_first_unfinished_chunk(self):
        gate = asyncio.Event()
        generator = ScriptedGenerator(gate=gate)
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()
        await orchestrator.pause_run(session.id)
        gate.set()
        await orchestrator.wait_for_run(session.id)

        resumed = await orchestrator.resume_run(session.id, "plain")
        assert resumed.status == SessionStatus.TRANSLATING
        await orchestrator.wait_for_run(session.id)

        session = await orchestrator.get_session(session.id)
        assert session.status == SessionStatus.COMPLETED
        assert session.translated_text == _expected_translation()
        assert generator.calls == PARAGRAPHS

    @pytest.mark.asyncio
    async def test_resume_waits_for_draining_run(self):
        gate = asyncio.Event()
        generator = ScriptedGenerator(gate=gate)
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()
        await orchestrator.pause_run(session.id)

        resume = asyncio.create_task(orchestrator.resume_run(session.id, "plain"))
        await asyncio.sleep(0.01)
        assert not resume.done()

        gate.set()
        await asyncio.wait_for(resume, timeout=5)
        await orchestrator.wait_for_run(session.id)

        assert (await orchestrator.get_session(session.id)).status == SessionStatus.COMPLETED
        assert generator.calls == PARAGRAPHS

    @pytest.mark.asyncio
    async def test_resume_requires_paused_or_failed(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        with pytest.raises(InvalidStateError):
            await orchestrator.resume_run(session.id, "plain")


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_chunk_fails_session_once_nothing_pending(self):
        generator = ScriptedGenerator(fail_on={"Charlie 3."})
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        received: List[ev.SessionEvent] = []
        await orchestrator.subscribe(session.id, received.append)

        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        session = await orchestrator.get_session(session.id)
        assert session.status == SessionStatus.FAILED
        assert session.translated_text is None
        statuses = await _chunk_statuses(orchestrator, session.id)
        assert statuses.count(ChunkStatus.FAILED) == 1
        assert statuses.count(ChunkStatus.COMPLETED) == len(PARAGRAPHS) - 1

        failed = (await orchestrator.list_chunks(session.id, status=ChunkStatus.FAILED)).chunks[0]
        assert failed.error_message == "cannot translate Charlie 3."
        assert received[-1].event_type == ev.SESSION_STATUS
        assert received[-1].data["status"] == "failed"

    @pytest.mark.asyncio
    async def test_partial_translation_skips_unfinished(self):
        orchestrator = _orchestrator(ScriptedGenerator(fail_on={"Charlie 3."}))
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        partial = await orchestrator.get_partial_translation(session.id)
        assert partial == _expected_translation([p for p in PARAGRAPHS if p != "Charlie 3."])

    @pytest.mark.asyncio
    async def test_retry_chunk_completes_session(self):
        generator = ScriptedGenerator(fail_on={"Charlie 3."})
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)
        failed = (await orchestrator.list_chunks(session.id, status=ChunkStatus.FAILED)).chunks[0]

        generator.fail_on.clear()
        chunk = await orchestrator.retry_chunk(failed.id, "plain")

        assert chunk.status == ChunkStatus.COMPLETED
        assert chunk.retry_count == 1
        session = await orchestrator.get_session(session.id)
        assert session.status == SessionStatus.COMPLETED
        assert session.translated_text == _expected_translation()

    @pytest.mark.asyncio
    async def test_retry_rejects_non_failed_chunk(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        chunk = (await orchestrator.list_chunks(session.id)).chunks[0]
        with pytest.raises(InvalidStateError) as excinfo:
            await orchestrator.retry_chunk(chunk.id, "plain")
        assert excinfo.value.code == "INVALID_CHUNK_STATE"

    @pytest.mark.asyncio
    async def test_resume_failed_session_reruns_failed_chunks(self):
        generator = ScriptedGenerator(fail_on={"Charlie 3."})
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        generator.fail_on.clear()
        await orchestrator.resume_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        assert (await orchestrator.get_session(session.id)).status == SessionStatus.COMPLETED
        assert generator.calls == PARAGRAPHS + ["Charlie 3."]
        chunk = (await orchestrator.list_chunks(session.id)).chunks[2]
        assert chunk.retry_count == 1

    @pytest.mark.asyncio
    async def test_translate_completed_chunk_again(self):
        generator = ScriptedGenerator()
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)
        chunk = (await orchestrator.list_chunks(session.id)).chunks[1]

        updated = await orchestrator.translate_chunk(chunk.id, "plain")

        assert updated.status == ChunkStatus.COMPLETED
        assert updated.retry_count == 0
        assert generator.calls.count("Bravo two.") == 2
        session = await orchestrator.get_session(session.id)
        assert session.status == SessionStatus.COMPLETED
        assert session.translated_text == _expected_translation()

    @pytest.mark.asyncio
    async def test_translate_single_chunk_leaves_ready_session(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        chunk = (await orchestrator.list_chunks(session.id)).chunks[0]

        updated = await orchestrator.translate_chunk(chunk.id, "plain")

        assert updated.status == ChunkStatus.COMPLETED
        # A ready session stays ready; only translating sessions are settled
        assert (await orchestrator.get_session(session.id)).status == SessionStatus.READY

    @pytest.mark.asyncio
    async def test_unknown_chunk(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        with pytest.raises(NotFoundError):
            await orchestrator.translate_chunk("missing", "plain")

    @pytest.mark.asyncio
    async def test_manual_chunk_fails_when_result_cannot_be_stored(self):
        orchestrator = _orchestrator(ScriptedGenerator(), repository=FailingCompletionRepository())
        session = await _ready_session(orchestrator)
        chunk = (await orchestrator.list_chunks(session.id)).chunks[0]

        updated = await orchestrator.translate_chunk(chunk.id, "plain")

        assert updated.status == ChunkStatus.FAILED
        assert updated.error_message == "disk full"
        assert ChunkStatus.PROCESSING not in await _chunk_statuses(orchestrator, session.id)
        assert (await orchestrator.get_session(session.id)).status == SessionStatus.READY

    @pytest.mark.asyncio
    async def test_run_fails_chunk_when_result_cannot_be_stored(self):
        orchestrator = _orchestrator(ScriptedGenerator(), repository=FailingCompletionRepository())
        session = await _ready_session(orchestrator)

        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        statuses = await _chunk_statuses(orchestrator, session.id)
        assert statuses == [ChunkStatus.FAILED] + [ChunkStatus.COMPLETED] * (len(PARAGRAPHS) - 1)
        assert (await orchestrator.get_session(session.id)).status == SessionStatus.FAILED


class TestDeleteAndRecovery:
    @pytest.mark.asyncio
    async def test_delete_cancels_active_run(self):
        gate = asyncio.Event()
        generator = ScriptedGenerator(gate=gate)
        repository = InMemoryRepository()
        orchestrator = _orchestrator(generator, repository=repository)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()

        assert await orchestrator.delete_session(session.id) is True

        assert not orchestrator.registry.is_active(session.id)
        assert not orchestrator.event_bus.has_channel(session.id)
        with pytest.raises(NotFoundError):
            await orchestrator.get_session(session.id)
        with pytest.raises(NotFoundError):
            await orchestrator.get_progress(session.id)
        assert await repository.list_chunks(session.id) == []
        assert await repository.count_chunks(session.id) == 0

    @pytest.mark.asyncio
    async def test_recover_interrupted_sessions(self):
        repository = InMemoryRepository()
        orchestrator = _orchestrator(ScriptedGenerator(), repository=repository)
        session = await _ready_session(orchestrator)
        chunk = (await repository.list_chunks(session.id))[0]
        await repository.update_session(session.id, status=SessionStatus.TRANSLATING)
        await repository.claim_chunk(chunk.id, {ChunkStatus.PENDING})

        assert await orchestrator.recover_interrupted_sessions() == 1

        assert (await orchestrator.get_session(session.id)).status == SessionStatus.PAUSED
        assert (await orchestrator.get_chunk(chunk.id)).status == ChunkStatus.PENDING

    @pytest.mark.asyncio
    async def test_shutdown_cancels_runs(self):
        gate = asyncio.Event()
        generator = ScriptedGenerator(gate=gate)
        orchestrator = _orchestrator(generator)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await generator.started.wait()

        await orchestrator.shutdown()

        assert orchestrator.registry.get_running_count() == 0

    @pytest.mark.asyncio
    async def test_delete_ends_open_stream(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        stream = await orchestrator.open_stream(session.id)

        await orchestrator.delete_session(session.id)

        async def collect() -> List[str]:
            return [event.event_type async for event in stream.iter_events(keepalive_interval=0.01)]

        assert await asyncio.wait_for(collect(), timeout=1) == [ev.SESSION_DELETED]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_session_locks_are_released(self):
        orchestrator = _orchestrator(ScriptedGenerator(), max_concurrency=2)
        session = await _ready_session(orchestrator)
        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)
        chunk = (await orchestrator.list_chunks(session.id)).chunks[0]
        await orchestrator.translate_chunk(chunk.id, "plain")
        with pytest.raises(InvalidStateError):
            await orchestrator.pause_run(session.id)

        assert orchestrator.locked_session_count == 0

        await orchestrator.delete_session(session.id)
        assert orchestrator.locked_session_count == 0


class TestTranslationConfig:
    @pytest.mark.asyncio
    async def test_config_seeded_from_settings(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        config = await orchestrator.get_translation_config()
        assert config.model == "mock"
        assert config.chunk_size == CHUNK_SIZE
        assert config.top_p is None

    @pytest.mark.asyncio
    async def test_chunk_size_applies_to_next_ingest(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        updated = await orchestrator.update_translation_config(chunk_size=1000, temperature=None)
        assert updated.chunk_size == 1000
        assert updated.temperature is None

        session = await orchestrator.create_session("Novel")
        result = await orchestrator.ingest_source(session.id, text=SOURCE)
        assert result.total_chunks == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [{"top_p": 1.5}, {"chunk_size": 0}, {"temperature": -0.1}, {"model": "  "}, {"seed": 4}],
    )
    async def test_invalid_changes_rejected(self, changes):
        orchestrator = _orchestrator(ScriptedGenerator())
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.update_translation_config(**changes)
        assert excinfo.value.code == "INVALID_CONFIG"
        assert (await orchestrator.get_translation_config()).chunk_size == CHUNK_SIZE

    @pytest.mark.asyncio
    async def test_model_options_reach_generator(self):
        generator = ConfigurableScriptedGenerator()
        orchestrator = _orchestrator(generator)

        await orchestrator.load_translation_config()
        await orchestrator.update_translation_config(model="claude-haiku-4-5", top_k=40)

        assert [c.model for c in generator.configs] == ["mock", "claude-haiku-4-5"]
        assert generator.configs[-1].top_k == 40


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_chunks_paginates(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        page = await orchestrator.list_chunks(session.id, page=2, limit=2)
        assert [c.order for c in page.chunks] == [2, 3]
        assert page.to_dict()["pagination"] == {"page": 2, "limit": 2, "total": 5, "totalPages": 3}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page, limit", [(0, 20), (1, 0), (1, 101)])
    async def test_list_chunks_rejects_bad_pagination(self, page, limit):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator)
        with pytest.raises(ValidationError):
            await orchestrator.list_chunks(session.id, page=page, limit=limit)

    @pytest.mark.asyncio
    async def test_download_requires_completion(self):
        orchestrator = _orchestrator(ScriptedGenerator())
        session = await _ready_session(orchestrator, filename="chapter.txt")
        with pytest.raises(InvalidStateError) as excinfo:
            await orchestrator.get_translation_for_download(session.id)
        assert excinfo.value.code == "NOT_COMPLETED"

        await orchestrator.start_run(session.id, "plain")
        await orchestrator.wait_for_run(session.id)

        content, filename = await orchestrator.get_translation_for_download(session.id)
        assert content == _expected_translation()
        assert filename == "chapter_translated.txt"
