"""FastAPI server for chunked long-text translation."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import resource
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from starlette.websockets import WebSocketDisconnect

from src.chains.llm_factory import get_models_for_provider
from src.chains.template_store import PromptTemplateStore
from src.chains.translation_chain import create_generator
from src.services import events as ev
from src.services.event_bus import EventBus, EventStream
from src.services.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ProviderError,
    TranslationError,
    ValidationError,
)
from src.services.models import ChunkStatus, SessionStatus
from src.services.orchestrator import TranslationOrchestrator
from src.storage.database import Database
from src.storage.sql_repository import SqlRepository
from src.utils.config import SUPPORTED_PROVIDERS, Settings, get_settings
from src.utils.glossary_loader import GlossaryLoader, parse_custom_dictionary, to_dictionary_text
from src.utils.security import sanitize_filename, validate_excel_file, validate_text_upload

logging.basicConfig(
    level=logging.INFO, format="[%(levelname)s] %(name)s: %(message)s"
)
LOGGER = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


# ============================================================================
# Runtime wiring
# ============================================================================


@dataclass
class AppRuntime:
    """Process-wide collaborators owned by the application."""

    settings: Settings
    database: Database
    orchestrator: TranslationOrchestrator


def build_runtime(settings: Settings) -> AppRuntime:
    """Create the database, template store, generator and orchestrator."""
    database = Database(settings.database_url)
    templates = PromptTemplateStore(Path(settings.prompt_dir))
    orchestrator = TranslationOrchestrator(
        repository=SqlRepository(database),
        generator=create_generator(settings),
        templates=templates,
        event_bus=EventBus(),
        settings=settings,
    )
    return AppRuntime(settings=settings, database=database, orchestrator=orchestrator)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Initialise storage and templates, recover interrupted work."""
    runtime = build_runtime(get_settings())
    await runtime.database.init()
    runtime.orchestrator.templates.load()
    await runtime.orchestrator.recover_interrupted_sessions()
    await runtime.orchestrator.load_translation_config()
    application.state.runtime = runtime
    try:
        yield
    finally:
        await runtime.orchestrator.shutdown()
        await runtime.database.dispose()


app = FastAPI(
    title="Chunked Translation API",
    description="Long-text translation in ordered chunks using OpenAI GPT and Anthropic Claude models",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware - read allowed origins from environment
_default_origins = "http://localhost:3000,http://127.0.0.1:3000"
_cors_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", _default_origins).split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)

# For AWS Lambda deployment
try:
    from mangum import Mangum

    handler = Mangum(app)
except ImportError:
    handler = None


def get_runtime(request: Request) -> AppRuntime:
    return request.app.state.runtime


def get_orchestrator(request: Request) -> TranslationOrchestrator:
    return request.app.state.runtime.orchestrator


# ============================================================================
# Error handling
# ============================================================================

_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (ProviderError, 502),
)


def status_for_error(exc: TranslationError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(TranslationError)
async def translation_error_handler(request: Request, exc: TranslationError) -> JSONResponse:  # noqa: ARG001
    status_code = status_for_error(exc)
    if status_code >= 500:
        LOGGER.error("Request failed: %s", exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "details": exc.details},
    )


# ============================================================================
# Pydantic Models for API requests and responses
# ============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RunsHealthInfo(BaseModel):
    """Run concurrency info for health check."""

    running: int
    max_concurrency: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    provider: str
    openai_api_key_configured: bool
    anthropic_api_key_configured: bool
    runs: RunsHealthInfo
    memory_usage_mb: Optional[float] = None


class ConfigResponse(BaseModel):
    """Configuration response."""

    max_upload_size_mb: int
    chunk_size: int
    max_concurrency: int
    providers: List[str]
    default_provider: str
    default_model: str
    models: List[str]


class TemplateInfo(_CamelModel):
    """Prompt template summary."""

    id: str
    title: str
    source_language: str = Field(alias="sourceLanguage")
    target_language: str = Field(alias="targetLanguage")
    description: Optional[str] = None


class TemplateDetail(TemplateInfo):
    """Prompt template including its ChatML source."""

    content: str


class TranslationConfigUpdate(_CamelModel):
    """Partial update of the stored translation config."""

    model: Optional[str] = Field(default=None, min_length=1)
    chunk_size: Optional[int] = Field(default=None, alias="chunkSize", gt=0)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_output_tokens: Optional[int] = Field(default=None, alias="maxOutputTokens", gt=0)
    top_p: Optional[float] = Field(default=None, alias="topP", ge=0.0, le=1.0)
    top_k: Optional[int] = Field(default=None, alias="topK", gt=0)


class SessionCreateRequest(_CamelModel):
    """Session creation request."""

    title: str
    memo: Optional[str] = None
    custom_dict: Optional[str] = Field(default=None, alias="customDict")


class SessionUpdateRequest(_CamelModel):
    """Partial session update."""

    title: Optional[str] = None
    memo: Optional[str] = None
    custom_dict: Optional[str] = Field(default=None, alias="customDict")


class TextIngestRequest(_CamelModel):
    """Source text submitted directly."""

    text: str
    chunk_size: Optional[int] = Field(default=None, alias="chunkSize", gt=0)


class TemplateSelection(_CamelModel):
    """Prompt template used for a run or a chunk execution."""

    template_id: Optional[str] = Field(default=None, alias="templateId")


class WsClientMessage(_CamelModel):
    """Message sent by a WebSocket client."""

    type: Literal["subscribe", "unsubscribe", "start", "pause", "resume"]
    session_id: str = Field(alias="sessionId")
    template_id: Optional[str] = Field(default=None, alias="templateId")


# ============================================================================
# Health & Config Endpoints
# ============================================================================


def _get_memory_usage_mb() -> float:
    """Return current process RSS memory usage in MB (Linux/macOS)."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # macOS returns bytes, Linux returns kilobytes
    if sys.platform == "darwin":
        return usage.ru_maxrss / (1024 * 1024)
    return usage.ru_maxrss / 1024


@app.get("/health", response_model=HealthResponse)
async def health_check(runtime: AppRuntime = Depends(get_runtime)) -> HealthResponse:
    """Health check endpoint."""
    settings = runtime.settings
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now().isoformat(),
        provider=settings.llm_provider,
        openai_api_key_configured=bool(settings.openai_api_key),
        anthropic_api_key_configured=bool(settings.anthropic_api_key),
        runs=RunsHealthInfo(
            running=runtime.orchestrator.registry.get_running_count(),
            max_concurrency=settings.max_concurrency,
        ),
        memory_usage_mb=round(_get_memory_usage_mb(), 1),
    )


@app.get("/api/v1/config", response_model=ConfigResponse)
async def get_config(runtime: AppRuntime = Depends(get_runtime)) -> ConfigResponse:
    """Return client-facing configuration."""
    settings = runtime.settings
    translation_config = await runtime.orchestrator.get_translation_config()
    return ConfigResponse(
        max_upload_size_mb=settings.max_upload_size_mb,
        chunk_size=translation_config.chunk_size,
        max_concurrency=settings.max_concurrency,
        providers=list(SUPPORTED_PROVIDERS),
        default_provider=settings.llm_provider,
        default_model=translation_config.model,
        models=get_models_for_provider(settings.llm_provider),
    )


@app.get("/api/v1/translation/config")
async def get_translation_config(
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Return the stored translation config."""
    config = await orchestrator.get_translation_config()
    return config.to_dict()


@app.patch("/api/v1/translation/config")
async def update_translation_config(
    body: TranslationConfigUpdate,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Update the translation config; omitted fields keep their value."""
    config = await orchestrator.update_translation_config(**body.model_dump(exclude_none=True))
    return config.to_dict()


@app.get("/api/v1/templates", response_model=List[TemplateInfo], response_model_by_alias=True)
async def list_templates(orchestrator: TranslationOrchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    """List available prompt templates."""
    return [template.summary() for template in orchestrator.templates.list_templates()]


@app.get("/api/v1/templates/{template_id}", response_model=TemplateDetail, response_model_by_alias=True)
async def get_template(
    template_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Return one prompt template with its ChatML content."""
    template = orchestrator.templates.get_or_raise(template_id)
    return {**template.summary(), "content": template.content}


# ============================================================================
# Session Endpoints
# ============================================================================


@app.post("/api/v1/sessions", status_code=201)
async def create_session(
    body: SessionCreateRequest,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Create a new draft session."""
    session = await orchestrator.create_session(body.title, memo=body.memo, custom_dict=body.custom_dict)
    return session.to_dict()


@app.get("/api/v1/sessions")
async def list_sessions(
    status: Optional[SessionStatus] = None,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """List sessions, newest first."""
    sessions = await orchestrator.list_sessions(status)
    return {"sessions": [session.to_dict() for session in sessions]}


@app.get("/api/v1/sessions/{session_id}")
async def get_session(
    session_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    session = await orchestrator.get_session(session_id)
    return session.to_dict()


@app.patch("/api/v1/sessions/{session_id}")
async def update_session(
    session_id: str,
    body: SessionUpdateRequest,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    session = await orchestrator.update_session(
        session_id, title=body.title, memo=body.memo, custom_dict=body.custom_dict
    )
    return session.to_dict()


@app.delete("/api/v1/sessions/{session_id}")
async def delete_session(
    session_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Delete a session; deleting an unknown session is not an error."""
    deleted = await orchestrator.delete_session(session_id)
    return {"status": "deleted", "session_id": session_id, "deleted": deleted}


# ============================================================================
# Source Ingestion Endpoints
# ============================================================================


def _ingest_response(result) -> Dict[str, Any]:
    return {
        "session": result.session.to_dict(),
        "totalChunks": result.total_chunks,
        "originalFileName": result.original_file_name,
        "fileSize": result.file_size,
        "charCount": result.char_count,
    }


@app.post("/api/v1/sessions/{session_id}/upload")
async def upload_source(
    session_id: str,
    file: UploadFile = File(..., description="UTF-8 .txt file to translate"),
    chunk_size: Optional[int] = Form(None, description="Target characters per chunk", gt=0),
    runtime: AppRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Upload a text file and split it into chunks."""
    try:
        content = await file.read()
    except OSError as exc:
        LOGGER.exception("Failed to read uploaded file: %s", exc)
        raise HTTPException(status_code=400, detail="Failed to read uploaded file") from exc

    is_valid, error_message = validate_text_upload(file.filename, content, runtime.settings.max_upload_size_bytes)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)

    result = await runtime.orchestrator.ingest_source(
        session_id,
        file_bytes=content,
        filename=sanitize_filename(file.filename or "", fallback="source.txt"),
        chunk_size=chunk_size,
    )
    return _ingest_response(result)


@app.post("/api/v1/sessions/{session_id}/text")
async def ingest_text(
    session_id: str,
    body: TextIngestRequest,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Submit source text directly and split it into chunks."""
    result = await orchestrator.ingest_source(session_id, text=body.text, chunk_size=body.chunk_size)
    return _ingest_response(result)


@app.post("/api/v1/sessions/{session_id}/glossary")
async def import_glossary(
    session_id: str,
    glossary_file: UploadFile = File(..., description="Excel glossary (source, target columns)"),
    mode: Literal["merge", "replace"] = Form("merge"),
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Import an Excel glossary into the session's custom dictionary."""
    session = await orchestrator.get_session(session_id)
    buffer = io.BytesIO(await glossary_file.read())
    is_valid, error_message = validate_excel_file(buffer)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)

    try:
        imported = await asyncio.to_thread(GlossaryLoader().load_glossary, buffer)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    glossary = parse_custom_dictionary(session.custom_dict) if mode == "merge" else {}
    glossary.update(imported)
    session = await orchestrator.update_session(session_id, custom_dict=to_dictionary_text(glossary))
    return {"session": session.to_dict(), "importedEntries": len(imported), "totalEntries": len(glossary)}


# ============================================================================
# Run Control Endpoints
# ============================================================================


@app.post("/api/v1/sessions/{session_id}/start")
async def start_run(
    session_id: str,
    body: TemplateSelection,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    session = await orchestrator.start_run(session_id, body.template_id)
    return session.to_dict()


@app.post("/api/v1/sessions/{session_id}/pause")
async def pause_run(
    session_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    session = await orchestrator.pause_run(session_id)
    return session.to_dict()


@app.post("/api/v1/sessions/{session_id}/resume")
async def resume_run(
    session_id: str,
    body: TemplateSelection,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    session = await orchestrator.resume_run(session_id, body.template_id)
    return session.to_dict()


@app.get("/api/v1/sessions/{session_id}/progress")
async def get_progress(
    session_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    progress = await orchestrator.get_progress(session_id)
    return progress.to_dict()


@app.get("/api/v1/sessions/{session_id}/partial")
async def get_partial_translation(
    session_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Best-effort translation assembled from completed chunks."""
    text = await orchestrator.get_partial_translation(session_id)
    progress = await orchestrator.get_progress(session_id)
    return {"sessionId": session_id, "translatedText": text, "progress": progress.to_dict()}


@app.get("/api/v1/sessions/{session_id}/download")
async def download_translation(
    session_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> Response:
    """Download the completed translation as a text file."""
    content, filename = await orchestrator.get_translation_for_download(session_id)
    encoded_filename = quote(filename, safe="")
    return Response(
        content=content.encode("utf-8"),
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{encoded_filename}"},
    )


# ============================================================================
# Chunk Endpoints
# ============================================================================


@app.get("/api/v1/sessions/{session_id}/chunks")
async def list_chunks(
    session_id: str,
    page: int = Query(1),
    limit: int = Query(20),
    status: Optional[ChunkStatus] = None,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    chunk_page = await orchestrator.list_chunks(session_id, page=page, limit=limit, status=status)
    return chunk_page.to_dict()


@app.get("/api/v1/chunks/{chunk_id}")
async def get_chunk(chunk_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    chunk = await orchestrator.get_chunk(chunk_id)
    return chunk.to_dict()


@app.post("/api/v1/chunks/{chunk_id}/retry")
async def retry_chunk(
    chunk_id: str,
    body: TemplateSelection,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Retry a failed chunk and return its new state."""
    chunk = await orchestrator.retry_chunk(chunk_id, body.template_id)
    return chunk.to_dict()


@app.post("/api/v1/chunks/{chunk_id}/translate")
async def translate_chunk(
    chunk_id: str,
    body: TemplateSelection,
    orchestrator: TranslationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """(Re)translate one chunk and return its new state."""
    chunk = await orchestrator.translate_chunk(chunk_id, body.template_id)
    return chunk.to_dict()


# ============================================================================
# Event Streaming Endpoints
# ============================================================================


def _is_final_event(event: ev.SessionEvent) -> bool:
    if event.event_type in (ev.SESSION_COMPLETE, ev.SESSION_DELETED):
        return True
    return event.event_type == ev.SESSION_STATUS and event.data.get("status") == SessionStatus.FAILED.value


@app.get("/api/v1/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str, orchestrator: TranslationOrchestrator = Depends(get_orchestrator)
) -> StreamingResponse:
    """Stream session events via SSE until the session reaches a final state."""
    stream = await orchestrator.open_stream(session_id)

    async def event_generator():
        try:
            async for event in stream.iter_events(keepalive_interval=SSE_KEEPALIVE_SECONDS):
                yield f"data: {json.dumps(event.to_dict())}\n\n"
                if _is_final_event(event):
                    break
        finally:
            stream.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


class WebSocketClient:
    """One WebSocket connection and its per-session event forwarders."""

    def __init__(self, websocket: WebSocket, orchestrator: TranslationOrchestrator) -> None:
        self._websocket = websocket
        self._orchestrator = orchestrator
        self._send_lock = asyncio.Lock()
        self._forwarders: Dict[str, asyncio.Task] = {}
        self._streams: Dict[str, EventStream] = {}

    async def send(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self._websocket.send_json(payload)

    async def send_error(self, message: str, session_id: Optional[str] = None) -> None:
        await self.send({"type": "error", "message": message, "sessionId": session_id})

    async def handle(self, raw: Any) -> None:
        try:
            message = WsClientMessage.model_validate(raw)
        except PydanticValidationError as exc:
            await self.send_error(f"Invalid message: {exc.errors()[0]['msg']}")
            return

        try:
            if message.type == "subscribe":
                await self._subscribe(message.session_id)
            elif message.type == "unsubscribe":
                await self._unsubscribe(message.session_id)
            elif message.type == "start":
                await self._orchestrator.start_run(message.session_id, message.template_id)
            elif message.type == "pause":
                await self._orchestrator.pause_run(message.session_id)
            else:
                await self._orchestrator.resume_run(message.session_id, message.template_id)
        except TranslationError as exc:
            await self.send_error(exc.message, message.session_id)

    async def _subscribe(self, session_id: str) -> None:
        if session_id in self._streams:
            return
        stream = await self._orchestrator.open_stream(session_id)
        self._streams[session_id] = stream
        session = await self._orchestrator.get_session(session_id)
        progress = await self._orchestrator.get_progress(session_id)
        await self.send(
            {
                "type": "subscribed",
                "sessionId": session_id,
                "session": session.to_dict(),
                "progress": progress.progress.to_dict(),
            }
        )
        self._forwarders[session_id] = asyncio.create_task(self._forward(stream))

    async def _forward(self, stream: EventStream) -> None:
        try:
            async for event in stream.iter_events(keepalive_interval=SSE_KEEPALIVE_SECONDS):
                if event.event_type == ev.KEEPALIVE:
                    continue
                await self.send(event.to_dict())
        except (WebSocketDisconnect, RuntimeError) as exc:
            # Socket closed underneath the forwarder
            LOGGER.debug("Stopped forwarding events for session %s: %s", stream.session_id, exc)
        finally:
            # A deleted session ends its stream; forget it so the id can be resubscribed
            if self._streams.get(stream.session_id) is stream:
                del self._streams[stream.session_id]
                self._forwarders.pop(stream.session_id, None)
                stream.close()

    async def _unsubscribe(self, session_id: str) -> None:
        stream = self._streams.pop(session_id, None)
        if stream is not None:
            stream.close()
        task = self._forwarders.pop(session_id, None)
        if task is not None:
            task.cancel()
            await asyncio.wait({task})

    async def close(self) -> None:
        for session_id in list(self._streams):
            await self._unsubscribe(session_id)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Bidirectional session control and event delivery."""
    await websocket.accept()
    client = WebSocketClient(websocket, websocket.app.state.runtime.orchestrator)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                await client.send_error("Invalid JSON message")
                continue
            await client.handle(raw)
    except WebSocketDisconnect:
        LOGGER.debug("WebSocket client disconnected")
    finally:
        await client.close()
