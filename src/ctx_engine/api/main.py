import asyncio
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ctx_engine.api.state import clear_engine, get_engine, set_engine
from ctx_engine.config import settings
from ctx_engine.core.errors import (
    ConcurrencyError,
    ConfigurationError,
    ContextEngineError,
    ProviderError,
    StorageError,
)
from ctx_engine.core.models import (
    Chunk,
    ChunkStats,
    ContextBundle,
    HybridSearchResult,
    IndexJob,
    IndexResult,
    IndexStatus,
    KeywordSearchResult,
    ProjectSymbols,
    SignalFlags,
    SignalWeights,
)
from ctx_engine.engine import ContextEngine

T = TypeVar("T")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown events for the API."""
    logger.info("[Startup] Opening LanceDB tables and embedding provider...")
    try:
        if get_engine() is None:
            set_engine(ContextEngine.from_settings(settings))
        logger.info("[Startup] API is ready to accept concurrent requests.")
    except Exception as e:
        logger.error("[Startup] Failed to initialize context engine: {}", e)
        raise

    yield

    logger.info("[Shutdown] Stopping watchers and cleaning up resources...")
    clear_engine()


app = FastAPI(
    title="ctx-engine Context API",
    description="Structural code indexing and hybrid context retrieval for coding agents.",
    version="0.1.0",
    lifespan=lifespan,
)


class IndexRequest(BaseModel):
    root_path: str = Field(..., description="Directory of the project to index.")
    include_patterns: list[str] | None = Field(None, description="Glob patterns of files to index.")
    exclude_patterns: list[str] | None = Field(None, description="Glob patterns of files to skip.")
    force: bool = Field(False, description="Re-index files whose content hash is unchanged.")
    background: bool = Field(False, description="Return immediately and index in the background.")


class IndexAccepted(BaseModel):
    project_id: str
    status: str = "started"


class HybridSearchRequest(BaseModel):
    query: str = Field(..., description="Natural-language or identifier query.")
    limit: int = Field(20, ge=1, le=200)
    signals: SignalFlags = Field(default_factory=SignalFlags)
    weights: SignalWeights | None = None
    current_file: str | None = Field(None, description="File the agent is working in.")


class ContextRequest(BaseModel):
    query: str
    max_tokens: int = Field(8000, ge=1)
    current_file: str | None = None
    format: str = Field("markdown", description="markdown, compact or xml.")


class FileContextRequest(BaseModel):
    file_path: str
    max_tokens: int = Field(8000, ge=1)
    format: str = "markdown"


class SymbolContextRequest(BaseModel):
    names: list[str] = Field(..., min_length=1)
    max_tokens: int = Field(8000, ge=1)
    format: str = "markdown"


class WatchRequest(BaseModel):
    root_path: str
    include_patterns: list[str] | None = None
    exclude_patterns: list[str] | None = None
    poll_interval_s: float | None = Field(None, gt=0)


def _engine() -> ContextEngine:
    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Context engine is initializing or failed.")
    return engine


def _http_error(e: ContextEngineError) -> HTTPException:
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ConcurrencyError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ProviderError):
        return HTTPException(status_code=503, detail=f"Embedding provider unavailable: {e}")
    if isinstance(e, StorageError):
        return HTTPException(status_code=500, detail=f"Storage failure: {e}")
    return HTTPException(status_code=500, detail=str(e))


async def _call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Runs a blocking engine call off the event loop, mapping domain errors to HTTP codes."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except ContextEngineError as e:
        raise _http_error(e) from e


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check endpoint."""
    engine = _engine()
    generator = engine.generator
    return {
        "status": "healthy",
        "embeddings": "enabled" if generator is not None else "disabled",
        "embedding_model": generator.model_name if generator is not None else "none",
    }


def _index_in_background(engine: ContextEngine, project_id: str, request: IndexRequest) -> None:
    try:
        engine.index_project(
            project_id, request.root_path, request.include_patterns, request.exclude_patterns, request.force
        )
    except ContextEngineError as e:
        logger.error("Background indexing of '{}' failed: {}", project_id, e)


@app.post("/projects/{project_id}/index", response_model=IndexResult | IndexAccepted)
async def index_project(
    project_id: str, request: IndexRequest, background_tasks: BackgroundTasks
) -> IndexResult | IndexAccepted:
    """Runs a full (re)index of the project."""
    engine = _engine()
    if request.background:
        if engine.indexing.is_indexing(project_id):
            raise _http_error(ConcurrencyError(project_id))
        background_tasks.add_task(_index_in_background, engine, project_id, request)
        return IndexAccepted(project_id=project_id)

    return await _call(
        engine.index_project,
        project_id,
        request.root_path,
        request.include_patterns,
        request.exclude_patterns,
        request.force,
    )


@app.post("/projects/{project_id}/stop")
async def stop_indexing(project_id: str) -> dict[str, bool]:
    return {"stopped": await _call(_engine().stop_indexing, project_id)}


@app.delete("/projects/{project_id}/index")
async def clear_index(project_id: str) -> dict[str, int]:
    return {"deleted": await _call(_engine().clear_index, project_id)}


@app.get("/projects/{project_id}/search", response_model=KeywordSearchResult)
async def search(
    project_id: str,
    query: str,
    chunk_types: list[str] | None = Query(None),
    path_filter: str | None = None,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> KeywordSearchResult:
    """Keyword search over names, keywords and content."""
    return await _call(_engine().search, project_id, query, chunk_types, path_filter, limit, offset)


@app.post("/projects/{project_id}/hybrid-search", response_model=HybridSearchResult)
async def hybrid_search(project_id: str, request: HybridSearchRequest) -> HybridSearchResult:
    return await _call(
        _engine().hybrid_search,
        project_id,
        request.query,
        request.limit,
        request.signals,
        request.weights,
        request.current_file,
    )


@app.post("/projects/{project_id}/context", response_model=ContextBundle)
async def get_context(project_id: str, request: ContextRequest) -> ContextBundle:
    """Budgeted, formatted context for an agent prompt."""
    return await _call(
        _engine().get_context,
        project_id,
        request.query,
        request.max_tokens,
        request.current_file,
        request.format,
    )


@app.post("/projects/{project_id}/context/file", response_model=ContextBundle)
async def get_file_context(project_id: str, request: FileContextRequest) -> ContextBundle:
    return await _call(
        _engine().get_file_context, project_id, request.file_path, request.max_tokens, request.format
    )


@app.post("/projects/{project_id}/context/symbols", response_model=ContextBundle)
async def get_symbol_context(project_id: str, request: SymbolContextRequest) -> ContextBundle:
    return await _call(
        _engine().get_symbol_context, project_id, request.names, request.max_tokens, request.format
    )


@app.get("/projects/{project_id}/status", response_model=IndexStatus)
async def get_index_status(project_id: str) -> IndexStatus:
    return await _call(_engine().get_index_status, project_id)


@app.get("/projects/{project_id}/job", response_model=IndexJob)
async def get_job(project_id: str) -> IndexJob:
    job = _engine().get_job(project_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No indexing job for project '{project_id}'.")
    return job


@app.get("/projects/{project_id}/stats", response_model=ChunkStats)
async def get_stats(project_id: str) -> ChunkStats:
    return await _call(_engine().stats, project_id)


@app.get("/projects/{project_id}/symbols", response_model=ProjectSymbols)
async def get_symbols(project_id: str, name: str | None = None) -> ProjectSymbols:
    """Functions, components, hooks, classes and types of the project, by name."""
    return await _call(_engine().symbols, project_id, name)


@app.get("/projects/{project_id}/chunks/{chunk_id}", response_model=Chunk)
async def get_chunk(project_id: str, chunk_id: str) -> Chunk:
    chunk = await _call(_engine().get_chunk, project_id, chunk_id)
    if chunk is None:
        raise HTTPException(
            status_code=404, detail=f"Chunk '{chunk_id}' not found in project '{project_id}'."
        )
    return chunk


@app.post("/projects/{project_id}/watch")
async def watch(project_id: str, request: WatchRequest) -> dict[str, str]:
    await _call(
        _engine().watch,
        project_id,
        request.root_path,
        request.include_patterns,
        request.exclude_patterns,
        request.poll_interval_s,
    )
    return {"project_id": project_id, "status": "watching"}


@app.delete("/projects/{project_id}/watch")
async def unwatch(project_id: str) -> dict[str, bool]:
    stopped = await _call(_engine().unwatch, project_id)
    if not stopped:
        raise HTTPException(status_code=404, detail=f"Project '{project_id}' is not being watched.")
    return {"stopped": True}
