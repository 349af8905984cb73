from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ChunkType(str, Enum):
    """Closed set of structural unit classifications."""

    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    COMPONENT = "component"
    HOOK = "hook"
    CONSTANT = "constant"
    IMPORT = "import"
    EXPORT = "export"
    COMMENT = "comment"
    BLOCK = "block"
    FILE_SUMMARY = "file_summary"


class MatchType(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    GRAPH = "graph"
    HYBRID = "hybrid"


class Chunk(BaseModel):
    """An addressable structural unit of a source file."""

    id: str
    project_id: str
    file_path: str
    chunk_type: ChunkType
    name: str | None = None
    parent_name: str | None = None
    content: str
    summary: str | None = None
    language: str = "text"
    start_line: int
    end_line: int
    start_column: int = 0
    end_column: int = 0
    file_hash: str
    imports: list[str] = Field(default_factory=list)
    exports: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)
    keywords: str = ""
    token_count: int = 0
    embedding: list[float] | None = Field(default=None, exclude=True, repr=False)
    embedding_model: str | None = None
    # Stamped by the store on write, never by the chunker
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FileRecord(BaseModel):
    """A file seen by the change detector (in-memory only)."""

    path: str
    content_hash: str
    size: int
    modified_at: datetime


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class FileChangeEvent(BaseModel):
    kind: ChangeKind
    file: FileRecord


class IndexState(str, Enum):
    IDLE = "idle"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"


class IndexStatus(BaseModel):
    """Per-project index bookkeeping row."""

    project_id: str
    status: IndexState = IndexState.IDLE
    total_files: int = 0
    indexed_files: int = 0
    total_chunks: int = 0
    last_full_index_at: datetime | None = None
    last_incremental_at: datetime | None = None
    last_error: str | None = None
    error_count: int = 0
    index_duration_ms: int | None = None


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class IndexJob(BaseModel):
    """Progress record of one indexing run, keyed by project."""

    project_id: str
    status: JobState = JobState.IDLE
    total_files: int = 0
    processed_files: int = 0
    total_chunks: int = 0
    embedded_chunks: int = 0
    failed_embeddings: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None


class ScoredChunk(BaseModel):
    """A chunk ranked for a query, with its per-signal breakdown."""

    chunk: Chunk
    score: float
    match_type: MatchType
    keyword_score: float = 0.0
    semantic_score: float = 0.0
    graph_score: float = 0.0
    boost: float = 0.0

    @property
    def token_count(self) -> int:
        return self.chunk.token_count

    @property
    def file_path(self) -> str:
        return self.chunk.file_path


class SignalFlags(BaseModel):
    keyword: bool = True
    semantic: bool = True
    graph: bool = True


class SignalWeights(BaseModel):
    semantic: float = 0.6
    keyword: float = 0.3
    graph: float = 0.1


class KeywordSearchResult(BaseModel):
    chunks: list[Chunk]
    total: int
    elapsed_ms: float


class HybridSearchResult(BaseModel):
    chunks: list[ScoredChunk]
    total_tokens: int
    truncated: bool
    elapsed_ms: float


class ContextBundle(BaseModel):
    """The agent-facing result: a formatted, budget-bounded selection."""

    formatted: str
    chunks: list[ScoredChunk]
    total_tokens: int
    truncated: bool
    chunk_count: int
    file_count: int
    elapsed_ms: float = 0.0


class IndexResult(BaseModel):
    indexed_files: int
    total_chunks: int
    duration_ms: int
    skipped_files: int = 0
    failed_files: int = 0


class ChunkStats(BaseModel):
    total_chunks: int = 0
    total_files: int = 0
    total_tokens: int = 0
    chunks_by_type: dict[str, int] = Field(default_factory=dict)
    with_embeddings: int = 0
    without_embeddings: int = 0
    # Rounded share of chunks holding a vector, 0 for an empty project
    embedding_percent: int = 0


class ProjectSymbols(BaseModel):
    """Named declarations of a project grouped by kind, ordered by name."""

    functions: list[Chunk] = Field(default_factory=list)
    components: list[Chunk] = Field(default_factory=list)
    hooks: list[Chunk] = Field(default_factory=list)
    classes: list[Chunk] = Field(default_factory=list)
    types: list[Chunk] = Field(default_factory=list)


class BatchEmbeddingResult(BaseModel):
    """Outcome of a batch embedding call. Failed items carry zero vectors."""

    vectors: list[list[float]]
    failed_indices: list[int] = Field(default_factory=list)
    total_tokens: int = 0
