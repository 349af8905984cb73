from collections.abc import Callable
from typing import Any, Protocol

from ctx_engine.core.models import (
    Chunk,
    ChunkStats,
    FileChangeEvent,
    IndexStatus,
    KeywordSearchResult,
)


class IChunker(Protocol):
    """Protocol defining how source files are split into structural units."""

    def chunk(self, content: str, file_path: str, project_id: str, file_hash: str) -> list[Chunk]:
        """Returns every chunk of a file. Must never raise."""
        ...


class IEmbeddingProvider(Protocol):
    """Protocol for a remote embedding backend."""

    @property
    def model_name(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    def embed_texts(
        self, texts: list[str], task: str, timeout: float | None = None
    ) -> list[list[float]]:
        """Returns one raw (un-normalized) vector per text, in order. Raises ProviderError."""
        ...


class IChunkStore(Protocol):
    """Protocol for the project-scoped chunk table."""

    def replace_chunks_for_file(self, project_id: str, file_path: str, chunks: list[Chunk]) -> int:
        """Atomically swaps the file's chunk set for `chunks`."""
        ...

    def delete_chunks_for_file(self, project_id: str, file_path: str) -> int: ...

    def delete_project(self, project_id: str) -> int: ...

    def keyword_search(
        self,
        project_id: str,
        query: str,
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> KeywordSearchResult: ...

    def list_chunks(
        self,
        project_id: str,
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
    ) -> list[Chunk]: ...

    def get_chunks_for_file(self, project_id: str, file_path: str) -> list[Chunk]: ...

    def find_chunks_by_name(self, project_id: str, names: list[str]) -> list[Chunk]:
        """Chunks whose name or parent_name is one of `names`."""
        ...

    def get_chunk(self, project_id: str, chunk_id: str) -> Chunk | None: ...

    def chunks_without_embeddings(self, project_id: str) -> list[Chunk]: ...

    def file_hashes(self, project_id: str) -> dict[str, str]: ...

    def stats(self, project_id: str) -> ChunkStats: ...

    def compact(self) -> None: ...


class IStatusStore(Protocol):
    """Protocol for the one-row-per-project index status table."""

    def get(self, project_id: str) -> IndexStatus: ...

    def update(self, project_id: str, **fields: Any) -> IndexStatus: ...

    def record_error(self, project_id: str, message: str) -> IndexStatus: ...


ChangeHandler = Callable[[list[FileChangeEvent]], None]
