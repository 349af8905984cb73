from pathlib import Path

from loguru import logger

from ctx_engine.config import Settings
from ctx_engine.core.errors import ConcurrencyError
from ctx_engine.core.models import (
    Chunk,
    ChunkStats,
    ContextBundle,
    HybridSearchResult,
    IndexJob,
    IndexResult,
    IndexState,
    IndexStatus,
    KeywordSearchResult,
    ProjectSymbols,
    SignalFlags,
    SignalWeights,
)
from ctx_engine.core.ports import IChunker, IChunkStore, IStatusStore
from ctx_engine.core.registry import ComponentRegistry
from ctx_engine.infrastructure.chunking.structural import StructuralChunker
from ctx_engine.infrastructure.embeddings.cache import EmbeddingCache
from ctx_engine.infrastructure.storage.lancedb_engine import LanceDBChunkStore, LanceDBStatusStore
from ctx_engine.services.embedding import EmbeddingGenerator
from ctx_engine.services.indexing import IndexingService
from ctx_engine.services.search import SearchService


class ContextEngine:
    """Facade over indexing, search and context assembly for many projects."""

    def __init__(
        self,
        chunker: IChunker,
        chunk_store: IChunkStore,
        status_store: IStatusStore,
        generator: EmbeddingGenerator | None,
        settings: Settings,
    ) -> None:
        self.settings = settings
        self.chunk_store = chunk_store
        self.status_store = status_store
        self.generator = generator
        self.indexing = IndexingService(
            chunker,
            chunk_store,
            status_store,
            generator=generator,
            watcher_config=settings.watcher,
            batch_size=settings.embedding.batch_size,
        )
        self.search_service = SearchService(
            chunk_store,
            generator=generator,
            config=settings.search,
            query_timeout_s=settings.embedding.query_timeout_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextEngine":
        """Dependency injection factory driven by config.yaml configuration."""
        chunker = StructuralChunker(settings.chunker)
        chunk_store = LanceDBChunkStore(settings.db_path, settings.chunks_table)
        status_store = LanceDBStatusStore(settings.db_path, settings.status_table)

        generator = None
        config = settings.embedding
        if config.enabled:
            ProviderClass = ComponentRegistry.get_provider(config.provider)
            provider = ProviderClass(
                model_name=config.model_name,
                dimension=config.dimensions,
                api_key=config.api_key,
                base_url=config.base_url,
                timeout=config.request_timeout_s,
            )
            generator = EmbeddingGenerator(provider, config, EmbeddingCache(config.cache_size))
        else:
            logger.info("Embeddings disabled, hybrid search will use keyword and graph signals")

        return cls(chunker, chunk_store, status_store, generator, settings)

    # -------------------------------------------------------------- indexing

    def index_project(
        self,
        project_id: str,
        root_path: str | Path,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        force: bool = False,
    ) -> IndexResult:
        return self.indexing.index_project(project_id, root_path, include_patterns, exclude_patterns, force)

    def stop_indexing(self, project_id: str) -> bool:
        return self.indexing.stop_indexing(project_id)

    def clear_index(self, project_id: str) -> int:
        """Deletes every chunk of the project and resets its status row."""
        if self.indexing.is_indexing(project_id):
            raise ConcurrencyError(project_id)
        deleted = self.chunk_store.delete_project(project_id)
        self.status_store.update(
            project_id,
            status=IndexState.IDLE,
            total_files=0,
            indexed_files=0,
            total_chunks=0,
            last_full_index_at=None,
            last_incremental_at=None,
            last_error=None,
            error_count=0,
            index_duration_ms=None,
        )
        return deleted

    def get_index_status(self, project_id: str) -> IndexStatus:
        return self.status_store.get(project_id)

    def get_job(self, project_id: str) -> IndexJob | None:
        return self.indexing.get_job(project_id)

    def watch(
        self,
        project_id: str,
        root_path: str | Path,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        poll_interval_s: float | None = None,
    ) -> None:
        self.indexing.watch(project_id, root_path, include_patterns, exclude_patterns, poll_interval_s)

    def unwatch(self, project_id: str) -> bool:
        return self.indexing.unwatch(project_id)

    # ---------------------------------------------------------------- search

    def search(
        self,
        project_id: str,
        query: str,
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> KeywordSearchResult:
        return self.search_service.keyword_search(project_id, query, chunk_types, path_filter, limit, offset)

    def hybrid_search(
        self,
        project_id: str,
        query: str,
        limit: int | None = None,
        signals: SignalFlags | None = None,
        weights: SignalWeights | None = None,
        current_file: str | None = None,
    ) -> HybridSearchResult:
        return self.search_service.hybrid_search(project_id, query, limit, signals, weights, current_file)

    def get_context(
        self,
        project_id: str,
        query: str,
        max_tokens: int | None = None,
        current_file: str | None = None,
        format: str = "markdown",
    ) -> ContextBundle:
        return self.search_service.get_context(project_id, query, max_tokens, current_file, format)

    def get_file_context(
        self, project_id: str, file_path: str, max_tokens: int | None = None, format: str = "markdown"
    ) -> ContextBundle:
        return self.search_service.get_file_context(project_id, file_path, max_tokens, format)

    def get_symbol_context(
        self, project_id: str, names: list[str], max_tokens: int | None = None, format: str = "markdown"
    ) -> ContextBundle:
        return self.search_service.get_symbol_context(project_id, names, max_tokens, format)

    def stats(self, project_id: str) -> ChunkStats:
        return self.chunk_store.stats(project_id)

    def symbols(self, project_id: str, name_filter: str | None = None) -> ProjectSymbols:
        return self.search_service.list_symbols(project_id, name_filter)

    def get_chunk(self, project_id: str, chunk_id: str) -> Chunk | None:
        return self.chunk_store.get_chunk(project_id, chunk_id)

    def shutdown(self) -> None:
        self.indexing.shutdown()
