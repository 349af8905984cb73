import time

import numpy as np
from loguru import logger
from numpy.typing import NDArray

from ctx_engine.config import SearchConfig
from ctx_engine.core.errors import ProviderError
from ctx_engine.core.models import (
    Chunk,
    ChunkType,
    ContextBundle,
    HybridSearchResult,
    KeywordSearchResult,
    MatchType,
    ProjectSymbols,
    ScoredChunk,
    SignalFlags,
    SignalWeights,
)
from ctx_engine.core.ports import IChunkStore
from ctx_engine.core.registry import ComponentRegistry, Formatter
from ctx_engine.services.embedding import EmbeddingGenerator
from ctx_engine.services.ranking import HybridRanker
from ctx_engine.services.selection import select_within_budget

SYMBOL_RESULTS_PER_NAME = 5

# Chunk type -> ProjectSymbols field
SYMBOL_GROUPS = {
    ChunkType.FUNCTION: "functions",
    ChunkType.COMPONENT: "components",
    ChunkType.HOOK: "hooks",
    ChunkType.CLASS: "classes",
    ChunkType.INTERFACE: "types",
    ChunkType.TYPE: "types",
}


class SearchService:
    """Orchestrates keyword and hybrid retrieval and builds budgeted context bundles."""

    def __init__(
        self,
        chunk_store: IChunkStore,
        generator: EmbeddingGenerator | None = None,
        config: SearchConfig | None = None,
        query_timeout_s: float = 5.0,
    ) -> None:
        self.chunk_store = chunk_store
        self.generator = generator
        self.config = config or SearchConfig()
        self.query_timeout_s = query_timeout_s
        self.ranker = HybridRanker(
            proximity_boost=self.config.proximity_boost, min_score=self.config.min_score
        )

    @property
    def default_weights(self) -> SignalWeights:
        return SignalWeights(
            semantic=self.config.semantic_weight,
            keyword=self.config.keyword_weight,
            graph=self.config.graph_weight,
        )

    def keyword_search(
        self,
        project_id: str,
        query: str,
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> KeywordSearchResult:
        logger.info("Keyword search in '{}': {}", project_id, query)
        return self.chunk_store.keyword_search(
            project_id,
            query,
            chunk_types=chunk_types,
            path_filter=path_filter,
            limit=limit or self.config.default_limit,
            offset=offset,
        )

    def _query_vector(self, query: str, signals: SignalFlags) -> NDArray[np.float32] | None:
        if not signals.semantic or self.generator is None:
            return None
        try:
            return self.generator.embed_query(query, timeout=self.query_timeout_s)
        except (ProviderError, ValueError) as e:
            logger.warning("Query embedding unavailable, ranking with keyword and graph only: {}", e)
            return None

    def hybrid_search(
        self,
        project_id: str,
        query: str,
        limit: int | None = None,
        signals: SignalFlags | None = None,
        weights: SignalWeights | None = None,
        current_file: str | None = None,
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
    ) -> HybridSearchResult:
        """Ranks every project chunk against the query and returns the top `limit`."""
        start = time.perf_counter()
        signals = signals or SignalFlags()
        limit = limit or self.config.default_limit
        logger.info("Hybrid search in '{}': {}", project_id, query)

        candidates = self.chunk_store.list_chunks(project_id, chunk_types=chunk_types, path_filter=path_filter)
        query_vector = self._query_vector(query, signals)
        ranked = self.ranker.rank(
            query,
            candidates,
            signals=signals,
            weights=weights or self.default_weights,
            current_file=current_file,
            query_vector=query_vector,
        )

        top = ranked[:limit]
        return HybridSearchResult(
            chunks=top,
            total_tokens=sum(sc.token_count for sc in top),
            truncated=len(ranked) > len(top),
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )

    def _bundle(
        self,
        candidates: list[ScoredChunk],
        label: str,
        max_tokens: int | None,
        formatter: Formatter,
        start: float,
        diversity_weight: float | None = None,
    ) -> ContextBundle:
        selected = select_within_budget(
            candidates,
            max_tokens if max_tokens is not None else self.config.max_tokens,
            min_chunks=self.config.min_chunks,
            diversity_weight=self.config.diversity_weight if diversity_weight is None else diversity_weight,
        )
        total_tokens = sum(sc.token_count for sc in selected)
        truncated = len(candidates) > len(selected)
        return ContextBundle(
            formatted=formatter(selected, label, truncated, total_tokens),
            chunks=selected,
            total_tokens=total_tokens,
            truncated=truncated,
            chunk_count=len(selected),
            file_count=len({sc.file_path for sc in selected}),
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )

    def get_context(
        self,
        project_id: str,
        query: str,
        max_tokens: int | None = None,
        current_file: str | None = None,
        format: str = "markdown",
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
        signals: SignalFlags | None = None,
    ) -> ContextBundle:
        """Hybrid search, budgeted selection and formatting in one call."""
        formatter = ComponentRegistry.get_formatter(format)
        start = time.perf_counter()
        result = self.hybrid_search(
            project_id,
            query,
            limit=self.config.candidate_limit,
            signals=signals,
            current_file=current_file,
            chunk_types=chunk_types,
            path_filter=path_filter,
        )
        return self._bundle(result.chunks, query, max_tokens, formatter, start)

    def get_file_context(
        self,
        project_id: str,
        file_path: str,
        max_tokens: int | None = None,
        format: str = "markdown",
    ) -> ContextBundle:
        """Every chunk of one file, in source order, within the budget."""
        formatter = ComponentRegistry.get_formatter(format)
        start = time.perf_counter()
        chunks = self.chunk_store.get_chunks_for_file(project_id, file_path)
        scored = [
            ScoredChunk(chunk=c, score=max(0.0, 1 - i * 0.01), match_type=MatchType.KEYWORD)
            for i, c in enumerate(chunks)
        ]
        return self._bundle(scored, f"File: {file_path}", max_tokens, formatter, start, diversity_weight=0.0)

    def get_symbol_context(
        self,
        project_id: str,
        names: list[str],
        max_tokens: int | None = None,
        format: str = "markdown",
    ) -> ContextBundle:
        """Declarations of the named symbols plus their closest keyword/semantic matches."""
        formatter = ComponentRegistry.get_formatter(format)
        start = time.perf_counter()

        best: dict[str, ScoredChunk] = {}

        def keep(sc: ScoredChunk) -> None:
            current = best.get(sc.chunk.id)
            if current is None or sc.score > current.score:
                best[sc.chunk.id] = sc

        for chunk in self.chunk_store.find_chunks_by_name(project_id, names):
            exact = chunk.name in names
            keep(ScoredChunk(chunk=chunk, score=1.0 if exact else 0.8, match_type=MatchType.KEYWORD))

        no_graph = SignalFlags(keyword=True, semantic=True, graph=False)
        for name in names:
            result = self.hybrid_search(project_id, name, limit=SYMBOL_RESULTS_PER_NAME, signals=no_graph)
            for sc in result.chunks:
                keep(sc)

        candidates = sorted(best.values(), key=lambda sc: -sc.score)
        return self._bundle(candidates, f"Symbols: {', '.join(names)}", max_tokens, formatter, start)

    def list_symbols(self, project_id: str, name_filter: str | None = None) -> ProjectSymbols:
        """Named declarations grouped by kind. `name_filter` is a case-insensitive substring."""
        chunks = self.chunk_store.list_chunks(project_id, chunk_types=[t.value for t in SYMBOL_GROUPS])
        needle = (name_filter or "").strip().lower()
        named = [c for c in chunks if c.name and needle in c.name.lower()]
        named.sort(key=lambda c: (c.name or "", c.file_path, c.start_line))

        groups: dict[str, list[Chunk]] = {group: [] for group in SYMBOL_GROUPS.values()}
        for chunk in named:
            groups[SYMBOL_GROUPS[chunk.chunk_type]].append(chunk)
        return ProjectSymbols(**groups)
