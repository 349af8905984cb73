import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Literal

import numpy as np
from loguru import logger
from numpy.typing import NDArray

from ctx_engine.config import EmbeddingConfig
from ctx_engine.core.errors import ProviderError
from ctx_engine.core.models import BatchEmbeddingResult
from ctx_engine.core.ports import IEmbeddingProvider
from ctx_engine.infrastructure.chunking.text import estimate_tokens
from ctx_engine.infrastructure.embeddings.cache import EmbeddingCache
from ctx_engine.infrastructure.embeddings.vectors import normalize_vector

EmbedMode = Literal["document", "query"]

TRUNCATION_MARKER = "..."
_TRUNCATION_MARGIN = 100


def truncate_for_embedding(text: str, max_chars: int) -> str:
    """Cuts text to `max_chars`, preferring the last newline or space in the tail margin."""
    if len(text) <= max_chars:
        return text

    head = text[:max_chars]
    floor = max(0, max_chars - _TRUNCATION_MARGIN)
    cut = max(head.rfind("\n"), head.rfind(" "))
    if cut < floor:
        cut = max_chars
    return head[:cut] + TRUNCATION_MARKER


class EmbeddingGenerator:
    """
    Turns text into unit-length vectors through an IEmbeddingProvider.
    Applies truncation, caching, batching and bounded request concurrency.
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        config: EmbeddingConfig | None = None,
        cache: EmbeddingCache | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or EmbeddingConfig()
        self.cache = cache or EmbeddingCache(self.config.cache_size)

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def _task(self, mode: EmbedMode) -> str:
        return self.config.query_task if mode == "query" else self.config.document_task

    def _zero_vector(self) -> NDArray[np.float32]:
        return np.zeros(self.dimension, dtype=np.float32)

    def _prepare(self, text: str) -> str:
        return truncate_for_embedding(text, self.config.max_input_chars)

    def _request(self, texts: list[str], mode: EmbedMode, timeout: float | None = None) -> list[list[float]]:
        raw = self.provider.embed_texts(texts, self._task(mode), timeout=timeout)
        return [normalize_vector(vector) for vector in raw]

    def embed(self, text: str, mode: EmbedMode = "document") -> NDArray[np.float32]:
        """Embeds a single text. Provider failures degrade to a zero vector."""
        prepared = self._prepare(text)
        cached = self.cache.get(prepared, mode)
        if cached is not None:
            return np.asarray(cached, dtype=np.float32)

        try:
            vector = self._request([prepared], mode)[0]
        except ProviderError as e:
            logger.warning("Embedding failed, using zero vector: {}", e)
            return self._zero_vector()

        self.cache.put(prepared, mode, vector)
        return np.asarray(vector, dtype=np.float32)

    def embed_query(self, text: str, timeout: float | None = None) -> NDArray[np.float32]:
        """Query-mode embedding with a call-level timeout. Raises ProviderError."""
        if not text.strip():
            raise ValueError("Query text cannot be empty.")

        prepared = self._prepare(text)
        cached = self.cache.get(prepared, "query")
        if cached is not None:
            return np.asarray(cached, dtype=np.float32)

        vector = self._request(
            [prepared], "query", timeout=timeout if timeout is not None else self.config.query_timeout_s
        )[0]
        self.cache.put(prepared, "query", vector)
        return np.asarray(vector, dtype=np.float32)

    def embed_batch(
        self,
        texts: list[str],
        mode: EmbedMode = "document",
        should_stop: Callable[[], bool] | None = None,
    ) -> BatchEmbeddingResult:
        """Embeds many texts, preserving order.

        Batches run in sequence with a rate-limit delay between them; within a
        batch up to `max_concurrency` provider requests are in flight. A failed
        request marks its items failed (zero vector, no tokens) and later
        batches still run. When `should_stop` returns True between batches the
        remaining items are reported failed.
        """
        dim = self.dimension
        vectors: list[list[float]] = [[0.0] * dim for _ in texts]
        failed: list[int] = []
        total_tokens = 0

        prepared = [self._prepare(text) for text in texts]
        pending: list[int] = []
        for i, text in enumerate(prepared):
            cached = self.cache.get(text, mode)
            if cached is None:
                pending.append(i)
            else:
                vectors[i] = cached
                total_tokens += estimate_tokens(text)

        batch_size = self.config.batch_size
        delay = self.config.rate_limit_delay_ms / 1000
        batches = [pending[i : i + batch_size] for i in range(0, len(pending), batch_size)]

        for n, batch in enumerate(batches):
            if should_stop is not None and should_stop():
                remaining = [i for b in batches[n:] for i in b]
                logger.info("Embedding stopped, {} texts left unembedded", len(remaining))
                failed.extend(remaining)
                break

            if n > 0 and delay > 0:
                time.sleep(delay)

            for indices, result in self._run_batch(batch, prepared, mode):
                if result is None:
                    failed.extend(indices)
                    continue
                for i, vector in zip(indices, result, strict=True):
                    vectors[i] = vector
                    self.cache.put(prepared[i], mode, vector)
                    total_tokens += estimate_tokens(prepared[i])

        if failed:
            logger.warning("{} of {} embeddings failed", len(failed), len(texts))
        return BatchEmbeddingResult(vectors=vectors, failed_indices=sorted(failed), total_tokens=total_tokens)

    def _run_batch(
        self, batch: list[int], prepared: list[str], mode: EmbedMode
    ) -> list[tuple[list[int], list[list[float]] | None]]:
        """Splits a batch into at most `max_concurrency` requests and runs them in parallel."""
        workers = min(self.config.max_concurrency, len(batch))
        step = -(-len(batch) // workers)
        slices = [batch[i : i + step] for i in range(0, len(batch), step)]

        def call(indices: list[int]) -> list[list[float]] | None:
            try:
                return self._request([prepared[i] for i in indices], mode)
            except ProviderError as e:
                logger.warning("Embedding request for {} texts failed: {}", len(indices), e)
                return None

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(call, slices))
        return list(zip(slices, results, strict=True))
