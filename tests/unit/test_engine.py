"""Unit tests for the ContextEngine facade."""

from unittest.mock import MagicMock

import pytest

from ctx_engine.config import EmbeddingConfig, Settings
from ctx_engine.core.errors import ConcurrencyError, ConfigurationError
from ctx_engine.core.models import IndexState
from ctx_engine.engine import ContextEngine
from ctx_engine.infrastructure.chunking.structural import StructuralChunker
from ctx_engine.infrastructure.storage.lancedb_engine import LanceDBChunkStore


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=str(tmp_path / "db"), embedding=EmbeddingConfig(enabled=False))


@pytest.fixture
def engine(settings):
    return ContextEngine(MagicMock(), MagicMock(), MagicMock(), None, settings)


class TestFromSettings:
    def test_without_embeddings(self, settings):
        engine = ContextEngine.from_settings(settings)

        assert isinstance(engine.chunk_store, LanceDBChunkStore)
        assert isinstance(engine.indexing.chunker, StructuralChunker)
        assert engine.generator is None

    def test_with_gemini_embeddings(self, settings):
        settings.embedding = EmbeddingConfig(api_key="key", dimensions=256)

        engine = ContextEngine.from_settings(settings)

        assert engine.generator is not None
        assert engine.generator.dimension == 256
        assert engine.search_service.generator is engine.generator

    def test_unknown_provider(self, settings):
        settings.embedding = EmbeddingConfig(provider="nope", api_key="key")

        with pytest.raises(ConfigurationError):
            ContextEngine.from_settings(settings)


def test_clear_index_resets_status(engine):
    engine.chunk_store.delete_project.return_value = 7

    assert engine.clear_index("proj") == 7

    engine.chunk_store.delete_project.assert_called_once_with("proj")
    kwargs = engine.status_store.update.call_args.kwargs
    assert kwargs["status"] == IndexState.IDLE
    assert kwargs["total_chunks"] == 0


def test_clear_index_forgets_previous_failure(settings):
    engine = ContextEngine.from_settings(settings)
    engine.status_store.record_error("proj", "boom")

    engine.clear_index("proj")

    status = engine.get_index_status("proj")
    assert status.status == IndexState.IDLE
    assert status.last_error is None
    assert status.error_count == 0
    assert status.last_incremental_at is None


def test_clear_index_refused_while_indexing(engine):
    engine.indexing = MagicMock()
    engine.indexing.is_indexing.return_value = True

    with pytest.raises(ConcurrencyError):
        engine.clear_index("proj")

    engine.chunk_store.delete_project.assert_not_called()


def test_search_operations_delegate(engine):
    engine.search_service = MagicMock()

    engine.search("proj", "cart", limit=3)
    engine.get_context("proj", "cart", max_tokens=500, format="xml")
    engine.get_symbol_context("proj", ["Cart"])

    engine.search_service.keyword_search.assert_called_once_with("proj", "cart", None, None, 3, 0)
    engine.search_service.get_context.assert_called_once_with("proj", "cart", 500, None, "xml")
    engine.search_service.get_symbol_context.assert_called_once_with("proj", ["Cart"], None, "markdown")


def test_status_and_stats(engine):
    engine.get_index_status("proj")
    engine.stats("proj")

    engine.status_store.get.assert_called_once_with("proj")
    engine.chunk_store.stats.assert_called_once_with("proj")


def test_symbols_and_chunk_lookup_delegate(engine):
    engine.search_service = MagicMock()

    engine.symbols("proj", "cart")
    engine.get_chunk("proj", "c1")

    engine.search_service.list_symbols.assert_called_once_with("proj", "cart")
    engine.chunk_store.get_chunk.assert_called_once_with("proj", "c1")
