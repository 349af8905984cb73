"""Integration tests for FastAPI endpoints."""
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from ctx_engine.core.errors import ConcurrencyError, ConfigurationError, ProviderError, StorageError
from ctx_engine.core.models import (
    ChunkStats,
    ChunkType,
    ContextBundle,
    HybridSearchResult,
    IndexJob,
    IndexResult,
    IndexStatus,
    JobState,
    KeywordSearchResult,
    ProjectSymbols,
)


@contextmanager
def mocked_client(engine=None):
    """Context manager that yields (client, mock_engine) with proper cleanup."""
    mock_engine = engine if engine is not None else MagicMock()
    mock_engine.generator = MagicMock(model_name="gemini-embedding-001")

    with patch("ctx_engine.api.main.get_engine", return_value=mock_engine):
        from ctx_engine.api.main import app

        client = TestClient(app)
        yield client, mock_engine


def _bundle(text="## Relevant Code Context"):
    return ContextBundle(formatted=text, chunks=[], total_tokens=0, truncated=False, chunk_count=0, file_count=0)


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_check_healthy(self):
        with mocked_client() as (client, _):
            response = client.get("/health")

            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert data["embedding_model"] == "gemini-embedding-001"

    def test_health_check_not_initialized(self):
        with patch("ctx_engine.api.main.get_engine", return_value=None):
            from ctx_engine.api.main import app

            response = TestClient(app).get("/health")

        assert response.status_code == 503


class TestIndexEndpoints:
    """Tests for indexing endpoints."""

    def test_index_project_sync(self):
        with mocked_client() as (client, engine):
            engine.index_project.return_value = IndexResult(indexed_files=3, total_chunks=40, duration_ms=12)

            response = client.post("/projects/web/index", json={"root_path": "/repo", "force": True})

            assert response.status_code == 200
            assert response.json()["indexed_files"] == 3
            engine.index_project.assert_called_once_with("web", "/repo", None, None, True)

    def test_index_project_background(self):
        with mocked_client() as (client, engine):
            engine.indexing.is_indexing.return_value = False

            response = client.post("/projects/web/index", json={"root_path": "/repo", "background": True})

            assert response.status_code == 200
            assert response.json() == {"project_id": "web", "status": "started"}
            engine.index_project.assert_called_once()

    def test_index_project_conflict(self):
        with mocked_client() as (client, engine):
            engine.index_project.side_effect = ConcurrencyError("web")

            response = client.post("/projects/web/index", json={"root_path": "/repo"})

            assert response.status_code == 409

    def test_index_project_bad_root(self):
        with mocked_client() as (client, engine):
            engine.index_project.side_effect = ConfigurationError("Project root is not a directory")

            response = client.post("/projects/web/index", json={"root_path": "/missing"})

            assert response.status_code == 400

    def test_stop_and_clear(self):
        with mocked_client() as (client, engine):
            engine.stop_indexing.return_value = True
            engine.clear_index.return_value = 12

            assert client.post("/projects/web/stop").json() == {"stopped": True}
            assert client.delete("/projects/web/index").json() == {"deleted": 12}

    def test_job_and_status(self):
        with mocked_client() as (client, engine):
            engine.get_job.return_value = IndexJob(project_id="web", status=JobState.RUNNING, total_files=9)
            engine.get_index_status.return_value = IndexStatus(project_id="web", total_files=9)

            assert client.get("/projects/web/job").json()["status"] == "running"
            assert client.get("/projects/web/status").json()["total_files"] == 9

    def test_job_not_found(self):
        with mocked_client() as (client, engine):
            engine.get_job.return_value = None

            assert client.get("/projects/web/job").status_code == 404


class TestSearchEndpoints:
    """Tests for search and context endpoints."""

    def test_keyword_search(self, make_chunk):
        with mocked_client() as (client, engine):
            engine.search.return_value = KeywordSearchResult(chunks=[make_chunk(name="useCart")], total=1, elapsed_ms=2.0)

            response = client.get(
                "/projects/web/search", params={"query": "cart", "chunk_types": ["hook"], "limit": 5}
            )

            assert response.status_code == 200
            data = response.json()
            assert data["total"] == 1
            assert data["chunks"][0]["name"] == "useCart"
            assert "embedding" not in data["chunks"][0]
            engine.search.assert_called_once_with("web", "cart", ["hook"], None, 5, 0)

    def test_keyword_search_limit_validation(self):
        with mocked_client() as (client, _):
            response = client.get("/projects/web/search", params={"query": "cart", "limit": 0})

            assert response.status_code == 422

    def test_hybrid_search(self):
        with mocked_client() as (client, engine):
            engine.hybrid_search.return_value = HybridSearchResult(
                chunks=[], total_tokens=0, truncated=False, elapsed_ms=3.0
            )

            response = client.post(
                "/projects/web/hybrid-search",
                json={"query": "cart", "signals": {"semantic": False}, "current_file": "src/App.tsx"},
            )

            assert response.status_code == 200
            args = engine.hybrid_search.call_args.args
            assert args[3].semantic is False
            assert args[5] == "src/App.tsx"

    def test_context_provider_failure(self):
        with mocked_client() as (client, engine):
            engine.get_context.side_effect = ProviderError("quota exceeded")

            response = client.post("/projects/web/context", json={"query": "cart"})

            assert response.status_code == 503
            assert "Embedding provider unavailable" in response.json()["detail"]

    def test_context_variants(self):
        with mocked_client() as (client, engine):
            engine.get_context.return_value = _bundle()
            engine.get_file_context.return_value = _bundle("file")
            engine.get_symbol_context.return_value = _bundle("symbols")

            ctx = client.post("/projects/web/context", json={"query": "cart", "format": "xml", "max_tokens": 100})
            file_ctx = client.post("/projects/web/context/file", json={"file_path": "src/a.ts"})
            sym_ctx = client.post("/projects/web/context/symbols", json={"names": ["Cart"]})

            assert ctx.json()["formatted"] == "## Relevant Code Context"
            engine.get_context.assert_called_once_with("web", "cart", 100, None, "xml")
            assert file_ctx.json()["formatted"] == "file"
            assert sym_ctx.json()["formatted"] == "symbols"

    def test_symbol_context_requires_names(self):
        with mocked_client() as (client, _):
            assert client.post("/projects/web/context/symbols", json={"names": []}).status_code == 422

    def test_stats_storage_failure(self):
        with mocked_client() as (client, engine):
            engine.stats.side_effect = StorageError("corrupt fragment")

            response = client.get("/projects/web/stats")

            assert response.status_code == 500

    def test_stats(self):
        with mocked_client() as (client, engine):
            engine.stats.return_value = ChunkStats(total_chunks=5, total_files=2, chunks_by_type={"function": 5})

            assert client.get("/projects/web/stats").json()["total_chunks"] == 5

    def test_stats_report_embedding_coverage(self):
        with mocked_client() as (client, engine):
            engine.stats.return_value = ChunkStats(
                total_chunks=4, with_embeddings=3, without_embeddings=1, embedding_percent=75
            )

            body = client.get("/projects/web/stats").json()

            assert (body["with_embeddings"], body["without_embeddings"]) == (3, 1)
            assert body["embedding_percent"] == 75


class TestSymbolEndpoints:
    def test_symbols_grouped(self, make_chunk):
        with mocked_client() as (client, engine):
            engine.symbols.return_value = ProjectSymbols(
                hooks=[make_chunk(name="useCart", chunk_type=ChunkType.HOOK)],
            )

            body = client.get("/projects/web/symbols", params={"name": "cart"}).json()

            engine.symbols.assert_called_once_with("web", "cart")
            assert [c["name"] for c in body["hooks"]] == ["useCart"]
            assert body["functions"] == []
            assert "embedding" not in body["hooks"][0]

    def test_get_chunk(self, make_chunk):
        with mocked_client() as (client, engine):
            engine.get_chunk.return_value = make_chunk(name="total", id="c1")

            response = client.get("/projects/web/chunks/c1")

            assert response.status_code == 200
            assert response.json()["name"] == "total"
            engine.get_chunk.assert_called_once_with("web", "c1")

    def test_get_chunk_not_found(self):
        with mocked_client() as (client, engine):
            engine.get_chunk.return_value = None

            assert client.get("/projects/web/chunks/nope").status_code == 404


class TestWatchEndpoints:
    def test_watch_and_unwatch(self):
        with mocked_client() as (client, engine):
            engine.unwatch.return_value = True

            started = client.post("/projects/web/watch", json={"root_path": "/repo", "poll_interval_s": 2})
            stopped = client.delete("/projects/web/watch")

            assert started.json() == {"project_id": "web", "status": "watching"}
            engine.watch.assert_called_once_with("web", "/repo", None, None, 2.0)
            assert stopped.json() == {"stopped": True}

    def test_unwatch_unknown_project(self):
        with mocked_client() as (client, engine):
            engine.unwatch.return_value = False

            assert client.delete("/projects/web/watch").status_code == 404
