from unittest.mock import MagicMock

import pytest

from ctx_engine.api.mcp_server import get_code_context, get_index_status, search_code
from ctx_engine.api.state import _engines
from ctx_engine.core.errors import ProviderError, StorageError
from ctx_engine.core.models import ContextBundle, IndexState, IndexStatus, KeywordSearchResult


@pytest.fixture
def mock_engine():
    """Set up and tear down a mock engine in the global state."""
    engine = MagicMock()
    _engines["default"] = engine

    yield engine

    _engines.clear()


@pytest.mark.asyncio
async def test_get_code_context_returns_formatted_bundle(mock_engine):
    """Test that get_code_context returns the formatted text."""
    mock_engine.get_context.return_value = ContextBundle(
        formatted="## Relevant Code Context\n...", chunks=[], total_tokens=0, truncated=False,
        chunk_count=0, file_count=0,
    )

    result_str = await get_code_context(project_id="proj", query="cart total", max_tokens=500)

    mock_engine.get_context.assert_called_once_with("proj", "cart total", 500, None, "markdown")
    assert result_str.startswith("## Relevant Code Context")


@pytest.mark.asyncio
async def test_get_code_context_reports_errors(mock_engine):
    mock_engine.get_context.side_effect = ProviderError("quota")

    result_str = await get_code_context(project_id="proj", query="cart")

    assert result_str == "Context retrieval failed: quota"


@pytest.mark.asyncio
async def test_search_code_success(mock_engine, make_chunk):
    """Test that search_code formats chunk results."""
    mock_engine.search.return_value = KeywordSearchResult(
        chunks=[make_chunk(name="useCart", file_path="src/hooks.ts", start_line=4, content="function useCart() {}")],
        total=3,
        elapsed_ms=1.0,
    )

    result_str = await search_code(project_id="proj", query="cart", limit=1)

    mock_engine.search.assert_called_once_with("proj", "cart", chunk_types=None, limit=1)
    assert "Found 3 results for 'cart' (showing 1)" in result_str
    assert "--- function useCart ---" in result_str
    assert "Location: src/hooks.ts:4-4" in result_str
    assert "function useCart() {}" in result_str


@pytest.mark.asyncio
async def test_search_code_no_results(mock_engine):
    """Test that search_code handles empty results gracefully."""
    mock_engine.search.return_value = KeywordSearchResult(chunks=[], total=0, elapsed_ms=0.5)

    result_str = await search_code(project_id="proj", query="nothing")

    assert result_str == "No results found for query: 'nothing'"


@pytest.mark.asyncio
async def test_search_code_storage_error(mock_engine):
    mock_engine.search.side_effect = StorageError("table missing")

    result_str = await search_code(project_id="proj", query="crash")

    assert "Search execution failed: table missing" in result_str


@pytest.mark.asyncio
async def test_get_index_status(mock_engine):
    mock_engine.get_index_status.return_value = IndexStatus(
        project_id="proj", status=IndexState.FAILED, total_files=10, indexed_files=8,
        total_chunks=120, last_error="disk full", error_count=2,
    )

    result_str = await get_index_status(project_id="proj")

    assert "Status: failed" in result_str
    assert "Files: 8/10" in result_str
    assert "Last error: disk full (2 total)" in result_str


@pytest.mark.asyncio
async def test_tools_when_not_initialized():
    """Test behavior when the engine is not loaded."""
    _engines.clear()

    assert "Error: Context engine is not initialized." == await search_code(project_id="p", query="q")
    assert "Error: Context engine is not initialized." == await get_code_context(project_id="p", query="q")
    assert "Error: Context engine is not initialized." == await get_index_status(project_id="p")
