"""Pytest configuration and fixtures."""

import pytest
from loguru import logger

from ctx_engine.core.models import Chunk, ChunkType


@pytest.fixture
def caplog(caplog):
    """Enable Loguru logging to be captured by pytest's caplog fixture."""
    import logging

    class PropagateHandler(logging.Handler):
        def emit(self, record):
            logging.getLogger(record.name).handle(record)

    handler_id = logger.add(PropagateHandler(), format="{message}")
    yield caplog
    logger.remove(handler_id)


@pytest.fixture
def make_chunk():
    """Factory for Chunk models with sensible defaults."""

    def _make(
        name="handler",
        file_path="src/app.ts",
        chunk_type=ChunkType.FUNCTION,
        content=None,
        project_id="proj",
        start_line=1,
        **overrides,
    ):
        content = content if content is not None else f"function {name}() {{}}"
        fields = {
            "id": overrides.pop("id", f"{file_path}:{name}:{start_line}"),
            "project_id": project_id,
            "file_path": file_path,
            "chunk_type": chunk_type,
            "name": name,
            "content": content,
            "language": "typescript",
            "start_line": start_line,
            "end_line": start_line + content.count("\n"),
            "file_hash": "hash",
            "keywords": name or "",
            "token_count": max(1, len(content) // 4),
        }
        fields.update(overrides)
        return Chunk(**fields)

    return _make
