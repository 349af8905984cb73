from collections.abc import Iterator
from datetime import datetime
from typing import Any

import pyarrow as pa

from ctx_engine.core.models import Chunk, ChunkType, IndexState, IndexStatus

RECORD_BATCH_SIZE = 100


class ChunkMapper:
    """Maps Chunk models to PyArrow record batches and Polars rows back to Chunks."""

    def __init__(self) -> None:
        self._schema = pa.schema(
            [
                pa.field("id", pa.string(), nullable=False),
                pa.field("project_id", pa.string(), nullable=False),
                pa.field("file_path", pa.string(), nullable=False),
                pa.field("chunk_type", pa.string(), nullable=False),
                pa.field("name", pa.string(), nullable=True),
                pa.field("parent_name", pa.string(), nullable=True),
                pa.field("content", pa.string()),
                pa.field("summary", pa.string(), nullable=True),
                pa.field("language", pa.string()),
                pa.field("start_line", pa.int32()),
                pa.field("end_line", pa.int32()),
                pa.field("start_column", pa.int32()),
                pa.field("end_column", pa.int32()),
                pa.field("file_hash", pa.string()),
                pa.field("imports", pa.list_(pa.string())),
                pa.field("exports", pa.list_(pa.string())),
                pa.field("references", pa.list_(pa.string())),
                pa.field("keywords", pa.string()),
                pa.field("token_count", pa.int32()),
                # Variable length: null until the chunk has been embedded
                pa.field("embedding", pa.list_(pa.float32()), nullable=True),
                pa.field("embedding_model", pa.string(), nullable=True),
                pa.field("created_at", pa.timestamp("us")),
                pa.field("updated_at", pa.timestamp("us")),
            ]
        )

    @property
    def schema(self) -> Any:
        return self._schema

    def to_record_batch(self, chunks: list[Chunk], now: datetime) -> Any:
        return pa.RecordBatch.from_arrays(
            [
                pa.array([c.id for c in chunks], type=pa.string()),
                pa.array([c.project_id for c in chunks], type=pa.string()),
                pa.array([c.file_path for c in chunks], type=pa.string()),
                pa.array([c.chunk_type.value for c in chunks], type=pa.string()),
                pa.array([c.name for c in chunks], type=pa.string()),
                pa.array([c.parent_name for c in chunks], type=pa.string()),
                pa.array([c.content for c in chunks], type=pa.string()),
                pa.array([c.summary for c in chunks], type=pa.string()),
                pa.array([c.language for c in chunks], type=pa.string()),
                pa.array([c.start_line for c in chunks], type=pa.int32()),
                pa.array([c.end_line for c in chunks], type=pa.int32()),
                pa.array([c.start_column for c in chunks], type=pa.int32()),
                pa.array([c.end_column for c in chunks], type=pa.int32()),
                pa.array([c.file_hash for c in chunks], type=pa.string()),
                pa.array([c.imports for c in chunks], type=pa.list_(pa.string())),
                pa.array([c.exports for c in chunks], type=pa.list_(pa.string())),
                pa.array([c.references for c in chunks], type=pa.list_(pa.string())),
                pa.array([c.keywords for c in chunks], type=pa.string()),
                pa.array([c.token_count for c in chunks], type=pa.int32()),
                pa.array([c.embedding for c in chunks], type=pa.list_(pa.float32())),
                pa.array([c.embedding_model for c in chunks], type=pa.string()),
                pa.array([c.created_at or now for c in chunks], type=pa.timestamp("us")),
                pa.array([now for _ in chunks], type=pa.timestamp("us")),
            ],
            schema=self._schema,
        )

    def to_table(self, chunks: list[Chunk], now: datetime) -> Any:
        """Streams chunks as record batches of at most RECORD_BATCH_SIZE rows."""
        return pa.Table.from_batches(list(self.iter_batches(chunks, now)), schema=self._schema)

    def iter_batches(self, chunks: list[Chunk], now: datetime) -> Iterator[Any]:
        for start in range(0, len(chunks), RECORD_BATCH_SIZE):
            yield self.to_record_batch(chunks[start : start + RECORD_BATCH_SIZE], now)

    def from_polars_row(self, row: dict[str, Any]) -> Chunk:
        embedding = row.get("embedding")
        return Chunk(
            id=row["id"],
            project_id=row["project_id"],
            file_path=row["file_path"],
            chunk_type=ChunkType(row["chunk_type"]),
            name=row.get("name"),
            parent_name=row.get("parent_name"),
            content=row["content"],
            summary=row.get("summary"),
            language=row["language"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            start_column=row["start_column"],
            end_column=row["end_column"],
            file_hash=row["file_hash"],
            imports=list(row.get("imports") or []),
            exports=list(row.get("exports") or []),
            references=list(row.get("references") or []),
            keywords=row.get("keywords") or "",
            token_count=row["token_count"],
            embedding=list(embedding) if embedding is not None else None,
            embedding_model=row.get("embedding_model"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


class StatusMapper:
    """Maps IndexStatus rows to and from PyArrow."""

    def __init__(self) -> None:
        self._schema = pa.schema(
            [
                pa.field("project_id", pa.string(), nullable=False),
                pa.field("status", pa.string()),
                pa.field("total_files", pa.int64()),
                pa.field("indexed_files", pa.int64()),
                pa.field("total_chunks", pa.int64()),
                pa.field("last_full_index_at", pa.timestamp("us"), nullable=True),
                pa.field("last_incremental_at", pa.timestamp("us"), nullable=True),
                pa.field("last_error", pa.string(), nullable=True),
                pa.field("error_count", pa.int64()),
                pa.field("index_duration_ms", pa.int64(), nullable=True),
            ]
        )

    @property
    def schema(self) -> Any:
        return self._schema

    def to_table(self, status: IndexStatus) -> Any:
        row = status.model_dump()
        row["status"] = status.status.value
        return pa.Table.from_pylist([row], schema=self._schema)

    def from_polars_row(self, row: dict[str, Any]) -> IndexStatus:
        return IndexStatus(**{**row, "status": IndexState(row["status"])})
