import threading
import time
from datetime import UTC, datetime
from typing import Any, cast

import lancedb
import polars as pl
from loguru import logger

from ctx_engine.core.errors import StorageError
from ctx_engine.core.models import Chunk, ChunkStats, IndexStatus, KeywordSearchResult
from ctx_engine.infrastructure.storage.mappers import ChunkMapper, StatusMapper


def _quote(value: str) -> str:
    """Single-quoted SQL literal with embedded quotes doubled."""
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def _path_matches(path_filter: str) -> pl.Expr:
    """Exact file match, or every file below the directory `path_filter` names."""
    prefix = path_filter.rstrip("/") + "/"
    return (pl.col("file_path") == path_filter) | pl.col("file_path").str.starts_with(prefix)


class _LanceTable:
    """Shared connection and scan helpers for the two stores."""

    def __init__(self, db_path: str, table_name: str, schema: Any) -> None:
        self.db_path = db_path
        self.table_name = table_name
        self._schema = schema
        self._write_lock = threading.Lock()

        try:
            self.db = lancedb.connect(db_path)
            self.table = self.db.create_table(table_name, schema=schema, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Cannot open table '{table_name}' at {db_path}: {e}") from e

    def _scan(self, where: str, columns: list[str] | None = None) -> pl.DataFrame:
        """Returns every row matching the SQL filter as a Polars DataFrame."""
        try:
            count = self.table.count_rows(where)
            if not count:
                empty = cast(pl.DataFrame, pl.from_arrow(self._schema.empty_table()))
                return empty.select(columns) if columns else empty

            query = self.table.search().where(where, prefilter=True)
            if columns:
                query = query.select(columns)
            df: pl.DataFrame = query.limit(count).to_polars()
            return df
        except Exception as e:
            raise StorageError(f"Read from '{self.table_name}' failed: {e}") from e

    def _count(self, where: str) -> int:
        try:
            return int(self.table.count_rows(where))
        except Exception as e:
            raise StorageError(f"Count on '{self.table_name}' failed: {e}") from e

    def _delete(self, where: str) -> int:
        try:
            count = self.table.count_rows(where)
            if count:
                self.table.delete(where)
            return int(count)
        except Exception as e:
            raise StorageError(f"Delete from '{self.table_name}' failed: {e}") from e


class LanceDBChunkStore(_LanceTable):
    """
    Concrete implementation of IChunkStore using LanceDB.
    Every read and write is scoped by project_id.
    """

    def __init__(self, db_path: str, table_name: str, mapper: ChunkMapper | None = None) -> None:
        self.mapper = mapper or ChunkMapper()
        super().__init__(db_path, table_name, self.mapper.schema)

    @staticmethod
    def _project_filter(project_id: str) -> str:
        return f"project_id = {_quote(project_id)}"

    @classmethod
    def _file_filter(cls, project_id: str, file_path: str) -> str:
        return f"{cls._project_filter(project_id)} AND file_path = {_quote(file_path)}"

    def _rows_to_chunks(self, df: pl.DataFrame) -> list[Chunk]:
        return [self.mapper.from_polars_row(row) for row in df.iter_rows(named=True)]

    def replace_chunks_for_file(self, project_id: str, file_path: str, chunks: list[Chunk]) -> int:
        """Swaps the file's chunk set in a single merge_insert commit.

        New and changed rows are upserted by id and the file's rows absent from
        `chunks` are deleted in the same transaction. `created_at` survives for
        chunks whose id is unchanged.
        """
        for chunk in chunks:
            if chunk.project_id != project_id or chunk.file_path != file_path:
                raise ValueError(
                    f"Chunk {chunk.id} belongs to {chunk.project_id}:{chunk.file_path}, "
                    f"not {project_id}:{file_path}"
                )

        where = self._file_filter(project_id, file_path)
        unique = list({c.id: c for c in chunks}.values())

        with self._write_lock:
            if not unique:
                return self._delete(where)

            existing = self._scan(where, columns=["id", "created_at"])
            created = dict(zip(existing["id"].to_list(), existing["created_at"].to_list(), strict=True))
            stamped = [c.model_copy(update={"created_at": created.get(c.id)}) for c in unique]

            try:
                (
                    self.table.merge_insert("id")
                    .when_matched_update_all()
                    .when_not_matched_insert_all()
                    .when_not_matched_by_source_delete(where)
                    .execute(self.mapper.to_table(stamped, _utcnow()))
                )
            except Exception as e:
                raise StorageError(f"Replacing chunks of {file_path} failed: {e}") from e

        logger.debug("Stored {} chunks for {}:{}", len(unique), project_id, file_path)
        return len(unique)

    def delete_chunks_for_file(self, project_id: str, file_path: str) -> int:
        with self._write_lock:
            return self._delete(self._file_filter(project_id, file_path))

    def delete_project(self, project_id: str) -> int:
        with self._write_lock:
            deleted = self._delete(self._project_filter(project_id))
        logger.info("Deleted {} chunks of project '{}'", deleted, project_id)
        return deleted

    def _filtered(
        self, project_id: str, chunk_types: list[str] | None, path_filter: str | None
    ) -> pl.DataFrame:
        where = self._project_filter(project_id)
        if chunk_types:
            where += f" AND chunk_type IN ({', '.join(_quote(t) for t in chunk_types)})"
        df = self._scan(where)
        if path_filter:
            df = df.filter(_path_matches(path_filter))
        return df

    def keyword_search(
        self,
        project_id: str,
        query: str,
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> KeywordSearchResult:
        """Case-insensitive substring match on keywords, name and content."""
        start = time.perf_counter()
        df = self._filtered(project_id, chunk_types, path_filter)

        needle = query.strip().lower()
        if needle:
            df = df.filter(
                pl.col("keywords").str.to_lowercase().str.contains(needle, literal=True)
                | pl.col("name").fill_null("").str.to_lowercase().str.contains(needle, literal=True)
                | pl.col("content").str.to_lowercase().str.contains(needle, literal=True)
            )

        total = df.height
        page = df.sort(
            ["updated_at", "file_path", "start_line"], descending=[True, False, False]
        ).slice(offset, limit)

        return KeywordSearchResult(
            chunks=self._rows_to_chunks(page),
            total=total,
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )

    def list_chunks(
        self,
        project_id: str,
        chunk_types: list[str] | None = None,
        path_filter: str | None = None,
    ) -> list[Chunk]:
        df = self._filtered(project_id, chunk_types, path_filter)
        return self._rows_to_chunks(df.sort(["file_path", "start_line", "start_column"]))

    def get_chunks_for_file(self, project_id: str, file_path: str) -> list[Chunk]:
        df = self._scan(self._file_filter(project_id, file_path))
        return self._rows_to_chunks(df.sort(["start_line", "start_column"]))

    def find_chunks_by_name(self, project_id: str, names: list[str]) -> list[Chunk]:
        if not names:
            return []
        df = self._scan(self._project_filter(project_id))
        df = df.filter(pl.col("name").is_in(names) | pl.col("parent_name").is_in(names))
        return self._rows_to_chunks(df.sort(["file_path", "start_line"]))

    def get_chunk(self, project_id: str, chunk_id: str) -> Chunk | None:
        df = self._scan(f"{self._project_filter(project_id)} AND id = {_quote(chunk_id)}")
        return None if df.is_empty() else self.mapper.from_polars_row(df.row(0, named=True))

    def file_hashes(self, project_id: str) -> dict[str, str]:
        df = self._scan(self._project_filter(project_id), columns=["file_path", "file_hash"])
        return dict(df.unique(subset=["file_path"]).select(["file_path", "file_hash"]).iter_rows())

    def chunks_without_embeddings(self, project_id: str) -> list[Chunk]:
        where = f"{self._project_filter(project_id)} AND embedding IS NULL"
        return self._rows_to_chunks(self._scan(where))

    def stats(self, project_id: str) -> ChunkStats:
        df = self._scan(
            self._project_filter(project_id), columns=["file_path", "chunk_type", "token_count"]
        )
        if df.is_empty():
            return ChunkStats()

        by_type = df.group_by("chunk_type").agg(pl.len().alias("n"))
        without = self._count(f"{self._project_filter(project_id)} AND embedding IS NULL")
        with_embeddings = df.height - without
        return ChunkStats(
            total_chunks=df.height,
            total_files=df["file_path"].n_unique(),
            total_tokens=int(df["token_count"].sum()),
            chunks_by_type=dict(by_type.iter_rows()),
            with_embeddings=with_embeddings,
            without_embeddings=without,
            embedding_percent=round(with_embeddings * 100 / df.height),
        )

    def compact(self) -> None:
        """Merges small fragments left behind by per-file commits."""
        try:
            self.table.optimize()
        except Exception as e:
            logger.warning("Compaction of '{}' failed: {}", self.table_name, e)


class LanceDBStatusStore(_LanceTable):
    """
    Concrete implementation of IStatusStore using LanceDB.
    One row per project, upserted with merge_insert.
    """

    def __init__(self, db_path: str, table_name: str, mapper: StatusMapper | None = None) -> None:
        self.mapper = mapper or StatusMapper()
        super().__init__(db_path, table_name, self.mapper.schema)

    def get(self, project_id: str) -> IndexStatus:
        df = self._scan(f"project_id = {_quote(project_id)}")
        if df.is_empty():
            return IndexStatus(project_id=project_id)
        return self.mapper.from_polars_row(df.row(0, named=True))

    def _write(self, status: IndexStatus) -> None:
        try:
            (
                self.table.merge_insert("project_id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(self.mapper.to_table(status))
            )
        except Exception as e:
            raise StorageError(f"Writing status of '{status.project_id}' failed: {e}") from e

    def _apply(self, project_id: str, fields: dict[str, Any]) -> IndexStatus:
        current = self.get(project_id)
        updated = IndexStatus.model_validate({**current.model_dump(), **fields, "project_id": project_id})
        self._write(updated)
        return updated

    def update(self, project_id: str, **fields: Any) -> IndexStatus:
        with self._write_lock:
            return self._apply(project_id, fields)

    def record_error(self, project_id: str, message: str) -> IndexStatus:
        with self._write_lock:
            current = self.get(project_id)
            logger.warning("Recording error for project '{}': {}", project_id, message)
            return self._apply(
                project_id, {"last_error": message, "error_count": current.error_count + 1}
            )
