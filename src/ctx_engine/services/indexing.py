import threading
import time
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from ctx_engine.config import WatcherConfig
from ctx_engine.core.errors import ConcurrencyError, ConfigurationError, ContextEngineError
from ctx_engine.core.models import (
    ChangeKind,
    Chunk,
    FileChangeEvent,
    FileRecord,
    IndexJob,
    IndexResult,
    IndexState,
    JobState,
)
from ctx_engine.core.ports import IChunker, IChunkStore, IStatusStore
from ctx_engine.infrastructure.watching.detector import ChangeDetector
from ctx_engine.infrastructure.watching.patterns import PathMatcher, scan_directory
from ctx_engine.services.embedding import EmbeddingGenerator


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def embedding_text(chunk: Chunk) -> str:
    """Text sent to the provider: type and name header followed by the source."""
    return f"{chunk.chunk_type.value}: {chunk.name}\n{chunk.content}"


class IndexingService:
    """
    Orchestrates scanning, chunking, embedding and storage of projects.
    One full index may run per project at a time; progress is tracked in a
    per-project IndexJob and cancellation is cooperative.
    """

    def __init__(
        self,
        chunker: IChunker,
        chunk_store: IChunkStore,
        status_store: IStatusStore,
        generator: EmbeddingGenerator | None = None,
        watcher_config: WatcherConfig | None = None,
        batch_size: int = 100,
    ) -> None:
        self.chunker = chunker
        self.chunk_store = chunk_store
        self.status_store = status_store
        self.generator = generator
        self.watcher_config = watcher_config or WatcherConfig()
        self.batch_size = batch_size

        self._lock = threading.Lock()
        self._jobs: dict[str, IndexJob] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._detectors: dict[str, ChangeDetector] = {}

    # ------------------------------------------------------------ full index

    def is_indexing(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._cancel_events

    def get_job(self, project_id: str) -> IndexJob | None:
        with self._lock:
            job = self._jobs.get(project_id)
            return job.model_copy() if job is not None else None

    def _matcher(
        self, include_patterns: list[str] | None, exclude_patterns: list[str] | None
    ) -> PathMatcher:
        return PathMatcher(
            include_patterns if include_patterns is not None else self.watcher_config.include_patterns,
            exclude_patterns if exclude_patterns is not None else self.watcher_config.exclude_patterns,
        )

    def index_project(
        self,
        project_id: str,
        root_path: str | Path,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        force: bool = False,
    ) -> IndexResult:
        """Full (re)index of a project directory.

        Files whose content hash matches the stored one are skipped unless
        `force` is set or some of their chunks still lack embeddings. Files no
        longer present on disk lose their chunks.
        """
        matcher = self._matcher(include_patterns, exclude_patterns)
        root = Path(root_path)
        if not root.is_dir():
            raise ConfigurationError(f"Project root is not a directory: {root}")

        with self._lock:
            if project_id in self._cancel_events:
                raise ConcurrencyError(project_id)
            cancel = threading.Event()
            self._cancel_events[project_id] = cancel
            job = IndexJob(project_id=project_id, status=JobState.RUNNING, started_at=_utcnow())
            self._jobs[project_id] = job

        logger.info("Indexing project '{}' from {}", project_id, root)
        try:
            self.status_store.update(project_id, status=IndexState.INDEXING)
            return self._run_full_index(project_id, root, matcher, force, job, cancel)
        except Exception as e:
            job.status = JobState.FAILED
            job.error = str(e)
            job.finished_at = _utcnow()
            logger.exception("Indexing of project '{}' failed", project_id)
            try:
                self.status_store.record_error(project_id, str(e))
                self.status_store.update(project_id, status=IndexState.FAILED)
            except ContextEngineError:
                logger.exception("Could not record failure for project '{}'", project_id)
            raise
        finally:
            with self._lock:
                self._cancel_events.pop(project_id, None)

    def stop_indexing(self, project_id: str) -> bool:
        """Requests cancellation. Returns False when nothing is running."""
        with self._lock:
            cancel = self._cancel_events.get(project_id)
        if cancel is None:
            return False
        logger.info("Stop requested for project '{}'", project_id)
        cancel.set()
        return True

    def _run_full_index(
        self,
        project_id: str,
        root: Path,
        matcher: PathMatcher,
        force: bool,
        job: IndexJob,
        cancel: threading.Event,
    ) -> IndexResult:
        start = time.perf_counter()
        records = scan_directory(root, matcher)
        job.total_files = len(records)

        stored_hashes = self.chunk_store.file_hashes(project_id)
        unembedded: set[str] = set()
        if self.generator is not None:
            unembedded = {c.file_path for c in self.chunk_store.chunks_without_embeddings(project_id)}

        pending: list[tuple[str, list[Chunk]]] = []
        pending_chunks = 0
        indexed = skipped = failed_files = 0

        for record in records:
            if cancel.is_set():
                break

            unchanged = stored_hashes.get(record.path) == record.content_hash
            if unchanged and not force and record.path not in unembedded:
                skipped += 1
                job.processed_files += 1
                continue

            chunks = self._chunk_file(project_id, root, record)
            if chunks is None:
                failed_files += 1
                job.processed_files += 1
                continue

            pending.append((record.path, chunks))
            pending_chunks += len(chunks)
            if pending_chunks >= self.batch_size:
                indexed += self._flush(project_id, pending, job, cancel)
                pending, pending_chunks = [], 0

        if pending and not cancel.is_set():
            indexed += self._flush(project_id, pending, job, cancel)

        cancelled = cancel.is_set()
        if not cancelled:
            on_disk = {r.path for r in records}
            for stale in sorted(set(stored_hashes) - on_disk):
                self.chunk_store.delete_chunks_for_file(project_id, stale)
                logger.debug("Removed chunks of deleted file {}", stale)
            if indexed:
                self.chunk_store.compact()

        stats = self.chunk_store.stats(project_id)
        duration_ms = int((time.perf_counter() - start) * 1000)
        job.finished_at = _utcnow()

        if cancelled:
            job.status = JobState.CANCELLED
            self.status_store.update(
                project_id,
                status=IndexState.IDLE,
                total_files=len(records),
                indexed_files=stats.total_files,
                total_chunks=stats.total_chunks,
            )
            logger.info("Indexing of project '{}' cancelled after {} files", project_id, job.processed_files)
        else:
            job.status = JobState.COMPLETED
            self.status_store.update(
                project_id,
                status=IndexState.COMPLETED,
                total_files=len(records),
                indexed_files=stats.total_files,
                total_chunks=stats.total_chunks,
                last_full_index_at=_utcnow(),
                index_duration_ms=duration_ms,
                last_error=None,
            )
            logger.info(
                "Indexed project '{}': {} files ({} skipped, {} failed), {} chunks in {}ms",
                project_id,
                indexed,
                skipped,
                failed_files,
                stats.total_chunks,
                duration_ms,
            )

        return IndexResult(
            indexed_files=indexed,
            total_chunks=stats.total_chunks,
            duration_ms=duration_ms,
            skipped_files=skipped,
            failed_files=failed_files,
        )

    # --------------------------------------------------------------- helpers

    def _chunk_file(self, project_id: str, root: Path, record: FileRecord) -> list[Chunk] | None:
        try:
            with open(root / record.path, encoding="utf-8", newline="") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read {}: {}", record.path, e)
            return None
        return self.chunker.chunk(content, record.path, project_id, record.content_hash)

    def _embed(self, chunks: list[Chunk], job: IndexJob | None, cancel: threading.Event | None) -> list[Chunk]:
        """Attaches embeddings; chunks whose embedding failed keep `embedding=None`."""
        if self.generator is None or not chunks:
            return chunks

        result = self.generator.embed_batch(
            [embedding_text(c) for c in chunks],
            mode="document",
            should_stop=cancel.is_set if cancel is not None else None,
        )
        failed = set(result.failed_indices)
        model = self.generator.model_name
        embedded = [
            c if i in failed else c.model_copy(update={"embedding": result.vectors[i], "embedding_model": model})
            for i, c in enumerate(chunks)
        ]
        if job is not None:
            job.embedded_chunks += len(chunks) - len(failed)
            job.failed_embeddings += len(failed)
        return embedded

    def _flush(
        self,
        project_id: str,
        pending: list[tuple[str, list[Chunk]]],
        job: IndexJob,
        cancel: threading.Event,
    ) -> int:
        """Embeds the accumulated chunks and swaps each file's chunk set. Returns files written."""
        flat = [c for _, chunks in pending for c in chunks]
        embedded = self._embed(flat, job, cancel)
        if cancel.is_set():
            return 0

        offset = 0
        for path, chunks in pending:
            file_chunks = embedded[offset : offset + len(chunks)]
            offset += len(chunks)
            self.chunk_store.replace_chunks_for_file(project_id, path, file_chunks)
            job.processed_files += 1
            job.total_chunks += len(file_chunks)
        return len(pending)

    # ------------------------------------------------------- incremental sync

    def apply_changes(self, project_id: str, root_path: str | Path, events: list[FileChangeEvent]) -> int:
        """Applies one batch of change events. Returns the number of files updated."""
        root = Path(root_path)
        applied = 0
        for event in events:
            path = event.file.path
            try:
                if event.kind == ChangeKind.DELETED:
                    self.chunk_store.delete_chunks_for_file(project_id, path)
                else:
                    chunks = self._chunk_file(project_id, root, event.file)
                    if chunks is None:
                        continue
                    self.chunk_store.replace_chunks_for_file(project_id, path, self._embed(chunks, None, None))
                applied += 1
            except ContextEngineError as e:
                logger.exception("Incremental update of {} failed", path)
                self.status_store.record_error(project_id, f"{path}: {e}")

        stats = self.chunk_store.stats(project_id)
        self.status_store.update(
            project_id, indexed_files=stats.total_files, total_chunks=stats.total_chunks
        )
        logger.info("Applied {} of {} changes to project '{}'", applied, len(events), project_id)
        return applied

    def watch(
        self,
        project_id: str,
        root_path: str | Path,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        poll_interval_s: float | None = None,
    ) -> ChangeDetector:
        """Starts incremental sync of a project through a polling ChangeDetector."""
        if not Path(root_path).is_dir():
            raise ConfigurationError(f"Project root is not a directory: {root_path}")

        with self._lock:
            existing = self._detectors.get(project_id)
        if existing is not None:
            logger.warning("Project '{}' is already being watched", project_id)
            return existing

        detector = ChangeDetector(
            project_id,
            root_path,
            include_patterns if include_patterns is not None else self.watcher_config.include_patterns,
            exclude_patterns if exclude_patterns is not None else self.watcher_config.exclude_patterns,
            poll_interval_s=poll_interval_s or self.watcher_config.poll_interval_s,
            status_store=self.status_store,
        )
        detector.subscribe(lambda events: self.apply_changes(project_id, root_path, events))

        with self._lock:
            self._detectors[project_id] = detector
        detector.start()
        return detector

    def unwatch(self, project_id: str) -> bool:
        with self._lock:
            detector = self._detectors.pop(project_id, None)
        if detector is None:
            return False
        detector.stop()
        return True

    def watched_projects(self) -> list[str]:
        with self._lock:
            return list(self._detectors)

    def shutdown(self) -> None:
        for project_id in self.watched_projects():
            self.unwatch(project_id)
        with self._lock:
            events = list(self._cancel_events.values())
        for cancel in events:
            cancel.set()
