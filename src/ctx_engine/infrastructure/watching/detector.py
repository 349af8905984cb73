import threading
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from ctx_engine.config import DEFAULT_EXCLUDE_PATTERNS, DEFAULT_INCLUDE_PATTERNS
from ctx_engine.core.models import ChangeKind, FileChangeEvent, FileRecord
from ctx_engine.core.ports import ChangeHandler, IStatusStore
from ctx_engine.infrastructure.watching.patterns import PathMatcher, scan_directory


class ChangeDetector:
    """
    Polls a project directory and reports added, modified and deleted files.
    The first scan only records a baseline; later scans emit one event batch
    per cycle to every subscriber.
    """

    def __init__(
        self,
        project_id: str,
        root_path: str | Path,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        poll_interval_s: float = 5.0,
        status_store: IStatusStore | None = None,
    ) -> None:
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive.")

        self.project_id = project_id
        self.root_path = Path(root_path)
        self.poll_interval_s = poll_interval_s
        self.status_store = status_store
        self.matcher = PathMatcher(
            include_patterns if include_patterns is not None else DEFAULT_INCLUDE_PATTERNS,
            exclude_patterns if exclude_patterns is not None else DEFAULT_EXCLUDE_PATTERNS,
        )

        self._cache: dict[str, FileRecord] = {}
        self._baselined = False
        self._handlers: list[ChangeHandler] = []
        self._handlers_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def file_cache(self) -> dict[str, FileRecord]:
        """Snapshot of the last scan's records."""
        return dict(self._cache)

    def subscribe(self, handler: ChangeHandler) -> None:
        with self._handlers_lock:
            if handler not in self._handlers:
                self._handlers.append(handler)

    def unsubscribe(self, handler: ChangeHandler) -> None:
        with self._handlers_lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def start(self) -> None:
        if self.is_running:
            logger.warning("Change detector for '{}' is already running", self.project_id)
            return

        logger.info("Watching {} for project '{}'", self.root_path, self.project_id)
        self._stop_event.clear()
        self.scan_once()

        self._thread = threading.Thread(
            target=self._run, name=f"ctx-watch-{self.project_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return

        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=self.poll_interval_s + 5)
        self._thread = None
        logger.info("Stopped watching project '{}'", self.project_id)

    def rescan(self) -> list[FileChangeEvent]:
        """Drops the file cache and records a fresh baseline."""
        with self._scan_lock:
            self._cache = {}
            self._baselined = False
            return self._scan()

    def scan_once(self) -> list[FileChangeEvent]:
        """Runs one poll cycle. Returns no events when a scan is already in progress."""
        if not self._scan_lock.acquire(blocking=False):
            logger.debug("Scan of '{}' still running, skipping cycle", self.project_id)
            return []
        try:
            return self._scan()
        finally:
            self._scan_lock.release()

    def _run(self) -> None:
        while not self._stop_event.wait(self.poll_interval_s):
            self.scan_once()

    def _scan(self) -> list[FileChangeEvent]:
        try:
            records = scan_directory(self.root_path, self.matcher)
        except Exception as e:
            logger.exception("Scan of {} failed", self.root_path)
            self._record_error(f"Scan failed: {e}")
            return []

        current = {record.path: record for record in records}
        baseline = not self._baselined
        events: list[FileChangeEvent] = []

        if not baseline:
            for path, record in current.items():
                known = self._cache.get(path)
                if known is None:
                    events.append(FileChangeEvent(kind=ChangeKind.ADDED, file=record))
                elif known.content_hash != record.content_hash:
                    events.append(FileChangeEvent(kind=ChangeKind.MODIFIED, file=record))
            for path, record in self._cache.items():
                if path not in current:
                    events.append(FileChangeEvent(kind=ChangeKind.DELETED, file=record))

        self._cache = current
        self._baselined = True
        self._update_status(len(current), baseline)

        if events:
            logger.info("Detected {} changes in project '{}'", len(events), self.project_id)
            self._emit(events)
        return events

    def _emit(self, events: list[FileChangeEvent]) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(events)
            except Exception:
                logger.exception("Change handler {} failed for project '{}'", handler, self.project_id)

    def _update_status(self, total_files: int, baseline: bool) -> None:
        if self.status_store is None:
            return
        fields: dict[str, object] = {"total_files": total_files}
        if not baseline:
            fields["last_incremental_at"] = datetime.now(UTC).replace(tzinfo=None)
        try:
            self.status_store.update(self.project_id, **fields)
        except Exception:
            logger.exception("Status update failed for project '{}'", self.project_id)

    def _record_error(self, message: str) -> None:
        if self.status_store is None:
            return
        try:
            self.status_store.record_error(self.project_id, message)
        except Exception:
            logger.exception("Recording scan error failed for project '{}'", self.project_id)
