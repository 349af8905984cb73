"""Glob matching and directory scanning for the change detector."""

import hashlib
import os
import re
from datetime import datetime
from pathlib import Path

from loguru import logger

from ctx_engine.core.errors import ConfigurationError
from ctx_engine.core.models import FileRecord


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translates a glob to an anchored regex over POSIX relative paths.

    `**` crosses directory boundaries (`**/` may also match nothing), `*` and
    `?` do not.
    """
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigurationError(f"Invalid glob pattern: {pattern!r}")
    if pattern.startswith("/") or "\\" in pattern:
        raise ConfigurationError(f"Glob patterns must be relative POSIX paths: {pattern!r}")

    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1

    try:
        return re.compile("^" + "".join(out) + "$")
    except re.error as e:
        raise ConfigurationError(f"Invalid glob pattern {pattern!r}: {e}") from e


class PathMatcher:
    """Include/exclude glob sets evaluated against root-relative paths."""

    def __init__(self, include_patterns: list[str], exclude_patterns: list[str]) -> None:
        self.include_patterns = list(include_patterns)
        self.exclude_patterns = list(exclude_patterns)
        self._include = [glob_to_regex(p) for p in self.include_patterns]
        self._exclude = [glob_to_regex(p) for p in self.exclude_patterns]

    def is_excluded(self, rel_path: str) -> bool:
        return any(rx.match(rel_path) for rx in self._exclude)

    def is_excluded_dir(self, rel_dir: str) -> bool:
        # Directory patterns such as `**/dist/**` match the directory with a trailing slash
        return self.is_excluded(rel_dir + "/")

    def matches(self, rel_path: str) -> bool:
        return any(rx.match(rel_path) for rx in self._include) and not self.is_excluded(rel_path)


def hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def scan_directory(root: str | Path, matcher: PathMatcher) -> list[FileRecord]:
    """Walks `root` and returns a record per matched file, sorted by path.

    Excluded directories are pruned. Every matched file is read and hashed, so
    an edit that keeps size and mtime is still seen.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise FileNotFoundError(f"Not a directory: {root_path}")

    records: list[FileRecord] = []

    for dirpath, dirnames, filenames in os.walk(root_path):
        rel_dir = Path(dirpath).relative_to(root_path).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir

        dirnames[:] = sorted(
            d for d in dirnames if not matcher.is_excluded_dir(f"{rel_dir}/{d}" if rel_dir else d)
        )

        for filename in filenames:
            rel_path = f"{rel_dir}/{filename}" if rel_dir else filename
            if not matcher.matches(rel_path):
                continue

            full_path = Path(dirpath) / filename
            try:
                stat = full_path.stat()
                content_hash = hash_file(full_path)
            except OSError as e:
                logger.warning("Skipping unreadable file {}: {}", full_path, e)
                continue

            records.append(
                FileRecord(
                    path=rel_path,
                    content_hash=content_hash,
                    size=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime),
                )
            )

    records.sort(key=lambda r: r.path)
    return records
