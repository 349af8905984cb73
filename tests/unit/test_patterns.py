import os

import pytest

from ctx_engine.core.errors import ConfigurationError
from ctx_engine.infrastructure.watching.patterns import (
    PathMatcher,
    glob_to_regex,
    hash_file,
    scan_directory,
)


@pytest.mark.parametrize(
    "pattern,path,expected",
    [
        ("**/*.ts", "a.ts", True),
        ("**/*.ts", "src/deep/a.ts", True),
        ("**/*.ts", "src/a.tsx", False),
        ("*.ts", "src/a.ts", False),
        ("src/?.js", "src/a.js", True),
        ("src/?.js", "src/ab.js", False),
        ("**/node_modules/**", "node_modules/react/index.js", True),
        ("**/node_modules/**", "packages/ui/node_modules/x.js", True),
        ("docs/**", "docs/a/b.md", True),
        ("file.min.js", "fileXminXjs", False),
    ],
)
def test_glob_to_regex(pattern, path, expected):
    assert bool(glob_to_regex(pattern).match(path)) is expected


@pytest.mark.parametrize("pattern", ["", "   ", "/abs/**", "src\\*.ts"])
def test_invalid_patterns_raise(pattern):
    with pytest.raises(ConfigurationError):
        glob_to_regex(pattern)


def test_path_matcher_include_and_exclude():
    matcher = PathMatcher(["**/*.ts", "**/*.tsx"], ["**/dist/**", "**/*.d.ts"])

    assert matcher.matches("src/app.ts")
    assert not matcher.matches("dist/app.ts")
    assert not matcher.matches("src/types.d.ts")
    assert not matcher.matches("README.md")
    assert matcher.is_excluded_dir("dist")
    assert matcher.is_excluded_dir("packages/a/dist")
    assert not matcher.is_excluded_dir("src")


class TestScanDirectory:
    """Tests for directory walking and hash reuse."""

    @pytest.fixture
    def project(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "app.ts").write_text("export const a = 1\n")
        (tmp_path / "src" / "view.tsx").write_text("export const V = () => <div/>\n")
        (tmp_path / "node_modules" / "lib").mkdir(parents=True)
        (tmp_path / "node_modules" / "lib" / "index.ts").write_text("x")
        (tmp_path / "notes.txt").write_text("ignored")
        return tmp_path

    def test_returns_sorted_matching_records(self, project):
        matcher = PathMatcher(["**/*.ts", "**/*.tsx"], ["**/node_modules/**"])

        records = scan_directory(project, matcher)

        assert [r.path for r in records] == ["src/app.ts", "src/view.tsx"]
        assert records[0].content_hash == hash_file(project / "src" / "app.ts")
        assert records[0].size == len("export const a = 1\n")

    def test_rehashes_when_size_and_mtime_are_unchanged(self, project):
        matcher = PathMatcher(["**/*.ts"], ["**/node_modules/**"])
        target = project / "src" / "app.ts"
        first = scan_directory(project, matcher)[0]
        st = target.stat()

        target.write_text("export const b = 2\n")
        os.utime(target, ns=(st.st_atime_ns, st.st_mtime_ns))
        second = scan_directory(project, matcher)[0]

        assert second.size == first.size
        assert second.modified_at == first.modified_at
        assert second.content_hash != first.content_hash
        assert second.content_hash == hash_file(target)

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            scan_directory(tmp_path / "missing", PathMatcher(["**/*"], []))
