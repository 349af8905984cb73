import pytest

from ctx_engine.core.models import ChunkType, MatchType, ScoredChunk
from ctx_engine.services.selection import select_within_budget


@pytest.fixture
def scored(make_chunk):
    def _scored(name, score, tokens=100, file_path=None, chunk_type=ChunkType.FUNCTION):
        chunk = make_chunk(
            name=name,
            file_path=file_path or f"src/{name}.ts",
            chunk_type=chunk_type,
            token_count=tokens,
        )
        return ScoredChunk(chunk=chunk, score=score, match_type=MatchType.KEYWORD)

    return _scored


def test_empty_input():
    assert select_within_budget([], max_tokens=100) == []


def test_stops_at_budget(scored):
    ranked = [scored(f"c{i}", 1.0 - i * 0.1) for i in range(5)]

    selected = select_within_budget(ranked, max_tokens=250, min_chunks=1, diversity_weight=0)

    assert [sc.chunk.name for sc in selected] == ["c0", "c1"]


def test_floor_overrides_budget(scored):
    ranked = [scored(f"c{i}", 1.0 - i * 0.1, tokens=500) for i in range(5)]

    selected = select_within_budget(ranked, max_tokens=10, min_chunks=3, diversity_weight=0)

    assert len(selected) == 3


def test_floor_limited_by_candidates(scored):
    selected = select_within_budget([scored("only", 0.5, tokens=900)], max_tokens=10, min_chunks=3)

    assert len(selected) == 1


def test_input_is_sorted_by_score(scored):
    ranked = [scored("low", 0.2), scored("high", 0.9)]

    selected = select_within_budget(ranked, max_tokens=1000, diversity_weight=0)

    assert [sc.chunk.name for sc in selected] == ["high", "low"]


def test_diversity_reorders_same_file_chunks(scored):
    ranked = [
        scored("a1", 1.0, file_path="src/a.ts"),
        scored("a2", 0.95, file_path="src/a.ts"),
        scored("b1", 0.9, file_path="src/b.ts", chunk_type=ChunkType.CLASS),
    ]

    selected = select_within_budget(ranked, max_tokens=1000, diversity_weight=0.1)

    assert [sc.chunk.name for sc in selected] == ["a1", "b1", "a2"]


def test_diversity_drops_weak_penalized_chunks_above_floor(scored):
    ranked = [
        scored("a1", 0.9, file_path="src/a.ts"),
        scored("a2", 0.5, file_path="src/a.ts"),
        scored("a3", 0.11, file_path="src/a.ts"),
        scored("a4", 0.105, file_path="src/a.ts"),
    ]

    selected = select_within_budget(ranked, max_tokens=1000, min_chunks=2, diversity_weight=0.2)

    assert [sc.chunk.name for sc in selected] == ["a1", "a2"]


def test_diversity_never_breaks_the_floor(scored):
    ranked = [
        scored("a1", 0.9, file_path="src/a.ts"),
        scored("a2", 0.11, file_path="src/a.ts"),
        scored("a3", 0.105, file_path="src/a.ts"),
    ]

    selected = select_within_budget(ranked, max_tokens=1000, min_chunks=3, diversity_weight=0.2)

    assert len(selected) == 3
