import posixpath
import re
from collections.abc import Sequence

import numpy as np
from numpy.typing import NDArray

from ctx_engine.core.models import Chunk, ChunkType, MatchType, ScoredChunk, SignalFlags, SignalWeights
from ctx_engine.infrastructure.embeddings.vectors import cosine_similarity

# fmt: off
QUERY_STOPWORDS = frozenset(
    [
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "dare",
        "ought", "used", "to", "of", "in", "for", "on", "with", "at", "by",
        "from", "as", "into", "through", "during", "before", "after", "above",
        "below", "between", "under", "again", "further", "then", "once", "here",
        "there", "when", "where", "why", "how", "all", "each", "few", "more",
        "most", "other", "some", "such", "no", "nor", "not", "only", "own",
        "same", "so", "than", "too", "very", "just", "and", "but", "if", "or",
        "because", "until", "while", "this", "that", "these", "those", "what",
        "which", "who", "whom", "whose", "it", "its", "i", "me", "my", "we",
        "our", "you", "your", "he", "him", "his", "she", "her", "they", "them",
        "their", "find", "show", "get", "make", "use", "code", "function",
    ]
)
# fmt: on

MAX_QUERY_TERMS = 10
NAME_MATCH_BONUS = 0.2
GRAPH_SEED_COUNT = 5

_NON_WORD = re.compile(r"[^\w\s]")
_SOURCE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")


def extract_query_terms(query: str) -> list[str]:
    """Lower-cased query words longer than two characters, stopwords removed, at most ten."""
    words = _NON_WORD.sub(" ", query.lower()).split()
    return [w for w in words if len(w) > 2 and w not in QUERY_STOPWORDS][:MAX_QUERY_TERMS]


def keyword_score(terms: list[str], chunk: Chunk) -> float:
    """Fraction of terms present in name, keywords or content, plus a bonus for a name hit."""
    if not terms:
        return 0.0
    name = (chunk.name or "").lower()
    text = f"{name} {chunk.keywords} {chunk.content}".lower()
    hits = sum(1 for term in terms if term in text)
    bonus = NAME_MATCH_BONUS if any(term in name for term in terms) else 0.0
    return hits / len(terms) + bonus


def graph_score(chunk: Chunk, anchor_names: set[str], anchor_refs: set[str]) -> float:
    """Structural relatedness of a chunk to the anchor set, in [0, 1]."""
    score = 0.0
    if chunk.name and chunk.name in anchor_refs:
        score += 0.5
    if chunk.parent_name and chunk.parent_name in anchor_names:
        score += 0.25
    if chunk.references:
        overlap = len(anchor_names.intersection(chunk.references))
        score += 0.5 * overlap / len(chunk.references)
    return min(1.0, score)


def _strip_extension(path: str) -> str:
    for ext in _SOURCE_EXTENSIONS:
        if path.endswith(ext):
            return path[: -len(ext)]
    return path


def resolve_imported_files(current_file: str, imports: Sequence[str], known_files: set[str]) -> set[str]:
    """Maps relative import specifiers of `current_file` onto indexed file paths."""
    by_stem: dict[str, str] = {}
    for path in known_files:
        stem = _strip_extension(path)
        by_stem.setdefault(stem, path)
        if stem.endswith("/index"):
            by_stem.setdefault(stem[: -len("/index")], path)

    base = posixpath.dirname(current_file)
    resolved: set[str] = set()
    for specifier in imports:
        if not specifier.startswith("."):
            continue
        target = posixpath.normpath(posixpath.join(base, specifier))
        match = by_stem.get(_strip_extension(target))
        if match is not None:
            resolved.add(match)
    return resolved


class HybridRanker:
    """
    Scores candidate chunks against a query by fusing keyword, semantic and
    structural (graph) signals, with an additive proximity boost for the file
    the caller is working in and the files it imports.
    """

    def __init__(self, proximity_boost: float = 0.15, min_score: float = 0.0) -> None:
        self.proximity_boost = proximity_boost
        self.min_score = min_score

    def rank(
        self,
        query: str,
        candidates: Sequence[Chunk],
        signals: SignalFlags | None = None,
        weights: SignalWeights | None = None,
        current_file: str | None = None,
        query_vector: NDArray[np.float32] | None = None,
    ) -> list[ScoredChunk]:
        signals = signals or SignalFlags()
        weights = weights or SignalWeights()
        n = len(candidates)

        terms = extract_query_terms(query)
        kw = [keyword_score(terms, c) if signals.keyword else 0.0 for c in candidates]
        sem = [
            self._semantic(c, query_vector) if signals.semantic and query_vector is not None else 0.0
            for c in candidates
        ]

        graph = [0.0] * n
        if signals.graph:
            anchor_names, anchor_refs = self._anchors(candidates, kw, sem, weights, current_file)
            graph = [graph_score(c, anchor_names, anchor_refs) for c in candidates]

        near_files = self._nearby_files(candidates, current_file)

        ranked: list[ScoredChunk] = []
        for i, chunk in enumerate(candidates):
            base = weights.keyword * kw[i] + weights.semantic * sem[i] + weights.graph * graph[i]
            if base <= 0:
                continue

            boost = near_files.get(chunk.file_path, 0.0)
            score = base + boost
            if score <= self.min_score:
                continue

            contributing = [
                match_type
                for match_type, value in (
                    (MatchType.KEYWORD, kw[i]),
                    (MatchType.SEMANTIC, sem[i]),
                    (MatchType.GRAPH, graph[i]),
                )
                if value > 0
            ]
            ranked.append(
                ScoredChunk(
                    chunk=chunk,
                    score=score,
                    match_type=contributing[0] if len(contributing) == 1 else MatchType.HYBRID,
                    keyword_score=kw[i],
                    semantic_score=sem[i],
                    graph_score=graph[i],
                    boost=boost,
                )
            )

        # sorted() is stable, so equal scores keep candidate order
        return sorted(ranked, key=lambda sc: -sc.score)

    def _semantic(self, chunk: Chunk, query_vector: NDArray[np.float32]) -> float:
        if chunk.embedding is None or len(chunk.embedding) != len(query_vector):
            return 0.0
        return max(0.0, cosine_similarity(query_vector, chunk.embedding))

    def _anchors(
        self,
        candidates: Sequence[Chunk],
        kw: list[float],
        sem: list[float],
        weights: SignalWeights,
        current_file: str | None,
    ) -> tuple[set[str], set[str]]:
        """Declarations and references of the current file plus the top seed chunks."""
        seed_scores = [weights.keyword * k + weights.semantic * s for k, s in zip(kw, sem, strict=True)]
        seeds = sorted((i for i, s in enumerate(seed_scores) if s > 0), key=lambda i: -seed_scores[i])
        anchor_idx = set(seeds[:GRAPH_SEED_COUNT])
        if current_file:
            anchor_idx.update(i for i, c in enumerate(candidates) if c.file_path == current_file)

        names: set[str] = set()
        refs: set[str] = set()
        for i in anchor_idx:
            chunk = candidates[i]
            if chunk.name and chunk.chunk_type not in (ChunkType.FILE_SUMMARY, ChunkType.IMPORT):
                names.add(chunk.name)
            refs.update(chunk.references)
        return names, refs

    def _nearby_files(self, candidates: Sequence[Chunk], current_file: str | None) -> dict[str, float]:
        if not current_file or self.proximity_boost <= 0:
            return {}

        imports: list[str] = []
        for chunk in candidates:
            if chunk.file_path == current_file and chunk.chunk_type == ChunkType.FILE_SUMMARY:
                imports = chunk.imports
                break

        known_files = {c.file_path for c in candidates}
        boosts = {path: self.proximity_boost / 2 for path in resolve_imported_files(current_file, imports, known_files)}
        boosts[current_file] = self.proximity_boost
        return boosts
