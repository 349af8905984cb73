from collections import Counter

from ctx_engine.core.models import ScoredChunk

DROP_THRESHOLD = 0.1


def select_within_budget(
    ranked: list[ScoredChunk],
    max_tokens: int,
    min_chunks: int = 3,
    diversity_weight: float = 0.1,
) -> list[ScoredChunk]:
    """Greedy token-budgeted selection over chunks ranked by score.

    Walks in score order and stops at the first chunk that would exceed
    `max_tokens`, but always keeps `min(min_chunks, len(ranked))` chunks. A
    diversity pass then scales each chunk's score by `(1 - diversity_weight)`
    per earlier selected chunk from the same file and by
    `(1 - diversity_weight / 2)` per earlier chunk of the same type, re-orders
    by the adjusted score, and drops penalized chunks that fall below 0.1
    while the floor still holds.
    """
    if not ranked:
        return []

    ordered = sorted(ranked, key=lambda sc: -sc.score)
    floor = min(min_chunks, len(ordered))

    selected: list[ScoredChunk] = []
    used = 0
    for candidate in ordered:
        if used + candidate.token_count > max_tokens and len(selected) >= floor:
            break
        selected.append(candidate)
        used += candidate.token_count

    if diversity_weight <= 0 or len(selected) < 2:
        return selected

    file_seen: Counter[str] = Counter()
    type_seen: Counter[str] = Counter()
    adjusted: list[float] = []
    penalized: list[bool] = []
    for sc in selected:
        factor = (1 - diversity_weight) ** file_seen[sc.file_path] * (
            1 - diversity_weight / 2
        ) ** type_seen[sc.chunk.chunk_type.value]
        adjusted.append(sc.score * factor)
        penalized.append(factor < 1)
        file_seen[sc.file_path] += 1
        type_seen[sc.chunk.chunk_type.value] += 1

    droppable = sorted(
        (i for i in range(len(selected)) if penalized[i] and adjusted[i] < DROP_THRESHOLD),
        key=lambda i: adjusted[i],
    )
    dropped = set(droppable[: len(selected) - floor])

    order = sorted(range(len(selected)), key=lambda i: -adjusted[i])
    return [selected[i] for i in order if i not in dropped]
