"""Pure merge and source-diversification steps for retrieval candidates.

Both functions run after all fan-out work has completed and have no side
effects, so they need no locking and are safe to re-run.
"""

from __future__ import annotations

from typing import Iterable

from .helpers import normalize_text
from .types import STATE_RANK, Candidate


def candidate_order(c: Candidate) -> tuple[float, int, str, int]:
    """Sort key: score desc, earlier state first, then stable passage identity."""
    return (-c.score, STATE_RANK[c.strategy], c.passage.item_id, c.passage.chunk_index)


def _better(a: Candidate, b: Candidate) -> Candidate:
    return a if candidate_order(a) <= candidate_order(b) else b


def merge_candidates(*groups: Iterable[Candidate]) -> list[Candidate]:
    """Combine candidate lists into one deduplicated, score-ordered pool.

    Duplicates are the same (item_id, chunk_index), or the same text within
    one item. The best-ranked copy survives. merge(merge(x)) == merge(x).
    """
    by_key: dict[tuple[str, int], Candidate] = {}
    for group in groups:
        for c in group:
            prev = by_key.get(c.key)
            by_key[c.key] = c if prev is None else _better(c, prev)

    by_text: dict[tuple[str, str], Candidate] = {}
    for c in by_key.values():
        text_key = (c.passage.item_id, normalize_text(c.passage.text))
        prev = by_text.get(text_key)
        by_text[text_key] = c if prev is None else _better(c, prev)

    return sorted(by_text.values(), key=candidate_order)


def diversify_sources(
    candidates: list[Candidate],
    k: int,
    *,
    max_per_source: int | None = None,
) -> list[Candidate]:
    """Pick k candidates so one long source cannot crowd out the others.

    Pass one takes the best passage of each distinct source. Pass two fills
    the remaining slots by score, honouring max_per_source. If slots are
    still open because every other source is exhausted, the cap is relaxed.
    Input must already be merged; output keeps merge order.
    """
    if k <= 0 or not candidates:
        return []
    pool = sorted(candidates, key=candidate_order)

    chosen: list[Candidate] = []
    chosen_keys: set[tuple[str, int]] = set()
    per_source: dict[str, int] = {}

    def take(c: Candidate) -> None:
        chosen.append(c)
        chosen_keys.add(c.key)
        per_source[c.source_item_id] = per_source.get(c.source_item_id, 0) + 1

    for c in pool:
        if len(chosen) >= k:
            break
        if c.source_item_id not in per_source:
            take(c)

    for c in pool:
        if len(chosen) >= k:
            break
        if c.key in chosen_keys:
            continue
        if max_per_source is not None and per_source.get(c.source_item_id, 0) >= max_per_source:
            continue
        take(c)

    for c in pool:
        if len(chosen) >= k:
            break
        if c.key not in chosen_keys:
            take(c)

    return sorted(chosen, key=candidate_order)


def pool_size(k: int, *, multiplier: int = 3, minimum: int = 15) -> int:
    """Candidate pool to fetch before diversification."""
    return max(int(k) * int(multiplier), int(minimum))
