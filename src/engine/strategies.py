"""Search strategies for the retrieval state machine.

Each strategy implements one interface, ``search(request) -> list[Candidate]``,
and tags its candidates with its own SearchState. Strategies only read the
corpus and build their own local candidate lists.

Design Principles:
    - Frozen dataclasses for the request
    - Backends injected at construction
    - No shared mutable state between strategies
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, TypeVar

from .constants import PARAMETER_TITLE_TERMS
from .lexical import LexicalSearch
from .merging import merge_candidates
from .similarity import SimilarityBackend
from .types import (
    Candidate,
    ParameterKind,
    QueryIntent,
    QueryVariant,
    SearchState,
    VariantKind,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class SearchRequest:
    """Everything a strategy needs for one retrieval call."""

    query: str
    intent: QueryIntent
    variants: tuple[QueryVariant, ...]
    vectors: tuple[tuple[float, ...], ...]  # aligned with variants
    limit: int  # candidate pool size per strategy
    entity_keywords: tuple[str, ...] = ()
    parameter_kinds: tuple[ParameterKind, ...] = ()

    @property
    def lexical_variants(self) -> tuple[QueryVariant, ...]:
        # Hypothetical answers are too long for AND-matching.
        return tuple(v for v in self.variants if v.kind != VariantKind.HYDE)


class SearchStrategy(Protocol):
    state: SearchState

    def applies(self, request: SearchRequest) -> bool:
        ...

    def search(self, request: SearchRequest) -> list[Candidate]:
        ...


def fan_out(fn: Callable[[T], R], items: Sequence[T], max_workers: int) -> list[R]:
    """Run fn over items concurrently, results in input order."""
    if len(items) <= 1 or max_workers <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as executor:
        return list(executor.map(fn, items))


# ---------------------------------------------------------------------------
# ENTITY
# ---------------------------------------------------------------------------


class EntityTitleStrategy:
    """Title search for recognized muscle-group entities."""

    state = SearchState.ENTITY

    def __init__(self, lexical: LexicalSearch):
        self.lexical = lexical

    def applies(self, request: SearchRequest) -> bool:
        return bool(request.entity_keywords)

    def search(self, request: SearchRequest) -> list[Candidate]:
        return self.lexical.title_search(list(request.entity_keywords), request.limit, strategy=self.state)


# ---------------------------------------------------------------------------
# CATEGORY
# ---------------------------------------------------------------------------


class PriorityCategoryStrategy:
    """Category-scoped lexical + similarity search for program and myth questions."""

    state = SearchState.CATEGORY

    def __init__(
        self,
        lexical: LexicalSearch,
        similarity: SimilarityBackend,
        *,
        priority_categories: Sequence[str],
        always_categories: Sequence[str],
        similarity_floor: float,
        max_workers: int = 4,
    ):
        self.lexical = lexical
        self.similarity = similarity
        self.categories = tuple(dict.fromkeys(list(priority_categories) + list(always_categories)))
        self.similarity_floor = float(similarity_floor)
        self.max_workers = max_workers

    def applies(self, request: SearchRequest) -> bool:
        return request.intent in (QueryIntent.PROGRAM_REQUEST, QueryIntent.MYTH_CHECK) and bool(self.categories)

    def _search_category(self, request: SearchRequest, category: str) -> list[Candidate]:
        found: list[Candidate] = []
        for variant in request.lexical_variants:
            found.extend(self.lexical.search(variant.text, [category], request.limit, strategy=self.state))
        for vector in request.vectors:
            found.extend(
                self.similarity.top_k(
                    vector,
                    request.limit,
                    self.similarity_floor,
                    category_names=[category],
                    strategy=self.state,
                )
            )
        return found

    def search(self, request: SearchRequest) -> list[Candidate]:
        per_category = fan_out(lambda cat: self._search_category(request, cat), list(self.categories), self.max_workers)
        return merge_candidates(*per_category)


# ---------------------------------------------------------------------------
# PARAMETER
# ---------------------------------------------------------------------------


class ParameterStrategy:
    """Title search for rest-period / rep-range / volume guidance."""

    state = SearchState.PARAMETER

    def __init__(
        self,
        lexical: LexicalSearch,
        *,
        categories: Sequence[str],
        score: float = 0.95,
        limit: int = 5,
    ):
        self.lexical = lexical
        self.categories = tuple(categories)
        self.score = float(score)
        self.limit = int(limit)

    def applies(self, request: SearchRequest) -> bool:
        return bool(request.parameter_kinds)

    def search(self, request: SearchRequest) -> list[Candidate]:
        found: list[Candidate] = []
        for kind in request.parameter_kinds:
            terms = PARAMETER_TITLE_TERMS.get(kind.value, ())
            found.extend(
                self.lexical.title_search(
                    list(terms),
                    self.limit,
                    scope_categories=list(self.categories) or None,
                    score=self.score,
                    strategy=self.state,
                )
            )
        return merge_candidates(found)


# ---------------------------------------------------------------------------
# BROAD
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThresholdAttempt:
    floor: float
    count: int


def dynamic_threshold_search(
    query_fn: Callable[[float], list[Candidate]],
    *,
    floor: float,
    step: float,
    min_floor: float,
    min_acceptable: int,
    max_attempts: int = 3,
) -> tuple[list[Candidate], tuple[ThresholdAttempt, ...]]:
    """Query at a similarity floor, relaxing it while results are too few.

    Each retry lowers the floor by step, never below min_floor, for at most
    max_attempts queries in total. The result of the last attempt is returned.
    """
    attempts: list[ThresholdAttempt] = []
    current = float(floor)
    results: list[Candidate] = []
    for attempt in range(max(1, int(max_attempts))):
        results = query_fn(current)
        attempts.append(ThresholdAttempt(floor=current, count=len(results)))
        if len(results) >= min_acceptable:
            break
        relaxed = max(float(min_floor), current - float(step))
        if relaxed >= current:
            break
        current = relaxed
    return results, tuple(attempts)


class BroadVectorStrategy:
    """Similarity search over the whole corpus with a self-relaxing floor."""

    state = SearchState.BROAD

    def __init__(
        self,
        similarity: SimilarityBackend,
        *,
        similarity_floor: float,
        threshold_step: float,
        min_similarity_floor: float,
        min_acceptable_results: int,
        max_attempts: int = 3,
        max_workers: int = 4,
    ):
        self.similarity = similarity
        self.similarity_floor = similarity_floor
        self.threshold_step = threshold_step
        self.min_similarity_floor = min_similarity_floor
        self.min_acceptable_results = min_acceptable_results
        self.max_attempts = max_attempts
        self.max_workers = max_workers

    def applies(self, request: SearchRequest) -> bool:
        return bool(request.vectors)

    def search(self, request: SearchRequest) -> list[Candidate]:
        def query_at(floor: float) -> list[Candidate]:
            per_variant = fan_out(
                lambda vec: self.similarity.top_k(vec, request.limit, floor, strategy=self.state),
                list(request.vectors),
                self.max_workers,
            )
            return merge_candidates(*per_variant)

        results, attempts = dynamic_threshold_search(
            query_at,
            floor=self.similarity_floor,
            step=self.threshold_step,
            min_floor=self.min_similarity_floor,
            min_acceptable=self.min_acceptable_results,
            max_attempts=self.max_attempts,
        )
        logger.debug(
            "BROAD attempts: %s",
            ", ".join(f"floor={a.floor:.2f}->{a.count}" for a in attempts),
        )
        return results


# ---------------------------------------------------------------------------
# FALLBACK
# ---------------------------------------------------------------------------


class KeywordFallbackStrategy:
    """Unscoped AND-keyword search; the last resort before an empty result."""

    state = SearchState.FALLBACK

    def __init__(self, lexical: LexicalSearch):
        self.lexical = lexical

    def applies(self, request: SearchRequest) -> bool:
        return bool(request.query.strip())

    def search(self, request: SearchRequest) -> list[Candidate]:
        for variant in request.lexical_variants or (QueryVariant(request.query, VariantKind.DIRECT),):
            found = self.lexical.search(variant.text, None, request.limit, strategy=self.state)
            if found:
                return found
        return []
