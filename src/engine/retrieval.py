"""Retrieval orchestrator: the multi-strategy search state machine.

States are visited in a fixed order:

    ENTITY -> CATEGORY -> PARAMETER -> BROAD -> FALLBACK

ENTITY runs first and short-circuits when title hits are plentiful (no
embedding call is made). CATEGORY, PARAMETER and BROAD are independent reads
and fan out concurrently; their candidate lists are merged afterwards by a
pure reduction. FALLBACK only runs when everything before it came back empty.

The merged pool is then source-diversified and truncated to the requested
size. An empty result is a valid outcome, not an error.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Callable, Sequence

from ..common.config_loader import RetrievalSettings
from .conversation import HistoryMessage, recent_entities
from .helpers import detect_muscle_groups, matched_entity_keywords
from .instrumentation import log_retrieval_event
from .intent_router import classify_intent, requested_parameters
from .lexical import LexicalSearch
from .merging import diversify_sources, merge_candidates, pool_size
from .query_expansion import HydeFn, expand
from .similarity import SimilarityBackend
from .strategies import (
    BroadVectorStrategy,
    EntityTitleStrategy,
    KeywordFallbackStrategy,
    ParameterStrategy,
    PriorityCategoryStrategy,
    SearchRequest,
    SearchStrategy,
)
from .types import BackendError, Candidate, QueryIntent, RetrievalResult, SearchState

logger = logging.getLogger(__name__)

# embed_fn(texts) -> one vector per text
EmbedFn = Callable[[list[str]], list[list[float]]]

# Entity keywords shorter than this are too ambiguous for title LIKE matching
# ("lat" would match "plateau").
_MIN_TITLE_KEYWORD_LEN = 4


@dataclass(frozen=True)
class RetrievalLimits:
    """Caller-supplied bounds for one retrieval call."""

    max_chunks: int | None = None
    max_per_source: int | None = None


def entity_keywords_for(query: str, intent: QueryIntent, history: list[HistoryMessage] | None) -> tuple[str, ...]:
    groups = detect_muscle_groups(query)
    if intent == QueryIntent.CONTINUATION:
        for g in detect_muscle_groups(" ".join(recent_entities(history))):
            if g not in groups:
                groups.append(g)
    literal = [k for k in matched_entity_keywords(query) if len(k) >= _MIN_TITLE_KEYWORD_LEN]
    return tuple(dict.fromkeys(groups + literal))


class RetrievalOrchestrator:
    def __init__(
        self,
        *,
        lexical: LexicalSearch,
        similarity: SimilarityBackend,
        embed_fn: EmbedFn,
        settings: RetrievalSettings,
        hyde_fn: HydeFn | None = None,
        max_workers: int = 8,
        timeout_secs: float | None = None,
    ):
        self.settings = settings
        self.timeout_secs = timeout_secs
        self.embed_fn = embed_fn
        self.hyde_fn = hyde_fn
        self.max_workers = max(1, int(max_workers))

        self.entity = EntityTitleStrategy(lexical)
        self.category = PriorityCategoryStrategy(
            lexical,
            similarity,
            priority_categories=settings.priority_categories,
            always_categories=settings.always_categories,
            similarity_floor=settings.similarity_floor,
            max_workers=self.max_workers,
        )
        self.parameter = ParameterStrategy(
            lexical,
            categories=tuple(settings.priority_categories) + tuple(settings.always_categories),
            score=settings.parameter_match_score,
            limit=settings.parameter_search_limit,
        )
        self.broad = BroadVectorStrategy(
            similarity,
            similarity_floor=settings.similarity_floor,
            threshold_step=settings.threshold_step,
            min_similarity_floor=settings.min_similarity_floor,
            min_acceptable_results=settings.min_acceptable_results,
            max_attempts=settings.max_threshold_attempts,
            max_workers=self.max_workers,
        )
        self.fallback = KeywordFallbackStrategy(lexical)

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    def _embed(self, texts: list[str]) -> tuple[tuple[float, ...], ...]:
        if not texts:
            return ()
        try:
            vectors = self.embed_fn(texts)
        except BackendError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendError("Embedding request failed.") from exc
        if len(vectors) != len(texts):
            raise BackendError(f"Embedding returned {len(vectors)} vectors for {len(texts)} texts.")
        return tuple(tuple(float(x) for x in v) for v in vectors)

    def _run_concurrently(
        self,
        strategies: Sequence[SearchStrategy],
        request: SearchRequest,
    ) -> dict[SearchState, list[Candidate]]:
        active = [s for s in strategies if s.applies(request)]
        if not active:
            return {}
        if len(active) == 1 or self.max_workers == 1:
            return {s.state: s.search(request) for s in active}

        out: dict[SearchState, list[Candidate]] = {}
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(active)))
        futures = {executor.submit(s.search, request): s for s in active}
        try:
            for future in as_completed(futures, timeout=self.timeout_secs):
                strategy = futures[future]
                out[strategy.state] = future.result()
        except FuturesTimeout:
            late = [futures[f].state.value for f in futures if not f.done()]
            logger.warning("Retrieval states %s timed out after %ss; continuing without them", late, self.timeout_secs)
        finally:
            # Late strategies keep their worker thread but are no longer awaited.
            executor.shutdown(wait=False, cancel_futures=True)
        return out

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def retrieve(
        self,
        query: str,
        history: list[HistoryMessage] | None = None,
        limits: RetrievalLimits | None = None,
    ) -> RetrievalResult:
        t0 = time.perf_counter()
        limits = limits or RetrievalLimits()
        k = int(limits.max_chunks or self.settings.max_chunks)
        max_per_source = limits.max_per_source if limits.max_per_source is not None else self.settings.max_per_source
        pool = pool_size(k, multiplier=self.settings.pool_multiplier, minimum=self.settings.min_pool_size)

        intent = classify_intent(query, history)
        per_state: dict[SearchState, list[Candidate]] = {}
        visited: list[SearchState] = []

        base = SearchRequest(
            query=query,
            intent=intent,
            variants=(),
            vectors=(),
            limit=pool,
            entity_keywords=entity_keywords_for(query, intent, history),
            parameter_kinds=tuple(requested_parameters(query)),
        )

        # ENTITY
        if self.entity.applies(base):
            visited.append(SearchState.ENTITY)
            per_state[SearchState.ENTITY] = self.entity.search(base)

        short_circuit = len(per_state.get(SearchState.ENTITY, [])) >= self.settings.entity_min_hits
        if not short_circuit:
            variants = tuple(
                expand(
                    query,
                    history,
                    intent=intent,
                    hyde_fn=self.hyde_fn,
                    max_variants=self.settings.max_query_variants,
                )
            )
            request = SearchRequest(
                query=base.query,
                intent=base.intent,
                variants=variants,
                vectors=self._embed([v.text for v in variants]),
                limit=base.limit,
                entity_keywords=base.entity_keywords,
                parameter_kinds=base.parameter_kinds,
            )

            # CATEGORY, PARAMETER, BROAD
            results = self._run_concurrently([self.category, self.parameter, self.broad], request)
            for state in (SearchState.CATEGORY, SearchState.PARAMETER, SearchState.BROAD):
                if state in results:
                    visited.append(state)
                    per_state[state] = results[state]

            # FALLBACK
            if not any(per_state.values()) and self.fallback.applies(request):
                visited.append(SearchState.FALLBACK)
                per_state[SearchState.FALLBACK] = self.fallback.search(request)

        merged = merge_candidates(*per_state.values())[:pool]
        selected = diversify_sources(merged, k, max_per_source=max_per_source)

        result = RetrievalResult(
            candidates=tuple(selected),
            states_visited=tuple(visited),
            state_counts={state.value: len(c) for state, c in per_state.items()},
        )
        duration_ms = (time.perf_counter() - t0) * 1000.0
        logger.info(
            "Retrieved %d passages from %d sources (intent=%s, states=%s, %.0fms)",
            len(result),
            len(result.source_ids),
            intent.value,
            "/".join(s.value for s in visited) or "-",
            duration_ms,
        )
        log_retrieval_event(query=query, intent=intent, result=result, duration_ms=duration_ms)
        return result
