"""Lexical search over passage text and item titles.

Body search is AND-conjunctive: every extracted term (length > 2) must occur
in the passage. Matches are ranked with BM25 and scaled below the fixed title
score, so a title hit always outranks a body hit.
"""

from __future__ import annotations

import logging
from typing import Sequence

from .helpers import extract_terms
from .ranking import Ranker
from .store import CorpusStore
from .types import Candidate, SearchState

logger = logging.getLogger(__name__)

# Upper bound of a body-text match score relative to the title score.
_BODY_SCORE_GAP = 0.05
_BODY_SCORE_FLOOR = 0.3


class LexicalSearch:
    def __init__(self, store: CorpusStore, *, title_score: float = 0.9):
        self.store = store
        self.title_score = float(title_score)

    @property
    def body_score_ceiling(self) -> float:
        return max(_BODY_SCORE_FLOOR, self.title_score - _BODY_SCORE_GAP)

    def search(
        self,
        query_text: str,
        scope_categories: Sequence[str] | None = None,
        limit: int = 20,
        *,
        strategy: SearchState = SearchState.FALLBACK,
    ) -> list[Candidate]:
        terms = extract_terms(query_text)
        if not terms or limit <= 0:
            return []
        # Over-fetch so BM25 ranks a wider set than the SQL ordering would.
        pool = self.store.search_text(terms, category_names=scope_categories, limit=max(limit * 5, 50))
        ranked = Ranker.rank_passages(
            " ".join(terms),
            pool,
            floor=_BODY_SCORE_FLOOR,
            ceiling=self.body_score_ceiling,
        )
        logger.debug("Lexical search terms=%s scope=%s hits=%d", terms, scope_categories, len(pool))
        return [Candidate(passage=p, score=s, strategy=strategy) for p, s in ranked[:limit]]

    def title_search(
        self,
        entity_names: Sequence[str],
        limit: int = 20,
        *,
        scope_categories: Sequence[str] | None = None,
        score: float | None = None,
        strategy: SearchState = SearchState.ENTITY,
    ) -> list[Candidate]:
        """Passages of items whose title names one of the entities, in chunk order."""
        if not entity_names or limit <= 0:
            return []
        passages = self.store.search_titles(entity_names, category_names=scope_categories, limit=limit)
        fixed = self.title_score if score is None else float(score)
        return [Candidate(passage=p, score=fixed, strategy=strategy) for p in passages]
