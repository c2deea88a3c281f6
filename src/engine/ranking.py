from __future__ import annotations

import math
import re
from typing import Sequence

from .types import Passage


class Ranker:
    """Lexical relevance scoring (BM25) over a candidate set."""

    k1: float = 1.2
    b: float = 0.75

    @staticmethod
    def tokenize_for_lexical(text: str) -> list[str]:
        if not text:
            return []
        return re.findall(r"[0-9a-z]+", text.lower())

    @classmethod
    def bm25_scores(cls, *, query: str, documents: list[str]) -> list[float]:
        """Compute BM25 scores of documents against query.

        Scores are relative to the candidate set, so this ranks an already
        filtered set rather than searching a corpus.
        """

        q_terms = cls.tokenize_for_lexical(query)
        if not q_terms or not documents:
            return [0.0 for _ in documents]

        # Use unique query terms to reduce overweighting repeated question tokens.
        q_terms = list(dict.fromkeys(q_terms))

        N = len(documents)
        doc_tokens = [cls.tokenize_for_lexical(d) for d in documents]
        doc_lens = [len(toks) for toks in doc_tokens]
        avgdl = (sum(doc_lens) / N) if N else 1.0
        if avgdl <= 0:
            avgdl = 1.0

        dfs: dict[str, int] = {t: 0 for t in q_terms}
        tfs_per_doc: list[dict[str, int]] = []
        for toks in doc_tokens:
            tf: dict[str, int] = {}
            for tok in toks:
                if tok in dfs:
                    tf[tok] = tf.get(tok, 0) + 1
            tfs_per_doc.append(tf)
            for term in tf.keys():
                dfs[term] += 1

        def idf(df: int) -> float:
            # Standard BM25 idf with +1 to keep it non-negative.
            return math.log((N - df + 0.5) / (df + 0.5) + 1.0)

        k1 = cls.k1
        b = cls.b
        scores: list[float] = []
        for dl, tf in zip(doc_lens, tfs_per_doc):
            s = 0.0
            norm = k1 * (1.0 - b + b * (dl / avgdl))
            for term in q_terms:
                f = tf.get(term, 0)
                if not f:
                    continue
                term_idf = idf(dfs.get(term, 0))
                s += term_idf * (f * (k1 + 1.0)) / (f + norm)
            scores.append(s)

        return scores

    @staticmethod
    def normalize_scores(values: list[float]) -> list[float]:
        """Min-max normalize to [0, 1]; a flat list maps to all 1.0."""
        if not values:
            return []
        vmin = min(values)
        vmax = max(values)
        if vmax <= vmin:
            return [1.0 for _ in values]
        return [(v - vmin) / (vmax - vmin) for v in values]

    @classmethod
    def rank_passages(
        cls,
        query: str,
        passages: Sequence[Passage],
        *,
        floor: float = 0.0,
        ceiling: float = 1.0,
    ) -> list[tuple[Passage, float]]:
        """Rank passages by BM25, scaled into [floor, ceiling], best first.

        Ties keep the input order.
        """
        if not passages:
            return []
        raw = cls.bm25_scores(query=query, documents=[p.text for p in passages])
        norm = cls.normalize_scores(raw)
        span = ceiling - floor
        scored = [(p, floor + span * s) for p, s in zip(passages, norm)]
        order = sorted(range(len(scored)), key=lambda i: -scored[i][1])
        return [scored[i] for i in order]
