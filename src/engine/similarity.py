"""Similarity backends: vector scoring for query/passage embeddings.

Two interchangeable implementations of one contract:

- ChromaVectorIndex: native nearest-neighbour search over a chromadb
  collection in cosine space (score = 1 - distance).
- CosineScanBackend: explicit cosine over every ready passage with a stored
  embedding, streamed from the corpus store in fixed-size batches and scored
  one numpy matrix per batch.

FailoverSimilarityBackend prefers the native index and degrades to the scan
whenever the index is missing or fails. Both paths return the same ranking
and the same scores (up to float32 rounding in the index).
"""

from __future__ import annotations

import heapq
import json
import logging
from pathlib import Path
from typing import Any, Protocol, Sequence

import numpy as np

from .store import CorpusStore
from .types import Candidate, Passage, SearchState

logger = logging.getLogger(__name__)

Vector = Sequence[float]


def cosine_similarity(a: Vector | None, b: Vector | None) -> float:
    """Cosine similarity in [-1, 1]; zero-norm or length-mismatched vectors score 0.0."""
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    return float(batch_cosine(np.asarray(a, dtype=np.float64), np.asarray([b], dtype=np.float64))[0])


def batch_cosine(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine of one query vector against every row of matrix.

    Rows (or a query) with zero norm score 0.0.
    """
    query = np.asarray(query, dtype=np.float64)
    matrix = np.asarray(matrix, dtype=np.float64)
    qnorm = np.linalg.norm(query)
    norms = np.linalg.norm(matrix, axis=1)
    denom = norms * qnorm
    dots = matrix @ query
    scores = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0.0)
    # Clamp rounding drift.
    return np.clip(scores, -1.0, 1.0)


def parse_embedding(raw: Any, *, key: tuple[str, int] | None = None) -> list[float] | None:
    """Decode a stored embedding; malformed values are logged and return None."""
    try:
        values = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if not isinstance(values, list) or not values:
            raise ValueError("embedding is not a non-empty list")
        return [float(v) for v in values]
    except (TypeError, ValueError) as exc:
        logger.warning("Skipping passage %s: malformed embedding (%s)", key, exc)
        return None


def _rank_key(c: Candidate) -> tuple[float, str, int]:
    return (-c.score, c.passage.item_id, c.passage.chunk_index)


class SimilarityBackend(Protocol):
    def top_k(
        self,
        query_vector: Vector,
        k: int,
        min_score: float,
        *,
        category_names: Sequence[str] | None = None,
        strategy: SearchState = SearchState.BROAD,
    ) -> list[Candidate]:
        ...


class NativeIndexUnavailable(RuntimeError):
    """The native vector index cannot serve this query."""


# ---------------------------------------------------------------------------
# Fallback: batched cosine scan
# ---------------------------------------------------------------------------


class CosineScanBackend:
    def __init__(self, store: CorpusStore, batch_size: int = 50):
        self.store = store
        self.batch_size = max(1, int(batch_size))

    def top_k(
        self,
        query_vector: Vector,
        k: int,
        min_score: float,
        *,
        category_names: Sequence[str] | None = None,
        strategy: SearchState = SearchState.BROAD,
    ) -> list[Candidate]:
        if k <= 0:
            return []
        query = np.asarray(query_vector, dtype=np.float64)
        dim = len(query)
        best: list[Candidate] = []
        scanned = 0
        skipped = 0
        for batch in self.store.iter_embedded_batches(self.batch_size, category_names=category_names):
            comparable: list[Passage] = []
            rows: list[list[float]] = []
            mismatched: list[Passage] = []
            for passage, raw in batch:
                scanned += 1
                vec = parse_embedding(raw, key=passage.key)
                if vec is None:
                    skipped += 1
                    continue
                if dim and len(vec) == dim:
                    comparable.append(passage)
                    rows.append(vec)
                else:
                    mismatched.append(passage)

            scored: list[tuple[Passage, float]] = [(p, 0.0) for p in mismatched]
            if rows:
                scores = batch_cosine(query, np.asarray(rows, dtype=np.float64))
                scored.extend(zip(comparable, scores.tolist()))
            best.extend(
                Candidate(passage=passage, score=score, strategy=strategy)
                for passage, score in scored
                if score >= min_score
            )
            # Keep memory bounded to k results between batches.
            if len(best) > k:
                best = heapq.nsmallest(k, best, key=_rank_key)

        logger.debug("Cosine scan: scanned=%d skipped=%d kept=%d", scanned, skipped, len(best))
        return sorted(best, key=_rank_key)[:k]


# ---------------------------------------------------------------------------
# Native: chromadb collection in cosine space
# ---------------------------------------------------------------------------


def passage_vector_id(passage: Passage) -> str:
    return f"{passage.item_id}:{passage.chunk_index}"


class ChromaVectorIndex:
    def __init__(self, collection: Any, store: CorpusStore):
        self.collection = collection
        self.store = store

    @classmethod
    def open(cls, path: Path | str, collection_name: str, store: CorpusStore) -> ChromaVectorIndex:
        import chromadb

        client = chromadb.PersistentClient(path=str(path))
        return cls(cls.get_collection(client, collection_name), store)

    @staticmethod
    def get_collection(client: Any, collection_name: str) -> Any:
        return client.get_or_create_collection(
            collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def upsert(self, rows: Sequence[tuple[Passage, Vector]]) -> None:
        if not rows:
            return
        self.collection.upsert(
            ids=[passage_vector_id(p) for p, _ in rows],
            embeddings=[[float(x) for x in v] for _, v in rows],
            metadatas=[{"item_id": p.item_id, "chunk_index": int(p.chunk_index)} for p, _ in rows],
        )

    def delete_item(self, item_id: str) -> None:
        self.collection.delete(where={"item_id": item_id})

    def top_k(
        self,
        query_vector: Vector,
        k: int,
        min_score: float,
        *,
        category_names: Sequence[str] | None = None,
        strategy: SearchState = SearchState.BROAD,
    ) -> list[Candidate]:
        if k <= 0:
            return []
        if not query_vector or not any(float(x) != 0.0 for x in query_vector):
            raise NativeIndexUnavailable("zero-norm query vector")

        ready_ids = self.store.ready_item_ids(category_names)
        if not ready_ids:
            return []
        count = int(self.collection.count())
        if count == 0:
            return []

        results = self.collection.query(
            query_embeddings=[[float(x) for x in query_vector]],
            n_results=min(int(k), count),
            where={"item_id": {"$in": ready_ids}},
            include=["metadatas", "distances"],
        )
        metadatas = (results.get("metadatas") or [[]])[0] or []
        distances = (results.get("distances") or [[]])[0] or []

        scored: list[tuple[tuple[str, int], float]] = []
        for meta, dist in zip(metadatas, distances):
            score = 1.0 - float(dist)
            if score < min_score:
                continue
            scored.append(((str(meta["item_id"]), int(meta["chunk_index"])), max(-1.0, min(1.0, score))))

        hydrated = self.store.passages_by_keys(key for key, _ in scored)
        out = [
            Candidate(passage=hydrated[key], score=score, strategy=strategy)
            for key, score in scored
            if key in hydrated
        ]
        return sorted(out, key=_rank_key)


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------


class FailoverSimilarityBackend:
    def __init__(self, native: ChromaVectorIndex | None, fallback: CosineScanBackend):
        self.native = native
        self.fallback = fallback

    def top_k(
        self,
        query_vector: Vector,
        k: int,
        min_score: float,
        *,
        category_names: Sequence[str] | None = None,
        strategy: SearchState = SearchState.BROAD,
    ) -> list[Candidate]:
        if self.native is not None:
            try:
                return self.native.top_k(
                    query_vector, k, min_score, category_names=category_names, strategy=strategy
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Native vector index failed (%s); using cosine scan", exc)
        return self.fallback.top_k(query_vector, k, min_score, category_names=category_names, strategy=strategy)
