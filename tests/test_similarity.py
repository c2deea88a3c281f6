"""Tests for src/engine/similarity.py - cosine scan, native index and failover."""

import uuid
from unittest.mock import MagicMock

import chromadb
import numpy as np
import pytest

from src.engine.similarity import (
    ChromaVectorIndex,
    CosineScanBackend,
    FailoverSimilarityBackend,
    NativeIndexUnavailable,
    batch_cosine,
    cosine_similarity,
    parse_embedding,
)
from src.engine.store import passages
from src.engine.types import ItemStatus, Passage, SearchState

# Distinct scores against QUERY = [1, 0, 0]: 1.0, 0.707, 0.447, 0.0, -1.0
VECTORS = {
    ("a", 0): [1.0, 0.0, 0.0],
    ("a", 1): [1.0, 1.0, 0.0],
    ("b", 0): [1.0, 2.0, 0.0],
    ("b", 1): [0.0, 1.0, 0.0],
    ("c", 0): [-1.0, 0.0, 0.0],
}
QUERY = [1.0, 0.0, 0.0]


def _seed_vectors(store, *, statuses=None, categories=None):
    statuses = statuses or {}
    categories = categories or {}
    rows = []
    for item_id in ("a", "b", "c"):
        store.add_item(
            item_id,
            f"Item {item_id.upper()}",
            status=statuses.get(item_id, ItemStatus.READY),
            category_names=categories.get(item_id, ()),
        )
        keys = [k for k in VECTORS if k[0] == item_id]
        store.add_passages(item_id, [(idx, f"text {item_id}{idx}", VECTORS[(item_id, idx)]) for _, idx in keys])
        rows.extend(
            (Passage(item_id=item_id, chunk_index=idx, text=f"text {item_id}{idx}", title=f"Item {item_id.upper()}"), VECTORS[(item_id, idx)])
            for _, idx in keys
        )
    return rows


@pytest.fixture
def chroma_index(store):
    client = chromadb.EphemeralClient()
    collection = ChromaVectorIndex.get_collection(client, f"test-{uuid.uuid4().hex[:12]}")
    return ChromaVectorIndex(collection, store)


# =============================================================================
# cosine_similarity / parse_embedding
# =============================================================================


class TestCosineSimilarity:
    def test_identical_vectors(self):
        """Same direction scores 1.0 regardless of magnitude."""
        assert cosine_similarity([1.0, 2.0], [2.0, 4.0]) == pytest.approx(1.0)

    def test_orthogonal_and_opposite(self):
        """Orthogonal scores 0.0, opposite scores -1.0."""
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_norm_scores_zero(self):
        """A zero vector on either side scores 0.0 instead of dividing by zero."""
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [0.0, 0.0]) == 0.0

    def test_length_mismatch_scores_zero(self):
        """Vectors of different dimension are not comparable."""
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_empty_scores_zero(self):
        """Missing vectors score 0.0."""
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity(None, None) == 0.0


class TestBatchCosine:
    def test_matches_pairwise_cosine(self):
        """Scoring a whole batch as one matrix agrees with pairwise cosine."""
        rows = [VECTORS[k] for k in sorted(VECTORS)]
        scores = batch_cosine(np.asarray(QUERY), np.asarray(rows))
        for row, score in zip(rows, scores.tolist()):
            assert score == pytest.approx(cosine_similarity(QUERY, row), abs=1e-6)

    def test_zero_norm_rows_score_zero(self):
        """Zero rows and a zero query produce 0.0, not NaN."""
        scores = batch_cosine(np.asarray([1.0, 0.0]), np.asarray([[0.0, 0.0], [2.0, 0.0]]))
        assert scores.tolist() == [0.0, 1.0]
        assert batch_cosine(np.zeros(2), np.asarray([[1.0, 0.0]])).tolist() == [0.0]


class TestParseEmbedding:
    def test_json_list(self):
        """JSON text decodes to floats."""
        assert parse_embedding("[1, 2.5]") == [1.0, 2.5]

    @pytest.mark.parametrize("raw", ["not json", "[]", '{"a": 1}', '["x", "y"]'])
    def test_malformed_returns_none(self, raw, caplog):
        """Malformed embeddings are logged and skipped."""
        with caplog.at_level("WARNING", logger="src.engine.similarity"):
            assert parse_embedding(raw, key=("a", 0)) is None
        assert "malformed embedding" in caplog.text


# =============================================================================
# CosineScanBackend
# =============================================================================


class TestCosineScanBackend:
    def test_ranks_and_filters_by_floor(self, store):
        """Results are score-ordered and at or above the floor."""
        _seed_vectors(store)
        hits = CosineScanBackend(store, batch_size=2).top_k(QUERY, 10, 0.3)
        assert [c.key for c in hits] == [("a", 0), ("a", 1), ("b", 0)]
        assert [round(c.score, 3) for c in hits] == [1.0, 0.707, 0.447]
        assert all(c.strategy == SearchState.BROAD for c in hits)

    def test_k_bounds_result(self, store):
        """Only the k best survive across batches."""
        _seed_vectors(store)
        hits = CosineScanBackend(store, batch_size=1).top_k(QUERY, 2, -1.0)
        assert [c.key for c in hits] == [("a", 0), ("a", 1)]

    def test_category_scope(self, store):
        """Scoped scans only see passages of items in the categories."""
        _seed_vectors(store, categories={"b": ("myths",)})
        hits = CosineScanBackend(store).top_k(QUERY, 10, -1.0, category_names=["myths"], strategy=SearchState.CATEGORY)
        assert {c.key for c in hits} == {("b", 0), ("b", 1)}
        assert all(c.strategy == SearchState.CATEGORY for c in hits)

    def test_malformed_embedding_skipped(self, store):
        """A corrupt stored vector drops that passage only."""
        _seed_vectors(store)
        with store.engine.begin() as conn:
            conn.execute(
                passages.update()
                .where(passages.c.item_id == "a")
                .where(passages.c.chunk_index == 0)
                .values(embedding="{broken")
            )
        hits = CosineScanBackend(store).top_k(QUERY, 10, 0.3)
        assert [c.key for c in hits] == [("a", 1), ("b", 0)]

    def test_non_ready_items_excluded(self, store):
        """Pending items are never scored."""
        _seed_vectors(store, statuses={"a": ItemStatus.PENDING})
        hits = CosineScanBackend(store).top_k(QUERY, 10, 0.3)
        assert [c.key for c in hits] == [("b", 0)]

    def test_zero_vectors_score_zero(self, store):
        """An all-zero corpus yields nothing above a positive floor."""
        store.add_item("z", "Zero", status=ItemStatus.READY)
        store.add_passages("z", [(0, "t", [0.0, 0.0, 0.0])])
        backend = CosineScanBackend(store)
        assert backend.top_k(QUERY, 5, 0.05) == []
        assert [c.score for c in backend.top_k(QUERY, 5, 0.0)] == [0.0]

    def test_dimension_mismatch_scores_zero(self, store):
        """A stored vector of another dimension scores 0.0 instead of failing the batch."""
        _seed_vectors(store)
        store.add_item("d", "Other Dim", status=ItemStatus.READY)
        store.add_passages("d", [(0, "t", [1.0, 0.0])])
        hits = CosineScanBackend(store).top_k(QUERY, 10, 0.0)
        assert ("d", 0) in {c.key for c in hits}
        assert [c.score for c in hits if c.key == ("d", 0)] == [0.0]


# =============================================================================
# ChromaVectorIndex
# =============================================================================


class TestChromaVectorIndex:
    def test_matches_cosine_scan(self, store, chroma_index):
        """Native search returns the scan's ranking with the same scores."""
        chroma_index.upsert(_seed_vectors(store))
        native = chroma_index.top_k(QUERY, 10, 0.3)
        scan = CosineScanBackend(store).top_k(QUERY, 10, 0.3)
        assert [c.key for c in native] == [c.key for c in scan]
        for n, s in zip(native, scan):
            assert n.score == pytest.approx(s.score, abs=1e-6)

    def test_non_ready_items_filtered(self, store, chroma_index):
        """Vectors of non-ready items stay in the index but are not returned."""
        chroma_index.upsert(_seed_vectors(store, statuses={"a": ItemStatus.FAILED}))
        hits = chroma_index.top_k(QUERY, 10, 0.3)
        assert [c.key for c in hits] == [("b", 0)]

    def test_zero_norm_query_is_unavailable(self, store, chroma_index):
        """The native index refuses zero-norm queries so the caller can fail over."""
        chroma_index.upsert(_seed_vectors(store))
        with pytest.raises(NativeIndexUnavailable):
            chroma_index.top_k([0.0, 0.0, 0.0], 5, 0.0)

    def test_delete_item(self, store, chroma_index):
        """Deleting an item removes all its vectors."""
        chroma_index.upsert(_seed_vectors(store))
        chroma_index.delete_item("a")
        hits = chroma_index.top_k(QUERY, 10, 0.3)
        assert [c.key for c in hits] == [("b", 0)]


# =============================================================================
# FailoverSimilarityBackend
# =============================================================================


class TestFailover:
    def test_uses_native_when_healthy(self):
        """The fallback is not touched while the native index answers."""
        native = MagicMock()
        native.top_k.return_value = ["native"]
        fallback = MagicMock()
        backend = FailoverSimilarityBackend(native, fallback)
        assert backend.top_k(QUERY, 3, 0.1) == ["native"]
        fallback.top_k.assert_not_called()

    def test_falls_back_on_failure(self, caplog):
        """A native failure is logged and the scan answers instead."""
        native = MagicMock()
        native.top_k.side_effect = RuntimeError("index corrupted")
        fallback = MagicMock()
        fallback.top_k.return_value = ["scan"]
        backend = FailoverSimilarityBackend(native, fallback)
        with caplog.at_level("WARNING", logger="src.engine.similarity"):
            assert backend.top_k(QUERY, 3, 0.1, category_names=["myths"]) == ["scan"]
        assert "index corrupted" in caplog.text
        fallback.top_k.assert_called_once_with(
            QUERY, 3, 0.1, category_names=["myths"], strategy=SearchState.BROAD
        )

    def test_zero_norm_query_end_to_end(self, store, chroma_index):
        """A zero-norm query fails over to the scan and returns zero-scored passages."""
        chroma_index.upsert(_seed_vectors(store))
        backend = FailoverSimilarityBackend(chroma_index, CosineScanBackend(store))
        hits = backend.top_k([0.0, 0.0, 0.0], 2, 0.0)
        assert len(hits) == 2
        assert all(c.score == 0.0 for c in hits)

    def test_no_native_index(self, store):
        """Without a native index the scan is used directly."""
        _seed_vectors(store)
        backend = FailoverSimilarityBackend(None, CosineScanBackend(store))
        assert [c.key for c in backend.top_k(QUERY, 1, 0.3)] == [("a", 0)]
