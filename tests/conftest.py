"""Pytest configuration and shared fixtures for tests.

The corpus store runs on in-memory SQLite. Embeddings come from a
deterministic keyword embedder: one axis per keyword in ``EMBED_AXES``,
valued by how often the keyword occurs, so similarity between texts is
predictable without calling a model.
"""

import re

import pytest

from src.common.config_loader import Settings, clear_config_cache
from src.engine import intent_router
from src.engine.rag import RetrievalEngine
from src.engine.similarity import CosineScanBackend, FailoverSimilarityBackend
from src.engine.store import CorpusStore
from src.engine.types import ItemStatus


EMBED_AXES = (
    "chest",
    "back",
    "legs",
    "shoulders",
    "rest",
    "reps",
    "sets",
    "volume",
    "program",
    "myth",
    "protein",
    "sleep",
    "squat",
    "press",
    "row",
)


def keyword_vector(text: str) -> list[float]:
    words = re.findall(r"[a-z]+", str(text or "").lower())
    return [float(words.count(axis)) for axis in EMBED_AXES]


class KeywordEmbedder:
    """Callable embed_fn that records every batch it was asked to embed."""

    def __init__(self):
        self.calls: list[list[str]] = []

    def __call__(self, texts):
        self.calls.append(list(texts))
        return [keyword_vector(t) for t in texts]


class FakeGenerator:
    """Callable generate_fn returning queued answers in order."""

    def __init__(self, *answers: str):
        self.answers = list(answers)
        self.prompts: list[str] = []
        self.histories: list[list] = []

    def __call__(self, prompt, history=None):
        self.prompts.append(prompt)
        self.histories.append(list(history or []))
        if not self.answers:
            raise AssertionError("FakeGenerator ran out of answers")
        return self.answers.pop(0)


@pytest.fixture(autouse=True)
def _reset_module_caches():
    """Settings and intent classification are cached per process."""
    clear_config_cache()
    intent_router.clear_cache()
    yield
    clear_config_cache()
    intent_router.clear_cache()


@pytest.fixture
def store():
    return CorpusStore.from_url("sqlite://", create_schema=True)


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def fake_generator():
    """Factory: fake_generator("answer 1", "answer 2") -> FakeGenerator."""
    return FakeGenerator


@pytest.fixture
def seed(store):
    """Add one item with its passages (embedded with the keyword embedder unless embed=False)."""

    def _seed(
        item_id,
        title,
        texts,
        *,
        categories=(),
        status=ItemStatus.READY,
        embed=True,
    ):
        store.add_item(item_id, title, status=status, category_names=categories)
        store.add_passages(
            item_id,
            [(i, text, keyword_vector(text) if embed else None) for i, text in enumerate(texts)],
        )
        return item_id

    return _seed


@pytest.fixture
def make_engine(store, embedder):
    """Build a RetrievalEngine over the test store with the cosine-scan backend."""

    def _make(*, settings=None, generate_fn=None, hyde_fn=None, embed_fn=None, similarity=None):
        return RetrievalEngine(
            settings=settings or Settings(),
            store=store,
            similarity=similarity or FailoverSimilarityBackend(None, CosineScanBackend(store, batch_size=2)),
            embed_fn=embed_fn or embedder,
            generate_fn=generate_fn,
            hyde_fn=hyde_fn,
            max_workers=4,
        )

    return _make
