"""Relational corpus store: items, passages, categories and the exercise vocabulary.

Retrieval only reads from this store. The write helpers exist for ingestion
(see indexing.py) and for seeding test corpora.

Only items with status ``ready`` are ever returned by a read method.
"""

from __future__ import annotations

import json
import logging
import re
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .types import ApprovedEntity, BackendError, ItemStatus, Passage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

items = Table(
    "corpus_items",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("title", String(512), nullable=False),
    Column("status", String(16), nullable=False, default=ItemStatus.PENDING.value),
)

passages = Table(
    "passages",
    metadata,
    Column("item_id", String(64), ForeignKey("corpus_items.id", ondelete="CASCADE"), primary_key=True),
    Column("chunk_index", Integer, primary_key=True),
    Column("text", Text, nullable=False),
    # JSON-encoded list[float]; NULL until the passage has been embedded.
    Column("embedding", Text, nullable=True),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(128), nullable=False, unique=True),
)

item_categories = Table(
    "item_categories",
    metadata,
    Column("item_id", String(64), ForeignKey("corpus_items.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)

approved_entities = Table(
    "approved_entities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(256), nullable=False, unique=True),
    Column("muscle_group", String(64), nullable=False),
    Column("equipment", String(64), nullable=True),
    Column("is_recommended", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
)

_READY = ItemStatus.READY.value


def make_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine for the corpus database.

    SQLite connections are shared across the retrieval worker threads; an
    in-memory database needs a single static connection to be visible to all
    of them.
    """
    url = str(database_url)
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        else:
            logger.info("Using SQLite corpus database: %s", url)
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


class CorpusStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, *, create_schema: bool = False) -> CorpusStore:
        store = cls(make_engine(database_url))
        if create_schema:
            store.create_schema()
        return store

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    def _fetch(self, stmt) -> list[Any]:
        try:
            with self.engine.connect() as conn:
                return list(conn.execute(stmt))
        except SQLAlchemyError as exc:
            raise BackendError("Corpus store query failed.") from exc

    # -----------------------------------------------------------------------
    # Writes (ingestion / seeding)
    # -----------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise BackendError("Corpus store write failed.") from exc

    def add_item(
        self,
        item_id: str,
        title: str,
        *,
        status: ItemStatus | str = ItemStatus.PENDING,
        category_names: Iterable[str] = (),
    ) -> None:
        """Insert an item, or update it in place and replace its category links."""
        status_value = ItemStatus(status).value
        with self._transaction() as conn:
            exists = conn.execute(select(items.c.id).where(items.c.id == item_id)).first() is not None
            if exists:
                conn.execute(items.update().where(items.c.id == item_id).values(title=title, status=status_value))
                conn.execute(item_categories.delete().where(item_categories.c.item_id == item_id))
            else:
                conn.execute(items.insert().values(id=item_id, title=title, status=status_value))
            for name in category_names:
                cat_id = self._ensure_category(conn, name)
                conn.execute(item_categories.insert().values(item_id=item_id, category_id=cat_id))

    @staticmethod
    def _ensure_category(conn, name: str) -> int:
        row = conn.execute(select(categories.c.id).where(categories.c.name == name)).first()
        if row is not None:
            return int(row[0])
        result = conn.execute(categories.insert().values(name=name))
        return int(result.inserted_primary_key[0])

    def add_passages(
        self,
        item_id: str,
        rows: Sequence[tuple[int, str, Sequence[float] | None]],
    ) -> None:
        """Replace the (chunk_index, text, embedding) rows of one item."""
        if not rows:
            return
        payload = [
            {
                "item_id": item_id,
                "chunk_index": int(idx),
                "text": text,
                "embedding": json.dumps([float(x) for x in emb]) if emb is not None else None,
            }
            for idx, text, emb in rows
        ]
        with self._transaction() as conn:
            conn.execute(passages.delete().where(passages.c.item_id == item_id))
            conn.execute(passages.insert(), payload)

    def set_status(self, item_id: str, status: ItemStatus | str) -> None:
        with self._transaction() as conn:
            conn.execute(items.update().where(items.c.id == item_id).values(status=ItemStatus(status).value))

    def add_approved_entity(
        self,
        name: str,
        muscle_group: str,
        *,
        equipment: str | None = None,
        is_recommended: bool = False,
        is_active: bool = True,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                approved_entities.insert().values(
                    name=name,
                    muscle_group=muscle_group,
                    equipment=equipment,
                    is_recommended=is_recommended,
                    is_active=is_active,
                )
            )

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    @staticmethod
    def _to_passage(row: Any) -> Passage:
        return Passage(item_id=str(row.item_id), chunk_index=int(row.chunk_index), text=str(row.text or ""), title=str(row.title or ""))

    def _passage_select(self):
        return (
            select(passages.c.item_id, passages.c.chunk_index, passages.c.text, items.c.title)
            .select_from(passages.join(items, items.c.id == passages.c.item_id))
            .where(items.c.status == _READY)
        )

    def _scope_to_categories(self, stmt, category_names: Sequence[str] | None):
        if not category_names:
            return stmt
        scoped_items = (
            select(item_categories.c.item_id)
            .select_from(item_categories.join(categories, categories.c.id == item_categories.c.category_id))
            .where(categories.c.name.in_(list(category_names)))
        )
        return stmt.where(passages.c.item_id.in_(scoped_items))

    def passages_by_keys(self, keys: Iterable[tuple[str, int]]) -> dict[tuple[str, int], Passage]:
        """Hydrate passages for (item_id, chunk_index) keys; non-ready items are omitted."""
        wanted = list(dict.fromkeys(keys))
        if not wanted:
            return {}
        cond = or_(*[and_(passages.c.item_id == i, passages.c.chunk_index == c) for i, c in wanted])
        rows = self._fetch(self._passage_select().where(cond))
        out = {}
        for row in rows:
            p = self._to_passage(row)
            out[p.key] = p
        return out

    def search_text(
        self,
        terms: Sequence[str],
        *,
        category_names: Sequence[str] | None = None,
        limit: int = 50,
    ) -> list[Passage]:
        """Passages containing every term (case-insensitive substring match).

        Category scope selects DISTINCT rows; every ORDER BY column is part of
        the projection.
        """
        if not terms:
            return []
        stmt = self._passage_select()
        for term in terms:
            stmt = stmt.where(func.lower(passages.c.text).like(f"%{term.lower()}%"))
        stmt = self._scope_to_categories(stmt, category_names)
        stmt = stmt.distinct().order_by(items.c.title, passages.c.item_id, passages.c.chunk_index).limit(int(limit))
        return [self._to_passage(r) for r in self._fetch(stmt)]

    def search_titles(
        self,
        keywords: Sequence[str],
        *,
        category_names: Sequence[str] | None = None,
        limit: int = 50,
    ) -> list[Passage]:
        """All passages of items whose title names any keyword as a whole word, in chunk order.

        LIKE prefilters in SQL; word boundaries (with an optional plural ending)
        are checked here so "back" does not match "Feedback".
        """
        keywords = [k.strip().lower() for k in keywords if k and k.strip()]
        if not keywords:
            return []
        stmt = self._passage_select().where(or_(*[func.lower(items.c.title).like(f"%{k}%") for k in keywords]))
        stmt = self._scope_to_categories(stmt, category_names)
        stmt = stmt.distinct().order_by(items.c.title, passages.c.item_id, passages.c.chunk_index)
        pattern = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")(?:e?s)?\b", re.IGNORECASE)
        hits = [p for p in (self._to_passage(r) for r in self._fetch(stmt)) if pattern.search(p.title)]
        return hits[: int(limit)]

    def passages_in_categories(self, category_names: Sequence[str], *, limit: int = 50) -> list[Passage]:
        if not category_names:
            return []
        stmt = self._scope_to_categories(self._passage_select(), category_names)
        stmt = stmt.distinct().order_by(items.c.title, passages.c.item_id, passages.c.chunk_index).limit(int(limit))
        return [self._to_passage(r) for r in self._fetch(stmt)]

    def ready_item_ids(self, category_names: Sequence[str] | None = None) -> list[str]:
        stmt = select(items.c.id).where(items.c.status == _READY)
        if category_names:
            scoped = (
                select(item_categories.c.item_id)
                .select_from(item_categories.join(categories, categories.c.id == item_categories.c.category_id))
                .where(categories.c.name.in_(list(category_names)))
            )
            stmt = stmt.where(items.c.id.in_(scoped))
        return [str(r[0]) for r in self._fetch(stmt.order_by(items.c.id))]

    def iter_embedded_batches(
        self,
        batch_size: int = 50,
        *,
        category_names: Sequence[str] | None = None,
    ) -> Iterator[list[tuple[Passage, str]]]:
        """Yield batches of (passage, raw embedding JSON) for ready passages with an embedding."""
        stmt = (
            select(passages.c.item_id, passages.c.chunk_index, passages.c.text, items.c.title, passages.c.embedding)
            .select_from(passages.join(items, items.c.id == passages.c.item_id))
            .where(items.c.status == _READY)
            .where(passages.c.embedding.is_not(None))
        )
        stmt = self._scope_to_categories(stmt, category_names)
        stmt = stmt.order_by(passages.c.item_id, passages.c.chunk_index)

        offset = 0
        while True:
            rows = self._fetch(stmt.limit(int(batch_size)).offset(offset))
            if not rows:
                return
            yield [(self._to_passage(r), str(r.embedding)) for r in rows]
            if len(rows) < batch_size:
                return
            offset += len(rows)

    def approved_entities(self, muscle_group: str | None = None) -> list[ApprovedEntity]:
        stmt = select(
            approved_entities.c.name,
            approved_entities.c.muscle_group,
            approved_entities.c.equipment,
            approved_entities.c.is_recommended,
        ).where(approved_entities.c.is_active.is_(True))
        if muscle_group:
            stmt = stmt.where(approved_entities.c.muscle_group == muscle_group)
        rows = self._fetch(stmt.order_by(approved_entities.c.name))
        return [
            ApprovedEntity(
                name=str(r.name),
                muscle_group=str(r.muscle_group),
                equipment=r.equipment,
                is_recommended=bool(r.is_recommended),
            )
            for r in rows
        ]
