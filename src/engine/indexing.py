"""Indexing: chunk corpus items, embed the chunks and write them to both stores.

This module handles:
- Token-window chunking with paragraph-aware overlap
- Writing passages (with their embeddings) to the relational corpus store
- Upserting the same vectors into the native vector index
- Item status transitions: pending -> ready, or failed on error
- Bulk ingestion from JSONL files

Retrieval never calls into this module; it only reads what indexing wrote.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from .prompt_builder import _encoding, count_tokens
from .similarity import ChromaVectorIndex
from .store import CorpusStore
from .types import BackendError, ItemStatus, Passage, RetrievalEngineError

logger = logging.getLogger(__name__)

EmbedFn = Callable[[list[str]], list[list[float]]]


@dataclass(frozen=True)
class CorpusItem:
    item_id: str
    title: str
    text: str
    categories: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def _split_long_block(text: str, max_tokens: int) -> list[str]:
    enc = _encoding()
    tokens = enc.encode(text)
    return [enc.decode(tokens[i : i + max_tokens]).strip() for i in range(0, len(tokens), max_tokens)]


def _apply_overlap(blocks: list[tuple[str, int]], *, max_overlap_tokens: int) -> list[tuple[str, int]]:
    """Trailing blocks of a finished chunk that fit in the overlap window."""
    if max_overlap_tokens <= 0:
        return []
    out: list[tuple[str, int]] = []
    total = 0
    for text, tok in reversed(blocks):
        if total + tok > max_overlap_tokens:
            break
        out.insert(0, (text, tok))
        total += tok
    return out


def chunk_text(text: str, *, chunk_tokens: int = 512, overlap: int = 100) -> list[str]:
    """Split text into chunks of at most ``chunk_tokens`` tokens.

    Paragraphs are kept whole when they fit; consecutive chunks share up to
    ``overlap`` tokens of trailing paragraphs.
    """
    if chunk_tokens <= 0:
        raise ValueError("chunk_tokens must be >= 1")
    paragraphs = [p.strip() for p in str(text or "").split("\n\n") if p.strip()]

    blocks: list[tuple[str, int]] = []
    for para in paragraphs:
        tok = count_tokens(para)
        if tok <= chunk_tokens:
            blocks.append((para, tok))
        else:
            blocks.extend((piece, count_tokens(piece)) for piece in _split_long_block(para, chunk_tokens) if piece)

    chunks: list[str] = []
    pending: list[tuple[str, int]] = []
    pending_tokens = 0
    for block, tok in blocks:
        if pending and pending_tokens + tok > chunk_tokens:
            chunks.append("\n\n".join(b for b, _ in pending))
            pending = _apply_overlap(pending, max_overlap_tokens=overlap)
            pending_tokens = sum(t for _, t in pending)
            # If the overlap itself leaves no room, drop it.
            if pending_tokens + tok > chunk_tokens:
                pending, pending_tokens = [], 0
        pending.append((block, tok))
        pending_tokens += tok
    if pending:
        chunks.append("\n\n".join(b for b, _ in pending))
    return chunks


# ---------------------------------------------------------------------------
# Item indexing
# ---------------------------------------------------------------------------


def _embedding_input(title: str, text: str) -> str:
    # The title gives short chunks some topical anchoring in embedding space.
    return f"{title}\n\n{text}" if title else text


def index_item(
    store: CorpusStore,
    item: CorpusItem,
    *,
    embed_fn: EmbedFn,
    vector_index: ChromaVectorIndex | None = None,
    chunk_tokens: int = 512,
    overlap: int = 100,
) -> list[Passage]:
    """Chunk, embed and store one item, then mark it ready.

    The item is written as ``pending`` first; any failure leaves it ``failed``
    so retrieval never sees a half-indexed item. Re-indexing an existing id
    replaces its title, categories, passages and vectors.
    """
    store.add_item(item.item_id, item.title, status=ItemStatus.PENDING, category_names=item.categories)
    chunks = chunk_text(item.text, chunk_tokens=chunk_tokens, overlap=overlap)
    if not chunks:
        store.set_status(item.item_id, ItemStatus.FAILED)
        raise RetrievalEngineError(f"Item {item.item_id} has no text to index.")

    try:
        vectors = embed_fn([_embedding_input(item.title, c) for c in chunks])
        if len(vectors) != len(chunks):
            raise BackendError(f"Embedding returned {len(vectors)} vectors for {len(chunks)} chunks.")
        store.add_passages(item.item_id, [(i, c, v) for i, (c, v) in enumerate(zip(chunks, vectors))])
        stored = [Passage(item_id=item.item_id, chunk_index=i, text=c, title=item.title) for i, c in enumerate(chunks)]
        if vector_index is not None:
            vector_index.delete_item(item.item_id)
            vector_index.upsert(list(zip(stored, vectors)))
    except RetrievalEngineError:
        store.set_status(item.item_id, ItemStatus.FAILED)
        raise
    except Exception as exc:  # noqa: BLE001
        store.set_status(item.item_id, ItemStatus.FAILED)
        raise BackendError(f"Indexing failed for item {item.item_id}.") from exc

    store.set_status(item.item_id, ItemStatus.READY)
    logger.info("Indexed item %s (%d passages)", item.item_id, len(stored))
    return stored


def index_items(
    store: CorpusStore,
    items: Iterable[CorpusItem],
    *,
    embed_fn: EmbedFn,
    vector_index: ChromaVectorIndex | None = None,
    chunk_tokens: int = 512,
    overlap: int = 100,
) -> dict[str, Any]:
    """Index many items; one failing item does not stop the rest."""
    indexed: list[str] = []
    failed: list[str] = []
    for item in items:
        try:
            index_item(
                store,
                item,
                embed_fn=embed_fn,
                vector_index=vector_index,
                chunk_tokens=chunk_tokens,
                overlap=overlap,
            )
            indexed.append(item.item_id)
        except RetrievalEngineError as exc:
            logger.warning("Skipping item %s: %s", item.item_id, exc)
            failed.append(item.item_id)
    return {"indexed": indexed, "failed": failed}


def _item_from_record(record: dict[str, Any], line_no: int) -> CorpusItem:
    try:
        item_id = str(record["id"]).strip()
        text = str(record["text"])
    except KeyError as exc:
        raise RetrievalEngineError(f"Line {line_no}: missing field {exc}") from exc
    cats = record.get("categories") or []
    if isinstance(cats, str):
        cats = [cats]
    return CorpusItem(
        item_id=item_id,
        title=str(record.get("title") or item_id),
        text=text,
        categories=tuple(str(c) for c in cats),
    )


def load_jsonl(jsonl_path: str | Path) -> list[CorpusItem]:
    """Read corpus items from JSONL: one {"id", "title", "text", "categories"} object per line."""
    path = Path(jsonl_path)
    if not path.exists():
        raise RetrievalEngineError(f"Corpus file not found: {jsonl_path}")
    items: list[CorpusItem] = []
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                raise RetrievalEngineError(f"Line {line_no}: invalid JSON ({exc.msg})") from exc
            items.append(_item_from_record(record, line_no))
    return items


def index_jsonl(
    store: CorpusStore,
    jsonl_path: str | Path,
    *,
    embed_fn: EmbedFn,
    vector_index: ChromaVectorIndex | None = None,
    chunk_tokens: int = 512,
    overlap: int = 100,
) -> dict[str, Any]:
    return index_items(
        store,
        load_jsonl(jsonl_path),
        embed_fn=embed_fn,
        vector_index=vector_index,
        chunk_tokens=chunk_tokens,
        overlap=overlap,
    )


def seed_vocabulary(store: CorpusStore, entries: Sequence[dict[str, Any]]) -> int:
    """Insert approved exercise vocabulary rows; returns the number added."""
    added = 0
    for entry in entries:
        store.add_approved_entity(
            str(entry["name"]),
            str(entry["muscle_group"]),
            equipment=entry.get("equipment"),
            is_recommended=bool(entry.get("is_recommended", False)),
            is_active=bool(entry.get("is_active", True)),
        )
        added += 1
    return added
