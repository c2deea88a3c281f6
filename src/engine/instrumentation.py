import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .helpers import _truthy_env
from .types import QueryIntent, RetrievalResult

logger = logging.getLogger(__name__)

_DEFAULT_LOG_PATH = Path("runs") / "retrieval_log.jsonl"


def is_retrieval_log_enabled() -> bool:
    return _truthy_env("RAG_RETRIEVAL_LOG_ENABLED")


def quality_bucket(score: float) -> str:
    if score >= 0.7:
        return "high"
    if score >= 0.5:
        return "medium"
    return "low"


def summarize_result(result: RetrievalResult) -> dict[str, Any]:
    """Source distribution and score quality of a retrieval result."""
    distribution: dict[str, int] = {}
    buckets = {"high": 0, "medium": 0, "low": 0}
    for c in result.candidates:
        distribution[c.source_title or c.source_item_id] = distribution.get(c.source_title or c.source_item_id, 0) + 1
        buckets[quality_bucket(c.score)] += 1
    total = len(result.candidates)
    top_share = (max(distribution.values()) / total) if total else 0.0
    return {
        "total": total,
        "unique_sources": len(distribution),
        "source_distribution": distribution,
        "top_source_share": round(top_share, 3),
        "quality_buckets": buckets,
        "avg_score": round(sum(c.score for c in result.candidates) / total, 4) if total else 0.0,
        "states_visited": [s.value for s in result.states_visited],
        "state_counts": dict(result.state_counts),
    }


def log_retrieval_event(
    *,
    query: str,
    intent: QueryIntent,
    result: RetrievalResult,
    duration_ms: float,
) -> None:
    """Append a retrieval event to JSONL for offline analysis.

    Controlled by env:
    - RAG_RETRIEVAL_LOG_ENABLED=1
    - RAG_RETRIEVAL_LOG_MAX_CHARS=500 (optional: truncate query)
    - RAG_RETRIEVAL_LOG_PATH=path/to/file.jsonl (optional: override log path)
    """
    if not is_retrieval_log_enabled():
        return

    try:
        max_chars = int(os.getenv("RAG_RETRIEVAL_LOG_MAX_CHARS", "500") or 500)
        out_path = Path(os.getenv("RAG_RETRIEVAL_LOG_PATH", "") or _DEFAULT_LOG_PATH)
        out_path.parent.mkdir(parents=True, exist_ok=True)

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "query": str(query or "")[:max_chars],
            "intent": intent.value,
            "duration_ms": round(float(duration_ms), 1),
            **summarize_result(result),
        }
        with out_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")
    except OSError as exc:
        logger.warning("Could not write retrieval log: %s", exc)
