from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from ..common.config_loader import Settings, load_settings
from ..engine.conversation import HistoryMessage
from ..engine.instrumentation import summarize_result
from ..engine.rag import RetrievalEngine, RetrievalResponse
from ..engine.retrieval import RetrievalLimits


@dataclass(frozen=True)
class AskResult:
    answer: str
    references: list[str]
    validation: dict[str, Any]
    retrieval_metrics: dict[str, Any]


@dataclass(frozen=True)
class RetrievalOnlyResult:
    """Result from retrieval-only mode (no LLM generation)."""
    context_block: str
    citations_available: list[str]
    intent: str
    marker: str | None
    retrieval_metrics: dict[str, Any]


def build_engine(*, settings: Settings | None = None) -> RetrievalEngine:
    return RetrievalEngine.from_settings(settings or load_settings())


def coerce_history(history: Sequence[HistoryMessage | Mapping[str, Any]] | None) -> list[HistoryMessage]:
    """Accept HistoryMessage objects or {"role", "content"} dicts from the chat layer."""
    out: list[HistoryMessage] = []
    for msg in history or []:
        if isinstance(msg, HistoryMessage):
            out.append(msg)
            continue
        content = str(msg.get("content") or "").strip()
        if not content:
            continue
        role = "assistant" if str(msg.get("role") or "").lower() == "assistant" else "user"
        out.append(HistoryMessage(role=role, content=content))
    return out


def _retrieval_metrics(response: RetrievalResponse) -> dict[str, Any]:
    return {
        "intent": response.intent.value,
        "marker": response.assembled.marker,
        "token_counts": dict(response.assembled.token_counts),
        "included": len(response.assembled.included),
        **summarize_result(response.result),
    }


def ask(
    *,
    question: str,
    history: Sequence[HistoryMessage | Mapping[str, Any]] | None = None,
    max_chunks: int | None = None,
    max_per_source: int | None = None,
    engine: Optional[RetrievalEngine] = None,
    settings: Settings | None = None,
) -> AskResult:
    """Answer a coaching question with knowledge-base citations.

    Args:
        history: Prior chat turns, oldest first (optional).
        max_chunks: Override the configured number of retrieved passages.
        max_per_source: Override the configured per-source cap.
    """
    resolved_engine = engine or build_engine(settings=settings)
    result = resolved_engine.answer(
        question,
        coerce_history(history),
        RetrievalLimits(max_chunks=max_chunks, max_per_source=max_per_source),
    )
    verdict = result.verdict
    return AskResult(
        answer=result.answer,
        references=list(result.citations),
        validation={
            "passed": verdict.passed,
            "revised": result.revised,
            "cited_source_ids": sorted(verdict.cited_source_ids),
            "invalid_citations": [f"{i}#{n}" for i, n in verdict.invalid_citations],
            "invalid_entities": sorted(verdict.invalid_entity_mentions),
            "missing_parameters": sorted(k.value for k in verdict.missing_parameter_kinds),
            "replacements": [
                {"mention": r.mention, "muscle_group": r.muscle_group, "suggestion": r.suggestion}
                for r in verdict.replacements
            ],
        },
        retrieval_metrics=_retrieval_metrics(result.response),
    )


def retrieve_only(
    *,
    question: str,
    history: Sequence[HistoryMessage | Mapping[str, Any]] | None = None,
    max_chunks: int | None = None,
    engine: Optional[RetrievalEngine] = None,
    settings: Settings | None = None,
) -> RetrievalOnlyResult:
    """Run retrieval and context assembly without calling the generator."""
    resolved_engine = engine or build_engine(settings=settings)
    response = resolved_engine.retrieve(question, coerce_history(history), RetrievalLimits(max_chunks=max_chunks))
    return RetrievalOnlyResult(
        context_block=response.context_block,
        citations_available=list(response.citations_available),
        intent=response.intent.value,
        marker=response.assembled.marker,
        retrieval_metrics=_retrieval_metrics(response),
    )
