"""Query expansion: one user message -> several retrieval queries.

Variants, in output order:
1. direct        - the message verbatim
2. conversation  - continuation messages enriched with entities from recent turns
3. entity        - per recognized muscle group, with canonical synonyms
4. hyde          - a short hypothetical answer from the generator
5. parameter     - program requests with programming-parameter terms appended

The total is capped; when the cap bites, entity variants give way first.
Expansion only widens recall. Relevance is decided by the orchestrator.
"""

from __future__ import annotations

import logging
from typing import Callable

from .constants import MUSCLE_GROUP_SYNONYMS, PROGRAM_PARAMETER_SUFFIX
from .conversation import HistoryMessage, recent_entities
from .helpers import detect_muscle_groups, normalize_text
from .intent_router import classify_intent
from .types import BackendError, QueryIntent, QueryVariant, VariantKind

logger = logging.getLogger(__name__)

# generate_fn(prompt) -> text
HydeFn = Callable[[str], str]

_HYDE_PROMPT = (
    "Write a short passage (3-4 sentences) from an evidence-based strength training "
    "and hypertrophy guide that directly answers the question below. Use concrete "
    "training terminology. Do not address the reader.\n\n"
    "QUESTION: {query}\n\n"
    "PASSAGE:"
)

_HYDE_MAX_CHARS = 1200


def _entity_variants(group: str) -> list[str]:
    synonyms = " ".join(MUSCLE_GROUP_SYNONYMS.get(group, ()))
    head = f"{group} {synonyms}".strip()
    return [
        f"{head} training hypertrophy exercises",
        f"{group} workout programming guidelines",
        f"how to train {group} for muscle growth",
    ]


def hyde_template(query: str) -> str:
    """Deterministic stand-in used when no generator is configured or it returns nothing."""
    groups = detect_muscle_groups(query)
    focus = ", ".join(groups) if groups else "the trained muscles"
    return (
        f"{query.strip()} For muscle growth, train {focus} with exercises through a full range "
        f"of motion, using moderate rep ranges, sufficient weekly sets and adequate rest periods "
        f"between sets, progressing load over time."
    )


def generate_hypothetical_answer(query: str, hyde_fn: HydeFn | None) -> str:
    if hyde_fn is None:
        return hyde_template(query)
    try:
        text = str(hyde_fn(_HYDE_PROMPT.format(query=query.strip())) or "").strip()
    except BackendError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise BackendError("HyDE generation failed.") from exc
    if not text:
        logger.warning("HyDE generation returned nothing; using template passage")
        return hyde_template(query)
    return text[:_HYDE_MAX_CHARS]


def expand(
    original_query: str,
    recent_conversation: list[HistoryMessage] | None = None,
    *,
    intent: QueryIntent | None = None,
    hyde_fn: HydeFn | None = None,
    max_variants: int = 8,
) -> list[QueryVariant]:
    """Expand a message into at most max_variants distinct retrieval queries."""
    query = str(original_query or "").strip()
    if not query:
        return []
    max_variants = max(1, int(max_variants))
    if intent is None:
        intent = classify_intent(query, recent_conversation)

    direct = QueryVariant(query, VariantKind.DIRECT)

    conversation: list[QueryVariant] = []
    groups = detect_muscle_groups(query)
    if intent == QueryIntent.CONTINUATION:
        entities = recent_entities(recent_conversation)
        if entities:
            conversation.append(QueryVariant(f"{query} {' '.join(entities[:4])}", VariantKind.CONVERSATION))
        for g in detect_muscle_groups(" ".join(entities)):
            if g not in groups:
                groups.append(g)

    hyde = [QueryVariant(generate_hypothetical_answer(query, hyde_fn), VariantKind.HYDE)]

    parameter: list[QueryVariant] = []
    if intent == QueryIntent.PROGRAM_REQUEST:
        parameter.append(QueryVariant(f"{query} {PROGRAM_PARAMETER_SUFFIX}", VariantKind.PARAMETER))

    entity = [QueryVariant(text, VariantKind.ENTITY) for g in groups for text in _entity_variants(g)]

    # Fixed variants keep their slots; entity variants fill what is left.
    fixed = [direct] + conversation + hyde + parameter
    entity_slots = max(0, max_variants - len(fixed))
    ordered = [direct] + conversation + entity[:entity_slots] + hyde + parameter

    out: list[QueryVariant] = []
    seen: set[str] = set()
    for v in ordered:
        key = normalize_text(v.text)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(v)
    return out[:max_variants]
