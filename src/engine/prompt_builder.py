"""Context assembly for answer generation.

Turns retrieved candidates into a token-budgeted prompt:
- Foundational-principle passages first, then query-specific passages
- Machine-citable passage blocks ([KB:<id>#<idx>] tokens)
- Conversation history trimmed to its share of the budget
- Explicit markers when retrieval found nothing

Single Responsibility: Build LLM prompts and context from selected passages.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, List, Sequence

import tiktoken

from ..common.config_loader import ContextSettings
from . import prompt_templates as PT
from .conversation import HistoryMessage, format_history_for_prompt
from .types import ApprovedEntity, Candidate

logger = logging.getLogger(__name__)

MARKER_NO_GROUNDING = "no_grounding"
MARKER_CONTINUATION = "continuation"


@functools.lru_cache(maxsize=1)
def _encoding():
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return len(_encoding().encode(text))


@dataclass(frozen=True)
class TokenBudget:
    instructions: int
    context: int
    history: int

    @classmethod
    def split(cls, total: int, *, instructions_share: float = 0.3, context_share: float = 0.5, history_share: float = 0.2) -> TokenBudget:
        return cls(
            instructions=int(total * instructions_share),
            context=int(total * context_share),
            history=int(total * history_share),
        )

    @classmethod
    def from_settings(cls, settings: ContextSettings, total: int | None = None) -> TokenBudget:
        return cls.split(
            int(total if total is not None else settings.token_budget),
            instructions_share=settings.instructions_share,
            context_share=settings.context_share,
            history_share=settings.history_share,
        )


@dataclass(frozen=True)
class AssembledContext:
    """Result of context assembly.

    ``included`` lists the passages actually rendered, in prompt order; it is
    the ground truth for citation validation.
    """
    context_block: str
    instructions: str
    history: tuple[HistoryMessage, ...]
    included: tuple[Candidate, ...]
    marker: str | None = None
    token_counts: dict[str, int] = field(default_factory=dict)

    @property
    def citation_keys(self) -> frozenset[tuple[str, int]]:
        return frozenset(c.key for c in self.included)

    @property
    def citations_available(self) -> tuple[str, ...]:
        return tuple(citation_token(c) for c in self.included)

    @property
    def source_ids(self) -> frozenset[str]:
        return frozenset(c.source_item_id for c in self.included)


def citation_token(c: Candidate) -> str:
    return PT.CITATION_TOKEN.format(item_id=c.passage.item_id, chunk_index=c.passage.chunk_index)


def render_passage(c: Candidate) -> str:
    title = (c.source_title or "").replace('"', "'")
    return PT.PASSAGE_BLOCK.format(
        item_id=c.passage.item_id,
        chunk_index=c.passage.chunk_index,
        title=title,
        text=c.passage.text.strip(),
    )


def _sandwich_order(items: List[Any]) -> List[Any]:
    """Reorder items to place most relevant at start and end (attention optimization).

    Input:  [1, 2, 3, 4, 5, 6, 7, 8] (sorted by relevance, highest first)
    Output: [1, 3, 5, 7, 8, 6, 4, 2]
    """
    if len(items) <= 3:
        return list(items)

    result: List[Any] = []
    for i in range(0, len(items), 2):
        result.append(items[i])
    for i in range(len(items) - 1 if len(items) % 2 == 0 else len(items) - 2, 0, -2):
        result.append(items[i])

    return result


def render_vocabulary(vocabulary: Sequence[ApprovedEntity], budget: int | None = None) -> str:
    """Approved exercises grouped by muscle group, recommended entries first and starred.

    Whole group lines are dropped once ``budget`` tokens are used up.
    """
    groups: dict[str, list[ApprovedEntity]] = {}
    for entity in vocabulary:
        groups.setdefault(entity.muscle_group, []).append(entity)
    if not groups:
        return ""

    lines = [PT.APPROVED_EXERCISES_HEADER]
    used = count_tokens(PT.APPROVED_EXERCISES_HEADER)
    dropped = 0
    for group in sorted(groups):
        ordered = sorted(groups[group], key=lambda e: (not e.is_recommended, e.name.lower()))
        names = ", ".join(f"{e.name}*" if e.is_recommended else e.name for e in ordered)
        line = PT.APPROVED_GROUP_LINE.format(group=group, names=names)
        cost = count_tokens(line)
        if budget is not None and used + cost > budget:
            dropped += 1
            continue
        used += cost
        lines.append(line)
    if dropped:
        logger.warning("Approved exercise list over budget: dropped %d muscle groups", dropped)
    if len(lines) == 1:
        return ""
    return "\n".join(lines)


def _trim_history(
    history: Sequence[HistoryMessage] | None, budget: int
) -> tuple[tuple[HistoryMessage, ...], int]:
    """Drop the oldest messages until the formatted history fits the budget."""
    msgs = list(history or [])
    while msgs:
        tokens = count_tokens(format_history_for_prompt(msgs))
        if tokens <= budget:
            return tuple(msgs), tokens
        msgs = msgs[1:]
    return (), 0


def assemble(
    candidates: Sequence[Candidate],
    conversation_is_continuation: bool,
    token_budget: TokenBudget,
    *,
    foundational: Sequence[Candidate] = (),
    history: Sequence[HistoryMessage] | None = None,
    positioning: str = "relevance",
    vocabulary: Sequence[ApprovedEntity] = (),
) -> AssembledContext:
    """Assemble the knowledge-base context block for one answer.

    Foundational passages go first (minus any already in ``candidates``).
    Passages that do not fit the context budget are skipped. When no
    query-specific passage survives, the block carries the no-grounding
    marker, or the continuation marker for a continuation message. The approved
    exercise list is appended to the instructions within their token share.
    """
    specific_keys = {c.key for c in candidates}
    found = [c for c in dict((c.key, c) for c in foundational).values() if c.key not in specific_keys]
    specific = list(candidates)
    if positioning == "sandwich":
        specific = _sandwich_order(specific)

    used = count_tokens(PT.KNOWLEDGE_BASE_HEADER)
    included: list[Candidate] = []
    blocks: list[str] = []
    skipped = 0
    for c in found + specific:
        block = render_passage(c)
        cost = count_tokens(block)
        if used + cost > token_budget.context:
            skipped += 1
            continue
        used += cost
        included.append(c)
        blocks.append(block)
    if skipped:
        logger.debug("Context budget %d tokens: skipped %d passages", token_budget.context, skipped)

    marker: str | None = None
    marker_text = ""
    if not any(c.key in specific_keys for c in included):
        marker = MARKER_CONTINUATION if conversation_is_continuation else MARKER_NO_GROUNDING
        marker_text = PT.CONTINUATION_MARKER if conversation_is_continuation else PT.NO_GROUNDING_MARKER
        used += count_tokens(marker_text)

    parts = [PT.KNOWLEDGE_BASE_HEADER] + blocks
    if marker_text:
        parts.append(marker_text)
    context_block = "\n\n".join(parts)

    instructions = PT.GROUNDING_RULES
    vocabulary_block = render_vocabulary(
        vocabulary, max(0, token_budget.instructions - count_tokens(instructions))
    )
    if vocabulary_block:
        instructions = f"{instructions.rstrip()}\n\n{vocabulary_block}\n"
    instruction_tokens = count_tokens(instructions)
    if instruction_tokens > token_budget.instructions:
        logger.warning(
            "Instructions use %d tokens, above their %d token share",
            instruction_tokens,
            token_budget.instructions,
        )

    kept_history, history_tokens = _trim_history(history, token_budget.history)

    return AssembledContext(
        context_block=context_block,
        instructions=instructions,
        history=kept_history,
        included=tuple(included),
        marker=marker,
        token_counts={
            "instructions": instruction_tokens,
            "context": used,
            "history": history_tokens,
        },
    )


def build_prompt(question: str, assembled: AssembledContext) -> str:
    """Generation prompt: rules, knowledge base, question.

    History is not inlined; it travels to the generator as prior turns
    (``assembled.history``).
    """
    sections = [assembled.instructions.rstrip()]
    sections.append(assembled.context_block)
    sections.append(PT.QUESTION_SECTION.format(question=question.strip()))
    return "\n\n".join(sections)
