"""Compliance checks for generated answers.

Checks, in order:
1. Citation soundness: every [KB:<id>#<idx>] token must reference a passage
   that was actually rendered into the context for this answer.
2. Exercise vocabulary: exercise mentions must be approved for their inferred
   muscle group. A flagged mention gets a replacement suggestion only when a
   same-group approved exercise appears in the retrieved context.
3. Programming parameters: program-design answers must state rep range, set
   count and rest duration.

A failing verdict allows exactly one revision (revise_once).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from . import prompt_templates as PT
from .constants import (
    _EXERCISE_PRESENCE_RE,
    _KB_CITATION_RE,
    _REP_RANGE_RE,
    _REST_DURATION_RE,
    _SET_COUNT_RE,
)
from .helpers import detect_muscle_groups, extract_exercise_mentions, infer_exercise_group, normalize_text
from .prompt_builder import AssembledContext, build_prompt
from .types import (
    ApprovedEntity,
    BackendError,
    Candidate,
    EntityReplacement,
    ParameterKind,
    ValidationVerdict,
)

logger = logging.getLogger(__name__)

_PARAMETER_PATTERNS: tuple[tuple[ParameterKind, re.Pattern[str]], ...] = (
    (ParameterKind.REP_RANGE, _REP_RANGE_RE),
    (ParameterKind.SET_COUNT, _SET_COUNT_RE),
    (ParameterKind.REST_DURATION, _REST_DURATION_RE),
)

# generate_fn(prompt, history) -> text
GenerateFn = Callable[[str, Sequence[Any] | None], str]


@dataclass(frozen=True)
class ContractViolation:
    code: str
    message: str
    context: dict[str, Any]


# ---------------------------------------------------------------------------
# Citations
# ---------------------------------------------------------------------------


def extract_citations(answer_text: str) -> list[tuple[str, int]]:
    """Return unique (item_id, chunk_index) citations in order of appearance."""
    found: dict[tuple[str, int], None] = {}
    for m in _KB_CITATION_RE.finditer(str(answer_text or "")):
        try:
            found.setdefault((m.group(1), int(m.group(2))), None)
        except ValueError:
            continue
    return list(found)


def invalid_citations(
    citations: Iterable[tuple[str, int]],
    allowed: frozenset[tuple[str, int]],
) -> list[tuple[str, int]]:
    return [c for c in citations if c not in allowed]


# ---------------------------------------------------------------------------
# Programming parameters
# ---------------------------------------------------------------------------


def find_missing_parameters(answer_text: str) -> list[ParameterKind]:
    """Parameter kinds a program answer fails to state.

    An answer that names no exercise at all is not a program and misses nothing.
    """
    txt = str(answer_text or "")
    if not _EXERCISE_PRESENCE_RE.search(txt):
        return []
    return [kind for kind, pattern in _PARAMETER_PATTERNS if not pattern.search(txt)]


# ---------------------------------------------------------------------------
# Exercise vocabulary
# ---------------------------------------------------------------------------


def _contains_phrase(haystack: str, needle: str) -> bool:
    return bool(needle) and re.search(r"\b" + re.escape(needle) + r"(?:e?s)?\b", haystack) is not None


def _matches(mention: str, entity: ApprovedEntity) -> bool:
    name = normalize_text(entity.name)
    return mention == name or _contains_phrase(name, mention) or _contains_phrase(mention, name)


def is_approved(mention: str, group: str | None, vocabulary: Sequence[ApprovedEntity]) -> bool:
    """Exact vocabulary names are always approved; partial matches must share the muscle group."""
    if any(normalize_text(e.name) == mention for e in vocabulary):
        return True
    scoped = [e for e in vocabulary if group is None or e.muscle_group == group]
    return any(_matches(mention, e) for e in scoped)


def suggest_replacement(
    group: str | None,
    vocabulary: Sequence[ApprovedEntity],
    context_candidates: Sequence[Candidate],
) -> tuple[str, float] | None:
    """Highest-scoring same-group vocabulary entry that appears in the retrieved context."""
    if group is None:
        return None
    best: tuple[float, bool, str] | None = None
    best_name: str | None = None
    for entity in vocabulary:
        if entity.muscle_group != group:
            continue
        name = normalize_text(entity.name)
        scores = [c.score for c in context_candidates if _contains_phrase(normalize_text(c.passage.text), name)]
        if not scores:
            continue
        rank = (max(scores), entity.is_recommended, entity.name)
        # Higher score first, then recommended, then alphabetical.
        if best is None or (rank[0], rank[1]) > (best[0], best[1]) or (
            (rank[0], rank[1]) == (best[0], best[1]) and rank[2] < best[2]
        ):
            best = rank
            best_name = entity.name
    if best is None or best_name is None:
        return None
    return best_name, best[0]


def check_entities(
    answer_text: str,
    vocabulary: Sequence[ApprovedEntity],
    context_candidates: Sequence[Candidate],
    *,
    query: str = "",
) -> tuple[list[str], list[EntityReplacement]]:
    """Flag unapproved exercise mentions and propose context-backed replacements."""
    if not vocabulary:
        return [], []
    query_groups = detect_muscle_groups(query)
    mentions = extract_exercise_mentions(answer_text, [e.name for e in vocabulary])

    invalid: list[str] = []
    replacements: list[EntityReplacement] = []
    for mention in mentions:
        group = infer_exercise_group(mention) or (query_groups[0] if query_groups else None)
        if is_approved(mention, group, vocabulary):
            continue
        invalid.append(mention)
        suggestion = suggest_replacement(group, vocabulary, context_candidates)
        replacements.append(
            EntityReplacement(
                mention=mention,
                muscle_group=group,
                suggestion=suggestion[0] if suggestion else None,
                suggestion_score=suggestion[1] if suggestion else None,
            )
        )
    return invalid, replacements


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


def validate_answer(
    answer_text: str,
    context: AssembledContext,
    vocabulary: Sequence[ApprovedEntity] = (),
    *,
    program_design: bool = False,
    query: str = "",
) -> ValidationVerdict:
    citations = extract_citations(answer_text)
    bad_citations = invalid_citations(citations, context.citation_keys)
    invalid_entities, replacements = check_entities(answer_text, vocabulary, context.included, query=query)
    missing = find_missing_parameters(answer_text) if program_design else []

    verdict = ValidationVerdict(
        cited_source_ids=frozenset(item_id for item_id, _ in citations),
        missing_parameter_kinds=frozenset(missing),
        invalid_entity_mentions=frozenset(invalid_entities),
        passed=not bad_citations and not invalid_entities and not missing,
        invalid_citations=tuple(bad_citations),
        replacements=tuple(replacements),
        is_program_answer=program_design,
    )
    if not verdict.passed:
        logger.info(
            "Answer failed validation: %d invalid citations, %d invalid entities, missing=%s",
            len(bad_citations),
            len(invalid_entities),
            sorted(k.value for k in missing),
        )
    return verdict


def verdict_violations(verdict: ValidationVerdict) -> list[ContractViolation]:
    out: list[ContractViolation] = []
    for item_id, idx in verdict.invalid_citations:
        out.append(
            ContractViolation(
                code="CITATION_NOT_IN_CONTEXT",
                message=f"Cited passage {item_id}#{idx} was not supplied in the context.",
                context={"item_id": item_id, "chunk_index": idx},
            )
        )
    for rep in verdict.replacements:
        out.append(
            ContractViolation(
                code="UNAPPROVED_EXERCISE",
                message=f"Exercise '{rep.mention}' is not in the approved vocabulary.",
                context={"mention": rep.mention, "muscle_group": rep.muscle_group, "suggestion": rep.suggestion},
            )
        )
    for kind in sorted(verdict.missing_parameter_kinds, key=lambda k: k.value):
        out.append(
            ContractViolation(
                code="MISSING_PARAMETER",
                message=f"Program answer does not state {kind.value}.",
                context={"kind": kind.value},
            )
        )
    return out


# ---------------------------------------------------------------------------
# Revision
# ---------------------------------------------------------------------------


def _problem_lines(verdict: ValidationVerdict) -> list[str]:
    lines = [
        PT.MISSING_PARAMETER_PROBLEMS[kind.value]
        for kind in sorted(verdict.missing_parameter_kinds, key=lambda k: k.value)
    ]
    if verdict.invalid_citations:
        tokens = ", ".join(f"[KB:{i}#{n}]" for i, n in verdict.invalid_citations)
        lines.append(PT.INVALID_CITATION_PROBLEM.format(tokens=tokens))
    for rep in verdict.replacements:
        suggestion = f' such as "{rep.suggestion}"' if rep.suggestion else ""
        lines.append(PT.INVALID_ENTITY_PROBLEM.format(mention=rep.mention, suggestion=suggestion))
    return lines


def build_revision_prompt(answer_text: str, verdict: ValidationVerdict, question: str, context: AssembledContext) -> str:
    problems = "\n".join(_problem_lines(verdict))
    revision = PT.REVISION_INSTRUCTION.format(problems=problems, answer=answer_text.strip())
    return build_prompt(question, context) + "\n\n" + revision


def revise_once(
    answer_text: str,
    verdict: ValidationVerdict,
    *,
    question: str,
    context: AssembledContext,
    generate_fn: GenerateFn,
    vocabulary: Sequence[ApprovedEntity] = (),
) -> tuple[str, ValidationVerdict]:
    """One regeneration naming the failed checks, then re-validation.

    Returns the revision with its verdict if it fixes at least as much as it
    breaks; otherwise the original answer and verdict. Never retries.
    """
    if verdict.passed:
        return answer_text, verdict

    prompt = build_revision_prompt(answer_text, verdict, question, context)
    try:
        revised = str(generate_fn(prompt, list(context.history)) or "").strip()
    except BackendError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise BackendError("Revision generation failed.") from exc

    if not revised:
        logger.warning("Revision returned an empty answer; keeping the original")
        return answer_text, verdict

    new_verdict = validate_answer(
        revised,
        context,
        vocabulary,
        program_design=verdict.is_program_answer,
        query=question,
    )
    if len(verdict_violations(new_verdict)) > len(verdict_violations(verdict)):
        logger.warning("Revision made the answer worse; keeping the original")
        return answer_text, verdict
    return revised, new_verdict
