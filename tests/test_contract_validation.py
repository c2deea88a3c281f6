"""Tests for src/engine/contract_validation.py - answer compliance checks and revision."""

import pytest

from src.engine.contract_validation import (
    check_entities,
    extract_citations,
    find_missing_parameters,
    is_approved,
    revise_once,
    suggest_replacement,
    validate_answer,
    verdict_violations,
)
from src.engine.prompt_builder import TokenBudget, assemble
from src.engine.types import ApprovedEntity, BackendError, Candidate, ParameterKind, Passage, SearchState

VOCAB = (
    ApprovedEntity("Barbell Bench Press", "chest", equipment="barbell", is_recommended=True),
    ApprovedEntity("Dumbbell Fly", "chest", equipment="dumbbell"),
    ApprovedEntity("Cable Crossover", "chest", equipment="cable"),
    ApprovedEntity("Barbell Row", "back", equipment="barbell"),
)

PROGRAM_ANSWER_NO_REST = "Squat: 3 sets of 8-12 reps [KB:a#0]."
PROGRAM_ANSWER_COMPLETE = "Squat: 3 sets of 8-12 reps, rest 2-3 minutes [KB:a#0]."


def _c(item_id, idx, score, text):
    return Candidate(passage=Passage(item_id=item_id, chunk_index=idx, text=text, title=item_id), score=score, strategy=SearchState.BROAD)


CHEST_CONTEXT = (
    _c("a", 0, 0.8, "Cable crossover builds the inner chest."),
    _c("b", 0, 0.6, "Dumbbell fly stretches the pecs under load."),
    _c("c", 0, 0.9, "Barbell row for back thickness."),
)


def _context(cands=None):
    return assemble(list(cands if cands is not None else [_c("a", 0, 0.8, "Squats build legs.")]), False, TokenBudget.split(6000))


# =============================================================================
# Citations
# =============================================================================


class TestCitations:
    def test_extract_unique_in_order(self):
        """Tokens are parsed once each, in order of appearance."""
        text = "Rest [KB:rest-guide#2] and eat [KB:food#0]. Again [KB:rest-guide#2]."
        assert extract_citations(text) == [("rest-guide", 2), ("food", 0)]

    def test_malformed_tokens_ignored(self):
        """Only well-formed tokens count."""
        assert extract_citations("[KB:a#x] [KB:#1] [KB:a 1#2] [kb:a#1]") == []

    def test_citation_outside_context_fails(self):
        """Citing a passage that was not supplied fails validation."""
        verdict = validate_answer("Rest well [KB:a#0] [KB:ghost#2].", _context())
        assert not verdict.passed
        assert verdict.invalid_citations == (("ghost", 2),)
        assert verdict.cited_source_ids == {"a", "ghost"}

    def test_sound_citations_pass(self):
        """Citing only supplied passages passes."""
        verdict = validate_answer("Squats build legs [KB:a#0].", _context())
        assert verdict.passed
        assert verdict.invalid_citations == ()

    def test_right_item_wrong_chunk_fails(self):
        """Citation soundness is per passage, not per item."""
        verdict = validate_answer("Squats [KB:a#7].", _context())
        assert verdict.invalid_citations == (("a", 7),)


# =============================================================================
# Programming parameters
# =============================================================================


class TestMissingParameters:
    def test_missing_rest(self):
        """Sets and reps without a rest period flags only rest."""
        assert find_missing_parameters(PROGRAM_ANSWER_NO_REST) == [ParameterKind.REST_DURATION]

    def test_complete(self):
        """All three parameters present."""
        assert find_missing_parameters(PROGRAM_ANSWER_COMPLETE) == []

    def test_no_exercise_no_requirement(self):
        """Text that names no exercise is not held to program rules."""
        assert find_missing_parameters("Eat enough protein and sleep well.") == []

    def test_only_checked_for_program_answers(self):
        """Non-program answers are not flagged for missing parameters."""
        assert validate_answer(PROGRAM_ANSWER_NO_REST, _context()).passed
        verdict = validate_answer(PROGRAM_ANSWER_NO_REST, _context(), program_design=True)
        assert not verdict.passed
        assert verdict.missing_parameter_kinds == {ParameterKind.REST_DURATION}
        assert verdict.is_program_answer


# =============================================================================
# Exercise vocabulary
# =============================================================================


class TestVocabulary:
    def test_exact_name_approved(self):
        """A vocabulary name is approved."""
        invalid, _ = check_entities("Do barbell bench press.", VOCAB, CHEST_CONTEXT)
        assert invalid == []

    def test_plural_names_approved(self):
        """Plural forms of approved names are not flagged."""
        invalid, replacements = check_entities(
            "Do barbell bench presses and barbell rows for 3 sets of 10 reps.", VOCAB, CHEST_CONTEXT
        )
        assert invalid == []
        assert replacements == []

    def test_variant_of_same_group_name_approved(self):
        """A longer phrase containing an approved same-group name is approved."""
        assert is_approved("incline barbell bench press", "chest", VOCAB)

    def test_partial_match_other_group_rejected(self):
        """Partial matches only count inside the inferred muscle group."""
        assert not is_approved("pendlay barbell row", "chest", VOCAB)
        assert is_approved("pendlay barbell row", "back", VOCAB)

    def test_unapproved_gets_best_context_replacement(self):
        """The replacement is the same-group entry in the context with the highest score."""
        invalid, replacements = check_entities("Finish with smith machine bench press.", VOCAB, CHEST_CONTEXT)
        assert invalid == ["smith machine bench press"]
        (rep,) = replacements
        assert rep.muscle_group == "chest"
        assert rep.suggestion == "Cable Crossover"
        assert rep.suggestion_score == pytest.approx(0.8)

    def test_recommended_entry_absent_from_context_not_suggested(self):
        """Entries that do not appear in the context are never suggested."""
        suggestion = suggest_replacement("chest", VOCAB, CHEST_CONTEXT)
        assert suggestion is not None and suggestion[0] != "Barbell Bench Press"

    def test_no_vocabulary_in_context(self):
        """Flagged without a suggestion when no same-group entry is in the context."""
        context = (_c("x", 0, 0.9, "Protein intake matters."),)
        invalid, replacements = check_entities("Try smith machine bench press.", VOCAB, context)
        assert invalid == ["smith machine bench press"]
        assert replacements[0].suggestion is None
        assert replacements[0].suggestion_score is None

    def test_tie_prefers_recommended_then_name(self):
        """Equal scores go to the recommended entry, then alphabetical."""
        context = (_c("x", 0, 0.7, "Barbell bench press, dumbbell fly and cable crossover."),)
        assert suggest_replacement("chest", VOCAB, context) == ("Barbell Bench Press", pytest.approx(0.7))
        unrecommended = tuple(e for e in VOCAB if not e.is_recommended)
        assert suggest_replacement("chest", unrecommended, context)[0] == "Cable Crossover"

    def test_group_from_query_when_unknown(self):
        """A mention with no movement hint takes the query's muscle group."""
        invalid, replacements = check_entities(
            "Add the hammer strength machine press.", VOCAB, CHEST_CONTEXT, query="best chest exercises"
        )
        assert invalid == ["hammer strength machine press"]
        assert replacements[0].muscle_group == "chest"

    def test_empty_vocabulary_checks_nothing(self):
        """No vocabulary, no entity check."""
        assert check_entities("Try smith machine bench press.", (), CHEST_CONTEXT) == ([], [])

    def test_verdict_carries_replacements(self):
        """validate_answer reports unapproved mentions and their suggestions."""
        verdict = validate_answer("Do smith machine bench press [KB:a#0].", _context(CHEST_CONTEXT), VOCAB)
        assert not verdict.passed
        assert verdict.invalid_entity_mentions == {"smith machine bench press"}
        assert verdict.replacements[0].suggestion == "Cable Crossover"
        assert [v.code for v in verdict_violations(verdict)] == ["UNAPPROVED_EXERCISE"]


# =============================================================================
# Revision
# =============================================================================


class TestReviseOnce:
    def test_fixed_answer_replaces_original(self, fake_generator):
        """A revision that fixes the problems is returned with its verdict."""
        ctx = _context()
        verdict = validate_answer(PROGRAM_ANSWER_NO_REST, ctx, program_design=True)
        generate = fake_generator(PROGRAM_ANSWER_COMPLETE)
        answer, new_verdict = revise_once(
            PROGRAM_ANSWER_NO_REST, verdict, question="Design a leg day", context=ctx, generate_fn=generate
        )
        assert answer == PROGRAM_ANSWER_COMPLETE
        assert new_verdict.passed
        assert len(generate.prompts) == 1
        assert "rest period between sets" in generate.prompts[0]
        assert PROGRAM_ANSWER_NO_REST in generate.prompts[0]

    def test_worse_revision_discarded(self, fake_generator):
        """A revision with more violations than the original is dropped."""
        ctx = _context()
        verdict = validate_answer(PROGRAM_ANSWER_NO_REST, ctx, program_design=True)
        generate = fake_generator("Squat [KB:ghost#1] [KB:ghost#2].")
        answer, kept = revise_once(
            PROGRAM_ANSWER_NO_REST, verdict, question="Design a leg day", context=ctx, generate_fn=generate
        )
        assert answer == PROGRAM_ANSWER_NO_REST
        assert kept is verdict

    def test_empty_revision_keeps_original(self, fake_generator):
        """An empty regeneration is ignored."""
        ctx = _context()
        verdict = validate_answer(PROGRAM_ANSWER_NO_REST, ctx, program_design=True)
        answer, _ = revise_once(
            PROGRAM_ANSWER_NO_REST, verdict, question="q", context=ctx, generate_fn=fake_generator("   ")
        )
        assert answer == PROGRAM_ANSWER_NO_REST

    def test_passing_answer_not_revised(self, fake_generator):
        """A passing verdict makes no generation call."""
        ctx = _context()
        verdict = validate_answer("Squats build legs [KB:a#0].", ctx)
        generate = fake_generator()
        assert revise_once("Squats build legs [KB:a#0].", verdict, question="q", context=ctx, generate_fn=generate)[1] is verdict
        assert generate.prompts == []

    def test_generator_failure_wrapped(self):
        """Generator exceptions surface as BackendError."""
        ctx = _context()
        verdict = validate_answer("Bad [KB:ghost#0].", ctx)

        def boom(prompt, history):
            raise RuntimeError("connection reset")

        with pytest.raises(BackendError, match="Revision generation failed"):
            revise_once("Bad [KB:ghost#0].", verdict, question="q", context=ctx, generate_fn=boom)

    def test_revision_prompt_names_bad_citations(self, fake_generator):
        """Bad tokens are listed in the revision request."""
        ctx = _context()
        verdict = validate_answer("Bad [KB:ghost#0].", ctx)
        generate = fake_generator("Good [KB:a#0].")
        revise_once("Bad [KB:ghost#0].", verdict, question="q", context=ctx, generate_fn=generate)
        assert "[KB:ghost#0]" in generate.prompts[0].split("PREVIOUS ANSWER:")[0].split("fix the following problems")[1]
