"""Tests for src/engine/rag.py - the RetrievalEngine facade end to end."""

import pytest

from src.common.config_loader import ContextSettings, Settings
from src.engine.conversation import HistoryMessage
from src.engine.prompt_builder import MARKER_CONTINUATION, MARKER_NO_GROUNDING, build_prompt
from src.engine.rag import RetrievalEngine
from src.engine.retrieval import RetrievalLimits
from src.engine.types import BackendError, QueryIntent, SearchState

EXERCISE_TURN = [
    HistoryMessage(role="user", content="Give me a chest workout"),
    HistoryMessage(role="assistant", content="Do incline dumbbell press for 3 sets of 10 reps."),
]


@pytest.fixture
def rest_corpus(seed):
    seed("rest", "Rest Periods", ["Rest two to three minutes between sets."], categories=("hypertrophy_principles",))
    seed("protein", "Protein Basics", ["Eat protein with every meal."])


# =============================================================================
# retrieve
# =============================================================================


class TestRetrieve:
    def test_continuation_with_empty_result(self, make_engine):
        """'continue' after an exercise turn gets the continuation marker, not the no-knowledge one."""
        response = make_engine().retrieve("continue", EXERCISE_TURN)
        assert response.intent == QueryIntent.CONTINUATION
        assert len(response.result) == 0
        assert response.assembled.marker == MARKER_CONTINUATION
        assert "<continuation_context>" in response.context_block
        assert "<no_grounding>" not in response.context_block

    def test_empty_result_without_history(self, make_engine):
        """The same message with no conversation claims no knowledge-base grounding."""
        response = make_engine().retrieve("continue")
        assert response.assembled.marker == MARKER_NO_GROUNDING

    def test_grounded_context(self, make_engine, rest_corpus):
        """Retrieved passages are rendered as citable blocks."""
        response = make_engine().retrieve("How long should I rest between sets?")
        assert "[KB:rest#0]" in response.citations_available
        assert "id=rest idx=0" in response.context_block
        assert response.assembled.marker is None
        assert SearchState.PARAMETER in response.result.states_visited

    def test_foundational_passages_lead(self, make_engine, seed, rest_corpus):
        """Foundational principles are placed before query-specific passages."""
        seed("found", "Progressive Overload", ["Add load or reps over time."], categories=("foundational_principles",))
        response = make_engine().retrieve("How long should I rest between sets?")
        assert response.assembled.included[0].source_item_id == "found"
        assert response.assembled.included[0].strategy == SearchState.FOUNDATIONAL
        assert "[KB:rest#0]" in response.citations_available

    def test_approved_exercises_in_prompt(self, make_engine, store, rest_corpus):
        """Seeded approved exercises are rendered into the generation prompt."""
        store.add_approved_entity("Cable Crossover", "chest", equipment="cable")
        response = make_engine().retrieve("chest workout program")
        assert "- chest: Cable Crossover" in build_prompt("chest workout program", response.assembled)

    def test_history_truncated(self, make_engine, rest_corpus):
        """Only the configured number of recent messages is kept."""
        settings = Settings(context=ContextSettings(max_history_messages=2))
        history = [HistoryMessage(role="user", content=f"turn {i}") for i in range(5)]
        response = make_engine(settings=settings).retrieve("protein per meal", history)
        assert [m.content for m in response.assembled.history] == ["turn 3", "turn 4"]

    def test_limits_forwarded(self, make_engine, seed):
        """Caller limits bound the number of passages."""
        seed("a", "Squat Notes", [f"squat note {i}" for i in range(8)])
        response = make_engine().retrieve("squat", limits=RetrievalLimits(max_chunks=3))
        assert len(response.result) == 3


# =============================================================================
# answer
# =============================================================================


class TestAnswer:
    def test_valid_answer_not_revised(self, make_engine, fake_generator, rest_corpus):
        """A compliant answer is returned as generated."""
        generate = fake_generator("Rest 2-3 minutes between sets [KB:rest#0].")
        result = make_engine(generate_fn=generate).answer("How long should I rest between sets?")
        assert result.verdict.passed
        assert not result.revised
        assert result.answer == "Rest 2-3 minutes between sets [KB:rest#0]."
        assert "[KB:rest#0]" in result.citations
        assert "KNOWLEDGE BASE:" in generate.prompts[0]

    def test_program_answer_revised_once(self, make_engine, fake_generator, seed):
        """A program answer missing rest periods is regenerated exactly once."""
        seed(
            "legs",
            "Leg Training",
            ["Legs program: squat and leg press build the quads with enough sets."],
            categories=("hypertrophy_programs",),
        )
        generate = fake_generator(
            "Squat: 3 sets of 8-12 reps [KB:legs#0].",
            "Squat: 3 sets of 8-12 reps, rest 2-3 minutes [KB:legs#0].",
        )
        result = make_engine(generate_fn=generate).answer("Create a program for legs")
        assert result.response.intent == QueryIntent.PROGRAM_REQUEST
        assert result.revised
        assert result.verdict.passed
        assert len(generate.prompts) == 2
        assert "State the rest period" in generate.prompts[1]

    def test_revision_disabled(self, make_engine, fake_generator, seed):
        """With max_revisions=0 a failing answer is returned unchanged."""
        seed("legs", "Leg Training", ["Legs program with squat sets."], categories=("hypertrophy_programs",))
        generate = fake_generator("Squat: 3 sets of 8-12 reps [KB:legs#0].")
        engine = make_engine(settings=Settings(max_revisions=0), generate_fn=generate)
        result = engine.answer("Create a program for legs")
        assert not result.verdict.passed
        assert not result.revised
        assert len(generate.prompts) == 1

    def test_unapproved_exercise_replaced_from_context(self, make_engine, fake_generator, seed, store):
        """The revision request suggests the approved exercise found in the context."""
        store.add_approved_entity("Cable Crossover", "chest", equipment="cable")
        store.add_approved_entity("Barbell Bench Press", "chest", is_recommended=True)
        seed("chest", "Chest Training Guide", ["Cable crossover builds the inner chest."])
        generate = fake_generator(
            "Do smith machine bench press [KB:chest#0].",
            "Do cable crossover [KB:chest#0].",
        )
        result = make_engine(generate_fn=generate).answer("best chest exercises")
        assert 'such as "Cable Crossover"' in generate.prompts[1]
        assert result.answer == "Do cable crossover [KB:chest#0]."
        assert result.verdict.passed

    def test_history_sent_as_prior_turns(self, make_engine, fake_generator, rest_corpus):
        """Generation receives the kept history separately from the prompt."""
        generate = fake_generator("Rest 2-3 minutes [KB:rest#0].")
        make_engine(generate_fn=generate).answer("How long should I rest between sets?", EXERCISE_TURN)
        assert generate.histories[0] == EXERCISE_TURN
        assert "incline dumbbell press" not in generate.prompts[0]

    def test_no_generator(self, make_engine):
        """Answering needs a generator."""
        with pytest.raises(BackendError, match="No answer generator"):
            make_engine().answer("anything")

    def test_generator_failure_wrapped(self, make_engine, rest_corpus):
        """Generator exceptions surface as BackendError."""

        def boom(prompt, history):
            raise ConnectionError("reset by peer")

        with pytest.raises(BackendError, match="Answer generation failed"):
            make_engine(generate_fn=boom).answer("How long should I rest between sets?")


# =============================================================================
# from_settings
# =============================================================================


class TestFromSettings:
    def test_wires_injected_collaborators(self, store, embedder, fake_generator, monkeypatch):
        """Injected store and functions are used; performance settings come from config."""
        monkeypatch.setenv("RAG_RETRIEVAL_TIMEOUT_SECS", "4.5")
        monkeypatch.setenv("RAG_MAX_RETRIEVAL_WORKERS", "2")
        engine = RetrievalEngine.from_settings(
            Settings(),
            embed_fn=embedder,
            generate_fn=fake_generator(),
            hyde_fn=lambda prompt: "hypothetical",
            store=store,
            use_native_index=False,
        )
        assert engine.store is store
        assert engine.orchestrator.timeout_secs == 4.5
        assert engine.orchestrator.max_workers == 2
        assert engine.orchestrator.embed_fn is embedder
