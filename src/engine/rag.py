"""RetrievalEngine: the single entry point the chat layer talks to.

retrieve() -> grounded, citable context for one message
validate() -> compliance verdict for a generated answer
revise_once() -> at most one corrective regeneration
answer() -> retrieve, generate, validate and (once) revise

All collaborators are injected; ``from_settings`` wires the production ones.
The engine holds no per-request state, so one instance serves concurrent
requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ..common.config_loader import Settings, get_performance_settings, load_settings
from .contract_validation import GenerateFn, revise_once, validate_answer
from .conversation import HistoryMessage, truncate_history
from .intent_router import classify_intent
from .lexical import LexicalSearch
from .prompt_builder import AssembledContext, TokenBudget, assemble, build_prompt
from .query_expansion import HydeFn
from .retrieval import EmbedFn, RetrievalLimits, RetrievalOrchestrator
from .similarity import ChromaVectorIndex, CosineScanBackend, FailoverSimilarityBackend, SimilarityBackend
from .store import CorpusStore
from .types import (
    ApprovedEntity,
    BackendError,
    Candidate,
    QueryIntent,
    RetrievalResult,
    SearchState,
    ValidationVerdict,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalResponse:
    """Everything generation and validation need for one message."""

    query: str
    intent: QueryIntent
    result: RetrievalResult
    assembled: AssembledContext

    @property
    def context_block(self) -> str:
        return self.assembled.context_block

    @property
    def citations_available(self) -> tuple[str, ...]:
        return self.assembled.citations_available


@dataclass(frozen=True)
class AnswerResult:
    answer: str
    verdict: ValidationVerdict
    revised: bool
    response: RetrievalResponse

    @property
    def citations(self) -> tuple[str, ...]:
        return self.response.citations_available


class RetrievalEngine:
    def __init__(
        self,
        *,
        settings: Settings,
        store: CorpusStore,
        similarity: SimilarityBackend,
        embed_fn: EmbedFn,
        generate_fn: GenerateFn | None = None,
        hyde_fn: HydeFn | None = None,
        max_workers: int = 8,
        timeout_secs: float | None = None,
    ):
        self.settings = settings
        self.store = store
        self.generate_fn = generate_fn
        self.orchestrator = RetrievalOrchestrator(
            lexical=LexicalSearch(store, title_score=settings.retrieval.title_match_score),
            similarity=similarity,
            embed_fn=embed_fn,
            settings=settings.retrieval,
            hyde_fn=hyde_fn,
            max_workers=max_workers,
            timeout_secs=timeout_secs,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        embed_fn: EmbedFn | None = None,
        generate_fn: GenerateFn | None = None,
        hyde_fn: HydeFn | None = None,
        store: CorpusStore | None = None,
        vector_index: ChromaVectorIndex | None = None,
        use_native_index: bool = True,
    ) -> RetrievalEngine:
        """Wire the production engine: SQL store, Chroma index with cosine-scan failover, OpenAI."""
        from .llm_client import call_llm, embed_texts

        s = settings or load_settings()
        store = store or CorpusStore.from_url(s.database_url)
        if vector_index is None and use_native_index:
            try:
                vector_index = ChromaVectorIndex.open(s.vector_store_path, s.collection_name, store)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Native vector index unavailable (%s); using cosine scan only", exc)
                vector_index = None
        similarity = FailoverSimilarityBackend(vector_index, CosineScanBackend(store, s.retrieval.scan_batch_size))

        def _generate(prompt: str, history: Sequence[HistoryMessage] | None) -> str:
            return call_llm(prompt, history, model=s.chat_model, temperature=s.temperature)

        def _hyde(prompt: str) -> str:
            return call_llm(prompt, model=s.chat_model, temperature=s.temperature)

        perf = get_performance_settings()
        return cls(
            settings=s,
            store=store,
            similarity=similarity,
            embed_fn=embed_fn or (lambda texts: embed_texts(texts, model=s.embedding_model)),
            generate_fn=generate_fn or _generate,
            hyde_fn=hyde_fn if hyde_fn is not None else _hyde,
            max_workers=int(perf["max_retrieval_workers"]),
            timeout_secs=float(perf["retrieval_timeout_secs"]),
        )

    # -----------------------------------------------------------------------
    # Retrieval
    # -----------------------------------------------------------------------

    def foundational_candidates(self) -> list[Candidate]:
        r = self.settings.retrieval
        if not r.foundational_category or r.max_foundational <= 0:
            return []
        return [
            Candidate(passage=p, score=0.0, strategy=SearchState.FOUNDATIONAL)
            for p in self.store.passages_in_categories([r.foundational_category], limit=r.max_foundational)
        ]

    def retrieve(
        self,
        query: str,
        history: Sequence[HistoryMessage] | None = None,
        limits: RetrievalLimits | None = None,
    ) -> RetrievalResponse:
        """Retrieve and assemble grounded context for one user message.

        Raises BackendError only for transient embedding/store failures; an
        empty result is returned as context carrying a marker.
        """
        ctx = self.settings.context
        recent = truncate_history(list(history or []), ctx.max_history_messages)
        intent = classify_intent(query, recent)
        result = self.orchestrator.retrieve(query, recent, limits)
        assembled = assemble(
            result.candidates,
            intent == QueryIntent.CONTINUATION,
            TokenBudget.from_settings(ctx),
            foundational=self.foundational_candidates(),
            history=recent,
            positioning=ctx.context_positioning,
            vocabulary=self.vocabulary(),
        )
        return RetrievalResponse(query=query, intent=intent, result=result, assembled=assembled)

    # -----------------------------------------------------------------------
    # Compliance
    # -----------------------------------------------------------------------

    def vocabulary(self) -> list[ApprovedEntity]:
        return self.store.approved_entities()

    def validate(self, answer: str, response: RetrievalResponse) -> ValidationVerdict:
        return validate_answer(
            answer,
            response.assembled,
            self.vocabulary(),
            program_design=response.intent == QueryIntent.PROGRAM_REQUEST,
            query=response.query,
        )

    def _require_generator(self) -> GenerateFn:
        if self.generate_fn is None:
            raise BackendError("No answer generator configured.")
        return self.generate_fn

    def revise_once(
        self,
        answer: str,
        verdict: ValidationVerdict,
        response: RetrievalResponse,
    ) -> tuple[str, ValidationVerdict]:
        return revise_once(
            answer,
            verdict,
            question=response.query,
            context=response.assembled,
            generate_fn=self._require_generator(),
            vocabulary=self.vocabulary(),
        )

    # -----------------------------------------------------------------------
    # End to end
    # -----------------------------------------------------------------------

    def answer(
        self,
        question: str,
        history: Sequence[HistoryMessage] | None = None,
        limits: RetrievalLimits | None = None,
    ) -> AnswerResult:
        generate = self._require_generator()
        response = self.retrieve(question, history, limits)
        prompt = build_prompt(question, response.assembled)
        try:
            text = str(generate(prompt, list(response.assembled.history)) or "").strip()
        except BackendError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendError("Answer generation failed.") from exc

        verdict = self.validate(text, response)
        revised = False
        if verdict.needs_revision and self.settings.max_revisions > 0:
            new_text, verdict = self.revise_once(text, verdict, response)
            revised = new_text != text
            text = new_text
        if verdict.needs_revision:
            logger.warning("Returning answer that still fails validation (revised=%s)", revised)
        return AnswerResult(answer=text, verdict=verdict, revised=revised, response=response)
