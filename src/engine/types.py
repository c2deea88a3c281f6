from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ItemStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class QueryIntent(str, Enum):
    NEW_TOPIC = "NEW_TOPIC"
    CONTINUATION = "CONTINUATION"
    PROGRAM_REQUEST = "PROGRAM_REQUEST"
    MYTH_CHECK = "MYTH_CHECK"
    GENERIC = "GENERIC"


class SearchState(str, Enum):
    """Retrieval states, declared in the order the orchestrator visits them."""
    ENTITY = "ENTITY"
    CATEGORY = "CATEGORY"
    PARAMETER = "PARAMETER"
    BROAD = "BROAD"
    FALLBACK = "FALLBACK"
    FOUNDATIONAL = "FOUNDATIONAL"


# Lower rank wins score ties during merge (more specific beats more generic).
STATE_RANK: dict[SearchState, int] = {state: i for i, state in enumerate(SearchState)}


class ParameterKind(str, Enum):
    REP_RANGE = "rep_range"
    SET_COUNT = "set_count"
    REST_DURATION = "rest_duration"


class VariantKind(str, Enum):
    DIRECT = "direct"
    CONVERSATION = "conversation"
    ENTITY = "entity"
    HYDE = "hyde"
    PARAMETER = "parameter"


@dataclass(frozen=True)
class Passage:
    item_id: str
    chunk_index: int
    text: str
    title: str = ""

    @property
    def key(self) -> tuple[str, int]:
        return (self.item_id, self.chunk_index)


@dataclass(frozen=True)
class Candidate:
    """A scored, request-scoped passage produced by one search strategy."""
    passage: Passage
    score: float
    strategy: SearchState

    @property
    def key(self) -> tuple[str, int]:
        return self.passage.key

    @property
    def source_item_id(self) -> str:
        return self.passage.item_id

    @property
    def source_title(self) -> str:
        return self.passage.title


@dataclass(frozen=True)
class QueryVariant:
    text: str
    kind: VariantKind


@dataclass(frozen=True)
class RetrievalResult:
    candidates: tuple[Candidate, ...]
    states_visited: tuple[SearchState, ...] = ()
    state_counts: dict[str, int] = field(default_factory=dict)

    @property
    def source_titles(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for c in self.candidates:
            seen.setdefault(c.source_title, None)
        return tuple(seen)

    @property
    def source_ids(self) -> frozenset[str]:
        return frozenset(c.source_item_id for c in self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)


@dataclass(frozen=True)
class ApprovedEntity:
    name: str
    muscle_group: str
    equipment: str | None = None
    is_recommended: bool = False


@dataclass(frozen=True)
class EntityReplacement:
    mention: str
    muscle_group: str | None
    suggestion: str | None
    suggestion_score: float | None = None


@dataclass(frozen=True)
class ValidationVerdict:
    cited_source_ids: frozenset[str]
    missing_parameter_kinds: frozenset[ParameterKind]
    invalid_entity_mentions: frozenset[str]
    passed: bool
    invalid_citations: tuple[tuple[str, int], ...] = ()
    replacements: tuple[EntityReplacement, ...] = ()
    is_program_answer: bool = False

    @property
    def needs_revision(self) -> bool:
        return not self.passed


class RetrievalEngineError(RuntimeError):
    """Raised when the retrieval engine encounters a recoverable error."""


class BackendError(RetrievalEngineError):
    """A transient embedding, generation or store failure for the current request."""
