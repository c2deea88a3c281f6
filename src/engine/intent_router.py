"""Regex-based intent classifier for incoming chat messages.

Classifies a message into one of a small set of intents that steer which
retrieval states run:
- CONTINUATION: follow-up to an ongoing workout/exercise discussion
- PROGRAM_REQUEST: program/routine/split design request
- MYTH_CHECK: asks whether a training claim is true
- NEW_TOPIC: explicit topic switch
- GENERIC: everything else

The classifier is deliberately narrow: callers receive the enum and nothing
else, and no other module sniffs the raw message for intent.
"""

from __future__ import annotations

import hashlib
import logging

from .constants import (
    _CONTINUATION_RE,
    _MYTH_KEYWORDS_SUBSTR,
    _NEW_TOPIC_PREFIXES,
    _PROGRAM_KEYWORDS_SUBSTR,
    _PROGRAM_PATTERNS,
    _REP_QUERY_RE,
    _REST_QUERY_RE,
    _SET_QUERY_RE,
)
from .conversation import HistoryMessage, has_exercise_discussion
from .helpers import normalize_text
from .types import ParameterKind, QueryIntent

logger = logging.getLogger(__name__)

# In-memory cache for classification (message hash -> intent)
_INTENT_CACHE: dict[str, QueryIntent] = {}
_INTENT_CACHE_MAX = 1024


def _get_cache_key(message: str, has_context: bool, has_history: bool = False) -> str:
    normalized = normalize_text(message) + ("\n#ctx" if has_context else "") + ("\n#hist" if has_history else "")
    return hashlib.md5(normalized.encode()).hexdigest()


def is_continuation_message(message: str | None) -> bool:
    return bool(_CONTINUATION_RE.search(str(message or "")))


def is_program_request(message: str | None) -> bool:
    q = normalize_text(message)
    if not q:
        return False
    if any(k in q for k in _PROGRAM_KEYWORDS_SUBSTR):
        return True
    return any(p.search(q) for p in _PROGRAM_PATTERNS)


def is_myth_check(message: str | None) -> bool:
    q = normalize_text(message)
    return bool(q) and any(k in q for k in _MYTH_KEYWORDS_SUBSTR)


def classify_intent(
    message: str,
    history: list[HistoryMessage] | None = None,
) -> QueryIntent:
    """Classify a user message.

    CONTINUATION requires both a continuation phrase and a prior turn that
    discussed exercises or workouts; without that context the phrase is just
    a word in a new question.
    """
    context = has_exercise_discussion(history)
    key = _get_cache_key(message, context, bool(history))
    cached = _INTENT_CACHE.get(key)
    if cached is not None:
        return cached

    q = normalize_text(message)
    if not q:
        intent = QueryIntent.GENERIC
    elif q.startswith(_NEW_TOPIC_PREFIXES):
        intent = QueryIntent.NEW_TOPIC
    elif context and is_continuation_message(q):
        intent = QueryIntent.CONTINUATION
    elif is_program_request(q):
        intent = QueryIntent.PROGRAM_REQUEST
    elif is_myth_check(q):
        intent = QueryIntent.MYTH_CHECK
    elif not history:
        intent = QueryIntent.NEW_TOPIC
    else:
        intent = QueryIntent.GENERIC

    if len(_INTENT_CACHE) >= _INTENT_CACHE_MAX:
        _INTENT_CACHE.clear()
    _INTENT_CACHE[key] = intent
    logger.debug("Classified intent=%s for message=%r", intent.value, q[:80])
    return intent


def requested_parameters(message: str | None) -> list[ParameterKind]:
    """Programming parameters a question explicitly asks about."""
    q = str(message or "")
    kinds: list[ParameterKind] = []
    if _REST_QUERY_RE.search(q):
        kinds.append(ParameterKind.REST_DURATION)
    if _REP_QUERY_RE.search(q):
        kinds.append(ParameterKind.REP_RANGE)
    if _SET_QUERY_RE.search(q):
        kinds.append(ParameterKind.SET_COUNT)
    return kinds


def clear_cache() -> int:
    """Clear the classification cache. Returns number of entries cleared."""
    count = len(_INTENT_CACHE)
    _INTENT_CACHE.clear()
    return count
