from __future__ import annotations

import os
import re

from .constants import (
    _EXERCISE_MENTION_STOPWORDS,
    _EXERCISE_NOUNS,
    EXERCISE_GROUP_HINTS,
    MUSCLE_GROUP_KEYWORDS,
    _LEXICAL_STOPWORDS,
    _TERM_SPLIT_RE,
    _TRUTHY_ENV_VALUES,
)


def _truthy_env(name: str) -> bool:
    return str(os.getenv(name, "") or "").strip().lower() in _TRUTHY_ENV_VALUES


def normalize_text(value: str | None) -> str:
    """Lowercase and collapse whitespace."""
    return re.sub(r"\s+", " ", str(value or "")).strip().lower()


def extract_terms(text: str | None, *, min_length: int = 3) -> list[str]:
    """Split text into search terms for AND-conjunctive lexical matching.

    Terms shorter than min_length and stopwords are dropped; order is kept and
    duplicates removed.
    """
    raw = _TERM_SPLIT_RE.split(normalize_text(text))
    terms = [t for t in raw if len(t) >= min_length and t not in _LEXICAL_STOPWORDS]
    return list(dict.fromkeys(terms))


def _keyword_re(keyword: str) -> re.Pattern[str]:
    return re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE)


_GROUP_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    group: [_keyword_re(k) for k in keywords] for group, keywords in MUSCLE_GROUP_KEYWORDS.items()
}


def detect_muscle_groups(text: str | None) -> list[str]:
    """Return canonical muscle groups mentioned in text, in declaration order."""
    txt = str(text or "")
    if not txt.strip():
        return []
    return [group for group, patterns in _GROUP_PATTERNS.items() if any(p.search(txt) for p in patterns)]


def matched_entity_keywords(text: str | None) -> list[str]:
    """Return the literal entity keywords found in text (used for title search)."""
    txt = str(text or "")
    found: list[str] = []
    for group, patterns in _GROUP_PATTERNS.items():
        for keyword, pattern in zip(MUSCLE_GROUP_KEYWORDS[group], patterns):
            if pattern.search(txt):
                found.append(keyword)
    return list(dict.fromkeys(found))


def infer_exercise_group(name: str | None) -> str | None:
    """Best-effort muscle group for an exercise name, None when unknown.

    The longest matching hint wins so "leg curl" maps to legs rather than biceps.
    """
    txt = f" {normalize_text(name)} "
    best: tuple[int, str] | None = None
    for group, hints in EXERCISE_GROUP_HINTS.items():
        for hint in hints:
            if hint in txt and (best is None or len(hint) > best[0]):
                best = (len(hint), group)
    return best[1] if best else None


_EXERCISE_MENTION_RE = re.compile(
    r"\b((?:[a-z][a-z\-]*\s+){0,3}(?:" + "|".join(re.escape(n) for n in _EXERCISE_NOUNS) + r")(?:e?s)?)\b",
    re.IGNORECASE,
)


def _singular_noun(word: str) -> str:
    if word in _EXERCISE_NOUNS:
        return word
    for stem in (word[:-1], word[:-2]):
        if stem in _EXERCISE_NOUNS:
            return stem
    return word


def extract_exercise_mentions(text: str | None, vocabulary_names: list[str] | None = None) -> list[str]:
    """Return normalized exercise-like phrases mentioned in text.

    A mention is either a vocabulary name (singular or plural) or a short
    phrase ending in an exercise noun ("cable crossover", "incline dumbbell
    presses"). Plural nouns are reported in singular form.
    Leading filler words are cut off; a bare noun without a modifier is not a
    mention.
    """
    txt = normalize_text(text)
    if not txt:
        return []

    found: list[str] = []
    for name in vocabulary_names or []:
        norm = normalize_text(name)
        if norm and re.search(r"\b" + re.escape(norm) + r"(?:e?s)?\b", txt):
            found.append(norm)

    for m in _EXERCISE_MENTION_RE.finditer(txt):
        words = m.group(1).split()
        cut = 0
        for i, w in enumerate(words[:-1]):
            if w in _EXERCISE_MENTION_STOPWORDS:
                cut = i + 1
        words = words[cut:]
        if len(words) < 2:
            continue
        words[-1] = _singular_noun(words[-1])
        found.append(" ".join(words))

    return list(dict.fromkeys(found))
