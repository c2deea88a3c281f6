"""Constants for intent detection, entity recognition and answer compliance checks.

These keyword lists control how the engine classifies user queries, which
muscle groups a query or an answer is about, and which programming parameters
a workout answer must state. They are organised by concern (environment,
intent, entities, parameters).
"""

import re

# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}

# ---------------------------------------------------------------------------
# Intent detection
# ---------------------------------------------------------------------------

# Follow-up messages that continue an ongoing workout/exercise discussion.
_CONTINUATION_RE = re.compile(
    r"\b(continue|finish|complete|keep going|go on|rest of|show me the rest|what'?s next|next day)\b",
    re.IGNORECASE,
)

# Program-design requests (substring matching).
_PROGRAM_KEYWORDS_SUBSTR = [
    "workout program",
    "training program",
    "workout plan",
    "training plan",
    "routine",
    "training split",
    "workout split",
    "push pull legs",
    "push/pull/legs",
    "upper lower",
    "full body",
    "program for",
    "plan for",
    "create a program",
    "design a program",
    "build a program",
    "mesocycle",
]

# Patterns like "3 day program", "program with 4 days".
_PROGRAM_PATTERNS = [
    re.compile(r"\b\d+\s*-?\s*day\s+(program|plan|split|routine)\b", re.IGNORECASE),
    re.compile(r"\bprogram\b.*\b\d+\b.*\bday", re.IGNORECASE),
    re.compile(r"\b(ppl|upper/lower)\b", re.IGNORECASE),
]

_MYTH_KEYWORDS_SUBSTR = [
    "myth",
    "is it true",
    "true that",
    "does it really",
    "really necessary",
    "misconception",
    "debunk",
    "fact or fiction",
    "bro science",
    "old wives",
]

# Conversation starters that open a fresh topic regardless of history.
_NEW_TOPIC_PREFIXES = (
    "new question",
    "different question",
    "switching topics",
    "unrelated",
    "another topic",
)

# ---------------------------------------------------------------------------
# Entity recognition (muscle groups and synonyms)
# ---------------------------------------------------------------------------

# Canonical muscle group -> recognized keywords (word-boundary matched).
MUSCLE_GROUP_KEYWORDS: dict[str, tuple[str, ...]] = {
    "chest": ("chest", "pectoral", "pectorals", "pec", "pecs", "bench"),
    "back": ("back", "lat", "lats", "latissimus", "rhomboid", "rhomboids", "trapezius", "trap", "traps"),
    "shoulders": ("shoulder", "shoulders", "deltoid", "deltoids", "delt", "delts"),
    "biceps": ("bicep", "biceps", "elbow flexors"),
    "triceps": ("tricep", "triceps"),
    "legs": ("leg", "legs", "quad", "quads", "quadricep", "quadriceps", "hamstring", "hamstrings", "calf", "calves"),
    "glutes": ("glute", "glutes", "gluteus", "hip thrust"),
    "core": ("core", "abs", "abdominal", "abdominals", "obliques"),
}

# Synonyms added to entity-specific query variants.
MUSCLE_GROUP_SYNONYMS: dict[str, tuple[str, ...]] = {
    "chest": ("pectorals",),
    "back": ("latissimus dorsi", "rhomboids"),
    "shoulders": ("deltoids",),
    "biceps": ("elbow flexors",),
    "triceps": ("elbow extensors",),
    "legs": ("quadriceps", "hamstrings"),
    "glutes": ("gluteus maximus",),
    "core": ("abdominals",),
}

# Movement-pattern hints used to infer the muscle group of an exercise name.
EXERCISE_GROUP_HINTS: dict[str, tuple[str, ...]] = {
    "chest": ("bench", "chest", "fly", "flye", "pec", "dip", "push-up", "pushup"),
    "back": ("row", "pulldown", "pull-down", "pull-up", "pullup", "chin-up", "chinup", "lat ", "deadlift", "shrug"),
    "shoulders": ("overhead press", "shoulder press", "military press", "lateral raise", "front raise", "rear delt", "face pull", "upright row"),
    "biceps": ("curl",),
    "triceps": ("triceps", "tricep", "pushdown", "push-down", "skull crusher", "skullcrusher", "extension"),
    "legs": ("squat", "lunge", "leg press", "leg extension", "leg curl", "calf raise", "split squat", "step-up", "hack"),
    "glutes": ("hip thrust", "glute bridge", "glute", "kickback"),
    "core": ("crunch", "plank", "sit-up", "situp", "ab wheel", "rollout", "leg raise", "woodchopper"),
}

# Nouns that mark a preceding phrase as an exercise mention ("cable crossover", "goblet squat").
_EXERCISE_NOUNS = (
    "press",
    "curl",
    "raise",
    "row",
    "fly",
    "flye",
    "squat",
    "lunge",
    "deadlift",
    "pulldown",
    "pushdown",
    "extension",
    "thrust",
    "crossover",
    "dip",
    "pull-up",
    "chin-up",
    "shrug",
    "crunch",
    "kickback",
)

# Words that can precede an exercise noun without naming an exercise.
_EXERCISE_MENTION_STOPWORDS = {
    "a", "an", "the", "your", "each", "every", "this", "that", "any", "one", "per",
    "and", "or", "of", "to", "for", "with", "then", "first", "last", "next", "do",
    "perform", "add", "try", "use", "doing", "heavy", "light", "some", "more",
    "sets", "set", "reps", "rep", "like", "such", "as", "is", "are", "be", "can",
    "should", "instead", "than", "on", "in", "at", "by", "after", "before",
}

# ---------------------------------------------------------------------------
# Programming parameter detection (program-design answers)
# ---------------------------------------------------------------------------

_REP_RANGE_RE = re.compile(r"(rep|repetition)s?\s*[:\-]|\d+\s*reps?\b|\d+\s*[-–]\s*\d+\s*reps?\b|\d+\s*x\s*\d+", re.IGNORECASE)
_SET_COUNT_RE = re.compile(r"sets?\s*[:\-]|\d+\s*sets?\b|\d+\s*[-–]\s*\d+\s*sets?\b|\d+\s*x\s*\d+", re.IGNORECASE)
_REST_DURATION_RE = re.compile(
    r"rest\s*(period|time|:|=)|\d+\s*[-–]?\s*\d*\s*(sec|secs|seconds|s|min|mins|minutes)\b",
    re.IGNORECASE,
)
_EXERCISE_PRESENCE_RE = re.compile(r"exercise|movement|squat|deadlift|press|curl|raise|row", re.IGNORECASE)

# Query phrasing that targets a specific programming parameter.
_REST_QUERY_RE = re.compile(
    r"\brest (period|periods|time|times|interval|intervals|between)\b|\bhow long\b.*\b(rest|between sets)\b",
    re.IGNORECASE,
)
_REP_QUERY_RE = re.compile(r"\brep range\b|\bhow many reps\b|\brepetition range\b|\breps? per set\b", re.IGNORECASE)
_SET_QUERY_RE = re.compile(r"\bhow many sets\b|\bsets per\b|\bweekly volume\b|\bvolume\b", re.IGNORECASE)

PARAMETER_TITLE_TERMS: dict[str, tuple[str, ...]] = {
    "rest_duration": ("rest period", "rest time", "rest between"),
    "rep_range": ("rep range", "repetition"),
    "set_count": ("volume", "sets"),
}

# Appended to program-request queries to pull programming principles.
PROGRAM_PARAMETER_SUFFIX = "sets reps rest periods volume"

# ---------------------------------------------------------------------------
# Citation format
# ---------------------------------------------------------------------------

# [KB:<item_id>#<chunk_index>]
_KB_CITATION_RE = re.compile(r"\[KB:([^\]#\s]+)#(\d+)\]")

# Lexical term extraction
_TERM_SPLIT_RE = re.compile(r"[^0-9a-z]+")
_LEXICAL_STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "your", "with", "what", "how",
    "can", "should", "does", "did", "was", "were", "has", "have", "had", "this", "that",
    "from", "they", "them", "who", "why", "when", "which", "will", "would", "about",
    "into", "than", "then", "there", "their", "its", "also", "any", "all", "out",
}
