"""Conversation context management for multi-turn coaching chats.

Responsibilities:
- Format conversation history for LLM prompt injection
- Detect whether recent turns discussed exercises/workouts
- Extract entities from recent turns for continuation queries
"""

from __future__ import annotations

from dataclasses import dataclass

from .helpers import detect_muscle_groups, extract_exercise_mentions

# How many trailing messages count as "recent" for continuation handling.
RECENT_TURNS: int = 4


@dataclass(frozen=True)
class HistoryMessage:
    """A single message in conversation history.

    Attributes:
        role: Either "user" or "assistant"
        content: The message text content
    """
    role: str
    content: str


def truncate_history(
    history: list[HistoryMessage] | None,
    max_messages: int = 10,
) -> list[HistoryMessage]:
    """Keep only the most recent messages.

    Args:
        history: List of history messages, or None
        max_messages: Maximum number of messages to keep (default 10 = 5 exchanges)

    Returns:
        List of the most recent messages, or empty list if input is None/empty
    """
    if not history:
        return []

    if len(history) <= max_messages:
        return list(history)

    return list(history[-max_messages:])


def format_history_for_prompt(
    history: list[HistoryMessage] | None,
    max_chars_per_message: int = 4000,
) -> str:
    """Format conversation history as a prompt section, newest last.

    Returns:
        Formatted history string, or empty string if no history
    """
    if not history:
        return ""

    lines = ["PREVIOUS CONVERSATION:"]

    for msg in history:
        role_label = "User:" if msg.role == "user" else "Assistant:"
        content = msg.content

        if len(content) > max_chars_per_message:
            content = content[:max_chars_per_message - 3] + "..."

        lines.append(f"{role_label} {content}")

    lines.append("---")
    lines.append("")

    return "\n".join(lines)


def recent_entities(
    history: list[HistoryMessage] | None,
    max_messages: int = RECENT_TURNS,
) -> list[str]:
    """Exercise names and muscle groups mentioned in the most recent turns.

    Exercise mentions come first (most specific), then muscle groups.
    """
    recent = truncate_history(history, max_messages)
    exercises: list[str] = []
    groups: list[str] = []
    for msg in reversed(recent):
        exercises.extend(extract_exercise_mentions(msg.content))
        groups.extend(detect_muscle_groups(msg.content))
    return list(dict.fromkeys(exercises + groups))


def has_exercise_discussion(history: list[HistoryMessage] | None) -> bool:
    """True when recent turns talk about exercises, muscles or a workout."""
    recent = truncate_history(history, RECENT_TURNS)
    for msg in recent:
        text = msg.content.lower()
        if "workout" in text or "exercise" in text:
            return True
        if extract_exercise_mentions(msg.content) or detect_muscle_groups(msg.content):
            return True
    return False
