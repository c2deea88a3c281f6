"""LLM client for OpenAI API communication.

Single Responsibility: embedding and chat-completion calls.
No prompt construction, no parsing, no business logic.

The client is lazily initialized as a singleton (connection pooling).
Use reset_clients() in test teardown to clear it.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from typing import Sequence

from openai import OpenAI, RateLimitError

from .conversation import HistoryMessage
from .types import BackendError

logger = logging.getLogger(__name__)


__all__ = [
    "get_sync_client",
    "reset_clients",
    "embed_texts",
    "call_llm",
]

# ---------------------------------------------------------------------------
# Singleton state
# ---------------------------------------------------------------------------
_sync_client: OpenAI | None = None
_sync_lock = threading.Lock()

_MAX_RATE_LIMIT_RETRIES = 5


def _build_sync_client() -> OpenAI:
    """Create an OpenAI client with timeouts/retries from config."""
    from ..common.config_loader import get_settings_yaml

    settings = get_settings_yaml()
    openai_settings = settings.get("openai", {}) or {}

    timeout_secs = float(
        os.getenv("RAG_OPENAI_TIMEOUT_SECS")
        or openai_settings.get("timeout_secs", 60)
    )
    max_retries = int(
        os.getenv("RAG_OPENAI_MAX_RETRIES")
        or openai_settings.get("max_retries", 3)
    )

    return OpenAI(timeout=timeout_secs, max_retries=max_retries)


def get_sync_client() -> OpenAI:
    """Return the singleton OpenAI client (lazy, thread-safe)."""
    global _sync_client  # noqa: PLW0603
    if _sync_client is None:
        with _sync_lock:
            if _sync_client is None:
                _sync_client = _build_sync_client()
    return _sync_client


def reset_clients() -> None:
    """Close and clear the singleton. Call in test teardown."""
    global _sync_client  # noqa: PLW0603
    with _sync_lock:
        if _sync_client is not None:
            close_fn = getattr(_sync_client, "close", None)
            if callable(close_fn):
                close_fn()
            _sync_client = None


def _rate_limit_wait(exc: Exception, attempt: int) -> float:
    wait_match = re.search(r"try again in (\d+\.?\d*)s", str(exc))
    return float(wait_match.group(1)) + 0.5 if wait_match else float(2 ** attempt)


def embed_texts(texts: Sequence[str], model: str | None = None) -> list[list[float]]:
    """Embed texts with the configured embedding model, one vector per input."""
    from ..common.config_loader import load_settings

    if not texts:
        return []
    eff_model = model or load_settings().embedding_model
    client = get_sync_client()

    for attempt in range(_MAX_RATE_LIMIT_RETRIES):
        try:
            response = client.embeddings.create(model=eff_model, input=list(texts))
            return [list(item.embedding) for item in response.data]
        except RateLimitError as exc:
            if attempt < _MAX_RATE_LIMIT_RETRIES - 1:
                time.sleep(_rate_limit_wait(exc, attempt))
                continue
            raise BackendError(f"OpenAI rate limit exceeded after {_MAX_RATE_LIMIT_RETRIES} retries.") from exc
        except Exception as exc:  # noqa: BLE001
            raise BackendError("OpenAI embedding request failed.") from exc
    raise BackendError("OpenAI embedding request failed after retries.")


def _history_messages(history: Sequence[HistoryMessage] | None) -> list[dict[str, str]]:
    out: list[dict[str, str]] = []
    for msg in history or []:
        role = "assistant" if msg.role == "assistant" else "user"
        out.append({"role": role, "content": msg.content})
    return out


def call_llm(
    prompt: str,
    history: Sequence[HistoryMessage] | None = None,
    *,
    model: str | None = None,
    temperature: float | None = None,
) -> str:
    """Run one chat completion and return the stripped text.

    Conversation history, when given, precedes the prompt as prior turns.
    """
    from ..common.config_loader import load_settings

    settings = load_settings()
    eff_model = model or settings.chat_model
    eff_temp = temperature if temperature is not None else settings.temperature
    messages = _history_messages(history) + [{"role": "user", "content": prompt}]
    client = get_sync_client()

    kwargs: dict = {"model": eff_model, "messages": messages}
    if eff_temp is not None:
        kwargs["temperature"] = eff_temp

    for attempt in range(_MAX_RATE_LIMIT_RETRIES):
        try:
            response = client.chat.completions.create(**kwargs)
            return (response.choices[0].message.content or "").strip()
        except RateLimitError as exc:
            if attempt < _MAX_RATE_LIMIT_RETRIES - 1:
                wait_time = _rate_limit_wait(exc, attempt)
                logger.info("Rate limited by OpenAI; retrying in %.1fs", wait_time)
                time.sleep(wait_time)
                continue
            raise BackendError(f"OpenAI rate limit exceeded after {_MAX_RATE_LIMIT_RETRIES} retries.") from exc
        except Exception as exc:  # noqa: BLE001
            raise BackendError("OpenAI request failed.") from exc
    raise BackendError("OpenAI request failed after retries.")
