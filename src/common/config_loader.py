"""
Unified configuration loader for the retrieval engine.

This module is the single source of truth for all configuration:
- Settings dataclasses (Settings, RetrievalSettings, ContextSettings)
- Loading settings from config/settings.yaml with env var overrides
- Pydantic schema validation for production-ready error reporting

All code should import configuration from this module, not from settings.yaml directly.
The loaded Settings object is immutable and is passed explicitly into the engine.
"""

from __future__ import annotations

import functools
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError, field_validator

try:
    from dotenv import load_dotenv
except ModuleNotFoundError:  # pragma: no cover
    load_dotenv = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
_REPO_ROOT = Path(__file__).resolve().parents[2]


# ─────────────────────────────────────────────────────────────────────────────
# Core Settings Dataclasses
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetrievalSettings:
    """Tunables for the retrieval state machine and diversification."""
    max_chunks: int = 10
    similarity_floor: float = 0.3
    min_similarity_floor: float = 0.05
    threshold_step: float = 0.05        # Amount the floor drops per BROAD retry
    max_threshold_attempts: int = 3
    min_acceptable_results: int = 3
    entity_min_hits: int = 3            # Title hits needed to short-circuit at ENTITY
    title_match_score: float = 0.9
    parameter_match_score: float = 0.95
    parameter_search_limit: int = 5
    pool_multiplier: int = 3
    min_pool_size: int = 15
    max_per_source: int | None = None   # None = unbounded once sources are exhausted
    max_query_variants: int = 8
    scan_batch_size: int = 50
    priority_categories: tuple[str, ...] = ("hypertrophy_programs", "hypertrophy_principles")
    always_categories: tuple[str, ...] = ("myths",)
    foundational_category: str = "foundational_principles"
    max_foundational: int = 3


@dataclass(frozen=True)
class ContextSettings:
    """Token budget split for the assembled prompt.

    instructions_share + context_share + history_share should sum to 1.0
    """
    token_budget: int = 6000
    instructions_share: float = 0.3
    context_share: float = 0.5
    history_share: float = 0.2
    max_history_messages: int = 10
    context_positioning: str = "relevance"  # "sandwich" | "relevance"


@dataclass(frozen=True)
class Settings:
    """Application settings - all values loaded from config/settings.yaml.

    This is a frozen dataclass to ensure immutability after loading.
    All values are set at load time from the YAML config with env var overrides.
    """
    # OpenAI settings
    chat_model: str = ""
    embedding_model: str = ""
    temperature: float | None = None

    # Storage
    database_url: str = "sqlite:///data/corpus.db"
    vector_store_path: Path = Path("data/vector_store")
    collection_name: str = "fitness_passages"

    retrieval: RetrievalSettings = field(default_factory=RetrievalSettings)
    context: ContextSettings = field(default_factory=ContextSettings)

    # Compliance
    max_revisions: int = 1

    # Chunking parameters
    chunk_tokens: int = 512
    chunk_overlap: int = 100


# ─────────────────────────────────────────────────────────────────────────────
# Pydantic Schema for settings.yaml sections
# ─────────────────────────────────────────────────────────────────────────────


class RetrievalSectionSchema(BaseModel):
    """Schema for the `retrieval` section of settings.yaml."""

    max_chunks: int = 10
    similarity_floor: float = 0.3
    min_similarity_floor: float = 0.05
    threshold_step: float = 0.05
    max_threshold_attempts: int = 3
    min_acceptable_results: int = 3
    entity_min_hits: int = 3
    title_match_score: float = 0.9
    parameter_match_score: float = 0.95
    parameter_search_limit: int = 5
    pool_multiplier: int = 3
    min_pool_size: int = 15
    max_per_source: int | None = None
    max_query_variants: int = 8
    scan_batch_size: int = 50
    priority_categories: list[str] = ["hypertrophy_programs", "hypertrophy_principles"]
    always_categories: list[str] = ["myths"]
    foundational_category: str = "foundational_principles"
    max_foundational: int = 3

    @field_validator("priority_categories", "always_categories", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return list(v)


class ContextSectionSchema(BaseModel):
    """Schema for the `context` section of settings.yaml."""

    token_budget: int = 6000
    instructions_share: float = 0.3
    context_share: float = 0.5
    history_share: float = 0.2
    max_history_messages: int = 10
    context_positioning: str = "relevance"

    @field_validator("context_positioning")
    @classmethod
    def known_positioning(cls, v: str) -> str:
        v = str(v or "").strip().lower()
        if v not in {"sandwich", "relevance"}:
            raise ValueError(f"context_positioning must be 'sandwich' or 'relevance' (got {v!r})")
        return v


class SettingsFileSchema(BaseModel):
    """Schema for the sections of settings.yaml the engine reads."""

    retrieval: RetrievalSectionSchema = RetrievalSectionSchema()
    context: ContextSectionSchema = ContextSectionSchema()

    @field_validator("retrieval", "context", mode="before")
    @classmethod
    def ensure_dict(cls, v: Any) -> dict[str, Any]:
        if v is None:
            return {}
        return dict(v)


def validate_settings_file(config: dict[str, Any]) -> SettingsFileSchema | None:
    """Validate raw settings.yaml content against the schema.

    Returns the validated config or None if validation fails.
    Logs detailed error messages for malformed configs.
    """
    try:
        return SettingsFileSchema.model_validate(config)
    except ValidationError as e:
        logger.warning("Invalid settings.yaml: %s", e.errors())
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Settings Loading Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _env_int(key: str, default: int) -> int:
    val = os.getenv(key)
    return int(val) if val and val.strip() else default


def _env_float(key: str, default: float | None) -> float | None:
    val = os.getenv(key)
    if val is None or val.strip() == "":
        return default
    return float(val)


def _env_optional_int(key: str, default: int | None) -> int | None:
    val = os.getenv(key)
    if val is None or val.strip() == "":
        return default
    if val.strip().lower() in {"none", "null", "off"}:
        return None
    return int(val)


def _validate_settings(settings: Settings) -> None:
    """Validate settings values."""
    r = settings.retrieval
    c = settings.context

    if r.max_chunks < 1:
        raise ValueError(f"retrieval.max_chunks must be >= 1 (got {r.max_chunks})")

    for name, value in (
        ("similarity_floor", r.similarity_floor),
        ("min_similarity_floor", r.min_similarity_floor),
    ):
        if not (-1.0 <= value <= 1.0):
            raise ValueError(f"retrieval.{name} must be within [-1, 1] (got {value})")

    if r.min_similarity_floor > r.similarity_floor:
        raise ValueError(
            f"retrieval.min_similarity_floor must be <= similarity_floor "
            f"(got {r.min_similarity_floor} > {r.similarity_floor})"
        )

    if r.threshold_step <= 0:
        raise ValueError(f"retrieval.threshold_step must be > 0 (got {r.threshold_step})")

    if r.max_threshold_attempts < 1:
        raise ValueError(
            f"retrieval.max_threshold_attempts must be >= 1 (got {r.max_threshold_attempts})"
        )

    if r.max_per_source is not None and r.max_per_source < 1:
        raise ValueError(f"retrieval.max_per_source must be >= 1 when set (got {r.max_per_source})")

    if r.pool_multiplier < 1 or r.min_pool_size < 1:
        raise ValueError(
            f"retrieval.pool_multiplier and min_pool_size must be >= 1 "
            f"(got {r.pool_multiplier}, {r.min_pool_size})"
        )

    if r.max_query_variants < 1:
        raise ValueError(f"retrieval.max_query_variants must be >= 1 (got {r.max_query_variants})")

    if r.scan_batch_size < 1:
        raise ValueError(f"retrieval.scan_batch_size must be >= 1 (got {r.scan_batch_size})")

    share_sum = c.instructions_share + c.context_share + c.history_share
    if not (0.95 <= share_sum <= 1.05):
        raise ValueError(
            f"context shares must sum to ~1.0 (got {share_sum:.2f}: "
            f"instructions={c.instructions_share}, context={c.context_share}, history={c.history_share})"
        )

    if c.context_positioning not in {"sandwich", "relevance"}:
        raise ValueError(
            f"context.context_positioning must be 'sandwich' or 'relevance' (got {c.context_positioning!r})"
        )

    if c.token_budget < 1:
        raise ValueError(f"context.token_budget must be >= 1 (got {c.token_budget})")

    if settings.max_revisions < 0:
        raise ValueError(f"validation.max_revisions must be >= 0 (got {settings.max_revisions})")

    if settings.chunk_overlap >= settings.chunk_tokens:
        raise ValueError(
            f"chunking.overlap must be < chunking.chunk_tokens "
            f"(got {settings.chunk_overlap} >= {settings.chunk_tokens})"
        )


def _load_settings_yaml() -> dict[str, Any]:
    """Load raw settings from config/settings.yaml."""
    settings_path = _CONFIG_DIR / "settings.yaml"
    if not settings_path.exists():
        return {}
    with open(settings_path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@functools.lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and validate application settings from config/settings.yaml.

    Environment variables override YAML values:
    - OPENAI_CHAT_MODEL, OPENAI_EMBEDDING_MODEL
    - RAG_DATABASE_URL, RAG_VECTOR_STORE_PATH
    - RAG_MAX_CHUNKS, RAG_SIMILARITY_FLOOR, RAG_THRESHOLD_STEP, RAG_MAX_PER_SOURCE
    - RAG_CONTEXT_TOKEN_BUDGET, RAG_CONTEXT_POSITIONING

    Returns:
        Settings: Validated, frozen settings object
    """
    # Load dotenv if available
    if load_dotenv is not None:
        load_dotenv()

    config = _load_settings_yaml()
    root = _REPO_ROOT

    schema = validate_settings_file(config)
    if schema is None:
        logger.error("settings.yaml failed schema validation. Using built-in defaults for retrieval/context.")
        schema = SettingsFileSchema()

    openai_cfg = config.get("openai", {}) or {}
    paths_cfg = config.get("paths", {}) or {}
    validation_cfg = config.get("validation", {}) or {}
    chunking_cfg = config.get("chunking", {}) or {}
    r = schema.retrieval
    c = schema.context

    # OpenAI settings with env overrides
    chat_model = os.getenv("OPENAI_CHAT_MODEL") or openai_cfg.get("chat_model", "")
    embedding_model = os.getenv("OPENAI_EMBEDDING_MODEL") or openai_cfg.get("embedding_model", "")
    temperature = openai_cfg.get("temperature")

    # Storage
    database_url = os.getenv("RAG_DATABASE_URL") or paths_cfg.get("database_url", "sqlite:///data/corpus.db")
    vector_store_path = Path(os.getenv("RAG_VECTOR_STORE_PATH") or paths_cfg.get("vector_store_path", "data/vector_store"))
    if not vector_store_path.is_absolute():
        vector_store_path = root / vector_store_path
    collection_name = str(paths_cfg.get("collection_name", "fitness_passages"))

    retrieval = RetrievalSettings(
        max_chunks=_env_int("RAG_MAX_CHUNKS", r.max_chunks),
        similarity_floor=_env_float("RAG_SIMILARITY_FLOOR", r.similarity_floor),
        min_similarity_floor=r.min_similarity_floor,
        threshold_step=_env_float("RAG_THRESHOLD_STEP", r.threshold_step),
        max_threshold_attempts=r.max_threshold_attempts,
        min_acceptable_results=r.min_acceptable_results,
        entity_min_hits=r.entity_min_hits,
        title_match_score=r.title_match_score,
        parameter_match_score=r.parameter_match_score,
        parameter_search_limit=r.parameter_search_limit,
        pool_multiplier=r.pool_multiplier,
        min_pool_size=r.min_pool_size,
        max_per_source=_env_optional_int("RAG_MAX_PER_SOURCE", r.max_per_source),
        max_query_variants=r.max_query_variants,
        scan_batch_size=r.scan_batch_size,
        priority_categories=tuple(r.priority_categories),
        always_categories=tuple(r.always_categories),
        foundational_category=r.foundational_category,
        max_foundational=r.max_foundational,
    )

    context = ContextSettings(
        token_budget=_env_int("RAG_CONTEXT_TOKEN_BUDGET", c.token_budget),
        instructions_share=c.instructions_share,
        context_share=c.context_share,
        history_share=c.history_share,
        max_history_messages=c.max_history_messages,
        context_positioning=os.getenv("RAG_CONTEXT_POSITIONING") or c.context_positioning,
    )

    settings = Settings(
        chat_model=str(chat_model),
        embedding_model=str(embedding_model),
        temperature=float(temperature) if temperature is not None else None,
        database_url=str(database_url),
        vector_store_path=vector_store_path,
        collection_name=collection_name,
        retrieval=retrieval,
        context=context,
        max_revisions=int(validation_cfg.get("max_revisions", 1)),
        chunk_tokens=int(chunking_cfg.get("chunk_tokens", 512)),
        chunk_overlap=int(chunking_cfg.get("overlap", 100)),
    )

    _validate_settings(settings)
    return settings


def get_settings_yaml() -> dict[str, Any]:
    """Get raw settings dict from YAML."""
    return _load_settings_yaml()


def get_performance_settings() -> dict[str, Any]:
    """Get performance tuning settings from settings.yaml with env overrides.

    Returns dict with keys: max_retrieval_workers, retrieval_timeout_secs.
    """
    settings = get_settings_yaml()
    perf = settings.get("performance", {}) or {}

    return {
        "max_retrieval_workers": int(
            os.getenv("RAG_MAX_RETRIEVAL_WORKERS")
            or perf.get("max_retrieval_workers", 8)
        ),
        "retrieval_timeout_secs": float(
            os.getenv("RAG_RETRIEVAL_TIMEOUT_SECS")
            or perf.get("retrieval_timeout_secs", 10.0)
        ),
    }


def clear_config_cache() -> None:
    """Clear all cached configuration (for testing)."""
    load_settings.cache_clear()
