"""
askbase - Centralized Configuration
=====================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` is typed as ``SecretStr`` and is **optional**.
  When present, the RAG engine switches to the Gemini answer
  synthesizer; when absent, answers are the raw formatted passages.
  The raw value is never exposed in repr, logs, or tracebacks.

Paths
-----
All filesystem paths are ``Path.resolve()``-d at class level so they
work identically on Windows, WSL, and Linux.

Concurrency
-----------
``MAX_WORKERS`` controls the ``ThreadPoolExecutor`` pool size in the
ingestion pipeline (default 4).  ``EMBED_TIMEOUT_SECONDS`` and
``STORE_TIMEOUT_SECONDS`` bound every embedding call and every
similarity search on the request path independently.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``)
    and has a documented default, so the core can be constructed
    without any environment at all (tests, CLI dry-runs).

    Attributes
    ----------
    ENV : Literal["dev", "prod"]
        Environment mode controlling logging verbosity.
    LOG_LEVEL : str | None
        Explicit log level; overrides the level implied by ``ENV``.
    LANCEDB_PATH : Path
        Directory (or URI) of the LanceDB database holding documents
        and query history.
    READ_CONSISTENCY_SECONDS : float
        How stale a table handle may be before it re-checks the
        latest version.  ``0`` sees writes from other processes
        (the setup CLI) on every read.
    EMBEDDING_PROVIDER : Literal["huggingface", "google", "hash"]
        Which embedding backend the ``EmbeddingService`` loads.
    EMBEDDING_MODEL : str
        Model identifier passed to the embedding backend.
    EMBEDDING_DIM : int
        Dimensionality of every stored and query vector.
    GOOGLE_API_KEY : SecretStr | None
        Enables Gemini embeddings / answer synthesis when set.
    TOP_K : int
        Number of passages retrieved per question.
    HISTORY_LIMIT : int
        Maximum records returned by ``GET /history``.
    INGEST_MODE : Literal["replace", "incremental"]
        ``replace`` clears the corpus before each ingestion run;
        ``incremental`` keys documents by content hash.
    HISTORY_BEST_EFFORT : bool
        When true, a failed history write is logged instead of
        failing the request.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_RAW_DIR: Path = BASE_DIR / "data" / "raw"
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None
    PORT: int = 3000

    # ── API Keys (optional) ────────────────────────────────────────────
    GOOGLE_API_KEY: SecretStr | None = None

    # ── LanceDB ────────────────────────────────────────────────────────
    DOCUMENTS_TABLE_NAME: str = "documents"
    HISTORY_TABLE_NAME: str = "query_history"
    READ_CONSISTENCY_SECONDS: float = 0.0

    # ── Embedding Model ────────────────────────────────────────────────
    EMBEDDING_PROVIDER: Literal["huggingface", "google", "hash"] = "huggingface"
    EMBEDDING_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
    EMBEDDING_DIM: int = 384
    EMBED_MAX_CHARS: int = 20_000

    # ── Answer Synthesis ───────────────────────────────────────────────
    LLM_MODEL: str = "gemini-2.0-flash"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 500

    # ── Retrieval ──────────────────────────────────────────────────────
    TOP_K: int = 5
    HISTORY_LIMIT: int = 50
    HISTORY_BEST_EFFORT: bool = False

    # ── Timeouts ───────────────────────────────────────────────────────
    EMBED_TIMEOUT_SECONDS: float = 30.0
    STORE_TIMEOUT_SECONDS: float = 10.0

    # ── Ingestion ──────────────────────────────────────────────────────
    INGEST_MODE: Literal["replace", "incremental"] = "replace"
    MAX_WORKERS: int = 4

    # ── Vector Index ───────────────────────────────────────────────────
    ANN_INDEX_MIN_ROWS: int = 256
    ANN_NUM_PARTITIONS: int = 100
    ANN_NUM_SUB_VECTORS: int = 96

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("TOP_K")
    @classmethod
    def _top_k_range(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError(f"TOP_K must be 1–100, got {v}")
        return v


    @field_validator("MAX_WORKERS")
    @classmethod
    def _workers_range(cls, v: int) -> int:
        if not 1 <= v <= 16:
            raise ValueError(f"MAX_WORKERS must be 1–16, got {v}")
        return v


    @field_validator("EMBEDDING_DIM", "HISTORY_LIMIT")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be positive, got {v}")
        return v

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from askbase.config.settings import settings
settings = Settings()
