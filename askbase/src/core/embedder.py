"""
askbase - EmbeddingService
============================
Owns the text → vector step shared by ingestion and retrieval.

Key design decisions:
    • **Explicit handle** – one ``EmbeddingService`` is built at startup
      and injected into ``RAGManager`` and ``IngestionPipeline``; there is
      no module-level model.
    • **Lazy one-shot load** – the underlying LangChain ``Embeddings``
      object is built on first use behind a double-checked
      ``threading.Lock``.  Concurrent first callers block on the lock
      and all observe the same instance; ``load_count`` records how
      many loads actually ran.
    • **Normalised output** – every vector is L2-normalised with numpy,
      so cosine similarity and inner product agree whatever the store
      is configured with.
    • **Pluggable backends** – ``build_embeddings`` maps
      ``settings.EMBEDDING_PROVIDER`` to a LangChain implementation:
      local sentence-transformers (default), Google Gemini, or the
      offline ``HashingEmbeddings``.

Usage:
    from askbase.src.core.embedder import EmbeddingService
    service = EmbeddingService()
    vector = service.embed("what are cats")
"""

from __future__ import annotations

import hashlib
import re
import threading
import time
from collections.abc import Callable, Sequence

import numpy as np
from langchain_core.embeddings import Embeddings

from askbase.config.settings import settings
from askbase.src.core.errors import EmbeddingError, ModelUnavailable
from askbase.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
Vector = list[float]
EmbeddingsFactory = Callable[[], Embeddings]

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


# ══════════════════════════════════════════════════════════════════════
#  OFFLINE HASHING MODEL
# ══════════════════════════════════════════════════════════════════════


class HashingEmbeddings(Embeddings):
    """
    Deterministic signed feature-hashing bag-of-words embeddings.

    Each lower-cased word token is hashed with BLAKE2b into one of
    ``size`` buckets with a +1/-1 sign.  Texts sharing vocabulary get
    a positive cosine similarity, which is enough for offline use and
    for tests that must not download a model.
    """

    def __init__(self, size: int = 384) -> None:
        self.size = size


    def _embed(self, text: str) -> Vector:
        vector = np.zeros(self.size, dtype=np.float64)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "big")
            sign = 1.0 if value & 1 else -1.0
            vector[(value >> 1) % self.size] += sign
        return vector.tolist()


    def embed_documents(self, texts: list[str]) -> list[Vector]:
        return [self._embed(text) for text in texts]


    def embed_query(self, text: str) -> Vector:
        return self._embed(text)


def build_embeddings(provider: str | None = None, model_name: str | None = None, dimension: int | None = None) -> Embeddings:
    """
    Instantiate the LangChain embedding backend for *provider*.

    Heavy imports happen here so that merely importing this module
    never pulls in torch or the Google SDK.

    Raises
    ------
    ValueError
        Unknown provider, or ``google`` without ``GOOGLE_API_KEY``.
    """
    provider = provider or settings.EMBEDDING_PROVIDER
    model_name = model_name or settings.EMBEDDING_MODEL
    dimension = dimension or settings.EMBEDDING_DIM

    if provider == "huggingface":
        from langchain_huggingface import HuggingFaceEmbeddings

        return HuggingFaceEmbeddings(model_name=model_name, encode_kwargs={"normalize_embeddings": True})

    if provider == "google":
        if settings.GOOGLE_API_KEY is None:
            raise ValueError("EMBEDDING_PROVIDER=google requires GOOGLE_API_KEY.")
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        return GoogleGenerativeAIEmbeddings(model=model_name, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())

    if provider == "hash":
        return HashingEmbeddings(size=dimension)

    raise ValueError(f"Unknown embedding provider: {provider!r}")


def l2_normalize(vector: Sequence[float]) -> Vector:
    """Return *vector* scaled to unit L2 norm (zero vectors are returned as-is)."""
    arr = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not np.isfinite(norm):
        return arr.tolist()
    return (arr / norm).tolist()


# ══════════════════════════════════════════════════════════════════════
#  EMBEDDING SERVICE
# ══════════════════════════════════════════════════════════════════════


class EmbeddingService:
    """
    Lazily-loaded, thread-safe embedding handle.

    Parameters
    ----------
    factory
        Zero-argument callable returning a LangChain ``Embeddings``.
        Defaults to ``build_embeddings`` with the configured provider.
    model_name
        Label used in logs.  Defaults to ``settings.EMBEDDING_MODEL``.
    max_chars
        Inputs longer than this are rejected with ``EmbeddingError``.
    """

    __slots__ = ("_factory", "_model", "_lock", "_load_count", "_dimension", "_max_chars", "model_name")

    def __init__(self, factory: EmbeddingsFactory | None = None, model_name: str | None = None, max_chars: int | None = None) -> None:
        self._factory: EmbeddingsFactory = factory or build_embeddings
        self._model: Embeddings | None = None
        self._lock = threading.Lock()
        self._load_count = 0
        self._dimension: int | None = None
        self._max_chars = max_chars or settings.EMBED_MAX_CHARS
        self.model_name = model_name or settings.EMBEDDING_MODEL

    # ── Lifecycle ──────────────────────────────────────────────────────

    @property
    def load_count(self) -> int:
        """Number of times the underlying model was (attempted to be) loaded."""
        return self._load_count


    @property
    def is_loaded(self) -> bool:
        return self._model is not None


    def _ensure_loaded(self) -> Embeddings:
        """Return the model, loading it exactly once across threads."""
        model = self._model
        if model is not None:
            return model

        with self._lock:
            if self._model is None:
                self._load_count += 1
                t_load = time.perf_counter()
                logger.info("Loading embedding model '%s' …", self.model_name)
                try:
                    self._model = self._factory()
                except Exception as exc:
                    logger.exception("Embedding model '%s' failed to load.", self.model_name)
                    raise ModelUnavailable(f"Embedding model '{self.model_name}' is unavailable: {exc}") from exc
                logger.info("Embedding model loaded in %.1fms", (time.perf_counter() - t_load) * 1000)
            return self._model


    def warm_up(self) -> int:
        """Load the model now and return its dimensionality."""
        return self.dimension


    @property
    def dimension(self) -> int:
        """Vector width produced by the loaded model (probed once)."""
        if self._dimension is None:
            self._dimension = len(self.embed("dimension probe"))
        return self._dimension

    # ── Embedding ──────────────────────────────────────────────────────

    def _validate(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise EmbeddingError("Cannot embed empty text.")
        if len(text) > self._max_chars:
            raise EmbeddingError(f"Text of {len(text)} chars exceeds the {self._max_chars}-char embedding limit.")


    def embed(self, text: str) -> Vector:
        """
        Embed a single text into a unit-length vector.

        Raises
        ------
        EmbeddingError
            Empty / oversized input, or the backend rejected it.
        ModelUnavailable
            The model could not be loaded.
        """
        self._validate(text)
        model = self._ensure_loaded()

        try:
            raw = model.embed_query(text)
        except Exception as exc:
            logger.error("Failed to embed text (%d chars): %s", len(text), exc)
            raise EmbeddingError(f"Embedding backend failed: {exc}") from exc

        return self._finish(raw)


    @staticmethod
    def _finish(raw: Sequence[float]) -> Vector:
        vector = l2_normalize(raw)
        if not any(vector):
            raise EmbeddingError("Text produced an all-zero embedding.")
        return vector


    def embed_many(self, texts: Sequence[str]) -> list[Vector]:
        """Embed a batch of texts with one backend call."""
        for text in texts:
            self._validate(text)
        if not texts:
            return []
        model = self._ensure_loaded()

        try:
            raw_vectors = model.embed_documents(list(texts))
        except Exception as exc:
            logger.error("Batch embedding of %d texts failed: %s", len(texts), exc)
            raise EmbeddingError(f"Embedding backend failed: {exc}") from exc

        return [self._finish(vec) for vec in raw_vectors]


    def __repr__(self) -> str:
        return f"EmbeddingService(model='{self.model_name}', loaded={self.is_loaded})"
