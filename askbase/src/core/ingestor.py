"""
askbase - IngestionPipeline
=============================
Batch pipeline that embeds raw documents and persists them into the
``KnowledgeStore``.

Key design decisions:
    • **Dependency Injection** – receives ``KnowledgeStore`` + ``EmbeddingService``.
    • **One document per item** – inline documents and directory files
      are embedded whole; a file's title is derived from its name.
    • **Partial failure** – every item succeeds or fails on its own.
      Rejections (``InvalidDocument``, embedding or store errors) are
      collected into the ``IngestionResult``; the batch call never raises
      because of a single item.
    • **Two phases** – items are validated and embedded in parallel via
      ``ThreadPoolExecutor`` to overlap embedding latency, then written
      one by one in input order.
    • **Ingestion policy** – ``replace`` swaps the corpus for the batch
      (the clear happens between the two phases and is skipped when no
      item survived phase one); ``incremental`` keys documents by
      content hash so re-running only touches what changed.

Usage:
    from askbase.src.core.ingestor import IngestionPipeline
    pipeline = IngestionPipeline(store, embedder)
    result   = pipeline.ingest([{"title": "T1", "content": "cats are mammals"}])
    result   = pipeline.ingest_directory("./documents")
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from askbase.config.settings import settings
from askbase.src.core.embedder import EmbeddingService, Vector
from askbase.src.core.errors import AskbaseError, InvalidDocument
from askbase.src.database.vector_store import KnowledgeStore
from askbase.src.utils.logger import get_logger, log_duration
from askbase.src.utils.text_utils import clean_text, title_from_filename

logger = get_logger(__name__)

IngestMode = Literal["replace", "incremental"]


# ── Records ───────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class RawDocument:
    """An item to ingest: content plus an optional title."""

    content: str
    title: str | None = None


@dataclass(frozen=True, slots=True)
class IngestionFailure:
    """Why one item of a batch was not stored."""

    index: int
    title: str | None
    kind: str
    message: str


@dataclass(slots=True)
class IngestionResult:
    """Summary of one ``ingest`` call."""

    ingested: int = 0
    failures: list[IngestionFailure] = field(default_factory=list)
    document_ids: list[int] = field(default_factory=list)
    cleared: int = 0
    elapsed_seconds: float = 0.0

    @property
    def total(self) -> int:
        return self.ingested + len(self.failures)


# ── Built-in corpus ───────────────────────────────────────────────────
# Ingested by the setup CLI when no source directory is given.
SAMPLE_DOCUMENTS: tuple[RawDocument, ...] = (
    RawDocument(title="Introduction to Machine Learning", content="Machine learning is a subset of artificial intelligence that enables systems to learn and improve from experience without being explicitly programmed. It focuses on developing computer programs that can access data and use it to learn for themselves."),
    RawDocument(title="Types of Machine Learning", content="There are three main types of machine learning: Supervised learning uses labeled data to train models. Unsupervised learning finds patterns in unlabeled data. Reinforcement learning learns through interaction with an environment using rewards and penalties."),
    RawDocument(title="Neural Networks Basics", content="Neural networks are computing systems inspired by biological neural networks. They consist of layers of interconnected nodes or neurons that process information. Deep learning uses neural networks with multiple hidden layers to learn complex patterns."),
    RawDocument(title="Natural Language Processing", content="NLP is a branch of AI that helps computers understand, interpret and manipulate human language. It combines computational linguistics with machine learning and deep learning models to process and analyze large amounts of natural language data."),
    RawDocument(title="Computer Vision Fundamentals", content="Computer vision is a field of AI that trains computers to interpret and understand the visual world. Using digital images from cameras and videos, machines can identify and classify objects and react to what they see."),
)


class IngestionPipeline:
    """
    End-to-end document ingestion: validate → embed → store.

    Parameters
    ----------
    vector_store
        An initialised ``KnowledgeStore`` (``ensure_schema`` already run).
    embedder
        The shared ``EmbeddingService``.
    mode
        ``"replace"`` or ``"incremental"``.  Defaults to ``settings.INGEST_MODE``.
    max_workers
        Number of parallel threads.  Defaults to ``settings.MAX_WORKERS``.
    source_dir
        Default directory for ``ingest_directory``.  Defaults to ``settings.DATA_RAW_DIR``.
    """

    __slots__ = ("_store", "_embedder", "_mode", "_max_workers", "_source_dir")

    def __init__(self, vector_store: KnowledgeStore, embedder: EmbeddingService, mode: IngestMode | None = None, max_workers: int | None = None, source_dir: Path | None = None) -> None:
        self._store = vector_store
        self._embedder = embedder
        self._mode: IngestMode = mode or settings.INGEST_MODE
        self._max_workers = max_workers or settings.MAX_WORKERS
        self._source_dir = Path(source_dir or settings.DATA_RAW_DIR)

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINTS
    # ══════════════════════════════════════════════════════════════════

    def ingest(self, documents: Sequence[RawDocument | Mapping[str, str | None]]) -> IngestionResult:
        """
        Embed and store *documents*.

        Items are validated and embedded in parallel first.  In
        ``replace`` mode the corpus is cleared only after at least one
        item is ready to be stored, so a batch that fails entirely
        (model down, every item invalid) leaves the existing corpus in
        place.  Ready items are then written in input order.

        Returns
        -------
        IngestionResult
            ``ingested`` count, per-item ``failures``, ids in input order.
        """
        t_start = time.perf_counter()
        result = IngestionResult()

        if not documents:
            logger.warning("[INGEST] Nothing to ingest.")
            result.elapsed_seconds = round(time.perf_counter() - t_start, 2)
            return result

        logger.info("[INGEST] Starting ingestion — %d document(s), mode=%s, workers=%d.", len(documents), self._mode, self._max_workers)

        prepared: dict[int, tuple[RawDocument, Vector]] = {}

        # ── 1. Validate + embed (parallel) ─────────────────────────────
        with log_duration(logger, "[INGEST] Embedding phase"), ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            future_to_item = {pool.submit(self._prepare, index, item): (index, item) for index, item in enumerate(documents)}

            for future in as_completed(future_to_item):
                index, item = future_to_item[future]
                try:
                    prepared[index] = future.result()
                except Exception as exc:
                    self._record_failure(result, index, item, exc)

        # ── 2. Clear (replace mode, only with something to replace it) ─
        if self._mode == "replace":
            if prepared:
                result.cleared = self._store.clear_documents()
            else:
                logger.warning("[INGEST] No document could be prepared — keeping the existing corpus.")

        # ── 3. Store (input order) ─────────────────────────────────────
        with log_duration(logger, "[INGEST] Storage phase"):
            for index in sorted(prepared):
                document, vector = prepared[index]
                try:
                    result.document_ids.append(self._store.upsert_document(document.title, document.content, vector, dedup_key=self._mode == "incremental"))
                except Exception as exc:
                    self._record_failure(result, index, document, exc)

        result.ingested = len(result.document_ids)
        result.failures.sort(key=lambda failure: failure.index)
        result.elapsed_seconds = round(time.perf_counter() - t_start, 2)

        logger.info("[INGEST] Complete — %d ingested, %d failed in %.2fs. Corpus now holds %d document(s).", result.ingested, len(result.failures), result.elapsed_seconds, self._store.count_documents())
        return result


    def ingest_directory(self, directory: Path | str | None = None, pattern: str = "*.txt") -> IngestionResult:
        """Ingest every file matching *pattern* in *directory*; one document per file."""
        return self.ingest(self.load_directory(directory or self._source_dir, pattern))

    # ══════════════════════════════════════════════════════════════════
    #  PER-DOCUMENT PROCESSING
    # ══════════════════════════════════════════════════════════════════

    def _prepare(self, index: int, item: RawDocument | Mapping[str, str | None]) -> tuple[RawDocument, Vector]:
        """Validate and embed a single document."""
        document = self._coerce(item)
        if not document.content or not document.content.strip():
            raise InvalidDocument(f"Document {index + 1} has empty content.")

        t_doc = time.perf_counter()
        vector = self._embedder.embed(document.content)
        logger.debug("[INGEST] ✓ embedded %s in %.1fms", document.title or "Untitled", (time.perf_counter() - t_doc) * 1000)
        return document, vector


    def _record_failure(self, result: IngestionResult, index: int, item: object, exc: Exception) -> None:
        title = self._title_of(item)
        if isinstance(exc, AskbaseError):
            logger.warning("[INGEST] Document %d (%s) rejected: %s", index + 1, title or "Untitled", exc)
            kind = exc.tag
        else:
            logger.error("[INGEST] Unexpected error on document %d (%s).", index + 1, title or "Untitled", exc_info=exc)
            kind = AskbaseError.tag
        result.failures.append(IngestionFailure(index=index, title=title, kind=kind, message=str(exc)))


    @staticmethod
    def _coerce(item: RawDocument | Mapping[str, str | None]) -> RawDocument:
        if isinstance(item, RawDocument):
            return item
        if isinstance(item, Mapping):
            return RawDocument(content=item.get("content") or "", title=item.get("title"))
        raise InvalidDocument(f"Unsupported document type: {type(item).__name__}")


    @staticmethod
    def _title_of(item: object) -> str | None:
        if isinstance(item, RawDocument):
            return item.title
        if isinstance(item, Mapping):
            return item.get("title")
        return None

    # ══════════════════════════════════════════════════════════════════
    #  FILE READING
    # ══════════════════════════════════════════════════════════════════

    @classmethod
    def load_directory(cls, directory: Path | str, pattern: str = "*.txt") -> list[RawDocument]:
        """
        Read every file matching *pattern* (sorted by name) into ``RawDocument`` s.

        ``my_notes.txt`` becomes ``RawDocument(title="my notes", content=<cleaned text>)``.
        A missing directory yields an empty list.
        """
        source = Path(directory)
        if not source.is_dir():
            logger.warning("[INGEST] Source directory does not exist: %s", source)
            return []

        files = sorted(f for f in source.glob(pattern) if f.is_file())
        if not files:
            logger.warning("[INGEST] No files matching '%s' in %s", pattern, source)
            return []

        documents: list[RawDocument] = []
        for filepath in files:
            documents.append(RawDocument(title=title_from_filename(filepath.name), content=clean_text(cls._read_file(filepath))))
            logger.debug("[INGEST] Read file: %s", filepath.name)

        logger.info("[INGEST] Loaded %d file(s) from %s", len(documents), source)
        return documents


    @staticmethod
    def _read_file(filepath: Path) -> str:
        """Read a text file as UTF-8, falling back to Latin-1."""
        try:
            return filepath.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return filepath.read_text(encoding="latin-1")
