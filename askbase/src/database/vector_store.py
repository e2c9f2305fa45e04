"""
askbase - KnowledgeStore
==========================
OOP wrapper around LanceDB providing a clean interface for:
  • Idempotent schema bootstrap with strict PyArrow schemas
  • Document upserts (embedding + metadata)
  • Top-K cosine similarity search with deterministic tie breaks
  • The append-only per-user query history

Design decisions:
  • **Singleton DB connection** — ``_get_connection()`` caches the
    ``lancedb.DBConnection`` per URI at module level.  LanceDB is
    embedded, so this cache stands in for a connection pool: every
    ``KnowledgeStore`` on the same URI shares one handle.
  • **Fresh reads** — the connection is opened with a read-consistency
    interval (``READ_CONSISTENCY_SECONDS``, default 0) so the API
    process sees corpora written by the setup CLI without a restart.
  • **Vectors never embedded here** — callers pass ready, normalised
    vectors; the store only checks their width.
  • **Tiered indexing** — ``ensure_schema`` tries an IVF_PQ cosine
    index and falls back to a BTREE index on ``id`` when the corpus is
    too small (or the engine refuses).  The fallback only ever warns.
    The history table gets BTREE indexes on ``user_id`` and
    ``asked_at``; reads push the user filter down to LanceDB.
  • **Serialised writes** — id allocation and commits go through one
    ``threading.Lock`` so parallel ingestion workers never collide.
    Reads take no lock.

Usage:
    from askbase.src.database.vector_store import KnowledgeStore

    store = KnowledgeStore()
    store.ensure_schema()
    doc_id = store.upsert_document("T1", "cats are mammals", vector)
    matches = store.top_k_similar(query_vector, k=5)
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import lancedb
import pyarrow as pa
import pyarrow.compute as pc

from askbase.config.settings import settings
from askbase.src.core.errors import AskbaseError, DimensionMismatch, InvalidDocument, InvalidInput, StoreUnavailable
from askbase.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
Vector = list[float]
Row = dict[str, str | int | float | datetime | list[float] | None]

# ── Constants ──────────────────────────────────────────────────────────
_VECTOR_COLUMN = "vector"
_DOCUMENT_COLUMNS = ["id", "title", "content", "content_hash", "created_at", "updated_at"]
_HISTORY_COLUMNS = ["id", "user_id", "question", "answer", "asked_at"]
_HISTORY_INDEX_COLUMNS = ("user_id", "asked_at")
_TIE_EPSILON = 1e-9
_TIMESTAMP = pa.timestamp("us", tz="UTC")

_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


# ── Schemas ───────────────────────────────────────────────────────────

def document_schema(dimension: int) -> pa.Schema:
    """PyArrow schema for the ``documents`` table at a given vector width."""
    return pa.schema([
        pa.field("id", pa.int64()),
        pa.field("title", pa.utf8()),
        pa.field("content", pa.utf8()),
        pa.field("content_hash", pa.utf8()),
        pa.field(_VECTOR_COLUMN, pa.list_(pa.float32(), dimension)),
        pa.field("created_at", _TIMESTAMP),
        pa.field("updated_at", _TIMESTAMP),
    ])


HISTORY_SCHEMA = pa.schema([
    pa.field("id", pa.int64()),
    pa.field("user_id", pa.utf8()),
    pa.field("question", pa.utf8()),
    pa.field("answer", pa.utf8()),
    pa.field("asked_at", _TIMESTAMP),
])


# ── Records ───────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Document:
    """A stored passage.  ``embedding`` is not loaded on read paths."""

    id: int
    title: str | None
    content: str
    content_hash: str
    created_at: datetime
    updated_at: datetime
    embedding: Vector | None = None


@dataclass(frozen=True, slots=True)
class SimilarityMatch:
    """A document ranked against a query; ``score`` is ``1 - cosine distance``."""

    document: Document
    score: float
    rank: int


@dataclass(frozen=True, slots=True)
class QueryRecord:
    """One logged question/answer pair."""

    id: int
    user_id: str
    question: str
    answer: str
    asked_at: datetime


@dataclass(frozen=True, slots=True)
class SchemaState:
    """Outcome of ``ensure_schema``: table names, vector width, index tier."""

    documents_table: str
    history_table: str
    dimension: int
    vector_index: str


# ── Helpers ───────────────────────────────────────────────────────────

def _get_connection(uri: str) -> lancedb.DBConnection:
    """
    Return a **singleton** ``lancedb.DBConnection`` for *uri*.

    Thread-safe via ``_DB_LOCK``.  Table handles opened from it re-check
    the latest table version once ``settings.READ_CONSISTENCY_SECONDS``
    have passed, so a running server sees documents written by the
    setup CLI in another process.
    """
    if uri not in _db_connection_cache:
        with _DB_LOCK:
            if uri not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", uri)
                _db_connection_cache[uri] = lancedb.connect(uri, read_consistency_interval=timedelta(seconds=settings.READ_CONSISTENCY_SECONDS))
    return _db_connection_cache[uri]


def content_hash(content: str) -> str:
    """Stable dedup key for a document body."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _sql_literal(value: str) -> str:
    """Quote *value* as a SQL string literal for LanceDB filters."""
    return "'" + value.replace("'", "''") + "'"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate engine failures into ``StoreUnavailable``; our own errors pass through."""
    try:
        yield
    except AskbaseError:
        raise
    except Exception as exc:
        logger.error("LanceDB %s failed: %s", action, exc)
        raise StoreUnavailable(f"Vector store {action} failed: {exc}") from exc


# ══════════════════════════════════════════════════════════════════════
#  KNOWLEDGE STORE
# ══════════════════════════════════════════════════════════════════════


class KnowledgeStore:
    """
    Documents + query history in one LanceDB database.

    Parameters
    ----------
    db_path
        Database directory / URI.  Defaults to ``settings.LANCEDB_PATH``.
    dimension
        Required vector width.  Defaults to ``settings.EMBEDDING_DIM``.
    documents_table, history_table
        Table-name overrides.
    ann_min_rows
        Minimum corpus size before an IVF_PQ index is attempted.
    """

    __slots__ = ("_db_path", "_dimension", "_documents_name", "_history_name", "_ann_min_rows", "_ann_partitions", "_ann_sub_vectors", "_schema_lock", "_write_lock", "_next_document_id", "_next_record_id", "db", "documents", "history")

    def __init__(self, db_path: str | None = None, dimension: int | None = None, documents_table: str | None = None, history_table: str | None = None, ann_min_rows: int | None = None) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._dimension: int = dimension or settings.EMBEDDING_DIM
        self._documents_name: str = documents_table or settings.DOCUMENTS_TABLE_NAME
        self._history_name: str = history_table or settings.HISTORY_TABLE_NAME
        self._ann_min_rows: int = ann_min_rows if ann_min_rows is not None else settings.ANN_INDEX_MIN_ROWS
        self._ann_partitions: int = settings.ANN_NUM_PARTITIONS
        self._ann_sub_vectors: int = settings.ANN_NUM_SUB_VECTORS
        self._schema_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._next_document_id = 1
        self._next_record_id = 1
        self.documents: lancedb.table.Table | None = None
        self.history: lancedb.table.Table | None = None

        with _store_errors("connect"):
            self.db: lancedb.DBConnection = _get_connection(self._db_path)


    @property
    def dimension(self) -> int:
        return self._dimension

    # ══════════════════════════════════════════════════════════════════
    #  SCHEMA BOOTSTRAP
    # ══════════════════════════════════════════════════════════════════

    def ensure_schema(self) -> SchemaState:
        """
        Create (or open) both tables and their indexes.

        Safe to call on every process start and from several threads:
        tables are opened when present and created with
        ``exist_ok=True`` otherwise.

        Raises
        ------
        DimensionMismatch
            The existing ``documents`` table stores vectors of a
            different width than ``dimension``.
        StoreUnavailable
            The database cannot be opened.
        """
        with self._schema_lock, _store_errors("schema bootstrap"):
            self.documents = self._open_or_create(self._documents_name, document_schema(self._dimension))
            self.history = self._open_or_create(self._history_name, HISTORY_SCHEMA)

            stored_dim = self.documents.schema.field(_VECTOR_COLUMN).type.list_size
            if stored_dim != self._dimension:
                logger.error("[SCHEMA] Table '%s' stores %d-dim vectors but %d were configured.", self._documents_name, stored_dim, self._dimension)
                raise DimensionMismatch(self._dimension, stored_dim, where=f"table '{self._documents_name}'")

            with self._write_lock:
                self._next_document_id = max(self._next_document_id, self._max_id(self.documents) + 1)
                self._next_record_id = max(self._next_record_id, self._max_id(self.history) + 1)

            tier = self._ensure_indexes(self.documents)
            self._ensure_history_indexes(self.history)

        row_count = self.documents.count_rows()
        logger.info("[SCHEMA] Ready — '%s' (%d documents, index=%s), '%s'.", self._documents_name, row_count, tier, self._history_name)
        if row_count == 0:
            logger.info("[SCHEMA] No documents found. Run 'python -m askbase.scripts.setup_db' to populate the knowledge base.")

        return SchemaState(self._documents_name, self._history_name, self._dimension, tier)


    def _open_or_create(self, name: str, schema: pa.Schema) -> lancedb.table.Table:
        if name in self.db.table_names():
            return self.db.open_table(name)
        logger.info("[SCHEMA] Creating table '%s'.", name)
        return self.db.create_table(name, schema=schema, exist_ok=True)


    @staticmethod
    def _max_id(table: lancedb.table.Table) -> int:
        if table.count_rows() == 0:
            return 0
        return int(pc.max(table.to_arrow()["id"]).as_py() or 0)


    def _ensure_indexes(self, table: lancedb.table.Table) -> str:
        """
        Try the IVF_PQ cosine index, fall back to a BTREE index on ``id``.

        Returns the tier that ended up in place: ``"ivf_pq"``,
        ``"btree"``, or ``"none"`` (plain scans still answer queries).
        """
        rows = table.count_rows()
        if rows >= self._ann_min_rows:
            try:
                table.create_index(metric="cosine", num_partitions=min(self._ann_partitions, rows), num_sub_vectors=self._ann_sub_vectors, vector_column_name=_VECTOR_COLUMN, replace=True)
                logger.info("[SCHEMA] IVF_PQ cosine index built over %d vectors.", rows)
                return "ivf_pq"
            except Exception as exc:
                logger.warning("[SCHEMA] Could not create IVF_PQ index (%s); falling back to id index.", exc)
        else:
            logger.warning("[SCHEMA] Could not create IVF_PQ index (%d rows < %d); falling back to id index.", rows, self._ann_min_rows)

        try:
            table.create_scalar_index("id", replace=True)
            return "btree"
        except Exception as exc:
            logger.warning("[SCHEMA] Could not create id index (%s); queries will scan.", exc)
            return "none"


    @staticmethod
    def _ensure_history_indexes(table: lancedb.table.Table) -> list[str]:
        """BTREE indexes for the per-user, newest-first history read.  Returns the columns indexed."""
        indexed: list[str] = []
        for column in _HISTORY_INDEX_COLUMNS:
            try:
                table.create_scalar_index(column, replace=True)
                indexed.append(column)
            except Exception as exc:
                logger.warning("[SCHEMA] Could not index history column '%s' (%s); reads will scan.", column, exc)
        return indexed


    def _require(self, table: lancedb.table.Table | None) -> lancedb.table.Table:
        if table is None:
            raise StoreUnavailable("Schema is not initialised. Call ensure_schema() first.")
        return table


    def _check_dimension(self, vector: Sequence[float], where: str) -> None:
        if len(vector) != self._dimension:
            logger.error("[STORE] %s has %d dims, expected %d.", where, len(vector), self._dimension)
            raise DimensionMismatch(self._dimension, len(vector), where=where)

    # ══════════════════════════════════════════════════════════════════
    #  DOCUMENTS
    # ══════════════════════════════════════════════════════════════════

    def upsert_document(self, title: str | None, content: str, embedding: Sequence[float], dedup_key: bool = False) -> int:
        """
        Persist one document and return its id.

        With ``dedup_key=True`` a document whose content hash already
        exists is replaced in place (same id, original ``created_at``)
        through a single ``merge_insert`` commit, so a failed update
        leaves the previous row untouched.  Otherwise every call
        inserts a new row.

        Raises
        ------
        InvalidDocument
            ``content`` is empty.
        DimensionMismatch
            ``embedding`` has the wrong width.
        """
        if not content or not content.strip():
            raise InvalidDocument("Document content must not be empty.")
        self._check_dimension(embedding, "document embedding")
        table = self._require(self.documents)

        digest = content_hash(content)
        now = _utcnow()

        with self._write_lock, _store_errors("document upsert"):
            existing = self._find_by_hash(table, digest) if dedup_key else None
            if existing is not None:
                doc_id = int(existing["id"])
                created_at = existing["created_at"] or now
            else:
                doc_id = self._next_document_id
                created_at = now

            row: Row = {"id": doc_id, "title": title, "content": content, "content_hash": digest, _VECTOR_COLUMN: [float(x) for x in embedding], "created_at": created_at, "updated_at": now}
            data = pa.Table.from_pylist([row], schema=document_schema(self._dimension))
            if existing is not None:
                table.merge_insert("id").when_matched_update_all().when_not_matched_insert_all().execute(data)
            else:
                table.add(data)
                self._next_document_id += 1

        logger.debug("[STORE] %s document %d (%s).", "Updated" if existing is not None else "Inserted", doc_id, title or "Untitled")
        return doc_id


    @staticmethod
    def _find_by_hash(table: lancedb.table.Table, digest: str) -> Row | None:
        rows = table.search().where(f"content_hash = {_sql_literal(digest)}").select(["id", "created_at"]).limit(1).to_list()
        return rows[0] if rows else None


    def top_k_similar(self, query_embedding: Sequence[float], k: int) -> list[SimilarityMatch]:
        """
        Return up to *k* documents ordered by descending cosine similarity.

        Ties are broken by the lower document id.  The search fetches
        ``2k`` candidates and keeps doubling the window while the last
        fetched row still ties with the k-th, so every member of a tie
        group straddling the cut-off is seen before sorting by
        ``(-score, id)``.  An empty corpus yields ``[]``.
        """
        if k < 1:
            raise InvalidInput(f"k must be >= 1, got {k}")
        self._check_dimension(query_embedding, "query embedding")
        table = self._require(self.documents)
        query = [float(x) for x in query_embedding]

        with _store_errors("similarity search"):
            if table.count_rows() == 0:
                return []
            limit = k * 2
            while True:
                rows = table.search(query, vector_column_name=_VECTOR_COLUMN).distance_type("cosine").select(_DOCUMENT_COLUMNS).limit(limit).to_list()
                if not self._tie_group_cut(rows, k, limit):
                    break
                limit *= 2

        scored = sorted(((1.0 - float(row["_distance"]), row) for row in rows), key=lambda item: (-item[0], int(item[1]["id"])))

        matches: list[SimilarityMatch] = []
        for rank, (score, row) in enumerate(scored[:k], 1):
            document = Document(id=int(row["id"]), title=row["title"], content=row["content"], content_hash=row["content_hash"], created_at=row["created_at"], updated_at=row["updated_at"])
            matches.append(SimilarityMatch(document=document, score=score, rank=rank))

        logger.debug("[STORE] Similarity search returned %d/%d candidates (k=%d).", len(matches), len(rows), k)
        return matches


    @staticmethod
    def _tie_group_cut(rows: list[Row], k: int, limit: int) -> bool:
        """True when a full window ends inside the tie group of the k-th candidate."""
        if len(rows) < limit or len(rows) <= k:
            return False
        distances = sorted(float(row["_distance"]) for row in rows)
        return distances[-1] - distances[k - 1] <= _TIE_EPSILON


    def clear_documents(self) -> int:
        """Delete every document (full-replace ingestion policy).  Returns rows removed."""
        table = self._require(self.documents)
        with self._write_lock, _store_errors("document clear"):
            removed = table.count_rows()
            if removed:
                table.delete("id >= 0")
        logger.info("[STORE] Cleared %d document(s) from '%s'.", removed, self._documents_name)
        return removed


    def count_documents(self) -> int:
        """Return the number of stored documents (0 before ``ensure_schema``)."""
        if self.documents is None:
            return 0
        with _store_errors("count"):
            return self.documents.count_rows()

    # ══════════════════════════════════════════════════════════════════
    #  QUERY HISTORY
    # ══════════════════════════════════════════════════════════════════

    def append_query_record(self, user_id: str, question: str, answer: str) -> int:
        """Append one interaction to the history log and return its id."""
        table = self._require(self.history)
        with self._write_lock, _store_errors("history append"):
            record_id = self._next_record_id
            self._next_record_id += 1
            row: Row = {"id": record_id, "user_id": user_id, "question": question, "answer": answer, "asked_at": _utcnow()}
            table.add(pa.Table.from_pylist([row], schema=HISTORY_SCHEMA))
        return record_id


    def get_history(self, user_id: str, limit: int) -> list[QueryRecord]:
        """Return *user_id*'s records, most recent first, at most *limit*."""
        if limit < 1:
            raise InvalidInput(f"limit must be >= 1, got {limit}")
        table = self._require(self.history)

        predicate = f"user_id = {_sql_literal(user_id)}"
        with _store_errors("history read"):
            data = table.search().where(predicate).select(_HISTORY_COLUMNS).limit(None).to_arrow()

        data = data.sort_by([("asked_at", "descending"), ("id", "descending")]).slice(0, limit)

        return [QueryRecord(id=int(row["id"]), user_id=row["user_id"], question=row["question"], answer=row["answer"], asked_at=row["asked_at"]) for row in data.to_pylist()]

    # ══════════════════════════════════════════════════════════════════
    #  MAINTENANCE
    # ══════════════════════════════════════════════════════════════════

    def drop_tables(self) -> None:
        """Drop both tables (CLI ``--drop``).  Call ``ensure_schema`` again afterwards."""
        with self._schema_lock, _store_errors("drop"):
            existing = self.db.table_names()
            for name in (self._documents_name, self._history_name):
                if name in existing:
                    self.db.drop_table(name)
                    logger.info("Dropped table '%s'.", name)
                else:
                    logger.warning("Table '%s' does not exist — nothing to drop.", name)
            self.documents = None
            self.history = None


    def __repr__(self) -> str:
        return f"KnowledgeStore(db='{self._db_path}', documents='{self._documents_name}', rows={self.count_documents()})"
