from datetime import datetime, timezone
from unittest.mock import MagicMock

import lancedb
import pyarrow as pa
import pytest

from askbase.src.core.errors import DimensionMismatch, InvalidDocument, InvalidInput, StoreUnavailable
from askbase.src.database.vector_store import KnowledgeStore, content_hash, document_schema

DIM = 384


def _unit(axis):
    vector = [0.0] * DIM
    vector[axis] = 1.0
    return vector


def _add(store, embedder, title, content, **kwargs):
    return store.upsert_document(title, content, embedder.embed(content), **kwargs)


def test_ensure_schema_is_idempotent(store):
    """Calling ensure_schema again changes nothing and raises nothing."""
    documents_schema = store.documents.schema
    history_schema = store.history.schema

    first = store.ensure_schema()
    second = store.ensure_schema()

    assert first == second
    assert first.dimension == DIM
    assert store.documents.schema == documents_schema
    assert store.history.schema == history_schema


def test_schema_on_empty_corpus_falls_back(store):
    """The IVF_PQ index cannot be trained on an empty table; bootstrap still succeeds."""
    state = store.ensure_schema()
    assert state.vector_index in {"btree", "none"}


def test_index_fallback_when_vector_index_fails(tmp_path):
    store = KnowledgeStore(db_path=str(tmp_path / "db"), dimension=DIM, ann_min_rows=1)
    table = MagicMock()
    table.count_rows.return_value = 10
    table.create_index.side_effect = RuntimeError("not enough rows to train PQ")

    assert store._ensure_indexes(table) == "btree"
    table.create_scalar_index.assert_called_once_with("id", replace=True)


def test_index_fallback_failure_is_not_fatal(tmp_path):
    store = KnowledgeStore(db_path=str(tmp_path / "db"), dimension=DIM, ann_min_rows=1)
    table = MagicMock()
    table.count_rows.return_value = 10
    table.create_index.side_effect = RuntimeError("boom")
    table.create_scalar_index.side_effect = RuntimeError("boom again")

    assert store._ensure_indexes(table) == "none"


def test_vector_index_built_when_large_enough(tmp_path):
    store = KnowledgeStore(db_path=str(tmp_path / "db"), dimension=DIM, ann_min_rows=5)
    table = MagicMock()
    table.count_rows.return_value = 500

    assert store._ensure_indexes(table) == "ivf_pq"
    table.create_scalar_index.assert_not_called()


def test_existing_table_with_other_dimension_is_rejected(tmp_path, store):
    other = KnowledgeStore(db_path=str(tmp_path / "lancedb"), dimension=8)
    with pytest.raises(DimensionMismatch):
        other.ensure_schema()


def test_operations_before_schema_raise_store_unavailable(tmp_path):
    fresh = KnowledgeStore(db_path=str(tmp_path / "fresh"), dimension=DIM)
    assert fresh.count_documents() == 0
    with pytest.raises(StoreUnavailable):
        fresh.top_k_similar([1.0] + [0.0] * (DIM - 1), 3)
    with pytest.raises(StoreUnavailable):
        fresh.append_query_record("u1", "q", "a")


def test_top_k_on_empty_corpus_returns_nothing(store, embedder):
    assert store.top_k_similar(embedder.embed("what are cats"), 5) == []


def test_top_k_bounds_and_ordering(store, embedder):
    _add(store, embedder, "Cats", "cats are mammals")
    _add(store, embedder, "Dogs", "dogs are loyal mammals")
    _add(store, embedder, "Stars", "stars burn hydrogen")
    query = embedder.embed("are cats mammals")

    two = store.top_k_similar(query, 2)
    everything = store.top_k_similar(query, 10)

    assert len(two) == 2
    assert len(everything) == 3
    assert [m.rank for m in everything] == [1, 2, 3]
    scores = [m.score for m in everything]
    assert scores == sorted(scores, reverse=True)
    assert everything[0].document.title == "Cats"
    assert everything[0].document.content == "cats are mammals"


def test_exact_match_scores_near_one(store, embedder):
    _add(store, embedder, "Cats", "cats are mammals")
    [match] = store.top_k_similar(embedder.embed("cats are mammals"), 1)
    assert match.score == pytest.approx(1.0, abs=1e-4)


def test_ties_broken_by_lower_id(store, embedder):
    first = _add(store, embedder, "A", "alpha beta")
    second = _add(store, embedder, "B", "alpha beta")
    query = embedder.embed("alpha beta")

    assert [m.document.id for m in store.top_k_similar(query, 2)] == [first, second]
    assert [m.document.id for m in store.top_k_similar(query, 1)] == [first]


def test_k_must_be_positive(store, embedder):
    with pytest.raises(InvalidInput):
        store.top_k_similar(embedder.embed("cats"), 0)


def test_dimension_mismatch_on_query_and_upsert(store):
    with pytest.raises(DimensionMismatch):
        store.top_k_similar([0.5, 0.5], 3)
    with pytest.raises(DimensionMismatch):
        store.upsert_document("T", "content", [0.1] * (DIM + 1))
    assert store.count_documents() == 0


def test_empty_content_is_invalid(store):
    with pytest.raises(InvalidDocument):
        store.upsert_document("T", "  ", [0.0] * DIM)


def test_ids_are_monotonic_and_survive_reopen(tmp_path, embedder):
    path = str(tmp_path / "db")
    store = KnowledgeStore(db_path=path, dimension=DIM)
    store.ensure_schema()
    ids = [_add(store, embedder, None, text) for text in ("one fish", "two fish")]

    reopened = KnowledgeStore(db_path=path, dimension=DIM)
    reopened.ensure_schema()
    assert ids == [1, 2]
    assert _add(reopened, embedder, None, "red fish") == 3


def test_dedup_key_updates_in_place(store, embedder):
    first = _add(store, embedder, "Old title", "cats are mammals", dedup_key=True)
    second = _add(store, embedder, "New title", "cats are mammals", dedup_key=True)

    assert first == second
    assert store.count_documents() == 1
    [match] = store.top_k_similar(embedder.embed("cats"), 5)
    assert match.document.title == "New title"
    assert match.document.content_hash == content_hash("cats are mammals")


def test_without_dedup_key_duplicates_are_inserted(store, embedder):
    _add(store, embedder, "T", "cats are mammals")
    _add(store, embedder, "T", "cats are mammals")
    assert store.count_documents() == 2


def test_clear_documents(store, embedder):
    _add(store, embedder, "T", "cats are mammals")
    _add(store, embedder, "U", "dogs bark")

    assert store.clear_documents() == 2
    assert store.count_documents() == 0
    assert store.clear_documents() == 0


def test_history_most_recent_first_and_capped(store):
    for i in range(4):
        store.append_query_record("alice", f"question {i}", f"answer {i}")
    store.append_query_record("bob", "bob's question", "bob's answer")

    records = store.get_history("alice", 3)

    assert [r.question for r in records] == ["question 3", "question 2", "question 1"]
    assert all(r.user_id == "alice" for r in records)
    assert [r.question for r in store.get_history("bob", 50)] == ["bob's question"]
    assert store.get_history("carol", 50) == []


def test_history_user_id_with_quote(store):
    store.append_query_record("o'brien", "q", "a")
    assert len(store.get_history("o'brien", 10)) == 1


def test_history_limit_must_be_positive(store):
    with pytest.raises(InvalidInput):
        store.get_history("alice", 0)


def test_drop_tables_then_recreate(store, embedder):
    _add(store, embedder, "T", "cats are mammals")
    store.drop_tables()
    assert store.documents is None

    store.ensure_schema()
    assert store.count_documents() == 0


def test_writes_from_another_connection_are_visible(tmp_path, store):
    """A server-side store sees rows committed by a separate process-level connection (the setup CLI)."""
    other = lancedb.connect(str(tmp_path / "lancedb"))
    now = datetime.now(timezone.utc)
    row = {"id": 1, "title": "T1", "content": "cats are mammals", "content_hash": content_hash("cats are mammals"), "vector": _unit(0), "created_at": now, "updated_at": now}
    other.open_table("documents").add(pa.Table.from_pylist([row], schema=document_schema(DIM)))

    assert store.count_documents() == 1
    [match] = store.top_k_similar(_unit(0), 5)
    assert match.document.title == "T1"


def test_tie_group_beyond_fetch_window_keeps_lowest_id(store):
    """An in-place update moves id 1 to the end of the scan order; it still wins the tie."""
    vector = _unit(0)
    ids = [store.upsert_document(title, content, vector) for title, content in (("A", "alpha"), ("B", "beta"), ("C", "gamma"))]
    store.upsert_document("A v2", "alpha", vector, dedup_key=True)

    assert [m.document.id for m in store.top_k_similar(vector, 1)] == [ids[0]]
    assert [m.document.id for m in store.top_k_similar(vector, 2)] == ids[:2]


@pytest.mark.parametrize(("distances", "limit", "expected"), [
    ([0.1, 0.1], 2, True),
    ([0.1, 0.3], 2, False),
    ([0.1, 0.1], 4, False),
    ([0.1], 2, False),
])
def test_tie_group_cut(distances, limit, expected):
    rows = [{"_distance": d} for d in distances]
    assert KnowledgeStore._tie_group_cut(rows, 1, limit) is expected


def test_failed_in_place_update_keeps_previous_row(store):
    doc_id = store.upsert_document("Old title", "cats are mammals", _unit(0), dedup_key=True)
    real_table = store.documents
    store.documents = MagicMock(wraps=real_table)
    store.documents.merge_insert.side_effect = OSError("disk full")

    with pytest.raises(StoreUnavailable):
        store.upsert_document("New title", "cats are mammals", _unit(1), dedup_key=True)

    store.documents = real_table
    assert store.count_documents() == 1
    [match] = store.top_k_similar(_unit(0), 1)
    assert match.document.id == doc_id
    assert match.document.title == "Old title"


def test_failed_insert_does_not_consume_an_id(store):
    real_table = store.documents
    store.documents = MagicMock(wraps=real_table)
    store.documents.add.side_effect = OSError("disk full")

    with pytest.raises(StoreUnavailable):
        store.upsert_document("T", "cats are mammals", _unit(0))

    store.documents = real_table
    assert store.upsert_document("T", "cats are mammals", _unit(0)) == 1


def test_history_read_filters_in_lancedb(store):
    for i in range(3):
        store.append_query_record("alice", f"question {i}", f"answer {i}")
    store.append_query_record("bob", "bob's question", "bob's answer")
    store.history = MagicMock(wraps=store.history)

    records = store.get_history("alice", 2)

    assert [r.question for r in records] == ["question 2", "question 1"]
    store.history.to_arrow.assert_not_called()
    store.history.search.assert_called_once_with()


def test_history_indexes_are_best_effort():
    table = MagicMock()
    assert KnowledgeStore._ensure_history_indexes(table) == ["user_id", "asked_at"]

    table.create_scalar_index.side_effect = RuntimeError("empty table")
    assert KnowledgeStore._ensure_history_indexes(table) == []
