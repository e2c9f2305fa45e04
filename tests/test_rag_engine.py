import asyncio
import re
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from askbase.config.prompt_templates import CONTEXT_HEADER, MATCH_SEPARATOR, NO_CONTEXT_RESPONSE
from askbase.src.core.embedder import EmbeddingService
from askbase.src.core.errors import EmbeddingError, HistoryWriteError, InvalidInput, ModelUnavailable, StoreUnavailable
from askbase.src.core.history import HistoryReader
from askbase.src.core.ingestor import IngestionPipeline
from askbase.src.core.rag_engine import ContextFormatter, GeminiSynthesizer, RAGManager, build_answer_strategy, format_context
from askbase.src.database.vector_store import Document, KnowledgeStore, SimilarityMatch

_NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _match(rank, score, title, content, doc_id=1):
    document = Document(id=doc_id, title=title, content=content, content_hash="h", created_at=_NOW, updated_at=_NOW)
    return SimilarityMatch(document=document, score=score, rank=rank)


def _ask(rag, question, user_id="user-1"):
    return asyncio.run(rag.ask_question(question, user_id))


# ── End-to-end scenarios ──────────────────────────────────────────────

def test_scenario_a_top_match_and_percentage(store, embedder, rag):
    IngestionPipeline(store, embedder).ingest([{"title": "T1", "content": "cats are mammals"}])

    answer = _ask(rag, "what are cats")

    found = re.search(r"\[Document 1 - (\d+\.\d)% match\]\n(.*)\n", answer)
    assert found is not None
    assert found.group(2) == "T1"
    assert float(found.group(1)) > 0


def test_scenario_b_empty_corpus_returns_sentinel(rag):
    assert _ask(rag, "what are cats") == NO_CONTEXT_RESPONSE


def test_scenario_c_history_after_two_questions(store, rag):
    _ask(rag, "first question", "alice")
    _ask(rag, "second question", "alice")
    _ask(rag, "someone else", "bob")

    records = HistoryReader(store).get_history("alice")

    assert [r.question for r in records] == ["second question", "first question"]
    assert all(r.answer for r in records)


def test_history_reader_caps_results(store, rag):
    for i in range(3):
        _ask(rag, f"question {i}", "alice")
    assert len(HistoryReader(store, limit=2).get_history("alice")) == 2


def test_history_reader_requires_user(store):
    with pytest.raises(InvalidInput):
        HistoryReader(store).get_history("")


# ── Validation & error propagation ────────────────────────────────────

@pytest.mark.parametrize("question", ["", "   ", "\n\t"])
def test_blank_question_rejected_before_embedding(store, question):
    embedder = MagicMock(spec=EmbeddingService)
    rag = RAGManager(store, embedder, answer_strategy=ContextFormatter())

    with pytest.raises(InvalidInput):
        _ask(rag, question)
    embedder.embed.assert_not_called()


def test_missing_user_rejected(rag):
    with pytest.raises(InvalidInput):
        _ask(rag, "what are cats", "")


def test_model_unavailable_propagates(store):
    embedder = EmbeddingService(factory=MagicMock(side_effect=OSError("no weights")))
    rag = RAGManager(store, embedder, answer_strategy=ContextFormatter())

    with pytest.raises(ModelUnavailable):
        _ask(rag, "what are cats")
    assert store.get_history("user-1", 10) == []


def test_embedding_timeout_is_retryable_error(store):
    embedder = MagicMock(spec=EmbeddingService)
    embedder.embed.side_effect = lambda text: time.sleep(0.5)
    rag = RAGManager(store, embedder, answer_strategy=ContextFormatter(), embed_timeout=0.05)

    with pytest.raises(EmbeddingError) as excinfo:
        _ask(rag, "what are cats")
    assert excinfo.value.retryable


def test_history_write_failure_fails_request(store, embedder):
    rag = RAGManager(store, embedder, answer_strategy=ContextFormatter(), history_best_effort=False)

    with patch.object(KnowledgeStore, "append_query_record", side_effect=StoreUnavailable("disk full")):
        with pytest.raises(HistoryWriteError):
            _ask(rag, "what are cats")


def test_history_write_failure_best_effort(store, embedder):
    rag = RAGManager(store, embedder, answer_strategy=ContextFormatter(), history_best_effort=True)

    with patch.object(KnowledgeStore, "append_query_record", side_effect=StoreUnavailable("disk full")):
        assert _ask(rag, "what are cats") == NO_CONTEXT_RESPONSE


def test_slow_history_write_is_not_cut_off(store, embedder):
    """The append outlives the store timeout; the request waits and the record is written once."""
    real_append = KnowledgeStore.append_query_record

    def slow_append(self, *args):
        time.sleep(0.5)
        return real_append(self, *args)

    rag = RAGManager(store, embedder, answer_strategy=ContextFormatter(), store_timeout=0.2)

    with patch.object(KnowledgeStore, "append_query_record", slow_append):
        assert _ask(rag, "what are cats") == NO_CONTEXT_RESPONSE

    assert [r.question for r in store.get_history("user-1", 10)] == ["what are cats"]


def test_top_k_is_respected(store, embedder):
    IngestionPipeline(store, embedder).ingest([{"title": f"Doc {i}", "content": f"cats fact number {i}"} for i in range(8)])
    rag = RAGManager(store, embedder, answer_strategy=ContextFormatter(), top_k=3)

    answer = _ask(rag, "cats fact")

    assert answer.count("% match]") == 3
    assert answer.count(MATCH_SEPARATOR) == 2


# ── Formatting ────────────────────────────────────────────────────────

def test_format_context_layout():
    text = format_context([_match(1, 0.8764, "Cats", "cats are mammals"), _match(2, 0.5, None, "dogs bark", doc_id=2)])

    assert text == CONTEXT_HEADER + "[Document 1 - 87.6% match]\nCats\ncats are mammals" + MATCH_SEPARATOR + "[Document 2 - 50.0% match]\nUntitled\ndogs bark"


def test_format_context_empty():
    assert format_context([]) == NO_CONTEXT_RESPONSE


# ── Answer synthesis ──────────────────────────────────────────────────

def test_synthesizer_returns_llm_answer():
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=MagicMock(content="Cats are mammals."))

    answer = asyncio.run(GeminiSynthesizer(llm=llm).compose("what are cats", [_match(1, 0.9, "T1", "cats are mammals")]))

    assert answer == "Cats are mammals."
    messages = llm.ainvoke.await_args.args[0]
    assert "cats are mammals" in messages[1].content
    assert "what are cats" in messages[1].content


def test_synthesizer_falls_back_to_context_on_failure():
    llm = MagicMock()
    llm.ainvoke = AsyncMock(side_effect=RuntimeError("quota exceeded"))
    matches = [_match(1, 0.9, "T1", "cats are mammals")]

    assert asyncio.run(GeminiSynthesizer(llm=llm).compose("what are cats", matches)) == format_context(matches)


def test_synthesizer_falls_back_on_empty_reply():
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=MagicMock(content="   "))
    matches = [_match(1, 0.9, "T1", "cats are mammals")]

    assert asyncio.run(GeminiSynthesizer(llm=llm).compose("q", matches)) == format_context(matches)


def test_synthesis_skipped_when_nothing_matches(store, embedder):
    strategy = MagicMock()
    strategy.compose = AsyncMock(return_value="should not be used")
    rag = RAGManager(store, embedder, answer_strategy=strategy)

    assert _ask(rag, "what are cats") == NO_CONTEXT_RESPONSE
    strategy.compose.assert_not_awaited()


def test_build_answer_strategy_without_key():
    with patch("askbase.src.core.rag_engine.settings") as fake_settings:
        fake_settings.GOOGLE_API_KEY = None
        assert isinstance(build_answer_strategy(), ContextFormatter)
