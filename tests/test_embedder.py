import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import numpy as np
import pytest

from askbase.src.core.embedder import EmbeddingService, HashingEmbeddings, build_embeddings, l2_normalize
from askbase.src.core.errors import EmbeddingError, ModelUnavailable

DIM = 384


def test_embedding_is_deterministic(embedder):
    """Same text, same model → identical vectors."""
    first = embedder.embed("cats are mammals")
    second = embedder.embed("cats are mammals")

    assert len(first) == DIM
    assert np.max(np.abs(np.array(first) - np.array(second))) < 1e-6


def test_embedding_is_unit_length(embedder):
    vector = embedder.embed("Neural networks are computing systems")
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-9)


def test_shared_vocabulary_gives_positive_similarity(embedder):
    doc = np.array(embedder.embed("cats are mammals"))
    query = np.array(embedder.embed("what are cats"))
    unrelated = np.array(embedder.embed("quantum chromodynamics lattice"))

    assert float(doc @ query) > 0
    assert float(doc @ query) > float(doc @ unrelated)


def test_empty_text_is_rejected_before_loading(embedder):
    with pytest.raises(EmbeddingError):
        embedder.embed("   ")
    assert embedder.load_count == 0
    assert not embedder.is_loaded


def test_oversized_text_is_rejected():
    service = EmbeddingService(factory=lambda: HashingEmbeddings(size=DIM), max_chars=10)
    with pytest.raises(EmbeddingError):
        service.embed("this text is far longer than ten characters")


def test_text_without_tokens_is_rejected(embedder):
    with pytest.raises(EmbeddingError):
        embedder.embed("?!...")


def test_failed_load_raises_model_unavailable_and_is_retried():
    factory = MagicMock(side_effect=[RuntimeError("weights missing"), HashingEmbeddings(size=DIM)])
    service = EmbeddingService(factory=factory)

    with pytest.raises(ModelUnavailable):
        service.embed("hello world")

    assert len(service.embed("hello world")) == DIM
    assert service.load_count == 2


def test_backend_failure_becomes_embedding_error():
    model = MagicMock()
    model.embed_query.side_effect = ValueError("input too long for model")
    service = EmbeddingService(factory=lambda: model)

    with pytest.raises(EmbeddingError):
        service.embed("hello")


def test_concurrent_first_calls_load_model_once():
    """N simultaneous first callers trigger exactly one load."""
    started = threading.Event()

    def slow_factory():
        started.set()
        time.sleep(0.2)
        return HashingEmbeddings(size=DIM)

    service = EmbeddingService(factory=slow_factory)

    with ThreadPoolExecutor(max_workers=8) as pool:
        vectors = list(pool.map(service.embed, ["what are cats"] * 8))

    assert started.is_set()
    assert service.load_count == 1
    assert all(vector == vectors[0] for vector in vectors)


def test_embed_many_matches_single_embeds(embedder):
    texts = ["cats are mammals", "dogs are mammals too"]
    batch = embedder.embed_many(texts)

    assert batch == [embedder.embed(text) for text in texts]
    assert embedder.embed_many([]) == []


def test_dimension_probe(embedder):
    assert embedder.warm_up() == DIM
    assert embedder.load_count == 1


def test_l2_normalize_leaves_zero_vector():
    assert l2_normalize([0.0, 0.0]) == [0.0, 0.0]
    assert l2_normalize([3.0, 4.0]) == pytest.approx([0.6, 0.8])


def test_build_embeddings_hash_provider():
    model = build_embeddings(provider="hash", dimension=16)
    assert isinstance(model, HashingEmbeddings)
    assert len(model.embed_query("hello")) == 16


def test_build_embeddings_unknown_provider():
    with pytest.raises(ValueError):
        build_embeddings(provider="carrier-pigeon")
