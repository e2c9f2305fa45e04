import pytest

from askbase.src.core.embedder import EmbeddingService, HashingEmbeddings
from askbase.src.core.rag_engine import ContextFormatter, RAGManager
from askbase.src.database.vector_store import KnowledgeStore

DIM = 384


@pytest.fixture
def store(tmp_path):
    """A fresh, schema-ready store in a temporary LanceDB directory."""
    knowledge_store = KnowledgeStore(db_path=str(tmp_path / "lancedb"), dimension=DIM)
    knowledge_store.ensure_schema()
    return knowledge_store


@pytest.fixture
def embedder():
    """Offline embedding service backed by the hashing model."""
    return EmbeddingService(factory=lambda: HashingEmbeddings(size=DIM), model_name="hash-test")


@pytest.fixture
def rag(store, embedder):
    return RAGManager(store, embedder, answer_strategy=ContextFormatter(), top_k=5)
