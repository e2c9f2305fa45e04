"""
askbase - Application Entry Point
===================================
FastAPI application factory.  ``create_app`` wires the shared
components once per process inside the lifespan:

    1. ``KnowledgeStore.ensure_schema()`` — before any traffic.
    2. ``EmbeddingService`` — built lazily; the model loads on the
       first question (or ingestion), exactly once.
    3. ``RAGManager`` + ``HistoryReader`` — stored on ``app.state``.

Components can be injected (tests, alternative deployments); anything
not injected is built from ``settings``.

Run:
    uvicorn askbase.src.main:app --port 3000
    python -m askbase.src.main
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from askbase.config.settings import settings
from askbase.src.api.routes import register_exception_handlers, router
from askbase.src.core.embedder import EmbeddingService
from askbase.src.core.history import HistoryReader
from askbase.src.core.rag_engine import AnswerStrategy, RAGManager
from askbase.src.database.vector_store import KnowledgeStore
from askbase.src.utils.logger import get_logger

logger = get_logger(__name__)


def create_app(vector_store: KnowledgeStore | None = None, embedder: EmbeddingService | None = None, answer_strategy: AnswerStrategy | None = None) -> FastAPI:
    """Build the FastAPI app; missing components are created from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        store = vector_store or KnowledgeStore()
        await asyncio.to_thread(store.ensure_schema)

        service = embedder or EmbeddingService()
        app.state.store = store
        app.state.embedder = service
        app.state.rag = RAGManager(store, service, answer_strategy=answer_strategy)
        app.state.history = HistoryReader(store)

        logger.info("askbase ready (env=%s, embedding=%s/%s, top_k=%d).", settings.ENV, settings.EMBEDDING_PROVIDER, service.model_name, settings.TOP_K)
        yield
        logger.info("askbase shutting down.")

    app = FastAPI(title="askbase", description="Question answering over a vector knowledge base", lifespan=lifespan, docs_url="/docs" if settings.ENV == "dev" else None)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.include_router(router)
    register_exception_handlers(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("askbase.src.main:app", host="0.0.0.0", port=settings.PORT)
