"""
askbase - RAG Engine
======================
Orchestrates the question-answering path: embed → retrieve → compose
→ record.

Architecture (OOP)
------------------
``AnswerStrategy``
    Turns the ranked matches into the answer text.  Two
    implementations:

    ``ContextFormatter``
        Always available.  Renders each match as a ranked block with
        its similarity percentage, title and content.
    ``GeminiSynthesizer``
        Asks Gemini (via LangChain) to write a natural-language answer
        from the same context.  Any failure falls back to the
        formatted context, so synthesis never breaks a request.

    ``build_answer_strategy`` picks the synthesizer only when
    ``GOOGLE_API_KEY`` is configured.

``RAGManager``
    Stateless pipeline orchestrator.  Flow:
        1. Validate → reject blank questions before any model work
        2. Embed → worker thread, bounded by ``EMBED_TIMEOUT_SECONDS``
        3. Retrieve → top-K cosine search, bounded by ``STORE_TIMEOUT_SECONDS``
        4. Compose → sentinel when nothing matched, else the strategy
        5. Record → append the QueryRecord (strict unless best-effort)
        6. Return answer

Concurrency
-----------
- ``RAGManager`` holds no request-scoped state — safe for concurrent use.
- Blocking embedder/store calls run via ``asyncio.to_thread``.  The
  embed and search calls are bounded; a timeout surfaces as a retryable
  error and the read-only worker thread is left to finish on its own.

Usage:
    from askbase.src.core.rag_engine import RAGManager
    rag = RAGManager(store, embedder)
    answer = await rag.ask_question("what are cats", "user-123")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from typing import Protocol, TypeVar, runtime_checkable

from askbase.config.prompt_templates import CONTEXT_HEADER, MATCH_SEPARATOR, MATCH_TEMPLATE, NO_CONTEXT_RESPONSE, SYNTHESIS_PROMPT_TEMPLATE, SYSTEM_PROMPT, UNTITLED_PLACEHOLDER
from askbase.config.settings import settings
from askbase.src.core.embedder import EmbeddingService
from askbase.src.core.errors import AskbaseError, EmbeddingError, HistoryWriteError, InvalidInput, StoreUnavailable
from askbase.src.database.vector_store import KnowledgeStore, SimilarityMatch
from askbase.src.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# ══════════════════════════════════════════════════════════════════════
#  ANSWER STRATEGIES
# ══════════════════════════════════════════════════════════════════════


def format_context(matches: Sequence[SimilarityMatch]) -> str:
    """Render matches as ranked, separated passage blocks."""
    if not matches:
        return NO_CONTEXT_RESPONSE

    blocks = [MATCH_TEMPLATE.format(rank=match.rank, similarity=match.score * 100, title=match.document.title or UNTITLED_PLACEHOLDER, content=match.document.content) for match in matches]
    return CONTEXT_HEADER + MATCH_SEPARATOR.join(blocks)


@runtime_checkable
class AnswerStrategy(Protocol):
    """Anything that can turn retrieved matches into an answer."""

    async def compose(self, question: str, matches: Sequence[SimilarityMatch]) -> str: ...


class ContextFormatter:
    """Returns the formatted passages verbatim."""

    async def compose(self, question: str, matches: Sequence[SimilarityMatch]) -> str:
        return format_context(matches)


class GeminiSynthesizer:
    """
    Generative answers from the retrieved context.

    Parameters
    ----------
    llm
        A LangChain chat model exposing ``ainvoke``.  Defaults to
        ``ChatGoogleGenerativeAI`` built from settings.
    """

    __slots__ = ("_llm",)

    def __init__(self, llm: object | None = None) -> None:
        self._llm = llm or self._init_llm()


    @staticmethod
    def _init_llm() -> object:
        """Initialise the Gemini LLM via LangChain."""
        from langchain_google_genai import ChatGoogleGenerativeAI

        if settings.GOOGLE_API_KEY is None:
            raise ValueError("GOOGLE_API_KEY is not configured.")
        llm = ChatGoogleGenerativeAI(model=settings.LLM_MODEL, temperature=settings.LLM_TEMPERATURE, max_output_tokens=settings.LLM_MAX_TOKENS, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())
        logger.info("LLM initialised: %s (temperature=%.1f)", settings.LLM_MODEL, settings.LLM_TEMPERATURE)
        return llm


    async def compose(self, question: str, matches: Sequence[SimilarityMatch]) -> str:
        context = format_context(matches)
        prompt = SYNTHESIS_PROMPT_TEMPLATE.format(context=context, question=question)

        t_llm = time.perf_counter()
        try:
            from langchain_core.messages import HumanMessage, SystemMessage

            response = await self._llm.ainvoke([SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)])  # type: ignore[attr-defined]
        except Exception:
            logger.exception("[RAG] Answer synthesis failed — falling back to raw context.")
            return context

        answer = self._message_text(response)
        logger.info("[RAG] LLM response: %.1fms (%d chars)", (time.perf_counter() - t_llm) * 1000, len(answer))
        if not answer.strip():
            logger.warning("[RAG] LLM returned an empty answer — falling back to raw context.")
            return context
        return answer


    @staticmethod
    def _message_text(response: object) -> str:
        content = getattr(response, "content", response)
        if isinstance(content, list):
            return "".join(part if isinstance(part, str) else str(part.get("text", "")) for part in content)
        return str(content)


def build_answer_strategy() -> AnswerStrategy:
    """Gemini synthesis when configured and importable, raw context otherwise."""
    if settings.GOOGLE_API_KEY is None:
        logger.info("[RAG] GOOGLE_API_KEY not set — answers are raw formatted passages.")
        return ContextFormatter()
    try:
        return GeminiSynthesizer()
    except Exception as exc:
        logger.warning("[RAG] Answer synthesis unavailable (%s) — using raw formatted passages.", exc)
        return ContextFormatter()


# ══════════════════════════════════════════════════════════════════════
#  RAG MANAGER
# ══════════════════════════════════════════════════════════════════════


class RAGManager:
    """
    Answers questions against the knowledge base and logs each one.

    Parameters
    ----------
    vector_store
        An initialised ``KnowledgeStore``.
    embedder
        The shared ``EmbeddingService``.
    answer_strategy
        Optional ``AnswerStrategy``; defaults to ``build_answer_strategy()``.
    top_k
        Passages per question.  Defaults to ``settings.TOP_K``.
    embed_timeout, store_timeout
        Per-call timeouts in seconds.
    history_best_effort
        Log (instead of raise) when the history write fails.

    Only the embedding and search calls are bounded by a timeout.  The
    history append runs to completion, so a ``HistoryWriteError`` never
    reports a record that was in fact persisted.
    """

    __slots__ = ("_store", "_embedder", "_answerer", "_top_k", "_embed_timeout", "_store_timeout", "_history_best_effort")

    def __init__(self, vector_store: KnowledgeStore, embedder: EmbeddingService, answer_strategy: AnswerStrategy | None = None, top_k: int | None = None, embed_timeout: float | None = None, store_timeout: float | None = None, history_best_effort: bool | None = None) -> None:
        self._store = vector_store
        self._embedder = embedder
        self._answerer = answer_strategy or build_answer_strategy()
        self._top_k = top_k or settings.TOP_K
        self._embed_timeout = embed_timeout or settings.EMBED_TIMEOUT_SECONDS
        self._store_timeout = store_timeout or settings.STORE_TIMEOUT_SECONDS
        self._history_best_effort = settings.HISTORY_BEST_EFFORT if history_best_effort is None else history_best_effort


    async def ask_question(self, question: str, user_id: str) -> str:
        """
        Full retrieval pipeline for one question.

        Raises
        ------
        InvalidInput
            Blank question or missing user id.
        ModelUnavailable, EmbeddingError
            The question could not be embedded (retryable).
        DimensionMismatch
            Embedder and store disagree on vector width.
        StoreUnavailable
            The similarity search failed or timed out (retryable).
        HistoryWriteError
            The interaction could not be recorded (retryable).
        """
        # ── 1. Validate ───────────────────────────────────────────────
        if not isinstance(question, str) or not question.strip():
            raise InvalidInput("Question is required.")
        if not user_id:
            raise InvalidInput("User id is required.")

        t_start = time.perf_counter()

        # ── 2. Embed ──────────────────────────────────────────────────
        embedding = await self._call(self._embedder.embed, question, timeout=self._embed_timeout, on_timeout=EmbeddingError(f"Embedding timed out after {self._embed_timeout:.1f}s."))
        embed_ms = (time.perf_counter() - t_start) * 1000

        # ── 3. Retrieve ───────────────────────────────────────────────
        t_search = time.perf_counter()
        matches = await self._call(self._store.top_k_similar, embedding, self._top_k, timeout=self._store_timeout, on_timeout=StoreUnavailable(f"Similarity search timed out after {self._store_timeout:.1f}s."))
        search_ms = (time.perf_counter() - t_search) * 1000
        logger.info("[RAG] Search: %d match(es) in %.1fms", len(matches), search_ms)

        # ── 4. Compose ────────────────────────────────────────────────
        if not matches:
            logger.warning("[RAG] No documents matched — returning the no-information answer.")
            answer = NO_CONTEXT_RESPONSE
        else:
            answer = await self._answerer.compose(question, matches)

        # ── 5. Record ─────────────────────────────────────────────────
        await self._record(user_id, question, answer)

        total_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[RAG] Pipeline total: %.1fms (embed=%.1f, search=%.1f)", total_ms, embed_ms, search_ms)

        # ── 6. Return ─────────────────────────────────────────────────
        return answer


    async def _record(self, user_id: str, question: str, answer: str) -> None:
        # Not bounded by a timeout: HistoryWriteError must mean the record was not written.
        try:
            await asyncio.to_thread(self._store.append_query_record, user_id, question, answer)
        except AskbaseError as exc:
            if self._history_best_effort:
                logger.warning("[RAG] History write failed for user '%s' (best-effort): %s", user_id, exc)
                return
            logger.error("[RAG] History write failed for user '%s': %s", user_id, exc)
            raise HistoryWriteError(f"Could not record the interaction: {exc}") from exc


    @staticmethod
    async def _call(fn: Callable[..., T], *args: object, timeout: float, on_timeout: AskbaseError) -> T:
        """Run blocking *fn* in a worker thread, converting a timeout into *on_timeout*."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("[RAG] %s", on_timeout)
            raise on_timeout from None
