"""
askbase - API Route Definitions
=================================
REST endpoints:
  - GET  /health   → liveness probe
  - POST /ask      → answer a question for the authenticated caller
  - GET  /history  → the caller's recent questions, most recent first

Each handler is a thin controller: it resolves the caller, delegates
to ``RAGManager`` / ``HistoryReader`` (held on ``app.state``), and
shapes the response.  Core errors are mapped to stable status codes by
``register_exception_handlers``.

Identity
--------
Token verification happens upstream.  The auth layer forwards the
verified user id in the ``X-User-Id`` header; ``get_user_id`` is the
single seam to override when wiring a different identity provider.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from askbase.src.core.errors import AskbaseError
from askbase.src.core.history import HistoryReader
from askbase.src.core.rag_engine import RAGManager
from askbase.src.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


# ── Schemas ───────────────────────────────────────────────────────────

class AskRequest(BaseModel):
    question: str


class AskResponse(BaseModel):
    answer: str
    success: bool = True


class QueryRecordOut(BaseModel):
    id: int
    question: str
    answer: str
    asked_at: datetime


class HistoryResponse(BaseModel):
    queries: list[QueryRecordOut]
    success: bool = True


class ErrorResponse(BaseModel):
    error: str
    detail: str
    retryable: bool = False
    success: bool = False


# ── Dependencies ──────────────────────────────────────────────────────

def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity as forwarded by the upstream auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="unauthenticated")
    return x_user_id.strip()


def get_rag(request: Request) -> RAGManager:
    return request.app.state.rag


def get_history_reader(request: Request) -> HistoryReader:
    return request.app.state.history


# ── Routes ────────────────────────────────────────────────────────────

@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post("/ask", response_model=AskResponse, responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}})
async def ask(body: AskRequest, user_id: str = Depends(get_user_id), rag: RAGManager = Depends(get_rag)) -> AskResponse:
    logger.info("User %s asked: %.80s", user_id, body.question)
    answer = await rag.ask_question(body.question, user_id)
    return AskResponse(answer=answer)


@router.get("/history", response_model=HistoryResponse, responses={503: {"model": ErrorResponse}})
def history(user_id: str = Depends(get_user_id), reader: HistoryReader = Depends(get_history_reader)) -> HistoryResponse:
    records = reader.get_history(user_id)
    return HistoryResponse(queries=[QueryRecordOut(id=r.id, question=r.question, answer=r.answer, asked_at=r.asked_at) for r in records])


# ── Error mapping ─────────────────────────────────────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    """Map every ``AskbaseError`` to ``{error, detail, retryable, success}``."""

    @app.exception_handler(AskbaseError)
    async def _handle_askbase_error(request: Request, exc: AskbaseError) -> JSONResponse:
        level = logging.ERROR if exc.status_code >= 500 and not exc.retryable else logging.WARNING
        logger.log(level, "%s %s → %d %s: %s", request.method, request.url.path, exc.status_code, exc.tag, exc)
        payload = ErrorResponse(error=exc.tag, detail=str(exc), retryable=exc.retryable)
        return JSONResponse(status_code=exc.status_code, content=payload.model_dump())
