"""
askbase - HistoryReader
=========================
Read-only view over the query history written by ``RAGManager``.
"""

from __future__ import annotations

from askbase.config.settings import settings
from askbase.src.core.errors import InvalidInput
from askbase.src.database.vector_store import KnowledgeStore, QueryRecord


class HistoryReader:
    """
    Per-user history, most recent first.

    Store failures (``StoreUnavailable``) propagate unchanged.
    """

    __slots__ = ("_store", "_limit")

    def __init__(self, vector_store: KnowledgeStore, limit: int | None = None) -> None:
        self._store = vector_store
        self._limit = limit or settings.HISTORY_LIMIT


    def get_history(self, user_id: str) -> list[QueryRecord]:
        if not user_id:
            raise InvalidInput("User id is required.")
        return self._store.get_history(user_id, self._limit)
