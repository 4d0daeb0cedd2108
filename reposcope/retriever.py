"""Query embedding plus filtered vector search."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .concurrency import run_cancellable
from .config import RetrievalSettings
from .errors import OperationCancelled, RetrievalError
from .models import RetrievalCandidate, SearchFilters
from .orchestrator import EmbeddingOrchestrator
from .storage.vector import VectorStore, order_candidates

logger = logging.getLogger(__name__)


class Retriever:
    def __init__(
        self,
        orchestrator: EmbeddingOrchestrator,
        store: VectorStore,
        settings: Optional[RetrievalSettings] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.settings = settings or RetrievalSettings()

    def pool_size(self, k: int) -> int:
        """Candidates to fetch so re-ranking has room to reorder the top ``k``."""
        pool = min(k * self.settings.candidate_pool_factor, self.settings.max_candidates)
        return max(k, pool)

    async def search(
        self,
        query_text: str,
        k: int,
        filters: Optional[SearchFilters] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> list[RetrievalCandidate]:
        """Return up to ``k`` candidates ordered by raw similarity.

        Raises ``RetrievalError`` with stage ``embedding`` or ``store``.
        """
        if not query_text or not query_text.strip():
            raise RetrievalError("embedding", "query text is empty")
        if k <= 0:
            return []

        try:
            vector = await self.orchestrator.embed_query(query_text, cancel)
        except OperationCancelled:
            raise
        except Exception as exc:
            raise RetrievalError("embedding", str(exc)) from exc

        try:
            candidates = await run_cancellable(
                asyncio.to_thread(self.store.search, vector, k, filters), cancel
            )
        except OperationCancelled:
            raise
        except Exception as exc:
            raise RetrievalError("store", str(exc)) from exc

        logger.debug("Retrieved %d candidates for query (k=%d)", len(candidates), k)
        return order_candidates(candidates)[:k]
