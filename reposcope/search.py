# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Query path for RepoScope: Retriever -> Reranker -> Stitcher.

Failures surface as ``RetrievalError`` with the failing stage; no partial
results are returned.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .concurrency import check_cancelled
from .errors import OperationCancelled, RetrievalError
from .models import RetrievalResult, SearchFilters, StitchedBlock
from .reranker import Reranker
from .retriever import Retriever
from .stitcher import Stitcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryResponse:
    result: RetrievalResult
    blocks: tuple[StitchedBlock, ...]

    def to_dict(self) -> dict:
        return {
            "query": self.result.query,
            "results": [
                {
                    "file_path": r.ref.file_path,
                    "start_line": r.ref.start_line,
                    "end_line": r.ref.end_line,
                    "part": r.ref.part,
                    "language": r.ref.language,
                    "chunk_kind": r.ref.chunk_kind.value,
                    "raw_score": r.raw_score,
                    "final_score": r.final_score,
                    "text": r.text,
                }
                for r in self.result.results
            ],
            "blocks": [b.to_dict() for b in self.blocks],
        }


class QueryPipeline:
    def __init__(self, retriever: Retriever, reranker: Reranker, stitcher: Stitcher):
        self.retriever = retriever
        self.reranker = reranker
        self.stitcher = stitcher

    async def query(
        self,
        query_text: str,
        k: int = 10,
        filters: Optional[SearchFilters] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> QueryResponse:
        """Return the top ``k`` ranked chunks and their stitched blocks."""
        try:
            candidates = await self.retriever.search(
                query_text, self.retriever.pool_size(k), filters, cancel
            )
            check_cancelled(cancel)
            try:
                ranked = self.reranker.rerank(query_text, candidates)[:k]
            except Exception as exc:
                raise RetrievalError("rerank", str(exc)) from exc
        except RetrievalError as exc:
            logger.error("Query failed at stage %s: %s", exc.stage, exc)
            raise
        except OperationCancelled:
            logger.info("Query cancelled")
            raise

        result = RetrievalResult(query=query_text, results=tuple(ranked))
        blocks = tuple(self.stitcher.stitch(ranked))
        logger.info(
            "Query returned %d chunks in %d blocks (pool=%d)",
            len(result),
            len(blocks),
            len(candidates),
        )
        return QueryResponse(result=result, blocks=blocks)
