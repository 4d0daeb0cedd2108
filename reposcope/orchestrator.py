# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Embedding orchestration.

The orchestrator is the only component that talks to the embedding provider.
For a set of chunks it:

1. serves cache hits,
2. deduplicates the remaining chunks by content hash and claims each hash,
3. embeds claimed texts in fixed-size batches under a concurrency budget,
   retrying failed batches with exponential backoff,
4. writes results into the cache before annotating the chunks.

Batches that exhaust their retries mark their chunks failed; that never aborts
the run. Results arriving after cancellation are neither cached nor returned.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from .concurrency import backoff_delay, check_cancelled, run_cancellable, sleep_cancellable
from .config import EmbeddingSettings
from .embeddings import EmbeddingProvider
from .errors import EmbeddingProviderError, OperationCancelled
from .models import Chunk
from .storage.cache import EmbeddingCache

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingReport:
    """Per-call counts, folded into the ingestion summary."""

    cached: int = 0
    embedded: int = 0
    failed: int = 0
    provider_calls: int = 0
    failed_batches: int = 0
    errors: list[str] = field(default_factory=list)


class EmbeddingOrchestrator:
    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache,
        settings: EmbeddingSettings,
    ):
        self.provider = provider
        self.cache = cache
        self.settings = settings
        self.dimension = settings.dimension
        self.provider_calls = 0
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        # One semaphore per event loop; scripts and tests use several asyncio.run calls.
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.settings.max_concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    def _validate(self, vectors: np.ndarray, expected_rows: int) -> np.ndarray:
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] != expected_rows:
            raise EmbeddingProviderError(
                f"Provider returned shape {vectors.shape}, expected ({expected_rows}, {self.dimension})"
            )
        if vectors.shape[1] != self.dimension:
            raise EmbeddingProviderError(
                f"Provider returned dimension {vectors.shape[1]}, expected {self.dimension}"
            )
        if not np.all(np.isfinite(vectors)):
            raise EmbeddingProviderError("Provider returned non-finite values")
        return vectors

    async def _call_provider(
        self, texts: Sequence[str], cancel: Optional[asyncio.Event]
    ) -> np.ndarray:
        async with self._get_semaphore():
            check_cancelled(cancel)
            self.provider_calls += 1
            vectors = await run_cancellable(self.provider.embed(texts), cancel)
        return self._validate(vectors, len(texts))

    async def _embed_batch(
        self,
        batch_index: int,
        texts: list[str],
        report: EmbeddingReport,
        cancel: Optional[asyncio.Event],
    ) -> Optional[np.ndarray]:
        attempts = self.settings.max_attempts
        for attempt in range(attempts):
            report.provider_calls += 1
            try:
                return await self._call_provider(texts, cancel)
            except OperationCancelled:
                raise
            except Exception as exc:
                error = (
                    exc
                    if isinstance(exc, EmbeddingProviderError)
                    else EmbeddingProviderError(f"{type(exc).__name__}: {exc}")
                )
                last_error = str(error)
                if attempt + 1 >= attempts:
                    break
                delay = backoff_delay(
                    attempt,
                    self.settings.backoff_base_seconds,
                    self.settings.backoff_max_seconds,
                )
                logger.warning(
                    "Embedding batch %d failed (attempt %d/%d), retrying in %.2fs: %s",
                    batch_index,
                    attempt + 1,
                    attempts,
                    delay,
                    error,
                )
                await sleep_cancellable(delay, cancel)

        logger.error(
            "Embedding batch %d failed after %d attempts: %s", batch_index, attempts, last_error
        )
        report.failed_batches += 1
        report.errors.append(f"batch {batch_index}: {last_error}")
        return None

    async def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        cancel: Optional[asyncio.Event] = None,
    ) -> EmbeddingReport:
        """Annotate ``chunks`` in place with embeddings or ``failed=True``.

        Raises ``OperationCancelled`` if ``cancel`` fires; claims held by this
        call are released without storing anything.
        """
        report = EmbeddingReport()
        check_cancelled(cancel)

        pending: dict[str, list[Chunk]] = defaultdict(list)
        for chunk in chunks:
            if chunk.has_embedding:
                continue
            cached = self.cache.lookup(chunk.content_hash)
            if cached is not None:
                chunk.embedding = cached
                chunk.failed = False
                report.cached += 1
            else:
                pending[chunk.content_hash].append(chunk)

        claimed: list[str] = []
        waiting: list[str] = []
        for content_hash in pending:
            if self.cache.claim(content_hash):
                claimed.append(content_hash)
            else:
                waiting.append(content_hash)

        batch_size = self.settings.batch_size
        batches = [claimed[i : i + batch_size] for i in range(0, len(claimed), batch_size)]

        async def run_batch(batch_index: int, hashes: list[str]) -> None:
            texts = [pending[h][0].text for h in hashes]
            vectors = None
            try:
                vectors = await self._embed_batch(batch_index, texts, report, cancel)
            finally:
                for row, content_hash in enumerate(hashes):
                    if vectors is not None and not (cancel is not None and cancel.is_set()):
                        self.cache.release(content_hash, vectors[row])
                    else:
                        self.cache.release(content_hash, None)

            if cancel is not None and cancel.is_set():
                return

            for row, content_hash in enumerate(hashes):
                group = pending[content_hash]
                if vectors is None:
                    for chunk in group:
                        chunk.failed = True
                    report.failed += len(group)
                else:
                    vector = self.cache.lookup(content_hash)
                    if vector is None:
                        vector = vectors[row]
                    for chunk in group:
                        chunk.embedding = vector
                        chunk.failed = False
                    report.embedded += 1
                    report.cached += len(group) - 1

        async def wait_for(content_hash: str) -> None:
            vector = await run_cancellable(self.cache.wait(content_hash), cancel)
            group = pending[content_hash]
            if vector is None:
                for chunk in group:
                    chunk.failed = True
                report.failed += len(group)
                return
            for chunk in group:
                chunk.embedding = vector
                chunk.failed = False
            report.cached += len(group)

        tasks = [asyncio.ensure_future(run_batch(i, b)) for i, b in enumerate(batches)]
        tasks.extend(asyncio.ensure_future(wait_for(h)) for h in waiting)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for result in results:
            if isinstance(result, OperationCancelled):
                raise result
        for result in results:
            if isinstance(result, BaseException):
                raise result
        check_cancelled(cancel)

        logger.debug(
            "Embedded chunks: cached=%d embedded=%d failed=%d provider_calls=%d",
            report.cached,
            report.embedded,
            report.failed,
            report.provider_calls,
        )
        return report

    async def embed_query(
        self, text: str, cancel: Optional[asyncio.Event] = None
    ) -> np.ndarray:
        """Embed one query string into the index vector space (no retries, no cache)."""
        vectors = await self._call_provider([text], cancel)
        return vectors[0]
