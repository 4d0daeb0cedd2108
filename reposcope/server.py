# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Process-level wiring for RepoScope.

``RepoScopeService`` builds the ingestion and query pipelines from a validated
``Config``. The admin API and the rebuild script share one lazily created
service through ``_get_service()`` and the ``*_op`` helpers.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from .analysis.segmenter import Segmenter
from .config import Config, get_config
from .embeddings import EmbeddingFn, EmbeddingProvider, provider_from_settings
from .indexer import IndexWriter, IngestionPipeline
from .models import IngestionSummary, SearchFilters
from .orchestrator import EmbeddingOrchestrator
from .reranker import Reranker, WeightedSumStrategy
from .retriever import Retriever
from .search import QueryPipeline, QueryResponse
from .snapshot import build_snapshot
from .stitcher import Stitcher
from .storage.blob import BlobStore
from .storage.cache import EmbeddingCache
from .storage.metadata import RevisionStore
from .storage.vector import VectorStore, create_vector_store

logger = logging.getLogger(__name__)


class RepoScopeService:
    """Owns the shared cache, stores and pipelines for one process."""

    def __init__(
        self,
        config: Config,
        provider: Optional[EmbeddingProvider] = None,
        store: Optional[VectorStore] = None,
        cache: Optional[EmbeddingCache] = None,
        embed_fn: Optional[EmbeddingFn] = None,
    ):
        config.validate()
        self.config = config
        chunking = config.chunking
        embeddings = config.embeddings
        retrieval = config.retrieval

        self.provider = provider or provider_from_settings(
            embeddings, config.embeddings_kwargs, embed_fn
        )
        if cache is None:
            blob_store = None
            if embeddings.cache_dir:
                blob_store = BlobStore(Path(embeddings.cache_dir).expanduser())
            cache = EmbeddingCache(
                embeddings.dimension,
                blob_store,
                namespace=f"{embeddings.provider}:{embeddings.model}",
            )
        self.cache = cache
        self.orchestrator = EmbeddingOrchestrator(self.provider, self.cache, embeddings)

        self.store = store or create_vector_store(config, embeddings.dimension)
        if config.index_backend == "memory":
            # Revision records must not outlive the vectors they describe.
            self.revisions = RevisionStore(Path(":memory:"))
        else:
            self.revisions = RevisionStore(config.revisions_db_path)
        self.writer = IndexWriter(self.store, self.revisions, config.index_write_batch_size)

        self.segmenter = Segmenter(chunking)
        self.ingestion = IngestionPipeline(
            self.segmenter,
            self.orchestrator,
            self.writer,
            segment_workers=config.segment_workers,
        )
        self.queries = QueryPipeline(
            Retriever(self.orchestrator, self.store, retrieval),
            Reranker(WeightedSumStrategy(retrieval)),
            Stitcher(retrieval.stitch_gap_lines),
        )

    async def index_path(
        self,
        repo_path: Path,
        repo_name: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
        force: bool = False,
    ) -> IngestionSummary:
        snapshot = await asyncio.to_thread(build_snapshot, repo_path, self.config, repo_name)
        return await self.ingestion.ingest(snapshot, cancel=cancel, force=force)

    async def query(
        self,
        query_text: str,
        k: int = 10,
        filters: Optional[SearchFilters] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> QueryResponse:
        return await self.queries.query(query_text, k=k, filters=filters, cancel=cancel)

    def stats(self, repo_name: Optional[str] = None) -> dict[str, Any]:
        return {
            "backend": self.config.index_backend,
            "chunks": self.store.count(),
            "cached_embeddings": len(self.cache),
            "provider_calls": self.orchestrator.provider_calls,
            "revisions": self.revisions.list_revisions(repo_name),
        }

    def close(self) -> None:
        self.store.close()
        self.revisions.close()


_service: Optional[RepoScopeService] = None


def _get_service() -> RepoScopeService:
    """Get or create the process-wide service."""
    global _service
    if _service is None:
        _service = RepoScopeService(get_config())
    return _service


def _set_service(service: Optional[RepoScopeService]) -> None:
    global _service
    if _service is not None and _service is not service:
        _service.close()
    _service = service


def configured_repositories() -> dict[str, Path]:
    return {name: Path(p).expanduser() for name, p in get_config().repositories.items()}


async def index_repository_op(
    repo: Optional[str] = None,
    path: Optional[str] = None,
    force: bool = False,
) -> dict[str, Any]:
    """Ingest one configured repository, an explicit path, or all configured repos."""
    service = _get_service()
    repos = configured_repositories()

    targets: dict[str, Path] = {}
    if path:
        repo_path = Path(path).expanduser()
        targets[repo or repo_path.resolve().name] = repo_path
    elif repo:
        if repo not in repos:
            raise KeyError(f"Unknown repository: {repo}")
        targets[repo] = repos[repo]
    else:
        targets = repos

    summaries = {}
    for name, repo_path in targets.items():
        summary = await service.index_path(repo_path, repo_name=name, force=force)
        summaries[name] = summary.to_dict()
    return {"repositories": summaries}


def get_index_stats_op(repo: Optional[str] = None) -> dict[str, Any]:
    return _get_service().stats(repo)


async def query_op(
    query: str,
    k: int = 10,
    filters: Optional[SearchFilters] = None,
) -> dict[str, Any]:
    response = await _get_service().query(query, k=k, filters=filters)
    return response.to_dict()
