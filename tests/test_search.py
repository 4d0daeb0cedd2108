import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import TEST_DIM, CountingProvider
from reposcope.analysis.segmenter import Segmenter
from reposcope.config import RetrievalSettings
from reposcope.errors import OperationCancelled, RetrievalError
from reposcope.indexer import IndexWriter
from reposcope.models import SearchFilters
from reposcope.orchestrator import EmbeddingOrchestrator
from reposcope.reranker import Reranker
from reposcope.retriever import Retriever
from reposcope.search import QueryPipeline
from reposcope.stitcher import Stitcher
from reposcope.storage.cache import EmbeddingCache
from reposcope.storage.vector import InMemoryVectorStore

SOURCE = {
    "src/config.rs": "".join(f"let setting_{i} = load({i});\n" for i in range(60)),
    "src/parser.rs": "fn parse_config(input: &str) -> Config {\n    todo!()\n}\n",
    "docs/guide.md": "How to parse a config file.\n",
}


@pytest.fixture
def indexed(chunking_settings, embedding_settings, dummy_embed_fn):
    provider = CountingProvider()
    orchestrator = EmbeddingOrchestrator(provider, EmbeddingCache(TEST_DIM), embedding_settings)
    store = InMemoryVectorStore(TEST_DIM)
    segmenter = Segmenter(chunking_settings)
    chunks = []
    for path, text in SOURCE.items():
        language = "rust" if path.endswith(".rs") else "markdown"
        chunks.extend(segmenter.segment(path, text, language))

    async def load():
        await orchestrator.embed_chunks(chunks)
        await IndexWriter(store).upsert(chunks, "rev1")

    asyncio.run(load())
    return orchestrator, store, chunks


def test_pool_size_is_bounded():
    settings = RetrievalSettings(candidate_pool_factor=5, max_candidates=30)
    retriever = Retriever(MagicMock(), MagicMock(), settings)
    assert retriever.pool_size(3) == 15
    assert retriever.pool_size(10) == 30
    assert retriever.pool_size(50) == 50


def test_retriever_returns_ordered_candidates(indexed):
    orchestrator, store, chunks = indexed
    retriever = Retriever(orchestrator, store)
    candidates = asyncio.run(retriever.search(chunks[0].text, k=3))
    assert len(candidates) == 3
    assert candidates[0].ref.content_hash == chunks[0].content_hash
    scores = [c.raw_score for c in candidates]
    assert scores == sorted(scores, reverse=True)


def test_retriever_applies_filters(indexed):
    orchestrator, store, _ = indexed
    retriever = Retriever(orchestrator, store)
    candidates = asyncio.run(
        retriever.search("parse config", k=10, filters=SearchFilters(language="markdown"))
    )
    assert [c.ref.file_path for c in candidates] == ["docs/guide.md"]


def test_empty_query_is_rejected(indexed):
    orchestrator, store, _ = indexed
    with pytest.raises(RetrievalError) as excinfo:
        asyncio.run(Retriever(orchestrator, store).search("   ", k=5))
    assert excinfo.value.stage == "embedding"


def test_query_pipeline_end_to_end(indexed):
    orchestrator, store, _ = indexed
    pipeline = QueryPipeline(Retriever(orchestrator, store), Reranker(), Stitcher())

    response = asyncio.run(pipeline.query("parse_config", k=4))

    assert 0 < len(response.result) <= 4
    finals = [r.final_score for r in response.result]
    assert finals == sorted(finals, reverse=True)
    for block in response.blocks:
        assert block.start_line <= block.end_line
    payload = response.to_dict()
    assert payload["query"] == "parse_config"
    assert len(payload["results"]) == len(response.result)


def test_store_failure_reports_store_stage(indexed):
    orchestrator, _, _ = indexed
    store = MagicMock()
    store.search.side_effect = RuntimeError("table missing")
    reranker = MagicMock()
    stitcher = MagicMock()
    pipeline = QueryPipeline(Retriever(orchestrator, store), reranker, stitcher)

    with pytest.raises(RetrievalError) as excinfo:
        asyncio.run(pipeline.query("parse config", k=5))

    assert excinfo.value.stage == "store"
    reranker.rerank.assert_not_called()
    stitcher.stitch.assert_not_called()


def test_embedding_failure_reports_embedding_stage(embedding_settings, memory_store):
    provider = CountingProvider(always_fail=True)
    orchestrator = EmbeddingOrchestrator(provider, EmbeddingCache(TEST_DIM), embedding_settings)
    pipeline = QueryPipeline(Retriever(orchestrator, memory_store), Reranker(), Stitcher())

    with pytest.raises(RetrievalError) as excinfo:
        asyncio.run(pipeline.query("anything", k=5))

    assert excinfo.value.stage == "embedding"
    # Queries are not retried.
    assert len(provider.calls) == 1


def test_rerank_failure_reports_rerank_stage(indexed):
    orchestrator, store, _ = indexed
    reranker = MagicMock()
    reranker.rerank.side_effect = ValueError("bad weights")
    pipeline = QueryPipeline(Retriever(orchestrator, store), reranker, Stitcher())

    with pytest.raises(RetrievalError) as excinfo:
        asyncio.run(pipeline.query("parse config", k=5))
    assert excinfo.value.stage == "rerank"


def test_cancelled_query_raises(indexed):
    orchestrator, store, _ = indexed
    pipeline = QueryPipeline(Retriever(orchestrator, store), Reranker(), Stitcher())

    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        await pipeline.query("parse config", k=5, cancel=cancel)

    with pytest.raises(OperationCancelled):
        asyncio.run(scenario())
