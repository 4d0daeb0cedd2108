import asyncio

import numpy as np
import pytest

from conftest import TEST_DIM
from reposcope import server
from reposcope.embeddings import (
    CallableEmbeddingProvider,
    create_embedding_provider,
    provider_from_settings,
)
from reposcope.errors import ConfigurationError, EmbeddingProviderError


def test_service_indexes_and_queries(service, test_repo_path):
    summary = asyncio.run(service.index_path(test_repo_path, repo_name="test_repo"))
    assert summary.status == "complete"
    assert summary.files_seen == 3

    response = asyncio.run(service.query("Calculator add", k=5))
    assert response.result.results
    assert {b.file_path for b in response.blocks} <= {"main.py", "utils.py", "lib/notes.txt"}


def test_index_repository_op_indexes_all_configured(service):
    result = asyncio.run(server.index_repository_op())
    assert set(result["repositories"]) == {"test_repo"}

    again = asyncio.run(server.index_repository_op(repo="test_repo"))
    summary = again["repositories"]["test_repo"]
    assert summary["files_unchanged"] == 3
    assert summary["provider_calls"] == 0


def test_index_repository_op_by_path(service, test_repo_path):
    result = asyncio.run(server.index_repository_op(path=str(test_repo_path)))
    assert "test_repo" in result["repositories"]


def test_index_repository_op_unknown_repo(service):
    with pytest.raises(KeyError):
        asyncio.run(server.index_repository_op(repo="nope"))


def test_query_op_returns_plain_dict(service):
    asyncio.run(server.index_repository_op())
    payload = asyncio.run(server.query_op("validate input", k=2))
    assert payload["query"] == "validate input"
    assert len(payload["results"]) <= 2
    stats = server.get_index_stats_op()
    assert stats["backend"] == "memory"
    assert stats["chunks"] > 0


def test_callable_provider_wraps_errors():
    def broken(texts):
        raise RuntimeError("model offline")

    provider = CallableEmbeddingProvider(broken, TEST_DIM)
    with pytest.raises(EmbeddingProviderError):
        asyncio.run(provider.embed(["x"]))


def test_provider_factory(dummy_embed_fn, embedding_settings):
    provider = create_embedding_provider("callable", "m", TEST_DIM, embed_fn=dummy_embed_fn)
    vectors = asyncio.run(provider.embed(["a", "b"]))
    assert vectors.shape == (2, TEST_DIM)
    assert vectors.dtype == np.float32

    with pytest.raises(ConfigurationError):
        create_embedding_provider("callable", "m", TEST_DIM)
    with pytest.raises(ConfigurationError):
        create_embedding_provider("openai", "m", TEST_DIM)

    assert isinstance(
        provider_from_settings(embedding_settings, embed_fn=dummy_embed_fn),
        CallableEmbeddingProvider,
    )
