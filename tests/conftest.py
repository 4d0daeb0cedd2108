# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for RepoScope tests.
"""

import hashlib
import json
import shutil
import tempfile
from pathlib import Path

import numpy as np
import pytest
from numpy.random import default_rng

import reposcope.config as reposcope_config
import reposcope.server as reposcope_server
from reposcope.config import ChunkingSettings, EmbeddingSettings, RetrievalSettings
from reposcope.embeddings import CallableEmbeddingProvider, EmbeddingProvider
from reposcope.errors import EmbeddingProviderError
from reposcope.orchestrator import EmbeddingOrchestrator
from reposcope.storage.cache import EmbeddingCache
from reposcope.storage.vector import InMemoryVectorStore

TEST_DIM = 16


def hashed_vectors(texts, dim=TEST_DIM):
    """Deterministic unit vectors seeded from each text's sha256."""
    embeddings = np.empty((len(texts), dim), dtype="float32")
    for i, text in enumerate(texts):
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        # Use int from digest to seed a local RNG; avoid global np.random state
        seed_int = int.from_bytes(digest[:8], "big", signed=False)
        rng = default_rng(seed_int)
        embeddings[i] = rng.standard_normal(dim).astype("float32")

    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / (norms + 1e-8)


class CountingProvider(EmbeddingProvider):
    """Records every batch it is asked to embed."""

    name = "counting"

    def __init__(
        self, dimension=TEST_DIM, fail_times=0, always_fail=False, error=EmbeddingProviderError
    ):
        super().__init__(dimension)
        self.calls = []
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.error = error

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.always_fail or len(self.calls) <= self.fail_times:
            raise self.error("provider unavailable")
        return hashed_vectors(texts, self.dimension)

    @property
    def texts_embedded(self):
        return [t for batch in self.calls for t in batch]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def dummy_embed_fn():
    """Create a deterministic embedding function for testing."""

    def embed_fn(texts):
        return hashed_vectors(texts)

    return embed_fn


@pytest.fixture
def chunking_settings():
    return ChunkingSettings(
        max_chunk_tokens=150,
        overlap_lines=5,
        max_overlap_lines=20,
        max_chunk_lines=200,
        attach_gap_lines=5,
        tokenizer="words",
    )


@pytest.fixture
def embedding_settings():
    return EmbeddingSettings(
        provider="callable",
        model="test-model",
        dimension=TEST_DIM,
        batch_size=4,
        max_concurrency=2,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
    )


@pytest.fixture
def retrieval_settings():
    return RetrievalSettings()


@pytest.fixture
def counting_provider():
    return CountingProvider()


@pytest.fixture
def embedding_cache():
    return EmbeddingCache(TEST_DIM)


@pytest.fixture
def orchestrator(counting_provider, embedding_cache, embedding_settings):
    return EmbeddingOrchestrator(counting_provider, embedding_cache, embedding_settings)


@pytest.fixture
def memory_store():
    return InMemoryVectorStore(TEST_DIM)


@pytest.fixture
def callable_provider(dummy_embed_fn):
    return CallableEmbeddingProvider(dummy_embed_fn, TEST_DIM)


@pytest.fixture
def test_repo_path(temp_dir):
    """Create a temporary repository with sample files."""
    repo_path = temp_dir / "test_repo"
    repo_path.mkdir(parents=True, exist_ok=True)

    (repo_path / "main.py").write_text('''
def hello_world():
    """Say hello to the world."""
    print("Hello, World!")


class Calculator:
    """Simple calculator class."""

    def add(self, a, b):
        """Add two numbers."""
        return a + b

    def subtract(self, a, b):
        """Subtract b from a."""
        return a - b


if __name__ == "__main__":
    hello_world()
''')

    (repo_path / "utils.py").write_text('''
def process_data(data):
    """Process input data."""
    result = []
    for item in data:
        result.append(item.strip())
    return result


def validate_input(value):
    """Validate user input."""
    if not value:
        raise ValueError("Value cannot be empty")
    return True
''')

    subdir = repo_path / "lib"
    subdir.mkdir()
    (subdir / "notes.txt").write_text("Plain notes about the helper library.\n")

    yield repo_path


@pytest.fixture
def test_config_file(temp_dir, test_repo_path):
    """Write a memory-backed config file and return its path."""
    config_path = temp_dir / "config.json"
    config_data = {
        "server": {"log_level": "DEBUG"},
        "admin": {
            "enabled": True,
            "host": "127.0.0.1",
            "port": 8765,
            "api_key": "top-secret",
            "allowed_ips": ["127.0.0.1", "testclient"],
        },
        "repositories": {"test_repo": str(test_repo_path)},
        "index": {"path": str(temp_dir / ".test_index"), "backend": "memory"},
        "embeddings": {
            "provider": "callable",
            "model": "test-model",
            "dimension": TEST_DIM,
            "batch_size": 8,
            "backoff_base_seconds": 0.0,
        },
        "chunking": {"tokenizer": "words", "max_chunk_tokens": 200},
        "workers": {"segment": 2},
    }
    config_path.write_text(json.dumps(config_data))
    return config_path


@pytest.fixture
def test_config(test_config_file, monkeypatch):
    """Install the test config as the global instance."""
    cfg = reposcope_config.Config(test_config_file)
    monkeypatch.setattr(reposcope_config, "_config", cfg)
    return cfg


@pytest.fixture
def service(test_config, dummy_embed_fn):
    """A memory-backed service installed as the process-wide instance."""
    svc = reposcope_server.RepoScopeService(test_config, embed_fn=dummy_embed_fn)
    reposcope_server._set_service(svc)
    yield svc
    reposcope_server._set_service(None)
