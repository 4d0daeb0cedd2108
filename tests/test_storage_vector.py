from datetime import datetime

import numpy as np
import pytest

from conftest import TEST_DIM, hashed_vectors
from reposcope.models import ChunkKind, SearchFilters
from reposcope.storage.vector import (
    InMemoryVectorStore,
    LanceVectorStore,
    filters_to_where,
)


def make_row(
    row_id, path, start, end, vector, language="python", kind="function", repo_name="demo"
):
    return {
        "id": row_id,
        "vector": np.asarray(vector, dtype=np.float32),
        "file_path": path,
        "start_line": start,
        "end_line": end,
        "part": 0,
        "language": language,
        "chunk_kind": kind,
        "content_hash": f"hash-{row_id}",
        "content": f"content of {row_id}",
        "repo_name": repo_name,
        "revision": "rev1",
        "last_updated": datetime.now(),
    }


def _sample_rows():
    vecs = hashed_vectors(["alpha", "beta", "gamma"])
    return [
        make_row("r1", "src/a.py", 1, 10, vecs[0]),
        make_row("r2", "src/b.rs", 1, 20, vecs[1], language="rust", kind="block"),
        make_row("r3", "tests/t.py", 5, 9, vecs[2]),
    ], vecs


def test_memory_store_search_orders_by_similarity():
    store = InMemoryVectorStore(TEST_DIM)
    rows, vecs = _sample_rows()
    assert store.upsert(rows) == 3

    results = store.search(vecs[1], k=3)
    assert results[0].ref.file_path == "src/b.rs"
    assert results[0].raw_score == pytest.approx(1.0, abs=1e-5)
    scores = [c.raw_score for c in results]
    assert scores == sorted(scores, reverse=True)


def test_memory_store_upsert_is_idempotent():
    store = InMemoryVectorStore(TEST_DIM)
    rows, _ = _sample_rows()
    store.upsert(rows)
    store.upsert(rows)
    assert store.count() == 3


def test_memory_store_filters():
    store = InMemoryVectorStore(TEST_DIM)
    rows, vecs = _sample_rows()
    store.upsert(rows)

    python_only = store.search(vecs[1], k=10, filters=SearchFilters(language="python"))
    assert {c.ref.file_path for c in python_only} == {"src/a.py", "tests/t.py"}

    under_src = store.search(vecs[0], k=10, filters=SearchFilters(path_prefix="src/"))
    assert {c.ref.file_path for c in under_src} == {"src/a.py", "src/b.rs"}

    blocks = store.search(vecs[0], k=10, filters=SearchFilters(chunk_kinds=(ChunkKind.BLOCK,)))
    assert [c.ref.file_path for c in blocks] == ["src/b.rs"]


def test_memory_store_rejects_wrong_dimension():
    store = InMemoryVectorStore(TEST_DIM)
    with pytest.raises(ValueError):
        store.upsert([make_row("bad", "x.py", 1, 1, np.zeros(TEST_DIM + 2))])


def test_memory_store_delete_file():
    store = InMemoryVectorStore(TEST_DIM)
    rows, _ = _sample_rows()
    store.upsert(rows)
    store.delete_file("src/a.py")
    assert store.count() == 2


def test_memory_store_delete_file_scoped_to_repo():
    store = InMemoryVectorStore(TEST_DIM)
    vecs = hashed_vectors(["one", "two"])
    store.upsert(
        [
            make_row("a1", "src/a.py", 1, 5, vecs[0], repo_name="alpha"),
            make_row("b1", "src/a.py", 1, 5, vecs[1], repo_name="beta"),
        ]
    )
    store.delete_file("src/a.py", repo_name="alpha")
    results = store.search(vecs[1], k=5)
    assert [c.text for c in results] == ["content of b1"]


def test_filters_to_where_quotes_values():
    assert filters_to_where(None) is None
    assert filters_to_where(SearchFilters()) is None
    where = filters_to_where(
        SearchFilters(
            language="python",
            path_prefix="it's/",
            chunk_kinds=(ChunkKind.FUNCTION, ChunkKind.CLASS),
        )
    )
    assert "language = 'python'" in where
    assert "file_path LIKE 'it''s/%'" in where
    assert "chunk_kind IN ('function', 'class')" in where


def test_lance_store_roundtrip(tmp_path):
    store = LanceVectorStore(tmp_path / "lancedb", "code_chunks", TEST_DIM)
    rows, vecs = _sample_rows()
    store.upsert(rows)
    store.upsert(rows[:1])
    assert store.count() == 3

    results = store.search(vecs[0], k=2)
    assert results[0].ref.file_path == "src/a.py"
    assert results[0].ref.chunk_kind == ChunkKind.FUNCTION
    assert results[0].raw_score == pytest.approx(1.0, abs=1e-4)

    filtered = store.search(vecs[0], k=5, filters=SearchFilters(language="rust"))
    assert [c.ref.file_path for c in filtered] == ["src/b.rs"]

    store.delete_file("src/a.py", repo_name="other")
    assert store.count() == 3
    store.delete_file("src/a.py", repo_name="demo")
    assert store.count() == 2
    store.close()
