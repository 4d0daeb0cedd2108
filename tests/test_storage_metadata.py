from pathlib import Path

from reposcope.storage.metadata import RevisionStore


def test_revision_store_init(tmp_path):
    db_path = tmp_path / "revisions.db"
    store = RevisionStore(db_path)
    assert db_path.exists()
    assert store.latest_revision("repo") is None
    assert store.list_revisions() == []
    store.close()


def test_mark_and_query_revision(tmp_path):
    store = RevisionStore(tmp_path / "revisions.db")
    files = [("src/a.py", "h-a", 3), ("src/b.py", "h-b", 1)]
    store.mark_revision_indexed("rev1", "repo", files, {"chunks_total": 4})

    assert store.is_revision_indexed("rev1", "repo")
    assert not store.is_revision_indexed("rev1", "other")
    rev = store.get_revision("rev1", "repo")
    assert rev["status"] == "complete"
    assert rev["counts"] == {"chunks_total": 4}
    assert store.revision_files("rev1", "repo") == {
        "src/a.py": ("h-a", 3),
        "src/b.py": ("h-b", 1),
    }
    store.close()


def test_partial_revision_is_not_indexed():
    store = RevisionStore(Path(":memory:"))
    store.mark_revision_indexed("rev1", "repo", [], {}, status="partial")
    assert not store.is_revision_indexed("rev1", "repo")
    assert store.latest_revision("repo")["status"] == "partial"
    store.close()


def test_later_revision_keeps_earlier_rows():
    store = RevisionStore(Path(":memory:"))
    store.mark_revision_indexed("rev1", "repo", [("a.py", "h1", 1)], {})
    store.mark_revision_indexed("rev2", "repo", [("a.py", "h2", 2)], {})

    assert store.revision_files("rev1", "repo") == {"a.py": ("h1", 1)}
    assert store.revision_files("rev2", "repo") == {"a.py": ("h2", 2)}
    assert [r["snapshot_id"] for r in store.list_revisions("repo")] == ["rev1", "rev2"]
    store.close()


def test_remarking_replaces_own_files():
    store = RevisionStore(Path(":memory:"))
    store.mark_revision_indexed("rev1", "repo", [("a.py", "h1", 1), ("b.py", "h2", 1)], {})
    store.mark_revision_indexed("rev1", "repo", [("a.py", "h1", 2)], {})
    assert store.revision_files("rev1", "repo") == {"a.py": ("h1", 2)}
    store.close()
