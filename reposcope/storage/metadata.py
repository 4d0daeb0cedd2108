"""SQLite revision store for RepoScope.

Tracks which repository snapshots have been indexed, with the per-file hashes
and chunk counts recorded at the time. Rows for one snapshot are never
rewritten when a later snapshot is indexed.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class RevisionStore:
    def __init__(self, db_path: Path, *, timeout: float = 60.0):
        if str(db_path) != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=timeout)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=60000;")
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the revision bookkeeping schema."""
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS revisions (
                snapshot_id TEXT NOT NULL,
                repo_name TEXT NOT NULL,
                indexed_at TEXT,
                status TEXT,
                counts TEXT,
                PRIMARY KEY (repo_name, snapshot_id)
            )
        """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS revision_files (
                repo_name TEXT NOT NULL,
                snapshot_id TEXT NOT NULL,
                path TEXT NOT NULL,
                file_hash TEXT,
                chunk_count INTEGER,
                PRIMARY KEY (repo_name, snapshot_id, path)
            )
        """
        )

        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_revision_files_hash
            ON revision_files(file_hash)
        """
        )
        self.conn.commit()

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error:
            logger.debug("Error closing revision database", exc_info=True)

    def mark_revision_indexed(
        self,
        snapshot_id: str,
        repo_name: str,
        files: Iterable[tuple[str, str, int]],
        counts: dict[str, Any],
        status: str = "complete",
    ) -> None:
        """Record ``snapshot_id`` with ``(path, file_hash, chunk_count)`` rows.

        Re-marking the same snapshot replaces its own rows only.
        """
        file_rows = [(repo_name, snapshot_id, p, h, int(n)) for p, h, n in files]
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute(
                    "DELETE FROM revision_files WHERE repo_name = ? AND snapshot_id = ?",
                    (repo_name, snapshot_id),
                )
                cur.executemany(
                    "INSERT INTO revision_files "
                    "(repo_name, snapshot_id, path, file_hash, chunk_count) VALUES (?, ?, ?, ?, ?)",
                    file_rows,
                )
                cur.execute(
                    "INSERT OR REPLACE INTO revisions "
                    "(snapshot_id, repo_name, indexed_at, status, counts) VALUES (?, ?, ?, ?, ?)",
                    (
                        snapshot_id,
                        repo_name,
                        datetime.now().isoformat(),
                        status,
                        json.dumps(counts, sort_keys=True),
                    ),
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        logger.info(
            "Recorded revision %s for %s (%d files, status=%s)",
            snapshot_id[:12],
            repo_name,
            len(file_rows),
            status,
        )

    def is_revision_indexed(self, snapshot_id: str, repo_name: str) -> bool:
        """True when the snapshot completed without failures."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT status FROM revisions WHERE repo_name = ? AND snapshot_id = ?",
                (repo_name, snapshot_id),
            )
            row = cur.fetchone()
        return bool(row) and row[0] == "complete"

    def get_revision(self, snapshot_id: str, repo_name: str) -> dict[str, Any] | None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT snapshot_id, repo_name, indexed_at, status, counts FROM revisions "
                "WHERE repo_name = ? AND snapshot_id = ?",
                (repo_name, snapshot_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        return {
            "snapshot_id": row[0],
            "repo_name": row[1],
            "indexed_at": row[2],
            "status": row[3],
            "counts": json.loads(row[4]) if row[4] else {},
        }

    def latest_revision(self, repo_name: str) -> dict[str, Any] | None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT snapshot_id FROM revisions WHERE repo_name = ? "
                "ORDER BY indexed_at DESC, rowid DESC LIMIT 1",
                (repo_name,),
            )
            row = cur.fetchone()
        return self.get_revision(row[0], repo_name) if row else None

    def revision_files(self, snapshot_id: str, repo_name: str) -> dict[str, tuple[str, int]]:
        """Map path -> (file_hash, chunk_count) for a recorded snapshot."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT path, file_hash, chunk_count FROM revision_files "
                "WHERE repo_name = ? AND snapshot_id = ? ORDER BY path",
                (repo_name, snapshot_id),
            )
            rows = cur.fetchall()
        return {path: (file_hash, int(count)) for path, file_hash, count in rows}

    def list_revisions(self, repo_name: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            cur = self.conn.cursor()
            if repo_name is None:
                cur.execute(
                    "SELECT snapshot_id, repo_name, indexed_at, status FROM revisions "
                    "ORDER BY indexed_at, rowid"
                )
            else:
                cur.execute(
                    "SELECT snapshot_id, repo_name, indexed_at, status FROM revisions "
                    "WHERE repo_name = ? ORDER BY indexed_at, rowid",
                    (repo_name,),
                )
            rows = cur.fetchall()
        return [
            {"snapshot_id": r[0], "repo_name": r[1], "indexed_at": r[2], "status": r[3]}
            for r in rows
        ]
