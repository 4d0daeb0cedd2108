"""Vector store backends for chunk embeddings.

``LanceVectorStore`` persists rows in a LanceDB table and searches with the
cosine metric. ``InMemoryVectorStore`` keeps rows in a dict and scores them
with numpy; it backs tests and ``index.backend = "memory"``.

Rows are plain dicts following ``reposcope.schema.get_code_chunk_model``;
``id`` is the upsert key. Backend exceptions propagate to the caller, which
maps them to ``IndexStoreError`` or ``RetrievalError``.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import lancedb
import numpy as np

from ..errors import ConfigurationError
from ..models import ChunkKind, ChunkRef, RetrievalCandidate, SearchFilters
from ..schema import get_code_chunk_model

logger = logging.getLogger(__name__)


def row_to_candidate(row: dict[str, Any], score: float) -> RetrievalCandidate:
    ref = ChunkRef(
        file_path=row["file_path"],
        start_line=int(row["start_line"]),
        end_line=int(row["end_line"]),
        language=row.get("language") or "unknown",
        chunk_kind=ChunkKind(row.get("chunk_kind") or ChunkKind.BLOCK.value),
        content_hash=row["content_hash"],
        part=int(row.get("part") or 0),
    )
    return RetrievalCandidate(ref=ref, text=row.get("content", ""), raw_score=float(score))


def order_candidates(candidates: list[RetrievalCandidate]) -> list[RetrievalCandidate]:
    """Score descending, ties by ``(file_path, start_line, part)``."""
    return sorted(
        candidates,
        key=lambda c: (-c.raw_score, c.ref.file_path, c.ref.start_line, c.ref.part),
    )


def _sql_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def filters_to_where(filters: Optional[SearchFilters]) -> Optional[str]:
    """Translate filters into a LanceDB SQL predicate (None when unfiltered)."""
    if filters is None:
        return None
    clauses = []
    if filters.language:
        clauses.append(f"language = {_sql_quote(filters.language)}")
    if filters.path_prefix:
        # LIKE wildcards in the prefix only widen the match; results are re-checked.
        clauses.append(f"file_path LIKE {_sql_quote(filters.path_prefix + '%')}")
    if filters.chunk_kinds:
        kinds = ", ".join(_sql_quote(ChunkKind(k).value) for k in filters.chunk_kinds)
        clauses.append(f"chunk_kind IN ({kinds})")
    return " AND ".join(clauses) or None


class VectorStore(ABC):
    dimension: int

    @abstractmethod
    def upsert(self, rows: list[dict[str, Any]]) -> int:
        """Insert or overwrite rows by ``id``; returns the number written."""

    @abstractmethod
    def search(
        self, vector: np.ndarray, k: int, filters: Optional[SearchFilters] = None
    ) -> list[RetrievalCandidate]:
        """Up to ``k`` nearest rows, ordered by score then location."""

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def delete_file(self, file_path: str, repo_name: Optional[str] = None) -> None:
        """Drop every row of ``file_path``, only within ``repo_name`` when given."""

    def close(self) -> None:
        return None


class InMemoryVectorStore(VectorStore):
    def __init__(self, dimension: int):
        self.dimension = dimension
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def upsert(self, rows: list[dict[str, Any]]) -> int:
        with self._lock:
            for row in rows:
                vector = np.asarray(row["vector"], dtype=np.float32)
                if vector.shape != (self.dimension,):
                    raise ValueError(
                        f"Row {row.get('id')} has vector shape {vector.shape}, "
                        f"expected ({self.dimension},)"
                    )
                stored = dict(row)
                stored["vector"] = vector
                self._rows[row["id"]] = stored
        return len(rows)

    def search(
        self, vector: np.ndarray, k: int, filters: Optional[SearchFilters] = None
    ) -> list[RetrievalCandidate]:
        if k <= 0:
            return []
        with self._lock:
            rows = list(self._rows.values())

        query = np.asarray(vector, dtype=np.float32)
        q_norm = float(np.linalg.norm(query)) or 1.0
        query = query / q_norm

        candidates = []
        for row in rows:
            vec = row["vector"]
            v_norm = float(np.linalg.norm(vec)) or 1.0
            score = float(np.dot(vec, query) / v_norm)
            candidate = row_to_candidate(row, score)
            if filters is not None and not filters.matches(candidate.ref):
                continue
            candidates.append(candidate)
        return order_candidates(candidates)[:k]

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def delete_file(self, file_path: str, repo_name: Optional[str] = None) -> None:
        with self._lock:
            stale = [
                rid
                for rid, r in self._rows.items()
                if r["file_path"] == file_path
                and (repo_name is None or r.get("repo_name") == repo_name)
            ]
            for row_id in stale:
                del self._rows[row_id]


class LanceVectorStore(VectorStore):
    def __init__(self, lance_dir: Path, table_name: str, dimension: int):
        self.lance_dir = lance_dir
        self.table_name = table_name
        self.dimension = dimension
        self.lance_dir.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self.lance_dir))
        self._model = get_code_chunk_model(dimension)
        self._table: Any = None
        self._lock = threading.Lock()

    def _get_table(self) -> Any:
        with self._lock:
            if self._table is None:
                if self.table_name in set(self._db.table_names()):
                    self._table = self._db.open_table(self.table_name)
                else:
                    logger.info(
                        "Creating LanceDB table %s (dim=%d) at %s",
                        self.table_name,
                        self.dimension,
                        self.lance_dir,
                    )
                    self._table = self._db.create_table(self.table_name, schema=self._model)
            return self._table

    def upsert(self, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        table = self._get_table()
        prepared = []
        for row in rows:
            record = dict(row)
            record["vector"] = np.asarray(row["vector"], dtype=np.float32).tolist()
            prepared.append(record)
        (
            table.merge_insert("id")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(prepared)
        )
        return len(prepared)

    def search(
        self, vector: np.ndarray, k: int, filters: Optional[SearchFilters] = None
    ) -> list[RetrievalCandidate]:
        if k <= 0:
            return []
        table = self._get_table()
        query = table.search(np.asarray(vector, dtype=np.float32)).distance_type("cosine")
        where = filters_to_where(filters)
        if where:
            query = query.where(where, prefilter=True)
        rows = query.limit(k).to_list()

        candidates = []
        for row in rows:
            # Cosine distance is 1 - cosine similarity.
            score = 1.0 - float(row.get("_distance", 1.0))
            candidate = row_to_candidate(row, score)
            if filters is not None and not filters.matches(candidate.ref):
                continue
            candidates.append(candidate)
        return order_candidates(candidates)[:k]

    def count(self) -> int:
        return int(self._get_table().count_rows())

    def delete_file(self, file_path: str, repo_name: Optional[str] = None) -> None:
        where = f"file_path = {_sql_quote(file_path)}"
        if repo_name is not None:
            where += f" AND repo_name = {_sql_quote(repo_name)}"
        self._get_table().delete(where)


def create_vector_store(config, dimension: Optional[int] = None) -> VectorStore:
    """Build the backend named by ``index.backend``."""
    dim = dimension or config.embeddings.dimension
    backend = config.index_backend
    if backend == "memory":
        return InMemoryVectorStore(dim)
    if backend != "lance":
        raise ConfigurationError(f"Unknown index.backend {backend!r}")
    return LanceVectorStore(config.lance_dir, config.index_table, dim)
