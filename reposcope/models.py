# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Data model shared by the ingestion and query paths."""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from enum import Enum

import numpy as np


class ChunkKind(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    BLOCK = "block"
    WHOLE_FILE = "whole_file"


@dataclass(frozen=True)
class ChunkRef:
    """Value reference to a chunk's location; never owns the chunk itself."""

    file_path: str
    start_line: int
    end_line: int
    language: str
    chunk_kind: ChunkKind
    content_hash: str
    part: int = 0

    @property
    def row_id(self) -> str:
        key = f"{self.file_path}:{self.start_line}:{self.end_line}:{self.part}:{self.content_hash}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass
class Chunk:
    """A contiguous span of one source file."""

    file_path: str
    start_line: int
    end_line: int
    language: str
    chunk_kind: ChunkKind
    content_hash: str
    token_count: int
    text: str
    overlap_prefix_lines: int = 0
    overlap_suffix_lines: int = 0
    part: int = 0
    embedding: np.ndarray | None = None
    failed: bool = False

    def __post_init__(self) -> None:
        if self.start_line < 1 or self.end_line < self.start_line:
            raise ValueError(
                f"Invalid line span {self.start_line}-{self.end_line} for {self.file_path}"
            )

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def ref(self) -> ChunkRef:
        return ChunkRef(
            file_path=self.file_path,
            start_line=self.start_line,
            end_line=self.end_line,
            language=self.language,
            chunk_kind=self.chunk_kind,
            content_hash=self.content_hash,
            part=self.part,
        )


@dataclass(frozen=True)
class SnapshotFile:
    path: str
    content: bytes

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


@dataclass(frozen=True)
class RepositorySnapshot:
    """A revision marker plus the ordered files considered for that revision."""

    revision: str
    files: tuple[SnapshotFile, ...]
    repo_name: str = "default"

    def file(self, path: str) -> SnapshotFile | None:
        for f in self.files:
            if f.path == path:
                return f
        return None


@dataclass(frozen=True)
class SearchFilters:
    language: str | None = None
    path_prefix: str | None = None
    chunk_kinds: tuple[ChunkKind, ...] = ()

    def matches(self, ref: ChunkRef) -> bool:
        if self.language and ref.language != self.language:
            return False
        if self.path_prefix and not ref.file_path.startswith(self.path_prefix):
            return False
        if self.chunk_kinds and ref.chunk_kind not in self.chunk_kinds:
            return False
        return True


@dataclass(frozen=True)
class RetrievalCandidate:
    ref: ChunkRef
    text: str
    raw_score: float


@dataclass(frozen=True)
class RankedChunk:
    ref: ChunkRef
    text: str
    raw_score: float
    final_score: float


@dataclass(frozen=True)
class RetrievalResult:
    query: str
    results: tuple[RankedChunk, ...]

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)


@dataclass(frozen=True)
class StitchedBlock:
    """Merged line range for one file, ordered by its best contributing score."""

    file_path: str
    start_line: int
    end_line: int
    score: float
    language: str
    sources: tuple[tuple[int, int], ...]

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def to_dict(self) -> dict[str, object]:
        return {
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "score": self.score,
            "language": self.language,
            "sources": [list(s) for s in self.sources],
        }


@dataclass
class IngestionSummary:
    """Completion report for one ingestion run."""

    revision: str
    repo_name: str
    files_seen: int = 0
    files_segmented: int = 0
    files_skipped: int = 0
    files_unchanged: int = 0
    segmentation_errors: int = 0
    chunks_total: int = 0
    chunks_cached: int = 0
    chunks_embedded: int = 0
    chunks_failed: int = 0
    chunks_written: int = 0
    index_batches_failed: int = 0
    files_removed: int = 0
    provider_calls: int = 0
    cancelled: bool = False
    skipped_files: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.segmentation_errors or self.chunks_failed or self.index_batches_failed:
            return "partial"
        return "complete"

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["status"] = self.status
        return data
