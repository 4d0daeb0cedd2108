# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Exception taxonomy for the retrieval core.

Ingestion recovers from per-file and per-chunk failures locally and reports
them in the run summary; the query path surfaces failures to the caller.
"""

from __future__ import annotations


class RepoScopeError(Exception):
    """Base class for all RepoScope errors."""


class ConfigurationError(RepoScopeError):
    """Invalid configuration detected at startup."""


class SegmentationError(RepoScopeError):
    """A file could not be read or split into chunks."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(f"Failed to segment {file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


class EmbeddingProviderError(RepoScopeError):
    """The embedding provider failed or returned malformed vectors."""


class IndexStoreError(RepoScopeError):
    """A batch could not be written to the vector store."""

    def __init__(self, message: str, batch_index: int | None = None):
        super().__init__(message)
        self.batch_index = batch_index


class RetrievalError(RepoScopeError):
    """A query failed. ``stage`` is one of ``embedding``, ``store`` or ``rerank``."""

    STAGES = ("embedding", "store", "rerank")

    def __init__(self, stage: str, message: str):
        if stage not in self.STAGES:
            raise ValueError(f"Unknown retrieval stage {stage!r}")
        super().__init__(f"Retrieval failed during {stage}: {message}")
        self.stage = stage


class OperationCancelled(RepoScopeError):
    """The cancellation signal fired before the operation committed."""
