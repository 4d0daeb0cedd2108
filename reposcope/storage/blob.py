"""Content-addressed blob storage for compressed payloads.

Blobs are zlib-compressed and sharded by the first two hex characters of
their key (``ab/cdef...``). The embedding cache uses this to persist vectors
across runs keyed by content fingerprint.
"""
from __future__ import annotations

import logging
import zlib
from pathlib import Path

logger = logging.getLogger(__name__)


class BlobStore:
    def __init__(self, base_path: Path):
        self.base_path = base_path
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _blob_file(self, blob_sha: str) -> Path:
        return self.base_path / blob_sha[:2] / blob_sha[2:]

    def has_blob(self, blob_sha: str) -> bool:
        return self._blob_file(blob_sha).exists()

    def write_blob(self, blob_sha: str, content: bytes) -> bool:
        """Write ``content`` under ``blob_sha`` unless present; False on I/O failure."""
        blob_file = self._blob_file(blob_sha)
        try:
            blob_file.parent.mkdir(parents=True, exist_ok=True)
            if not self.has_blob(blob_sha):
                tmp = blob_file.with_suffix(".tmp")
                tmp.write_bytes(zlib.compress(content))
                tmp.replace(blob_file)
            return True
        except OSError:
            logger.warning("Failed to write blob %s", blob_sha, exc_info=True)
            return False

    def read_blob(self, blob_sha: str) -> bytes | None:
        blob_file = self._blob_file(blob_sha)
        try:
            if blob_file.exists():
                return zlib.decompress(blob_file.read_bytes())
        except (OSError, zlib.error):
            logger.warning("Failed to read blob %s", blob_sha, exc_info=True)
        return None

    def delete_blob(self, blob_sha: str) -> None:
        blob_file = self._blob_file(blob_sha)
        try:
            if blob_file.exists():
                blob_file.unlink()
        except OSError:
            logger.debug("Failed to delete blob file %s", blob_file, exc_info=True)
