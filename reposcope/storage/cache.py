"""Embedding cache keyed by chunk content fingerprint.

The cache is process-scoped state handed explicitly to the orchestrator. It is
the only structure mutated by concurrent embedding workers: a lock guards the
maps, and ``claim``/``wait``/``release`` give each content hash a single owner
so identical text is sent to the provider at most once.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from typing import Optional

import numpy as np

from .blob import BlobStore

logger = logging.getLogger(__name__)


class EmbeddingCache:
    def __init__(
        self,
        dimension: Optional[int] = None,
        blob_store: Optional[BlobStore] = None,
        namespace: str = "",
    ):
        self.dimension = dimension
        self.blob_store = blob_store
        # Persisted vectors are only valid for the model that produced them.
        self.namespace = namespace
        self._entries: dict[str, np.ndarray] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, content_hash: str) -> bool:
        return self.lookup(content_hash) is not None

    def _blob_key(self, content_hash: str) -> str:
        if not self.namespace:
            return content_hash
        return hashlib.sha256(f"{self.namespace}:{content_hash}".encode("utf-8")).hexdigest()

    def _load_persisted(self, content_hash: str) -> Optional[np.ndarray]:
        if self.blob_store is None:
            return None
        key = self._blob_key(content_hash)
        payload = self.blob_store.read_blob(key)
        if payload is None:
            return None
        vector = np.frombuffer(payload, dtype="<f4").astype(np.float32)
        if self.dimension is not None and vector.shape[0] != self.dimension:
            logger.warning(
                "Dropping persisted embedding %s with dimension %d (expected %d)",
                content_hash[:12],
                vector.shape[0],
                self.dimension,
            )
            # Blobs are write-once; the fresh vector can only land once this is gone.
            self.blob_store.delete_blob(key)
            return None
        return vector

    def lookup(self, content_hash: str) -> Optional[np.ndarray]:
        with self._lock:
            vector = self._entries.get(content_hash)
        if vector is None:
            vector = self._load_persisted(content_hash)
        with self._lock:
            if vector is not None:
                vector = self._entries.setdefault(content_hash, vector)
                self.hits += 1
            else:
                self.misses += 1
        return vector

    def store(self, content_hash: str, embedding: np.ndarray) -> None:
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if self.dimension is not None and vector.shape[0] != self.dimension:
            raise ValueError(
                f"Embedding dimension {vector.shape[0]} does not match cache dimension {self.dimension}"
            )
        with self._lock:
            self._entries[content_hash] = vector
        if self.blob_store is not None:
            self.blob_store.write_blob(self._blob_key(content_hash), vector.astype("<f4").tobytes())

    def claim(self, content_hash: str) -> bool:
        """Atomically take ownership of computing ``content_hash``.

        Returns False when the embedding is cached or another worker already
        owns it; callers then use ``wait``. Must run inside an event loop.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if content_hash in self._entries or content_hash in self._inflight:
                return False
            self._inflight[content_hash] = loop.create_future()
            return True

    def release(self, content_hash: str, embedding: Optional[np.ndarray]) -> None:
        """Finish a claim, storing ``embedding`` if given and waking waiters."""
        if embedding is not None:
            self.store(content_hash, embedding)
        with self._lock:
            future = self._inflight.pop(content_hash, None)
            vector = self._entries.get(content_hash)
        if future is not None and not future.done():
            future.set_result(vector)

    async def wait(self, content_hash: str) -> Optional[np.ndarray]:
        """Wait for an in-flight claim; None when its owner gave up."""
        with self._lock:
            future = self._inflight.get(content_hash)
        if future is None:
            return self.lookup(content_hash)
        return await asyncio.shield(future)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
