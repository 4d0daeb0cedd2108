# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Embedding providers.

Providers expose an async ``embed(texts)`` returning a ``(N, dimension)``
float32 array. Synchronous backends run on a worker thread through
``asyncio.to_thread`` so the event loop only suspends on provider calls.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Sequence

import numpy as np

from .config import EmbeddingSettings
from .errors import ConfigurationError, EmbeddingProviderError

logger = logging.getLogger(__name__)

EmbeddingFn = Callable[[Sequence[str]], np.ndarray]


class EmbeddingProvider(ABC):
    """Narrow interface over an embedding model."""

    name: str = "provider"

    def __init__(self, dimension: int):
        self.dimension = dimension

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        """Embed ``texts``; raise ``EmbeddingProviderError`` on failure."""


class CallableEmbeddingProvider(EmbeddingProvider):
    """Wrap a synchronous ``EmbeddingFn``."""

    name = "callable"

    def __init__(self, embed_fn: EmbeddingFn, dimension: int):
        super().__init__(dimension)
        self.embed_fn = embed_fn

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        try:
            vectors = await asyncio.to_thread(self.embed_fn, list(texts))
        except EmbeddingProviderError:
            raise
        except Exception as exc:
            raise EmbeddingProviderError(f"Embedding function failed: {exc}") from exc
        return np.asarray(vectors, dtype=np.float32)


class SentenceTransformersEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers model, loaded on construction."""

    name = "sentence-transformers"

    def __init__(self, model: str, dimension: int, **kwargs: Any):
        super().__init__(dimension)
        try:
            # Import lazily so we only pull heavy deps when this provider is used
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ConfigurationError(
                "embeddings.provider 'sentence-transformers' requires the "
                "sentence-transformers package (pip install 'reposcope[sentence-transformers]')"
            ) from exc

        self.model_name = model
        self.model = SentenceTransformer(model, **kwargs)
        model_dim = self.model.get_sentence_embedding_dimension()
        if model_dim is not None and model_dim != dimension:
            raise ConfigurationError(
                f"Model {model} produces {model_dim}-dim vectors but "
                f"embeddings.dimension is {dimension}"
            )

    def _encode(self, texts: list[str]) -> np.ndarray:
        return self.model.encode(texts, normalize_embeddings=True, show_progress_bar=False)

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        try:
            vectors = await asyncio.to_thread(self._encode, list(texts))
        except Exception as exc:
            raise EmbeddingProviderError(f"sentence-transformers encode failed: {exc}") from exc
        return np.asarray(vectors, dtype=np.float32)


def create_embedding_provider(
    provider: str,
    model: str,
    dimension: int,
    embed_fn: EmbeddingFn | None = None,
    **kwargs: Any,
) -> EmbeddingProvider:
    """Build a provider by name (``sentence-transformers`` or ``callable``)."""
    provider = provider.lower()
    if provider in {"sentence-transformers", "sentence_transformers"}:
        impl: EmbeddingProvider = SentenceTransformersEmbeddingProvider(model, dimension, **kwargs)
    elif provider == "callable":
        if embed_fn is None:
            raise ConfigurationError("embeddings.provider 'callable' requires an embed_fn")
        impl = CallableEmbeddingProvider(embed_fn, dimension)
    else:
        raise ConfigurationError(f"Unknown embeddings.provider {provider!r}")

    logger.info(
        "Initialized embedding provider: provider=%s model=%s dim=%s",
        provider,
        model,
        dimension,
    )
    return impl


def provider_from_settings(
    settings: EmbeddingSettings,
    extra_kwargs: dict[str, Any] | None = None,
    embed_fn: EmbeddingFn | None = None,
) -> EmbeddingProvider:
    """Build the configured provider; an explicit ``embed_fn`` always wins."""
    if embed_fn is not None:
        return CallableEmbeddingProvider(embed_fn, settings.dimension)
    return create_embedding_provider(
        settings.provider,
        settings.model,
        settings.dimension,
        **(extra_kwargs or {}),
    )
