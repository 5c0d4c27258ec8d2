"""Embedding models for semantic search.

This module provides the EmbeddingProvider class which manages text embeddings
using FastEmbed (local) with lazy loading, so models are only downloaded on
first use. HashingEmbeddingModel is a deterministic feature-hashing model that
needs nothing beyond numpy; it is what tests and offline setups use.
"""

import asyncio
import hashlib
import re
from typing import Optional

import numpy as np
from loguru import logger

from recallgraph.config.schema import EmbeddingConfig

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbeddingProvider:
    """
    Provider for text embeddings using FastEmbed (local).

    Uses lazy loading - models are downloaded on first use, not at startup.
    Model loading and inference run in a worker thread so the event loop
    never blocks on them.
    """

    def __init__(self, config: EmbeddingConfig):
        """
        Initialize the embedding provider.

        Args:
            config: Embedding configuration
        """
        self.config = config
        self.dimension = config.dimension
        self._model = None  # Lazy loaded
        self._model_loaded = False
        self._load_lock = asyncio.Lock()

        logger.info(f"EmbeddingProvider initialized ({config.local_model}, loaded on first use)")

    def _load_model(self):
        """Load the FastEmbed model (blocking)."""
        from fastembed import TextEmbedding

        logger.info(f"Loading embedding model: {self.config.local_model}")
        model = TextEmbedding(self.config.local_model)
        logger.info("Embedding model loaded successfully")
        return model

    async def _ensure_model(self) -> None:
        """Ensure model is loaded (lazy loading)."""
        if self._model is not None:
            return
        async with self._load_lock:
            if self._model is None:
                try:
                    self._model = await asyncio.to_thread(self._load_model)
                    self._model_loaded = True
                except Exception as e:
                    logger.error(f"Failed to load local embedding model: {e}")
                    raise

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Empty strings get a zero vector in their position.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, one per input text
        """
        if not texts:
            return []

        valid = [(i, t) for i, t in enumerate(texts) if t and t.strip()]
        results: list[list[float]] = [[0.0] * self.dimension for _ in texts]
        if not valid:
            return results

        await self._ensure_model()

        def _run() -> list[list[float]]:
            return [e.tolist() for e in self._model.embed([t for _, t in valid])]

        embeddings = await asyncio.to_thread(_run)
        for (i, _), vector in zip(valid, embeddings):
            results[i] = vector
        return results

    def is_ready(self) -> bool:
        """Check if the model has been loaded."""
        return self._model_loaded


class HashingEmbeddingModel:
    """
    Deterministic bag-of-words embedding via signed feature hashing.

    Texts sharing words get positive cosine similarity; identical token
    multisets embed identically. Good enough for lexical-semantic search
    without a model download.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        sign = 1.0 if (value >> 63) & 1 == 0 else -1.0
        return value % self.dimension, sign

    def embed_one(self, text: str) -> list[float]:
        vec = np.zeros(self.dimension, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.casefold()):
            index, sign = self._bucket(token)
            vec[index] += sign
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec = vec / norm
        return vec.tolist()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_one(t or "") for t in texts]

    def is_ready(self) -> bool:
        return True


def create_embedding_model(config: Optional[EmbeddingConfig] = None):
    """
    Create the embedding model named by the configuration.

    Args:
        config: Embedding configuration (defaults if None)

    Returns:
        EmbeddingProvider for "local", HashingEmbeddingModel for "hashing"
    """
    config = config or EmbeddingConfig()
    if config.provider == "hashing":
        return HashingEmbeddingModel(config.dimension)
    if config.provider == "local":
        return EmbeddingProvider(config)
    raise ValueError(f"Unknown embedding provider: {config.provider}")


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Cosine similarity (-1 to 1)
    """
    if len(a) != len(b):
        raise ValueError(f"Vectors must have same length: {len(a)} vs {len(b)}")

    if len(a) == 0:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(va, vb) / (norm_a * norm_b))
