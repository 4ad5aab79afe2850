"""Embedding generator for signal texts.

Wraps sentence-transformers with lazy, once-only model loading. Encoding is
CPU-heavy and blocking, so the async entry point runs it in a worker thread.
"""
from __future__ import annotations

import asyncio
import logging
import threading

import numpy as np
import torch
from sentence_transformers import SentenceTransformer

from horizon.config import EmbeddingSettings, settings

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when the embedding model cannot be loaded."""
    pass


def resolve_device(requested: str) -> str:
    """Fall back to CPU when the requested accelerator is not available."""
    if requested == "cuda" and not torch.cuda.is_available():
        logger.warning("CUDA requested for embeddings but not available, using CPU")
        return "cpu"
    if requested == "mps" and not torch.backends.mps.is_available():
        logger.warning("MPS requested for embeddings but not available, using CPU")
        return "cpu"
    return requested


class EmbeddingGenerator:
    """Text → fixed-length vector, or ``None`` when generation fails."""

    def __init__(self, config: EmbeddingSettings | None = None) -> None:
        self.config = config or settings.embeddings
        self._model: SentenceTransformer | None = None
        self._load_lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        """Load and cache the sentence transformer model.

        Raises:
            EmbeddingError: If model loading fails
        """
        if self._model is not None:
            return self._model

        with self._load_lock:
            if self._model is None:
                try:
                    device = resolve_device(self.config.device)
                    logger.info(
                        f"Loading embedding model: {self.config.model_name} "
                        f"on device: {device}"
                    )
                    self._model = SentenceTransformer(
                        self.config.model_name,
                        device=device,
                    )
                    logger.info("Embedding model loaded successfully")
                except Exception as e:
                    logger.error(f"Failed to load embedding model: {e}")
                    raise EmbeddingError(f"Model loading failed: {e}") from e
        return self._model

    def encode(self, text: str) -> list[float] | None:
        """Blocking encode of a single text; returns None instead of raising."""
        if not text or not text.strip():
            logger.warning("Empty text provided for embedding generation")
            return None

        try:
            model = self._load_model()
            vector = model.encode(
                text,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize_embeddings,
            )
        except Exception as e:
            logger.error(f"Failed to generate embedding (text length {len(text)}): {e}")
            return None

        result = np.asarray(vector, dtype=float).ravel().tolist()
        if not result:
            logger.error(f"Invalid embedding result (text length {len(text)})")
            return None
        return result

    async def generate(self, text: str) -> list[float] | None:
        """Compute an embedding without blocking the event loop."""
        return await asyncio.to_thread(self.encode, text)
