"""Sentence embeddings via sentence-transformers.

The model is a frozen feature extractor: text in, fixed-length L2-normalised
float32 vector out. Loading it takes seconds (and a download on first use),
so it is loaded lazily and exactly once per process: concurrent first
callers all await the same in-flight load instead of racing to load twice.

``encode()`` is CPU-bound and runs in a worker thread so the event loop keeps
serving other tool calls.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import structlog

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

log = structlog.get_logger()

DEFAULT_MAX_CHARS = 1500


class Embedder:
    """Process-wide embedding model with an initialize-once guard."""

    def __init__(
        self,
        model_name: str,
        *,
        max_chars: int = DEFAULT_MAX_CHARS,
        cache_dir: str | None = None,
    ) -> None:
        self.model_name = model_name
        self.max_chars = max_chars
        self._cache_dir = cache_dir
        self._model: SentenceTransformer | None = None
        self._loading: asyncio.Future[SentenceTransformer] | None = None

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    async def _get_model(self) -> SentenceTransformer:
        if self._model is not None:
            return self._model

        if self._loading is None or self._loading.cancelled():
            self._loading = asyncio.ensure_future(asyncio.to_thread(self._load_model))

        loading = self._loading
        try:
            # shield(): one cancelled caller must not cancel the shared load.
            model = await asyncio.shield(loading)
        except Exception:
            # Failed load: clear the guard so the next call can retry.
            if self._loading is loading:
                self._loading = None
            raise

        self._model = model
        if self._loading is loading:
            self._loading = None
        return model

    def _load_model(self) -> SentenceTransformer:
        from sentence_transformers import SentenceTransformer

        if self._cache_dir:
            Path(self._cache_dir).expanduser().mkdir(parents=True, exist_ok=True)
        log.info("embedding_model_loading", model=self.model_name)
        model = SentenceTransformer(self.model_name, cache_folder=self._cache_dir)
        log.info("embedding_model_loaded", model=self.model_name)
        return model

    async def embed(self, text: str) -> np.ndarray:
        """Embed one text (truncated to ``max_chars``)."""
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: list[str]) -> np.ndarray:
        """Embed a batch. Returns a ``(len(texts), dim)`` float32 array."""
        model = await self._get_model()
        inputs = [t[: self.max_chars] for t in texts]
        vectors = await asyncio.to_thread(
            model.encode,
            inputs,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return np.asarray(vectors, dtype=np.float32)

    async def warm_up(self) -> None:
        """Load the model and run one throwaway embedding. Never raises."""
        try:
            await self.embed("warm-up")
            log.info("embedding_warm_up_complete", model=self.model_name)
        except Exception:
            log.warning("embedding_warm_up_failed", model=self.model_name, exc_info=True)
