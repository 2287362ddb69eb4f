"""Protocol interfaces for swappable components.

Tool handlers and AppState reference these protocols, not the concrete
implementations, so tests can plug in lightweight in-memory fakes (a
deterministic hashing embedder, a canned-HTML fetcher) without loading a
model or touching the network.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import numpy as np


class FetcherProtocol(Protocol):
    """Interface for the HTTP documentation fetcher."""

    async def fetch(self, url: str, allowlist: frozenset[str]) -> str: ...


class EmbedderProtocol(Protocol):
    """Interface for the sentence embedding model.

    Vectors are float32 and L2-normalised, so cosine similarity is a dot product.
    """

    async def embed(self, text: str) -> np.ndarray: ...

    async def embed_many(self, texts: list[str]) -> np.ndarray: ...

    async def warm_up(self) -> None: ...
