"""Application state container.

AppState is created once at server startup (inside the FastMCP lifespan context
manager) and injected into every tool handler via the MCP Context object.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from alegradocs.catalog import CatalogCache
    from alegradocs.config import Settings
    from alegradocs.extractor import ContentExtractor
    from alegradocs.protocols import EmbedderProtocol, FetcherProtocol
    from alegradocs.store import IndexStore


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every tool handler."""

    settings: Settings
    store: IndexStore
    fetcher: FetcherProtocol
    extractor: ContentExtractor
    catalog_cache: CatalogCache
    allowlist: frozenset[str] = field(default_factory=frozenset)
    http_client: httpx.AsyncClient | None = None
    embedder: EmbedderProtocol | None = None

    # Fire-and-forget tasks (page embedding, warm-up). Strong references keep
    # them alive until done; the lifespan cancels whatever is left on shutdown.
    background_tasks: set[asyncio.Task[None]] = field(default_factory=set)
