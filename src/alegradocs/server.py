"""MCP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState via the FastMCP lifespan context manager
- Register tools
- Start the stdio transport
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog
from mcp.server.fastmcp import Context, FastMCP
from mcp.types import CallToolResult, TextContent

import alegradocs.tools.get_endpoint_docs as t_get_docs
import alegradocs.tools.list_modules as t_list_modules
import alegradocs.tools.list_submodules as t_list_submodules
from alegradocs import __version__
from alegradocs.catalog import CatalogCache
from alegradocs.config import Settings
from alegradocs.embedder import Embedder
from alegradocs.errors import AlegraDocsError
from alegradocs.extractor import ContentExtractor
from alegradocs.fetcher import Fetcher, build_allowlist, build_http_client
from alegradocs.schedulers import cancel_background_tasks, schedule_warm_up
from alegradocs.state import AppState
from alegradocs.store import IndexStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stdout carries the MCP JSON-RPC stream
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _build_embedder(settings: Settings) -> Embedder | None:
    if not settings.embedding.enabled:
        log.info("embedding_disabled")
        return None
    return Embedder(
        settings.embedding.model_name,
        max_chars=settings.embedding.max_chars,
        cache_dir=str(Path(settings.embedding.cache_dir).expanduser()),
    )


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    settings = Settings()
    _setup_logging(settings)

    log.info("server_starting", version=__version__, base_url=settings.docs.base_url)

    http_client = build_http_client(settings.fetcher)
    allowlist = build_allowlist(
        settings.docs.base_url, extra_domains=settings.docs.extra_allowed_domains
    )
    fetcher = Fetcher(http_client, settings.fetcher)

    embedder = _build_embedder(settings)

    db_path = Path(settings.cache.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    store = IndexStore(
        db,
        ttl_days=settings.cache.ttl_days,
        embedder=embedder,
        candidate_k=settings.retrieval.candidate_k,
        rrf_k=settings.retrieval.rrf_k,
    )
    await store.init_db()

    state = AppState(
        settings=settings,
        store=store,
        fetcher=fetcher,
        extractor=ContentExtractor(settings.docs.base_url, settings.docs.reference_path),
        catalog_cache=CatalogCache(
            Path(settings.cache.catalog_path).expanduser(), settings.cache.ttl_days
        ),
        allowlist=allowlist,
        http_client=http_client,
        embedder=embedder,
    )

    schedule_warm_up(state)

    log.info(
        "server_started",
        version=__version__,
        db_path=str(db_path),
        embedding=embedder is not None,
        allowlist=sorted(allowlist),
    )

    try:
        yield state
    finally:
        await cancel_background_tasks(state)
        await http_client.aclose()
        await db.close()
        log.info("server_stopping")


# ---------------------------------------------------------------------------
# FastMCP instance and tool registration
# ---------------------------------------------------------------------------

mcp = FastMCP("alegradocs", lifespan=lifespan)
# FastMCP doesn't expose a version kwarg, so set it on the underlying Server
# so the MCP initialize handshake reports our version, not the SDK's.
mcp._mcp_server.version = __version__  # pyright: ignore[reportPrivateUsage]


def _serialise_tool_error(error: AlegraDocsError) -> CallToolResult:
    """Convert an AlegraDocsError to the MCP tool error result envelope."""
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(error.to_dict(), ensure_ascii=False))],
        isError=True,
    )


def _log_tool_error(tool: str, exc: AlegraDocsError) -> None:
    log.warning(
        "tool_error",
        tool=tool,
        code=exc.code,
        message=exc.message,
        recoverable=exc.recoverable,
    )


@mcp.tool()
async def list_modules(ctx: Context, force_refresh: bool = False) -> object:
    """List the top-level modules of the Alegra API documentation.

    The catalog is cached locally for several days. Set force_refresh to
    re-read it from the documentation site.
    """
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_list_modules.handle(force_refresh, state)
    except AlegraDocsError as exc:
        _log_tool_error("list_modules", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="list_modules", exc_info=True)
        raise


@mcp.tool()
async def list_submodules(module: str, ctx: Context, force_refresh: bool = False) -> object:
    """List the submodules (documentation pages) of one module.

    Accepts a module name or slug, e.g. "Gastos" or "ingresos". Operations
    already indexed for a submodule are listed next to it.
    """
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_list_submodules.handle(module, force_refresh, state)
    except AlegraDocsError as exc:
        _log_tool_error("list_submodules", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="list_submodules", exc_info=True)
        raise


@mcp.tool()
async def get_endpoint_docs(
    module: str,
    submodule: str,
    ctx: Context,
    operation: str | None = None,
    query: str | None = None,
    force_refresh: bool = False,
) -> object:
    """Read the documentation of one endpoint page.

    Without operation: if the submodule is a container page, returns its
    operations (e.g. "Crear", "Listar"); otherwise returns the first sections
    of the page. With operation: returns the sections of that operation's
    page. With query: returns only the sections most relevant to the query.
    """
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_get_docs.handle(module, submodule, operation, query, force_refresh, state)
    except AlegraDocsError as exc:
        _log_tool_error("get_endpoint_docs", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="get_endpoint_docs", exc_info=True)
        raise


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
