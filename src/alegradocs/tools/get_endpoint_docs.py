"""Tool handler for get_endpoint_docs (Layers 2–4).

Cascading resolution:

  1. module + submodule: make sure the submodule page is indexed. If it is a
     container (has operations) and no query was given, return the operation
     list so the caller can pick one. Otherwise return sections.
  2. + operation: resolve the operation among the submodule's indexed
     operations, make sure that operation's own page is indexed (own slug,
     own TTL), and return its sections.
  3. + query: sections come from hybrid search over the resolved page
     instead of the first few in document order.

Pages are re-fetched only when stale or on force_refresh; nothing here
retries. Embedding of freshly indexed pages is scheduled in the background.
No MCP or FastMCP imports; server.py handles the MCP wiring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from alegradocs.catalog import resolve_catalog
from alegradocs.chunker import estimate_tokens, format_sections, split_sections
from alegradocs.errors import AlegraDocsError, ErrorCode
from alegradocs.models.store import Section
from alegradocs.models.tools import (
    GetEndpointDocsInput,
    GetEndpointDocsOutput,
    OperationEntry,
    SectionEntry,
)
from alegradocs.resolver import operation_not_found, require_module, require_submodule
from alegradocs.schedulers import schedule_page_embedding

if TYPE_CHECKING:
    from alegradocs.models.catalog import Module, Submodule
    from alegradocs.models.store import OperationRecord
    from alegradocs.state import AppState

PATH_SEPARATOR = " › "

_OPERATIONS_HINT = "This page has operations. Set 'operation' to read one of them."


async def handle(
    module: str,
    submodule: str,
    operation: str | None,
    query: str | None,
    force_refresh: bool,
    state: AppState,
) -> dict:
    """Handle a get_endpoint_docs tool call."""
    log = structlog.get_logger().bind(
        tool="get_endpoint_docs", module=module, submodule=submodule, operation=operation
    )
    log.info("handler_called", query=query, force_refresh=force_refresh)

    try:
        validated = GetEndpointDocsInput(
            module=module,
            submodule=submodule,
            operation=operation,
            query=query,
            force_refresh=force_refresh,
        )
    except ValueError as exc:
        raise AlegraDocsError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion=(
                "Provide non-empty module and submodule names (max 200 chars); "
                "operation (max 200 chars) and query (max 500 chars) are optional."
            ),
            recoverable=False,
        ) from exc

    catalog, _ = await resolve_catalog(state, force_refresh=validated.force_refresh)
    mod = require_module(catalog.modules, validated.module)
    sub = require_submodule(mod, validated.submodule)

    # The submodule page is needed in both cases: it owns the operation list.
    refreshed = await ensure_page_fresh(
        state,
        slug=sub.slug,
        module=mod.name,
        path=sub.name,
        url=sub.url,
        force=validated.force_refresh,
        discover_operations=True,
    )

    if validated.operation is None:
        operations = await state.store.operations_for(sub.slug)
        if operations and validated.query is None:
            log.info("operations_returned", count=len(operations), refreshed=refreshed)
            return _operations_output(mod, sub, operations, refreshed)
        return await _sections_output(
            state,
            mod=mod,
            sub=sub,
            operation=None,
            slug=sub.slug,
            url=sub.url,
            path=sub.name,
            query=validated.query,
            refreshed=refreshed,
        )

    op = await state.store.find_operation(sub.slug, validated.operation)
    if op is None:
        raise operation_not_found(
            validated.operation, sub, await state.store.operations_for(sub.slug)
        )

    path = f"{sub.name}{PATH_SEPARATOR}{op.name}"
    op_refreshed = await ensure_page_fresh(
        state,
        slug=op.slug,
        module=mod.name,
        path=path,
        url=op.url,
        force=validated.force_refresh,
        discover_operations=False,
    )
    return await _sections_output(
        state,
        mod=mod,
        sub=sub,
        operation=op.name,
        slug=op.slug,
        url=op.url,
        path=path,
        query=validated.query,
        refreshed=op_refreshed,
    )


async def ensure_page_fresh(
    state: AppState,
    *,
    slug: str,
    module: str,
    path: str,
    url: str,
    force: bool,
    discover_operations: bool,
) -> bool:
    """Index the page if it is stale or ``force`` is set. Returns True if it was fetched.

    Fetch and extraction errors propagate unchanged. A refreshed container
    page loses its old operations with the old row; an empty discovery does
    not bring them back.
    """
    log = structlog.get_logger().bind(slug=slug)
    if not force and not await state.store.is_stale(slug):
        log.debug("page_cache_hit")
        return False

    log.info("page_fetching", url=url, forced=force)
    html = await state.fetcher.fetch(url, state.allowlist)
    extraction = state.extractor.extract(html, url)
    sections = split_sections(extraction.content, fallback_title=path.split(PATH_SEPARATOR)[-1])

    await state.store.replace_page(slug, module, path, url, sections)
    if discover_operations:
        await state.store.replace_operations(slug, extraction.operations)

    schedule_page_embedding(state, slug)
    return True


async def _sections_output(
    state: AppState,
    *,
    mod: Module,
    sub: Submodule,
    operation: str | None,
    slug: str,
    url: str,
    path: str,
    query: str | None,
    refreshed: bool,
) -> dict:
    retrieval = state.settings.retrieval
    if query is not None:
        records = await state.store.hybrid_search(slug, query, retrieval.query_section_limit)
    else:
        records = (await state.store.all_sections(slug))[: retrieval.default_section_limit]

    if not records:
        raise AlegraDocsError(
            code=ErrorCode.EMPTY_RESULT,
            message=f'No content is indexed for "{path}" ({url}).',
            suggestion="Call again with force_refresh=true to re-index the page.",
            recoverable=True,
        )

    sections = [Section(title=r.title, content=r.content) for r in records]
    formatted = format_sections(sections, url, query)
    token_estimate = estimate_tokens(formatted)
    total = await state.store.section_count(slug)
    meta = await state.store.page_meta(slug)
    hint = _OPERATIONS_HINT if await state.store.has_operations(slug) else None

    if refreshed:
        cache_note = "(Re-indexed)"
    else:
        cache_note = f"(Cached index, TTL {state.settings.cache.ttl_days:g} days)"
    if query is not None:
        view_note = f'Search: "{query}" → top {len(records)} section(s)'
    else:
        view_note = (
            f"Overview (first {retrieval.default_section_limit} sections). "
            "Use 'query' to search within the page."
        )
    header = [
        cache_note,
        f"Module: {mod.name}{PATH_SEPARATOR}{path}",
        f"Sections shown: {len(records)}/{total} | Approx. tokens: ~{token_estimate}",
        f"Indexed: {meta.fetched_at:%Y-%m-%d}" if meta is not None else "",
        view_note,
        hint or "",
    ]

    output = GetEndpointDocsOutput(
        kind="sections",
        module=mod.name,
        submodule=sub.name,
        operation=operation,
        path=path,
        url=url,
        refreshed=refreshed,
        fetched_at=meta.fetched_at if meta is not None else None,
        query=query,
        sections=[
            SectionEntry(title=r.title, content=r.content, position=r.position) for r in records
        ],
        sections_total=total,
        token_estimate=token_estimate,
        operations_hint=hint,
        text="\n".join(line for line in header if line) + "\n\n" + formatted,
    )
    return output.model_dump(mode="json")


def _operations_output(
    mod: Module,
    sub: Submodule,
    operations: list[OperationRecord],
    refreshed: bool,
) -> dict:
    lines = [
        "(Re-indexed)" if refreshed else "(Cached index)",
        f"Module: {mod.name}{PATH_SEPARATOR}{sub.name}",
        "",
        f"This page is a container with **{len(operations)} operations**:",
        "",
    ]
    for i, op in enumerate(operations, start=1):
        lines += [f"{i}. **{op.name}**", f"   URL: {op.url}", f"   Slug: `{op.slug}`", ""]
    lines += [
        "---",
        "To read one operation, call `get_endpoint_docs` with:",
        f'  module="{mod.name}", submodule="{sub.name}", operation="<operation name>"',
        f'  Example: operation="{operations[0].name}"',
    ]
    text = "\n".join(lines)

    output = GetEndpointDocsOutput(
        kind="operations",
        module=mod.name,
        submodule=sub.name,
        path=sub.name,
        url=sub.url,
        refreshed=refreshed,
        fetched_at=None,
        operations=[OperationEntry(name=op.name, url=op.url, slug=op.slug) for op in operations],
        token_estimate=estimate_tokens(text),
        operations_hint=_OPERATIONS_HINT,
        text=text,
    )
    return output.model_dump(mode="json")
