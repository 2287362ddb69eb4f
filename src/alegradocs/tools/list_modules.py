"""Tool handler for list_modules (Layer 1).

Receives AppState, resolves the cached or freshly fetched catalog, and
returns a structured dict. No MCP or FastMCP imports; server.py handles
the MCP wiring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from alegradocs.catalog import resolve_catalog
from alegradocs.errors import AlegraDocsError, ErrorCode
from alegradocs.models.tools import ListModulesInput, ListModulesOutput, ModuleSummary

if TYPE_CHECKING:
    from alegradocs.models.catalog import CatalogIndex
    from alegradocs.state import AppState


async def handle(force_refresh: bool, state: AppState) -> dict:
    """Handle a list_modules tool call."""
    log = structlog.get_logger().bind(tool="list_modules")
    log.info("handler_called", force_refresh=force_refresh)

    try:
        validated = ListModulesInput(force_refresh=force_refresh)
    except ValueError as exc:
        raise AlegraDocsError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion="force_refresh must be a boolean.",
            recoverable=False,
        ) from exc

    catalog, refreshed = await resolve_catalog(state, force_refresh=validated.force_refresh)
    log.info("modules_listed", modules=len(catalog.modules), refreshed=refreshed)

    output = ListModulesOutput(
        base_url=catalog.base_url,
        fetched_at=catalog.fetched_at,
        refreshed=refreshed,
        modules=[
            ModuleSummary(name=m.name, slug=m.slug, submodule_count=len(m.submodules))
            for m in catalog.modules
        ],
        text=_format(catalog, refreshed),
    )
    return output.model_dump(mode="json")


def _format(catalog: CatalogIndex, refreshed: bool) -> str:
    if refreshed:
        cache_note = f"(Refreshed from {catalog.base_url})"
    else:
        cache_note = f"(Cached catalog, updated {catalog.fetched_at:%Y-%m-%d})"

    lines = [
        f"# API documentation modules {cache_note}",
        "",
        f"Base URL: {catalog.base_url}",
        "",
        "## Modules",
        "",
    ]
    lines.extend(f"- **{m.name}** ({len(m.submodules)} submodules)" for m in catalog.modules)
    lines += [
        "",
        "---",
        "List the submodules of a module with `list_submodules`.",
        "Read the documentation of an endpoint with `get_endpoint_docs`.",
    ]
    return "\n".join(lines)
