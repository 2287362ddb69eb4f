"""Tool handler for list_submodules (Layer 2).

Resolves a module in the catalog and lists its submodule pages, together
with any operations already discovered for them in the index store. Does
not fetch submodule pages itself.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from alegradocs.catalog import resolve_catalog
from alegradocs.errors import AlegraDocsError, ErrorCode
from alegradocs.models.tools import ListSubmodulesInput, ListSubmodulesOutput, SubmoduleSummary
from alegradocs.resolver import require_module

if TYPE_CHECKING:
    from alegradocs.models.catalog import Module
    from alegradocs.state import AppState


async def handle(module: str, force_refresh: bool, state: AppState) -> dict:
    """Handle a list_submodules tool call."""
    log = structlog.get_logger().bind(tool="list_submodules", module=module)
    log.info("handler_called", force_refresh=force_refresh)

    try:
        validated = ListSubmodulesInput(module=module, force_refresh=force_refresh)
    except ValueError as exc:
        raise AlegraDocsError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion="Provide a non-empty module name (max 200 chars).",
            recoverable=False,
        ) from exc

    catalog, refreshed = await resolve_catalog(state, force_refresh=validated.force_refresh)
    found = require_module(catalog.modules, validated.module)

    summaries = []
    for sub in found.submodules:
        operations = await state.store.operations_for(sub.slug)
        summaries.append(
            SubmoduleSummary(
                name=sub.name,
                slug=sub.slug,
                url=sub.url,
                operations=[op.name for op in operations],
            )
        )
    log.info("submodules_listed", resolved=found.name, submodules=len(summaries))

    output = ListSubmodulesOutput(
        module=found.name,
        submodules=summaries,
        text=_format(found, summaries, refreshed),
    )
    return output.model_dump(mode="json")


def _format(module: Module, summaries: list[SubmoduleSummary], refreshed: bool) -> str:
    note = " (refreshed)" if refreshed else ""
    lines = [
        f"# Module: {module.name}{note}",
        "",
        f"{len(summaries)} submodule(s):",
        "",
    ]
    for i, sub in enumerate(summaries, start=1):
        op_note = f" _({len(sub.operations)} operations indexed)_" if sub.operations else ""
        lines.append(f"{i}. **{sub.name}**{op_note}")
        lines.append(f"   URL: {sub.url}")
        lines.append(f"   Slug: `{sub.slug}`")
        lines.extend(f"   → {name}" for name in sub.operations)
        lines.append("")
    lines += [
        "---",
        "List the operations of a submodule with `get_endpoint_docs` (module + submodule).",
        'Read one operation by adding `operation="<name>"`.',
    ]
    return "\n".join(lines)
