"""Name resolution for modules, submodules and operations.

Pure business logic: receives catalog models, returns matches or raises
AlegraDocsError listing the valid choices. No knowledge of AppState, MCP, or
I/O.

Matching is deliberately literal (exact name → slug → substring) so a request
never silently lands on a different page. Fuzzy scoring is only used to
suggest the closest valid name in the error.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from rapidfuzz import fuzz, process

from alegradocs.errors import AlegraDocsError, ErrorCode

if TYPE_CHECKING:
    from collections.abc import Sequence

    from alegradocs.models.catalog import Module, Submodule
    from alegradocs.models.store import OperationRecord


def normalise_name(raw: str) -> str:
    """Lowercase, trim, and collapse internal whitespace."""
    return re.sub(r"\s+", " ", raw).strip().lower()


def _as_slug(normalised: str) -> str:
    return normalised.replace(" ", "-")


def find_module(modules: Sequence[Module], query: str) -> Module | None:
    """Exact name, then slug, then name substring. First hit wins."""
    q = normalise_name(query)
    if not q:
        return None
    for module in modules:
        if module.name.lower() == q:
            return module
    for module in modules:
        if module.slug == _as_slug(q):
            return module
    for module in modules:
        if q in module.name.lower():
            return module
    return None


def find_submodule(submodules: Sequence[Submodule], query: str) -> Submodule | None:
    """Exact name, then slug, then name substring, then slug substring."""
    q = normalise_name(query)
    if not q:
        return None
    slug = _as_slug(q)
    for sub in submodules:
        if sub.name.lower() == q:
            return sub
    for sub in submodules:
        if sub.slug == slug:
            return sub
    for sub in submodules:
        if q in sub.name.lower():
            return sub
    for sub in submodules:
        if slug in sub.slug:
            return sub
    return None


def closest_name(query: str, names: Sequence[str], *, score_cutoff: int = 60) -> str | None:
    """Best fuzzy match among ``names`` for a "did you mean" hint, or None."""
    if not names:
        return None
    result = process.extractOne(
        normalise_name(query),
        list(names),
        scorer=fuzz.WRatio,
        processor=normalise_name,
        score_cutoff=score_cutoff,
    )
    return result[0] if result is not None else None


def _quoted(names: Sequence[str]) -> str:
    return ", ".join(f'"{name}"' for name in names)


def _did_you_mean(query: str, names: Sequence[str], fallback: str) -> str:
    closest = closest_name(query, names)
    if closest is None:
        return fallback
    return f'Did you mean "{closest}"? {fallback}'


def require_module(modules: Sequence[Module], query: str) -> Module:
    module = find_module(modules, query)
    if module is not None:
        return module
    names = [m.name for m in modules]
    raise AlegraDocsError(
        code=ErrorCode.MODULE_NOT_FOUND,
        message=f'Module "{query}" not found. Available modules: {_quoted(names)}',
        suggestion=_did_you_mean(query, names, "Call list_modules to see every module."),
        recoverable=False,
    )


def require_submodule(module: Module, query: str) -> Submodule:
    sub = find_submodule(module.submodules, query)
    if sub is not None:
        return sub
    names = [s.name for s in module.submodules]
    raise AlegraDocsError(
        code=ErrorCode.SUBMODULE_NOT_FOUND,
        message=(
            f'Submodule "{query}" not found in module "{module.name}". '
            f"Available submodules: {_quoted(names)}"
        ),
        suggestion=_did_you_mean(
            query,
            names,
            f'Call list_submodules with module="{module.name}" to see every submodule.',
        ),
        recoverable=False,
    )


def operation_not_found(
    query: str, submodule: Submodule, operations: Sequence[OperationRecord]
) -> AlegraDocsError:
    names = [op.name for op in operations]
    available = _quoted(names) if names else "none were found on this page"
    return AlegraDocsError(
        code=ErrorCode.OPERATION_NOT_FOUND,
        message=(
            f'Operation "{query}" not found in "{submodule.name}". '
            f"Available operations: {available}"
        ),
        suggestion=_did_you_mean(
            query,
            names,
            "Omit the 'operation' parameter to list every operation of this submodule.",
        ),
        recoverable=False,
    )
