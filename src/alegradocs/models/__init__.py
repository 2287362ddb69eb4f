from __future__ import annotations

from alegradocs.models.catalog import CatalogIndex, Module, Operation, Submodule
from alegradocs.models.store import OperationRecord, PageRecord, Section, SectionRecord
from alegradocs.models.tools import (
    GetEndpointDocsInput,
    GetEndpointDocsOutput,
    ListModulesInput,
    ListModulesOutput,
    ListSubmodulesInput,
    ListSubmodulesOutput,
)

__all__ = [
    # catalog
    "CatalogIndex",
    "Module",
    "Submodule",
    "Operation",
    # store
    "Section",
    "PageRecord",
    "SectionRecord",
    "OperationRecord",
    # tools
    "ListModulesInput",
    "ListModulesOutput",
    "ListSubmodulesInput",
    "ListSubmodulesOutput",
    "GetEndpointDocsInput",
    "GetEndpointDocsOutput",
]
