from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class ListModulesInput(BaseModel):
    force_refresh: bool = False


class ListSubmodulesInput(BaseModel):
    module: str = Field(max_length=200)
    force_refresh: bool = False

    @field_validator("module")
    @classmethod
    def strip_module(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("module must not be empty")
        return v


class GetEndpointDocsInput(BaseModel):
    module: str = Field(max_length=200)
    submodule: str = Field(max_length=200)
    operation: str | None = Field(default=None, max_length=200)
    query: str | None = Field(default=None, max_length=500)
    force_refresh: bool = False

    @field_validator("module", "submodule")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("module and submodule must not be empty")
        return v

    @field_validator("operation", "query")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


class ModuleSummary(BaseModel):
    name: str
    slug: str
    submodule_count: int


class ListModulesOutput(BaseModel):
    base_url: str
    fetched_at: datetime
    refreshed: bool
    modules: list[ModuleSummary]
    text: str


class SubmoduleSummary(BaseModel):
    name: str
    slug: str
    url: str
    operations: list[str] = []  # Names of operations already indexed


class ListSubmodulesOutput(BaseModel):
    module: str
    submodules: list[SubmoduleSummary]
    text: str


class OperationEntry(BaseModel):
    name: str
    url: str
    slug: str


class SectionEntry(BaseModel):
    title: str
    content: str
    position: int


class GetEndpointDocsOutput(BaseModel):
    kind: Literal["operations", "sections"]
    module: str
    submodule: str
    operation: str | None = None
    path: str  # "<submodule>" or "<submodule> › <operation>"
    url: str
    refreshed: bool
    fetched_at: datetime | None
    query: str | None = None
    operations: list[OperationEntry] = []
    sections: list[SectionEntry] = []
    sections_total: int = 0
    token_estimate: int
    operations_hint: str | None = None
    text: str
