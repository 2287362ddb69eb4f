from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class Submodule(BaseModel):
    """A documentation page reference listed under a module."""

    model_config = ConfigDict(frozen=True)

    name: str
    slug: str
    url: str


class Module(BaseModel):
    """Top-level documentation category (e.g. "Ingresos", "Gastos")."""

    model_config = ConfigDict(frozen=True)

    name: str
    slug: str
    submodules: tuple[Submodule, ...] = ()


class Operation(BaseModel):
    """An HTTP endpoint page nested under a container submodule."""

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    slug: str


class CatalogIndex(BaseModel):
    """The module/submodule tree of the documentation site.

    Replaced wholesale on every catalog refresh.
    """

    fetched_at: datetime
    base_url: str
    modules: list[Module] = []
