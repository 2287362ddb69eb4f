from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class Section(BaseModel):
    """A titled chunk of page content, before it is persisted."""

    title: str
    content: str


class PageRecord(BaseModel):
    """Persisted fetch of a submodule or operation page."""

    id: int
    slug: str  # Unique key
    module: str
    submodule: str  # Human path, e.g. "Facturas de proveedor › Crear"
    url: str
    fetched_at: datetime


class SectionRecord(BaseModel):
    id: int
    page_id: int
    title: str
    content: str
    position: int  # Document order within the page


class OperationRecord(BaseModel):
    id: int
    page_id: int
    name: str
    url: str
    slug: str
    position: int  # Sidebar order
