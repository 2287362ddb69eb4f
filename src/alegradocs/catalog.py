"""Module catalog: fetch, parse and cache the documentation site's module tree.

The catalog (modules and their submodule pages) is parsed from the site's
home page with the same cascade as page content: embedded JSON first, then
the rendered sidebar HTML, then a built-in snapshot of the known public
structure so the tools stay usable when the site changes shape.

The parsed catalog is cached as one JSON document with its own TTL,
independent of the per-page TTL in the index store.
"""

from __future__ import annotations

import json
import os
import sys
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup

from alegradocs.models.catalog import CatalogIndex, Module, Submodule
from alegradocs.payload import (
    CATEGORY_PATHS,
    as_text,
    first_value,
    get_nested,
    load_embedded_payload,
    slug_from_url,
    slugify,
)

if TYPE_CHECKING:
    from alegradocs.protocols import FetcherProtocol
    from alegradocs.state import AppState

log = structlog.get_logger()

_HEADING_TAGS = ("h2", "h3", "h4", "h5")
_LABEL_TAGS = (*_HEADING_TAGS, "div", "p", "span")

# Known public module structure of developer.alegra.com, used only when
# neither the embedded payload nor the rendered sidebar yields any module.
_FALLBACK_MODULES: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = (
    (
        "Información General",
        (
            ("Autenticación", "autenticacion"),
            ("Límite de request", "limite-de-request"),
        ),
    ),
    (
        "Ingresos",
        (
            ("Facturas de venta", "facturas-de-venta"),
            ("Pagos", "pagos"),
            ("Notas Crédito", "notas-credito"),
            ("Cotizaciones", "cotizaciones"),
            ("Remisiones", "remisiones"),
            ("Ordenes de venta", "ordenes-de-venta"),
        ),
    ),
    (
        "Gastos",
        (
            ("Facturas de proveedor", "facturas-de-proveedor"),
            ("Órdenes de compra", "ordenes-de-compra"),
            ("Notas de débito", "notas-de-debito"),
        ),
    ),
    (
        "Inventario",
        (
            ("Ítems", "items"),
            ("Bodegas", "bodegas"),
            ("Transferencia de bodegas", "transferencia-de-bodegas"),
        ),
    ),
    (
        "Contactos",
        (
            ("Contactos", "contactos"),
            ("Adjuntos", "adjuntos"),
        ),
    ),
    (
        "Vendedores",
        (
            ("Crear un vendedor", "crear-un-vendedor"),
            ("Consultar todos los vendedores", "consultar-todos-los-vendedores"),
            ("Consultar un vendedor", "consultar-un-vendedor"),
        ),
    ),
    (
        "Contabilidad",
        (
            ("Cuentas contables", "cuentas-contables"),
            ("Centros de costos", "centros-de-costos"),
            ("Comprobantes contables", "comprobantes-contables"),
        ),
    ),
    (
        "Bancos",
        (
            ("Cuentas de banco", "cuentas-de-banco"),
            ("Conciliaciones", "conciliaciones"),
        ),
    ),
    (
        "Configuraciones",
        (
            ("Impuestos", "impuestos"),
            ("Retenciones", "retenciones"),
            ("Monedas", "monedas"),
        ),
    ),
    (
        "Suscripciones a Webhooks",
        (
            ("Descripción general", "descripcion-general"),
            ("Crear Suscripción", "crear-suscripcion"),
            ("Listar Suscripciones", "listar-suscripciones"),
        ),
    ),
    (
        "API de cargos adicionales",
        (("Cargos adicionales : Propina", "cargos-adicionales"),),
    ),
)


def _reference_url(base_url: str, reference_path: str, slug: str) -> str:
    return f"{base_url.rstrip('/')}/{reference_path.strip('/')}/{slug}"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def modules_from_payload(
    payload: dict[str, Any], base_url: str, reference_path: str
) -> list[Module]:
    """Map the first non-empty category list of the payload to modules."""
    for path in CATEGORY_PATHS:
        categories = get_nested(payload, *path)
        if not isinstance(categories, list) or not categories:
            continue
        modules = []
        for category in categories:
            if not isinstance(category, dict):
                continue
            name = as_text(first_value(category, "title", "name"))
            if not name:
                continue
            pages = first_value(category, "pages", "docs")
            submodules = _submodules_from_pages(pages, base_url, reference_path)
            modules.append(Module(name=name, slug=slugify(name), submodules=tuple(submodules)))
        if modules:
            return modules
    return []


def _submodules_from_pages(pages: Any, base_url: str, reference_path: str) -> list[Submodule]:
    """Flatten a page tree depth-first; nested pages become sibling submodules."""
    if not isinstance(pages, list):
        return []
    submodules = []
    for page in pages:
        if not isinstance(page, dict):
            continue
        name = as_text(first_value(page, "title", "name"))
        if not name:
            continue
        slug = as_text(first_value(page, "slug", "id")) or slugify(name)
        submodules.append(
            Submodule(name=name, slug=slug, url=_reference_url(base_url, reference_path, slug))
        )
        children = first_value(page, "pages", "children")
        submodules.extend(_submodules_from_pages(children, base_url, reference_path))
    return submodules


def modules_from_html(soup: BeautifulSoup, base_url: str) -> list[Module]:
    """Rebuild modules from a rendered sidebar.

    First pass: a text-only label immediately followed by a ``<ul>`` of links.
    Second pass: every link grouped under the nearest preceding h2–h5.
    """
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()

    modules = []
    for ul in soup.find_all("ul"):
        label = ul.find_previous_sibling()
        if label is None or label.name not in _LABEL_TAGS or label.find() is not None:
            continue
        name = label.get_text(strip=True)
        if not 2 <= len(name) <= 80:
            continue
        submodules = _links(ul.find_all("a", href=True), base_url)
        if submodules:
            modules.append(Module(name=name, slug=slugify(name), submodules=tuple(submodules)))
    if modules:
        return modules

    groups: list[tuple[str, list[Any]]] = []
    for element in soup.find_all([*_HEADING_TAGS, "a"]):
        if element.name in _HEADING_TAGS:
            heading = element.get_text(strip=True)
            if len(heading) >= 2:
                groups.append((heading, []))
        elif groups and element.get("href"):
            groups[-1][1].append(element)

    for heading, anchors in groups:
        submodules = _links(anchors, base_url)
        if submodules:
            modules.append(
                Module(name=heading, slug=slugify(heading), submodules=tuple(submodules))
            )
    return modules


def _links(anchors: list[Any], base_url: str) -> list[Submodule]:
    submodules = []
    for anchor in anchors:
        href = str(anchor.get("href") or "").strip()
        name = anchor.get_text(" ", strip=True)
        if not name or not href or href.startswith("#"):
            continue
        url = urljoin(base_url + "/", href)
        submodules.append(Submodule(name=name, slug=slug_from_url(url), url=url))
    return submodules


def fallback_catalog(base_url: str, reference_path: str) -> CatalogIndex:
    modules = [
        Module(
            name=name,
            slug=slugify(name),
            submodules=tuple(
                Submodule(
                    name=page_name,
                    slug=slug,
                    url=_reference_url(base_url, reference_path, slug),
                )
                for page_name, slug in pages
            ),
        )
        for name, pages in _FALLBACK_MODULES
    ]
    return CatalogIndex(fetched_at=datetime.now(UTC), base_url=base_url, modules=modules)


def parse_catalog(html: str, base_url: str, reference_path: str) -> CatalogIndex:
    """Parse the home page into a catalog, falling back to the built-in one."""
    soup = BeautifulSoup(html, "html.parser")

    payload = load_embedded_payload(soup)
    if payload is not None:
        modules = modules_from_payload(payload, base_url, reference_path)
        if modules:
            log.info("catalog_parsed", source="payload", modules=len(modules))
            return CatalogIndex(fetched_at=datetime.now(UTC), base_url=base_url, modules=modules)

    modules = modules_from_html(soup, base_url)
    if modules:
        log.info("catalog_parsed", source="html", modules=len(modules))
        return CatalogIndex(fetched_at=datetime.now(UTC), base_url=base_url, modules=modules)

    log.warning("catalog_using_fallback", base_url=base_url)
    return fallback_catalog(base_url, reference_path)


async def fetch_catalog(
    fetcher: FetcherProtocol,
    allowlist: frozenset[str],
    *,
    base_url: str,
    reference_path: str,
) -> CatalogIndex:
    """Fetch the documentation home page and parse its module tree.

    Fetch errors propagate (AlegraDocsError); only an unparseable page falls
    back to the built-in catalog.
    """
    html = await fetcher.fetch(base_url, allowlist)
    catalog = parse_catalog(html, base_url, reference_path)
    log.info("catalog_fetched", base_url=base_url, modules=len(catalog.modules))
    return catalog


# ---------------------------------------------------------------------------
# JSON document cache
# ---------------------------------------------------------------------------


class CatalogCache:
    """Single JSON document holding the last fetched catalog."""

    def __init__(self, path: Path, ttl_days: float) -> None:
        self.path = path
        self._ttl = timedelta(days=ttl_days)

    def load(self) -> CatalogIndex | None:
        """Read the cached catalog. Missing or corrupt files read as None."""
        if not self.path.is_file():
            return None
        try:
            return CatalogIndex.model_validate_json(self.path.read_bytes())
        except Exception:
            log.warning("catalog_cache_invalid", path=str(self.path), exc_info=True)
            return None

    def is_stale(self, catalog: CatalogIndex | None, *, now: datetime | None = None) -> bool:
        if catalog is None:
            return True
        now = now or datetime.now(UTC)
        return now - catalog.fetched_at > self._ttl

    def save(self, catalog: CatalogIndex) -> None:
        """Write the catalog with atomic replace semantics."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        data = json.dumps(catalog.model_dump(mode="json"), ensure_ascii=False, indent=2)
        try:
            _write_bytes_fsync(tmp_path, data.encode("utf-8"))
            os.replace(tmp_path, self.path)
            _fsync_directory(self.path.parent)
        finally:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)


def _write_bytes_fsync(path: Path, data: bytes) -> None:
    with path.open("wb") as file_obj:
        file_obj.write(data)
        file_obj.flush()
        os.fsync(file_obj.fileno())


def _fsync_directory(path: Path) -> None:
    if sys.platform == "win32":
        return  # Windows does not support fsync on directory handles
    directory_fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(directory_fd)
    finally:
        os.close(directory_fd)


async def resolve_catalog(
    state: AppState, *, force_refresh: bool = False
) -> tuple[CatalogIndex, bool]:
    """Return ``(catalog, refreshed)``: the cached catalog while fresh, else a new fetch.

    A cached catalog built for a different ``base_url`` counts as stale.
    """
    docs = state.settings.docs
    cache = state.catalog_cache

    cached = cache.load()
    if (
        not force_refresh
        and cached is not None
        and cached.base_url == docs.base_url
        and not cache.is_stale(cached)
    ):
        log.debug("catalog_cache_hit", fetched_at=cached.fetched_at.isoformat())
        return cached, False

    catalog = await fetch_catalog(
        state.fetcher,
        state.allowlist,
        base_url=docs.base_url,
        reference_path=docs.reference_path,
    )
    try:
        cache.save(catalog)
    except OSError:
        log.warning("catalog_cache_write_error", path=str(cache.path), exc_info=True)
    return catalog, True
