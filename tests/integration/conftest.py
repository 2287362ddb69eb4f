"""Integration test fixtures.

Provides a fully wired AppState (in-memory SQLite, real Fetcher over httpx,
tmp catalog file) and a respx-mocked copy of the documentation site:

  - home page: ``Gastos`` → ``Facturas de proveedor`` (a container page) and
    ``Ingresos`` → ``Pagos`` (a leaf page);
  - the container lists two operations, ``Crear`` and ``Listar``, each with
    its own page.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import httpx
import pytest
import respx

from alegradocs.catalog import CatalogCache
from alegradocs.config import Settings
from alegradocs.extractor import ContentExtractor
from alegradocs.fetcher import Fetcher, build_allowlist
from alegradocs.schedulers import cancel_background_tasks
from alegradocs.state import AppState
from alegradocs.store import IndexStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterator

    from alegradocs.protocols import EmbedderProtocol

BASE_URL = "https://developer.alegra.com"
REFERENCE = f"{BASE_URL}/reference"

CONTAINER_SLUG = "facturas-de-proveedor"
CREAR_SLUG = "crear-factura-de-proveedor"
LISTAR_SLUG = "listar-facturas-de-proveedor"
LEAF_SLUG = "pagos"

CATEGORIES = [
    {
        "title": "Gastos",
        "pages": [{"title": "Facturas de proveedor", "slug": CONTAINER_SLUG}],
    },
    {
        "title": "Ingresos",
        "pages": [{"title": "Pagos", "slug": LEAF_SLUG}],
    },
]

LEAF_BODY = (
    "<h2>Pagos recibidos</h2>"
    "<p>Los pagos recibidos registran el dinero que entra a tu empresa por la venta de "
    "productos o servicios. Puedes asociarlos a una o varias facturas de venta abiertas.</p>"
    "<h2>Cuentas de banco</h2>"
    "<p>Cada pago debe indicar la cuenta de banco donde se deposita el dinero. Usa el "
    "identificador de la cuenta que obtienes al listar las cuentas de banco.</p>"
)


@dataclass
class DocsSite:
    """Routes of the mocked documentation site, for call counts and swaps."""

    router: respx.MockRouter
    home: respx.Route
    container: respx.Route
    crear: respx.Route
    listar: respx.Route
    leaf: respx.Route
    render: Callable[..., str]
    next_doc: Callable[..., dict[str, Any]]

    def container_page(self, children: list[tuple[str, str]]) -> httpx.Response:
        """The container page with the given ``(name, slug)`` children."""
        doc = {
            "title": "Facturas de proveedor",
            "slug": CONTAINER_SLUG,
            "body": (
                "<p>Las facturas de proveedor registran las compras que realiza tu empresa. "
                "Con este recurso puedes crear, consultar, editar y eliminar facturas de "
                "proveedor desde tu integración con la API de Alegra.</p>"
            ),
            "children": [{"title": name, "slug": slug} for name, slug in children],
        }
        return httpx.Response(200, text=self.render(self.next_doc(doc)))


@pytest.fixture()
def docs_site(
    make_page: Callable[..., str],
    make_next_doc: Callable[..., dict[str, Any]],
    make_operation_doc: Callable[..., dict[str, Any]],
) -> Iterator[DocsSite]:
    def page(doc: dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, text=make_page(make_next_doc(doc)))

    with respx.mock(assert_all_called=False) as router:
        home = router.get(host="developer.alegra.com", path="/").mock(
            return_value=httpx.Response(
                200, text=make_page(make_next_doc({"title": "Inicio"}, categories=CATEGORIES))
            )
        )
        crear = router.get(f"{REFERENCE}/{CREAR_SLUG}").mock(
            return_value=page(
                make_operation_doc("Crear factura de proveedor", CREAR_SLUG, "post", "/bills")
            )
        )
        listar = router.get(f"{REFERENCE}/{LISTAR_SLUG}").mock(
            return_value=page(
                make_operation_doc("Listar facturas de proveedor", LISTAR_SLUG, "get", "/bills")
            )
        )
        leaf = router.get(f"{REFERENCE}/{LEAF_SLUG}").mock(
            return_value=page({"title": "Pagos", "slug": LEAF_SLUG, "body": LEAF_BODY})
        )
        container = router.get(f"{REFERENCE}/{CONTAINER_SLUG}")
        site = DocsSite(
            router=router,
            home=home,
            container=container,
            crear=crear,
            listar=listar,
            leaf=leaf,
            render=make_page,
            next_doc=make_next_doc,
        )
        container.mock(
            return_value=site.container_page([("Crear", CREAR_SLUG), ("Listar", LISTAR_SLUG)])
        )
        yield site


@asynccontextmanager
async def _wired_state(
    tmp_path: Path, embedder: EmbedderProtocol | None
) -> AsyncIterator[AppState]:
    settings = Settings(
        cache={"catalog_path": str(tmp_path / "catalog.json")},
        embedding={"enabled": embedder is not None, "warm_up": False},
    )
    async with aiosqlite.connect(":memory:") as db:
        store = IndexStore(
            db,
            ttl_days=settings.cache.ttl_days,
            embedder=embedder,
            candidate_k=settings.retrieval.candidate_k,
            rrf_k=settings.retrieval.rrf_k,
        )
        await store.init_db()

        async with httpx.AsyncClient() as client:
            state = AppState(
                settings=settings,
                store=store,
                fetcher=Fetcher(client, settings.fetcher),
                extractor=ContentExtractor(settings.docs.base_url, settings.docs.reference_path),
                catalog_cache=CatalogCache(
                    Path(settings.cache.catalog_path), settings.cache.ttl_days
                ),
                allowlist=build_allowlist(settings.docs.base_url),
                http_client=client,
                embedder=embedder,
            )
            try:
                yield state
            finally:
                await cancel_background_tasks(state)


@pytest.fixture()
async def app_state(tmp_path: Path) -> AsyncIterator[AppState]:
    """Full AppState without an embedder: retrieval is keyword-only."""
    async with _wired_state(tmp_path, None) as state:
        yield state


@pytest.fixture()
async def hybrid_app_state(tmp_path: Path, hashing_embedder: Any) -> AsyncIterator[AppState]:
    """Full AppState with the deterministic hashing embedder."""
    async with _wired_state(tmp_path, hashing_embedder) as state:
        yield state


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Baseline env dict for subprocess-based MCP integration tests.

    Points every data path at an isolated tmp directory and disables the
    embedding model so the server starts without downloading anything.
    """
    env = os.environ.copy()
    env["ALEGRADOCS__CACHE__DB_PATH"] = str(tmp_path / "docs.db")
    env["ALEGRADOCS__CACHE__CATALOG_PATH"] = str(tmp_path / "catalog.json")
    env["ALEGRADOCS__EMBEDDING__ENABLED"] = "false"
    # Unroutable: any tool call that reaches the network fails fast.
    env["ALEGRADOCS__DOCS__BASE_URL"] = "http://127.0.0.1:1"
    return env
