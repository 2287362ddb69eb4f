"""Shared test fixtures for the alegradocs test suite."""

from __future__ import annotations

import hashlib
import json
import re
from typing import TYPE_CHECKING, Any

import aiosqlite
import numpy as np
import pytest

from alegradocs.store import IndexStore

if TYPE_CHECKING:
    from collections.abc import Callable

BASE_URL = "https://developer.alegra.com"


class HashingEmbedder:
    """Deterministic bag-of-words embedder implementing EmbedderProtocol.

    Every token is hashed into one of ``dim`` buckets; vectors are L2-normalised
    float32 like the real model's, so texts sharing words score higher.
    """

    def __init__(self, dim: int = 256) -> None:
        self.dim = dim
        self.embedded: list[str] = []
        self.warmed_up = False

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        for token in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dim
            vector[bucket] += 1.0
        norm = float(np.linalg.norm(vector))
        return vector / norm if norm else vector

    async def embed(self, text: str) -> np.ndarray:
        self.embedded.append(text)
        return self._vector(text)

    async def embed_many(self, texts: list[str]) -> np.ndarray:
        self.embedded.extend(texts)
        return np.vstack([self._vector(t) for t in texts]).astype(np.float32)

    async def warm_up(self) -> None:
        self.warmed_up = True


def render_page(
    payload: dict[str, Any] | None = None, *, script_id: str = "__NEXT_DATA__", body: str = ""
) -> str:
    """A ReadMe-style page: optional embedded JSON payload plus rendered body HTML."""
    script = ""
    if payload is not None:
        # "<\/" is a valid JSON escape and keeps "</p>" from closing the script tag.
        data = json.dumps(payload, ensure_ascii=False).replace("</", "<\\/")
        script = f'<script id="{script_id}" type="application/json">{data}</script>'
    return (
        "<!DOCTYPE html><html><head><title>Alegra API</title>"
        f"{script}</head><body>{body}</body></html>"
    )


def next_doc(doc: dict[str, Any], **page_props: Any) -> dict[str, Any]:
    """Newer hub payload shape: ``props.pageProps.doc`` plus extra page props."""
    return {"props": {"pageProps": {"doc": doc, **page_props}}}


LONG_BODY = (
    "<p>Las facturas de proveedor registran las compras que realiza tu empresa. "
    "Con este recurso puedes crear, consultar, editar y eliminar facturas de "
    "proveedor desde tu integración con la API de Alegra.</p>"
)


def operation_doc(title: str, slug: str, method: str, path: str) -> dict[str, Any]:
    """An operation page with five prose sections plus the API block."""
    body = "".join(
        f"<h2>{heading}</h2><p>{text}</p>"
        for heading, text in (
            (
                "Descripción",
                f"Este endpoint permite {title.lower()} en tu cuenta de Alegra. "
                "Todas las peticiones requieren autenticación básica con el correo y el token.",
            ),
            (
                "Campos obligatorios",
                "El proveedor, la fecha de emisión, la fecha de vencimiento y al menos un "
                "ítem con su precio y cantidad son obligatorios para registrar el documento.",
            ),
            (
                "Response",
                "The response body contains the created bill with its id, number template, "
                "totals, balance and status. Response status 201 indicates success.",
            ),
            (
                "Errores comunes",
                "Un código 400 indica que falta un campo obligatorio o que el formato de una "
                "fecha no es válido. Un código 401 indica credenciales incorrectas.",
            ),
            (
                "Notas",
                "Las facturas en estado cerrado no pueden editarse. Para anularlas utiliza el "
                "endpoint correspondiente y verifica que no tengan pagos asociados.",
            ),
        )
    )
    return {
        "title": title,
        "slug": slug,
        "excerpt": f"{title} mediante la API de Alegra.",
        "body": body,
        "api": {
            "method": method,
            "url": path,
            "params": [
                {
                    "name": "id",
                    "in": "path",
                    "type": "integer",
                    "required": True,
                    "desc": "Identificador",
                },
            ],
        },
    }


@pytest.fixture()
def hashing_embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture()
def make_page() -> Callable[..., str]:
    return render_page


@pytest.fixture()
def make_next_doc() -> Callable[..., dict[str, Any]]:
    return next_doc


@pytest.fixture()
def make_operation_doc() -> Callable[..., dict[str, Any]]:
    return operation_doc


@pytest.fixture()
def long_body() -> str:
    return LONG_BODY


@pytest.fixture()
async def store() -> IndexStore:
    """IndexStore over an in-memory database, no embedder."""
    async with aiosqlite.connect(":memory:") as db:
        index_store = IndexStore(db)
        await index_store.init_db()
        yield index_store


@pytest.fixture()
async def hybrid_store(hashing_embedder: HashingEmbedder) -> IndexStore:
    """IndexStore over an in-memory database with the hashing embedder."""
    async with aiosqlite.connect(":memory:") as db:
        index_store = IndexStore(db, embedder=hashing_embedder)
        await index_store.init_db()
        yield index_store
