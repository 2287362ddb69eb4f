"""Unit tests for alegradocs.store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import aiosqlite
import pytest

from alegradocs.errors import AlegraDocsError, ErrorCode
from alegradocs.models.catalog import Operation
from alegradocs.models.store import Section
from alegradocs.store import build_match_query

if TYPE_CHECKING:
    from alegradocs.store import IndexStore

    from conftest import HashingEmbedder

SLUG = "facturas-de-proveedor"
URL = "https://developer.alegra.com/reference/facturas-de-proveedor"

SECTIONS = [
    Section(title="Autenticación", content="Usa autenticación básica con tu correo y token."),
    Section(title="Paginación", content="Usa los parámetros start y limit para paginar."),
    Section(title="Errores", content="Un status 400 indica un campo inválido en la petición."),
    Section(title="Respuesta", content="La respuesta incluye el id y el total de la factura."),
    Section(title="Notas", content="Las facturas cerradas no se pueden editar."),
]

OPERATIONS = [
    Operation(name="Crear", url=f"{URL}/crear", slug="crear-factura-de-proveedor"),
    Operation(name="Listar", url=f"{URL}/listar", slug="listar-facturas-de-proveedor"),
    Operation(name="Consultar", url=f"{URL}/consultar", slug="consultar-factura-de-proveedor"),
]


async def _index(store: IndexStore, sections: list[Section] = SECTIONS, **kwargs) -> None:
    await store.replace_page(SLUG, "Gastos", "Facturas de proveedor", URL, sections, **kwargs)


async def _count(store: IndexStore, table: str) -> int:
    cursor = await store._db.execute(f"SELECT COUNT(*) FROM {table}")
    row = await cursor.fetchone()
    return row[0]


# ---------------------------------------------------------------------------
# build_match_query
# ---------------------------------------------------------------------------


class TestBuildMatchQuery:
    def test_tokens_quoted_and_or_joined(self) -> None:
        assert build_match_query("crear factura") == '"crear" OR "factura"'

    def test_fts_syntax_is_neutralised(self) -> None:
        assert build_match_query('id* AND "total" NEAR(x)') == (
            '"id" OR "AND" OR "total" OR "NEAR" OR "x"'
        )

    def test_nothing_left(self) -> None:
        assert build_match_query("  ?!* ") is None


# ---------------------------------------------------------------------------
# Pages and TTL
# ---------------------------------------------------------------------------


class TestPages:
    async def test_replace_and_read_back(self, store: IndexStore) -> None:
        await _index(store)
        meta = await store.page_meta(SLUG)
        assert meta is not None
        assert meta.module == "Gastos"
        assert meta.submodule == "Facturas de proveedor"
        assert meta.url == URL
        assert meta.fetched_at.tzinfo is not None

        sections = await store.all_sections(SLUG)
        assert [s.title for s in sections] == [s.title for s in SECTIONS]
        assert [s.position for s in sections] == list(range(len(SECTIONS)))
        assert await store.section_count(SLUG) == len(SECTIONS)

    async def test_reindex_leaves_one_page_with_second_extraction(self, store: IndexStore) -> None:
        await _index(store)
        await store.replace_operations(SLUG, OPERATIONS)

        second = [Section(title="Nuevo", content="Contenido de la segunda extracción.")]
        await _index(store, second)
        await store.replace_operations(SLUG, OPERATIONS[:1])

        assert await _count(store, "pages") == 1
        assert [s.title for s in await store.all_sections(SLUG)] == ["Nuevo"]
        assert [op.name for op in await store.operations_for(SLUG)] == ["Crear"]
        assert await _count(store, "sections") == 1
        assert await _count(store, "operations") == 1

    async def test_reindex_keeps_keyword_index_in_sync(self, store: IndexStore) -> None:
        await _index(store)
        await _index(store, [Section(title="Nuevo", content="Solo queda esto.")])
        results = await store.keyword_search(SLUG, "paginar limit", limit=3)
        # Old sections are gone from the FTS index too: only the positional fallback remains.
        assert [s.title for s in results] == ["Nuevo"]

    async def test_unknown_page(self, store: IndexStore) -> None:
        assert await store.page_meta("nope") is None
        assert await store.all_sections("nope") == []
        assert await store.section_count("nope") == 0


class TestIsStale:
    FETCHED = datetime(2026, 1, 1, tzinfo=UTC)

    async def test_missing_page_is_stale(self, store: IndexStore) -> None:
        assert await store.is_stale("never-fetched") is True

    async def test_fresh_page(self, store: IndexStore) -> None:
        await _index(store, fetched_at=self.FETCHED)
        assert await store.is_stale(SLUG, now=self.FETCHED + timedelta(days=1)) is False

    async def test_exactly_ttl_old_is_fresh(self, store: IndexStore) -> None:
        await _index(store, fetched_at=self.FETCHED)
        assert await store.is_stale(SLUG, now=self.FETCHED + timedelta(days=5)) is False

    async def test_older_than_ttl_is_stale(self, store: IndexStore) -> None:
        await _index(store, fetched_at=self.FETCHED)
        later = self.FETCHED + timedelta(days=5, seconds=1)
        assert await store.is_stale(SLUG, now=later) is True


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class TestOperations:
    async def test_order_preserved(self, store: IndexStore) -> None:
        await _index(store)
        assert await store.replace_operations(SLUG, OPERATIONS) == 3
        operations = await store.operations_for(SLUG)
        assert [op.name for op in operations] == ["Crear", "Listar", "Consultar"]
        assert [op.position for op in operations] == [0, 1, 2]
        assert await store.has_operations(SLUG) is True

    async def test_empty_list_keeps_existing(self, store: IndexStore) -> None:
        await _index(store)
        await store.replace_operations(SLUG, OPERATIONS)
        assert await store.replace_operations(SLUG, []) == 0
        assert len(await store.operations_for(SLUG)) == 3

    async def test_page_reindex_drops_operations(self, store: IndexStore) -> None:
        await _index(store)
        await store.replace_operations(SLUG, OPERATIONS)
        await _index(store)
        assert await store.operations_for(SLUG) == []
        assert await store.has_operations(SLUG) is False

    async def test_missing_page(self, store: IndexStore) -> None:
        assert await store.replace_operations("nope", OPERATIONS) == 0

    @pytest.mark.parametrize(
        ("needle", "expected"),
        [
            ("crear", "Crear"),
            ("LISTAR", "Listar"),
            ("consultar-factura-de-proveedor", "Consultar"),
            ("sulta", "Consultar"),
            ("listar facturas", "Listar"),
        ],
    )
    async def test_find_operation(self, store: IndexStore, needle: str, expected: str) -> None:
        await _index(store)
        await store.replace_operations(SLUG, OPERATIONS)
        found = await store.find_operation(SLUG, needle)
        assert found is not None
        assert found.name == expected

    async def test_find_operation_miss(self, store: IndexStore) -> None:
        await _index(store)
        await store.replace_operations(SLUG, OPERATIONS)
        assert await store.find_operation(SLUG, "eliminar") is None
        assert await store.find_operation(SLUG, "   ") is None


# ---------------------------------------------------------------------------
# Keyword search
# ---------------------------------------------------------------------------


class TestKeywordSearch:
    async def test_best_match_first(self, store: IndexStore) -> None:
        await _index(store)
        results = await store.keyword_search(SLUG, "limit paginar", limit=3)
        assert results[0].title == "Paginación"
        assert len(results) <= 3

    async def test_accents_are_ignored(self, store: IndexStore) -> None:
        await _index(store)
        results = await store.keyword_search(SLUG, "autenticacion", limit=1)
        assert [s.title for s in results] == ["Autenticación"]

    async def test_no_match_falls_back_to_position(self, store: IndexStore) -> None:
        await _index(store)
        results = await store.keyword_search(SLUG, "zzzz", limit=2)
        assert [s.title for s in results] == ["Autenticación", "Paginación"]

    async def test_scoped_to_page(self, store: IndexStore) -> None:
        await _index(store)
        await store.replace_page(
            "otra", "Ingresos", "Pagos", "https://x.test/otra",
            [Section(title="Pagos", content="Limit y start también existen aquí.")],
        )
        results = await store.keyword_search("otra", "limit", limit=3)
        assert [s.title for s in results] == ["Pagos"]


# ---------------------------------------------------------------------------
# Vectors and hybrid search
# ---------------------------------------------------------------------------


class TestHybridSearch:
    async def test_without_vectors_equals_keyword_search(self, hybrid_store: IndexStore) -> None:
        await _index(hybrid_store)
        for query in ("limit paginar", "status", "zzzz"):
            hybrid = await hybrid_store.hybrid_search(SLUG, query, limit=3)
            keyword = await hybrid_store.keyword_search(SLUG, query, limit=3)
            assert hybrid == keyword

    async def test_without_embedder_equals_keyword_search(self, store: IndexStore) -> None:
        await _index(store)
        assert await store.embed_sections(SLUG) == 0
        hybrid = await store.hybrid_search(SLUG, "status", limit=2)
        assert hybrid == await store.keyword_search(SLUG, "status", limit=2)

    async def test_embed_sections_writes_one_vector_per_section(
        self, hybrid_store: IndexStore
    ) -> None:
        await _index(hybrid_store)
        assert await hybrid_store.embed_sections(SLUG) == len(SECTIONS)
        # Re-running overwrites rather than duplicating.
        assert await hybrid_store.embed_sections(SLUG) == len(SECTIONS)
        assert await hybrid_store.vector_count(SLUG) == len(SECTIONS)

    async def test_reindex_drops_vectors(self, hybrid_store: IndexStore) -> None:
        await _index(hybrid_store)
        await hybrid_store.embed_sections(SLUG)
        await _index(hybrid_store)
        assert await hybrid_store.vector_count(SLUG) == 0
        assert await _count(hybrid_store, "section_vectors") == 0

    async def test_fused_results_in_document_order(self, hybrid_store: IndexStore) -> None:
        await _index(hybrid_store)
        await hybrid_store.embed_sections(SLUG)

        top = await hybrid_store.hybrid_search(SLUG, "parámetros start limit paginar", limit=1)
        assert [s.title for s in top] == ["Paginación"]

        three = await hybrid_store.hybrid_search(SLUG, "status factura token", limit=3)
        assert len(three) == 3
        positions = [s.position for s in three]
        assert positions == sorted(positions)

    async def test_query_embedding_failure_falls_back(
        self, hybrid_store: IndexStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await _index(hybrid_store)
        await hybrid_store.embed_sections(SLUG)

        async def broken_embed(text: str):
            raise RuntimeError("model unavailable")

        monkeypatch.setattr(hybrid_store._embedder, "embed", broken_embed)
        hybrid = await hybrid_store.hybrid_search(SLUG, "status", limit=2)
        assert hybrid == await hybrid_store.keyword_search(SLUG, "status", limit=2)

    async def test_vectors_from_another_model_fall_back_to_keyword_search(
        self, hybrid_store: IndexStore, hashing_embedder: HashingEmbedder
    ) -> None:
        await _index(hybrid_store)
        await hybrid_store.embed_sections(SLUG)
        # A model swap changes the query vector's dimension; stored vectors no longer fit.
        hashing_embedder.dim = 128

        hybrid = await hybrid_store.hybrid_search(SLUG, "zzzz", limit=3)
        keyword = await hybrid_store.keyword_search(SLUG, "zzzz", limit=3)
        assert hybrid == keyword
        assert [s.position for s in hybrid] == [0, 1, 2]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestStoreErrors:
    async def test_sqlite_error_becomes_index_store_error(
        self, store: IndexStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def failing_execute(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(store._db, "execute", failing_execute)
        with pytest.raises(AlegraDocsError) as exc_info:
            await store.page_meta(SLUG)

        assert exc_info.value.code == ErrorCode.INDEX_STORE_ERROR
        assert "disk I/O error" in exc_info.value.message
        assert exc_info.value.recoverable is False

    async def test_failed_replace_rolls_back(
        self, store: IndexStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await _index(store)

        async def failing_executemany(*args, **kwargs):
            raise aiosqlite.IntegrityError("constraint failed")

        with monkeypatch.context() as patch:
            patch.setattr(store._db, "executemany", failing_executemany)
            with pytest.raises(AlegraDocsError):
                await _index(store, [Section(title="Nuevo", content="nunca se guarda")])

        # The previous extraction survives untouched.
        assert [s.title for s in await store.all_sections(SLUG)] == [s.title for s in SECTIONS]
        assert await _count(store, "pages") == 1

    async def test_missing_row_id_becomes_index_store_error(
        self, store: IndexStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        execute = store._db.execute

        class NoRowIdCursor:
            lastrowid = None

        async def execute_without_row_id(sql, *args, **kwargs):
            cursor = await execute(sql, *args, **kwargs)
            return NoRowIdCursor() if sql.startswith("INSERT INTO pages") else cursor

        with monkeypatch.context() as patch:
            patch.setattr(store._db, "execute", execute_without_row_id)
            with pytest.raises(AlegraDocsError) as exc_info:
                await _index(store)

        assert exc_info.value.code == ErrorCode.INDEX_STORE_ERROR
        assert SLUG in exc_info.value.message
        assert await _count(store, "pages") == 0
