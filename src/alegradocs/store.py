"""SQLite index store for pages, sections, operations and section vectors.

Every page is keyed by its slug and carries a fetched-at timestamp; a page is
stale once it is older than the configured TTL. Re-indexing never patches a
page in place: the old row and everything hanging off it is deleted and the
new extraction inserted in the same transaction.

The keyword index is an FTS5 external-content table over ``sections`` kept
in sync by triggers, so there is no second write path that could drift.
Vectors are float32 BLOBs, one per section, written after the fact by
``embed_sections()``.

All access goes through one connection guarded by one ``asyncio.Lock``:
a reader can never interleave with a half-finished replace. SQLite failures
surface as ``INDEX_STORE_ERROR``; the files are pure caches and can be
deleted at any time.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager, contextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from alegradocs.errors import AlegraDocsError, ErrorCode
from alegradocs.models.store import OperationRecord, PageRecord, SectionRecord
from alegradocs.retrieval import (
    DEFAULT_RRF_K,
    blob_to_vector,
    rank_by_similarity,
    reciprocal_rank_fusion,
    vector_to_blob,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator, Sequence

    from alegradocs.models.catalog import Operation
    from alegradocs.models.store import Section
    from alegradocs.protocols import EmbedderProtocol

log = structlog.get_logger()

DEFAULT_TTL_DAYS = 5.0
DEFAULT_CANDIDATE_K = 20

_CREATE_PAGES_TABLE = """
CREATE TABLE IF NOT EXISTS pages (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    slug       TEXT NOT NULL UNIQUE,
    module     TEXT NOT NULL,
    submodule  TEXT NOT NULL,
    url        TEXT NOT NULL,
    fetched_at TEXT NOT NULL
)
"""

_CREATE_SECTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS sections (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id  INTEGER NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
    title    TEXT NOT NULL,
    content  TEXT NOT NULL,
    position INTEGER NOT NULL
)
"""

_CREATE_OPERATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS operations (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id  INTEGER NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
    name     TEXT NOT NULL,
    url      TEXT NOT NULL,
    slug     TEXT NOT NULL,
    position INTEGER NOT NULL
)
"""

_CREATE_VECTORS_TABLE = """
CREATE TABLE IF NOT EXISTS section_vectors (
    section_id INTEGER PRIMARY KEY REFERENCES sections(id) ON DELETE CASCADE,
    dim        INTEGER NOT NULL,
    vector     BLOB NOT NULL
)
"""

_CREATE_SECTIONS_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_sections_page ON sections(page_id, position)"
)
_CREATE_OPERATIONS_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_operations_page ON operations(page_id, position)"
)

_CREATE_FTS_TABLE = """
CREATE VIRTUAL TABLE IF NOT EXISTS sections_fts USING fts5(
    title,
    content,
    content='sections',
    content_rowid='id',
    tokenize='unicode61 remove_diacritics 2'
)
"""

_CREATE_FTS_TRIGGERS = (
    """
    CREATE TRIGGER IF NOT EXISTS sections_fts_insert AFTER INSERT ON sections BEGIN
        INSERT INTO sections_fts(rowid, title, content)
        VALUES (new.id, new.title, new.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS sections_fts_delete AFTER DELETE ON sections BEGIN
        INSERT INTO sections_fts(sections_fts, rowid, title, content)
        VALUES ('delete', old.id, old.title, old.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS sections_fts_update AFTER UPDATE ON sections BEGIN
        INSERT INTO sections_fts(sections_fts, rowid, title, content)
        VALUES ('delete', old.id, old.title, old.content);
        INSERT INTO sections_fts(rowid, title, content)
        VALUES (new.id, new.title, new.content);
    END
    """,
)

_SECTION_COLUMNS = "s.id, s.page_id, s.title, s.content, s.position"
_OPERATION_COLUMNS = "o.id, o.page_id, o.name, o.url, o.slug, o.position"

_NON_WORD_RE = re.compile(r"[^\w\s]")


def build_match_query(query: str) -> str | None:
    """Turn free text into a safe FTS5 MATCH expression.

    Punctuation is dropped and every remaining token is quoted, so user input
    can never be parsed as FTS5 syntax. Tokens are OR-ed: BM25 already ranks
    sections matching more of them higher. Returns None if nothing is left.
    """
    tokens = _NON_WORD_RE.sub(" ", query).split()
    if not tokens:
        return None
    return " OR ".join(f'"{token}"' for token in tokens)


def _section(row: Any) -> SectionRecord:
    return SectionRecord(id=row[0], page_id=row[1], title=row[2], content=row[3], position=row[4])


def _operation(row: Any) -> OperationRecord:
    return OperationRecord(
        id=row[0], page_id=row[1], name=row[2], url=row[3], slug=row[4], position=row[5]
    )


@contextmanager
def _store_errors(action: str, **context: Any) -> Iterator[None]:
    try:
        yield
    except aiosqlite.Error as exc:
        log.error("index_store_error", action=action, exc_info=True, **context)
        raise AlegraDocsError(
            code=ErrorCode.INDEX_STORE_ERROR,
            message=f"Index store failure during {action}: {exc}",
            suggestion=(
                "The local index may be corrupted. Delete the cache database "
                "file to force a full re-index."
            ),
            recoverable=False,
        ) from exc


class IndexStore:
    """Persistent page/section/operation/vector index backed by aiosqlite."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        ttl_days: float = DEFAULT_TTL_DAYS,
        embedder: EmbedderProtocol | None = None,
        candidate_k: int = DEFAULT_CANDIDATE_K,
        rrf_k: int = DEFAULT_RRF_K,
    ) -> None:
        self._db = db
        self._ttl = timedelta(days=ttl_days)
        self._embedder = embedder
        self._candidate_k = candidate_k
        self._rrf_k = rrf_k
        self._lock = asyncio.Lock()

    async def init_db(self) -> None:
        """Create tables, indexes and FTS triggers. Called once at startup."""
        with _store_errors("init_db"):
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute("PRAGMA foreign_keys = ON")
            await self._db.execute(_CREATE_PAGES_TABLE)
            await self._db.execute(_CREATE_SECTIONS_TABLE)
            await self._db.execute(_CREATE_OPERATIONS_TABLE)
            await self._db.execute(_CREATE_VECTORS_TABLE)
            await self._db.execute(_CREATE_SECTIONS_INDEX)
            await self._db.execute(_CREATE_OPERATIONS_INDEX)
            await self._db.execute(_CREATE_FTS_TABLE)
            for trigger in _CREATE_FTS_TRIGGERS:
                await self._db.execute(trigger)
            await self._db.commit()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the lock for one write transaction; roll back on any error."""
        async with self._lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                await self._db.rollback()
                raise
            await self._db.commit()

    async def _page_id(self, slug: str) -> int | None:
        cursor = await self._db.execute("SELECT id FROM pages WHERE slug = ?", (slug,))
        row = await cursor.fetchone()
        return row[0] if row is not None else None

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def page_meta(self, slug: str) -> PageRecord | None:
        with _store_errors("page_meta", slug=slug):
            async with self._lock:
                cursor = await self._db.execute(
                    "SELECT id, slug, module, submodule, url, fetched_at "
                    "FROM pages WHERE slug = ?",
                    (slug,),
                )
                row = await cursor.fetchone()
        if row is None:
            return None
        return PageRecord(
            id=row[0],
            slug=row[1],
            module=row[2],
            submodule=row[3],
            url=row[4],
            fetched_at=datetime.fromisoformat(row[5]),
        )

    async def is_stale(self, slug: str, *, now: datetime | None = None) -> bool:
        """True if the page was never indexed or is older than the TTL.

        The boundary is exclusive: a page exactly ``ttl`` old is still fresh.
        """
        meta = await self.page_meta(slug)
        if meta is None:
            return True
        now = now or datetime.now(UTC)
        return now - meta.fetched_at > self._ttl

    async def replace_page(
        self,
        slug: str,
        module: str,
        submodule: str,
        url: str,
        sections: Sequence[Section],
        *,
        fetched_at: datetime | None = None,
    ) -> PageRecord:
        """Delete any page with this slug (and its dependents), insert the new one.

        Sections are deleted explicitly, not left to the FK cascade, so the FTS
        delete trigger fires for each of them. Operations of the old page go
        too; callers re-store them with ``replace_operations()``.
        """
        fetched_at = fetched_at or datetime.now(UTC)
        with _store_errors("replace_page", slug=slug):
            async with self._transaction() as db:
                old_id = await self._page_id(slug)
                if old_id is not None:
                    await db.execute(
                        "DELETE FROM section_vectors WHERE section_id IN "
                        "(SELECT id FROM sections WHERE page_id = ?)",
                        (old_id,),
                    )
                    await db.execute("DELETE FROM sections WHERE page_id = ?", (old_id,))
                    await db.execute("DELETE FROM operations WHERE page_id = ?", (old_id,))
                    await db.execute("DELETE FROM pages WHERE id = ?", (old_id,))

                cursor = await db.execute(
                    "INSERT INTO pages (slug, module, submodule, url, fetched_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (slug, module, submodule, url, fetched_at.isoformat()),
                )
                page_id = cursor.lastrowid
                if page_id is None:
                    raise aiosqlite.DatabaseError(f"no row id returned for page {slug!r}")
                await db.executemany(
                    "INSERT INTO sections (page_id, title, content, position) "
                    "VALUES (?, ?, ?, ?)",
                    [
                        (page_id, section.title, section.content, position)
                        for position, section in enumerate(sections)
                    ],
                )

        log.info("page_indexed", slug=slug, url=url, sections=len(sections))
        return PageRecord(
            id=page_id,
            slug=slug,
            module=module,
            submodule=submodule,
            url=url,
            fetched_at=fetched_at,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def replace_operations(self, page_slug: str, operations: Sequence[Operation]) -> int:
        """Atomically replace the page's operations. Returns the number stored.

        An empty list is a no-op: a transient empty discovery must not erase
        operations found earlier. (A full page refresh clears them anyway.)
        """
        if not operations:
            return 0
        with _store_errors("replace_operations", slug=page_slug):
            async with self._transaction() as db:
                page_id = await self._page_id(page_slug)
                if page_id is None:
                    log.warning("operations_skipped", slug=page_slug, reason="page_not_indexed")
                    return 0
                await db.execute("DELETE FROM operations WHERE page_id = ?", (page_id,))
                await db.executemany(
                    "INSERT INTO operations (page_id, name, url, slug, position) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [
                        (page_id, op.name, op.url, op.slug, position)
                        for position, op in enumerate(operations)
                    ],
                )
        log.info("operations_indexed", slug=page_slug, operations=len(operations))
        return len(operations)

    async def operations_for(self, page_slug: str) -> list[OperationRecord]:
        with _store_errors("operations_for", slug=page_slug):
            async with self._lock:
                cursor = await self._db.execute(
                    f"SELECT {_OPERATION_COLUMNS} FROM operations o "
                    "JOIN pages p ON p.id = o.page_id "
                    "WHERE p.slug = ? ORDER BY o.position",
                    (page_slug,),
                )
                rows = await cursor.fetchall()
        return [_operation(row) for row in rows]

    async def has_operations(self, page_slug: str) -> bool:
        return bool(await self.operations_for(page_slug))

    async def find_operation(self, page_slug: str, name_or_slug: str) -> OperationRecord | None:
        """Resolve an operation: exact name, exact slug, name substring, slug substring.

        Comparisons are case-insensitive; within a tier the first in sidebar
        order wins.
        """
        needle = name_or_slug.strip().lower()
        if not needle:
            return None
        slug_needle = re.sub(r"\s+", "-", needle)
        operations = await self.operations_for(page_slug)

        tiers = (
            lambda op: op.name.lower() == needle,
            lambda op: op.slug.lower() == slug_needle,
            lambda op: needle in op.name.lower(),
            lambda op: slug_needle in op.slug.lower(),
        )
        for matches in tiers:
            for op in operations:
                if matches(op):
                    return op
        return None

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    async def all_sections(self, page_slug: str) -> list[SectionRecord]:
        with _store_errors("all_sections", slug=page_slug):
            async with self._lock:
                rows = await self._first_sections(page_slug, limit=-1)
        return [_section(row) for row in rows]

    async def section_count(self, page_slug: str) -> int:
        with _store_errors("section_count", slug=page_slug):
            async with self._lock:
                cursor = await self._db.execute(
                    "SELECT COUNT(*) FROM sections s JOIN pages p ON p.id = s.page_id "
                    "WHERE p.slug = ?",
                    (page_slug,),
                )
                row = await cursor.fetchone()
        return row[0] if row is not None else 0

    async def _first_sections(self, page_slug: str, limit: int) -> list[Any]:
        cursor = await self._db.execute(
            f"SELECT {_SECTION_COLUMNS} FROM sections s "
            "JOIN pages p ON p.id = s.page_id "
            "WHERE p.slug = ? ORDER BY s.position LIMIT ?",
            (page_slug, limit),
        )
        return list(await cursor.fetchall())

    async def _match_sections(self, page_slug: str, query: str, limit: int) -> list[Any]:
        match = build_match_query(query)
        if match is None:
            return []
        cursor = await self._db.execute(
            f"SELECT {_SECTION_COLUMNS} FROM sections_fts "
            "JOIN sections s ON s.id = sections_fts.rowid "
            "JOIN pages p ON p.id = s.page_id "
            "WHERE sections_fts MATCH ? AND p.slug = ? "
            "ORDER BY bm25(sections_fts, 2.0, 1.0), s.position "
            "LIMIT ?",
            (match, page_slug, limit),
        )
        return list(await cursor.fetchall())

    async def keyword_search(self, page_slug: str, query: str, limit: int) -> list[SectionRecord]:
        """BM25-ranked sections of one page, best first.

        Falls back to the first ``limit`` sections by position when the query
        has no usable tokens or matches nothing.
        """
        with _store_errors("keyword_search", slug=page_slug):
            async with self._lock:
                rows = await self._match_sections(page_slug, query, limit)
                if not rows:
                    rows = await self._first_sections(page_slug, limit)
        return [_section(row) for row in rows]

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    async def vector_count(self, page_slug: str) -> int:
        with _store_errors("vector_count", slug=page_slug):
            async with self._lock:
                cursor = await self._db.execute(
                    "SELECT COUNT(*) FROM section_vectors v "
                    "JOIN sections s ON s.id = v.section_id "
                    "JOIN pages p ON p.id = s.page_id WHERE p.slug = ?",
                    (page_slug,),
                )
                row = await cursor.fetchone()
        return row[0] if row is not None else 0

    async def embed_sections(self, page_slug: str) -> int:
        """Compute and upsert one vector per section of the page.

        Safe to re-run: vectors are overwritten. Sections deleted by a
        concurrent re-index while the model was running are skipped, so a late
        run can never attach vectors to a newer page. Returns vectors written.
        """
        if self._embedder is None:
            return 0

        sections = await self.all_sections(page_slug)
        if not sections:
            return 0

        # Outside the lock: encoding takes far longer than any query.
        vectors = await self._embedder.embed_many(
            [f"{s.title}\n\n{s.content}" for s in sections]
        )

        written = 0
        with _store_errors("embed_sections", slug=page_slug):
            async with self._transaction() as db:
                for section, vector in zip(sections, vectors, strict=True):
                    cursor = await db.execute(
                        "INSERT OR REPLACE INTO section_vectors (section_id, dim, vector) "
                        "SELECT ?, ?, ? WHERE EXISTS (SELECT 1 FROM sections WHERE id = ?)",
                        (section.id, int(vector.shape[0]), vector_to_blob(vector), section.id),
                    )
                    written += max(cursor.rowcount, 0)

        log.info("page_embedded", slug=page_slug, vectors=written)
        return written

    async def _load_vectors(self, page_slug: str) -> list[tuple[int, bytes]]:
        with _store_errors("load_vectors", slug=page_slug):
            async with self._lock:
                cursor = await self._db.execute(
                    "SELECT v.section_id, v.vector FROM section_vectors v "
                    "JOIN sections s ON s.id = v.section_id "
                    "JOIN pages p ON p.id = s.page_id WHERE p.slug = ?",
                    (page_slug,),
                )
                rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def _sections_by_id(self, ids: Sequence[int]) -> list[SectionRecord]:
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with _store_errors("sections_by_id"):
            async with self._lock:
                cursor = await self._db.execute(
                    f"SELECT {_SECTION_COLUMNS} FROM sections s "
                    f"WHERE s.id IN ({placeholders}) ORDER BY s.position",
                    tuple(ids),
                )
                rows = await cursor.fetchall()
        return [_section(row) for row in rows]

    # ------------------------------------------------------------------
    # Hybrid retrieval
    # ------------------------------------------------------------------

    async def hybrid_search(
        self, page_slug: str, query: str, limit: int = 3
    ) -> list[SectionRecord]:
        """Top ``limit`` sections by fused keyword + vector rank, in document order.

        Identical to ``keyword_search()`` while the page has no vectors yet
        (embedding runs in the background), when no stored vector matches the
        query vector's dimension, or when no embedder is configured.
        """
        stored = await self._load_vectors(page_slug) if self._embedder is not None else []
        if self._embedder is None or not stored:
            return await self.keyword_search(page_slug, query, limit)

        try:
            query_vector = await self._embedder.embed(query)
        except Exception:
            log.warning("query_embedding_failed", slug=page_slug, exc_info=True)
            return await self.keyword_search(page_slug, query, limit)

        candidates = [
            (section_id, vector)
            for section_id, vector in ((sid, blob_to_vector(blob)) for sid, blob in stored)
            if vector.shape == query_vector.shape
        ]
        if not candidates:
            # Vectors from a different model; unusable until the page is re-embedded.
            log.info("hybrid_vectors_incompatible", slug=page_slug, stored=len(stored))
            return await self.keyword_search(page_slug, query, limit)

        with _store_errors("hybrid_search", slug=page_slug):
            async with self._lock:
                keyword_rows = await self._match_sections(page_slug, query, self._candidate_k)
        keyword_ids = [row[0] for row in keyword_rows]
        vector_ids = rank_by_similarity(query_vector, candidates, self._candidate_k)

        fused = reciprocal_rank_fusion([keyword_ids, vector_ids], k=self._rrf_k)[:limit]
        log.debug(
            "hybrid_search_complete",
            slug=page_slug,
            keyword_candidates=len(keyword_ids),
            vector_candidates=len(vector_ids),
            returned=len(fused),
        )
        return await self._sections_by_id(fused)
