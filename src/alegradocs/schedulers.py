"""Fire-and-forget background work: page embedding and model warm-up.

Tasks are detached from the request that started them. Failures are logged
and never reach the caller; a query issued before a page's vectors exist
simply uses keyword search.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Coroutine
    from typing import Any

    from alegradocs.state import AppState

log = structlog.get_logger()


def spawn_background(
    state: AppState, coro: Coroutine[Any, Any, None], *, name: str
) -> asyncio.Task[None]:
    """Start ``coro`` as a tracked task that removes itself from AppState when done."""
    task = asyncio.create_task(coro, name=name)
    state.background_tasks.add(task)
    task.add_done_callback(state.background_tasks.discard)
    return task


async def embed_page(state: AppState, slug: str) -> None:
    """Compute vectors for one page. Never raises."""
    try:
        written = await state.store.embed_sections(slug)
        log.debug("background_embedding_complete", slug=slug, vectors=written)
    except Exception:
        log.warning("embedding_failed", slug=slug, exc_info=True)


def schedule_page_embedding(state: AppState, slug: str) -> asyncio.Task[None] | None:
    """Queue embedding for a freshly indexed page, if an embedder is configured."""
    if state.embedder is None:
        return None
    return spawn_background(state, embed_page(state, slug), name=f"embed:{slug}")


def schedule_warm_up(state: AppState) -> asyncio.Task[None] | None:
    """Load the model at startup so the first query isn't the one paying for it."""
    if state.embedder is None or not state.settings.embedding.warm_up:
        return None
    return spawn_background(state, state.embedder.warm_up(), name="embedding-warm-up")


async def cancel_background_tasks(state: AppState) -> None:
    """Cancel and await every tracked task. Called from the lifespan on shutdown."""
    tasks = list(state.background_tasks)
    for task in tasks:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task
    state.background_tasks.clear()
