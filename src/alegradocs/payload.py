"""Embedded JSON payload helpers.

ReadMe-hosted documentation pages bake their server-side render state into a
``<script type="application/json">`` tag. Two versions are known:

  - ``__NEXT_DATA__`` (newer Next.js hub): ``props.pageProps.doc`` plus the
    navigation ``categories`` tree.
  - ``ssr-props`` (older hub): a top-level ``document`` and a ``sidebar``
    object keyed by category.

Pure functions only; no I/O.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import structlog

if TYPE_CHECKING:
    from bs4 import BeautifulSoup

log = structlog.get_logger()

# Tried in order; the first that parses as a JSON object wins.
PAYLOAD_SCRIPT_IDS: tuple[str, ...] = ("__NEXT_DATA__", "ssr-props")

# Where the newer hub keeps the current document node.
DOC_PATHS: tuple[tuple[str, ...], ...] = (
    ("props", "pageProps", "doc"),
    ("props", "pageProps", "page"),
    ("props", "pageProps", "currentDoc"),
)

# Where the newer hub keeps the navigation tree.
CATEGORY_PATHS: tuple[tuple[str, ...], ...] = (
    ("props", "pageProps", "categories"),
    ("props", "pageProps", "navCategories"),
    ("props", "pageProps", "sidebar", "categories"),
    ("props", "pageProps", "doc", "categories"),
)


def load_embedded_payload(soup: BeautifulSoup) -> dict[str, Any] | None:
    """Return the first embedded JSON payload that parses, or None."""
    for script_id in PAYLOAD_SCRIPT_IDS:
        tag = soup.find("script", id=script_id)
        if tag is None:
            continue
        raw = tag.string or tag.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            log.debug("payload_parse_failed", script_id=script_id)
            continue
        if isinstance(data, dict):
            return data
    return None


def get_nested(obj: Any, *keys: str) -> Any:
    """Walk ``keys`` into nested dicts. Returns None as soon as a level is missing."""
    current = obj
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_value(mapping: dict[str, Any], *keys: str) -> Any:
    """Return the value of the first key present with a non-null value."""
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def first_nested(obj: Any, paths: tuple[tuple[str, ...], ...]) -> Any:
    """Return the first non-null value found along ``paths``."""
    for path in paths:
        value = get_nested(obj, *path)
        if value is not None:
            return value
    return None


def as_text(value: Any) -> str:
    """Coerce a loosely-typed payload scalar to stripped text."""
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def current_doc(payload: dict[str, Any]) -> dict[str, Any] | None:
    doc = first_nested(payload, DOC_PATHS)
    return doc if isinstance(doc, dict) else None


def slugify(text: str) -> str:
    """Lowercase, whitespace to dashes, drop anything outside ``[a-z0-9-]``.

    Accented characters are dropped, not transliterated: "Ítems" → "tems".
    This matches the slugs the documentation site itself generates for
    category names.
    """
    slug = re.sub(r"\s+", "-", text.lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def slug_from_url(url: str) -> str:
    """Return the last non-empty path segment of ``url``."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    return segments[-1] if segments else slugify(url)
