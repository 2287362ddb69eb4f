"""HTML → markdown conversion for documentation prose.

trafilatura does the conversion (headings, code blocks, lists, tables,
emphasis and links); this module only frames fragments for it and cleans up
the result. Pure functions only; no I/O.
"""

from __future__ import annotations

import re

import trafilatura
from bs4 import BeautifulSoup, Tag
from trafilatura.settings import use_config

_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_HTML_TAG_RE = re.compile(r"<[a-zA-Z][^>]*>")

# Fragments are short: no size-driven fallbacks, and no signal-based timeout
# (conversion may run off the main thread).
_CONFIG = use_config()
_CONFIG.set("DEFAULT", "EXTRACTION_TIMEOUT", "0")
_CONFIG.set("DEFAULT", "MIN_EXTRACTED_SIZE", "0")
_CONFIG.set("DEFAULT", "MIN_OUTPUT_SIZE", "1")


def html_to_markdown(markup: str | Tag, *, base_url: str = "") -> str:
    """Convert an HTML fragment (or an already-parsed tag) to markdown.

    Plain text without any HTML tags is treated as markdown already and
    passes through unchanged apart from blank-line normalisation. When
    trafilatura finds nothing to keep, the fragment's visible text is used.
    """
    if isinstance(markup, str):
        if not _HTML_TAG_RE.search(markup):
            return _collapse_blank_lines(markup)
        fragment = markup
    else:
        fragment = str(markup)

    # The <article> wrapper pins trafilatura's main-content search to the fragment.
    document = f"<html><body><article>{fragment}</article></body></html>"
    converted = trafilatura.extract(
        document,
        url=base_url or None,
        output_format="markdown",
        include_formatting=True,
        include_links=True,
        include_tables=True,
        include_images=False,
        include_comments=False,
        config=_CONFIG,
    )
    if not converted or not converted.strip():
        converted = BeautifulSoup(fragment, "html.parser").get_text("\n")
    return _collapse_blank_lines(_strip_trailing_space(converted))


def dedupe_lines(markdown: str) -> str:
    """Drop repeated lines (case-insensitive) outside code fences.

    Rendered pages often repeat the same label in a sidebar, a breadcrumb and
    the page body. Blank lines and everything inside fences are kept as-is.
    """
    seen: set[str] = set()
    out: list[str] = []
    in_fence = False

    for line in markdown.split("\n"):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            out.append(line)
            continue
        if in_fence or not line.strip():
            out.append(line)
            continue
        key = line.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(line)

    return _collapse_blank_lines("\n".join(out))


def _strip_trailing_space(text: str) -> str:
    return "\n".join(line.rstrip() for line in text.split("\n"))


def _collapse_blank_lines(text: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", text).strip()
