"""Structure-aware chunking of page markdown into titled sections.

Single pass over the lines, splitting on H2/H3 headings only (H4+ are too
granular to be worth their own row). Headings inside fenced code blocks are
ignored. Sections are then bounded in size:

  - shorter than MIN_SECTION_CHARS: merged into the previous section, or
    dropped when there is none
  - longer than MAX_SECTION_CHARS: re-split at paragraph boundaries, packing
    greedily; continuation chunks are titled ``"<title> (part N)"``. A short
    last chunk borrows trailing paragraphs from the chunk before it; one that
    follows a single-paragraph chunk (a hard-cut code sample, say) stays short

The bounds target roughly 500 tokens per section at 4 characters per token.
"""

from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING

from alegradocs.models.store import Section

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

MIN_SECTION_CHARS = 80
MAX_SECTION_CHARS = 2500

_HEADING_RE = re.compile(r"^#{2,3}\s+(.+)")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")


def split_sections(markdown: str, fallback_title: str = "") -> list[Section]:
    """Split markdown into ordered sections bounded by size.

    Content before the first heading is titled ``fallback_title``. A document
    with no usable headings becomes a single section (re-split if too long).
    """
    raw: list[Section] = []
    title = fallback_title
    buffer: list[str] = []

    in_code_block = False
    fence: str | None = None

    for line in markdown.splitlines():
        stripped = line.strip()

        if stripped.startswith("```") or stripped.startswith("~~~"):
            current_fence = stripped[:3]
            if not in_code_block:
                in_code_block = True
                fence = current_fence
            elif current_fence == fence:
                in_code_block = False
                fence = None
            buffer.append(line)
            continue

        match = None if in_code_block else _HEADING_RE.match(line)
        if match is None:
            buffer.append(line)
            continue

        _flush(raw, title, buffer)
        title = match.group(1).strip().rstrip("#").strip()
        buffer = []

    _flush(raw, title, buffer)

    if not raw:
        whole = markdown.strip()
        if not whole:
            return []
        return _split_long(Section(title=fallback_title, content=whole))

    return [chunk for section in raw for chunk in _split_long(section)]


def _flush(sections: list[Section], title: str, buffer: list[str]) -> None:
    content = "\n".join(buffer).strip()
    if len(content) >= MIN_SECTION_CHARS:
        sections.append(Section(title=title, content=content))
    elif sections and content:
        previous = sections[-1]
        sections[-1] = Section(title=previous.title, content=f"{previous.content}\n\n{content}")


def _split_long(section: Section) -> list[Section]:
    if len(section.content) <= MAX_SECTION_CHARS:
        return [section]

    chunks: list[list[str]] = []
    buffer: list[str] = []
    size = 0

    for paragraph in _paragraphs(section.content):
        # Joining adds two characters ("\n\n") per paragraph after the first.
        prospective = size + len(paragraph) + (2 if buffer else 0)
        if buffer and prospective > MAX_SECTION_CHARS:
            chunks.append(buffer)
            buffer = [paragraph]
            size = len(paragraph)
        else:
            buffer.append(paragraph)
            size = prospective

    if buffer:
        chunks.append(buffer)
    _rebalance_tail(chunks)

    return [
        Section(
            title=section.title if i == 1 else f"{section.title} (part {i})",
            content="\n\n".join(chunk),
        )
        for i, chunk in enumerate(chunks, start=1)
    ]


def _rebalance_tail(chunks: list[list[str]]) -> None:
    """Grow a last chunk under MIN_SECTION_CHARS with paragraphs from the one before.

    Stops when the tail is long enough, or when moving another paragraph would
    push the tail over MAX_SECTION_CHARS or the previous chunk under
    MIN_SECTION_CHARS. A tail cut from a single oversized paragraph therefore
    stays short.
    """
    while len(chunks) > 1:
        previous, last = chunks[-2], chunks[-1]
        if _joined_len(last) >= MIN_SECTION_CHARS or len(previous) < 2:
            return
        grown = [previous[-1], *last]
        if (
            _joined_len(grown) > MAX_SECTION_CHARS
            or _joined_len(previous[:-1]) < MIN_SECTION_CHARS
        ):
            return
        chunks[-2], chunks[-1] = previous[:-1], grown


def _joined_len(paragraphs: Sequence[str]) -> int:
    return sum(len(p) for p in paragraphs) + 2 * max(len(paragraphs) - 1, 0)


def _paragraphs(content: str) -> Iterator[str]:
    """Yield blank-line separated paragraphs, each at most MAX_SECTION_CHARS long.

    A single paragraph over the limit (a long code sample, a huge table) is
    cut at line boundaries, and a single line over the limit at the limit.
    """
    for paragraph in _PARAGRAPH_RE.split(content):
        paragraph = paragraph.strip("\n")
        if not paragraph.strip():
            continue
        if len(paragraph) <= MAX_SECTION_CHARS:
            yield paragraph
            continue

        piece: list[str] = []
        size = 0
        for line in paragraph.split("\n"):
            while len(line) > MAX_SECTION_CHARS:
                if piece:
                    yield "\n".join(piece)
                    piece, size = [], 0
                yield line[:MAX_SECTION_CHARS]
                line = line[MAX_SECTION_CHARS:]
            if not line:
                continue
            prospective = size + len(line) + (1 if piece else 0)
            if piece and prospective > MAX_SECTION_CHARS:
                yield "\n".join(piece)
                piece, size = [line], len(line)
            else:
                piece.append(line)
                size = prospective
        if piece:
            yield "\n".join(piece)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def format_sections(sections: Sequence[Section], page_url: str, query: str | None = None) -> str:
    """Render sections as compact markdown for a tool response."""
    query_note = f' | search: "{query}"' if query else " | overview"
    lines = [
        f"**Source:** {page_url}{query_note}",
        f"**Sections:** {len(sections)}",
        "",
        "---",
    ]
    for i, section in enumerate(sections):
        if section.title:
            lines.append(f"\n## {section.title}")
        elif i == 0:
            lines.append("\n## Overview")
        lines.append(section.content)
    return "\n".join(lines)


def estimate_tokens(text: str) -> int:
    """Approximate token count at 4 characters per token."""
    return math.ceil(len(text) / 4)
