"""Content extraction for documentation pages.

Given the raw HTML of a fetched page, rebuilds a readable markdown document
and, separately, the list of child operation pages the page links to.

Both jobs are ordered cascades of small strategy objects. Each strategy
returns a result or ``None``/``[]``; the extractor stops at the first
meaningful one. Strategies are plain classes with a ``name`` so logs and
tests can address them one by one.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urljoin, urlparse

import structlog
from bs4 import BeautifulSoup, Tag

from alegradocs.errors import AlegraDocsError, ErrorCode
from alegradocs.markdown import dedupe_lines, html_to_markdown
from alegradocs.models.catalog import Operation
from alegradocs.payload import (
    CATEGORY_PATHS,
    as_text,
    current_doc,
    first_nested,
    first_value,
    get_nested,
    load_embedded_payload,
    slug_from_url,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

log = structlog.get_logger()

# Embedded-JSON results shorter than this are treated as "not meaningful".
MIN_CONTENT_CHARS = 150

# Raw schemas without ``properties`` are dumped as JSON, capped at this many lines.
MAX_SCHEMA_LINES = 60

# Code samples rendered per page.
MAX_EXAMPLES = 2

_HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options", "trace")
_METHOD_BADGE_RE = re.compile(r"\s*\b(get|post|put|del|delete|patch|head|options)$", re.IGNORECASE)
_STRIP_TAGS = ("script", "style", "nav", "header", "footer", "aside", "noscript")


@dataclass
class PageContext:
    """A fetched page, parsed once and shared by every strategy."""

    url: str
    html: str
    soup: BeautifulSoup
    payload: dict[str, Any] | None
    base_url: str
    reference_path: str

    @property
    def url_slug(self) -> str:
        return slug_from_url(self.url)

    def operation_url(self, slug: str) -> str:
        return f"{self.base_url.rstrip('/')}{self.reference_path}/{slug}"


@dataclass(frozen=True)
class Extraction:
    content: str
    operations: list[Operation] = field(default_factory=list)


class ContentStrategy(Protocol):
    name: str

    def extract(self, page: PageContext) -> str | None: ...


class OperationStrategy(Protocol):
    name: str

    def discover(self, page: PageContext) -> list[Operation]: ...


# ---------------------------------------------------------------------------
# Markdown document builder
# ---------------------------------------------------------------------------


class _DocumentBuilder:
    """Accumulates markdown blocks and remembers which ``##`` sections exist."""

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url
        self._blocks: list[str] = []
        self._sections: set[str] = set()

    def has_section(self, heading: str) -> bool:
        return heading in self._sections

    def add(self, text: str) -> None:
        if text.strip():
            self._blocks.append(text.strip())

    def section(self, heading: str, lines: Sequence[str]) -> None:
        lines = [line for line in lines if line]
        if not lines:
            return
        self._sections.add(heading)
        self._blocks.append(f"## {heading}\n\n" + "\n".join(lines))

    def title(self, doc: dict[str, Any]) -> None:
        title = as_text(doc.get("title"))
        if title:
            self.add(f"# {title}")

    def prose(self, doc: dict[str, Any]) -> None:
        excerpt = as_text(first_value(doc, "excerpt", "description"))
        if excerpt:
            self.add(excerpt)
        body = as_text(first_value(doc, "body", "html"))
        if body and body != "undefined":
            self.add(html_to_markdown(body, base_url=self._base_url))

    def endpoint(self, method: str, path: str) -> None:
        if method and path:
            self.section("Endpoint", [f"`{method.upper()} {path}`"])

    def parameters(self, params: Any) -> None:
        if self.has_section("Parameters") or not isinstance(params, list):
            return
        self.section("Parameters", [_parameter_line(p) for p in params])

    def request_body(self, schema: Any) -> None:
        if self.has_section("Request body") or not isinstance(schema, dict):
            return
        self.section("Request body", _schema_lines(schema))

    def responses(self, responses: Any) -> None:
        if self.has_section("Responses") or not isinstance(responses, dict):
            return
        lines = []
        for code, response in responses.items():
            if not isinstance(response, dict):
                continue
            description = as_text(response.get("description"))
            lines.append(f"- **{code}**: {description}" if description else f"- **{code}**")
        self.section("Responses", lines)

    def examples(self, examples: Any) -> None:
        if not isinstance(examples, dict):
            return
        codes = first_value(examples, "request", "codes", "items")
        if not isinstance(codes, list):
            return
        blocks = []
        for sample in codes[:MAX_EXAMPLES]:
            if not isinstance(sample, dict):
                continue
            language = as_text(first_value(sample, "language", "lang"))
            code = as_text(first_value(sample, "code", "content"))
            if code:
                blocks.append(f"```{language}\n{code}\n```\n")
        self.section("Examples", blocks)

    def build(self) -> str:
        return re.sub(r"\n{3,}", "\n\n", "\n\n".join(self._blocks)).strip()


def _parameter_line(param: Any) -> str:
    if not isinstance(param, dict):
        return ""
    name = as_text(param.get("name"))
    if not name:
        return ""
    location = as_text(param.get("in"))
    schema = param.get("schema")
    type_ = as_text(schema.get("type")) if isinstance(schema, dict) else ""
    type_ = type_ or as_text(param.get("type"))
    description = as_text(first_value(param, "desc", "description"))

    line = f"- **{name}**"
    if location:
        line += f" [{location}]"
    if type_:
        line += f" ({type_})"
    if param.get("required"):
        line += " *(required)*"
    if description:
        line += f": {description}"
    return line


def _schema_lines(container: dict[str, Any]) -> list[str]:
    schema = container.get("schema", container)
    if not isinstance(schema, dict):
        return []
    properties = schema.get("properties")
    if isinstance(properties, dict):
        required = schema.get("required")
        required = set(required) if isinstance(required, list) else set()
        lines = []
        for key, prop in properties.items():
            if not isinstance(prop, dict):
                continue
            line = f"- **{key}**"
            type_ = as_text(prop.get("type"))
            if type_:
                line += f" ({type_})"
            if key in required:
                line += " *(required)*"
            description = as_text(first_value(prop, "description", "desc"))
            if description:
                line += f": {description}"
            lines.append(line)
        return lines

    raw = json.dumps(schema, indent=2, ensure_ascii=False).split("\n")
    block = ["```json", *raw[:MAX_SCHEMA_LINES]]
    if len(raw) > MAX_SCHEMA_LINES:
        block.append("// ... (truncated)")
    block.append("```")
    return block


def _openapi_operation(schema: Any, path: str, method: str) -> dict[str, Any] | None:
    """Pick the operation object a page documents out of a full OpenAPI document.

    Path: exact match, else the first path whose template prefix contains the
    page's prefix, else the first path. Method: the page's, else the first one.
    """
    paths = get_nested(schema, "paths")
    if not isinstance(paths, dict) or not paths:
        return None

    prefix = path.split("{")[0]
    path_item = paths.get(path)
    if path_item is None and path:
        path_item = next((v for p, v in paths.items() if prefix in p.split("{")[0]), None)
    if path_item is None:
        path_item = next(iter(paths.values()))
    if not isinstance(path_item, dict):
        return None

    operation = path_item.get(method.lower()) if method else None
    if not isinstance(operation, dict):
        operation = next(
            (v for k, v in path_item.items() if k in _HTTP_METHODS and isinstance(v, dict)),
            None,
        )
    return operation


def _meaningful(text: str) -> str | None:
    return text if len(text) > MIN_CONTENT_CHARS else None


# ---------------------------------------------------------------------------
# Content strategies
# ---------------------------------------------------------------------------


class SsrDocumentStrategy:
    """Older hub shape: top-level ``document`` with an OpenAPI 3 ``api.schema``."""

    name = "ssr_document"

    def extract(self, page: PageContext) -> str | None:
        doc = get_nested(page.payload, "document")
        if not isinstance(doc, dict):
            return None

        builder = _DocumentBuilder(page.base_url)
        builder.title(doc)
        builder.prose(doc)

        api = doc.get("api")
        if isinstance(api, dict):
            method = as_text(api.get("method"))
            path = as_text(first_value(api, "path", "url"))
            builder.endpoint(method, path)

            operation = _openapi_operation(api.get("schema"), path, method)
            if operation is not None:
                builder.parameters(operation.get("parameters"))
                builder.request_body(
                    get_nested(operation, "requestBody", "content", "application/json", "schema")
                )
                builder.responses(operation.get("responses"))

        return _meaningful(builder.build())


class NextDocStrategy:
    """Newer hub shape: ``props.pageProps.doc`` with a custom ``api`` block and
    an optional OpenAPI fragment."""

    name = "next_doc"

    def extract(self, page: PageContext) -> str | None:
        if page.payload is None:
            return None
        doc = current_doc(page.payload)
        if doc is None:
            return None

        builder = _DocumentBuilder(page.base_url)
        builder.title(doc)
        builder.prose(doc)

        api = doc.get("api")
        if isinstance(api, dict):
            builder.endpoint(as_text(api.get("method")), as_text(first_value(api, "url", "path")))
            builder.parameters(api.get("params"))
            builder.request_body(api.get("body"))
            builder.examples(api.get("examples"))

        # The OpenAPI fragment only fills what the api block left out.
        fragment = first_value(doc, "swagger", "openapi")
        if isinstance(fragment, dict):
            builder.parameters(fragment.get("parameters"))
            builder.request_body(
                get_nested(fragment, "requestBody", "content", "application/json", "schema")
            )
            builder.responses(fragment.get("responses"))

        return _meaningful(builder.build())


class RenderedHtmlStrategy:
    """Last resort: convert the rendered page body.

    Misses anything the site renders client-side, so it only runs when no
    embedded payload produced meaningful content.
    """

    name = "rendered_html"

    def extract(self, page: PageContext) -> str | None:
        # Own parse tree: decompose() must not affect the shared soup, which
        # the sidebar operation strategy still needs intact.
        soup = BeautifulSoup(page.html, "html.parser")
        for tag in soup.find_all(list(_STRIP_TAGS)):
            tag.decompose()

        container = self._container(soup)
        if container is None:
            return None
        text = dedupe_lines(html_to_markdown(container, base_url=page.base_url))
        return text or None

    @staticmethod
    def _container(soup: BeautifulSoup) -> Tag | None:
        for candidate in (
            soup.find("main"),
            soup.find("article"),
            soup.find("div", class_=lambda c: bool(c) and "rm-Markdown" in c),
            soup.find("div", class_=lambda c: bool(c) and "content" in c),
            soup.body,
        ):
            if isinstance(candidate, Tag):
                return candidate
        return soup


# ---------------------------------------------------------------------------
# Operation discovery strategies
# ---------------------------------------------------------------------------


def _operations_from_nodes(nodes: Any, page: PageContext) -> list[Operation]:
    """Map payload navigation nodes (``title``/``name`` + ``slug``) to operations."""
    if not isinstance(nodes, list):
        return []
    operations = []
    for node in nodes:
        if not isinstance(node, dict):
            continue
        name = as_text(first_value(node, "title", "name"))
        slug = as_text(node.get("slug"))
        if name and slug:
            operations.append(Operation(name=name, slug=slug, url=page.operation_url(slug)))
    return operations


def _children(node: dict[str, Any]) -> Any:
    return first_value(node, "pages", "children")


class DocChildrenStrategy:
    """An explicit children list on the current document node."""

    name = "doc_children"

    _PATHS: tuple[tuple[str, ...], ...] = (
        ("props", "pageProps", "doc", "children"),
        ("props", "pageProps", "page", "children"),
        ("props", "pageProps", "currentDoc", "children"),
        ("props", "pageProps", "children"),
        ("document", "children"),
        ("document", "pages"),
    )

    def discover(self, page: PageContext) -> list[Operation]:
        if page.payload is None:
            return []
        for path in self._PATHS:
            operations = _operations_from_nodes(get_nested(page.payload, *path), page)
            if operations:
                return operations
        return []


class NavigationTreeStrategy:
    """Depth-first search of the navigation tree for the current page's node."""

    name = "navigation_tree"

    def discover(self, page: PageContext) -> list[Operation]:
        if page.payload is None:
            return []
        categories = first_nested(page.payload, CATEGORY_PATHS)
        if not isinstance(categories, list):
            return []

        doc = current_doc(page.payload)
        target = (as_text(doc.get("slug")) if doc else "") or page.url_slug
        if not target:
            return []

        children = self._find_children(categories, target)
        return _operations_from_nodes(children, page)

    def _find_children(self, nodes: list[Any], target: str) -> list[Any] | None:
        for node in nodes:
            if not isinstance(node, dict):
                continue
            sub = _children(node)
            if as_text(node.get("slug")) == target:
                return sub if isinstance(sub, list) else []
            if isinstance(sub, list) and sub:
                found = self._find_children(sub, target)
                if found is not None:
                    return found
        return None


class SsrSidebarStrategy:
    """Older hub ``sidebar`` object, addressed by the URL slug or the parent slug.

    Container URLs often redirect to their first operation, so the page's own
    slug is not the container's; ``document.parent.uri`` still points at it.
    """

    name = "ssr_sidebar"

    def discover(self, page: PageContext) -> list[Operation]:
        sidebar = get_nested(page.payload, "sidebar")
        if isinstance(sidebar, dict):
            categories = list(sidebar.values())
        elif isinstance(sidebar, list):
            categories = sidebar
        else:
            return []

        parent_uri = as_text(get_nested(page.payload, "document", "parent", "uri"))
        parent_slug = slug_from_url(parent_uri) if parent_uri else ""
        targets = list(dict.fromkeys(s for s in (page.url_slug, parent_slug) if s))

        for target in targets:
            for category in categories:
                pages = category.get("pages") if isinstance(category, dict) else None
                if not isinstance(pages, list):
                    continue
                for node in pages:
                    if isinstance(node, dict) and as_text(node.get("slug")) == target:
                        operations = _operations_from_nodes(_children(node), page)
                        if operations:
                            return operations
        return []


class HtmlSidebarStrategy:
    """Sub-list nested directly inside the current page's own sidebar item.

    The rendered sidebar lists every module at once, so only a ``subpages``
    list whose closest ``<li>`` ancestor is the item linking to this page is
    accepted. Module-level lists that merely contain this page are ignored.
    """

    name = "html_sidebar"

    _SUBLIST_CLASS = "subpages"
    _LABEL_CLASS = "Sidebar-link-text_label"

    def discover(self, page: PageContext) -> list[Operation]:
        page_path = urlparse(page.url).path.rstrip("/")
        if not page_path:
            return []

        for anchor in page.soup.find_all("a", href=True):
            href_path = urlparse(urljoin(page.url, str(anchor["href"]))).path.rstrip("/")
            if href_path != page_path:
                continue
            item = anchor.find_parent("li")
            if item is None:
                continue
            for sublist in item.find_all("ul"):
                if self._SUBLIST_CLASS not in " ".join(sublist.get("class") or []):
                    continue
                if sublist.find_parent("li") is not item:
                    continue
                operations = self._links(sublist, page)
                if operations:
                    return operations
        return []

    def _links(self, sublist: Tag, page: PageContext) -> list[Operation]:
        operations = []
        for link in sublist.find_all("a", href=True):
            href = str(link["href"]).strip()
            if not href or href.startswith("#") or href == "/":
                continue
            name = self._label(link)
            if not name:
                continue
            url = urljoin(page.base_url, href)
            operations.append(Operation(name=name, url=url, slug=slug_from_url(url)))
        return operations

    def _label(self, link: Tag) -> str:
        label = link.find("span", class_=lambda c: bool(c) and self._LABEL_CLASS in c)
        if isinstance(label, Tag):
            return label.get_text(" ", strip=True)
        # No label span: drop the trailing HTTP method badge ("Crear factura post").
        text = link.get_text(" ", strip=True)
        return _METHOD_BADGE_RE.sub("", text).strip()


DEFAULT_CONTENT_STRATEGIES: tuple[ContentStrategy, ...] = (
    SsrDocumentStrategy(),
    NextDocStrategy(),
    RenderedHtmlStrategy(),
)

# No "first plausible list" fallback after these: on a whole-site sidebar it
# picks up another module's operations.
DEFAULT_OPERATION_STRATEGIES: tuple[OperationStrategy, ...] = (
    DocChildrenStrategy(),
    NavigationTreeStrategy(),
    SsrSidebarStrategy(),
    HtmlSidebarStrategy(),
)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class ContentExtractor:
    """Runs the content and operation cascades over one fetched page."""

    def __init__(
        self,
        base_url: str,
        reference_path: str = "/reference",
        *,
        content_strategies: Sequence[ContentStrategy] = DEFAULT_CONTENT_STRATEGIES,
        operation_strategies: Sequence[OperationStrategy] = DEFAULT_OPERATION_STRATEGIES,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.reference_path = "/" + reference_path.strip("/")
        self._content_strategies = tuple(content_strategies)
        self._operation_strategies = tuple(operation_strategies)

    def parse(self, html: str, page_url: str) -> PageContext:
        soup = BeautifulSoup(html, "html.parser")
        return PageContext(
            url=page_url,
            html=html,
            soup=soup,
            payload=load_embedded_payload(soup),
            base_url=self.base_url,
            reference_path=self.reference_path,
        )

    def extract(self, html: str, page_url: str) -> Extraction:
        """Return the page's markdown and its child operations.

        Raises AlegraDocsError(NO_DOCUMENTATION) when no strategy finds
        meaningful content. Operation discovery never raises.
        """
        page = self.parse(html, page_url)
        content = self.extract_content(page)
        operations = self.discover_operations(page)
        return Extraction(content=content, operations=operations)

    def extract_content(self, page: PageContext) -> str:
        for strategy in self._content_strategies:
            content = strategy.extract(page)
            if content:
                log.debug(
                    "content_extracted",
                    url=page.url,
                    strategy=strategy.name,
                    length=len(content),
                )
                return content

        raise AlegraDocsError(
            code=ErrorCode.NO_DOCUMENTATION,
            message=f"No documentation content found at {page.url}",
            suggestion=(
                "The page may be rendered entirely client-side or may have moved. "
                "Check the URL in a browser, or try another submodule."
            ),
            recoverable=False,
        )

    def discover_operations(self, page: PageContext) -> list[Operation]:
        for strategy in self._operation_strategies:
            try:
                operations = strategy.discover(page)
            except Exception:
                log.warning(
                    "operation_discovery_failed",
                    url=page.url,
                    strategy=strategy.name,
                    exc_info=True,
                )
                continue
            if operations:
                by_slug: dict[str, Operation] = {}
                for op in operations:
                    by_slug.setdefault(op.slug, op)
                unique = list(by_slug.values())
                log.debug(
                    "operations_discovered",
                    url=page.url,
                    strategy=strategy.name,
                    count=len(unique),
                )
                return unique
        return []
