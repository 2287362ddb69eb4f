"""HTTP page fetcher with a domain allowlist.

All network I/O goes through a single Fetcher instance shared across tool
calls. The Fetcher receives an httpx.AsyncClient via constructor injection;
the lifespan owns the client lifecycle.

Redirects are followed by hand so every hop is checked against the
allowlist: documentation container pages routinely redirect to their first
operation, and a redirect must never lead off the documentation domain.
"""

from __future__ import annotations

import ipaddress
from typing import TYPE_CHECKING
from urllib.parse import urljoin, urlparse

import httpx
import structlog

from alegradocs.errors import AlegraDocsError, ErrorCode

if TYPE_CHECKING:
    from collections.abc import Iterable

    from alegradocs.config import FetcherSettings

log = structlog.get_logger()

PRIVATE_NETWORKS: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
]


def build_http_client(settings: FetcherSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={
            "User-Agent": settings.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "es,en;q=0.8",
        },
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


def _base_domain(hostname: str) -> str:
    """Return the last two DNS labels: ``'developer.alegra.com'`` → ``'alegra.com'``."""
    parts = hostname.rstrip(".").split(".")
    return ".".join(parts[-2:]) if len(parts) >= 2 else hostname


def build_allowlist(base_url: str, extra_domains: Iterable[str] = ()) -> frozenset[str]:
    """Base domain of the documentation site plus any configured extras."""
    domains: set[str] = set()
    hostname = urlparse(base_url).hostname or ""
    if hostname:
        domains.add(_base_domain(hostname))
    for domain in extra_domains:
        domain = domain.strip().lower()
        if domain:
            domains.add(_base_domain(domain))
    return frozenset(domains)


def is_url_allowed(url: str, allowlist: frozenset[str]) -> bool:
    """Check whether a URL is permitted by the allowlist.

    Only http(s) is fetched. Private IP ranges are blocked unconditionally,
    regardless of allowlist.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    hostname = parsed.hostname or ""

    try:
        addr = ipaddress.ip_address(hostname)
        if any(addr in net for net in PRIVATE_NETWORKS):
            return False
    except ValueError:
        pass  # hostname is a domain name, not an IP

    return _base_domain(hostname) in allowlist


class Fetcher:
    """HTTP page fetcher implementing FetcherProtocol."""

    def __init__(self, client: httpx.AsyncClient, settings: FetcherSettings) -> None:
        self._client = client
        self._max_redirects = settings.max_redirects

    async def fetch(self, url: str, allowlist: frozenset[str]) -> str:
        """Fetch a URL with per-hop allowlist validation.

        Returns the response text on success. Raises AlegraDocsError on
        disallowed URLs, network errors, and non-2xx responses; the message
        always carries the URL and, for HTTP errors, the status code.
        """
        current_url = url

        try:
            for hop in range(self._max_redirects + 1):
                if not is_url_allowed(current_url, allowlist):
                    log.warning("fetch_blocked", url=current_url, reason="not_in_allowlist")
                    raise AlegraDocsError(
                        code=ErrorCode.URL_NOT_ALLOWED,
                        message=f"URL not in allowlist: {current_url}",
                        suggestion=(
                            "Only the documentation site's own domain is fetched. "
                            "Add trusted domains to docs.extra_allowed_domains."
                        ),
                        recoverable=False,
                    )

                response = await self._client.get(current_url)

                if response.is_redirect and "location" in response.headers:
                    if hop == self._max_redirects:
                        raise AlegraDocsError(
                            code=ErrorCode.PAGE_FETCH_FAILED,
                            message=f"Too many redirects fetching {url}",
                            suggestion="The page has an unusually long redirect chain.",
                            recoverable=False,
                        )
                    current_url = urljoin(current_url, response.headers["location"])
                    log.debug("fetch_redirect", url=url, location=current_url)
                    continue

                if not response.is_success:
                    if response.status_code == 404:
                        raise AlegraDocsError(
                            code=ErrorCode.PAGE_NOT_FOUND,
                            message=f"HTTP 404 fetching {current_url}",
                            suggestion=(
                                "The page no longer exists. Refresh the catalog with "
                                "list_modules(force_refresh=true)."
                            ),
                            recoverable=False,
                        )
                    raise AlegraDocsError(
                        code=ErrorCode.PAGE_FETCH_FAILED,
                        message=f"HTTP {response.status_code} fetching {current_url}",
                        suggestion="The documentation site may be temporarily unavailable.",
                        recoverable=True,
                    )

                log.info(
                    "fetch_complete",
                    url=url,
                    final_url=current_url,
                    status_code=response.status_code,
                    content_length=len(response.text),
                )
                return response.text

        except AlegraDocsError:
            raise
        except httpx.HTTPError as exc:
            raise AlegraDocsError(
                code=ErrorCode.PAGE_FETCH_FAILED,
                message=f"Network error fetching {current_url}: {exc}",
                suggestion="The documentation site may be temporarily unavailable.",
                recoverable=True,
            ) from exc

        # Unreachable but satisfies the type checker
        raise AlegraDocsError(
            code=ErrorCode.PAGE_FETCH_FAILED,
            message="Redirect loop",
            suggestion="",
            recoverable=False,
        )
