"""
Client for the proxy endpoint.

This is the call a browser UI makes to show a page inside a sandboxed frame:
fetch the URL through the proxy and get back either HTML or an error it can
display, falling back to direct embedding when the proxy cannot help.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urljoin, urlsplit

import requests

from .addrvalidator import AddrValidator
from .exceptions import UnacceptableUrlException
from .logger import get_logger

logger = get_logger("client")

DEFAULT_ENDPOINTS = ("http://127.0.0.1:3001/api/proxy?url=",)
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

# Sites known to allow being framed
DIRECT_EMBED_DOMAINS = ("wikipedia.org", "youtube.com", "vimeo.com", "codepen.io")

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_QUOTED_HANDLER_RE = re.compile(r"""\s*on\w+\s*=\s*["'][^"']*["']""", re.IGNORECASE)
_BARE_HANDLER_RE = re.compile(r"\s*on\w+\s*=\s*[^\s>]*", re.IGNORECASE)
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_ABSOLUTE_REF_RE = re.compile(r"""((?:href|src)=["'])(https?://[^"']*)(["'])""", re.IGNORECASE)
_ROOT_RELATIVE_REF_RE = re.compile(r"""((?:href|src)=["'])(/(?!/)[^"']*)(["'])""", re.IGNORECASE)


@dataclass
class FetchOutcome:
    """Result of fetching a page through the proxy.

    Failures are reported here rather than raised, so the UI can fall back.
    """

    success: bool
    html: str | None = None
    error: str | None = None
    proxy_used: str | None = None
    status: int | None = None
    cache_status: str | None = None
    render_mode: str = "error"


def sanitize_html(html: str) -> str:
    """Remove script elements, inline event handlers and ``javascript:`` URLs."""
    sanitized = _SCRIPT_RE.sub("", html)
    sanitized = _QUOTED_HANDLER_RE.sub("", sanitized)
    sanitized = _BARE_HANDLER_RE.sub("", sanitized)
    return _JS_PROTOCOL_RE.sub("", sanitized)


def rewrite_urls(html: str, page_url: str, endpoint: str) -> str:
    """Point absolute and root-relative ``href``/``src`` references at the proxy."""

    def proxied(match: re.Match[str], target: str) -> str:
        return f"{match.group(1)}{endpoint}{quote(target, safe='')}{match.group(3)}"

    rewritten = _ABSOLUTE_REF_RE.sub(lambda m: proxied(m, m.group(2)), html)
    return _ROOT_RELATIVE_REF_RE.sub(lambda m: proxied(m, urljoin(page_url, m.group(2))), rewritten)


def can_use_direct_iframe(url: str, allowed_domains: tuple[str, ...] = DIRECT_EMBED_DOMAINS) -> bool:
    """Guess whether ``url`` can be framed directly, without the proxy."""
    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    return any(hostname == domain or hostname.endswith("." + domain) for domain in allowed_domains)


class ProxyClient:
    """Fetches pages through one or more proxy endpoints, in order.

    Example:
        >>> client = ProxyClient()
        >>> outcome = client.fetch("https://example.com/")
        >>> outcome.success, outcome.proxy_used
        (True, 'http://127.0.0.1:3001/api/proxy?url=')
    """

    def __init__(
        self,
        endpoints: tuple[str, ...] | list[str] = DEFAULT_ENDPOINTS,
        timeout: float = 15.0,
        validator: AddrValidator | None = None,
        session: requests.Session | None = None,
        sanitize: bool = True,
        rewrite: bool = True,
    ) -> None:
        """Initialize the client.

        Args:
            endpoints: Proxy URL prefixes; the encoded target URL is appended.
            timeout: Request timeout in seconds.
            validator: Runs the DNS-free pre-check on target URLs.
            session: Session used to reach the proxy.
            sanitize: Whether to strip scripts and event handlers from HTML.
            rewrite: Whether to route page references through the proxy.
        """
        if not endpoints:
            raise ValueError("At least one proxy endpoint is required")
        self.endpoints = list(endpoints)
        self.timeout = timeout
        self.validator = validator or AddrValidator()
        # The proxy itself usually listens on loopback, so this session is a
        # plain one
        self.session = session or requests.Session()
        self.sanitize = sanitize
        self.rewrite = rewrite

    def fetch(self, url: str) -> FetchOutcome:
        """Fetch ``url`` through the first endpoint that returns content."""
        try:
            self.validator.validate_url_sync(url)
        except UnacceptableUrlException as e:
            return FetchOutcome(success=False, error=e.message)

        last_error = "All proxies failed"
        for index, endpoint in enumerate(self.endpoints, start=1):
            logger.debug("Fetching %s through proxy %d/%d", url, index, len(self.endpoints))
            try:
                response = self.session.get(
                    endpoint + quote(url, safe=""),
                    headers={"Accept": DEFAULT_ACCEPT},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                logger.warning("Proxy %d failed: %s", index, e)
                last_error = f"Proxy request failed: {type(e).__name__}"
                continue

            if not response.ok:
                error = self._error_message(response)
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    # The proxy rejected the target itself; another proxy won't help
                    return FetchOutcome(success=False, error=error, proxy_used=endpoint, status=response.status_code)
                logger.warning("Proxy %d returned status %d", index, response.status_code)
                last_error = error
                continue

            html = response.text
            if not html.strip():
                logger.warning("Proxy %d returned empty content", index)
                last_error = "Proxy returned empty content"
                continue

            if self.sanitize:
                html = sanitize_html(html)
            if self.rewrite:
                html = rewrite_urls(html, url, endpoint)
            return FetchOutcome(
                success=True,
                html=html,
                proxy_used=endpoint,
                status=response.status_code,
                cache_status=response.headers.get("X-Cache-Status"),
                render_mode="advanced",
            )

        return FetchOutcome(success=False, error=last_error)

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            payload: Any = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("error"), str):
            return payload["error"]
        return f"Proxy returned status {response.status_code}"

    def close(self) -> None:
        self.session.close()
