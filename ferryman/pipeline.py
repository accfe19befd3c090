"""
Request pipeline.

Turns one inbound proxy request into one response: rate limiting, method
check, SSRF validation, cache lookup, upstream fetch with cookie replay,
header sanitization and caching. The first failing step ends the request
with its error; nothing is retried.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .addrvalidator import AddrValidator
from .cache import CacheEntry, ResponseCache
from .cookies import CookieStore
from .exceptions import (
    InvalidUrl,
    MethodNotAllowed,
    ProxyError,
    RateLimitExceeded,
    UnacceptableUrlException,
)
from .fetcher import RedirectFetcher, UpstreamResponse
from .headers import HeaderList, sanitize_headers
from .logger import get_logger
from .metrics import MetricsCollector
from .ratelimit import RateLimitDecision, RateLimiter, client_identity

logger = get_logger("pipeline")

PROXY_PATH = "/api/proxy"
PING_PATH = "/api/proxy/ping"

ALLOWED_METHODS = ("GET", "HEAD")

CORS_HEADERS: HeaderList = [
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Headers", "*"),
    ("Access-Control-Allow-Methods", "GET, HEAD, OPTIONS"),
]


@dataclass
class ProxyRequest:
    """An inbound request, independent of the server that received it."""

    method: str
    path: str
    query: dict[str, list[str]] = field(default_factory=dict)
    headers: HeaderList = field(default_factory=list)
    client_ip: str | None = None

    @classmethod
    def from_target(
        cls,
        method: str,
        target: str,
        headers: HeaderList | None = None,
        client_ip: str | None = None,
    ) -> ProxyRequest:
        """Build a request from a raw request target such as ``/api/proxy?url=...``."""
        parts = urlsplit(target)
        return cls(
            method=method.upper(),
            path=parts.path or "/",
            query=parse_qs(parts.query, keep_blank_values=True),
            headers=list(headers or []),
            client_ip=client_ip,
        )

    def param(self, name: str) -> str | None:
        values = self.query.get(name)
        return values[0] if values else None


@dataclass
class ProxyResponse:
    """A response ready to be written by the server.

    ``content_length`` is the size of the entity a GET would return. It is
    only set for HEAD responses, whose ``body`` is empty; None means the
    length is ``len(body)``, or unknown for an empty HEAD response.
    """

    status: int
    headers: HeaderList = field(default_factory=list)
    body: bytes = b""
    content_length: int | None = None

    @classmethod
    def json(cls, status: int, payload: dict[str, Any], headers: HeaderList | None = None) -> ProxyResponse:
        return cls(
            status=status,
            headers=[("Content-Type", "application/json; charset=utf-8"), *(headers or [])],
            body=json.dumps(payload).encode("utf-8"),
        )

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None


class ProxyPipeline:
    """Handles proxy requests using injected stores and fetcher.

    Any of ``cache``, ``cookies`` and ``rate_limiter`` may be None to switch
    that stage off.
    """

    def __init__(
        self,
        validator: AddrValidator,
        fetcher: RedirectFetcher,
        cache: ResponseCache | None = None,
        cookies: CookieStore | None = None,
        rate_limiter: RateLimiter | None = None,
        metrics: MetricsCollector | None = None,
        user_header: str | None = "X-Authenticated-User",
        trust_forwarded_for: bool = True,
    ) -> None:
        self.validator = validator
        self.fetcher = fetcher
        self.cache = cache
        self.cookies = cookies
        self.rate_limiter = rate_limiter
        self.metrics = metrics or MetricsCollector()
        self.user_header = user_header
        self.trust_forwarded_for = trust_forwarded_for

    def handle(self, request: ProxyRequest) -> ProxyResponse:
        """Produce the response for ``request``.

        Never raises: request errors become JSON error bodies and anything
        unexpected becomes a generic 500.
        """
        start = time.monotonic()
        try:
            response = self._route(request)
        except Exception:
            logger.exception("Unhandled error processing %s %s", request.method, request.path)
            self.metrics.record_event("error", {"path": request.path})
            response = ProxyResponse.json(500, {"error": "Internal server error", "code": "InternalError"})
        response.headers.extend(CORS_HEADERS)
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.path,
            response.status,
            (time.monotonic() - start) * 1000,
        )
        return response

    def _route(self, request: ProxyRequest) -> ProxyResponse:
        if request.method == "OPTIONS":
            return ProxyResponse(status=204)
        if request.path == PING_PATH:
            if request.method not in ALLOWED_METHODS:
                return self._error(MethodNotAllowed())
            return ProxyResponse.json(200, {"ok": True})
        if request.path != PROXY_PATH:
            return ProxyResponse.json(404, {"error": "Not found", "code": "NotFound"})
        return self._proxy(request)

    def _proxy(self, request: ProxyRequest) -> ProxyResponse:
        url = request.param("url") or ""
        decision = self._check_rate_limit(request)
        rate_headers = decision.headers() if decision is not None else []
        try:
            if decision is not None and not decision.allowed:
                raise RateLimitExceeded(decision.retry_after, decision.limit)
            if request.method not in ALLOWED_METHODS:
                raise MethodNotAllowed()
            if not url.strip():
                raise InvalidUrl(url, "Missing url parameter")
            self.validator.validate_url(url)

            response = self._from_cache(url, request.method)
            if response is None:
                response = self._from_upstream(url, request.method)
        except RateLimitExceeded as e:
            self.metrics.record_event("throttle", {"client": request.client_ip})
            return self._error(e, rate_headers)
        except UnacceptableUrlException as e:
            logger.warning("Blocked %s: %s", url, e.reason)
            self.metrics.record_event("blocked", {"url": url, "code": e.code})
            return self._error(e, rate_headers)
        except ProxyError as e:
            logger.info("Request for %s failed: %s", url, e.message)
            self.metrics.record_event("error", {"url": url, "code": e.code})
            return self._error(e, rate_headers)

        response.headers.extend(rate_headers)
        return response

    def _check_rate_limit(self, request: ProxyRequest) -> RateLimitDecision | None:
        if self.rate_limiter is None or self.rate_limiter.is_exempt(request.path):
            return None
        identity, authenticated = client_identity(
            request.headers,
            request.client_ip,
            user_header=self.user_header,
            trust_forwarded_for=self.trust_forwarded_for,
        )
        return self.rate_limiter.check(identity, authenticated)

    def _from_cache(self, url: str, method: str) -> ProxyResponse | None:
        if self.cache is None:
            return None
        entry: CacheEntry | None = self.cache.get(url)
        if entry is None:
            return None
        self.metrics.record_event("cache_hit", {"url": url})
        headers = list(entry.headers)
        headers.append(("X-Cache-Status", "HIT"))
        headers.append(("X-Cache-TTL", str(self.cache.remaining_ttl(url))))
        if method == "HEAD":
            return ProxyResponse(status=entry.status, headers=headers, content_length=len(entry.body))
        return ProxyResponse(status=entry.status, headers=headers, body=entry.body)

    def _from_upstream(self, url: str, method: str) -> ProxyResponse:
        upstream = self.fetcher.fetch(
            url,
            method=method,
            on_redirect=self._capture_cookies if self.cookies is not None else None,
            outgoing_cookies=self.cookies.get_cookies if self.cookies is not None else None,
        )
        self._capture_cookies(upstream.url, upstream)

        headers = sanitize_headers(upstream.headers)
        if (
            self.cache is not None
            and method == "GET"
            and ResponseCache.should_cache(upstream.status_code, upstream.headers)
        ):
            self.cache.set(url, upstream.body, upstream.status_code, headers)
        self.metrics.record_event("cache_miss", {"url": url, "status": upstream.status_code})

        headers.append(("X-Cache-Status", "MISS"))
        if method == "HEAD":
            return ProxyResponse(
                status=upstream.status_code,
                headers=headers,
                content_length=_entity_length(upstream),
            )
        return ProxyResponse(status=upstream.status_code, headers=headers, body=upstream.body)

    def _capture_cookies(self, url: str, response: UpstreamResponse) -> None:
        if self.cookies is not None and response.set_cookies:
            self.cookies.store_cookies(url, response.set_cookies)

    @staticmethod
    def _error(error: ProxyError, headers: HeaderList | None = None) -> ProxyResponse:
        extra = list(headers or [])
        if isinstance(error, MethodNotAllowed):
            extra.append(("Allow", "GET, HEAD, OPTIONS"))
        return ProxyResponse.json(error.status_code, error.to_dict(), extra)


def _entity_length(upstream: UpstreamResponse) -> int | None:
    """Upstream's declared length, when it matches what a GET would return.

    A GET body is served decoded, so an encoded entity's length does not apply.
    """
    declared = upstream.header("Content-Length")
    if declared is None or not declared.strip().isdigit():
        return None
    encoding = upstream.header("Content-Encoding")
    if encoding and encoding.strip().lower() != "identity":
        return None
    return int(declared)
