"""
Redirect-following upstream fetcher.

Redirects are never followed by the HTTP library. Each hop is sent
individually so its target can be validated before any connection is made,
and so cookies can be captured from intermediate responses.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin

import requests

from .addrvalidator import AddrValidator
from .exceptions import (
    BlockedByRedirect,
    BlockedResolvedAddress,
    TooManyRedirects,
    UnacceptableAddressException,
    UnacceptableUrlException,
    UpstreamFetchFailed,
)
from .headers import HeaderList, get_all_headers, get_header
from .logger import get_logger
from .session import DEFAULT_USER_AGENT, Session

logger = get_logger("fetcher")

DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
CHUNK_SIZE = 64 * 1024

RedirectCallback = Callable[[str, "UpstreamResponse"], None]
CookieSource = Callable[[str], str]


@dataclass
class UpstreamResponse:
    """A response received from an upstream server.

    Attributes:
        url: The URL that produced this response.
        status_code: HTTP status.
        headers: Header pairs in arrival order; repeated headers stay separate.
        body: Response body; empty for intermediate redirect hops and HEAD.
        history: URLs of the redirect hops that led here.
    """

    url: str
    status_code: int
    headers: HeaderList
    body: bytes = b""
    history: list[str] = field(default_factory=list)

    def header(self, name: str) -> str | None:
        return get_header(self.headers, name)

    @property
    def content_type(self) -> str | None:
        return self.header("Content-Type")

    @property
    def set_cookies(self) -> list[str]:
        return get_all_headers(self.headers, "Set-Cookie")


def _header_pairs(response: requests.Response) -> HeaderList:
    raw_headers = getattr(response.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "iteritems"):
        return [(str(k), str(v)) for k, v in raw_headers.iteritems()]
    return [(str(k), str(v)) for k, v in response.headers.items()]


class RedirectFetcher:
    """Fetches a URL, following and re-validating redirects by hand.

    Example:
        >>> fetcher = RedirectFetcher()
        >>> response = fetcher.fetch("https://example.com/")
        >>> response.status_code, response.history
        (200, [])
    """

    def __init__(
        self,
        validator: AddrValidator | None = None,
        session: requests.Session | None = None,
        timeout: float = 15.0,
        max_redirects: int = 5,
        max_response_bytes: int = 20971520,
        user_agent: str | None = DEFAULT_USER_AGENT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the fetcher.

        Args:
            validator: Validates every redirect target. Also used by the
                default session to check addresses at connect time.
            session: Session to send requests with. Defaults to a
                validating Session.
            timeout: Per-hop time limit in seconds.
            max_redirects: How many redirects to follow before giving up.
            max_response_bytes: Upper bound on a response body.
            user_agent: User-Agent for the default session.
            clock: Monotonic clock used for per-hop deadlines.
        """
        self.validator = validator or AddrValidator()
        self.session = session or Session(validator=self.validator, user_agent=user_agent)
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.max_response_bytes = max_response_bytes
        self._clock = clock

    @classmethod
    def from_config(cls, fetch_config: dict[str, Any], validator: AddrValidator) -> RedirectFetcher:
        """Build a fetcher from the ``fetch`` configuration section."""
        return cls(
            validator=validator,
            timeout=fetch_config.get("timeout_seconds", 15.0),
            max_redirects=fetch_config.get("max_redirects", 5),
            max_response_bytes=fetch_config.get("max_response_bytes", 20971520),
            user_agent=fetch_config.get("user_agent") or DEFAULT_USER_AGENT,
        )

    def close(self) -> None:
        self.session.close()

    def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        max_redirects: int | None = None,
        on_redirect: RedirectCallback | None = None,
        outgoing_cookies: CookieSource | None = None,
    ) -> UpstreamResponse:
        """Fetch ``url``, following at most ``max_redirects`` redirects.

        The caller is expected to have validated ``url`` itself; every
        redirect target is validated here.

        Args:
            url: The validated target URL.
            method: ``GET`` or ``HEAD``.
            headers: Extra request headers.
            timeout: Per-hop time limit; defaults to the fetcher's.
            max_redirects: Redirect limit; defaults to the fetcher's.
            on_redirect: Called with ``(hop_url, response)`` for each redirect
                response before it is followed.
            outgoing_cookies: Called with each hop URL; a non-empty return
                value is sent as that hop's ``Cookie`` header.

        Returns:
            The final, non-redirect response.

        Raises:
            BlockedByRedirect: A redirect target failed validation.
            BlockedResolvedAddress: The target re-resolved to a blocked
                address at connect time.
            TooManyRedirects: The redirect limit was exceeded.
            UpstreamFetchFailed: A transport error, timeout or oversized body.
        """
        timeout = self.timeout if timeout is None else timeout
        limit = self.max_redirects if max_redirects is None else max_redirects
        current = url
        history: list[str] = []

        for hop in range(limit + 1):
            request_headers = {"Accept": DEFAULT_ACCEPT}
            request_headers.update(headers or {})
            if outgoing_cookies is not None:
                cookie = outgoing_cookies(current)
                if cookie:
                    request_headers["Cookie"] = cookie

            deadline = self._clock() + timeout
            response = self._send(method, current, request_headers, timeout, hop)
            try:
                if not response.is_redirect:
                    body = self._read_body(current, response, deadline)
                    logger.debug(
                        "Fetched %s (%d, %d bytes, %d redirects)", current, response.status_code, len(body), hop
                    )
                    return UpstreamResponse(
                        url=current,
                        status_code=response.status_code,
                        headers=_header_pairs(response),
                        body=body,
                        history=history,
                    )

                if hop == limit:
                    logger.warning("Redirect limit %d exceeded fetching %s", limit, url)
                    raise TooManyRedirects(url, limit)

                next_url = urljoin(current, response.headers["Location"])
                try:
                    self.validator.validate_url(next_url)
                except UnacceptableUrlException as e:
                    logger.warning("Blocked redirect from %s to %s: %s", current, next_url, e.reason)
                    raise BlockedByRedirect(next_url, e.reason) from e

                if on_redirect is not None:
                    on_redirect(
                        current,
                        UpstreamResponse(
                            url=current,
                            status_code=response.status_code,
                            headers=_header_pairs(response),
                            history=list(history),
                        ),
                    )
                logger.debug("Redirect %d: %s -> %s", hop + 1, current, next_url)
                history.append(current)
                current = next_url
            finally:
                response.close()

        raise TooManyRedirects(url, limit)

    def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        timeout: float,
        hop: int,
    ) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                headers=headers,
                allow_redirects=False,
                stream=True,
                timeout=(timeout, timeout),
            )
        except UnacceptableAddressException as e:
            logger.warning("Connection to %s refused at connect time", url)
            if hop == 0:
                raise BlockedResolvedAddress(url, e.reason) from e
            raise BlockedByRedirect(url, e.reason) from e
        except requests.RequestException as e:
            logger.info("Upstream fetch of %s failed: %s", url, e)
            raise UpstreamFetchFailed(url, type(e).__name__) from e

    def _read_body(self, url: str, response: requests.Response, deadline: float) -> bytes:
        chunks: list[bytes] = []
        size = 0
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                size += len(chunk)
                if size > self.max_response_bytes:
                    raise UpstreamFetchFailed(url, "Response too large")
                if self._clock() > deadline:
                    raise UpstreamFetchFailed(url, "Timeout")
                chunks.append(chunk)
        except requests.RequestException as e:
            logger.info("Reading body of %s failed: %s", url, e)
            raise UpstreamFetchFailed(url, type(e).__name__) from e
        return b"".join(chunks)
