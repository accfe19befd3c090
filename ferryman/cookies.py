"""
Server-side cookie jar.

Cookies set by upstream sites are kept per request hostname and replayed on
later fetches to the same hostname. They are never handed back to the
caller of the proxy.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urlsplit

from .logger import get_logger

logger = get_logger("cookies")

_SAME_SITE_VALUES = {"strict": "Strict", "lax": "Lax", "none": "None"}


@dataclass
class CookieOptions:
    domain: str | None = None
    path: str | None = None
    http_only: bool = False
    secure: bool = False
    same_site: str = "Lax"
    max_age: int | None = None


@dataclass
class CookieEntry:
    """A stored cookie. ``expires_at == 0`` marks a session cookie."""

    name: str
    value: str
    options: CookieOptions = field(default_factory=CookieOptions)
    expires_at: float = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at != 0 and now > self.expires_at


def _parse_http_date(value: str) -> float | None:
    try:
        return parsedate_to_datetime(value.strip()).timestamp()
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def parse_set_cookie(header: str, now: float | None = None) -> CookieEntry | None:
    """Parse one ``Set-Cookie`` header value.

    Attribute names match case-insensitively and Max-Age wins over Expires
    whatever their order. An entry whose ``expires_at`` is not after ``now``
    is already expired; the store uses that to delete the cookie.

    Args:
        header: The header value.
        now: Current time in seconds; defaults to ``time.time()``.

    Returns:
        The parsed cookie, or None if the header has no ``name=value`` pair
        or the name is empty.
    """
    now = time.time() if now is None else now
    segments = header.split(";")
    first = segments[0]
    if "=" not in first:
        return None
    name, value = first.split("=", 1)
    name = name.strip()
    if not name:
        return None

    options = CookieOptions()
    expires: float | None = None
    for segment in segments[1:]:
        attr, _, attr_value = segment.partition("=")
        attr = attr.strip().lower()
        attr_value = attr_value.strip()
        if attr == "domain" and attr_value:
            options.domain = attr_value.lstrip(".").lower()
        elif attr == "path" and attr_value:
            options.path = attr_value
        elif attr == "expires":
            expires = _parse_http_date(attr_value)
        elif attr == "max-age":
            try:
                options.max_age = int(attr_value)
            except ValueError:
                logger.debug("Ignoring invalid Max-Age %r for cookie %s", attr_value, name)
        elif attr == "httponly":
            options.http_only = True
        elif attr == "secure":
            options.secure = True
        elif attr == "samesite":
            options.same_site = _SAME_SITE_VALUES.get(attr_value.lower(), "Lax")

    if options.max_age is not None:
        # A non-positive Max-Age expires the cookie immediately
        expires_at = now + options.max_age if options.max_age > 0 else now
    elif expires is not None:
        expires_at = expires if expires > now else now
    else:
        expires_at = 0
    return CookieEntry(name=name, value=value.strip(), options=options, expires_at=expires_at)


def domain_key(url: str) -> str:
    """Return the jar key for a URL: its lowercase hostname."""
    return (urlsplit(url).hostname or "").lower()


class CookieStore:
    """Thread-safe per-domain cookie jar.

    Example:
        >>> store = CookieStore()
        >>> store.store_cookies("https://example.com/login", "sid=abc; Path=/; HttpOnly")
        1
        >>> store.get_cookies("https://example.com/account")
        'sid=abc'
        >>> store.get_cookies("https://other.example/")
        ''
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._jar: dict[str, dict[str, CookieEntry]] = {}
        self._lock = threading.Lock()

    def store_cookies(self, url: str, set_cookie: str | Iterable[str] | None) -> int:
        """Store the cookies of one or more ``Set-Cookie`` headers.

        Args:
            url: The URL whose response carried the headers.
            set_cookie: A single header value or a list of them.

        Returns:
            The number of cookies stored or deleted.
        """
        if not set_cookie:
            return 0
        headers = [set_cookie] if isinstance(set_cookie, str) else list(set_cookie)
        key = domain_key(url)
        if not key:
            return 0

        now = self._clock()
        changed = 0
        with self._lock:
            for header in headers:
                entry = parse_set_cookie(header, now=now)
                if entry is None:
                    logger.debug("Ignoring malformed Set-Cookie from %s", key)
                    continue
                cookies = self._jar.setdefault(key, {})
                if entry.expires_at != 0 and entry.expires_at <= now:
                    cookies.pop(entry.name, None)
                else:
                    cookies[entry.name] = entry
                changed += 1
                if not cookies:
                    del self._jar[key]
        return changed

    def get_cookies(self, url: str) -> str:
        """Build the ``Cookie`` header value for a request to ``url``.

        Expired cookies met on the way are deleted. Secure cookies are only
        sent to https URLs.
        """
        key = domain_key(url)
        secure_target = urlsplit(url).scheme.lower() == "https"
        now = self._clock()
        pairs = []
        with self._lock:
            cookies = self._jar.get(key)
            if not cookies:
                return ""
            for name, entry in list(cookies.items()):
                if entry.is_expired(now):
                    del cookies[name]
                    continue
                if entry.options.secure and not secure_target:
                    continue
                pairs.append(f"{entry.name}={entry.value}")
            if not cookies:
                del self._jar[key]
        return "; ".join(pairs)

    def clear(self) -> None:
        with self._lock:
            self._jar.clear()

    def clear_domain(self, domain: str) -> None:
        with self._lock:
            self._jar.pop(domain.lower(), None)

    def cleanup(self) -> int:
        """Delete every expired cookie and return how many were deleted."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._jar):
                cookies = self._jar[key]
                for name in [n for n, entry in cookies.items() if entry.is_expired(now)]:
                    del cookies[name]
                    removed += 1
                if not cookies:
                    del self._jar[key]
        if removed:
            logger.info("Cookie cleanup: removed %d expired cookies", removed)
        return removed

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            by_domain = {key: len(cookies) for key, cookies in self._jar.items()}
        return {
            "domains": len(by_domain),
            "total_cookies": sum(by_domain.values()),
            "cookies_by_domain": by_domain,
        }
