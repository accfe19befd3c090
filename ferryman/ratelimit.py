"""
Fixed-window rate limiting keyed by client identity.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .headers import get_header
from .logger import get_logger

logger = get_logger("ratelimit")

# Client address headers set by reverse proxies, in order of preference
FORWARDED_HEADERS = ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP")


@dataclass
class RateLimitRecord:
    count: int
    reset_at: float


@dataclass
class RateLimitDecision:
    """Outcome of one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0
    reset_in: int = 0

    def headers(self) -> list[tuple[str, str]]:
        """Remaining-quota headers for the response."""
        headers = [
            ("RateLimit-Limit", str(self.limit)),
            ("RateLimit-Remaining", str(self.remaining)),
            ("RateLimit-Reset", str(self.reset_in)),
        ]
        if not self.allowed:
            headers.append(("Retry-After", str(self.retry_after)))
        return headers


def client_identity(
    headers: Mapping[str, str] | list[tuple[str, str]],
    client_ip: str | None,
    user_header: str | None = "X-Authenticated-User",
    trust_forwarded_for: bool = True,
) -> tuple[str, bool]:
    """Derive the rate-limit identity of a request.

    Args:
        headers: Inbound request headers.
        client_ip: Address of the TCP peer.
        user_header: Header carrying the user id set by a trusted auth
            gateway, or None to ignore authentication.
        trust_forwarded_for: Whether reverse-proxy address headers are
            believed.

    Returns:
        ``(identity, authenticated)`` where identity is ``user:<id>`` or
        ``ip:<addr>``.
    """
    if user_header:
        user_id = (get_header(headers, user_header) or "").strip()
        if user_id:
            return f"user:{user_id}", True

    if trust_forwarded_for:
        for name in FORWARDED_HEADERS:
            value = get_header(headers, name)
            if value:
                first = value.split(",")[0].strip()
                if first:
                    return f"ip:{first}", False

    return f"ip:{client_ip or 'unknown'}", False


class RateLimiter:
    """Counts requests per identity in fixed windows.

    A request that arrives after its identity's window has ended starts a new
    window with a count of one; it never accumulates onto the old record.
    """

    def __init__(
        self,
        window_seconds: float = 60,
        max_requests: int = 100,
        authenticated_max_requests: int | None = None,
        exempt_paths: list[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.authenticated_max_requests = authenticated_max_requests or max_requests
        self.exempt_paths = set(exempt_paths if exempt_paths is not None else ["/api/proxy/ping"])
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, rate_config: dict[str, Any], clock: Callable[[], float] = time.time) -> RateLimiter:
        """Build a limiter from the ``rate_limit`` configuration section."""
        return cls(
            window_seconds=rate_config.get("window_seconds", 60),
            max_requests=rate_config.get("max_requests", 100),
            authenticated_max_requests=rate_config.get("authenticated_max_requests"),
            exempt_paths=rate_config.get("exempt_paths"),
            clock=clock,
        )

    def is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths

    def check(self, identity: str, authenticated: bool = False) -> RateLimitDecision:
        """Count one request for ``identity`` and decide whether it may proceed."""
        limit = self.authenticated_max_requests if authenticated else self.max_requests
        now = self._clock()
        with self._lock:
            record = self._records.get(identity)
            if record is None or now >= record.reset_at:
                record = RateLimitRecord(count=1, reset_at=now + self.window_seconds)
                self._records[identity] = record
            else:
                record.count += 1
            count, reset_at = record.count, record.reset_at

        reset_in = max(0, math.ceil(reset_at - now))
        if count > limit:
            logger.warning("Rate limit exceeded for %s (%d/%d)", identity, count, limit)
            return RateLimitDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=max(1, reset_in),
                reset_in=reset_in,
            )
        return RateLimitDecision(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            reset_in=reset_in,
        )

    def reset(self, identity: str | None = None) -> None:
        """Forget one identity's record, or all of them."""
        with self._lock:
            if identity is None:
                self._records.clear()
            else:
                self._records.pop(identity, None)

    def cleanup(self) -> int:
        """Drop records whose window has ended and return how many were dropped."""
        now = self._clock()
        with self._lock:
            stale = [k for k, record in self._records.items() if now >= record.reset_at]
            for k in stale:
                del self._records[k]
        if stale:
            logger.debug("Rate limit cleanup: removed %d records", len(stale))
        return len(stale)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {"tracked_identities": len(self._records)}
