"""In-memory response cache for the proxy."""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .headers import HeaderList, as_header_list, get_header
from .logger import get_logger
from .ttl import TTLPolicy

logger = get_logger("cache")


@dataclass
class CacheEntry:
    """A cached upstream response."""

    body: bytes
    status: int
    headers: HeaderList
    expires_at: float
    created_at: float = 0.0
    ttl: int = 0
    access_count: int = field(default=0, compare=False)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class ResponseCache:
    """Thread-safe TTL cache keyed by the exact target URL.

    Entries expire lazily on lookup and are also swept by ``cleanup()``, which
    the service runs periodically. Once ``max_entries`` is exceeded the least
    recently used entry is evicted.

    Example:
        >>> cache = ResponseCache()
        >>> cache.set("https://example.com/", b"<html></html>", 200,
        ...           [("Content-Type", "text/html")])
        True
        >>> cache.get("https://example.com/").status
        200
    """

    def __init__(
        self,
        ttl_policy: TTLPolicy | None = None,
        max_entries: int = 1000,
        max_entry_bytes: int = 10485760,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_policy: Chooses a TTL from the Content-Type when ``set`` is
                not given one.
            max_entries: Entry ceiling before LRU eviction starts.
            max_entry_bytes: Bodies larger than this are not stored.
            clock: Returns the current time in seconds.
        """
        self.ttl_policy = ttl_policy or TTLPolicy()
        self.max_entries = max_entries
        self.max_entry_bytes = max_entry_bytes
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "expired": 0, "evictions": 0}

    @classmethod
    def from_config(cls, cache_config: dict[str, Any], clock: Callable[[], float] = time.time) -> ResponseCache:
        """Build a cache from the ``cache`` configuration section."""
        return cls(
            ttl_policy=TTLPolicy(cache_config.get("ttl")),
            max_entries=cache_config.get("max_entries", 1000),
            max_entry_bytes=cache_config.get("max_entry_bytes", 10485760),
            clock=clock,
        )

    @staticmethod
    def should_cache(status: int, headers: Any) -> bool:
        """Return True for a 200 response that allows shared caching."""
        if status != 200:
            return False
        cache_control = (get_header(headers, "Cache-Control") or "").lower()
        directives = {d.split("=", 1)[0].strip() for d in cache_control.split(",")}
        return not directives & {"no-store", "private"}

    def get(self, key: str) -> CacheEntry | None:
        """Look up an entry, deleting it if it has expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._stats["expired"] += 1
                self._stats["misses"] += 1
                return None
            self._entries.move_to_end(key)
            entry.access_count += 1
            self._stats["hits"] += 1
            return entry

    def set(
        self,
        key: str,
        body: bytes,
        status: int,
        headers: Any,
        ttl: int | None = None,
    ) -> bool:
        """Store a response.

        Args:
            key: The exact target URL.
            body: Response body.
            status: Upstream status code.
            headers: Header mapping or pair list.
            ttl: Lifetime in seconds; derived from Content-Type when None.

        Returns:
            True if the response was stored, False if it is too large.
        """
        if len(body) > self.max_entry_bytes:
            logger.debug("Not caching %s: %d bytes exceeds entry limit", key, len(body))
            return False

        header_list = as_header_list(headers)
        if ttl is None:
            ttl = self.ttl_policy.ttl_for(get_header(header_list, "Content-Type"))

        now = self._clock()
        entry = CacheEntry(
            body=body,
            status=status,
            headers=header_list,
            expires_at=now + ttl,
            created_at=now,
            ttl=ttl,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._stats["sets"] += 1
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug("Evicted %s", evicted)
        return True

    def remaining_ttl(self, key: str) -> int:
        """Seconds until ``key`` expires, rounded up; 0 if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return 0
            return max(0, math.ceil(entry.expires_at - self._clock()))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Remove every entry and return how many were removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def cleanup(self) -> int:
        """Remove all expired entries and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
            for k in expired:
                del self._entries[k]
            self._stats["expired"] += len(expired)
        if expired:
            logger.info("Cache cleanup: removed %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            stats: dict[str, Any] = dict(self._stats)
            stats["entries"] = len(self._entries)
        lookups = stats["hits"] + stats["misses"]
        stats["hit_rate"] = stats["hits"] / lookups if lookups else 0.0
        return stats
