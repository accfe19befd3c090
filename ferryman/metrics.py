"""Request metrics for the proxy."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any

# Event types and the counter each one increments
_EVENT_COUNTERS = {
    "cache_hit": "cache_hits",
    "cache_miss": "cache_misses",
    "throttle": "throttled",
    "blocked": "blocked",
    "error": "errors",
}


class MetricsCollector:
    """Collects request counters and a bounded log of recent events.

    Thread-safe for concurrent request handling.
    """

    def __init__(self, max_events: int = 100) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, Any] = {
            "total_requests": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "throttled": 0,
            "blocked": 0,
            "errors": 0,
            "start_time": time.time(),
        }
        self._events: deque[tuple[str, dict[str, Any]]] = deque(maxlen=max_events)

    def record_event(self, event_type: str, details: dict[str, Any] | None = None) -> None:
        """Record one finished proxy request.

        Args:
            event_type: One of ``cache_hit``, ``cache_miss``, ``throttle``,
                ``blocked`` or ``error``.
            details: Extra details kept with the event.
        """
        with self._lock:
            self._metrics["total_requests"] += 1
            counter = _EVENT_COUNTERS.get(event_type)
            if counter:
                self._metrics[counter] += 1
            self._events.append((event_type, details or {}))

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            m = dict(self._metrics)
            events = list(self._events)
        m["uptime_seconds"] = time.time() - m["start_time"]
        m["events"] = [{"event_type": event_type, "details": details} for event_type, details in events]
        return m
