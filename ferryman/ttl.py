"""TTL selection for cached responses."""

from __future__ import annotations

from typing import Any

DEFAULT_TTLS: dict[str, int] = {"html": 300, "static": 3600, "json": 120, "default": 300}

_STATIC_TYPES = (
    "text/css",
    "text/javascript",
    "application/javascript",
    "application/x-javascript",
    "application/ecmascript",
    "application/wasm",
)


class TTLPolicy:
    """Resolves cache TTLs from the response Content-Type.

    Example:
        >>> policy = TTLPolicy()
        >>> policy.ttl_for("text/html; charset=utf-8")
        300
        >>> policy.ttl_for("image/png")
        3600
    """

    def __init__(self, ttls: dict[str, Any] | None = None) -> None:
        """Initialize the policy.

        Args:
            ttls: The ``cache.ttl`` configuration section. Missing categories
                fall back to DEFAULT_TTLS.
        """
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}

    @staticmethod
    def categorize(content_type: str | None) -> str:
        """Map a Content-Type value to ``html``, ``static``, ``json`` or ``default``."""
        if not content_type:
            return "default"
        media_type = content_type.split(";", 1)[0].strip().lower()
        if media_type in ("text/html", "application/xhtml+xml"):
            return "html"
        if media_type == "application/json" or media_type.endswith("+json"):
            return "json"
        if media_type in _STATIC_TYPES or media_type.startswith(("image/", "font/")):
            return "static"
        return "default"

    def ttl_for(self, content_type: str | None) -> int:
        return int(self.ttls[self.categorize(content_type)])

    def get_default_ttl(self) -> int:
        return int(self.ttls["default"])
