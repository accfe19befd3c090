"""
Response header policy.

Upstream headers are case-insensitive and may repeat; they travel through
the proxy as an ordered list of ``(name, value)`` pairs.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

HeaderList = list[tuple[str, str]]

# Framing, cookie and encoding headers that must never reach the caller
STRIPPED_HEADERS: frozenset[str] = frozenset(
    {
        "x-frame-options",
        "content-security-policy",
        "content-security-policy-report-only",
        "set-cookie",
        "set-cookie2",
        "content-encoding",
        "transfer-encoding",
        # Recomputed from the body the proxy actually sends
        "content-length",
    }
)

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "upgrade",
    }
)


def as_header_list(headers: Mapping[str, str] | Iterable[tuple[str, str]] | None) -> HeaderList:
    """Normalize a mapping or pair sequence into a header list."""
    if headers is None:
        return []
    if isinstance(headers, Mapping):
        return [(str(k), str(v)) for k, v in headers.items()]
    return [(str(k), str(v)) for k, v in headers]


def get_header(headers: Mapping[str, str] | Iterable[tuple[str, str]] | None, name: str) -> str | None:
    """Return the first value of header ``name``, matched case-insensitively."""
    wanted = name.lower()
    for key, value in as_header_list(headers):
        if key.lower() == wanted:
            return value
    return None


def get_all_headers(headers: Mapping[str, str] | Iterable[tuple[str, str]] | None, name: str) -> list[str]:
    """Return every value of header ``name``, in order."""
    wanted = name.lower()
    return [value for key, value in as_header_list(headers) if key.lower() == wanted]


def sanitize_headers(headers: Mapping[str, str] | Iterable[tuple[str, str]] | None) -> HeaderList:
    """Drop stripped and hop-by-hop headers from an upstream response.

    Headers listed by name in ``Connection`` are hop-by-hop as well.
    """
    pairs = as_header_list(headers)
    dropped = set(STRIPPED_HEADERS | HOP_BY_HOP_HEADERS)
    for value in get_all_headers(pairs, "Connection"):
        dropped.update(token.strip().lower() for token in value.split(",") if token.strip())
    return [(k, v) for k, v in pairs if k.lower() not in dropped]
