"""
Ferryman - SSRF-protected content-fetching proxy.

Ferryman fetches web pages on behalf of a browser UI that cannot fetch them
itself. Every target URL, every redirect hop and every socket address is
checked against SSRF policy before a connection is made, cookies set by
upstream sites are kept server-side per hostname, and successful responses
are cached with content-type-aware lifetimes.

Example:
    >>> from ferryman import ContentProxy
    >>> with ContentProxy({"server": {"port": 3001}}) as proxy:
    ...     # GET http://127.0.0.1:3001/api/proxy?url=https%3A%2F%2Fexample.com%2F
    ...     pass

The validator can also be used on its own:

    >>> from ferryman import AddrValidator
    >>> AddrValidator().is_url_allowed("http://169.254.169.254/latest/meta-data/")
    False
"""

from __future__ import annotations

__version__ = "1.0.0"

from .adapters import ValidatingHTTPAdapter
from .addrvalidator import AddrValidator
from .cache import CacheEntry, ResponseCache
from .client import FetchOutcome, ProxyClient
from .cookies import CookieEntry, CookieOptions, CookieStore
from .exceptions import (
    BlockedByRedirect,
    BlockedHostLiteral,
    BlockedResolvedAddress,
    BlockedScheme,
    ConfigException,
    DnsResolutionFailed,
    FerrymanException,
    InvalidUrl,
    MethodNotAllowed,
    MountDisabledException,
    ProxyDisabledException,
    ProxyError,
    RateLimitExceeded,
    TooManyRedirects,
    UnacceptableAddressException,
    UnacceptableUrlException,
    UpstreamFetchFailed,
)
from .fetcher import RedirectFetcher, UpstreamResponse
from .pipeline import ProxyPipeline, ProxyRequest, ProxyResponse
from .proxy import ContentProxy
from .ratelimit import RateLimitDecision, RateLimiter
from .session import Session
from .ttl import TTLPolicy

__all__ = [
    "__version__",
    "AddrValidator",
    "CacheEntry",
    "ContentProxy",
    "CookieEntry",
    "CookieOptions",
    "CookieStore",
    "FetchOutcome",
    "ProxyClient",
    "ProxyPipeline",
    "ProxyRequest",
    "ProxyResponse",
    "RateLimitDecision",
    "RateLimiter",
    "RedirectFetcher",
    "ResponseCache",
    "Session",
    "TTLPolicy",
    "UpstreamResponse",
    "ValidatingHTTPAdapter",
    # errors
    "BlockedByRedirect",
    "BlockedHostLiteral",
    "BlockedResolvedAddress",
    "BlockedScheme",
    "ConfigException",
    "DnsResolutionFailed",
    "FerrymanException",
    "InvalidUrl",
    "MethodNotAllowed",
    "MountDisabledException",
    "ProxyDisabledException",
    "ProxyError",
    "RateLimitExceeded",
    "TooManyRedirects",
    "UnacceptableAddressException",
    "UnacceptableUrlException",
    "UpstreamFetchFailed",
]
