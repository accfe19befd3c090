"""
Ferryman exception classes.

This module defines all custom exceptions raised by the proxy. Request-level
errors derive from ProxyError and know the HTTP status and error code the
pipeline answers with.
"""

from __future__ import annotations

from typing import Any


class FerrymanException(Exception):
    """Base exception for all Ferryman-related errors."""

    pass


class ProxyError(FerrymanException):
    """Base class for errors that terminate a single proxy request.

    Attributes:
        code: Stable error kind, reported to callers as ``code``.
        status_code: HTTP status the proxy answers with.
    """

    code = "ProxyError"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return self.code

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON body sent back to the caller."""
        return {"error": self.message, "code": self.code}


class UnacceptableUrlException(ProxyError):
    """Raised when a target URL is rejected by SSRF policy.

    These are policy decisions, not transient faults, and are never retried.
    """

    code = "UnacceptableUrl"
    status_code = 400

    def __init__(self, url: str, reason: str | None = None) -> None:
        self.url = url
        self.reason = reason or self.default_reason
        super().__init__(f"Blocked by SSRF policy: {self.reason}")

    default_reason = "denied"


class InvalidUrl(UnacceptableUrlException):
    """Raised when the target is missing or cannot be parsed as a URL."""

    code = "InvalidUrl"
    default_reason = "Invalid URL"

    def __init__(self, url: str, reason: str | None = None) -> None:
        super().__init__(url, reason)
        # Malformed input is not a policy decision, so say so plainly.
        self.message = self.reason
        self.args = (self.message,)


class BlockedScheme(UnacceptableUrlException):
    """Raised when the URL scheme is not http or https."""

    code = "BlockedScheme"
    default_reason = "scheme not allowed"


class BlockedHostLiteral(UnacceptableUrlException):
    """Raised when the hostname itself is forbidden.

    Covers ``localhost``, blocked IP literals, and blacklisted hostnames.
    """

    code = "BlockedHostLiteral"
    default_reason = "Blocked host literal"


class BlockedResolvedAddress(UnacceptableUrlException):
    """Raised when a hostname resolves to at least one blocked address."""

    code = "BlockedResolvedAddress"
    default_reason = "Resolved to restricted address"


class DnsResolutionFailed(UnacceptableUrlException):
    """Raised when a hostname cannot be resolved. Resolution fails closed."""

    code = "DnsResolutionFailed"
    default_reason = "DNS resolution failed"


class BlockedByRedirect(UnacceptableUrlException):
    """Raised when a redirect hop points at a target that fails validation.

    Closes the "public host redirects to 169.254.169.254" bypass.
    """

    code = "BlockedByRedirect"

    def __init__(self, url: str, reason: str | None = None) -> None:
        super().__init__(url, reason or "invalid target")
        self.message = f"Blocked by SSRF policy (redirect): {self.reason}"
        self.args = (self.message,)


class UnacceptableAddressException(BlockedResolvedAddress):
    """Raised when a connection targets an address that is not allowed.

    This is raised by the connection layer, right before a socket is opened,
    so it also catches hostnames that re-resolve to a private address after
    the URL was validated.
    """

    def __init__(self, address: Any) -> None:
        self.address = address
        super().__init__(str(address), "Connection to restricted address refused")


class MethodNotAllowed(ProxyError):
    """Raised when the proxy endpoint is called with a method other than GET/HEAD."""

    code = "MethodNotAllowed"
    status_code = 405

    def default_message(self) -> str:
        return "Method not allowed"


class TooManyRedirects(ProxyError):
    """Raised when the redirect chain is longer than the configured maximum."""

    code = "TooManyRedirects"
    status_code = 508

    def __init__(self, url: str, max_redirects: int) -> None:
        self.url = url
        self.max_redirects = max_redirects
        super().__init__(f"Too many redirects (limit {max_redirects})")


class UpstreamFetchFailed(ProxyError):
    """Raised when the upstream fetch fails at the transport level.

    The only error kind a caller may reasonably retry.
    """

    code = "UpstreamFetchFailed"
    status_code = 502

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Upstream fetch failed: {reason}")


class RateLimitExceeded(ProxyError):
    """Raised when a client identity exceeds its request ceiling."""

    code = "RateLimitExceeded"
    status_code = 429

    def __init__(self, retry_after: int, limit: int | None = None) -> None:
        self.retry_after = retry_after
        self.limit = limit
        super().__init__("Rate limit exceeded")

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retryAfter"] = self.retry_after
        return body


class MountDisabledException(FerrymanException):
    """Raised when attempting to mount a custom adapter on a validating session.

    Mounting custom adapters is disabled to prevent bypassing SSRF protections.
    """

    pass


class ProxyDisabledException(NotImplementedError, FerrymanException):
    """Raised when attempting to send upstream traffic through an HTTP proxy.

    Outbound proxies are disabled because the proxy server would connect to
    restricted addresses on our behalf, bypassing address validation.
    """

    pass


class ConfigException(FerrymanException):
    """Raised when Ferryman is misconfigured.

    For example, when local address detection is enabled but the netifaces
    module is not installed, or when the configuration fails validation.
    """

    pass
