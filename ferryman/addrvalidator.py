"""
Address and URL validation for SSRF protection.

This module decides whether the proxy may fetch a target URL, hostname or
network address. Checks run from cheapest to most expensive: scheme, then
the host literal, then every address the hostname resolves to.
"""

from __future__ import annotations

import fnmatch
import ipaddress
import re
import socket
from collections.abc import Callable, Iterable
from re import Pattern
from typing import TYPE_CHECKING, Any
from urllib.parse import SplitResult, urlsplit

from .exceptions import (
    BlockedHostLiteral,
    BlockedResolvedAddress,
    BlockedScheme,
    ConfigException,
    DnsResolutionFailed,
    InvalidUrl,
    UnacceptableUrlException,
)

if TYPE_CHECKING:
    from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network

# Interface detection is optional; only autodetect_local_addresses needs it
try:
    import netifaces

    HAVE_NETIFACES = True
except ImportError:
    netifaces = None  # type: ignore[assignment]
    HAVE_NETIFACES = False


ALLOWED_SCHEMES: frozenset[str] = frozenset({"http", "https"})

BLOCKED_IPV4_NETWORKS: tuple[IPv4Network, ...] = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "127.0.0.0/8",  # loopback
        "10.0.0.0/8",  # RFC1918
        "172.16.0.0/12",  # RFC1918
        "192.168.0.0/16",  # RFC1918
        "169.254.0.0/16",  # link-local
        "100.64.0.0/10",  # CGNAT
        "0.0.0.0/8",  # current network
        "192.0.0.0/24",  # IETF protocol assignments
        "198.18.0.0/15",  # benchmarking
        "224.0.0.0/4",  # multicast
        "240.0.0.0/4",  # reserved
        "255.255.255.255/32",  # broadcast
    )
)

BLOCKED_IPV6_NETWORKS: tuple[IPv6Network, ...] = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::1/128",  # loopback
        "::/128",  # unspecified
        "fc00::/7",  # unique local
        "fe80::/10",  # link-local
        "fec0::/10",  # site-local (deprecated)
        "ff00::/8",  # multicast
    )
)

# RFC 6052 NAT64 prefix; the low 32 bits carry the IPv4 address
_NAT64_PREFIX = ipaddress.ip_network("64:ff9b::/96")


def canonicalize_hostname(hostname: str) -> str:
    """Return the ASCII (punycode) form of ``hostname``, lowercased.

    Raises:
        UnicodeError: If a label cannot be IDNA-encoded.
    """
    return hostname.encode("idna").decode("ascii").lower()


def parse_ip_literal(hostname: str) -> IPv4Address | IPv6Address | None:
    """Return the IP address a hostname spells out, or None for a symbolic name.

    Square brackets and IPv6 zone identifiers are stripped first.
    """
    candidate = hostname.strip("[]").split("%")[0]
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        return None


def is_localhost_name(hostname: str) -> bool:
    """Check for ``localhost`` and any name under the ``.localhost`` TLD."""
    lower = hostname.lower().rstrip(".")
    return lower == "localhost" or lower.endswith(".localhost")


def resolve_addresses(hostname: str) -> list[IPv4Address | IPv6Address]:
    """Resolve a hostname to every A/AAAA address the resolver returns.

    Args:
        hostname: The symbolic hostname to resolve.

    Returns:
        The distinct addresses, in resolver order.

    Raises:
        socket.gaierror: If resolution fails.
    """
    records = socket.getaddrinfo(hostname, None, 0, socket.SOCK_STREAM)
    addresses: list[IPv4Address | IPv6Address] = []
    for _family, _socktype, _proto, _canonname, sockaddr in records:
        try:
            addr = ipaddress.ip_address(str(sockaddr[0]).split("%")[0])
        except ValueError:
            continue
        if addr not in addresses:
            addresses.append(addr)
    return addresses


def _interface_networks(families: dict[int, list[dict[str, str]]]) -> list[IPv4Network | IPv6Network]:
    found: list[IPv4Network | IPv6Network] = []
    for family in (netifaces.AF_INET, netifaces.AF_INET6):
        for entry in families.get(family, []):
            text = entry.get("addr", "").partition("%")[0]
            try:
                found.append(ipaddress.ip_network(text))
            except ValueError:
                # Empty or malformed entries show up on some virtual interfaces
                continue
    return found


def determine_local_addresses() -> list[IPv4Network | IPv6Network]:
    """List the single-host networks bound to this machine's interfaces.

    The answer is recomputed on every call since interfaces can gain or lose
    addresses while the proxy runs.

    Raises:
        ConfigException: If netifaces is not installed.
    """
    if not HAVE_NETIFACES:
        raise ConfigException("autodetect_local_addresses needs the netifaces package, which is not installed")
    networks: list[IPv4Network | IPv6Network] = []
    for name in netifaces.interfaces():
        networks.extend(_interface_networks(netifaces.ifaddresses(name)))
    return networks


def hostname_matches(hostname: str, pattern: str | Pattern[str]) -> bool:
    """Match a hostname against a glob string or a compiled regex.

    Both sides are canonicalized first. Anything after a NUL byte is also
    tried cut off, since resolvers stop reading there.
    """
    regex = fnmatch.translate(canonicalize_hostname(pattern)) if isinstance(pattern, str) else pattern
    name = canonicalize_hostname(hostname)
    candidates = {name.strip("."), name.split("\x00", 1)[0].strip(".")}
    return any(re.match(regex, candidate) for candidate in candidates)


def _embedded_ipv4(addr: IPv6Address) -> list[IPv4Address]:
    nested: list[IPv4Address] = []
    if addr.ipv4_mapped:
        nested.append(addr.ipv4_mapped)
    if addr.sixtofour:
        nested.append(addr.sixtofour)
    if addr.teredo:
        nested.extend(addr.teredo)
    if addr in _NAT64_PREFIX:
        nested.append(ipaddress.IPv4Address(addr.packed[-4:]))
    return nested


class AddrValidator:
    """Validator for target URLs and network addresses to prevent SSRF.

    By default it blocks loopback, RFC1918 private space, link-local, CGNAT,
    current-network, IETF protocol assignments, benchmarking, multicast,
    reserved and broadcast IPv4 ranges, plus IPv6 loopback, unique-local,
    link-local and IPv4 addresses embedded in IPv6.

    Example:
        >>> validator = AddrValidator()
        >>> validator.is_ip_allowed("93.184.216.34")
        True
        >>> validator.is_ip_allowed("169.254.169.254")
        False
        >>> validator.validate_url("http://127.0.0.1/")
        Traceback (most recent call last):
            ...
        ferryman.exceptions.BlockedHostLiteral: Blocked by SSRF policy: Blocked host literal
    """

    def __init__(
        self,
        ip_blacklist: Iterable[IPv4Network | IPv6Network] | None = None,
        ip_whitelist: Iterable[IPv4Network | IPv6Network] | None = None,
        hostname_blacklist: Iterable[str | Pattern[str]] | None = None,
        allow_ipv6: bool = True,
        autodetect_local_addresses: bool = False,
        resolver: Callable[[str], list[IPv4Address | IPv6Address]] | None = None,
    ) -> None:
        """
        Args:
            ip_blacklist: Extra networks to refuse.
            ip_whitelist: Networks to accept even inside a blocked range.
            hostname_blacklist: Names to refuse, as glob strings or compiled
                regexes.
            allow_ipv6: Whether public IPv6 targets may be fetched.
            autodetect_local_addresses: Also refuse the addresses bound to
                this machine's interfaces. Needs netifaces.
            resolver: Maps a hostname to its addresses. The system resolver
                is used when omitted.
        """
        self.ip_blacklist: set[IPv4Network | IPv6Network] = set(ip_blacklist or [])
        self.ip_whitelist: set[IPv4Network | IPv6Network] = set(ip_whitelist or [])
        self.hostname_blacklist: set[str | Pattern[str]] = set(hostname_blacklist or [])
        self.allow_ipv6 = allow_ipv6
        self.autodetect_local_addresses = autodetect_local_addresses
        self.resolver = resolver or resolve_addresses

    @classmethod
    def from_config(cls, ssrf_config: dict[str, Any]) -> AddrValidator:
        """Build a validator from the ``ssrf`` configuration section."""
        return cls(
            ip_blacklist={ipaddress.ip_network(n) for n in ssrf_config.get("ip_blacklist", [])},
            ip_whitelist={ipaddress.ip_network(n) for n in ssrf_config.get("ip_whitelist", [])},
            hostname_blacklist=set(ssrf_config.get("hostname_blacklist", [])),
            allow_ipv6=ssrf_config.get("allow_ipv6", True),
            autodetect_local_addresses=ssrf_config.get("autodetect_local_addresses", False),
        )

    def local_networks(self) -> list[IPv4Network | IPv6Network]:
        """This machine's own addresses, or nothing when autodetection is off."""
        return determine_local_addresses() if self.autodetect_local_addresses else []

    def is_ip_allowed(
        self,
        addr_ip: str | IPv4Address | IPv6Address,
        *,
        local_networks: list[IPv4Network | IPv6Network] | None = None,
    ) -> bool:
        """Decide whether the proxy may connect to one address.

        The whitelist is consulted first so it can open holes in blocked
        ranges. IPv4 addresses carried inside IPv6 (mapped, 6to4, Teredo and
        DNS64) must pass the IPv4 rules too.

        Args:
            addr_ip: The address, as text or an ``ipaddress`` object.
            local_networks: Interface addresses to refuse. Looked up from the
                interfaces when omitted, so callers checking many addresses
                should look them up once and pass them in.
        """
        if local_networks is None:
            local_networks = self.local_networks()
        if isinstance(addr_ip, str):
            addr_ip = ipaddress.ip_address(addr_ip)

        if any(addr_ip in net for net in self.ip_whitelist):
            return True
        for refused in (self.ip_blacklist, local_networks):
            if any(addr_ip in net for net in refused):
                return False

        if addr_ip.version == 4:
            return not any(addr_ip in net for net in BLOCKED_IPV4_NETWORKS)
        if any(addr_ip in net for net in BLOCKED_IPV6_NETWORKS):
            return False

        embedded = _embedded_ipv4(addr_ip)
        if not all(self.is_ip_allowed(v4, local_networks=local_networks) for v4 in embedded):
            return False
        # A mapped address is an IPv4 host, so allow_ipv6 does not apply
        return addr_ip.ipv4_mapped is not None or self.allow_ipv6

    def is_hostname_allowed(self, hostname: str) -> bool:
        """Return False when ``hostname`` matches any blacklist entry."""
        return not any(hostname_matches(hostname, pattern) for pattern in self.hostname_blacklist)

    def is_host_literal_blocked(self, hostname: str) -> bool:
        """Classify a hostname without DNS.

        Returns True for ``localhost`` names and for IP literals in a blocked
        range. Symbolic names return False: only DNS can settle those.
        """
        if is_localhost_name(hostname):
            return True
        literal = parse_ip_literal(hostname)
        if literal is None:
            return False
        return not self.is_ip_allowed(literal)

    def validate_url_sync(self, url: str) -> SplitResult:
        """Run the DNS-free checks on a URL.

        This is the weaker variant for contexts that cannot resolve names,
        such as a client-side pre-check. It must never be the only check.

        Args:
            url: The candidate URL.

        Returns:
            The parsed URL.

        Raises:
            InvalidUrl: If the URL cannot be parsed or has no host.
            BlockedScheme: If the scheme is not http or https.
            BlockedHostLiteral: If the host is localhost or a blocked IP literal.
        """
        parts = _split_url(url)
        if parts.scheme.lower() not in ALLOWED_SCHEMES:
            raise BlockedScheme(url, f"scheme not allowed: {parts.scheme or 'none'}")

        hostname = parts.hostname
        if not hostname:
            raise InvalidUrl(url, "URL has no hostname")
        try:
            hostname = canonicalize_hostname(hostname)
        except UnicodeError as e:
            raise InvalidUrl(url, "Invalid hostname") from e

        if self.is_host_literal_blocked(hostname):
            raise BlockedHostLiteral(url)
        if not self.is_hostname_allowed(hostname):
            raise BlockedHostLiteral(url, "Blocked hostname")
        return parts

    def validate_url(self, url: str) -> SplitResult:
        """Run the full layered validation on a URL, including DNS.

        Every address the hostname resolves to must be allowed; a single
        blocked answer among many rejects the URL.

        Args:
            url: The candidate URL.

        Returns:
            The parsed URL.

        Raises:
            UnacceptableUrlException: The subclass naming the failed check.
        """
        parts = self.validate_url_sync(url)
        hostname = canonicalize_hostname(parts.hostname or "")

        if parse_ip_literal(hostname) is not None:
            # Literal already classified by the sync checks; nothing to resolve
            return parts

        try:
            addresses = self.resolver(hostname)
        except (OSError, UnicodeError) as e:
            raise DnsResolutionFailed(url) from e
        if not addresses:
            raise DnsResolutionFailed(url)

        local_networks = self.local_networks()
        for addr in addresses:
            if not self.is_ip_allowed(addr, local_networks=local_networks):
                kind = "IPv4" if addr.version == 4 else "IPv6"
                raise BlockedResolvedAddress(url, f"Resolved to restricted {kind}")
        return parts

    def is_url_allowed(self, url: str) -> bool:
        """Return True if ``url`` passes the full validation."""
        try:
            self.validate_url(url)
        except UnacceptableUrlException:
            return False
        return True


def _split_url(url: str) -> SplitResult:
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrl(str(url), "Missing url parameter")
    try:
        parts = urlsplit(url.strip())
        # Accessing port validates it
        parts.port
    except ValueError as e:
        raise InvalidUrl(url) from e
    if not parts.scheme:
        raise InvalidUrl(url)
    return parts
