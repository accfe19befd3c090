"""
Connect-time address guard for urllib3 2.x connections.

URL validation resolves a hostname once and the socket layer resolves it
again when it connects. The connections here re-check every address of that
second resolution, so a name that flips to a private address in between
(DNS rebinding) is refused before any socket is opened.
"""

from __future__ import annotations

import ipaddress
import socket
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.exceptions import ConnectTimeoutError
from urllib3.util.connection import _set_socket_options

from .exceptions import UnacceptableAddressException
from .logger import get_logger

if TYPE_CHECKING:
    from .addrvalidator import AddrValidator

logger = get_logger("connection")

# (family, type, proto, canonname, sockaddr); sockaddr[0] is an ipaddress object
AddrInfo = tuple[int, int, int, str, tuple[Any, ...]]

# Marks "leave the socket's timeout alone", like socket's global default
_DEFAULT_TIMEOUT = object()


def parse_addrinfo(records: Sequence[tuple[Any, ...]]) -> list[AddrInfo]:
    """Parse the address of every getaddrinfo record.

    Zone ids (``fe80::1%eth0``) are dropped from the parsed address. The
    canonical name, which getaddrinfo only reports on the first record, is
    copied to all of them.
    """
    canonname = records[0][3] if records else ""
    parsed: list[AddrInfo] = []
    for family, socktype, proto, _canonname, sockaddr in records:
        address = ipaddress.ip_address(str(sockaddr[0]).split("%", 1)[0])
        parsed.append((family, socktype, proto, canonname, (address, *sockaddr[1:])))
    return parsed


def resolve_for_connect(host: str, port: int) -> list[AddrInfo]:
    """Resolve ``host`` for a TCP connection."""
    return parse_addrinfo(socket.getaddrinfo(host, port, 0, socket.SOCK_STREAM))


def checked_addresses(host: str, port: int, validator: AddrValidator) -> list[AddrInfo]:
    """Resolve ``host`` and make sure every answer may be connected to.

    Raises:
        UnacceptableAddressException: If the host itself is forbidden, or if
            any one of its addresses is. A single blocked answer poisons the
            whole name, the same as during URL validation.
    """
    if validator.is_host_literal_blocked(host) or not validator.is_hostname_allowed(host):
        logger.warning("Refusing connection to forbidden host %s", host)
        raise UnacceptableAddressException(host)

    local_networks = validator.local_networks()
    records = resolve_for_connect(host, port)
    for record in records:
        address = record[4][0]
        if not validator.is_ip_allowed(address, local_networks=local_networks):
            logger.warning("Refusing connection to %s: resolved to restricted address %s", host, address)
            raise UnacceptableAddressException((host, port))
    return records


def validating_create_connection(
    address: tuple[str, int],
    timeout: float | object | None = _DEFAULT_TIMEOUT,
    source_address: tuple[str, int] | None = None,
    socket_options: list[tuple[int, int, int | bytes]] | None = None,
    *,
    validator: AddrValidator,
) -> socket.socket:
    """Open a TCP connection to an address the validator accepts.

    Works like ``socket.create_connection``: the resolved addresses are
    tried in order and the first successful socket is returned.

    Raises:
        UnacceptableAddressException: If the host or any of its addresses is
            blocked.
        OSError: If every connection attempt fails.
    """
    host, port = address
    last_error: OSError | None = None

    for family, socktype, proto, _canonname, sockaddr in checked_addresses(host, port, validator):
        sock = None
        try:
            sock = socket.socket(family, socktype, proto)
            _set_socket_options(sock, socket_options)
            if timeout is not _DEFAULT_TIMEOUT:
                sock.settimeout(timeout)  # type: ignore[arg-type]
            if source_address:
                sock.bind(source_address)
            sock.connect((sockaddr[0].compressed, *sockaddr[1:]))
            return sock
        except OSError as e:
            last_error = e
            if sock is not None:
                sock.close()

    if last_error is not None:
        raise last_error
    raise OSError(f"getaddrinfo returned no addresses for {host}")


class _AddressGuardMixin:
    """Replaces urllib3's ``_new_conn`` with the validating connect."""

    _validator: AddrValidator

    def __init__(self, *args: Any, validator: AddrValidator, **kwargs: Any) -> None:
        self._validator = validator
        super().__init__(*args, **kwargs)

    def _new_conn(self) -> socket.socket:
        extra_kw: dict[str, Any] = {}
        if self.source_address:  # type: ignore[attr-defined]
            extra_kw["source_address"] = self.source_address  # type: ignore[attr-defined]
        if self.socket_options:  # type: ignore[attr-defined]
            extra_kw["socket_options"] = self.socket_options  # type: ignore[attr-defined]

        try:
            return validating_create_connection(
                (self._dns_host, self.port),  # type: ignore[attr-defined]
                self.timeout,  # type: ignore[attr-defined]
                validator=self._validator,
                **extra_kw,
            )
        except socket.timeout as e:
            raise ConnectTimeoutError(
                self,
                f"Connection to {self.host} timed out. (connect timeout={self.timeout})",  # type: ignore[attr-defined]
            ) from e


class ValidatingHTTPConnection(_AddressGuardMixin, HTTPConnection):
    """HTTP connection that validates target addresses before connecting."""


class ValidatingHTTPSConnection(_AddressGuardMixin, HTTPSConnection):
    """HTTPS connection that validates target addresses before connecting."""
