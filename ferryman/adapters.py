"""
Transport adapter for upstream fetches.

Each adapter owns one ValidatingPoolManager, so every pool and connection it
creates is checked with the adapter's validator. Outbound HTTP proxies are
refused: a proxy would open the upstream connection itself, out of reach of
the connect-time check.
"""

from __future__ import annotations

from typing import Any

from requests.adapters import DEFAULT_POOLBLOCK, HTTPAdapter

from .addrvalidator import AddrValidator
from .exceptions import ProxyDisabledException
from .poolmanager import ValidatingPoolManager


class ValidatingHTTPAdapter(HTTPAdapter):
    """requests adapter whose connections are address-checked.

    Example:
        >>> adapter = ValidatingHTTPAdapter(validator=AddrValidator())
        >>> pool = adapter.poolmanager.connection_from_url("http://example.com/")
        >>> pool.conn_kw["validator"] is adapter.validator
        True
    """

    def __init__(self, *args: Any, validator: AddrValidator | None = None, **kwargs: Any) -> None:
        # HTTPAdapter.__init__ builds the pool manager, which needs the validator
        self.validator = validator or AddrValidator()
        super().__init__(*args, **kwargs)

    def init_poolmanager(
        self,
        connections: int,
        maxsize: int,
        block: bool = DEFAULT_POOLBLOCK,
        **pool_kwargs: Any,
    ) -> None:
        self._pool_connections, self._pool_maxsize, self._pool_block = connections, maxsize, block
        self.poolmanager = ValidatingPoolManager(
            connections,
            maxsize=maxsize,
            block=block,
            validator=self.validator,
            **pool_kwargs,
        )

    def proxy_manager_for(self, proxy: str, **proxy_kwargs: Any) -> None:
        """Refuse to route an upstream fetch through ``proxy``.

        Raises:
            ProxyDisabledException: Always.
        """
        raise ProxyDisabledException(f"Upstream fetches cannot go through proxy {proxy}")
