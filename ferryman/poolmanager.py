"""
Connection pools and pool manager that hand out address-checked connections.

A pool manager serves a single adapter, so all of its pools share one
validator. The validator rides along in the pool's connection keywords and
ends up in every connection the pool opens.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from urllib3 import HTTPConnectionPool, HTTPSConnectionPool, PoolManager

from .connection import ValidatingHTTPConnection, ValidatingHTTPSConnection

if TYPE_CHECKING:
    from .addrvalidator import AddrValidator

# Both hooks below are private urllib3 API
assert hasattr(HTTPConnectionPool, "ConnectionCls"), "urllib3 no longer exposes ConnectionPool.ConnectionCls"
assert hasattr(PoolManager, "_new_pool"), "urllib3 no longer exposes PoolManager._new_pool"


class ValidatingHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = ValidatingHTTPConnection


class ValidatingHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = ValidatingHTTPSConnection


class ValidatingPoolManager(PoolManager):
    """PoolManager that only builds validating pools.

    Args:
        validator: Checked on every connect by every pool of this manager.
        Remaining arguments go to ``PoolManager``.
    """

    def __init__(self, *args: Any, validator: AddrValidator, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.validator = validator
        self.pool_classes_by_scheme = {
            "http": ValidatingHTTPConnectionPool,
            "https": ValidatingHTTPSConnectionPool,
        }

    def _new_pool(
        self,
        scheme: str,
        host: str,
        port: int,
        request_context: dict[str, Any] | None = None,
    ) -> HTTPConnectionPool:
        # Added after the pool key is computed, so it never splits pools
        context = dict(self.connection_pool_kw if request_context is None else request_context)
        context["validator"] = self.validator
        return super()._new_pool(scheme, host, port, request_context=context)
