"""
requests Session used for every upstream fetch.

Both schemes go through ValidatingHTTPAdapter. Once built, the adapter table
is frozen, environment proxy settings are ignored and the session keeps no
cookies: the proxy's CookieStore decides what is sent on each hop.
"""

from __future__ import annotations

from http.cookiejar import DefaultCookiePolicy
from typing import Any

import requests

from .adapters import ValidatingHTTPAdapter
from .addrvalidator import AddrValidator
from .exceptions import MountDisabledException

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) ferryman"
)


class Session(requests.Session):
    """Session that can only open connections the validator accepts.

    Example:
        >>> with Session() as session:
        ...     response = session.get("http://93.184.216.34/", allow_redirects=False)
    """

    def __init__(
        self,
        validator: AddrValidator | None = None,
        user_agent: str | None = DEFAULT_USER_AGENT,
        pool_maxsize: int | None = None,
    ) -> None:
        """
        Args:
            validator: Shared by both adapters. A default AddrValidator is
                built when omitted.
            user_agent: Sent upstream, or None for the requests default.
            pool_maxsize: Connections kept per upstream host.
        """
        self.validator = validator or AddrValidator()
        self._frozen = False
        # requests.Session.__init__ mounts its own adapters, replaced below
        super().__init__()

        self.adapters.clear()
        adapter_kwargs: dict[str, Any] = {"validator": self.validator}
        if pool_maxsize:
            adapter_kwargs["pool_maxsize"] = pool_maxsize
        for prefix in ("https://", "http://"):
            super().mount(prefix, ValidatingHTTPAdapter(**adapter_kwargs))
        self._frozen = True

        self.trust_env = False
        self.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        if user_agent:
            self.headers["User-Agent"] = user_agent

    def mount(self, prefix: str, adapter: Any) -> None:
        """Refuse new adapters once the session is built.

        Raises:
            MountDisabledException: After ``__init__`` has finished.
        """
        if self._frozen:
            raise MountDisabledException(f"Cannot mount an adapter for {prefix}: the adapter table is frozen")
        super().mount(prefix, adapter)
