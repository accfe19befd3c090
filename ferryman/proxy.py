"""Service object wiring the proxy together."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from .addrvalidator import AddrValidator
from .cache import ResponseCache
from .config import ConfigurationManager
from .cookies import CookieStore
from .fetcher import RedirectFetcher
from .logger import configure_logging, get_logger
from .metrics import MetricsCollector
from .pipeline import ProxyPipeline
from .ratelimit import RateLimiter
from .sweeper import PeriodicSweeper


class ContentProxy:
    """The SSRF-protected content-fetching proxy.

    Builds the validator, fetcher, stores and pipeline once from
    configuration, serves them over HTTP, and runs the periodic sweeps of
    the stores while the server is up.

    Example:
        Running in the background:

        >>> proxy = ContentProxy({"server": {"port": 0}})
        >>> proxy.start(blocking=False)
        >>> host, port = proxy.address
        >>> proxy.stop()

        Using as context manager:

        >>> with ContentProxy({"server": {"port": 0}}) as proxy:
        ...     pass
    """

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        *,
        validator: AddrValidator | None = None,
        fetcher: RedirectFetcher | None = None,
        use_env: bool = False,
        overrides: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialize the proxy with configuration and all components.

        Args:
            config: Partial configuration merged over the defaults.
            validator: Replaces the validator built from the ``ssrf`` section.
            fetcher: Replaces the fetcher built from the ``fetch`` section.
            use_env: Whether environment variables override ``config``.
            overrides: Partial configuration applied over everything else.

        Raises:
            ConfigException: If the configuration is invalid.
        """
        self.config_manager = ConfigurationManager(config, use_env=use_env, overrides=overrides)
        self.config = self.config_manager.config
        configure_logging(self.config["logging"])
        self.logger = get_logger("proxy")

        cache_cfg = self.config["cache"]
        cookie_cfg = self.config["cookies"]
        rate_cfg = self.config["rate_limit"]

        self.validator = validator or AddrValidator.from_config(self.config["ssrf"])
        self.fetcher = fetcher or RedirectFetcher.from_config(self.config["fetch"], self.validator)
        self.cache = ResponseCache.from_config(cache_cfg) if cache_cfg["enabled"] else None
        self.cookies = CookieStore() if cookie_cfg["enabled"] else None
        self.rate_limiter = RateLimiter.from_config(rate_cfg) if rate_cfg["enabled"] else None
        self.metrics = MetricsCollector()
        self.pipeline = ProxyPipeline(
            validator=self.validator,
            fetcher=self.fetcher,
            cache=self.cache,
            cookies=self.cookies,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            user_header=rate_cfg["user_header"],
            trust_forwarded_for=rate_cfg["trust_forwarded_for"],
        )

        self.sweepers: list[PeriodicSweeper] = []
        if self.cache is not None:
            self.sweepers.append(PeriodicSweeper("cache", self.cache.cleanup, cache_cfg["cleanup_interval_seconds"]))
        if self.cookies is not None:
            self.sweepers.append(
                PeriodicSweeper("cookies", self.cookies.cleanup, cookie_cfg["cleanup_interval_seconds"])
            )
        if self.rate_limiter is not None:
            self.sweepers.append(PeriodicSweeper("rate_limit", self.rate_limiter.cleanup, rate_cfg["window_seconds"]))

        self.server: Any = None
        self.running = False
        self.start_time: float | None = None

    @property
    def address(self) -> tuple[str, int]:
        """The (host, port) the server is bound to; reflects an ephemeral port."""
        if self.server is None:
            return self.config["server"]["host"], self.config["server"]["port"]
        host, port = self.server.server_address[:2]
        return host, port

    @property
    def base_url(self) -> str:
        host, port = self.address
        return f"http://{host}:{port}"

    def start(self, blocking: bool = False) -> None:
        """Start the proxy server.

        Args:
            blocking: If True, serve in this thread until stopped. If False,
                serve from a background thread.

        Raises:
            RuntimeError: If the server is already running.
            OSError: If the host/port cannot be bound.
        """
        from .server import ProxyRequestHandler, ThreadedHTTPServer

        if self.running:
            raise RuntimeError("Server is already running")

        host = self.config["server"]["host"]
        port = self.config["server"]["port"]
        if self.server is None:
            self.server = ThreadedHTTPServer((host, port), ProxyRequestHandler, self)
        for sweeper in self.sweepers:
            sweeper.start()
        self.running = True
        self.start_time = time.time()
        self.logger.info("Proxy server starting on %s:%s (blocking=%s)", *self.address, blocking)
        self.server.start(blocking=blocking)

    def stop(self) -> None:
        """Stop the server and the sweeps. Safe to call more than once."""
        for sweeper in self.sweepers:
            sweeper.stop()
        if self.server is not None:
            self.server.stop()
            self.server = None
        if self.running:
            self.fetcher.close()
        self.running = False
        self.logger.info("Proxy server stopped.")

    def is_running(self) -> bool:
        return self.running

    def get_stats(self) -> dict[str, Any]:
        """Return metrics and the statistics of every enabled store."""
        stats: dict[str, Any] = {"metrics": self.metrics.get_metrics()}
        if self.cache is not None:
            stats["cache"] = self.cache.get_stats()
        if self.cookies is not None:
            stats["cookies"] = self.cookies.get_stats()
        if self.rate_limiter is not None:
            stats["rate_limit"] = self.rate_limiter.get_stats()
        return stats

    def clear_cache(self) -> int:
        if self.cache is None:
            return 0
        cleared = self.cache.clear()
        self.logger.info("Cleared %d cache entries", cleared)
        return cleared

    def clear_cookies(self, domain: str | None = None) -> None:
        if self.cookies is None:
            return
        if domain is None:
            self.cookies.clear()
        else:
            self.cookies.clear_domain(domain)
        self.logger.info("Cleared cookies for %s", domain or "all domains")

    def __enter__(self) -> ContentProxy:
        self.start(blocking=False)
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        self.stop()
