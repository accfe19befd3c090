"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import ipaddress
import socket
from collections.abc import Callable, Iterator

import pytest

from ferryman import AddrValidator, ProxyPipeline, RedirectFetcher
from ferryman.cache import ResponseCache
from ferryman.cookies import CookieStore
from ferryman.ratelimit import RateLimiter

# Names the test resolver knows about
DNS_RECORDS: dict[str, list[str]] = {
    "example.com": ["93.184.216.34"],
    "www.example.com": ["93.184.216.34"],
    "other.example.org": ["93.184.216.35"],
    "dual.example.com": ["93.184.216.34", "2606:2800:220:1:248:1893:25c8:1946"],
    "internal.example.com": ["10.0.0.7"],
    "mixed.example.com": ["93.184.216.34", "10.0.0.7"],
    "metadata.example.com": ["169.254.169.254"],
    "v6private.example.com": ["fd00::1"],
    "mapped.example.com": ["::ffff:127.0.0.1"],
}


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_resolver(records: dict[str, list[str]]) -> Callable[[str], list]:
    """Build a resolver answering from ``records``; unknown names fail like NXDOMAIN."""

    def resolve(hostname: str) -> list:
        if hostname not in records:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return [ipaddress.ip_address(a) for a in records[hostname]]

    return resolve


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def resolver() -> Callable[[str], list]:
    return make_resolver(DNS_RECORDS)


@pytest.fixture
def validator(resolver: Callable[[str], list]) -> AddrValidator:
    """Create a standard validator answering DNS from DNS_RECORDS."""
    return AddrValidator(autodetect_local_addresses=False, resolver=resolver)


@pytest.fixture
def fetcher(validator: AddrValidator) -> Iterator[RedirectFetcher]:
    fetcher = RedirectFetcher(validator=validator, timeout=5.0, max_redirects=5)
    yield fetcher
    fetcher.close()


@pytest.fixture
def pipeline(validator: AddrValidator, fetcher: RedirectFetcher, clock: FakeClock) -> ProxyPipeline:
    """Pipeline with every stage on and a fake clock for the stores."""
    return ProxyPipeline(
        validator=validator,
        fetcher=fetcher,
        cache=ResponseCache(clock=clock),
        cookies=CookieStore(clock=clock),
        rate_limiter=RateLimiter(window_seconds=60, max_requests=100, authenticated_max_requests=1000, clock=clock),
    )
