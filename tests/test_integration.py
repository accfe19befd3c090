"""Integration tests running the proxy server on a real socket."""

from __future__ import annotations

import http.client
import json
from collections.abc import Iterator
from unittest.mock import patch
from urllib.parse import quote

import pytest
import requests
import responses

from ferryman import AddrValidator, ContentProxy, ProxyClient


@pytest.fixture
def running_proxy(validator: AddrValidator) -> Iterator[ContentProxy]:
    """Proxy on an ephemeral loopback port, resolving names from DNS_RECORDS."""
    proxy = ContentProxy(
        {"server": {"port": 0}, "logging": {"enable_console": False}},
        validator=validator,
    )
    proxy.start(blocking=False)
    yield proxy
    proxy.stop()


@pytest.fixture
def upstream(running_proxy: ContentProxy) -> Iterator[responses.RequestsMock]:
    """Mock upstream sites while letting requests to the proxy itself through."""
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add_passthru(running_proxy.base_url)
        yield rsps


def proxied(proxy: ContentProxy, url: str) -> str:
    return f"{proxy.base_url}/api/proxy?url={quote(url, safe='')}"


class TestServer:
    """Tests for the HTTP surface of a running proxy."""

    def test_ephemeral_port(self, running_proxy: ContentProxy) -> None:
        """Should report the port picked by the OS."""
        host, port = running_proxy.address
        assert host == "127.0.0.1"
        assert port > 0
        assert running_proxy.is_running()

    def test_ping(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should answer the health check over HTTP."""
        response = requests.get(f"{running_proxy.base_url}/api/proxy/ping", timeout=5)
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    def test_fetch_miss_then_hit(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should proxy, sanitize and then cache a page."""
        upstream.add(
            responses.GET,
            "http://example.com/page",
            body="<html><body>Hello</body></html>",
            content_type="text/html; charset=utf-8",
            headers={"X-Frame-Options": "DENY", "Set-Cookie": "sid=1"},
        )

        first = requests.get(proxied(running_proxy, "http://example.com/page"), timeout=5)
        assert first.status_code == 200
        assert first.text == "<html><body>Hello</body></html>"
        assert first.headers["X-Cache-Status"] == "MISS"
        assert first.headers["Content-Length"] == str(len(first.content))
        assert "X-Frame-Options" not in first.headers
        assert "Set-Cookie" not in first.headers
        assert first.headers["RateLimit-Limit"] == "100"

        second = requests.get(proxied(running_proxy, "http://example.com/page"), timeout=5)
        assert second.headers["X-Cache-Status"] == "HIT"
        assert 0 < int(second.headers["X-Cache-TTL"]) <= 300
        assert second.content == first.content

        stats = running_proxy.get_stats()
        assert stats["cache"]["entries"] == 1
        assert stats["cookies"]["cookies_by_domain"] == {"example.com": 1}
        assert stats["metrics"]["cache_hits"] == 1

    def test_head_has_no_body(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should answer HEAD from cache with the GET entity's length and no body."""
        upstream.add(responses.GET, "http://example.com/", body="<html></html>", content_type="text/html")
        requests.get(proxied(running_proxy, "http://example.com/"), timeout=5)

        response = requests.head(proxied(running_proxy, "http://example.com/"), timeout=5)
        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["X-Cache-Status"] == "HIT"
        assert response.headers["Content-Length"] == str(len(b"<html></html>"))

    def test_chunked_request_body_drained(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should consume a chunked body so the next request on the connection parses."""
        host, port = running_proxy.address
        conn = http.client.HTTPConnection(host, port, timeout=5)
        try:
            conn.request("POST", "/api/proxy?url=http%3A%2F%2Fexample.com%2F", body=iter([b"hello", b"world"]))
            rejected = conn.getresponse()
            rejected.read()
            assert rejected.status == 405
            assert not rejected.will_close

            conn.request("GET", "/api/proxy/ping")
            ping = conn.getresponse()
            assert ping.status == 200
            assert json.loads(ping.read()) == {"ok": True}
        finally:
            conn.close()

    def test_unknown_transfer_encoding_closes_connection(self, running_proxy: ContentProxy) -> None:
        """Should close the connection when the request body length cannot be known."""
        host, port = running_proxy.address
        conn = http.client.HTTPConnection(host, port, timeout=5)
        try:
            conn.putrequest("POST", "/api/proxy/ping")
            conn.putheader("Transfer-Encoding", "gzip")
            conn.endheaders()
            response = conn.getresponse()
            response.read()
            assert response.status == 405
            assert response.getheader("Connection") == "close"
            assert response.will_close
        finally:
            conn.close()

    def test_blocked_target(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should reject a metadata-service address."""
        response = requests.get(proxied(running_proxy, "http://169.254.169.254/latest/meta-data/"), timeout=5)
        assert response.status_code == 400
        assert response.json() == {
            "error": "Blocked by SSRF policy: Blocked host literal",
            "code": "BlockedHostLiteral",
        }

    def test_redirect_to_internal_blocked(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should reject a redirect to an internal name."""
        upstream.add(
            responses.GET,
            "http://example.com/go",
            status=302,
            headers={"Location": "http://metadata.example.com/"},
        )
        response = requests.get(proxied(running_proxy, "http://example.com/go"), timeout=5)
        assert response.status_code == 400
        assert response.json()["code"] == "BlockedByRedirect"

    def test_post_rejected(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should reject POST with 405."""
        response = requests.post(proxied(running_proxy, "http://example.com/"), data=b"payload", timeout=5)
        assert response.status_code == 405
        assert response.headers["Allow"] == "GET, HEAD, OPTIONS"

    def test_preflight(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should answer CORS preflight with 204."""
        response = requests.options(proxied(running_proxy, "http://example.com/"), timeout=5)
        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Methods"] == "GET, HEAD, OPTIONS"

    def test_unknown_path(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should answer unknown paths with 404."""
        response = requests.get(f"{running_proxy.base_url}/admin", timeout=5)
        assert response.status_code == 404

    def test_handler_failure_becomes_500(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should turn a handler crash into a JSON 500."""
        with patch.object(running_proxy.pipeline, "handle", side_effect=RuntimeError("boom")):
            response = requests.get(proxied(running_proxy, "http://example.com/"), timeout=5)
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error", "code": "InternalError"}

    def test_client_through_server(self, running_proxy: ContentProxy, upstream: responses.RequestsMock) -> None:
        """Should serve the proxy client end to end."""
        upstream.add(
            responses.GET,
            "http://example.com/",
            body='<html><script>evil()</script><a href="/about">About</a></html>',
            content_type="text/html",
        )
        client = ProxyClient([f"{running_proxy.base_url}/api/proxy?url="], timeout=5)

        outcome = client.fetch("http://example.com/")

        assert outcome.success
        assert outcome.cache_status == "MISS"
        assert outcome.render_mode == "advanced"
        assert "<script>" not in outcome.html
        assert quote("http://example.com/about", safe="") in outcome.html
        client.close()


class TestLifecycle:
    """Tests for starting and stopping the service."""

    def test_double_start_rejected(self, running_proxy: ContentProxy) -> None:
        """Should refuse to start twice."""
        with pytest.raises(RuntimeError, match="already running"):
            running_proxy.start()

    def test_stop_is_idempotent(self, validator: AddrValidator) -> None:
        """Should tolerate stopping twice."""
        proxy = ContentProxy({"server": {"port": 0}, "logging": {"enable_console": False}}, validator=validator)
        proxy.start()
        proxy.stop()
        proxy.stop()
        assert not proxy.is_running()
        assert proxy.server is None

    def test_context_manager(self, validator: AddrValidator) -> None:
        """Should start and stop server and sweepers as a context manager."""
        config = {"server": {"port": 0}, "logging": {"enable_console": False}}
        with ContentProxy(config, validator=validator) as proxy:
            assert proxy.is_running()
            assert all(sweeper.running for sweeper in proxy.sweepers)
        assert not proxy.is_running()
        assert not any(sweeper.running for sweeper in proxy.sweepers)

    def test_disabled_stores(self, validator: AddrValidator) -> None:
        """Should build no stores or sweepers when they are disabled."""
        proxy = ContentProxy(
            {
                "cache": {"enabled": False},
                "cookies": {"enabled": False},
                "rate_limit": {"enabled": False},
                "logging": {"enable_console": False},
            },
            validator=validator,
        )
        assert proxy.cache is None
        assert proxy.cookies is None
        assert proxy.rate_limiter is None
        assert proxy.sweepers == []
        assert proxy.clear_cache() == 0
        assert set(proxy.get_stats()) == {"metrics"}

    def test_clear_helpers(self, validator: AddrValidator) -> None:
        """Should clear the cache and cookies per domain or entirely."""
        proxy = ContentProxy({"logging": {"enable_console": False}}, validator=validator)
        proxy.cache.set("http://example.com/", b"x", 200, [])
        proxy.cookies.store_cookies("http://example.com/", "a=1")
        proxy.cookies.store_cookies("http://other.example.org/", "b=1")

        assert proxy.clear_cache() == 1
        proxy.clear_cookies("example.com")
        assert proxy.cookies.get_stats()["cookies_by_domain"] == {"other.example.org": 1}
        proxy.clear_cookies()
        assert proxy.cookies.get_stats()["total_cookies"] == 0


@pytest.mark.network
class TestRealNetworkRequests:
    """Integration tests that make real network requests.

    These tests are marked with @pytest.mark.network and can be skipped
    by running: pytest -m "not network"
    """

    def test_real_public_request(self) -> None:
        """Should fetch a real public page."""
        config = {"server": {"port": 0}, "logging": {"enable_console": False}}
        with ContentProxy(config) as proxy:
            response = requests.get(proxied(proxy, "https://example.com/"), timeout=20)
        assert response.status_code == 200
        assert "Example Domain" in response.text

    def test_real_private_target_blocked(self) -> None:
        """Should block localhost on a real resolver."""
        config = {"server": {"port": 0}, "logging": {"enable_console": False}}
        with ContentProxy(config) as proxy:
            response = requests.get(proxied(proxy, "http://localhost/"), timeout=20)
        assert response.status_code == 400
