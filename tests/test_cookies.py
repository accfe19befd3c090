"""Tests for the server-side cookie jar."""

from __future__ import annotations

import pytest

from ferryman.cookies import CookieStore, domain_key, parse_set_cookie

NOW = 1_700_000_000.0


class TestParseSetCookie:
    """Tests for Set-Cookie parsing."""

    def test_name_and_value(self) -> None:
        """Should split the name=value pair."""
        entry = parse_set_cookie("sid=abc=def", now=NOW)
        assert entry.name == "sid"
        assert entry.value == "abc=def"
        assert entry.expires_at == 0
        assert entry.options.same_site == "Lax"

    @pytest.mark.parametrize("header", ["novalue", "=value", "  =x; Path=/", ""])
    def test_malformed_rejected(self, header: str) -> None:
        """Should reject pairs without a name or an equals sign."""
        assert parse_set_cookie(header, now=NOW) is None

    def test_attributes(self) -> None:
        """Should parse every supported attribute."""
        entry = parse_set_cookie(
            "id=1; Domain=.Example.COM; Path=/app; HttpOnly; Secure; SameSite=strict",
            now=NOW,
        )
        assert entry.options.domain == "example.com"
        assert entry.options.path == "/app"
        assert entry.options.http_only
        assert entry.options.secure
        assert entry.options.same_site == "Strict"

    def test_attribute_names_case_insensitive(self) -> None:
        """Should match attribute names in any case."""
        entry = parse_set_cookie("id=1; max-age=60; HTTPONLY", now=NOW)
        assert entry.options.max_age == 60
        assert entry.options.http_only

    def test_unknown_same_site_falls_back_to_lax(self) -> None:
        """Should treat an unknown SameSite value as Lax."""
        assert parse_set_cookie("id=1; SameSite=bogus", now=NOW).options.same_site == "Lax"

    def test_max_age(self) -> None:
        """Should compute expiry from Max-Age."""
        assert parse_set_cookie("id=1; Max-Age=3600", now=NOW).expires_at == NOW + 3600

    def test_max_age_wins_over_expires(self) -> None:
        """Max-Age takes precedence regardless of attribute order."""
        header = "id=1; Max-Age=10; Expires=Fri, 01 Jan 2100 00:00:00 GMT"
        assert parse_set_cookie(header, now=NOW).expires_at == NOW + 10
        header = "id=1; Expires=Fri, 01 Jan 2100 00:00:00 GMT; Max-Age=10"
        assert parse_set_cookie(header, now=NOW).expires_at == NOW + 10

    def test_future_expires(self) -> None:
        """Should compute expiry from a future Expires date."""
        entry = parse_set_cookie("id=1; Expires=Fri, 01 Jan 2100 00:00:00 GMT", now=NOW)
        assert entry.expires_at == 4102444800.0

    @pytest.mark.parametrize(
        "header",
        ["id=1; Max-Age=0", "id=1; Max-Age=-5", "id=1; Expires=Wed, 21 Oct 2015 07:28:00 GMT"],
    )
    def test_already_expired(self, header: str) -> None:
        """Should mark already expired cookies."""
        assert parse_set_cookie(header, now=NOW).expires_at == NOW

    def test_invalid_dates_ignored(self) -> None:
        """Should ignore unparseable Expires and Max-Age values."""
        entry = parse_set_cookie("id=1; Expires=not a date; Max-Age=soon", now=NOW)
        assert entry.expires_at == 0
        assert entry.options.max_age is None


class TestDomainKey:
    def test_lowercase_hostname(self) -> None:
        """Should key domains by the lowercase hostname."""
        assert domain_key("https://WWW.Example.com:8443/path?q=1") == "www.example.com"

    def test_no_host(self) -> None:
        """Should reject URLs without a host."""
        assert domain_key("not a url") == ""


class TestCookieStore:
    """Tests for storing and replaying cookies."""

    def test_store_and_replay(self, clock) -> None:
        """Should replay stored cookies as a Cookie header."""
        store = CookieStore(clock=clock)
        assert store.store_cookies("http://example.com/login", ["a=1; Path=/", "b=2"]) == 2
        assert store.get_cookies("http://example.com/other") == "a=1; b=2"

    def test_single_header_string(self, clock) -> None:
        """Should accept a single Set-Cookie string."""
        store = CookieStore(clock=clock)
        assert store.store_cookies("http://example.com/", "a=1") == 1
        assert store.get_cookies("http://example.com/") == "a=1"

    def test_nothing_to_store(self, clock) -> None:
        """Should ignore empty Set-Cookie input."""
        store = CookieStore(clock=clock)
        assert store.store_cookies("http://example.com/", None) == 0
        assert store.store_cookies("http://example.com/", []) == 0
        assert store.store_cookies("", "a=1") == 0

    def test_scoped_to_exact_hostname(self, clock) -> None:
        """Should never send cookies to another hostname."""
        store = CookieStore(clock=clock)
        store.store_cookies("http://example.com/", "a=1")
        assert store.get_cookies("http://www.example.com/") == ""
        assert store.get_cookies("http://EXAMPLE.com/") == "a=1"

    def test_same_name_replaces(self, clock) -> None:
        """Should overwrite a cookie with the same name."""
        store = CookieStore(clock=clock)
        store.store_cookies("http://example.com/", "a=1")
        store.store_cookies("http://example.com/", "a=2")
        assert store.get_cookies("http://example.com/") == "a=2"

    def test_max_age_zero_deletes(self, clock) -> None:
        """Should delete a cookie on Max-Age=0."""
        store = CookieStore(clock=clock)
        store.store_cookies("http://example.com/", ["a=1", "b=2"])
        store.store_cookies("http://example.com/", "a=; Max-Age=0")
        assert store.get_cookies("http://example.com/") == "b=2"

    def test_deleting_last_cookie_drops_domain(self, clock) -> None:
        """Should drop the domain once its last cookie is gone."""
        store = CookieStore(clock=clock)
        store.store_cookies("http://example.com/", "a=1")
        store.store_cookies("http://example.com/", "a=; Expires=Thu, 01 Jan 1970 00:00:00 GMT")
        assert store.get_stats()["domains"] == 0

    def test_expired_cookies_not_sent(self, clock) -> None:
        """Should stop sending cookies past their expiry."""
        store = CookieStore(clock=clock)
        store.store_cookies("http://example.com/", ["short=1; Max-Age=10", "session=2"])
        clock.advance(11)
        assert store.get_cookies("http://example.com/") == "session=2"
        assert store.get_stats()["total_cookies"] == 1

    def test_secure_cookies_only_over_https(self, clock) -> None:
        """Should only send Secure cookies over https."""
        store = CookieStore(clock=clock)
        store.store_cookies("https://example.com/", ["s=1; Secure", "p=2"])
        assert store.get_cookies("http://example.com/") == "p=2"
        assert store.get_cookies("https://example.com/") == "s=1; p=2"

    def test_malformed_headers_skipped(self, clock) -> None:
        """Should skip malformed headers and keep valid ones."""
        store = CookieStore(clock=clock)
        assert store.store_cookies("http://example.com/", ["garbage", "a=1"]) == 1
        assert store.get_cookies("http://example.com/") == "a=1"

    def test_cleanup(self, clock) -> None:
        """Should sweep expired cookies and report the count."""
        store = CookieStore(clock=clock)
        store.store_cookies("http://example.com/", "a=1; Max-Age=5")
        store.store_cookies("http://other.example.org/", ["b=1; Max-Age=5", "c=1"])
        clock.advance(6)

        assert store.cleanup() == 2
        assert store.get_stats() == {
            "domains": 1,
            "total_cookies": 1,
            "cookies_by_domain": {"other.example.org": 1},
        }

    def test_clear_domain_and_clear(self, clock) -> None:
        """Should clear one domain or everything."""
        store = CookieStore(clock=clock)
        store.store_cookies("http://example.com/", "a=1")
        store.store_cookies("http://other.example.org/", "b=1")

        store.clear_domain("Example.com")
        assert store.get_cookies("http://example.com/") == ""
        assert store.get_cookies("http://other.example.org/") == "b=1"

        store.clear()
        assert store.get_stats()["total_cookies"] == 0
