"""Tests for client identity and fixed-window rate limiting."""

from __future__ import annotations

from ferryman.ratelimit import RateLimitDecision, RateLimiter, client_identity


class TestClientIdentity:
    """Tests for deriving the rate-limit identity."""

    def test_authenticated_user(self) -> None:
        """Should identify authenticated callers by user id."""
        headers = [("X-Authenticated-User", "alice"), ("X-Forwarded-For", "203.0.113.9")]
        assert client_identity(headers, "10.0.0.1") == ("user:alice", True)

    def test_blank_user_header_ignored(self) -> None:
        """Should ignore a blank user header."""
        assert client_identity([("X-Authenticated-User", "  ")], "10.0.0.1") == ("ip:10.0.0.1", False)

    def test_user_header_disabled(self) -> None:
        """Should ignore user headers when no header is configured."""
        headers = [("X-Authenticated-User", "alice")]
        assert client_identity(headers, "10.0.0.1", user_header=None) == ("ip:10.0.0.1", False)

    def test_forwarded_headers_in_order(self) -> None:
        """Should prefer forwarded headers in their trust order."""
        headers = [
            ("X-Real-IP", "198.51.100.3"),
            ("X-Forwarded-For", "203.0.113.9, 10.0.0.2"),
            ("CF-Connecting-IP", "192.0.2.1"),
        ]
        assert client_identity(headers, "10.0.0.1") == ("ip:192.0.2.1", False)
        assert client_identity(headers[:2], "10.0.0.1") == ("ip:203.0.113.9", False)
        assert client_identity(headers[:1], "10.0.0.1") == ("ip:198.51.100.3", False)

    def test_forwarded_headers_untrusted(self) -> None:
        """Should use the peer address when forwarded headers are not trusted."""
        headers = [("X-Forwarded-For", "203.0.113.9")]
        assert client_identity(headers, "10.0.0.1", trust_forwarded_for=False) == ("ip:10.0.0.1", False)

    def test_unknown_peer(self) -> None:
        """Should fall back to an unknown identity without a peer address."""
        assert client_identity([], None) == ("ip:unknown", False)


class TestRateLimitDecision:
    def test_headers_when_allowed(self) -> None:
        """Should emit quota headers for an allowed request."""
        decision = RateLimitDecision(allowed=True, limit=10, remaining=7, reset_at=0, reset_in=42)
        assert decision.headers() == [
            ("RateLimit-Limit", "10"),
            ("RateLimit-Remaining", "7"),
            ("RateLimit-Reset", "42"),
        ]

    def test_retry_after_when_denied(self) -> None:
        """Should add Retry-After to a denied decision."""
        decision = RateLimitDecision(allowed=False, limit=10, remaining=0, reset_at=0, retry_after=5, reset_in=5)
        assert ("Retry-After", "5") in decision.headers()


class TestRateLimiter:
    """Tests for the fixed-window limiter."""

    def test_allows_up_to_limit(self, clock) -> None:
        """Should allow requests up to the limit."""
        limiter = RateLimiter(window_seconds=60, max_requests=3, clock=clock)
        decisions = [limiter.check("ip:a") for _ in range(3)]
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]
        assert decisions[0].reset_in == 60

    def test_rejects_over_limit(self, clock) -> None:
        """Should reject requests over the limit."""
        limiter = RateLimiter(window_seconds=60, max_requests=2, clock=clock)
        limiter.check("ip:a")
        limiter.check("ip:a")
        clock.advance(15)

        decision = limiter.check("ip:a")
        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.retry_after == 45
        assert decision.limit == 2

    def test_retry_after_at_least_one(self, clock) -> None:
        """Should never advise retrying after less than a second."""
        limiter = RateLimiter(window_seconds=1, max_requests=1, clock=clock)
        limiter.check("ip:a")
        clock.advance(0.9999)
        decision = limiter.check("ip:a")
        assert not decision.allowed
        assert decision.retry_after == 1

    def test_rejected_requests_still_count(self, clock) -> None:
        """Should count rejected requests toward the window."""
        limiter = RateLimiter(window_seconds=60, max_requests=1, clock=clock)
        limiter.check("ip:a")
        limiter.check("ip:a")
        limiter.check("ip:a")
        assert limiter._records["ip:a"].count == 3

    def test_new_window_starts_fresh(self, clock) -> None:
        """A request after the window ends starts a new count of one."""
        limiter = RateLimiter(window_seconds=60, max_requests=2, clock=clock)
        for _ in range(5):
            limiter.check("ip:a")
        clock.advance(60)

        decision = limiter.check("ip:a")
        assert decision.allowed
        assert decision.remaining == 1
        assert decision.reset_at == clock.now + 60

    def test_identities_are_independent(self, clock) -> None:
        """Should keep separate windows per identity."""
        limiter = RateLimiter(window_seconds=60, max_requests=1, clock=clock)
        assert limiter.check("ip:a").allowed
        assert not limiter.check("ip:a").allowed
        assert limiter.check("ip:b").allowed

    def test_authenticated_limit(self, clock) -> None:
        """Should apply the authenticated limit to users."""
        limiter = RateLimiter(window_seconds=60, max_requests=1, authenticated_max_requests=3, clock=clock)
        assert [limiter.check("user:alice", authenticated=True).allowed for _ in range(4)] == [
            True,
            True,
            True,
            False,
        ]

    def test_authenticated_limit_defaults_to_max_requests(self) -> None:
        """Should default the authenticated limit to the normal one."""
        assert RateLimiter(max_requests=7).authenticated_max_requests == 7

    def test_exempt_paths(self) -> None:
        """Should recognise exempt paths."""
        limiter = RateLimiter()
        assert limiter.is_exempt("/api/proxy/ping")
        assert not limiter.is_exempt("/api/proxy")
        assert not RateLimiter(exempt_paths=[]).is_exempt("/api/proxy/ping")

    def test_cleanup_and_reset(self, clock) -> None:
        """Should sweep expired windows and reset on demand."""
        limiter = RateLimiter(window_seconds=60, clock=clock)
        limiter.check("ip:a")
        clock.advance(30)
        limiter.check("ip:b")
        clock.advance(30)

        assert limiter.cleanup() == 1
        assert limiter.get_stats() == {"tracked_identities": 1}
        limiter.reset()
        assert limiter.get_stats() == {"tracked_identities": 0}

    def test_from_config(self, clock) -> None:
        """Should apply the rate_limit configuration section."""
        limiter = RateLimiter.from_config(
            {"window_seconds": 10, "max_requests": 5, "authenticated_max_requests": 50, "exempt_paths": ["/x"]},
            clock=clock,
        )
        assert limiter.window_seconds == 10
        assert limiter.max_requests == 5
        assert limiter.authenticated_max_requests == 50
        assert limiter.is_exempt("/x")
