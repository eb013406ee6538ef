"""Tests for cookie carriers, inbound token decoding and client address resolution."""

from sessionauth.service.transport import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    SessionTransport,
)


def _transport(**kwargs) -> SessionTransport:
    return SessionTransport(access_ttl_seconds=900, refresh_ttl_seconds=604800, **kwargs)


class TestCarriers:
    def test_encode_sets_both_cookies_with_their_ttls(self):
        access, refresh = _transport().encode("acc", "ref")

        assert (access.name, access.value, access.max_age) == (ACCESS_COOKIE, "acc", 900)
        assert (refresh.name, refresh.value, refresh.max_age) == (REFRESH_COOKIE, "ref", 604800)
        for carrier in (access, refresh):
            assert carrier.http_only
            assert carrier.secure
            assert carrier.path == "/"
            assert carrier.same_site == "strict"
            assert carrier.domain is None

    def test_secure_and_domain_follow_settings(self):
        carriers = _transport(secure=False, domain="example.com").encode("a", "r")

        assert all(not c.secure and c.domain == "example.com" for c in carriers)

    def test_clear_expires_both_cookies(self):
        carriers = _transport().clear()

        assert {c.name for c in carriers} == {ACCESS_COOKIE, REFRESH_COOKIE}
        assert all(c.value == "" and c.max_age == 0 for c in carriers)


class TestDecode:
    def test_cookie_wins_over_bearer(self):
        inbound = _transport().decode(
            {ACCESS_COOKIE: "from-cookie", REFRESH_COOKIE: "refresh"}, "Bearer from-header"
        )

        assert inbound.access_token == "from-cookie"
        assert inbound.refresh_token == "refresh"

    def test_bearer_fallback(self):
        inbound = _transport().decode({}, "bearer from-header")

        assert inbound.access_token == "from-header"
        assert inbound.refresh_token is None

    def test_non_bearer_scheme_ignored(self):
        assert _transport().decode({}, "Basic dXNlcjpwYXNz").access_token is None
        assert _transport().decode({}, "Bearer ").access_token is None

    def test_empty_cookies_are_absent(self):
        inbound = _transport().decode({ACCESS_COOKIE: "", REFRESH_COOKIE: ""})

        assert inbound == (None, None)


class TestClientAddress:
    def test_forwarded_for_first_hop(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1", "x-real-ip": "10.0.0.9"}

        assert SessionTransport.resolve_client_address(headers, "127.0.0.1") == "203.0.113.7"

    def test_real_ip_then_peer(self):
        assert SessionTransport.resolve_client_address({"x-real-ip": "198.51.100.4"}, "127.0.0.1") == "198.51.100.4"
        assert SessionTransport.resolve_client_address({}, "127.0.0.1") == "127.0.0.1"

    def test_unknown_when_nothing_available(self):
        assert SessionTransport.resolve_client_address({}, None) == "unknown"
        assert SessionTransport.resolve_client_address({"x-forwarded-for": " "}, None) == "unknown"
