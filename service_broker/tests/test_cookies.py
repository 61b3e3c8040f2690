"""
Unit tests for the cookie jar, request context and challenge store.
"""

from fastapi import Response
from starlette.requests import Request

from service_broker.app.challenge_store import ChallengeStore
from service_broker.app.cookies import (
    ACCESS_TOKEN_COOKIE,
    CHALLENGE_COOKIES,
    RETURN_TO_COOKIE,
    STATE_COOKIE,
    VERIFIER_COOKIE,
    CookieJar,
    RequestContext,
    client_ip_from,
)
from service_broker.app.pkce import generate_pair


def _request(headers, client=("10.0.0.1", 5000), path="/me"):
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


class TestCookieJar:
    """Test cases for CookieJar."""

    def test_set_and_delete_last_wins(self):
        """Test a deletion replaces a pending write of the same name."""
        jar = CookieJar()
        jar.set(ACCESS_TOKEN_COOKIE, "token", 3600)
        jar.delete(ACCESS_TOKEN_COOKIE)

        assert len(jar) == 1
        assert jar.is_deleted(ACCESS_TOKEN_COOKIE)
        assert jar.get(ACCESS_TOKEN_COOKIE).value == ""

    def test_cookie_attributes(self):
        """Test outgoing cookies are HttpOnly on path / with the jar's flags."""
        jar = CookieJar(secure=True, domain="example.com")
        cookie = jar.set(STATE_COOKIE, "abc", 600, same_site="strict")

        assert cookie.http_only is True
        assert cookie.secure is True
        assert cookie.path == "/"
        assert cookie.domain == "example.com"
        assert cookie.same_site == "strict"
        assert not cookie.is_deletion

    def test_apply_writes_set_cookie_headers(self):
        """Test apply renders writes and deletions."""
        jar = CookieJar()
        jar.set(ACCESS_TOKEN_COOKIE, "token", 1800)
        jar.delete(STATE_COOKIE)

        response = jar.apply(Response())
        headers = response.headers.getlist("set-cookie")

        assert len(headers) == 2
        written = next(h for h in headers if h.startswith(ACCESS_TOKEN_COOKIE))
        deleted = next(h for h in headers if h.startswith(STATE_COOKIE))
        assert "Max-Age=1800" in written
        assert "HttpOnly" in written
        assert "Secure" not in written
        assert "Max-Age=0" in deleted

    def test_secure_flag_rendered(self):
        """Test the Secure attribute appears when configured."""
        jar = CookieJar(secure=True)
        jar.set(ACCESS_TOKEN_COOKIE, "token", 60)
        header = jar.apply(Response()).headers["set-cookie"]
        assert "Secure" in header


class TestRequestContext:
    """Test cases for RequestContext."""

    def test_client_ip_prefers_forwarded_for(self):
        """Test the first X-Forwarded-For hop wins."""
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.2", "x-real-ip": "198.51.100.1"}
        assert client_ip_from(headers, "10.0.0.1") == "203.0.113.7"

    def test_client_ip_falls_back(self):
        """Test X-Real-IP, then the peer address, then unknown."""
        assert client_ip_from({"x-real-ip": "198.51.100.1"}, "10.0.0.1") == "198.51.100.1"
        assert client_ip_from({}, "10.0.0.1") == "10.0.0.1"
        assert client_ip_from({}, None) == "unknown"

    def test_from_request(self):
        """Test cookies, headers and peer address are captured."""
        request = _request({
            "Cookie": "ory_kratos_session=abc; hydra_access_token=tok",
            "Authorization": "Bearer xyz",
        })
        ctx = RequestContext.from_request(request)

        assert ctx.cookie("ory_kratos_session") == "abc"
        assert ctx.cookie(ACCESS_TOKEN_COOKIE) == "tok"
        assert "ory_kratos_session=abc" in ctx.cookie_header
        assert ctx.client_ip == "10.0.0.1"
        assert ctx.bearer_token() == "xyz"
        assert ctx.url.endswith("/me")

    def test_bearer_token_rejects_other_schemes(self):
        """Test non-bearer or empty authorization headers."""
        assert RequestContext(headers={"authorization": "Basic abc"}).bearer_token() is None
        assert RequestContext(headers={"authorization": "Bearer "}).bearer_token() is None
        assert RequestContext().bearer_token() is None

    def test_empty_cookie_is_absent(self):
        """Test an empty cookie value reads as missing."""
        assert RequestContext(cookies={STATE_COOKIE: ""}).cookie(STATE_COOKIE) is None


class TestChallengeStore:
    """Test cases for ChallengeStore."""

    def test_write_sets_three_strict_cookies(self):
        """Test all challenge cookies are written with the configured TTL."""
        store = ChallengeStore(ttl_seconds=600)
        jar = CookieJar()
        pair = generate_pair()

        store.write(jar, pair, "/reports")

        assert jar.get(VERIFIER_COOKIE).value == pair.code_verifier
        assert jar.get(STATE_COOKIE).value == pair.state
        assert jar.get(RETURN_TO_COOKIE).value == "/reports"
        for name in CHALLENGE_COOKIES:
            assert jar.get(name).max_age == 600
            assert jar.get(name).same_site == "strict"

    def test_take_reads_and_clears(self):
        """Test take returns stored values and schedules every deletion."""
        store = ChallengeStore()
        jar = CookieJar()
        ctx = RequestContext(cookies={
            VERIFIER_COOKIE: "v" * 43,
            STATE_COOKIE: "s" * 32,
            RETURN_TO_COOKIE: "/reports",
        })

        challenge = store.take(ctx, jar)

        assert challenge.complete
        assert challenge.code_verifier == "v" * 43
        assert challenge.return_to == "/reports"
        assert all(jar.is_deleted(name) for name in CHALLENGE_COOKIES)

    def test_take_without_cookies_still_clears(self):
        """Test a missing challenge is incomplete and cookies are still cleared."""
        store = ChallengeStore()
        jar = CookieJar()

        challenge = store.take(RequestContext(), jar)

        assert not challenge.complete
        assert all(jar.is_deleted(name) for name in CHALLENGE_COOKIES)
