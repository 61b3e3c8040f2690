"""
Integration tests for the full authorization handshake.

The broker talks to the mock Ory server in-process through
``httpx.ASGITransport``; a second test client plays the browser's side of
the Token Service redirects.
"""

from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from mocks.ory.server import MockOryServer
from service_broker.app.cookies import (
    ACCESS_TOKEN_COOKIE,
    CHALLENGE_COOKIES,
    REFRESH_TOKEN_COOKIE,
    VERIFIER_COOKIE,
)
from service_broker.app.main import create_app
from shared.test_helpers import broker_test_config, deleted_cookies, set_cookies


ORY_URL = "http://ory.test"
BROKER_URL = "http://testserver"
REDIRECT_URI = f"{BROKER_URL}/auth/callback"
SESSION_COOKIE = "ory_kratos_session"
USER_ID = "8d1c4f7e-2b3a-4c5d-9e8f-0a1b2c3d4e5f"


def _query(location):
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


@pytest.fixture
def ory():
    server = MockOryServer(public_url=ORY_URL)
    server.add_identity(USER_ID, "ada@example.com", "Ada", "Lovelace", roles=["admin"])
    return server


@pytest.fixture
def broker(ory):
    config = broker_test_config(
        identity_public_url=ORY_URL,
        token_public_url=ORY_URL,
        token_admin_url=ORY_URL,
        oauth2_redirect_uri=REDIRECT_URI,
    )
    app = create_app(config, transport=httpx.ASGITransport(app=ory.app))
    return TestClient(app, base_url=BROKER_URL, raise_server_exceptions=False)


@pytest.fixture
def browser(ory):
    """The browser's view of the Token Service."""
    return TestClient(ory.app, base_url=ORY_URL)


def _login(ory, broker):
    broker.cookies.set(SESSION_COOKIE, ory.create_session(USER_ID))


def _run_handshake(broker, browser, return_to="/reports"):
    """Walk the redirects up to the callback; returns the callback query."""
    response = broker.get("/authorize", params={"return_to": return_to}, follow_redirects=False)
    assert response.status_code == 302

    location = response.headers["location"]
    for _ in range(3):
        response = browser.get(location, follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        if location.startswith(REDIRECT_URI):
            break
        response = broker.get(location, follow_redirects=False)
        assert response.status_code == 302, response.text
        location = response.headers["location"]

    assert location.startswith(REDIRECT_URI)
    return _query(location)


def _callback(broker, query, **overrides):
    body = {
        "code": query["code"],
        "state": query["state"],
        "code_verifier": broker.cookies.get(VERIFIER_COOKIE),
        "redirect_uri": REDIRECT_URI,
    }
    body.update(overrides)
    return broker.post("/oauth/callback", json=body)


class TestBrowserFlow:
    """Test cases for the browser-driven authorization code flow."""

    def test_full_flow(self, ory, broker, browser):
        """Test authorize, login, consent and callback end to end."""
        _login(ory, broker)

        query = _run_handshake(broker, browser)
        response = _callback(broker, query)

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["success"] is True
        assert data["returnTo"] == "/reports"
        assert data["user"]["id"] == USER_ID
        assert data["user"]["email"] == "ada@example.com"
        assert data["user"]["emailVerified"] is True
        assert data["refresh_token"]
        assert data["expires_in"] == 1800

        assert set(deleted_cookies(response)) == set(CHALLENGE_COOKIES)
        written = set_cookies(response)
        assert "Max-Age=1800" in written[ACCESS_TOKEN_COOKIE]
        assert REFRESH_TOKEN_COOKIE in written

        flow = next(iter(ory.flows.values()))
        assert query["code"] not in ory.codes
        assert len(flow["code_challenge"]) == 43
        assert flow["login_accept"]["subject"] == USER_ID
        assert flow["granted_scope"] == flow["requested_scope"] == ["openid", "profile", "email", "offline"]
        assert flow["granted_audience"] == ["dashboard"]

        claims = jwt.decode(data["access_token"], options={"verify_signature": False})
        assert claims["sub"] == USER_ID
        assert claims["ext"] == {"email": "ada@example.com", "email_verified": True}

    def test_login_redirects_to_hosted_login_without_session(self, ory, broker, browser):
        """Test the login challenge waits for the user to sign in, then resumes."""
        response = broker.get("/authorize", follow_redirects=False)
        response = browser.get(response.headers["location"], follow_redirects=False)
        login_location = response.headers["location"]

        response = broker.get(login_location, follow_redirects=False)

        assert response.status_code == 302
        hosted = response.headers["location"]
        assert hosted.startswith(f"{ORY_URL}/self-service/login/browser")
        assert _query(hosted)["return_to"] == login_location

        _login(ory, broker)
        response = broker.get(login_location, follow_redirects=False)

        assert response.status_code == 302
        assert "login_verifier=" in response.headers["location"]

    def test_forged_state_is_rejected(self, ory, broker, browser):
        """Test a callback with the wrong state never redeems the code."""
        _login(ory, broker)
        query = _run_handshake(broker, browser)

        response = _callback(broker, query, state="x" * 32)

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request"
        assert ory.access_tokens == {}
        assert ory.flow_for_code(query["code"])["subject"] == USER_ID

    def test_callback_is_single_use(self, ory, broker, browser):
        """Test the challenge cookies are gone after the first callback."""
        _login(ory, broker)
        query = _run_handshake(broker, browser)
        verifier = broker.cookies.get(VERIFIER_COOKIE)

        assert _callback(broker, query).status_code == 200
        replay = _callback(broker, query, code_verifier=verifier)

        assert replay.status_code == 400
        assert broker.cookies.get(VERIFIER_COOKIE) is None


class TestSessionLifecycle:
    """Test cases for what happens after tokens are issued."""

    @pytest.fixture
    def signed_in(self, ory, broker, browser):
        _login(ory, broker)
        query = _run_handshake(broker, browser)
        response = _callback(broker, query)
        assert response.status_code == 200
        return response.json()

    def test_me_prefers_identity_session(self, broker, signed_in):
        response = broker.get("/me")

        data = response.json()
        assert data["isAuthenticated"] is True
        assert data["user"]["firstName"] == "Ada"
        assert data["user"]["roles"] == ["admin"]

    def test_me_with_access_token_only(self, broker, signed_in):
        """Test the access token cookie resolves once the identity session is gone."""
        broker.cookies.delete(SESSION_COOKIE)

        data = broker.get("/me").json()

        assert data["isAuthenticated"] is True
        assert data["user"]["id"] == USER_ID
        assert data["user"]["roles"] == []

    def test_oauth_me(self, broker, signed_in):
        response = broker.get("/oauth/me", headers={"Authorization": f"Bearer {signed_in['access_token']}"})

        assert response.status_code == 200
        assert response.json()["user"]["email"] == "ada@example.com"

    def test_refresh_rotates_tokens(self, ory, broker, signed_in):
        response = broker.post("/oauth/refresh")

        data = response.json()
        assert data["success"] is True
        assert data["access_token"] != signed_in["access_token"]
        assert data["refresh_token"] != signed_in["refresh_token"]
        assert signed_in["refresh_token"] not in ory.refresh_tokens
        assert broker.cookies.get(ACCESS_TOKEN_COOKIE) == data["access_token"]

    def test_logout_revokes_and_clears(self, ory, broker, signed_in):
        """Test logout revokes both tokens, ends the session and clears cookies."""
        response = broker.post("/logout")

        assert response.status_code == 200
        assert signed_in["access_token"] in ory.revoked
        assert signed_in["refresh_token"] in ory.revoked
        assert ory.sessions == {}
        assert broker.cookies.get(ACCESS_TOKEN_COOKIE) is None
        assert broker.get("/me").json()["isAuthenticated"] is False

    def test_logout_challenge(self, ory, broker, signed_in):
        challenge = ory.create_logout_request(USER_ID)

        response = broker.get("/oauth/hydra-logout", params={"logout_challenge": challenge},
                              follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == f"{ORY_URL}/oauth2/sessions/logout?state=done"
        assert ory.logout_requests[challenge]["accepted"] is True
        assert ory.sessions == {}
        assert SESSION_COOKIE in deleted_cookies(response)


class TestSilentFlow:
    """Test cases for the server-side silent flow."""

    def test_silent_flow_issues_tokens(self, ory, broker):
        _login(ory, broker)

        response = broker.post("/oauth/start-silent")

        assert response.status_code == 200, response.text
        assert response.json() == {"success": True, "message": "OAuth2 tokens created successfully"}
        written = set_cookies(response)
        assert ACCESS_TOKEN_COOKIE in written
        assert REFRESH_TOKEN_COOKIE in written
        assert set(deleted_cookies(response)) == set(CHALLENGE_COOKIES)

        flow = next(iter(ory.flows.values()))
        assert flow["login_accept"]["subject"] == USER_ID
        assert flow["granted_audience"] == ["dashboard"]

        broker.cookies.delete(SESSION_COOKIE)
        assert broker.get("/me").json()["isAuthenticated"] is True

    def test_silent_flow_with_expired_session(self, ory, broker):
        broker.cookies.set(SESSION_COOKIE, "ory_st_expired")

        response = broker.post("/oauth/start-silent")

        assert response.status_code == 401
        assert ory.flows == {}


class TestSelfService:
    """Test cases for recovery and verification forwarding."""

    def test_forgot_password_reaches_identity_service(self, ory, broker):
        response = broker.post("/forgot-password", json={"email": "ada@example.com"})

        assert response.status_code == 200
        assert ory.self_service_submissions[0]["kind"] == "recovery"
        assert ory.self_service_submissions[0]["email"] == "ada@example.com"
        assert ory.self_service_submissions[0]["method"] == "code"

    def test_resend_verification_reaches_identity_service(self, ory, broker):
        response = broker.post("/resend-verification", json={"email": "ada@example.com"})

        assert response.status_code == 200
        assert ory.self_service_submissions[0]["kind"] == "verification"

    def test_disable_two_factor_unlinks_totp(self, ory, broker):
        ory.enable_totp(USER_ID)
        _login(ory, broker)

        response = broker.put("/two-factor", json={"enabled": False})

        assert response.json() == {"success": True, "message": "2FA has been disabled"}
        assert USER_ID not in ory.totp_identities

        again = broker.put("/two-factor", json={"enabled": False})
        assert again.json() == {"success": True, "message": "2FA is already disabled"}
