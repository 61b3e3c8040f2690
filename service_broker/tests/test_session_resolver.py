"""
Unit tests for the session resolver and its credential sources.
"""

import pytest

from service_broker.app.adapters import IdentityClient, TokenClient
from service_broker.app.cookies import ACCESS_TOKEN_COOKIE, RequestContext
from service_broker.app.sessions import (
    AccessTokenSource,
    IdentitySessionSource,
    SessionResolver,
)
from shared.metrics import MetricsCollector
from shared.test_helpers import (
    IDENTITY_URL,
    TOKEN_ADMIN_URL,
    TOKEN_PUBLIC_URL,
    TestDataFactory,
    UpstreamStub,
)


SESSION_COOKIE = "ory_kratos_session"


class TestSessionResolver:
    """Test cases for SessionResolver."""

    @pytest.fixture
    def user(self):
        return TestDataFactory.create_test_users()[0]

    @pytest.fixture
    def stub(self):
        return UpstreamStub()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("broker")

    @pytest.fixture
    def resolver(self, stub, metrics):
        transport = stub.transport()
        identity = IdentityClient(IDENTITY_URL, transport=transport)
        token = TokenClient(TOKEN_PUBLIC_URL, TOKEN_ADMIN_URL, "dashboard", transport=transport)
        return SessionResolver(
            [IdentitySessionSource(identity, SESSION_COOKIE), AccessTokenSource(token)],
            metrics=metrics,
        )

    @staticmethod
    def _ctx(**cookies):
        return RequestContext(
            cookies=cookies,
            cookie_header="; ".join(f"{k}={v}" for k, v in cookies.items()),
        )

    def _resolutions(self, metrics, source):
        return metrics.registry.get_sample_value("session_resolutions_total", {"source": source})

    @pytest.mark.asyncio
    async def test_identity_session_wins(self, resolver, stub, user, metrics):
        """Test a valid identity session resolves without touching the token source."""
        stub.add("GET", f"{IDENTITY_URL}/sessions/whoami", TestDataFactory.session(user))

        state = await resolver.resolve(self._ctx(**{SESSION_COOKIE: "s1", ACCESS_TOKEN_COOKIE: "at"}))

        assert state.is_authenticated
        assert state.source == "identity_session"
        assert state.user.id == user.user_id
        assert state.user.first_name == "Ada"
        assert state.user.roles == ["admin"]
        assert state.access_token is None
        assert not stub.called(f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect")
        assert self._resolutions(metrics, "identity_session") == 1.0

    @pytest.mark.asyncio
    async def test_whoami_forwards_cookie_header(self, resolver, stub, user):
        """Test the caller's Cookie header reaches the Identity Service untouched."""
        stub.add("GET", f"{IDENTITY_URL}/sessions/whoami", TestDataFactory.session(user))

        await resolver.resolve(self._ctx(**{SESSION_COOKIE: "s1", "other": "x"}))

        request = stub.calls_to(f"{IDENTITY_URL}/sessions/whoami")[0]
        assert request.headers["cookie"] == f"{SESSION_COOKIE}=s1; other=x"

    @pytest.mark.asyncio
    async def test_falls_back_to_access_token(self, resolver, stub, user):
        """Test an expired identity session falls through to the access token."""
        stub.add("GET", f"{IDENTITY_URL}/sessions/whoami", {"error": "no session"}, status=401)
        stub.add("POST", f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect", {"active": True, "sub": user.user_id})
        stub.add("GET", f"{TOKEN_PUBLIC_URL}/userinfo", TestDataFactory.userinfo(user))

        state = await resolver.resolve(self._ctx(**{SESSION_COOKIE: "s1", ACCESS_TOKEN_COOKIE: "at"}))

        assert state.is_authenticated
        assert state.source == "access_token"
        assert state.access_token == "at"
        assert state.user.email == user.email
        assert state.to_dict()["accessToken"] == "at"

    @pytest.mark.asyncio
    async def test_identity_outage_only_disables_its_source(self, resolver, stub, user, metrics):
        """Test an unreachable Identity Service does not block the token source."""
        stub.fail("GET", f"{IDENTITY_URL}/sessions/whoami")
        stub.add("POST", f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect", {"active": True})
        stub.add("GET", f"{TOKEN_PUBLIC_URL}/userinfo", TestDataFactory.userinfo(user))

        state = await resolver.resolve(self._ctx(**{SESSION_COOKIE: "s1", ACCESS_TOKEN_COOKIE: "at"}))

        assert state.is_authenticated
        assert state.source == "access_token"
        assert self._resolutions(metrics, "access_token") == 1.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identity", [
        {"id": "u", "traits": {"email": ["a@b.c"]}},
        {"id": "u", "traits": ["a@b.c"]},
        {"id": "u", "traits": {"email": "a@b.c", "name": {"first": ["Ada"]}}},
        {"id": "u", "traits": {"email": "a@b.c"}, "metadata_public": {"roles": "admin"}},
        None,
    ])
    async def test_malformed_identity_falls_back_to_access_token(self, resolver, stub, user, metrics, identity):
        """Test an identity record of unexpected shape only disables the identity source."""
        stub.add("GET", f"{IDENTITY_URL}/sessions/whoami", {"id": "s1", "active": True, "identity": identity})
        stub.add("POST", f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect", {"active": True})
        stub.add("GET", f"{TOKEN_PUBLIC_URL}/userinfo", TestDataFactory.userinfo(user))

        state = await resolver.resolve(self._ctx(**{SESSION_COOKIE: "s1", ACCESS_TOKEN_COOKIE: "at"}))

        assert state.is_authenticated
        assert state.source == "access_token"
        assert state.user.id == user.user_id
        assert self._resolutions(metrics, "access_token") == 1.0

    @pytest.mark.asyncio
    async def test_malformed_identity_without_token_is_unauthenticated(self, resolver, stub):
        stub.add("GET", f"{IDENTITY_URL}/sessions/whoami", {"identity": {"id": "u", "traits": {"email": ["a@b.c"]}}})

        state = await resolver.resolve(self._ctx(**{SESSION_COOKIE: "s1"}))

        assert not state.is_authenticated

    @pytest.mark.asyncio
    async def test_malformed_claims_are_unauthenticated(self, resolver, stub):
        """Test userinfo claims of the wrong type resolve to no session rather than an error."""
        stub.add("POST", f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect", {"active": True})
        stub.add("GET", f"{TOKEN_PUBLIC_URL}/userinfo", {"sub": "u", "email": {"primary": "a@b.c"}})

        state = await resolver.resolve(self._ctx(**{ACCESS_TOKEN_COOKIE: "at"}))

        assert not state.is_authenticated

    @pytest.mark.asyncio
    async def test_inactive_token_is_unauthenticated(self, resolver, stub):
        """Test an inactive token never reaches userinfo."""
        stub.add("POST", f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect", {"active": False})

        state = await resolver.resolve(self._ctx(**{ACCESS_TOKEN_COOKIE: "at"}))

        assert not state.is_authenticated
        assert state.user is None
        assert not stub.called(f"{TOKEN_PUBLIC_URL}/userinfo")

    @pytest.mark.asyncio
    async def test_rejected_userinfo_is_unauthenticated(self, resolver, stub):
        """Test a token that userinfo refuses counts as no session."""
        stub.add("POST", f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect", {"active": True})
        stub.add("GET", f"{TOKEN_PUBLIC_URL}/userinfo", {"error": "invalid_token"}, status=401)

        state = await resolver.resolve(self._ctx(**{ACCESS_TOKEN_COOKIE: "at"}))

        assert not state.is_authenticated

    @pytest.mark.asyncio
    async def test_no_credentials(self, resolver, stub, metrics):
        """Test no cookies means no upstream calls and an unauthenticated answer."""
        state = await resolver.resolve(self._ctx())

        assert state.to_dict() == {"isAuthenticated": False, "user": None, "accessToken": None}
        assert stub.calls == []
        assert self._resolutions(metrics, "none") == 1.0

    @pytest.mark.asyncio
    async def test_every_source_failing(self, resolver, stub):
        """Test both upstreams down still yields an answer."""
        stub.fail("GET", f"{IDENTITY_URL}/sessions/whoami")
        stub.add("POST", f"{TOKEN_ADMIN_URL}/admin/oauth2/introspect", {"error": "boom"}, status=503)

        state = await resolver.resolve(self._ctx(**{SESSION_COOKIE: "s1", ACCESS_TOKEN_COOKIE: "at"}))

        assert not state.is_authenticated
