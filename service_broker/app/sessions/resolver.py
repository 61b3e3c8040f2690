"""
Session resolver over an ordered list of credential sources.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from shared.errors import AuthenticationError, UpstreamUnavailableError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from ..adapters import IdentityClient, TokenClient
from ..cookies import ACCESS_TOKEN_COOKIE, RequestContext
from ..models import ResolvedUser


@dataclass(frozen=True)
class AuthState:
    """What downstream consumers see: ``{isAuthenticated, user, accessToken}``."""
    is_authenticated: bool
    user: Optional[ResolvedUser] = None
    access_token: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def unauthenticated(cls) -> "AuthState":
        return cls(is_authenticated=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isAuthenticated": self.is_authenticated,
            "user": self.user.to_public() if self.user else None,
            "accessToken": self.access_token,
        }


class CredentialSource:
    """One way of proving who the caller is."""

    name = "unknown"

    def applies(self, ctx: RequestContext) -> bool:
        raise NotImplementedError

    async def try_resolve(self, ctx: RequestContext) -> Optional[AuthState]:
        raise NotImplementedError


class IdentitySessionSource(CredentialSource):
    """Identity Service browser session, checked with the caller's own Cookie header."""

    name = "identity_session"

    def __init__(self, identity_client: IdentityClient, session_cookie: str):
        self.identity_client = identity_client
        self.session_cookie = session_cookie

    def applies(self, ctx: RequestContext) -> bool:
        return bool(ctx.cookie(self.session_cookie)) or self.session_cookie in ctx.cookie_header

    async def try_resolve(self, ctx: RequestContext) -> Optional[AuthState]:
        session = await self.identity_client.whoami(ctx.cookie_header)
        if session is None:
            return None
        return AuthState(
            is_authenticated=True,
            user=ResolvedUser.from_identity(session.get("identity")),
            source=self.name,
        )


class AccessTokenSource(CredentialSource):
    """Token Service access token carried in the ``hydra_access_token`` cookie."""

    name = "access_token"

    def __init__(self, token_client: TokenClient):
        self.token_client = token_client

    def applies(self, ctx: RequestContext) -> bool:
        return bool(ctx.cookie(ACCESS_TOKEN_COOKIE))

    async def try_resolve(self, ctx: RequestContext) -> Optional[AuthState]:
        access_token = ctx.cookie(ACCESS_TOKEN_COOKIE)
        introspection = await self.token_client.introspect(access_token)
        if not introspection.get("active"):
            return None

        try:
            claims = await self.token_client.userinfo(access_token)
        except AuthenticationError:
            return None
        return AuthState(
            is_authenticated=True,
            user=ResolvedUser.from_claims(claims),
            access_token=access_token,
            source=self.name,
        )


class SessionResolver:
    """Try each source in priority order; the first success wins.

    An unreachable upstream only disables its own source.
    """

    def __init__(self, sources: Sequence[CredentialSource],
                 metrics: Optional[MetricsCollector] = None):
        self.sources: List[CredentialSource] = list(sources)
        self.metrics = metrics
        self.logger = get_logger("broker.session_resolver")

    async def resolve(self, ctx: RequestContext) -> AuthState:
        for source in self.sources:
            if not source.applies(ctx):
                continue
            try:
                state = await source.try_resolve(ctx)
            except UpstreamUnavailableError as e:
                self.logger.warning(
                    "Credential source unavailable",
                    source=source.name,
                    upstream=e.service,
                    upstream_status=e.upstream_status
                )
                continue

            if state is not None:
                set_user_context(state.user.id if state.user else None)
                self._record(source.name)
                return state

        self._record("none")
        return AuthState.unauthenticated()

    def _record(self, source: str):
        if self.metrics is not None:
            self.metrics.increment_counter("session_resolutions_total", source=source)
