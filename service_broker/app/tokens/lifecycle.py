"""
Token lifecycle: code exchange, cookie persistence, refresh and revocation.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.errors import BrokerError
from shared.logging import get_logger
from shared.observability import ObservabilityManager
from shared.tracing import trace_function
from ..adapters import IdentityClient, TokenClient
from ..challenge_store import ChallengeStore
from ..cookies import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    TOKEN_COOKIES,
    CookieJar,
    RequestContext,
)
from ..models import TokenPair


NO_REFRESH_TOKEN_MESSAGE = "No refresh token available"


@dataclass(frozen=True)
class RefreshOutcome:
    success: bool
    tokens: Optional[TokenPair] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "message": self.message}
        return {
            "success": True,
            "access_token": self.tokens.access_token,
            "refresh_token": self.tokens.refresh_token,
            "expires_in": self.tokens.expires_in,
        }


class TokenLifecycleManager:
    """Owns the ``hydra_access_token`` and ``hydra_refresh_token`` cookies."""

    def __init__(self, token_client: TokenClient, identity_client: IdentityClient,
                 challenge_store: ChallengeStore, observability: ObservabilityManager,
                 identity_session_cookie: str,
                 access_token_default_ttl: int = 3600,
                 refresh_token_ttl: int = 60 * 60 * 24 * 30):
        self.token_client = token_client
        self.identity_client = identity_client
        self.challenge_store = challenge_store
        self.observability = observability
        self.identity_session_cookie = identity_session_cookie
        self.access_token_default_ttl = access_token_default_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.logger = get_logger("broker.token_lifecycle")

    async def exchange(self, code: str, code_verifier: str, redirect_uri: str) -> TokenPair:
        """Trade an authorization code for a token pair."""
        return await self.token_client.exchange_code(code, code_verifier, redirect_uri)

    def persist(self, jar: CookieJar, pair: TokenPair) -> None:
        jar.set(
            ACCESS_TOKEN_COOKIE,
            pair.access_token,
            pair.expires_in or self.access_token_default_ttl,
        )
        if pair.refresh_token:
            jar.set(REFRESH_TOKEN_COOKIE, pair.refresh_token, self.refresh_token_ttl)

    @trace_function("broker.token_refresh")
    async def refresh(self, ctx: RequestContext, jar: CookieJar) -> RefreshOutcome:
        """Refresh the token pair held in cookies.

        Without a refresh cookie nothing is touched and a soft failure is
        returned. An unsuccessful refresh removes both token cookies.
        """
        refresh_token = ctx.cookie(REFRESH_TOKEN_COOKIE)
        if not refresh_token:
            self._record_refresh("unavailable")
            return RefreshOutcome(success=False, message=NO_REFRESH_TOKEN_MESSAGE)

        try:
            pair = await self.token_client.refresh(refresh_token)
        except BrokerError as e:
            jar.delete(*TOKEN_COOKIES)
            self._record_refresh("failed")
            self.logger.warning("Token refresh failed, token cookies cleared", error_code=e.code)
            raise

        self.persist(jar, pair)
        self._record_refresh("refreshed")
        return RefreshOutcome(success=True, tokens=pair)

    @trace_function("broker.logout")
    async def revoke(self, ctx: RequestContext, jar: CookieJar) -> None:
        """Log out locally, then tell the upstream services on a best-effort basis."""
        jar.delete(self.identity_session_cookie, *TOKEN_COOKIES)
        self.challenge_store.clear(jar)

        if self.identity_session_cookie in ctx.cookie_header:
            try:
                await self.identity_client.logout(ctx.cookie_header)
            except BrokerError as e:
                self.logger.warning("Identity session logout failed", error_code=e.code)

        for cookie_name, hint in ((ACCESS_TOKEN_COOKIE, "access_token"),
                                  (REFRESH_TOKEN_COOKIE, "refresh_token")):
            token = ctx.cookie(cookie_name)
            if not token:
                continue
            try:
                await self.token_client.revoke(token, hint)
            except BrokerError as e:
                self.logger.warning("Token revocation failed", token_type=hint, error_code=e.code)

        self.observability.log_business_event("logout")

    def _record_refresh(self, outcome: str):
        self.observability.metrics.increment_counter("token_refresh_total", outcome=outcome)
