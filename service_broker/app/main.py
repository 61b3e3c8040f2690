"""
Authentication broker service.
"""

from typing import Optional, Union

import httpx
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, BrokerError, RateLimitedError, ValidationError
from shared.logging import redact
from .adapters import GatewayClient, IdentityClient, TokenClient
from .challenge_store import ChallengeStore
from .cookies import ACCESS_TOKEN_COOKIE, CookieJar, RequestContext
from .flow import AuthorizationOrchestrator
from .models import EmailRequest, ResolvedUser, TwoFactorRequest
from .ratelimit.fixed_window import InMemoryRateLimiter, RedisRateLimiter
from .sessions import AccessTokenSource, IdentitySessionSource, SessionResolver
from .tokens import TokenLifecycleManager


RateLimiter = Union[InMemoryRateLimiter, RedisRateLimiter]

FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent."
RESEND_VERIFICATION_MESSAGE = "If the email exists and is unverified, a verification email has been sent."


class BrokerService(BaseService):
    """Broker service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        super().__init__("broker", 8020, config)

        client_kwargs = {
            "timeout": self.config.upstream_timeout_seconds,
            "transport": transport,
            "metrics": self.metrics,
        }
        self.identity_client = IdentityClient(self.config.identity_public_url, **client_kwargs)
        self.token_client = TokenClient(
            self.config.token_public_url,
            self.config.token_admin_url,
            self.config.oauth2_client_id,
            self.config.oauth2_client_secret,
            **client_kwargs
        )
        self.gateway_client = GatewayClient(self.config.gateway_base_url, **client_kwargs)

        self.challenge_store = ChallengeStore(self.config.challenge_ttl_seconds)
        self.lifecycle = TokenLifecycleManager(
            self.token_client,
            self.identity_client,
            self.challenge_store,
            self.observability,
            identity_session_cookie=self.config.identity_session_cookie,
            access_token_default_ttl=self.config.access_token_default_ttl,
            refresh_token_ttl=self.config.refresh_token_ttl_seconds,
        )
        self.orchestrator = AuthorizationOrchestrator(
            self.config,
            self.token_client,
            self.identity_client,
            self.challenge_store,
            self.lifecycle,
            self.observability,
        )
        self.resolver = SessionResolver(
            [
                IdentitySessionSource(self.identity_client, self.config.identity_session_cookie),
                AccessTokenSource(self.token_client),
            ],
            metrics=self.metrics,
        )
        self.rate_limiter = rate_limiter or self._build_rate_limiter()

        self._setup_broker_routes()

    def _build_rate_limiter(self) -> RateLimiter:
        if self.config.rate_limit_backend == "redis":
            return RedisRateLimiter(self.config.redis_url)
        return InMemoryRateLimiter()

    async def on_startup(self):
        self.rate_limiter.start_sweeper(self.config.rate_limit_sweep_interval_seconds)

    async def on_shutdown(self):
        await self.rate_limiter.close()

    async def _check_dependencies(self):
        return {
            "rate_limiter": self.config.rate_limit_backend,
            "gateway_circuit": self.gateway_client.circuit_breaker.state.value,
        }

    def _cookie_jar(self, request: Request) -> CookieJar:
        """Per-request jar, also reachable by the error handlers."""
        jar = CookieJar(secure=self.config.secure_cookies, domain=self.config.cookie_domain)
        request.state.cookie_jar = jar
        return jar

    async def _enforce_limit(self, scope: str, ctx: RequestContext,
                             max_attempts: int, window_seconds: int, message: str):
        result = await self.rate_limiter.check_rate_limit(
            f"{scope}:{ctx.client_ip}", max_attempts, window_seconds * 1000
        )
        if not result.allowed:
            self.metrics.increment_counter("rate_limit_rejections_total", scope=scope)
            self.logger.warning("Rate limit exceeded", scope=scope, client_ip=ctx.client_ip)
            raise RateLimitedError(result.reset_time, message)

    @staticmethod
    async def _json_body(request: Request):
        try:
            return await request.json()
        except ValueError:
            return None

    def _setup_broker_routes(self):
        """Set up broker-specific routes."""
        router = APIRouter(prefix=self.config.route_prefix)

        @router.get("/authorize")
        async def authorize(return_to: Optional[str] = None,
                            jar: CookieJar = Depends(self._cookie_jar)):
            """Start the authorization code flow."""
            url = await self.orchestrator.start(jar, return_to)
            return jar.apply(RedirectResponse(url, status_code=302))

        @router.get("/oauth/hydra-login")
        async def hydra_login(request: Request, login_challenge: Optional[str] = None,
                              jar: CookieJar = Depends(self._cookie_jar)):
            """Handle a Token Service login challenge."""
            ctx = RequestContext.from_request(request)
            url = await self.orchestrator.handle_login_challenge(ctx, jar, login_challenge)
            return jar.apply(RedirectResponse(url, status_code=302))

        @router.get("/oauth/hydra-consent")
        async def hydra_consent(request: Request, consent_challenge: Optional[str] = None,
                                jar: CookieJar = Depends(self._cookie_jar)):
            """Handle a Token Service consent challenge."""
            ctx = RequestContext.from_request(request)
            url = await self.orchestrator.handle_consent_challenge(ctx, jar, consent_challenge)
            return jar.apply(RedirectResponse(url, status_code=302))

        @router.get("/oauth/hydra-logout")
        async def hydra_logout(request: Request, logout_challenge: Optional[str] = None,
                               jar: CookieJar = Depends(self._cookie_jar)):
            """Handle a Token Service logout challenge."""
            ctx = RequestContext.from_request(request)
            url = await self.orchestrator.handle_logout_challenge(ctx, jar, logout_challenge)
            return jar.apply(RedirectResponse(url, status_code=302))

        @router.post("/oauth/start-silent")
        async def start_silent(request: Request, jar: CookieJar = Depends(self._cookie_jar)):
            """Obtain tokens for an existing identity session without a browser round trip."""
            ctx = RequestContext.from_request(request)
            result = await self.orchestrator.start_silent(ctx, jar)
            return jar.apply(JSONResponse(result))

        @router.post("/oauth/callback")
        async def oauth_callback(request: Request, jar: CookieJar = Depends(self._cookie_jar)):
            """Complete the flow: verify state and verifier, exchange the code."""
            ctx = RequestContext.from_request(request)
            body = await self._json_body(request)
            result = await self.orchestrator.complete_callback(ctx, jar, body)
            return jar.apply(JSONResponse(result))

        @router.post("/oauth/refresh")
        async def oauth_refresh(request: Request, jar: CookieJar = Depends(self._cookie_jar)):
            """Refresh the token pair held in cookies."""
            ctx = RequestContext.from_request(request)
            outcome = await self.lifecycle.refresh(ctx, jar)
            return jar.apply(JSONResponse(outcome.to_dict()))

        @router.get("/oauth/me")
        async def oauth_me(request: Request):
            """User info for a bearer token."""
            token = RequestContext.from_request(request).bearer_token()
            if not token:
                raise AuthenticationError(
                    "Bearer token required",
                    status_message="Missing or invalid authorization header",
                )
            claims = await self.token_client.userinfo(token)
            return {"success": True, "user": ResolvedUser.from_claims(claims).to_public()}

        @router.get("/me")
        async def me(request: Request):
            """Current user from cookies; unauthenticated is a normal answer."""
            state = await self.resolver.resolve(RequestContext.from_request(request))
            return {
                "success": True,
                "user": state.user.to_public() if state.user else None,
                "isAuthenticated": state.is_authenticated,
            }

        @router.post("/logout")
        async def logout(request: Request, jar: CookieJar = Depends(self._cookie_jar)):
            """Revoke upstream sessions and clear every auth cookie."""
            ctx = RequestContext.from_request(request)
            await self.lifecycle.revoke(ctx, jar)
            return jar.apply(JSONResponse({"success": True, "message": "Logged out successfully"}))

        @router.post("/forgot-password")
        async def forgot_password(request: Request):
            """Send a recovery code; the answer never reveals whether the account exists."""
            ctx = RequestContext.from_request(request)
            await self._enforce_limit(
                "forgot_password", ctx,
                self.config.forgot_password_max_attempts,
                self.config.forgot_password_window_seconds,
                "Too many password reset attempts. Please try again later.",
            )
            email = self._parse_email(await self._json_body(request))
            try:
                await self.identity_client.request_recovery(email)
            except BrokerError as e:
                self.logger.error("Recovery request failed", error_code=e.code, email=redact(email, 3))
            return {"success": True, "message": FORGOT_PASSWORD_MESSAGE}

        @router.post("/resend-verification")
        async def resend_verification(request: Request):
            """Resend the verification code; the answer never reveals whether the account exists."""
            ctx = RequestContext.from_request(request)
            await self._enforce_limit(
                "resend_verification", ctx,
                self.config.resend_verification_max_attempts,
                self.config.resend_verification_window_seconds,
                "Too many resend attempts. Please try again later.",
            )
            email = self._parse_email(await self._json_body(request))
            try:
                await self.identity_client.request_verification(email)
            except BrokerError as e:
                self.logger.error("Verification request failed", error_code=e.code, email=redact(email, 3))
            return {"success": True, "message": RESEND_VERIFICATION_MESSAGE}

        @router.put("/two-factor")
        async def two_factor(request: Request):
            """Toggle two-factor authentication; disabling unlinks TOTP from the identity."""
            ctx = RequestContext.from_request(request)
            await self._enforce_limit(
                "two_factor", ctx,
                self.config.two_factor_max_attempts,
                self.config.two_factor_window_seconds,
                "Too many update attempts. Please try again later.",
            )
            enabled = self._parse_two_factor(await self._json_body(request))
            has_identity_session = bool(ctx.cookie(self.config.identity_session_cookie))
            if not has_identity_session and not ctx.cookie(ACCESS_TOKEN_COOKIE):
                raise AuthenticationError("No active session found")

            state = await self.resolver.resolve(ctx)
            if not state.is_authenticated:
                raise AuthenticationError("Unable to identify user")

            if not enabled and has_identity_session:
                if not await self.identity_client.unlink_totp(ctx.cookie_header):
                    return {"success": True, "message": "2FA is already disabled"}

            self.observability.log_business_event("two_factor_updated", user_id=state.user.id, enabled=enabled)
            return {"success": True, "message": "2FA has been enabled" if enabled else "2FA has been disabled"}

        @router.api_route("/gateway/{path:path}",
                          methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
        async def gateway(path: str, request: Request):
            """Forward to the backend API gateway with the caller's credentials."""
            ctx = RequestContext.from_request(request)
            body = await request.body() if request.method not in ("GET", "HEAD") else None
            upstream = await self.gateway_client.forward(
                request.method,
                path,
                ctx,
                query=request.url.query,
                body=body,
            )
            response = Response(content=upstream.content, status_code=upstream.status_code)
            for key, value in GatewayClient.response_headers(upstream):
                response.headers.append(key, value)
            return response

        self.app.include_router(router)

    @staticmethod
    def _parse_email(body) -> str:
        if not isinstance(body, dict):
            raise ValidationError("Invalid input")
        try:
            return EmailRequest.model_validate(body).email
        except ValueError as e:
            raise ValidationError("Invalid input") from e

    @staticmethod
    def _parse_two_factor(body) -> bool:
        try:
            return TwoFactorRequest.model_validate(body).enabled
        except ValueError as e:
            raise ValidationError("Invalid input") from e


def create_app(config: Optional[ServiceConfig] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None):
    """Create FastAPI application."""
    service = BrokerService(config=config, transport=transport)
    return service.app


if __name__ == "__main__":
    service = BrokerService(config=get_config("broker", 8020))
    service.run()
