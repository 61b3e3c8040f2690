"""
Authorization orchestrator.

Drives the three-party handshake: authorization start, login challenge,
consent challenge and code exchange. Browser-driven steps each enter the
state machine at the state their endpoint handles; the silent flow walks the
whole machine inside one request.
"""

import secrets
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urljoin, urlsplit

from pydantic import ValidationError as PydanticValidationError

from shared.config import ServiceConfig
from shared.errors import (
    AuthenticationError,
    BrokerError,
    CsrfMismatchError,
    UpstreamUnavailableError,
    ValidationError,
)
from shared.logging import get_logger, redact
from shared.observability import ObservabilityManager
from shared.tracing import trace_operation
from ..adapters import IdentityClient, TokenClient
from ..challenge_store import ChallengeStore
from ..cookies import TOKEN_COOKIES, CookieJar, RequestContext
from ..models import CallbackRequest, ResolvedUser
from ..pkce import generate_pair
from ..tokens import TokenLifecycleManager
from .states import Flow, FlowState, IllegalTransition


def _matches(supplied: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    return secrets.compare_digest(supplied.encode("utf-8"), stored.encode("utf-8"))


def _first(params: Dict[str, list], name: str) -> Optional[str]:
    values = params.get(name)
    return values[0] if values else None


class AuthorizationOrchestrator:
    """Authorization Code + PKCE flow against the Identity and Token Services."""

    def __init__(self, config: ServiceConfig, token_client: TokenClient,
                 identity_client: IdentityClient, challenge_store: ChallengeStore,
                 lifecycle: TokenLifecycleManager, observability: ObservabilityManager):
        self.config = config
        self.token_client = token_client
        self.identity_client = identity_client
        self.challenge_store = challenge_store
        self.lifecycle = lifecycle
        self.observability = observability
        self.metrics = observability.metrics
        self.logger = get_logger("broker.orchestrator")

    def sanitize_return_to(self, return_to: Optional[str]) -> str:
        """Only same-origin absolute paths survive."""
        if (not return_to or not return_to.startswith("/")
                or return_to.startswith("//") or return_to.startswith("/\\")):
            return self.config.default_return_to
        return return_to

    # Step 1

    async def start(self, jar: CookieJar, return_to: Optional[str]) -> str:
        """Mint PKCE and state, write challenge cookies, return the authorization URL."""
        flow = Flow(metrics=self.metrics)
        with trace_operation("broker.authorize"):
            pair = generate_pair()
            url = self.token_client.authorization_url(
                self.config.oauth2_redirect_uri,
                self.config.scope_list,
                pair.state,
                pair.code_challenge,
            )
            self.challenge_store.write(jar, pair, self.sanitize_return_to(return_to))
            flow.advance(FlowState.PENDING_AUTHORIZATION)
        return url

    # Step 2

    async def _current_identity(self, ctx: RequestContext) -> Optional[Dict[str, Any]]:
        """Identity behind the caller's session cookie; any failure counts as no session."""
        if self.config.identity_session_cookie not in ctx.cookie_header:
            return None
        try:
            session = await self.identity_client.whoami(ctx.cookie_header)
        except UpstreamUnavailableError as e:
            self.logger.warning("Session check failed during login challenge", upstream_status=e.upstream_status)
            return None
        return session.get("identity") if session else None

    async def _accept_login(self, challenge: str, identity: Dict[str, Any]) -> str:
        user = ResolvedUser.from_identity(identity)
        with trace_operation("broker.accept_login", subject=user.id):
            redirect_to = await self.token_client.accept_login_request(
                challenge,
                subject=user.id,
                remember_for=self.config.login_remember_for,
                context={"email": user.email, "email_verified": user.email_verified},
            )
        self.logger.info("Login challenge accepted", challenge=redact(challenge), subject=user.id)
        return redirect_to

    async def handle_login_challenge(self, ctx: RequestContext, jar: CookieJar,
                                     login_challenge: Optional[str]) -> str:
        """Accept the login challenge for an existing session or send the browser to log in."""
        if not login_challenge:
            raise ValidationError("Missing login_challenge parameter")

        flow = Flow.resume(FlowState.PENDING_AUTHORIZATION, self.metrics)
        flow.advance(FlowState.AWAITING_LOGIN_CHALLENGE)

        identity = await self._current_identity(ctx)
        if identity is None:
            flow.advance(FlowState.AWAITING_LOGIN_CHALLENGE)
            return self.identity_client.login_url(ctx.url)

        try:
            redirect_to = await self._accept_login(login_challenge, identity)
        except BrokerError as e:
            self._fail(flow, jar, e)
            raise
        flow.advance(FlowState.AWAITING_CONSENT_CHALLENGE)
        return redirect_to

    # Step 3

    async def _accept_consent(self, challenge: str) -> str:
        with trace_operation("broker.accept_consent"):
            consent = await self.token_client.get_consent_request(challenge)
            if not consent.get("subject"):
                raise ValidationError("Invalid consent request")

            client = consent.get("client") or {}
            audience = [client["client_id"]] if client.get("client_id") else []
            context = consent.get("context") or {}
            claims = {"email_verified": bool(context.get("email_verified", False))}
            if context.get("email"):
                claims["email"] = context["email"]

            granted = list(consent.get("requested_scope") or [])
            redirect_to = await self.token_client.accept_consent_request(
                challenge,
                grant_scope=granted,
                audience=audience,
                session={"access_token": dict(claims), "id_token": dict(claims)},
                remember_for=self.config.consent_remember_for,
            )
        self.logger.info("Consent challenge accepted", challenge=redact(challenge), scopes=granted)
        return redirect_to

    async def handle_consent_challenge(self, ctx: RequestContext, jar: CookieJar,
                                       consent_challenge: Optional[str]) -> str:
        """Grant exactly the requested scopes to the requesting client."""
        if not consent_challenge:
            raise ValidationError("Missing consent_challenge parameter")

        flow = Flow.resume(FlowState.AWAITING_CONSENT_CHALLENGE, self.metrics)
        try:
            redirect_to = await self._accept_consent(consent_challenge)
        except BrokerError as e:
            self._fail(flow, jar, e)
            raise
        flow.advance(FlowState.AWAITING_CODE)
        return redirect_to

    # Steps 5 and 6

    async def complete_callback(self, ctx: RequestContext, jar: CookieJar, body: Any) -> Dict[str, Any]:
        """Check state and verifier, exchange the code, persist tokens."""
        flow = Flow.resume(FlowState.AWAITING_CODE, self.metrics)
        challenge = self.challenge_store.take(ctx, jar)

        try:
            request = CallbackRequest.model_validate(body)
        except PydanticValidationError as e:
            flow.fail("invalid callback body")
            raise ValidationError(details={"errors": len(e.errors())}) from e

        if not (_matches(request.state, challenge.state)
                and _matches(request.code_verifier, challenge.code_verifier)):
            flow.fail("challenge mismatch")
            raise CsrfMismatchError(details={
                "has_stored_state": bool(challenge.state),
                "has_stored_verifier": bool(challenge.code_verifier),
            })

        flow.advance(FlowState.EXCHANGING)
        try:
            with trace_operation("broker.exchange_code"):
                pair = await self.lifecycle.exchange(request.code, request.code_verifier, request.redirect_uri)
                claims = await self.token_client.userinfo(pair.access_token)
                user = ResolvedUser.from_claims(claims)
        except AuthenticationError as e:
            flow.fail("userinfo rejected fresh token")
            raise UpstreamUnavailableError("token", details={"operation": "userinfo"}) from e
        except BrokerError:
            flow.fail("code exchange failed")
            raise

        self.lifecycle.persist(jar, pair)
        flow.advance(FlowState.AUTHENTICATED)
        self.observability.log_business_event("login_completed", user_id=user.id)

        return {
            "success": True,
            "user": user.to_public(),
            "returnTo": self.sanitize_return_to(challenge.return_to),
            "access_token": pair.access_token,
            "refresh_token": pair.refresh_token,
            "expires_in": pair.expires_in,
        }

    # Logout challenge

    async def handle_logout_challenge(self, ctx: RequestContext, jar: CookieJar,
                                      logout_challenge: Optional[str]) -> str:
        """Accept an RP-initiated logout; every failure still lands on ``/``."""
        if not logout_challenge:
            raise ValidationError("Missing logout_challenge parameter")

        jar.delete(*TOKEN_COOKIES)
        session_cookie = self.config.identity_session_cookie
        try:
            await self.token_client.get_logout_request(logout_challenge)
            if ctx.cookie(session_cookie):
                jar.delete(session_cookie)
                try:
                    await self.identity_client.logout(ctx.cookie_header)
                except BrokerError as e:
                    self.logger.warning("Identity session logout failed", error_code=e.code)
            redirect_to = await self.token_client.accept_logout_request(logout_challenge)
        except BrokerError as e:
            self.logger.error("Logout challenge failed", challenge=redact(logout_challenge), error_code=e.code)
            return "/"

        self.observability.log_business_event("logout_challenge_accepted")
        return redirect_to or "/"

    # Silent flow

    async def start_silent(self, ctx: RequestContext, jar: CookieJar) -> Dict[str, Any]:
        """Run the whole handshake server-side for an existing identity session."""
        if self.config.identity_session_cookie not in ctx.cookie_header:
            raise AuthenticationError("No identity session found. Please login first.")
        try:
            session = await self.identity_client.whoami(ctx.cookie_header)
        except UpstreamUnavailableError as e:
            raise AuthenticationError("Invalid identity session") from e
        if session is None:
            raise AuthenticationError("Invalid identity session")
        identity = session.get("identity")
        user = ResolvedUser.from_identity(identity)

        flow = Flow(metrics=self.metrics)
        pair = generate_pair()
        url = self.token_client.authorization_url(
            self.config.oauth2_redirect_uri,
            self.config.scope_list,
            pair.state,
            pair.code_challenge,
        )
        flow.advance(FlowState.PENDING_AUTHORIZATION)

        try:
            with trace_operation("broker.silent_flow"):
                code = await self._drive_silent(flow, url, identity, pair.state, dict(ctx.cookies))
                flow.advance(FlowState.EXCHANGING)
                tokens = await self.lifecycle.exchange(code, pair.code_verifier, self.config.oauth2_redirect_uri)
        except BrokerError as e:
            self._fail(flow, jar, e)
            raise

        self.lifecycle.persist(jar, tokens)
        flow.advance(FlowState.AUTHENTICATED)
        if flow.rules.clears_challenge_cookies:
            self.challenge_store.clear(jar)
        self.observability.log_business_event("silent_login_completed", user_id=user.id)
        return {"success": True, "message": "OAuth2 tokens created successfully"}

    async def _drive_silent(self, flow: Flow, location: str, identity: Dict[str, Any],
                            state: str, cookies: Dict[str, str]) -> str:
        """Follow Token Service redirects, accepting challenges, until a code appears."""
        for _ in range(self.config.silent_flow_max_redirects):
            parts = urlsplit(location)
            params = parse_qs(parts.query)

            try:
                if location.startswith(self.config.oauth2_redirect_uri) and _first(params, "code"):
                    if not _matches(_first(params, "state") or "", state):
                        raise CsrfMismatchError(details={"operation": "silent_flow"})
                    if flow.state is not FlowState.AWAITING_CODE:
                        flow.advance(FlowState.AWAITING_CODE)
                    return _first(params, "code")

                if _first(params, "error"):
                    raise UpstreamUnavailableError("token", details={
                        "operation": "silent_flow",
                        "error": _first(params, "error"),
                    })

                login_challenge = _first(params, "login_challenge")
                if login_challenge and parts.path.endswith(self.config.login_challenge_path):
                    flow.advance(FlowState.AWAITING_LOGIN_CHALLENGE)
                    location = await self._accept_login(login_challenge, identity)
                    flow.advance(FlowState.AWAITING_CONSENT_CHALLENGE)
                    continue

                consent_challenge = _first(params, "consent_challenge")
                if consent_challenge and parts.path.endswith(self.config.consent_challenge_path):
                    if flow.state is not FlowState.AWAITING_CONSENT_CHALLENGE:
                        flow.advance(FlowState.AWAITING_CONSENT_CHALLENGE)
                    location = await self._accept_consent(consent_challenge)
                    flow.advance(FlowState.AWAITING_CODE)
                    continue
            except IllegalTransition as e:
                raise UpstreamUnavailableError("token", details={
                    "operation": "silent_flow",
                    "error": str(e),
                }) from e

            if not location.startswith(self.config.token_public_url):
                break

            response = await self.token_client.fetch_redirect(
                location,
                "; ".join(f"{name}={value}" for name, value in cookies.items()),
            )
            cookies.update(response.cookies.items())
            next_location = response.headers.get("location")
            if not response.is_redirect or not next_location:
                break
            location = urljoin(location, next_location)
        else:
            raise UpstreamUnavailableError("token", details={
                "operation": "silent_flow",
                "error": "too many redirects",
            })

        raise UpstreamUnavailableError("token", details={
            "operation": "silent_flow",
            "error": "flow did not complete",
            "location": location,
        })

    def _fail(self, flow: Flow, jar: CookieJar, error: BrokerError):
        flow.fail(error.code)
        if flow.rules.clears_challenge_cookies:
            self.challenge_store.clear(jar)
