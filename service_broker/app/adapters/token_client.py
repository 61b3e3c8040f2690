"""
Token Service client (OAuth2 public endpoints and the admin handshake API).
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError as PydanticValidationError

from shared.errors import AuthenticationError, TokenExchangeError
from ..models import TokenPair
from .base import UpstreamClient


REDIRECT_STATUSES = (301, 302, 303, 307, 308)


class TokenClient(UpstreamClient):
    """Client for the Token Service.

    ``base_url`` is the public URL; handshake and introspection calls go to
    ``admin_url``.
    """

    service = "token"

    def __init__(self, base_url: str, admin_url: str, client_id: str,
                 client_secret: Optional[str] = None, **kwargs):
        super().__init__(base_url, **kwargs)
        self.admin_url = admin_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret

    # OAuth2 public API

    def authorization_url(self, redirect_uri: str, scopes: List[str], state: str,
                          code_challenge: str, method: str = "S256") -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": method,
        }
        return f"{self.base_url}/oauth2/auth?{urlencode(params)}"

    def _client_auth(self, form: Dict[str, str]) -> Dict[str, Any]:
        """Public clients send ``client_id``; confidential ones use HTTP Basic."""
        if self.client_secret:
            return {"data": form, "auth": httpx.BasicAuth(self.client_id, self.client_secret)}
        return {"data": {**form, "client_id": self.client_id}}

    async def _token_request(self, form: Dict[str, str], operation: str) -> TokenPair:
        response = await self._request(
            "POST",
            "/oauth2/token",
            operation=operation,
            headers={"Accept": "application/json"},
            **self._client_auth(form),
        )
        payload = self._json(response, operation)
        if not payload.get("access_token"):
            raise TokenExchangeError(details={"operation": operation, "reason": "no access_token"})
        try:
            return TokenPair.model_validate(payload)
        except PydanticValidationError as e:
            self.logger.error("Malformed token response", operation=operation, errors=len(e.errors()))
            raise TokenExchangeError(details={"operation": operation, "reason": "invalid token response"}) from e

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> TokenPair:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            "exchange_code",
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "refresh",
        )

    async def userinfo(self, access_token: str) -> Dict[str, Any]:
        """OIDC userinfo claims; a rejected token is an authentication error."""
        response = await self._request(
            "GET",
            "/userinfo",
            operation="userinfo",
            accept=(401, 403),
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired access token")
        return self._json(response, "userinfo")

    async def revoke(self, token: str, token_type_hint: str) -> None:
        """RFC 7009 token revocation."""
        await self._request(
            "POST",
            "/oauth2/revoke",
            operation="revoke",
            **self._client_auth({"token": token, "token_type_hint": token_type_hint}),
        )

    async def fetch_redirect(self, url: str, cookie_header: str = "") -> httpx.Response:
        """GET ``url`` without following redirects."""
        headers = {"Cookie": cookie_header} if cookie_header else {}
        return await self._request(
            "GET",
            url,
            operation="redirect",
            accept=REDIRECT_STATUSES,
            headers=headers,
        )

    # Admin API

    async def introspect(self, token: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/admin/oauth2/introspect",
            operation="introspect",
            base_url=self.admin_url,
            data={"token": token},
            headers={"Accept": "application/json"},
        )
        return self._json(response, "introspect")

    async def _get_challenge(self, kind: str, challenge: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            f"/admin/oauth2/auth/requests/{kind}",
            operation=f"get_{kind}_request",
            base_url=self.admin_url,
            params={f"{kind}_challenge": challenge},
        )
        return self._json(response, f"get_{kind}_request")

    async def _accept_challenge(self, kind: str, challenge: str,
                                body: Optional[Dict[str, Any]] = None) -> str:
        operation = f"accept_{kind}_request"
        request_kwargs: Dict[str, Any] = {"params": {f"{kind}_challenge": challenge}}
        if body is not None:
            request_kwargs["json"] = body
        response = await self._request(
            "PUT",
            f"/admin/oauth2/auth/requests/{kind}/accept",
            operation=operation,
            base_url=self.admin_url,
            **request_kwargs,
        )
        redirect_to = self._json(response, operation).get("redirect_to")
        if not redirect_to:
            self.logger.error("Accepted challenge without redirect_to", operation=operation)
            raise TokenExchangeError(details={"operation": operation, "reason": "no redirect_to"})
        return redirect_to

    async def accept_login_request(self, challenge: str, subject: str, remember_for: int,
                                   context: Dict[str, Any]) -> str:
        return await self._accept_challenge("login", challenge, {
            "subject": subject,
            "remember": True,
            "remember_for": remember_for,
            "context": context,
        })

    async def get_consent_request(self, challenge: str) -> Dict[str, Any]:
        return await self._get_challenge("consent", challenge)

    async def accept_consent_request(self, challenge: str, grant_scope: List[str],
                                     audience: List[str], session: Dict[str, Any],
                                     remember_for: int) -> str:
        return await self._accept_challenge("consent", challenge, {
            "grant_scope": grant_scope,
            "grant_access_token_audience": audience,
            "session": session,
            "remember": True,
            "remember_for": remember_for,
        })

    async def get_logout_request(self, challenge: str) -> Dict[str, Any]:
        return await self._get_challenge("logout", challenge)

    async def accept_logout_request(self, challenge: str) -> str:
        return await self._accept_challenge("logout", challenge)
