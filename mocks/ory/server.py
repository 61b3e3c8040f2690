"""
Mock Identity Service and Token Service (Ory Kratos / Hydra shaped) in one app.

Serves the public session and self-service endpoints, the OAuth2 public
endpoints and the admin handshake API, keeping all state in memory. Access
tokens are HS256 JWTs so tests can inspect them.
"""

import base64
import hashlib
import secrets
import time
from typing import Dict, Any, Optional, List, Set
from urllib.parse import parse_qs, urlencode

import jwt
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from shared.logging import get_logger


SESSION_COOKIE = "ory_kratos_session"


def _challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class MockOryServer:
    """Mock Ory server implementation."""

    def __init__(self,
                 public_url: str = "http://ory.test",
                 login_url: str = "http://testserver/oauth/hydra-login",
                 consent_url: str = "http://testserver/oauth/hydra-consent",
                 logout_url: str = "http://testserver/oauth/hydra-logout",
                 client_id: str = "dashboard",
                 client_secret: Optional[str] = None,
                 expires_in: int = 1800,
                 secret: str = "mock-secret"):
        self.public_url = public_url.rstrip("/")
        self.login_url = login_url
        self.consent_url = consent_url
        self.logout_url = logout_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.expires_in = expires_in
        self.secret = secret
        self.logger = get_logger("mock.ory")
        self.app = FastAPI(title="Mock Ory", version="1.0.0")

        self.identities: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, str] = {}           # session cookie value -> identity id
        self.flows: Dict[str, Dict[str, Any]] = {}   # login challenge -> authorization flow
        self.codes: Dict[str, str] = {}              # authorization code -> login challenge
        self.access_tokens: Dict[str, Dict[str, Any]] = {}
        self.refresh_tokens: Dict[str, Dict[str, Any]] = {}
        self.revoked: List[str] = []
        self.self_service_submissions: List[Dict[str, Any]] = []
        self.logout_requests: Dict[str, Dict[str, Any]] = {}
        self.settings_flows: Dict[str, str] = {}     # settings flow id -> identity id
        self.totp_identities: Set[str] = set()

        self._setup_routes()

    # Test setup helpers

    def add_identity(self, identity_id: str, email: str, first: str = "", last: str = "",
                     verified: bool = True, roles: Optional[List[str]] = None) -> Dict[str, Any]:
        identity = {
            "id": identity_id,
            "schema_id": "default",
            "traits": {"email": email, "name": {"first": first, "last": last}},
            "verifiable_addresses": [{"value": email, "verified": verified, "via": "email"}],
            "metadata_public": {"roles": roles or []},
        }
        self.identities[identity_id] = identity
        return identity

    def create_session(self, identity_id: str) -> str:
        """Returns the session cookie value."""
        token = f"ory_st_{secrets.token_urlsafe(16)}"
        self.sessions[token] = identity_id
        return token

    def enable_totp(self, identity_id: str):
        self.totp_identities.add(identity_id)

    def create_logout_request(self, subject: str) -> str:
        challenge = secrets.token_hex(16)
        self.logout_requests[challenge] = {"subject": subject, "accepted": False}
        return challenge

    def flow_for_code(self, code: str) -> Dict[str, Any]:
        return self.flows[self.codes[code]]

    # Internal helpers

    def _identity_from_cookie(self, request: Request) -> Optional[Dict[str, Any]]:
        token = request.cookies.get(SESSION_COOKIE)
        identity_id = self.sessions.get(token or "")
        return self.identities.get(identity_id) if identity_id else None

    def _flow_by(self, key: str, value: str) -> Dict[str, Any]:
        for flow in self.flows.values():
            if flow.get(key) == value:
                return flow
        raise HTTPException(status_code=404, detail=f"Unknown {key}")

    def _client_authenticated(self, request: Request, form: Dict[str, str]) -> bool:
        authorization = request.headers.get("authorization", "")
        if authorization.startswith("Basic "):
            client_id, _, client_secret = base64.b64decode(authorization[6:]).decode().partition(":")
            return client_id == self.client_id and client_secret == (self.client_secret or "")
        return form.get("client_id") == self.client_id and not self.client_secret

    async def _form(self, request: Request) -> Dict[str, str]:
        parsed = parse_qs((await request.body()).decode("utf-8"))
        return {key: values[0] for key, values in parsed.items()}

    def _issue_tokens(self, subject: str, scope: List[str], claims: Dict[str, Any]) -> Dict[str, Any]:
        now = int(time.time())
        access_token = jwt.encode(
            {
                "iss": self.public_url,
                "sub": subject,
                "aud": [self.client_id],
                "iat": now,
                "exp": now + self.expires_in,
                "scp": scope,
                "ext": claims,
            },
            self.secret,
            algorithm="HS256",
        )
        token = {"subject": subject, "scope": scope, "claims": claims}
        self.access_tokens[access_token] = token

        response = {
            "access_token": access_token,
            "expires_in": self.expires_in,
            "token_type": "bearer",
            "scope": " ".join(scope),
        }
        if "offline" in scope or "offline_access" in scope:
            refresh_token = f"ory_rt_{secrets.token_urlsafe(24)}"
            self.refresh_tokens[refresh_token] = token
            response["refresh_token"] = refresh_token
        self.logger.info("Issued tokens", subject=subject, scope=scope)
        return response

    def _setup_routes(self):
        """Set up mock Ory routes."""

        # Identity Service: sessions and self-service flows

        @self.app.get("/sessions/whoami")
        async def whoami(request: Request):
            identity = self._identity_from_cookie(request)
            if identity is None:
                return JSONResponse(status_code=401, content={"error": {"code": 401, "reason": "No valid session"}})
            return {"id": f"session-{identity['id']}", "active": True, "identity": identity}

        @self.app.get("/self-service/login/browser")
        async def login_browser(return_to: Optional[str] = None):
            return RedirectResponse(f"{self.public_url}/ui/login?{urlencode({'return_to': return_to or ''})}", status_code=303)

        @self.app.get("/self-service/logout/browser")
        async def logout_browser(request: Request):
            if self._identity_from_cookie(request) is None:
                return JSONResponse(status_code=401, content={"error": {"code": 401}})
            token = request.cookies.get(SESSION_COOKIE)
            return {"logout_token": f"lt-{token}", "logout_url": f"{self.public_url}/self-service/logout?token=lt-{token}"}

        @self.app.get("/self-service/logout")
        async def logout(token: str):
            self.sessions.pop(token[3:], None)
            return Response(status_code=204)

        def settings_flow(flow_id: str) -> Dict[str, Any]:
            nodes = [{
                "type": "input",
                "group": "default",
                "attributes": {"name": "csrf_token", "type": "hidden", "value": f"csrf-{flow_id}"},
            }]
            if self.settings_flows[flow_id] in self.totp_identities:
                nodes.append({
                    "type": "input",
                    "group": "totp",
                    "attributes": {"name": "totp_unlink", "type": "submit", "value": "true"},
                })
            return {"id": flow_id, "type": "browser", "state": "show_form", "ui": {"nodes": nodes}}

        @self.app.get("/self-service/settings/browser")
        async def create_settings_flow(request: Request):
            identity = self._identity_from_cookie(request)
            if identity is None:
                return JSONResponse(status_code=401, content={"error": {"code": 401}})
            flow_id = f"settings-{secrets.token_hex(4)}"
            self.settings_flows[flow_id] = identity["id"]
            return settings_flow(flow_id)

        @self.app.post("/self-service/settings")
        async def submit_settings(flow: str, request: Request):
            identity = self._identity_from_cookie(request)
            if identity is None or self.settings_flows.get(flow) != identity["id"]:
                return JSONResponse(status_code=403, content={"error": {"code": 403}})
            body = await request.json()
            if body.get("csrf_token") != f"csrf-{flow}":
                return JSONResponse(status_code=400, content=settings_flow(flow))
            if body.get("method") == "totp" and body.get("totp_unlink"):
                self.totp_identities.discard(identity["id"])
            return {**settings_flow(flow), "state": "success"}

        @self.app.get("/self-service/{kind}/api")
        async def create_api_flow(kind: str):
            if kind not in ("recovery", "verification"):
                raise HTTPException(status_code=404)
            return {"id": f"{kind}-{secrets.token_hex(4)}", "type": "api", "state": "choose_method"}

        @self.app.post("/self-service/{kind}")
        async def submit_flow(kind: str, flow: str, request: Request):
            body = await request.json()
            self.self_service_submissions.append({"kind": kind, "flow": flow, **body})
            return {"id": flow, "state": "sent_email"}

        # Token Service: public OAuth2 endpoints

        @self.app.get("/oauth2/auth")
        async def authorize(request: Request):
            params = dict(request.query_params)

            if "login_verifier" in params:
                flow = self._flow_by("login_verifier", params["login_verifier"])
                flow["consent_challenge"] = secrets.token_hex(16)
                return RedirectResponse(
                    f"{self.consent_url}?{urlencode({'consent_challenge': flow['consent_challenge']})}",
                    status_code=302,
                )

            if "consent_verifier" in params:
                flow = self._flow_by("consent_verifier", params["consent_verifier"])
                code = f"ory_ac_{secrets.token_urlsafe(16)}"
                self.codes[code] = flow["login_challenge"]
                return RedirectResponse(
                    f"{flow['redirect_uri']}?{urlencode({'code': code, 'state': flow['state'], 'scope': ' '.join(flow['granted_scope'])})}",
                    status_code=302,
                )

            if params.get("client_id") != self.client_id or params.get("response_type") != "code":
                raise HTTPException(status_code=400, detail="invalid_request")
            if params.get("code_challenge_method") != "S256" or not params.get("code_challenge"):
                raise HTTPException(status_code=400, detail="PKCE required")

            challenge = secrets.token_hex(16)
            self.flows[challenge] = {
                "login_challenge": challenge,
                "redirect_uri": params["redirect_uri"],
                "state": params.get("state", ""),
                "requested_scope": params.get("scope", "").split(),
                "code_challenge": params["code_challenge"],
                "subject": None,
                "context": {},
            }
            return RedirectResponse(f"{self.login_url}?{urlencode({'login_challenge': challenge})}", status_code=302)

        @self.app.post("/oauth2/token")
        async def token(request: Request):
            form = await self._form(request)
            if not self._client_authenticated(request, form):
                return JSONResponse(status_code=401, content={"error": "invalid_client"})

            if form.get("grant_type") == "authorization_code":
                login_challenge = self.codes.pop(form.get("code", ""), None)
                if login_challenge is None:
                    return JSONResponse(status_code=400, content={"error": "invalid_grant"})
                flow = self.flows[login_challenge]
                if _challenge_for(form.get("code_verifier", "")) != flow["code_challenge"]:
                    return JSONResponse(status_code=400, content={"error": "invalid_grant", "error_description": "PKCE"})
                if form.get("redirect_uri") != flow["redirect_uri"]:
                    return JSONResponse(status_code=400, content={"error": "invalid_grant"})
                return self._issue_tokens(flow["subject"], flow["granted_scope"], flow["session"].get("access_token", {}))

            if form.get("grant_type") == "refresh_token":
                previous = self.refresh_tokens.pop(form.get("refresh_token", ""), None)
                if previous is None:
                    return JSONResponse(status_code=400, content={"error": "invalid_grant"})
                return self._issue_tokens(previous["subject"], previous["scope"], previous["claims"])

            return JSONResponse(status_code=400, content={"error": "unsupported_grant_type"})

        @self.app.get("/userinfo")
        async def userinfo(request: Request):
            authorization = request.headers.get("authorization", "")
            access_token = authorization[7:] if authorization.startswith("Bearer ") else ""
            if access_token not in self.access_tokens or access_token in self.revoked:
                return JSONResponse(status_code=401, content={"error": "invalid_token"})
            try:
                claims = jwt.decode(access_token, self.secret, algorithms=["HS256"], audience=self.client_id)
            except jwt.InvalidTokenError:
                return JSONResponse(status_code=401, content={"error": "invalid_token"})

            identity = self.identities.get(claims["sub"], {})
            traits = identity.get("traits", {})
            return {
                "sub": claims["sub"],
                "email": claims.get("ext", {}).get("email", traits.get("email")),
                "email_verified": claims.get("ext", {}).get("email_verified", False),
                "given_name": traits.get("name", {}).get("first"),
                "family_name": traits.get("name", {}).get("last"),
            }

        @self.app.post("/oauth2/revoke")
        async def revoke(request: Request):
            form = await self._form(request)
            if not self._client_authenticated(request, form):
                return JSONResponse(status_code=401, content={"error": "invalid_client"})
            self.revoked.append(form.get("token", ""))
            self.refresh_tokens.pop(form.get("token", ""), None)
            return JSONResponse(status_code=200, content={})

        # Token Service: admin API

        @self.app.post("/admin/oauth2/introspect")
        async def introspect(request: Request):
            form = await self._form(request)
            token = self.access_tokens.get(form.get("token", ""))
            if token is None or form.get("token") in self.revoked:
                return {"active": False}
            return {"active": True, "sub": token["subject"], "client_id": self.client_id, "scope": " ".join(token["scope"])}

        @self.app.get("/admin/oauth2/auth/requests/login")
        async def get_login_request(login_challenge: str):
            flow = self.flows.get(login_challenge)
            if flow is None:
                raise HTTPException(status_code=404, detail="Unknown login challenge")
            return {
                "challenge": login_challenge,
                "skip": False,
                "requested_scope": flow["requested_scope"],
                "client": {"client_id": self.client_id},
            }

        @self.app.put("/admin/oauth2/auth/requests/login/accept")
        async def accept_login_request(login_challenge: str, request: Request):
            flow = self.flows.get(login_challenge)
            if flow is None or flow.get("login_verifier"):
                raise HTTPException(status_code=404, detail="Unknown or used login challenge")
            body = await request.json()
            flow["subject"] = body["subject"]
            flow["context"] = body.get("context") or {}
            flow["login_accept"] = body
            flow["login_verifier"] = secrets.token_hex(16)
            return {"redirect_to": f"{self.public_url}/oauth2/auth?{urlencode({'login_verifier': flow['login_verifier']})}"}

        @self.app.get("/admin/oauth2/auth/requests/consent")
        async def get_consent_request(consent_challenge: str):
            flow = self._flow_by("consent_challenge", consent_challenge)
            return {
                "challenge": consent_challenge,
                "subject": flow["subject"],
                "requested_scope": flow["requested_scope"],
                "requested_access_token_audience": [],
                "client": {"client_id": self.client_id},
                "context": flow["context"],
                "skip": False,
            }

        @self.app.put("/admin/oauth2/auth/requests/consent/accept")
        async def accept_consent_request(consent_challenge: str, request: Request):
            flow = self._flow_by("consent_challenge", consent_challenge)
            if flow.get("consent_verifier"):
                raise HTTPException(status_code=404, detail="Used consent challenge")
            body = await request.json()
            flow["granted_scope"] = body.get("grant_scope", [])
            flow["granted_audience"] = body.get("grant_access_token_audience", [])
            flow["session"] = body.get("session") or {}
            flow["consent_verifier"] = secrets.token_hex(16)
            return {"redirect_to": f"{self.public_url}/oauth2/auth?{urlencode({'consent_verifier': flow['consent_verifier']})}"}

        @self.app.get("/admin/oauth2/auth/requests/logout")
        async def get_logout_request(logout_challenge: str):
            logout_request = self.logout_requests.get(logout_challenge)
            if logout_request is None:
                raise HTTPException(status_code=404, detail="Unknown logout challenge")
            return {"challenge": logout_challenge, "subject": logout_request["subject"], "rp_initiated": True}

        @self.app.put("/admin/oauth2/auth/requests/logout/accept")
        async def accept_logout_request(logout_challenge: str):
            logout_request = self.logout_requests.get(logout_challenge)
            if logout_request is None:
                raise HTTPException(status_code=404, detail="Unknown logout challenge")
            logout_request["accepted"] = True
            return {"redirect_to": f"{self.public_url}/oauth2/sessions/logout?state=done"}


def create_app():
    """Create mock Ory application."""
    server = MockOryServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=4444)
