"""
Authentication broker service package.

The broker sits between the dashboard browser, the Identity Service (browser
sessions) and the Token Service (OAuth2/OIDC), enforcing:
- Authorization Code flow with PKCE and challenge cookies
- Login, consent and logout challenge handshakes
- Dual session resolution (identity session first, access token second)
- Token cookie lifecycle: exchange, refresh, revocation
- Attempt limiting for email-sending endpoints

Structure:
- app.main: FastAPI app, routes, and wiring.
- app.adapters: HTTP clients for the Identity Service, Token Service and API gateway.
- app.flow: Authorization state machine and orchestrator.
- app.sessions: Credential sources and the session resolver.
- app.tokens: Token lifecycle manager.
- app.ratelimit: Fixed-window attempt limiters.
"""
