"""
Backend API gateway forwarder.
"""

from typing import Dict, List, Optional, Tuple

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import UpstreamUnavailableError
from ..cookies import ACCESS_TOKEN_COOKIE, RequestContext
from .base import UpstreamClient


FORWARDED_REQUEST_HEADERS = ("content-type", "accept", "accept-language")
HOP_BY_HOP_RESPONSE_HEADERS = frozenset({
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "transfer-encoding",
})

# Backend answers, whatever their status, are relayed to the caller
ANY_STATUS = range(100, 600)


class GatewayClient(UpstreamClient):
    """Forwards browser requests to the backend API gateway with credentials attached."""

    service = "gateway"

    def __init__(self, base_url: str, circuit_breaker: Optional[CircuitBreaker] = None, **kwargs):
        super().__init__(base_url, **kwargs)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=UpstreamUnavailableError,
            name="gateway",
        )

    @staticmethod
    def build_headers(ctx: RequestContext) -> Dict[str, str]:
        """Headers sent upstream: content negotiation, cookies and a bearer token."""
        headers = {
            name: ctx.headers[name]
            for name in FORWARDED_REQUEST_HEADERS
            if ctx.headers.get(name)
        }
        if ctx.cookie_header:
            headers["cookie"] = ctx.cookie_header

        access_token = ctx.cookie(ACCESS_TOKEN_COOKIE)
        if access_token:
            headers["authorization"] = f"Bearer {access_token}"
        elif ctx.header("authorization"):
            headers["authorization"] = ctx.header("authorization")
        return headers

    @staticmethod
    def response_headers(response: httpx.Response) -> List[Tuple[str, str]]:
        """Relayable response headers; repeated headers such as Set-Cookie stay separate."""
        return [
            (key, value)
            for key, value in response.headers.multi_items()
            if key.lower() not in HOP_BY_HOP_RESPONSE_HEADERS
        ]

    async def forward(self, method: str, path: str, ctx: RequestContext,
                      query: str = "", body: Optional[bytes] = None) -> httpx.Response:
        target = "/" + path.lstrip("/")
        if query:
            target = f"{target}?{query}"

        async def _forward() -> httpx.Response:
            return await self._request(
                method,
                target,
                operation="forward",
                accept=ANY_STATUS,
                headers=self.build_headers(ctx),
                content=body if body else None,
            )

        try:
            return await self.circuit_breaker.call(_forward)
        except CircuitBreakerOpenException as e:
            self.logger.warning("Gateway circuit open", path=target)
            raise UpstreamUnavailableError(
                self.service,
                details={"operation": "forward", "error": "circuit open"}
            ) from e
