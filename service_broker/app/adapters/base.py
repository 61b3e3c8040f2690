"""
Common plumbing for upstream HTTP clients.
"""

import time
from typing import Any, Dict, Iterable, Optional

import httpx

from shared.errors import UpstreamUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


class UpstreamClient:
    """Wraps httpx calls and converts transport errors and non-2xx answers."""

    service = "upstream"

    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.metrics = metrics
        self.logger = get_logger(f"broker.{self.service}_client")

    def _client(self, base_url: Optional[str] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url if base_url is not None else self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            follow_redirects=False,
        )

    async def _request(self, method: str, path: str, *, operation: str,
                       accept: Iterable[int] = (),
                       base_url: Optional[str] = None,
                       **kwargs) -> httpx.Response:
        """Perform one upstream call.

        Statuses listed in ``accept`` are returned to the caller as-is; any
        other status outside 2xx raises ``UpstreamUnavailableError``.
        """
        start_time = time.perf_counter()
        outcome = "error"
        try:
            async with self._client(base_url) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.logger.error(
                "Upstream request failed",
                operation=operation,
                error_type=type(e).__name__,
                error=str(e)
            )
            raise UpstreamUnavailableError(
                self.service,
                details={"operation": operation, "error": type(e).__name__}
            ) from e
        else:
            if response.is_success or response.status_code in accept:
                outcome = "ok"
            else:
                outcome = str(response.status_code)
        finally:
            if self.metrics is not None:
                self.metrics.observe_histogram(
                    "upstream_request_duration_seconds",
                    time.perf_counter() - start_time,
                    upstream=self.service,
                    operation=operation,
                    outcome=outcome,
                )

        if outcome != "ok":
            self.logger.error(
                "Upstream returned error status",
                operation=operation,
                status_code=response.status_code
            )
            raise UpstreamUnavailableError(
                self.service,
                upstream_status=response.status_code,
                details={"operation": operation, "body": response.text[:200]}
            )

        return response

    def _json(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(
                self.service,
                details={"operation": operation, "error": "invalid JSON"}
            ) from e
        if not isinstance(payload, dict):
            raise UpstreamUnavailableError(
                self.service,
                details={"operation": operation, "error": "unexpected payload"}
            )
        return payload
