"""
Shared error handling for the dashboard authentication broker.

Every error that can reach a client is a ``BrokerError`` and renders as
``{statusCode, statusMessage, message}`` plus an optional ``data`` object.
Upstream details (URLs, response bodies) stay in ``details`` which is only
ever logged.
"""

from typing import Dict, Any, Optional


class BrokerError(Exception):
    """Base exception for broker errors."""

    status_code: int = 500
    status_message: str = "Internal server error"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None,
                 status_message: Optional[str] = None,
                 data: Optional[Dict[str, Any]] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        if status_message:
            self.status_message = status_message
        self.data = data
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_response(self) -> Dict[str, Any]:
        """Convert to the client-facing error payload."""
        payload: Dict[str, Any] = {
            "statusCode": self.status_code,
            "statusMessage": self.status_message,
            "message": self.message,
        }
        if self.data is not None:
            payload["data"] = self.data
        return payload


class ValidationError(BrokerError):
    """Malformed request body or query."""

    status_code = 400
    status_message = "Invalid request"
    default_message = "Invalid request"


class CsrfMismatchError(BrokerError):
    """State or code verifier did not match the stored challenge.

    The message is deliberately the same for every failed check.
    """

    status_code = 400
    status_message = "Invalid request"
    default_message = "Invalid request"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(details=details)


class AuthenticationError(BrokerError):
    """Missing or rejected credentials."""

    status_code = 401
    status_message = "Unauthorized"
    default_message = "Authentication required"


class UpstreamUnavailableError(BrokerError):
    """Identity Service or Token Service unreachable or answering non-2xx."""

    status_code = 500
    status_message = "Upstream service unavailable"
    default_message = "Upstream service unavailable"

    def __init__(self, service: str, message: Optional[str] = None,
                 status_message: Optional[str] = None,
                 upstream_status: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.service = service
        self.upstream_status = upstream_status
        details = dict(details or {})
        details.setdefault("service", service)
        if upstream_status is not None:
            details.setdefault("upstream_status", upstream_status)
        super().__init__(message, status_message=status_message, details=details)


class TokenExchangeError(UpstreamUnavailableError):
    """Token endpoint answered without an access token."""

    default_message = "Failed to exchange code for tokens"

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("token", details=details)


class RateLimitedError(BrokerError):
    """Caller exceeded the attempt budget of a sensitive endpoint."""

    status_code = 429
    status_message = "Too many requests"
    default_message = "Too many attempts. Please try again later."

    def __init__(self, reset_time: int, message: Optional[str] = None):
        self.reset_time = reset_time
        super().__init__(message, data={"resetTime": reset_time})
