"""
Adapters package for the broker.

Contains HTTP client wrappers for the upstream systems. These adapters
encapsulate:

- Base URLs and request shapes
- Timeouts and the gateway circuit breaker
- Error handling that maps to shared errors

Adapters never touch cookies of the browser response; callers decide what to
persist.
"""

from .identity_client import IdentityClient
from .token_client import TokenClient
from .gateway_client import GatewayClient

__all__ = [
    "IdentityClient",
    "TokenClient",
    "GatewayClient",
]
