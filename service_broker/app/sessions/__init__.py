"""
Session resolution for the broker.

Credential sources are tried in a fixed priority order; the first one that
yields a user wins.
"""

from .resolver import (
    AccessTokenSource,
    AuthState,
    CredentialSource,
    IdentitySessionSource,
    SessionResolver,
)

__all__ = [
    "AccessTokenSource",
    "AuthState",
    "CredentialSource",
    "IdentitySessionSource",
    "SessionResolver",
]
