"""
Request and response models for the broker.
"""

import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

from shared.errors import UpstreamUnavailableError


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class TokenPair(BaseModel):
    """Token endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    id_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


class ResolvedUser(BaseModel):
    """Normalized user record, independent of the session kind that produced it."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str = ""
    email_verified: bool = Field(default=False, alias="emailVerified")
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    avatar: Optional[str] = None
    roles: List[str] = Field(default_factory=list)

    @classmethod
    def from_identity(cls, identity: Any) -> "ResolvedUser":
        """Build a user from an Identity Service identity record.

        A record of unexpected shape is an Identity Service fault.
        """
        try:
            return cls._from_identity(identity)
        except ValueError as e:
            raise UpstreamUnavailableError(
                "identity", details={"operation": "whoami", "error": "unexpected identity record"}
            ) from e

    @classmethod
    def _from_identity(cls, identity: Any) -> "ResolvedUser":
        if not isinstance(identity, dict):
            raise ValueError("identity must be an object")
        traits = identity.get("traits") or {}
        if not isinstance(traits, dict):
            raise ValueError("identity traits must be an object")
        name = traits.get("name") if isinstance(traits.get("name"), dict) else {}
        email = traits.get("email") or traits.get("email_address") or ""

        email_verified = traits.get("email_verified")
        if email_verified is None:
            email_verified = isinstance(email, str) and any(
                isinstance(address, dict) and address.get("verified")
                and str(address.get("value", "")).lower() == email.lower()
                for address in identity.get("verifiable_addresses") or []
            )

        metadata = identity.get("metadata_public") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata_public must be an object")
        return cls(
            id=identity.get("id", ""),
            email=email,
            email_verified=bool(email_verified),
            first_name=name.get("first") or traits.get("given_name") or "",
            last_name=name.get("last") or traits.get("family_name") or "",
            avatar=traits.get("avatar") or traits.get("picture"),
            roles=metadata.get("roles") or [],
        )

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "ResolvedUser":
        """Build a user from OIDC userinfo claims; unexpected claim types are a Token Service fault."""
        try:
            return cls._from_claims(claims)
        except ValueError as e:
            raise UpstreamUnavailableError(
                "token", details={"operation": "userinfo", "error": "unexpected claims"}
            ) from e

    @classmethod
    def _from_claims(cls, claims: Dict[str, Any]) -> "ResolvedUser":
        name = claims.get("name") if isinstance(claims.get("name"), dict) else {}
        return cls(
            id=claims.get("sub", ""),
            email=claims.get("email") or "",
            email_verified=bool(claims.get("email_verified", False)),
            first_name=claims.get("given_name") or name.get("first") or "",
            last_name=claims.get("family_name") or name.get("last") or "",
            avatar=claims.get("picture"),
            roles=[],
        )

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CallbackRequest(BaseModel):
    """Body of ``POST /oauth/callback``."""

    code: str = Field(min_length=1)
    code_verifier: str = Field(min_length=43, max_length=128)
    redirect_uri: str
    state: str = Field(min_length=1)

    @field_validator("redirect_uri")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("redirect_uri must be an absolute URL")
        return value


class EmailRequest(BaseModel):
    """Body of the email-sending endpoints."""

    email: str

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value


class TwoFactorRequest(BaseModel):
    """Body of ``PUT /two-factor``."""

    enabled: StrictBool
