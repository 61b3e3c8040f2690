"""
Shared configuration management for the dashboard authentication broker.
"""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Environments in which cookies are issued without the Secure attribute
INSECURE_COOKIE_ENVS = ("local", "development", "test")


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="BROKER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Identity Service (session provider)
    identity_public_url: str = Field(default="http://localhost:4433")
    identity_session_cookie: str = Field(default="ory_kratos_session")

    # Token Service (OAuth2 / OIDC server)
    token_public_url: str = Field(default="http://localhost:4444")
    token_admin_url: str = Field(default="http://localhost:4445")

    # OAuth2 client registration
    oauth2_client_id: str = Field(default="dashboard")
    oauth2_client_secret: Optional[str] = Field(default=None)
    oauth2_redirect_uri: str = Field(default="http://localhost:3000/auth/callback")
    oauth2_scopes: str = Field(default="openid profile email offline")
    login_remember_for: int = Field(default=3600, ge=0)
    consent_remember_for: int = Field(default=3600, ge=0)

    # Upstream calls sit on the page-load path, keep them short
    upstream_timeout_seconds: float = Field(default=5.0, gt=0, lt=10)

    # Cookies
    cookie_domain: Optional[str] = Field(default=None)
    cookie_secure: Optional[bool] = Field(default=None)
    challenge_ttl_seconds: int = Field(default=600, gt=0)
    access_token_default_ttl: int = Field(default=3600, gt=0)
    refresh_token_ttl_seconds: int = Field(default=60 * 60 * 24 * 30, gt=0)
    default_return_to: str = Field(default="/dashboard")

    # Routing
    route_prefix: str = Field(default="")
    login_challenge_path: str = Field(default="/oauth/hydra-login")
    consent_challenge_path: str = Field(default="/oauth/hydra-consent")
    silent_flow_max_redirects: int = Field(default=10, gt=0)

    # Backend API gateway
    gateway_base_url: str = Field(default="http://localhost:5100")

    # Rate limiting
    rate_limit_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    rate_limit_sweep_interval_seconds: float = Field(default=600.0, gt=0)
    forgot_password_max_attempts: int = Field(default=3, gt=0)
    forgot_password_window_seconds: int = Field(default=15 * 60, gt=0)
    resend_verification_max_attempts: int = Field(default=3, gt=0)
    resend_verification_window_seconds: int = Field(default=5 * 60, gt=0)
    two_factor_max_attempts: int = Field(default=5, gt=0)
    two_factor_window_seconds: int = Field(default=15 * 60, gt=0)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4317")
    enable_console_tracing: bool = Field(default=False)

    @field_validator("rate_limit_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "redis"):
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return value

    @property
    def secure_cookies(self) -> bool:
        """Whether cookies carry the Secure attribute."""
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.env.lower() not in INSECURE_COOKIE_ENVS

    @property
    def scope_list(self) -> List[str]:
        return self.oauth2_scopes.split()


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "broker"
    port: int = 8020
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
