"""Configuration for the MCP gateway.

Settings come from environment variables (and a ``.env`` file), grouped
by prefix: ``GOOGLE_`` for the upstream client, ``MCP_AUTH_`` for the
authorization server, ``MCP_SESSION_`` for the session store. A YAML
file named by ``MCP_CONFIG_PATH`` may supply the same values; explicit
values in the file win over the environment.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]


def _env(prefix: str) -> SettingsConfigDict:
    return SettingsConfigDict(env_prefix=prefix, env_file=".env", extra="ignore")


class GoogleSettings(BaseSettings):
    """Upstream identity provider (Google) configuration."""
    client_id: Optional[str] = Field(default=None, description="Upstream OAuth client id")
    client_secret: Optional[str] = Field(default=None, description="Upstream OAuth client secret")
    authorization_endpoint: str = Field(default="https://accounts.google.com/o/oauth2/v2/auth")
    token_endpoint: str = Field(default="https://oauth2.googleapis.com/token")
    tokeninfo_endpoint: str = Field(default="https://oauth2.googleapis.com/tokeninfo")
    scopes: list[str] = Field(default_factory=lambda: list(GOOGLE_SCOPES))

    model_config = _env("GOOGLE_")


class AuthSettings(BaseSettings):
    """Authorization server and request authentication configuration."""
    base_url: str = Field(default="http://localhost:3000", description="Issuer URL")
    mcp_path: str = Field(default="/mcp", description="Path of the protected MCP resource")
    allowed_email_domain: str = Field(default="@webfx.com")
    public_paths: list[str] = Field(default_factory=list)
    http_timeout_seconds: float = Field(default=15.0, ge=1, le=60)
    api_key_verification_url: Optional[str] = Field(
        default=None,
        description="Upstream identity API used to verify x-api-key headers"
    )

    database_path: str = Field(default="data/mcp.sqlite3")

    enable_audit: bool = True
    audit_log_path: str = Field(default="logs/auth-audit.log")

    model_config = _env("MCP_AUTH_")

    @property
    def issuer_url(self) -> str:
        return self.base_url.rstrip("/")

    @property
    def mcp_server_url(self) -> str:
        return f"{self.issuer_url}/{self.mcp_path.lstrip('/')}"


class SessionSettings(BaseSettings):
    """Session store configuration."""
    redis_url: str = Field(default="redis://localhost:6379/0")
    ttl_seconds: int = Field(default=86_400, gt=0)
    key_prefix: str = Field(default="mcp:sessions:")

    model_config = _env("MCP_SESSION_")


class Settings(BaseSettings):
    """Process-wide settings: server options plus one group per component."""
    environment: str = Field(default="development")
    debug: bool = False
    log_level: str = Field(default="INFO")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    google: GoogleSettings = Field(default_factory=GoogleSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)

    model_config = _env("MCP_")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Build settings from a YAML file; a missing file means defaults."""
        path = Path(path)
        data = yaml.safe_load(path.read_text()) if path.is_file() else None
        return cls(**(data or {}))

    def require_upstream_credentials(self) -> None:
        """
        Fail fast when the upstream OAuth client is not configured.

        Raises:
            ConfigurationError: If the client id or secret is missing
        """
        missing = [
            name for name, value in (
                ("GOOGLE_CLIENT_ID", self.google.client_id),
                ("GOOGLE_CLIENT_SECRET", self.google.client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


@lru_cache
def get_settings() -> Settings:
    """Settings for this process, read once."""
    return Settings.from_yaml(os.environ.get("MCP_CONFIG_PATH", "config/settings.yaml"))
