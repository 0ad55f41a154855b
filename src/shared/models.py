"""Core data models for the MCP gateway.

This module defines the records exchanged between the client registry,
the OAuth provider, the session store and the request authentication
chain.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClientRegistrationMechanism(str, Enum):
    """How an OAuth client made itself known to the authorization server."""
    DCR = "DCR"    # Dynamic Client Registration
    CIMD = "CIMD"  # Client ID Metadata Document


class ClientRecord(BaseModel):
    """
    Registration metadata for an OAuth client.

    DCR records are persisted; CIMD records are fetched from the
    ``client_id`` URL on every resolution. Provider-defined metadata
    fields are kept as extras and round-trip unchanged.
    """
    model_config = ConfigDict(extra="allow")

    client_id: str
    redirect_uris: list[str] = Field(..., min_length=1)
    client_name: Optional[str] = None
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    grant_types: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"
    scope: Optional[str] = None


class AuthorizationParams(BaseModel):
    """Parameters of an inbound /authorize request."""
    redirect_uri: str
    code_challenge: str
    state: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    # Accepted but never forwarded upstream
    resource: Optional[str] = None


class TokenInfo(BaseModel):
    """
    The verified result of an access token.

    Ephemeral: recomputed on every verification call.
    """
    model_config = ConfigDict(extra="allow")

    token: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    expires_at: int
    email: str
    sub: Optional[str] = None


class UserBinding(BaseModel):
    """First successful authentication of an upstream user against a client."""
    client_id: str
    google_user_id: str
    email: str
    token_info: dict[str, Any] = Field(default_factory=dict)
    mechanism: ClientRegistrationMechanism = ClientRegistrationMechanism.CIMD


class OAuthPrincipal(BaseModel):
    """Identity resolved from a bearer token."""
    strategy: Literal["oauth"] = "oauth"
    email: str
    upstream_user_id: str
    scopes: list[str] = Field(default_factory=list)


class ApiKeyPrincipal(BaseModel):
    """Identity resolved from an x-api-key header."""
    strategy: Literal["apikey"] = "apikey"
    email: str
    first_name: str = ""
    last_name: str = ""
    account_type: str = ""


Principal = Annotated[
    Union[OAuthPrincipal, ApiKeyPrincipal],
    Field(discriminator="strategy"),
]


class AuditEventType(str, Enum):
    """Auth events recorded in the audit trail."""
    CLIENT_REGISTERED = "client_registered"
    USER_FIRST_SEEN = "user_first_seen"


class AuditEntry(BaseModel):
    """
    Audit log entry for authentication events.

    Captures who, which client and when; payloads are redacted.
    """
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    event: AuditEventType
    client_id: str
    email: Optional[str] = None
    google_user_id: Optional[str] = None
    mechanism: Optional[ClientRegistrationMechanism] = None
    details: dict[str, Any] = Field(default_factory=dict)
