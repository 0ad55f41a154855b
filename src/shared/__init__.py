"""Shared utilities and models for the MCP gateway."""

from shared.models import (
    ApiKeyPrincipal,
    AuditEntry,
    ClientRecord,
    ClientRegistrationMechanism,
    OAuthPrincipal,
    Principal,
    TokenInfo,
    UserBinding,
)
from shared.config import Settings, get_settings
from shared.errors import AuthError, ConfigurationError
from shared.logging import get_logger, setup_logging

__all__ = [
    "ApiKeyPrincipal",
    "AuditEntry",
    "ClientRecord",
    "ClientRegistrationMechanism",
    "OAuthPrincipal",
    "Principal",
    "TokenInfo",
    "UserBinding",
    "Settings",
    "get_settings",
    "AuthError",
    "ConfigurationError",
    "get_logger",
    "setup_logging",
]
