"""Error taxonomy for the authentication bridge.

Every error carries an OAuth-style ``error`` code, a human readable
description and the HTTP status it should be rendered with. None of
them is retried inside the gateway; they are surfaced to the caller.
"""

from typing import Any, Optional


class ConfigurationError(Exception):
    """Required configuration is missing. Fatal at startup."""
    pass


class AuthError(Exception):
    """Base exception for authentication and authorization failures."""

    error: str = "server_error"
    status_code: int = 500

    def __init__(
        self,
        description: str,
        *,
        error: Optional[str] = None,
        status_code: Optional[int] = None
    ) -> None:
        super().__init__(description)
        self.description = description
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "error_description": self.description}


class ClientNotFound(AuthError):
    error = "invalid_client"
    status_code = 400


class SpoofedClientId(AuthError):
    """The fetched client metadata document names a different client_id."""
    error = "invalid_client"
    status_code = 400


class ClientMetadataFetchFailed(AuthError):
    error = "invalid_client"
    status_code = 400


class UpstreamMissingField(AuthError):
    error = "server_error"
    status_code = 502


class DomainRestricted(AuthError):
    error = "access_denied"
    status_code = 401


class AudienceMismatch(AuthError):
    error = "invalid_token"
    status_code = 401


class InvalidToken(AuthError):
    error = "invalid_token"
    status_code = 401


class UpstreamError(AuthError):
    """An upstream HTTP call failed; keeps the status and body for diagnostics."""
    error = "server_error"
    status_code = 502

    def __init__(
        self,
        description: str,
        *,
        upstream_status: Optional[int] = None,
        upstream_body: str = "",
        **kwargs: Any
    ) -> None:
        super().__init__(description, **kwargs)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class UpstreamRefreshFailed(UpstreamError):
    error = "invalid_grant"
    status_code = 400


class SessionNotFound(AuthError):
    error = "session_not_found"
    status_code = 404


class SessionEmailMismatch(AuthError):
    error = "session_mismatch"
    status_code = 403


class InvalidApiKeyHeader(AuthError):
    error = "invalid_request"
    status_code = 400


class InvalidApiKey(AuthError):
    error = "invalid_api_key"
    status_code = 401
