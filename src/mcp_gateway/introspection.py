"""Token introspection (RFC 7662).

The server side turns provider verification into an introspection
response. The client side, ``IntrospectionTokenVerifier``, is how the
request authentication chain (and peer services) resolve a bearer
token: always over HTTP, never by calling the provider directly.
"""

from typing import Any

import httpx

from shared.errors import AuthError, InvalidToken
from shared.logging import get_logger
from shared.models import TokenInfo
from mcp_gateway.provider import GoogleOAuthProvider

logger = get_logger(__name__)

# Never echoed back by introspection
_PRIVATE_FIELDS = {"token", "refresh_token", "client_secret", "access_token", "id_token"}


def to_introspection_response(token_info: TokenInfo) -> dict[str, Any]:
    """Flatten verified token info into an active introspection response."""
    data = token_info.model_dump(exclude_none=True)
    client_id = data.pop("client_id")
    scopes = data.pop("scopes", [])
    expires_at = data.pop("expires_at")
    for field in _PRIVATE_FIELDS:
        data.pop(field, None)
    return {
        **data,
        "active": True,
        "client_id": client_id,
        "scope": " ".join(scopes),
        "exp": expires_at,
    }


def inactive_response(error: Exception) -> dict[str, Any]:
    description = error.description if isinstance(error, AuthError) else str(error)
    return {
        "active": False,
        "error": "Unauthorized",
        "error_description": f"Invalid token: {description}",
    }


async def introspect(provider: GoogleOAuthProvider, token: str) -> tuple[int, dict[str, Any]]:
    """
    Verify a token and shape the result as an introspection response.

    Returns:
        Tuple of (HTTP status, response body)
    """
    try:
        token_info = await provider.verify_access_token(token)
    except AuthError as e:
        logger.warning("Token introspection failed", error=e.description, error_code=e.error)
        return 401, inactive_response(e)
    return 200, to_introspection_response(token_info)


class IntrospectionTokenVerifier:
    """Resolves bearer tokens through the introspection endpoint."""

    def __init__(self, introspection_url: str, http_client: httpx.AsyncClient) -> None:
        self.introspection_url = introspection_url
        self.http_client = http_client

    async def verify_access_token(self, token: str) -> dict[str, Any]:
        """
        Introspect a token over HTTP.

        Returns:
            The introspection payload with ``scopes`` as a list

        Raises:
            InvalidToken: If the token is inactive or introspection fails
        """
        try:
            response = await self.http_client.post(
                self.introspection_url,
                data={"token": token},
            )
        except httpx.HTTPError as e:
            raise InvalidToken(f"Token introspection unavailable: {e}") from e

        if not response.is_success:
            raise InvalidToken(f"Invalid or expired token: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidToken("Introspection response is not JSON") from e
        if not isinstance(data, dict) or not data.get("active"):
            raise InvalidToken("Token is not active")

        scope = data.get("scope") or ""
        return {
            **data,
            "client_id": data.get("client_id"),
            "scopes": scope.split(" ") if scope else [],
            "expires_at": data.get("exp"),
        }
