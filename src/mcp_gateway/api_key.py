"""API key verification against the upstream identity API."""

from typing import Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from shared.errors import InvalidApiKey
from shared.logging import get_logger
from shared.models import ApiKeyPrincipal

logger = get_logger(__name__)


class ApiKeyUserResponse(BaseModel):
    """User returned by the identity API for a valid key."""
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    email: str
    type: str = ""


class ApiKeyVerifier:
    """Verifies ``x-api-key`` values with one POST per request."""

    def __init__(self, verification_url: Optional[str], http_client: httpx.AsyncClient) -> None:
        self.verification_url = verification_url
        self.http_client = http_client

    async def verify(self, api_key: str) -> ApiKeyPrincipal:
        """
        Resolve an API key to a principal.

        Raises:
            InvalidApiKey: If the key is rejected or cannot be verified
        """
        if not self.verification_url:
            raise InvalidApiKey("API key authentication is not configured")

        try:
            response = await self.http_client.post(
                self.verification_url,
                json={"strategy": "apikey", "apikey": api_key},
            )
        except httpx.HTTPError as e:
            raise InvalidApiKey(f"API key verification unavailable: {e}") from e

        if not response.is_success:
            raise InvalidApiKey("Invalid API key")

        try:
            user = ApiKeyUserResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise InvalidApiKey("Invalid API key") from e

        return ApiKeyPrincipal(
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            account_type=user.type,
        )
