"""HTTP client for the upstream identity provider (Google).

Wraps the three upstream endpoints the gateway talks to: the
authorization endpoint (URL construction only), the token endpoint and
the token-info endpoint. Calls are never retried here.
"""

import time
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from shared.config import GoogleSettings
from shared.errors import UpstreamError, UpstreamRefreshFailed
from shared.logging import get_logger

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class GoogleOAuthClient:
    """
    Stateless client for Google's OAuth 2.0 endpoints.

    Uses the gateway's own upstream credentials; MCP client credentials
    never reach Google.
    """

    def __init__(self, settings: GoogleSettings, http_client: httpx.AsyncClient) -> None:
        self.settings = settings
        self.http_client = http_client

    @property
    def client_id(self) -> str:
        return self.settings.client_id or ""

    def generate_auth_url(
        self,
        redirect_uri: str,
        code_challenge: str,
        state: Optional[str] = None
    ) -> str:
        """Build the upstream authorization request URL (PKCE S256)."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "access_type": "offline",
            # Google only issues a refresh token on explicit consent
            "prompt": "consent",
            "redirect_uri": redirect_uri,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "scope": " ".join(self.settings.scopes),
        }
        if state:
            params["state"] = state
        return f"{self.settings.authorization_endpoint}?{urlencode(params)}"

    async def _post_token(self, data: dict[str, str]) -> httpx.Response:
        try:
            return await self.http_client.post(
                self.settings.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream token endpoint unreachable: {e}") from e

    @staticmethod
    def _with_expiry_date(tokens: dict[str, Any], received_at_ms: int) -> dict[str, Any]:
        # Absolute expiry, captured when the response arrived
        expires_in = tokens.get("expires_in")
        if isinstance(expires_in, (int, float)) and "expiry_date" not in tokens:
            tokens["expiry_date"] = received_at_ms + int(expires_in * 1000)
        return tokens

    async def get_token(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Raises:
            UpstreamError: On a non-2xx or non-JSON upstream response
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.settings.client_secret or "",
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        if redirect_uri:
            data["redirect_uri"] = redirect_uri

        response = await self._post_token(data)
        if not response.is_success:
            logger.error(
                "Authorization code exchange failed",
                status=response.status_code,
                body=response.text,
            )
            raise UpstreamError(
                f"Upstream error: code exchange failed ({response.status_code})",
                upstream_status=response.status_code,
                upstream_body=response.text,
            )
        return self._with_expiry_date(self._json(response), now_ms())

    async def refresh(
        self,
        refresh_token: str,
        scopes: Optional[list[str]] = None
    ) -> dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Posts straight to the token endpoint; the refresh token is the
        only state involved.

        Raises:
            UpstreamRefreshFailed: On a non-2xx upstream response
        """
        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.settings.client_secret or "",
            "refresh_token": refresh_token,
        }
        if scopes:
            data["scope"] = " ".join(scopes)

        response = await self._post_token(data)
        if not response.is_success:
            logger.error(
                "Token refresh failed",
                status=response.status_code,
                body=response.text,
            )
            raise UpstreamRefreshFailed(
                "Upstream error: Token refresh failed",
                upstream_status=response.status_code,
                upstream_body=response.text,
            )
        return self._with_expiry_date(self._json(response), now_ms())

    async def get_token_info(self, access_token: str) -> dict[str, Any]:
        """
        Look up an access token at the token-info endpoint.

        Returns the upstream payload with ``scopes`` split into a list and
        ``expiry_date`` in epoch milliseconds.

        Raises:
            UpstreamError: On a non-2xx or non-JSON upstream response
        """
        try:
            response = await self.http_client.get(
                self.settings.tokeninfo_endpoint,
                params={"access_token": access_token},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream token-info endpoint unreachable: {e}") from e

        if not response.is_success:
            raise UpstreamError(
                f"Upstream error: token info lookup failed ({response.status_code})",
                upstream_status=response.status_code,
                upstream_body=response.text,
            )

        info = self._json(response)
        scope = info.get("scope") or ""
        info["scopes"] = scope.split() if isinstance(scope, str) else list(scope)
        if "exp" in info:
            info["expiry_date"] = int(info["exp"]) * 1000
        elif "expires_in" in info:
            info["expiry_date"] = now_ms() + int(info["expires_in"]) * 1000
        return info

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamError(
                "Upstream returned a non-JSON body",
                upstream_status=response.status_code,
                upstream_body=response.text,
            ) from e
        if not isinstance(payload, dict):
            raise UpstreamError(
                "Upstream returned an unexpected payload",
                upstream_status=response.status_code,
                upstream_body=response.text,
            )
        return payload
