"""OAuth server provider backed by Google.

MCP clients register with this service (DCR) or identify themselves by
a metadata URL (CIMD), but the actual sign-in happens at Google using
the gateway's own pre-registered upstream credentials. Only users whose
email ends with the configured domain are admitted.

Token expiry normalization: whenever an absolute ``expiry_date`` is
known for an upstream token set, ``expires_in`` is recomputed from it at
response time (floored to whole seconds, never negative). Both grants
capture ``expiry_date`` when the upstream response arrives, so the value
returned to the client never exceeds what the upstream granted; the
skew tolerated is the time spent between receiving the upstream response
and building ours.
"""

import math
from typing import Any, Optional

from shared.config import AuthSettings
from shared.errors import (
    AudienceMismatch,
    DomainRestricted,
    UpstreamMissingField,
)
from shared.logging import get_logger
from shared.models import AuthorizationParams, ClientRecord, TokenInfo
from shared.schema import OAUTH_TOKENS_SCHEMA, validate_schema
from mcp_gateway.bindings import UserBindingStore
from mcp_gateway.clients import ClientRegistry
from mcp_gateway.upstream import GoogleOAuthClient, now_ms

logger = get_logger(__name__)

# Token-info fields consumed into TokenInfo's named fields
_TOKEN_INFO_CONSUMED = {"aud", "scope", "scopes", "exp", "expiry_date", "expires_in", "email"}


def set_expires_in(tokens: dict[str, Any], current_ms: Optional[int] = None) -> dict[str, Any]:
    """Recompute ``expires_in`` from ``expiry_date`` and drop the latter."""
    tokens = dict(tokens)
    expiry_date = tokens.pop("expiry_date", None)
    if isinstance(expiry_date, (int, float)):
        current_ms = now_ms() if current_ms is None else current_ms
        tokens["expires_in"] = max(0, math.floor((expiry_date - current_ms) / 1000))
    return tokens


class GoogleOAuthProvider:
    """
    Four-operation OAuth server provider.

    There is no per-session state: each operation is a request/response
    exchange with the upstream IdP plus, on code exchange, one binding
    transaction.
    """

    # Google validates PKCE on its token endpoint
    skip_local_pkce_validation = True

    def __init__(
        self,
        settings: AuthSettings,
        upstream: GoogleOAuthClient,
        clients: ClientRegistry,
        bindings: UserBindingStore
    ) -> None:
        self.settings = settings
        self.upstream = upstream
        self._clients = clients
        self.bindings = bindings

    @property
    def clients_store(self) -> ClientRegistry:
        return self._clients

    def check_domain(self, email: Optional[str]) -> str:
        """
        Enforce the allowed email domain.

        Raises:
            DomainRestricted: If the email is missing or outside the domain
        """
        domain = self.settings.allowed_email_domain.lower()
        if not email or not email.lower().endswith(domain):
            logger.warning("Email outside allowed domain", email=email, allowed_domain=domain)
            raise DomainRestricted(f"Access restricted to {domain} email addresses")
        return email

    def authorize(self, client: ClientRecord, params: AuthorizationParams) -> str:
        """
        Build the upstream authorization URL to redirect the user to.

        ``params.resource`` is deliberately not forwarded; Google rejects
        resource indicators.
        """
        logger.info(
            "Redirecting to upstream authorization",
            client_id=client.client_id,
            has_state=params.state is not None,
        )
        return self.upstream.generate_auth_url(
            redirect_uri=params.redirect_uri,
            code_challenge=params.code_challenge,
            state=params.state,
        )

    async def challenge_for_authorization_code(
        self,
        client: ClientRecord,
        authorization_code: str
    ) -> str:
        # Challenges are not stored locally
        return ""

    def _validate_tokens(self, tokens: dict[str, Any]) -> dict[str, Any]:
        is_valid, errors = validate_schema(tokens, OAUTH_TOKENS_SCHEMA)
        if not is_valid:
            raise UpstreamMissingField(f"Upstream error: {'; '.join(errors)}")
        return tokens

    async def exchange_authorization_code(
        self,
        client: ClientRecord,
        authorization_code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Exchange an authorization code at the upstream and bind the user.

        Raises:
            UpstreamError: If an upstream call fails
            UpstreamMissingField: If access_token, sub or email is absent
            DomainRestricted: If the email is outside the allowed domain
        """
        tokens = await self.upstream.get_token(
            authorization_code,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
        )
        access_token = tokens.get("access_token")
        if not access_token:
            raise UpstreamMissingField("Upstream error: Missing access_token")

        token_info = await self.upstream.get_token_info(access_token)
        google_user_id = token_info.get("sub")
        email = token_info.get("email")
        if not google_user_id:
            raise UpstreamMissingField("Upstream error: Missing sub")
        if not email:
            raise UpstreamMissingField("Upstream error: Missing email")
        self.check_domain(email)
        tokens = self._validate_tokens(set_expires_in(tokens))

        await self.bindings.record_if_absent(
            client.client_id,
            google_user_id,
            email,
            token_info,
        )

        return tokens

    async def exchange_refresh_token(
        self,
        client: ClientRecord,
        refresh_token: str,
        scopes: Optional[list[str]] = None
    ) -> dict[str, Any]:
        """
        Exchange a refresh token at the upstream token endpoint.

        Raises:
            UpstreamRefreshFailed: On a non-2xx upstream response
        """
        tokens = await self.upstream.refresh(refresh_token, scopes=scopes)
        logger.info("Access token refreshed", client_id=client.client_id)
        return self._validate_tokens(set_expires_in(tokens))

    async def verify_access_token(self, token: str) -> TokenInfo:
        """
        Verify an access token against the upstream token-info endpoint.

        Raises:
            UpstreamError: If the upstream lookup fails
            AudienceMismatch: If the token was issued to another client
            DomainRestricted: If the email is outside the allowed domain
        """
        info = await self.upstream.get_token_info(token)
        if info.get("aud") != self.upstream.client_id:
            raise AudienceMismatch("Token was not issued to this client")
        email = self.check_domain(info.get("email"))

        extras = {k: v for k, v in info.items() if k not in _TOKEN_INFO_CONSUMED}
        return TokenInfo(
            **extras,
            token=token,
            client_id=info["aud"],
            scopes=info.get("scopes") or [],
            # milliseconds to seconds
            expires_at=int(info.get("expiry_date", 0)) // 1000,
            email=email,
        )
