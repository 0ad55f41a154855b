"""Tests for the Google-backed OAuth provider and its upstream client."""

import time
from urllib.parse import parse_qs, urlparse

import pytest

from shared.errors import (
    AudienceMismatch,
    DomainRestricted,
    UpstreamError,
    UpstreamMissingField,
    UpstreamRefreshFailed,
)
from shared.models import AuditEventType, AuthorizationParams, ClientRecord

from conftest import CIMD_CLIENT_ID, GOOGLE_CLIENT_ID

CLIENT = ClientRecord(
    client_id=CIMD_CLIENT_ID,
    redirect_uris=["https://client.example.com/callback"],
)


class TestSetExpiresIn:
    """Tests for expires_in normalization."""

    def test_recomputes_from_expiry_date(self):
        """Test that expires_in is floored seconds until expiry_date."""
        from mcp_gateway.provider import set_expires_in

        tokens = set_expires_in(
            {"access_token": "a", "expires_in": 3599, "expiry_date": 1_000_000 + 1_500},
            current_ms=1_000_000,
        )

        assert tokens["expires_in"] == 1
        assert "expiry_date" not in tokens

    def test_never_negative(self):
        """Test that an already expired token reports zero."""
        from mcp_gateway.provider import set_expires_in

        tokens = set_expires_in({"expiry_date": 1_000}, current_ms=5_000)

        assert tokens["expires_in"] == 0

    def test_without_expiry_date_is_unchanged(self):
        """Test that tokens without an absolute expiry pass through."""
        from mcp_gateway.provider import set_expires_in

        tokens = {"access_token": "a", "expires_in": 3599}

        assert set_expires_in(tokens) == tokens


class TestAuthorize:
    """Tests for building the upstream authorization URL."""

    @pytest.mark.asyncio
    async def test_authorize_url(self, provider):
        """Test the redirect carries PKCE, state and the upstream client id."""
        url = provider.authorize(CLIENT, AuthorizationParams(
            redirect_uri="https://client.example.com/callback",
            code_challenge="abc",
            state="xyz",
            resource="https://mcp.example.com/mcp",
        ))

        parsed = urlparse(url)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["client_id"] == GOOGLE_CLIENT_ID
        assert query["code_challenge"] == "abc"
        assert query["code_challenge_method"] == "S256"
        assert query["state"] == "xyz"
        assert query["redirect_uri"] == "https://client.example.com/callback"
        assert query["access_type"] == "offline"
        assert query["prompt"] == "consent"
        assert "resource" not in query

    @pytest.mark.asyncio
    async def test_authorize_without_state(self, provider):
        """Test that state is omitted when the client sent none."""
        url = provider.authorize(CLIENT, AuthorizationParams(
            redirect_uri="https://client.example.com/callback",
            code_challenge="abc",
        ))

        assert "state=" not in url

    @pytest.mark.asyncio
    async def test_no_local_challenge(self, provider):
        """Test that PKCE is left to the upstream."""
        assert provider.skip_local_pkce_validation is True
        assert await provider.challenge_for_authorization_code(CLIENT, "code") == ""


class TestExchangeAuthorizationCode:
    """Tests for the authorization code grant."""

    @pytest.mark.asyncio
    async def test_exchange_binds_user(self, provider, bindings, upstream):
        """Test a successful exchange returns tokens and records the binding."""
        tokens = await provider.exchange_authorization_code(
            CLIENT, "good-code", code_verifier="verifier",
            redirect_uri="https://client.example.com/callback",
        )

        assert tokens["access_token"] == "ya29.access"
        assert tokens["refresh_token"] == "1//refresh"
        assert "expiry_date" not in tokens
        assert 3590 <= tokens["expires_in"] <= 3599

        binding = await bindings.get(CIMD_CLIENT_ID, "google-user-1")
        assert binding.email == "jane@webfx.com"

        token_request = upstream.requests_to("oauth2.googleapis.com")[0]
        form = {k: v[0] for k, v in parse_qs(token_request.content.decode()).items()}
        assert form["grant_type"] == "authorization_code"
        assert form["code_verifier"] == "verifier"
        assert form["client_id"] == GOOGLE_CLIENT_ID

    @pytest.mark.asyncio
    async def test_second_exchange_keeps_single_binding(self, provider, bindings):
        """Test that repeat sign-ins do not duplicate the binding."""
        await provider.exchange_authorization_code(CLIENT, "code-1", code_verifier="v")
        await provider.exchange_authorization_code(CLIENT, "code-2", code_verifier="v")

        assert await bindings.count(CIMD_CLIENT_ID, "google-user-1") == 1

    @pytest.mark.asyncio
    async def test_missing_access_token(self, provider, upstream):
        """Test that a token response without access_token is rejected."""
        upstream.token_response = (200, {"token_type": "Bearer", "expires_in": 3599})

        with pytest.raises(UpstreamMissingField, match="access_token"):
            await provider.exchange_authorization_code(CLIENT, "code", code_verifier="v")

    @pytest.mark.asyncio
    async def test_missing_sub(self, provider, upstream, bindings):
        """Test that token info without sub is rejected and nothing is bound."""
        upstream.add_token_info("ya29.access", sub=None)

        with pytest.raises(UpstreamMissingField, match="sub"):
            await provider.exchange_authorization_code(CLIENT, "code", code_verifier="v")

    @pytest.mark.asyncio
    async def test_missing_email(self, provider, upstream):
        """Test that token info without email is rejected."""
        upstream.add_token_info("ya29.access", email=None)

        with pytest.raises(UpstreamMissingField, match="email"):
            await provider.exchange_authorization_code(CLIENT, "code", code_verifier="v")

    @pytest.mark.asyncio
    async def test_domain_restricted(self, provider, upstream, bindings):
        """Test that users outside the allowed domain get no binding."""
        upstream.add_token_info("ya29.access", email="mallory@example.com")

        with pytest.raises(DomainRestricted) as exc_info:
            await provider.exchange_authorization_code(CLIENT, "code", code_verifier="v")

        assert exc_info.value.status_code == 401
        assert await bindings.count(CIMD_CLIENT_ID, "google-user-1") == 0

    @pytest.mark.asyncio
    async def test_domain_check_ignores_case(self, provider, upstream):
        """Test that the domain suffix match is case-insensitive."""
        upstream.add_token_info("ya29.access", email="Jane@WebFX.com")

        tokens = await provider.exchange_authorization_code(CLIENT, "code", code_verifier="v")

        assert tokens["access_token"] == "ya29.access"

    @pytest.mark.asyncio
    async def test_upstream_rejection(self, provider, upstream):
        """Test that an upstream 4xx surfaces with its status."""
        upstream.token_response = (400, {"error": "invalid_grant"})

        with pytest.raises(UpstreamError) as exc_info:
            await provider.exchange_authorization_code(CLIENT, "code", code_verifier="v")

        assert exc_info.value.upstream_status == 400
        assert "invalid_grant" in exc_info.value.upstream_body

    @pytest.mark.asyncio
    async def test_malformed_tokens_not_bound(self, provider, upstream, bindings, audit_logger):
        """Test that a token set failing the schema is rejected before binding."""
        upstream.token_response = (200, {"access_token": "ya29.access", "expires_in": 3599})

        with pytest.raises(UpstreamMissingField, match="token_type"):
            await provider.exchange_authorization_code(CLIENT, "code", code_verifier="v")

        await audit_logger.flush()
        assert await bindings.count(CIMD_CLIENT_ID, "google-user-1") == 0
        assert await audit_logger.query(event=AuditEventType.USER_FIRST_SEEN) == []


class TestExchangeRefreshToken:
    """Tests for the refresh token grant."""

    @pytest.mark.asyncio
    async def test_refresh(self, provider, upstream):
        """Test a successful refresh posts the refresh grant upstream."""
        tokens = await provider.exchange_refresh_token(CLIENT, "1//refresh", scopes=["openid"])

        assert tokens["access_token"] == "ya29.refreshed"
        assert 0 <= tokens["expires_in"] <= 3599

        form = {
            k: v[0]
            for k, v in parse_qs(upstream.requests[-1].content.decode()).items()
        }
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "1//refresh"
        assert form["scope"] == "openid"

    @pytest.mark.asyncio
    async def test_refresh_failure(self, provider, upstream):
        """Test that an upstream refresh rejection is an invalid_grant error."""
        upstream.refresh_response = (400, {"error": "invalid_grant"})

        with pytest.raises(UpstreamRefreshFailed) as exc_info:
            await provider.exchange_refresh_token(CLIENT, "revoked")

        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.upstream_status == 400


class TestVerifyAccessToken:
    """Tests for access token verification."""

    @pytest.mark.asyncio
    async def test_verify(self, provider, upstream):
        """Test that verification converts the expiry to seconds."""
        exp = int(time.time()) + 1800
        upstream.add_token_info("ya29.other", exp=exp)

        info = await provider.verify_access_token("ya29.other")

        assert info.token == "ya29.other"
        assert info.client_id == GOOGLE_CLIENT_ID
        assert info.email == "jane@webfx.com"
        assert info.sub == "google-user-1"
        assert info.expires_at == exp
        assert "https://www.googleapis.com/auth/userinfo.email" in info.scopes

    @pytest.mark.asyncio
    async def test_audience_mismatch(self, provider, upstream):
        """Test that tokens issued to another client are rejected."""
        upstream.add_token_info("ya29.foreign", aud="someone-else")

        with pytest.raises(AudienceMismatch):
            await provider.verify_access_token("ya29.foreign")

    @pytest.mark.asyncio
    async def test_domain_restricted(self, provider, upstream):
        """Test that verification enforces the email domain."""
        upstream.add_token_info("ya29.outsider", email="mallory@example.com")

        with pytest.raises(DomainRestricted):
            await provider.verify_access_token("ya29.outsider")

    @pytest.mark.asyncio
    async def test_unknown_token(self, provider):
        """Test that an upstream lookup failure propagates."""
        with pytest.raises(UpstreamError):
            await provider.verify_access_token("ya29.unknown")
