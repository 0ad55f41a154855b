"""Shared fixtures: settings, fake upstream HTTP, fake Redis, temp database."""

import json
import time
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio

from shared.config import AuthSettings, GoogleSettings, SessionSettings, Settings
from mcp_gateway.audit import AuthAuditLogger
from mcp_gateway.bindings import UserBindingStore
from mcp_gateway.clients import ClientRegistry
from mcp_gateway.database import Database
from mcp_gateway.provider import GoogleOAuthProvider
from mcp_gateway.upstream import GoogleOAuthClient

GOOGLE_CLIENT_ID = "google-client-id.apps.googleusercontent.com"
GOOGLE_CLIENT_SECRET = "google-client-secret"
IDENTITY_API_URL = "https://identity.example.com/authentication"
CIMD_CLIENT_ID = "https://client.example.com/oauth/metadata.json"


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (get/set with ex)."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self.offset = 0.0

    def _now(self) -> float:
        return time.monotonic() + self.offset

    def advance(self, seconds: float) -> None:
        self.offset += seconds

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        expires = self._now() + ex if ex else None
        self._data[key] = (value, expires)
        return True

    async def get(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and self._now() >= expires:
            del self._data[key]
            return None
        return value

    async def aclose(self) -> None:
        pass


class UpstreamStub:
    """
    Fake for every outbound HTTP call: Google token and token-info
    endpoints, CIMD metadata hosts and the identity API.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_response: tuple[int, Any] = (200, {
            "access_token": "ya29.access",
            "refresh_token": "1//refresh",
            "expires_in": 3599,
            "scope": "openid email",
            "token_type": "Bearer",
            "id_token": "id.token.jwt",
        })
        self.refresh_response: tuple[int, Any] = (200, {
            "access_token": "ya29.refreshed",
            "expires_in": 3599,
            "scope": "openid email",
            "token_type": "Bearer",
        })
        self.token_infos: dict[str, tuple[int, Any]] = {}
        self.documents: dict[str, tuple[int, Any]] = {}
        self.api_keys: dict[str, dict[str, Any]] = {}
        self.add_token_info("ya29.access")

    def add_token_info(
        self,
        token: str,
        email: str = "jane@webfx.com",
        sub: str = "google-user-1",
        aud: str = GOOGLE_CLIENT_ID,
        exp: Optional[int] = None,
        **extra: Any
    ) -> None:
        info = {
            "aud": aud,
            "azp": aud,
            "sub": sub,
            "email": email,
            "email_verified": "true",
            "scope": "openid https://www.googleapis.com/auth/userinfo.email",
            "exp": str(exp if exp is not None else int(time.time()) + 3600),
            "expires_in": "3599",
            "access_type": "offline",
            **extra,
        }
        self.token_infos[token] = (200, {k: v for k, v in info.items() if v is not None})

    def requests_to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url.copy_with(query=None))

        if url == "https://oauth2.googleapis.com/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            if form.get("grant_type") == "refresh_token":
                status, body = self.refresh_response
            else:
                status, body = self.token_response
            return httpx.Response(status, json=body)

        if url == "https://oauth2.googleapis.com/tokeninfo":
            token = request.url.params.get("access_token")
            status, body = self.token_infos.get(
                token, (400, {"error": "invalid_token", "error_description": "Invalid Value"})
            )
            return httpx.Response(status, json=body)

        if url == IDENTITY_API_URL:
            payload = json.loads(request.content)
            user = self.api_keys.get(payload.get("apikey"))
            if user is None:
                return httpx.Response(401, json={"error": "Invalid API key"})
            return httpx.Response(200, json=user)

        if url in self.documents:
            status, body = self.documents[url]
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, json=body)

        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def http_client(upstream: UpstreamStub) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        google=GoogleSettings(
            client_id=GOOGLE_CLIENT_ID,
            client_secret=GOOGLE_CLIENT_SECRET,
        ),
        auth=AuthSettings(
            base_url="https://mcp.example.com",
            mcp_path="/mcp",
            allowed_email_domain="@webfx.com",
            api_key_verification_url=IDENTITY_API_URL,
            database_path=str(tmp_path / "mcp.sqlite3"),
            audit_log_path=str(tmp_path / "audit.log"),
        ),
        session=SessionSettings(ttl_seconds=86_400),
    )


@pytest.fixture
def audit_logger(tmp_path) -> AuthAuditLogger:
    return AuthAuditLogger(log_path=str(tmp_path / "audit.log"), enabled=True, buffer_size=1)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(str(tmp_path / "mcp.sqlite3"))
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def registry(database, http_client, audit_logger) -> ClientRegistry:
    return ClientRegistry(database, http_client, audit_logger=audit_logger)


@pytest.fixture
def bindings(database, audit_logger) -> UserBindingStore:
    return UserBindingStore(database, audit_logger=audit_logger)


@pytest.fixture
def provider(settings, http_client, registry, bindings) -> GoogleOAuthProvider:
    return GoogleOAuthProvider(
        settings.auth,
        GoogleOAuthClient(settings.google, http_client),
        registry,
        bindings,
    )


def cimd_document(client_id: str = CIMD_CLIENT_ID, **overrides: Any) -> dict[str, Any]:
    document = {
        "client_id": client_id,
        "client_name": "Example MCP Client",
        "redirect_uris": ["https://client.example.com/callback"],
        "grant_types": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_method": "none",
    }
    document.update(overrides)
    return document
