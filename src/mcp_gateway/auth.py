"""Request authentication for the MCP gateway.

Resolves one principal per request, trying strategies in order and
stopping at the first that applies:

1. ``x-api-key`` header present: verify it with the identity API. An
   invalid key is a 401; it never falls through to bearer auth.
2. Otherwise: ``Authorization: Bearer <token>`` resolved through the
   introspection endpoint. Failures get the standard bearer challenge
   pointing at the protected resource metadata.

Public paths (metadata documents and the OAuth endpoints themselves)
skip the chain entirely.
"""

import uuid
from typing import Iterable, Optional, Protocol

from fastapi import Request, status
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from shared.errors import AuthError, InvalidApiKeyHeader, InvalidToken
from shared.logging import bind_context, clear_context, get_logger
from shared.models import ApiKeyPrincipal, OAuthPrincipal

logger = get_logger(__name__)

API_KEY_HEADER = "x-api-key"

OAUTH_PATHS = (
    "/.well-known/oauth-authorization-server",
    "/.well-known/oauth-protected-resource",
    "/authorize",
    "/token",
    "/introspect",
    "/register",
)

WELL_KNOWN_PREFIX = "/.well-known/"


class ApiKeyStrategy(Protocol):
    async def verify(self, api_key: str) -> ApiKeyPrincipal: ...


class BearerStrategy(Protocol):
    async def verify_access_token(self, token: str) -> dict: ...


def protected_resource_metadata_url(mcp_server_url: str) -> str:
    """RFC 9728 metadata URL for a resource, suffixed by the resource path."""
    scheme, _, rest = mcp_server_url.partition("://")
    host, _, path = rest.partition("/")
    suffix = f"/{path}" if path else ""
    return f"{scheme}://{host}/.well-known/oauth-protected-resource{suffix.rstrip('/')}"


def bearer_challenge(error: str, description: str, resource_metadata_url: str) -> str:
    # quoted-string: no embedded quotes or line breaks
    description = " ".join(description.replace('"', "'").split())
    return (
        f'Bearer error="{error}", error_description="{description}", '
        f'resource_metadata="{resource_metadata_url}"'
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Authentication middleware for the MCP gateway.

    Strategies are read from ``app.state`` (``api_key_verifier`` and
    ``token_verifier``) at dispatch time so they can be created in the
    application lifespan. The resolved principal is attached to
    ``request.state.principal``.
    """

    def __init__(
        self,
        app: ASGIApp,
        resource_metadata_url: str,
        public_paths: Iterable[str] = ()
    ) -> None:
        super().__init__(app)
        self.resource_metadata_url = resource_metadata_url
        self.skip_paths = frozenset([*public_paths, *OAUTH_PATHS])

    def is_public(self, path: str) -> bool:
        return path in self.skip_paths or path.startswith(WELL_KNOWN_PREFIX)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        clear_context()
        bind_context(request_id=request.headers.get("x-request-id") or str(uuid.uuid4()))
        request.state.principal = None

        if self.is_public(request.url.path):
            return await call_next(request)

        api_keys = request.headers.getlist(API_KEY_HEADER)
        if api_keys:
            return await self._authenticate_api_key(request, call_next, api_keys)
        return await self._authenticate_bearer(request, call_next)

    async def _authenticate_api_key(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
        api_keys: list[str]
    ) -> Response:
        if len(api_keys) > 1:
            error = InvalidApiKeyHeader(
                f"Expected {API_KEY_HEADER} to be a string, received {len(api_keys)} values"
            )
            return JSONResponse(error.to_dict(), status_code=error.status_code)

        verifier: ApiKeyStrategy = request.app.state.api_key_verifier
        try:
            principal = await verifier.verify(api_keys[0])
        except AuthError as e:
            logger.error("Invalid API key", error=e.description)
            return JSONResponse(e.to_dict(), status_code=e.status_code)

        return await self._proceed(request, call_next, principal)

    async def _authenticate_bearer(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        token = self._bearer_token(request.headers.get("authorization"))
        if token is None:
            return self._challenge(InvalidToken("Missing Authorization header"))

        verifier: BearerStrategy = request.app.state.token_verifier
        try:
            data = await verifier.verify_access_token(token)
        except AuthError as e:
            logger.warning("Bearer token rejected", error=e.description)
            return self._challenge(e)

        principal = OAuthPrincipal(
            email=data.get("email") or "",
            upstream_user_id=data.get("sub") or "",
            scopes=data.get("scopes") or [],
        )
        return await self._proceed(request, call_next, principal)

    @staticmethod
    def _bearer_token(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _challenge(self, error: AuthError) -> JSONResponse:
        return JSONResponse(
            {"error": "invalid_token", "error_description": error.description},
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers={
                "WWW-Authenticate": bearer_challenge(
                    "invalid_token", error.description, self.resource_metadata_url
                )
            },
        )

    async def _proceed(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
        principal: OAuthPrincipal | ApiKeyPrincipal
    ) -> Response:
        request.state.principal = principal
        bind_context(auth_strategy=principal.strategy, email=principal.email)
        return await call_next(request)
