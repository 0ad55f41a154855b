"""OAuth authorization server endpoints.

Serves the discovery documents and the authorize, token, register and
introspect endpoints. All of them are public: the request
authentication chain skips them.
"""

import secrets
import time
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from shared.config import AuthSettings, GoogleSettings
from shared.errors import AuthError, ClientNotFound, UpstreamError
from shared.logging import get_logger
from shared.models import AuthorizationParams, ClientRecord, ClientRegistrationMechanism
from shared.schema import CLIENT_METADATA_SCHEMA, validate_schema
from mcp_gateway.clients import get_registration_mechanism
from mcp_gateway.introspection import introspect
from mcp_gateway.provider import GoogleOAuthProvider

logger = get_logger(__name__)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def oauth_error(
    error: str,
    description: str,
    status_code: int = status.HTTP_400_BAD_REQUEST
) -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status_code,
        headers=NO_STORE,
    )


def authorization_server_metadata(auth: AuthSettings, scopes: list[str]) -> dict[str, Any]:
    """RFC 8414 metadata, advertising CIMD support."""
    issuer = auth.issuer_url
    return {
        "issuer": f"{issuer}/",
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "registration_endpoint": f"{issuer}/register",
        "introspection_endpoint": f"{issuer}/introspect",
        "response_types_supported": ["code"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": ["client_secret_post", "none"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "scopes_supported": scopes,
        "client_id_metadata_document_supported": True,
    }


def protected_resource_metadata(auth: AuthSettings, scopes: list[str]) -> dict[str, Any]:
    """RFC 9728 metadata for the MCP endpoint."""
    return {
        "resource": auth.mcp_server_url,
        "authorization_servers": [f"{auth.issuer_url}/"],
        "scopes_supported": scopes,
    }


async def read_params(request: Request) -> dict[str, Any]:
    """Merge query string and form or JSON body parameters."""
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                params.update(body)
        else:
            form = await request.form()
            params.update({key: value for key, value in form.items() if isinstance(value, str)})
    return params


def _provider(request: Request) -> GoogleOAuthProvider:
    return request.app.state.provider


def create_oauth_router(auth: AuthSettings, google: GoogleSettings) -> APIRouter:
    """
    Build the authorization server router.

    Args:
        auth: Issuer and resource settings
        google: Upstream settings, for the advertised scopes
    """
    router = APIRouter(tags=["OAuth"])
    scopes = list(google.scopes)
    server_metadata = authorization_server_metadata(auth, scopes)
    resource_metadata = protected_resource_metadata(auth, scopes)

    @router.get("/.well-known/oauth-authorization-server")
    async def get_authorization_server_metadata():
        return server_metadata

    # Path-specific protected resource metadata (RFC 9728)
    resource_path = "/" + auth.mcp_path.strip("/") if auth.mcp_path.strip("/") else ""

    @router.get(f"/.well-known/oauth-protected-resource{resource_path}")
    async def get_protected_resource_metadata():
        return resource_metadata

    @router.api_route("/authorize", methods=["GET", "POST"])
    async def authorize(request: Request):
        params = await read_params(request)
        provider = _provider(request)

        client_id = params.get("client_id")
        if not client_id:
            return oauth_error("invalid_request", "client_id is required")
        if not isinstance(client_id, str):
            return oauth_error("invalid_request", "client_id must be a string")
        try:
            client = await provider.clients_store.resolve(client_id)
        except AuthError as e:
            return oauth_error(e.error, e.description, e.status_code)
        if client is None:
            return oauth_error("invalid_client", "Invalid client_id")

        redirect_uri = params.get("redirect_uri")
        if redirect_uri is None and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        if not redirect_uri or redirect_uri not in client.redirect_uris:
            return oauth_error("invalid_request", "Unregistered redirect_uri")

        state = params.get("state")

        def redirect_error(error: str, description: str) -> RedirectResponse:
            query = {"error": error, "error_description": description}
            if state:
                query["state"] = state
            separator = "&" if "?" in redirect_uri else "?"
            return RedirectResponse(
                f"{redirect_uri}{separator}{urlencode(query)}",
                status_code=status.HTTP_302_FOUND,
            )

        if params.get("response_type", "code") != "code":
            return redirect_error("unsupported_response_type", "response_type must be code")
        if not params.get("code_challenge"):
            return redirect_error("invalid_request", "code_challenge is required")
        if params.get("code_challenge_method", "S256") != "S256":
            return redirect_error("invalid_request", "code_challenge_method must be S256")

        scope = params.get("scope") or ""
        authorization = AuthorizationParams(
            redirect_uri=redirect_uri,
            code_challenge=params["code_challenge"],
            state=state,
            scopes=scope.split() if scope else [],
            resource=params.get("resource"),
        )
        return RedirectResponse(
            provider.authorize(client, authorization),
            status_code=status.HTTP_302_FOUND,
        )

    @router.post("/token")
    async def token(request: Request):
        params = await read_params(request)
        provider = _provider(request)

        client_id = params.get("client_id")
        if not client_id:
            return oauth_error("invalid_request", "client_id is required")
        if not isinstance(client_id, str):
            return oauth_error("invalid_request", "client_id must be a string")
        try:
            client = await provider.clients_store.resolve(client_id)
            if client is None:
                raise ClientNotFound("Invalid client_id")
        except AuthError as e:
            return oauth_error("invalid_client", e.description, status.HTTP_401_UNAUTHORIZED)

        if client.client_secret:
            presented = params.get("client_secret") or ""
            if not isinstance(presented, str):
                return oauth_error("invalid_request", "client_secret must be a string")
            if not secrets.compare_digest(presented, client.client_secret):
                return oauth_error(
                    "invalid_client", "Invalid client_secret", status.HTTP_401_UNAUTHORIZED
                )

        grant_type = params.get("grant_type")
        try:
            if grant_type == "authorization_code":
                code = params.get("code")
                code_verifier = params.get("code_verifier")
                if not code or not code_verifier:
                    return oauth_error("invalid_request", "code and code_verifier are required")
                tokens = await provider.exchange_authorization_code(
                    client,
                    code,
                    code_verifier=code_verifier,
                    redirect_uri=params.get("redirect_uri"),
                )
            elif grant_type == "refresh_token":
                refresh_token = params.get("refresh_token")
                if not refresh_token:
                    return oauth_error("invalid_request", "refresh_token is required")
                scope = params.get("scope") or ""
                tokens = await provider.exchange_refresh_token(
                    client,
                    refresh_token,
                    scopes=scope.split() if scope else None,
                )
            else:
                return oauth_error(
                    "unsupported_grant_type",
                    f"Unsupported grant_type: {grant_type}",
                )
        except UpstreamError as e:
            logger.warning(
                "Token request failed upstream",
                grant_type=grant_type,
                client_id=client_id,
                upstream_status=e.upstream_status,
            )
            # Upstream 4xx means the grant itself was rejected
            if e.upstream_status is not None and 400 <= e.upstream_status < 500:
                return oauth_error("invalid_grant", e.description)
            return oauth_error(e.error, e.description, e.status_code)
        except AuthError as e:
            logger.warning("Token request rejected", grant_type=grant_type, error=e.error)
            return oauth_error(e.error, e.description, e.status_code)

        return JSONResponse(tokens, headers=NO_STORE)

    @router.post("/register", status_code=status.HTTP_201_CREATED)
    async def register(request: Request):
        try:
            metadata = await request.json()
        except ValueError:
            return oauth_error("invalid_client_metadata", "Body must be JSON")
        if not isinstance(metadata, dict):
            return oauth_error("invalid_client_metadata", "Body must be a JSON object")

        metadata.setdefault("client_id", secrets.token_urlsafe(24))
        metadata.setdefault("client_id_issued_at", int(time.time()))
        if (
            metadata.get("token_endpoint_auth_method", "none") != "none"
            and not metadata.get("client_secret")
        ):
            metadata["client_secret"] = secrets.token_hex(32)

        if not isinstance(metadata["client_id"], str) or (
            get_registration_mechanism(metadata["client_id"]) == ClientRegistrationMechanism.CIMD
        ):
            return oauth_error(
                "invalid_client_metadata",
                "client_id must be an opaque string; HTTPS client ids use metadata documents",
            )

        is_valid, errors = validate_schema(metadata, CLIENT_METADATA_SCHEMA)
        if not is_valid:
            return oauth_error("invalid_client_metadata", "; ".join(errors))
        try:
            client = ClientRecord.model_validate(metadata)
        except ValidationError as e:
            return oauth_error("invalid_client_metadata", str(e))

        await _provider(request).clients_store.register(client)
        return JSONResponse(
            client.model_dump(mode="json", exclude_none=True),
            status_code=status.HTTP_201_CREATED,
            headers=NO_STORE,
        )

    @router.post("/introspect")
    async def introspect_token(request: Request):
        params = await read_params(request)
        token = params.get("token")
        if not token:
            return JSONResponse(
                {"error": "invalid_request", "error_description": "Token is required"},
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        status_code, body = await introspect(_provider(request), token)
        return JSONResponse(body, status_code=status_code, headers=NO_STORE)

    return router
