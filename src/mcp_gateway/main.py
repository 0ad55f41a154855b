"""MCP gateway - FastAPI application.

Wires the OAuth authorization server, the request authentication chain,
the session store and the MCP endpoint into one app. Collaborators that
are not injected are created in the lifespan and closed on shutdown.
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.config import Settings, get_settings
from shared.errors import AuthError
from shared.logging import get_logger, setup_logging
from mcp_gateway import __version__
from mcp_gateway.api_key import ApiKeyVerifier
from mcp_gateway.audit import AuthAuditLogger
from mcp_gateway.auth import AuthMiddleware, protected_resource_metadata_url
from mcp_gateway.bindings import UserBindingStore
from mcp_gateway.clients import ClientRegistry
from mcp_gateway.database import Database
from mcp_gateway.introspection import IntrospectionTokenVerifier
from mcp_gateway.oauth_routes import create_oauth_router
from mcp_gateway.provider import GoogleOAuthProvider
from mcp_gateway.registry import ToolRegistry, register_builtin_tools
from mcp_gateway.server import SESSION_HEADER, create_mcp_router
from mcp_gateway.sessions import SessionStore
from mcp_gateway.upstream import GoogleOAuthClient

logger = get_logger(__name__)

HEALTH_PATH = "/health"


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    redis_client: Optional[redis.Redis] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    token_verifier: Optional[Any] = None,
    api_key_verifier: Optional[Any] = None,
    audit_logger: Optional[AuthAuditLogger] = None,
    tools: Optional[ToolRegistry] = None
) -> FastAPI:
    """
    Build the gateway application.

    Raises:
        ConfigurationError: If the upstream client credentials are missing
    """
    settings = settings or get_settings()
    settings.require_upstream_credentials()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, json_output=settings.environment == "production")
        logger.info("Starting MCP gateway", issuer=settings.auth.issuer_url)

        owned: list[Any] = []

        db = database
        if db is None:
            db = Database(settings.auth.database_path)
            owned.append(db)
        await db.connect()

        client = http_client
        if client is None:
            client = httpx.AsyncClient(timeout=settings.auth.http_timeout_seconds)
            owned.append(client)

        store = redis_client
        if store is None:
            store = redis.from_url(settings.session.redis_url, decode_responses=True)
            owned.append(store)

        audit = audit_logger or AuthAuditLogger(
            log_path=settings.auth.audit_log_path,
            enabled=settings.auth.enable_audit,
        )

        clients = ClientRegistry(db, client, audit_logger=audit)
        app.state.provider = GoogleOAuthProvider(
            settings.auth,
            GoogleOAuthClient(settings.google, client),
            clients,
            UserBindingStore(db, audit_logger=audit),
        )
        app.state.sessions = SessionStore(
            store,
            ttl_seconds=settings.session.ttl_seconds,
            key_prefix=settings.session.key_prefix,
        )
        app.state.token_verifier = token_verifier or IntrospectionTokenVerifier(
            f"{settings.auth.issuer_url}/introspect", client
        )
        app.state.api_key_verifier = api_key_verifier or ApiKeyVerifier(
            settings.auth.api_key_verification_url, client
        )
        app.state.tools = tools or register_builtin_tools(ToolRegistry())

        yield

        logger.info("Shutting down MCP gateway")
        await audit.flush()
        for resource in reversed(owned):
            if isinstance(resource, httpx.AsyncClient):
                await resource.aclose()
            elif isinstance(resource, Database):
                await resource.close()
            else:
                await resource.aclose()

    app = FastAPI(
        title="MCP Gateway",
        description="MCP endpoint fronted by a Google-backed OAuth authorization server",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )

    # Starlette runs the last added middleware first: CORS wraps auth
    app.add_middleware(
        AuthMiddleware,
        resource_metadata_url=protected_resource_metadata_url(settings.auth.mcp_server_url),
        public_paths=[HEALTH_PATH, *settings.auth.public_paths],
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER],
    )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.get(HEALTH_PATH, tags=["System"])
    async def health_check():
        return {"status": "healthy", "version": __version__}

    app.include_router(create_oauth_router(settings.auth, settings.google))
    app.include_router(create_mcp_router(settings.auth.mcp_path))

    return app


def main():
    """Run the MCP gateway."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "mcp_gateway.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
