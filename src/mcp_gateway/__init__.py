"""MCP Gateway - authenticated MCP endpoint with a Google-backed OAuth bridge.

Third-party MCP clients register dynamically (DCR) or identify
themselves with a client metadata URL (CIMD); users sign in with Google,
restricted to one email domain. API requests authenticate with an API
key or a bearer token resolved through token introspection.
"""

__version__ = "0.1.0"

from mcp_gateway.clients import ClientRegistry, get_registration_mechanism
from mcp_gateway.bindings import UserBindingStore
from mcp_gateway.provider import GoogleOAuthProvider
from mcp_gateway.sessions import SessionStore
from mcp_gateway.auth import AuthMiddleware

__all__ = [
    "__version__",
    "ClientRegistry",
    "get_registration_mechanism",
    "UserBindingStore",
    "GoogleOAuthProvider",
    "SessionStore",
    "AuthMiddleware",
]
