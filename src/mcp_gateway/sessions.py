"""Session store for MCP transport sessions.

Maps an opaque session id to the email of the principal that opened it.
Entries live in Redis with a fixed TTL from creation; using a session
does not extend it.
"""

import json
import secrets
from typing import Any, Optional

import redis.asyncio as redis

from shared.errors import SessionEmailMismatch, SessionNotFound
from shared.logging import get_logger

logger = get_logger(__name__)

ONE_DAY_SECONDS = 86_400


def generate_session_id() -> str:
    """Random, unguessable session id (256 bits)."""
    return secrets.token_urlsafe(32)


class SessionStore:
    """
    Redis-backed session store.

    Redis guarantees atomic per-key operations, so no client-side locking
    is needed.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = ONE_DAY_SECONDS,
        key_prefix: str = "mcp:sessions:"
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def create(self, email: str) -> str:
        """Create a session bound to ``email`` and return its id."""
        session_id = generate_session_id()
        await self.client.set(self._key(session_id), email, ex=self.ttl_seconds)
        logger.info("Session created", email=email, ttl_seconds=self.ttl_seconds)
        return session_id

    async def validate(self, session_id: str, email: str) -> None:
        """
        Check that a session exists and belongs to ``email``.

        Raises:
            SessionNotFound: If the session is unknown or expired
            SessionEmailMismatch: If the session was opened by another email
        """
        stored_email = await self.client.get(self._key(session_id))
        if isinstance(stored_email, bytes):
            stored_email = stored_email.decode()
        if not stored_email:
            raise SessionNotFound("Failed to find sessionId")
        if stored_email != email:
            logger.warning("Session email mismatch", email=email)
            raise SessionEmailMismatch(f"Expected email {stored_email}, received {email}")

    @staticmethod
    def _check_ids(session_id: Any, key: Any) -> None:
        if not isinstance(session_id, str):
            raise TypeError(f"Expected sessionId to be a string, received {session_id!r}")
        if not isinstance(key, str):
            raise TypeError(f"Expected key to be a string, received {key!r}")

    async def get(self, session_id: str, key: str) -> Optional[Any]:
        """Read a session-scoped value; JSON objects and arrays are decoded."""
        self._check_ids(session_id, key)
        value = await self.client.get(f"mcp:{session_id}:{key}")
        if isinstance(value, bytes):
            value = value.decode()
        if not value:
            return None

        if (value.startswith("{") and value.endswith("}")) or (
            value.startswith("[") and value.endswith("]")
        ):
            return json.loads(value)
        return value

    async def set(self, session_id: str, key: str, value: Any) -> None:
        """Store a session-scoped value with the session TTL."""
        self._check_ids(session_id, key)
        if isinstance(value, (dict, list)):
            prepared = json.dumps(value)
        else:
            prepared = f"{value}"
        await self.client.set(f"mcp:{session_id}:{key}", prepared, ex=self.ttl_seconds)
