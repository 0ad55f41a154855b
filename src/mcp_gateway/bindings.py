"""User binding store.

Records the first time an upstream user authenticates against a client.
Rows are insert-if-absent and never updated or deleted here.
"""

import json
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import AuditEventType, ClientRegistrationMechanism, UserBinding
from mcp_gateway.audit import AuthAuditLogger
from mcp_gateway.clients import get_registration_mechanism
from mcp_gateway.database import Database

logger = get_logger(__name__)

# (table, client id column) per registration mechanism
BINDING_TABLES: dict[ClientRegistrationMechanism, tuple[str, str]] = {
    ClientRegistrationMechanism.CIMD: ("mcp_auth_users", "client_id"),
    ClientRegistrationMechanism.DCR: ("oauth_client_users", "oauth_client_id"),
}


class UserBindingStore:
    """Idempotent (client, upstream user) bookkeeping."""

    def __init__(
        self,
        database: Database,
        audit_logger: Optional[AuthAuditLogger] = None
    ) -> None:
        self.database = database
        self.audit_logger = audit_logger

    async def record_if_absent(
        self,
        client_id: str,
        upstream_user_id: str,
        email: str,
        token_info: dict[str, Any]
    ) -> bool:
        """
        Insert a binding unless one already exists for the pair.

        The existence check and the insert run in one transaction, so two
        concurrent exchanges for the same pair produce a single row and a
        single first-seen event.

        Returns:
            True if a new binding was stored, False if it already existed
        """
        mechanism = get_registration_mechanism(client_id)
        table, client_column = BINDING_TABLES[mechanism]

        async with self.database.transaction() as conn:
            async with conn.execute(
                f"SELECT 1 FROM {table} WHERE {client_column} = ? AND google_user_id = ?",
                (client_id, upstream_user_id)
            ) as cursor:
                if await cursor.fetchone() is not None:
                    return False

            await conn.execute(
                f"""
                INSERT INTO {table} ({client_column}, google_user_id, email, token_info, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (client_id, upstream_user_id, email, json.dumps(token_info, default=str))
            )

        logger.info(
            "New user authenticated",
            email=email,
            client_id=client_id,
            google_user_id=upstream_user_id,
            mechanism=mechanism.value,
        )
        if self.audit_logger:
            await self.audit_logger.log(
                AuditEventType.USER_FIRST_SEEN,
                client_id,
                email=email,
                google_user_id=upstream_user_id,
                mechanism=mechanism,
            )
        return True

    async def get(self, client_id: str, upstream_user_id: str) -> Optional[UserBinding]:
        mechanism = get_registration_mechanism(client_id)
        table, client_column = BINDING_TABLES[mechanism]
        row = await self.database.fetch_one(
            f"SELECT email, token_info FROM {table} WHERE {client_column} = ? AND google_user_id = ?",
            (client_id, upstream_user_id)
        )
        if row is None:
            return None
        return UserBinding(
            client_id=client_id,
            google_user_id=upstream_user_id,
            email=row["email"],
            token_info=json.loads(row["token_info"]),
            mechanism=mechanism,
        )

    async def count(self, client_id: str, upstream_user_id: str) -> int:
        mechanism = get_registration_mechanism(client_id)
        table, client_column = BINDING_TABLES[mechanism]
        row = await self.database.fetch_one(
            f"SELECT COUNT(*) AS n FROM {table} WHERE {client_column} = ? AND google_user_id = ?",
            (client_id, upstream_user_id)
        )
        return row["n"] if row else 0
