"""Client registry for the authorization server.

Resolves an OAuth client id to its registration metadata using one of
two mechanisms:

- DCR: the client registered through ``/register`` and its record is
  looked up in durable storage.
- CIMD: the client id is an HTTPS URL serving a client metadata
  document. The document is fetched on every resolution with no
  caching, so authorization availability is coupled to the client's
  own metadata host.
"""

import json
from typing import Optional

import httpx
from pydantic import ValidationError

from shared.errors import ClientMetadataFetchFailed, SpoofedClientId
from shared.logging import get_logger
from shared.models import AuditEventType, ClientRecord, ClientRegistrationMechanism
from shared.schema import CLIENT_METADATA_SCHEMA, validate_schema
from mcp_gateway.audit import AuthAuditLogger
from mcp_gateway.database import Database

logger = get_logger(__name__)

CIMD_SCHEME = "https://"


def get_registration_mechanism(client_id: str) -> ClientRegistrationMechanism:
    """
    Determine how a client registered from its identifier alone.

    Raises:
        TypeError: If client_id is not a string
    """
    if not isinstance(client_id, str):
        raise TypeError(f"Expected client_id to be a string, received {client_id!r}")
    if client_id.startswith(CIMD_SCHEME):
        return ClientRegistrationMechanism.CIMD
    return ClientRegistrationMechanism.DCR


class ClientRegistry:
    """
    Resolves and registers OAuth clients.

    The registry holds no per-client state; DCR records live in the
    ``oauth_clients`` table and CIMD records are never persisted.
    """

    def __init__(
        self,
        database: Database,
        http_client: httpx.AsyncClient,
        audit_logger: Optional[AuthAuditLogger] = None
    ) -> None:
        self.database = database
        self.http_client = http_client
        self.audit_logger = audit_logger

    async def resolve(self, client_id: str) -> Optional[ClientRecord]:
        """
        Resolve a client id to its record.

        Returns:
            The client record, or None if a DCR client is not registered

        Raises:
            SpoofedClientId: If a CIMD document names a different client_id
            ClientMetadataFetchFailed: If a CIMD document cannot be fetched or parsed
        """
        mechanism = get_registration_mechanism(client_id)
        if mechanism == ClientRegistrationMechanism.DCR:
            return await self._get_registered(client_id)
        return await self._fetch_metadata_document(client_id)

    async def _get_registered(self, client_id: str) -> Optional[ClientRecord]:
        logger.info("Looking up registered client", client_id=client_id, mechanism="DCR")
        row = await self.database.fetch_one(
            "SELECT data FROM oauth_clients WHERE oauth_client_id = ?",
            (client_id,)
        )
        if row is None:
            return None
        return ClientRecord.model_validate(json.loads(row["data"]))

    async def _fetch_metadata_document(self, client_id: str) -> ClientRecord:
        logger.info("Fetching client metadata document", client_id=client_id, mechanism="CIMD")
        try:
            response = await self.http_client.get(
                client_id, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise ClientMetadataFetchFailed(
                f"Failed to fetch client metadata: {e}"
            ) from e

        if not response.is_success:
            raise ClientMetadataFetchFailed(
                f"Failed to fetch client metadata: {response.status_code}"
            )

        try:
            document = response.json()
        except ValueError as e:
            raise ClientMetadataFetchFailed("Client metadata is not valid JSON") from e

        if not isinstance(document, dict) or document.get("client_id") != client_id:
            logger.warning(
                "Client metadata client_id mismatch",
                client_id=client_id,
                document_client_id=document.get("client_id") if isinstance(document, dict) else None,
            )
            raise SpoofedClientId("client_id in metadata does not match the URL")

        is_valid, errors = validate_schema(document, CLIENT_METADATA_SCHEMA)
        if not is_valid:
            raise ClientMetadataFetchFailed(
                f"Invalid client metadata: {'; '.join(errors)}"
            )

        try:
            return ClientRecord.model_validate(document)
        except ValidationError as e:
            raise ClientMetadataFetchFailed(f"Invalid client metadata: {e}") from e

    async def register(self, client: ClientRecord) -> ClientRecord:
        """
        Persist a DCR client record, replacing any previous record.

        Raises:
            ValueError: If the client id is a CIMD URL
        """
        if get_registration_mechanism(client.client_id) == ClientRegistrationMechanism.CIMD:
            raise ValueError("CIMD clients are resolved from their URL and cannot register")

        data = client.model_dump(mode="json", exclude_none=True)
        logger.info(
            "Registering client",
            client_id=client.client_id,
            client_name=client.client_name,
            mechanism="DCR",
        )
        await self.database.execute(
            """
            INSERT INTO oauth_clients (oauth_client_id, data, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT (oauth_client_id)
            DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """,
            (client.client_id, json.dumps(data))
        )

        if self.audit_logger:
            await self.audit_logger.log(
                AuditEventType.CLIENT_REGISTERED,
                client.client_id,
                mechanism=ClientRegistrationMechanism.DCR,
                details={"client_name": client.client_name, "redirect_uris": client.redirect_uris},
            )
        return client
