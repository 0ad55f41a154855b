"""Audit trail for authorization events.

Client registrations and first-seen users are appended to a JSON Lines
file. Entries are held in memory and written in batches: a batch goes
out when it reaches ``buffer_size`` entries and on shutdown.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Any, Optional

import aiofiles
from pydantic import ValidationError

from shared.logging import get_logger
from shared.models import AuditEntry, AuditEventType, ClientRegistrationMechanism

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

# Detail keys masked before an entry is stored
SENSITIVE_KEYS = frozenset({
    "token",
    "access_token",
    "refresh_token",
    "id_token",
    "secret",
    "client_secret",
    "api_key",
    "apikey",
})


def redact(details: dict[str, Any]) -> dict[str, Any]:
    """Mask sensitive keys, descending into nested mappings."""
    clean: dict[str, Any] = {}
    for key, value in details.items():
        if key.lower() in SENSITIVE_KEYS:
            value = REDACTED
        elif isinstance(value, dict):
            value = redact(value)
        clean[key] = value
    return clean


class AuthAuditLogger:
    """
    Append-only audit log for the authorization server.

    Each entry records the event type, the client id and its registration
    mechanism, the upstream user when known, and redacted details.
    """

    def __init__(
        self,
        log_path: str = "logs/auth-audit.log",
        enabled: bool = True,
        buffer_size: int = 50
    ) -> None:
        self.path = Path(log_path)
        self.enabled = enabled
        self.batch_size = max(1, buffer_size)
        self._pending: list[AuditEntry] = []
        self._write_lock = asyncio.Lock()

        if enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def create_entry(
        self,
        event: AuditEventType,
        client_id: str,
        email: Optional[str] = None,
        google_user_id: Optional[str] = None,
        mechanism: Optional[ClientRegistrationMechanism] = None,
        details: Optional[dict[str, Any]] = None
    ) -> AuditEntry:
        return AuditEntry(
            id=uuid.uuid4().hex,
            event=event,
            client_id=client_id,
            email=email,
            google_user_id=google_user_id,
            mechanism=mechanism,
            details=redact(details or {}),
        )

    async def log(self, event: AuditEventType, client_id: str, **fields: Any) -> None:
        """
        Record an authorization event.

        Args:
            event: Event type
            client_id: OAuth client the event concerns
            **fields: email, google_user_id, mechanism, details
        """
        if not self.enabled:
            return

        entry = self.create_entry(event, client_id, **fields)
        logger.info(
            "Audit event recorded",
            event_id=entry.id,
            auth_event=entry.event.value,
            client_id=client_id,
            mechanism=entry.mechanism.value if entry.mechanism else None,
        )

        async with self._write_lock:
            self._pending.append(entry)
            if len(self._pending) >= self.batch_size:
                await self._write_pending()

    async def _write_pending(self) -> None:
        batch, self._pending = self._pending, []
        if not batch:
            return

        lines = "".join(f"{entry.model_dump_json()}\n" for entry in batch)
        try:
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(lines)
        except OSError as e:
            logger.error("Audit write failed", error=str(e), pending=len(batch))
            # Retried with the next batch
            self._pending = batch + self._pending

    async def flush(self) -> None:
        """Write any pending entries."""
        async with self._write_lock:
            await self._write_pending()

    async def query(
        self,
        event: Optional[AuditEventType] = None,
        client_id: Optional[str] = None,
        limit: int = 100
    ) -> list[AuditEntry]:
        """Read written entries back, oldest first, optionally filtered."""
        if not self.path.exists():
            return []

        matches: list[AuditEntry] = []
        async with aiofiles.open(self.path, encoding="utf-8") as f:
            async for line in f:
                try:
                    entry = AuditEntry.model_validate_json(line)
                except ValidationError:
                    logger.warning("Skipping unreadable audit line", path=str(self.path))
                    continue
                if event is not None and entry.event != event:
                    continue
                if client_id is not None and entry.client_id != client_id:
                    continue
                matches.append(entry)
                if len(matches) >= limit:
                    break
        return matches
