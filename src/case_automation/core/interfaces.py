"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol

from .models import MailAttachment

Record = dict[str, Any]


class EntityNotFoundError(LookupError):
    """Raised when a record does not exist in the entity store."""

    def __init__(self, entity: str, record_id: str) -> None:
        super().__init__(f"{entity} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


class NonceAlreadyUsedError(RuntimeError):
    """Raised when an approval nonce hash has already been claimed."""


class EntityStore(Protocol):
    """Record-oriented storage keyed by entity name and record id."""

    def create(self, entity: str, data: Mapping[str, Any]) -> Record:
        """Insert a record and return it with its assigned ``id``."""
        raise NotImplementedError

    def get(self, entity: str, record_id: str) -> Record | None:
        """Return a record by id or ``None``."""
        raise NotImplementedError

    def update(self, entity: str, record_id: str, changes: Mapping[str, Any]) -> Record:
        """Merge ``changes`` into a record and return the stored result."""
        raise NotImplementedError

    def update_with(
        self, entity: str, record_id: str, mutate: Callable[[Record], Record]
    ) -> Record:
        """Atomically replace a record with ``mutate(current)``."""
        raise NotImplementedError

    def delete(self, entity: str, record_id: str) -> None:
        """Remove a record; raises :class:`EntityNotFoundError` when missing."""
        raise NotImplementedError

    def filter(self, entity: str, criteria: Mapping[str, Any]) -> list[Record]:
        """Return records whose top-level fields equal every criterion."""
        raise NotImplementedError

    def list(
        self, entity: str, *, order_by: str | None = None, limit: int | None = None
    ) -> list[Record]:
        """Return records, optionally ordered (``-field`` for descending)."""
        raise NotImplementedError

    def claim_nonce(
        self,
        batch_id: str,
        nonce_hash: str,
        *,
        expires_at: datetime | None = None,
        used_meta: Mapping[str, Any] | None = None,
    ) -> None:
        """Mark a hashed nonce as spent; raises :class:`NonceAlreadyUsedError`."""
        raise NotImplementedError


class MailProvider(Protocol):
    """Outbound mail and attachment access."""

    async def send_email(
        self, to: str | Sequence[str], subject: str, body: str, *, html: bool = False
    ) -> str:
        """Send a message and return the provider message id."""
        raise NotImplementedError

    async def list_attachments(self, message_id: str) -> list[MailAttachment]:
        """Return attachment metadata for a stored message."""
        raise NotImplementedError

    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Return the raw bytes of an attachment."""
        raise NotImplementedError


class CalendarProvider(Protocol):
    """Remote calendar used for deadlines and hearings."""

    async def create_event(
        self,
        *,
        title: str,
        start: datetime,
        duration_minutes: int,
        description: str = "",
        attendees: Sequence[str] = (),
        reminder_minutes: int | None = None,
        create_meet_link: bool = False,
        calendar_id: str | None = None,
    ) -> dict[str, Any]:
        """Create an event and return the provider's representation."""
        raise NotImplementedError

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None:
        """Delete an event created earlier."""
        raise NotImplementedError


class FileStorage(Protocol):
    """Remote document storage such as Dropbox."""

    async def upload(self, path: str, content: bytes) -> str:
        """Upload ``content`` and return the stored path."""
        raise NotImplementedError

    async def delete(self, path: str) -> None:
        """Delete a previously uploaded file."""
        raise NotImplementedError


__all__ = [
    "CalendarProvider",
    "EntityNotFoundError",
    "EntityStore",
    "FileStorage",
    "MailProvider",
    "NonceAlreadyUsedError",
    "Record",
]
