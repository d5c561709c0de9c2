"""Shared fixtures and in-memory collaborators."""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from case_automation.core.config import StorageSettings
from case_automation.core.datetime_utils import utc_now
from case_automation.core.models import Action, ApprovalBatch, BatchStatus, MailAttachment
from case_automation.storage import SqliteEntityStore


class FakeMail:
    """Records sent messages and serves canned attachments."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.attachments: dict[str, list[tuple[MailAttachment, bytes]]] = {}
        self.fail_send = False

    async def send_email(
        self, to: str | Sequence[str], subject: str, body: str, *, html: bool = False
    ) -> str:
        if self.fail_send:
            raise RuntimeError("smtp down")
        self.sent.append({"to": to, "subject": subject, "body": body, "html": html})
        return f"msg-{len(self.sent)}"

    async def list_attachments(self, message_id: str) -> list[MailAttachment]:
        return [meta for meta, _ in self.attachments.get(message_id, [])]

    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        for meta, content in self.attachments.get(message_id, []):
            if meta.attachment_id == attachment_id:
                return content
        raise KeyError(attachment_id)


class FakeCalendar:
    """Keeps created events in memory."""

    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}
        self.deleted: list[str] = []
        self.fail_create = False
        self.fail_delete = False

    async def create_event(self, *, title: str, start: datetime, **kwargs: Any) -> dict[str, Any]:
        if self.fail_create:
            raise RuntimeError("calendar quota exceeded")
        event_id = f"evt-{len(self.events) + 1}"
        self.events[event_id] = {"title": title, "start": start, **kwargs}
        return {"id": event_id, "htmlLink": f"https://calendar.test/{event_id}"}

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None:
        if self.fail_delete:
            raise RuntimeError("calendar unavailable")
        self.deleted.append(event_id)
        self.events.pop(event_id, None)


class FakeFiles:
    """Stores uploads by path."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_after: int | None = None

    async def upload(self, path: str, content: bytes) -> str:
        if self.fail_after is not None and len(self.files) >= self.fail_after:
            raise RuntimeError("dropbox quota exceeded")
        stored = f"/root{path}" if path.startswith("/") else f"/root/{path}"
        self.files[stored] = content
        return stored

    async def delete(self, path: str) -> None:
        self.deleted.append(path)
        self.files.pop(path, None)


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[SqliteEntityStore]:
    entity_store = SqliteEntityStore(StorageSettings(db_path=tmp_path / "entities.db"))
    yield entity_store
    entity_store.close()


@pytest.fixture()
def mail() -> FakeMail:
    return FakeMail()


@pytest.fixture()
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture()
def files() -> FakeFiles:
    return FakeFiles()


@pytest.fixture()
def make_batch():
    """Return a factory building batches from ``(action_type, config)`` pairs."""

    def factory(*items: Any, **overrides: Any) -> ApprovalBatch:
        actions = []
        for item in items:
            if isinstance(item, Action):
                actions.append(item)
                continue
            action_type, config = item
            actions.append(Action(id=str(uuid.uuid4()), action_type=action_type, config=config))
        fields: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "rule_id": "rule-1",
            "mail_id": "mail-1",
            "case_id": "case-1",
            "client_id": "client-1",
            "mail_snapshot": {"subject": "Office action received", "gmail_message_id": "gm-1"},
            "actions": tuple(actions),
            "approver_email": "partner@firm.test",
            "status": BatchStatus.PENDING_APPROVAL,
            "created_at": utc_now(),
        }
        fields.update(overrides)
        return ApprovalBatch(**fields)

    return factory
