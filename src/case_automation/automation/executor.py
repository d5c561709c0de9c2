"""Execution of individual batch actions against external systems."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import date
from typing import Any

from case_automation.core.config import BillingSettings
from case_automation.core.datetime_utils import parse_iso, to_utc
from case_automation.core.interfaces import (
    CalendarProvider,
    EntityStore,
    FileStorage,
    MailProvider,
)
from case_automation.core.models import (
    ACTIVITY,
    DEADLINE,
    MAIL,
    TASK,
    TIME_ENTRY,
    Action,
    ActionResult,
    ActionType,
    ExecutionContext,
    RollbackAction,
)

from .dispatch import ensure_exhaustive
from .rollback import RollbackManager

LOGGER = logging.getLogger(__name__)

Config = Mapping[str, Any]
Handler = Callable[[Config, ExecutionContext, RollbackManager], Awaitable[ActionResult]]

DEFAULT_TASK_TITLE = "Automated task"
DEFAULT_BILLING_DESCRIPTION = "Automated billing"
DEFAULT_EVENT_TITLE = "Automated event"
DEFAULT_ALERT_TITLE = "Automated alert"


class ActionExecutor:
    """Run one action and normalise its outcome into an :class:`ActionResult`.

    Handlers register their side effect with the rollback manager before
    reporting success. Any exception a handler raises becomes a ``failed``
    result so the caller can keep going with the remaining actions.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        mail: MailProvider | None = None,
        calendar: CalendarProvider | None = None,
        files: FileStorage | None = None,
        billing: BillingSettings | None = None,
    ) -> None:
        self._store = store
        self._mail = mail
        self._calendar = calendar
        self._files = files
        self._billing = billing or BillingSettings()
        self._handlers: dict[ActionType, Handler] = {
            ActionType.SEND_EMAIL: self._send_email,
            ActionType.CREATE_TASK: self._create_task,
            ActionType.BILLING: self._billing_entry,
            ActionType.CALENDAR_EVENT: self._calendar_event,
            ActionType.SAVE_FILE: self._save_file,
            ActionType.CREATE_ALERT: self._create_alert,
        }
        ensure_exhaustive(self._handlers, "ActionExecutor")

    async def execute_action(
        self,
        action: Action,
        context: ExecutionContext,
        rollback_manager: RollbackManager,
    ) -> ActionResult:
        """Execute ``action`` within ``context``; never raises."""
        if not action.enabled:
            return ActionResult.skipped("disabled")

        kind = action.kind
        if kind is None:
            LOGGER.warning(
                "Unknown action type %r in batch %s", action.action_type, context.batch_id
            )
            return ActionResult.failed(f"Unknown action type: {action.action_type}")

        LOGGER.info("Starting %s (batch %s)", kind.value, context.batch_id)
        try:
            return await self._handlers[kind](action.config, context, rollback_manager)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Error in %s: %s", kind.value, exc)
            return ActionResult.failed(str(exc) or exc.__class__.__name__)

    # Handlers ----------------------------------------------------------------
    async def _send_email(
        self, config: Config, context: ExecutionContext, rollback: RollbackManager
    ) -> ActionResult:
        to = config.get("to")
        if not to:
            return ActionResult.skipped("no_recipients")
        if self._mail is None:
            return ActionResult.failed("Mail provider is not configured")

        subject = str(config.get("subject") or "")
        message_id = await self._mail.send_email(
            to, subject, str(config.get("body") or ""), html=bool(config.get("html"))
        )
        rollback.register_action(
            RollbackAction(
                action_type=ActionType.SEND_EMAIL,
                action_id=message_id or None,
                rollback_data={"to": to, "subject": subject},
            )
        )
        return ActionResult.success({"sent_to": to, "message_id": message_id})

    async def _create_task(
        self, config: Config, context: ExecutionContext, rollback: RollbackManager
    ) -> ActionResult:
        task = self._store.create(
            TASK,
            {
                "title": config.get("title") or DEFAULT_TASK_TITLE,
                "description": config.get("description") or "",
                "case_id": context.case_id,
                "client_id": context.client_id,
                "mail_id": context.mail_id,
                "status": "pending",
                "priority": config.get("priority") or "medium",
                "due_date": config.get("due_date"),
                "extracted_data": {
                    "approval_batch_id": context.batch_id,
                    "rule_id": context.rule_id,
                },
            },
        )
        rollback.register_action(
            RollbackAction(action_type=ActionType.CREATE_TASK, action_id=task["id"])
        )
        return ActionResult.success({"id": task["id"]})

    async def _billing_entry(
        self, config: Config, context: ExecutionContext, rollback: RollbackManager
    ) -> ActionResult:
        try:
            hours = float(config.get("hours") or 0)
        except (TypeError, ValueError):
            return ActionResult.skipped("invalid_hours")
        if hours <= 0:
            return ActionResult.skipped("invalid_hours")

        rate = float(config.get("rate") or self._billing.default_rate)
        entry = self._store.create(
            TIME_ENTRY,
            {
                "case_id": context.case_id,
                "description": config.get("description") or DEFAULT_BILLING_DESCRIPTION,
                "hours": hours,
                "rate": rate,
                "date_worked": date.today().isoformat(),
                "is_billable": True,
                "billed": False,
            },
        )
        rollback.register_action(
            RollbackAction(action_type=ActionType.BILLING, action_id=entry["id"])
        )
        return ActionResult.success(
            {"id": entry["id"], "hours": hours, "amount": hours * rate}
        )

    async def _calendar_event(
        self, config: Config, context: ExecutionContext, rollback: RollbackManager
    ) -> ActionResult:
        if self._calendar is None:
            return ActionResult.failed("Calendar provider is not configured")
        raw_start = config.get("start_date")
        if not raw_start:
            return ActionResult.failed("calendar_event requires start_date")
        start = to_utc(parse_iso(str(raw_start)))

        title = str(config.get("title") or DEFAULT_EVENT_TITLE)
        calendar_id = config.get("calendar_id")
        event = await self._calendar.create_event(
            title=title,
            start=start,
            duration_minutes=int(config.get("duration_minutes") or 60),
            description=str(config.get("description") or ""),
            attendees=tuple(config.get("attendees") or ()),
            reminder_minutes=int(config.get("reminder_minutes") or 1440),
            create_meet_link=bool(config.get("create_meet_link", False)),
            calendar_id=calendar_id,
        )
        event_id = event.get("id")

        deadline_id = None
        if context.case_id:
            try:
                deadline = self._store.create(
                    DEADLINE,
                    {
                        "case_id": context.case_id,
                        "deadline_type": config.get("deadline_type") or "custom",
                        "description": title,
                        "due_date": str(raw_start),
                        "status": "pending",
                        "is_critical": bool(config.get("is_critical", False)),
                        "google_event_id": event_id,
                    },
                )
                deadline_id = deadline["id"]
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.warning("Deadline creation failed: %s", exc)

        rollback.register_action(
            RollbackAction(
                action_type=ActionType.CALENDAR_EVENT,
                action_id=event_id,
                rollback_data={
                    "event_id": event_id,
                    "calendar_id": calendar_id,
                    "deadline_id": deadline_id,
                },
            )
        )
        return ActionResult.success(
            {
                "google_event_id": event_id,
                "link": event.get("htmlLink"),
                "deadline_id": deadline_id,
            }
        )

    async def _save_file(
        self, config: Config, context: ExecutionContext, rollback: RollbackManager
    ) -> ActionResult:
        path = config.get("path")
        mail_id = config.get("mail_id") or context.mail_id
        if not path or not mail_id:
            return ActionResult.skipped("missing_config")
        files = self._files
        if self._mail is None or files is None:
            return ActionResult.failed("Mail provider and file storage are required")

        message_id = self._resolve_message_id(str(mail_id), context)
        attachments = await self._mail.list_attachments(message_id)
        uploaded: list[str] = []
        try:
            for attachment in attachments:
                content = await self._mail.download_attachment(
                    message_id, attachment.attachment_id
                )
                target = f"{str(path).rstrip('/')}/{attachment.filename}"
                uploaded.append(await files.upload(target, content))
        except Exception:
            await _discard_uploads(files, uploaded)
            raise

        rollback.register_action(
            RollbackAction(
                action_type=ActionType.SAVE_FILE,
                action_id=str(path),
                rollback_data={"paths": list(uploaded)},
            )
        )
        return ActionResult.success({"path": path, "files_uploaded": len(uploaded)})

    async def _create_alert(
        self, config: Config, context: ExecutionContext, rollback: RollbackManager
    ) -> ActionResult:
        activity = self._store.create(
            ACTIVITY,
            {
                "activity_type": "automation_log",
                "title": config.get("message") or DEFAULT_ALERT_TITLE,
                "case_id": context.case_id,
                "client_id": context.client_id,
                "status": "pending",
                "metadata": {
                    "alert_type": config.get("alert_type") or "reminder",
                    "batch_id": context.batch_id,
                    "rule_id": context.rule_id,
                },
            },
        )
        rollback.register_action(
            RollbackAction(action_type=ActionType.CREATE_ALERT, action_id=activity["id"])
        )
        return ActionResult.success({"id": activity["id"]})

    # Internal helpers --------------------------------------------------------
    def _resolve_message_id(self, mail_id: str, context: ExecutionContext) -> str:
        """Map a mail record id to the provider's message id."""
        if mail_id == context.mail_id:
            snapshot_id = context.mail_snapshot.get("gmail_message_id")
            if snapshot_id:
                return str(snapshot_id)
        record = self._store.get(MAIL, mail_id)
        if record and record.get("gmail_message_id"):
            return str(record["gmail_message_id"])
        return mail_id


async def _discard_uploads(files: FileStorage, paths: list[str]) -> None:
    for path in paths:
        try:
            await files.delete(path)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Could not remove partial upload %s: %s", path, exc)


__all__ = ["ActionExecutor"]
