"""Approval request emails sent to the batch approver."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from case_automation.core.datetime_utils import ensure_utc, utc_now
from case_automation.core.models import Action, ApprovalBatch

LOGGER = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
DEFAULT_LANGUAGE = "he"

_DATE_FORMAT = "%Y-%m-%d %H:%M UTC"

_TEXT: Mapping[str, Mapping[str, str]] = {
    "he": {
        "subject": "נושא",
        "subject_line": "אישור נדרש: {rule} - {mail_subject}",
        "heading": "בקשת אישור לאוטומציה",
        "rule": "כלל",
        "mail_details": "פרטי המייל המקורי:",
        "sender": "מאת",
        "case": "תיק",
        "client": "לקוח",
        "actions": "פעולות לביצוע",
        "note": "שים לב",
        "expires": "בקשה זו תפוג בתאריך",
        "approve": "אשר הכל",
        "reject": "דחה",
        "edit_prompt": "לעריכת הפעולות לפני ביצוע,",
        "edit_link": "לחץ כאן",
        "batch_id": "מזהה אצווה",
        "created": "נוצר",
        "recipient": "לנמען: {value}",
        "unspecified": "לא צוין",
        "hours": "{hours} שעות × {rate} ₪",
        "path": "נתיב: {value}",
    },
    "en": {
        "subject": "Subject",
        "subject_line": "Approval Required: {rule} - {mail_subject}",
        "heading": "Automation Approval Request",
        "rule": "Rule",
        "mail_details": "Original Email Details:",
        "sender": "From",
        "case": "Case",
        "client": "Client",
        "actions": "Actions to Execute",
        "note": "Note",
        "expires": "This request expires on",
        "approve": "Approve All",
        "reject": "Reject",
        "edit_prompt": "To edit actions before execution,",
        "edit_link": "click here",
        "batch_id": "Batch ID",
        "created": "Created",
        "recipient": "To: {value}",
        "unspecified": "not specified",
        "hours": "{hours} hours × {rate}",
        "path": "Path: {value}",
    },
}

_ACTION_LABELS: Mapping[str, Mapping[str, str]] = {
    "he": {
        "send_email": "שליחת מייל",
        "create_task": "יצירת משימה",
        "billing": "חיוב שעות",
        "calendar_event": "אירוע ביומן",
        "save_file": "שמירת קבצים",
        "create_alert": "יצירת התרעה",
    },
    "en": {
        "send_email": "Send Email",
        "create_task": "Create Task",
        "billing": "Log Billing",
        "calendar_event": "Calendar Event",
        "save_file": "Save Files",
        "create_alert": "Create Alert",
    },
}


@dataclass(frozen=True, slots=True)
class ApprovalEmail:
    """Rendered approval request."""

    subject: str
    body: str


class ApprovalEmailRenderer:
    """Render the bilingual approval request from a Jinja2 template."""

    def __init__(self, base_url: str, *, default_rate: float = 800.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_rate = default_rate
        self._env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def edit_url(self, batch_id: str) -> str:
        return f"{self._base_url}/ApprovalQueue?edit={batch_id}"

    def render(
        self,
        batch: ApprovalBatch,
        *,
        approve_url: str,
        reject_url: str,
        language: str = DEFAULT_LANGUAGE,
        case_number: str | None = None,
        client_name: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalEmail:
        if language not in _TEXT:
            LOGGER.debug("Unsupported language %r, falling back to %s", language, DEFAULT_LANGUAGE)
            language = DEFAULT_LANGUAGE
        text = _TEXT[language]
        snapshot = batch.mail_snapshot
        rule_name = batch.rule_name or batch.rule_id or ""
        mail_subject = str(snapshot.get("subject") or "")

        template = self._env.get_template("approval_email.html")
        body = template.render(
            language=language,
            direction="rtl" if language == "he" else "ltr",
            text=text,
            rule_name=rule_name,
            mail_subject=mail_subject,
            mail_from=snapshot.get("sender_email") or snapshot.get("from") or "",
            case_number=case_number,
            client_name=client_name,
            actions=[
                {
                    "label": action_label(action.action_type, language),
                    "summary": self.summarize_action(action, language),
                }
                for action in batch.actions
                if action.enabled
            ],
            expires_at=_format_date(batch.expires_at),
            approve_url=approve_url,
            reject_url=reject_url,
            edit_url=self.edit_url(batch.id),
            batch_id=batch.id,
            created_at=_format_date(now or utc_now()),
        )
        subject = text["subject_line"].format(rule=rule_name, mail_subject=mail_subject)
        return ApprovalEmail(subject=subject, body=body)

    def summarize_action(self, action: Action, language: str = DEFAULT_LANGUAGE) -> str:
        """Return a one-line description of what ``action`` will do."""
        text = _TEXT.get(language, _TEXT[DEFAULT_LANGUAGE])
        config: Mapping[str, Any] = action.config
        if action.action_type == "send_email":
            recipients = config.get("to") or text["unspecified"]
            if isinstance(recipients, (list, tuple)):
                recipients = ", ".join(str(item) for item in recipients)
            return text["recipient"].format(value=recipients)
        if action.action_type == "billing":
            return text["hours"].format(
                hours=config.get("hours") or 0,
                rate=config.get("rate") or _format_rate(self._default_rate),
            )
        if action.action_type == "save_file":
            return text["path"].format(value=config.get("path") or "")
        if action.action_type == "create_alert":
            return str(config.get("message") or "")
        if action.action_type in ("create_task", "calendar_event"):
            return str(config.get("title") or "")
        return ""


def action_label(action_type: str, language: str = DEFAULT_LANGUAGE) -> str:
    labels = _ACTION_LABELS.get(language, _ACTION_LABELS[DEFAULT_LANGUAGE])
    return labels.get(action_type, action_type)


def _format_date(value: datetime | None) -> str | None:
    normalized = ensure_utc(value)
    if normalized is None:
        return None
    return normalized.strftime(_DATE_FORMAT)


def _format_rate(rate: float) -> str:
    return str(int(rate)) if float(rate).is_integer() else str(rate)


__all__ = ["ApprovalEmail", "ApprovalEmailRenderer", "DEFAULT_LANGUAGE", "action_label"]
