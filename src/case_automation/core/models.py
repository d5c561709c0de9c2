"""Core domain models used across the application."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .datetime_utils import parse_datetime, serialize_datetime

# Entity names understood by the entity store.
TASK = "Task"
TIME_ENTRY = "TimeEntry"
DEADLINE = "Deadline"
ACTIVITY = "Activity"
APPROVAL_BATCH = "ApprovalBatch"
AUTOMATION_LOG = "AutomationLog"
MAIL_RULE = "MailRule"
CASE = "Case"
MAIL = "Mail"


class ActionType(str, Enum):
    """The closed set of actions a rule can stage."""

    SEND_EMAIL = "send_email"
    CREATE_TASK = "create_task"
    BILLING = "billing"
    CALENDAR_EVENT = "calendar_event"
    SAVE_FILE = "save_file"
    CREATE_ALERT = "create_alert"

    @classmethod
    def parse(cls, raw: str | None) -> ActionType | None:
        """Return the member matching ``raw`` or ``None`` when unknown."""
        try:
            return cls(raw)
        except ValueError:
            return None


class ActionStatus(str, Enum):
    """Outcome of a single action."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class BatchStatus(str, Enum):
    """Lifecycle states of an approval batch."""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Statuses from which a batch can no longer be approved, rejected or edited.
PROCESSED_STATUSES = frozenset(
    {
        BatchStatus.APPROVED,
        BatchStatus.EXECUTING,
        BatchStatus.EXECUTED,
        BatchStatus.FAILED,
        BatchStatus.ROLLED_BACK,
        BatchStatus.REJECTED,
        BatchStatus.CANCELLED,
    }
)


@dataclass(slots=True)
class Action:
    """One staged side-effecting operation inside a batch."""

    id: str
    action_type: str
    config: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    @property
    def kind(self) -> ActionType | None:
        """Return the parsed action type, ``None`` for unknown types."""
        return ActionType.parse(self.action_type)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action_type": self.action_type,
            "config": dict(self.config),
            "enabled": self.enabled,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Action:
        return cls(
            id=str(record.get("id") or ""),
            action_type=str(record.get("action_type") or ""),
            config=dict(record.get("config") or {}),
            enabled=bool(record.get("enabled", True)),
        )


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ApprovalBatch:
    """Actions staged for one matched inbound mail."""

    id: str
    rule_id: str | None
    mail_id: str | None
    case_id: str | None
    client_id: str | None
    mail_snapshot: dict[str, Any]
    actions: tuple[Action, ...]
    approver_email: str | None = None
    status: BatchStatus = BatchStatus.PENDING_APPROVAL
    rule_name: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    approved_at: datetime | None = None
    approved_via: str | None = None
    approved_by_email: str | None = None
    execution_summary: dict[str, Any] | None = None
    error_message: str | None = None

    def with_action_enabled(self, action_id: str, enabled: bool) -> ApprovalBatch:
        """Return a copy with the ``enabled`` flag of one action changed."""
        if not any(action.id == action_id for action in self.actions):
            raise KeyError(action_id)
        actions = tuple(
            replace(action, enabled=enabled) if action.id == action_id else action
            for action in self.actions
        )
        return replace(self, actions=actions)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "mail_id": self.mail_id,
            "case_id": self.case_id,
            "client_id": self.client_id,
            "mail_snapshot": dict(self.mail_snapshot),
            "actions": [action.to_record() for action in self.actions],
            "approver_email": self.approver_email,
            "status": self.status.value,
            "expires_at": serialize_datetime(self.expires_at),
            "created_at": serialize_datetime(self.created_at),
            "approved_at": serialize_datetime(self.approved_at),
            "approved_via": self.approved_via,
            "approved_by_email": self.approved_by_email,
            "execution_summary": self.execution_summary,
            "error_message": self.error_message,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> ApprovalBatch:
        return cls(
            id=str(record["id"]),
            rule_id=record.get("rule_id"),
            rule_name=record.get("rule_name"),
            mail_id=record.get("mail_id"),
            case_id=record.get("case_id"),
            client_id=record.get("client_id"),
            mail_snapshot=dict(record.get("mail_snapshot") or {}),
            actions=tuple(
                Action.from_record(item) for item in record.get("actions") or ()
            ),
            approver_email=record.get("approver_email"),
            status=BatchStatus(record.get("status") or BatchStatus.PENDING_APPROVAL),
            expires_at=parse_datetime(record.get("expires_at")),
            created_at=parse_datetime(record.get("created_at")),
            approved_at=parse_datetime(record.get("approved_at")),
            approved_via=record.get("approved_via"),
            approved_by_email=record.get("approved_by_email"),
            execution_summary=record.get("execution_summary"),
            error_message=record.get("error_message"),
        )


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Read-only data shared by every action of one batch."""

    batch_id: str
    rule_id: str | None
    mail_id: str | None
    case_id: str | None
    client_id: str | None
    mail_snapshot: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_batch(cls, batch: ApprovalBatch) -> ExecutionContext:
        return cls(
            batch_id=batch.id,
            rule_id=batch.rule_id,
            mail_id=batch.mail_id,
            case_id=batch.case_id,
            client_id=batch.client_id,
            mail_snapshot=dict(batch.mail_snapshot),
        )


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Normalized outcome of one action."""

    status: ActionStatus
    result: dict[str, Any] | None = None
    error: str | None = None
    reason: str | None = None
    action_id: str | None = None
    action_type: str | None = None

    @classmethod
    def success(cls, result: dict[str, Any] | None = None) -> ActionResult:
        return cls(status=ActionStatus.SUCCESS, result=result or {})

    @classmethod
    def failed(cls, error: str) -> ActionResult:
        return cls(status=ActionStatus.FAILED, error=error)

    @classmethod
    def skipped(cls, reason: str) -> ActionResult:
        return cls(status=ActionStatus.SKIPPED, reason=reason)

    def for_action(self, action: Action) -> ActionResult:
        """Return a copy tagged with the action it belongs to."""
        return replace(self, action_id=action.id, action_type=action.action_type)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status.value}
        if self.action_id is not None:
            payload["action_id"] = self.action_id
        if self.action_type is not None:
            payload["action_type"] = self.action_type
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(slots=True)
class RollbackAction:
    """Record of an executed action that may need compensating."""

    action_type: ActionType
    action_id: str | None
    rollback_data: dict[str, Any] = field(default_factory=dict)
    executed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "action_id": self.action_id,
            "rollback_data": dict(self.rollback_data),
        }


@dataclass(frozen=True, slots=True)
class RollbackFailure:
    """A compensation attempt that raised."""

    action_type: ActionType
    action_id: str | None
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "action_id": self.action_id,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class RollbackReport:
    """Outcome of compensating a batch."""

    attempted: int
    rolled_back: tuple[RollbackAction, ...]
    failures: tuple[RollbackFailure, ...]
    uncompensated_actions: tuple[RollbackAction, ...]

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def fully_compensated(self) -> bool:
        return not self.uncompensated_actions

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "attempted": self.attempted,
            "rolled_back": [entry.to_dict() for entry in self.rolled_back],
            "failures": [failure.to_dict() for failure in self.failures],
            "uncompensated_actions": [
                entry.to_dict() for entry in self.uncompensated_actions
            ],
        }


@dataclass(frozen=True, slots=True)
class BatchSummary:
    """Counts derived from a batch's results."""

    total_actions: int
    successful: int
    failed: int
    skipped: int
    execution_time_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_actions": self.total_actions,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass(frozen=True, slots=True)
class BatchExecutionResult:
    """Everything the orchestrator learned while running a batch."""

    success: bool
    results: tuple[ActionResult, ...]
    summary: BatchSummary
    rollback: RollbackReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": [result.to_dict() for result in self.results],
            "summary": self.summary.to_dict(),
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }


@dataclass(frozen=True, slots=True)
class TokenPayload:
    """Claims carried by an approval token."""

    v: int
    batch_id: str
    approver_email: str
    action: str
    exp: int
    iat: int
    nonce: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "v": self.v,
            "batch_id": self.batch_id,
            "approver_email": self.approver_email,
            "action": self.action,
            "exp": self.exp,
            "iat": self.iat,
            "nonce": self.nonce,
        }


@dataclass(frozen=True, slots=True)
class MailAttachment:
    """Attachment metadata reported by the mail provider."""

    attachment_id: str
    filename: str
    mime_type: str | None = None
    size: int | None = None


@dataclass(frozen=True, slots=True)
class OverrideExample:
    """A task whose case was changed by hand."""

    task_id: str
    mail_subject: str | None
    original_case: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "mail_subject": self.mail_subject,
            "original_case": self.original_case,
        }


@dataclass(frozen=True, slots=True)
class OptimizationSuggestion:
    """Suggested refinement for a mail rule."""

    rule_id: str
    rule_name: str
    current_subject_regex: str
    suggested_case_number: str
    suggested_regex: str
    override_count: int
    examples: tuple[OverrideExample, ...]
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "current_subject_regex": self.current_subject_regex,
            "suggested_case_number": self.suggested_case_number,
            "suggested_regex": self.suggested_regex,
            "override_count": self.override_count,
            "examples": [example.to_dict() for example in self.examples],
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class OptimizationReport:
    """Override statistics and the suggestions derived from them."""

    total_tasks: int
    total_overrides: int
    override_rate: int
    suggestions: tuple[OptimizationSuggestion, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "stats": {
                "total_tasks": self.total_tasks,
                "total_overrides": self.total_overrides,
                "override_rate": self.override_rate,
            },
            "suggestions": [suggestion.to_dict() for suggestion in self.suggestions],
        }


__all__ = [
    "ACTIVITY",
    "APPROVAL_BATCH",
    "AUTOMATION_LOG",
    "CASE",
    "DEADLINE",
    "MAIL",
    "MAIL_RULE",
    "PROCESSED_STATUSES",
    "TASK",
    "TIME_ENTRY",
    "Action",
    "ActionResult",
    "ActionStatus",
    "ActionType",
    "ApprovalBatch",
    "BatchExecutionResult",
    "BatchStatus",
    "BatchSummary",
    "ExecutionContext",
    "MailAttachment",
    "OptimizationReport",
    "OptimizationSuggestion",
    "OverrideExample",
    "RollbackAction",
    "RollbackFailure",
    "RollbackReport",
    "TokenPayload",
]
