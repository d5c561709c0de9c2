"""Persistence of automation runs and per-rule execution statistics."""

from __future__ import annotations

import logging
from typing import Any

from case_automation.core.datetime_utils import serialize_datetime, utc_now
from case_automation.core.interfaces import EntityNotFoundError, EntityStore, Record
from case_automation.core.models import AUTOMATION_LOG, MAIL_RULE, BatchSummary

LOGGER = logging.getLogger(__name__)

EXECUTION_COMPLETED = "completed"
EXECUTION_FAILED = "failed"
EXECUTION_ROLLED_BACK = "rolled_back"

_EMPTY_STATS: dict[str, Any] = {
    "total_executions": 0,
    "successful_executions": 0,
    "failed_executions": 0,
    "last_execution": None,
    "success_rate": 0.0,
}


class AutomationLogbook:
    """Writes ``AutomationLog`` records and keeps rule statistics current.

    Both writes are bookkeeping: failures are logged and never interrupt the
    batch that produced them.
    """

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def log_execution(
        self,
        *,
        rule_id: str | None,
        rule_name: str | None,
        mail_id: str | None,
        mail_subject: str | None,
        execution_status: str,
        summary: BatchSummary,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Record | None:
        try:
            return self._store.create(
                AUTOMATION_LOG,
                {
                    "rule_id": rule_id,
                    "rule_name": rule_name,
                    "mail_id": mail_id,
                    "mail_subject": mail_subject,
                    "execution_status": execution_status,
                    "actions_summary": {
                        "total": summary.total_actions,
                        "success": summary.successful,
                        "failed": summary.failed,
                        "skipped": summary.skipped,
                    },
                    "execution_time_ms": summary.execution_time_ms,
                    "error_message": error_message,
                    "metadata": dict(metadata or {}),
                    "executed_at": serialize_datetime(utc_now()),
                },
            )
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Failed to save automation log for rule %s", rule_id)
            return None

    def update_rule_stats(self, rule_id: str | None, success: bool) -> dict[str, Any] | None:
        """Increment the execution counters stored on a mail rule."""
        if not rule_id:
            return None
        updated: dict[str, Any] = {}

        def bump(current: Record) -> Record:
            metadata = dict(current.get("metadata") or {})
            stats = {**_EMPTY_STATS, **(metadata.get("stats") or {})}
            stats["total_executions"] += 1
            if success:
                stats["successful_executions"] += 1
            else:
                stats["failed_executions"] += 1
            stats["success_rate"] = (
                stats["successful_executions"] / stats["total_executions"] * 100
            )
            stats["last_execution"] = serialize_datetime(utc_now())
            metadata["stats"] = stats
            updated.update(stats)
            return {**current, "metadata": metadata}

        try:
            self._store.update_with(MAIL_RULE, rule_id, bump)
        except EntityNotFoundError:
            LOGGER.warning("Cannot update stats: rule %s not found", rule_id)
            return None
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Failed to update stats for rule %s", rule_id)
            return None

        LOGGER.info(
            "Updated stats for rule %s: %.1f%% success rate",
            rule_id,
            updated["success_rate"],
        )
        return updated

    def history(self, rule_id: str, limit: int = 50) -> list[Record]:
        """Return the most recent automation logs of one rule."""
        records = [
            record
            for record in self._store.list(AUTOMATION_LOG, order_by="-executed_at")
            if record.get("rule_id") == rule_id
        ]
        return records[:limit]


__all__ = [
    "AutomationLogbook",
    "EXECUTION_COMPLETED",
    "EXECUTION_FAILED",
    "EXECUTION_ROLLED_BACK",
]
