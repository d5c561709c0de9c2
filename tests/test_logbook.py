"""Tests for automation logs and rule statistics."""

from __future__ import annotations

from case_automation.automation.logbook import AutomationLogbook
from case_automation.core.models import AUTOMATION_LOG, MAIL_RULE, BatchSummary

SUMMARY = BatchSummary(total_actions=3, successful=2, failed=1, skipped=0, execution_time_ms=12)


def test_update_rule_stats_accumulates(store) -> None:
    rule = store.create(MAIL_RULE, {"name": "Office actions", "metadata": {"owner": "ip-team"}})
    logbook = AutomationLogbook(store)

    logbook.update_rule_stats(rule["id"], True)
    logbook.update_rule_stats(rule["id"], True)
    stats = logbook.update_rule_stats(rule["id"], False)

    stored = store.get(MAIL_RULE, rule["id"])
    assert stored["metadata"]["owner"] == "ip-team"
    assert stored["metadata"]["stats"] == stats
    assert stats["total_executions"] == 3
    assert stats["successful_executions"] == 2
    assert stats["failed_executions"] == 1
    assert round(stats["success_rate"], 2) == 66.67
    assert stats["last_execution"]


def test_update_rule_stats_for_missing_rule_is_ignored(store) -> None:
    assert AutomationLogbook(store).update_rule_stats("missing", True) is None
    assert AutomationLogbook(store).update_rule_stats(None, True) is None


def test_log_execution_and_history(store) -> None:
    logbook = AutomationLogbook(store)
    logbook.log_execution(
        rule_id="rule-1",
        rule_name="Office actions",
        mail_id="mail-1",
        mail_subject="OA received",
        execution_status="failed",
        summary=SUMMARY,
        error_message="calendar quota exceeded",
    )
    logbook.log_execution(
        rule_id="rule-2",
        rule_name="Renewals",
        mail_id="mail-2",
        mail_subject="Renewal due",
        execution_status="completed",
        summary=SUMMARY,
    )

    records = store.list(AUTOMATION_LOG)
    assert len(records) == 2
    failed = next(record for record in records if record["rule_id"] == "rule-1")
    assert failed["actions_summary"] == {"total": 3, "success": 2, "failed": 1, "skipped": 0}
    assert failed["error_message"] == "calendar quota exceeded"
    history = logbook.history("rule-1")
    assert [entry["mail_subject"] for entry in history] == ["OA received"]
