"""Tests for compensating rollback."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from case_automation.automation.rollback import (
    RollbackManager,
    RollbackState,
    RollbackStateError,
)
from case_automation.core.models import (
    ACTIVITY,
    DEADLINE,
    TASK,
    TIME_ENTRY,
    ActionType,
    RollbackAction,
)


def test_rollback_walks_entries_in_reverse(store, calendar, files) -> None:
    task = store.create(TASK, {"title": "Review"})
    entry = store.create(TIME_ENTRY, {"hours": 1})
    alert = store.create(ACTIVITY, {"title": "Heads up"})
    manager = RollbackManager(store, calendar=calendar, files=files)
    manager.register_action(RollbackAction(ActionType.CREATE_TASK, task["id"]))
    manager.register_action(RollbackAction(ActionType.BILLING, entry["id"]))
    manager.register_action(RollbackAction(ActionType.CREATE_ALERT, alert["id"]))

    report = asyncio.run(manager.rollback_all())

    assert [e.action_type for e in report.rolled_back] == [
        ActionType.CREATE_ALERT,
        ActionType.BILLING,
        ActionType.CREATE_TASK,
    ]
    assert report.success and report.fully_compensated
    assert store.get(TASK, task["id"]) is None
    assert store.get(TIME_ENTRY, entry["id"]) is None
    assert store.get(ACTIVITY, alert["id"]) is None
    assert manager.state is RollbackState.DONE


def test_register_after_rollback_raises(store) -> None:
    manager = RollbackManager(store)
    asyncio.run(manager.rollback_all())

    with pytest.raises(RollbackStateError):
        manager.register_action(RollbackAction(ActionType.CREATE_TASK, "t-1"))
    with pytest.raises(RollbackStateError):
        asyncio.run(manager.rollback_all())


def test_send_email_is_reported_uncompensated(store) -> None:
    manager = RollbackManager(store)
    manager.register_action(
        RollbackAction(ActionType.SEND_EMAIL, "msg-1", {"to": "client@example.com"})
    )

    report = asyncio.run(manager.rollback_all())

    assert report.success
    assert not report.fully_compensated
    assert report.uncompensated_actions[0].action_id == "msg-1"
    assert report.rolled_back == ()


def test_not_executed_entries_are_skipped(store) -> None:
    task = store.create(TASK, {"title": "Keep me"})
    manager = RollbackManager(store)
    manager.register_action(RollbackAction(ActionType.CREATE_TASK, task["id"], executed=False))

    report = asyncio.run(manager.rollback_all())

    assert report.attempted == 0
    assert store.get(TASK, task["id"]) is not None


def test_failures_are_isolated_and_recorded(store, calendar) -> None:
    task = store.create(TASK, {"title": "Review"})
    calendar.fail_delete = True
    manager = RollbackManager(store, calendar=calendar)
    manager.register_action(RollbackAction(ActionType.CREATE_TASK, task["id"]))
    manager.register_action(
        RollbackAction(ActionType.CALENDAR_EVENT, "evt-1", {"event_id": "evt-1"})
    )

    report = asyncio.run(manager.rollback_all())

    assert not report.success
    assert report.failures[0].action_type is ActionType.CALENDAR_EVENT
    assert "calendar unavailable" in report.failures[0].error
    assert [e.action_type for e in report.rolled_back] == [ActionType.CREATE_TASK]
    assert store.get(TASK, task["id"]) is None

    activities = store.filter(ACTIVITY, {"status": "failed"})
    assert len(activities) == 1
    assert activities[0]["metadata"]["errors"][0]["action_id"] == "evt-1"


def test_calendar_rollback_removes_event_and_deadline(store, calendar) -> None:
    deadline = store.create(DEADLINE, {"description": "Respond"})
    calendar.events["evt-7"] = {"title": "Respond"}
    manager = RollbackManager(store, calendar=calendar)
    manager.register_action(
        RollbackAction(
            ActionType.CALENDAR_EVENT,
            "evt-7",
            {"event_id": "evt-7", "calendar_id": None, "deadline_id": deadline["id"]},
        )
    )

    report = asyncio.run(manager.rollback_all())

    assert report.fully_compensated
    assert calendar.deleted == ["evt-7"]
    assert store.get(DEADLINE, deadline["id"]) is None


def test_calendar_event_is_removed_even_when_deadline_delete_fails(
    store, calendar, monkeypatch
) -> None:
    deadline = store.create(DEADLINE, {"description": "Respond"})
    calendar.events["evt-7"] = {"title": "Respond"}

    def locked_delete(entity: str, record_id: str) -> None:
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "delete", locked_delete)
    manager = RollbackManager(store, calendar=calendar)
    manager.register_action(
        RollbackAction(
            ActionType.CALENDAR_EVENT,
            "evt-7",
            {"event_id": "evt-7", "deadline_id": deadline["id"]},
        )
    )

    report = asyncio.run(manager.rollback_all())

    assert calendar.deleted == ["evt-7"]
    assert not report.fully_compensated
    assert len(report.failures) == 1
    assert "database is locked" in report.failures[0].error
    assert store.get(DEADLINE, deadline["id"]) is not None


def test_calendar_rollback_without_provider_fails(store) -> None:
    manager = RollbackManager(store)
    manager.register_action(
        RollbackAction(ActionType.CALENDAR_EVENT, "evt-1", {"event_id": "evt-1"})
    )

    report = asyncio.run(manager.rollback_all())

    assert len(report.failures) == 1
    assert "manual cleanup" in report.failures[0].error


def test_save_file_rollback_deletes_each_path(store, files) -> None:
    files.files = {"/root/a.pdf": b"a", "/root/b.pdf": b"b"}
    manager = RollbackManager(store, files=files)
    manager.register_action(
        RollbackAction(ActionType.SAVE_FILE, "/docs", {"paths": ["/root/a.pdf", "/root/b.pdf"]})
    )

    report = asyncio.run(manager.rollback_all())

    assert report.fully_compensated
    assert files.deleted == ["/root/a.pdf", "/root/b.pdf"]
    assert files.files == {}


def test_already_deleted_record_counts_as_compensated(store) -> None:
    manager = RollbackManager(store)
    manager.register_action(RollbackAction(ActionType.CREATE_TASK, "missing"))

    report = asyncio.run(manager.rollback_all())

    assert report.success
    assert len(report.rolled_back) == 1
