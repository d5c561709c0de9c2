"""Compensation of executed actions when a batch fails."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from case_automation.core.datetime_utils import serialize_datetime, utc_now
from case_automation.core.interfaces import (
    CalendarProvider,
    EntityNotFoundError,
    EntityStore,
    FileStorage,
)
from case_automation.core.models import (
    ACTIVITY,
    DEADLINE,
    TASK,
    TIME_ENTRY,
    ActionType,
    RollbackAction,
    RollbackFailure,
    RollbackReport,
)

from .dispatch import ensure_exhaustive

LOGGER = logging.getLogger(__name__)

# A compensator returns False when the action cannot be reversed at all.
Compensator = Callable[[RollbackAction], Awaitable[bool]]


class RollbackState(str, Enum):
    """Lifecycle of a rollback manager."""

    COLLECTING = "collecting"
    ROLLING_BACK = "rolling_back"
    DONE = "done"


class RollbackStateError(RuntimeError):
    """Raised when the manager is used outside its allowed state."""


class RollbackError(RuntimeError):
    """Raised by a compensator that could not undo its action."""


class RollbackManager:
    """Records executed actions of one batch and undoes them in LIFO order.

    A manager is created per batch execution. ``register_action`` is only
    accepted while collecting; ``rollback_all`` runs at most once and moves the
    manager to ``done`` whatever the outcome. Each compensation is attempted
    independently so one failure never prevents undoing the others.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        calendar: CalendarProvider | None = None,
        files: FileStorage | None = None,
    ) -> None:
        self._store = store
        self._calendar = calendar
        self._files = files
        self._entries: list[RollbackAction] = []
        self._state = RollbackState.COLLECTING
        self._compensators: dict[ActionType, Compensator] = {
            ActionType.SEND_EMAIL: self._undo_send_email,
            ActionType.CREATE_TASK: self._undo_create_task,
            ActionType.BILLING: self._undo_billing,
            ActionType.CALENDAR_EVENT: self._undo_calendar_event,
            ActionType.SAVE_FILE: self._undo_save_file,
            ActionType.CREATE_ALERT: self._undo_create_alert,
        }
        ensure_exhaustive(self._compensators, "RollbackManager")

    @property
    def state(self) -> RollbackState:
        return self._state

    @property
    def entries(self) -> tuple[RollbackAction, ...]:
        return tuple(self._entries)

    @property
    def count(self) -> int:
        return len(self._entries)

    def register_action(self, entry: RollbackAction) -> None:
        """Remember an executed action so it can be compensated later."""
        if self._state is not RollbackState.COLLECTING:
            raise RollbackStateError(
                f"Cannot register {entry.action_type.value} while {self._state.value}"
            )
        self._entries.append(entry)
        LOGGER.debug(
            "Registered %s (ID: %s) for rollback",
            entry.action_type.value,
            entry.action_id or "N/A",
        )

    async def rollback_all(self) -> RollbackReport:
        """Undo every executed entry, newest first."""
        if self._state is not RollbackState.COLLECTING:
            raise RollbackStateError(f"Rollback already {self._state.value}")
        self._state = RollbackState.ROLLING_BACK

        pending = [entry for entry in reversed(self._entries) if entry.executed]
        rolled_back: list[RollbackAction] = []
        failures: list[RollbackFailure] = []
        uncompensated: list[RollbackAction] = []
        LOGGER.info("Rolling back %d action(s)", len(pending))

        try:
            for entry in pending:
                try:
                    reversed_ok = await self._compensators[entry.action_type](entry)
                except Exception as exc:  # pylint: disable=broad-except
                    LOGGER.error(
                        "Rollback of %s (%s) failed: %s",
                        entry.action_type.value,
                        entry.action_id,
                        exc,
                    )
                    failures.append(
                        RollbackFailure(
                            action_type=entry.action_type,
                            action_id=entry.action_id,
                            error=str(exc) or exc.__class__.__name__,
                        )
                    )
                    uncompensated.append(entry)
                    continue
                if reversed_ok:
                    LOGGER.info(
                        "Rolled back %s (%s)", entry.action_type.value, entry.action_id
                    )
                    rolled_back.append(entry)
                else:
                    uncompensated.append(entry)
        finally:
            self._state = RollbackState.DONE

        report = RollbackReport(
            attempted=len(pending),
            rolled_back=tuple(rolled_back),
            failures=tuple(failures),
            uncompensated_actions=tuple(uncompensated),
        )
        if failures:
            self._record_failures(report)
        return report

    # Compensators ------------------------------------------------------------
    async def _undo_send_email(self, entry: RollbackAction) -> bool:
        LOGGER.warning(
            "Email %s to %s cannot be unsent; manual follow-up required",
            entry.action_id or "(unknown id)",
            entry.rollback_data.get("to"),
        )
        return False

    async def _undo_create_task(self, entry: RollbackAction) -> bool:
        return self._delete_record(TASK, entry)

    async def _undo_billing(self, entry: RollbackAction) -> bool:
        return self._delete_record(TIME_ENTRY, entry)

    async def _undo_create_alert(self, entry: RollbackAction) -> bool:
        return self._delete_record(ACTIVITY, entry)

    async def _undo_calendar_event(self, entry: RollbackAction) -> bool:
        errors: list[str] = []
        deadline_id = entry.rollback_data.get("deadline_id")
        if deadline_id:
            try:
                self._store.delete(DEADLINE, deadline_id)
            except EntityNotFoundError:
                LOGGER.info("Deadline %s already removed", deadline_id)
            except Exception as exc:  # pylint: disable=broad-except
                errors.append(f"deadline {deadline_id}: {exc}")

        event_id = entry.rollback_data.get("event_id") or entry.action_id
        if not event_id:
            errors.append("calendar event id was not recorded")
        elif self._calendar is None:
            errors.append(
                f"calendar event {event_id} needs manual cleanup: no calendar configured"
            )
        else:
            try:
                await self._calendar.delete_event(
                    event_id, calendar_id=entry.rollback_data.get("calendar_id")
                )
            except Exception as exc:  # pylint: disable=broad-except
                errors.append(f"calendar event {event_id}: {exc}")
        if errors:
            raise RollbackError("; ".join(errors))
        return True

    async def _undo_save_file(self, entry: RollbackAction) -> bool:
        paths = list(entry.rollback_data.get("paths") or ())
        if not paths:
            return True
        if self._files is None:
            raise RollbackError(
                f"{len(paths)} uploaded file(s) need manual cleanup: no file storage configured"
            )
        errors: list[str] = []
        for path in paths:
            try:
                await self._files.delete(path)
            except Exception as exc:  # pylint: disable=broad-except
                errors.append(f"{path}: {exc}")
        if errors:
            raise RollbackError("; ".join(errors))
        return True

    def _delete_record(self, entity: str, entry: RollbackAction) -> bool:
        if not entry.action_id:
            raise RollbackError(f"No {entity} id recorded for rollback")
        try:
            self._store.delete(entity, entry.action_id)
        except EntityNotFoundError:
            LOGGER.info("%s %s already removed", entity, entry.action_id)
        return True

    def _record_failures(self, report: RollbackReport) -> None:
        """Leave an activity entry so operators can finish the cleanup."""
        try:
            self._store.create(
                ACTIVITY,
                {
                    "activity_type": "automation_log",
                    "status": "failed",
                    "title": "Rollback encountered errors",
                    "description": f"Failed to rollback {len(report.failures)} action(s)",
                    "metadata": {
                        "errors": [failure.to_dict() for failure in report.failures],
                        "timestamp": serialize_datetime(utc_now()),
                        "rollback_attempted": report.attempted,
                    },
                },
            )
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Failed to record rollback errors")


__all__ = [
    "RollbackError",
    "RollbackManager",
    "RollbackState",
    "RollbackStateError",
]
