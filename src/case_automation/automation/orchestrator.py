"""Sequential execution of an approval batch with compensating rollback."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from case_automation.core.config import BillingSettings
from case_automation.core.interfaces import (
    CalendarProvider,
    EntityStore,
    FileStorage,
    MailProvider,
)
from case_automation.core.models import (
    ActionResult,
    ActionStatus,
    ApprovalBatch,
    BatchExecutionResult,
    BatchSummary,
    ExecutionContext,
)

from .executor import ActionExecutor
from .rollback import RollbackManager

LOGGER = logging.getLogger(__name__)

RollbackFactory = Callable[[], RollbackManager]


class BatchOrchestrator:
    """Run every action of a batch in order and compensate on failure.

    Actions are awaited one at a time. A failed action never stops the loop;
    once all actions were attempted, a single ``rollback_all`` call undoes
    everything that succeeded when at least one action failed.
    """

    def __init__(self, executor: ActionExecutor, rollback_factory: RollbackFactory) -> None:
        self._executor = executor
        self._rollback_factory = rollback_factory

    @classmethod
    def build(
        cls,
        store: EntityStore,
        *,
        mail: MailProvider | None = None,
        calendar: CalendarProvider | None = None,
        files: FileStorage | None = None,
        billing: BillingSettings | None = None,
    ) -> BatchOrchestrator:
        """Wire an executor and rollback managers over shared collaborators."""
        executor = ActionExecutor(
            store, mail=mail, calendar=calendar, files=files, billing=billing
        )
        return cls(
            executor,
            lambda: RollbackManager(store, calendar=calendar, files=files),
        )

    async def execute_batch_actions(self, batch: ApprovalBatch) -> BatchExecutionResult:
        """Execute ``batch`` and return per-action results plus a summary."""
        started = time.perf_counter()
        rollback_manager = self._rollback_factory()
        context = ExecutionContext.from_batch(batch)
        results: list[ActionResult] = []
        has_failure = False

        LOGGER.info(
            "Starting execution of %d action(s) for batch %s",
            len(batch.actions),
            batch.id,
        )

        for action in batch.actions:
            if not action.enabled:
                results.append(ActionResult.skipped("disabled").for_action(action))
                continue

            result = await self._executor.execute_action(
                action, context, rollback_manager
            )
            results.append(result.for_action(action))

            if result.status is ActionStatus.FAILED:
                has_failure = True
                LOGGER.error(
                    "Action %s (%s) failed: %s",
                    action.action_type,
                    action.id,
                    result.error,
                )

        rollback_report = None
        if has_failure:
            LOGGER.info("Failures detected in batch %s, initiating rollback", batch.id)
            rollback_report = await rollback_manager.rollback_all()
            if rollback_report.uncompensated_actions:
                LOGGER.warning(
                    "Batch %s left %d action(s) uncompensated",
                    batch.id,
                    len(rollback_report.uncompensated_actions),
                )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        summary = summarize(len(batch.actions), results, elapsed_ms)
        LOGGER.info("Batch %s completed in %dms: %s", batch.id, elapsed_ms, summary)

        return BatchExecutionResult(
            success=not has_failure,
            results=tuple(results),
            summary=summary,
            rollback=rollback_report,
        )


def summarize(
    total_actions: int, results: Sequence[ActionResult], execution_time_ms: int
) -> BatchSummary:
    """Count results by status."""
    return BatchSummary(
        total_actions=total_actions,
        successful=sum(1 for r in results if r.status is ActionStatus.SUCCESS),
        failed=sum(1 for r in results if r.status is ActionStatus.FAILED),
        skipped=sum(1 for r in results if r.status is ActionStatus.SKIPPED),
        execution_time_ms=execution_time_ms,
    )


__all__ = ["BatchOrchestrator", "RollbackFactory", "summarize"]
