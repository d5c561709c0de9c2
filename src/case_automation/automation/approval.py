"""Approval workflow around staged batches.

A batch is staged as ``pending_approval`` and the approver receives signed
approve/reject links. Redeeming a link goes through the checks below in order;
the first one that fails determines the error code returned to the caller:

=====================  ======  ==========================================
code                   status  meaning
=====================  ======  ==========================================
``MISSING_TOKEN``      400     request did not carry a token
``CONFIG_ERROR``       500     no signing secret configured
``INVALID_TOKEN``      401     bad signature, expired or wrong action
``BATCH_NOT_FOUND``    404     token references an unknown batch
``APPROVER_MISMATCH``  403     token was issued to someone else
``ALREADY_PROCESSED``  409     batch left ``pending_approval``
``BATCH_EXPIRED``      410     batch expiry passed
``TOKEN_ALREADY_USED`` 409     nonce was redeemed before
=====================  ======  ==========================================
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from case_automation.core.config import ApprovalSettings
from case_automation.core.datetime_utils import ensure_utc, serialize_datetime, utc_now
from case_automation.core.interfaces import (
    EntityStore,
    MailProvider,
    NonceAlreadyUsedError,
)
from case_automation.core.models import (
    APPROVAL_BATCH,
    MAIL,
    PROCESSED_STATUSES,
    Action,
    ApprovalBatch,
    BatchExecutionResult,
    BatchStatus,
    TokenPayload,
)

from .logbook import (
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_ROLLED_BACK,
    AutomationLogbook,
)
from .notifications import DEFAULT_LANGUAGE, ApprovalEmailRenderer
from .orchestrator import BatchOrchestrator
from .tokens import (
    ACTION_APPROVE,
    ACTION_REJECT,
    create_token_payload,
    generate_approval_url,
    hash_nonce,
    sign_approval_token,
    verify_approval_token,
)

LOGGER = logging.getLogger(__name__)

VIA_EMAIL_LINK = "email_link"
VIA_APP = "app"
VIA_AUTO = "auto"


class ApprovalError(RuntimeError):
    """A request to approve, reject or edit a batch was refused."""

    def __init__(
        self, code: str, message: str, status_code: int, **details: Any
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message, **self.details}


@dataclass(frozen=True, slots=True)
class ApprovalLinks:
    """Signed tokens and quick links for one batch."""

    approve_token: str
    reject_token: str
    approve_url: str
    reject_url: str


@dataclass(frozen=True, slots=True)
class ApprovalOutcome:
    """Final state of a batch after approval or rejection."""

    batch_id: str
    status: BatchStatus
    message: str
    execution: BatchExecutionResult | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (BatchStatus.EXECUTED, BatchStatus.REJECTED)

    @property
    def http_status(self) -> int:
        """200 for a clean outcome, 207 when some actions failed."""
        return 200 if self.success else 207

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "batch_id": self.batch_id,
            "status": self.status.value,
            "message": self.message,
        }
        if self.execution is not None:
            payload["execution_summary"] = self.execution.to_dict()
        payload.update(self.extra)
        return payload


class ApprovalService:
    """Stage batches, hand out approval links and redeem them."""

    def __init__(
        self,
        store: EntityStore,
        orchestrator: BatchOrchestrator,
        settings: ApprovalSettings,
        *,
        mail: MailProvider | None = None,
        logbook: AutomationLogbook | None = None,
        renderer: ApprovalEmailRenderer | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._settings = settings
        self._mail = mail
        self._logbook = logbook or AutomationLogbook(store)
        self._renderer = renderer or ApprovalEmailRenderer(settings.app_base_url)

    # Batch lifecycle ---------------------------------------------------------
    def get_batch(self, batch_id: str) -> ApprovalBatch:
        record = self._store.get(APPROVAL_BATCH, batch_id)
        if record is None:
            raise ApprovalError("BATCH_NOT_FOUND", "Approval batch not found", 404)
        return ApprovalBatch.from_record(record)

    async def stage_batch(
        self,
        *,
        actions: Sequence[Action | Mapping[str, Any]],
        rule_id: str | None = None,
        rule_name: str | None = None,
        mail_id: str | None = None,
        case_id: str | None = None,
        client_id: str | None = None,
        mail_snapshot: Mapping[str, Any] | None = None,
        approver_email: str | None = None,
        require_approval: bool | None = None,
        notify: bool = True,
    ) -> ApprovalBatch:
        """Persist a new batch; run it at once when no approval is required."""
        now = utc_now()
        needs_approval = (
            self._settings.require_approval if require_approval is None else require_approval
        )
        batch = ApprovalBatch(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            rule_name=rule_name,
            mail_id=mail_id,
            case_id=case_id,
            client_id=client_id,
            mail_snapshot=dict(mail_snapshot or {}),
            actions=tuple(_coerce_action(item) for item in actions),
            approver_email=approver_email,
            status=BatchStatus.PENDING_APPROVAL if needs_approval else BatchStatus.APPROVED,
            expires_at=now + timedelta(hours=self._settings.batch_ttl_hours),
            created_at=now,
        )
        self._store.create(APPROVAL_BATCH, batch.to_record())
        LOGGER.info(
            "Staged batch %s with %d action(s) (%s)",
            batch.id,
            len(batch.actions),
            batch.status.value,
        )

        if not needs_approval:
            await self._execute(batch, via=VIA_AUTO, approver_email=approver_email)
            return self.get_batch(batch.id)

        if notify and approver_email and self._mail is not None:
            await self.notify_approver(batch)
        return batch

    def issue_approval_links(
        self, batch: ApprovalBatch, *, now: int | None = None
    ) -> ApprovalLinks:
        """Sign approve and reject tokens for the batch approver."""
        if not batch.approver_email:
            raise ApprovalError(
                "APPROVER_MISMATCH", "Batch has no approver to issue links for", 403
            )
        tokens = {}
        for action in (ACTION_APPROVE, ACTION_REJECT):
            payload = create_token_payload(
                batch.id,
                batch.approver_email,
                self._settings.token_ttl_minutes,
                action=action,
                now=now,
            )
            tokens[action] = sign_approval_token(payload, self._settings.hmac_secret)
        base_url = self._settings.app_base_url
        return ApprovalLinks(
            approve_token=tokens[ACTION_APPROVE],
            reject_token=tokens[ACTION_REJECT],
            approve_url=generate_approval_url(tokens[ACTION_APPROVE], base_url, ACTION_APPROVE),
            reject_url=generate_approval_url(tokens[ACTION_REJECT], base_url, ACTION_REJECT),
        )

    async def notify_approver(
        self, batch: ApprovalBatch, *, language: str = DEFAULT_LANGUAGE
    ) -> str | None:
        """Email the approval request; returns the provider message id."""
        if self._mail is None or not batch.approver_email:
            LOGGER.warning("Cannot notify approver for batch %s", batch.id)
            return None
        links = self.issue_approval_links(batch)
        email = self._renderer.render(
            batch,
            approve_url=links.approve_url,
            reject_url=links.reject_url,
            language=language,
            case_number=batch.mail_snapshot.get("case_number"),
            client_name=batch.mail_snapshot.get("client_name"),
        )
        message_id = await self._mail.send_email(
            batch.approver_email, email.subject, email.body, html=True
        )
        LOGGER.info("Sent approval request for batch %s to %s", batch.id, batch.approver_email)
        return message_id

    def toggle_action(self, batch_id: str, action_id: str, enabled: bool) -> ApprovalBatch:
        """Enable or disable one action of a pending batch."""
        batch = self.get_batch(batch_id)
        if batch.status is not BatchStatus.PENDING_APPROVAL:
            raise ApprovalError(
                "ALREADY_PROCESSED",
                f"Batch already {batch.status.value}",
                409,
                batch_id=batch.id,
                status=batch.status.value,
            )
        try:
            updated = batch.with_action_enabled(action_id, enabled)
        except KeyError as exc:
            raise ApprovalError("ACTION_NOT_FOUND", "Action not found in batch", 404) from exc

        def apply(current: dict[str, Any]) -> dict[str, Any]:
            if current.get("status") != BatchStatus.PENDING_APPROVAL.value:
                raise ApprovalError(
                    "ALREADY_PROCESSED", f"Batch already {current.get('status')}", 409
                )
            return {**current, "actions": [a.to_record() for a in updated.actions]}

        self._store.update_with(APPROVAL_BATCH, batch_id, apply)
        LOGGER.info(
            "Action %s of batch %s %s", action_id, batch_id, "enabled" if enabled else "disabled"
        )
        return updated

    # Redemption --------------------------------------------------------------
    async def approve_with_token(
        self, token: str | None, *, request_meta: Mapping[str, Any] | None = None
    ) -> ApprovalOutcome:
        payload, batch = self._redeem(token, ACTION_APPROVE, request_meta)
        LOGGER.info("Token valid for batch %s, executing", batch.id)
        return await self._execute(
            batch, via=VIA_EMAIL_LINK, approver_email=payload.approver_email
        )

    async def reject_with_token(
        self, token: str | None, *, request_meta: Mapping[str, Any] | None = None
    ) -> ApprovalOutcome:
        payload, batch = self._redeem(token, ACTION_REJECT, request_meta)
        self._transition(
            batch.id,
            BatchStatus.PENDING_APPROVAL,
            {
                "status": BatchStatus.REJECTED.value,
                "approved_via": VIA_EMAIL_LINK,
                "approved_by_email": payload.approver_email,
            },
        )
        self._update_mail(batch, BatchStatus.REJECTED)
        LOGGER.info("Batch %s rejected by %s", batch.id, payload.approver_email)
        return ApprovalOutcome(
            batch_id=batch.id, status=BatchStatus.REJECTED, message="Batch rejected"
        )

    async def approve_in_app(self, batch_id: str, user_email: str) -> ApprovalOutcome:
        """Approve a pending batch on behalf of a signed-in user."""
        batch = self.get_batch(batch_id)
        if batch.status in PROCESSED_STATUSES:
            raise ApprovalError(
                "ALREADY_PROCESSED",
                f"Batch already {batch.status.value}",
                409,
                batch_id=batch.id,
                status=batch.status.value,
            )
        return await self._execute(batch, via=VIA_APP, approver_email=user_email)

    def _redeem(
        self,
        token: str | None,
        expected_action: str,
        request_meta: Mapping[str, Any] | None,
    ) -> tuple[TokenPayload, ApprovalBatch]:
        if not token:
            raise ApprovalError("MISSING_TOKEN", "Token is required", 400)
        secret = self._settings.hmac_secret
        if not secret:
            LOGGER.error("Approval secret is not configured")
            raise ApprovalError("CONFIG_ERROR", "Server configuration error", 500)

        payload = verify_approval_token(token, secret)
        if payload is None or payload.action != expected_action:
            raise ApprovalError("INVALID_TOKEN", "Invalid or expired token", 401)

        batch = self.get_batch(payload.batch_id)
        if batch.approver_email != payload.approver_email:
            LOGGER.info(
                "Approver mismatch for batch %s: %s vs %s",
                batch.id,
                batch.approver_email,
                payload.approver_email,
            )
            raise ApprovalError(
                "APPROVER_MISMATCH", "Token not valid for this approver", 403
            )
        if batch.status in PROCESSED_STATUSES:
            raise ApprovalError(
                "ALREADY_PROCESSED",
                f"Batch already {batch.status.value}",
                409,
                batch_id=batch.id,
                status=batch.status.value,
            )
        expires_at = ensure_utc(batch.expires_at)
        if expires_at is not None and expires_at < utc_now():
            raise ApprovalError(
                "BATCH_EXPIRED",
                "Quick approval link expired. Please approve from the app.",
                410,
                batch_id=batch.id,
                edit_url=self._renderer.edit_url(batch.id),
            )

        try:
            self._store.claim_nonce(
                batch.id,
                hash_nonce(payload.nonce, secret),
                expires_at=batch.expires_at,
                used_meta=request_meta,
            )
        except NonceAlreadyUsedError as exc:
            raise ApprovalError(
                "TOKEN_ALREADY_USED",
                "This approval link has already been used",
                409,
                batch_id=batch.id,
            ) from exc
        return payload, batch

    # Execution ---------------------------------------------------------------
    async def _execute(
        self, batch: ApprovalBatch, *, via: str, approver_email: str | None
    ) -> ApprovalOutcome:
        source = BatchStatus.APPROVED if via == VIA_AUTO else BatchStatus.PENDING_APPROVAL
        self._transition(
            batch.id,
            source,
            {
                "status": BatchStatus.EXECUTING.value,
                "approved_at": serialize_datetime(utc_now()),
                "approved_via": via,
                "approved_by_email": approver_email,
            },
        )
        fresh = self.get_batch(batch.id)

        result: BatchExecutionResult | None = None
        error_message: str | None = None
        try:
            result = await self._orchestrator.execute_batch_actions(fresh)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Execution of batch %s crashed", batch.id)
            error_message = str(exc) or exc.__class__.__name__

        status = final_status(result)
        if result is not None and not result.success:
            error_message = "; ".join(
                r.error for r in result.results if r.error
            ) or "Execution failed"

        summary = result.to_dict() if result is not None else {"error": error_message}
        summary["executed_at"] = serialize_datetime(utc_now())
        self._store.update(
            APPROVAL_BATCH,
            batch.id,
            {
                "status": status.value,
                "execution_summary": summary,
                "error_message": error_message,
            },
        )
        self._update_mail(fresh, status)
        self._record_run(fresh, status, result, error_message)

        LOGGER.info("Batch %s completed with status %s", batch.id, status.value)
        if status is BatchStatus.EXECUTED and result is not None:
            message = f"Successfully executed {result.summary.successful} action(s)"
        elif result is not None:
            message = f"Execution completed with {result.summary.failed} failure(s)"
        else:
            message = f"Execution failed: {error_message}"
        return ApprovalOutcome(
            batch_id=batch.id, status=status, message=message, execution=result
        )

    def _transition(
        self, batch_id: str, expected: BatchStatus, changes: Mapping[str, Any]
    ) -> None:
        """Apply ``changes`` only if the stored status is still ``expected``."""

        def apply(current: dict[str, Any]) -> dict[str, Any]:
            status = current.get("status")
            if status != expected.value:
                raise ApprovalError(
                    "ALREADY_PROCESSED",
                    f"Batch already {status}",
                    409,
                    batch_id=batch_id,
                    status=status,
                )
            return {**current, **changes}

        self._store.update_with(APPROVAL_BATCH, batch_id, apply)

    def _update_mail(self, batch: ApprovalBatch, status: BatchStatus) -> None:
        if not batch.mail_id or self._store.get(MAIL, batch.mail_id) is None:
            return
        try:
            self._store.update(
                MAIL,
                batch.mail_id,
                {"automation_status": status.value, "approval_batch_id": batch.id},
            )
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Failed to update mail %s", batch.mail_id)

    def _record_run(
        self,
        batch: ApprovalBatch,
        status: BatchStatus,
        result: BatchExecutionResult | None,
        error_message: str | None,
    ) -> None:
        succeeded = status is BatchStatus.EXECUTED
        self._logbook.update_rule_stats(batch.rule_id, succeeded)
        if result is None:
            return
        execution_status = {
            BatchStatus.EXECUTED: EXECUTION_COMPLETED,
            BatchStatus.ROLLED_BACK: EXECUTION_ROLLED_BACK,
        }.get(status, EXECUTION_FAILED)
        self._logbook.log_execution(
            rule_id=batch.rule_id,
            rule_name=batch.rule_name,
            mail_id=batch.mail_id,
            mail_subject=batch.mail_snapshot.get("subject"),
            execution_status=execution_status,
            summary=result.summary,
            error_message=error_message,
            metadata={
                "batch_id": batch.id,
                "approved_via": batch.approved_via,
                "rollback": result.rollback.to_dict() if result.rollback else None,
            },
        )


def final_status(result: BatchExecutionResult | None) -> BatchStatus:
    """Map an execution result to the batch's terminal status."""
    if result is None:
        return BatchStatus.FAILED
    if result.success:
        return BatchStatus.EXECUTED
    report = result.rollback
    if report is not None and report.rolled_back and report.fully_compensated:
        return BatchStatus.ROLLED_BACK
    return BatchStatus.FAILED


def _coerce_action(item: Action | Mapping[str, Any]) -> Action:
    if isinstance(item, Action):
        return item
    record = dict(item)
    record.setdefault("id", str(uuid.uuid4()))
    return Action.from_record(record)


__all__ = [
    "ApprovalError",
    "ApprovalLinks",
    "ApprovalOutcome",
    "ApprovalService",
    "final_status",
]
