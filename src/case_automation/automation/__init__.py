"""Batch execution, rollback and approval workflow."""

from .advisor import RuleOptimizationAdvisor
from .approval import (
    ApprovalError,
    ApprovalLinks,
    ApprovalOutcome,
    ApprovalService,
    final_status,
)
from .executor import ActionExecutor
from .logbook import AutomationLogbook
from .notifications import ApprovalEmail, ApprovalEmailRenderer
from .orchestrator import BatchOrchestrator
from .rollback import RollbackError, RollbackManager, RollbackState, RollbackStateError
from .tokens import (
    ApprovalTokenError,
    MissingSecretError,
    create_token_payload,
    generate_approval_url,
    hash_nonce,
    sign_approval_token,
    verify_approval_token,
)

__all__ = [
    "ActionExecutor",
    "ApprovalEmail",
    "ApprovalEmailRenderer",
    "ApprovalError",
    "ApprovalLinks",
    "ApprovalOutcome",
    "ApprovalService",
    "ApprovalTokenError",
    "AutomationLogbook",
    "BatchOrchestrator",
    "MissingSecretError",
    "RollbackError",
    "RollbackManager",
    "RollbackState",
    "RollbackStateError",
    "RuleOptimizationAdvisor",
    "create_token_payload",
    "final_status",
    "generate_approval_url",
    "hash_nonce",
    "sign_approval_token",
    "verify_approval_token",
]
