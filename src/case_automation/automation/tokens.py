"""Signed, short-lived tokens for approving a batch from an email link.

Wire format::

    base64url(canonical JSON payload) "." base64url(HMAC-SHA256(payload segment))

The signature covers the encoded payload segment, not the raw JSON. Padding is
stripped from both segments so the token can be used as a query parameter.
Verification is stateless; marking the nonce as spent is up to the caller
(see :func:`hash_nonce`).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import uuid
from typing import Any
from urllib.parse import urlencode

from case_automation.core.datetime_utils import unix_now
from case_automation.core.models import TokenPayload

LOGGER = logging.getLogger(__name__)

TOKEN_VERSION = 1
ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
NONCE_KEY_PREFIX = "approval-nonce:"

_STR_FIELDS = ("batch_id", "approver_email", "action", "nonce")
_INT_FIELDS = ("v", "exp", "iat")


class ApprovalTokenError(RuntimeError):
    """Base error for token issuance problems."""


class MissingSecretError(ApprovalTokenError):
    """Raised when a token must be signed without a configured secret."""


def create_token_payload(
    batch_id: str,
    approver_email: str,
    expires_in_minutes: int = 60,
    *,
    action: str = ACTION_APPROVE,
    now: int | None = None,
) -> TokenPayload:
    """Build the claims for a new token with a fresh random nonce."""
    issued_at = unix_now() if now is None else now
    return TokenPayload(
        v=TOKEN_VERSION,
        batch_id=batch_id,
        approver_email=approver_email,
        action=action,
        iat=issued_at,
        exp=issued_at + expires_in_minutes * 60,
        nonce=str(uuid.uuid4()),
    )


def sign_approval_token(payload: TokenPayload, secret: str | None) -> str:
    """Serialise and sign ``payload``."""
    if not secret:
        raise MissingSecretError("Approval token secret is not configured")
    encoded = _b64url_encode(_canonical_json(payload.to_dict()))
    return f"{encoded}.{_signature(encoded, secret)}"


def verify_approval_token(
    token: str | None, secret: str | None, *, now: int | None = None
) -> TokenPayload | None:
    """Return the payload of a valid, unexpired token or ``None``."""
    if not secret:
        LOGGER.error("Cannot verify approval token: secret is not configured")
        return None
    if not token:
        LOGGER.info("Approval token rejected: empty token")
        return None

    parts = token.split(".")
    if len(parts) != 2 or not all(parts):
        LOGGER.info("Approval token rejected: malformed")
        return None
    encoded_payload, provided_signature = parts

    expected = _signature(encoded_payload, secret)
    if not hmac.compare_digest(
        expected.encode("ascii"), provided_signature.encode("utf-8")
    ):
        LOGGER.info("Approval token rejected: signature mismatch")
        return None

    try:
        claims = json.loads(_b64url_decode(encoded_payload))
    except (binascii.Error, ValueError) as exc:
        LOGGER.info("Approval token rejected: undecodable payload (%s)", exc)
        return None

    payload = _payload_from_claims(claims)
    if payload is None:
        LOGGER.info("Approval token rejected: invalid claims")
        return None
    if payload.v != TOKEN_VERSION:
        LOGGER.info("Approval token rejected: unsupported version %s", payload.v)
        return None

    current = unix_now() if now is None else now
    if current > payload.exp:
        LOGGER.info(
            "Approval token rejected: expired for batch %s", payload.batch_id
        )
        return None
    return payload


def hash_nonce(nonce: str, secret: str) -> str:
    """Hash a nonce with a key derived separately from the signing key."""
    key = f"{NONCE_KEY_PREFIX}{secret}".encode()
    return hmac.new(key, nonce.encode(), hashlib.sha256).hexdigest()


def generate_approval_url(token: str, base_url: str, action: str = ACTION_APPROVE) -> str:
    """Build the link embedded in approval emails."""
    query = urlencode({"token": token, "action": action})
    return f"{base_url.rstrip('/')}/approve-batch?{query}"


def _canonical_json(claims: dict[str, Any]) -> bytes:
    return json.dumps(
        claims, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def _signature(encoded_payload: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), encoded_payload.encode("utf-8"), hashlib.sha256
    ).digest()
    return _b64url_encode(digest)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.b64decode(segment + padding, altchars=b"-_", validate=True)


def _payload_from_claims(claims: Any) -> TokenPayload | None:
    if not isinstance(claims, dict):
        return None
    for name in _STR_FIELDS:
        if not isinstance(claims.get(name), str):
            return None
    for name in _INT_FIELDS:
        value = claims.get(name)
        if not isinstance(value, int) or isinstance(value, bool):
            return None
    return TokenPayload(
        v=claims["v"],
        batch_id=claims["batch_id"],
        approver_email=claims["approver_email"],
        action=claims["action"],
        exp=claims["exp"],
        iat=claims["iat"],
        nonce=claims["nonce"],
    )


__all__ = [
    "ACTION_APPROVE",
    "ACTION_REJECT",
    "ApprovalTokenError",
    "MissingSecretError",
    "TOKEN_VERSION",
    "create_token_payload",
    "generate_approval_url",
    "hash_nonce",
    "sign_approval_token",
    "verify_approval_token",
]
