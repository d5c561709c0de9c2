"""FastAPI application exposing the approval workflow."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from case_automation import __version__
from case_automation.automation import (
    ApprovalError,
    ApprovalService,
    RuleOptimizationAdvisor,
)
from case_automation.core import AppSettings, load_app_settings
from case_automation.core.container import (
    ADVISOR,
    APPROVALS,
    ServiceContainer,
    build_container,
)

from .security import ForbiddenOrigin, OriginGuard

LOGGER = logging.getLogger(__name__)


def create_app(
    settings: AppSettings | None = None,
    *,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = settings or (container.settings if container else load_app_settings())
    services = container or build_container(app_settings)
    guard = OriginGuard.from_settings(app_settings.approval)
    app = FastAPI(title="Case Automation", version=__version__)
    app.state.container = services

    def get_approvals() -> ApprovalService:
        return services.resolve(APPROVALS)

    def get_advisor() -> RuleOptimizationAdvisor:
        return services.resolve(ADVISOR)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        services.close()
        LOGGER.info("Services closed")

    @app.exception_handler(ApprovalError)
    async def approval_error_handler(request: Request, exc: ApprovalError) -> Response:
        LOGGER.info("Approval request refused: %s (%s)", exc.code, exc.message)
        response = JSONResponse(exc.to_dict(), status_code=exc.status_code)
        origin = request.headers.get("origin")
        return guard.apply_cors(response, origin if guard.is_allowed(origin) else None)

    @app.exception_handler(ForbiddenOrigin)
    async def forbidden_origin_handler(request: Request, exc: ForbiddenOrigin) -> Response:
        return JSONResponse(
            {"success": False, "code": "FORBIDDEN_ORIGIN", "message": "Origin not allowed"},
            status_code=403,
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.options("/api/approvals/{decision}")
    async def approval_preflight(decision: str, request: Request) -> Response:
        origin = guard.check(request)
        return guard.apply_cors(Response("ok"), origin)

    @app.post("/api/approvals/approve")
    async def approve_batch(
        request: Request,
        service: ApprovalService = Depends(get_approvals),  # noqa: B008
    ) -> Response:
        """Redeem a quick approval token and execute the batch."""
        origin = guard.check(request)
        token = await _read_token(request)
        try:
            outcome = await service.approve_with_token(
                token, request_meta=_request_meta(request)
            )
        except ApprovalError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unexpected error while approving batch")
            raise ApprovalError("INTERNAL_ERROR", str(exc), 500) from exc
        response = JSONResponse(outcome.to_dict(), status_code=outcome.http_status)
        return guard.apply_cors(response, origin)

    @app.post("/api/approvals/reject")
    async def reject_batch(
        request: Request,
        service: ApprovalService = Depends(get_approvals),  # noqa: B008
    ) -> Response:
        """Redeem a reject token."""
        origin = guard.check(request)
        token = await _read_token(request)
        try:
            outcome = await service.reject_with_token(
                token, request_meta=_request_meta(request)
            )
        except ApprovalError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unexpected error while rejecting batch")
            raise ApprovalError("INTERNAL_ERROR", str(exc), 500) from exc
        return guard.apply_cors(JSONResponse(outcome.to_dict()), origin)

    @app.get("/api/batches/{batch_id}")
    async def get_batch(
        batch_id: str,
        service: ApprovalService = Depends(get_approvals),  # noqa: B008
    ) -> dict[str, Any]:
        return service.get_batch(batch_id).to_record()

    @app.post("/api/batches/{batch_id}/actions/{action_id}")
    async def toggle_action(
        batch_id: str,
        action_id: str,
        request: Request,
        service: ApprovalService = Depends(get_approvals),  # noqa: B008
    ) -> Response:
        """Enable or disable one action while the batch is pending."""
        origin = guard.check(request)
        body = await _read_json(request)
        enabled = body.get("enabled")
        if not isinstance(enabled, bool):
            raise ApprovalError("INVALID_REQUEST", "'enabled' must be a boolean", 400)
        batch = service.toggle_action(batch_id, action_id, enabled)
        return guard.apply_cors(
            JSONResponse({"success": True, "batch": batch.to_record()}), origin
        )

    @app.post("/api/batches/{batch_id}/approve")
    async def approve_in_app(
        batch_id: str,
        request: Request,
        service: ApprovalService = Depends(get_approvals),  # noqa: B008
    ) -> Response:
        """Approve a pending batch on behalf of an authenticated user."""
        origin = guard.check(request)
        body = await _read_json(request)
        user_email = body.get("user_email")
        if not isinstance(user_email, str) or not user_email:
            raise ApprovalError("INVALID_REQUEST", "'user_email' is required", 400)
        outcome = await service.approve_in_app(batch_id, user_email)
        response = JSONResponse(outcome.to_dict(), status_code=outcome.http_status)
        return guard.apply_cors(response, origin)

    @app.get("/api/rules/optimization")
    async def rule_optimization(
        limit: int = 10,
        advisor: RuleOptimizationAdvisor = Depends(get_advisor),  # noqa: B008
    ) -> dict[str, Any]:
        return advisor.get_suggestions(limit=max(1, min(limit, 50))).to_dict()

    return app


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def _read_token(request: Request) -> str | None:
    token = (await _read_json(request)).get("token")
    return token if isinstance(token, str) and token else None


def _request_meta(request: Request) -> dict[str, str]:
    forwarded = request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip")
    client_host = request.client.host if request.client else None
    return {
        "ip": forwarded or client_host or "unknown",
        "user_agent": request.headers.get("user-agent") or "unknown",
    }


__all__ = ["create_app"]
