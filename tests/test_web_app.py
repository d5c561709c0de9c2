"""Integration tests for the FastAPI application."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from case_automation.core.config import AppSettings, ApprovalSettings, StorageSettings
from case_automation.core.container import APPROVALS, CALENDAR, MAIL, STORE, build_container
from case_automation.core.models import APPROVAL_BATCH, CASE, MAIL_RULE, TASK
from case_automation.web import create_app

APP_URL = "https://app.firm.test"
APPROVER = "partner@firm.test"


@pytest.fixture()
def container(tmp_path, mail, calendar):
    settings = AppSettings(
        storage=StorageSettings(db_path=tmp_path / "web.db"),
        approval=ApprovalSettings(
            hmac_secret="web-secret",
            app_base_url=APP_URL,
            allowed_origins=["https://admin.firm.test"],
        ),
    )
    services = build_container(settings)
    services.provide(MAIL, mail)
    services.provide(CALENDAR, calendar)
    yield services
    services.close()


@pytest.fixture()
def client(container) -> TestClient:
    return TestClient(create_app(container=container))


def _stage(container, *actions):
    service = container.resolve(APPROVALS)
    batch = asyncio.run(
        service.stage_batch(
            actions=list(actions) or [{"action_type": "create_task", "config": {"title": "Docket"}}],
            rule_id="rule-1",
            approver_email=APPROVER,
            notify=False,
        )
    )
    return batch, service.issue_approval_links(batch)


def test_healthz(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_approve_endpoint_executes_batch(client, container) -> None:
    batch, links = _stage(container)

    response = client.post(
        "/api/approvals/approve",
        json={"token": links.approve_token},
        headers={"Origin": APP_URL},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "executed"
    assert body["execution_summary"]["summary"]["successful"] == 1
    assert response.headers["access-control-allow-origin"] == APP_URL
    assert len(container.resolve(STORE).list(TASK)) == 1

    replay = client.post("/api/approvals/approve", json={"token": links.approve_token})
    assert replay.status_code == 409
    assert replay.json()["code"] == "ALREADY_PROCESSED"


def test_partial_failure_returns_multi_status(client, container, calendar) -> None:
    calendar.fail_create = True
    _, links = _stage(
        container,
        {"action_type": "create_task", "config": {}},
        {"action_type": "calendar_event", "config": {"start_date": "2026-02-02"}},
    )

    response = client.post("/api/approvals/approve", json={"token": links.approve_token})

    assert response.status_code == 207
    assert response.json()["status"] == "rolled_back"


def test_forbidden_origin(client, container) -> None:
    _, links = _stage(container)

    response = client.post(
        "/api/approvals/approve",
        json={"token": links.approve_token},
        headers={"Origin": "https://evil.example"},
    )

    assert response.status_code == 403
    assert response.json() == {
        "success": False,
        "code": "FORBIDDEN_ORIGIN",
        "message": "Origin not allowed",
    }


def test_extra_allowed_origin_and_preflight(client) -> None:
    response = client.options(
        "/api/approvals/approve", headers={"Origin": "https://admin.firm.test"}
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-methods"] == "POST, OPTIONS"


@pytest.mark.parametrize(
    ("payload", "status", "code"),
    [
        ({}, 400, "MISSING_TOKEN"),
        ({"token": "not-a-token"}, 401, "INVALID_TOKEN"),
    ],
)
def test_approve_errors(client, payload, status, code) -> None:
    response = client.post("/api/approvals/approve", json=payload)
    assert response.status_code == status
    assert response.json()["code"] == code


def test_reject_endpoint(client, container) -> None:
    batch, links = _stage(container)

    response = client.post("/api/approvals/reject", json={"token": links.reject_token})

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert container.resolve(STORE).get(APPROVAL_BATCH, batch.id)["status"] == "rejected"


def test_batch_detail_and_toggle(client, container) -> None:
    batch, _ = _stage(container)
    action_id = batch.actions[0].id

    detail = client.get(f"/api/batches/{batch.id}")
    assert detail.status_code == 200
    assert detail.json()["status"] == "pending_approval"

    toggled = client.post(
        f"/api/batches/{batch.id}/actions/{action_id}", json={"enabled": False}
    )
    assert toggled.status_code == 200
    assert toggled.json()["batch"]["actions"][0]["enabled"] is False

    invalid = client.post(f"/api/batches/{batch.id}/actions/{action_id}", json={"enabled": "no"})
    assert invalid.status_code == 400

    assert client.get("/api/batches/missing").status_code == 404


def test_approve_in_app_endpoint(client, container) -> None:
    batch, _ = _stage(container)

    response = client.post(
        f"/api/batches/{batch.id}/approve", json={"user_email": "associate@firm.test"}
    )

    assert response.status_code == 200
    stored = container.resolve(STORE).get(APPROVAL_BATCH, batch.id)
    assert stored["approved_via"] == "app"
    assert stored["approved_by_email"] == "associate@firm.test"


def test_rule_optimization(client, container) -> None:
    store = container.resolve(STORE)
    store.create(MAIL_RULE, {"id": "rule-1", "name": "USPTO", "catch_config": {}})
    store.create(CASE, {"id": "case-2", "case_number": "P-2", "title": "Gadget"})
    for _ in range(2):
        store.create(
            TASK,
            {
                "case_id": "case-2",
                "manual_override": True,
                "extracted_data": {"rule_id": "rule-1", "inferred_case": {"id": "case-1"}},
            },
        )

    response = client.get("/api/rules/optimization")

    assert response.status_code == 200
    body = response.json()
    assert body["stats"]["override_rate"] == 100
    assert body["suggestions"][0]["suggested_regex"] == "(?:P-2|.*)"


def test_batch_mutations_refuse_foreign_origin(client, container) -> None:
    batch, _ = _stage(container)
    foreign = {"Origin": "https://evil.example", "content-type": "text/plain"}

    approve = client.post(
        f"/api/batches/{batch.id}/approve",
        content='{"user_email": "x@evil.example"}',
        headers=foreign,
    )
    toggle = client.post(
        f"/api/batches/{batch.id}/actions/{batch.actions[0].id}",
        content='{"enabled": false}',
        headers=foreign,
    )

    assert approve.status_code == 403
    assert approve.json()["code"] == "FORBIDDEN_ORIGIN"
    assert toggle.status_code == 403
    stored = container.resolve(STORE).get(APPROVAL_BATCH, batch.id)
    assert stored["status"] == "pending_approval"
    assert stored["actions"][0]["enabled"] is True
    assert container.resolve(STORE).list(TASK) == []


def test_in_app_approve_echoes_allowed_origin(client, container) -> None:
    batch, _ = _stage(container)

    response = client.post(
        f"/api/batches/{batch.id}/approve",
        json={"user_email": "associate@firm.test"},
        headers={"Origin": APP_URL},
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == APP_URL
