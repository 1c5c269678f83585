"""
End-to-end tests for the HTTP and WebSocket API.

Uses development X-User-* headers for HTTP and a signed JWT for the
WebSocket channel.
"""

import asyncio
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from clearance.main import app, sla_sweep
from clearance.security.auth import User, UserRole, create_access_token

CLERK = {"X-User-Id": "clerk-1", "X-User-Name": "Cara Clerk", "X-User-Role": "clerk"}
MANAGER = {"X-User-Id": "manager-1", "X-User-Name": "Max Manager", "X-User-Role": "manager"}

WITHDRAWAL = {
    "amount": "5000",
    "currency": "usd",
    "customer": {"id": "cust-1", "name": "Jane Doe", "account_number": "ACC-1001"},
    "agent": {"id": "agent-1", "name": "Agent Smith"},
    "risk_assessment": {"overall_risk": "low", "risk_score": 30},
}

APPROVE = {
    "action": "approve",
    "notes": "Verified customer identity and funds",
    "authorization_method": "pin",
    "authorization_code": "739104",
    "business_justification": "Routine withdrawal, documents verified",
}


@pytest.fixture(scope="module")
def client():
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


def create(client, **overrides) -> dict:
    response = client.post("/api/v1/workflows", json={**WITHDRAWAL, **overrides}, headers=CLERK)
    assert response.status_code == 201
    return response.json()


class TestHealth:
    """Service metadata."""

    def test_health_reports_policy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["policy"]["version"] == "2024.1"
        assert len(data["policy"]["checksum"]) == 64

    def test_security_headers(self, client):
        response = client.get("/")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-Request-ID" in response.headers

    def test_authentication_required(self, client):
        assert client.get("/api/v1/workflows").status_code == 401

    def test_bad_bearer_token(self, client):
        response = client.get(
            "/api/v1/workflows", headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401


class TestWorkflowApi:
    """Workflow lifecycle over HTTP."""

    def test_create_and_fetch(self, client):
        workflow = create(client)
        assert workflow["current_stage"] == "clerk_review"
        assert workflow["withdrawal_request"]["currency"] == "USD"

        response = client.get(f"/api/v1/workflows/{workflow['id']}", headers=CLERK)
        assert response.status_code == 200
        data = response.json()
        assert data["permissions"]["can_approve"] is True
        assert "approve" in data["available_actions"]

    def test_invalid_submission(self, client):
        response = client.post(
            "/api/v1/workflows", json={**WITHDRAWAL, "amount": "-5"}, headers=CLERK,
        )
        assert response.status_code == 422

    def test_approval_routes_to_manager(self, client):
        workflow = create(client)
        response = client.post(
            f"/api/v1/workflows/{workflow['id']}/decisions",
            json={**APPROVE, "expected_version": 1},
            headers=CLERK,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["workflow"]["current_stage"] == "manager_review"
        assert data["workflow"]["version"] == 2
        assert data["decision"]["authorization_code"] == "[REDACTED]"
        assert data["decision"]["approver_id"] == "clerk-1"

    def test_validation_failure_is_422(self, client):
        workflow = create(client)
        response = client.post(
            f"/api/v1/workflows/{workflow['id']}/decisions",
            json={**APPROVE, "authorization_code": None, "expected_version": 1},
            headers=CLERK,
        )
        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "validation_failed"
        failed = [c["check_type"] for c in data["report"]["checks"] if c["status"] == "failed"]
        assert failed == ["authorization_code"]

    def test_decision_without_expected_view_is_422(self, client):
        workflow = create(client)
        response = client.post(
            f"/api/v1/workflows/{workflow['id']}/decisions", json=APPROVE, headers=CLERK,
        )
        assert response.status_code == 422
        assert "expected_version" in response.json()["message"]

        current = client.get(f"/api/v1/workflows/{workflow['id']}", headers=CLERK).json()
        assert current["workflow"]["version"] == 1

    def test_authority_failure_is_403(self, client):
        workflow = create(client)
        wid = workflow["id"]
        client.post(
            f"/api/v1/workflows/{wid}/decisions", json={**APPROVE, "expected_version": 1}, headers=CLERK,
        )

        response = client.post(
            f"/api/v1/workflows/{wid}/decisions", json={**APPROVE, "expected_version": 2}, headers=CLERK,
        )
        assert response.status_code == 403
        assert response.json()["error"] == "insufficient_authority"

    def test_stale_version_is_409(self, client):
        workflow = create(client)
        response = client.post(
            f"/api/v1/workflows/{workflow['id']}/decisions",
            json={**APPROVE, "expected_version": 5},
            headers=CLERK,
        )
        assert response.status_code == 409
        assert response.json()["actual_version"] == 1

    def test_unknown_workflow_is_404(self, client):
        response = client.get(f"/api/v1/workflows/{uuid4()}", headers=CLERK)
        assert response.status_code == 404

    def test_validate_endpoint(self, client):
        workflow = create(client, amount="120000")
        response = client.post(
            f"/api/v1/workflows/{workflow['id']}/validate", json=APPROVE, headers=MANAGER,
        )
        assert response.status_code == 200
        report = response.json()
        assert report["requires_secondary_approval"] is True
        assert "high_value" in report["unacknowledged_warnings"]

    def test_audit_requires_manager(self, client):
        workflow = create(client)
        url = f"/api/v1/workflows/{workflow['id']}/audit"
        assert client.get(url, headers=CLERK).status_code == 403

        response = client.get(url, headers=MANAGER, params={"action": "workflow_created"})
        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_priority_requires_manager(self, client):
        workflow = create(client)
        url = f"/api/v1/workflows/{workflow['id']}/priority"
        body = {"priority": "low", "reason": "Known customer"}
        assert client.post(url, json=body, headers=CLERK).status_code == 403
        response = client.post(url, json=body, headers=MANAGER)
        assert response.status_code == 200
        assert response.json()["priority"] == "low"

    def test_comment(self, client):
        workflow = create(client)
        response = client.post(
            f"/api/v1/workflows/{workflow['id']}/comments",
            json={"content": "Customer called back"},
            headers=CLERK,
        )
        assert response.status_code == 201
        assert response.json()["author_id"] == "clerk-1"

    def test_list_and_stats(self, client):
        create(client, amount="321")
        response = client.get(
            "/api/v1/workflows",
            params={"max_amount": "321", "min_amount": "321"},
            headers=CLERK,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["pagination"]["total"] == 1
        assert data["workflows"][0]["amount"] == "321"

        stats = client.get("/api/v1/workflows/stats", headers=MANAGER).json()
        assert stats["total"] >= 1
        assert stats["policy_version"] == "2024.1"

    def test_bulk(self, client):
        ids = [create(client)["id"] for _ in range(2)]
        response = client.post(
            "/api/v1/workflows/bulk",
            json={"workflow_ids": ids + [str(uuid4())], "decision": APPROVE},
            headers=CLERK,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["total_processed"] == 3
        assert data["success_count"] == 2
        assert data["failed_count"] == 1


class TestRealtimeApi:
    """WebSocket channel."""

    def test_bad_token_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/v1/ws?token=garbage") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_first_message_must_authenticate(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_json({"type": "ping"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_authenticated_session(self, client):
        token = create_access_token(User(id="manager-7", username="manager-7", role=UserRole.MANAGER))
        with client.websocket_connect(f"/api/v1/ws?token={token}") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "authenticated"
            assert hello["data"] == {"user_id": "manager-7", "role": "manager"}

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            ws.send_json({"type": "subscribe", "workflow_ids": ["wf-1"]})
            assert ws.receive_json()["data"]["workflow_ids"] == ["wf-1"]

    def test_authenticate_by_message(self, client):
        token = create_access_token(User(id="clerk-7", username="clerk-7", role=UserRole.CLERK))
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_json({"type": "authenticate", "token": token})
            assert ws.receive_json()["data"]["user_id"] == "clerk-7"

    def test_events_are_streamed(self, client):
        token = create_access_token(User(id="clerk-8", username="clerk-8", role=UserRole.CLERK))
        with client.websocket_connect(f"/api/v1/ws?token={token}") as ws:
            ws.receive_json()
            workflow = create(client)
            event = ws.receive_json()
            assert event["type"] == "new_workflow"
            assert event["data"]["workflow_id"] == workflow["id"]


class TestSlaSweep:
    """The background trigger sweep."""

    @pytest.mark.asyncio
    async def test_sweep_keeps_running_after_errors(self, caplog):
        """An unexpected failure is logged and the next interval still runs."""
        calls = []

        async def check_sla():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("store unavailable")
            return 0

        service = MagicMock()
        service.check_sla = check_sla

        task = asyncio.create_task(sla_sweep(service, 0))
        for _ in range(100):
            await asyncio.sleep(0)
            if len(calls) >= 3:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(calls) >= 3
        assert "store unavailable" in caplog.text
