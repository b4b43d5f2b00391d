"""
API tests for the expense workflow service

Exercises the HTTP surface end to end with FastAPI's TestClient: caller
identity headers, permissions, camelCase payloads, the error envelope,
pagination and the admin endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from expense_workflow.api import create_app
from expense_workflow.api.dependencies import WorkflowSystem
from expense_workflow.clock import ManualClock
from expense_workflow.config import WorkflowEngineConfig
from expense_workflow.directory import InMemoryDirectory


ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Permissions": "workflow.admin"}
SERVICE = {"X-Actor-Id": "report-service", "X-Actor-Permissions": "report.sync,report.view"}
SUBMITTER = {"X-Actor-Id": "emp-1", "X-Actor-Email": "emp-1@example.com",
             "X-Actor-Permissions": "report.submit,report.view"}
MANAGER = {"X-Actor-Id": "mgr-1", "X-Actor-Email": "mgr-1@example.com",
           "X-Actor-Permissions": "report.approve,report.reject,report.return,report.view"}
FINANCE = {"X-Actor-Id": "fin-1", "X-Actor-Permissions": "report.approve,report.reject,report.return"}

WORKFLOW = {
    "name": "Standard expenses",
    "description": "Manager, then finance above 1000",
    "steps": [
        {
            "stepNumber": 1,
            "name": "Manager Review",
            "targetType": "relationship",
            "targetValue": "manager",
            "slaHours": 24,
            "escalation": {"targetType": "role", "targetValue": "finance",
                           "notifyAtHours": [24], "autoApproveAfterHours": 48}
        },
        {
            "stepNumber": 2,
            "name": "Finance Review",
            "targetType": "role",
            "targetValue": "finance",
            "slaHours": 48,
            "requiredIf": {"field": "amount", "condition": "greater_than", "value": 1000}
        }
    ],
    "onReturnPolicy": "hard_restart"
}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def client(clock):
    directory = InMemoryDirectory()
    directory.set_relationship("emp-1", "manager", "mgr-1")
    directory.add_member("finance", "fin-1")

    config = WorkflowEngineConfig(database_url="memory", scheduler_enabled=False)
    system = WorkflowSystem(config, directory=directory, clock=clock)
    app = create_app(system, start_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def workflow(client):
    response = client.post("/workflows", json=WORKFLOW, headers=ADMIN)
    assert response.status_code == 201
    return response.json()


def sync_and_submit(client, report_id="RPT-1", amount="1500.00"):
    response = client.put(f"/expense-reports/{report_id}", headers=SERVICE, json={
        "submitterId": "emp-1", "amount": amount, "category": "travel", "department": "engineering"
    })
    assert response.status_code == 200
    response = client.post(f"/expense-reports/{report_id}/submit", headers=SUBMITTER)
    assert response.status_code == 200
    return response.json()


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["schedulerRunning"] is False


class TestWorkflowEndpoints:
    """Test workflow definition management over HTTP"""

    def test_create_returns_camel_case(self, workflow):
        assert workflow["version"] == 1
        assert workflow["isActive"] is True
        assert workflow["onReturnPolicy"] == "hard_restart"
        assert workflow["createdBy"] == "admin-1"
        step = workflow["steps"][1]
        assert step["requiredIf"] == {"field": "amount", "condition": "greater_than", "value": 1000}
        assert workflow["steps"][0]["escalation"]["autoApproveAfterHours"] == 48

    def test_missing_identity(self, client):
        response = client.get("/workflows")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_missing_permission(self, client):
        response = client.post("/workflows", json=WORKFLOW, headers=MANAGER)
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "FORBIDDEN"
        assert error["details"]["permission"] == "workflow.create"

    def test_invalid_definition(self, client):
        body = dict(WORKFLOW, steps=[dict(WORKFLOW["steps"][0]), dict(WORKFLOW["steps"][0])])
        response = client.post("/workflows", json=body, headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_malformed_request(self, client):
        response = client.post("/workflows", json={"name": "No steps", "steps": []}, headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_update_bumps_version(self, client, workflow):
        response = client.put(f"/workflows/{workflow['id']}", json={"name": "Renamed"}, headers=ADMIN)
        assert response.status_code == 200
        updated = response.json()
        assert updated["version"] == 2
        assert updated["name"] == "Renamed"
        assert len(updated["steps"]) == 2

    def test_get_unknown_workflow(self, client):
        response = client.get("/workflows/missing", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_list_is_paginated(self, client):
        for i in range(3):
            client.post("/workflows", json=dict(WORKFLOW, name=f"Workflow {i}"), headers=ADMIN)

        response = client.get("/workflows", params={"page": 2, "limit": 2}, headers=ADMIN)
        assert response.status_code == 200
        body = response.json()
        assert len(body["data"]) == 1
        assert body["pagination"] == {
            "page": 2, "limit": 2, "total": 3, "totalPages": 2, "hasNext": False, "hasPrev": True
        }


class TestReportEndpoints:
    """Test the report lifecycle over HTTP"""

    def test_submit_and_approve(self, client, workflow):
        submitted = sync_and_submit(client)
        assert submitted["status"] == "in_review"
        assert submitted["currentStep"] == 1
        assert submitted["workflowId"] == workflow["id"]

        response = client.post("/expense-reports/RPT-1/approve", headers=MANAGER,
                               json={"comment": "Trip approved"})
        assert response.status_code == 200
        assert response.json()["currentStep"] == 2

        response = client.post("/expense-reports/RPT-1/approve", headers=FINANCE)
        assert response.status_code == 200
        assert response.json()["status"] == "approved"

        status = client.get("/expense-reports/RPT-1/workflow-status", headers=SUBMITTER).json()
        assert status["status"] == "approved"
        assert status["totalSteps"] == 2
        assert status["workflow"]["version"] == 1
        assert [h["actorId"] for h in status["history"]] == ["mgr-1", "fin-1"]
        assert status["history"][0]["actorEmail"] == "mgr-1@example.com"

    def test_small_report_skips_finance(self, client, workflow):
        sync_and_submit(client, amount="200")
        response = client.post("/expense-reports/RPT-1/approve", headers=MANAGER)
        assert response.json()["status"] == "approved"

    def test_self_approval_forbidden(self, client, workflow):
        sync_and_submit(client)
        headers = dict(SUBMITTER, **{"X-Actor-Permissions": "report.approve,workflow.override"})
        response = client.post("/expense-reports/RPT-1/approve", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["details"]["check"] == "direct_self"

    def test_reject_requires_meaningful_comment(self, client, workflow):
        sync_and_submit(client)
        response = client.post("/expense-reports/RPT-1/reject", headers=MANAGER, json={"comment": "no"})
        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "comment"

        response = client.post("/expense-reports/RPT-1/reject", headers=MANAGER,
                               json={"comment": "x" * 1001})
        assert response.status_code == 400

        response = client.post("/expense-reports/RPT-1/reject", headers=MANAGER, json={
            "comment": "Receipt for the hotel is missing", "rejectionCategory": "missing_receipt"
        })
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

        response = client.post("/expense-reports/RPT-1/approve", headers=MANAGER)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_return_restarts_review(self, client, workflow):
        sync_and_submit(client)
        client.post("/expense-reports/RPT-1/approve", headers=MANAGER)
        response = client.post("/expense-reports/RPT-1/return", headers=FINANCE,
                               json={"comment": "Please itemize the taxi rides"})
        assert response.status_code == 200
        assert response.json()["status"] == "in_review"
        assert response.json()["currentStep"] == 1

    def test_submit_without_workflow(self, client):
        response = client.put("/expense-reports/RPT-1", headers=SERVICE,
                              json={"submitterId": "emp-1", "amount": "10"})
        assert response.status_code == 200
        response = client.post("/expense-reports/RPT-1/submit", headers=SUBMITTER)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NO_APPLICABLE_WORKFLOW"

    def test_status_of_unknown_report(self, client):
        response = client.get("/expense-reports/RPT-404/workflow-status", headers=SERVICE)
        assert response.status_code == 404

    def test_negative_amount_rejected(self, client):
        response = client.put("/expense-reports/RPT-1", headers=SERVICE,
                              json={"submitterId": "emp-1", "amount": "-5"})
        assert response.status_code == 400


class TestApprovalEndpoints:

    def test_pending_inbox(self, client, workflow):
        sync_and_submit(client, "RPT-1")
        sync_and_submit(client, "RPT-2")

        body = client.get("/approvals/pending", headers=MANAGER).json()
        assert [item["reportId"] for item in body["data"]] == ["RPT-1", "RPT-2"]
        assert body["data"][0]["stepName"] == "Manager Review"
        assert body["data"][0]["amount"] == "1500.00"
        assert body["pagination"]["total"] == 2

        assert client.get("/approvals/pending", headers=FINANCE).json()["data"] == []


class TestAdminEndpoints:

    def test_sla_tick_auto_approves(self, client, clock, workflow):
        sync_and_submit(client)
        clock.advance(hours=49)

        response = client.post("/admin/sla/tick", headers=ADMIN)
        assert response.status_code == 200
        assert response.json() == {"scanned": 1, "escalations": 1, "autoApprovals": 1, "failures": []}

        status = client.get("/expense-reports/RPT-1/workflow-status", headers=SERVICE).json()
        assert status["currentStep"] == 2
        assert [h["action"] for h in status["history"]] == ["escalate", "auto_approve"]

    def test_tick_requires_admin(self, client):
        assert client.post("/admin/sla/tick", headers=MANAGER).status_code == 403

    def test_integrity_check(self, client, workflow):
        sync_and_submit(client)
        client.post("/expense-reports/RPT-1/approve", headers=MANAGER)
        body = client.get("/admin/reports/RPT-1/integrity", headers=ADMIN).json()
        assert body["valid"] is True
        assert body["totalEntries"] == 1

    def test_directory_maintenance(self, client, workflow):
        response = client.put("/admin/directory/roles/finance/members/fin-2", headers=ADMIN)
        assert response.json()["members"] == ["fin-1", "fin-2"]

        client.put("/admin/directory/actors/emp-1/relationships/manager/mgr-2", headers=ADMIN)
        sync_and_submit(client)
        headers = dict(MANAGER, **{"X-Actor-Id": "mgr-2"})
        assert client.post("/expense-reports/RPT-1/approve", headers=headers).status_code == 200

        response = client.delete("/admin/directory/roles/finance/members/fin-2", headers=ADMIN)
        assert response.json()["members"] == ["fin-1"]
