"""Tests for the HTTP API."""

from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

import server.app as server_app
from database import reset_engine
from invoicing.errors import UpstreamFailure
from server.app import create_app
from server.config import Settings
from state_machine.models import TimerState
from tracking import WorkTimer

ORIGIN = "https://invoices.example.com"
OWNER = {"X-User-Id": "owner-1"}
OTHER = {"X-User-Id": "owner-2"}


@pytest.fixture
def client(tmp_path):
    """Test client over a fresh SQLite file, e-mail unconfigured."""
    reset_engine()
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        public_origin=ORIGIN,
        emailjs_service_id=None,
        emailjs_template_id=None,
        emailjs_public_key=None,
        clickup_client_id="cid",
        clickup_client_secret="secret",
    )
    with TestClient(create_app(settings)) as test_client:
        yield test_client
    reset_engine()


def create_task(client, name="Task A", rate="50"):
    response = client.post("/tasks", json={"name": name, "rate": rate}, headers=OWNER)
    assert response.status_code == 201
    return response.json()


def log_hours(client, task_id, hours):
    response = client.post(
        "/time-logs",
        json={"taskId": task_id, "hours": hours, "date": "2024-03-01"},
        headers=OWNER,
    )
    assert response.status_code == 201
    return response.json()


def create_invoice(client, task_ids, **fields):
    response = client.post("/invoices", json={"taskIds": task_ids, **fields}, headers=OWNER)
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def draft(client):
    """Task A at 50/h with 2h + 3h logged, invoiced with a client email."""
    task = create_task(client)
    log_hours(client, task["id"], "2")
    log_hours(client, task["id"], "3")
    return create_invoice(client, [task["id"]], clientEmail="client@example.com")


def approval_token(invoice):
    return invoice["approvalLink"].rsplit("/approve/", 1)[1]


class TestHealthAndSession:
    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_open_and_close_session(self, client) -> None:
        create_task(client)

        opened = client.post("/session", headers=OWNER).json()
        assert opened["ownerId"] == "owner-1"
        assert opened["tasks"] == 1
        assert opened["hasProfile"] is False

        assert client.delete("/session", headers=OWNER).json() == {"closed": True}
        assert client.delete("/session", headers=OWNER).json() == {"closed": False}

    def test_owner_header_required(self, client) -> None:
        assert client.get("/tasks").status_code == 422


class TestProfile:
    def test_upsert(self, client) -> None:
        assert client.get("/profile", headers=OWNER).status_code == 404

        profile = {"fullName": "Ada Lovelace", "email": "ada@example.com", "defaultHourlyRate": "60"}
        assert client.put("/profile", json=profile, headers=OWNER).status_code == 200

        profile["businessName"] = "Ada Studio"
        updated = client.put("/profile", json=profile, headers=OWNER).json()

        assert updated["businessName"] == "Ada Studio"
        assert client.get("/profile", headers=OWNER).json()["fullName"] == "Ada Lovelace"


class TestTasksAndLogs:
    def test_delete_task_removes_logs(self, client) -> None:
        task = create_task(client)
        log_hours(client, task["id"], "1")
        log_hours(client, task["id"], "2")

        response = client.delete(f"/tasks/{task['id']}", headers=OWNER)

        assert response.json() == {"deleted": task["id"], "timeLogsRemoved": 2}
        assert client.get("/time-logs", headers=OWNER).json() == []

    def test_log_for_unknown_task(self, client) -> None:
        response = client.post(
            "/time-logs",
            json={"taskId": "missing", "hours": "1", "date": "2024-03-01"},
            headers=OWNER,
        )
        assert response.status_code == 404

    def test_billable_filter(self, client, draft) -> None:
        fresh = create_task(client, "Task B", "80")
        log_hours(client, fresh["id"], "1")

        billable = client.get("/tasks", params={"billable": True}, headers=OWNER).json()
        unbilled = client.get("/time-logs", params={"unbilled": True}, headers=OWNER).json()

        assert [task["id"] for task in billable] == [fresh["id"]]
        assert [log["taskId"] for log in unbilled] == [fresh["id"]]

    def test_other_owner_sees_nothing(self, client, draft) -> None:
        assert client.get("/tasks", headers=OTHER).json() == []
        assert client.get(f"/invoices/{draft['id']}", headers=OTHER).status_code == 404


class TestTimer:
    def test_start_pause_stop(self, client) -> None:
        task = create_task(client)

        started = client.post("/timer/start", json={"taskId": task["id"]}, headers=OWNER).json()
        assert started["isRunning"] is True
        assert started["taskId"] == task["id"]

        paused = client.post("/timer/pause", headers=OWNER).json()
        assert paused["isRunning"] is False

        stopped = client.post("/timer/stop", headers=OWNER).json()
        assert stopped["timeLog"] is None
        assert stopped["timer"]["display"] == "00:00:00"

    def test_start_without_task(self, client) -> None:
        assert client.post("/timer/start", headers=OWNER).status_code == 422

    def test_start_unknown_task(self, client) -> None:
        response = client.post("/timer/start", json={"taskId": "missing"}, headers=OWNER)
        assert response.status_code == 404

    def test_failed_log_write_keeps_tracked_time(self, client, monkeypatch) -> None:
        task = create_task(client)
        context = server_app.app_state.session_for("owner-1")
        context.timer = WorkTimer(TimerState(task_id=task["id"], seconds=7200))

        def unavailable(payload):
            raise UpstreamFailure("Database unavailable", service="database")

        monkeypatch.setattr(context.store, "create_time_log", unavailable)

        response = client.post("/timer/stop", headers=OWNER)
        assert response.status_code == 502

        timer = client.get("/timer", headers=OWNER).json()
        assert timer["seconds"] == 7200
        assert timer["taskId"] == task["id"]

        monkeypatch.undo()
        stopped = client.post("/timer/stop", headers=OWNER).json()
        assert Decimal(stopped["timeLog"]["hours"]) == Decimal("2")
        assert stopped["timer"]["taskId"] is None

    def test_timer_survives_sign_out(self, client) -> None:
        task = create_task(client)
        client.post("/timer/start", json={"taskId": task["id"]}, headers=OWNER)

        client.delete("/session", headers=OWNER)
        restored = client.get("/timer", headers=OWNER).json()

        assert restored["isRunning"] is True
        assert restored["taskId"] == task["id"]

    def test_reset_discards_time(self, client) -> None:
        task = create_task(client)
        client.post("/timer/start", json={"taskId": task["id"]}, headers=OWNER)

        reset = client.post("/timer/reset", headers=OWNER).json()
        client.delete("/session", headers=OWNER)

        assert reset["isRunning"] is False
        assert client.get("/timer", headers=OWNER).json()["taskId"] is None
        assert client.get("/time-logs", headers=OWNER).json() == []


class TestInvoices:
    """Test invoice lifecycle endpoints."""

    def test_preview_and_create(self, client) -> None:
        task = create_task(client)
        log_hours(client, task["id"], "2")
        log_hours(client, task["id"], "3")

        preview = client.post("/invoices/preview", json={"taskIds": [task["id"]]}, headers=OWNER).json()
        invoice = create_invoice(client, [task["id"]])

        assert Decimal(preview["totalAmount"]) == Decimal("250")
        assert len(preview["includedLogIds"]) == 2
        assert invoice["status"] == "draft"
        assert Decimal(invoice["totalHours"]) == Decimal("5")
        assert Decimal(invoice["totalAmount"]) == Decimal("250")
        assert invoice["number"] == f"INV-{invoice['id'][:8]}"
        assert invoice["availableActions"] == ["send", "send_for_approval"]

    def test_empty_selection(self, client) -> None:
        response = client.post("/invoices", json={"taskIds": []}, headers=OWNER)

        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_send_twice_conflicts(self, client, draft) -> None:
        assert client.post(f"/invoices/{draft['id']}/send", headers=OWNER).status_code == 200

        response = client.post(f"/invoices/{draft['id']}/send", headers=OWNER)

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "STATE_CONFLICT"
        assert body["current_state"] == "sent"
        assert body["invoice"]["status"] == "sent"

    def test_list_filter(self, client, draft) -> None:
        client.post(f"/invoices/{draft['id']}/send", headers=OWNER)

        sent = client.get("/invoices", params={"status": "sent"}, headers=OWNER).json()

        assert [invoice["id"] for invoice in sent] == [draft["id"]]
        assert client.get("/invoices", params={"status": "draft"}, headers=OWNER).json() == []
        assert client.get("/invoices", params={"status": "bogus"}, headers=OWNER).status_code == 422

    def test_edit_and_delete(self, client, draft) -> None:
        updated = client.patch(
            f"/invoices/{draft['id']}", json={"clientName": "Acme"}, headers=OWNER
        ).json()
        assert updated["clientName"] == "Acme"

        assert client.delete(f"/invoices/{draft['id']}", headers=OWNER).status_code == 200
        assert client.get(f"/invoices/{draft['id']}", headers=OWNER).status_code == 404
        assert len(client.get("/tasks", params={"billable": True}, headers=OWNER).json()) == 1

    def test_send_for_approval_requires_email(self, client) -> None:
        task = create_task(client)
        log_hours(client, task["id"], "1")
        invoice = create_invoice(client, [task["id"]])

        response = client.post(f"/invoices/{invoice['id']}/send-for-approval", headers=OWNER)

        assert response.status_code == 422


class TestApprovalFlow:
    def test_full_lifecycle(self, client, draft) -> None:
        pending = client.post(f"/invoices/{draft['id']}/send-for-approval", headers=OWNER).json()
        assert pending["status"] == "pending_approval"
        assert pending["approvalLink"].startswith(f"{ORIGIN}/approve/{draft['id']}_")
        token = approval_token(pending)

        view = client.get(f"/approve/{token}").json()
        assert view["awaitingDecision"] is True
        assert view["lines"][0]["name"] == "Task A"

        decided = client.post(
            f"/approve/{token}/decision", json={"action": "approve", "signature": "Jane Client"}
        ).json()
        assert decided["status"] == "approved"

        paid_setup = client.post(
            f"/invoices/{draft['id']}/payment",
            json={"method": "paypal", "instructions": "pay@x.com"},
            headers=OWNER,
        ).json()
        assert paid_setup["paymentMethod"] == "paypal"

        paid = client.post(f"/invoices/{draft['id']}/mark-paid", headers=OWNER).json()
        assert paid["status"] == "paid"
        assert client.post(f"/invoices/{draft['id']}/mark-paid", headers=OWNER).status_code == 409

        history = client.get(f"/invoices/{draft['id']}/history", headers=OWNER).json()
        assert [entry["dest"] for entry in history] == [
            "draft",
            "pending_approval",
            "approved",
            "paid",
        ]

    def test_second_decision_conflicts(self, client, draft) -> None:
        pending = client.post(f"/invoices/{draft['id']}/send-for-approval", headers=OWNER).json()
        token = approval_token(pending)

        client.post(f"/approve/{token}/decision", json={"action": "reject", "reason": "scope unclear"})
        response = client.post(
            f"/approve/{token}/decision", json={"action": "approve", "signature": "Jane"}
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "APPROVAL_CONFLICT"
        assert body["invoice"]["status"] == "rejected"
        assert body["invoice"]["clientComments"] == "scope unclear"

    def test_decision_without_open_session(self, client, draft) -> None:
        pending = client.post(f"/invoices/{draft['id']}/send-for-approval", headers=OWNER).json()
        client.delete("/session", headers=OWNER)

        response = client.post(
            f"/approve/{approval_token(pending)}/decision",
            json={"action": "reject", "reason": "too high"},
        )

        assert response.json()["status"] == "rejected"
        assert client.get(f"/invoices/{draft['id']}", headers=OWNER).json()["status"] == "rejected"

    def test_invalid_decision_body(self, client, draft) -> None:
        pending = client.post(f"/invoices/{draft['id']}/send-for-approval", headers=OWNER).json()

        response = client.post(
            f"/approve/{approval_token(pending)}/decision", json={"action": "approve"}
        )

        assert response.status_code == 422

    def test_unknown_token(self, client) -> None:
        assert client.get("/approve/not-a-token").status_code == 404
        assert client.get(f"/approve/missing_{'0' * 32}").status_code == 404


class TestEmail:
    def test_mailto_when_unconfigured(self, client, draft) -> None:
        response = client.post(f"/invoices/{draft['id']}/email", headers=OWNER)

        body = response.json()
        assert body["delivered"] is False
        assert body["mailto"].startswith("mailto:client@example.com?subject=")
        assert body["invoice"]["status"] == "draft"

    def test_delivery_marks_sent(self, client, draft) -> None:
        email_client = AsyncMock()
        email_client.send_email = AsyncMock(return_value={"delivered": True, "response": "OK"})
        server_app.app_state.email_client = email_client

        response = client.post(
            f"/invoices/{draft['id']}/email", json={"subject": "Your invoice"}, headers=OWNER
        )

        assert response.json()["invoice"]["status"] == "sent"
        assert email_client.send_email.call_args.args[1] == "Your invoice"

    def test_delivery_failure(self, client, draft) -> None:
        from notifications.email_client import EmailClientError

        email_client = AsyncMock()
        email_client.send_email = AsyncMock(side_effect=EmailClientError("down", status_code=503))
        server_app.app_state.email_client = email_client

        response = client.post(f"/invoices/{draft['id']}/email", headers=OWNER)

        assert response.status_code == 502
        assert client.get(f"/invoices/{draft['id']}", headers=OWNER).json()["status"] == "draft"


class TestClickUp:
    def test_requires_connection(self, client) -> None:
        assert client.get("/integrations/clickup/workspaces", headers=OWNER).status_code == 422

    def test_connect_and_import(self, client) -> None:
        def handler(request):
            if request.url.path.endswith("/oauth/token"):
                return httpx.Response(200, json={"access_token": "tok-1"})
            return httpx.Response(
                200,
                json={"tasks": [{"id": "cu1", "name": "Fix login"}, {"id": "cu2", "name": "Docs"}]},
            )

        server_app.app_state.http_transport = httpx.MockTransport(handler)

        connected = client.post(
            "/integrations/clickup/oauth/token", json={"code": "abc"}, headers=OWNER
        )
        assert connected.json() == {"connected": True}

        imported = client.post(
            "/integrations/clickup/import",
            json={"listId": "l1", "listName": "Sprint 3", "taskIds": ["cu1"], "rate": "40"},
            headers=OWNER,
        ).json()

        assert [task["name"] for task in imported] == ["Fix login"]
        assert imported[0]["description"] == "Imported from ClickUp List: Sprint 3"
        assert Decimal(imported[0]["rate"]) == Decimal("40")

    def test_upstream_error(self, client) -> None:
        server_app.app_state.http_transport = httpx.MockTransport(
            lambda request: httpx.Response(400, json={"err": "Code invalid"})
        )

        response = client.post(
            "/integrations/clickup/oauth/token", json={"code": "bad"}, headers=OWNER
        )

        assert response.status_code == 502
