"""
Payflow Hub - API Tests

Exercises the routers through FastAPI's TestClient with in-memory drivers
wired in place of MongoDB (the lifespan hook is not run).
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from fastapi.testclient import TestClient

import server
from routes.auth import create_token
from services.audit_log import InMemoryAuditLog
from services.notification_service import (
    MockNotificationProvider,
    NotificationService,
    get_notification_service,
    set_notification_service,
)
from services.record_store import InMemoryRecordStore


def auth_header(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_token(user_id, role)}"}


SUBMITTER = auth_header("s1", "submitter")
MANAGER = auth_header("m1", "manager")
OTHER_MANAGER = auth_header("m2", "manager")
OPERATIONS = auth_header("o1", "operations")
FINANCE = auth_header("f1", "finance")
ADMIN = auth_header("a1", "admin")
VIEWER = auth_header("v1", "viewer")


@pytest.fixture
def client():
    notifier = NotificationService(provider_instance=MockNotificationProvider())
    server.wire_services(InMemoryRecordStore(), InMemoryAuditLog(), notifier)
    return TestClient(server.app)


def submit(client, kind="invoice", payload=None, assignee_id="m1", headers=SUBMITTER):
    resp = client.post(
        "/api/records",
        json={"kind": kind, "payload": payload or {}, "assignee_id": assignee_id},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["record"]["id"]


def move(client, record_id, to_status, headers, **fields):
    return client.post(
        f"/api/workflows/{record_id}/transition",
        json={"to_status": to_status, **fields},
        headers=headers,
    )


def ready_for_payment(client, payload=None):
    record_id = submit(client, payload=payload)
    assert move(client, record_id, "pending_manager", SUBMITTER).status_code == 200
    assert move(client, record_id, "approved_by_manager", MANAGER).status_code == 200
    assert move(client, record_id, "ready_for_payment", OPERATIONS).status_code == 200
    return record_id


class TestAuth:

    def test_login(self, client):
        resp = client.post("/api/auth/login", json={"username": "finance", "password": "finance"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["role"] == "finance"

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.json()["user_id"] == "finance"

    def test_bad_credentials(self, client):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
        assert resp.status_code == 401

    def test_missing_token(self, client):
        assert client.get("/api/records").status_code == 401

    def test_garbage_token(self, client):
        resp = client.get("/api/records", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401


class TestTransitionsApi:

    def test_happy_path_to_paid(self, client):
        record_id = ready_for_payment(client)
        resp = move(client, record_id, "paid", FINANCE, payment_reference="TX-1")

        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["changed"] is True
        assert data["record"]["workflow"]["status"] == "paid"
        assert data["record"]["workflow"]["paid_date"]
        assert data["record"]["workflow"]["payment_reference"] == "TX-1"
        assert data["undo"]["revert_to_status"] == "ready_for_payment"

    def test_already_in_state(self, client):
        record_id = ready_for_payment(client)
        move(client, record_id, "paid", FINANCE)
        again = move(client, record_id, "paid", FINANCE)
        assert again.status_code == 200
        assert again.json()["changed"] is False

    def test_illegal_transition_400(self, client):
        record_id = submit(client)
        resp = move(client, record_id, "paid", FINANCE)
        assert resp.status_code == 400
        assert resp.json()["detail"] == {
            "error": "IllegalTransition",
            "message": resp.json()["detail"]["message"],
            "retryable": False,
        }

    def test_self_approval_403(self, client):
        record_id = submit(client, headers=MANAGER)
        resp = move(client, record_id, "approved_by_manager", MANAGER)
        assert resp.status_code == 403
        assert resp.json()["detail"]["error"] == "Unauthorized"

    def test_missing_reason_400(self, client):
        record_id = submit(client)
        move(client, record_id, "pending_manager", SUBMITTER)
        resp = move(client, record_id, "rejected", MANAGER)
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "MissingRequiredField"

        ok = move(client, record_id, "rejected", MANAGER, rejection_reason="missing bank details")
        assert ok.json()["record"]["workflow"]["rejection_reason"] == "missing bank details"

    def test_stale_expected_status_409(self, client):
        record_id = ready_for_payment(client)
        resp = move(client, record_id, "paid", FINANCE, expected_status="pending_admin")
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "StaleState"
        assert resp.json()["detail"]["retryable"] is True

    def test_unknown_record_404(self, client):
        resp = move(client, "missing", "paid", FINANCE)
        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "RecordNotFound"

    def test_available_transitions(self, client):
        record_id = ready_for_payment(client)
        resp = client.get(f"/api/workflows/{record_id}/available-transitions", headers=FINANCE)
        assert set(resp.json()["available"]) == {"paid", "archived", "rejected"}

    def test_delegate_can_approve(self, client):
        today = date.today()
        resp = client.post(
            "/api/auth/delegations",
            json={
                "delegate_id": "m2",
                "valid_from": (today - timedelta(days=1)).isoformat(),
                "valid_until": (today + timedelta(days=1)).isoformat(),
            },
            headers=MANAGER,
        )
        assert resp.status_code == 200

        record_id = submit(client)
        move(client, record_id, "pending_manager", SUBMITTER)
        approved = move(client, record_id, "approved_by_manager", OTHER_MANAGER)
        assert approved.status_code == 200
        assert client.get("/api/auth/me", headers=OTHER_MANAGER).json()["delegate_for"] == ["m1"]

    def test_non_delegate_refused(self, client):
        record_id = submit(client)
        move(client, record_id, "pending_manager", SUBMITTER)
        assert move(client, record_id, "approved_by_manager", OTHER_MANAGER).status_code == 403


class TestBulkApi:

    def test_bulk_partial_failure(self, client):
        ids = [ready_for_payment(client) for _ in range(4)]
        rejected = submit(client)
        move(client, rejected, "pending_manager", SUBMITTER)
        move(client, rejected, "rejected", MANAGER, rejection_reason="no receipt")
        ids.insert(2, rejected)

        resp = client.post(
            "/api/workflows/bulk-transition",
            json={"record_ids": ids, "to_status": "paid"},
            headers=FINANCE,
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["success_count"] == 4
        assert [(f["record_id"], f["error"]) for f in data["failures"]] == [(rejected, "IllegalTransition")]
        assert data["summary"] == "4 updated, 1 failed: IllegalTransition x1"

    def test_bulk_over_limit(self, client):
        resp = client.post(
            "/api/workflows/bulk-transition",
            json={"record_ids": [f"r{i}" for i in range(51)], "to_status": "paid"},
            headers=FINANCE,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "BulkLimitExceeded"

    def test_bulk_requires_ids(self, client):
        resp = client.post(
            "/api/workflows/bulk-transition", json={"record_ids": [], "to_status": "paid"}, headers=FINANCE
        )
        assert resp.status_code == 422


class TestHistoryAndUndoApi:

    def test_history_and_status_at(self, client):
        record_id = ready_for_payment(client)
        history = client.get(f"/api/workflows/{record_id}/history", headers=VIEWER).json()["events"]
        assert [e["to_status"] for e in history] == [
            "submitted", "pending_manager", "approved_by_manager", "ready_for_payment",
        ]

        resp = client.get(
            f"/api/workflows/{record_id}/status-at",
            params={"at": history[-1]["created_at"]},
            headers=VIEWER,
        )
        assert resp.json()["status"] == "ready_for_payment"

    def test_undo_round_trip(self, client):
        record_id = ready_for_payment(client)
        event_id = move(client, record_id, "paid", FINANCE).json()["event"]["id"]

        offer = client.get(f"/api/workflows/events/{event_id}/undo", headers=FINANCE)
        assert offer.status_code == 200
        assert offer.json()["expected_status"] == "paid"

        resp = client.post(f"/api/workflows/events/{event_id}/undo", headers=FINANCE)
        assert resp.status_code == 200
        assert resp.json()["record"]["workflow"]["status"] == "ready_for_payment"

        again = client.post(f"/api/workflows/events/{event_id}/undo", headers=FINANCE)
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "NotReversible"
        assert again.json()["detail"]["code"] == "not_reversible"

    def test_undo_unknown_event(self, client):
        assert client.get("/api/workflows/events/nope/undo", headers=FINANCE).status_code == 404
        resp = client.post("/api/workflows/events/nope/undo", headers=FINANCE)
        assert resp.status_code == 409


class TestRecordsApi:

    def test_list_with_filter(self, client):
        submit(client, payload={"guest_name": "Ann"})
        submit(client, kind="assignment", payload={"contractor_id": "c1"})

        resp = client.get("/api/records", params={"kind": "assignment"}, headers=VIEWER)
        records = resp.json()["records"]
        assert len(records) == 1
        assert records[0]["workflow"]["status"] == "pending"

    def test_status_counts(self, client):
        submit(client)
        ready_for_payment(client)
        resp = client.get("/api/records/status-counts", headers=VIEWER)
        assert resp.json()["by_kind"]["invoice"] == {"submitted": 1, "ready_for_payment": 1}
        assert resp.json()["total"] == 2

    def test_edit_note_tags_extraction(self, client):
        record_id = submit(client, payload={"guest_name": "Ann"})

        assert client.patch(f"/api/records/{record_id}", json={"changes": {"amount": 10}}, headers=SUBMITTER).status_code == 200
        assert client.post(f"/api/records/{record_id}/notes", json={"text": "checked"}, headers=MANAGER).status_code == 200
        tags = client.put(f"/api/records/{record_id}/tags", json={"tags": ["VIP", "vip "]}, headers=SUBMITTER)
        assert tags.json()["tags"] == ["vip"]
        extraction = client.post(
            f"/api/records/{record_id}/extraction", json={"fields": {"invoice_number": "INV-3"}}, headers=OPERATIONS
        )
        assert extraction.json()["record"]["payload"]["invoice_number"] == "INV-3"

        types = [e["event_type"] for e in client.get(f"/api/workflows/{record_id}/history", headers=VIEWER).json()["events"]]
        assert types == ["status_changed", "field_edited", "note_added", "tag_changed", "extraction_completed"]

    def test_viewer_cannot_edit(self, client):
        record_id = submit(client)
        resp = client.patch(f"/api/records/{record_id}", json={"changes": {"amount": 1}}, headers=VIEWER)
        assert resp.status_code == 403

    def test_blank_note_rejected(self, client):
        record_id = submit(client)
        resp = client.post(f"/api/records/{record_id}/notes", json={"text": " "}, headers=MANAGER)
        assert resp.status_code == 400


class TestFlagsApi:

    def test_duplicates(self, client):
        a = submit(client, payload={"guest_name": "Ann Lee", "amount": 120})
        b = submit(client, payload={"guest_name": "ann lee", "amount": "120.00"})
        submit(client, payload={"guest_name": "Bob", "amount": 120})

        data = client.get("/api/flags/duplicates", headers=VIEWER).json()
        assert data["flagged_ids"] == sorted([a, b])
        assert data["scanned"] == 3

    def test_anomalies(self, client):
        for _ in range(10):
            submit(client, payload={"amount": 100})
        big = submit(client, payload={"amount": 10000})

        data = client.get("/api/flags/anomalies", params={"kind": "invoice"}, headers=VIEWER).json()
        assert data["flags"] == {big: ["unusual_amount"]}

    def test_check_duplicates(self, client):
        existing = submit(client, payload={"guest_name": "Ann Lee", "amount": 120})
        resp = client.post(
            "/api/flags/check-duplicates",
            json={"kind": "invoice", "payload": {"guest_name": "Ann Lee", "amount": 120}},
            headers=SUBMITTER,
        )
        matches = resp.json()["duplicates"]
        assert matches[0]["id"] == existing
        assert matches[0]["match_reasons"] == ["Same name", "Same amount"]

    def test_check_duplicates_unknown_kind(self, client):
        resp = client.post(
            "/api/flags/check-duplicates", json={"kind": "timesheet", "payload": {}}, headers=SUBMITTER
        )
        assert resp.status_code == 400


class TestConfigApi:

    def test_engine_settings(self, client):
        data = client.get("/api/config/engine").json()
        assert data["undo_grace_seconds"] == 5.0
        assert data["max_bulk_records"] == 50
        assert "slack_webhook_configured" in data

    def test_workflow_table(self, client):
        data = client.get("/api/config/workflows/assignment").json()
        assert data["initial_status"] == "pending"
        assert ("pending", "confirmed") in {(e["from"], e["to"]) for e in data["edges"]}
        assert data["terminal_statuses"] == ["cancelled"]

    def test_unknown_workflow_table(self, client):
        assert client.get("/api/config/workflows/timesheet").status_code == 404

    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "healthy"

    def test_startup_wires_global_notification_service(self, monkeypatch):
        monkeypatch.setattr(server.settings, "STORAGE_BACKEND", "memory")
        with TestClient(server.app) as started:
            assert started.get("/api/health").json()["storage"] == "memory"
            assert server.workflow_service.notifier is get_notification_service()
        set_notification_service(None)


class TestAuditLogApi:

    def test_admin_query_newest_first(self, client):
        record_id = submit(client)
        assert move(client, record_id, "pending_manager", SUBMITTER).status_code == 200
        submit(client)

        resp = client.get("/api/audit-log", params={"record_id": record_id}, headers=ADMIN)

        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 2
        assert [e["to_status"] for e in data["events"]] == ["pending_manager", "submitted"]

    def test_filters_by_actor_type_and_day(self, client):
        record_id = submit(client)
        assert move(client, record_id, "pending_manager", SUBMITTER).status_code == 200
        assert move(client, record_id, "approved_by_manager", MANAGER).status_code == 200
        today = datetime.now(timezone.utc).date().isoformat()

        data = client.get(
            "/api/audit-log",
            params={"actor_id": "m1", "event_type": "status_changed", "from_date": today, "to_date": today},
            headers=ADMIN,
        ).json()

        assert [e["to_status"] for e in data["events"]] == ["approved_by_manager"]

    def test_limit(self, client):
        for _ in range(3):
            submit(client)
        data = client.get("/api/audit-log", params={"limit": 2}, headers=ADMIN).json()
        assert data["count"] == 2

    def test_past_range_is_empty(self, client):
        submit(client)
        yesterday = (datetime.now(timezone.utc).date() - timedelta(days=1)).isoformat()
        data = client.get("/api/audit-log", params={"to_date": yesterday}, headers=ADMIN).json()
        assert data["events"] == []

    def test_inverted_range_rejected(self, client):
        resp = client.get(
            "/api/audit-log", params={"from_date": "2026-03-02", "to_date": "2026-03-01"}, headers=ADMIN
        )
        assert resp.status_code == 400

    def test_non_admin_forbidden(self, client):
        submit(client)
        for headers in (SUBMITTER, MANAGER, FINANCE, VIEWER):
            assert client.get("/api/audit-log", headers=headers).status_code == 403

    def test_requires_token(self, client):
        assert client.get("/api/audit-log").status_code == 401


class TestManagerDirectoryApi:

    def test_put_then_list(self, client):
        resp = client.put(
            "/api/config/managers/m2",
            json={"department_id": "ops", "program_ids": ["youth"]},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        managers = client.get("/api/config/managers", headers=ADMIN).json()["managers"]
        assert managers == [{"manager_id": "m2", "department_id": "ops", "program_ids": ["youth"]}]

    def test_submission_auto_assigned(self, client):
        client.put("/api/config/managers/m1", json={"department_id": "finance"}, headers=ADMIN)
        client.put("/api/config/managers/m2", json={"department_id": "ops"}, headers=ADMIN)

        resp = client.post(
            "/api/records",
            json={"kind": "invoice", "payload": {"amount": 10, "department_id": "ops"}},
            headers=SUBMITTER,
        )

        assert resp.status_code == 200
        assert resp.json()["record"]["workflow"]["assignee_id"] == "m2"

    def test_non_admin_forbidden(self, client):
        assert client.get("/api/config/managers", headers=MANAGER).status_code == 403
        resp = client.put("/api/config/managers/m1", json={"department_id": "x"}, headers=OPERATIONS)
        assert resp.status_code == 403
