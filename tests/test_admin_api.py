"""Tests for the /admin/api blueprint.

Covers:
- Bearer token enforcement
- Transaction / schedule / webhook-event listings and filters
- Pause / resume / cancel (including invalid transitions)
- Manual webhook retry
- Health summary
"""

import json
from datetime import datetime, timezone
from unittest.mock import patch

from paybridge.services.gateway import ChargeResult

CYCLE_RUN = datetime(2024, 1, 3, tzinfo=timezone.utc)


class TestAdminAuth:
    """Bearer token required on every route."""

    def test_missing_token_401(self, client, engine):
        resp = client.get("/admin/api/transactions")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Unauthorized"

    def test_wrong_token_401(self, client, engine):
        resp = client.get("/admin/api/schedules", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_unconfigured_token_disables_api(self, client, engine, app, admin_headers):
        app.config["ADMIN_API_TOKEN"] = None
        try:
            resp = client.get("/admin/api/health", headers=admin_headers)
        finally:
            app.config["ADMIN_API_TOKEN"] = "admin-test-token"
        assert resp.status_code == 403


class TestTransactions:
    """Ledger views."""

    def test_list_and_filter(self, client, engine, seed_data, admin_headers):
        engine.scheduler.run_due_cycle(now=CYCLE_RUN)

        resp = client.get("/admin/api/transactions?status=approved", headers=admin_headers)
        assert resp.status_code == 200
        txns = resp.get_json()["transactions"]
        assert len(txns) == 1
        assert txns[0]["schedule_id"] == seed_data["schedule_id"]

        resp = client.get("/admin/api/transactions?status=declined", headers=admin_headers)
        assert resp.get_json()["transactions"] == []

    def test_detail_and_404(self, client, engine, seed_data, admin_headers):
        engine.scheduler.run_due_cycle(now=CYCLE_RUN)
        txn_id = client.get("/admin/api/transactions", headers=admin_headers).get_json()["transactions"][0]["id"]

        resp = client.get(f"/admin/api/transactions/{txn_id}", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["transaction"]["status"] == "approved"

        assert client.get("/admin/api/transactions/missing", headers=admin_headers).status_code == 404


class TestSchedules:
    """Schedule views and control."""

    def test_detail_includes_transactions(self, client, engine, seed_data, admin_headers):
        engine.scheduler.run_due_cycle(now=CYCLE_RUN)

        resp = client.get(f"/admin/api/schedules/{seed_data['schedule_id']}", headers=admin_headers)
        data = resp.get_json()["schedule"]
        assert data["status"] == "active"
        assert len(data["transactions"]) == 1

    def test_list_by_account(self, client, engine, seed_data, admin_headers):
        resp = client.get(f"/admin/api/schedules?account_id={seed_data['account_id']}", headers=admin_headers)
        assert [s["id"] for s in resp.get_json()["schedules"]] == [seed_data["schedule_id"]]

    def test_pause_resume_cancel(self, client, engine, seed_data, admin_headers):
        url = f"/admin/api/schedules/{seed_data['schedule_id']}"

        resp = client.post(f"{url}/pause", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["schedule"]["status"] == "paused"

        resp = client.post(f"{url}/resume", headers=admin_headers)
        assert resp.get_json()["schedule"]["status"] == "active"

        resp = client.post(
            f"{url}/cancel",
            data=json.dumps({"reason": "closed account"}),
            content_type="application/json",
            headers=admin_headers,
        )
        schedule = resp.get_json()["schedule"]
        assert schedule["status"] == "cancelled"
        assert schedule["cancellation_reason"] == "closed account"

    def test_invalid_transition_409(self, client, engine, seed_data, admin_headers):
        url = f"/admin/api/schedules/{seed_data['schedule_id']}"
        client.post(f"{url}/cancel", headers=admin_headers)

        resp = client.post(f"{url}/resume", headers=admin_headers)
        assert resp.status_code == 409

    def test_unknown_schedule_and_action(self, client, engine, seed_data, admin_headers):
        assert client.post("/admin/api/schedules/missing/pause", headers=admin_headers).status_code == 404
        url = f"/admin/api/schedules/{seed_data['schedule_id']}"
        assert client.post(f"{url}/explode", headers=admin_headers).status_code == 404


class TestWebhookEvents:
    """Webhook log and manual retry."""

    def test_failed_event_listed_and_retried(self, client, engine, seed_data, gateway, admin_headers):
        gateway.charge.side_effect = lambda *a, **k: ChargeResult("pending", "70000001", None, None, {})
        engine.scheduler.run_due_cycle(now=CYCLE_RUN)
        payload = json.dumps({"EventType": "Payment.Successful", "TransactionID": "70000001"})

        with patch.object(engine.scheduler, "apply_outcome", side_effect=RuntimeError("boom")):
            failed = engine.dispatcher.ingest(payload)

        resp = client.get("/admin/api/webhook-events?processed=false", headers=admin_headers)
        events = resp.get_json()["webhook_events"]
        assert [e["id"] for e in events] == [failed.event.id]
        assert events[0]["outcome"] == "error"

        resp = client.post(f"/admin/api/webhook-events/{failed.event.id}/retry", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "applied"
        assert resp.get_json()["webhook_event"]["processed"] is True

    def test_retry_unknown_event_404(self, client, engine, admin_headers):
        resp = client.post("/admin/api/webhook-events/missing/retry", headers=admin_headers)
        assert resp.status_code == 404


class TestHealth:
    """Health summary."""

    def test_health(self, client, engine, seed_data, admin_headers):
        engine.scheduler.run_due_cycle(now=CYCLE_RUN)

        resp = client.get("/admin/api/health", headers=admin_headers)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["recurring"][0]["cadence"] == "monthly"
        assert data["payments"][0]["type"] == "recurring"
        assert data["payments"][0]["success_rate"] == 1.0

    def test_bad_since(self, client, engine, admin_headers):
        resp = client.get("/admin/api/health?since=yesterday", headers=admin_headers)
        assert resp.status_code == 400
