"""
Integration tests for the HTTP surface.

Uses FastAPI TestClient with the real app (minus startup hooks).
The get_db dependency is overridden to use an in-memory SQLite session.
"""
from datetime import date, timedelta
from unittest.mock import patch

from models import CollectionAuditLog, Order, PaymentTransaction
from services.order_gateway import SqlOrderGateway
from services.payment_ledger import PaymentLedger
from tests.conftest import auth_headers, make_admin, make_order, make_rider


def collect(client, rider, order, amount="20.00", **extra):
    body = {"order_id": order.order_id, "collected_amount": amount, **extra}
    return client.post("/api/payments/collect", json=body, headers=auth_headers(rider.user))


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
class TestAuth:
    def test_missing_token(self, client):
        resp = client.post("/api/payments/collect", json={"order_id": 1, "collected_amount": 1})
        assert resp.status_code == 401
        assert resp.json()["success"] is False

    def test_garbage_token(self, client):
        resp = client.get("/api/payments/my-report", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_admin_cannot_collect(self, client, db):
        admin = make_admin(db)
        resp = client.post(
            "/api/payments/collect",
            json={"order_id": 1, "collected_amount": 1},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 403

    def test_rider_cannot_review(self, client, db):
        rider = make_rider(db)
        resp = client.post(
            "/api/reconciliations/1/review",
            json={"decision": "approve"},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# POST /api/payments/collect
# ---------------------------------------------------------------------------
class TestCollectEndpoint:
    def test_collect_returns_receipt(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider, total="18.50")

        resp = collect(client, rider, order, "20.00", change_amount="1.50", notes="paid in coins")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["order_id"] == order.order_id
        assert data["collected_amount"] == 20.0
        assert data["change_amount"] == 1.5
        assert data["order_total"] == 18.5
        assert data["collection_id"].startswith("col_")
        assert data["warnings"] == []

        txn = db.query(PaymentTransaction).filter(PaymentTransaction.order_id == order.order_id).one()
        assert txn.client_ip is not None

    def test_duplicate_is_409(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider)
        assert collect(client, rider, order).status_code == 200

        resp = collect(client, rider, order, "25.00")
        assert resp.status_code == 409
        body = resp.json()
        assert body == {
            "success": False,
            "message": body["message"],
            "error_code": "already_collected",
            "error_kind": "conflict",
        }

    def test_insufficient_is_400(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider, total="18.50")
        resp = collect(client, rider, order, "15.00")
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "insufficient_payment"

    def test_not_assigned_is_403(self, client, db):
        rider = make_rider(db)
        order = make_order(db, make_rider(db))
        resp = collect(client, rider, order)
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "order_not_assigned"

    def test_bad_order_reference_is_400(self, client, db):
        rider = make_rider(db)
        resp = client.post(
            "/api/payments/collect",
            json={"order_id": "abc", "collected_amount": "20"},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_order_reference"

    def test_missing_amount_is_400(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider)
        resp = client.post(
            "/api/payments/collect",
            json={"order_id": order.order_id},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_amounts"

    def test_oversized_amount_is_400(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider)
        resp = collect(client, rider, order, "1e30")
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_amounts"

        resp = client.post(
            "/api/payments/calculate-change",
            json={"order_total": "18.50", "collected_amount": "99999999999999999999999999999"},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 400

        resp = client.post(
            "/api/reconciliations/submit",
            json={"submitted_amount": 1e30},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_amounts"

    def test_oversized_order_id_is_400(self, client, db):
        rider = make_rider(db)
        resp = client.post(
            "/api/payments/collect",
            json={"order_id": str(10**30), "collected_amount": "20"},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_order_reference"

    def test_order_system_failure_is_502(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider)
        with patch.object(SqlOrderGateway, "set_order_completed", side_effect=RuntimeError("down")):
            resp = collect(client, rider, order)
        assert resp.status_code == 502
        body = resp.json()
        assert body["error_code"] == "order_update_failed"
        assert "down" not in body["message"]

    def test_rate_limit_is_429_with_retry_after(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider, total="18.50")
        for _ in range(10):
            collect(client, rider, order, "1.00")
        resp = collect(client, rider, order, "20.00")
        assert resp.status_code == 429
        assert resp.json()["error_code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0

    def test_attempts_are_audited(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider, total="18.50")
        collect(client, rider, order, "15.00")
        collect(client, rider, order, "20.00")
        events = [a.event for a in db.query(CollectionAuditLog).order_by(CollectionAuditLog.audit_id)]
        assert events == ["collection_failed", "collection_succeeded"]


class TestCalculateChangeEndpoint:
    def test_calculate(self, client, db):
        rider = make_rider(db)
        resp = client.post(
            "/api/payments/calculate-change",
            json={"order_total": "18.50", "collected_amount": "20"},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["change_amount"] == 1.5
        assert resp.json()["data"]["sufficient"] is True


class TestMyReport:
    def test_my_report(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider, total="18.50")
        day = collect(client, rider, order).json()["data"]["reconciliation_date"]

        resp = client.get(f"/api/payments/my-report?date={day}", headers=auth_headers(rider.user))
        assert resp.status_code == 200
        assert resp.json()["data"]["summary"]["net_amount"] == 18.5

    def test_bad_date(self, client, db):
        rider = make_rider(db)
        resp = client.get("/api/payments/my-report?date=yesterday", headers=auth_headers(rider.user))
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_date"


# ---------------------------------------------------------------------------
# Ledger events and verification
# ---------------------------------------------------------------------------
class TestOrderEvents:
    def test_processing_opens_pending_record(self, client, db):
        admin = make_admin(db)
        rider = make_rider(db)
        order = make_order(db, rider, total="40.00", status="pending")

        resp = client.post(
            "/api/payments/order-events",
            json={"order_id": order.order_id, "status": "processing"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "pending"
        assert data["payment_type"] == "cod"
        assert data["amount"] == 40.0

        # repeated event does not create a second record
        client.post(
            "/api/payments/order-events",
            json={"order_id": order.order_id, "status": "preparing"},
            headers=auth_headers(admin),
        )
        assert db.query(PaymentTransaction).count() == 1

    def test_other_status_is_ignored(self, client, db):
        admin = make_admin(db)
        order = make_order(db, status="pending")
        resp = client.post(
            "/api/payments/order-events",
            json={"order_id": order.order_id, "status": "cancelled"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.json()["data"] is None
        assert db.query(Order).filter(Order.order_id == order.order_id).one().status == "cancelled"


class TestVerify:
    def test_verify_and_withdraw(self, client, db):
        admin = make_admin(db)
        rider = make_rider(db)
        order = make_order(db, rider)
        collect(client, rider, order)
        txn = db.query(PaymentTransaction).one()

        resp = client.post(f"/api/payments/{txn.transaction_id}/verify", json={}, headers=auth_headers(admin))
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "verified"
        assert resp.json()["data"]["verified_at"] is not None

        resp = client.post(f"/api/payments/{txn.transaction_id}/verify", json={}, headers=auth_headers(admin))
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "invalid_transition"

        resp = client.post(
            f"/api/payments/{txn.transaction_id}/verify", json={"verified": False}, headers=auth_headers(admin)
        )
        assert resp.json()["data"]["status"] == "collected"

    def test_pending_payment_cannot_be_verified(self, client, db):
        admin = make_admin(db)
        order = make_order(db, status="processing")
        txn = PaymentLedger(db).create(SqlOrderGateway(db).get_order(order.order_id))

        resp = client.post(f"/api/payments/{txn.transaction_id}/verify", json={}, headers=auth_headers(admin))
        assert resp.status_code == 409

    def test_unknown_transaction(self, client, db):
        admin = make_admin(db)
        resp = client.post("/api/payments/999/verify", json={}, headers=auth_headers(admin))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "transaction_not_found"


# ---------------------------------------------------------------------------
# Reconciliation flow
# ---------------------------------------------------------------------------
class TestReconciliationFlow:
    def test_submit_review_export(self, client, db):
        admin = make_admin(db)
        rider = make_rider(db)
        order = make_order(db, rider, total="100.00")
        day = collect(client, rider, order, "100.00").json()["data"]["reconciliation_date"]

        resp = client.post(
            "/api/reconciliations/submit",
            json={"submitted_amount": "25.00", "notes": "lost an envelope", "date": day},
            headers=auth_headers(rider.user),
        )
        assert resp.status_code == 200
        rec = resp.json()["data"]
        assert rec["status"] == "pending_review"
        assert rec["variance"] == -75.0
        assert rec["severity"] == "major"
        assert rec["discrepancy_flag"] is True

        pending = client.get("/api/reconciliations/pending", headers=auth_headers(admin)).json()["data"]
        assert [p["reconciliation_id"] for p in pending] == [rec["reconciliation_id"]]

        resp = client.post(
            f"/api/reconciliations/{rec['reconciliation_id']}/review",
            json={"decision": "approve", "admin_notes": "confirmed with rider"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        reviewed = resp.json()["data"]
        assert reviewed["status"] == "approved"
        assert reviewed["discrepancy_flag"] is True
        assert reviewed["admin_notes"] == "confirmed with rider"

        resp = client.get(
            f"/api/reconciliations/export?date_from={day}&date_to={day}", headers=auth_headers(admin)
        )
        rows = resp.json()["data"]
        assert rows[-1]["row_type"] == "summary"
        assert rows[-1]["discrepancy_flag"] is True

        resp = client.get(
            f"/api/reconciliations/export?date_from={day}&date_to={day}&format=csv", headers=auth_headers(admin)
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.text.splitlines()[0].startswith("row_type,")

        events = {a.event for a in db.query(CollectionAuditLog)}
        assert {"reconciliation_submitted", "reconciliation_reviewed"} <= events

    def test_small_variance_auto_approved(self, client, db):
        rider = make_rider(db)
        order = make_order(db, rider, total="48.50")
        day = collect(client, rider, order, "48.50").json()["data"]["reconciliation_date"]
        resp = client.post(
            "/api/reconciliations/submit",
            json={"submitted_amount": "48.00", "date": day},
            headers=auth_headers(rider.user),
        )
        assert resp.json()["data"]["status"] == "approved"
        assert resp.json()["data"]["severity"] == "within_tolerance"

    def test_review_unknown_is_404(self, client, db):
        admin = make_admin(db)
        resp = client.post(
            "/api/reconciliations/999/review", json={"decision": "approve"}, headers=auth_headers(admin)
        )
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "reconciliation_not_found"

    def test_invalid_decision_is_400(self, client, db):
        admin = make_admin(db)
        resp = client.post(
            "/api/reconciliations/1/review", json={"decision": "maybe"}, headers=auth_headers(admin)
        )
        assert resp.status_code == 400

    def test_export_range_too_long(self, client, db):
        admin = make_admin(db)
        resp = client.get(
            "/api/reconciliations/export?date_from=2020-01-01&date_to=2024-01-01", headers=auth_headers(admin)
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_date_range"

    def test_recompute_report_statistics_sweep(self, client, db):
        admin = make_admin(db)
        rider = make_rider(db)
        order = make_order(db, rider, total="18.50")
        day = collect(client, rider, order).json()["data"]["reconciliation_date"]

        report = client.get(
            f"/api/reconciliations/report?agent_id={rider.rider_id}&date={day}", headers=auth_headers(admin)
        ).json()["data"]
        rec_id = report["reconciliation"]["reconciliation_id"]

        resp = client.post(f"/api/reconciliations/{rec_id}/recompute", headers=auth_headers(admin))
        assert resp.status_code == 200
        assert resp.json()["data"]["closing_balance"] == 18.5

        stats = client.get("/api/reconciliations/statistics", headers=auth_headers(admin)).json()["data"]
        assert stats["by_status"]["collected"]["count"] == 1

        resp = client.post(f"/api/reconciliations/sweep?date={day}", headers=auth_headers(admin))
        assert resp.status_code == 200
        assert resp.json()["data"]["notifications_sent"] == 1

    def test_sweep_defaults_to_yesterday(self, client, db):
        admin = make_admin(db)
        resp = client.post("/api/reconciliations/sweep", headers=auth_headers(admin))
        assert resp.status_code == 200
        assert resp.json()["data"]["date"] == (date.today() - timedelta(days=1)).isoformat()
