"""HTTP-level tests: routers, error mapping, headers and middleware."""

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import BOUNDARY_ID, CASH_ID, OTHER_ID, PENDING_ID
from ftms.api import bus_trips, revenues
from ftms.api.deps import get_store
from ftms.config import settings
from ftms.database import get_db
from ftms.main import app
from ftms.models.error_log import ErrorLog, ErrorSeverity
from ftms.services import operations_sync, revenue_service

D = Decimal
COLLECTED = (datetime.now(timezone.utc) - timedelta(days=1)).replace(microsecond=0)


def _body(**overrides) -> dict:
    body = {
        "category_id": OTHER_ID,
        "total_amount": "500",
        "collection_date": COLLECTED.isoformat(),
        "payment_method_id": CASH_ID,
        "payment_status_id": PENDING_ID,
        "remarks": "Terminal rental fee",
    }
    body.update(overrides)
    return body


@pytest.fixture
def captured():
    with patch("ftms.middleware.error_capture.log_error_standalone", AsyncMock()) as mock:
        yield mock


@pytest.fixture
def client(store, captured):
    app.dependency_overrides[get_store] = lambda: store
    revenues.limiter.reset()
    bus_trips.limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Health and headers
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


# ═══════════════════════════════════════════════════════════════════════════
# Revenue CRUD
# ═══════════════════════════════════════════════════════════════════════════

class TestRevenueEndpoints:
    def test_create_and_fetch(self, client):
        resp = client.post("/api/revenues", json=_body())
        assert resp.status_code == 201
        data = resp.json()
        assert data["revenue_code"] == "REV-00001"
        assert D(data["total_amount"]) == D("500")
        assert data["category_name"] == "Other"
        assert data["payment_status_name"] == "Pending"
        assert data["warnings"] == []

        detail = client.get("/api/revenues/REV-00001")
        assert detail.status_code == 200
        assert D(detail.json()["outstanding_balance"]) == D("500")

    def test_duplicate_maps_to_409_and_is_logged(self, client, captured):
        client.post("/api/revenues", json=_body())
        resp = client.post("/api/revenues", json=_body())
        assert resp.status_code == 409
        assert resp.json()["field"] == "collection_date"
        assert "Duplicate" in resp.json()["detail"]

        kwargs = captured.call_args.kwargs
        assert kwargs["status_code"] == 409
        assert kwargs["severity"] == ErrorSeverity.WARNING
        assert kwargs["request_path"] == "/api/revenues"
        assert "Terminal rental fee" in kwargs["request_body"]

    def test_missing_field_is_400_with_field(self, client):
        body = _body()
        del body["category_id"]
        resp = client.post("/api/revenues", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"detail": "category_id is required", "field": "category_id"}

    def test_negative_total_is_400(self, client):
        resp = client.post("/api/revenues", json=_body(total_amount="-5"))
        assert resp.status_code == 400
        assert resp.json()["field"] == "total_amount"
        assert resp.json()["detail"].startswith("total_amount: ")

    def test_non_positive_installment_is_400(self, client):
        resp = client.post(
            "/api/revenues/REV-99999/installments",
            json={"installments": [{"due_date": "2026-12-01", "amount_due": "0"}]},
        )
        assert resp.status_code == 400
        assert resp.json()["field"] == "installments.0.amount_due"

    def test_business_rule_is_400_with_field(self, client):
        resp = client.post("/api/revenues", json=_body(remarks="fee"))
        assert resp.status_code == 400
        assert resp.json()["field"] == "remarks"

    def test_bus_trip_submission_is_idempotent(self, client, boundary_trip):
        body = {"bus_trip_id": "BT-001", "remarks": "Trip remittance"}
        first = client.post("/api/revenues", json=body)
        second = client.post("/api/revenues", json=body)
        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["revenue_code"] == first.json()["revenue_code"]
        assert first.json()["category_id"] == BOUNDARY_ID

    def test_unknown_revenue_is_404(self, client):
        resp = client.get("/api/revenues/REV-99999")
        assert resp.status_code == 404
        assert resp.json()["field"] == "revenue_code"

    def test_list_sets_pagination_headers(self, client):
        client.post("/api/revenues", json=_body())
        client.post("/api/revenues", json=_body(total_amount="650"))
        client.post("/api/revenues", json=_body(total_amount="700"))
        resp = client.get("/api/revenues", params={"limit": 2, "sort_by": "amount", "order": "asc"})
        assert resp.status_code == 200
        assert [D(r["total_amount"]) for r in resp.json()] == [D("500"), D("650")]
        assert resp.headers["X-Total-Count"] == "3"
        assert resp.headers["X-Total-Pages"] == "2"
        assert resp.headers["X-Page"] == "1"

    def test_list_rejects_unknown_period(self, client):
        resp = client.get("/api/revenues", params={"period": "Week"})
        assert resp.status_code == 400
        assert resp.json()["field"] == "period"

    def test_update_and_delete(self, client):
        client.post("/api/revenues", json=_body())
        resp = client.put("/api/revenues/REV-00001", json={"remarks": "Terminal rental, March"})
        assert resp.status_code == 200
        assert resp.json()["remarks"] == "Terminal rental, March"

        resp = client.delete("/api/revenues/REV-00001", params={"deleted_by": "admin"})
        assert resp.status_code == 200
        assert resp.json() == {
            "revenue_code": "REV-00001", "deleted": True, "attachments_deleted": 0, "warnings": [],
        }
        assert client.get("/api/revenues/REV-00001").status_code == 404

    def test_unhandled_error_is_500_and_logged(self, client, captured):
        client.post("/api/revenues", json=_body())
        with patch.object(revenue_service, "get_revenue", AsyncMock(side_effect=RuntimeError("kaput"))):
            resp = client.get("/api/revenues/REV-00001")
        assert resp.status_code == 500
        assert resp.json()["details"] == "kaput"
        assert captured.call_args.kwargs["severity"] == ErrorSeverity.ERROR


# ═══════════════════════════════════════════════════════════════════════════
# Attachments
# ═══════════════════════════════════════════════════════════════════════════

class TestWithAttachments:
    def test_multipart_create(self, client, tmp_path, captured):
        with patch.object(settings, "upload_dir", str(tmp_path)):
            resp = client.post(
                "/api/revenues/with-attachments",
                data={"payload": json.dumps(_body())},
                files=[("files", ("slip.png", b"png-bytes", "image/png"))],
            )
        assert resp.status_code == 201
        attachments = resp.json()["attachments"]
        assert [a["original_name"] for a in attachments] == ["slip.png"]
        assert attachments[0]["mime_type"] == "image/png"

    def test_bad_payload_is_400_and_body_not_captured(self, client, captured):
        resp = client.post(
            "/api/revenues/with-attachments",
            data={"payload": json.dumps({"remarks": "no category here"})},
        )
        assert resp.status_code == 400
        assert resp.json()["field"] == "category_id"
        assert captured.call_args.kwargs["request_body"] is None


# ═══════════════════════════════════════════════════════════════════════════
# Receivables and payments
# ═══════════════════════════════════════════════════════════════════════════

class TestLedgerEndpoints:
    def _receivable(self, client):
        resp = client.post("/api/revenues", json=_body(
            total_amount="0",
            payment_method_id=None,
            is_receivable=True,
            due_date=(date.today() + timedelta(days=30)).isoformat(),
            payer_name="Acme Tours",
        ))
        assert resp.status_code == 201
        return resp.json()["revenue_code"]

    def test_installments_then_pay(self, client):
        code = self._receivable(client)
        resp = client.post(f"/api/revenues/{code}/installments", json={"installments": [
            {"due_date": (date.today() + timedelta(days=7)).isoformat(), "amount_due": "1000"},
        ]})
        assert resp.status_code == 201
        installment_id = resp.json()[0]["id"]

        resp = client.put(f"/api/revenues/installments/{installment_id}/pay", json={
            "pay_amount": "400", "payment_method_id": CASH_ID,
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["installment"]["status"] == "partial"
        assert D(data["outstanding_balance"]) == D("600")

        resp = client.put(f"/api/revenues/installments/{installment_id}/pay", json={
            "pay_amount": "700", "payment_method_id": CASH_ID,
        })
        assert resp.status_code == 400
        assert "Overpaid" in resp.json()["detail"]

    def test_installments_on_plain_revenue_are_rejected(self, client):
        client.post("/api/revenues", json=_body())
        resp = client.post("/api/revenues/REV-00001/installments", json={"installments": [
            {"due_date": date.today().isoformat(), "amount_due": "10"},
        ]})
        assert resp.status_code == 400

    def test_batch_payments(self, client):
        client.post("/api/revenues", json=_body())
        resp = client.post("/api/revenues/REV-00001/payments", json={"payments": [
            {"amount": "200", "payment_method_id": CASH_ID},
            {"amount": "300", "payment_method_id": CASH_ID, "reference_number": "OR-1"},
        ]})
        assert resp.status_code == 201
        data = resp.json()
        assert D(data["outstanding_balance"]) == D("0")
        assert len(data["payments"]) == 2

        listed = client.get("/api/revenues/REV-00001/payments").json()
        assert [p["reference_number"] for p in listed] == [None, "OR-1"]
        detail = client.get("/api/revenues/REV-00001").json()
        assert detail["payment_status_name"] == "Paid"


# ═══════════════════════════════════════════════════════════════════════════
# Shortage loans
# ═══════════════════════════════════════════════════════════════════════════

class TestLoanEndpoints:
    def test_preview(self, client):
        resp = client.post("/api/revenues/loan/preview", json={
            "assignment_value": "2000", "collected_amount": "1800",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert D(data["shortfall"]) == D("200")
        assert D(data["driver"]) == D("100")
        assert D(data["conductor"]) == D("100")

    def test_preview_mismatch_is_400(self, client):
        resp = client.post("/api/revenues/loan/preview", json={
            "assignment_value": "2000", "collected_amount": "1800",
            "driver_share": "10", "conductor_share": "10",
        })
        assert resp.status_code == 400

    def test_linked_create_lists_and_repays_loans(self, client, boundary_trip):
        resp = client.post("/api/revenues", json=_body(
            category_id=BOUNDARY_ID, total_amount="1800", assignment_id="ASG-001",
            remarks="Boundary remittance",
        ))
        assert resp.status_code == 201
        assert len(resp.json()["loans"]) == 2

        loans = client.get("/api/loans", params={"revenue_code": "REV-00001"}).json()
        driver = next(l for l in loans if l["employee_role"] == "driver")
        assert driver["employee_name"] == "Juan Dela Cruz"
        assert len(driver["installments"]) == 3

        resp = client.put(
            f"/api/loans/installments/{driver['installments'][0]['id']}/pay",
            json={"amount": "20", "payment_method_id": CASH_ID},
        )
        assert resp.status_code == 200
        assert D(resp.json()["loan"]["balance"]) == D("80")
        assert resp.json()["loan"]["status"] == "partially_paid"

    def test_generate_on_non_boundary_is_400(self, client):
        client.post("/api/revenues", json=_body())
        resp = client.post("/api/revenues/REV-00001/loan/generate")
        assert resp.status_code == 400
        assert resp.json()["field"] == "category_id"

    def test_generate_on_boundary(self, client, boundary_trip):
        client.post("/api/revenues", json=_body(
            category_id=BOUNDARY_ID, total_amount="1800", assignment_id="ASG-001",
            remarks="Boundary remittance",
        ))
        resp = client.post("/api/revenues/REV-00001/loan/generate", json={"additional_employees": []})
        assert resp.status_code == 200
        data = resp.json()
        assert data["applied"] is True
        assert sum(D(l["amount"]) for l in data["loans"]) == D("200")


# ═══════════════════════════════════════════════════════════════════════════
# Bus trips and configuration
# ═══════════════════════════════════════════════════════════════════════════

class TestBusTripEndpoints:
    def test_lists_unrecorded_trips(self, client, boundary_trip):
        resp = client.get("/api/bus-trips")
        assert resp.status_code == 200
        assert resp.headers["X-Total-Count"] == "1"
        trip = resp.json()[0]
        assert trip["bus_trip_id"] == "BT-001"
        assert D(trip["expected_remittance"]) == D("2000")
        assert D(trip["boundary_loss"]) == D("0")

    def test_refresh(self, client):
        fetched = [{"assignment_id": "ASG-5", "bus_trip_id": "BT-5", "trip_revenue": "100"}]
        with patch.object(operations_sync, "fetch_bus_trips", AsyncMock(return_value=fetched)):
            resp = client.post("/api/bus-trips/refresh")
        assert resp.status_code == 200
        assert resp.json() == {"fetched": 1, "created": 1, "updated": 0}

    def test_refresh_without_operations_is_502(self, client):
        with patch.object(settings, "operations_api_url", ""):
            resp = client.post("/api/bus-trips/refresh")
        assert resp.status_code == 502


class TestSystemConfigEndpoints:
    def test_defaults_then_update(self, client):
        resp = client.get("/api/system-config")
        assert resp.status_code == 200
        assert resp.json()["is_default"] is True

        resp = client.put("/api/system-config", json={
            "driver_share_percentage": "60", "conductor_share_percentage": "40",
            "default_frequency": "Biweekly", "default_number_of_payments": 4,
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["default_frequency"] == "biweekly"
        assert data["is_default"] is False

    def test_shares_must_sum_to_100(self, client):
        resp = client.put("/api/system-config", json={
            "driver_share_percentage": "60", "conductor_share_percentage": "30",
            "default_number_of_payments": 3,
        })
        assert resp.status_code == 400
        assert "add up to 100" in resp.json()["detail"]


# ═══════════════════════════════════════════════════════════════════════════
# Error logs
# ═══════════════════════════════════════════════════════════════════════════

class TestErrorLogEndpoints:
    @pytest.fixture
    def db(self):
        session = MagicMock()
        session.commit = AsyncMock()
        session.get = AsyncMock(return_value=None)
        app.dependency_overrides[get_db] = lambda: session
        yield session
        app.dependency_overrides.pop(get_db, None)

    def test_resolve_unknown_is_404(self, client, db):
        resp = client.patch("/api/error-logs/42/resolve", json={})
        assert resp.status_code == 404

    def test_resolve_marks_entry(self, client, db):
        entry = ErrorLog(
            id=7, severity=ErrorSeverity.WARNING, error_type="RuntimeError",
            message="loan_generation failed", revenue_code="REV-00001", resolved=False,
            created_at=datetime.now(timezone.utc),
        )
        db.get.return_value = entry
        resp = client.patch("/api/error-logs/7/resolve", json={"resolution_notes": "re-ran"})
        assert resp.status_code == 200
        assert resp.json()["resolved"] is True
        assert entry.resolution_notes == "re-ran"
        db.commit.assert_awaited_once()
