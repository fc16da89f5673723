"""Tests for the coupon API: admin CRUD, validate/apply and reconciliation."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from coupon_ledger.core.config import settings
from coupon_ledger.core.exceptions import LedgerInconsistencyError, StorageUnavailableError
from coupon_ledger.main import app
from coupon_ledger.repositories.coupon_repository import CouponRepository
from coupon_ledger.routers.coupons import coupon_check_rate_limiter
from coupon_ledger.services.redemption_coordinator import (
    RedemptionCoordinator,
    Rejected,
    RejectionReason,
)


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


def _create(client, **overrides):
    payload = {"code": "SAVE20", "discount_value": 20, "max_discount": 500}
    payload.update(overrides)
    response = client.post("/v1/coupons/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


class TestCouponCrud:
    def test_create(self, client):
        data = _create(client, code="summer", description="Summer sale")
        assert data["code"] == "SUMMER"
        assert data["description"] == "Summer sale"
        assert data["discount_type"] == "percentage"
        assert data["used_count"] == 0
        assert data["is_active"] is True

    def test_create_duplicate(self, client):
        _create(client)
        response = client.post("/v1/coupons/", json={"code": "save20", "discount_value": 5})
        assert response.status_code == 409
        assert "already exists" in response.json()["detail"]

    def test_create_invalid(self, client):
        response = client.post("/v1/coupons/", json={"code": "bad code", "discount_value": 5})
        assert response.status_code == 422

    def test_create_invalid_window(self, client):
        now = datetime.now(UTC)
        response = client.post(
            "/v1/coupons/",
            json={
                "code": "WINDOW",
                "discount_value": 5,
                "valid_from": now.isoformat(),
                "valid_until": (now - timedelta(days=1)).isoformat(),
            },
        )
        assert response.status_code == 422

    def test_list_with_total_count(self, client):
        _create(client, code="AAA")
        _create(client, code="BBB", is_active=False)
        _create(client, code="CCC")

        response = client.get("/v1/coupons/", params={"order_by": "code:asc"})
        assert response.status_code == 200
        assert [c["code"] for c in response.json()] == ["AAA", "BBB", "CCC"]
        assert response.headers["X-Total-Count"] == "3"

        response = client.get("/v1/coupons/", params={"is_active": True, "limit": 1})
        assert len(response.json()) == 1
        assert response.headers["X-Total-Count"] == "2"

    def test_get(self, client):
        created = _create(client)
        response = client.get(f"/v1/coupons/{created['id']}")
        assert response.status_code == 200
        assert response.json()["code"] == "SAVE20"

    def test_get_not_found(self, client):
        assert client.get(f"/v1/coupons/{uuid4()}").status_code == 404

    def test_update(self, client):
        created = _create(client)
        response = client.put(
            f"/v1/coupons/{created['id']}",
            json={"description": "Updated", "usage_limit": 10},
        )
        assert response.status_code == 200
        assert response.json()["description"] == "Updated"
        assert response.json()["usage_limit"] == 10

    def test_update_duplicate_code(self, client):
        created = _create(client)
        _create(client, code="OTHER")
        response = client.put(f"/v1/coupons/{created['id']}", json={"code": "other"})
        assert response.status_code == 409

    def test_update_limit_below_used_count(self, client):
        created = _create(client)
        client.post(
            "/v1/coupons/apply",
            json={"code": "SAVE20", "amount": 1000, "user_id": "u1", "purchase_id": "p1"},
        )
        response = client.put(f"/v1/coupons/{created['id']}", json={"usage_limit": 0})
        assert response.status_code == 400

    def test_update_not_found(self, client):
        response = client.put(f"/v1/coupons/{uuid4()}", json={"description": "x"})
        assert response.status_code == 404

    def test_delete(self, client):
        created = _create(client)
        assert client.delete(f"/v1/coupons/{created['id']}").status_code == 204
        assert client.get(f"/v1/coupons/{created['id']}").status_code == 404
        assert client.delete(f"/v1/coupons/{created['id']}").status_code == 404

    def test_delete_in_use(self, client):
        created = _create(client)
        client.post(
            "/v1/coupons/apply",
            json={"code": "SAVE20", "amount": 1000, "user_id": "u1", "purchase_id": "p1"},
        )
        response = client.delete(f"/v1/coupons/{created['id']}")
        assert response.status_code == 409
        assert "deactivate" in response.json()["detail"]


class TestValidate:
    def test_validate(self, client):
        _create(client)
        response = client.post("/v1/coupons/validate", json={"code": "save20", "amount": 3000})
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["discount_amount"] == 500
        assert data["final_amount"] == 2500
        assert data["usage_recorded"] is False

    def test_validate_unknown_code(self, client):
        response = client.post("/v1/coupons/validate", json={"code": "NOPE", "amount": 3000})
        assert response.status_code == 404
        assert response.headers["X-Rejection-Reason"] == "coupon_not_found"

    def test_validate_expired(self, client):
        _create(
            client,
            code="OLD",
            valid_until=(datetime.now(UTC) - timedelta(days=1)).isoformat(),
        )
        response = client.post("/v1/coupons/validate", json={"code": "OLD", "amount": 3000})
        assert response.status_code == 400
        assert response.headers["X-Rejection-Reason"] == "expired"
        assert response.json()["detail"] == "Coupon has expired"

    def test_validate_below_minimum(self, client):
        _create(client, code="MIN", min_purchase=2000)
        response = client.post("/v1/coupons/validate", json={"code": "MIN", "amount": 1999})
        assert response.status_code == 400
        assert response.headers["X-Rejection-Reason"] == "below_minimum_purchase"

    def test_validate_negative_amount(self, client):
        response = client.post("/v1/coupons/validate", json={"code": "ANY", "amount": -5})
        assert response.status_code == 422

    def test_validate_storage_unavailable(self, client):
        with patch.object(
            CouponRepository,
            "find_active_by_code",
            side_effect=StorageUnavailableError("timeout"),
        ):
            response = client.post("/v1/coupons/validate", json={"code": "ANY", "amount": 100})
        assert response.status_code == 503
        assert response.headers["X-Rejection-Reason"] == "storage_unavailable"


class TestApply:
    def test_apply_records_once(self, client):
        created = _create(client, usage_limit=5)
        body = {"code": "SAVE20", "amount": 3000, "user_id": "u1", "purchase_id": "order-1"}

        first = client.post("/v1/coupons/apply", json=body)
        second = client.post("/v1/coupons/apply", json=body)

        assert first.status_code == 200
        assert first.json()["usage_recorded"] is True
        assert second.json() == first.json()
        assert client.get(f"/v1/coupons/{created['id']}").json()["used_count"] == 1

    def test_apply_without_purchase_is_preview(self, client):
        created = _create(client)
        response = client.post(
            "/v1/coupons/apply", json={"code": "SAVE20", "amount": 3000, "user_id": "u1"}
        )
        assert response.status_code == 200
        assert response.json()["usage_recorded"] is False
        assert client.get(f"/v1/coupons/{created['id']}").json()["used_count"] == 0

    def test_apply_requires_user(self, client):
        _create(client)
        response = client.post(
            "/v1/coupons/apply", json={"code": "SAVE20", "amount": 3000, "purchase_id": "p1"}
        )
        assert response.status_code == 422

    def test_apply_limit_reached(self, client):
        _create(client, usage_limit=1)
        client.post(
            "/v1/coupons/apply",
            json={"code": "SAVE20", "amount": 3000, "user_id": "u1", "purchase_id": "p1"},
        )
        response = client.post(
            "/v1/coupons/apply",
            json={"code": "SAVE20", "amount": 3000, "user_id": "u2", "purchase_id": "p2"},
        )
        assert response.status_code == 400
        assert response.headers["X-Rejection-Reason"] == "usage_limit_reached"

    def test_apply_ledger_inconsistency(self, client):
        coordinator = MagicMock()
        coordinator.evaluate.side_effect = LedgerInconsistencyError(uuid4(), "p1", "gone")
        with patch(
            "coupon_ledger.routers.coupons.RedemptionCoordinator.for_session",
            return_value=coordinator,
        ):
            response = client.post(
                "/v1/coupons/apply",
                json={"code": "SAVE20", "amount": 3000, "user_id": "u1", "purchase_id": "p1"},
            )
        assert response.status_code == 500
        assert "could not be recorded" in response.json()["detail"]

    def test_apply_runs_off_the_event_loop(self, client):
        _create(client)
        seen = []
        real_for_session = RedemptionCoordinator.for_session

        def for_session(db, **kwargs):
            coordinator = real_for_session(db, **kwargs)
            evaluate = coordinator.evaluate

            def tracked(*args, **kw):
                try:
                    asyncio.get_running_loop()
                    seen.append("event loop")
                except RuntimeError:
                    seen.append("worker thread")
                return evaluate(*args, **kw)

            coordinator.evaluate = tracked
            return coordinator

        with patch(
            "coupon_ledger.routers.coupons.RedemptionCoordinator.for_session",
            side_effect=for_session,
        ):
            response = client.post(
                "/v1/coupons/apply",
                json={"code": "SAVE20", "amount": 3000, "user_id": "u1", "purchase_id": "p1"},
            )

        assert response.status_code == 200
        assert seen == ["worker thread"]

    def test_apply_in_progress_is_a_retryable_conflict(self, client):
        coordinator = MagicMock()
        coordinator.evaluate.return_value = Rejected(
            RejectionReason.REDEMPTION_IN_PROGRESS, "Coupon redemption in progress, retry shortly"
        )
        with patch(
            "coupon_ledger.routers.coupons.RedemptionCoordinator.for_session",
            return_value=coordinator,
        ):
            response = client.post(
                "/v1/coupons/apply",
                json={"code": "SAVE20", "amount": 3000, "user_id": "u1", "purchase_id": "p1"},
            )
        assert response.status_code == 409
        assert response.headers["X-Rejection-Reason"] == "redemption_in_progress"



class TestUsagesAndReconcile:
    def test_coupon_usages(self, client):
        created = _create(client)
        for i in range(3):
            client.post(
                "/v1/coupons/apply",
                json={"code": "SAVE20", "amount": 1000, "user_id": f"u{i}", "purchase_id": f"p{i}"},
            )

        response = client.get(f"/v1/coupons/{created['id']}/usages")
        assert response.status_code == 200
        assert len(response.json()) == 3
        assert {u["discount_amount"] for u in response.json()} == {200}

    def test_coupon_usages_not_found(self, client):
        assert client.get(f"/v1/coupons/{uuid4()}/usages").status_code == 404

    def test_reconcile(self, client, db_session):
        created = _create(client)
        CouponRepository(db_session).set_used_count(created["id"], 4)

        response = client.post(f"/v1/coupons/{created['id']}/reconcile")
        assert response.status_code == 200
        assert response.json() == {
            "coupon_id": created["id"],
            "code": "SAVE20",
            "used_count": 4,
            "recorded_count": 0,
        }
        assert client.get(f"/v1/coupons/{created['id']}").json()["used_count"] == 0

        response = client.post(f"/v1/coupons/{created['id']}/reconcile")
        assert response.status_code == 200
        assert response.json() is None

    def test_reconcile_not_found(self, client):
        assert client.post(f"/v1/coupons/{uuid4()}/reconcile").status_code == 404


class TestAdminAuth:
    @pytest.fixture(autouse=True)
    def _admin_key(self, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "s3cret")

    def test_missing_header(self, client):
        response = client.get("/v1/coupons/")
        assert response.status_code == 401
        assert response.json()["detail"] == "Authorization header is required"

    def test_bad_format(self, client):
        response = client.get("/v1/coupons/", headers={"Authorization": "Token s3cret"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid authorization header format"

    def test_wrong_key(self, client):
        response = client.get("/v1/coupons/", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_valid_key(self, client):
        response = client.get("/v1/coupons/", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200

    def test_checkout_endpoints_stay_open(self, client):
        response = client.post("/v1/coupons/validate", json={"code": "NOPE", "amount": 1})
        assert response.status_code == 404


class TestRateLimit:
    def test_coupon_checks_are_limited(self, client, monkeypatch):
        monkeypatch.setattr(coupon_check_rate_limiter, "max_requests", 3)
        for _ in range(3):
            response = client.post("/v1/coupons/validate", json={"code": "GUESS", "amount": 1})
            assert response.status_code == 404

        response = client.post("/v1/coupons/validate", json={"code": "GUESS", "amount": 1})
        assert response.status_code == 429
        assert "Rate limit exceeded" in response.json()["detail"]
        assert int(response.headers["Retry-After"]) > 0

    def test_admin_endpoints_not_limited(self, client, monkeypatch):
        monkeypatch.setattr(coupon_check_rate_limiter, "max_requests", 1)
        for _ in range(3):
            assert client.get("/v1/coupons/").status_code == 200


class TestStorageUnavailableHandler:
    def test_list_returns_503(self, client):
        with patch.object(
            CouponRepository, "get_all", side_effect=StorageUnavailableError("down")
        ):
            response = client.get("/v1/coupons/")
        assert response.status_code == 503
        assert response.json() == {"detail": "Coupon store temporarily unavailable"}


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"
