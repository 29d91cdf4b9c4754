# Overview: Pytest coverage for the deposit expiry sweep and its cron endpoint.

"""
Deposit Expiry Tests

An overdue, unpaid deposit reservation is expired exactly once: one
history row, stock back on the shelf, and repeat sweeps change nothing.
"""

from datetime import timedelta

import pytest

from tubeshop.models import OrderStatusHistory, Product
from tubeshop.services import expiry_service, inventory_service, order_lifecycle_service
from tubeshop.services.order_lifecycle_service import SYSTEM_EXPIRY_NOTE
from tubeshop.time_utils import utcnow


CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


def after_deadline():
    return utcnow() + timedelta(hours=25)


def stock_of(db_session, product_id):
    db_session.expire_all()
    return db_session.get(Product, product_id).stock_quantity


class TestSweep:
    def test_expires_overdue_reservation_and_restocks(self, db_session, place_deposit_order, deposit_product):
        order = place_deposit_order().order
        assert stock_of(db_session, deposit_product.id) == 2

        result = expiry_service.sweep(now=after_deadline())

        assert result["expiredCount"] == 1
        assert result["failedCount"] == 0
        assert result["results"] == [{"orderCode": order.order_code, "outcome": "expired"}]
        assert order.status == "expired"
        assert order.payment_status == "deposit_pending"
        assert order.expired_at is not None
        assert stock_of(db_session, deposit_product.id) == 3

        expired_rows = (
            db_session.query(OrderStatusHistory)
            .filter_by(order_id=order.id, to_status="expired")
            .all()
        )
        assert len(expired_rows) == 1
        assert expired_rows[0].from_status == "pending"
        assert expired_rows[0].note == SYSTEM_EXPIRY_NOTE
        assert expired_rows[0].changed_by_user_id is None

    def test_second_sweep_is_a_no_op(self, db_session, place_deposit_order, deposit_product):
        order = place_deposit_order().order
        now = after_deadline()
        expiry_service.sweep(now=now)

        again = expiry_service.sweep(now=now)

        assert again == {"expiredCount": 0, "failedCount": 0, "skippedCount": 0, "results": []}
        assert stock_of(db_session, deposit_product.id) == 3
        assert db_session.query(OrderStatusHistory).filter_by(order_id=order.id).count() == 2

    def test_not_yet_due_is_left_alone(self, db_session, place_deposit_order):
        order = place_deposit_order().order

        result = expiry_service.sweep(now=utcnow() + timedelta(hours=23))

        assert result["expiredCount"] == 0
        assert order.status == "pending"

    def test_paid_deposit_is_never_expired(self, db_session, place_deposit_order):
        order = place_deposit_order().order
        order_lifecycle_service.mark_deposit_received(order)

        result = expiry_service.sweep(now=after_deadline())

        assert result["expiredCount"] == 0
        assert order.status == "deposited"

    def test_standard_orders_are_ignored(self, db_session, make_product, place_order):
        order = place_order(make_product()).order

        result = expiry_service.sweep(now=utcnow() + timedelta(days=30))

        assert result["results"] == []
        assert order.status == "pending"

    def test_expire_order_twice_restocks_once(self, db_session, place_deposit_order, deposit_product):
        order = place_deposit_order().order
        now = after_deadline()

        first = order_lifecycle_service.expire_order(order, now=now)
        second = order_lifecycle_service.expire_order(order, now=now)

        assert first.won and first.restocked
        assert not second.won
        assert stock_of(db_session, deposit_product.id) == 3

    @pytest.mark.parametrize("admin_path", [
        ("confirmed",),
        ("confirmed", "processing"),
        ("confirmed", "processing", "shipped"),
    ])
    def test_unpaid_reservation_advanced_by_admin_still_expires(
        self, db_session, place_deposit_order, deposit_product, admin_user, admin_path
    ):
        order = place_deposit_order().order
        for status in admin_path:
            order_lifecycle_service.admin_update_status(order, status, note=None, admin_user_id=admin_user.id)
        assert order.payment_status == "deposit_pending"

        result = expiry_service.sweep(now=after_deadline())

        assert result["expiredCount"] == 1
        assert result["skippedCount"] == 0
        assert order.status == "expired"
        assert stock_of(db_session, deposit_product.id) == 3
        row = (
            db_session.query(OrderStatusHistory)
            .filter_by(order_id=order.id, to_status="expired")
            .one()
        )
        assert row.from_status == admin_path[-1]

    def test_limit_caps_the_batch(self, db_session, place_deposit_order):
        place_deposit_order()
        place_deposit_order()

        result = expiry_service.sweep(now=after_deadline(), limit=1)

        assert result["expiredCount"] == 1
        assert expiry_service.sweep(now=after_deadline())["expiredCount"] == 1


class TestSweepFailures:
    def test_restock_failure_counts_as_failed(self, db_session, place_deposit_order, monkeypatch):
        order = place_deposit_order().order
        monkeypatch.setattr(inventory_service, "restore_order_inventory", lambda o: False)

        result = expiry_service.sweep(now=after_deadline())

        assert result["failedCount"] == 1
        assert result["expiredCount"] == 0
        assert result["results"][0]["outcome"] == "restock_failed"
        assert order.status == "expired"

    def test_one_failure_does_not_stop_the_batch(self, db_session, place_deposit_order, monkeypatch):
        broken = place_deposit_order().order
        healthy = place_deposit_order().order
        broken_id = broken.id
        real_expire = order_lifecycle_service.expire_order

        def flaky_expire(order, *, now=None):
            if order.id == broken_id:
                raise RuntimeError("database went away")
            return real_expire(order, now=now)

        monkeypatch.setattr(order_lifecycle_service, "expire_order", flaky_expire)

        result = expiry_service.sweep(now=after_deadline())

        assert result["failedCount"] == 1
        assert result["expiredCount"] == 1
        assert healthy.status == "expired"
        assert broken.status == "pending"
        assert {"orderCode": broken.order_code, "outcome": "error"} in result["results"]

    def test_cron_response_hides_exception_text(self, client, db_session, place_deposit_order, monkeypatch):
        place_deposit_order()

        def failing_expire(order, *, now=None):
            raise RuntimeError("password=hunter2 host=db.internal")

        monkeypatch.setattr(order_lifecycle_service, "expire_order", failing_expire)
        monkeypatch.setattr(expiry_service, "utcnow", after_deadline)

        response = client.post("/api/cron/expire-deposits", headers=CRON_HEADERS)

        assert "hunter2" not in response.get_data(as_text=True)
        body = response.get_json()
        assert body["failedCount"] == 1
        assert body["results"][0]["outcome"] == "error"
        assert set(body["results"][0]) == {"orderCode", "outcome"}


class TestCronRoute:
    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer wrong-secret"},
        {"Authorization": "test-cron-secret"},
    ])
    def test_requires_secret(self, client, db_session, headers):
        response = client.post("/api/cron/expire-deposits", headers=headers)
        assert response.status_code == 401
        assert response.get_json() == {"error": "Unauthorized"}

    def test_runs_sweep(self, client, db_session, place_deposit_order, deposit_product):
        order = place_deposit_order().order
        order.deposit_due_at = utcnow() - timedelta(minutes=5)
        db_session.commit()

        response = client.post("/api/cron/expire-deposits", headers=CRON_HEADERS)

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["expiredCount"] == 1
        assert stock_of(db_session, deposit_product.id) == 3

    def test_empty_sweep(self, client, db_session):
        response = client.post("/api/cron/expire-deposits", headers=CRON_HEADERS)
        assert response.status_code == 200
        assert response.get_json()["expiredCount"] == 0
