# Overview: Pytest coverage for admin refunds and webhook refund reconciliation.

"""
Refund Tests

A refund request never exceeds what is left of the captured amount:
larger requests are clamped, and a fully refunded order rejects further
requests. Final refund state only comes from the gateway webhook.
"""

import pytest

from tubeshop.errors import InvalidStateError, UpstreamFailure, ValidationError
from tubeshop.models import PaymentRefund, Product
from tubeshop.services import refund_service, webhook_service
from tubeshop.services.payment_gateway import RefundSnapshot, RefundUpdated


@pytest.fixture
def paid_order(make_product, place_order, mark_paid):
    product = make_product(price=3_000_000, stock_quantity=5)
    order = place_order(product).order
    return mark_paid(order)


def refund_succeeded(order, refund_id, amount, event_id):
    return webhook_service.handle_event(RefundUpdated(
        event_id=event_id,
        refund=RefundSnapshot(
            refund_id=refund_id,
            amount=amount,
            currency="vnd",
            status="succeeded",
            charge_id=f"ch_test_{order.id}",
            payment_intent_id=f"pi_test_{order.id}",
        ),
    ))


class TestRequestRefund:
    def test_over_request_is_clamped(self, db_session, paid_order, admin_user, gateway):
        result = refund_service.request_refund(
            paid_order, amount=5_000_000, reason="requested_by_customer", admin_user_id=admin_user.id
        )

        assert result["amount"] == 3_000_000
        assert result["requested_amount"] == 5_000_000
        assert result["clamped"] is True
        assert result["remaining_refundable"] == 0
        assert gateway.refunds[0]["amount"] == 3_000_000
        assert gateway.refunds[0]["charge_id"] == f"ch_test_{paid_order.id}"

        db_session.refresh(paid_order)
        assert paid_order.payment_status == "refund_pending"
        refund = db_session.query(PaymentRefund).one()
        assert refund.status == "pending"
        assert refund.requested_by_user_id == admin_user.id

    def test_fully_refunded_order_rejects_more(self, db_session, paid_order, gateway):
        refund_service.request_refund(paid_order, amount=5_000_000)

        with pytest.raises(InvalidStateError) as exc_info:
            refund_service.request_refund(paid_order, amount=1_000)

        assert exc_info.value.message == "Order is already fully refunded"
        assert len(gateway.refunds) == 1

    def test_omitted_amount_refunds_remaining(self, db_session, paid_order):
        result = refund_service.request_refund(paid_order)
        assert result["amount"] == 3_000_000
        assert result["clamped"] is False

    @pytest.mark.parametrize("amount", [0, -5, 1.5, "1000", True])
    def test_rejects_malformed_amount(self, db_session, paid_order, amount):
        with pytest.raises(ValidationError):
            refund_service.request_refund(paid_order, amount=amount)

    def test_unpaid_order_is_not_refundable(self, db_session, make_product, place_order):
        order = place_order(make_product()).order
        with pytest.raises(InvalidStateError) as exc_info:
            refund_service.request_refund(order)
        assert exc_info.value.code == "not_refundable"

    def test_deposit_order_refunds_the_deposit(self, db_session, place_deposit_order, mark_paid, gateway):
        order = mark_paid(place_deposit_order().order)
        assert order.payment_status == "deposited"

        result = refund_service.request_refund(order)

        assert result["amount"] == 3_000_000
        assert gateway.refunds[0]["amount"] == 3_000_000

    def test_gateway_failure_changes_nothing(self, db_session, paid_order, gateway):
        gateway.fail_refunds = True

        with pytest.raises(UpstreamFailure):
            refund_service.request_refund(paid_order, amount=1_000_000)

        db_session.refresh(paid_order)
        assert paid_order.payment_status == "paid"
        assert db_session.query(PaymentRefund).count() == 0

    def test_restock_cancels_and_returns_stock(self, db_session, paid_order):
        product_id = paid_order.items[0].product_id

        refund_service.request_refund(paid_order, restock=True, reason="requested_by_customer")

        db_session.expire_all()
        assert paid_order.status == "cancelled"
        assert db_session.get(Product, product_id).stock_quantity == 5
        assert db_session.query(PaymentRefund).one().restock is True


class TestRefundReconciliation:
    def test_full_refund_webhook_marks_refunded(self, db_session, paid_order, mailer):
        result = refund_service.request_refund(paid_order, amount=5_000_000)

        ack = refund_succeeded(paid_order, result["refund"]["provider_refund_id"], 3_000_000, "evt_ref_1")

        assert ack == {"received": True, "outcome": "payment_refunded"}
        db_session.refresh(paid_order)
        assert paid_order.payment_status == "refunded"
        assert paid_order.status == "refunded"
        assert "A refund of 3.000.000 VND" in mailer.messages[-1]["text"]

    def test_partial_refund_then_remainder(self, db_session, paid_order, mailer):
        first = refund_service.request_refund(paid_order, amount=1_000_000)
        refund_succeeded(paid_order, first["refund"]["provider_refund_id"], 1_000_000, "evt_ref_1")

        db_session.refresh(paid_order)
        assert paid_order.payment_status == "partially_refunded"
        assert paid_order.status == "confirmed"
        assert "partial refund" in mailer.messages[-1]["text"]

        second = refund_service.request_refund(paid_order, amount=9_000_000)
        assert second["amount"] == 2_000_000
        assert second["clamped"] is True

    def test_refund_summary(self, db_session, paid_order):
        first = refund_service.request_refund(paid_order, amount=1_000_000)
        refund_succeeded(paid_order, first["refund"]["provider_refund_id"], 1_000_000, "evt_ref_1")
        refund_service.request_refund(paid_order, amount=500_000)

        assert refund_service.refund_summary(paid_order) == {
            "refundable_base": 3_000_000,
            "refunded_amount": 1_000_000,
            "pending_amount": 500_000,
            "remaining_refundable": 1_500_000,
        }

    def test_failed_refund_restores_paid_state(self, db_session, paid_order):
        result = refund_service.request_refund(paid_order, amount=1_000_000)

        webhook_service.handle_event(RefundUpdated(
            event_id="evt_ref_failed",
            refund=RefundSnapshot(
                refund_id=result["refund"]["provider_refund_id"],
                amount=1_000_000,
                currency="vnd",
                status="failed",
                charge_id=f"ch_test_{paid_order.id}",
            ),
        ))

        db_session.refresh(paid_order)
        assert paid_order.payment_status == "paid"
        assert refund_service.refund_summary(paid_order)["remaining_refundable"] == 3_000_000


class TestRefundRoute:
    def test_admin_refund_is_clamped(self, client, db_session, paid_order, admin_headers):
        response = client.post(
            f"/api/admin/orders/{paid_order.order_code}/refund",
            json={"amount": 5_000_000, "reason": "requested_by_customer"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["amount"] == 3_000_000
        assert body["clamped"] is True

        again = client.post(
            f"/api/admin/orders/{paid_order.order_code}/refund",
            json={"amount": 1_000},
            headers=admin_headers,
        )
        assert again.status_code == 400
        assert again.get_json() == {"error": "Order is already fully refunded", "code": "fully_refunded"}

    def test_restock_must_be_boolean(self, client, db_session, paid_order, admin_headers):
        response = client.post(
            f"/api/admin/orders/{paid_order.order_code}/refund",
            json={"restock": "yes"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_gateway_error_is_generic_500(self, client, db_session, paid_order, admin_headers, gateway):
        gateway.fail_refunds = True
        response = client.post(
            f"/api/admin/orders/{paid_order.order_code}/refund",
            json={},
            headers=admin_headers,
        )
        assert response.status_code == 500
        assert response.get_json() == {"error": "Internal server error"}

    def test_customer_cannot_refund(self, client, db_session, paid_order, customer_headers):
        response = client.post(
            f"/api/admin/orders/{paid_order.order_code}/refund",
            json={},
            headers=customer_headers,
        )
        assert response.status_code == 403
