# Overview: Pytest coverage for payment gateway webhooks and checkout sessions.

"""
Webhook Tests

SECURITY TESTS: unsigned payloads change nothing.
IDEMPOTENCY TESTS: a redelivered event id is acknowledged without effect.
"""

import json

import pytest

from tubeshop.models import OrderPayment, OrderStatusHistory, WebhookEvent
from tubeshop.services import order_lifecycle_service, webhook_service
from tubeshop.services.payment_gateway import (
    ChargeRefunded,
    CheckoutSessionCompleted,
    PaymentIntentFailed,
    UnhandledEvent,
    parse_event,
)
from tubeshop.time_utils import utcnow


def pi_succeeded(order, event_id="evt_pi_ok", amount=None):
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": f"pi_{order.id}",
            "amount_received": amount if amount is not None else order.total,
            "latest_charge": f"ch_{order.id}",
            "metadata": {"order_id": str(order.id), "order_code": order.order_code},
        }},
    }


def pi_failed(order, event_id="evt_pi_failed"):
    return {
        "id": event_id,
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": f"pi_{order.id}",
            "last_payment_error": {"message": "Your card was declined."},
            "metadata": {"order_id": str(order.id)},
        }},
    }


def session_completed(order, event_id="evt_cs_ok", payment_status="paid"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": f"cs_{order.id}",
            "client_reference_id": order.order_code,
            "payment_intent": f"pi_{order.id}",
            "payment_status": payment_status,
            "amount_total": order.total,
            "metadata": {"order_id": str(order.id), "order_code": order.order_code},
        }},
    }


@pytest.fixture
def deliver(client):
    def _deliver(event, signature="valid"):
        return client.post(
            "/api/stripe/webhook",
            data=json.dumps(event),
            headers={"Stripe-Signature": signature},
            content_type="application/json",
        )

    return _deliver


@pytest.fixture
def order(make_product, place_order):
    return place_order(make_product(price=3_000_000)).order


def history_count(db_session, order):
    return db_session.query(OrderStatusHistory).filter_by(order_id=order.id).count()


# =============================================================================
# EVENT PARSING
# =============================================================================

class TestParseEvent:
    def test_checkout_session_completed(self):
        event = parse_event({
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1",
                "client_reference_id": "ORD-20260101-000001",
                "payment_intent": {"id": "pi_1"},
                "payment_status": "paid",
                "amount_total": 3000000,
                "metadata": {"order_id": "7"},
            }},
        })
        assert event == CheckoutSessionCompleted(
            event_id="evt_1",
            session_id="cs_1",
            order_id=7,
            order_code="ORD-20260101-000001",
            payment_intent_id="pi_1",
            payment_status="paid",
            amount_total=3000000,
        )

    def test_charge_refunded_carries_refunds(self):
        event = parse_event({
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {
                "id": "ch_1",
                "payment_intent": "pi_1",
                "amount_refunded": 500,
                "refunds": {"data": [{"id": "re_1", "amount": 500, "status": "succeeded", "charge": "ch_1"}]},
            }},
        })
        assert isinstance(event, ChargeRefunded)
        assert event.amount_refunded == 500
        assert event.refunds[0].refund_id == "re_1"
        assert event.refunds[0].currency == "vnd"

    def test_bad_metadata_order_id_is_ignored(self):
        event = parse_event({
            "id": "evt_3",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_1", "metadata": {"order_id": "abc"}}},
        })
        assert isinstance(event, PaymentIntentFailed)
        assert event.order_id is None

    def test_unknown_type(self):
        event = parse_event({"id": "evt_4", "type": "customer.created", "data": {"object": {}}})
        assert event == UnhandledEvent(event_id="evt_4", event_type="customer.created")


# =============================================================================
# SIGNATURE
# =============================================================================

class TestSignature:
    @pytest.mark.parametrize("signature", ["", "t=1,v1=forged"])
    def test_unsigned_payload_changes_nothing(self, db_session, deliver, order, signature):
        response = deliver(pi_succeeded(order), signature=signature)

        assert response.status_code == 400
        db_session.refresh(order)
        assert order.payment_status == "pending"
        assert db_session.query(WebhookEvent).count() == 0

    def test_event_without_id_is_rejected(self, db_session, deliver):
        response = deliver({"type": "payment_intent.succeeded", "data": {"object": {}}})
        assert response.status_code == 400


# =============================================================================
# PAYMENT EVENTS
# =============================================================================

class TestPaymentEvents:
    def test_payment_confirms_order(self, db_session, deliver, order):
        response = deliver(pi_succeeded(order))

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "outcome": "payment_recorded"}
        db_session.refresh(order)
        assert order.status == "confirmed"
        assert order.payment_status == "paid"

        payment = db_session.query(OrderPayment).filter_by(order_id=order.id).one()
        assert payment.payment_intent_id == f"pi_{order.id}"
        assert payment.charge_id == f"ch_{order.id}"
        assert payment.amount_captured == 3_000_000
        assert payment.captured_at is not None

    def test_redelivery_is_acknowledged_without_effect(self, db_session, deliver, order):
        deliver(pi_succeeded(order))
        before = history_count(db_session, order)

        response = deliver(pi_succeeded(order))

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "duplicate": True}
        assert history_count(db_session, order) == before
        assert db_session.query(WebhookEvent).count() == 1

    def test_concurrent_delivery_keeps_the_committed_outcome(self, db_session, deliver, monkeypatch):
        # The other delivery committed between our duplicate check and our finish
        db_session.add(WebhookEvent(
            event_id="evt_race",
            event_type="customer.created",
            outcome="payment_recorded",
            processed_at=utcnow(),
        ))
        db_session.commit()
        monkeypatch.setattr(webhook_service, "is_processed", lambda event_id: False)

        response = deliver({"id": "evt_race", "type": "customer.created", "data": {"object": {}}})

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "duplicate": True}
        db_session.expire_all()
        row = db_session.query(WebhookEvent).filter_by(event_id="evt_race").one()
        assert row.outcome == "payment_recorded"

    def test_second_event_for_same_payment_is_already_recorded(self, db_session, deliver, order):
        deliver(pi_succeeded(order))

        response = deliver(session_completed(order))

        assert response.get_json()["outcome"] == "already_recorded"
        assert history_count(db_session, order) == 2
        assert db_session.query(WebhookEvent).count() == 2

    def test_session_without_payment_waits(self, db_session, deliver, order):
        response = deliver(session_completed(order, payment_status="unpaid"))

        assert response.get_json()["outcome"] == "awaiting_payment"
        db_session.refresh(order)
        assert order.payment_status == "pending"

    def test_failed_then_succeeded(self, db_session, deliver, order):
        failed = deliver(pi_failed(order))
        assert failed.get_json()["outcome"] == "payment_failed"
        db_session.refresh(order)
        assert order.payment_status == "failed"
        assert order.status == "pending"

        deliver(pi_succeeded(order, event_id="evt_pi_retry"))
        db_session.refresh(order)
        assert order.payment_status == "paid"
        assert order.status == "confirmed"

    def test_failed_deposit_payment_keeps_reservation_open(self, db_session, deliver, place_deposit_order):
        order = place_deposit_order().order

        response = deliver(pi_failed(order))

        assert response.get_json()["outcome"] == "deposit_attempt_failed"
        db_session.refresh(order)
        assert order.payment_status == "deposit_pending"
        assert order.status == "pending"

    def test_deposit_payment_marks_deposited(self, db_session, deliver, place_deposit_order):
        order = place_deposit_order().order

        deliver(pi_succeeded(order, amount=order.deposit_amount))

        db_session.refresh(order)
        assert order.status == "deposited"
        assert order.payment_status == "deposited"
        assert order.deposit_received_at is not None

    def test_payment_for_cancelled_order_does_not_reopen_it(self, db_session, deliver, order):
        order_lifecycle_service.cancel_by_customer(order, "Changed my mind")

        response = deliver(pi_succeeded(order))

        assert response.get_json()["outcome"] == "order_not_payable"
        db_session.refresh(order)
        assert order.status == "cancelled"

    def test_unknown_order(self, db_session, deliver, order):
        event = pi_succeeded(order)
        event["data"]["object"]["metadata"] = {"order_id": "999999"}
        event["data"]["object"]["id"] = "pi_unknown"

        response = deliver(event)

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "order_not_found"

    def test_unhandled_type_is_logged_and_acknowledged(self, db_session, deliver):
        response = deliver({"id": "evt_misc", "type": "customer.created", "data": {"object": {}}})

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "unhandled"
        row = db_session.query(WebhookEvent).filter_by(event_id="evt_misc").one()
        assert row.event_type == "customer.created"


class TestChargeRefundedEvent:
    def test_dashboard_refund_is_recorded(self, db_session, deliver, order):
        deliver(pi_succeeded(order))

        response = deliver({
            "id": "evt_charge_refunded",
            "type": "charge.refunded",
            "data": {"object": {
                "id": f"ch_{order.id}",
                "payment_intent": f"pi_{order.id}",
                "amount_refunded": 3_000_000,
                "refunds": {"data": [{
                    "id": "re_dashboard",
                    "amount": 3_000_000,
                    "currency": "vnd",
                    "status": "succeeded",
                    "charge": f"ch_{order.id}",
                }]},
            }},
        })

        assert response.get_json()["outcome"] == "payment_refunded"
        db_session.refresh(order)
        assert order.payment_status == "refunded"
        assert order.status == "refunded"


# =============================================================================
# CHECKOUT SESSION
# =============================================================================

class TestCheckoutSession:
    def test_creates_session_for_order_items(self, client, db_session, order, gateway):
        response = client.post("/api/stripe/create-checkout-session", json={"orderCode": order.order_code})

        assert response.status_code == 200
        body = response.get_json()
        assert body["sessionId"] == "cs_test_1"
        assert body["url"].startswith("https://")
        [call] = gateway.sessions
        assert call["order_code"] == order.order_code
        assert call["line_items"] == [{"name": order.items[0].product_name, "unit_amount": 3_000_000, "quantity": 1}]
        assert order.order_code in call["cancel_url"]

        payment = db_session.query(OrderPayment).filter_by(order_id=order.id).one()
        assert payment.checkout_session_id == "cs_test_1"

    def test_deposit_order_charges_only_the_deposit(self, client, db_session, place_deposit_order, gateway):
        order = place_deposit_order().order

        client.post("/api/stripe/create-checkout-session", json={"orderCode": order.order_code})

        assert gateway.sessions[0]["line_items"] == [{
            "name": f"Deposit for order {order.order_code}",
            "unit_amount": 3_000_000,
            "quantity": 1,
        }]

    def test_paid_order_is_rejected(self, client, db_session, deliver, order, gateway):
        deliver(pi_succeeded(order))

        response = client.post("/api/stripe/create-checkout-session", json={"orderCode": order.order_code})

        assert response.status_code == 400
        assert response.get_json()["code"] == "already_paid"
        assert gateway.sessions == []

    def test_cancelled_order_is_rejected(self, client, db_session, order):
        order_lifecycle_service.cancel_by_customer(order, "Changed my mind")

        response = client.post("/api/stripe/create-checkout-session", json={"orderCode": order.order_code})

        assert response.status_code == 400
        assert response.get_json()["code"] == "order_closed"

    @pytest.mark.parametrize("body, status", [({}, 400), ({"orderCode": "ORD-19990101-000001"}, 404)])
    def test_missing_or_unknown_order(self, client, db_session, body, status):
        response = client.post("/api/stripe/create-checkout-session", json=body)
        assert response.status_code == status


class TestSessionStatus:
    def test_reports_gateway_view_without_touching_order(self, client, db_session, order, gateway):
        client.post("/api/stripe/create-checkout-session", json={"orderCode": order.order_code})
        gateway.session_states["cs_test_1"] = ("complete", "paid")
        before = history_count(db_session, order)

        response = client.get("/api/stripe/session-status?session_id=cs_test_1")

        assert response.status_code == 200
        assert response.get_json() == {
            "sessionId": "cs_test_1",
            "status": "complete",
            "paymentStatus": "paid",
            "orderCode": order.order_code,
        }
        db_session.refresh(order)
        assert order.payment_status == "pending"
        assert order.status == "pending"
        assert history_count(db_session, order) == before

    def test_open_session(self, client, db_session, order, gateway):
        client.post("/api/stripe/create-checkout-session", json={"orderCode": order.order_code})

        body = client.get("/api/stripe/session-status?session_id=cs_test_1").get_json()

        assert body["status"] == "open"
        assert body["paymentStatus"] == "unpaid"

    @pytest.mark.parametrize("query, status", [("", 400), ("?session_id=%20", 400), ("?session_id=cs_nope", 404)])
    def test_missing_or_unknown_session(self, client, db_session, gateway, query, status):
        response = client.get(f"/api/stripe/session-status{query}")
        assert response.status_code == status
