# Overview: Applies verified payment gateway events to orders, once per event id.

"""
Webhook Processing

DELIVERY: at-least-once and possibly out of order. Idempotency is keyed on
the gateway event id, never on the order id:

1. A WebhookEvent row for the event id is added to the session before the
   state change, so the lifecycle commit persists both together.
2. A redelivered event finds its row and is acknowledged without effect.
3. Two concurrent deliveries of one event race on the unique event_id;
   the loser's insert fails and it reports a duplicate.

Order lookup: metadata order_id first, then the gateway ids stored in
order_payments / payment_refunds.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderPayment, PaymentRefund, WebhookEvent
from ..time_utils import utcnow
from . import order_lifecycle_service, refund_service
from .payment_gateway import (
    ChargeRefunded,
    CheckoutSessionCompleted,
    GatewayEvent,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    RefundUpdated,
    UnhandledEvent,
)


EVENT_TYPES = {
    CheckoutSessionCompleted: "checkout.session.completed",
    PaymentIntentSucceeded: "payment_intent.succeeded",
    PaymentIntentFailed: "payment_intent.payment_failed",
    ChargeRefunded: "charge.refunded",
    RefundUpdated: "refund.updated",
}


def _event_type(event: GatewayEvent) -> str:
    if isinstance(event, UnhandledEvent):
        return event.event_type
    return EVENT_TYPES[type(event)]


def is_processed(event_id: str) -> bool:
    return db.session.query(WebhookEvent.id).filter_by(event_id=event_id).first() is not None


def _claim(event: GatewayEvent, order_id: int | None) -> None:
    db.session.add(WebhookEvent(
        event_id=event.event_id,
        event_type=_event_type(event),
        order_id=order_id,
        outcome="processing",
        processed_at=utcnow(),
    ))


def _finish(event: GatewayEvent, order_id: int | None, outcome: str) -> dict:
    """
    Persist the final outcome, re-adding the claim if a rollback dropped it.

    A row that already carries a final outcome was committed by a
    concurrent delivery of the same event; it is left as is.
    """
    try:
        row = db.session.query(WebhookEvent).filter_by(event_id=event.event_id).first()
        if row is not None and row.outcome != "processing":
            db.session.rollback()
            current_app.logger.info("Webhook event %s finished by a concurrent delivery", event.event_id)
            return {"received": True, "duplicate": True}
        if row is None:
            _claim(event, order_id)
            db.session.flush()
            row = db.session.query(WebhookEvent).filter_by(event_id=event.event_id).one()
        row.outcome = outcome
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return {"received": True, "duplicate": True}
    return {"received": True, "outcome": outcome}


def _find_order(*, order_id=None, payment_intent_id=None, session_id=None, charge_id=None) -> Order | None:
    if order_id is not None:
        order = db.session.get(Order, order_id)
        if order is not None:
            return order
    q = db.session.query(OrderPayment)
    payment = None
    if payment_intent_id:
        payment = q.filter_by(payment_intent_id=payment_intent_id).first()
    if payment is None and session_id:
        payment = q.filter_by(checkout_session_id=session_id).first()
    if payment is None and charge_id:
        payment = q.filter_by(charge_id=charge_id).first()
    return db.session.get(Order, payment.order_id) if payment else None


def upsert_payment_record(order: Order, **fields) -> OrderPayment:
    """Create or update the order's gateway reference row. Does not commit."""
    payment = db.session.query(OrderPayment).filter_by(order_id=order.id).first()
    if payment is None:
        payment = OrderPayment(order_id=order.id, provider="stripe",
                               currency=current_app.config.get("STRIPE_CURRENCY", "vnd"))
        db.session.add(payment)
    for key, value in fields.items():
        if value is not None:
            setattr(payment, key, value)
    return payment


def handle_event(event: GatewayEvent) -> dict:
    """Apply one verified event. Returns the acknowledgement body."""
    if is_processed(event.event_id):
        current_app.logger.info("Webhook event %s already processed", event.event_id)
        return {"received": True, "duplicate": True}

    if isinstance(event, (CheckoutSessionCompleted, PaymentIntentSucceeded)):
        return _handle_payment_captured(event)
    if isinstance(event, PaymentIntentFailed):
        return _handle_payment_failed(event)
    if isinstance(event, (ChargeRefunded, RefundUpdated)):
        return _handle_refund(event)
    if isinstance(event, UnhandledEvent):
        current_app.logger.warning("Unhandled webhook event type %s (%s)", event.event_type, event.event_id)
        return _finish(event, None, "unhandled")
    raise TypeError(f"Unknown gateway event variant: {type(event).__name__}")


def _handle_payment_captured(event) -> dict:
    if isinstance(event, CheckoutSessionCompleted):
        if event.payment_status not in (None, "paid", "no_payment_required"):
            # Async payment methods complete the session before money moves
            return _finish(event, event.order_id, "awaiting_payment")
        order = _find_order(order_id=event.order_id, session_id=event.session_id,
                            payment_intent_id=event.payment_intent_id)
        fields = {
            "checkout_session_id": event.session_id,
            "payment_intent_id": event.payment_intent_id,
            "amount_captured": event.amount_total or None,
        }
    else:
        order = _find_order(order_id=event.order_id, payment_intent_id=event.payment_intent_id)
        fields = {
            "payment_intent_id": event.payment_intent_id,
            "charge_id": event.charge_id,
            "amount_captured": event.amount_received or None,
        }

    if order is None:
        current_app.logger.warning("Webhook %s references no known order", event.event_id)
        return _finish(event, None, "order_not_found")

    order_id = order.id
    payment = upsert_payment_record(order, **fields)
    if payment.captured_at is None:
        payment.captured_at = utcnow()
    _claim(event, order_id)

    outcome = order_lifecycle_service.record_payment_captured(order)
    return _finish(event, order_id, outcome)


def _handle_payment_failed(event: PaymentIntentFailed) -> dict:
    order = _find_order(order_id=event.order_id, payment_intent_id=event.payment_intent_id)
    if order is None:
        return _finish(event, None, "order_not_found")
    order_id = order.id
    current_app.logger.info(
        "Payment failed for order %s: %s", order.order_code, event.failure_message or "unknown reason"
    )
    _claim(event, order_id)
    outcome = order_lifecycle_service.record_payment_failed(order)
    return _finish(event, order_id, outcome)


def _handle_refund(event) -> dict:
    if isinstance(event, RefundUpdated):
        snapshots = (event.refund,)
        charge_id, payment_intent_id = event.refund.charge_id, event.refund.payment_intent_id
        reported_total = 0
    else:
        snapshots = event.refunds
        charge_id, payment_intent_id = event.charge_id, event.payment_intent_id
        reported_total = event.amount_refunded

    order = _find_order(payment_intent_id=payment_intent_id, charge_id=charge_id)
    if order is None:
        for snapshot in snapshots:
            known = db.session.query(PaymentRefund).filter_by(provider_refund_id=snapshot.refund_id).first()
            if known is not None:
                order = db.session.get(Order, known.order_id)
                break
    if order is None:
        current_app.logger.warning("Refund webhook %s references no known order", event.event_id)
        return _finish(event, None, "order_not_found")

    order_id = order.id
    if charge_id:
        upsert_payment_record(order, charge_id=charge_id)
    _claim(event, order_id)

    newly_succeeded = []
    for snapshot in snapshots:
        refund, became_succeeded = refund_service.upsert_refund(order, snapshot)
        if became_succeeded:
            newly_succeeded.append(refund)

    target = refund_service.reconcile_refund_state(order, reported_refunded_total=reported_total)
    result = _finish(event, order_id, f"payment_{target}")

    for refund in newly_succeeded:
        refund_service.notify_refund(order, refund)
    return result
