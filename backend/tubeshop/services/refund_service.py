# Overview: Admin refund requests and webhook-driven refund reconciliation.

"""
Refund Service

WHY: Refunds are issued by an admin but only the gateway knows when money
actually moved. A request therefore ends in payment_status=refund_pending;
the final refunded / partially_refunded state comes from a webhook.

REFUNDABLE BASE:
- deposit reservation: the captured deposit
- standard order: the order total

ACCUMULATOR: PaymentRefund rows with status pending or succeeded count
against the base, so a second request cannot over-refund while the first
is still in flight.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..errors import InvalidStateError
from ..extensions import db
from ..models import Order, OrderPayment, PaymentRefund
from ..validation import parse_positive_int
from . import email_service, order_lifecycle_service, order_repository
from .concurrency import lock_for_update
from .payment_gateway import RefundSnapshot, get_payment_gateway


REFUNDABLE_PAYMENT_STATUSES = ("paid", "deposited", "partially_refunded")
OPEN_REFUND_STATUSES = ("pending", "succeeded")
REFUND_STATUSES = ("pending", "succeeded", "failed", "canceled", "requires_action")


def _sum_refunds(order_id: int, statuses) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(PaymentRefund.amount), 0))
        .filter(PaymentRefund.order_id == order_id, PaymentRefund.status.in_(list(statuses)))
        .scalar()
    )
    return int(total or 0)


def refund_summary(order: Order) -> dict:
    base = order.refundable_base
    committed = _sum_refunds(order.id, OPEN_REFUND_STATUSES)
    return {
        "refundable_base": base,
        "refunded_amount": _sum_refunds(order.id, ("succeeded",)),
        "pending_amount": _sum_refunds(order.id, ("pending",)),
        "remaining_refundable": max(base - committed, 0),
    }


def request_refund(
    order: Order,
    *,
    amount=None,
    reason: str | None = None,
    restock: bool = False,
    note: str | None = None,
    admin_user_id: int | None = None,
) -> dict:
    """
    Issue a gateway refund for part or all of the remaining balance.

    A requested amount above the remaining balance is clamped to it; the
    excess never reaches the gateway. With restock=True the order is
    cancelled first, which returns its stock once.

    Raises:
        InvalidStateError: nothing left to refund, or payment not refundable
        ValidationError: malformed amount
        UpstreamFailure: gateway rejected the refund
    """
    order = lock_for_update(db.session.query(Order).filter_by(id=order.id)).one()

    base = order.refundable_base
    already = _sum_refunds(order.id, OPEN_REFUND_STATUSES)
    remaining = base - already
    if remaining <= 0:
        raise InvalidStateError("Order is already fully refunded", code="fully_refunded", status_code=400)

    if order.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
        raise InvalidStateError(
            f"Order with payment status {order.payment_status} cannot be refunded",
            code="not_refundable",
            status_code=400,
        )

    if amount is None:
        requested = remaining
    else:
        requested = parse_positive_int(amount, "amount")
    refund_amount = min(requested, remaining)
    clamped = refund_amount != requested
    if clamped:
        current_app.logger.info(
            "Refund for order %s clamped from %s to %s", order.order_code, requested, refund_amount
        )

    payment = db.session.query(OrderPayment).filter_by(order_id=order.id).first()
    if payment is None or not (payment.charge_id or payment.payment_intent_id):
        raise InvalidStateError(
            "No gateway payment is recorded for this order", code="no_gateway_payment", status_code=400
        )
    charge_id, payment_intent_id, currency = payment.charge_id, payment.payment_intent_id, payment.currency
    order_id, order_code = order.id, order.order_code

    # Release the row lock before the restock transition and the gateway call
    db.session.commit()

    if restock and order.status not in order_lifecycle_service.RESTOCK_STATUSES:
        outcome = order_lifecycle_service.apply_transition(
            order,
            "cancelled",
            note=note or "Cancelled for refund",
            changed_by_user_id=admin_user_id,
            values={"cancel_reason": reason or "Refunded"},
        )
        if not outcome.won:
            raise InvalidStateError("Order status changed concurrently", code="concurrent_update")

    snapshot = get_payment_gateway().create_refund(
        charge_id=charge_id,
        payment_intent_id=payment_intent_id,
        amount=refund_amount,
        reason=reason,
        metadata={"order_id": str(order_id), "order_code": order_code},
    )

    refund = PaymentRefund(
        order_id=order_id,
        provider_refund_id=snapshot.refund_id,
        amount=refund_amount,
        currency=currency,
        # Final status arrives by webhook
        status="pending",
        reason=reason,
        note=note,
        restock=bool(restock),
        requested_by_user_id=admin_user_id,
    )
    db.session.add(refund)

    order = db.session.get(Order, order_id)
    if not order_repository.set_payment_status(
        order, "refund_pending", expected=REFUNDABLE_PAYMENT_STATUSES + ("refund_pending",)
    ):
        current_app.logger.error(
            "Refund %s issued for order %s but payment status was %s",
            snapshot.refund_id, order_code, order.payment_status,
        )
    db.session.commit()

    current_app.logger.info(
        "Refund %s requested for order %s: %s", snapshot.refund_id, order_code, refund_amount
    )
    return {
        "refund": refund.to_dict(),
        "amount": refund_amount,
        "requested_amount": requested,
        "clamped": clamped,
        "remaining_refundable": remaining - refund_amount,
    }


# =============================================================================
# WEBHOOK RECONCILIATION
# =============================================================================

def upsert_refund(order: Order, snapshot: RefundSnapshot) -> tuple[PaymentRefund, bool]:
    """
    Record the gateway's view of a refund. Does not commit.

    Returns (row, became_succeeded). Refunds created outside this service
    (e.g. from the Stripe dashboard) get a row on first sight.
    """
    refund = db.session.query(PaymentRefund).filter_by(provider_refund_id=snapshot.refund_id).first()
    if refund is None:
        refund = PaymentRefund(
            order_id=order.id,
            provider_refund_id=snapshot.refund_id,
            amount=snapshot.amount,
            currency=snapshot.currency,
            status="pending",
        )
        db.session.add(refund)

    status = snapshot.status if snapshot.status in REFUND_STATUSES else "pending"
    became_succeeded = status == "succeeded" and refund.status != "succeeded"
    refund.status = status
    if snapshot.amount:
        refund.amount = snapshot.amount
    db.session.flush()
    return refund, became_succeeded


def reconcile_refund_state(order: Order, *, reported_refunded_total: int = 0) -> str:
    """
    Recompute payment_status from refund rows. Commits.

    >= base succeeded: refunded (order status refunded unless already terminal)
    > 0 succeeded: partially_refunded (refund_pending while others are in flight)
    nothing succeeded: refund_pending while in flight, else back to the
    captured state (paid or deposited)
    """
    base = order.refundable_base
    succeeded = max(_sum_refunds(order.id, ("succeeded",)), int(reported_refunded_total or 0))
    in_flight = _sum_refunds(order.id, ("pending", "requires_action")) > 0

    if base > 0 and succeeded >= base:
        target = "refunded"
    elif in_flight:
        target = "refund_pending"
    elif succeeded > 0:
        target = "partially_refunded"
    else:
        target = "deposited" if order.is_deposit_order else "paid"

    current = order.payment_status
    if target != current:
        order_repository.set_payment_status(order, target, expected=(current,))
    db.session.commit()

    if target == "refunded" and order_lifecycle_service.can_transition(order.status, "refunded"):
        outcome = order_lifecycle_service.apply_transition(
            order, "refunded", note="Payment fully refunded"
        )
        if not outcome.won:
            current_app.logger.warning("Order %s changed while marking refunded", order.order_code)
    return target


def notify_refund(order: Order, refund: PaymentRefund) -> None:
    email_service.send_refund(
        order,
        amount=refund.amount,
        is_partial=order.payment_status != "refunded",
    )
