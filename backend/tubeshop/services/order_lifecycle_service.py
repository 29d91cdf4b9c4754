# Overview: Order status x payment status state machine and its side effects.

"""
Order Lifecycle Engine

================================================================================
STATE MACHINE (order.status)
================================================================================

    pending    -> confirmed | deposited | cancelled | expired
    confirmed  -> processing | deposited | cancelled | refunded
    deposited  -> processing | cancelled | refunded
    processing -> shipped | cancelled | refunded
    shipped    -> delivered | cancelled | refunded
    delivered  -> refunded
    cancelled, expired, refunded: terminal
    (system expiry of an unpaid overdue deposit reservation applies from
     any status outside cancelled/expired; see expire_order)

PAYMENT STATUS (order.payment_status) moves independently:
    pending         -> paid | failed
    deposit_pending -> deposited
    paid/deposited/partially_refunded -> refund_pending (admin refund)
    refund_pending  -> refunded | partially_refunded | back to captured state
    (refund outcomes are set only by gateway webhooks)

RULES:
1. Every status change is a compare-and-set on the observed status and
   appends exactly one history row (order_repository.transition_status).
2. Entering cancelled or expired restores inventory once, run only by the
   writer that won the transition, after the commit.
3. Emails are best-effort and never fail the operation they follow.
4. Losing a concurrent transition raises InvalidStateError (409).

================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..errors import InvalidStateError, ValidationError
from ..extensions import db
from ..models import Order, OrderChangeRequest
from ..time_utils import utcnow
from . import inventory_service, order_repository
from . import email_service


ORDER_STATUSES = (
    "pending", "confirmed", "deposited", "processing", "shipped",
    "delivered", "cancelled", "expired", "refunded",
)
PAYMENT_STATUSES = (
    "pending", "deposit_pending", "deposited", "paid", "failed",
    "refunded", "refund_pending", "partially_refunded",
)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "deposited", "cancelled", "expired"}),
    "confirmed": frozenset({"processing", "deposited", "cancelled", "refunded"}),
    "deposited": frozenset({"processing", "cancelled", "refunded"}),
    "processing": frozenset({"shipped", "cancelled", "refunded"}),
    "shipped": frozenset({"delivered", "cancelled", "refunded"}),
    "delivered": frozenset({"refunded"}),
    "cancelled": frozenset(),
    "expired": frozenset(),
    "refunded": frozenset(),
}

# Entering one of these returns reserved stock to the shelf
RESTOCK_STATUSES = frozenset({"cancelled", "expired"})

CUSTOMER_CANCELLABLE = frozenset({"pending", "confirmed", "deposited"})

CHANGE_REQUEST_CATEGORIES = ("address", "items", "contact", "cancel", "other")
CHANGE_REQUEST_MAX_LENGTH = 2000

SYSTEM_EXPIRY_NOTE = "Deposit deadline passed; reservation expired automatically by system."


@dataclass(frozen=True)
class TransitionOutcome:
    won: bool
    # None when the target status does not restock
    restocked: bool | None = None


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def _timestamp_values(to_status: str, now: datetime) -> dict:
    if to_status == "confirmed":
        return {"confirmed_at": now}
    if to_status == "cancelled":
        return {"cancelled_at": now}
    if to_status == "expired":
        return {"expired_at": now}
    return {}


def apply_transition(
    order: Order,
    to_status: str,
    *,
    note: str | None = None,
    changed_by_user_id: int | None = None,
    values: dict | None = None,
    payment_status_in=None,
) -> TransitionOutcome:
    """
    Validate against the transition table, CAS, commit, then restock.

    outcome.won is False if a concurrent writer changed the order first.
    Raises InvalidStateError (400) if the table forbids the move.
    """
    from_status = order.status
    if not can_transition(from_status, to_status):
        raise InvalidStateError(
            f"Cannot change order status from {from_status} to {to_status}",
            code="invalid_transition",
            status_code=400,
        )

    return _commit_transition(
        order,
        to_status,
        note=note,
        changed_by_user_id=changed_by_user_id,
        values=values,
        payment_status_in=payment_status_in,
    )


def _commit_transition(
    order: Order,
    to_status: str,
    *,
    note: str | None,
    changed_by_user_id: int | None,
    values: dict | None,
    payment_status_in,
) -> TransitionOutcome:
    from_status = order.status
    now = utcnow()
    updates = _timestamp_values(to_status, now)
    updates.update(values or {})

    won = order_repository.transition_status(
        order,
        to_status,
        note=note,
        changed_by_user_id=changed_by_user_id,
        values=updates,
        payment_status_in=payment_status_in,
    )
    if not won:
        db.session.rollback()
        return TransitionOutcome(won=False)

    db.session.commit()
    current_app.logger.info(
        "Order %s status %s -> %s", order.order_code, from_status, to_status
    )

    if to_status in RESTOCK_STATUSES:
        return TransitionOutcome(won=True, restocked=inventory_service.restore_order_inventory(order))
    return TransitionOutcome(won=True)


def _lost_race(order: Order) -> InvalidStateError:
    db.session.refresh(order)
    return InvalidStateError(
        f"Order status changed concurrently (now {order.status})",
        code="concurrent_update",
    )


# =============================================================================
# CUSTOMER ACTIONS
# =============================================================================

def cancel_by_customer(order: Order, reason: str | None) -> Order:
    """Guest cancellation (token-authenticated). Reason is mandatory."""
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("Cancellation reason is required")
    reason = reason.strip()

    if order.status not in CUSTOMER_CANCELLABLE:
        raise InvalidStateError(
            f"Order cannot be cancelled in status {order.status}",
            code="not_cancellable",
        )

    won = apply_transition(
        order,
        "cancelled",
        note=f"Cancelled by customer. Reason: {reason}",
        changed_by_user_id=None,
        values={"cancel_reason": reason},
    ).won
    if not won:
        raise _lost_race(order)

    email_service.send_cancellation(order, reason=reason)
    return order


def submit_change_request(order: Order, *, message, category=None) -> OrderChangeRequest:
    """Log a change request and notify the admin. Never touches the order."""
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message is required")
    message = message.strip()
    if len(message) > CHANGE_REQUEST_MAX_LENGTH:
        raise ValidationError(f"Message exceeds max length {CHANGE_REQUEST_MAX_LENGTH}")

    if category in (None, ""):
        category = "other"
    if category not in CHANGE_REQUEST_CATEGORIES:
        raise ValidationError(
            f"Invalid category. Must be one of: {', '.join(CHANGE_REQUEST_CATEGORIES)}"
        )

    change_request = OrderChangeRequest(order_id=order.id, category=category, message=message)
    db.session.add(change_request)
    db.session.commit()

    email_service.send_change_request_notification(order, change_request)
    return change_request


# =============================================================================
# ADMIN ACTIONS
# =============================================================================

def admin_update_status(order: Order, to_status: str, *, note: str | None, admin_user_id: int) -> Order:
    if to_status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status '{to_status}'. Must be one of: {', '.join(ORDER_STATUSES)}"
        )
    if to_status == order.status:
        raise InvalidStateError(f"Order is already {to_status}", status_code=400)

    won = apply_transition(
        order,
        to_status,
        note=note or f"Status changed to {to_status} by admin",
        changed_by_user_id=admin_user_id,
    ).won
    if not won:
        raise _lost_race(order)

    email_service.send_status_update(order, note=note)
    return order


def mark_deposit_received(
    order: Order,
    *,
    note: str | None = None,
    changed_by_user_id: int | None = None,
) -> Order:
    """
    deposit_pending -> deposited for a deposit reservation.

    Used by manual admin confirmation and by proof approval. The payment
    status guard makes this safe against the expiry sweep: once the sweep
    wins, payment_status no longer matters because status is expired.
    """
    if not order.is_deposit_order:
        raise InvalidStateError("Order is not a deposit reservation", status_code=400)
    if order.payment_status != "deposit_pending":
        raise InvalidStateError(
            f"Deposit cannot be confirmed while payment status is {order.payment_status}",
            status_code=400,
        )
    if order.status in RESTOCK_STATUSES:
        raise InvalidStateError(f"Order is {order.status}", status_code=400)

    now = utcnow()
    deposit_values = {"payment_status": "deposited", "deposit_received_at": now}

    if can_transition(order.status, "deposited"):
        won = apply_transition(
            order,
            "deposited",
            note=note or "Deposit received",
            changed_by_user_id=changed_by_user_id,
            values=deposit_values,
            payment_status_in=("deposit_pending",),
        ).won
    else:
        won = order_repository.set_payment_status(
            order, "deposited", expected=("deposit_pending",), values={"deposit_received_at": now}
        )
        if won:
            db.session.commit()
        else:
            db.session.rollback()

    if not won:
        raise _lost_race(order)
    return order


# =============================================================================
# SYSTEM ACTIONS
# =============================================================================

def expire_order(order: Order, *, now: datetime | None = None) -> TransitionOutcome:
    """
    Expire an overdue deposit reservation.

    Any status other than cancelled/expired qualifies while the deposit
    is still unpaid; the compare-and-set on payment_status keeps a
    deposit that lands concurrently from being expired.

    outcome.won is True only for the call that performed the expiry;
    outcome.restocked reports whether the stock write succeeded.
    """
    now = now or utcnow()
    if (
        not order.is_deposit_order
        or order.payment_status != "deposit_pending"
        or order.deposit_due_at is None
        or order.deposit_due_at >= now
        or order.status in RESTOCK_STATUSES
    ):
        return TransitionOutcome(won=False)

    # The deadline overrides the table: an unpaid reservation expires
    # from whatever status an admin left it in.
    return _commit_transition(
        order,
        "expired",
        note=SYSTEM_EXPIRY_NOTE,
        changed_by_user_id=None,
        values=None,
        payment_status_in=("deposit_pending",),
    )


def record_payment_captured(order: Order, *, note: str | None = None) -> str:
    """
    Gateway confirmed the money. Returns an outcome label for the webhook log.

    - deposit reservation: payment deposit_pending -> deposited, status -> deposited
    - standard order: payment pending/failed -> paid, status pending -> confirmed
    """
    if order.status in RESTOCK_STATUSES:
        current_app.logger.warning(
            "Payment captured for %s order %s; manual refund may be needed",
            order.status, order.order_code,
        )
        return "order_not_payable"

    if order.is_deposit_order:
        target_payment, expected_payment, target_status = "deposited", ("deposit_pending",), "deposited"
        extra = {"deposit_received_at": utcnow()}
    else:
        target_payment, expected_payment, target_status = "paid", ("pending", "failed"), "confirmed"
        extra = {}

    if order.payment_status not in expected_payment:
        return "already_recorded"

    values = {"payment_status": target_payment, **extra}
    if can_transition(order.status, target_status):
        won = apply_transition(
            order,
            target_status,
            note=note or "Payment confirmed by payment gateway",
            values=values,
            payment_status_in=expected_payment,
        ).won
    else:
        won = order_repository.set_payment_status(
            order, target_payment, expected=expected_payment, values=extra
        )
        if won:
            db.session.commit()
        else:
            db.session.rollback()

    return "payment_recorded" if won else "already_recorded"


def record_payment_failed(order: Order) -> str:
    """
    Gateway reported a failed attempt.

    Standard orders move pending -> failed. Deposit reservations keep
    deposit_pending so the customer may retry and the expiry sweep still
    releases the stock. Order status and stock are never touched here.
    """
    if order.is_deposit_order:
        current_app.logger.info("Deposit payment attempt failed for order %s", order.order_code)
        return "deposit_attempt_failed"

    won = order_repository.set_payment_status(order, "failed", expected=("pending",))
    if won:
        db.session.commit()
        return "payment_failed"
    db.session.rollback()
    return "ignored"
