# Overview: Order persistence: lookups, conditional status writes, history rows.

"""
Order Repository

Reads and writes orders, items and status history. It enforces no
business rules; the lifecycle service decides WHAT may change, this module
makes each change atomic.

CONCURRENCY:
Every status or payment status write is a compare-and-set UPDATE keyed on
the value the caller observed. Exactly one concurrent writer wins; losers
get False and must not run side effects. Each winning status write adds
exactly one OrderStatusHistory row whose from_status is the observed
status.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from ..extensions import db
from ..models import Order, OrderStatusHistory
from ..time_utils import utcnow
from .concurrency import compare_and_set


def get_by_code(order_code: str | None) -> Order | None:
    if not order_code or not isinstance(order_code, str):
        return None
    return db.session.query(Order).filter_by(order_code=order_code.strip()).first()


def get_by_id(order_id: int | None) -> Order | None:
    if order_id is None:
        return None
    return db.session.get(Order, order_id)


def transition_status(
    order: Order,
    to_status: str,
    *,
    note: str | None = None,
    changed_by_user_id: int | None = None,
    values: dict | None = None,
    payment_status_in: Iterable[str] | None = None,
) -> bool:
    """
    CAS order.status from its observed value to `to_status`.

    `values` are written in the same UPDATE. `payment_status_in` adds a
    payment status guard. Does not commit.
    """
    from_status = order.status
    now = utcnow()

    expected: dict = {"status": from_status}
    if payment_status_in is not None:
        expected["payment_status"] = tuple(payment_status_in)

    updates = {"status": to_status, "updated_at": now}
    updates.update(values or {})

    won = compare_and_set(Order, order.id, expected=expected, values=updates)
    if won:
        db.session.add(OrderStatusHistory(
            order_id=order.id,
            from_status=from_status,
            to_status=to_status,
            note=note,
            changed_by_user_id=changed_by_user_id,
            created_at=now,
        ))
    db.session.expire(order)
    return won


def set_payment_status(
    order: Order,
    to_payment_status: str,
    *,
    expected: Iterable[str],
    values: dict | None = None,
) -> bool:
    """CAS order.payment_status from one of `expected`. Does not commit."""
    updates = {"payment_status": to_payment_status, "updated_at": utcnow()}
    updates.update(values or {})
    won = compare_and_set(
        Order, order.id, expected={"payment_status": tuple(expected)}, values=updates
    )
    db.session.expire(order)
    return won


def add_initial_history(order: Order, *, note: str | None = None) -> None:
    """History row for a freshly inserted order (null -> status)."""
    db.session.add(OrderStatusHistory(
        order_id=order.id,
        from_status=None,
        to_status=order.status,
        note=note,
        changed_by_user_id=None,
        created_at=order.created_at or utcnow(),
    ))


def list_overdue_deposit_orders(now: datetime, *, limit: int | None = None) -> list[Order]:
    """Deposit reservations whose deadline passed while still unpaid."""
    q = (
        db.session.query(Order)
        .filter(
            Order.order_type == "deposit_reservation",
            Order.payment_status == "deposit_pending",
            Order.deposit_due_at.isnot(None),
            Order.deposit_due_at < now,
            Order.status.notin_(("cancelled", "expired")),
        )
        .order_by(Order.deposit_due_at.asc(), Order.id.asc())
    )
    if limit:
        q = q.limit(limit)
    return q.all()


def latest_history(order: Order) -> OrderStatusHistory | None:
    return (
        db.session.query(OrderStatusHistory)
        .filter_by(order_id=order.id)
        .order_by(OrderStatusHistory.created_at.desc(), OrderStatusHistory.id.desc())
        .first()
    )
