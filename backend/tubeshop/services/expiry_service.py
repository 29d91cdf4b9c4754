# Overview: Cron sweep that expires overdue deposit reservations.

"""
Deposit Expiry Sweep

Selects deposit reservations still deposit_pending past deposit_due_at and
expires each one independently. One order's failure is logged and counted
and never stops the batch.

IDEMPOTENT: an expired order no longer matches the selection, and the
per-order status compare-and-set means overlapping sweeps expire (and
restock) each order exactly once; the losing sweep reports it as skipped.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..time_utils import utcnow
from . import order_lifecycle_service, order_repository


def sweep(now: datetime | None = None, *, limit: int | None = None) -> dict:
    """
    Returns {"expiredCount", "failedCount", "skippedCount", "results"}.

    expiredCount: orders this sweep expired with stock restored
    failedCount: orders that raised, or expired but whose restock failed
    (those need manual stock reconciliation)
    """
    now = now or utcnow()
    orders = order_repository.list_overdue_deposit_orders(now, limit=limit)
    targets = [(o.id, o.order_code) for o in orders]

    results = []
    expired = failed = skipped = 0
    for order_id, order_code in targets:
        try:
            order = order_repository.get_by_id(order_id)
            outcome = order_lifecycle_service.expire_order(order, now=now)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to expire order %s", order_code)
            failed += 1
            results.append({"orderCode": order_code, "outcome": "error"})
            continue

        if not outcome.won:
            skipped += 1
            results.append({"orderCode": order_code, "outcome": "skipped"})
        elif outcome.restocked is False:
            failed += 1
            results.append({"orderCode": order_code, "outcome": "restock_failed"})
        else:
            expired += 1
            results.append({"orderCode": order_code, "outcome": "expired"})

    if targets:
        current_app.logger.info(
            "Deposit expiry sweep: %s expired, %s failed, %s skipped", expired, failed, skipped
        )
    return {
        "expiredCount": expired,
        "failedCount": failed,
        "skippedCount": skipped,
        "results": results,
    }
