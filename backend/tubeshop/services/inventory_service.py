# Overview: Stock reservation at checkout and restoration on cancel/expiry.

"""
Inventory Invariants

- Product.stock_quantity is the sellable quantity and never goes negative.
- Checkout reserves stock with a conditional decrement in the same
  transaction that inserts the order.
- Stock returns to the shelf at most once per order. The guard is the
  status transition into cancelled/expired: only the writer that won that
  compare-and-set calls restore_order_inventory, and no other code path
  credits stock back. There is no separate "restored" flag to drift.
- Restoration runs after the status change is committed. A failure is
  logged for manual reconciliation and never undoes the status change.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Order, Product


def reserve_stock(product_id: int, quantity: int) -> bool:
    """
    Decrement stock if enough is available. Does not commit.

    Returns False when stock is insufficient (or the product vanished).
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def restore_order_inventory(order: Order) -> bool:
    """
    Credit every item's quantity back to its product and commit.

    Call ONLY after winning the transition into cancelled or expired.
    Returns False (after logging) if the write fails.
    """
    order_code = order.order_code
    try:
        for item in order.items:
            if item.product_id is None:
                continue
            db.session.execute(
                update(Product)
                .where(Product.id == item.product_id)
                .values(stock_quantity=Product.stock_quantity + item.quantity)
                .execution_options(synchronize_session=False)
            )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Inventory restore failed for order %s", order_code)
        return False

    current_app.logger.info("Inventory restored for order %s", order_code)
    return True
