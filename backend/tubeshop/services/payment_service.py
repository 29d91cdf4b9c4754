# Overview: Starts hosted checkout sessions for existing orders.

"""
Payment Service

WHY: The storefront pays through the gateway's hosted checkout page. This
module decides WHAT is charged; webhook_service decides what the charge
MEANS once the gateway reports it.

CHARGE RULES:
- Deposit reservations charge only the deposit (one line).
- Standard orders charge each item snapshot at its captured unit price.
- Orders that are already paid/deposited, or closed (cancelled/expired),
  are rejected before the gateway is contacted.
"""

from __future__ import annotations

from flask import current_app

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order
from . import order_repository
from .payment_gateway import get_payment_gateway
from .webhook_service import upsert_payment_record


ALREADY_PAID_STATUSES = ("paid", "deposited", "refund_pending", "partially_refunded", "refunded")
CLOSED_ORDER_STATUSES = ("cancelled", "expired", "refunded")


def _line_items(order: Order) -> list[dict]:
    if order.is_deposit_order:
        return [{
            "name": f"Deposit for order {order.order_code}",
            "unit_amount": int(order.deposit_amount or 0),
            "quantity": 1,
        }]
    items = [
        {"name": item.product_name, "unit_amount": int(item.unit_price), "quantity": int(item.quantity)}
        for item in order.items
    ]
    if order.shipping_fee:
        items.append({"name": "Shipping", "unit_amount": int(order.shipping_fee), "quantity": 1})
    return items


def start_checkout_session(order_code: str | None) -> dict:
    """
    Create a gateway checkout session for an order.

    Returns:
        {"url": ..., "sessionId": ...}

    Raises:
        ValidationError: order code missing
        NotFoundError: order does not exist
        InvalidStateError: order already paid or closed
        UpstreamFailure: gateway call failed
    """
    if not order_code or not str(order_code).strip():
        raise ValidationError("orderCode is required")

    order = order_repository.get_by_code(str(order_code).strip())
    if order is None:
        raise NotFoundError("Order not found")

    if order.payment_status in ALREADY_PAID_STATUSES:
        raise InvalidStateError("Order is already paid", code="already_paid", status_code=400)
    if order.status in CLOSED_ORDER_STATUSES:
        raise InvalidStateError("Order is no longer payable", code="order_closed", status_code=400)

    line_items = _line_items(order)
    if sum(item["unit_amount"] * item["quantity"] for item in line_items) <= 0:
        raise InvalidStateError("Order has nothing to charge", code="nothing_to_charge", status_code=400)

    site_url = current_app.config["SITE_URL"].rstrip("/")
    session = get_payment_gateway().create_checkout_session(
        order_id=order.id,
        order_code=order.order_code,
        order_type=order.order_type,
        line_items=line_items,
        customer_email=order.customer_email,
        success_url=f"{site_url}/checkout/success?order={order.order_code}&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{site_url}/checkout/cancel?order={order.order_code}",
    )

    upsert_payment_record(
        order,
        checkout_session_id=session.session_id,
        payment_intent_id=session.payment_intent_id,
    )
    db.session.commit()

    current_app.logger.info(
        "Checkout session %s created for order %s", session.session_id, order.order_code
    )
    return {"url": session.url, "sessionId": session.session_id}


def checkout_session_status(session_id: str | None) -> dict:
    """
    Gateway view of a checkout session, for the success page to poll.

    Read-only: the webhook stays the only writer of payment state, so
    nothing here touches the order.
    """
    if not session_id or not str(session_id).strip():
        raise ValidationError("session_id is required")

    status = get_payment_gateway().retrieve_checkout_session(str(session_id).strip())
    return {
        "sessionId": status.session_id,
        "status": status.status,
        "paymentStatus": status.payment_status,
        "orderCode": status.order_code,
    }
