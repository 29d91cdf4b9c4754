# Overview: Read-side queries for the admin order screens.

"""
Admin Order Queries

Unlike guest tracking, admin views show unmasked contact details, the email
log, the gateway reference row, refunds and deposit proofs.
"""

from __future__ import annotations

from sqlalchemy import func, or_

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderChangeRequest, OrderEmail, OrderPayment, PaymentRefund
from . import deposit_proof_service, order_repository, refund_service
from .catalog_service import _paginate
from .order_lifecycle_service import ORDER_STATUSES, PAYMENT_STATUSES

ORDER_TYPES = ("standard", "deposit_reservation")


def list_orders(
    *,
    status: str | None = None,
    payment_status: str | None = None,
    order_type: str | None = None,
    q: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    if status and status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown status: {status}")
    if payment_status and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status: {payment_status}")
    if order_type and order_type not in ORDER_TYPES:
        raise ValidationError(f"Unknown order type: {order_type}")

    query = db.session.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)
    if order_type:
        query = query.filter(Order.order_type == order_type)
    if q:
        pattern = f"%{q.strip().lower()}%"
        query = query.filter(
            or_(
                func.lower(Order.order_code).like(pattern),
                func.lower(Order.customer_name).like(pattern),
                func.lower(func.coalesce(Order.customer_email, "")).like(pattern),
                func.coalesce(Order.customer_phone, "").like(pattern),
            )
        )

    query = query.order_by(Order.created_at.desc(), Order.id.desc())
    orders, pagination = _paginate(query, page, per_page)
    return {
        "items": [o.to_dict() for o in orders],
        "count": len(orders),
        "pagination": pagination,
    }


def get_order_or_404(order_code: str) -> Order:
    order = order_repository.get_by_code(order_code)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def order_detail(order: Order) -> dict:
    data = order.to_dict()
    data["items"] = [item.to_dict() for item in order.items]
    data["history"] = [h.to_dict() for h in order.history]
    data["emails"] = [
        e.to_dict()
        for e in db.session.query(OrderEmail)
        .filter_by(order_id=order.id)
        .order_by(OrderEmail.created_at.asc(), OrderEmail.id.asc())
    ]
    data["change_requests"] = [
        cr.to_dict()
        for cr in db.session.query(OrderChangeRequest)
        .filter_by(order_id=order.id)
        .order_by(OrderChangeRequest.created_at.asc(), OrderChangeRequest.id.asc())
    ]
    payment = db.session.query(OrderPayment).filter_by(order_id=order.id).first()
    data["payment"] = payment.to_dict() if payment else None
    data["refunds"] = [
        r.to_dict()
        for r in db.session.query(PaymentRefund)
        .filter_by(order_id=order.id)
        .order_by(PaymentRefund.created_at.asc(), PaymentRefund.id.asc())
    ]
    data["refund_summary"] = refund_service.refund_summary(order)
    data["deposit_proofs"] = [
        p.to_dict(include_paths=False) for p in deposit_proof_service.list_proofs(order)
    ]
    return data
