# Overview: Guest order access (code + contact, or code + token) and account claims.

"""
Guest Order Tracking

ENUMERATION DEFENSE:
- Lookup by code + contact answers the same NotFoundError for an unknown
  code and for a contact mismatch
- Token access answers the same NotFoundError for unknown order, wrong
  token and expired token
- Only the rate limit (per client origin) is distinguishable

Contact normalization: trim, lowercase, remove all internal whitespace.
A match against the stored email OR the stored phone suffices.
"""

from __future__ import annotations

import hashlib

from flask import current_app

from ..errors import ForbiddenError, InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
from ..extensions import db
from ..models import Order, OrderClaim, User
from ..time_utils import to_utc_z
from . import order_repository, tracking_token_service
from .concurrency import compare_and_set
from .tracking_token_service import TokenCheck


ORDER_NOT_FOUND = "Order not found"
INVALID_TRACKING_LINK = "Invalid or expired tracking link"
CLAIM_METHODS = ("tracking_lookup", "token_link")


def normalize_contact(value: str | None) -> str:
    if not value:
        return ""
    return "".join(str(value).strip().lower().split())


def contact_matches(order: Order, contact: str | None) -> bool:
    needle = normalize_contact(contact)
    if not needle:
        return False
    return needle in {
        normalize_contact(order.customer_email),
        normalize_contact(order.customer_phone),
    } - {""}


def account_matches_order(user: User, order: Order) -> bool:
    """True when the account's email or phone equals the order's contact."""
    email = normalize_contact(user.email)
    phone = normalize_contact(user.phone)
    return bool(
        (email and email == normalize_contact(order.customer_email))
        or (phone and phone == normalize_contact(order.customer_phone))
    )


def lookup(order_code: str | None, contact: str | None) -> Order:
    """Order for code + contact, or the generic NotFoundError."""
    order = order_repository.get_by_code(order_code)
    if order is None or not contact_matches(order, contact):
        raise NotFoundError(ORDER_NOT_FOUND)
    return order


def order_for_token(order_code: str | None, token: str | None, *, message: str = ORDER_NOT_FOUND) -> Order:
    """Order for code + tracking token, or one generic NotFoundError."""
    order = order_repository.get_by_code(order_code)
    result = tracking_token_service.check(order.id if order else None, token)
    if result is not TokenCheck.VALID:
        current_app.logger.info("Tracking token rejected for %s: %s", order_code, result.value)
        raise NotFoundError(message)
    return order


def authorize_token_action(order_code: str | None, token: str | None) -> Order:
    """
    Token check for customer actions (cancel, change request, upload).

    Missing token is 401; unknown order, wrong or expired token all
    answer the same 401.
    """
    if not token:
        raise UnauthorizedError("Unauthorized", code="no_token")
    order = order_repository.get_by_code(order_code)
    if tracking_token_service.check(order.id if order else None, token) is not TokenCheck.VALID:
        raise UnauthorizedError("Invalid or expired token", code="invalid_token")
    return order


def order_view(order: Order) -> dict:
    """
    Display-safe projection for guests.

    Contact details are masked; internal ids, notes and user links are left out.
    """
    return {
        "orderCode": order.order_code,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "orderType": order.order_type,
        "paymentMethod": order.payment_method,
        "customerName": order.customer_name,
        "customerEmail": mask_email(order.customer_email),
        "customerPhone": mask_phone(order.customer_phone),
        "shippingAddress": {
            "addressLine": order.shipping_address_line,
            "city": order.shipping_city,
            "district": order.shipping_district,
        },
        "subtotal": order.subtotal,
        "shippingFee": order.shipping_fee,
        "tax": order.tax,
        "discount": order.discount,
        "total": order.total,
        "depositAmount": order.deposit_amount,
        "depositDueAt": to_utc_z(order.deposit_due_at),
        "depositReceivedAt": to_utc_z(order.deposit_received_at),
        "remainingAmount": order.remaining_amount,
        "bankTransferMemo": order.bank_transfer_memo,
        "isClaimed": order.user_id is not None,
        "createdAt": to_utc_z(order.created_at),
        "items": [
            {
                "productName": item.product_name,
                "productSlug": item.product_slug,
                "imageUrl": item.product_image_url,
                "unitPrice": item.unit_price,
                "quantity": item.quantity,
                "subtotal": item.subtotal,
            }
            for item in order.items
        ],
        "history": [
            {"status": h.to_status, "note": h.note, "createdAt": to_utc_z(h.created_at)}
            for h in order.history
        ],
    }


def mask_email(email: str | None) -> str | None:
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def mask_phone(phone: str | None) -> str | None:
    if not phone:
        return phone
    digits = phone.strip()
    if len(digits) <= 4:
        return "***"
    return f"{'*' * (len(digits) - 3)}{digits[-3:]}"


# =============================================================================
# CLAIM
# =============================================================================

def hash_ip(ip_address: str | None) -> str | None:
    if not ip_address:
        return None
    return hashlib.sha256(ip_address.encode("utf-8")).hexdigest()[:32]


def claim_order(
    order_code: str | None,
    user: User,
    *,
    claim_method: str | None,
    token: str | None = None,
    contact: str | None = None,
    ip_address: str | None = None,
) -> Order:
    """
    Bind a guest order to the caller's account.

    Proof of ownership is re-checked here: a valid tracking token, or a
    contact that matches the order. Claiming an order linked to another
    account fails; re-claiming one's own order is a no-op.

    SECURITY: proof of access is not proof of identity. A forwarded
    tracking link must not let a stranger adopt the order, so the
    account's own email or phone has to match the order's contact.
    """
    if claim_method not in CLAIM_METHODS:
        raise ValidationError(f"claimMethod must be one of: {', '.join(CLAIM_METHODS)}")

    if claim_method == "token_link":
        order = order_for_token(order_code, token)
    else:
        order = lookup(order_code, contact)

    if order.user_id == user.id:
        return order
    if order.user_id is not None:
        raise InvalidStateError("Order is already linked to another account", code="already_claimed")
    if not account_matches_order(user, order):
        raise ForbiddenError("Order email or phone does not match your account", code="contact_mismatch")

    won = compare_and_set(Order, order.id, expected={"user_id": None}, values={"user_id": user.id})
    if not won:
        db.session.rollback()
        raise InvalidStateError("Order is already linked to another account", code="already_claimed")

    db.session.add(OrderClaim(
        order_id=order.id,
        user_id=user.id,
        claim_method=claim_method,
        ip_hash=hash_ip(ip_address),
    ))
    db.session.commit()
    db.session.refresh(order)
    current_app.logger.info("Order %s claimed by user %s via %s", order.order_code, user.id, claim_method)
    return order
