# Overview: Checkout: validates a cart, prices it, reserves stock and creates the order.

"""
Checkout Service

FLOW (one transaction):
1. Validate cart, contact, address and payment choice
2. Allocate the order code from the per-day sequence
3. Insert order + item snapshots, reserve stock with conditional
   decrements, append the initial history row (null -> pending)
4. Commit; then issue a tracking token and send the confirmation email

PRICING:
- Money is whole VND; shipping, tax and discount are zero for now
- Deposit per unit: percent -> round half up (price * pct / 100);
  fixed -> configured amount (capped at price). Multiplied by quantity.
- Deposit due-at = now + the smallest deposit_due_hours in the cart
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import InvalidStateError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, OrderSequence, Product
from ..time_utils import utcnow
from ..validation import optional_text, parse_positive_int, require_text
from . import email_service, inventory_service, order_repository, tracking_token_service, vietqr_service
from .concurrency import lock_for_update, run_with_retry


PAYMENT_METHODS = ("cod", "bank_transfer", "stripe")
PAYMENT_MODES = ("full", "deposit", "cod")
LOCALES = ("vi", "en")
MAX_LINES = 50
MAX_QUANTITY_PER_LINE = 100
NOTE_MAX_LENGTH = 1000


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    tracking_token: str
    tracking_url: str


def deposit_per_unit(product: Product) -> int:
    """Deposit owed for one unit of a deposit-enabled product."""
    if product.deposit_type == "percent":
        pct = int(product.deposit_percentage or 0)
        return (int(product.price) * pct + 50) // 100
    if product.deposit_type == "fixed":
        return min(int(product.deposit_amount or 0), int(product.price))
    raise ValidationError(f"Product {product.name} has no valid deposit configuration")


def next_order_code(now=None) -> str:
    """
    Atomically allocate ORD-YYYYMMDD-NNNNNN.

    Must run first in the checkout transaction; the IntegrityError path
    rolls the session back.
    """
    now = now or utcnow()
    day = now.strftime("%Y%m%d")
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.sequence_date == day)
        .values(next_number=OrderSequence.next_number + 1)
    )

    def _current() -> int:
        db.session.flush()
        return db.session.query(OrderSequence.next_number).filter_by(sequence_date=day).scalar() - 1

    if db.session.execute(stmt).rowcount:
        number = _current()
    else:
        db.session.add(OrderSequence(sequence_date=day, next_number=2))
        try:
            db.session.flush()
            number = 1
        except IntegrityError:
            db.session.rollback()
            if not db.session.execute(stmt).rowcount:
                raise
            number = _current()
    return f"ORD-{day}-{number:06d}"


def _parse_items(raw_items) -> list[tuple[int, int]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Cart is empty")
    if len(raw_items) > MAX_LINES:
        raise ValidationError(f"Cart cannot have more than {MAX_LINES} lines")

    merged: dict[int, int] = {}
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValidationError("Invalid cart item")
        product_id = parse_positive_int(raw.get("productId"), "productId")
        quantity = parse_positive_int(raw.get("quantity"), "quantity")
        merged[product_id] = merged.get(product_id, 0) + quantity

    for quantity in merged.values():
        if quantity > MAX_QUANTITY_PER_LINE:
            raise ValidationError(f"quantity cannot exceed {MAX_QUANTITY_PER_LINE}")
    return list(merged.items())


def _parse_checkout(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    items = _parse_items(payload.get("items"))

    customer = payload.get("customerInfo")
    if not isinstance(customer, dict):
        raise ValidationError("customerInfo is required")
    full_name = require_text(customer, "fullName", "Full name is required", max_length=255)
    phone = require_text(customer, "phone", "Phone number is required", max_length=32)
    email = optional_text(customer, "email", max_length=255)
    if email is not None and "@" not in email:
        raise ValidationError("Invalid email address")

    address = payload.get("shippingAddress")
    if not isinstance(address, dict):
        raise ValidationError("shippingAddress is required")
    address_line = require_text(address, "addressLine", "Address is required", max_length=255)
    city = require_text(address, "city", "City is required", max_length=128)
    district = optional_text(address, "district", max_length=128)

    payment_method = payload.get("paymentMethod")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"paymentMethod must be one of: {', '.join(PAYMENT_METHODS)}")
    payment_mode = payload.get("paymentMode") or ("cod" if payment_method == "cod" else "full")
    if payment_mode not in PAYMENT_MODES:
        raise ValidationError(f"paymentMode must be one of: {', '.join(PAYMENT_MODES)}")
    if (payment_mode == "cod") != (payment_method == "cod"):
        raise ValidationError("Cash on delivery requires paymentMode 'cod' with paymentMethod 'cod'")

    locale = payload.get("locale") or "vi"
    if locale not in LOCALES:
        locale = "vi"

    return {
        "items": items,
        "full_name": full_name,
        "phone": phone,
        "email": email.lower() if email else None,
        "address_line": address_line,
        "city": city,
        "district": district,
        "payment_method": payment_method,
        "payment_mode": payment_mode,
        "note": optional_text(payload, "note", max_length=NOTE_MAX_LENGTH),
        "locale": locale,
    }


def create_order(payload: dict) -> CheckoutResult:
    """
    Create an order from a checkout payload.

    Raises:
        ValidationError: malformed input, unavailable product, deposit not allowed
        InvalidStateError: insufficient stock (409)
    """
    data = _parse_checkout(payload)
    is_deposit = data["payment_mode"] == "deposit"

    def _op() -> Order:
        now = utcnow()
        order_code = next_order_code(now)

        product_ids = [pid for pid, _ in data["items"]]
        products = {
            p.id: p
            for p in lock_for_update(
                db.session.query(Product).filter(Product.id.in_(product_ids))
            ).all()
        }

        subtotal = 0
        deposit_total = 0
        due_hours: list[int] = []
        lines = []
        for product_id, quantity in data["items"]:
            product = products.get(product_id)
            if product is None or not product.is_active:
                raise ValidationError(f"Product {product_id} is not available")
            if product.stock_quantity < quantity:
                raise InvalidStateError(
                    f"Insufficient stock for {product.name}", code="insufficient_stock"
                )
            if is_deposit:
                if not product.allow_deposit:
                    raise ValidationError(f"Product {product.name} cannot be reserved with a deposit")
                deposit_total += deposit_per_unit(product) * quantity
                due_hours.append(int(product.deposit_due_hours or 24))
            line_total = int(product.price) * quantity
            subtotal += line_total
            lines.append((product, quantity, line_total))

        total = subtotal
        order = Order(
            order_code=order_code,
            status="pending",
            payment_status="deposit_pending" if is_deposit else "pending",
            order_type="deposit_reservation" if is_deposit else "standard",
            payment_method=data["payment_method"],
            customer_name=data["full_name"],
            customer_email=data["email"],
            customer_phone=data["phone"],
            shipping_address_line=data["address_line"],
            shipping_city=data["city"],
            shipping_district=data["district"],
            subtotal=subtotal,
            shipping_fee=0,
            tax=0,
            discount=0,
            total=total,
            customer_note=data["note"],
            locale=data["locale"],
            created_at=now,
            updated_at=now,
        )
        if is_deposit:
            order.deposit_amount = deposit_total
            order.remaining_amount = total - deposit_total
            order.deposit_due_at = now + timedelta(hours=min(due_hours))
            if data["payment_method"] == "bank_transfer":
                order.bank_transfer_memo = vietqr_service.transfer_memo(order_code)
        db.session.add(order)
        db.session.flush()

        for product, quantity, line_total in lines:
            primary = product.primary_image
            db.session.add(OrderItem(
                order_id=order.id,
                product_id=product.id,
                product_name=product.name,
                product_slug=product.slug,
                product_sku=product.sku,
                product_image_url=primary.url if primary else None,
                unit_price=int(product.price),
                quantity=quantity,
                subtotal=line_total,
            ))
            if not inventory_service.reserve_stock(product.id, quantity):
                raise InvalidStateError(
                    f"Insufficient stock for {product.name}", code="insufficient_stock"
                )

        order_repository.add_initial_history(order, note="Order placed")
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except (ValidationError, InvalidStateError):
        db.session.rollback()
        raise

    token = tracking_token_service.issue(order.id)
    tracking_url = tracking_token_service.build_tracking_url(order.order_code, token)
    current_app.logger.info("Order %s created (%s, %s)", order.order_code, order.order_type, order.payment_method)

    email_service.send_order_confirmation(order, tracking_url=tracking_url)
    return CheckoutResult(order=order, tracking_token=token, tracking_url=tracking_url)
