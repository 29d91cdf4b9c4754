from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class Order(db.Model):
    """
    Customer order (one per purchase attempt).

    STATUS vs PAYMENT STATUS:
    - status: fulfilment lifecycle (pending -> confirmed/deposited -> processing
      -> shipped -> delivered, or terminal cancelled/expired/refunded)
    - payment_status: money lifecycle, driven by the payment gateway webhook
      and admin actions

    Status changes go through order_lifecycle_service only, which appends an
    OrderStatusHistory row for every change. Money columns are whole VND.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        # Deposit expiry sweep lookup
        db.Index("ix_orders_deposit_sweep", "order_type", "payment_status", "deposit_due_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable code (e.g., "ORD-20251217-000001"), immutable
    order_code = db.Column(db.String(32), nullable=False, unique=True)

    # Set only through the claim flow
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    order_type = db.Column(db.String(24), nullable=False, default="standard")
    payment_method = db.Column(db.String(16), nullable=False)

    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    shipping_address_line = db.Column(db.String(255), nullable=False)
    shipping_city = db.Column(db.String(128), nullable=False)
    shipping_district = db.Column(db.String(128), nullable=True)

    subtotal = db.Column(db.BigInteger, nullable=False, default=0)
    shipping_fee = db.Column(db.BigInteger, nullable=False, default=0)
    tax = db.Column(db.BigInteger, nullable=False, default=0)
    discount = db.Column(db.BigInteger, nullable=False, default=0)
    total = db.Column(db.BigInteger, nullable=False, default=0)

    # Deposit reservation fields (deposit_reservation orders only)
    deposit_amount = db.Column(db.BigInteger, nullable=True)
    deposit_due_at = db.Column(db.DateTime, nullable=True, index=True)
    deposit_received_at = db.Column(db.DateTime, nullable=True)
    remaining_amount = db.Column(db.BigInteger, nullable=True)
    bank_transfer_memo = db.Column(db.String(64), nullable=True)

    customer_note = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    locale = db.Column(db.String(8), nullable=False, default="vi")

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    expired_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship(
        "OrderItem", back_populates="order", order_by="OrderItem.id", lazy=True
    )
    history = db.relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="(OrderStatusHistory.created_at, OrderStatusHistory.id)",
        lazy=True,
    )

    @property
    def is_deposit_order(self) -> bool:
        return self.order_type == "deposit_reservation"

    @property
    def refundable_base(self) -> int:
        """Amount actually captured: the deposit for reservations, else the total."""
        if self.is_deposit_order:
            return int(self.deposit_amount or 0)
        return int(self.total or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_code": self.order_code,
            "user_id": self.user_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "order_type": self.order_type,
            "payment_method": self.payment_method,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "shipping_address_line": self.shipping_address_line,
            "shipping_city": self.shipping_city,
            "shipping_district": self.shipping_district,
            "subtotal": self.subtotal,
            "shipping_fee": self.shipping_fee,
            "tax": self.tax,
            "discount": self.discount,
            "total": self.total,
            "deposit_amount": self.deposit_amount,
            "deposit_due_at": to_utc_z(self.deposit_due_at),
            "deposit_received_at": to_utc_z(self.deposit_received_at),
            "remaining_amount": self.remaining_amount,
            "bank_transfer_memo": self.bank_transfer_memo,
            "customer_note": self.customer_note,
            "cancel_reason": self.cancel_reason,
            "locale": self.locale,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "expired_at": to_utc_z(self.expired_at),
        }


class OrderItem(db.Model):
    """Immutable snapshot of a purchased product line, taken at checkout."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    product_slug = db.Column(db.String(160), nullable=True)
    product_sku = db.Column(db.String(64), nullable=True)
    product_image_url = db.Column(db.String(512), nullable=True)
    unit_price = db.Column(db.BigInteger, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    subtotal = db.Column(db.BigInteger, nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_slug": self.product_slug,
            "product_sku": self.product_sku,
            "product_image_url": self.product_image_url,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "subtotal": self.subtotal,
        }


class OrderStatusHistory(db.Model):
    """
    Append-only status log.

    IMMUTABLE: Never update or delete. The newest row's to_status always
    equals the order's current status. changed_by_user_id is NULL for
    customer- and system-initiated changes.
    """
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_status_history_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=False)
    note = db.Column(db.Text, nullable=True)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "note": self.note,
            "changed_by_user_id": self.changed_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class OrderChangeRequest(db.Model):
    """Customer change request; advisory only, never mutates the order."""
    __tablename__ = "order_change_requests"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    category = db.Column(db.String(32), nullable=False, default="other")
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "category": self.category,
            "message": self.message,
            "created_at": to_utc_z(self.created_at),
        }


class OrderEmail(db.Model):
    """Outbound email attempt log (status: sent, failed, skipped_no_email)."""
    __tablename__ = "order_emails"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    email_type = db.Column(db.String(32), nullable=False)
    recipient = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(24), nullable=False)
    provider_message_id = db.Column(db.String(128), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email_type": self.email_type,
            "recipient": self.recipient,
            "status": self.status,
            "provider_message_id": self.provider_message_id,
            "error_message": self.error_message,
            "created_at": to_utc_z(self.created_at),
        }


class OrderClaim(db.Model):
    """Audit row for a guest order bound to an account."""
    __tablename__ = "order_claims"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    claim_method = db.Column(db.String(32), nullable=False)
    ip_hash = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class OrderSequence(db.Model):
    """
    Atomic per-day order code sequence.

    Prevents race conditions when two checkouts allocate a code at once.
    """
    __tablename__ = "order_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sequence_date = db.Column(db.String(8), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
