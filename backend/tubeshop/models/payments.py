from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class OrderPayment(db.Model):
    """
    Gateway reference data for an order (one row per order).

    Holds the identifiers needed to reconcile webhook events and to issue
    refunds: checkout session, payment intent and charge ids.
    """
    __tablename__ = "order_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    provider = db.Column(db.String(16), nullable=False, default="stripe")

    checkout_session_id = db.Column(db.String(255), nullable=True, index=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    charge_id = db.Column(db.String(255), nullable=True)

    currency = db.Column(db.String(8), nullable=False, default="vnd")
    amount_captured = db.Column(db.BigInteger, nullable=False, default=0)
    captured_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", backref=db.backref("payment_record", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "checkout_session_id": self.checkout_session_id,
            "payment_intent_id": self.payment_intent_id,
            "charge_id": self.charge_id,
            "currency": self.currency,
            "amount_captured": self.amount_captured,
            "captured_at": to_utc_z(self.captured_at),
        }


class PaymentRefund(db.Model):
    """
    Refund issued through the gateway.

    STATUS: pending -> succeeded | failed | canceled (set by refund webhooks).
    Pending and succeeded rows count against the refundable balance.
    """
    __tablename__ = "payment_refunds"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    provider_refund_id = db.Column(db.String(255), nullable=True, unique=True)

    amount = db.Column(db.BigInteger, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="vnd")
    status = db.Column(db.String(16), nullable=False, default="pending")
    reason = db.Column(db.String(64), nullable=True)
    note = db.Column(db.Text, nullable=True)
    restock = db.Column(db.Boolean, nullable=False, default=False)

    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider_refund_id": self.provider_refund_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "reason": self.reason,
            "note": self.note,
            "restock": self.restock,
            "requested_by_user_id": self.requested_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class WebhookEvent(db.Model):
    """
    Processed gateway event ids.

    The unique event_id row is written in the same transaction as the state
    change it caused, so a redelivered event is a no-op.
    """
    __tablename__ = "webhook_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False, unique=True)
    event_type = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    outcome = db.Column(db.String(32), nullable=False)
    processed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
