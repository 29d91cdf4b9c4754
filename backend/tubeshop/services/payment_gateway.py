# Overview: Stripe adapter: checkout sessions, refunds and typed webhook events.

"""
Payment Gateway Adapter

WHY: The gateway is the source of truth for money. This module is the only
place that talks to Stripe; everything else sees PaymentGateway and the
closed set of event dataclasses below.

DESIGN:
- Webhook payloads are verified (Stripe-Signature) before they are parsed
- parse_event maps each handled event type to one frozen dataclass;
  anything else becomes UnhandledEvent, which the webhook logs and
  acknowledges
- VND is a zero-decimal currency, so amounts pass through unchanged
- StripeError is wrapped in UpstreamFailure so routes never leak it
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Union

import stripe
from flask import current_app

from ..errors import NotFoundError, OrderError, UpstreamFailure


PAYMENT_GATEWAY_EXTENSION = "tubeshop.payment_gateway"

STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


class WebhookSignatureError(OrderError):
    """Webhook payload failed signature verification."""
    status_code = 400


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str | None
    payment_intent_id: str | None = None


@dataclass(frozen=True)
class CheckoutSessionStatus:
    session_id: str
    status: str | None
    payment_status: str | None
    order_code: str | None


@dataclass(frozen=True)
class RefundSnapshot:
    refund_id: str
    amount: int
    currency: str
    status: str
    charge_id: str | None = None
    payment_intent_id: str | None = None


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class CheckoutSessionCompleted:
    event_id: str
    session_id: str
    order_id: int | None
    order_code: str | None
    payment_intent_id: str | None
    payment_status: str | None
    amount_total: int


@dataclass(frozen=True)
class PaymentIntentSucceeded:
    event_id: str
    payment_intent_id: str
    order_id: int | None
    amount_received: int
    charge_id: str | None = None


@dataclass(frozen=True)
class PaymentIntentFailed:
    event_id: str
    payment_intent_id: str
    order_id: int | None
    failure_message: str | None = None


@dataclass(frozen=True)
class ChargeRefunded:
    event_id: str
    charge_id: str
    payment_intent_id: str | None
    amount_refunded: int
    refunds: tuple[RefundSnapshot, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RefundUpdated:
    event_id: str
    refund: RefundSnapshot


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


GatewayEvent = Union[
    CheckoutSessionCompleted,
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    ChargeRefunded,
    RefundUpdated,
    UnhandledEvent,
]


def _metadata_order_id(obj: dict) -> int | None:
    raw = (obj.get("metadata") or {}).get("order_id")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _id_of(value) -> str | None:
    """Stripe fields may be an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def _refund_snapshot(obj: dict) -> RefundSnapshot:
    return RefundSnapshot(
        refund_id=obj["id"],
        amount=int(obj.get("amount") or 0),
        currency=(obj.get("currency") or "vnd").lower(),
        status=obj.get("status") or "pending",
        charge_id=_id_of(obj.get("charge")),
        payment_intent_id=_id_of(obj.get("payment_intent")),
    )


def parse_event(payload: dict) -> GatewayEvent:
    """Map a verified Stripe event dict to its typed variant."""
    event_id = payload.get("id")
    event_type = payload.get("type") or ""
    if not event_id:
        raise WebhookSignatureError("Malformed webhook event")
    obj = (payload.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        return CheckoutSessionCompleted(
            event_id=event_id,
            session_id=obj.get("id"),
            order_id=_metadata_order_id(obj),
            order_code=metadata.get("order_code") or obj.get("client_reference_id"),
            payment_intent_id=_id_of(obj.get("payment_intent")),
            payment_status=obj.get("payment_status"),
            amount_total=int(obj.get("amount_total") or 0),
        )
    if event_type == "payment_intent.succeeded":
        return PaymentIntentSucceeded(
            event_id=event_id,
            payment_intent_id=obj.get("id"),
            order_id=_metadata_order_id(obj),
            amount_received=int(obj.get("amount_received") or 0),
            charge_id=_id_of(obj.get("latest_charge")),
        )
    if event_type == "payment_intent.payment_failed":
        last_error = obj.get("last_payment_error") or {}
        return PaymentIntentFailed(
            event_id=event_id,
            payment_intent_id=obj.get("id"),
            order_id=_metadata_order_id(obj),
            failure_message=last_error.get("message"),
        )
    if event_type == "charge.refunded":
        refunds = ((obj.get("refunds") or {}).get("data")) or []
        return ChargeRefunded(
            event_id=event_id,
            charge_id=obj.get("id"),
            payment_intent_id=_id_of(obj.get("payment_intent")),
            amount_refunded=int(obj.get("amount_refunded") or 0),
            refunds=tuple(_refund_snapshot(r) for r in refunds),
        )
    if event_type == "refund.updated":
        return RefundUpdated(event_id=event_id, refund=_refund_snapshot(obj))

    return UnhandledEvent(event_id=event_id, event_type=event_type)


# =============================================================================
# GATEWAY
# =============================================================================

class PaymentGateway(ABC):
    @abstractmethod
    def create_checkout_session(
        self,
        *,
        order_id: int,
        order_code: str,
        order_type: str,
        line_items: list[dict],
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        ...

    @abstractmethod
    def create_refund(
        self,
        *,
        charge_id: str | None,
        payment_intent_id: str | None,
        amount: int,
        reason: str | None,
        metadata: dict,
    ) -> RefundSnapshot:
        ...

    @abstractmethod
    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionStatus:
        """Current gateway view of a session. Raises NotFoundError for unknown ids."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        """Return the event dict, or raise WebhookSignatureError."""


class StripeGateway(PaymentGateway):
    def __init__(self, *, secret_key: str | None, webhook_secret: str | None, currency: str = "vnd"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def _require_key(self) -> str:
        if not self.secret_key:
            raise UpstreamFailure("Stripe is not configured", code="gateway_not_configured")
        return self.secret_key

    def create_checkout_session(self, *, order_id, order_code, order_type, line_items,
                                customer_email, success_url, cancel_url) -> CheckoutSession:
        metadata = {"order_id": str(order_id), "order_code": order_code, "order_type": order_type}
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": item["name"]},
                        "unit_amount": int(item["unit_amount"]),
                    },
                    "quantity": int(item["quantity"]),
                }
                for item in line_items
            ],
            "client_reference_id": order_code,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = stripe.checkout.Session.create(api_key=self._require_key(), **params)
        except stripe.StripeError as exc:
            current_app.logger.exception("Stripe checkout session failed for order %s", order_code)
            raise UpstreamFailure("Payment gateway error") from exc
        return CheckoutSession(
            session_id=session.id,
            url=getattr(session, "url", None),
            payment_intent_id=_id_of(getattr(session, "payment_intent", None)),
        )

    def create_refund(self, *, charge_id, payment_intent_id, amount, reason, metadata) -> RefundSnapshot:
        params: dict = {"amount": int(amount), "metadata": metadata}
        if charge_id:
            params["charge"] = charge_id
        elif payment_intent_id:
            params["payment_intent"] = payment_intent_id
        else:
            raise UpstreamFailure("No captured payment to refund", code="no_charge")
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        try:
            refund = stripe.Refund.create(api_key=self._require_key(), **params)
        except stripe.StripeError as exc:
            current_app.logger.exception("Stripe refund failed (charge=%s)", charge_id)
            raise UpstreamFailure("Payment gateway error") from exc
        return RefundSnapshot(
            refund_id=refund.id,
            amount=int(refund.amount or 0),
            currency=(getattr(refund, "currency", None) or self.currency).lower(),
            status=getattr(refund, "status", None) or "pending",
            charge_id=_id_of(getattr(refund, "charge", None)) or charge_id,
            payment_intent_id=_id_of(getattr(refund, "payment_intent", None)) or payment_intent_id,
        )

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionStatus:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._require_key())
        except stripe.InvalidRequestError as exc:
            raise NotFoundError("Checkout session not found") from exc
        except stripe.StripeError as exc:
            current_app.logger.exception("Stripe session lookup failed for %s", session_id)
            raise UpstreamFailure("Payment gateway error") from exc
        return CheckoutSessionStatus(
            session_id=session.id,
            status=getattr(session, "status", None),
            payment_status=getattr(session, "payment_status", None),
            order_code=getattr(session, "client_reference_id", None),
        )

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        if not self.webhook_secret:
            raise UpstreamFailure("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise WebhookSignatureError("Malformed webhook payload") from exc
        return json.loads(payload)


def get_payment_gateway() -> PaymentGateway:
    gateway = current_app.extensions.get(PAYMENT_GATEWAY_EXTENSION)
    if gateway is None:
        gateway = StripeGateway(
            secret_key=current_app.config.get("STRIPE_SECRET_KEY"),
            webhook_secret=current_app.config.get("STRIPE_WEBHOOK_SECRET"),
            currency=current_app.config.get("STRIPE_CURRENCY", "vnd"),
        )
        current_app.extensions[PAYMENT_GATEWAY_EXTENSION] = gateway
    return gateway
