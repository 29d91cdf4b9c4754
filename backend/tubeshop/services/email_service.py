# Overview: Best-effort transactional email with a per-attempt audit log.

"""
Email Notifications

WHY: Customers get a confirmation (with their tracking link), status
updates, cancellation and refund notices; the shop gets change requests.

RULES:
- Sending is best-effort. No function here raises to its caller; a failed
  email never fails the cancellation, claim or refund it follows.
- Every attempt is recorded in order_emails with status sent, failed or
  skipped_no_email.
- Delivery goes through the EmailSender in
  `current_app.extensions[EMAIL_SENDER_EXTENSION]` (Resend HTTP API by
  default) so tests can record messages instead.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Order, OrderChangeRequest, OrderEmail
from . import vietqr_service


EMAIL_SENDER_EXTENSION = "tubeshop.email_sender"


class EmailDeliveryError(Exception):
    """Provider rejected the message or could not be reached."""


class EmailSender(ABC):
    @abstractmethod
    def send(self, *, to: str, subject: str, text: str) -> str | None:
        """Deliver one message. Returns the provider message id."""


class ResendEmailSender(EmailSender):
    """Resend HTTP API (https://resend.com/docs/api-reference/emails/send-email)."""

    def __init__(self, *, api_key: str | None, api_url: str, from_address: str, timeout: float = 10.0):
        self.api_key = api_key
        self.api_url = api_url
        self.from_address = from_address
        self.timeout = timeout

    def send(self, *, to: str, subject: str, text: str) -> str | None:
        if not self.api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured")
        try:
            response = httpx.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.from_address, "to": [to], "subject": subject, "text": text},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Email provider unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise EmailDeliveryError(
                f"Email provider returned {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json().get("id")
        except ValueError:
            return None


def get_email_sender() -> EmailSender:
    sender = current_app.extensions.get(EMAIL_SENDER_EXTENSION)
    if sender is None:
        sender = ResendEmailSender(
            api_key=current_app.config.get("RESEND_API_KEY"),
            api_url=current_app.config.get("RESEND_API_URL", "https://api.resend.com/emails"),
            from_address=current_app.config.get("EMAIL_FROM", "orders@tubeshop.local"),
        )
        current_app.extensions[EMAIL_SENDER_EXTENSION] = sender
    return sender


def format_vnd(amount: int | None) -> str:
    return f"{int(amount or 0):,}".replace(",", ".") + " VND"


def _record(order_id: int, email_type: str, recipient: str | None, status: str, *,
            provider_message_id: str | None = None, error_message: str | None = None) -> None:
    try:
        db.session.add(OrderEmail(
            order_id=order_id,
            email_type=email_type,
            recipient=recipient,
            status=status,
            provider_message_id=provider_message_id,
            error_message=error_message,
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to record %s email for order %s", email_type, order_id)


def _send(order: Order, email_type: str, recipient: str | None, subject: str, text: str) -> str:
    """Send and log one email. Returns the recorded status."""
    order_id, order_code = order.id, order.order_code
    if not recipient:
        _record(order_id, email_type, None, "skipped_no_email")
        return "skipped_no_email"

    try:
        message_id = get_email_sender().send(to=recipient, subject=subject, text=text)
    except Exception as exc:
        current_app.logger.warning(
            "Failed to send %s email for order %s: %s", email_type, order_code, exc
        )
        _record(order_id, email_type, recipient, "failed", error_message=str(exc)[:500])
        return "failed"

    _record(order_id, email_type, recipient, "sent", provider_message_id=message_id)
    return "sent"


def _greeting(order: Order) -> str:
    if order.locale == "en":
        return f"Hello {order.customer_name},"
    return f"Xin chao {order.customer_name},"


# =============================================================================
# MESSAGES
# =============================================================================

def send_order_confirmation(order: Order, *, tracking_url: str) -> str:
    lines = [
        _greeting(order),
        "",
        f"Thank you for your order {order.order_code}.",
        f"Total: {format_vnd(order.total)}",
    ]
    if order.is_deposit_order:
        lines.append(f"Deposit due: {format_vnd(order.deposit_amount)}")
        if order.deposit_due_at:
            lines.append(f"Please pay the deposit before {order.deposit_due_at:%Y-%m-%d %H:%M} UTC.")
        if order.bank_transfer_memo:
            lines.append(f"Bank transfer memo: {order.bank_transfer_memo}")
        bank = vietqr_service.payment_details(order)
        if bank:
            lines.append(f"Transfer to: {bank['bankName']} {bank['accountNumber']} ({bank['accountName']})")
            lines.append(f"Scan to pay: {bank['qrImageUrl']}")
    lines += ["", f"Track your order: {tracking_url}"]
    return _send(
        order, "order_confirmation", order.customer_email,
        f"Order confirmation {order.order_code}", "\n".join(lines),
    )


def send_status_update(order: Order, *, note: str | None = None) -> str:
    lines = [_greeting(order), "", f"Order {order.order_code} is now: {order.status}."]
    if note:
        lines += ["", note]
    return _send(
        order, "status_update", order.customer_email,
        f"Order {order.order_code} update", "\n".join(lines),
    )


def send_cancellation(order: Order, *, reason: str | None = None) -> str:
    lines = [_greeting(order), "", f"Order {order.order_code} has been cancelled."]
    if reason:
        lines.append(f"Reason: {reason}")
    return _send(
        order, "cancellation", order.customer_email,
        f"Order {order.order_code} cancelled", "\n".join(lines),
    )


def send_change_request_notification(order: Order, change_request: OrderChangeRequest) -> str:
    text = "\n".join([
        f"Change request for order {order.order_code}",
        f"Customer: {order.customer_name} ({order.customer_email or order.customer_phone})",
        f"Category: {change_request.category}",
        "",
        change_request.message,
    ])
    return _send(
        order, "change_request", current_app.config.get("ADMIN_NOTIFICATION_EMAIL"),
        f"[Change request] {order.order_code}", text,
    )


def send_refund(order: Order, *, amount: int, is_partial: bool) -> str:
    kind = "partial refund" if is_partial else "refund"
    text = "\n".join([
        _greeting(order),
        "",
        f"A {kind} of {format_vnd(amount)} for order {order.order_code} has been processed.",
    ])
    return _send(order, "refund", order.customer_email, f"Refund for {order.order_code}", text)


def send_deposit_approved(order: Order) -> str:
    text = "\n".join([
        _greeting(order),
        "",
        f"We received your deposit for order {order.order_code}. Your reservation is confirmed.",
        f"Remaining balance: {format_vnd(order.remaining_amount)}",
    ])
    return _send(
        order, "deposit_approved", order.customer_email,
        f"Deposit confirmed for {order.order_code}", text,
    )


def send_deposit_rejected(order: Order, *, note: str | None = None) -> str:
    lines = [
        _greeting(order),
        "",
        f"We could not verify the transfer receipt for order {order.order_code}.",
        "Please upload a new receipt from your tracking page.",
    ]
    if note:
        lines += ["", note]
    return _send(
        order, "deposit_rejected", order.customer_email,
        f"Deposit receipt for {order.order_code}", "\n".join(lines),
    )
