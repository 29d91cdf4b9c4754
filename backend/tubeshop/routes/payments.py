# Overview: Stripe checkout, session status and webhook routes.

# backend/tubeshop/routes/payments.py
"""
Payment gateway routes.

SECURITY: The webhook verifies the Stripe-Signature header against the raw
request body before anything is parsed or written. Unsigned or tampered
payloads get 400 and change nothing.
"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import OrderError, http_error
from ..services import payment_service, webhook_service
from ..services.payment_gateway import get_payment_gateway, parse_event

payments_bp = Blueprint("payments", __name__, url_prefix="/api/stripe")


@payments_bp.post("/create-checkout-session")
def create_checkout_session_route():
    """Request body: {"orderCode": "..."} -> {"url": ..., "sessionId": ...}"""
    data = request.get_json(silent=True) or {}
    order_code = data.get("orderCode")
    try:
        return jsonify(payment_service.start_checkout_session(order_code)), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        current_app.logger.exception("Failed to create checkout session for %s", order_code)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/session-status")
def session_status_route():
    """?session_id=... -> {"sessionId", "status", "paymentStatus", "orderCode"}"""
    session_id = request.args.get("session_id")
    try:
        return jsonify(payment_service.checkout_session_status(session_id)), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        current_app.logger.exception("Failed to fetch checkout session %s", session_id)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/webhook")
def webhook_route():
    """
    Stripe event receiver.

    Returns 200 for every verified event (including duplicates and
    unhandled types) so Stripe stops retrying. A 500 asks Stripe to
    redeliver, which is safe because processing is keyed on the event id.
    """
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    try:
        event_dict = get_payment_gateway().verify_webhook(payload, signature)
        event = parse_event(event_dict)
        result = webhook_service.handle_event(event)
        return jsonify(result), 200
    except OrderError as e:
        if e.status_code == 400:
            current_app.logger.warning("Rejected webhook: %s", e.message)
        return http_error(e)
    except Exception:
        current_app.logger.exception("Webhook processing failed")
        return jsonify({"error": "Internal server error"}), 500
