# Overview: Checkout and account order routes.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import OrderError, http_error
from ..extensions import db
from ..models import Order
from ..services import checkout_service, vietqr_service
from ..services.tracking_service import order_view

orders_bp = Blueprint("orders", __name__, url_prefix="/api")


@orders_bp.post("/orders")
def create_order_route():
    """
    Place an order (guest checkout).

    Request body:
    {
        "items": [{"productId": 1, "quantity": 2}],
        "customerInfo": {"fullName": "...", "phone": "...", "email": "..."},
        "shippingAddress": {"addressLine": "...", "city": "...", "district": "..."},
        "paymentMethod": "cod" | "bank_transfer" | "stripe",
        "paymentMode": "full" | "deposit" | "cod",
        "note": "..."
    }

    The tracking link is returned once here and mailed with the
    confirmation; the raw token is never stored.
    """
    payload = request.get_json(silent=True)
    try:
        result = checkout_service.create_order(payload)
        order = result.order
        return jsonify({
            "orderCode": order.order_code,
            "trackingUrl": result.tracking_url,
            "trackingToken": result.tracking_token,
            "order": order_view(order),
            "bankTransfer": vietqr_service.payment_details(order),
        }), 201
    except OrderError as e:
        return http_error(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/account/orders")
@require_auth
def account_orders_route():
    """Orders claimed by the current user, newest first."""
    try:
        orders = (
            db.session.query(Order)
            .filter(Order.user_id == g.current_user.id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )
        return jsonify({"items": [order_view(o) for o in orders], "count": len(orders)}), 200
    except Exception:
        current_app.logger.exception("Failed to list orders for user %s", g.current_user.id)
        return jsonify({"error": "Internal server error"}), 500
