# Overview: Scheduled job endpoints, protected by the cron bearer secret.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_cron_secret
from ..services import expiry_service

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


@cron_bp.post("/expire-deposits")
@require_cron_secret
def expire_deposits_route():
    """
    Expire deposit reservations past their due time and return their stock.

    Safe to call repeatedly and concurrently. Optional ?limit= caps the
    batch size.
    """
    try:
        result = expiry_service.sweep(limit=request.args.get("limit", type=int))
        return jsonify({"success": True, **result}), 200
    except Exception:
        current_app.logger.exception("Deposit expiry sweep failed")
        return jsonify({"error": "Internal server error"}), 500
