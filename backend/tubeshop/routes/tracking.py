# Overview: Guest order tracking and customer self-service routes.

# backend/tubeshop/routes/tracking.py
"""
Guest order routes.

AUTH MODEL:
- /order/track: order code + email or phone (rate limited per client IP)
- everything else: order code + tracking token from the confirmation email
- /order/claim additionally requires a logged-in account

ENUMERATION DEFENSE: lookups answer one byte-identical 404 for an unknown
code and for a wrong contact, token or expired token.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import OrderError, http_error
from ..services import (
    deposit_proof_service,
    order_lifecycle_service,
    rate_limit_service,
    tracking_service,
    vietqr_service,
)
from ..services.deposit_proof_service import UploadedFile
from ..time_utils import to_utc_z

tracking_bp = Blueprint("tracking", __name__, url_prefix="/api/order")


def _token_from_request(data: dict | None = None) -> str | None:
    """Bearer header first, then body "token", then the ?t= query arg."""
    auth_header = request.headers.get("Authorization") or ""
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    if data and isinstance(data.get("token"), str) and data["token"]:
        return data["token"]
    return request.args.get("t") or None


def _internal_error(message: str, *args):
    current_app.logger.exception(message, *args)
    return jsonify({"error": "Internal server error"}), 500


@tracking_bp.post("/track")
def track_order_route():
    """Request body: {"orderCode": "...", "emailOrPhone": "..."}"""
    data = request.get_json(silent=True) or {}
    try:
        rate_limit_service.enforce_track_lookup_limit(rate_limit_service.client_ip())
        order = tracking_service.lookup(data.get("orderCode"), data.get("emailOrPhone"))
        return jsonify({"order": tracking_service.order_view(order)}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Order lookup failed")


@tracking_bp.get("/track-token")
def track_order_by_token_route():
    """Query params: code, t (tracking token)."""
    code = request.args.get("code")
    try:
        order = tracking_service.order_for_token(
            code, request.args.get("t"), message=tracking_service.INVALID_TRACKING_LINK
        )
        return jsonify({"order": tracking_service.order_view(order)}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Token lookup failed for %s", code)


@tracking_bp.post("/cancel/<order_code>")
def cancel_order_route(order_code: str):
    """Request body: {"token": "...", "reason": "..."} (reason is mandatory)"""
    data = request.get_json(silent=True) or {}
    try:
        order = tracking_service.authorize_token_action(order_code, _token_from_request(data))
        order = order_lifecycle_service.cancel_by_customer(order, data.get("reason"))
        return jsonify({"success": True, "order": tracking_service.order_view(order)}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Cancellation failed for %s", order_code)


@tracking_bp.post("/change-request/<order_code>")
def change_request_route(order_code: str):
    """
    Request body: {"token": "...", "message": "...", "category": "address"}

    Logged and forwarded to the shop; the order itself is not changed.
    """
    data = request.get_json(silent=True) or {}
    try:
        order = tracking_service.authorize_token_action(order_code, _token_from_request(data))
        change_request = order_lifecycle_service.submit_change_request(
            order, message=data.get("message"), category=data.get("category")
        )
        return jsonify({"success": True, "changeRequest": change_request.to_dict()}), 201
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Change request failed for %s", order_code)


@tracking_bp.get("/upload-proof/<order_code>")
def upload_proof_status_route(order_code: str):
    """Latest proof summary plus whether a new upload is accepted right now."""
    try:
        order = tracking_service.authorize_token_action(order_code, _token_from_request())
        allowed, reason = deposit_proof_service.can_upload(order)
        latest = deposit_proof_service.latest_proof(order)
        return jsonify({
            "canUpload": allowed,
            "reason": reason,
            "latestProof": {
                "id": latest.id,
                "status": latest.status,
                "imageCount": len(latest.image_urls or []),
                "reviewNote": latest.review_note,
                "submittedAt": to_utc_z(latest.submitted_at),
            } if latest else None,
            "depositAmount": order.deposit_amount,
            "depositDueAt": to_utc_z(order.deposit_due_at),
            "bankTransferMemo": order.bank_transfer_memo,
            "bankTransfer": vietqr_service.payment_details(order),
        }), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Upload status failed for %s", order_code)


@tracking_bp.post("/upload-proof/<order_code>")
def upload_proof_route(order_code: str):
    """
    Multipart form: files (1-3 images, jpeg/png/webp, 5MB each), note.
    Token via Authorization: Bearer <token> or ?t=.
    """
    try:
        order = tracking_service.authorize_token_action(order_code, _token_from_request())
        files = [
            UploadedFile(filename=f.filename, content_type=f.mimetype, data=f.read())
            for f in request.files.getlist("files")
        ]
        proof = deposit_proof_service.submit_proof(order, files, note=request.form.get("note"))
        return jsonify({"success": True, "proof": proof.to_dict()}), 201
    except OrderError as e:
        if e.status_code >= 500:
            current_app.logger.error("Proof upload for %s failed upstream: %s", order_code, e.message)
        return http_error(e)
    except Exception:
        return _internal_error("Proof upload failed for %s", order_code)


@tracking_bp.post("/claim/<order_code>")
@require_auth
def claim_order_route(order_code: str):
    """
    Request body: {"claimMethod": "token_link", "token": "..."}
               or {"claimMethod": "tracking_lookup", "emailOrPhone": "..."}
    """
    data = request.get_json(silent=True) or {}
    try:
        claim_method = data.get("claimMethod")
        if claim_method == "tracking_lookup":
            rate_limit_service.enforce_track_lookup_limit(rate_limit_service.client_ip())
        order = tracking_service.claim_order(
            order_code,
            g.current_user,
            claim_method=claim_method,
            token=data.get("token"),
            contact=data.get("emailOrPhone"),
            ip_address=rate_limit_service.client_ip(),
        )
        return jsonify({"success": True, "order": tracking_service.order_view(order)}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Claim failed for %s", order_code)
