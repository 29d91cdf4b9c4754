# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/tubeshop/routes/admin.py
"""
Admin back-office routes.

Provides endpoints for:
- Product management (create, update, images)
- Order management (list, detail, status, deposits, refunds)

All endpoints require an authenticated admin session.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin, require_auth
from ..errors import OrderError, ValidationError, http_error
from ..models import Product
from ..services import (
    admin_order_service,
    catalog_service,
    deposit_proof_service,
    order_lifecycle_service,
    refund_service,
)
from ..validation import enforce_rules_product, optional_text, validate_payload

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _internal_error(message: str, *args):
    current_app.logger.exception(message, *args)
    return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PRODUCT MANAGEMENT
# =============================================================================

@admin_bp.get("/products")
@require_auth
@require_admin
def list_products_route():
    """Same filters as the storefront listing, including inactive products."""
    try:
        result = catalog_service.list_products(
            category=request.args.get("category") or None,
            brand=request.args.get("brand") or None,
            q=request.args.get("q") or None,
            sort=request.args.get("sort") or None,
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
            include_inactive=True,
        )
        return jsonify(result), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to list admin products")


@admin_bp.post("/products")
@require_auth
@require_admin
def create_product_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=Product, payload=payload, policy=catalog_service.PRODUCT_POLICY, partial=False
        )
        enforce_rules_product(patch)
        created = catalog_service.create_product(patch=patch)
        current_app.logger.info("Product %s created by admin %s", created["sku"], g.current_user.id)
        return jsonify({"product": created}), 201
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to create product")


@admin_bp.patch("/products/<int:product_id>")
@require_auth
@require_admin
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=Product, payload=payload, policy=catalog_service.PRODUCT_POLICY, partial=True
        )
        product = catalog_service.get_product(product_id)
        enforce_rules_product(patch, current=catalog_service.current_rule_values(product))
        updated = catalog_service.update_product(product_id=product_id, patch=patch)
        return jsonify({"product": updated}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to update product %s", product_id)


@admin_bp.post("/products/<int:product_id>/images")
@require_auth
@require_admin
def add_product_image_route(product_id: int):
    """Request body: {"url": "...", "altText": "..."}. Appended at the end."""
    data = request.get_json(silent=True) or {}
    try:
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ValidationError("url is required")
        image = catalog_service.add_product_image(
            product_id, url=url, alt_text=optional_text(data, "altText", max_length=255)
        )
        return jsonify({"image": image}), 201
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to add image to product %s", product_id)


@admin_bp.delete("/products/<int:product_id>/images/<int:image_id>")
@require_auth
@require_admin
def delete_product_image_route(product_id: int, image_id: int):
    try:
        catalog_service.delete_product_image(product_id, image_id)
        return jsonify({"ok": True}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to delete image %s of product %s", image_id, product_id)


@admin_bp.put("/products/<int:product_id>/images/reorder")
@require_auth
@require_admin
def reorder_product_images_route(product_id: int):
    """Request body: {"imageIds": [3, 1, 2]}. The first id becomes primary."""
    data = request.get_json(silent=True) or {}
    try:
        images = catalog_service.reorder_product_images(product_id, data.get("imageIds"))
        return jsonify({"images": images}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to reorder images of product %s", product_id)


# =============================================================================
# ORDER MANAGEMENT
# =============================================================================

@admin_bp.get("/orders")
@require_auth
@require_admin
def list_orders_route():
    """
    Query params:
    - status, payment_status, order_type: exact filters
    - q: search order code, customer name, email or phone
    - page, per_page: pagination (default 20, max 100)
    """
    try:
        result = admin_order_service.list_orders(
            status=request.args.get("status") or None,
            payment_status=request.args.get("payment_status") or None,
            order_type=request.args.get("order_type") or None,
            q=request.args.get("q") or None,
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
        return jsonify(result), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to list orders")


@admin_bp.get("/orders/<order_code>")
@require_auth
@require_admin
def get_order_route(order_code: str):
    try:
        order = admin_order_service.get_order_or_404(order_code)
        return jsonify({"order": admin_order_service.order_detail(order)}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to load order %s", order_code)


@admin_bp.post("/orders/<order_code>/status")
@require_auth
@require_admin
def update_order_status_route(order_code: str):
    """Request body: {"status": "shipped", "note": "..."}"""
    data = request.get_json(silent=True) or {}
    try:
        order = admin_order_service.get_order_or_404(order_code)
        to_status = data.get("status")
        if not isinstance(to_status, str) or not to_status:
            raise ValidationError("status is required")
        order = order_lifecycle_service.admin_update_status(
            order,
            to_status,
            note=optional_text(data, "note", max_length=2000),
            admin_user_id=g.current_user.id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to update status of order %s", order_code)


@admin_bp.post("/orders/<order_code>/deposit-received")
@require_auth
@require_admin
def deposit_received_route(order_code: str):
    data = request.get_json(silent=True) or {}
    try:
        order = admin_order_service.get_order_or_404(order_code)
        order = order_lifecycle_service.mark_deposit_received(
            order,
            note=optional_text(data, "note", max_length=2000) or "Deposit received (confirmed by admin)",
            changed_by_user_id=g.current_user.id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to confirm deposit of order %s", order_code)


@admin_bp.get("/orders/<order_code>/deposit-proof")
@require_auth
@require_admin
def list_deposit_proofs_route(order_code: str):
    try:
        order = admin_order_service.get_order_or_404(order_code)
        proofs = deposit_proof_service.list_proofs(order)
        return jsonify({"proofs": [p.to_dict(include_paths=True) for p in proofs]}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to list deposit proofs of order %s", order_code)


@admin_bp.post("/orders/<order_code>/deposit-proof")
@require_auth
@require_admin
def review_deposit_proof_route(order_code: str):
    """Request body: {"action": "approve"|"reject", "proofId": 1, "note": "..."}"""
    data = request.get_json(silent=True) or {}
    try:
        order = admin_order_service.get_order_or_404(order_code)
        proof = deposit_proof_service.review_proof(
            order,
            proof_id=data.get("proofId"),
            action=data.get("action"),
            note=optional_text(data, "note", max_length=1000),
            admin_user_id=g.current_user.id,
        )
        return jsonify({"proof": proof.to_dict(), "order": order.to_dict()}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        return _internal_error("Failed to review deposit proof of order %s", order_code)


@admin_bp.post("/orders/<order_code>/refund")
@require_auth
@require_admin
def refund_order_route(order_code: str):
    """
    Request body (all optional): {"amount": 500000, "reason": "...",
    "restock": false, "note": "..."}

    Omitting amount refunds the whole remaining balance. The final refund
    state arrives later by webhook; this only records a pending refund.
    """
    data = request.get_json(silent=True) or {}
    try:
        order = admin_order_service.get_order_or_404(order_code)
        restock = data.get("restock", False)
        if not isinstance(restock, bool):
            raise ValidationError("restock must be a boolean")
        result = refund_service.request_refund(
            order,
            amount=data.get("amount"),
            reason=optional_text(data, "reason", max_length=64),
            restock=restock,
            note=optional_text(data, "note", max_length=2000),
            admin_user_id=g.current_user.id,
        )
        return jsonify(result), 200
    except OrderError as e:
        if e.status_code >= 500:
            current_app.logger.error("Refund for order %s failed upstream: %s", order_code, e.message)
        return http_error(e)
    except Exception:
        return _internal_error("Failed to refund order %s", order_code)
