# Overview: Storefront catalog routes; parses query args and returns JSON responses.

from flask import Blueprint, current_app, jsonify, request

from ..errors import OrderError, http_error
from ..services import catalog_service

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _bool_arg(name: str) -> bool:
    return (request.args.get(name) or "").lower() in ("1", "true", "yes")


@products_bp.get("")
def list_products_route():
    """
    List active products.

    Query params:
    - category, brand: exact match
    - min_price, max_price: integer VND bounds
    - in_stock: true to hide sold-out products
    - q: search in name, sku and brand
    - sort: newest (default), price_asc, price_desc, name
    - page, per_page: pagination (default 20, max 100)
    """
    try:
        result = catalog_service.list_products(
            category=request.args.get("category") or None,
            brand=request.args.get("brand") or None,
            min_price=request.args.get("min_price", type=int),
            max_price=request.args.get("max_price", type=int),
            in_stock=_bool_arg("in_stock"),
            q=request.args.get("q") or None,
            sort=request.args.get("sort") or None,
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
        return jsonify(result), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        current_app.logger.exception("Failed to list products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<slug>")
def get_product_route(slug: str):
    try:
        product = catalog_service.get_product_by_slug(slug)
        return jsonify({"product": product.to_dict()}), 200
    except OrderError as e:
        return http_error(e)
    except Exception:
        current_app.logger.exception("Failed to load product %s", slug)
        return jsonify({"error": "Internal server error"}), 500
