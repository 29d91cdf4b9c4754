# backend/tubeshop/routes/system.py
"""
System health and version endpoints.

Provides health checks for the database and the key/value store backing
tracking tokens and rate limits.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Order, Product
from ..services.kv_store import get_kv_store
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        order_count = db.session.query(Order).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"products": product_count, "orders": order_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_kv_store_health() -> dict:
    start_time = time.time()
    try:
        store = get_kv_store()
        store.set("health-check", "ok", ttl_seconds=5)
        ok = store.get("health-check") == "ok"
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy" if ok else "degraded",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"backend": type(store).__name__},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Key/value store health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Key/value store error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    kv_health = check_kv_store_health()

    all_checks = [database_health, kv_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "kv_store": kv_health,
        },
    }, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment info. Never exposes keys or credentials."""
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
