# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/tubeshop/routes/auth.py
"""
Storefront account routes.

SECURITY FEATURES:
- Password strength validation on registration
- Login throttling on repeated failures (per email)
- Opaque bearer sessions, revocable on logout
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import OrderError, http_error
from ..services import auth_service, rate_limit_service, session_service

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _session_response(user, message: str, status: int):
    session, token = session_service.create_session(
        user,
        user_agent=request.headers.get("User-Agent"),
        ip_address=rate_limit_service.client_ip(),
    )
    return jsonify({
        "user": user.to_dict(),
        "token": token,
        "session": session.to_dict(),
        "message": message,
    }), status


@auth_bp.post("/register")
def register_route():
    """Request body: {"email", "password", "fullName"?, "phone"?}"""
    data = request.get_json(silent=True) or {}
    try:
        user = auth_service.create_user(
            data.get("email"),
            data.get("password"),
            full_name=data.get("fullName"),
            phone=data.get("phone"),
        )
        return _session_response(user, "Registration successful", 201)
    except OrderError as e:
        return http_error(e)
    except Exception:
        current_app.logger.exception("Failed to register user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """
    Authenticate and create a session token.

    SECURITY:
    - Checks the failure throttle before verifying the password
    - Records failed attempts; a success clears them
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")

        if not email or not password:
            return jsonify({"error": "email and password required"}), 400

        identifier = auth_service.normalize_email(email)
        is_locked, seconds_remaining = rate_limit_service.is_login_locked(identifier)
        if is_locked:
            return jsonify({
                "error": "Account temporarily locked due to too many failed login attempts",
                "locked": True,
                "retry_after_seconds": seconds_remaining,
            }), 429

        user = auth_service.authenticate(email, password)
        if not user:
            failed_count = rate_limit_service.record_failed_login(identifier)
            remaining = rate_limit_service.MAX_FAILED_LOGINS - failed_count
            if remaining <= 0:
                return jsonify({
                    "error": "Account locked due to too many failed login attempts",
                    "locked": True,
                }), 429
            if remaining <= 3:
                return jsonify({
                    "error": "Invalid credentials",
                    "warning": f"{remaining} attempts remaining before account lockout",
                }), 401
            return jsonify({"error": "Invalid credentials"}), 401

        rate_limit_service.clear_failed_logins(identifier)
        current_app.logger.info("User %s logged in", user.id)
        return _session_response(user, "Login successful", 200)

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    """Revoke the bearer session. Expects Authorization: Bearer <token>."""
    try:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authorization header required"}), 401

        token = auth_header.split(" ", 1)[1]
        if not session_service.revoke_session(token, reason="User logout"):
            return jsonify({"error": "Invalid or expired token"}), 401

        return jsonify({"message": "Logout successful"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()}), 200
