# Overview: Request authentication decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, g, jsonify, request

from .services import session_service


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def require_auth(f):
    """
    Require a valid session token.

    Sets g.current_user to the authenticated User.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, revoked or expired token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if token is None:
            return jsonify({"error": "Authentication required"}), 401

        user = session_service.validate_session(token)
        if user is None:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """
    Require an admin account. Must be applied after @require_auth.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = getattr(g, "current_user", None)
        if user is None:
            return jsonify({"error": "Authentication required"}), 401
        if not user.is_admin:
            current_app.logger.warning(
                "Non-admin user %s denied access to %s %s", user.id, request.method, request.path
            )
            return jsonify({"error": "Admin access required"}), 403
        return f(*args, **kwargs)

    return decorated_function


def require_cron_secret(f):
    """
    Require "Authorization: Bearer <CRON_SECRET>".

    An unset CRON_SECRET disables the endpoint entirely (always 401).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        token = _bearer_token()
        if not expected or token is None or not hmac.compare_digest(token, expected):
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return decorated_function
