# Overview: Issues and checks passwordless order tracking tokens.

"""
Order Tracking Token Service

WHY: Guests receive a link in their confirmation email that grants access
to one order without an account. The link carries an opaque token that
proves the requester received that email.

SECURITY FEATURES:
- 32 random bytes (256 bits) from `secrets`, base64url encoded
- Only a peppered SHA-256 digest is stored; the plaintext token never is
- Storage key and stored value both carry the order id, so a token issued
  for order A never validates for order B
- Expiry is checked against the stored expires_at on every validation,
  so correctness does not depend on store cleanup having run

DESIGN:
- Multiple live tokens per order are allowed (every email link keeps
  working until it expires)
- Entries live in the injected KeyValueStore; they outlive expires_at by
  EXPIRED_RETENTION so "expired" can be told apart from "invalid" in logs
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Order
from ..time_utils import utcnow
from .kv_store import get_kv_store


TOKEN_BYTES = 32
KEY_PREFIX = "order-tracking-token"
EXPIRED_RETENTION = timedelta(days=1)


class TokenCheck(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    UNKNOWN_ORDER = "unknown_order"


def token_ttl() -> timedelta:
    return timedelta(days=current_app.config.get("TRACKING_TOKEN_TTL_DAYS", 7))


def generate_token() -> str:
    """43-character base64url string carrying 256 bits of entropy."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """Peppered SHA-256 hex digest of a plaintext token."""
    pepper = current_app.config.get("ORDER_TRACKING_TOKEN_PEPPER") or ""
    return hashlib.sha256(f"{pepper}:{token}".encode("utf-8")).hexdigest()


def _key(order_id: int, token_hash: str) -> str:
    return f"{KEY_PREFIX}:{order_id}:{token_hash}"


def issue(order_id: int, *, now: datetime | None = None) -> str:
    """
    Create a new tracking token for an order and return the plaintext.

    Existing tokens for the order are left valid.
    """
    now = now or utcnow()
    ttl = token_ttl()
    token = generate_token()
    token_hash = hash_token(token)
    expires_at = now + ttl

    get_kv_store().set(
        _key(order_id, token_hash),
        {
            "order_id": order_id,
            "token_hash": token_hash,
            "expires_at": expires_at.isoformat(),
        },
        ttl_seconds=(ttl + EXPIRED_RETENTION).total_seconds(),
    )
    return token


def check(order_id: int | None, token: str | None, *, now: datetime | None = None) -> TokenCheck:
    """
    Classify a token presented for an order.

    Callers must surface the same generic error for every result other
    than VALID.
    """
    if order_id is None or db.session.get(Order, order_id) is None:
        return TokenCheck.UNKNOWN_ORDER
    if not token or not isinstance(token, str):
        return TokenCheck.INVALID

    token_hash = hash_token(token.strip())
    entry = get_kv_store().get(_key(order_id, token_hash))
    if not entry:
        return TokenCheck.INVALID

    if entry.get("order_id") != order_id or not hmac.compare_digest(entry.get("token_hash", ""), token_hash):
        return TokenCheck.INVALID

    now = now or utcnow()
    expires_at = datetime.fromisoformat(entry["expires_at"])
    if now >= expires_at:
        return TokenCheck.EXPIRED
    return TokenCheck.VALID


def validate(order_id: int | None, token: str | None, *, now: datetime | None = None) -> bool:
    return check(order_id, token, now=now) is TokenCheck.VALID


def build_tracking_url(order_code: str, token: str) -> str:
    site_url = (current_app.config.get("SITE_URL") or "").rstrip("/")
    return f"{site_url}/order/track/{order_code}?t={token}"
