# Overview: Storefront accounts: registration, password hashing, authentication.

"""
Authentication Service

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with at least one letter and one digit
- Session tokens managed separately (see session_service.py)
- Login throttling lives in rate_limit_service
"""

from __future__ import annotations

import re

import bcrypt

from ..errors import ValidationError, InvalidStateError
from ..extensions import db
from ..models import User
from ..time_utils import utcnow


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


def validate_password_strength(password: str) -> None:
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt check; malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def create_user(
    email: str,
    password: str,
    *,
    full_name: str | None = None,
    phone: str | None = None,
    is_admin: bool = False,
) -> User:
    """
    Raises:
        ValidationError: malformed email or weak password
        InvalidStateError: email already registered (409)
    """
    email = normalize_email(email)
    if not EMAIL_RE.match(email):
        raise ValidationError("A valid email is required")

    if db.session.query(User).filter_by(email=email).first():
        raise InvalidStateError("Email is already registered", code="email_taken")

    user = User(
        email=email,
        full_name=(full_name or "").strip() or None,
        phone=(phone or "").strip() or None,
        password_hash=hash_password(password),
        is_admin=is_admin,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """Returns the active user for valid credentials, else None."""
    user = db.session.query(User).filter_by(email=normalize_email(email)).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password or "", user.password_hash):
        return None
    user.last_login_at = utcnow()
    db.session.commit()
    return user
