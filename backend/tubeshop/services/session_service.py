# Overview: Opaque bearer sessions, hashed at rest with an absolute timeout.

"""
Session Token Management

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage
- 24-hour absolute timeout (SESSION_ABSOLUTE_TIMEOUT)
- Revocable on logout
"""

import hashlib
import secrets
from datetime import timedelta

from ..extensions import db
from ..models import SessionToken, User
from ..time_utils import utcnow


SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy); sent to the client, never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    SHA-256 hex digest for storage.

    WHY SHA-256 not bcrypt: Tokens are already high-entropy (unlike passwords).
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(
    user: User,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """Returns (session_record, plaintext_token)."""
    plaintext_token = generate_token()
    now = utcnow()
    session = SessionToken(
        user_id=user.id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + SESSION_ABSOLUTE_TIMEOUT,
        user_agent=(user_agent or "")[:512] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, plaintext_token


def validate_session(token: str) -> User | None:
    """
    The session's user, or None if the token is unknown, revoked, expired,
    or belongs to a deactivated account.
    """
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token), is_revoked=False
    ).first()
    if not session:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None

    user = session.user
    if not user or not user.is_active:
        session.is_revoked = True
        session.revoked_at = now
        session.revoked_reason = "User account deactivated"
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()
    return user


def revoke_session(token: str, reason: str = "User logout") -> bool:
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token), is_revoked=False
    ).first()
    if not session:
        return False
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()
    return True


def cleanup_expired_sessions(retention_days: int = 30) -> int:
    """Delete sessions that expired or were revoked more than retention_days ago."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SessionToken).filter(
        db.or_(SessionToken.expires_at < utcnow(), SessionToken.is_revoked.is_(True)),
        SessionToken.created_at < cutoff,
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
