from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class User(db.Model):
    """
    Storefront customer or staff account.

    Guest checkout does not need an account; an account only gains access to
    an order through the claim flow. `is_admin` gates the back-office API.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    phone = db.Column(db.String(32), nullable=True)
    full_name = db.Column(db.String(255), nullable=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "full_name": self.full_name,
            "is_admin": self.is_admin,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at),
        }


class SessionToken(db.Model):
    """
    Opaque bearer session.

    SECURITY NOTES:
    - Tokens stored hashed in database (SHA-256)
    - 24-hour absolute timeout
    - Revocable on logout
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_user_active", "user_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Token hash (never store plaintext tokens!)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_used_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime, nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
        }
