from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


class DepositTransferProof(db.Model):
    """
    Bank transfer receipt submitted by a customer for a deposit reservation.

    STATES: pending -> approved | rejected. A rejected proof allows a new
    submission; at most one proof per order may be pending (partial unique
    index below).
    """
    __tablename__ = "deposit_transfer_proofs"
    __table_args__ = (
        db.Index(
            "uq_deposit_proofs_one_pending",
            "order_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    image_urls = db.Column(db.JSON, nullable=False, default=list)
    storage_paths = db.Column(db.JSON, nullable=False, default=list)
    customer_note = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")
    review_note = db.Column(db.Text, nullable=True)
    reviewed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)

    submitted_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self, *, include_paths: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "image_urls": list(self.image_urls or []),
            "customer_note": self.customer_note,
            "status": self.status,
            "review_note": self.review_note,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "submitted_at": to_utc_z(self.submitted_at),
        }
        if include_paths:
            data["storage_paths"] = list(self.storage_paths or [])
        return data
