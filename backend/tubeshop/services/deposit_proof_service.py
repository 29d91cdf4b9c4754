# Overview: Bank transfer deposit proof upload and admin review workflow.

"""
Deposit Proof Workflow

STATES (per proof): pending -> approved | rejected
Per order: none -> pending -> approved, or rejected -> pending (re-upload)

UPLOAD RULES:
- order is a deposit reservation paid by bank transfer
- payment_status is deposit_pending, deadline not passed, order not
  cancelled/expired
- no proof currently pending (also enforced by a partial unique index)
- 1..3 files, each <= 5MB, JPEG/PNG/WEBP by declared type AND file signature

ROLLBACK: files of one submission are all removed if any file or the
database insert fails, so no stored file outlives a missing proof row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import InvalidStateError, NotFoundError, OrderError, UpstreamFailure, ValidationError
from ..extensions import db
from ..models import DepositTransferProof, Order
from ..time_utils import utcnow
from . import email_service, order_lifecycle_service
from .concurrency import compare_and_set
from .storage_service import StorageError, get_proof_storage


MAX_FILES = 3
MAX_FILE_SIZE = 5 * 1024 * 1024
ALLOWED_TYPES = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}
NOTE_MAX_LENGTH = 1000


@dataclass(frozen=True)
class UploadedFile:
    filename: str | None
    content_type: str | None
    data: bytes


def sniff_image_type(data: bytes) -> str | None:
    """Content type from the file signature, or None if not an allowed image."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def pending_proof(order: Order) -> DepositTransferProof | None:
    return (
        db.session.query(DepositTransferProof)
        .filter_by(order_id=order.id, status="pending")
        .first()
    )


def latest_proof(order: Order) -> DepositTransferProof | None:
    return (
        db.session.query(DepositTransferProof)
        .filter_by(order_id=order.id)
        .order_by(DepositTransferProof.submitted_at.desc(), DepositTransferProof.id.desc())
        .first()
    )


def list_proofs(order: Order) -> list[DepositTransferProof]:
    return (
        db.session.query(DepositTransferProof)
        .filter_by(order_id=order.id)
        .order_by(DepositTransferProof.submitted_at.desc(), DepositTransferProof.id.desc())
        .all()
    )


def can_upload(order: Order, *, now: datetime | None = None) -> tuple[bool, str | None]:
    now = now or utcnow()
    if order.order_type != "deposit_reservation":
        return False, "Not a deposit reservation order"
    if order.payment_method != "bank_transfer":
        return False, "Not a bank transfer order"
    if order.payment_status != "deposit_pending":
        return False, "Deposit already processed or order cancelled"
    if order.status in ("cancelled", "expired"):
        return False, "Order is cancelled or expired"
    if order.deposit_due_at is not None and order.deposit_due_at < now:
        return False, "Deposit deadline has passed"
    if pending_proof(order) is not None:
        return False, "Proof already submitted and pending review"
    return True, None


def validate_files(files: list[UploadedFile]) -> None:
    if not files:
        raise ValidationError("No files provided", code="no_files")
    if len(files) > MAX_FILES:
        raise ValidationError(f"Maximum {MAX_FILES} files allowed", code="too_many_files")
    for f in files:
        if f.content_type not in ALLOWED_TYPES:
            raise ValidationError(
                f"Invalid file type: {f.content_type}. Allowed: JPG, PNG, WEBP", code="invalid_type"
            )
        if len(f.data) > MAX_FILE_SIZE:
            raise ValidationError("File too large. Maximum 5MB per file", code="file_too_large")
        if not f.data:
            raise ValidationError("Empty file", code="invalid_type")
        if sniff_image_type(f.data) != f.content_type:
            raise ValidationError("File content does not match its type", code="invalid_type")


def submit_proof(order: Order, files: list[UploadedFile], *, note: str | None = None) -> DepositTransferProof:
    """
    Store a submission and create its pending proof row.

    Raises:
        InvalidStateError: order does not accept uploads right now
        ValidationError: file count, type or size rejected
        UpstreamFailure: storage failed (already-stored files removed)
    """
    allowed, reason = can_upload(order)
    if not allowed:
        raise InvalidStateError(reason, code="cannot_upload", status_code=400)
    validate_files(files)

    if note is not None:
        note = note.strip() or None
        if note and len(note) > NOTE_MAX_LENGTH:
            raise ValidationError(f"note exceeds max length {NOTE_MAX_LENGTH}")

    storage = get_proof_storage()
    stamp = utcnow().strftime("%Y%m%d%H%M%S%f")
    stored_paths: list[str] = []
    urls: list[str] = []
    order_id, order_code = order.id, order.order_code

    try:
        for i, f in enumerate(files):
            path = f"{order_id}/{stamp}-{i}.{ALLOWED_TYPES[f.content_type]}"
            urls.append(storage.save(path, f.data, f.content_type))
            stored_paths.append(path)
    except StorageError as exc:
        storage.delete(stored_paths)
        current_app.logger.error("Proof upload failed for order %s: %s", order_code, exc)
        raise UpstreamFailure("Failed to upload file", code="upload_failed") from exc

    proof = DepositTransferProof(
        order_id=order_id,
        image_urls=urls,
        storage_paths=stored_paths,
        customer_note=note,
        status="pending",
        submitted_at=utcnow(),
    )
    try:
        db.session.add(proof)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        storage.delete(stored_paths)
        raise InvalidStateError("Proof already submitted and pending review", code="cannot_upload") from exc
    except SQLAlchemyError:
        db.session.rollback()
        storage.delete(stored_paths)
        raise

    current_app.logger.info("Deposit proof %s submitted for order %s", proof.id, order_code)
    return proof


def review_proof(
    order: Order,
    *,
    proof_id,
    action: str,
    note: str | None = None,
    admin_user_id: int,
) -> DepositTransferProof:
    """
    Approve or reject a pending proof.

    Approval confirms the deposit (payment deposited, status deposited) in
    the same commit as the proof update; rejection re-opens uploads.
    """
    if action not in ("approve", "reject"):
        raise ValidationError("action must be 'approve' or 'reject'")
    proof = db.session.get(DepositTransferProof, proof_id) if isinstance(proof_id, int) else None
    if proof is None or proof.order_id != order.id:
        raise NotFoundError("Proof not found")
    if proof.status != "pending":
        raise InvalidStateError(f"Proof is already {proof.status}", status_code=400)

    new_status = "approved" if action == "approve" else "rejected"
    won = compare_and_set(
        DepositTransferProof,
        proof.id,
        expected={"status": "pending"},
        values={
            "status": new_status,
            "review_note": note,
            "reviewed_by_user_id": admin_user_id,
            "reviewed_at": utcnow(),
        },
    )
    if not won:
        db.session.rollback()
        raise InvalidStateError("Proof was reviewed concurrently", code="concurrent_update")

    if action == "approve":
        try:
            order_lifecycle_service.mark_deposit_received(
                order,
                note=note or "Deposit transfer proof approved",
                changed_by_user_id=admin_user_id,
            )
        except OrderError:
            db.session.rollback()
            raise
        db.session.refresh(proof)
        email_service.send_deposit_approved(order)
    else:
        db.session.commit()
        db.session.refresh(proof)
        email_service.send_deposit_rejected(order, note=note)

    current_app.logger.info("Deposit proof %s %s for order %s", proof.id, new_status, order.order_code)
    return proof
