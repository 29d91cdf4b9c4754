# Overview: Pytest coverage for bank transfer deposit proofs.

"""
Deposit Proof Tests

One pending proof per order at a time, every stored file accounted for,
and an approval confirms the deposit exactly once.
"""

import io
from datetime import timedelta

import pytest

from tubeshop.errors import InvalidStateError, NotFoundError, UpstreamFailure, ValidationError
from tubeshop.models import DepositTransferProof
from tubeshop.services import deposit_proof_service
from tubeshop.services.deposit_proof_service import MAX_FILE_SIZE, UploadedFile, sniff_image_type
from tubeshop.time_utils import utcnow


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64
WEBP = b"RIFF\x00\x00\x00\x00WEBPVP8 " + b"\x00" * 32


def png(name="receipt.png", data=PNG):
    return UploadedFile(filename=name, content_type="image/png", data=data)


@pytest.fixture
def checkout(place_deposit_order):
    return place_deposit_order()


@pytest.fixture
def order(checkout):
    return checkout.order


class TestSniffImageType:
    @pytest.mark.parametrize("data, expected", [
        (PNG, "image/png"),
        (JPEG, "image/jpeg"),
        (WEBP, "image/webp"),
        (b"%PDF-1.7", None),
        (b"", None),
    ])
    def test_signatures(self, data, expected):
        assert sniff_image_type(data) == expected


# =============================================================================
# SUBMISSION
# =============================================================================

class TestSubmitProof:
    def test_creates_pending_proof(self, db_session, order, proof_storage):
        proof = deposit_proof_service.submit_proof(order, [png(), png("second.png")], note="  Paid via VCB  ")

        assert proof.status == "pending"
        assert proof.customer_note == "Paid via VCB"
        assert len(proof.image_urls) == 2
        assert all(url.startswith("/media/deposit-proofs/") for url in proof.image_urls)
        assert set(proof.storage_paths) == set(proof_storage.files)
        assert all(path.startswith(f"{order.id}/") for path in proof.storage_paths)

    def test_second_pending_proof_is_rejected(self, db_session, order):
        deposit_proof_service.submit_proof(order, [png()])

        with pytest.raises(InvalidStateError) as exc_info:
            deposit_proof_service.submit_proof(order, [png()])

        assert exc_info.value.message == "Proof already submitted and pending review"
        assert db_session.query(DepositTransferProof).count() == 1

    @pytest.mark.parametrize("files, code", [
        ([], "no_files"),
        ([png(), png(), png(), png()], "too_many_files"),
        ([UploadedFile("doc.pdf", "application/pdf", b"%PDF-1.7")], "invalid_type"),
        ([UploadedFile("fake.png", "image/png", JPEG)], "invalid_type"),
        ([UploadedFile("empty.png", "image/png", b"")], "invalid_type"),
        ([png(data=PNG + b"\x00" * MAX_FILE_SIZE)], "file_too_large"),
    ])
    def test_rejects_bad_files(self, db_session, order, proof_storage, files, code):
        with pytest.raises(ValidationError) as exc_info:
            deposit_proof_service.submit_proof(order, files)

        assert exc_info.value.code == code
        assert proof_storage.files == {}
        assert db_session.query(DepositTransferProof).count() == 0

    def test_storage_failure_removes_stored_files(self, db_session, order, proof_storage):
        proof_storage.fail_on_save = 2

        with pytest.raises(UpstreamFailure) as exc_info:
            deposit_proof_service.submit_proof(order, [png(), png("b.png"), png("c.png")])

        assert exc_info.value.code == "upload_failed"
        assert proof_storage.files == {}
        assert db_session.query(DepositTransferProof).count() == 0

    def test_non_bank_transfer_order_is_rejected(self, db_session, deposit_product, place_order):
        order = place_order(deposit_product, payment_method="stripe", payment_mode="deposit").order

        with pytest.raises(InvalidStateError) as exc_info:
            deposit_proof_service.submit_proof(order, [png()])

        assert exc_info.value.code == "cannot_upload"
        assert exc_info.value.status_code == 400

    def test_past_deadline_is_rejected(self, db_session, order):
        order.deposit_due_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        allowed, reason = deposit_proof_service.can_upload(order)

        assert allowed is False
        assert reason == "Deposit deadline has passed"


# =============================================================================
# REVIEW
# =============================================================================

class TestReviewProof:
    def test_approve_confirms_deposit(self, db_session, order, admin_user, mailer):
        proof = deposit_proof_service.submit_proof(order, [png()])

        reviewed = deposit_proof_service.review_proof(
            order, proof_id=proof.id, action="approve", note="Matched statement", admin_user_id=admin_user.id
        )

        assert reviewed.status == "approved"
        assert reviewed.reviewed_by_user_id == admin_user.id
        assert reviewed.reviewed_at is not None
        db_session.refresh(order)
        assert order.status == "deposited"
        assert order.payment_status == "deposited"
        assert mailer.messages[-1]["to"] == "guest@example.com"

    def test_reject_reopens_uploads(self, db_session, order, admin_user):
        proof = deposit_proof_service.submit_proof(order, [png()])

        deposit_proof_service.review_proof(
            order, proof_id=proof.id, action="reject", note="Blurry photo", admin_user_id=admin_user.id
        )

        db_session.refresh(order)
        assert order.payment_status == "deposit_pending"
        assert deposit_proof_service.can_upload(order) == (True, None)
        retry = deposit_proof_service.submit_proof(order, [png()])
        assert retry.status == "pending"
        assert deposit_proof_service.latest_proof(order).id == retry.id

    def test_reviewing_twice_is_rejected(self, db_session, order, admin_user):
        proof = deposit_proof_service.submit_proof(order, [png()])
        deposit_proof_service.review_proof(order, proof_id=proof.id, action="reject", admin_user_id=admin_user.id)

        with pytest.raises(InvalidStateError) as exc_info:
            deposit_proof_service.review_proof(order, proof_id=proof.id, action="approve", admin_user_id=admin_user.id)

        assert exc_info.value.status_code == 400
        db_session.refresh(order)
        assert order.status == "pending"

    def test_proof_of_another_order_is_not_found(self, db_session, order, place_deposit_order, admin_user):
        proof = deposit_proof_service.submit_proof(order, [png()])
        other = place_deposit_order().order

        with pytest.raises(NotFoundError):
            deposit_proof_service.review_proof(other, proof_id=proof.id, action="approve", admin_user_id=admin_user.id)

    def test_unknown_action(self, db_session, order, admin_user):
        proof = deposit_proof_service.submit_proof(order, [png()])
        with pytest.raises(ValidationError):
            deposit_proof_service.review_proof(order, proof_id=proof.id, action="maybe", admin_user_id=admin_user.id)


# =============================================================================
# ROUTES
# =============================================================================

class TestProofRoutes:
    def test_upload_status(self, client, db_session, checkout):
        order = checkout.order
        response = client.get(f"/api/order/upload-proof/{order.order_code}?t={checkout.tracking_token}")

        assert response.status_code == 200
        body = response.get_json()
        assert body["canUpload"] is True
        assert body["latestProof"] is None
        assert body["depositAmount"] == 3_000_000
        assert body["bankTransferMemo"] == f"RTB-{order.order_code}"
        assert body["bankTransfer"]["memo"] == body["bankTransferMemo"]
        assert body["bankTransfer"]["amount"] == 3_000_000
        assert body["bankTransfer"]["qrContent"].startswith("000201010212")
        assert body["depositDueAt"].endswith("Z")

    def test_upload_multipart(self, client, db_session, checkout):
        order = checkout.order
        response = client.post(
            f"/api/order/upload-proof/{order.order_code}",
            data={"files": [(io.BytesIO(PNG), "receipt.png", "image/png")], "note": "Transferred at 10am"},
            headers={"Authorization": f"Bearer {checkout.tracking_token}"},
            content_type="multipart/form-data",
        )

        assert response.status_code == 201
        proof = response.get_json()["proof"]
        assert proof["status"] == "pending"
        assert proof["customer_note"] == "Transferred at 10am"
        assert "storage_paths" not in proof

        status = client.get(f"/api/order/upload-proof/{order.order_code}?t={checkout.tracking_token}").get_json()
        assert status["canUpload"] is False
        assert status["latestProof"]["imageCount"] == 1

    def test_upload_requires_token(self, client, db_session, order):
        response = client.post(
            f"/api/order/upload-proof/{order.order_code}",
            data={"files": [(io.BytesIO(PNG), "receipt.png", "image/png")]},
            content_type="multipart/form-data",
        )
        assert response.status_code == 401

    def test_admin_review_route(self, client, db_session, order, admin_headers):
        proof = deposit_proof_service.submit_proof(order, [png()])

        listing = client.get(f"/api/admin/orders/{order.order_code}/deposit-proof", headers=admin_headers)
        assert listing.get_json()["proofs"][0]["storage_paths"] == proof.storage_paths

        response = client.post(
            f"/api/admin/orders/{order.order_code}/deposit-proof",
            json={"action": "approve", "proofId": proof.id},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["proof"]["status"] == "approved"
        assert body["order"]["status"] == "deposited"

    def test_customer_cannot_review(self, client, db_session, order, customer_headers):
        proof = deposit_proof_service.submit_proof(order, [png()])
        response = client.post(
            f"/api/admin/orders/{order.order_code}/deposit-proof",
            json={"action": "approve", "proofId": proof.id},
            headers=customer_headers,
        )
        assert response.status_code == 403
