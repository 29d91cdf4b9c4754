"""
Pytest fixtures for TubeShop backend tests.

Provides the app and database setup, in-memory replacements for the
payment gateway, email provider, proof storage and key/value store, and
factories for products, orders and accounts.
"""

import json

import pytest

from tubeshop import create_app
from tubeshop.config import TestConfig
from tubeshop.errors import NotFoundError, UpstreamFailure
from tubeshop.extensions import db
from tubeshop.models import Product, ProductImage
from tubeshop.services import checkout_service, session_service, webhook_service
from tubeshop.services.auth_service import create_user
from tubeshop.services.email_service import EMAIL_SENDER_EXTENSION, EmailDeliveryError, EmailSender
from tubeshop.services.kv_store import KV_STORE_EXTENSION, MemoryKeyValueStore
from tubeshop.services.payment_gateway import (
    PAYMENT_GATEWAY_EXTENSION,
    CheckoutSession,
    CheckoutSessionStatus,
    PaymentGateway,
    PaymentIntentSucceeded,
    RefundSnapshot,
    WebhookSignatureError,
)
from tubeshop.services.storage_service import PROOF_STORAGE_EXTENSION, ProofStorage, StorageError


VALID_SIGNATURE = "valid"


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakeGateway(PaymentGateway):
    """Records gateway calls; accepts webhooks signed with VALID_SIGNATURE."""

    def __init__(self):
        self.sessions = []
        self.refunds = []
        self.fail_refunds = False
        # session_id -> (status, payment_status) once the customer acted
        self.session_states = {}

    def create_checkout_session(self, *, order_id, order_code, order_type, line_items,
                                customer_email, success_url, cancel_url):
        n = len(self.sessions) + 1
        self.sessions.append({
            "order_id": order_id,
            "order_code": order_code,
            "order_type": order_type,
            "line_items": line_items,
            "customer_email": customer_email,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        return CheckoutSession(session_id=f"cs_test_{n}", url=f"https://checkout.test/pay/cs_test_{n}")

    def retrieve_checkout_session(self, session_id):
        for n, session in enumerate(self.sessions, start=1):
            if session_id == f"cs_test_{n}":
                status, payment_status = self.session_states.get(session_id, ("open", "unpaid"))
                return CheckoutSessionStatus(
                    session_id=session_id,
                    status=status,
                    payment_status=payment_status,
                    order_code=session["order_code"],
                )
        raise NotFoundError("Checkout session not found")

    def create_refund(self, *, charge_id, payment_intent_id, amount, reason, metadata):
        if self.fail_refunds:
            raise UpstreamFailure("Payment gateway error")
        n = len(self.refunds) + 1
        self.refunds.append({
            "charge_id": charge_id,
            "payment_intent_id": payment_intent_id,
            "amount": amount,
            "reason": reason,
            "metadata": metadata,
        })
        return RefundSnapshot(
            refund_id=f"re_test_{n}",
            amount=amount,
            currency="vnd",
            status="pending",
            charge_id=charge_id,
            payment_intent_id=payment_intent_id,
        )

    def verify_webhook(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid webhook signature")
        return json.loads(payload)


class RecordingEmailSender(EmailSender):
    def __init__(self):
        self.messages = []
        self.fail = False

    def send(self, *, to, subject, text):
        if self.fail:
            raise EmailDeliveryError("provider down")
        self.messages.append({"to": to, "subject": subject, "text": text})
        return f"msg_{len(self.messages)}"


class MemoryProofStorage(ProofStorage):
    def __init__(self):
        self.files = {}
        # Index of the save() call that should fail, if any
        self.fail_on_save = None
        self._saves = 0

    def save(self, path, data, content_type):
        self._saves += 1
        if self.fail_on_save is not None and self._saves == self.fail_on_save:
            raise StorageError(f"disk full writing {path}")
        self.files[path] = data
        return f"/media/deposit-proofs/{path}"

    def delete(self, paths):
        for path in paths:
            self.files.pop(path, None)


# =============================================================================
# APP / DATABASE
# =============================================================================

@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Empty every table and install fresh collaborators for each test."""
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    db.session.expunge_all()

    app.extensions[KV_STORE_EXTENSION] = MemoryKeyValueStore()
    app.extensions[PAYMENT_GATEWAY_EXTENSION] = FakeGateway()
    app.extensions[EMAIL_SENDER_EXTENSION] = RecordingEmailSender()
    app.extensions[PROOF_STORAGE_EXTENSION] = MemoryProofStorage()

    yield db.session

    db.session.rollback()


@pytest.fixture
def kv_store(app, db_session):
    return app.extensions[KV_STORE_EXTENSION]


@pytest.fixture
def gateway(app, db_session):
    return app.extensions[PAYMENT_GATEWAY_EXTENSION]


@pytest.fixture
def mailer(app, db_session):
    return app.extensions[EMAIL_SENDER_EXTENSION]


@pytest.fixture
def proof_storage(app, db_session):
    return app.extensions[PROOF_STORAGE_EXTENSION]


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_product(db_session):
    """Create a product; keyword arguments override the defaults."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        n = counter["n"]
        image_urls = overrides.pop("image_urls", [])
        fields = {
            "sku": f"TUBE-{n:03d}",
            "slug": f"tube-amp-{n}",
            "name": f"Tube Amp {n}",
            "category": "amplifier",
            "brand": "Line Magnetic",
            "price": 3_000_000,
            "stock_quantity": 5,
            "is_active": True,
        }
        fields.update(overrides)
        product = Product(**fields)
        db_session.add(product)
        db_session.flush()
        for position, url in enumerate(image_urls):
            db_session.add(ProductImage(product_id=product.id, url=url, position=position))
        db_session.commit()
        return product

    return _make


@pytest.fixture
def deposit_product(make_product):
    """10,000,000 VND product reservable with a 30% deposit."""
    return make_product(
        name="Western Electric 300B Monoblocks",
        price=10_000_000,
        stock_quantity=3,
        allow_deposit=True,
        deposit_type="percent",
        deposit_percentage=30,
        deposit_due_hours=24,
    )


def checkout_payload(product, quantity=1, *, payment_method="stripe", payment_mode=None,
                     email="guest@example.com", phone="0901 234 567"):
    payload = {
        "items": [{"productId": product.id, "quantity": quantity}],
        "customerInfo": {"fullName": "Nguyen Van A", "phone": phone, "email": email},
        "shippingAddress": {"addressLine": "12 Ly Thuong Kiet", "city": "Ha Noi", "district": "Hoan Kiem"},
        "paymentMethod": payment_method,
    }
    if payment_mode is not None:
        payload["paymentMode"] = payment_mode
    return payload


@pytest.fixture
def place_order(db_session):
    """Run a real checkout and return the CheckoutResult."""
    def _place(product, quantity=1, **kwargs):
        return checkout_service.create_order(checkout_payload(product, quantity, **kwargs))

    return _place


@pytest.fixture
def place_deposit_order(place_order, deposit_product):
    """Bank transfer deposit reservation for one unit of deposit_product."""
    def _place(quantity=1):
        return place_order(
            deposit_product, quantity, payment_method="bank_transfer", payment_mode="deposit"
        )

    return _place


@pytest.fixture
def mark_paid(db_session):
    """Deliver a payment_intent.succeeded event for the order."""
    counter = {"n": 0}

    def _mark(order, *, amount=None):
        counter["n"] += 1
        n = counter["n"]
        webhook_service.handle_event(PaymentIntentSucceeded(
            event_id=f"evt_paid_{order.id}_{n}",
            payment_intent_id=f"pi_test_{order.id}",
            order_id=order.id,
            amount_received=amount if amount is not None else order.refundable_base,
            charge_id=f"ch_test_{order.id}",
        ))
        db_session.refresh(order)
        return order

    return _mark


@pytest.fixture
def customer(db_session):
    return create_user("customer@example.com", "Password123", full_name="Tran Thi B")


@pytest.fixture
def admin_user(db_session):
    return create_user("admin@tubeshop.local", "Password123", full_name="Shop Admin", is_admin=True)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def customer_headers(customer):
    _, token = session_service.create_session(customer)
    return auth_headers(token)


@pytest.fixture
def admin_headers(admin_user):
    _, token = session_service.create_session(admin_user)
    return auth_headers(token)


@pytest.fixture
def build_payload():
    """Checkout request body builder for route tests."""
    return checkout_payload
