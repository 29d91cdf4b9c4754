# Overview: Pytest coverage for order tracking token issue and validation.

"""
Tracking Token Tests

SECURITY TESTS: tokens are unguessable, stored only as digests, scoped to
one order, and stop working exactly at the configured expiry.
"""

import hashlib
import re
from datetime import datetime, timedelta

import pytest

from tubeshop.services import tracking_token_service
from tubeshop.services.tracking_token_service import TokenCheck


T0 = datetime(2026, 3, 1, 9, 30, 0)


@pytest.fixture
def order(make_product, place_order):
    return place_order(make_product()).order


# =============================================================================
# ISSUE
# =============================================================================

class TestIssue:
    def test_token_is_base64url_with_256_bits(self, order):
        token = tracking_token_service.issue(order.id)
        assert len(token) == 43
        assert re.fullmatch(r"[A-Za-z0-9_-]+", token)

    def test_tokens_are_unique(self, order):
        tokens = {tracking_token_service.issue(order.id) for _ in range(20)}
        assert len(tokens) == 20

    def test_plaintext_is_never_stored(self, order, kv_store):
        token = tracking_token_service.issue(order.id)
        digest = tracking_token_service.hash_token(token)
        entry = kv_store.get(f"order-tracking-token:{order.id}:{digest}")

        assert entry is not None
        assert entry["token_hash"] == digest
        assert token not in str(entry)

    def test_hash_is_peppered(self, app, order):
        token = tracking_token_service.issue(order.id)
        unpeppered = hashlib.sha256(token.encode("utf-8")).hexdigest()
        assert tracking_token_service.hash_token(token) != unpeppered

    def test_tracking_url_carries_code_and_token(self, app, order):
        url = tracking_token_service.build_tracking_url(order.order_code, "abc")
        assert url == f"{app.config['SITE_URL'].rstrip('/')}/order/track/{order.order_code}?t=abc"


# =============================================================================
# VALIDATION
# =============================================================================

class TestCheck:
    def test_fresh_token_is_valid(self, order):
        token = tracking_token_service.issue(order.id)
        assert tracking_token_service.validate(order.id, token)

    def test_checkout_token_is_valid(self, make_product, place_order):
        result = place_order(make_product())
        assert tracking_token_service.validate(result.order.id, result.tracking_token)

    def test_older_tokens_stay_valid_after_reissue(self, order):
        first = tracking_token_service.issue(order.id)
        second = tracking_token_service.issue(order.id)
        assert tracking_token_service.validate(order.id, first)
        assert tracking_token_service.validate(order.id, second)

    def test_valid_just_before_expiry(self, order):
        token = tracking_token_service.issue(order.id, now=T0)
        just_before = T0 + timedelta(days=7) - timedelta(seconds=1)
        assert tracking_token_service.check(order.id, token, now=just_before) is TokenCheck.VALID

    def test_expired_at_exact_expiry(self, order):
        token = tracking_token_service.issue(order.id, now=T0)
        at_expiry = T0 + timedelta(days=7)
        assert tracking_token_service.check(order.id, token, now=at_expiry) is TokenCheck.EXPIRED
        assert not tracking_token_service.validate(order.id, token, now=at_expiry)

    def test_token_for_other_order_is_invalid(self, make_product, place_order):
        first = place_order(make_product())
        second = place_order(make_product())
        assert tracking_token_service.check(second.order.id, first.tracking_token) is TokenCheck.INVALID

    @pytest.mark.parametrize("token", [None, "", "not-a-real-token", 12345])
    def test_bad_tokens_are_invalid(self, order, token):
        assert tracking_token_service.check(order.id, token) is TokenCheck.INVALID

    def test_unknown_order(self, order):
        token = tracking_token_service.issue(order.id)
        assert tracking_token_service.check(order.id + 1000, token) is TokenCheck.UNKNOWN_ORDER
        assert tracking_token_service.check(None, token) is TokenCheck.UNKNOWN_ORDER
