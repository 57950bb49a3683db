# ==== PAYMENT WEBHOOK AUTHENTICATION TESTS ==== #

"""
Unit tests for payment webhook signature and replay-window checks.

Authentication happens before any store access, so these tests run
without a database.
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time

from app.business.clock import FixedClock, SystemClock
from app.business.errors import WebhookRejectedError
from app.services.payment_reconciler import (
    PAYMENT_SUCCEEDED,
    PaymentReconciler,
    compute_webhook_signature,
    verify_webhook_signature,
)
from tests.factories.data_factories import WebhookFactory


SIGNING_KEY = "whsec-unit-key"
EVENT_TIME = datetime(2026, 3, 2, 15, 0, 0, tzinfo=timezone.utc)
EVENT_TS = int(EVENT_TIME.timestamp())


def _reconciler(clock=None, signing_key=SIGNING_KEY):
    return PaymentReconciler(
        clock=clock or FixedClock(EVENT_TIME.replace(tzinfo=None)),
        signing_key=signing_key,
        replay_window_seconds=300,
    )


@pytest.fixture
def webhooks():
    return WebhookFactory(signing_key=SIGNING_KEY, timestamp=EVENT_TS)


@pytest.mark.unit
class TestSignatures:

    def test_signature_is_hmac_sha256_of_timestamp_and_token(self):
        expected = hmac.new(b"key", b"1700000000abc", hashlib.sha256).hexdigest()

        assert compute_webhook_signature("key", "1700000000", "abc") == expected

    def test_verify_accepts_valid_signature(self):
        signature = compute_webhook_signature(SIGNING_KEY, "1", "token")

        assert verify_webhook_signature(SIGNING_KEY, "1", "token", signature)

    def test_verify_rejects_tampered_token(self):
        signature = compute_webhook_signature(SIGNING_KEY, "1", "token")

        assert not verify_webhook_signature(SIGNING_KEY, "1", "token2", signature)

    def test_verify_rejects_empty_signature(self):
        assert not verify_webhook_signature(SIGNING_KEY, "1", "token", "")


@pytest.mark.unit
class TestAuthenticate:

    def test_valid_delivery(self, webhooks):
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 1}, event_id="evt_1")

        envelope = _reconciler().authenticate(body)

        assert envelope.event_id == "evt_1"
        assert envelope.payload == {"order_id": 1}

    @pytest.mark.parametrize("body", [None, [], {"event_type": "x"}, {"signature": "abc"}])
    def test_malformed_envelope(self, body):
        with pytest.raises(WebhookRejectedError) as exc_info:
            _reconciler().authenticate(body)

        assert exc_info.value.reason == "malformed_envelope"

    def test_bad_signature(self, webhooks):
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 1}, signature="0" * 64)

        with pytest.raises(WebhookRejectedError) as exc_info:
            _reconciler().authenticate(body)

        assert exc_info.value.reason == "invalid_signature"

    def test_signed_with_another_key(self):
        body = WebhookFactory(signing_key="other", timestamp=EVENT_TS).create(PAYMENT_SUCCEEDED, {"order_id": 1})

        with pytest.raises(WebhookRejectedError) as exc_info:
            _reconciler().authenticate(body)

        assert exc_info.value.reason == "invalid_signature"

    def test_missing_signing_key_rejects_everything(self, webhooks):
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 1})

        with pytest.raises(WebhookRejectedError) as exc_info:
            _reconciler(signing_key="").authenticate(body)

        assert exc_info.value.reason == "signing_key_not_configured"

    def test_non_numeric_timestamp(self, webhooks):
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 1})
        token = body["signature"]["token"]
        body["signature"]["timestamp"] = "yesterday"
        body["signature"]["signature"] = compute_webhook_signature(SIGNING_KEY, "yesterday", token)

        with pytest.raises(WebhookRejectedError) as exc_info:
            _reconciler().authenticate(body)

        assert exc_info.value.reason == "invalid_timestamp"


@pytest.mark.unit
class TestReplayWindow:
    """Timestamps are checked against the wall clock."""

    def test_inside_window(self, webhooks):
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 1})

        with freeze_time(EVENT_TIME + timedelta(seconds=299)):
            envelope = _reconciler(clock=SystemClock()).authenticate(body)

        assert envelope.event_type == PAYMENT_SUCCEEDED

    def test_stale_delivery(self, webhooks):
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 1})

        with freeze_time(EVENT_TIME + timedelta(seconds=301)):
            with pytest.raises(WebhookRejectedError) as exc_info:
                _reconciler(clock=SystemClock()).authenticate(body)

        assert exc_info.value.reason == "replay_window_exceeded"

    def test_delivery_from_the_future(self, webhooks):
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 1}, timestamp=EVENT_TS + 600)

        with freeze_time(EVENT_TIME):
            with pytest.raises(WebhookRejectedError) as exc_info:
                _reconciler(clock=SystemClock()).authenticate(body)

        assert exc_info.value.reason == "replay_window_exceeded"
