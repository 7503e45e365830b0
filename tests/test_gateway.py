"""Tests for PaymentGateway."""

import json
import time
from decimal import Decimal

import pytest
import stripe

from conftest import WEBHOOK_SECRET, make_event, sign_payload
from orderflow.errors import (
    AmountOutOfRangeError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidPaymentMethodError,
    InvalidWebhookEventError,
)
from orderflow.gateway import PaymentGateway


@pytest.fixture
def gateway(fake_stripe):
    return PaymentGateway(
        api_key="sk_test_orderflow",
        webhook_secret=WEBHOOK_SECRET,
        currency="rwf",
        minimum_amount=1000,
        maximum_amount=100_000_000,
    )


class TestIntents:
    def test_create_intent(self, gateway, fake_stripe):
        intent = gateway.create_intent(2500, idempotency_key="order-1")

        assert intent.id == "pi_test_1"
        assert intent.amount == 2500
        assert intent.currency == "rwf"
        assert intent.client_secret
        assert fake_stripe.created[0]["api_key"] == "sk_test_orderflow"
        assert fake_stripe.created[0]["idempotency_key"] == "order-1"

    @pytest.mark.parametrize("amount", [999, 100_000_001])
    def test_amount_limits(self, gateway, fake_stripe, amount):
        with pytest.raises(AmountOutOfRangeError):
            gateway.create_intent(amount)
        assert fake_stripe.created == []

    def test_amount_limits_inclusive(self, gateway):
        assert gateway.create_intent(1000).amount == 1000
        assert gateway.create_intent(100_000_000).amount == 100_000_000

    @pytest.mark.parametrize(
        "error",
        [
            stripe.APIConnectionError("timed out"),
            stripe.RateLimitError("slow down", http_status=429),
            stripe.APIError("internal", http_status=500),
        ],
    )
    def test_transient_errors(self, gateway, fake_stripe, error):
        fake_stripe.create_error = error

        with pytest.raises(GatewayUnavailableError):
            gateway.create_intent(5000)

    def test_rejection(self, gateway, fake_stripe):
        fake_stripe.create_error = stripe.InvalidRequestError(
            "Invalid currency", "currency", http_status=400
        )

        with pytest.raises(GatewayRejectedError) as exc_info:
            gateway.create_intent(5000, currency="xyz")
        assert "Invalid currency" in str(exc_info.value)

    def test_retrieve_missing_intent(self, gateway):
        with pytest.raises(GatewayRejectedError):
            gateway.retrieve_intent("pi_missing")

    def test_cancel_intent_is_best_effort(self, gateway, fake_stripe):
        intent = gateway.create_intent(5000)

        assert gateway.cancel_intent(intent.id) is True
        assert gateway.cancel_intent("pi_missing") is False
        assert fake_stripe.cancelled == [intent.id]


class TestConfirm:
    def test_confirm_card(self, gateway, fake_stripe):
        intent = gateway.create_intent(3050)
        fake_stripe.intents[intent.id].status = "succeeded"

        result = gateway.confirm(intent.id, "CARD")

        assert result == {"status": "succeeded", "amount": Decimal("30.50")}

    @pytest.mark.parametrize("method", ["CASH_ON_DELIVERY", "MOBILE_MONEY", "CHEQUE"])
    def test_confirm_other_methods(self, gateway, method):
        with pytest.raises(InvalidPaymentMethodError):
            gateway.confirm("pi_x", method)


class TestConstructEvent:
    def test_valid_event(self, gateway):
        payload = json.dumps(make_event(
            "payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"},
            event_id="evt_1", created=1700000000,
        ))

        event = gateway.construct_event(payload.encode("utf-8"), sign_payload(payload))

        assert event.id == "evt_1"
        assert event.type == "payment_intent.succeeded"
        assert event.created == 1700000000
        assert event.object["id"] == "pi_1"

    def test_wrong_secret(self, gateway):
        payload = json.dumps(make_event("payment_intent.succeeded", {"id": "pi_1"}))

        with pytest.raises(InvalidWebhookEventError):
            gateway.construct_event(payload, sign_payload(payload, secret="whsec_other"))

    def test_tampered_payload(self, gateway):
        payload = json.dumps(make_event("payment_intent.succeeded", {"id": "pi_1"}))
        signature = sign_payload(payload)

        with pytest.raises(InvalidWebhookEventError):
            gateway.construct_event(payload.replace("pi_1", "pi_2"), signature)

    def test_expired_signature(self, gateway):
        payload = json.dumps(make_event("payment_intent.succeeded", {"id": "pi_1"}))
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidWebhookEventError):
            gateway.construct_event(payload, signature)

    def test_missing_signature(self, gateway):
        with pytest.raises(InvalidWebhookEventError):
            gateway.construct_event("{}", None)

    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            "[]",
            json.dumps({"type": "payment_intent.succeeded", "data": {"object": {}}}),
            json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {}}),
            json.dumps({"id": "evt_1", "type": "charge.refunded", "created": "yesterday",
                        "data": {"object": {}}}),
        ],
    )
    def test_malformed_events(self, gateway, body):
        with pytest.raises(InvalidWebhookEventError):
            gateway.construct_event(body, sign_payload(body))
