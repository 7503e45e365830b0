"""Pytest fixtures for orderflow tests."""

import hashlib
import hmac
import itertools
import json
import tempfile
import threading
import time
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest
import stripe
import structlog

from orderflow.bootstrap import build_services
from orderflow.config import Settings
from orderflow.models import WebhookEvent

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo logging configuration done by a test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    """Settings pointing at a fresh file-backed SQLite database."""
    return Settings(
        database_url=f"sqlite:///{temp_dir / 'orderflow.db'}",
        stripe_secret_key="sk_test_orderflow",
        stripe_webhook_secret=WEBHOOK_SECRET,
        unpaid_order_ttl=0,
    )


class FakeStripe:
    """In-memory stand-in for the PaymentIntent API of the stripe SDK."""

    def __init__(self):
        self.intents: dict[str, SimpleNamespace] = {}
        self.created: list[dict] = []
        self.cancelled: list[str] = []
        self.create_error: Exception | None = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, **params):
        if self.create_error is not None:
            raise self.create_error
        with self._lock:
            intent_id = f"pi_test_{next(self._ids)}"
            intent = SimpleNamespace(
                id=intent_id,
                amount=params["amount"],
                currency=params["currency"],
                status="requires_payment_method",
                client_secret=f"{intent_id}_secret_x",
            )
            self.intents[intent_id] = intent
            self.created.append(params)
        return intent

    def retrieve(self, intent_id, **params):
        if intent_id not in self.intents:
            raise stripe.InvalidRequestError(
                f"No such payment_intent: '{intent_id}'", "intent", http_status=404
            )
        return self.intents[intent_id]

    def cancel(self, intent_id, **params):
        intent = self.retrieve(intent_id)
        intent.status = "canceled"
        self.cancelled.append(intent_id)
        return intent


@pytest.fixture
def fake_stripe(monkeypatch):
    """Route stripe.PaymentIntent calls to a FakeStripe."""
    fake = FakeStripe()
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake.create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake.retrieve)
    monkeypatch.setattr(stripe.PaymentIntent, "cancel", fake.cancel)
    return fake


@pytest.fixture
def services(settings, fake_stripe):
    """Fully wired services on a temporary database."""
    services = build_services(settings)
    yield services
    services.close()


@pytest.fixture
def make_product(services):
    """Factory: register a product and return it."""

    def _make(name="Widget", price="10.00", stock=5, is_active=True):
        with services.db.unit_of_work() as uow:
            return services.inventory.add_product(uow, name, Decimal(price), stock, is_active)

    return _make


@pytest.fixture
def stock_of(services):
    """Read the current stock of a product."""

    def _stock(product_id):
        with services.db.unit_of_work() as uow:
            return services.inventory.get_product(uow, product_id).stock

    return _stock


_event_ids = itertools.count(1)


def make_event(event_type: str, obj: dict, event_id: str | None = None, created: int | None = None) -> dict:
    """Build a webhook event body shaped like the gateway sends it."""
    return {
        "id": event_id or f"evt_{next(_event_ids)}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for the payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def signed_event():
    """Factory: (payload, signature) for an event."""

    def _signed(event_type, obj, event_id=None, created=None, secret=WEBHOOK_SECRET):
        payload = json.dumps(make_event(event_type, obj, event_id, created))
        return payload, sign_payload(payload, secret)

    return _signed


@pytest.fixture
def webhook_event():
    """Factory: a parsed WebhookEvent."""

    def _event(event_type, obj, event_id=None, created=None):
        return WebhookEvent.from_dict(make_event(event_type, obj, event_id, created))

    return _event
