"""Tests for PaymentReconciler."""

import threading

import pytest
from sqlalchemy.exc import IntegrityError

from orderflow.errors import InvalidWebhookEventError
from orderflow.models import OrderStatus, PaymentStatus, ReconcileOutcome

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"
REFUNDED = "charge.refunded"


@pytest.fixture
def card_order(services, make_product):
    product = make_product(price="10.00", stock=5)
    return services.orders.create_order("u", "a", [(product.id, 3)], "CARD")


def intent_obj(order):
    return {"id": order.payment_intent_id, "object": "payment_intent"}


def charge_obj(order):
    return {"id": "ch_1", "object": "charge", "payment_intent": order.payment_intent_id}


def reload(services, order):
    return services.orders.get_order_by_id(order.id)


class TestHandleEvent:
    """Tests for PaymentReconciler.handle_event."""

    def test_succeeded_completes_payment(self, services, card_order, webhook_event):
        result = services.reconciler.handle_event(webhook_event(SUCCEEDED, intent_obj(card_order)))

        order = reload(services, card_order)
        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.order_id == card_order.id
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.status == OrderStatus.PROCESSING

    def test_duplicate_delivery(self, services, card_order, webhook_event):
        event = webhook_event(SUCCEEDED, intent_obj(card_order), event_id="evt_dup")

        first = services.reconciler.handle_event(event)
        services.orders.update_order_status(card_order.id, "SHIPPED")
        second = services.reconciler.handle_event(event)

        assert first.outcome == ReconcileOutcome.APPLIED
        assert second.outcome == ReconcileOutcome.DUPLICATE
        order = reload(services, card_order)
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.status == OrderStatus.SHIPPED

    def test_same_transition_different_event_is_noop(self, services, card_order, webhook_event):
        services.reconciler.handle_event(webhook_event(SUCCEEDED, intent_obj(card_order)))

        result = services.reconciler.handle_event(webhook_event(SUCCEEDED, intent_obj(card_order)))

        assert result.outcome == ReconcileOutcome.NOOP

    def test_failed_payment(self, services, card_order, webhook_event):
        result = services.reconciler.handle_event(webhook_event(FAILED, intent_obj(card_order)))

        order = reload(services, card_order)
        assert result.outcome == ReconcileOutcome.APPLIED
        assert order.payment_status == PaymentStatus.FAILED
        assert order.status == OrderStatus.PENDING

    def test_retry_after_failure_succeeds(self, services, card_order, webhook_event):
        services.reconciler.handle_event(webhook_event(FAILED, intent_obj(card_order), created=100))

        result = services.reconciler.handle_event(
            webhook_event(SUCCEEDED, intent_obj(card_order), created=200)
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert reload(services, card_order).payment_status == PaymentStatus.COMPLETED

    def test_late_failure_does_not_undo_success(self, services, card_order, webhook_event):
        services.reconciler.handle_event(webhook_event(SUCCEEDED, intent_obj(card_order), created=200))

        result = services.reconciler.handle_event(
            webhook_event(FAILED, intent_obj(card_order), created=100)
        )

        assert result.outcome == ReconcileOutcome.STALE
        assert reload(services, card_order).payment_status == PaymentStatus.COMPLETED

    def test_older_success_after_newer_failure_is_stale(self, services, card_order, webhook_event):
        services.reconciler.handle_event(webhook_event(FAILED, intent_obj(card_order), created=300))

        result = services.reconciler.handle_event(
            webhook_event(SUCCEEDED, intent_obj(card_order), created=200)
        )

        assert result.outcome == ReconcileOutcome.STALE
        assert reload(services, card_order).payment_status == PaymentStatus.FAILED

    def test_refund(self, services, card_order, webhook_event):
        services.reconciler.handle_event(webhook_event(SUCCEEDED, intent_obj(card_order), created=100))

        result = services.reconciler.handle_event(webhook_event(REFUNDED, charge_obj(card_order), created=200))

        assert result.outcome == ReconcileOutcome.APPLIED
        order = reload(services, card_order)
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.payment_event_at == 200

    def test_nothing_leaves_refunded(self, services, card_order, webhook_event):
        services.reconciler.handle_event(webhook_event(REFUNDED, charge_obj(card_order), created=100))

        result = services.reconciler.handle_event(webhook_event(SUCCEEDED, intent_obj(card_order), created=200))

        assert result.outcome == ReconcileOutcome.STALE
        assert reload(services, card_order).payment_status == PaymentStatus.REFUNDED

    def test_success_on_cancelled_order_keeps_status(self, services, card_order, webhook_event):
        services.orders.cancel_order(card_order.id, "u")

        result = services.reconciler.handle_event(webhook_event(SUCCEEDED, intent_obj(card_order)))

        order = reload(services, card_order)
        assert result.outcome == ReconcileOutcome.APPLIED
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.status == OrderStatus.CANCELLED

    def test_unmatched_is_not_recorded(self, services, card_order, webhook_event):
        event = webhook_event(SUCCEEDED, {"id": "pi_unknown"}, event_id="evt_early")

        assert services.reconciler.handle_event(event).outcome == ReconcileOutcome.UNMATCHED
        # Redelivery is still evaluated
        assert services.reconciler.handle_event(event).outcome == ReconcileOutcome.UNMATCHED

    def test_unknown_type_is_ignored(self, services, card_order, webhook_event):
        result = services.reconciler.handle_event(
            webhook_event("customer.created", {"id": "cus_1"})
        )

        assert result.outcome == ReconcileOutcome.IGNORED
        assert reload(services, card_order).payment_status == PaymentStatus.PENDING

    @pytest.mark.parametrize(
        "event_type,obj",
        [(REFUNDED, {"id": "ch_1", "object": "charge"}), (SUCCEEDED, {"object": "payment_intent"})],
    )
    def test_missing_intent_reference_is_dropped(
        self, services, card_order, webhook_event, event_type, obj
    ):
        result = services.reconciler.handle_event(webhook_event(event_type, obj, event_id="evt_bad"))

        assert result.outcome == ReconcileOutcome.MALFORMED
        assert result.order_id is None
        assert reload(services, card_order).payment_status == PaymentStatus.PENDING
        with services.db.unit_of_work() as uow:
            assert not services.reconciler.is_processed(uow, "evt_bad")

    def test_other_integrity_errors_propagate(self, services, card_order, webhook_event, monkeypatch):
        def broken(*args, **kwargs):
            raise IntegrityError("UPDATE orders", {}, Exception("constraint failed"))

        monkeypatch.setattr(services.store, "set_payment_status", broken)
        event = webhook_event(SUCCEEDED, intent_obj(card_order), event_id="evt_broken")

        with pytest.raises(IntegrityError):
            services.reconciler.handle_event(event)

        with services.db.unit_of_work() as uow:
            assert not services.reconciler.is_processed(uow, "evt_broken")

    def test_concurrent_duplicates_apply_once(self, services, card_order, webhook_event):
        event = webhook_event(SUCCEEDED, intent_obj(card_order), event_id="evt_race")
        outcomes: list = []
        barrier = threading.Barrier(4)

        def deliver():
            barrier.wait()
            outcomes.append(services.reconciler.handle_event(event).outcome)

        threads = [threading.Thread(target=deliver) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(ReconcileOutcome.APPLIED) == 1
        assert outcomes.count(ReconcileOutcome.DUPLICATE) == 3
        assert reload(services, card_order).status == OrderStatus.PROCESSING


class TestHandleWebhook:
    def test_signed_payload(self, services, card_order, signed_event):
        payload, signature = signed_event(SUCCEEDED, intent_obj(card_order))

        result = services.reconciler.handle_webhook(payload.encode("utf-8"), signature)

        assert result.outcome == ReconcileOutcome.APPLIED

    def test_bad_signature_mutates_nothing(self, services, card_order, signed_event):
        payload, signature = signed_event(SUCCEEDED, intent_obj(card_order), secret="whsec_wrong")

        with pytest.raises(InvalidWebhookEventError):
            services.reconciler.handle_webhook(payload, signature)

        assert reload(services, card_order).payment_status == PaymentStatus.PENDING
