"""Apply payment gateway webhook events to orders."""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .db import Database, UnitOfWork, processed_events
from .errors import InvalidWebhookEventError
from .gateway import PaymentGateway
from .log import get_logger
from .models import (
    Order,
    OrderStatus,
    PaymentStatus,
    ReconcileOutcome,
    ReconcileResult,
    WebhookEvent,
    _utc_now,
)
from .order_store import OrderStore

# Event type -> payment status it moves the order to
EVENT_TRANSITIONS = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "charge.refunded": PaymentStatus.REFUNDED,
}

# Payment statuses each target may replace. A late failure never undoes a
# completed payment, and nothing leaves REFUNDED.
ALLOWED_SOURCES = {
    PaymentStatus.COMPLETED: (PaymentStatus.PENDING, PaymentStatus.FAILED),
    PaymentStatus.FAILED: (PaymentStatus.PENDING,),
    PaymentStatus.REFUNDED: (PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.COMPLETED),
}


def intent_id_for(event: WebhookEvent) -> str:
    """
    Return the payment intent an event refers to.

    Charge events carry it in ``payment_intent``; intent events are the intent.

    Raises:
        InvalidWebhookEventError: If the event doesn't reference an intent.
    """
    if event.type.startswith("charge."):
        intent_id = event.object.get("payment_intent")
    else:
        intent_id = event.object.get("id")
    if not isinstance(intent_id, str) or not intent_id:
        raise InvalidWebhookEventError(f"{event.type} event without payment intent reference")
    return intent_id


class PaymentReconciler:
    """
    Maps verified webhook events onto payment and order status.

    Safe under redelivery and reordering:
    - every handled event id is recorded in processed_events, so a redelivered
      event is a no-op;
    - a status change only happens from the statuses the target may follow
      and only if no newer gateway event was applied to the order before.
    """

    def __init__(self, db: Database, store: OrderStore, gateway: PaymentGateway):
        self.db = db
        self.store = store
        self.gateway = gateway
        self._log = get_logger("reconciler")

    def handle_webhook(self, payload: bytes | str, signature: str | None) -> ReconcileResult:
        """
        Verify, parse and apply a raw webhook delivery.

        Raises:
            InvalidWebhookEventError: If the signature or payload is invalid.
        """
        event = self.gateway.construct_event(payload, signature)
        return self.handle_event(event)

    def handle_event(self, event: WebhookEvent) -> ReconcileResult:
        """
        Apply one verified event.

        A handled event type without an intent reference is logged and dropped
        with outcome MALFORMED; redelivering it can't change anything.
        """
        log = self._log.bind(event_id=event.id, event_type=event.type)

        target = EVENT_TRANSITIONS.get(event.type)
        if target is None:
            log.debug("webhook_ignored")
            return ReconcileResult(event.id, event.type, ReconcileOutcome.IGNORED)

        try:
            intent_id = intent_id_for(event)
        except InvalidWebhookEventError as e:
            log.warning("webhook_malformed", error=str(e))
            return ReconcileResult(event.id, event.type, ReconcileOutcome.MALFORMED)

        try:
            with self.db.unit_of_work() as uow:
                result = self._apply(uow, event, intent_id, target)
        except IntegrityError:
            if not self._is_recorded(event.id):
                raise
            # Lost the race against a concurrent delivery of the same event
            log.info("webhook_duplicate", intent_id=intent_id, concurrent=True)
            return ReconcileResult(event.id, event.type, ReconcileOutcome.DUPLICATE)

        log.info(f"webhook_{result.outcome.value}", intent_id=intent_id, order_id=result.order_id)
        return result

    def is_processed(self, uow: UnitOfWork, event_id: str) -> bool:
        """Whether an event id is already in processed_events."""
        row = uow.execute(
            select(processed_events.c.event_id).where(processed_events.c.event_id == event_id)
        ).first()
        return row is not None

    def _is_recorded(self, event_id: str) -> bool:
        with self.db.unit_of_work() as uow:
            return self.is_processed(uow, event_id)

    def _apply(
        self,
        uow: UnitOfWork,
        event: WebhookEvent,
        intent_id: str,
        target: PaymentStatus,
    ) -> ReconcileResult:
        if self.is_processed(uow, event.id):
            return ReconcileResult(event.id, event.type, ReconcileOutcome.DUPLICATE)

        found = self.store.find_by_payment_intent(uow, intent_id)
        if found is None:
            return ReconcileResult(event.id, event.type, ReconcileOutcome.UNMATCHED)

        order = self.store.get(uow, found.id, lock=True)
        if order.payment_status == target:
            outcome = ReconcileOutcome.NOOP
        elif self.store.set_payment_status(
            uow, order.id, target,
            from_statuses=ALLOWED_SOURCES[target],
            event_at=event.created,
        ):
            outcome = ReconcileOutcome.APPLIED
            if target == PaymentStatus.COMPLETED:
                self._after_payment_completed(uow, order)
        else:
            outcome = ReconcileOutcome.STALE

        uow.execute(processed_events.insert().values(
            event_id=event.id,
            event_type=event.type,
            order_id=order.id,
            outcome=outcome.value,
            processed_at=_utc_now(),
        ))
        return ReconcileResult(event.id, event.type, outcome, order.id)

    def _after_payment_completed(self, uow: UnitOfWork, order: Order) -> None:
        self.store.transition_status(
            uow, order.id, OrderStatus.PROCESSING, from_statuses=[OrderStatus.PENDING]
        )
        if order.status == OrderStatus.CANCELLED:
            # Money arrived for an order whose stock was already released
            self._log.warning(
                "payment_completed_for_cancelled_order",
                order_id=order.id,
                intent_id=order.payment_intent_id,
            )
