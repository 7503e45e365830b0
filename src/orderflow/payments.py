"""Payment use cases exposed next to the order operations."""

from typing import Any

from .db import Database
from .errors import InvalidOrderRequestError, InvalidPaymentMethodError, OrderNotFoundError
from .gateway import PaymentGateway
from .log import get_logger
from .models import (
    OrderStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
    ReconcileResult,
    to_minor_units,
)
from .order_store import OrderStore
from .reconciler import PaymentReconciler


class PaymentService:
    """Starts, checks and reconciles payments for existing orders."""

    def __init__(
        self,
        db: Database,
        store: OrderStore,
        gateway: PaymentGateway,
        reconciler: PaymentReconciler,
    ):
        self.db = db
        self.store = store
        self.gateway = gateway
        self.reconciler = reconciler
        self._log = get_logger("payments")

    def create_payment(
        self,
        order_id: str,
        method: PaymentMethod | str,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Start paying for an order.

        Card-like methods get a payment intent for the order's own total; an
        order that already has an intent gets that one back. Cash on delivery
        sends the order to PROCESSING with payment still PENDING.

        Returns:
            ``{"type": "card", "payment_intent_id", "client_secret"}`` or
            ``{"type": "cash_on_delivery", "status": "pending"}``.

        Raises:
            InvalidPaymentMethodError: For methods that can't be started here.
            OrderNotFoundError: If the order doesn't exist (or isn't the user's).
            InvalidOrderRequestError: If the order is cancelled or already paid.
        """
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise InvalidPaymentMethodError(str(method), "unknown method")

        if method.uses_gateway:
            return self._create_card_payment(order_id, user_id)
        if method == PaymentMethod.CASH_ON_DELIVERY:
            return self._create_cash_payment(order_id, user_id)
        raise InvalidPaymentMethodError(method.value, "not supported for payment creation")

    def _create_card_payment(self, order_id: str, user_id: str | None) -> dict[str, Any]:
        created: PaymentIntent | None = None
        try:
            with self.db.unit_of_work() as uow:
                order = self.store.get(uow, order_id, user_id=user_id, lock=True)
                if order is None:
                    raise OrderNotFoundError(order_id)
                if order.status == OrderStatus.CANCELLED:
                    raise InvalidOrderRequestError(f"order {order_id} is cancelled")
                if order.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
                    raise InvalidOrderRequestError(
                        f"order {order_id} payment is {order.payment_status.value}"
                    )

                if order.payment_intent_id:
                    intent = self.gateway.retrieve_intent(order.payment_intent_id)
                else:
                    created = intent = self.gateway.create_intent(
                        to_minor_units(order.total_amount),
                        metadata={"order_id": order.id},
                        idempotency_key=f"order-{order.id}",
                    )
                    self.store.attach_payment_intent(uow, order.id, intent.id)
        except Exception:
            if created is not None:
                self.gateway.cancel_intent(created.id)
            raise

        self._log.info(
            "payment_created",
            order_id=order_id,
            type="card",
            intent_id=intent.id,
            reused=created is None,
        )
        return {
            "type": "card",
            "payment_intent_id": intent.id,
            "client_secret": intent.client_secret,
        }

    def _create_cash_payment(self, order_id: str, user_id: str | None) -> dict[str, Any]:
        with self.db.unit_of_work() as uow:
            order = self.store.get(uow, order_id, user_id=user_id, lock=True)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status not in (OrderStatus.PENDING, OrderStatus.PROCESSING):
                raise InvalidOrderRequestError(f"order {order_id} is {order.status.value}")
            self.store.transition_status(
                uow, order_id, OrderStatus.PROCESSING, from_statuses=[OrderStatus.PENDING]
            )

        self._log.info("payment_created", order_id=order_id, type="cash_on_delivery")
        return {"type": "cash_on_delivery", "status": "pending"}

    def confirm_payment(self, payment_id: str, method: PaymentMethod | str) -> dict[str, Any]:
        """
        Report the gateway's status for a card payment.

        Returns ``{"status", "amount"}`` with the amount in major units.
        """
        return self.gateway.confirm(payment_id, method)

    def handle_webhook(self, payload: bytes | str, signature: str | None) -> ReconcileResult:
        return self.reconciler.handle_webhook(payload, signature)
