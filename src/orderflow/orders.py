"""Order transaction manager: the create/cancel/read/update use cases."""

from calendar import monthrange
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from .db import Database, UnitOfWork
from .errors import (
    InsufficientStockError,
    InvalidOrderRequestError,
    InvalidPaymentMethodError,
    NotCancellableError,
    OrderNotFoundError,
)
from .gateway import PaymentGateway
from .inventory import InventoryLedger
from .jobs import EXPIRE_UNPAID_ORDER, JobStore
from .log import get_logger
from .models import (
    Order,
    OrderStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
    _format_timestamp,
    to_minor_units,
)
from .notifications import Notifier
from .order_store import OrderStore
from .pagination import Page, paginate

ItemInput = tuple[str, int] | Mapping[str, Any]


def _parse_method(method: PaymentMethod | str) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError:
        raise InvalidPaymentMethodError(str(method), "unknown method")


def _parse_order_status(status: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise InvalidOrderRequestError(f"unknown order status {status!r}")


def _parse_payment_status(status: PaymentStatus | str) -> PaymentStatus:
    try:
        return PaymentStatus(status)
    except ValueError:
        raise InvalidOrderRequestError(f"unknown payment status {status!r}")


TIME_RANGES = ("day", "week", "month", "year")


def window_start(time_range: str, now: datetime) -> datetime:
    """
    Start of the analytics window ending at ``now``.

    Months and years step back on the calendar, clamping the day
    (March 31 minus a month is the last day of February).

    Raises:
        InvalidOrderRequestError: If time_range isn't one of TIME_RANGES.
    """
    if time_range == "day":
        return now - timedelta(days=1)
    if time_range == "week":
        return now - timedelta(days=7)
    if time_range == "month":
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    elif time_range == "year":
        year, month = now.year - 1, now.month
    else:
        raise InvalidOrderRequestError(
            f"time range must be one of {', '.join(TIME_RANGES)} (got {time_range!r})"
        )
    return now.replace(year=year, month=month, day=min(now.day, monthrange(year, month)[1]))


def normalize_items(items: Iterable[ItemInput]) -> list[tuple[str, int]]:
    """
    Validate requested items and merge repeated products.

    Accepts (product_id, quantity) pairs or mappings with those keys.
    Returns pairs sorted by product id, the order in which rows get locked.

    Raises:
        InvalidOrderRequestError: If the list is empty or a quantity isn't a positive integer.
    """
    merged: dict[str, int] = {}
    for item in items:
        if isinstance(item, Mapping):
            product_id, quantity = item.get("product_id"), item.get("quantity")
        else:
            product_id, quantity = item
        if not product_id:
            raise InvalidOrderRequestError("item without product_id")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise InvalidOrderRequestError(
                f"quantity for product {product_id} must be a positive integer"
            )
        merged[product_id] = merged.get(product_id, 0) + quantity
    if not merged:
        raise InvalidOrderRequestError("order must contain at least one item")
    return sorted(merged.items())


class OrderManager:
    """
    Composes the inventory ledger, order store and payment gateway.

    Order creation and cancellation each run as one unit of work: stock
    changes, the order row and its items commit together or not at all.
    """

    def __init__(
        self,
        db: Database,
        inventory: InventoryLedger,
        store: OrderStore,
        gateway: PaymentGateway,
        notifier: Notifier | None = None,
        jobs: JobStore | None = None,
        unpaid_order_ttl: int = 0,
    ):
        self.db = db
        self.inventory = inventory
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.jobs = jobs
        self.unpaid_order_ttl = unpaid_order_ttl
        self._log = get_logger("orders")

    # --- create / cancel ---

    def create_order(
        self,
        user_id: str,
        address_id: str,
        items: Iterable[ItemInput],
        payment_method: PaymentMethod | str,
    ) -> Order:
        """
        Place an order.

        Locks and decrements stock for every item, creates a payment intent
        when the method goes through the gateway, and stores the order as
        PENDING/PENDING. The gateway call happens before commit; if it fails
        nothing is written. If anything fails after the intent was created,
        the intent is cancelled again.

        Raises:
            InvalidOrderRequestError: If items are empty or malformed.
            InvalidPaymentMethodError: If the method is unknown.
            ProductNotFoundError: If a product is missing or inactive.
            InsufficientStockError: If a product has fewer units than requested.
            AmountOutOfRangeError: If the total is outside the gateway limits.
            GatewayUnavailableError: If the gateway can't be reached.
            GatewayRejectedError: If the gateway refuses the intent.
        """
        method = _parse_method(payment_method)
        lines = normalize_items(items)
        log = self._log.bind(user_id=user_id, payment_method=method.value)

        intent: PaymentIntent | None = None
        try:
            with self.db.unit_of_work() as uow:
                priced = []
                for product_id, quantity in lines:
                    product = self.inventory.require_product(uow, product_id, lock=True)
                    if product.stock < quantity:
                        raise InsufficientStockError(product_id, quantity, product.stock)
                    self.inventory.decrement(uow, product_id, quantity)
                    priced.append((product_id, quantity, product.price))

                order = Order.create(user_id, address_id, method, priced)

                if method.uses_gateway:
                    intent = self.gateway.create_intent(
                        to_minor_units(order.total_amount),
                        metadata={"order_id": order.id},
                        idempotency_key=f"order-{order.id}",
                    )
                    order.payment_intent_id = intent.id

                self.store.insert(uow, order)
                self._schedule_expiry(uow, order)
        except Exception as e:
            log.info("order_rejected", error_kind=getattr(e, "kind", None), error=str(e))
            if intent is not None:
                self.gateway.cancel_intent(intent.id)
            raise

        log.info(
            "order_created",
            order_id=order.id,
            total_amount=str(order.total_amount),
            payment_intent_id=order.payment_intent_id,
        )
        self._notify(order)
        return order

    def cancel_order(self, order_id: str, user_id: str) -> Order:
        """
        Cancel a PENDING order of this user and put its stock back.

        The status check and the status change are one conditional update, so
        two concurrent cancellations can't both restore stock.

        Raises:
            OrderNotFoundError: If the order doesn't exist or belongs to someone else.
            NotCancellableError: If the order is no longer PENDING.
        """
        with self.db.unit_of_work() as uow:
            cancelled = self.store.transition_status(
                uow, order_id, OrderStatus.CANCELLED,
                from_statuses=[OrderStatus.PENDING], user_id=user_id,
            )
            if not cancelled:
                existing = self.store.get(uow, order_id, user_id=user_id)
                if existing is None:
                    raise OrderNotFoundError(order_id)
                raise NotCancellableError(order_id, existing.status.value)

            order = self.store.get(uow, order_id)
            self._restore_stock(uow, order)

        self._log.info("order_cancelled", order_id=order_id, user_id=user_id)
        return order

    def expire_unpaid_order(self, uow: UnitOfWork, order_id: str) -> None:
        """
        Job handler: cancel an order whose payment never completed.

        Leaves orders alone that were paid, cancelled or moved on meanwhile.
        """
        order = self.store.get(uow, order_id, lock=True)
        if (
            order is None
            or order.status != OrderStatus.PENDING
            or order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED)
        ):
            self._log.info("order_expiry_skipped", order_id=order_id)
            return

        if not self.store.transition_status(
            uow, order_id, OrderStatus.CANCELLED, from_statuses=[OrderStatus.PENDING]
        ):
            return
        self._restore_stock(uow, order)
        if order.payment_intent_id:
            self.gateway.cancel_intent(order.payment_intent_id)
        self._log.info("order_expired", order_id=order_id)

    # --- reads ---

    def get_order_by_id(self, order_id: str, user_id: str | None = None) -> Order:
        """
        Raises:
            OrderNotFoundError: If missing, or not owned by user_id when given.
        """
        with self.db.unit_of_work() as uow:
            order = self.store.get(uow, order_id, user_id=user_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def get_user_orders(
        self, user_id: str, page: int | None = None, limit: int | None = None
    ) -> Page[Order]:
        return self._page(page, limit, user_id=user_id)

    def get_orders_by_status(
        self, status: OrderStatus | str, page: int | None = None, limit: int | None = None
    ) -> Page[Order]:
        return self._page(page, limit, status=_parse_order_status(status))

    def get_orders_by_date_range(
        self,
        start: datetime,
        end: datetime,
        page: int | None = None,
        limit: int | None = None,
    ) -> Page[Order]:
        """
        Raises:
            InvalidOrderRequestError: If start is after end.
        """
        if start > end:
            raise InvalidOrderRequestError("start date is after end date")
        return self._page(
            page, limit,
            created_from=_format_timestamp(start),
            created_to=_format_timestamp(end),
        )

    def get_order_statistics(self) -> dict[str, Any]:
        with self.db.unit_of_work() as uow:
            stats = self.store.statistics(uow)
        return {
            "total_orders": stats["total_orders"],
            "pending_orders": stats["pending_orders"],
            "completed_orders": stats["completed_orders"],
            "cancelled_orders": stats["cancelled_orders"],
            "total_revenue": stats["delivered_amount"],
        }

    def get_user_order_statistics(self, user_id: str) -> dict[str, Any]:
        with self.db.unit_of_work() as uow:
            stats = self.store.statistics(uow, user_id=user_id)
        return {
            "total_orders": stats["total_orders"],
            "pending_orders": stats["pending_orders"],
            "completed_orders": stats["completed_orders"],
            "total_spent": stats["delivered_amount"],
        }

    def get_sales_trend_analytics(
        self, time_range: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """
        Sales of delivered orders over the last day, week, month or year.

        Returns the window start plus revenue per day, units sold per product
        and the average order value.

        Raises:
            InvalidOrderRequestError: If time_range is unknown.
        """
        since = _format_timestamp(window_start(time_range, now or datetime.now(timezone.utc)))
        with self.db.unit_of_work() as uow:
            trend = self.store.sales_trend(uow, since)
        return {"time_range": time_range, "since": since, **trend}

    # --- administrative updates ---

    def update_order_status(self, order_id: str, status: OrderStatus | str) -> Order:
        """
        Move an order to another fulfilment status.

        Cancelled orders stay cancelled, and cancelling goes through
        cancel_order so stock is restored.

        Raises:
            InvalidOrderRequestError: If the status is unknown, is CANCELLED, or
                the order is already cancelled.
            OrderNotFoundError: If the order doesn't exist.
        """
        status = _parse_order_status(status)
        if status == OrderStatus.CANCELLED:
            raise InvalidOrderRequestError("use order cancellation to cancel an order")

        with self.db.unit_of_work() as uow:
            live = [s for s in OrderStatus if s != OrderStatus.CANCELLED]
            if not self.store.transition_status(uow, order_id, status, from_statuses=live):
                if self.store.get(uow, order_id) is None:
                    raise OrderNotFoundError(order_id)
                raise InvalidOrderRequestError(f"order {order_id} is cancelled")
            order = self.store.get(uow, order_id)

        self._log.info("order_status_updated", order_id=order_id, status=status.value)
        return order

    def update_payment_status(self, order_id: str, status: PaymentStatus | str) -> Order:
        """
        Overwrite the payment status (manual reconciliation).

        Raises:
            InvalidOrderRequestError: If the status is unknown.
            OrderNotFoundError: If the order doesn't exist.
        """
        status = _parse_payment_status(status)
        with self.db.unit_of_work() as uow:
            if not self.store.set_payment_status(uow, order_id, status):
                raise OrderNotFoundError(order_id)
            order = self.store.get(uow, order_id)

        self._log.info("payment_status_updated", order_id=order_id, payment_status=status.value)
        return order

    # --- helpers ---

    def _restore_stock(self, uow: UnitOfWork, order: Order) -> None:
        for item in order.items:
            self.inventory.restore(uow, item.product_id, item.quantity)

    def _schedule_expiry(self, uow: UnitOfWork, order: Order) -> None:
        if self.jobs is None or self.unpaid_order_ttl <= 0 or not order.payment_method.uses_gateway:
            return
        run_at = datetime.now(timezone.utc) + timedelta(seconds=self.unpaid_order_ttl)
        self.jobs.schedule(uow, EXPIRE_UNPAID_ORDER, order.id, run_at)

    def _notify(self, order: Order) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send_order_confirmation(order)
        except Exception as e:
            # best-effort, the order is already committed
            self._log.warning("notification_failed", order_id=order.id, error=str(e))

    def _page(self, page: int | None, limit: int | None, **filters) -> Page[Order]:
        with self.db.unit_of_work() as uow:
            return paginate(
                lambda skip, take: self.store.list_orders(uow, skip, take, **filters),
                lambda: self.store.count_orders(uow, **filters),
                page,
                limit,
            )
