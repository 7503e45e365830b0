"""Order aggregate storage: orders, their items and status fields."""

from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update

from .db import UnitOfWork, order_items, orders
from .models import (
    CENT,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    _utc_now,
)


def _row_to_order(row, items: list[OrderItem]) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        address_id=row.address_id,
        total_amount=Decimal(row.total_amount),
        payment_method=PaymentMethod(row.payment_method),
        status=OrderStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        payment_intent_id=row.payment_intent_id,
        payment_event_at=row.payment_event_at,
        items=items,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_item(row) -> OrderItem:
    return OrderItem(
        id=row.id,
        order_id=row.order_id,
        product_id=row.product_id,
        quantity=row.quantity,
        price=Decimal(row.price),
    )


class OrderStore:
    """
    Reads and writes Order + OrderItem rows.

    Status changes are conditional updates: each mutator states which current
    values it may overwrite and reports whether a row actually changed, so
    concurrent writers to the same order serialise on that row.
    """

    # --- writes ---

    def insert(self, uow: UnitOfWork, order: Order) -> None:
        """Persist a new order and its items."""
        uow.execute(orders.insert().values(
            id=order.id,
            user_id=order.user_id,
            address_id=order.address_id,
            total_amount=order.total_amount,
            payment_method=order.payment_method.value,
            status=order.status.value,
            payment_status=order.payment_status.value,
            payment_intent_id=order.payment_intent_id,
            payment_event_at=order.payment_event_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
        ))
        if order.items:
            uow.execute(order_items.insert(), [
                {
                    "id": item.id,
                    "order_id": item.order_id,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "price": item.price,
                }
                for item in order.items
            ])

    def transition_status(
        self,
        uow: UnitOfWork,
        order_id: str,
        status: OrderStatus,
        from_statuses: Iterable[OrderStatus] | None = None,
        user_id: str | None = None,
    ) -> bool:
        """
        Set the order status.

        Args:
            from_statuses: Only update if the current status is one of these.
            user_id: Only update if the order belongs to this user.

        Returns:
            True if a row was updated.
        """
        stmt = update(orders).where(orders.c.id == order_id)
        if from_statuses is not None:
            stmt = stmt.where(orders.c.status.in_([s.value for s in from_statuses]))
        if user_id is not None:
            stmt = stmt.where(orders.c.user_id == user_id)
        result = uow.execute(stmt.values(status=status.value, updated_at=_utc_now()))
        return result.rowcount == 1

    def set_payment_status(
        self,
        uow: UnitOfWork,
        order_id: str,
        status: PaymentStatus,
        from_statuses: Iterable[PaymentStatus] | None = None,
        event_at: int | None = None,
    ) -> bool:
        """
        Set the payment status.

        Args:
            from_statuses: Only update if the current payment status is one of these.
            event_at: Gateway timestamp of the event causing the change. The
                update is skipped if a newer event was already applied, and
                the timestamp is recorded otherwise.

        Returns:
            True if a row was updated.
        """
        stmt = update(orders).where(orders.c.id == order_id)
        values: dict[str, Any] = {"payment_status": status.value, "updated_at": _utc_now()}
        if from_statuses is not None:
            stmt = stmt.where(orders.c.payment_status.in_([s.value for s in from_statuses]))
        if event_at is not None:
            stmt = stmt.where(or_(
                orders.c.payment_event_at.is_(None),
                orders.c.payment_event_at <= event_at,
            ))
            values["payment_event_at"] = event_at
        result = uow.execute(stmt.values(**values))
        return result.rowcount == 1

    def attach_payment_intent(self, uow: UnitOfWork, order_id: str, intent_id: str) -> bool:
        """
        Store a payment intent id on an order that doesn't have one yet.

        Returns:
            True if the id was stored, False if the order already had an intent.
        """
        result = uow.execute(
            update(orders)
            .where(orders.c.id == order_id)
            .where(orders.c.payment_intent_id.is_(None))
            .values(payment_intent_id=intent_id, updated_at=_utc_now())
        )
        return result.rowcount == 1

    # --- reads ---

    def get(
        self,
        uow: UnitOfWork,
        order_id: str,
        user_id: str | None = None,
        lock: bool = False,
    ) -> Order | None:
        """
        Load one order with its items.

        Args:
            user_id: If given, orders of other users are reported as missing.
            lock: Take a row lock for the rest of the transaction.
        """
        stmt = select(orders).where(orders.c.id == order_id)
        if user_id is not None:
            stmt = stmt.where(orders.c.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        row = uow.execute(stmt).first()
        if row is None:
            return None
        return _row_to_order(row, self._load_items(uow, [row.id]).get(row.id, []))

    def find_by_payment_intent(self, uow: UnitOfWork, intent_id: str) -> Order | None:
        row = uow.execute(
            select(orders.c.id).where(orders.c.payment_intent_id == intent_id)
        ).first()
        if row is None:
            return None
        return self.get(uow, row.id)

    def list_orders(
        self,
        uow: UnitOfWork,
        skip: int = 0,
        take: int | None = None,
        user_id: str | None = None,
        status: OrderStatus | None = None,
        created_from: str | None = None,
        created_to: str | None = None,
    ) -> list[Order]:
        """List orders, newest first, with optional filters."""
        stmt = self._filtered(
            select(orders), user_id, status, created_from, created_to
        ).order_by(orders.c.created_at.desc(), orders.c.id)
        if skip:
            stmt = stmt.offset(skip)
        if take is not None:
            stmt = stmt.limit(take)
        rows = uow.execute(stmt).all()
        items = self._load_items(uow, [row.id for row in rows])
        return [_row_to_order(row, items.get(row.id, [])) for row in rows]

    def count_orders(
        self,
        uow: UnitOfWork,
        user_id: str | None = None,
        status: OrderStatus | None = None,
        created_from: str | None = None,
        created_to: str | None = None,
    ) -> int:
        stmt = self._filtered(
            select(func.count()).select_from(orders), user_id, status, created_from, created_to
        )
        return uow.execute(stmt).scalar_one()

    def statistics(self, uow: UnitOfWork, user_id: str | None = None) -> dict[str, Any]:
        """
        Count orders per status and sum revenue of delivered orders.

        Returns dict with:
        - total_orders, pending_orders, completed_orders (DELIVERED), cancelled_orders
        - delivered_amount: sum of total_amount over DELIVERED orders
        """
        stmt = select(
            orders.c.status,
            func.count().label("count"),
            func.sum(orders.c.total_amount).label("amount"),
        ).group_by(orders.c.status)
        if user_id is not None:
            stmt = stmt.where(orders.c.user_id == user_id)

        counts: dict[str, int] = {}
        delivered_amount = Decimal("0.00")
        for row in uow.execute(stmt):
            counts[row.status] = row.count
            if row.status == OrderStatus.DELIVERED.value and row.amount is not None:
                delivered_amount = Decimal(row.amount)

        return {
            "total_orders": sum(counts.values()),
            "pending_orders": counts.get(OrderStatus.PENDING.value, 0),
            "completed_orders": counts.get(OrderStatus.DELIVERED.value, 0),
            "cancelled_orders": counts.get(OrderStatus.CANCELLED.value, 0),
            "delivered_amount": delivered_amount,
        }

    def sales_trend(self, uow: UnitOfWork, since: str) -> dict[str, Any]:
        """
        Summarise DELIVERED orders created at or after ``since``.

        Returns dict with:
        - delivered_orders, total_revenue, average_order_value
        - daily_sales: [{"date", "orders", "revenue"}] oldest day first
        - product_sales: [{"product_id", "quantity"}] best sellers first
        """
        delivered = (
            (orders.c.status == OrderStatus.DELIVERED.value)
            & (orders.c.created_at >= since)
        )

        day = func.substr(orders.c.created_at, 1, 10).label("day")
        daily_rows = uow.execute(
            select(
                day,
                func.count().label("count"),
                func.sum(orders.c.total_amount).label("amount"),
            )
            .where(delivered)
            .group_by(day)
            .order_by(day)
        ).all()

        quantity = func.sum(order_items.c.quantity).label("quantity")
        product_rows = uow.execute(
            select(order_items.c.product_id, quantity)
            .join(orders, orders.c.id == order_items.c.order_id)
            .where(delivered)
            .group_by(order_items.c.product_id)
            .order_by(quantity.desc(), order_items.c.product_id)
        ).all()

        daily_sales = [
            {"date": row.day, "orders": row.count, "revenue": Decimal(row.amount).quantize(CENT)}
            for row in daily_rows
        ]
        delivered_orders = sum(entry["orders"] for entry in daily_sales)
        total_revenue = sum((entry["revenue"] for entry in daily_sales), Decimal("0.00"))
        average = (total_revenue / delivered_orders).quantize(CENT) if delivered_orders else Decimal("0.00")

        return {
            "delivered_orders": delivered_orders,
            "total_revenue": total_revenue,
            "average_order_value": average,
            "daily_sales": daily_sales,
            "product_sales": [
                {"product_id": row.product_id, "quantity": int(row.quantity)}
                for row in product_rows
            ],
        }

    # --- helpers ---

    @staticmethod
    def _filtered(stmt, user_id, status, created_from, created_to):
        if user_id is not None:
            stmt = stmt.where(orders.c.user_id == user_id)
        if status is not None:
            stmt = stmt.where(orders.c.status == status.value)
        if created_from is not None:
            stmt = stmt.where(orders.c.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(orders.c.created_at <= created_to)
        return stmt

    def _load_items(self, uow: UnitOfWork, order_ids: list[str]) -> dict[str, list[OrderItem]]:
        if not order_ids:
            return {}
        rows = uow.execute(
            select(order_items)
            .where(order_items.c.order_id.in_(order_ids))
            .order_by(order_items.c.order_id, order_items.c.product_id)
        )
        grouped: dict[str, list[OrderItem]] = {}
        for row in rows:
            grouped.setdefault(row.order_id, []).append(_row_to_item(row))
        return grouped
