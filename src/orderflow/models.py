"""Data models for orderflow."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
import uuid


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string with fixed-width microseconds."""
    return _format_timestamp(datetime.now(timezone.utc))


def _format_timestamp(value: datetime) -> str:
    """Format a datetime the way timestamps are stored (sortable as text)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _generate_id() -> str:
    """Generate a new record ID."""
    return str(uuid.uuid4())


CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units (x100, half-up)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Convert integer minor units back to a major-unit Decimal."""
    return (Decimal(amount) / 100).quantize(CENT)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    STRIPE = "STRIPE"
    CARD = "CARD"
    MOBILE_MONEY = "MOBILE_MONEY"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"

    @property
    def uses_gateway(self) -> bool:
        """Whether payments with this method go through the card gateway."""
        return self in (PaymentMethod.STRIPE, PaymentMethod.CARD)


@dataclass
class Product:
    """A sellable product and its current stock count."""

    id: str
    name: str
    price: Decimal
    stock: int
    is_active: bool = True
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "stock": self.stock,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            name=data["name"],
            price=Decimal(str(data["price"])),
            stock=int(data["stock"]),
            is_active=data.get("is_active", True),
            created_at=data.get("created_at", ""),
        )

    @classmethod
    def create(cls, name: str, price: Decimal, stock: int, is_active: bool = True) -> "Product":
        """Create a new product with generated ID and timestamp."""
        return cls(
            id=_generate_id(),
            name=name,
            price=Decimal(price).quantize(CENT),
            stock=stock,
            is_active=is_active,
        )


@dataclass
class OrderItem:
    """One product line of an order; price is the unit price captured at order time."""

    id: str
    order_id: str
    product_id: str
    quantity: int
    price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price": str(self.price),
            "subtotal": str(self.subtotal),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            id=data["id"],
            order_id=data["order_id"],
            product_id=data["product_id"],
            quantity=int(data["quantity"]),
            price=Decimal(str(data["price"])),
        )


@dataclass
class Order:
    """An order and its items."""

    id: str
    user_id: str
    address_id: str
    total_amount: Decimal
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: str | None = None
    payment_event_at: int | None = None  # gateway timestamp of last applied payment event
    items: list[OrderItem] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "address_id": self.address_id,
            "total_amount": str(self.total_amount),
            "payment_method": self.payment_method.value,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.payment_intent_id is not None:
            result["payment_intent_id"] = self.payment_intent_id
        if self.payment_event_at is not None:
            result["payment_event_at"] = self.payment_event_at
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            address_id=data["address_id"],
            total_amount=Decimal(str(data["total_amount"])),
            payment_method=PaymentMethod(data["payment_method"]),
            status=OrderStatus(data.get("status", OrderStatus.PENDING.value)),
            payment_status=PaymentStatus(data.get("payment_status", PaymentStatus.PENDING.value)),
            payment_intent_id=data.get("payment_intent_id"),
            payment_event_at=data.get("payment_event_at"),
            items=[OrderItem.from_dict(i) for i in data.get("items", [])],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(
        cls,
        user_id: str,
        address_id: str,
        payment_method: PaymentMethod,
        lines: list[tuple[str, int, Decimal]],
        payment_intent_id: str | None = None,
    ) -> "Order":
        """
        Create a new PENDING order from (product_id, quantity, unit_price) lines.

        The total is computed here once and never recomputed.
        """
        order_id = _generate_id()
        items = [
            OrderItem(
                id=_generate_id(),
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                price=price,
            )
            for product_id, quantity, price in lines
        ]
        now = _utc_now()
        return cls(
            id=order_id,
            user_id=user_id,
            address_id=address_id,
            total_amount=sum((item.subtotal for item in items), Decimal("0")).quantize(CENT),
            payment_method=payment_method,
            payment_intent_id=payment_intent_id,
            items=items,
            created_at=now,
            updated_at=now,
        )


# Models for the payment gateway


@dataclass
class PaymentIntent:
    """Gateway-side payment intent, as far as orderflow cares about it."""

    id: str
    amount: int  # minor units
    currency: str
    status: str
    client_secret: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
        }
        if self.client_secret is not None:
            result["client_secret"] = self.client_secret
        return result


@dataclass
class WebhookEvent:
    """A verified gateway notification."""

    id: str
    type: str
    created: int | None
    object: dict[str, Any]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebhookEvent":
        return cls(
            id=data["id"],
            type=data["type"],
            created=data.get("created"),
            object=data.get("data", {}).get("object", {}),
        )


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"  # payment status changed
    NOOP = "noop"  # order already in the target status
    DUPLICATE = "duplicate"  # event id seen before
    STALE = "stale"  # superseded by a newer or higher-priority event
    UNMATCHED = "unmatched"  # no order references the intent
    IGNORED = "ignored"  # event type not handled
    MALFORMED = "malformed"  # verified, but lacks the intent reference


@dataclass
class ReconcileResult:
    """What a webhook event did."""

    event_id: str
    event_type: str
    outcome: ReconcileOutcome
    order_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "order_id": self.order_id,
        }


# Models for scheduled jobs


class JobStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class ScheduledJob:
    """A durable unit of deferred work."""

    id: str
    kind: str
    target_id: str
    run_at: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "target_id": self.target_id,
            "run_at": self.run_at,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at,
        }

    @classmethod
    def create(cls, kind: str, target_id: str, run_at: datetime) -> "ScheduledJob":
        """Create a new pending job with generated ID."""
        return cls(
            id=_generate_id(),
            kind=kind,
            target_id=target_id,
            run_at=_format_timestamp(run_at),
        )
