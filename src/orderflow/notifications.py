"""Order notifications."""

from typing import Protocol

from .log import get_logger
from .models import Order


class Notifier(Protocol):
    """Delivers customer-facing messages about orders.

    Implementations may raise; callers treat delivery as best-effort.
    """

    def send_order_confirmation(self, order: Order) -> None:
        """Tell the customer their order was placed."""
        ...


class LogNotifier:
    """Records the dispatch in the log; stands in where no mail transport is configured."""

    def __init__(self):
        self._log = get_logger("notifier")

    def send_order_confirmation(self, order: Order) -> None:
        self._log.info(
            "order_confirmation_sent",
            order_id=order.id,
            user_id=order.user_id,
            total_amount=str(order.total_amount),
        )
