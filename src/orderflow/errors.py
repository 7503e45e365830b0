"""Custom exceptions for orderflow."""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure kinds callers branch on."""

    PRODUCT_NOT_FOUND = "product_not_found"
    INSUFFICIENT_STOCK = "insufficient_stock"
    AMOUNT_OUT_OF_RANGE = "amount_out_of_range"
    INVALID_PAYMENT_METHOD = "invalid_payment_method"
    ORDER_NOT_FOUND = "order_not_found"
    NOT_CANCELLABLE = "not_cancellable"
    INVALID_ORDER_REQUEST = "invalid_order_request"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    GATEWAY_REJECTED = "gateway_rejected"
    INVALID_WEBHOOK_EVENT = "invalid_webhook_event"


class OrderflowError(Exception):
    """Base exception for all orderflow errors."""

    kind: ErrorKind


class ProductNotFoundError(OrderflowError):
    """Raised when a product doesn't exist or is not for sale."""

    kind = ErrorKind.PRODUCT_NOT_FOUND

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class InsufficientStockError(OrderflowError):
    """Raised when a product has fewer units than requested."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient stock for product {product_id}: requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(msg)


class AmountOutOfRangeError(OrderflowError):
    """Raised when a payment amount is outside the gateway limits."""

    kind = ErrorKind.AMOUNT_OUT_OF_RANGE

    def __init__(self, amount: int, minimum: int, maximum: int, currency: str):
        self.amount = amount
        self.minimum = minimum
        self.maximum = maximum
        self.currency = currency
        if amount < minimum:
            msg = f"Amount must be at least {minimum} {currency} minor units (got {amount})"
        else:
            msg = f"Amount cannot exceed {maximum} {currency} minor units (got {amount})"
        super().__init__(msg)


class InvalidPaymentMethodError(OrderflowError):
    """Raised when an operation is not supported for a payment method."""

    kind = ErrorKind.INVALID_PAYMENT_METHOD

    def __init__(self, method: str, reason: str | None = None):
        self.method = method
        msg = f"Invalid payment method: {method}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class OrderNotFoundError(OrderflowError):
    """Raised when an order doesn't exist or belongs to another user."""

    kind = ErrorKind.ORDER_NOT_FOUND

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class NotCancellableError(OrderflowError):
    """Raised when an order is no longer in a cancellable status."""

    kind = ErrorKind.NOT_CANCELLABLE

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} cannot be cancelled in status {status}")


class InvalidOrderRequestError(OrderflowError):
    """Raised when request input is malformed."""

    kind = ErrorKind.INVALID_ORDER_REQUEST

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid request: {reason}")


class GatewayUnavailableError(OrderflowError):
    """Raised on network failures, timeouts and 5xx answers from the payment gateway."""

    kind = ErrorKind.GATEWAY_UNAVAILABLE

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Payment gateway unavailable during {operation}: {detail}")


class GatewayRejectedError(OrderflowError):
    """Raised when the payment gateway refuses a request."""

    kind = ErrorKind.GATEWAY_REJECTED

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Payment gateway rejected {operation}: {detail}")


class InvalidWebhookEventError(OrderflowError):
    """Raised when a webhook payload can't be parsed or its signature doesn't verify."""

    kind = ErrorKind.INVALID_WEBHOOK_EVENT

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid webhook event: {reason}")
