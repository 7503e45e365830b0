"""FastAPI REST API for orderflow."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

from . import __version__
from .bootstrap import Services, build_services
from .errors import ErrorKind, OrderflowError
from .log import get_logger
from .models import Order
from .pagination import Page

log = get_logger("api")


# --- Pydantic Schemas ---


class ProductSchema(BaseModel):
    id: str
    name: str
    price: str
    stock: int
    is_active: bool = True
    created_at: str


class ProductCreateRequest(BaseModel):
    """Request body for registering a product."""

    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., gt=0)
    stock: int = Field(default=0, ge=0)
    is_active: bool = True


class ProductListResponse(BaseModel):
    products: list[ProductSchema]
    count: int


class OrderItemSchema(BaseModel):
    id: str
    order_id: str
    product_id: str
    quantity: int
    price: str
    subtotal: str


class OrderSchema(BaseModel):
    id: str
    user_id: str
    address_id: str
    total_amount: str
    payment_method: str
    status: str
    payment_status: str
    payment_intent_id: Optional[str] = None
    payment_event_at: Optional[int] = None
    items: list[OrderItemSchema]
    created_at: str
    updated_at: str


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int


class OrderCreateRequest(BaseModel):
    """Request body for placing an order."""

    address_id: str
    items: list[OrderItemRequest]
    payment_method: str = Field(
        ..., description="STRIPE, CARD, MOBILE_MONEY or CASH_ON_DELIVERY"
    )


class OrderListResponse(BaseModel):
    data: list[OrderSchema]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class OrderStatusUpdateRequest(BaseModel):
    status: str


class PaymentStatusUpdateRequest(BaseModel):
    payment_status: str


class OrderStatisticsResponse(BaseModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: str


class UserOrderStatisticsResponse(BaseModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    total_spent: str


class DailySalesSchema(BaseModel):
    date: str
    orders: int
    revenue: str


class ProductSalesSchema(BaseModel):
    product_id: str
    quantity: int


class SalesTrendResponse(BaseModel):
    time_range: str
    since: str
    delivered_orders: int
    total_revenue: str
    average_order_value: str
    daily_sales: list[DailySalesSchema]
    product_sales: list[ProductSalesSchema]


class PaymentCreateRequest(BaseModel):
    order_id: str
    payment_method: str


class PaymentConfirmRequest(BaseModel):
    payment_method: str


class PaymentCreateResponse(BaseModel):
    type: str  # "card" | "cash_on_delivery"
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    status: Optional[str] = None


class PaymentConfirmResponse(BaseModel):
    status: str
    amount: str


class WebhookResponse(BaseModel):
    received: bool = True
    event_id: str
    event_type: str
    outcome: str
    order_id: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: str
    error_type: str
    kind: str


# --- Helper Functions ---


def get_services(request: Request) -> Services:
    """Get the Services the app was created with."""
    return request.app.state.services


def order_to_schema(order: Order) -> OrderSchema:
    """Convert dataclass Order to Pydantic schema."""
    return OrderSchema(**order.to_dict())


def page_to_response(page: Page[Order]) -> OrderListResponse:
    return OrderListResponse(**page.to_dict(order_to_schema))


# --- Error Handling ---


# Map error kinds to HTTP status codes
ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.PRODUCT_NOT_FOUND: 404,
    ErrorKind.ORDER_NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_STOCK: 400,
    ErrorKind.AMOUNT_OUT_OF_RANGE: 400,
    ErrorKind.INVALID_PAYMENT_METHOD: 400,
    ErrorKind.INVALID_ORDER_REQUEST: 400,
    ErrorKind.INVALID_WEBHOOK_EVENT: 400,
    ErrorKind.NOT_CANCELLABLE: 409,
    ErrorKind.GATEWAY_REJECTED: 502,
    ErrorKind.GATEWAY_UNAVAILABLE: 503,
}


async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    """Map OrderflowError kinds to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__, "kind": exc.kind.value},
    )


# --- Endpoints ---


router = APIRouter(prefix="/api")


@router.get("/health")
def health_check(services: Services = Depends(get_services)):
    """Report service and database status."""
    try:
        with services.db.unit_of_work() as uow:
            uow.execute(text("SELECT 1"))
    except Exception as e:
        log.error("health_check_failed", error=str(e))
        return {"status": "error", "detail": str(e)}
    return {"status": "ok", "version": __version__}


# --- Product Endpoints ---


@router.get("/products", response_model=ProductListResponse)
def list_products(
    include_inactive: bool = Query(default=False),
    services: Services = Depends(get_services),
):
    """List products in the catalog."""
    with services.db.unit_of_work() as uow:
        products = services.inventory.list_products(uow, include_inactive=include_inactive)
    return ProductListResponse(
        products=[ProductSchema(**p.to_dict()) for p in products],
        count=len(products),
    )


@router.post("/products", response_model=ProductSchema, status_code=201)
def create_product(request: ProductCreateRequest, services: Services = Depends(get_services)):
    """Register a product with its initial stock."""
    with services.db.unit_of_work() as uow:
        product = services.inventory.add_product(
            uow, request.name, request.price, request.stock, request.is_active
        )
    return ProductSchema(**product.to_dict())


# --- Order Endpoints ---


@router.post("/orders", response_model=OrderSchema, status_code=201)
def create_order(
    request: OrderCreateRequest,
    x_user_id: str = Header(...),
    services: Services = Depends(get_services),
):
    """Place an order for the calling user."""
    order = services.orders.create_order(
        user_id=x_user_id,
        address_id=request.address_id,
        items=[item.model_dump() for item in request.items],
        payment_method=request.payment_method,
    )
    return order_to_schema(order)


@router.get("/orders", response_model=OrderListResponse)
def list_user_orders(
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    x_user_id: str = Header(...),
    services: Services = Depends(get_services),
):
    """List the calling user's orders, newest first."""
    return page_to_response(services.orders.get_user_orders(x_user_id, page, limit))


@router.get("/orders/statistics", response_model=UserOrderStatisticsResponse)
def user_order_statistics(
    x_user_id: str = Header(...),
    services: Services = Depends(get_services),
):
    stats = services.orders.get_user_order_statistics(x_user_id)
    return UserOrderStatisticsResponse(**{**stats, "total_spent": str(stats["total_spent"])})


@router.get("/orders/{order_id}", response_model=OrderSchema)
def get_order(
    order_id: str,
    x_user_id: str = Header(...),
    services: Services = Depends(get_services),
):
    """Get one of the calling user's orders."""
    return order_to_schema(services.orders.get_order_by_id(order_id, user_id=x_user_id))


@router.post("/orders/{order_id}/cancel", response_model=OrderSchema)
def cancel_order(
    order_id: str,
    x_user_id: str = Header(...),
    services: Services = Depends(get_services),
):
    """Cancel a pending order and restore its stock."""
    return order_to_schema(services.orders.cancel_order(order_id, x_user_id))


# --- Admin Order Endpoints ---


@router.get("/admin/orders/statistics", response_model=OrderStatisticsResponse)
def order_statistics(services: Services = Depends(get_services)):
    stats = services.orders.get_order_statistics()
    return OrderStatisticsResponse(**{**stats, "total_revenue": str(stats["total_revenue"])})


@router.get("/admin/orders/analytics/sales-trend", response_model=SalesTrendResponse)
def sales_trend(
    time_range: str = Query(default="week", description="day, week, month or year"),
    services: Services = Depends(get_services),
):
    """Delivered-order sales over the chosen window."""
    trend = services.orders.get_sales_trend_analytics(time_range)
    return SalesTrendResponse(
        time_range=trend["time_range"],
        since=trend["since"],
        delivered_orders=trend["delivered_orders"],
        total_revenue=str(trend["total_revenue"]),
        average_order_value=str(trend["average_order_value"]),
        daily_sales=[
            DailySalesSchema(date=d["date"], orders=d["orders"], revenue=str(d["revenue"]))
            for d in trend["daily_sales"]
        ],
        product_sales=[ProductSalesSchema(**p) for p in trend["product_sales"]],
    )


@router.get("/admin/orders/status/{status}", response_model=OrderListResponse)
def list_orders_by_status(
    status: str,
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    services: Services = Depends(get_services),
):
    return page_to_response(services.orders.get_orders_by_status(status, page, limit))


@router.get("/admin/orders/date-range", response_model=OrderListResponse)
def list_orders_by_date_range(
    start: datetime = Query(...),
    end: datetime = Query(...),
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    services: Services = Depends(get_services),
):
    return page_to_response(services.orders.get_orders_by_date_range(start, end, page, limit))


@router.patch("/admin/orders/{order_id}/status", response_model=OrderSchema)
def update_order_status(
    order_id: str,
    request: OrderStatusUpdateRequest,
    services: Services = Depends(get_services),
):
    """Move an order along the fulfilment lifecycle."""
    return order_to_schema(services.orders.update_order_status(order_id, request.status))


@router.patch("/admin/orders/{order_id}/payment-status", response_model=OrderSchema)
def update_payment_status(
    order_id: str,
    request: PaymentStatusUpdateRequest,
    services: Services = Depends(get_services),
):
    """Overwrite an order's payment status."""
    return order_to_schema(
        services.orders.update_payment_status(order_id, request.payment_status)
    )


# --- Payment Endpoints ---


@router.post("/payments", response_model=PaymentCreateResponse, status_code=201)
def create_payment(
    request: PaymentCreateRequest,
    x_user_id: str = Header(...),
    services: Services = Depends(get_services),
):
    """Start paying for one of the calling user's orders."""
    result = services.payments.create_payment(
        request.order_id, request.payment_method, user_id=x_user_id
    )
    return PaymentCreateResponse(**result)


@router.post("/payments/{payment_id}/confirm", response_model=PaymentConfirmResponse)
def confirm_payment(
    payment_id: str,
    request: PaymentConfirmRequest,
    services: Services = Depends(get_services),
):
    result = services.payments.confirm_payment(payment_id, request.payment_method)
    return PaymentConfirmResponse(status=result["status"], amount=str(result["amount"]))


@router.post("/payments/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
):
    """
    Receive a payment gateway event.

    The raw body is needed for signature verification. Invalid events get a
    400 so the gateway redelivers; every accepted event, including ignored and
    unmatched ones, gets a 200.
    """
    services = get_services(request)
    payload = await request.body()
    result = await run_in_threadpool(
        services.payments.handle_webhook, payload, stripe_signature
    )
    return WebhookResponse(**result.to_dict())


# --- FastAPI App ---


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Component graph to serve; built from the environment if omitted.
    """
    app = FastAPI(
        title="orderflow API",
        description="REST API for orders, inventory and payments",
        version=__version__,
    )
    app.state.services = services or build_services()

    # CORS for local storefront development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(OrderflowError, orderflow_error_handler)
    app.include_router(router)
    return app
