"""Inventory ledger: per-product stock counts."""

from decimal import Decimal

from sqlalchemy import select, update

from .db import UnitOfWork, products
from .errors import InsufficientStockError, InvalidOrderRequestError, ProductNotFoundError
from .log import get_logger
from .models import Product


def _row_to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        price=Decimal(row.price),
        stock=row.stock,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


class InventoryLedger:
    """
    Owns product stock.

    Every method takes the caller's UnitOfWork, so stock changes commit or roll
    back together with whatever else the caller does in that transaction.
    Stock is only changed by conditional updates; nothing reads a count and
    writes it back.
    """

    def __init__(self):
        self._log = get_logger("inventory")

    def add_product(
        self,
        uow: UnitOfWork,
        name: str,
        price: Decimal,
        stock: int,
        is_active: bool = True,
    ) -> Product:
        """
        Register a new product.

        Raises:
            InvalidOrderRequestError: If price is not positive or stock is negative.
        """
        if Decimal(price) <= 0:
            raise InvalidOrderRequestError(f"price must be positive (got {price})")
        if stock < 0:
            raise InvalidOrderRequestError(f"stock cannot be negative (got {stock})")

        product = Product.create(name=name, price=Decimal(price), stock=stock, is_active=is_active)
        uow.execute(products.insert().values(**{
            "id": product.id,
            "name": product.name,
            "price": product.price,
            "stock": product.stock,
            "is_active": product.is_active,
            "created_at": product.created_at,
        }))
        self._log.info("product_added", product_id=product.id, stock=stock)
        return product

    def get_product(self, uow: UnitOfWork, product_id: str, lock: bool = False) -> Product | None:
        """
        Load a product, optionally taking a row lock for the rest of the transaction.
        """
        stmt = select(products).where(products.c.id == product_id)
        if lock:
            stmt = stmt.with_for_update()
        row = uow.execute(stmt).first()
        return _row_to_product(row) if row is not None else None

    def require_product(self, uow: UnitOfWork, product_id: str, lock: bool = False) -> Product:
        """
        Load a product that is for sale.

        Raises:
            ProductNotFoundError: If the product doesn't exist or is inactive.
        """
        product = self.get_product(uow, product_id, lock=lock)
        if product is None or not product.is_active:
            raise ProductNotFoundError(product_id)
        return product

    def list_products(self, uow: UnitOfWork, include_inactive: bool = False) -> list[Product]:
        stmt = select(products).order_by(products.c.created_at)
        if not include_inactive:
            stmt = stmt.where(products.c.is_active.is_(True))
        return [_row_to_product(row) for row in uow.execute(stmt)]

    def decrement(self, uow: UnitOfWork, product_id: str, quantity: int) -> None:
        """
        Take ``quantity`` units out of stock, only if that many are available.

        Raises:
            InsufficientStockError: If fewer than ``quantity`` units remain.
        """
        if quantity <= 0:
            raise InvalidOrderRequestError(f"quantity must be positive (got {quantity})")
        result = uow.execute(
            update(products)
            .where(products.c.id == product_id)
            .where(products.c.stock >= quantity)
            .values(stock=products.c.stock - quantity)
        )
        if result.rowcount != 1:
            current = self.get_product(uow, product_id)
            if current is None:
                raise ProductNotFoundError(product_id)
            raise InsufficientStockError(product_id, quantity, current.stock)

    def restore(self, uow: UnitOfWork, product_id: str, quantity: int) -> None:
        """
        Put ``quantity`` units back into stock (inverse of decrement).

        Raises:
            ProductNotFoundError: If the product row is gone.
        """
        if quantity <= 0:
            raise InvalidOrderRequestError(f"quantity must be positive (got {quantity})")
        result = uow.execute(
            update(products)
            .where(products.c.id == product_id)
            .values(stock=products.c.stock + quantity)
        )
        if result.rowcount != 1:
            raise ProductNotFoundError(product_id)

    def set_stock(self, uow: UnitOfWork, product_id: str, stock: int) -> Product:
        """
        Overwrite the stock count (catalog administration, not order flow).

        Raises:
            InvalidOrderRequestError: If stock is negative.
            ProductNotFoundError: If the product doesn't exist.
        """
        if stock < 0:
            raise InvalidOrderRequestError(f"stock cannot be negative (got {stock})")
        result = uow.execute(
            update(products).where(products.c.id == product_id).values(stock=stock)
        )
        if result.rowcount != 1:
            raise ProductNotFoundError(product_id)
        self._log.info("stock_set", product_id=product_id, stock=stock)
        return self.get_product(uow, product_id)
