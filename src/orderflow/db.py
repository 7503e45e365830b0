"""Relational storage: schema, engine setup and the unit of work."""

import threading
from contextlib import contextmanager, nullcontext
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, CursorResult, Engine
from sqlalchemy.pool import StaticPool

from .config import Settings

T = TypeVar("T")

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", String(32), nullable=False),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    CheckConstraint("price > 0", name="ck_products_price_positive"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("address_id", String(64), nullable=False),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("payment_method", String(32), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("payment_status", String(16), nullable=False),
    Column("payment_intent_id", String(255), nullable=True, unique=True),
    Column("payment_event_at", Integer, nullable=True),
    Column("created_at", String(32), nullable=False, index=True),
    Column("updated_at", String(32), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
)

processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String(255), primary_key=True),
    Column("event_type", String(64), nullable=False),
    Column("order_id", String(36), nullable=True),
    Column("outcome", String(16), nullable=False),
    Column("processed_at", String(32), nullable=False),
)

scheduled_jobs = Table(
    "scheduled_jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("kind", String(64), nullable=False),
    Column("target_id", String(64), nullable=False),
    Column("run_at", String(32), nullable=False),
    Column("status", String(16), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Column("created_at", String(32), nullable=False),
    Index("ix_scheduled_jobs_due", "status", "run_at"),
)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_db_engine(url: str, timeout: float = 30.0) -> Engine:
    """
    Create an engine for the given database URL.

    SQLite connections start every transaction with BEGIN IMMEDIATE so that
    concurrent writers queue on the database lock (up to ``timeout`` seconds)
    instead of failing when two readers try to upgrade to a write lock.
    Other backends rely on row locks and conditional updates.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    kwargs: dict[str, Any] = {
        "connect_args": {"check_same_thread": False, "timeout": timeout},
    }
    if _is_memory_sqlite(url):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Take transaction control away from pysqlite so "begin" below is the only BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class UnitOfWork:
    """
    Transactional handle passed to every store operation.

    Everything executed through one UnitOfWork commits together or not at all.
    """

    def __init__(self, connection: Connection):
        self.connection = connection

    def execute(self, statement, parameters: Any = None) -> CursorResult:
        if parameters is None:
            return self.connection.execute(statement)
        return self.connection.execute(statement, parameters)


class Database:
    """
    Owns the engine; hands out units of work.

    An in-memory SQLite engine has one shared connection, so its units of work
    take turns on a lock instead of interleaving on that connection.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._lock = threading.RLock() if isinstance(engine.pool, StaticPool) else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(create_db_engine(settings.database_url, timeout=settings.db_timeout))

    def create_schema(self) -> None:
        """Create all tables that don't exist yet."""
        metadata.create_all(self.engine)

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """
        Open a transaction.

        Commits when the block exits normally, rolls back and re-raises otherwise.
        """
        with self._lock or nullcontext():
            with self.engine.begin() as connection:
                yield UnitOfWork(connection)

    def run(self, fn: Callable[[UnitOfWork], T]) -> T:
        """Run ``fn`` inside a unit of work and return its result."""
        with self.unit_of_work() as uow:
            return fn(uow)

    def dispose(self) -> None:
        self.engine.dispose()
