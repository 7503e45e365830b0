"""Wire orderflow components together."""

from dataclasses import dataclass

from .config import Settings
from .db import Database
from .gateway import PaymentGateway, configure_stripe
from .inventory import InventoryLedger
from .jobs import EXPIRE_UNPAID_ORDER, JobRunner, JobStore
from .log import configure_logging
from .notifications import LogNotifier, Notifier
from .order_store import OrderStore
from .orders import OrderManager
from .payments import PaymentService
from .reconciler import PaymentReconciler


@dataclass
class Services:
    """Everything the API and CLI need, built once per process."""

    settings: Settings
    db: Database
    inventory: InventoryLedger
    store: OrderStore
    gateway: PaymentGateway
    orders: OrderManager
    reconciler: PaymentReconciler
    payments: PaymentService
    jobs: JobStore
    job_runner: JobRunner

    def close(self) -> None:
        self.db.dispose()


def build_services(
    settings: Settings | None = None,
    notifier: Notifier | None = None,
    create_schema: bool = True,
) -> Services:
    """
    Build the component graph.

    Args:
        settings: Defaults to Settings.from_env().
        notifier: Defaults to LogNotifier.
        create_schema: Create missing tables on startup.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    configure_stripe(settings)

    db = Database.from_settings(settings)
    if create_schema:
        db.create_schema()

    inventory = InventoryLedger()
    store = OrderStore()
    gateway = PaymentGateway.from_settings(settings)
    jobs = JobStore()
    orders = OrderManager(
        db,
        inventory,
        store,
        gateway,
        notifier=notifier or LogNotifier(),
        jobs=jobs,
        unpaid_order_ttl=settings.unpaid_order_ttl,
    )
    reconciler = PaymentReconciler(db, store, gateway)
    payments = PaymentService(db, store, gateway, reconciler)
    job_runner = JobRunner(db, jobs, {EXPIRE_UNPAID_ORDER: orders.expire_unpaid_order})

    return Services(
        settings=settings,
        db=db,
        inventory=inventory,
        store=store,
        gateway=gateway,
        orders=orders,
        reconciler=reconciler,
        payments=payments,
        jobs=jobs,
        job_runner=job_runner,
    )
