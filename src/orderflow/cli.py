"""Command-line interface for orderflow."""

import argparse
import dataclasses
import json
import sys
import time
from decimal import Decimal, InvalidOperation

from . import __version__
from .bootstrap import Services, build_services
from .config import Settings
from .errors import OrderflowError, ProductNotFoundError


def get_services(args: argparse.Namespace) -> Services:
    """Build services from the environment, honouring --database-url."""
    settings = Settings.from_env()
    if args.database_url:
        settings = dataclasses.replace(settings, database_url=args.database_url)
    return build_services(settings)


def format_product(product) -> str:
    status = "" if product.is_active else " (inactive)"
    return f"{product.id}  {product.name}  price={product.price}  stock={product.stock}{status}"


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the database schema."""
    try:
        services = get_services(args)
        print(f"Initialized database at {services.settings.database_url}")
        services.close()
        return 0

    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_add_product(args: argparse.Namespace) -> int:
    """Register a product."""
    try:
        price = Decimal(args.price)
    except InvalidOperation:
        print(f"Error: invalid price {args.price!r}", file=sys.stderr)
        return 1

    try:
        services = get_services(args)
        with services.db.unit_of_work() as uow:
            product = services.inventory.add_product(
                uow, args.name, price, args.stock, is_active=not args.inactive
            )
        services.close()

        print(f"Added product: {product.id}")
        print(f"  {format_product(product)}")
        return 0

    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_products(args: argparse.Namespace) -> int:
    """List products."""
    try:
        services = get_services(args)
        with services.db.unit_of_work() as uow:
            products = services.inventory.list_products(uow, include_inactive=args.all)
        services.close()

        if args.json:
            print(json.dumps([p.to_dict() for p in products], indent=2))
            return 0
        if not products:
            print("No products found.")
            return 0

        print(f"Products ({len(products)}):")
        for product in products:
            print(f"  {format_product(product)}")
        return 0

    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_stock(args: argparse.Namespace) -> int:
    """Show or set the stock of a product."""
    try:
        services = get_services(args)
        with services.db.unit_of_work() as uow:
            if args.set is not None:
                product = services.inventory.set_stock(uow, args.product_id, args.set)
            else:
                product = services.inventory.get_product(uow, args.product_id)
        services.close()

        if product is None:
            raise ProductNotFoundError(args.product_id)

        print(format_product(product))
        return 0

    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_run_jobs(args: argparse.Namespace) -> int:
    """Run due scheduled jobs once, or keep polling with --loop."""
    try:
        services = get_services(args)
        while True:
            runs = services.job_runner.run_due()
            failed = [run for run in runs if not run.succeeded]
            if runs or not args.loop:
                print(f"Ran {len(runs)} job(s), {len(failed)} failed")
            for run in failed:
                print(f"  {run.kind} {run.target_id}: {run.error}", file=sys.stderr)
            if not args.loop:
                break
            time.sleep(args.interval)
        services.close()
        return 1 if failed else 0

    except KeyboardInterrupt:
        return 0
    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        if args.database_url:
            print("Error: set ORDERFLOW_DATABASE_URL instead of --database-url for serve",
                  file=sys.stderr)
            return 1

        settings = Settings.from_env()
        print("Starting orderflow API server...")
        print(f"Database: {settings.database_url}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app factory as an import string
        if args.reload:
            app_target = "orderflow.api:create_app"
        else:
            from .api import create_app
            app_target = create_app(build_services(settings))

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            factory=args.reload,
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="orderflow",
        description="Order placement, inventory and payment reconciliation service.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--database-url", help="Database URL (default: $ORDERFLOW_DATABASE_URL)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # add-product
    add_parser = subparsers.add_parser("add-product", help="Register a product")
    add_parser.add_argument("name", help="Product name")
    add_parser.add_argument("price", help="Unit price, e.g. 1500.00")
    add_parser.add_argument(
        "--stock", "-s", type=int, default=0, help="Initial stock (default: 0)"
    )
    add_parser.add_argument(
        "--inactive", action="store_true", help="Register the product as not for sale"
    )

    # products
    products_parser = subparsers.add_parser("products", help="List products")
    products_parser.add_argument(
        "--all", "-a", action="store_true", help="Include inactive products"
    )
    products_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # stock
    stock_parser = subparsers.add_parser("stock", help="Show or set product stock")
    stock_parser.add_argument("product_id", help="Product ID")
    stock_parser.add_argument("--set", type=int, help="New stock count")

    # run-jobs
    jobs_parser = subparsers.add_parser("run-jobs", help="Run due scheduled jobs")
    jobs_parser.add_argument(
        "--loop", action="store_true", help="Keep polling instead of running once"
    )
    jobs_parser.add_argument(
        "--interval", type=float, default=30.0, help="Seconds between polls (default: 30)"
    )

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        "init-db": cmd_init_db,
        "add-product": cmd_add_product,
        "products": cmd_products,
        "stock": cmd_stock,
        "run-jobs": cmd_run_jobs,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
