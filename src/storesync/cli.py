"""Command-line interface for storesync."""

import argparse
import asyncio
import json
import sys

from . import __version__
from .config import Settings
from .errors import StoreSyncError
from .logging_config import setup_logging
from .models import Order
from .state import CommerceState
from .utils import format_money


def get_state() -> CommerceState:
    """Get CommerceState backed by the configured data directory."""
    return CommerceState.from_settings(Settings.from_env())


def format_order(order: Order) -> str:
    """One-line summary of an order."""
    count = sum(i.quantity for i in order.items)
    return (
        f"{order.order_number}  {order.status.value:<10}  "
        f"{format_money(order.totals.total):>10}  {count} item(s)  {order.created_at}"
    )


# --- Orders ---


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List the user's orders."""
    try:
        state = get_state()
        ok = asyncio.run(state.orders.load_user_orders(args.user))
        if not ok:
            print(f"Error: {state.orders.error}", file=sys.stderr)
            return 1

        orders = [o for o in state.orders.orders if o.customer_id == args.user]
        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
            return 0

        if not orders:
            print("No orders.")
            return 0

        print(f"Orders ({len(orders)}):")
        print()
        for order in orders:
            print(f"  {format_order(order)}")
            print(f"    id: {order.id}  confirmation: {order.confirmation_number}")
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_reconcile(args: argparse.Namespace) -> int:
    """Turn checkout records into orders."""
    try:
        state = get_state()

        async def run() -> list[Order]:
            await state.cart.load(args.user)
            if args.session_id:
                order = await state.orders.reconcile(args.user, args.session_id)
                return [order] if order else []
            return await state.orders.reconcile_all(args.user)

        orders = asyncio.run(run())
        if state.orders.error:
            print(f"Error: {state.orders.error}", file=sys.stderr)
            return 1

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
            return 0

        print(f"Reconciled {len(orders)} order(s)")
        for order in orders:
            print(f"  {format_order(order)}")
            print(f"    confirmation: {order.confirmation_number}")
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_status(args: argparse.Namespace) -> int:
    """Move an order to a new status."""
    try:
        state = get_state()

        async def run() -> Order | None:
            if not await state.orders.load_user_orders(args.user):
                return None
            return await state.orders.update_order_status(args.order_id, args.status, args.note)

        order = asyncio.run(run())
        if order is None:
            print(f"Error: {state.orders.error}", file=sys.stderr)
            return 1

        print(f"Order {order.order_number} is now {order.status.value}")
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_create_local(args: argparse.Namespace) -> int:
    """Create a local test order from a JSON file."""
    try:
        with open(args.file, "r", encoding="utf-8") as f:
            order_data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return 1

    try:
        state = get_state()
        order_data.setdefault("customerId", args.user)
        order_id = state.orders.create_local_order(order_data)
        order = state.orders.get_order(order_id)
        print(f"Created local order: {order_id}")
        print(f"  Number: {order.order_number}")
        print(f"  Total: {format_money(order.totals.total)}")
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# --- Cart ---


def _print_cart(state: CommerceState) -> None:
    cart = state.cart
    if not cart.items:
        print("Cart is empty.")
        return
    print(f"Cart ({cart.total_items()} item(s), {format_money(cart.total_price())}):")
    for item in cart.items:
        print(f"  {item.product_id}  {item.name}  x{item.quantity}  {format_money(item.line_total)}")


def cmd_cart_show(args: argparse.Namespace) -> int:
    """Show the user's cart."""
    try:
        state = get_state()
        if not asyncio.run(state.cart.load(args.user)):
            print(f"Error: {state.cart.error}", file=sys.stderr)
            return 1

        if args.json:
            print(json.dumps([i.to_dict() for i in state.cart.items], indent=2))
        else:
            _print_cart(state)
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_cart_add(args: argparse.Namespace) -> int:
    """Add a product to the cart."""
    try:
        state = get_state()
        product = {"id": args.product_id, "name": args.name, "price": args.price}

        async def run() -> bool:
            if not await state.cart.load(args.user):
                return False
            return await state.cart.add_item(args.user, product, args.quantity)

        if not asyncio.run(run()):
            print(f"Error: {state.cart.error}", file=sys.stderr)
            return 1

        _print_cart(state)
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_cart_clear(args: argparse.Namespace) -> int:
    """Empty the cart."""
    try:
        state = get_state()
        if not asyncio.run(state.cart.clear(args.user)):
            print(f"Error: {state.cart.error}", file=sys.stderr)
            return 1
        print("Cart cleared.")
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# --- Addresses ---


def _print_addresses(state: CommerceState) -> None:
    addresses = state.addresses.addresses
    if not addresses:
        print("No saved addresses.")
        return
    print(f"Addresses ({len(addresses)}):")
    print()
    for a in addresses:
        marker = " (default)" if a.is_default else ""
        print(f"  {a.id[:8]}  {a.first_name} {a.last_name} [{a.type}]{marker}")
        print(f"           {a.address_line1}, {a.city}, {a.state} {a.zip_code}")


def cmd_addresses_list(args: argparse.Namespace) -> int:
    """List saved addresses."""
    try:
        state = get_state()
        if not asyncio.run(state.addresses.load(args.user)):
            print(f"Error: {state.addresses.error}", file=sys.stderr)
            return 1

        if args.json:
            data = [{"id": a.id, **a.to_dict()} for a in state.addresses.addresses]
            print(json.dumps(data, indent=2))
        else:
            _print_addresses(state)
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_addresses_add(args: argparse.Namespace) -> int:
    """Add an address."""
    try:
        state = get_state()
        data = {
            "type": args.type,
            "is_default": args.default,
            "first_name": args.first_name,
            "last_name": args.last_name,
            "address_line1": args.line1,
            "address_line2": args.line2 or "",
            "city": args.city,
            "state": args.state,
            "zip_code": args.zip,
            "phone": args.phone or "",
        }
        if args.country:
            data["country"] = args.country

        if not asyncio.run(state.addresses.add(args.user, data)):
            print(f"Error: {state.addresses.error}", file=sys.stderr)
            return 1

        _print_addresses(state)
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _resolve_address_id(state: CommerceState, prefix: str) -> str:
    """Accept a full id or the short prefix shown by ``addresses list``."""
    matches = [a.id for a in state.addresses.addresses if a.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else prefix


def cmd_addresses_set_default(args: argparse.Namespace) -> int:
    """Make an address the default."""
    try:
        state = get_state()

        async def run() -> bool:
            if not await state.addresses.load(args.user):
                return False
            address_id = _resolve_address_id(state, args.address_id)
            return await state.addresses.set_default(args.user, address_id)

        if not asyncio.run(run()):
            print(f"Error: {state.addresses.error}", file=sys.stderr)
            return 1

        _print_addresses(state)
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_addresses_delete(args: argparse.Namespace) -> int:
    """Delete an address."""
    try:
        state = get_state()

        async def run() -> bool:
            if not await state.addresses.load(args.user):
                return False
            address_id = _resolve_address_id(state, args.address_id)
            return await state.addresses.delete(args.user, address_id)

        if not asyncio.run(run()):
            print(f"Error: {state.addresses.error}", file=sys.stderr)
            return 1

        _print_addresses(state)
        return 0

    except StoreSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# --- Server ---


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = Settings.from_env()
        setup_logging(settings.log_level, settings.log_file)

        print("Starting storesync API server...")
        print(f"Data directory: {settings.data_dir}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "storesync.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=1,  # Single worker: transactions serialize within one process
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _add_user_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--user", "-u", required=True, help="User id")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="storesync",
        description="Inspect and reconcile storefront cart, address and order state.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # orders
    orders_parser = subparsers.add_parser("orders", help="Manage orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    orders_list_parser = orders_subparsers.add_parser("list", help="List orders")
    _add_user_argument(orders_list_parser)
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    reconcile_parser = orders_subparsers.add_parser(
        "reconcile", help="Create orders from checkout records"
    )
    _add_user_argument(reconcile_parser)
    reconcile_parser.add_argument(
        "session_id", nargs="?", help="Checkout record id (default: all records)"
    )
    reconcile_parser.add_argument("--json", action="store_true", help="Output as JSON")

    status_parser = orders_subparsers.add_parser("status", help="Change an order's status")
    _add_user_argument(status_parser)
    status_parser.add_argument("order_id", help="Order ID")
    status_parser.add_argument("status", help="New status (e.g. processing, shipped)")
    status_parser.add_argument("--note", "-n", help="History note")

    local_parser = orders_subparsers.add_parser(
        "create-local", help="Create a local test order from a JSON file"
    )
    _add_user_argument(local_parser)
    local_parser.add_argument("file", help="JSON file with the order data")

    # cart
    cart_parser = subparsers.add_parser("cart", help="Manage the cart")
    cart_subparsers = cart_parser.add_subparsers(dest="cart_command")

    cart_show_parser = cart_subparsers.add_parser("show", help="Show the cart")
    _add_user_argument(cart_show_parser)
    cart_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    cart_add_parser = cart_subparsers.add_parser("add", help="Add a product")
    _add_user_argument(cart_add_parser)
    cart_add_parser.add_argument("product_id", help="Product ID")
    cart_add_parser.add_argument("--name", required=True, help="Product name")
    cart_add_parser.add_argument("--price", type=float, required=True, help="Unit price")
    cart_add_parser.add_argument("--quantity", "-q", type=int, default=1, help="Quantity")

    cart_clear_parser = cart_subparsers.add_parser("clear", help="Empty the cart")
    _add_user_argument(cart_clear_parser)

    # addresses
    addresses_parser = subparsers.add_parser("addresses", help="Manage saved addresses")
    addresses_subparsers = addresses_parser.add_subparsers(dest="addresses_command")

    addresses_list_parser = addresses_subparsers.add_parser("list", help="List addresses")
    _add_user_argument(addresses_list_parser)
    addresses_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    addresses_add_parser = addresses_subparsers.add_parser("add", help="Add an address")
    _add_user_argument(addresses_add_parser)
    addresses_add_parser.add_argument("--first-name", required=True)
    addresses_add_parser.add_argument("--last-name", required=True)
    addresses_add_parser.add_argument("--line1", required=True, help="Street address")
    addresses_add_parser.add_argument("--line2", help="Apartment, suite, etc.")
    addresses_add_parser.add_argument("--city", required=True)
    addresses_add_parser.add_argument("--state", required=True)
    addresses_add_parser.add_argument("--zip", required=True)
    addresses_add_parser.add_argument("--country")
    addresses_add_parser.add_argument("--phone")
    addresses_add_parser.add_argument(
        "--type", choices=["home", "work", "other"], default="home"
    )
    addresses_add_parser.add_argument(
        "--default", action="store_true", help="Make this the default address"
    )

    set_default_parser = addresses_subparsers.add_parser(
        "set-default", help="Make an address the default"
    )
    _add_user_argument(set_default_parser)
    set_default_parser.add_argument("address_id", help="Address ID (or unique prefix)")

    addresses_delete_parser = addresses_subparsers.add_parser("delete", help="Delete an address")
    _add_user_argument(addresses_delete_parser)
    addresses_delete_parser.add_argument("address_id", help="Address ID (or unique prefix)")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    if args.command != "serve":
        settings = Settings.from_env()
        setup_logging(settings.log_level, settings.log_file, stream=sys.stderr)

    groups = {
        "orders": (
            "orders_command",
            {
                "list": cmd_orders_list,
                "reconcile": cmd_orders_reconcile,
                "status": cmd_orders_status,
                "create-local": cmd_orders_create_local,
            },
        ),
        "cart": (
            "cart_command",
            {"show": cmd_cart_show, "add": cmd_cart_add, "clear": cmd_cart_clear},
        ),
        "addresses": (
            "addresses_command",
            {
                "list": cmd_addresses_list,
                "add": cmd_addresses_add,
                "set-default": cmd_addresses_set_default,
                "delete": cmd_addresses_delete,
            },
        ),
    }

    if args.command in groups:
        dest, commands = groups[args.command]
        subcommand = getattr(args, dest, None)
        if not subcommand:
            parser.parse_args([args.command, "--help"])
            return 0
        return commands[subcommand](args)

    commands = {
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
