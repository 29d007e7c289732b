"""Command-line entry points for the FERS shop.

This module is the presentation layer: argparse wiring, translation of
arguments into business-layer calls, and fixed-width table rendering of the
results. Every sub-command is described by a :class:`CommandSpec` so tests
and alternative front-ends can reuse the same parser configuration. Commands
that act on behalf of a user take ``--username``/``--password`` and build an
explicit :class:`~fers.core_logic.Session` for the duration of the call.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO, Tuple

from . import core_logic, data_manager, log
from .cart import Cart
from .constants import AccountRole, PaymentMethod


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fers",
        description="Command-line shop for the Fashion E-Retail System workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (default: search the working directory and its parents).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating commands: accounts, catalog edits, checkout and order decisions."""
    specs = {
        "register": register_register_command(subparsers),
        "add-admin": register_add_admin_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "checkout": register_checkout_command(subparsers),
        "accept": register_lifecycle_command(
            subparsers, "accept", "Accept a CREATED order and deduct stock.", run_accept
        ),
        "reject": register_lifecycle_command(
            subparsers, "reject", "Reject a CREATED order and refund its payment.", run_reject
        ),
        "deliver": register_lifecycle_command(
            subparsers, "deliver", "Mark an ACCEPTED order as delivered.", run_deliver
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands: catalog, cart preview and order listings."""
    specs = {
        "products": register_products_command(subparsers),
        "cart": register_cart_command(subparsers),
        "orders": register_orders_command(subparsers),
        "my-orders": register_my_orders_command(subparsers),
        "order": register_order_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def add_credential_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--username", required=True)
    parser.add_argument("--password", required=True)


def parse_cart_item(raw: str) -> Tuple[int, int]:
    """Parse an ``ITEM_ID:QUANTITY`` pair given to ``checkout --item``."""
    item_part, sep, quantity_part = raw.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"Expected ITEM_ID:QUANTITY, got '{raw}'")
    try:
        return int(item_part), int(quantity_part)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected integer ITEM_ID:QUANTITY, got '{raw}'") from exc


def register_register_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``register``."""
    name = "register"
    help_text = "Register a new customer account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_register)


def register_add_admin_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-admin``."""
    name = "add-admin"
    help_text = "Register another administrator (administrators only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.add_argument("--new-username", required=True)
        parser.add_argument("--new-password", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_admin)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog (administrators only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.add_argument("--name", required=True)
        parser.add_argument("--description", default="")
        parser.add_argument("--price", required=True)
        parser.add_argument("--stock", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Replace a product's name, description, price and stock (administrators only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.add_argument("--item-id", type=int, required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--description", default="")
        parser.add_argument("--price", required=True)
        parser.add_argument("--stock", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog (administrators only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.add_argument("--item-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def add_cart_arguments(parser: argparse.ArgumentParser) -> None:
    """Attach the ``--item``/``--remove`` options that fill a session cart."""
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_cart_item,
        required=True,
        metavar="ITEM_ID:QUANTITY",
        help="Product and quantity to put in the cart; repeat for more products.",
    )
    parser.add_argument(
        "--remove",
        dest="removals",
        action="append",
        type=int,
        default=None,
        metavar="ITEM_ID",
        help="Drop a product from the cart after the items are added; repeatable.",
    )


def register_checkout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Fill a cart and place an order (customers only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        add_cart_arguments(parser)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
            help="Defaults to [Defaults] PaymentMethod from config.ini.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_checkout)


def register_cart_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cart``."""
    name = "cart"
    help_text = "Preview a cart with subtotals without placing an order (customers only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        add_cart_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cart_report)


def register_lifecycle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register an administrator command that moves one order along its lifecycle."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.add_argument("--transaction-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "Display the product catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "Display every order (administrators only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_my_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``my-orders``."""
    name = "my-orders"
    help_text = "Display the orders placed by the signed-in account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_my_orders_report)


def register_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order``."""
    name = "order"
    help_text = "Display one order with its lines and payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_credential_arguments(parser)
        parser.add_argument("--transaction-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``--config`` the data layer searches the working directory and
    its parents for ``config.ini``.
    """
    target = Path(config_path) if config_path is not None else None
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def session_from_args(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.Session:
    return core_logic.open_session(context, args.username, args.password)


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "item_name": args.name,
        "description": args.description,
        "price": Decimal(args.price),
        "stock": args.stock,
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an update-product request."""
    return {
        "item_name": args.name,
        "description": args.description,
        "price": Decimal(args.price),
        "stock": args.stock,
    }


def fill_cart(context: core_logic.RuntimeContext, session: core_logic.Session, args: argparse.Namespace) -> None:
    """Add every ``--item`` pair to the session cart, then apply ``--remove``."""
    for item_id, quantity in args.items:
        core_logic.add_to_cart(context, session.cart, item_id, quantity)
    for item_id in getattr(args, "removals", None) or []:
        session.cart.remove(item_id)


def resolve_payment_method(context: core_logic.RuntimeContext, args: argparse.Namespace) -> PaymentMethod:
    """Pick the method given on the command line, else the configured default."""
    raw = getattr(args, "payment_method", None) or context.settings.default_payment_method
    return PaymentMethod(raw)


def _out(stream: Optional[TextIO]) -> TextIO:
    return stream if stream is not None else sys.stdout


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def render_products(items: Sequence[data_manager.InventoryItemRow], stream: Optional[TextIO] = None) -> None:
    out = _out(stream)
    if not items:
        print("No products available.", file=out)
        return
    print(f"{'ID':<5} {'Name':<30} {'Description':<50} {'Price':<10} {'Stock':<10}", file=out)
    for item in items:
        print(
            f"{item.item_id:<5} {_truncate(item.item_name, 30):<30} {_truncate(item.description, 50):<50} "
            f"${item.price:<9.2f} {item.stock:<10}",
            file=out,
        )


def render_cart(cart: Cart, stream: Optional[TextIO] = None) -> None:
    out = _out(stream)
    if not cart:
        print("Your cart is empty.", file=out)
        return
    print(f"{'ID':<5} {'Name':<30} {'Price':<10} {'Quantity':<10} {'Subtotal':<10}", file=out)
    for entry in cart:
        print(
            f"{entry.item.item_id:<5} {_truncate(entry.item.item_name, 30):<30} ${entry.item.price:<9.2f} "
            f"{entry.quantity:<10} ${entry.subtotal:<9.2f}",
            file=out,
        )
    print(f"Total: ${cart.total():.2f}", file=out)


def render_orders(
    transactions: Sequence[data_manager.TransactionRow],
    stream: Optional[TextIO] = None,
    *,
    include_account: bool = True,
) -> None:
    out = _out(stream)
    if not transactions:
        print("No orders found.", file=out)
        return
    account_header = f" {'Account':<10}" if include_account else ""
    print(f"{'Order ID':<8}{account_header} {'Status':<15} {'Order Date':<32} {'Total':<10}", file=out)
    for row in transactions:
        account_cell = f" {row.account_id:<10}" if include_account else ""
        print(
            f"{row.transaction_id:<8}{account_cell} {row.status:<15} {row.created_at:<32} ${row.total:<9.2f}",
            file=out,
        )


def render_order_details(details: core_logic.OrderDetails, stream: Optional[TextIO] = None) -> None:
    out = _out(stream)
    transaction = details.transaction
    print(f"Order #{transaction.transaction_id} ({transaction.status}) placed {transaction.created_at}", file=out)
    print(f"{'Item ID':<8} {'Quantity':<10} {'Price':<10} {'Subtotal':<10}", file=out)
    for line in details.line_items:
        subtotal = line.price_at_purchase * line.quantity
        print(
            f"{line.item_id:<8} {line.quantity:<10} ${line.price_at_purchase:<9.2f} ${subtotal:<9.2f}",
            file=out,
        )
    print(f"Total: ${transaction.total:.2f}", file=out)
    if details.payment is not None:
        print(f"Payment: {details.payment.method} ({details.payment.status})", file=out)


def run_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a customer account."""
    account = core_logic.register_account(context, args.username, args.password, AccountRole.CUSTOMER)
    print(f"Customer '{account.account_name}' registered successfully!")
    return 0


def run_add_admin(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register an administrator on behalf of an existing administrator."""
    session = session_from_args(context, args)
    core_logic.require_admin(session)
    account = core_logic.register_account(context, args.new_username, args.new_password, AccountRole.ADMIN)
    print(f"Admin '{account.account_name}' registered successfully!")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Add a catalog item."""
    core_logic.require_admin(session_from_args(context, args))
    item = core_logic.add_inventory_item(context, **translate_add_product(args))
    print(f"Product added successfully with ID: {item.item_id}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Update a catalog item."""
    core_logic.require_admin(session_from_args(context, args))
    core_logic.update_inventory_item(context, args.item_id, **translate_update_product(args))
    print("Product updated successfully!")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete a catalog item."""
    core_logic.require_admin(session_from_args(context, args))
    core_logic.delete_inventory_item(context, args.item_id)
    print("Product deleted successfully!")
    return 0


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Fill the session cart, show it, and place the order."""
    session = session_from_args(context, args)
    core_logic.require_customer(session)
    fill_cart(context, session, args)
    method = resolve_payment_method(context, args)
    total = session.cart.total()
    render_cart(session.cart)
    transaction = core_logic.checkout(context, session, method)
    print(f"Order placed successfully! Order ID: {transaction.transaction_id}")
    print(f"Payment method: {method.value}")
    print(f"Total amount: ${total:.2f}")
    print("Waiting for admin approval.")
    return 0


def run_accept(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.require_admin(session_from_args(context, args))
    core_logic.approve_transaction(context, args.transaction_id)
    print(f"Order #{args.transaction_id} has been ACCEPTED! Inventory deducted.")
    return 0


def run_reject(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.require_admin(session_from_args(context, args))
    core_logic.decline_transaction(context, args.transaction_id)
    print(f"Order #{args.transaction_id} has been REJECTED! Payment refunded (simulated).")
    return 0


def run_deliver(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.require_admin(session_from_args(context, args))
    core_logic.mark_delivered(context, args.transaction_id)
    print(f"Order #{args.transaction_id} has been marked as DELIVERED!")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the catalog under the store name from ``config.ini``."""
    print(f"--- {context.settings.store_name} Products ---")
    render_products(core_logic.list_inventory_items(context))
    return 0


def run_cart_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a cart built from the command line without creating an order."""
    session = session_from_args(context, args)
    core_logic.require_customer(session)
    fill_cart(context, session, args)
    render_cart(session.cart)
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every order for an administrator."""
    core_logic.require_admin(session_from_args(context, args))
    render_orders(core_logic.list_transactions(context))
    return 0


def run_my_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the signed-in account's orders."""
    session = session_from_args(context, args)
    transactions = core_logic.list_transactions_for_account(context, session.account.account_id)
    render_orders(transactions, include_account=False)
    return 0


def run_order_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one order; customers may only look at their own."""
    session = session_from_args(context, args)
    details = core_logic.get_order_details(context, args.transaction_id)
    if (
        not core_logic.has_admin_privileges(session.account)
        and details.transaction.account_id != session.account.account_id
    ):
        raise core_logic.PermissionDeniedError("Orders of other accounts are not visible")
    render_order_details(details)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
