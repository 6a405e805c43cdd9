"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer, and printing the
results. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import catalog, data_manager, fulfillment, ledger, log, workbook
from .constants import OrderStatus, PaymentStatus, UserRole
from .errors import BusinessRuleViolation, Conflict, ValidationError
from .runtime import RuntimeContext, dispose_context, ensure_schema_version, load_runtime_context


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BUSINESS_RULE = 2
EXIT_MISSING_FILE = 3
EXIT_CONFLICT = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockledger-cli",
        description="Command-line tools for the Stock Ledger database.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
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
    """Declare mutating CLI commands such as sales and restocks."""
    specs = {
        "add-user": register_add_user_command(subparsers),
        "add-category": register_add_category_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "restock": register_restock_command(subparsers),
        "adjust": register_adjust_command(subparsers),
        "import-products": register_import_products_command(subparsers),
        "mark-order": register_mark_order_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as stock listings."""
    specs = {
        "stock": register_stock_command(subparsers),
        "log": register_log_command(subparsers),
        "order": register_order_command(subparsers),
        "verify": register_verify_command(subparsers),
        "export-ledger": register_export_ledger_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-user``."""
    name = "add-user"
    help_text = "Register a user that sales orders can be stamped with."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--email", required=True)
        parser.add_argument("--full-name", required=True)
        parser.add_argument(
            "--role",
            choices=[member.value for member in UserRole],
            default=UserRole.STAFF.value,
        )
        parser.add_argument("--inactive", action="store_true", help="Mark the user as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_user)


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Register a product category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a product and post its opening stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--cost-price", required=True)
        parser.add_argument("--reorder-level", default="10")
        parser.add_argument("--opening-stock", default="0")
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a multi-item sale; all items commit or none does."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT:QUANTITY:UNIT_PRICE",
            help="Sale line; PRODUCT is a product id or SKU. Repeat for more lines.",
        )
        parser.add_argument("--user-id", default=None)
        parser.add_argument("--customer", dest="customer_name", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Record a purchase ledger entry for received goods."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product", required=True, help="Product id or SKU.")
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_adjust_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Record a manual stock correction of either sign."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product", required=True, help="Product id or SKU.")
        parser.add_argument("--delta", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_import_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import-products``."""
    name = "import-products"
    help_text = "Register the products listed in a catalog workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("workbook", type=Path)
        parser.add_argument(
            "--template",
            action="store_true",
            help="Write an empty catalog template to WORKBOOK instead of importing.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_products)


def register_mark_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-order``."""
    name = "mark-order"
    help_text = "Move an order to another fulfillment or payment status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in OrderStatus], default=None)
        parser.add_argument(
            "--payment-status",
            choices=[member.value for member in PaymentStatus],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_order)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product", default=None, help="Limit the listing to one product id or SKU.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the stock ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product", default=None, help="Limit the ledger to one product id or SKU.")
        parser.add_argument("--order-id", default=None, help="Limit the ledger to one sales order.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order``."""
    name = "order"
    help_text = "Display a sales order with its lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order_report)


def register_verify_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``verify``."""
    name = "verify"
    help_text = "Check that every product's stock equals its ledger sum."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify)


def register_export_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export-ledger``."""
    name = "export-ledger"
    help_text = "Export the ledger and stock levels to a workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("output", type=Path)
        parser.add_argument("--force", action="store_true", help="Overwrite OUTPUT if it already exists.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_ledger)


def dispatch_command(
    context: RuntimeContext,
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


def parse_int(raw: str, field: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer, got {raw!r}") from exc


def parse_decimal(raw: str, field: str) -> Decimal:
    try:
        return Decimal(raw)
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError(f"{field} must be a number, got {raw!r}") from exc


def parse_item(raw: str) -> tuple[str, int, Decimal]:
    """Split a ``PRODUCT:QUANTITY:UNIT_PRICE`` argument.

    The product part may itself contain colons, so the string is split from
    the right.

    Raises:
        ValidationError: If the argument does not have three parts.
    """
    parts = raw.rsplit(":", 2)
    if len(parts) != 3 or not parts[0]:
        raise ValidationError(f"Sale item must look like PRODUCT:QUANTITY:UNIT_PRICE, got {raw!r}")
    product, quantity, unit_price = parts
    return product, parse_int(quantity, "Quantity"), parse_decimal(unit_price, "Unit price")


def translate_add_user(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-user request."""
    return {
        "email": args.email,
        "full_name": args.full_name,
        "role": args.role,
        "active": not getattr(args, "inactive", False),
    }


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "sku": args.sku,
        "name": args.name,
        "price": parse_decimal(args.price, "Price"),
        "cost_price": parse_decimal(args.cost_price, "Cost price"),
        "reorder_level": parse_int(args.reorder_level, "Reorder level"),
        "opening_stock": parse_int(args.opening_stock, "Opening stock"),
        "category_id": args.category_id,
        "description": args.description,
    }


def translate_sale(context: RuntimeContext, args: argparse.Namespace) -> fulfillment.SaleCommand:
    """Translate CLI args into a sale command, resolving SKUs to product ids."""
    items: List[fulfillment.SaleItem] = []
    for raw in args.items:
        product, quantity, unit_price = parse_item(raw)
        items.append(
            fulfillment.SaleItem(
                product_id=catalog.resolve_product_id(context, product),
                quantity=quantity,
                unit_price=unit_price,
            )
        )
    return fulfillment.build_sale_command(args.user_id, args.customer_name, items)


def run_add_user(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-user workflow."""
    record = catalog.register_user(context, **translate_add_user(args))
    print(f"User {record.user_id} ({record.email}, {record.role})")
    return 0


def run_add_category(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-category workflow."""
    record = catalog.register_category(context, name=args.name, description=args.description)
    print(f"Category {record.category_id} ({record.name})")
    return 0


def run_add_product(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    record = catalog.register_product(context, **translate_add_product(args))
    print(f"Product {record.product_id} ({record.sku}) stock={record.stock_quantity}")
    return 0


def run_sale(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the fulfillment engine."""
    command = translate_sale(context, args)
    order = fulfillment.create_sale(context, command.user_id, command.customer_name, command.items)
    render_order(order)
    return 0


def run_restock(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow via the ledger."""
    product_id = catalog.resolve_product_id(context, args.product)
    quantity = parse_int(args.quantity, "Quantity")
    entry = ledger.record_purchase(context, product_id, quantity, note=args.notes)
    print(f"Entry {entry.entry_id}: {entry.kind} {entry.quantity:+d}")
    return 0


def run_adjust(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock correction workflow via the ledger."""
    product_id = catalog.resolve_product_id(context, args.product)
    delta = parse_int(args.delta, "Delta")
    entry = ledger.record_adjustment(context, product_id, delta, note=args.notes)
    print(f"Entry {entry.entry_id}: {entry.kind} {entry.quantity:+d}")
    return 0


def run_import_products(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Create a catalog template or import the products it lists."""
    if args.template:
        path = workbook.create_catalog_template(args.workbook)
        print(f"Template written to {path}")
        return 0
    records = workbook.import_products(context, args.workbook)
    for record in records:
        print(f"Product {record.product_id} ({record.sku}) stock={record.stock_quantity}")
    print(f"{len(records)} products imported")
    return 0


def run_mark_order(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order status workflow."""
    order = fulfillment.update_order_status(
        context,
        args.order_id,
        status=args.status,
        payment_status=args.payment_status,
    )
    print(f"Order {order.order_id}: status={order.status} payment={order.payment_status}")
    return 0


def run_stock_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the stock level of every product, or of one product."""
    if args.product is not None:
        products = [catalog.get_product(context, catalog.resolve_product_id(context, args.product))]
    else:
        products = catalog.list_products(context)
    for product in products:
        marker = " (reorder)" if product.stock_quantity <= product.reorder_level else ""
        print(f"{product.sku}\t{product.name}\t{product.stock_quantity}{marker}")
    return 0


def run_log_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print ledger entries oldest first."""
    product_id: Optional[str] = None
    if args.product is not None:
        product_id = catalog.resolve_product_id(context, args.product)
    for entry in ledger.list_entries(context, product_id=product_id, reference_id=args.order_id):
        print(
            f"{entry.created_at.isoformat()}\t{entry.product_id}\t{entry.kind}"
            f"\t{entry.quantity:+d}\t{entry.reference_id or ''}\t{entry.notes or ''}"
        )
    return 0


def run_order_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print one order with its lines."""
    render_order(fulfillment.get_sale(context, args.order_id))
    return 0


def run_verify(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Report products whose stock disagrees with their ledger sum."""
    mismatches = ledger.verify_invariant(context)
    if not mismatches:
        print("Ledger consistent")
        return 0
    for product_id, (stock, ledger_sum) in sorted(mismatches.items()):
        print(f"{product_id}\tstock={stock}\tledger={ledger_sum}")
    return 1


def run_export_ledger(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Write the ledger export workbook."""
    path = workbook.export_ledger(context, args.output, overwrite=args.force)
    print(f"Ledger exported to {path}")
    return 0


def render_order(order: data_manager.SalesOrderRecord) -> None:
    print(f"Order {order.order_id} ({order.status}/{order.payment_status}) total={order.total_amount}")
    for line in order.lines:
        print(f"  {line.product_id}\t{line.quantity} x {line.unit_price} = {line.line_total}")


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_BUSINESS_RULE
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    if isinstance(error, Conflict):
        log.error("Gave up after repeated conflicts: %s", error)
        return EXIT_CONFLICT
    log.error("%s", error)
    return EXIT_FAILURE


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context: Optional[RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            dispose_context(context)
