"""Command-line entry points for the storefront ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing reports. Keeping the CLI thin lets tests and other
front-ends reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import analytics, core_logic, data_manager, log, receipts
from .constants import PaymentMethod


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="storefront-cli",
        description="Command-line tools for the storefront ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Store owner to act for (defaults to [Defaults] OwnerID).",
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
    """Declare mutating CLI commands such as sales and item edits."""
    specs = {
        "add-item": register_add_item_command(subparsers),
        "update-item": register_update_item_command(subparsers),
        "delete-item": register_delete_item_command(subparsers),
        "sale": register_sale_command(subparsers),
        "mark-paid": register_mark_paid_command(subparsers),
        "settings": register_settings_command(subparsers),
        "import": register_import_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and the dashboard."""
    specs = {
        "items": register_items_command(subparsers),
        "sales": register_sales_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "bill": register_bill_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Add an item to the inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--selling-price", required=True)
        parser.add_argument("--stock", required=True, type=int)
        parser.add_argument("--cost-price", default="0")
        parser.add_argument("--category", default=None)
        parser.add_argument("--barcode", default=None)
        parser.add_argument("--item-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_update_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-item``."""
    name = "update-item"
    help_text = "Edit fields of an existing item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--selling-price", default=None)
        parser.add_argument("--cost-price", default=None)
        parser.add_argument("--stock", default=None, type=int)
        parser.add_argument("--category", default=None)
        parser.add_argument("--barcode", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_item)


def register_delete_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-item``."""
    name = "delete-item"
    help_text = "Remove an item from the inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_item)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale for one or more items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            metavar="ITEM_ID=QTY",
            help="Cart entry; repeat for every item sold.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument("--buyer-name", default=None)
        parser.add_argument("--buyer-number", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_mark_paid_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-paid``."""
    name = "mark-paid"
    help_text = "Mark an unpaid sale as paid."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_paid)


def register_settings_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settings``."""
    name = "settings"
    help_text = "Update the business profile used on bills."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--set",
            dest="values",
            action="append",
            required=True,
            metavar="KEY=VALUE",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settings)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import``."""
    name = "import"
    help_text = "Import exported item and sale documents from a JSON file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--source", required=True, type=Path)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import)


def register_items_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``items``."""
    name = "items"
    help_text = "List inventory items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_items_report, mutates=False)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List recorded sales, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report, mutates=False)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display revenue, profit, stock, and best-seller metrics."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report, mutates=False)


def register_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bill``."""
    name = "bill"
    help_text = "Print the bill for a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--share", action="store_true", help="Also print a WhatsApp share link.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bill_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None, owner_id: Optional[str] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / data_manager.CONFIG_FILE_NAME
    context = core_logic.load_runtime_context(target, owner_id=owner_id)
    core_logic.ensure_schema_version(context)
    return context


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


def parse_decimal(raw: str, *, label: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid {label}: {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid {label}: {raw!r} is not a finite amount")
    return value


def parse_pairs(entries: Sequence[str], *, label: str) -> Dict[str, str]:
    """Split ``KEY=VALUE`` entries; later duplicates win."""
    pairs: Dict[str, str] = {}
    for entry in entries:
        key, separator, value = entry.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid {label} entry {entry!r}; expected KEY=VALUE")
        pairs[key.strip()] = value.strip()
    return pairs


def translate_add_item(args: argparse.Namespace) -> core_logic.AddItemCommand:
    """Translate CLI args into an add-item command object."""
    return core_logic.AddItemCommand(
        name=args.name,
        selling_price=parse_decimal(args.selling_price, label="selling price"),
        stock=args.stock,
        cost_price=parse_decimal(args.cost_price, label="cost price"),
        category=args.category,
        barcode=args.barcode,
        item_id=args.item_id,
    )


def translate_update_item(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into the changed item fields only."""
    changes: Dict[str, Any] = {}
    if args.name is not None:
        changes["name"] = args.name
    if args.selling_price is not None:
        changes["selling_price"] = parse_decimal(args.selling_price, label="selling price")
    if args.cost_price is not None:
        changes["cost_price"] = parse_decimal(args.cost_price, label="cost price")
    if args.stock is not None:
        changes["stock"] = args.stock
    if args.category is not None:
        changes["category"] = args.category
    if args.barcode is not None:
        changes["barcode"] = args.barcode
    return changes


def translate_cart_quantities(args: argparse.Namespace) -> Dict[str, int]:
    """Translate ``--line ITEM_ID=QTY`` entries into cart quantities.

    Repeated item ids are added together.
    """
    quantities: Dict[str, int] = {}
    for entry in args.lines:
        item_id, separator, raw_quantity = entry.partition("=")
        item_id = item_id.strip()
        if not separator or not item_id:
            raise ValueError(f"Invalid cart line {entry!r}; expected ITEM_ID=QTY")
        try:
            quantity = int(raw_quantity)
        except ValueError as exc:
            raise ValueError(f"Invalid quantity in cart line {entry!r}") from exc
        quantities[item_id] = quantities.get(item_id, 0) + quantity
    return quantities


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    item = core_logic.add_item(context, translate_add_item(args))
    print(f"Added item {item.item_id} ({item.name})")
    return 0


def run_update_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-item workflow in the BLL."""
    changes = translate_update_item(args)
    if not changes:
        raise ValueError("Nothing to update")
    core_logic.update_item(context, args.item_id, changes)
    return 0


def run_delete_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-item workflow in the BLL."""
    core_logic.delete_item(context, args.item_id)
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build the cart, then record the sale via the BLL."""
    lines = core_logic.build_cart(context, translate_cart_quantities(args))
    command = core_logic.RecordSaleCommand(
        lines=lines,
        payment_method=PaymentMethod(args.payment_method),
        buyer_name=args.buyer_name,
        buyer_number=args.buyer_number,
    )
    sale = core_logic.record_sale(context, command)
    print(f"Recorded sale {sale.sale_id} (total {receipts.format_money(sale.total_amount)})")
    return 0


def run_mark_paid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the mark-as-paid transition via the BLL."""
    core_logic.mark_sale_paid(context, args.sale_id)
    return 0


def run_settings(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Merge ``--set`` values into the business profile."""
    core_logic.save_settings(context, parse_pairs(args.values, label="setting"))
    return 0


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Import a JSON export holding a sale list or ``items``/``sales`` lists."""
    with Path(args.source).expanduser().open(encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, list):
        payload = {"sales": payload}
    if not isinstance(payload, dict):
        raise ValueError("Import file must contain a list of sales or an object with 'items'/'sales'")
    counts = core_logic.import_documents(
        context,
        items=payload.get("items", []),
        sales=payload.get("sales", []),
    )
    print(f"Imported {counts['items']} item(s) and {counts['sales']} sale(s)")
    return 0


def run_items_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per item."""
    for item in core_logic.list_items(context):
        print(
            f"{item.item_id}\t{item.name}\tstock={item.stock}\t"
            f"price={receipts.format_money(item.selling_price)}\tcost={receipts.format_money(item.cost_price)}"
        )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per sale."""
    for sale in core_logic.list_sales(context):
        stamp = sale.timestamp.isoformat() if sale.timestamp else "-"
        print(
            f"{sale.sale_id}\t{stamp}\t{sale.payment_method.value}\t"
            f"{receipts.format_money(analytics.effective_total(sale))}"
        )
    return 0


def render_metrics(metrics: analytics.Metrics) -> str:
    """Format dashboard metrics as a plain-text report."""
    money = receipts.format_money
    lines = [
        f"Today:    revenue {money(metrics.today.revenue)}  profit {money(metrics.today.profit)}  pending {money(metrics.today.pending)}",
        f"Week:     revenue {money(metrics.week.revenue)}  profit {money(metrics.week.profit)}",
        f"Month:    revenue {money(metrics.month.revenue)}  profit {money(metrics.month.profit)}",
        f"Lifetime: revenue {money(metrics.lifetime.revenue)}  profit {money(metrics.lifetime.profit)}  pending {money(metrics.lifetime.pending)}",
        f"Items: {metrics.item_count}  stock value {money(metrics.stock_value)}",
        "Low stock: " + (", ".join(f"{item.name} ({item.stock})" for item in metrics.low_stock_items) or "none"),
        "Out of stock: " + (", ".join(item.name for item in metrics.out_of_stock_items) or "none"),
        "Best sellers: " + (", ".join(f"{entry.name} x{entry.quantity}" for entry in metrics.best_sellers) or "none"),
        "Daily revenue: " + " ".join(money(value) for value in metrics.daily_revenue),
    ]
    return "\n".join(lines)


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Compute and print dashboard metrics for the local current time."""
    metrics = analytics.metrics_for_context(context, datetime.now().astimezone())
    print(render_metrics(metrics))
    return 0


def run_bill_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a sale's bill and, on request, its share link."""
    sale = core_logic.get_sale(context, args.sale_id)
    business_info = {"businessName": context.settings.store_name, **core_logic.get_settings(context)}
    text = receipts.generate_bill_text(sale, business_info)
    print(text)
    if getattr(args, "share", False):
        print(receipts.build_whatsapp_url(text, sale.buyer_number))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, data_manager.AtomicWriteError):
        log.error("%s. Nothing was saved; please retry.", error)
        return 4
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
        context = load_runtime_context(getattr(args, "config", None), getattr(args, "owner", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
