"""Command-line entry points for Galaxy POS.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer, and printing the
results. Keeping the CLI thin lets tests and scripts reuse the same parser
configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, setup_workbook
from .constants import Collection, PaymentMethod, SaleStatus
from .errors import CommitError, GalaxyPosError, StorageFailureError, ValidationError
from .ledger import low_stock_products
from .models import SaleItem, SplitBreakdown
from .reconciliation import count_denominations
from .sales import add_to_cart, bottle_item, pour_item


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    Commands with ``needs_store=False`` run before any workbook is opened and
    receive ``None`` as their context.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    needs_store: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="galaxy-pos",
        description="Command-line tools for the Galaxy POS store workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as sales and day close."""
    specs = {
        "init": register_init_command(subparsers),
        "sale": register_sale_command(subparsers),
        "settle": register_settle_command(subparsers),
        "close-day": register_close_day_command(subparsers),
        "reopen-day": register_reopen_day_command(subparsers),
        "cash-up": register_cash_up_command(subparsers),
        "restore": register_restore_command(subparsers),
        "import-products": register_import_products_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "profit": register_profit_command(subparsers),
        "audit": register_audit_command(subparsers),
        "backup": register_backup_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create the store workbook named in config.ini."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.add_argument("--empty", action="store_true", help="Skip the default products and staff.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, needs_store=False)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Commit a sale and deduct its inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            action="append",
            default=[],
            metavar="PRODUCT[:QTY]",
            help="Bottle line; repeat for several lines.",
        )
        parser.add_argument(
            "--pour",
            action="append",
            default=[],
            metavar="DRUM:LABEL[:QTY]",
            help="Drum pour line such as drum-1:250ml:2.",
        )
        parser.add_argument(
            "--payment",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--received", default=None, help="Cash tendered.")
        parser.add_argument("--split-cash", default="0")
        parser.add_argument("--split-mobile", default="0")
        parser.add_argument("--split-card", default="0")
        parser.add_argument("--cashier", default=None)
        parser.add_argument("--table", default=None)
        parser.add_argument("--tab", action="store_true", help="Leave the sale open as an unpaid tab.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_settle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settle``."""
    name = "settle"
    help_text = "Settle an open tab."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--payment", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--received", default=None)
        parser.add_argument("--user", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settle)


def register_close_day_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``close-day``."""
    name = "close-day"
    help_text = "Close the business day and freeze its totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--day", default=None, help="ISO date; defaults to today (UTC).")
        parser.add_argument("--user", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close_day)


def register_reopen_day_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reopen-day``."""
    name = "reopen-day"
    help_text = "Reopen a closed business day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--day", default=None, help="ISO date; defaults to today (UTC).")
        parser.add_argument("--reason", default="")
        parser.add_argument("--user", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reopen_day)


def register_cash_up_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cash-up``."""
    name = "cash-up"
    help_text = "Reconcile counted tenders against settled sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cash", default=None, help="Counted cash amount.")
        parser.add_argument(
            "--note",
            action="append",
            default=[],
            metavar="DENOMINATION=COUNT",
            help="Count cash by denomination instead of --cash.",
        )
        parser.add_argument("--mobile", default="0")
        parser.add_argument("--card", default="0")
        parser.add_argument("--notes", default="")
        parser.add_argument("--user", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cash_up)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Replace all data with the contents of a backup file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("path", type=Path)
        parser.add_argument("--user", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_import_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import-products``."""
    name = "import-products"
    help_text = "Upsert products from a CSV file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("path", type=Path)
        parser.add_argument("--user", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_products)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "List products at or below their alert threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display revenue, cost, and profit summaries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Display the audit trail, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=50)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_report)


def register_backup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``backup``."""
    name = "backup"
    help_text = "Write every collection to a JSON backup file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("path", type=Path)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backup)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
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


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_amount(raw: Optional[str], *, field: str) -> Optional[Decimal]:
    """Parse a money argument, leaving ``None`` untouched."""
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount for {field}: {raw!r}") from exc


def _split_spec(raw: str, parts: int) -> List[str]:
    pieces = raw.split(":")
    if not parts - 1 <= len(pieces) <= parts:
        raise ValidationError(f"Malformed line specification: {raw!r}")
    return pieces


def _quantity(raw: str, spec: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid quantity in {spec!r}") from exc


def translate_cart(context: core_logic.RuntimeContext, args: argparse.Namespace) -> tuple[SaleItem, ...]:
    """Turn ``--item`` and ``--pour`` arguments into cart lines.

    Prices are snapshotted from the store's current products.
    """
    products = {product.id: product for product in core_logic.list_products(context)}
    cart: tuple[SaleItem, ...] = ()

    def lookup(product_id: str):
        product = products.get(product_id)
        if product is None:
            raise ValidationError(f"Unknown product id: {product_id}", details={"productId": product_id})
        return product

    for spec in args.item:
        pieces = _split_spec(spec, 2)
        quantity = _quantity(pieces[1], spec) if len(pieces) == 2 else 1
        cart = add_to_cart(cart, bottle_item(lookup(pieces[0]), quantity))
    for spec in args.pour:
        pieces = _split_spec(spec, 3)
        quantity = _quantity(pieces[2], spec) if len(pieces) == 3 else 1
        cart = add_to_cart(cart, pour_item(lookup(pieces[0]), pieces[1], quantity))
    return cart


def translate_split(args: argparse.Namespace) -> Optional[SplitBreakdown]:
    if args.payment != PaymentMethod.SPLIT.value:
        return None
    return SplitBreakdown(
        cash=parse_amount(args.split_cash, field="--split-cash"),
        mobile_money=parse_amount(args.split_mobile, field="--split-mobile"),
        card=parse_amount(args.split_card, field="--split-card"),
    )


def translate_drawer_count(args: argparse.Namespace) -> Decimal:
    """Counted cash from ``--cash`` or from repeated ``--note`` counts."""
    if args.note:
        counts: Dict[str, int] = {}
        for entry in args.note:
            denomination, _, count = entry.partition("=")
            counts[denomination] = _quantity(count, entry)
        try:
            return count_denominations(counts)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    return parse_amount(args.cash, field="--cash") or Decimal("0")


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the store workbook from the configuration file."""
    config = args.config if args.config is not None else Path.cwd() / setup_workbook.CONFIG_FILE
    path = setup_workbook.run_from_config(config, seed=not args.empty, overwrite=args.force)
    print(f"Created store workbook at '{path}'")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    cart = translate_cart(context, args)
    sale = core_logic.checkout(
        context,
        cart,
        payment_method=PaymentMethod(args.payment),
        cashier_id=args.cashier,
        table_number=args.table,
        split_breakdown=translate_split(args),
        status=SaleStatus.ISSUED if args.tab else SaleStatus.SETTLED,
        amount_received=parse_amount(args.received, field="--received"),
    )
    print(f"Sale {sale.id} committed: total {context.settings.currency} {sale.total}")
    if sale.change_given:
        print(f"Change due: {sale.change_given}")
    return 0


def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.settle_sale(
        context,
        args.sale_id,
        amount_received=parse_amount(args.received, field="--received"),
        payment_method=PaymentMethod(args.payment) if args.payment else None,
        user_id=args.user,
    )
    print(f"Sale {sale.id} settled by {sale.payment_method.value}; change {sale.change_given}")
    return 0


def run_close_day(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    snapshot = core_logic.close_day(context, day_id=args.day, user_id=args.user)
    breakdown = snapshot.payment_breakdown
    print(f"Closed {snapshot.id}: sales {snapshot.total_sales}, expenses {snapshot.total_expenses}")
    print(f"  cash {breakdown.cash} / mobile {breakdown.mobile_money} / card {breakdown.card}")
    return 0


def run_reopen_day(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    shift = core_logic.reopen_day(context, day_id=args.day, reason=args.reason, user_id=args.user)
    print(f"Reopened {shift.id}")
    return 0


def run_cash_up(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    cashup = core_logic.record_cash_up(
        context,
        actual_cash=translate_drawer_count(args),
        actual_mobile_money=parse_amount(args.mobile, field="--mobile"),
        actual_card=parse_amount(args.card, field="--card"),
        notes=args.notes,
        user_id=args.user,
    )
    print(f"Cash-up {cashup.id}: expected {cashup.expected_total}, counted {cashup.actual_total}")
    print(f"Variance: {cashup.variance}")
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    counts = core_logic.restore_backup(context, core_logic.read_backup(args.path), user_id=args.user)
    print("Restored " + ", ".join(f"{key}={count}" for key, count in counts.items()))
    return 0


def run_import_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    products = core_logic.import_products_csv(context, args.path, user_id=args.user)
    print(f"Imported {len(products)} product(s)")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every product with its stock or drum level."""
    for product in core_logic.list_products(context):
        if product.is_drum:
            print(f"{product.id:<12} {product.name:<30} {product.level}ml / {product.capacity}ml")
        else:
            print(f"{product.id:<12} {product.name:<30} {product.stock}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    flagged = low_stock_products(core_logic.list_products(context))
    if not flagged:
        print("No products below threshold.")
    for product in flagged:
        print(f"{product.id:<12} {product.name:<30} {product.level} (min {product.min_threshold})")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.calculate_profit_summary(context)
    currency = context.settings.currency
    for key in ("revenue", "cost", "profit"):
        print(f"{key.title():<8} {currency} {summary[key]}")
    return 0


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in core_logic.list_audit_logs(context, limit=args.limit):
        print(f"{entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.severity.value:<8} {entry.action:<15} {entry.details}")
    return 0


def run_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    path = core_logic.write_backup(context, args.path)
    count = len(context.store.get_all(Collection.SALES))
    print(f"Backup written to '{path}' ({count} sale(s))")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, StorageFailureError):
        log.error("%s", error)
        return 4
    if isinstance(error, (ValidationError, CommitError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table.get(args.command)
        context = None
        if spec is None or spec.needs_store:
            context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except (GalaxyPosError, FileNotFoundError, FileExistsError, KeyError, RuntimeError) as error:
        return handle_cli_error(error)
