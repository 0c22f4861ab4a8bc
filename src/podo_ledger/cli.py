"""Command-line entry points for the Podo Ledger toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing read-side results. Keeping the CLI thin lets tests and
scripts reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reporting
from .constants import ItemCategory, NotificationTarget, PaymentMethod


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``mutates`` marks commands whose success must be persisted to disk.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="podo-cli",
        description="Command-line tools for the Podo consignment bookshop ledger.",
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
    """Declare mutating CLI commands such as sales and refunds."""
    specs = {
        "add-owner": register_add_owner_command(subparsers),
        "add-book": register_add_book_command(subparsers),
        "add-goods": register_add_goods_command(subparsers),
        "assign-shelf": register_assign_shelf_command(subparsers),
        "sale": register_sale_command(subparsers),
        "refund": register_refund_command(subparsers),
        "settle": register_settle_command(subparsers),
        "mark-read": register_mark_read_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stats": register_stats_command(subparsers),
        "owner-stats": register_owner_stats_command(subparsers),
        "daily": register_daily_command(subparsers),
        "log": register_log_command(subparsers),
        "search": register_search_command(subparsers),
        "notifications": register_notifications_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_item_arguments(parser: argparse.ArgumentParser, conditions: Iterable[str]) -> None:
    parser.add_argument("--branch-id", required=True)
    parser.add_argument("--price", required=True, type=int)
    parser.add_argument("--condition", required=True, choices=list(conditions))
    parser.add_argument("--quantity", type=int, default=1)
    parser.add_argument("--owner-id", default=None, help="Leave out for house items.")
    parser.add_argument("--shelf-code", default=None)
    parser.add_argument("--item-id", default=None, help="Explicit item id (generated when omitted).")


def register_add_owner_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-owner``."""
    name = "add-owner"
    help_text = "Register a new shelf owner in a branch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--branch-id", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--bank-account", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_owner)


def register_add_book_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-book``."""
    name = "add-book"
    help_text = "Place a book on a shelf."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--title", required=True)
        parser.add_argument("--author", default=None)
        parser.add_argument("--publisher", default=None)
        parser.add_argument("--isbn", default=None)
        _add_item_arguments(parser, ("order_new", "owner_new", "used"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_book)


def register_add_goods_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-goods``."""
    name = "add-goods"
    help_text = "Place goods on a shelf."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        _add_item_arguments(parser, ("podo", "collab", "handmade", "consign"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_goods)


def register_assign_shelf_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``assign-shelf``."""
    name = "assign-shelf"
    help_text = "Rent a free shelf to an owner."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch-id", required=True)
        parser.add_argument("--shelf-code", required=True)
        parser.add_argument("--owner-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_assign_shelf)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Sell one unit of an item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument(
            "--category",
            choices=[member.value for member in ItemCategory],
            required=True,
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
            help="Defaults to [Defaults] PaymentMethod from config.ini.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_refund_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refund``."""
    name = "refund"
    help_text = "Refund a completed sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refund)


def register_settle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settle``."""
    name = "settle"
    help_text = "Close an owner's monthly settlement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--owner-id", required=True)
        parser.add_argument("--period", required=True, help="Settlement month as YYYY-MM.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settle)


def register_mark_read_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-read``."""
    name = "mark-read"
    help_text = "Mark notifications of an audience as read."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--target-type",
            choices=[member.value for member in NotificationTarget],
            default=NotificationTarget.ALL.value,
        )
        parser.add_argument("--target-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_read)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display shop-wide or per-branch statistics."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report, mutates=False)


def register_owner_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``owner-stats``."""
    name = "owner-stats"
    help_text = "Display an owner's sales, rent, and expected settlement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--owner-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_owner_stats_report, mutates=False
    )


def register_daily_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``daily``."""
    name = "daily"
    help_text = "Display daily sales for the last days."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", type=int, default=7)
        parser.add_argument("--branch-id", default=None)
        parser.add_argument("--owner-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_daily_report, mutates=False)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the sales log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report, mutates=False)


def register_search_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``search``."""
    name = "search"
    help_text = "Search available books and goods."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("query", nargs="?", default="")
        parser.add_argument("--branch-id", default=None)
        parser.add_argument("--all-branches", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_search_report, mutates=False)


def register_notifications_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``notifications``."""
    name = "notifications"
    help_text = "Display recent notifications for an audience."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--target-type",
            choices=[member.value for member in NotificationTarget],
            default=NotificationTarget.ALL.value,
        )
        parser.add_argument("--target-id", default=None)
        parser.add_argument("--limit", type=int, default=20)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_notifications_report, mutates=False
    )


def register_reconcile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Compare stored owner balances with the balances replayed from the log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
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


def translate_add_owner(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a register-owner request."""
    return {
        "name": args.name,
        "branch_id": args.branch_id,
        "phone": args.phone,
        "bank_account": args.bank_account,
    }


def _translate_item(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "branch_id": args.branch_id,
        "price": args.price,
        "condition": args.condition,
        "quantity": args.quantity,
        "owner_id": args.owner_id,
        "shelf_code": args.shelf_code,
        "item_id": args.item_id,
    }


def translate_add_book(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-book request."""
    payload = _translate_item(args)
    payload.update(title=args.title, author=args.author, publisher=args.publisher, isbn=args.isbn)
    return payload


def translate_add_goods(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-goods request."""
    payload = _translate_item(args)
    payload["name"] = args.name
    return payload


def translate_sale(args: argparse.Namespace, default_payment: str = PaymentMethod.CARD.value) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        item_id=args.item_id,
        category=ItemCategory(args.category),
        payment_method=PaymentMethod(args.payment_method or default_payment),
    )


def translate_refund(args: argparse.Namespace) -> core_logic.RefundCommand:
    """Translate CLI args into a refund command object."""
    return core_logic.RefundCommand(sale_id=args.sale_id)


def translate_settle(args: argparse.Namespace) -> core_logic.SettlementCommand:
    """Translate CLI args into a settlement command object."""
    return core_logic.SettlementCommand(owner_id=args.owner_id, period=args.period)


def run_add_owner(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the register-owner workflow in the BLL."""
    owner = core_logic.register_owner(context, **translate_add_owner(args))
    print(f"{owner.owner_id}\t{owner.owner_number}\t{owner.name}")
    return 0


def run_add_book(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-book workflow in the BLL."""
    book = core_logic.add_book(context, **translate_add_book(args))
    print(book.item_id)
    return 0


def run_add_goods(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-goods workflow in the BLL."""
    goods = core_logic.add_goods(context, **translate_add_goods(args))
    print(goods.item_id)
    return 0


def run_assign_shelf(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the shelf assignment workflow in the BLL."""
    core_logic.assign_shelf(
        context,
        branch_id=args.branch_id,
        shelf_code=args.shelf_code,
        owner_id=args.owner_id,
    )
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sale(args, context.settings.default_payment_method)
    sale = core_logic.record_sale(context, command)
    print(f"{sale.sale_id}\tprice={sale.price:,}\tshop={sale.shop_amount:,}\towner={sale.owner_amount:,}")
    return 0


def run_refund(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the refund workflow via the BLL."""
    sale = core_logic.record_refund(context, translate_refund(args))
    print(f"{sale.sale_id}\t{sale.status}\t{sale.refunded_at}")
    return 0


def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow via the BLL."""
    row = core_logic.record_settlement(context, translate_settle(args))
    print(f"{row.settlement_id}\t{row.period}\towner={row.owner_amount:,}\trent={row.rent:,}\tfinal={row.final_amount:,}")
    return 0


def run_mark_read(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Mark notifications read through the configured sink."""
    notifier = context.notifier
    if notifier is None or not hasattr(notifier, "mark_all_read"):
        log.warning("Configured notification sink does not track read state")
        return 0
    changed = notifier.mark_all_read(args.target_type, args.target_id)
    print(changed)
    return 0


def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the statistics reporting workflow."""
    stats = reporting.calculate_branch_stats(context, args.branch_id)
    for key, value in vars(stats).items():
        print(f"{key}\t{value if value is not None else '-'}")
    return 0


def run_owner_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the owner statistics reporting workflow."""
    stats = reporting.calculate_owner_stats(context, args.owner_id)
    for key, value in vars(stats).items():
        print(f"{key}\t{value}")
    return 0


def run_daily_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the daily sales reporting workflow."""
    series = reporting.calculate_daily_series(
        context,
        args.days,
        branch_id=args.branch_id,
        owner_id=args.owner_id,
    )
    for bucket in series:
        print(f"{bucket.date.isoformat()}\t{bucket.label}\t{bucket.amount:,}\t{bucket.count}")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales log reporting workflow."""
    for sale in core_logic.list_sales(context):
        print(
            f"{sale.sale_id}\t{sale.created_at}\t{sale.item_title}\t{sale.price:,}\t"
            f"{sale.payment_method}\t{sale.status}"
        )
    return 0


def run_search_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the item search workflow."""
    results = reporting.search_items(
        context,
        args.query,
        branch_id=args.branch_id,
        include_all_branches=args.all_branches,
    )
    for result in results:
        item = result.item
        print(
            f"{item.item_id}\t{item.category.value}\t{item.display_name}\t{item.price:,}\t"
            f"{result.owner_name or '-'}\t{result.branch_name or '-'}"
        )
    return 0


def run_notifications_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display notifications for the requested audience."""
    notifier = context.notifier
    if notifier is None or not hasattr(notifier, "list_for"):
        log.warning("Configured notification sink cannot list notifications")
        return 0
    for notification in notifier.list_for(args.target_type, args.target_id, limit=args.limit):
        marker = " " if notification.is_read else "*"
        print(f"{marker} {notification.created_at}\t{notification.kind}\t{notification.message}")
    return 0


def run_reconcile_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the balance reconciliation workflow."""
    for drift in reporting.reconcile_owner_balances(context):
        print(
            f"{drift.owner_id}\t{drift.owner_number}\tstored={drift.stored_balance:,}\t"
            f"expected={drift.expected_balance:,}\tdiff={drift.difference:,}"
        )
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
        spec = command_table.get(args.command)
        if exit_code == 0 and spec is not None and spec.mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
