"""Command-line entry points for the POS Credit toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the objects consumed by the business layer.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end that wants to expose the package
capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import PlanType, SettlementMethod
from .exceptions import BusinessRuleViolation, CommitFailed, ValidationFailure
from .pricing import CreditSale, FullPayment, PartialPayment, PaymentPlan


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
        prog="pos-credit",
        description="Checkout and customer credit tools for the POS Credit workbook.",
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
    """Declare mutating CLI commands such as checkouts and payments."""
    specs = {
        "add-product": register_add_product_command(),
        "add-customer": register_add_customer_command(),
        "checkout": register_checkout_command(),
        "pay": register_pay_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "balances": _simple_command("balances", "Display outstanding customer balances.", run_balances_report),
        "log": _simple_command("log", "Display the transaction log.", run_log_report),
        "summary": _simple_command("summary", "Display collected, deferred and interest totals.", run_summary_report),
        "show": register_show_command(),
        "open-balances": register_open_balances_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--unit-price", type=int, required=True, help="Price in minor currency units.")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_customer_command() -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer with a credit limit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--credit-limit", type=int, required=True, help="Limit in minor currency units.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_checkout_command() -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Price, validate and commit a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            help="PRODUCT_ID:QUANTITY, repeat for each line.",
        )
        parser.add_argument(
            "--plan",
            choices=[member.value.lower() for member in PlanType],
            default=PlanType.FULL.value.lower(),
        )
        parser.add_argument("--method", choices=[member.value for member in SettlementMethod], default=None)
        parser.add_argument("--percentage", type=int, default=None, help="Share paid now on a partial plan.")
        parser.add_argument("--due-date", type=date.fromisoformat, default=None, help="YYYY-MM-DD.")
        parser.add_argument("--months", type=int, default=None, help="Credit plan duration.")
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--include-tax", action="store_true")
        parser.add_argument("--tax-rate-percent", default=None, help="Override the configured tax rate.")
        parser.add_argument("--accept-terms", action="store_true")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_checkout)


def register_pay_command() -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against a deferred sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True, help="Sale the payment is collected for.")
        parser.add_argument("--amount", type=int, required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in SettlementMethod],
            default=SettlementMethod.CASH.value,
        )
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_show_command() -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display one transaction with its line items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_open_balances_command() -> CommandSpec:
    """Register the parser and executor for ``open-balances``."""
    name = "open-balances"
    help_text = "Display deferred sales that are not fully paid."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--overdue", action="store_true", help="Only show balances past their due date.")
        parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="YYYY-MM-DD, defaults to today.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_balances_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
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


def parse_item(raw: str) -> Tuple[str, int]:
    """Split a ``PRODUCT_ID:QUANTITY`` argument; quantity defaults to 1."""
    product_id, sep, quantity = raw.rpartition(":")
    if not sep:
        return raw, 1
    if not product_id:
        raise ValueError(f"Invalid item '{raw}'")
    try:
        return product_id, int(quantity)
    except ValueError as exc:
        raise ValueError(f"Invalid quantity in item '{raw}'") from exc


def translate_plan(args: argparse.Namespace) -> PaymentPlan:
    """Translate CLI args into a payment plan.

    Missing plan fields are passed through as ``None`` so the validator can
    report every problem at once.
    """
    method = SettlementMethod(args.method) if args.method else None
    plan_type = PlanType(args.plan.upper())
    if plan_type is PlanType.PARTIAL:
        return PartialPayment(
            method=method,
            percentage=args.percentage if args.percentage is not None else 0,
            due_date=args.due_date,
        )
    if plan_type is PlanType.CREDIT:
        return CreditSale(duration_months=args.months if args.months is not None else 0)
    return FullPayment(method=method)


def translate_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into keyword arguments for ``compute_and_commit``."""
    line_items = core_logic.build_line_items(context, [parse_item(raw) for raw in args.items])
    tax_rate = None
    if args.tax_rate_percent is not None:
        tax_rate = Decimal(args.tax_rate_percent) / Decimal(100)
    return {
        "line_items": line_items,
        "plan": translate_plan(args),
        "include_tax": args.include_tax,
        "customer_id": args.customer_id,
        "terms_accepted": args.accept_terms,
        "tax_rate": tax_rate,
        "notes": args.notes,
    }


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(
        linked_transaction_id=args.transaction_id,
        amount=args.amount,
        method=SettlementMethod(args.method),
        notes=args.notes,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.add_product(
        context,
        product_id=args.product_id,
        product_name=args.product_name,
        unit_price=args.unit_price,
        is_active=not getattr(args, "inactive", False),
    )
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.add_customer(
        context,
        customer_id=args.customer_id,
        customer_name=args.customer_name,
        credit_limit=args.credit_limit,
    )
    return 0


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow via the BLL and print the breakdown."""
    payload = translate_checkout(context, args)
    line_items = payload["line_items"]
    options = {key: value for key, value in payload.items() if key != "line_items"}
    transaction = core_logic.compute_and_commit(context, line_items, **options)
    breakdown = transaction.breakdown
    print(f"Transaction {transaction.transaction_id}")
    for label, value in (
        ("Subtotal", breakdown.subtotal),
        ("Tax", breakdown.tax_amount),
        ("Interest", breakdown.interest_amount),
        ("Total", breakdown.base_total),
        ("Due now", breakdown.amount_due_now),
        ("Deferred", breakdown.amount_deferred),
    ):
        print(f"  {label:<10}{value:>14}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payment = core_logic.record_payment(context, translate_pay(args))
    print(f"Payment {payment.payment_id}: balance now {payment.balance_after}")
    return 0


def run_balances_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for customer_id, balance in sorted(core_logic.calculate_outstanding_balances(context).items()):
        print(f"{customer_id:<20}{balance:>14}")
    return 0


def run_open_balances_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    balances = core_logic.list_open_balances(context, as_of=args.as_of, overdue_only=args.overdue)
    for entry in balances:
        flag = "OVERDUE" if entry.overdue else ""
        print(
            f"{entry.transaction_id}  {entry.customer_id:<14}{entry.due_date.isoformat():<12}"
            f"{entry.remaining:>12}  {flag}".rstrip()
        )
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for row in core_logic.list_transactions(context):
        print(
            f"{row.transaction_id}  {row.timestamp_iso}  {row.plan_type:<8}"
            f"{row.customer_id or '-':<14}{row.base_total:>12}{row.amount_deferred:>12}"
        )
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for key, value in core_logic.calculate_sales_summary(context).items():
        print(f"{key:<20}{value:>14}")
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transaction = core_logic.get_transaction(context, args.transaction_id)
    print(f"Transaction {transaction.transaction_id} ({transaction.plan.plan_type.value})")
    for item in transaction.line_items:
        print(f"  {item.product_id:<16}{item.quantity:>6} x {item.unit_price:>10} = {item.line_subtotal:>12}")
    print(f"  Total {transaction.breakdown.base_total}, deferred {transaction.breakdown.amount_deferred}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ValidationFailure):
        for violation in error.violations:
            log.error("%s: %s", violation.kind.value, violation.message)
        return 2
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, CommitFailed):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


WRITE_COMMANDS_NEEDING_SAVE: List[str] = ["add-product", "add-customer"]


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and args.command in WRITE_COMMANDS_NEEDING_SAVE:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
