"""Business logic layer for POS Credit.

This module orchestrates checkout: it aggregates the cart, prices the chosen
payment plan, validates it against the customer's freshly read credit state
and hands accepted results to the ledger. It consumes the Data Access Layer
(DAL) for all I/O and owns the read-side caches used by reports.
"""

from __future__ import annotations

import calendar
import threading
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .cart import LineItem, aggregate_subtotal
from .constants import EXPECTED_SCHEMA_VERSION, PlanType, SettlementMethod
from .exceptions import BusinessRuleViolation, CommitFailed, MissingReferenceError, ValidationFailure
from .ledger import (
    CustomerLockRegistry,
    Transaction,
    commit_payment,
    commit_transaction,
    fetch_customer_state,
    transaction_from_rows,
)
from .pricing import PaymentPlan, compute_breakdown, to_rate
from .validation import validate_plan


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook and shared coordination state.

    Every terminal of one store must share a single context so that they
    share the per-customer locks and the store lock.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    customer_locks: CustomerLockRegistry = field(default_factory=CustomerLockRegistry, repr=False, compare=False)
    store_lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording money received against one deferred sale.

    The paying customer is the one the linked sale was committed for.
    """

    linked_transaction_id: str
    amount: int
    method: SettlementMethod
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


@dataclass(frozen=True)
class OpenBalance:
    """Unpaid remainder of one deferred sale as of a given day."""

    transaction_id: str
    customer_id: str
    plan_type: str
    sale_date: date
    due_date: date
    amount_deferred: int
    amount_paid: int
    overdue: bool

    @property
    def remaining(self) -> int:
        return self.amount_deferred - self.amount_paid


def local_date(context: RuntimeContext, moment: datetime) -> date:
    """Calendar day of ``moment`` in the store's configured time zone."""

    return moment.astimezone(context.settings.timezone).date()


def add_months(start: date, months: int) -> date:
    """Shift ``start`` by whole months, clamping to the end of short months."""

    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def balance_due_date(context: RuntimeContext, row: data_manager.TransactionRow) -> Optional[date]:
    """When the deferred part of a sale falls due.

    Partial payments carry their agreed due date. A credit sale is due once
    its duration has elapsed from the sale day. Sales that deferred nothing
    have no due date.
    """
    if row.amount_deferred <= 0:
        return None
    if row.due_date_iso:
        return date.fromisoformat(row.due_date_iso)
    if row.credit_months:
        sale_day = local_date(context, datetime.fromisoformat(row.timestamp_iso))
        return add_months(sale_day, row.credit_months)
    return None


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking what was populated.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(context: RuntimeContext, name: str, loader, key: str) -> Dict[str, Any]:
    """Populate a cache bucket with ``all`` rows and a ``by_id`` lookup.

    Args:
        context (RuntimeContext): Runtime state holding the workbook and caches.
        name (str): Bucket name.
        loader (Callable[[Workbook], Iterable]): DAL iterator for the sheet.
        key (str): Attribute used as the ``by_id`` key.

    Returns:
        dict[str, Any]: Bucket containing ``all`` rows and ``by_id``.
    """

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        with context.store_lock:
            rows = list(loader(context.workbook))
        bucket["all"] = rows
        bucket["by_id"] = {getattr(row, key): row for row in rows}
        log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def _products(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "products", data_manager.iter_products, "product_id")


def _customers(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "customers", data_manager.iter_customers, "customer_id")


def _transactions(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _ensure_cache(context, "transactions", data_manager.iter_transactions, "transaction_id")
    if "items" not in bucket:
        with context.store_lock:
            line_items = list(data_manager.iter_line_items(context.workbook))
        items: Dict[str, List[data_manager.LineItemRow]] = {}
        for item in line_items:
            items.setdefault(item.transaction_id, []).append(item)
        bucket["items"] = items
    return bucket


def _payments(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "payments", data_manager.iter_payments, "payment_id")


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook that stores customers and transactions. The resulting
    :class:`RuntimeContext` bundles the immutable settings with the workbook
    handle, fresh locks and an empty cache store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached product rows, hiding inactive ones unless requested."""
    rows = _products(context)["all"]
    if include_inactive:
        return list(rows)
    return [row for row in rows if row.is_active]


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return cached customer rows for display.

    Credit decisions never use this listing; they read the customer through
    :func:`pos_credit.ledger.fetch_customer_state`.
    """
    return list(_customers(context)["all"])


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return the committed transaction log in commit order."""
    return list(_transactions(context)["all"])


def list_payments(
    context: RuntimeContext,
    *,
    customer_id: Optional[str] = None,
    linked_transaction_id: Optional[str] = None,
) -> List[data_manager.PaymentRow]:
    rows = _payments(context)["all"]
    return [
        row
        for row in rows
        if (customer_id is None or row.customer_id == customer_id)
        and (linked_transaction_id is None or row.linked_transaction_id == linked_transaction_id)
    ]


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    try:
        return _products(context)["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier from the display cache.

    Raises:
        MissingReferenceError: If ``customer_id`` cannot be located.
    """
    try:
        return _customers(context)["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def get_transaction(context: RuntimeContext, transaction_id: str) -> Transaction:
    """Rebuild a committed transaction, line items included.

    Raises:
        MissingReferenceError: If the log lacks the supplied identifier.
    """
    bucket = _transactions(context)
    try:
        row = bucket["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc
    return transaction_from_rows(row, bucket["items"].get(transaction_id, []))


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    unit_price: int,
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Append a product to the catalog sheet.

    Raises:
        BusinessRuleViolation: If the identifier is already in use.
        ValueError: If ``unit_price`` is negative.
    """
    if product_id in _products(context)["by_id"]:
        raise BusinessRuleViolation(f"Product '{product_id}' already exists")
    if unit_price < 0:
        raise ValueError("Unit price must be zero or positive")
    record = data_manager.ProductRow(product_id, product_name, unit_price, is_active)
    with context.store_lock:
        data_manager.append_product(context.workbook, record)
    _invalidate_cache(context, "products")
    log.info("Registered product '%s' at %s", product_id, unit_price)
    return record


def add_customer(
    context: RuntimeContext,
    *,
    customer_id: str,
    customer_name: str,
    credit_limit: int,
) -> data_manager.CustomerRow:
    """Append a customer with a zero outstanding balance.

    Raises:
        BusinessRuleViolation: If the identifier is already in use.
        ValueError: If ``credit_limit`` is negative.
    """
    if credit_limit < 0:
        raise ValueError("Credit limit must be zero or positive")
    record = data_manager.CustomerRow(customer_id, customer_name, credit_limit, 0)
    with context.store_lock:
        if data_manager.read_customer(context.workbook, customer_id) is not None:
            raise BusinessRuleViolation(f"Customer '{customer_id}' already exists")
        data_manager.append_customer(context.workbook, record)
    _invalidate_cache(context, "customers")
    log.info("Registered customer '%s' with credit limit %s", customer_id, credit_limit)
    return record


def build_line_items(context: RuntimeContext, entries: Iterable[Tuple[str, int]]) -> List[LineItem]:
    """Price ``(product_id, quantity)`` pairs from the catalog.

    Raises:
        MissingReferenceError: If a product is unknown.
        BusinessRuleViolation: If a product is inactive.
        ValueError: If a quantity is not a positive integer.
    """
    items = []
    for product_id, quantity in entries:
        product = get_product(context, product_id)
        if not product.is_active:
            log.warning("Attempted sale on inactive product '%s'", product_id)
            raise BusinessRuleViolation(f"Product '{product_id}' is inactive")
        items.append(LineItem(product_id=product.product_id, unit_price=product.unit_price, quantity=quantity))
    return items


def compute_and_commit(
    context: RuntimeContext,
    line_items: Sequence[LineItem],
    *,
    plan: PaymentPlan,
    include_tax: bool,
    customer_id: Optional[str] = None,
    terms_accepted: bool = False,
    tax_rate: Optional[Union[Decimal, float, int, str]] = None,
    timestamp: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Transaction:
    """Price, validate and commit a checkout.

    The customer's lock is held from the fresh credit-state read until the
    commit finishes, so two terminals selling to the same customer are
    strictly ordered and the second one sees the first one's balance.

    Args:
        context (RuntimeContext): Runtime context shared by all terminals.
        line_items (Sequence[LineItem]): Cart snapshot.
        plan (PaymentPlan): Selected payment plan.
        include_tax (bool): Whether this sale is taxed.
        customer_id (str | None): Customer to attribute the sale to, ``None``
            for a walk-in.
        terms_accepted (bool): Whether the customer accepted the plan terms.
        tax_rate (Decimal | float | int | str | None): Tax as a fraction;
            defaults to the configured rate.
        timestamp (datetime | None): Transaction time; defaults to now (UTC).
            Due dates are checked against its day in the store time zone.
        notes (str | None): Optional free text stored with the transaction.

    Returns:
        Transaction: The committed transaction.

    Raises:
        EmptyCartError: If ``line_items`` is empty.
        MissingReferenceError: If ``customer_id`` is unknown.
        ValidationFailure: If the plan breaks any business rule; carries all
            violations.
        CommitFailed: If the store could not be read or written.
    """
    settings = context.settings
    subtotal = aggregate_subtotal(line_items)
    rate = to_rate(tax_rate) if tax_rate is not None else settings.tax_rate
    breakdown = compute_breakdown(subtotal, rate, include_tax, plan, settings.credit_terms)
    moment = _resolve_timestamp(timestamp)

    with context.customer_locks.hold(customer_id):
        customer = fetch_customer_state(context, customer_id) if customer_id is not None else None
        result = validate_plan(
            breakdown,
            plan,
            customer,
            terms_accepted,
            transaction_date=local_date(context, moment),
            partial_min_percent=settings.partial_min_percent,
            partial_max_percent=settings.partial_max_percent,
            credit_terms=settings.credit_terms,
        )
        if not result.accepted:
            raise ValidationFailure(result.violations)
        transaction = commit_transaction(
            context,
            validation=result,
            line_items=line_items,
            include_tax=include_tax,
            tax_rate=rate,
            timestamp=moment,
            notes=notes,
        )

    _invalidate_cache(context, "transactions", "customers")
    return transaction


def _read_linked_sale(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    try:
        with context.store_lock:
            sale = data_manager.read_transaction(context.workbook, transaction_id)
    except Exception as exc:
        log.error("Failed to read transaction '%s': %s", transaction_id, exc)
        raise CommitFailed(f"Could not read transaction '{transaction_id}': {exc}") from exc
    if sale is None:
        log.warning("Payment references unknown transaction '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")
    if sale.customer_id is None or sale.amount_deferred <= 0:
        log.warning("Payment references transaction '%s' with nothing deferred", transaction_id)
        raise BusinessRuleViolation(f"Transaction '{transaction_id}' has no deferred balance to pay")
    return sale


def _paid_toward(context: RuntimeContext, transaction_id: str) -> int:
    try:
        with context.store_lock:
            return data_manager.sum_linked_payments(context.workbook, transaction_id)
    except Exception as exc:
        log.error("Failed to total payments for transaction '%s': %s", transaction_id, exc)
        raise CommitFailed(f"Could not read payments for '{transaction_id}': {exc}") from exc


def record_payment(context: RuntimeContext, command: PaymentCommand) -> data_manager.PaymentRow:
    """Record money received against one deferred sale.

    The payment is attributed to the customer the sale was committed for. It
    may not exceed what is still unpaid on that sale, nor the customer's
    outstanding balance. Both are read fresh under the customer's lock, so two
    terminals collecting on the same sale cannot overpay it together.

    Raises:
        MissingReferenceError: If the linked transaction or its customer is
            unknown.
        BusinessRuleViolation: If the sale deferred nothing, the amount
            exceeds its unpaid remainder or the outstanding balance, or the
            method is not a settlement method.
        ValueError: If the amount is not a positive integer.
        CommitFailed: If the store could not be read or written.
    """
    if isinstance(command.amount, bool) or not isinstance(command.amount, int) or command.amount <= 0:
        log.error("Payment amount validation failed: %r", command.amount)
        raise ValueError("Payment amount must be a positive integer")
    if not isinstance(command.method, SettlementMethod):
        raise BusinessRuleViolation(f"Unsupported settlement method: {command.method}")

    sale = _read_linked_sale(context, command.linked_transaction_id)

    with context.customer_locks.hold(sale.customer_id):
        customer = fetch_customer_state(context, sale.customer_id)
        remaining = sale.amount_deferred - _paid_toward(context, sale.transaction_id)
        if command.amount > remaining:
            log.warning(
                "Payment of %s exceeds unpaid remainder %s of transaction '%s'",
                command.amount,
                remaining,
                sale.transaction_id,
            )
            raise BusinessRuleViolation(
                f"Payment of {command.amount} exceeds unpaid remainder {remaining} "
                f"of transaction '{sale.transaction_id}'"
            )
        if command.amount > customer.outstanding_balance:
            log.warning(
                "Payment of %s exceeds outstanding balance %s for customer '%s'",
                command.amount,
                customer.outstanding_balance,
                customer.customer_id,
            )
            raise BusinessRuleViolation(
                f"Payment of {command.amount} exceeds outstanding balance {customer.outstanding_balance}"
            )
        payment = commit_payment(
            context,
            customer=customer,
            linked_transaction_id=sale.transaction_id,
            amount=command.amount,
            method=command.method,
            timestamp=_resolve_timestamp(command.timestamp),
            notes=command.notes,
        )

    _invalidate_cache(context, "payments", "customers")
    return payment


def list_open_balances(
    context: RuntimeContext,
    *,
    as_of: Optional[date] = None,
    overdue_only: bool = False,
) -> List[OpenBalance]:
    """List deferred sales that still have an unpaid remainder.

    A balance is overdue when something remains unpaid and its due date lies
    before ``as_of``, which defaults to today in the store's time zone.

    Args:
        context (RuntimeContext): Runtime context.
        as_of (date | None): Day to judge overdue status against.
        overdue_only (bool): Drop balances that are not yet overdue.

    Returns:
        list[OpenBalance]: Open balances in commit order.
    """
    reference = as_of if as_of is not None else local_date(context, _resolve_timestamp(None))
    paid: Dict[str, int] = {}
    for payment in _payments(context)["all"]:
        if payment.linked_transaction_id:
            paid[payment.linked_transaction_id] = paid.get(payment.linked_transaction_id, 0) + payment.amount

    balances = []
    for row in _transactions(context)["all"]:
        due = balance_due_date(context, row)
        if due is None or row.customer_id is None:
            continue
        amount_paid = paid.get(row.transaction_id, 0)
        if amount_paid >= row.amount_deferred:
            continue
        entry = OpenBalance(
            transaction_id=row.transaction_id,
            customer_id=row.customer_id,
            plan_type=row.plan_type,
            sale_date=local_date(context, datetime.fromisoformat(row.timestamp_iso)),
            due_date=due,
            amount_deferred=row.amount_deferred,
            amount_paid=amount_paid,
            overdue=due < reference,
        )
        if overdue_only and not entry.overdue:
            continue
        balances.append(entry)
    log.debug("Found %d open balances as of %s", len(balances), reference)
    return balances


def calculate_outstanding_balances(context: RuntimeContext) -> Dict[str, int]:
    """Map every customer with a non-zero balance to what they owe."""
    return {
        row.customer_id: row.outstanding_balance
        for row in _customers(context)["all"]
        if row.outstanding_balance > 0
    }


def calculate_sales_summary(context: RuntimeContext) -> Dict[str, int]:
    """Aggregate the committed log into collected, deferred and earned totals.

    Returns:
        dict[str, int]: ``transactions``, ``subtotal``, ``tax``, ``interest``,
            ``collected_now``, ``deferred``, ``payments_received`` and
            ``credit_sales`` (count of transactions on a credit plan).
    """
    summary = {
        "transactions": 0,
        "subtotal": 0,
        "tax": 0,
        "interest": 0,
        "collected_now": 0,
        "deferred": 0,
        "payments_received": 0,
        "credit_sales": 0,
    }
    for row in _transactions(context)["all"]:
        summary["transactions"] += 1
        summary["subtotal"] += row.subtotal
        summary["tax"] += row.tax_amount
        summary["interest"] += row.interest_amount
        summary["collected_now"] += row.amount_due_now
        summary["deferred"] += row.amount_deferred
        if row.plan_type == PlanType.CREDIT.value:
            summary["credit_sales"] += 1
    for payment in _payments(context)["all"]:
        summary["payments_received"] += payment.amount
    log.debug("Calculated sales summary: %s", summary)
    return summary


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    Commits and payments save on their own; this flushes seeding changes such
    as new products or customers.
    """
    with context.store_lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The new context starts with an empty cache but keeps the lock registry and
    store lock, so terminals that switch to it stay coordinated with the rest.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    with context.store_lock:
        workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        customer_locks=context.customer_locks,
        store_lock=context.store_lock,
    )
