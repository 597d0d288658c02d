"""Transaction ledger: the only writer of customer outstanding balances.

A commit appends the transaction and its line items and, when part of the
total is deferred, raises the customer's outstanding balance. Both effects
land in a single unit of work: the workbook is mutated in memory, saved
atomically, and rolled back in memory if anything fails, so no transaction
exists without its balance adjustment or the other way round.

Check-then-act races between terminals selling to the same customer are
prevented by :class:`CustomerLockRegistry`: the caller holds the customer's
lock from the fresh balance read, through validation, to the end of the
commit. The ledger also compares the stored balance with the validated one
before writing and refuses to commit on a mismatch.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, ContextManager, Dict, Iterable, Iterator, Optional, Sequence

from . import data_manager, log
from .cart import LineItem
from .constants import PlanType, SettlementMethod, TransactionStatus
from .exceptions import CommitFailed, MissingReferenceError
from .pricing import CreditSale, FullPayment, PartialPayment, PaymentPlan, PriceBreakdown
from .validation import CustomerCreditState, ValidationResult

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


@dataclass(frozen=True)
class Transaction:
    """A committed checkout. Created once by the ledger, never mutated."""

    transaction_id: str
    timestamp: datetime
    customer_id: Optional[str]
    line_items: tuple[LineItem, ...]
    plan: PaymentPlan
    breakdown: PriceBreakdown
    include_tax: bool
    tax_rate: Decimal
    status: TransactionStatus = TransactionStatus.COMMITTED
    notes: Optional[str] = None


class CustomerLockRegistry:
    """Hand out one lock per customer identifier.

    Sales for different customers get different locks and never contend;
    sales for the same customer are strictly ordered.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, customer_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(customer_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[customer_id] = lock
            return lock

    def hold(self, customer_id: Optional[str]) -> ContextManager[object]:
        """Return a context manager holding the customer's lock.

        Walk-in sales (``customer_id`` is ``None``) touch no credit state and
        need no lock.
        """
        if customer_id is None:
            return nullcontext()
        return self.lock_for(customer_id)


def generate_transaction_id(*, prefix: str = "T", when: datetime) -> str:
    """Generate a sortable, never-reused identifier.

    Args:
        prefix (str): Designator prepended to the identifier, ``"T"`` for
            checkouts and ``"P"`` for payments.
        when (datetime): Timestamp of the record.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{random}``.
            The timestamp keeps chronological ordering; the random suffix
            keeps two terminals committing in the same microsecond apart.
    """
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def fetch_customer_state(context: "RuntimeContext", customer_id: str) -> CustomerCreditState:
    """Read a customer's credit state straight from the workbook.

    Never served from cache: the value feeds a credit-limit check and must be
    the latest committed balance.

    Raises:
        MissingReferenceError: If the customer id is unknown.
        CommitFailed: If the store cannot be read.
    """
    try:
        with context.store_lock:
            row = data_manager.read_customer(context.workbook, customer_id)
    except Exception as exc:
        log.error("Failed to read credit state for customer '%s': %s", customer_id, exc)
        raise CommitFailed(f"Could not read customer '{customer_id}': {exc}") from exc
    if row is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return CustomerCreditState(
        customer_id=row.customer_id,
        credit_limit=row.credit_limit,
        outstanding_balance=row.outstanding_balance,
    )


@contextmanager
def _unit_of_work(
    context: "RuntimeContext",
    *,
    sheets: Sequence[str],
    customer_id: Optional[str] = None,
    expected_balance: Optional[int] = None,
) -> Iterator[None]:
    """Group workbook mutations into one all-or-nothing save.

    The store lock is held throughout. When ``customer_id`` is given, the
    stored balance must still equal ``expected_balance`` (compare-and-swap)
    and is restored if the body or the save fails. Appended rows on
    ``sheets`` are truncated on failure.
    """
    with context.store_lock:
        workbook = context.workbook
        if customer_id is not None:
            try:
                current = data_manager.read_customer(workbook, customer_id)
            except Exception as exc:
                log.error("Failed to re-read balance for customer '%s': %s", customer_id, exc)
                raise CommitFailed(f"Could not read customer '{customer_id}': {exc}") from exc
            if current is None or current.outstanding_balance != expected_balance:
                log.error(
                    "Balance for customer '%s' changed since validation (expected %s, found %s)",
                    customer_id,
                    expected_balance,
                    current.outstanding_balance if current else None,
                )
                raise CommitFailed(f"Outstanding balance for '{customer_id}' changed since validation")

        marks = {name: data_manager.sheet_row_count(workbook, name) for name in sheets}
        try:
            yield
            data_manager.save_workbook(workbook, context.settings.data_file)
        except Exception as exc:
            for name, last_row in marks.items():
                data_manager.truncate_sheet(workbook, name, last_row)
            if customer_id is not None:
                data_manager.update_customer(
                    workbook,
                    customer_id,
                    field_values={"OutstandingBalance": expected_balance},
                )
            log.error("Commit rolled back: %s", exc)
            raise CommitFailed(f"Commit failed and was rolled back: {exc}") from exc


def build_transaction_row(transaction: Transaction) -> data_manager.TransactionRow:
    """Flatten a :class:`Transaction` into the ``Transactions`` sheet layout."""
    plan = transaction.plan
    breakdown = transaction.breakdown
    method = getattr(plan, "method", None)
    return data_manager.TransactionRow(
        transaction_id=transaction.transaction_id,
        timestamp_iso=transaction.timestamp.isoformat(),
        customer_id=transaction.customer_id,
        plan_type=plan.plan_type.value,
        settlement_method=method.value if isinstance(method, SettlementMethod) else None,
        partial_percent=plan.percentage if isinstance(plan, PartialPayment) else None,
        due_date_iso=plan.due_date.isoformat() if isinstance(plan, PartialPayment) and plan.due_date else None,
        credit_months=plan.duration_months if isinstance(plan, CreditSale) else None,
        interest_rate=breakdown.interest_rate,
        include_tax=transaction.include_tax,
        tax_rate=transaction.tax_rate,
        subtotal=breakdown.subtotal,
        tax_amount=breakdown.tax_amount,
        interest_amount=breakdown.interest_amount,
        base_total=breakdown.base_total,
        amount_due_now=breakdown.amount_due_now,
        amount_deferred=breakdown.amount_deferred,
        status=transaction.status.value,
        notes=transaction.notes,
    )


def build_line_item_rows(transaction: Transaction) -> list[data_manager.LineItemRow]:
    return [
        data_manager.LineItemRow(
            transaction_id=transaction.transaction_id,
            line_number=number,
            product_id=item.product_id,
            unit_price=item.unit_price,
            quantity=item.quantity,
            line_subtotal=item.line_subtotal,
        )
        for number, item in enumerate(transaction.line_items, start=1)
    ]


def _plan_from_row(row: data_manager.TransactionRow) -> PaymentPlan:
    method = SettlementMethod(row.settlement_method) if row.settlement_method else None
    plan_type = PlanType(row.plan_type)
    if plan_type is PlanType.FULL:
        return FullPayment(method=method)
    if plan_type is PlanType.PARTIAL:
        due_date = date.fromisoformat(row.due_date_iso) if row.due_date_iso else None
        return PartialPayment(method=method, percentage=row.partial_percent or 0, due_date=due_date)
    return CreditSale(duration_months=row.credit_months or 0)


def transaction_from_rows(
    row: data_manager.TransactionRow,
    item_rows: Iterable[data_manager.LineItemRow],
) -> Transaction:
    """Rebuild a :class:`Transaction` from its stored rows."""
    items = sorted(item_rows, key=lambda item: item.line_number)
    return Transaction(
        transaction_id=row.transaction_id,
        timestamp=datetime.fromisoformat(row.timestamp_iso),
        customer_id=row.customer_id,
        line_items=tuple(LineItem(item.product_id, item.unit_price, item.quantity) for item in items),
        plan=_plan_from_row(row),
        breakdown=PriceBreakdown(
            subtotal=row.subtotal,
            tax_amount=row.tax_amount,
            interest_rate=row.interest_rate,
            interest_amount=row.interest_amount,
            base_total=row.base_total,
            amount_due_now=row.amount_due_now,
            amount_deferred=row.amount_deferred,
        ),
        include_tax=row.include_tax,
        tax_rate=row.tax_rate,
        status=TransactionStatus(row.status),
        notes=row.notes,
    )


def commit_transaction(
    context: "RuntimeContext",
    *,
    validation: ValidationResult,
    line_items: Sequence[LineItem],
    include_tax: bool,
    tax_rate: Decimal,
    timestamp: datetime,
    notes: Optional[str] = None,
) -> Transaction:
    """Persist an accepted checkout and adjust the customer's balance.

    Args:
        context (RuntimeContext): Runtime context providing the workbook, the
            data file path and the store lock.
        validation (ValidationResult): Accepted result from
            :func:`pos_credit.validation.validate_plan`. Its breakdown, plan and
            customer state are what gets committed.
        line_items (Sequence[LineItem]): Cart snapshot the breakdown was
            priced from.
        include_tax (bool): Whether tax was applied.
        tax_rate (Decimal): Tax rate used for pricing.
        timestamp (datetime): Creation time of the transaction.
        notes (str | None): Optional free text stored with the transaction.

    Returns:
        Transaction: The committed transaction with its generated identifier.

    Raises:
        ValueError: If ``validation`` was rejected. Committing a rejected
            result is a programming error in the caller.
        CommitFailed: If the balance moved since validation or the workbook
            cannot be persisted. Nothing is left behind in that case.
    """
    if not validation.accepted:
        raise ValueError("Cannot commit a rejected payment plan")

    breakdown = validation.breakdown
    customer = validation.customer
    transaction = Transaction(
        transaction_id=generate_transaction_id(when=timestamp),
        timestamp=timestamp,
        customer_id=customer.customer_id if customer else None,
        line_items=tuple(line_items),
        plan=validation.plan,
        breakdown=breakdown,
        include_tax=include_tax,
        tax_rate=tax_rate,
        notes=notes,
    )

    adjusts_balance = customer is not None and breakdown.amount_deferred > 0
    with _unit_of_work(
        context,
        sheets=(data_manager.TRANSACTIONS_SHEET, data_manager.LINE_ITEMS_SHEET),
        customer_id=customer.customer_id if adjusts_balance else None,
        expected_balance=customer.outstanding_balance if adjusts_balance else None,
    ):
        data_manager.append_transaction(context.workbook, build_transaction_row(transaction))
        for item_row in build_line_item_rows(transaction):
            data_manager.append_line_item(context.workbook, item_row)
        if adjusts_balance:
            data_manager.update_customer(
                context.workbook,
                customer.customer_id,
                field_values={"OutstandingBalance": customer.outstanding_balance + breakdown.amount_deferred},
            )

    log.info(
        "Committed %s transaction '%s' for customer %s (total=%s, due_now=%s, deferred=%s)",
        transaction.plan.plan_type.value,
        transaction.transaction_id,
        transaction.customer_id,
        breakdown.base_total,
        breakdown.amount_due_now,
        breakdown.amount_deferred,
    )
    return transaction


def commit_payment(
    context: "RuntimeContext",
    *,
    customer: CustomerCreditState,
    linked_transaction_id: str,
    amount: int,
    method: SettlementMethod,
    timestamp: datetime,
    notes: Optional[str] = None,
) -> data_manager.PaymentRow:
    """Record a payment against one sale and reduce the outstanding balance.

    The caller validates ``amount`` against the sale's unpaid remainder and
    the freshly read ``customer`` state while holding the customer's lock.

    Raises:
        CommitFailed: If the balance moved since it was read or the workbook
            cannot be persisted.
    """
    payment = data_manager.PaymentRow(
        payment_id=generate_transaction_id(prefix="P", when=timestamp),
        timestamp_iso=timestamp.isoformat(),
        customer_id=customer.customer_id,
        linked_transaction_id=linked_transaction_id,
        settlement_method=method.value,
        amount=amount,
        balance_after=customer.outstanding_balance - amount,
        notes=notes,
    )
    with _unit_of_work(
        context,
        sheets=(data_manager.PAYMENTS_SHEET,),
        customer_id=customer.customer_id,
        expected_balance=customer.outstanding_balance,
    ):
        data_manager.append_payment(context.workbook, payment)
        data_manager.update_customer(
            context.workbook,
            customer.customer_id,
            field_values={"OutstandingBalance": payment.balance_after},
        )

    log.info(
        "Recorded payment '%s' of %s from customer '%s' against '%s' (balance now %s)",
        payment.payment_id,
        amount,
        customer.customer_id,
        linked_transaction_id,
        payment.balance_after,
    )
    return payment
