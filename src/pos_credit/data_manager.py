"""Data access layer for POS Credit.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records, appending or updating
   individual rows, and truncating sheets when a commit is rolled back.

Money columns hold integers in minor currency units. Rates are stored as
text so the exact ``Decimal`` survives a round trip through Excel.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from datetime import UTC, tzinfo
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    CREDIT_DURATIONS,
    DEFAULT_CREDIT_TERMS,
    DEFAULT_PARTIAL_MAX_PERCENT,
    DEFAULT_PARTIAL_MIN_PERCENT,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
LINE_ITEMS_SHEET = SheetName.LINE_ITEMS.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    tax_rate: Decimal
    partial_min_percent: int = DEFAULT_PARTIAL_MIN_PERCENT
    partial_max_percent: int = DEFAULT_PARTIAL_MAX_PERCENT
    # Read-only shared table; 3.11 dataclasses refuse it as a plain default.
    credit_terms: Mapping[int, Decimal] = field(default_factory=lambda: DEFAULT_CREDIT_TERMS)
    # Store-local zone; transaction dates and overdue checks use it.
    timezone: tzinfo = UTC


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    unit_price: int
    is_active: bool


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    customer_name: str
    credit_limit: int
    outstanding_balance: int


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    timestamp_iso: str
    customer_id: Optional[str]
    plan_type: str
    settlement_method: Optional[str]
    partial_percent: Optional[int]
    due_date_iso: Optional[str]
    credit_months: Optional[int]
    interest_rate: Decimal
    include_tax: bool
    tax_rate: Decimal
    subtotal: int
    tax_amount: int
    interest_amount: int
    base_total: int
    amount_due_now: int
    amount_deferred: int
    status: str
    notes: Optional[str]


@dataclass(frozen=True)
class LineItemRow:
    """In-memory view of a row from the ``LineItems`` sheet."""

    transaction_id: str
    line_number: int
    product_id: str
    unit_price: int
    quantity: int
    line_subtotal: int


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    payment_id: str
    timestamp_iso: str
    customer_id: str
    linked_transaction_id: str
    settlement_method: str
    amount: int
    balance_after: int
    notes: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _percent_to_rate(raw: str, *, option: str) -> Decimal:
    try:
        return Decimal(raw.strip()) / Decimal(100)
    except InvalidOperation as exc:
        raise ValueError(f"{option} must be a number, got '{raw}'") from exc


def parse_credit_terms(parser: configparser.ConfigParser) -> Mapping[int, Decimal]:
    """Read the ``[CreditTerms]`` table of duration (months) to percent.

    The section is optional; when absent the package defaults apply. Only the
    enumerated credit durations may appear.

    Raises:
        ValueError: If a duration is not one of ``CREDIT_DURATIONS`` or a rate
            is not numeric.
    """

    if not parser.has_section("CreditTerms"):
        return DEFAULT_CREDIT_TERMS

    terms: dict[int, Decimal] = {}
    for key, raw in parser.items("CreditTerms"):
        try:
            months = int(key)
        except ValueError as exc:
            raise ValueError(f"Credit term duration must be an integer, got '{key}'") from exc
        if months not in CREDIT_DURATIONS:
            raise ValueError(
                f"Unsupported credit duration {months}; expected one of {CREDIT_DURATIONS}"
            )
        terms[months] = _percent_to_rate(raw, option=f"CreditTerms.{key}")
    return terms


def parse_timezone(raw: Optional[str]) -> tzinfo:
    """Resolve the optional ``[System] TimeZone`` entry.

    ``UTC`` (or no entry) maps to :data:`datetime.UTC`; anything else must be
    an IANA zone name such as ``Africa/Dar_es_Salaam``.

    Raises:
        ValueError: If the zone name is unknown.
    """

    if raw is None or raw.strip().upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(raw.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone '{raw}'") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The function validates that all required options are present under the
    expected sections and normalizes the configured data file path. Relative
    paths are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback. Percentages in the file become
    fractional rates.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If a numeric option cannot be parsed, the partial bounds
            are inverted or the time zone is unknown.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        tax_rate_raw = parser.get("Pricing", "TaxRatePercent")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    partial_min = parser.getint("Pricing", "PartialMinPercent", fallback=DEFAULT_PARTIAL_MIN_PERCENT)
    partial_max = parser.getint("Pricing", "PartialMaxPercent", fallback=DEFAULT_PARTIAL_MAX_PERCENT)
    if not 0 < partial_min <= partial_max < 100:
        raise ValueError(
            f"Invalid partial payment bounds: {partial_min}..{partial_max}"
        )

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        tax_rate=_percent_to_rate(tax_rate_raw, option="TaxRatePercent"),
        partial_min_percent=partial_min,
        partial_max_percent=partial_max,
        credit_terms=parse_credit_terms(parser),
        timezone=parse_timezone(parser.get("System", "TimeZone", fallback=None)),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing the destination atomically.

    The workbook is serialized next to the destination first and then moved
    over it with :func:`os.replace`, so a failed save never leaves a truncated
    file behind. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f"{dest.name}.tmp")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        if staging.exists():
            staging.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    return _iter_sheet(workbook, PRODUCTS_SHEET, deserialize_product)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over customer credit records on the ``Customers`` worksheet."""

    return _iter_sheet(workbook, CUSTOMERS_SHEET, deserialize_customer)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream committed transactions from the ``Transactions`` worksheet.

    Rows come back in workbook order, which is commit order because the
    sheet is append-only.
    """

    return _iter_sheet(workbook, TRANSACTIONS_SHEET, deserialize_transaction)


def iter_line_items(workbook: Workbook) -> Iterable[LineItemRow]:
    return _iter_sheet(workbook, LINE_ITEMS_SHEET, deserialize_line_item)


def iter_payments(workbook: Workbook) -> Iterable[PaymentRow]:
    return _iter_sheet(workbook, PAYMENTS_SHEET, deserialize_payment)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``Transactions`` worksheet."""

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def append_line_item(workbook: Workbook, record: LineItemRow) -> None:
    workbook[LINE_ITEMS_SHEET].append(serialize_line_item(record))


def append_payment(workbook: Workbook, record: PaymentRow) -> None:
    workbook[PAYMENTS_SHEET].append(serialize_payment(record))


def read_customer(workbook: Workbook, customer_id: str) -> Optional[CustomerRow]:
    """Read one customer row straight from the worksheet.

    Unlike the cached listings in the business layer this always reflects the
    current in-memory workbook, which is what credit checks must rely on.

    Args:
        workbook (Workbook): Workbook containing the customers sheet.
        customer_id (str): Identifier to look up.

    Returns:
        CustomerRow | None: The matching record, or ``None`` when unknown.
    """

    row_index = locate_row(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id)
    if row_index is None:
        return None
    sheet = workbook[CUSTOMERS_SHEET]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return deserialize_customer(raw)


def read_transaction(workbook: Workbook, transaction_id: str) -> Optional[TransactionRow]:
    """Read one transaction row straight from the worksheet, or ``None``."""

    row_index = locate_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id)
    if row_index is None:
        return None
    sheet = workbook[TRANSACTIONS_SHEET]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return deserialize_transaction(raw)


def sum_linked_payments(workbook: Workbook, transaction_id: str) -> int:
    """Total of every payment already recorded against ``transaction_id``."""

    return sum(
        payment.amount
        for payment in iter_payments(workbook)
        if payment.linked_transaction_id == transaction_id
    )


def update_customer(workbook: Workbook, customer_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing customer.

    The function locates the row whose ``CustomerID`` matches ``customer_id``,
    validates that each requested field exists in the header row, and then
    writes the provided values into the corresponding cells. Only the specified
    fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the customers sheet.
        customer_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the customer or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id)
    if row_index is None:
        raise KeyError(f"Customer not found: {customer_id}")

    sheet = workbook[CUSTOMERS_SHEET]
    header_map = _header_map(sheet)

    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown customer field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def sheet_row_count(workbook: Workbook, sheet_name: str) -> int:
    """Return the index of the last row in ``sheet_name``, header included."""

    return workbook[sheet_name].max_row


def truncate_sheet(workbook: Workbook, sheet_name: str, last_row: int) -> None:
    """Delete every row after ``last_row``.

    Used to undo appends when a commit cannot be persisted.

    Args:
        workbook (Workbook): Workbook holding the sheet.
        sheet_name (str): Worksheet to truncate.
        last_row (int): 1-based index of the last row to keep.
    """

    sheet = workbook[sheet_name]
    extra = sheet.max_row - last_row
    if extra > 0:
        sheet.delete_rows(last_row + 1, extra)


def _header_map(sheet) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    return [record.product_id, record.product_name, record.unit_price, record.is_active]


def serialize_customer(record: CustomerRow) -> list[object]:
    return [record.customer_id, record.customer_name, record.credit_limit, record.outstanding_balance]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ``Transactions`` column order.

    Rates are written as text to keep their exact decimal value.
    """

    return [
        record.transaction_id,
        record.timestamp_iso,
        record.customer_id,
        record.plan_type,
        record.settlement_method,
        record.partial_percent,
        record.due_date_iso,
        record.credit_months,
        str(record.interest_rate),
        record.include_tax,
        str(record.tax_rate),
        record.subtotal,
        record.tax_amount,
        record.interest_amount,
        record.base_total,
        record.amount_due_now,
        record.amount_deferred,
        record.status,
        record.notes,
    ]


def serialize_line_item(record: LineItemRow) -> list[object]:
    return [
        record.transaction_id,
        record.line_number,
        record.product_id,
        record.unit_price,
        record.quantity,
        record.line_subtotal,
    ]


def serialize_payment(record: PaymentRow) -> list[object]:
    return [
        record.payment_id,
        record.timestamp_iso,
        record.customer_id,
        record.linked_transaction_id,
        record.settlement_method,
        record.amount,
        record.balance_after,
        record.notes,
    ]


def _as_int(raw: object) -> int:
    return int(raw) if raw is not None else 0


def _as_optional_int(raw: object) -> Optional[int]:
    return int(raw) if raw is not None else None


def _as_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _as_decimal(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0")


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifiers are coerced to ``str`` so numeric-looking ids typed into
    Excel still match lookups.
    """

    product_id, product_name, unit_price, is_active = raw_row[:4]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name),
        unit_price=_as_int(unit_price),
        is_active=bool(is_active),
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    customer_id, customer_name, credit_limit, outstanding_balance = raw_row[:4]
    return CustomerRow(
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        credit_limit=_as_int(credit_limit),
        outstanding_balance=_as_int(outstanding_balance),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Money columns become ``int``, rate columns become ``Decimal`` and optional
    plan fields stay ``None`` when the sheet leaves them blank.
    """

    (
        transaction_id,
        timestamp_iso,
        customer_id,
        plan_type,
        settlement_method,
        partial_percent,
        due_date_iso,
        credit_months,
        interest_rate,
        include_tax,
        tax_rate,
        subtotal,
        tax_amount,
        interest_amount,
        base_total,
        amount_due_now,
        amount_deferred,
        status,
        notes,
    ) = raw_row[:19]

    return TransactionRow(
        transaction_id=str(transaction_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        customer_id=_as_optional_str(customer_id),
        plan_type=str(plan_type) if plan_type is not None else "",
        settlement_method=_as_optional_str(settlement_method),
        partial_percent=_as_optional_int(partial_percent),
        due_date_iso=_as_optional_str(due_date_iso),
        credit_months=_as_optional_int(credit_months),
        interest_rate=_as_decimal(interest_rate),
        include_tax=bool(include_tax),
        tax_rate=_as_decimal(tax_rate),
        subtotal=_as_int(subtotal),
        tax_amount=_as_int(tax_amount),
        interest_amount=_as_int(interest_amount),
        base_total=_as_int(base_total),
        amount_due_now=_as_int(amount_due_now),
        amount_deferred=_as_int(amount_deferred),
        status=str(status) if status is not None else "",
        notes=_as_optional_str(notes),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    transaction_id, line_number, product_id, unit_price, quantity, line_subtotal = raw_row[:6]
    return LineItemRow(
        transaction_id=str(transaction_id),
        line_number=_as_int(line_number),
        product_id=str(product_id),
        unit_price=_as_int(unit_price),
        quantity=_as_int(quantity),
        line_subtotal=_as_int(line_subtotal),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    (
        payment_id,
        timestamp_iso,
        customer_id,
        linked_transaction_id,
        settlement_method,
        amount,
        balance_after,
        notes,
    ) = raw_row[:8]
    return PaymentRow(
        payment_id=str(payment_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        customer_id=str(customer_id),
        linked_transaction_id=str(linked_transaction_id) if linked_transaction_id is not None else "",
        settlement_method=str(settlement_method) if settlement_method is not None else "",
        amount=_as_int(amount),
        balance_after=_as_int(balance_after),
        notes=_as_optional_str(notes),
    )
