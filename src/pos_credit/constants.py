"""Enumerations and business defaults shared across POS Credit modules.

Centralises domain constants so that the data access layer, the pricing and
validation rules, and the CLI rely on a single source of truth for
identifiers and default business terms.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Durations (in months) a credit sale may be spread over.
CREDIT_DURATIONS: tuple[int, ...] = (3, 6, 12, 24)

# Interest rate per duration, as a fraction of subtotal plus tax.
DEFAULT_CREDIT_TERMS: Mapping[int, Decimal] = MappingProxyType(
    {
        3: Decimal("0.05"),
        6: Decimal("0.08"),
        12: Decimal("0.15"),
        24: Decimal("0.25"),
    }
)

DEFAULT_PARTIAL_MIN_PERCENT = 30
DEFAULT_PARTIAL_MAX_PERCENT = 90


class SettlementMethod(str, Enum):
    """Enumerate the settlement labels accepted at the till."""

    CASH = "cash"
    CARD = "card"
    MOBILE = "mobile"
    BANK = "bank"


class PlanType(str, Enum):
    """Enumerate the payment plans a checkout may use."""

    FULL = "FULL"
    PARTIAL = "PARTIAL"
    CREDIT = "CREDIT"


class TransactionStatus(str, Enum):
    """Only committed transactions are ever recorded."""

    COMMITTED = "COMMITTED"


class ViolationKind(str, Enum):
    """Enumerate the business rules a payment plan can break."""

    MISSING_SETTLEMENT_METHOD = "MissingSettlementMethod"
    MISSING_CUSTOMER = "MissingCustomer"
    PERCENTAGE_OUT_OF_RANGE = "PercentageOutOfRange"
    MISSING_DUE_DATE = "MissingDueDate"
    DUE_DATE_NOT_IN_FUTURE = "DueDateNotInFuture"
    TERMS_NOT_ACCEPTED = "TermsNotAccepted"
    CREDIT_LIMIT_EXCEEDED = "CreditLimitExceeded"
    INVALID_CREDIT_DURATION = "InvalidCreditDuration"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    TRANSACTIONS = "Transactions"
    LINE_ITEMS = "LineItems"
    PAYMENTS = "Payments"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CREDIT_DURATIONS",
    "DEFAULT_CREDIT_TERMS",
    "DEFAULT_PARTIAL_MIN_PERCENT",
    "DEFAULT_PARTIAL_MAX_PERCENT",
    "SettlementMethod",
    "PlanType",
    "TransactionStatus",
    "ViolationKind",
    "SheetName",
]
