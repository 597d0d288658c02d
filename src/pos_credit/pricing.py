"""Pricing engine for checkout payment plans.

Turns a cart subtotal and a payment plan into a :class:`PriceBreakdown`. The
engine is a pure function of its inputs: it never raises for out-of-range
plan fields and never touches storage. Deciding whether a breakdown is
acceptable is the job of :mod:`pos_credit.validation`.

Every derived amount (tax, interest, partial due-now) is rounded half up to
the nearest minor currency unit exactly once, from exact ``Decimal`` inputs,
which keeps ``amount_due_now + amount_deferred == base_total`` exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional, Union

from . import log
from .constants import DEFAULT_CREDIT_TERMS, PlanType, SettlementMethod


@dataclass(frozen=True)
class FullPayment:
    """Settle the whole base total at the till."""

    method: Optional[SettlementMethod]

    plan_type = PlanType.FULL


@dataclass(frozen=True)
class PartialPayment:
    """Collect a percentage now and defer the remainder until ``due_date``."""

    method: Optional[SettlementMethod]
    percentage: int
    due_date: Optional[date]

    plan_type = PlanType.PARTIAL

    def __post_init__(self) -> None:
        # Due dates are calendar days; a datetime keeps only its own date.
        if isinstance(self.due_date, datetime):
            object.__setattr__(self, "due_date", self.due_date.date())


@dataclass(frozen=True)
class CreditSale:
    """Defer the whole amount over ``duration_months`` with interest.

    The interest rate is never part of the plan; it is looked up from the
    configured credit-terms table when pricing.
    """

    duration_months: int

    plan_type = PlanType.CREDIT


PaymentPlan = Union[FullPayment, PartialPayment, CreditSale]


@dataclass(frozen=True)
class PriceBreakdown:
    """Monetary breakdown of a checkout, in minor currency units."""

    subtotal: int
    tax_amount: int
    interest_rate: Decimal
    interest_amount: int
    base_total: int
    amount_due_now: int
    amount_deferred: int


def to_rate(value: Union[Decimal, float, int, str]) -> Decimal:
    """Normalise a rate into an exact ``Decimal``.

    Floats go through ``str`` so ``0.18`` becomes ``Decimal("0.18")`` rather
    than its binary approximation.
    """
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(amount: Decimal) -> int:
    """Round a ``Decimal`` amount half up to a whole minor currency unit."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def lookup_interest_rate(plan: PaymentPlan, credit_terms: Mapping[int, Decimal]) -> Decimal:
    """Return the interest rate bound to ``plan``.

    Only credit sales carry interest. A duration missing from the table prices
    at zero; the validator reports it as an invalid duration.
    """
    if not isinstance(plan, CreditSale):
        return Decimal("0")
    return to_rate(credit_terms.get(plan.duration_months, Decimal("0")))


def compute_breakdown(
    subtotal: int,
    tax_rate: Union[Decimal, float, int, str],
    include_tax: bool,
    plan: PaymentPlan,
    credit_terms: Mapping[int, Decimal] = DEFAULT_CREDIT_TERMS,
) -> PriceBreakdown:
    """Compute tax, interest and the due-now/deferred split for a checkout.

    Args:
        subtotal (int): Cart subtotal from :func:`pos_credit.cart.aggregate_subtotal`.
        tax_rate (Decimal | float | int | str): Tax as a fraction, for
            example ``Decimal("0.18")`` for 18 %.
        include_tax (bool): Whether this sale is taxed at all.
        plan (PaymentPlan): Selected payment plan.
        credit_terms (Mapping[int, Decimal]): Duration to interest rate table.

    Returns:
        PriceBreakdown: Fully derived amounts for the checkout.
    """
    tax_amount = round_half_up(Decimal(subtotal) * to_rate(tax_rate)) if include_tax else 0

    interest_rate = lookup_interest_rate(plan, credit_terms)
    interest_amount = 0
    if isinstance(plan, CreditSale):
        interest_amount = round_half_up(Decimal(subtotal + tax_amount) * interest_rate)

    base_total = subtotal + tax_amount + interest_amount

    if isinstance(plan, FullPayment):
        amount_due_now = base_total
    elif isinstance(plan, PartialPayment):
        amount_due_now = round_half_up(Decimal(base_total) * Decimal(plan.percentage) / Decimal(100))
    else:
        amount_due_now = 0

    breakdown = PriceBreakdown(
        subtotal=subtotal,
        tax_amount=tax_amount,
        interest_rate=interest_rate,
        interest_amount=interest_amount,
        base_total=base_total,
        amount_due_now=amount_due_now,
        amount_deferred=base_total - amount_due_now,
    )
    log.debug("Computed %s breakdown: %s", plan.plan_type.value, breakdown)
    return breakdown
