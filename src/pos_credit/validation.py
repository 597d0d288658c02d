"""Payment plan validation.

Given a computed breakdown, the plan, the customer's current credit state and
the terms flag, decide whether the checkout may be committed. Every violated
rule is collected and returned together; validation never stops at the first
problem.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Collection, List, Mapping, Optional

from . import log
from .constants import (
    DEFAULT_CREDIT_TERMS,
    DEFAULT_PARTIAL_MAX_PERCENT,
    DEFAULT_PARTIAL_MIN_PERCENT,
    SettlementMethod,
    ViolationKind,
)
from .pricing import CreditSale, FullPayment, PartialPayment, PaymentPlan, PriceBreakdown


@dataclass(frozen=True)
class CustomerCreditState:
    """Credit position of a customer as read from the store."""

    customer_id: str
    credit_limit: int
    outstanding_balance: int

    @property
    def available_credit(self) -> int:
        return self.credit_limit - self.outstanding_balance


@dataclass(frozen=True)
class Violation:
    """A single broken rule together with the numbers that explain it."""

    kind: ViolationKind
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of :func:`validate_plan`.

    The breakdown, plan and customer state the decision was made on are kept
    alongside the violations so the ledger commits exactly what was checked.
    """

    breakdown: PriceBreakdown
    plan: PaymentPlan
    customer: Optional[CustomerCreditState]
    violations: tuple[Violation, ...] = ()

    @property
    def accepted(self) -> bool:
        return not self.violations

    @property
    def kinds(self) -> frozenset[ViolationKind]:
        return frozenset(violation.kind for violation in self.violations)


def _check_method(plan: FullPayment | PartialPayment, violations: List[Violation]) -> None:
    if not isinstance(plan.method, SettlementMethod):
        violations.append(
            Violation(
                ViolationKind.MISSING_SETTLEMENT_METHOD,
                "A settlement method (cash, card, mobile or bank) is required",
            )
        )


def _check_customer(customer: Optional[CustomerCreditState], violations: List[Violation]) -> bool:
    if customer is None:
        violations.append(
            Violation(
                ViolationKind.MISSING_CUSTOMER,
                "A customer is required when part of the total is deferred",
            )
        )
        return False
    return True


def _check_credit_limit(customer: CustomerCreditState, requested: int, violations: List[Violation]) -> None:
    if customer.outstanding_balance + requested > customer.credit_limit:
        violations.append(
            Violation(
                ViolationKind.CREDIT_LIMIT_EXCEEDED,
                f"Customer '{customer.customer_id}' has {customer.available_credit} available "
                f"but {requested} was requested",
                {"available": customer.available_credit, "requested": requested},
            )
        )


def _validate_partial(
    breakdown: PriceBreakdown,
    plan: PartialPayment,
    customer: Optional[CustomerCreditState],
    terms_accepted: bool,
    transaction_date: date,
    partial_min_percent: int,
    partial_max_percent: int,
    violations: List[Violation],
) -> None:
    _check_method(plan, violations)
    has_customer = _check_customer(customer, violations)

    if not partial_min_percent <= plan.percentage <= partial_max_percent:
        violations.append(
            Violation(
                ViolationKind.PERCENTAGE_OUT_OF_RANGE,
                f"Partial percentage must be between {partial_min_percent} and "
                f"{partial_max_percent}, got {plan.percentage}",
                {
                    "percentage": plan.percentage,
                    "minimum": partial_min_percent,
                    "maximum": partial_max_percent,
                },
            )
        )

    if plan.due_date is None:
        violations.append(Violation(ViolationKind.MISSING_DUE_DATE, "A due date for the balance is required"))
    elif plan.due_date <= transaction_date:
        violations.append(
            Violation(
                ViolationKind.DUE_DATE_NOT_IN_FUTURE,
                f"Due date {plan.due_date.isoformat()} must be after {transaction_date.isoformat()}",
                {"due_date": plan.due_date, "transaction_date": transaction_date},
            )
        )

    if not terms_accepted:
        violations.append(
            Violation(ViolationKind.TERMS_NOT_ACCEPTED, "The partial payment terms must be accepted")
        )

    if has_customer:
        _check_credit_limit(customer, breakdown.amount_deferred, violations)


def _validate_credit(
    breakdown: PriceBreakdown,
    plan: CreditSale,
    customer: Optional[CustomerCreditState],
    allowed_durations: Collection[int],
    violations: List[Violation],
) -> None:
    has_customer = _check_customer(customer, violations)

    if plan.duration_months not in allowed_durations:
        allowed = tuple(sorted(allowed_durations))
        violations.append(
            Violation(
                ViolationKind.INVALID_CREDIT_DURATION,
                f"Credit duration must be one of {allowed} months, got {plan.duration_months}",
                {"duration_months": plan.duration_months, "allowed": allowed},
            )
        )

    if has_customer:
        # Nothing is collected upfront, so the whole base total is deferred.
        _check_credit_limit(customer, breakdown.base_total, violations)


def validate_plan(
    breakdown: PriceBreakdown,
    plan: PaymentPlan,
    customer: Optional[CustomerCreditState],
    terms_accepted: bool,
    *,
    transaction_date: date,
    partial_min_percent: int = DEFAULT_PARTIAL_MIN_PERCENT,
    partial_max_percent: int = DEFAULT_PARTIAL_MAX_PERCENT,
    credit_terms: Mapping[int, Any] = DEFAULT_CREDIT_TERMS,
) -> ValidationResult:
    """Check a priced checkout against the rules of its payment plan.

    Args:
        breakdown (PriceBreakdown): Output of :func:`pos_credit.pricing.compute_breakdown`.
        plan (PaymentPlan): Plan the breakdown was computed for.
        customer (CustomerCreditState | None): Freshly read credit state, or
            ``None`` for a walk-in sale.
        terms_accepted (bool): Whether the customer accepted the plan terms.
        transaction_date (date): Date the checkout happens on; due dates must
            fall strictly after it.
        partial_min_percent (int): Lowest partial percentage allowed.
        partial_max_percent (int): Highest partial percentage allowed.
        credit_terms (Mapping[int, Any]): Duration to rate table; its keys are
            the durations a credit sale may use.

    Returns:
        ValidationResult: Accepted when ``violations`` is empty.
    """
    violations: List[Violation] = []

    if isinstance(plan, FullPayment):
        _check_method(plan, violations)
    elif isinstance(plan, PartialPayment):
        _validate_partial(
            breakdown,
            plan,
            customer,
            terms_accepted,
            transaction_date,
            partial_min_percent,
            partial_max_percent,
            violations,
        )
    elif isinstance(plan, CreditSale):
        _validate_credit(breakdown, plan, customer, credit_terms.keys(), violations)
    else:
        raise TypeError(f"Unsupported payment plan: {plan!r}")

    result = ValidationResult(
        breakdown=breakdown,
        plan=plan,
        customer=customer,
        violations=tuple(violations),
    )
    customer_id = customer.customer_id if customer else None
    if result.accepted:
        log.debug("Accepted %s plan for customer %s", plan.plan_type.value, customer_id)
    else:
        log.warning(
            "Rejected %s plan for customer %s: %s",
            plan.plan_type.value,
            customer_id,
            ", ".join(violation.kind.value for violation in result.violations),
        )
    return result
