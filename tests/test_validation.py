"""Unit tests for payment plan validation."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from pos_credit.constants import SettlementMethod, ViolationKind
from pos_credit.pricing import CreditSale, FullPayment, PartialPayment, compute_breakdown
from pos_credit.validation import CustomerCreditState, validate_plan

TODAY = date(2024, 1, 15)
NEXT_WEEK = TODAY + timedelta(days=7)
TAX = Decimal("0.18")


def _customer(limit=500000, balance=0, customer_id="C1"):
    return CustomerCreditState(customer_id=customer_id, credit_limit=limit, outstanding_balance=balance)


def _validate(plan, customer=None, terms_accepted=True, subtotal=100000, **kwargs):
    breakdown = compute_breakdown(subtotal, TAX, True, plan)
    return validate_plan(breakdown, plan, customer, terms_accepted, transaction_date=TODAY, **kwargs)


# ---------------------------------------------------------------------------
# Full payment
# ---------------------------------------------------------------------------


def test_full_payment_with_method_is_accepted_without_customer():
    result = _validate(FullPayment(SettlementMethod.CASH), terms_accepted=False)

    assert result.accepted
    assert result.violations == ()


def test_full_payment_without_method_is_rejected():
    result = _validate(FullPayment(None))

    assert not result.accepted
    assert result.kinds == {ViolationKind.MISSING_SETTLEMENT_METHOD}


# ---------------------------------------------------------------------------
# Partial payment
# ---------------------------------------------------------------------------


def test_partial_payment_scenario_is_accepted():
    plan = PartialPayment(SettlementMethod.CARD, 50, NEXT_WEEK)

    result = _validate(plan, _customer())

    assert result.accepted
    assert result.breakdown.amount_deferred == 59000
    assert result.customer == _customer()


@pytest.mark.parametrize("percentage, accepted", [(29, False), (30, True), (90, True), (91, False)])
def test_partial_percentage_bounds_are_inclusive(percentage, accepted):
    plan = PartialPayment(SettlementMethod.CASH, percentage, NEXT_WEEK)

    result = _validate(plan, _customer())

    assert result.accepted is accepted
    if not accepted:
        assert result.kinds == {ViolationKind.PERCENTAGE_OUT_OF_RANGE}
        assert result.violations[0].details == {"percentage": percentage, "minimum": 30, "maximum": 90}


def test_partial_bounds_can_be_configured():
    plan = PartialPayment(SettlementMethod.CASH, 25, NEXT_WEEK)

    result = _validate(plan, _customer(), partial_min_percent=20, partial_max_percent=80)

    assert result.accepted


def test_partial_due_date_must_be_strictly_future():
    plan = PartialPayment(SettlementMethod.CASH, 50, TODAY)

    result = _validate(plan, _customer())

    assert result.kinds == {ViolationKind.DUE_DATE_NOT_IN_FUTURE}
    assert result.violations[0].details == {"due_date": TODAY, "transaction_date": TODAY}


def test_partial_due_date_tomorrow_is_accepted():
    plan = PartialPayment(SettlementMethod.CASH, 50, TODAY + timedelta(days=1))

    assert _validate(plan, _customer()).accepted


@pytest.mark.parametrize(
    ("due", "accepted"),
    [(datetime(2024, 1, 15, 23, 59), False), (datetime(2024, 1, 16, 0, 1), True)],
)
def test_partial_datetime_due_date_is_compared_by_day(due, accepted):
    result = _validate(PartialPayment(SettlementMethod.CASH, 50, due), _customer())

    assert result.accepted is accepted


def test_partial_missing_due_date():
    result = _validate(PartialPayment(SettlementMethod.CASH, 50, None), _customer())

    assert result.kinds == {ViolationKind.MISSING_DUE_DATE}


def test_partial_requires_terms_acceptance():
    plan = PartialPayment(SettlementMethod.CASH, 50, NEXT_WEEK)

    result = _validate(plan, _customer(), terms_accepted=False)

    assert result.kinds == {ViolationKind.TERMS_NOT_ACCEPTED}


def test_partial_credit_limit_checks_deferred_amount():
    plan = PartialPayment(SettlementMethod.CASH, 50, NEXT_WEEK)

    result = _validate(plan, _customer(limit=100000, balance=50000))

    assert result.kinds == {ViolationKind.CREDIT_LIMIT_EXCEEDED}
    assert result.violations[0].details == {"available": 50000, "requested": 59000}


def test_partial_collects_every_violation():
    plan = PartialPayment(None, 10, TODAY - timedelta(days=1))

    result = _validate(plan, None, terms_accepted=False)

    assert result.kinds == {
        ViolationKind.MISSING_SETTLEMENT_METHOD,
        ViolationKind.MISSING_CUSTOMER,
        ViolationKind.PERCENTAGE_OUT_OF_RANGE,
        ViolationKind.DUE_DATE_NOT_IN_FUTURE,
        ViolationKind.TERMS_NOT_ACCEPTED,
    }
    assert len(result.violations) == 5


# ---------------------------------------------------------------------------
# Credit sale
# ---------------------------------------------------------------------------


def test_credit_sale_scenario_is_accepted():
    result = _validate(CreditSale(6), _customer(), terms_accepted=False)

    assert result.accepted
    assert result.breakdown.amount_deferred == 127440


def test_credit_sale_over_limit_reports_available_and_requested():
    result = _validate(CreditSale(6), _customer(limit=500000, balance=450000))

    assert not result.accepted
    assert result.kinds == {ViolationKind.CREDIT_LIMIT_EXCEEDED}
    violation = result.violations[0]
    assert violation.details == {"available": 50000, "requested": 127440}


def test_credit_sale_exactly_at_limit_is_accepted():
    result = _validate(CreditSale(6), _customer(limit=127440, balance=0))

    assert result.accepted


def test_credit_sale_requires_customer():
    result = _validate(CreditSale(6), None)

    assert result.kinds == {ViolationKind.MISSING_CUSTOMER}


def test_credit_sale_rejects_unknown_duration():
    result = _validate(CreditSale(9), _customer())

    assert result.kinds == {ViolationKind.INVALID_CREDIT_DURATION}
    assert result.violations[0].details == {"duration_months": 9, "allowed": (3, 6, 12, 24)}


def test_credit_sale_durations_follow_injected_terms():
    terms = {12: Decimal("0.15")}

    result = _validate(CreditSale(6), _customer(), credit_terms=terms)

    assert result.kinds == {ViolationKind.INVALID_CREDIT_DURATION}


def test_validation_is_deterministic():
    plan = PartialPayment(SettlementMethod.CASH, 91, None)

    assert _validate(plan, None) == _validate(plan, None)


def test_unknown_plan_type_raises_type_error():
    breakdown = compute_breakdown(100, 0, False, FullPayment(None))

    with pytest.raises(TypeError):
        validate_plan(breakdown, object(), None, True, transaction_date=TODAY)


def test_available_credit():
    assert _customer(limit=500000, balance=450000).available_credit == 50000
