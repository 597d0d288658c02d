"""Unit tests for the pricing engine."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from pos_credit import pricing
from pos_credit.constants import DEFAULT_CREDIT_TERMS, SettlementMethod
from pos_credit.pricing import CreditSale, FullPayment, PartialPayment, compute_breakdown

DUE = date(2024, 1, 22)


def test_full_payment_collects_everything_now():
    breakdown = compute_breakdown(100000, Decimal("0.18"), True, FullPayment(SettlementMethod.CASH))

    assert breakdown.tax_amount == 18000
    assert breakdown.interest_amount == 0
    assert breakdown.interest_rate == Decimal("0")
    assert breakdown.base_total == 118000
    assert breakdown.amount_due_now == 118000
    assert breakdown.amount_deferred == 0


def test_partial_payment_splits_base_total():
    plan = PartialPayment(SettlementMethod.CARD, percentage=50, due_date=DUE)

    breakdown = compute_breakdown(100000, Decimal("0.18"), True, plan)

    assert breakdown.tax_amount == 18000
    assert breakdown.base_total == 118000
    assert breakdown.amount_due_now == 59000
    assert breakdown.amount_deferred == 59000


def test_credit_sale_adds_interest_from_terms_table():
    breakdown = compute_breakdown(100000, Decimal("0.18"), True, CreditSale(duration_months=6))

    assert breakdown.interest_rate == Decimal("0.08")
    assert breakdown.interest_amount == 9440
    assert breakdown.base_total == 127440
    assert breakdown.amount_due_now == 0
    assert breakdown.amount_deferred == 127440


@pytest.mark.parametrize("months, expected_interest", [(3, 5900), (6, 9440), (12, 17700), (24, 29500)])
def test_credit_rates_follow_default_terms(months, expected_interest):
    breakdown = compute_breakdown(100000, Decimal("0.18"), True, CreditSale(months))

    assert breakdown.interest_amount == expected_interest


def test_credit_rate_comes_from_injected_terms():
    terms = {6: Decimal("0.10")}

    breakdown = compute_breakdown(100000, 0, False, CreditSale(6), terms)

    assert breakdown.interest_amount == 10000
    assert breakdown.base_total == 110000


def test_unknown_duration_prices_without_interest():
    breakdown = compute_breakdown(100000, 0, False, CreditSale(7))

    assert breakdown.interest_rate == Decimal("0")
    assert breakdown.interest_amount == 0
    assert breakdown.amount_deferred == 100000


def test_tax_excluded_when_not_requested():
    breakdown = compute_breakdown(100000, Decimal("0.18"), False, FullPayment(SettlementMethod.CASH))

    assert breakdown.tax_amount == 0
    assert breakdown.base_total == 100000


def test_tax_rounds_half_up():
    # 3333 * 0.15 = 499.95 and 3330 * 0.15 = 499.5
    assert compute_breakdown(3333, Decimal("0.15"), True, FullPayment(None)).tax_amount == 500
    assert compute_breakdown(3330, Decimal("0.15"), True, FullPayment(None)).tax_amount == 500


def test_partial_due_now_rounds_half_up_and_keeps_identity():
    plan = PartialPayment(SettlementMethod.CASH, percentage=50, due_date=DUE)

    breakdown = compute_breakdown(1001, 0, False, plan)

    assert breakdown.amount_due_now == 501
    assert breakdown.amount_deferred == 500
    assert breakdown.amount_due_now + breakdown.amount_deferred == breakdown.base_total


def test_float_tax_rate_is_converted_exactly():
    float_breakdown = compute_breakdown(100000, 0.18, True, FullPayment(None))
    decimal_breakdown = compute_breakdown(100000, Decimal("0.18"), True, FullPayment(None))

    assert float_breakdown == decimal_breakdown


@pytest.mark.parametrize(
    "plan",
    [
        FullPayment(SettlementMethod.MOBILE),
        PartialPayment(SettlementMethod.CASH, 33, DUE),
        PartialPayment(SettlementMethod.CASH, 67, DUE),
        CreditSale(12),
    ],
)
@pytest.mark.parametrize("subtotal", [1, 999, 33333, 1234567])
def test_due_now_plus_deferred_equals_base_total(plan, subtotal):
    breakdown = compute_breakdown(subtotal, Decimal("0.075"), True, plan)

    assert breakdown.amount_due_now + breakdown.amount_deferred == breakdown.base_total
    assert breakdown.amount_due_now >= 0
    assert breakdown.amount_deferred >= 0


def test_compute_breakdown_is_deterministic():
    plan = PartialPayment(SettlementMethod.BANK, 45, DUE)

    first = compute_breakdown(98765, Decimal("0.18"), True, plan)
    second = compute_breakdown(98765, Decimal("0.18"), True, plan)

    assert first == second


def test_out_of_range_percentage_is_priced_not_rejected():
    """Pricing never judges the plan; the validator does."""

    breakdown = compute_breakdown(1000, 0, False, PartialPayment(None, 120, None))

    assert breakdown.amount_due_now == 1200
    assert breakdown.base_total == 1000


def test_lookup_interest_rate_ignores_non_credit_plans():
    assert pricing.lookup_interest_rate(FullPayment(None), DEFAULT_CREDIT_TERMS) == Decimal("0")


def test_round_half_up_boundaries():
    assert pricing.round_half_up(Decimal("0.5")) == 1
    assert pricing.round_half_up(Decimal("1.49")) == 1
    assert pricing.round_half_up(Decimal("2.5")) == 3


def test_plan_type_is_not_a_field():
    assert CreditSale(6).plan_type.value == "CREDIT"
    assert CreditSale(6) == CreditSale(duration_months=6)


def test_partial_payment_keeps_only_the_day_of_a_datetime_due_date():
    plan = PartialPayment(SettlementMethod.CASH, 50, datetime(2024, 2, 1, 23, 30, tzinfo=UTC))

    assert plan.due_date == date(2024, 2, 1)
    assert type(plan.due_date) is date
    assert plan == PartialPayment(SettlementMethod.CASH, 50, date(2024, 2, 1))
