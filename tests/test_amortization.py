"""
Test suite for flat-rate amortization

Schedules must sum exactly to the total amount, with the final installment
absorbing the rounding remainder.
"""

import pytest
from decimal import Decimal
from datetime import date

from hypothesis import given, strategies as st

from lending_ledger.currency import Money, Currency
from lending_ledger.amortization import (
    compute_schedule, add_months, validate_rate, remaining_balance, repayment_progress
)
from lending_ledger.exceptions import InvalidAmountError, InvalidTermError, InvalidRateError


def ngn(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.NGN)


class TestComputeSchedule:
    """Test schedule computation"""

    def test_reference_schedule(self):
        """100,000 at 15% over 12 months"""
        schedule = compute_schedule(ngn(100000), Decimal('0.15'), 12)

        assert schedule.total_amount == ngn(115000)
        assert schedule.total_interest == ngn(15000)
        assert schedule.installment == ngn(9583)
        assert schedule.final_installment == ngn(9587)
        assert len(schedule.installments) == 12
        assert all(i.amount == ngn(9583) for i in schedule.installments[:11])
        assert schedule.installments[-1].amount == ngn(9587)

    def test_even_split(self):
        """A total that divides evenly has equal installments"""
        schedule = compute_schedule(ngn(50000), Decimal('0.2'), 12)
        assert schedule.total_amount == ngn(60000)
        assert schedule.installment == schedule.final_installment == ngn(5000)

    def test_single_installment(self):
        """A one-month term pays everything at once"""
        schedule = compute_schedule(ngn(10000), "0.1", 1)
        assert schedule.installment == ngn(11000)
        assert schedule.final_installment == ngn(11000)

    def test_zero_rate(self):
        """A zero rate charges no interest"""
        schedule = compute_schedule(ngn(12000), "0", 12)
        assert schedule.total_interest.is_zero()
        assert schedule.installment == ngn(1000)

    def test_round_down_when_final_would_not_be_positive(self):
        """Half-up rounding that would leave nothing for the final installment falls back to rounding down"""
        # 9 / 6 = 1.5 rounds to 2, which would leave 9 - 10 for the last one
        schedule = compute_schedule(ngn(9), "0", 6)
        assert schedule.installment == ngn(1)
        assert schedule.final_installment == ngn(4)
        assert Money.sum((i.amount for i in schedule.installments), Currency.NGN) == ngn(9)

    def test_two_decimal_currency(self):
        """Cents are kept for USD"""
        schedule = compute_schedule(Money(Decimal('1000.00'), Currency.USD), "0.1", 3)
        assert schedule.total_amount.amount == Decimal('1100.00')
        assert schedule.installment.amount == Decimal('366.67')
        assert schedule.final_installment.amount == Decimal('366.66')

    def test_due_dates_run_monthly(self):
        """Due dates follow the first due date month by month"""
        schedule = compute_schedule(ngn(30000), "0.1", 3, first_due_date=date(2024, 1, 31))
        assert [i.due_date for i in schedule.installments] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)
        ]

    def test_invalid_term(self):
        """Terms must be positive integers"""
        for term in (0, -3, True, "12"):
            with pytest.raises(InvalidTermError):
                compute_schedule(ngn(10000), "0.1", term)

    def test_invalid_principal(self):
        """Principal must be positive"""
        with pytest.raises(InvalidAmountError):
            compute_schedule(ngn(0), "0.1", 12)

    def test_invalid_rate(self):
        """Rates outside [0, 1] are refused"""
        for rate in ("-0.01", "1.5", "abc", "NaN"):
            with pytest.raises(InvalidRateError):
                compute_schedule(ngn(10000), rate, 12)

    @given(
        principal=st.integers(min_value=1, max_value=10_000_000),
        rate_bp=st.integers(min_value=0, max_value=10_000),
        term=st.integers(min_value=1, max_value=120)
    )
    def test_installments_sum_to_total(self, principal, rate_bp, term):
        """Every schedule sums exactly to its total and has no non-positive installment"""
        rate = Decimal(rate_bp) / Decimal(10_000)
        schedule = compute_schedule(ngn(principal), rate, term)

        total = Money.sum((i.amount for i in schedule.installments), Currency.NGN)
        assert total == schedule.total_amount
        assert len(schedule.installments) == term
        if schedule.total_amount.amount >= term:
            assert all(i.amount.is_positive() for i in schedule.installments)


class TestHelpers:
    """Test schedule helpers"""

    def test_add_months_clamps(self):
        """Month arithmetic clamps to the end of shorter months"""
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2023, 11, 15), 3) == date(2024, 2, 15)

    def test_validate_rate(self):
        """Valid rates are parsed to Decimal"""
        assert validate_rate("0.15") == Decimal('0.15')
        assert validate_rate(0) == Decimal('0')
        assert validate_rate(1) == Decimal('1')

    def test_remaining_balance_floors_at_zero(self):
        """Remaining balance never goes negative"""
        assert remaining_balance(ngn(60000), ngn(55000)) == ngn(5000)
        assert remaining_balance(ngn(60000), ngn(61000)).is_zero()

    def test_repayment_progress(self):
        """Progress is a percentage clamped to 0-100"""
        assert repayment_progress(ngn(60000), ngn(30000)) == Decimal('50.00')
        assert repayment_progress(ngn(60000), ngn(0)) == Decimal('0.00')
        assert repayment_progress(ngn(60000), ngn(70000)) == Decimal('100.00')
