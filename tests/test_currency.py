"""
Test suite for the money module

Money must never touch float and must always stay on the currency's
minor unit.
"""

import pytest
from decimal import Decimal, ROUND_DOWN

from lending_ledger.currency import Money, Currency, parse_amount, quantize
from lending_ledger.exceptions import InvalidAmountError


class TestCurrency:
    """Test currency precision"""

    def test_naira_kept_in_whole_units(self):
        """NGN amounts are whole naira"""
        assert Currency.NGN.precision == 0
        assert Currency.NGN.quantum == Decimal('1')

    def test_two_decimal_currencies(self):
        """USD, KES and GHS carry two minor digits"""
        for currency in (Currency.USD, Currency.KES, Currency.GHS):
            assert currency.quantum == Decimal('0.01')

    def test_quantize_half_up(self):
        """Default rounding is half-up"""
        assert quantize(Decimal('9583.5'), Currency.NGN) == Decimal('9584')
        assert quantize(Decimal('10.005'), Currency.USD) == Decimal('10.01')

    def test_quantize_round_down(self):
        """An explicit rounding mode is honoured"""
        assert quantize(Decimal('9583.9'), Currency.NGN, ROUND_DOWN) == Decimal('9583')


class TestMoney:
    """Test Money arithmetic and comparisons"""

    def test_float_rejected(self):
        """Floats are refused outright"""
        with pytest.raises(TypeError):
            Money(100.5, Currency.USD)

    def test_string_and_int_accepted(self):
        """Strings and ints are converted to Decimal"""
        assert Money("100.50", Currency.USD).amount == Decimal('100.50')
        assert Money(5000, Currency.NGN).amount == Decimal('5000')

    def test_amount_quantized_on_creation(self):
        """Amounts are rounded to the minor unit when created"""
        assert Money(Decimal('1234.6'), Currency.NGN).amount == Decimal('1235')

    def test_addition_and_subtraction(self):
        """Arithmetic stays in the same currency"""
        a = Money(Decimal('60000'), Currency.NGN)
        b = Money(Decimal('55000'), Currency.NGN)
        assert a - b == Money(Decimal('5000'), Currency.NGN)
        assert a + b == Money(Decimal('115000'), Currency.NGN)

    def test_multiplication(self):
        """Multiplying by a Decimal re-quantizes"""
        m = Money(Decimal('100000'), Currency.NGN) * Decimal('1.15')
        assert m.amount == Decimal('115000')

    def test_currency_mismatch_raises(self):
        """Mixing currencies is an error"""
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.NGN) + Money(Decimal('1'), Currency.USD)
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.NGN) < Money(Decimal('1'), Currency.USD)

    def test_sign_predicates(self):
        """Zero, positive and negative checks"""
        assert Money.zero(Currency.NGN).is_zero()
        assert Money(Decimal('1'), Currency.NGN).is_positive()
        assert Money(Decimal('-1'), Currency.NGN).is_negative()

    def test_sum(self):
        """Summing an iterable starts from zero"""
        values = [Money(Decimal('5000'), Currency.NGN)] * 3
        assert Money.sum(values, Currency.NGN).amount == Decimal('15000')
        assert Money.sum([], Currency.NGN).is_zero()

    def test_dict_round_trip(self):
        """Serialized money restores exactly"""
        m = Money(Decimal('123.45'), Currency.KES)
        assert m.to_dict() == {"amount": "123.45", "currency": "KES"}
        assert Money.from_dict(m.to_dict()) == m

    def test_to_string(self):
        """Display format groups thousands"""
        assert Money(Decimal('115000'), Currency.NGN).to_string() == "NGN 115,000"
        assert Money(Decimal('1234.5'), Currency.USD).to_string() == "USD 1,234.50"

    def test_non_finite_refused(self):
        """NaN and infinities never become Money"""
        with pytest.raises(InvalidAmountError):
            Money(Decimal('NaN'), Currency.NGN)
        with pytest.raises(InvalidAmountError):
            Money("Infinity", Currency.USD)


class TestParseAmount:
    """Strict parsing of amounts received from callers"""

    def test_exact_amounts_accepted(self):
        assert parse_amount("50000", Currency.NGN) == Money(Decimal('50000'), Currency.NGN)
        assert parse_amount("50000.00", Currency.NGN).amount == Decimal('50000')
        assert parse_amount(" 12.5 ", Currency.USD).amount == Decimal('12.50')
        assert parse_amount(Decimal('1E+3'), Currency.NGN).amount == Decimal('1000')

    def test_excess_precision_refused(self):
        """Amounts finer than the minor unit are refused, not rounded"""
        with pytest.raises(InvalidAmountError) as exc_info:
            parse_amount("100.6", Currency.NGN)
        assert exc_info.value.details["precision"] == 0
        with pytest.raises(InvalidAmountError):
            parse_amount("10.005", Currency.USD)

    @pytest.mark.parametrize("value", ["NaN", "sNaN", "Infinity", "-Infinity", "ten", "", 1.5])
    def test_invalid_values_refused(self, value):
        with pytest.raises(InvalidAmountError):
            parse_amount(value, Currency.NGN)
