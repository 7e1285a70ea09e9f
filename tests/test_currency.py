"""
Tests for currency and money handling
"""

import pytest
from decimal import Decimal

from ledger_service.currency import Money, Currency, to_decimal, round_money


class TestCurrency:
    """Test Currency enum"""

    def test_currency_codes_and_precision(self):
        """Test currency codes and minor-unit precision"""
        assert Currency.USD.code == "USD"
        assert Currency.USD.precision == 2
        assert Currency.JPY.precision == 0
        assert Currency.INR.quantum == Decimal('0.01')
        assert Currency.JPY.quantum == Decimal('1')


class TestMoney:
    """Test Money value type"""

    def test_rounds_half_up_to_currency_precision(self):
        """Test amounts are quantized with ROUND_HALF_UP"""
        assert Money(Decimal('10.005'), Currency.USD).amount == Decimal('10.01')
        assert Money(Decimal('10.004'), Currency.USD).amount == Decimal('10.00')
        assert Money(Decimal('-2.345'), Currency.USD).amount == Decimal('-2.35')
        assert Money(Decimal('150.5'), Currency.JPY).amount == Decimal('151')

    def test_accepts_strings_and_ints(self):
        """Test construction from string and int input"""
        assert Money("12.30", Currency.EUR).amount == Decimal('12.30')
        assert Money(7, Currency.EUR).amount == Decimal('7.00')

    def test_rejects_floats(self):
        """Test that float amounts are refused"""
        with pytest.raises(ValueError):
            Money(10.5, Currency.USD)
        with pytest.raises(ValueError):
            to_decimal(0.1)

    def test_rejects_garbage(self):
        """Test unparsable and non-finite amounts"""
        with pytest.raises(ValueError):
            to_decimal("ten dollars")
        with pytest.raises(ValueError):
            Money(Decimal('Infinity'), Currency.USD)

    def test_arithmetic(self):
        """Test addition, subtraction, multiplication and negation"""
        a = Money(Decimal('100.00'), Currency.USD)
        b = Money(Decimal('30.25'), Currency.USD)

        assert a + b == Money(Decimal('130.25'), Currency.USD)
        assert a - b == Money(Decimal('69.75'), Currency.USD)
        assert b * 2 == Money(Decimal('60.50'), Currency.USD)
        assert -b == Money(Decimal('-30.25'), Currency.USD)
        assert abs(-b) == b

    def test_currency_mismatch(self):
        """Test that mixing currencies fails"""
        usd = Money(Decimal('1.00'), Currency.USD)
        eur = Money(Decimal('1.00'), Currency.EUR)

        with pytest.raises(ValueError):
            usd + eur
        with pytest.raises(ValueError):
            usd < eur
        assert usd != eur

    def test_comparisons_and_predicates(self):
        """Test ordering and sign helpers"""
        zero = Money.zero(Currency.USD)
        one = Money(Decimal('1'), Currency.USD)

        assert zero < one
        assert one >= zero
        assert zero.is_zero()
        assert one.is_positive()
        assert (-one).is_negative()

    def test_to_string(self):
        """Test display formatting"""
        assert Money(Decimal('1234.5'), Currency.USD).to_string() == "USD 1,234.50"
        assert Money(Decimal('1500'), Currency.JPY).to_string() == "JPY 1,500"

    def test_round_money(self):
        """Test the standalone rounding helper"""
        assert round_money(Decimal('2.675')) == Decimal('2.68')
        assert round_money(Decimal('2.5'), places=0) == Decimal('3')
