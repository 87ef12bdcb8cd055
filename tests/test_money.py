"""
Unit tests for integer pence arithmetic.

Tests validation, rounding, largest-remainder splits and display formatting.
"""

from decimal import Decimal, ROUND_DOWN
from fractions import Fraction

import pytest

from tip_escrow.core.errors import InvalidAmount, Underflow
from tip_escrow.core.money import (
    add,
    format_pence,
    multiply_by_fraction,
    pounds_to_pence,
    split_shares,
    subtract,
    validate_pence,
)


class TestValidatePence:
    """Test amount validation."""

    def test_accepts_positive_int(self):
        assert validate_pence(150) == 150

    def test_zero_allowed_by_default(self):
        assert validate_pence(0) == 0

    def test_zero_rejected_when_disallowed(self):
        with pytest.raises(InvalidAmount, match="greater than zero"):
            validate_pence(0, allow_zero=False)

    def test_negative_rejected(self):
        with pytest.raises(InvalidAmount, match="negative"):
            validate_pence(-1)

    def test_float_rejected(self):
        with pytest.raises(InvalidAmount, match="integer"):
            validate_pence(10.0)

    def test_bool_rejected(self):
        with pytest.raises(InvalidAmount):
            validate_pence(True)

    def test_invalid_amount_is_value_error(self):
        with pytest.raises(ValueError):
            validate_pence("100")


class TestArithmetic:
    """Test add, subtract and fractional multiplication."""

    def test_add(self):
        assert add(250, 75) == 325

    def test_subtract(self):
        assert subtract(250, 75) == 175

    def test_subtract_to_zero(self):
        assert subtract(75, 75) == 0

    def test_subtract_underflow(self):
        with pytest.raises(Underflow):
            subtract(75, 76)

    def test_multiply_round_half_up(self):
        # 5 * 1/2 = 2.5 -> 3
        assert multiply_by_fraction(5, 1, 2) == 3
        # 7 * 1/3 = 2.33 -> 2
        assert multiply_by_fraction(7, 1, 3) == 2

    def test_multiply_round_down(self):
        assert multiply_by_fraction(5, 1, 2, rounding=ROUND_DOWN) == 2
        assert multiply_by_fraction(1001, 70, 100, rounding=ROUND_DOWN) == 700

    def test_multiply_rejects_zero_denominator(self):
        with pytest.raises(ValueError):
            multiply_by_fraction(100, 1, 0)

    def test_multiply_rejects_unknown_rounding(self):
        with pytest.raises(ValueError, match="rounding"):
            multiply_by_fraction(100, 1, 3, rounding="ROUND_CEILING")


class TestSplitShares:
    """Test largest-remainder allocation."""

    def test_even_split(self):
        assert split_shares(700, [Fraction(3, 5), Fraction(2, 5)]) == [420, 280]

    def test_three_way_split_sums_to_total(self):
        amounts = split_shares(100, [Fraction(1, 3)] * 3)
        assert sum(amounts) == 100
        # Equal remainders go to the earliest owner
        assert amounts == [34, 33, 33]

    def test_largest_remainder_gets_extra_pence(self):
        # 10 * 0.45 = 4.5, 10 * 0.55 = 5.5 -> both remainders 0.5, first wins
        assert split_shares(10, [Fraction(45, 100), Fraction(55, 100)]) == [5, 5]
        # 7 * 1/6 = 1.17, 7 * 5/6 = 5.83 -> second has larger remainder
        assert split_shares(7, [Fraction(1, 6), Fraction(5, 6)]) == [1, 6]

    def test_no_amount_differs_by_more_than_one_from_exact(self):
        shares = [Fraction(1, 7), Fraction(2, 7), Fraction(4, 7)]
        amounts = split_shares(1000, shares)
        for amount, share in zip(amounts, shares):
            assert abs(amount - 1000 * share) < 1

    def test_single_owner_gets_everything(self):
        assert split_shares(699, [Fraction(1)]) == [699]

    def test_zero_total(self):
        assert split_shares(0, [Fraction(1, 2), Fraction(1, 2)]) == [0, 0]

    def test_more_owners_than_pence(self):
        amounts = split_shares(2, [Fraction(1, 4)] * 4)
        assert amounts == [1, 1, 0, 0]

    def test_shares_must_sum_to_one(self):
        with pytest.raises(ValueError, match="sum to exactly 1"):
            split_shares(100, [Fraction(1, 2), Fraction(1, 3)])

    def test_empty_shares_rejected(self):
        with pytest.raises(ValueError):
            split_shares(100, [])


class TestConversion:
    """Test operator-facing pound conversion and formatting."""

    def test_pounds_to_pence_from_string(self):
        assert pounds_to_pence("12.50") == 1250

    def test_pounds_to_pence_from_decimal(self):
        assert pounds_to_pence(Decimal("33")) == 3300

    def test_pounds_to_pence_rejects_float(self):
        with pytest.raises(InvalidAmount):
            pounds_to_pence(12.5)

    def test_pounds_to_pence_rejects_sub_penny(self):
        with pytest.raises(InvalidAmount, match="two decimal places"):
            pounds_to_pence("1.005")

    def test_pounds_to_pence_rejects_garbage(self):
        with pytest.raises(InvalidAmount):
            pounds_to_pence("twelve")

    def test_format_pence(self):
        assert format_pence(0) == "£0.00"
        assert format_pence(5) == "£0.05"
        assert format_pence(123456) == "£1,234.56"
