"""
tests/test_points.py — PointAmount Value Object
================================================
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from raidledger.engine.points import PointAmount, quantize_points
from raidledger.errors import ValidationError


class TestPointAmountParse:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (5, Decimal("5.00")),
            ("2.5", Decimal("2.50")),
            (0.1, Decimal("0.10")),
            (Decimal("3.25"), Decimal("3.25")),
            ("1.500", Decimal("1.50")),
            (0, Decimal("0.00")),
        ],
    )
    def test_accepts_up_to_two_decimals(self, raw, expected):
        assert PointAmount.parse(raw).value == expected

    def test_rejects_three_decimals(self):
        with pytest.raises(ValidationError) as exc:
            PointAmount.parse("1.005")
        assert exc.value.code == "VALIDATION_ERROR"
        assert exc.value.fields == {"amount": "too many decimal places"}

    def test_rejects_negative_unless_signed(self):
        with pytest.raises(ValidationError):
            PointAmount.parse(-1)
        assert PointAmount.parse(-1, signed=True).value == Decimal("-1.00")

    @pytest.mark.parametrize("raw", ["abc", "", None, True, "NaN", "Infinity", float("inf")])
    def test_rejects_non_numbers(self, raw):
        with pytest.raises(ValidationError):
            PointAmount.parse(raw, signed=True)

    def test_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            PointAmount.parse("100000000")

    def test_field_name_is_reported(self):
        with pytest.raises(ValidationError) as exc:
            PointAmount.parse(-2, field="required_points")
        assert "required_points" in exc.value.fields

    def test_float_arithmetic_is_exact(self):
        total = PointAmount.parse(0.1).value + PointAmount.parse(0.2).value
        assert total == Decimal("0.30")


class TestQuantizePoints:
    def test_none_is_zero(self):
        assert quantize_points(None) == Decimal("0.00")

    def test_float_aggregate_is_rounded(self):
        assert quantize_points(2.9999999999) == Decimal("3.00")
