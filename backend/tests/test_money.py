"""
Tests for strict amount parsing and two-place monetary comparison.
"""

import pytest
from decimal import Decimal
from bson import Decimal128

from funding_engine.errors import ValidationError
from funding_engine.money import (
    parse_amount, round_financial, amounts_equal, to_storage, from_storage, to_float
)


class TestParseAmount:
    """User input is parsed strictly, never defaulted to zero"""

    def test_blank_means_no_amount(self):
        assert parse_amount(None) is None
        assert parse_amount("") is None
        assert parse_amount("   ") is None

    def test_numeric_text_is_stored_to_cents(self):
        assert parse_amount("1000") == Decimal("1000.00")
        assert parse_amount(" 12.3 ") == Decimal("12.30")
        assert parse_amount("12.500") == Decimal("12.50")
        assert parse_amount(950) == Decimal("950.00")

    @pytest.mark.parametrize("raw", ["12.345", "0.001", 10.005])
    def test_sub_cent_input_is_rejected(self, raw):
        with pytest.raises(ValidationError) as exc:
            parse_amount(raw)
        assert "decimal places" in exc.value.message

    @pytest.mark.parametrize("raw", ["1e30", "100000000000000000000000000", Decimal("9" * 28)])
    def test_out_of_range_amount_is_a_validation_error(self, raw):
        with pytest.raises(ValidationError) as exc:
            parse_amount(raw)
        assert exc.value.status_code == 400

    @pytest.mark.parametrize("raw", ["abc", "12,5", "1e", "NaN", "Infinity"])
    def test_non_numeric_text_is_rejected(self, raw):
        with pytest.raises(ValidationError):
            parse_amount(raw)

    def test_booleans_are_not_amounts(self):
        with pytest.raises(ValidationError):
            parse_amount(True)

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_amount("-5")
        assert exc.value.status_code == 400


class TestComparison:
    """Amounts compare exactly at storage precision"""

    def test_float_artefacts_do_not_create_differences(self):
        assert amounts_equal(Decimal(str(0.1 + 0.2)), Decimal("0.3"))

    def test_sub_cent_values_round_half_up(self):
        assert round_financial("0.005") == Decimal("0.01")
        assert amounts_equal(Decimal("1000.004"), Decimal("1000.00"))
        assert not amounts_equal(Decimal("1000.01"), Decimal("1000.00"))

    def test_rounding_beyond_precision_raises_validation_error(self):
        with pytest.raises(ValidationError):
            round_financial("1e30")
        with pytest.raises(ValidationError):
            to_storage(Decimal("123456789012345678901234567"))


class TestStorage:

    def test_decimal128_round_trip(self):
        stored = to_storage(Decimal("1234.5"))
        assert isinstance(stored, Decimal128)
        assert from_storage(stored) == Decimal("1234.50")

    def test_none_passes_through(self):
        assert to_storage(None) is None
        assert to_float(None) is None
        assert to_float(Decimal("10.10")) == 10.1
