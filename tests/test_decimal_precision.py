"""
Decimal precision for on-chain amounts
Human amounts ↔ base units must never pass through float
"""

import pytest
from decimal import Decimal

from services.wallet_errors import InvalidAmount
from utils.decimal_precision import MonetaryDecimal, is_all_amount, parse_positive_amount


class TestBaseUnitConversion:
    """to_base_units / format_units"""

    def test_eighteen_decimals_exact(self):
        assert MonetaryDecimal.to_base_units("0.1", 18) == 10 ** 17, "0.1 must not pick up float noise"
        assert MonetaryDecimal.to_base_units(Decimal("1.5"), 6) == 1_500_000

    def test_truncates_beyond_precision(self):
        assert MonetaryDecimal.to_base_units("1.1234567", 6) == 1_123_456

    def test_float_input_goes_through_str(self):
        assert MonetaryDecimal.to_base_units(0.3, 18) == 3 * 10 ** 17

    def test_format_strips_trailing_zeros(self):
        assert MonetaryDecimal.format_units(10 ** 18, 18) == "1"
        assert MonetaryDecimal.format_units(2 * 10 ** 17, 18) == "0.2"
        assert MonetaryDecimal.format_units(0, 18) == "0"

    def test_format_never_uses_exponent(self):
        assert MonetaryDecimal.format_units(1, 18) == "0.000000000000000001"

    def test_garbage_raises_value_error(self):
        with pytest.raises(ValueError):
            MonetaryDecimal.to_base_units("ten", 18)
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal("NaN")


class TestStoredAmounts:
    """Persisted decimal strings from older rows"""

    def test_valid_stored_amount(self):
        assert MonetaryDecimal.parse_stored_amount("25.5", 18) == 25 * 10 ** 18 + 5 * 10 ** 17

    @pytest.mark.parametrize("stored", [None, "", "abc", "-1", "Infinity"])
    def test_malformed_stored_amount_is_none(self, stored):
        assert MonetaryDecimal.parse_stored_amount(stored, 18) is None


class TestUserAmounts:

    def test_all_sentinel(self):
        assert is_all_amount("all")
        assert is_all_amount(" ALL ")
        assert not is_all_amount("10")
        assert not is_all_amount(None)

    def test_positive_amount(self):
        assert parse_positive_amount("2", 6) == 2_000_000

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "0.0000000000000000001"])
    def test_non_positive_or_invalid_rejected(self, amount):
        with pytest.raises(InvalidAmount):
            parse_positive_amount(amount, 18)

    def test_usd_quantize(self):
        assert MonetaryDecimal.quantize_usd("3.14159") == Decimal("3.14")
        assert MonetaryDecimal.quantize_usd("2") == Decimal("2.00")
