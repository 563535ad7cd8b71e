#!/usr/bin/env python3
"""
Decimal Precision Utilities for on-chain amounts
Converts between human decimal amounts and integer base units (wei-style)
without ever passing through float
"""

import logging
from decimal import Decimal, ROUND_DOWN, InvalidOperation, getcontext
from typing import Optional, Union

from services.wallet_errors import InvalidAmount

logger = logging.getLogger(__name__)

# 78 digits covers uint256
getcontext().prec = 80


class MonetaryDecimal:
    """Decimal-only monetary conversions for token amounts"""

    USD_PRECISION = Decimal("0.01")
    NATIVE_DISPLAY_PRECISION = Decimal("0.000001")

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """Convert a user or stored value to Decimal, raising on garbage"""
        if value is None:
            raise ValueError(f"Missing amount in context: {context}")
        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid amount '{value}' in context: {context}") from e
        if not decimal_value.is_finite():
            raise ValueError(f"Non-finite amount '{value}' in context: {context}")
        return decimal_value

    @classmethod
    def to_base_units(cls, amount: Union[str, int, float, Decimal], decimals: int) -> int:
        """Human amount → integer base units, truncating beyond the asset's precision"""
        decimal_amount = cls.to_decimal(amount, "base_units")
        scaled = (decimal_amount * (Decimal(10) ** decimals)).quantize(Decimal("1"), rounding=ROUND_DOWN)
        return int(scaled)

    @classmethod
    def from_base_units(cls, value: int, decimals: int) -> Decimal:
        """Integer base units → human Decimal"""
        return Decimal(int(value)) / (Decimal(10) ** decimals)

    @classmethod
    def format_units(cls, value: int, decimals: int) -> str:
        """Base units as a plain decimal string without exponent or trailing zeros"""
        amount = cls.from_base_units(value, decimals)
        text = format(amount, "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text or "0"

    @classmethod
    def parse_stored_amount(cls, stored: Optional[str], decimals: int) -> Optional[int]:
        """Parse a persisted decimal-string amount, None when it is malformed"""
        try:
            value = cls.to_base_units(stored, decimals)
        except ValueError:
            return None
        if value < 0:
            return None
        return value

    @classmethod
    def quantize_usd(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION)


def is_all_amount(amount: Union[str, int, float, Decimal, None]) -> bool:
    """True for the "all" sentinel accepted by payout and escrow requests"""
    return isinstance(amount, str) and amount.strip().lower() == "all"


def parse_positive_amount(amount: Union[str, int, float, Decimal], decimals: int) -> int:
    """User-supplied amount → base units; InvalidAmount unless strictly positive"""
    try:
        value = MonetaryDecimal.to_base_units(amount, decimals)
    except ValueError as e:
        raise InvalidAmount(f"Invalid amount: {amount}") from e
    if value <= 0:
        raise InvalidAmount(f"Amount must be greater than 0, got {amount}")
    return value
