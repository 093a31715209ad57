"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, InvalidOperation, getcontext
from typing import Union, Optional

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 38

BASIS_POINTS = 10000


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for display
    STORAGE_PRECISION = Decimal("0.000000000000000001")  # matches Numeric(38, 18)
    APY_PRECISION = Decimal("0.00000001")

    @classmethod
    def to_decimal(
        cls, value: Union[str, int, float, Decimal, None], context: str = "monetary"
    ) -> Decimal:
        """Convert any numeric value to Decimal, rejecting garbage"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            return value

        try:
            # Convert to string first to avoid float precision issues
            return Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
            raise ValueError(f"Invalid decimal value for {context}: {value!r}") from e

    @classmethod
    def quantize_usd(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to 2 decimal places"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_storage(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize to the precision of the database money columns"""
        return cls.to_decimal(amount, "storage").quantize(
            cls.STORAGE_PRECISION, rounding=ROUND_HALF_UP
        )

    @classmethod
    def quantize_token(cls, amount: Union[str, int, float, Decimal], decimals: int) -> Decimal:
        """Quantize to the smallest unit of a token (rounds down, never creates dust)"""
        unit = Decimal(1).scaleb(-decimals)
        return cls.to_decimal(amount, "token").quantize(unit, rounding=ROUND_DOWN)

    @classmethod
    def fits_token_precision(cls, amount: Decimal, decimals: int) -> bool:
        return cls.quantize_token(amount, decimals) == amount

    @classmethod
    def bp_of(
        cls,
        amount: Union[str, int, float, Decimal],
        basis_points: int,
        result_precision: Optional[Decimal] = None,
    ) -> Decimal:
        """Return basis_points / 10000 of amount"""
        result = cls.to_decimal(amount, "basis_points") * Decimal(basis_points) / Decimal(BASIS_POINTS)
        if result_precision:
            return result.quantize(result_precision, rounding=ROUND_HALF_UP)
        return result

    @classmethod
    def multiply_precise(
        cls,
        amount: Union[str, int, float, Decimal],
        rate: Union[str, int, float, Decimal],
        result_precision: Optional[Decimal] = None,
    ) -> Decimal:
        """Multiply two values with proper precision handling"""
        result = cls.to_decimal(amount, "multiply_amount") * cls.to_decimal(rate, "multiply_rate")
        if result_precision:
            return result.quantize(result_precision, rounding=ROUND_HALF_UP)
        return cls.quantize_storage(result)
