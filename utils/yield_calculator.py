"""
Yield calculations shared by escrowed payments and in-transit bridge transfers.

Simple (non-compounding) interest on an annual rate:
    yield = principal x apy x elapsed_days / 365
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Tuple

from utils.datetime_helpers import SECONDS_PER_DAY, seconds_between
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = Decimal(365)


def elapsed_days(start: datetime, end: datetime) -> Decimal:
    return Decimal(seconds_between(start, end)) / Decimal(SECONDS_PER_DAY)


def simple_interest(principal: Decimal, apy: Decimal, start: datetime, end: datetime) -> Decimal:
    """Interest earned by principal at apy between start and end"""
    if principal <= 0 or apy <= 0:
        return Decimal("0")
    days = elapsed_days(start, end)
    result = MonetaryDecimal.to_decimal(principal) * MonetaryDecimal.to_decimal(apy) * days / DAYS_PER_YEAR
    return MonetaryDecimal.quantize_storage(result)


def weighted_apy(slices: Iterable[Tuple[Decimal, Decimal]]) -> Decimal:
    """Average APY of (principal, apy) slices weighted by principal"""
    total_principal = Decimal("0")
    weighted = Decimal("0")
    for principal, apy in slices:
        total_principal += principal
        weighted += principal * apy
    if total_principal == 0:
        return Decimal("0")
    return (weighted / total_principal).quantize(MonetaryDecimal.APY_PRECISION)
