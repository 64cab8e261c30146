"""
Checkout Settlement - prices the parking overrun and cancellation refunds

Pure functions, no database access. Money is Decimal, quantized to cents
with ROUND_HALF_UP.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from parkwash.core.config import settings

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Decimal rounded half-up to 2 places; floats go through str() first"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class SettlementQuote:
    extra_minutes: int
    billed_minutes: int
    extra_charge: Decimal

    @property
    def requires_payment(self) -> bool:
        return self.billed_minutes > 0


def overrun_minutes(end_time: datetime, actual_end_time: datetime) -> int:
    """Whole minutes past the scheduled end, rounded up; 0 when on time"""
    seconds = (actual_end_time - end_time).total_seconds()
    return max(0, math.ceil(seconds / 60))


def billed_minutes(extra_minutes: int, block_minutes: int | None = None) -> int:
    block = block_minutes or settings.EXTRA_CHARGE_BLOCK_MINUTES
    return math.ceil(extra_minutes / block) * block


def quote_checkout(
    end_time: datetime,
    actual_end_time: datetime,
    price_per_hour: Number,
    block_minutes: int | None = None,
) -> SettlementQuote:
    """
    Extra charge for leaving after ``end_time``.

    10:00 scheduled, 10:07 actual, 60/h -> 7 extra, 10 billed, 10.00 charged.
    """
    extra = overrun_minutes(end_time, actual_end_time)
    billed = billed_minutes(extra, block_minutes)
    if billed == 0:
        return SettlementQuote(extra_minutes=extra, billed_minutes=0, extra_charge=ZERO)

    rate = price_per_hour if isinstance(price_per_hour, Decimal) else Decimal(str(price_per_hour))
    charge = to_money(Decimal(billed) * rate / Decimal(60))
    return SettlementQuote(extra_minutes=extra, billed_minutes=billed, extra_charge=charge)


def cancellation_refund(
    created_at: datetime,
    cancelled_at: datetime,
    hours: int,
    total_price: Number,
    price_per_hour: Number,
    full_refund_window_minutes: int | None = None,
) -> Decimal:
    """
    Refund for cancelling a paid reservation before check-in.

    Full refund inside the grace window. After it, the unused whole hours
    are refunded at the hourly rate (started hours count as unused);
    less than one hour's worth refunds nothing.
    """
    window = full_refund_window_minutes or settings.FULL_REFUND_WINDOW_MINUTES
    elapsed_minutes = (cancelled_at - created_at).total_seconds() / 60
    if elapsed_minutes < window:
        return to_money(total_price)

    rate = to_money(price_per_hour)
    hours_used = min(int(elapsed_minutes // 60), hours)
    refund = rate * (hours - hours_used)
    if refund < rate:
        return ZERO
    return to_money(min(refund, to_money(total_price)))
