"""
Refund policy for cancelled and refunded bookings.

The refundable share depends on how much notice the traveller gives before
the trip starts: tiers from Config.REFUND_POLICY_TIERS are checked from the
longest notice down, and anything inside the shortest tier refunds nothing.
A trip with no start date refunds Config.REFUND_UNKNOWN_START_FRACTION.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from config import Config
from utils.helpers import quantize_amount, to_naive_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundDecision:
    amount: Decimal
    fraction: Decimal
    hours_before_start: Optional[float]
    rule: str


def refund_fraction(travel_start_at: Optional[datetime], cancelled_at: datetime):
    """Return (fraction, hours_before_start, rule) for a cancellation time"""
    if travel_start_at is None:
        return Config.REFUND_UNKNOWN_START_FRACTION, None, "unknown_start"

    hours = (to_naive_utc(travel_start_at) - to_naive_utc(cancelled_at)).total_seconds() / 3600
    for min_hours, fraction in sorted(Config.REFUND_POLICY_TIERS, key=lambda tier: tier[0], reverse=True):
        if hours >= min_hours:
            return Decimal(fraction), hours, f"notice_{min_hours}h"
    return Decimal("0"), hours, "late_cancellation"


def calculate_refund(amount: Decimal, travel_start_at: Optional[datetime], cancelled_at: datetime) -> RefundDecision:
    fraction, hours, rule = refund_fraction(travel_start_at, cancelled_at)
    refund = quantize_amount(Decimal(str(amount)) * fraction)
    logger.debug(f"💸 REFUND_POLICY: {rule} fraction={fraction} amount={refund}")
    return RefundDecision(amount=refund, fraction=fraction, hours_before_start=hours, rule=rule)
