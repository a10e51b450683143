"""Overdue fine tiers.

A loan accrues a flat penalty for every full day it is overdue. Leftover
whole hours are charged as a first-hour fee followed by a smaller per-hour
surcharge. Partial hours are never charged:

    days, hours = divmod(whole_hours_overdue, 24)
    fine = days * 25.00
    if hours:
        fine += 10.00 + (hours - 1) * 5.00

The hour surcharge restarts at every day boundary, so the amount is a step
function of elapsed time, not a pro-rated one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Coerce a number or decimal string to a two-place ``Decimal``."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FinePolicy:
    per_day: Decimal = Decimal("25.00")
    first_hour: Decimal = Decimal("10.00")
    per_extra_hour: Decimal = Decimal("5.00")

    def compute(self, due_at: datetime, now: datetime) -> Decimal:
        if now <= due_at:
            return ZERO
        minutes = (now - due_at) // timedelta(minutes=1)
        total_hours = minutes // 60
        days, remainder_hours = divmod(total_hours, 24)

        amount = days * self.per_day
        if remainder_hours > 0:
            amount += self.first_hour
            if remainder_hours > 1:
                amount += (remainder_hours - 1) * self.per_extra_hour
        return to_money(amount)


DEFAULT_POLICY = FinePolicy()


def compute_fine(due_at: datetime, now: datetime) -> Decimal:
    """Fine owed for a loan due at ``due_at`` as of ``now``, using the default tiers."""
    return DEFAULT_POLICY.compute(due_at, now)
