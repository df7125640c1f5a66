import math
from decimal import ROUND_HALF_UP, Decimal

from chatstock_valuation.errors import ScheduleError


def round_currency(value: float, precision: int = 2) -> float:
    """Half-up rounding to `precision` decimals, applied once at the output boundary."""
    quantum = Decimal(1).scaleb(-precision)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


def compose_price(
    base_price: float,
    contribution_percent: float,
    demand_mult: float,
    streak_mult: float = 1.0,
    inactivity_mult: float = 1.0,
    precision: int = 2,
) -> float:
    """base * (1 + contribution/100) * demand * streak * inactivity, rounded at the end."""
    raw = base_price * (1.0 + contribution_percent / 100.0) * demand_mult * streak_mult * inactivity_mult
    if not math.isfinite(raw):
        raise ScheduleError(f"price composition overflowed: {raw}")
    return round_currency(raw, precision)
