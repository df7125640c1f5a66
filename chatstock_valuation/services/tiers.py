from typing import Sequence, Tuple

import numpy as np

from chatstock_valuation.errors import InvalidInput, ScheduleError
from chatstock_valuation.schemas import DailyBucket, TierSchedule


def _band_arrays(schedule: TierSchedule) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    bands = schedule.bands()
    lowers = np.array([lower for lower, _, _ in bands], dtype=float)
    widths = np.array([np.inf if width is None else width for _, width, _ in bands], dtype=float)
    rates = np.array([rate for _, _, rate in bands], dtype=float)
    return lowers, widths, rates


def _check_count(n) -> None:
    if n < 0:
        raise InvalidInput(f"event count must be >= 0, got {n}")


def _finite(value: float, schedule: TierSchedule) -> float:
    if not np.isfinite(value):
        raise ScheduleError(f"Schedule '{schedule.name}' produced a non-finite contribution")
    return float(value)


def tier_contribution(n: int, schedule: TierSchedule) -> float:
    """
    Percent contribution of n units run through the schedule's tiers in order.

    Each tier absorbs up to (threshold - previous threshold) units at its own
    rate and passes the remainder on; the final tier absorbs everything left.
    cap_percent is not applied here, it bounds the window total.
    """
    _check_count(n)
    if n == 0:
        return 0.0
    lowers, widths, rates = _band_arrays(schedule)
    absorbed = np.clip(n - lowers, 0.0, widths)
    return _finite(np.dot(absorbed, rates), schedule)


def tier_contributions(counts: Sequence[int], schedule: TierSchedule) -> np.ndarray:
    """Vectorised tier_contribution over many counts."""
    arr = np.asarray(counts, dtype=float)
    if arr.size == 0:
        return np.zeros(0, dtype=float)
    if np.any(arr < 0):
        raise InvalidInput(f"event counts must be >= 0, got min {arr.min():g}")
    lowers, widths, rates = _band_arrays(schedule)
    absorbed = np.clip(arr[:, None] - lowers[None, :], 0.0, widths[None, :])
    out = absorbed @ rates
    if not np.all(np.isfinite(out)):
        raise ScheduleError(f"Schedule '{schedule.name}' produced a non-finite contribution")
    return out


def _apply_cap(total: float, schedule: TierSchedule) -> float:
    if schedule.cap_percent is None:
        return total
    return min(total, schedule.cap_percent)


def total_contribution(buckets: Sequence[DailyBucket], schedule: TierSchedule) -> float:
    """
    Window contribution in percent.

    daily basis: sum of each day's tiered contribution.
    window basis: the flattened window count run through the tiers once.
    Either way the result does not depend on the order of the buckets.
    """
    counts = [b.count for b in buckets]
    if schedule.basis == "window":
        total = tier_contribution(int(sum(counts)), schedule)
    else:
        total = float(np.sum(tier_contributions(counts, schedule)))
    return _apply_cap(total, schedule)


def day_contributions(buckets: Sequence[DailyBucket], schedule: TierSchedule) -> np.ndarray:
    """
    Per-bucket share of the window contribution, oldest bucket first.

    Each bucket gets the marginal contribution it adds on top of the older
    buckets, with the cap applied to the running total, so the shares always
    sum to total_contribution().
    """
    ordered = sorted(buckets, key=lambda b: b.day)
    counts = np.array([b.count for b in ordered], dtype=float)
    if counts.size == 0:
        return np.zeros(0, dtype=float)

    if schedule.basis == "window":
        running = tier_contributions(np.cumsum(counts), schedule)
    else:
        running = np.cumsum(tier_contributions(counts, schedule))

    if schedule.cap_percent is not None:
        running = np.minimum(running, schedule.cap_percent)
    return np.diff(running, prepend=0.0)
