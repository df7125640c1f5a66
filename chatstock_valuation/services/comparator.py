"""
Migration analysis on top of the valuation engine.

compare_regimes prices one pinned ledger view under two regimes.
forecast_cap_lift predicts when a capped window regime stops binding as the
oldest days fall out of the window. Both use the day rule from window.py.
"""

from datetime import datetime
from typing import List, Optional, Sequence

import numpy as np

from chatstock_valuation.errors import InvalidInput
from chatstock_valuation.schemas import BucketExpiry, CapLiftForecast, DailyBucket, RegimeComparisonReport, TierSchedule, as_utc
from chatstock_valuation.services.composer import round_currency
from chatstock_valuation.services.tiers import day_contributions
from chatstock_valuation.services.valuation import ValuationEngine
from chatstock_valuation.services.window import aggregate_daily, bucket_day, expiry_date


def compare_regimes(
    engine: ValuationEngine,
    entity_id: str,
    regime_a: str,
    regime_b: str,
    as_of: Optional[datetime] = None,
) -> RegimeComparisonReport:
    as_of = engine.pin(as_of)
    a = engine.registry.get(regime_a)
    b = engine.registry.get(regime_b)

    # one read wide enough for both windows
    view = engine.read_view(entity_id, as_of, [a, b])
    snap_a = engine.price_view(view, a)
    snap_b = engine.price_view(view, b)

    precision = engine.config.currency_precision
    delta = round_currency(snap_b.final_price - snap_a.final_price, precision)
    delta_percent = None
    if snap_a.final_price:
        delta_percent = (snap_b.final_price - snap_a.final_price) / snap_a.final_price * 100.0

    return RegimeComparisonReport(
        entity_id=entity_id,
        as_of=as_of,
        regime_a=snap_a,
        regime_b=snap_b,
        delta=delta,
        delta_percent=delta_percent,
    )


def forecast_cap_lift(
    buckets: Sequence[DailyBucket],
    threshold: int,
    window_days: int,
    as_of: datetime,
    entity_id: str = "",
) -> CapLiftForecast:
    """
    Walk the buckets oldest first until enough events have expired to bring
    the window back down to threshold; the cap lifts on that day + window_days.
    """
    if threshold < 0:
        raise InvalidInput(f"threshold must be >= 0, got {threshold}")
    if window_days < 1:
        raise InvalidInput(f"window_days must be >= 1, got {window_days}")

    as_of = as_utc(as_of)
    ordered = sorted(buckets, key=lambda b: b.day)
    counts = np.array([b.count for b in ordered], dtype=np.int64)
    current = int(counts.sum()) if counts.size else 0

    if current <= threshold:
        return CapLiftForecast(
            entity_id=entity_id, as_of=as_of, current_count=current, threshold=threshold, capped=False,
        )

    excess = current - threshold
    cumulative = np.cumsum(counts)
    idx = int(np.searchsorted(cumulative, excess, side="left"))
    expiring = ordered[idx].day
    lift = expiry_date(expiring, window_days)

    return CapLiftForecast(
        entity_id=entity_id,
        as_of=as_of,
        current_count=current,
        threshold=threshold,
        capped=True,
        lift_date=lift,
        days_until_lift=(lift - bucket_day(as_of)).days,
        expiring_day=expiring,
    )


def expiry_schedule(
    buckets: Sequence[DailyBucket],
    schedule: TierSchedule,
    window_days: int,
    as_of: datetime,
) -> List[BucketExpiry]:
    """Per-day expiry dates and the contribution each day takes with it."""
    ordered = sorted(buckets, key=lambda b: b.day)
    shares = day_contributions(ordered, schedule)
    today = bucket_day(as_of)
    out = []
    for bucket, share in zip(ordered, shares):
        expires = expiry_date(bucket.day, window_days)
        out.append(
            BucketExpiry(
                day=bucket.day,
                count=bucket.count,
                expires_on=expires,
                days_until_expiry=(expires - today).days,
                contribution_percent=float(share),
            )
        )
    return out


def cap_lift_for_entity(
    engine: ValuationEngine,
    entity_id: str,
    as_of: Optional[datetime] = None,
    regime: Optional[str] = None,
) -> CapLiftForecast:
    as_of = engine.pin(as_of)
    resolved = engine.registry.get(regime)
    threshold = resolved.schedule.saturation_count()
    if threshold is None:
        raise InvalidInput(f"Regime '{resolved.name}' has no hard cap to forecast")

    view = engine.read_view(entity_id, as_of, [resolved])
    buckets = aggregate_daily(view.events, as_of, resolved.window_days, engine.kinds)
    return forecast_cap_lift(buckets, threshold, resolved.window_days, as_of, entity_id)


def expiry_for_entity(
    engine: ValuationEngine,
    entity_id: str,
    as_of: Optional[datetime] = None,
    regime: Optional[str] = None,
) -> List[BucketExpiry]:
    as_of = engine.pin(as_of)
    resolved = engine.registry.get(regime)
    view = engine.read_view(entity_id, as_of, [resolved])
    buckets = aggregate_daily(view.events, as_of, resolved.window_days, engine.kinds)
    return expiry_schedule(buckets, resolved.schedule, resolved.window_days, as_of)
