from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional

import numpy as np

from chatstock_valuation.ledger import ActivityLedger, bounded_read
from chatstock_valuation.schemas import ActivityEvent, DailyBucket, as_utc

# Every component that buckets by day (aggregation, expiry schedule, cap-lift)
# goes through bucket_day(); days start at midnight in this zone.
DAY_BOUNDARY_TZ = timezone.utc


def bucket_day(ts: datetime) -> date:
    """Calendar day an instant belongs to."""
    return as_utc(ts).astimezone(DAY_BOUNDARY_TZ).date()


def window_start(as_of: datetime, window_days: int) -> datetime:
    """Exclusive lower bound of the window ending at as_of."""
    return as_utc(as_of) - timedelta(days=window_days)


def expiry_date(day: date, window_days: int) -> date:
    """First calendar day on which events bucketed on `day` no longer count."""
    return day + timedelta(days=window_days)


def in_window(events: Iterable[ActivityEvent], as_of: datetime, window_days: int,
              kinds: Optional[Iterable[str]] = None) -> List[ActivityEvent]:
    """Events with window_start < timestamp <= as_of, optionally filtered by kind."""
    as_of = as_utc(as_of)
    lower = window_start(as_of, window_days)
    wanted = set(kinds) if kinds is not None else None
    return [
        e for e in events
        if lower < e.timestamp <= as_of and (wanted is None or e.kind in wanted)
    ]


def aggregate_daily(events: Iterable[ActivityEvent], as_of: datetime, window_days: int,
                    kinds: Optional[Iterable[str]] = None) -> List[DailyBucket]:
    """
    Sparse per-day counts for the window ending at as_of, oldest day first.

    Depends only on the events passed in and as_of, so re-querying the same
    ledger state at the same as_of yields identical buckets.
    """
    rows = in_window(events, as_of, window_days, kinds)
    if not rows:
        return []

    ordinals = np.fromiter((bucket_day(e.timestamp).toordinal() for e in rows), dtype=np.int64, count=len(rows))
    days, counts = np.unique(ordinals, return_counts=True)
    return [
        DailyBucket(day=date.fromordinal(int(d)), count=int(c))
        for d, c in zip(days, counts)
    ]


def load_events(ledger: ActivityLedger, entity_id: str, as_of: datetime, lookback_days: int,
                kinds: Optional[Iterable[str]] = None, timeout: Optional[float] = None) -> List[ActivityEvent]:
    """
    One bounded ledger read covering lookback_days before as_of.

    Events after as_of are dropped here so that appends racing with the read
    never leak into a valuation pinned at as_of.
    """
    as_of = as_utc(as_of)
    kinds = list(kinds) if kinds is not None else None
    since = window_start(as_of, lookback_days)
    events = bounded_read(f"list_events({entity_id})", ledger.list_events, entity_id, since, kinds, timeout=timeout)
    return [e for e in events if e.timestamp <= as_of]


def load_buckets(ledger: ActivityLedger, entity_id: str, as_of: datetime, window_days: int,
                 kinds: Optional[Iterable[str]] = None, timeout: Optional[float] = None) -> List[DailyBucket]:
    events = load_events(ledger, entity_id, as_of, window_days, kinds, timeout)
    return aggregate_daily(events, as_of, window_days, kinds)
