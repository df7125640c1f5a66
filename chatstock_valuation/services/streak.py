"""
Activity streak bonus and inactivity decay.

Both are pure functions of the entity's event history and as_of. A streak is
the run of consecutive calendar days with activity, counted backwards from
the as_of day (which may still be idle). The top streak tier pays only for
max_tier_duration_days days after it is reached, then nothing until the run
breaks and a new one is built.
"""

import math
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Set

from chatstock_valuation.schemas import ActivityEvent, InactivityRule, StreakInfo, StreakRule, as_utc
from chatstock_valuation.services.window import bucket_day

_DAY = timedelta(days=1)


def active_days(events: Iterable[ActivityEvent]) -> Set[date]:
    return {bucket_day(e.timestamp) for e in events}


def streak_days(days: Set[date], today: date, lookback_days: int, allow_idle_today: bool = True) -> int:
    count = 0
    for days_ago in range(lookback_days):
        if today - days_ago * _DAY in days:
            count += 1
        elif days_ago > 0 or not allow_idle_today:
            break
    return count


def streak_info(events: Iterable[ActivityEvent], as_of: datetime, rule: StreakRule) -> StreakInfo:
    run = streak_days(active_days(events), bucket_day(as_of), rule.lookback_days, rule.allow_idle_today)

    tier = 0
    bonus = 0.0
    for i, (min_days, tier_bonus) in enumerate(rule.tiers, start=1):
        if run >= min_days:
            tier, bonus = i, tier_bonus

    if tier and tier == len(rule.tiers) and rule.max_tier_duration_days is not None:
        days_at_top = run - rule.tiers[-1][0]
        if days_at_top >= rule.max_tier_duration_days:
            return StreakInfo(days=run, tier=0, bonus_percent=0.0, expired=True)

    return StreakInfo(days=run, tier=tier, bonus_percent=bonus)


def streak_multiplier(events: Iterable[ActivityEvent], as_of: datetime, rule: StreakRule) -> float:
    if not rule.enabled:
        return 1.0
    return 1.0 + streak_info(events, as_of, rule).bonus_percent / 100.0


def inactivity_multiplier(last_activity: Optional[datetime], as_of: datetime, rule: InactivityRule) -> float:
    """1 - decay once the entity has been silent longer than the grace period."""
    if not rule.enabled or last_activity is None:
        return 1.0
    idle_days = (as_utc(as_of) - as_utc(last_activity)) / _DAY
    if idle_days <= rule.grace_days:
        return 1.0
    decay = min(math.floor(idle_days - rule.grace_days) * rule.decay_percent_per_day, rule.max_decay_percent)
    return 1.0 - decay / 100.0
