"""
Valuation engine tests: pinned reads, reproducibility, failure isolation,
batch revaluation, streak and inactivity modifiers, price history replay.
"""

import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chatstock_valuation.config import DIMINISHING_SCHEDULE, EngineConfig, default_regimes
from chatstock_valuation.errors import InvalidInput, LedgerTimeout, LedgerUnavailable, ScheduleError
from chatstock_valuation.ledger import InMemoryHoldings, InMemoryLedger
from chatstock_valuation.schemas import (
    ActivityEvent,
    DemandCurve,
    InactivityRule,
    Regime,
    StreakRule,
)
from chatstock_valuation.services.streak import inactivity_multiplier, streak_info
from chatstock_valuation.services.valuation import ValuationEngine

UTC = timezone.utc
AS_OF = datetime(2024, 3, 20, 12, 0, tzinfo=UTC)


# ── Helpers ──────────────────────────────────────────────────────────────────

def burst(entity_id, day, n, kind="message"):
    """n events spread over the given UTC day, one minute apart from 08:00."""
    start = datetime(day.year, day.month, day.day, 8, 0, tzinfo=UTC)
    return [ActivityEvent(entity_id=entity_id, timestamp=start + timedelta(minutes=i), kind=kind) for i in range(n)]


def daily(entity_id, last_day, days, per_day=1):
    out = []
    for i in range(days):
        out.extend(burst(entity_id, last_day - timedelta(days=i), per_day))
    return out


def make_regime(**overrides) -> Regime:
    defaults = dict(
        name="diminishing",
        window_days=15,
        schedule=DIMINISHING_SCHEDULE,
        demand=DemandCurve(rate_per_share=0.003, cap=0.30),
        base_price=100.0,
    )
    defaults.update(overrides)
    return Regime(**defaults)


def make_engine(events=(), shares=None, regimes=None, **config_overrides) -> ValuationEngine:
    regimes = regimes or default_regimes()
    config = EngineConfig(regimes=regimes, active_regime=config_overrides.pop("active_regime", "diminishing"),
                          **config_overrides)
    return ValuationEngine(InMemoryLedger(events), InMemoryHoldings(shares or {}), config=config)


class SlowLedger(InMemoryLedger):
    def __init__(self, delay, events=()):
        super().__init__(events)
        self.delay = delay

    def list_events(self, entity_id, since, kinds=None):
        time.sleep(self.delay)
        return super().list_events(entity_id, since, kinds)


class BrokenLedger(InMemoryLedger):
    def list_events(self, entity_id, since, kinds=None):
        raise ConnectionError("ledger offline")


class PickyHoldings(InMemoryHoldings):
    def total_shares(self, entity_id):
        if entity_id == "bad":
            raise ConnectionError("holdings shard down")
        return super().total_shares(entity_id)


# ── Single valuation ─────────────────────────────────────────────────────────

def test_documented_scenario_through_engine():
    engine = make_engine(burst("alice", AS_OF.date(), 60), shares={"alice": 100})
    snap = engine.value("alice", AS_OF)
    assert snap.activity_contribution_percent == pytest.approx(19.0)
    assert snap.demand_multiplier == pytest.approx(1.30)
    assert snap.final_price == 154.70
    assert snap.event_count == 60
    assert snap.regime == "diminishing"
    assert snap.as_of == AS_OF


def test_empty_history_is_not_an_error():
    engine = make_engine(shares={"ghost": 100})
    snap = engine.value("ghost", AS_OF)
    assert snap.activity_contribution_percent == 0
    assert snap.final_price == 130.0


def test_repeated_valuations_are_identical():
    engine = make_engine(
        burst("alice", AS_OF.date(), 37) + burst("alice", AS_OF.date() - timedelta(days=4), 112),
        shares={"alice": 42},
    )
    first = engine.value("alice", AS_OF)
    second = engine.value("alice", AS_OF)
    assert first.final_price == second.final_price
    assert first == second


def test_pinned_as_of_ignores_later_appends():
    engine = make_engine(burst("alice", AS_OF.date(), 10))
    before = engine.value("alice", AS_OF)
    engine.ledger.append(ActivityEvent(entity_id="alice", timestamp=AS_OF + timedelta(seconds=1)))
    assert engine.value("alice", AS_OF) == before


def test_old_events_age_out():
    events = burst("alice", AS_OF.date() - timedelta(days=20), 50)
    engine = make_engine(events)
    assert engine.value("alice", AS_OF).activity_contribution_percent == 0
    assert engine.value("alice", AS_OF - timedelta(days=10)).activity_contribution_percent > 0


def test_unknown_regime_rejected():
    engine = make_engine()
    with pytest.raises(InvalidInput):
        engine.value("alice", AS_OF, regime="nope")


def test_regime_hot_swap_takes_effect_without_restart():
    engine = make_engine(burst("alice", AS_OF.date(), 60))
    assert engine.value("alice", AS_OF).final_price == 119.0
    engine.registry.put(make_regime(base_price=200.0))
    assert engine.value("alice", AS_OF).final_price == 238.0
    engine.registry.activate("legacy")
    assert engine.value("alice", AS_OF).final_price == 112.0


# ── Collaborator failures ────────────────────────────────────────────────────

def test_missing_holdings_total_counts_as_zero():
    class EmptyHoldings(InMemoryHoldings):
        def total_shares(self, entity_id):
            return None

    engine = make_engine(burst("alice", AS_OF.date(), 60))
    engine.holdings = EmptyHoldings()
    snap = engine.value("alice", AS_OF)
    assert snap.total_shares == 0
    assert snap.demand_multiplier == 1.0
    assert snap.final_price == 119.0


def test_overflowing_demand_fails_the_request():
    regimes = {"diminishing": make_regime(demand=DemandCurve(rate_per_share=1e308, cap=None))}
    engine = make_engine(burst("alice", AS_OF.date(), 5), shares={"alice": 10}, regimes=regimes)
    with pytest.raises(ScheduleError):
        engine.value("alice", AS_OF)


def test_ledger_timeout_surfaces_as_retryable():
    engine = make_engine(ledger_timeout_seconds=0.05)
    engine.ledger = SlowLedger(0.5)
    with pytest.raises(LedgerTimeout) as info:
        engine.value("alice", AS_OF)
    assert info.value.retryable


def test_refresh_serves_stale_price_when_ledger_is_down():
    engine = make_engine(burst("alice", AS_OF.date(), 60), shares={"alice": 100})
    published = engine.refresh("alice", AS_OF)
    assert engine.store.current("alice") == published

    engine.ledger = BrokenLedger()
    assert engine.refresh("alice", AS_OF + timedelta(hours=1)) == published
    with pytest.raises(LedgerUnavailable):
        engine.refresh("bob", AS_OF)


# ── Batch revaluation ────────────────────────────────────────────────────────

def test_revalue_all_publishes_each_entity():
    events = burst("alice", AS_OF.date(), 60) + burst("bob", AS_OF.date(), 20) + burst("carol", AS_OF.date(), 5)
    engine = make_engine(events, shares={"alice": 100})
    result = engine.revalue_all(as_of=AS_OF)
    assert result.published == ["alice", "bob", "carol"]
    assert result.failed == {}
    assert engine.store.current("alice").final_price == 154.70
    assert engine.store.current("bob").final_price == 110.0


def test_one_failing_entity_does_not_affect_the_others():
    events = burst("alice", AS_OF.date(), 60) + burst("bad", AS_OF.date(), 60)
    engine = make_engine(events)
    engine.holdings = PickyHoldings()
    result = engine.revalue_all(["alice", "bad"], as_of=AS_OF)
    assert result.published == ["alice"]
    assert "bad" in result.failed
    assert engine.store.current("bad") is None
    assert engine.store.current("alice").final_price == 119.0


def test_cancelled_batch_publishes_nothing_new():
    engine = make_engine(burst("alice", AS_OF.date(), 60) + burst("bob", AS_OF.date(), 60))
    cancel = threading.Event()
    cancel.set()
    result = engine.revalue_all(as_of=AS_OF, cancel_event=cancel)
    assert result.published == []
    assert result.cancelled == ["alice", "bob"]
    assert engine.store.all() == {}


def test_batch_uses_one_regime_snapshot():
    engine = make_engine(burst("alice", AS_OF.date(), 60))
    result = engine.revalue_all(as_of=AS_OF, regime="legacy")
    assert result.regime == "legacy"
    assert engine.store.current("alice").regime == "legacy"


def test_leaderboard_orders_by_price():
    events = burst("alice", AS_OF.date(), 10) + burst("bob", AS_OF.date(), 60) + burst("carol", AS_OF.date(), 30)
    engine = make_engine(events)
    board = engine.leaderboard(limit=2, as_of=AS_OF)
    assert [s.entity_id for s in board] == ["bob", "carol"]


# ── Streak and inactivity ────────────────────────────────────────────────────

def test_streak_tiers():
    rule = StreakRule(enabled=True)
    today = AS_OF.date()
    assert streak_info(daily("a", today, 6), AS_OF, rule).bonus_percent == 0
    assert streak_info(daily("a", today, 7), AS_OF, rule).bonus_percent == 2.0
    assert streak_info(daily("a", today, 14), AS_OF, rule).bonus_percent == 4.0
    assert streak_info(daily("a", today, 30), AS_OF, rule).tier == 3


def test_idle_today_keeps_the_streak():
    rule = StreakRule(enabled=True)
    events = daily("a", AS_OF.date() - timedelta(days=1), 7)
    assert streak_info(events, AS_OF, rule).days == 7
    strict = StreakRule(enabled=True, allow_idle_today=False)
    assert streak_info(events, AS_OF, strict).days == 0


def test_gap_breaks_the_streak():
    today = AS_OF.date()
    events = daily("a", today, 3) + daily("a", today - timedelta(days=4), 10)
    assert streak_info(events, AS_OF, StreakRule(enabled=True)).days == 3


def test_top_streak_tier_expires():
    rule = StreakRule(enabled=True)
    today = AS_OF.date()
    assert streak_info(daily("a", today, 36), AS_OF, rule).bonus_percent == 7.0
    info = streak_info(daily("a", today, 37), AS_OF, rule)
    assert info.bonus_percent == 0
    assert info.expired


def test_streak_bonus_flows_into_price():
    regimes = {"diminishing": make_regime(streak=StreakRule(enabled=True))}
    engine = make_engine(daily("alice", AS_OF.date(), 10), regimes=regimes)
    snap = engine.value("alice", AS_OF)
    assert snap.streak_multiplier == pytest.approx(1.02)
    # ten days at one message each: 10 * 0.5%
    assert snap.final_price == round(100 * 1.05 * 1.02, 2)


def test_inactivity_decay():
    rule = InactivityRule(enabled=True)
    assert inactivity_multiplier(None, AS_OF, rule) == 1.0
    assert inactivity_multiplier(AS_OF - timedelta(days=2), AS_OF, rule) == 1.0
    assert inactivity_multiplier(AS_OF - timedelta(days=5, hours=12), AS_OF, rule) == pytest.approx(0.94)
    assert inactivity_multiplier(AS_OF - timedelta(days=40), AS_OF, rule) == pytest.approx(0.70)


def test_inactivity_looks_past_the_window():
    regimes = {"diminishing": make_regime(inactivity=InactivityRule(enabled=True))}
    engine = make_engine(burst("alice", AS_OF.date() - timedelta(days=20), 5), regimes=regimes)
    snap = engine.value("alice", AS_OF)
    assert snap.activity_contribution_percent == 0
    assert snap.inactivity_multiplier == pytest.approx(0.70)
    assert snap.final_price == 70.0


# ── History replay ───────────────────────────────────────────────────────────

def test_price_series_replays_activity():
    engine = make_engine(burst("alice", datetime(2024, 3, 19).date(), 60))
    start = AS_OF - timedelta(days=2)
    series = engine.price_series("alice", start, AS_OF, points=12)
    assert len(series) == 12
    assert series[0].as_of == start
    assert series[-1].as_of == AS_OF
    assert series[0].final_price == 100.0
    assert series[-1].final_price == 119.0
    prices = [s.final_price for s in series]
    assert prices == sorted(prices)


def test_price_series_sees_full_window_at_first_point():
    # activity 20 days before the end, still inside the first point's window
    engine = make_engine(burst("alice", AS_OF.date() - timedelta(days=20), 60))
    series = engine.price_series("alice", AS_OF - timedelta(days=10), AS_OF, points=3)
    assert series[0].final_price == 119.0
    assert series[-1].final_price == 100.0


def test_price_series_rejects_bad_range():
    engine = make_engine()
    with pytest.raises(InvalidInput):
        engine.price_series("alice", AS_OF, AS_OF - timedelta(days=1))
