"""
Valuation engine: reads a pinned view of one entity's history and holdings,
then composes a PriceSnapshot under a named regime.

Every public call pins a single as_of before touching the ledger. The same
view can be priced under several regimes (see comparator.compare_regimes),
so two regimes compared side by side never see different ledger states.
"""

import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

import numpy as np

from chatstock_valuation.config import EngineConfig, RegimeRegistry
from chatstock_valuation.errors import InvalidInput, LedgerUnavailable, ValuationError
from chatstock_valuation.ledger import ActivityLedger, HoldingsReader, bounded_read
from chatstock_valuation.schemas import ActivityEvent, BatchResult, PriceSnapshot, Regime, as_utc
from chatstock_valuation.services.composer import compose_price
from chatstock_valuation.services.demand import demand_multiplier
from chatstock_valuation.services.streak import inactivity_multiplier, streak_multiplier
from chatstock_valuation.services.tiers import total_contribution
from chatstock_valuation.services.window import aggregate_daily, load_events
from chatstock_valuation.utils.logger import logger, timed


class EntityView(NamedTuple):
    """Everything one valuation reads from the collaborators, captured once."""

    entity_id: str
    as_of: datetime
    events: List[ActivityEvent]
    total_shares: int


def lookback_days(regimes: Iterable[Regime]) -> int:
    """How far back a single ledger read must reach to serve every regime given."""
    days = 1
    for regime in regimes:
        days = max(days, regime.window_days)
        if regime.streak.enabled:
            days = max(days, regime.streak.lookback_days)
    return days


class SnapshotStore:
    """
    Last fully composed snapshot per entity.

    publish() replaces a whole frozen snapshot under the lock, so readers see
    either the previous price or the new one, never a partial update.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Dict[str, PriceSnapshot] = {}

    def publish(self, snapshot: PriceSnapshot) -> None:
        with self._lock:
            self._current[snapshot.entity_id] = snapshot

    def current(self, entity_id: str) -> Optional[PriceSnapshot]:
        with self._lock:
            return self._current.get(entity_id)

    def all(self) -> Dict[str, PriceSnapshot]:
        with self._lock:
            return dict(self._current)


class ValuationEngine:
    def __init__(
        self,
        ledger: ActivityLedger,
        holdings: HoldingsReader,
        registry: Optional[RegimeRegistry] = None,
        config: Optional[EngineConfig] = None,
        store: Optional[SnapshotStore] = None,
    ):
        self.config = config or EngineConfig()
        self.ledger = ledger
        self.holdings = holdings
        self.registry = registry or RegimeRegistry.from_config(self.config)
        self.store = store or SnapshotStore()

    # ── Reads ──

    @staticmethod
    def pin(as_of: Optional[datetime] = None) -> datetime:
        return datetime.now(timezone.utc) if as_of is None else as_utc(as_of)

    @property
    def kinds(self) -> List[str]:
        return list(self.config.activity_kinds)

    def read_view(
        self, entity_id: str, as_of: datetime, regimes: Sequence[Regime], extra_days: int = 0
    ) -> EntityView:
        """One ledger read and one holdings read, both bounded, for a pinned as_of."""
        timeout = self.config.ledger_timeout_seconds
        reach = lookback_days(regimes) + extra_days
        events = load_events(self.ledger, entity_id, as_of, reach, self.kinds, timeout)
        shares = bounded_read(f"total_shares({entity_id})", self.holdings.total_shares, entity_id, timeout=timeout)
        if shares is None:  # no holders recorded
            shares = 0
        if shares < 0:
            raise LedgerUnavailable(f"holdings returned negative share count {shares} for {entity_id}")
        return EntityView(entity_id, as_of, events, int(shares))

    def last_activity(self, entity_id: str, events: Sequence[ActivityEvent], as_of: datetime) -> Optional[datetime]:
        """Most recent activity at or before as_of, asking the ledger when the view holds none."""
        for event in reversed(events):
            if event.timestamp <= as_of:
                return event.timestamp
        finder = getattr(self.ledger, "last_event_at", None)
        if finder is None:
            return None
        return bounded_read(
            f"last_event_at({entity_id})", finder, entity_id, as_of, self.kinds,
            timeout=self.config.ledger_timeout_seconds,
        )

    # ── Pricing ──

    def price_view(self, view: EntityView, regime: Regime, as_of: Optional[datetime] = None) -> PriceSnapshot:
        """Pure composition over an already captured view."""
        as_of = view.as_of if as_of is None else as_utc(as_of)
        events = [e for e in view.events if e.timestamp <= as_of]

        buckets = aggregate_daily(events, as_of, regime.window_days, self.kinds)
        contribution = total_contribution(buckets, regime.schedule)
        demand = demand_multiplier(view.total_shares, regime.demand)
        streak = streak_multiplier(events, as_of, regime.streak)

        inactivity = 1.0
        if regime.inactivity.enabled:
            last = self.last_activity(view.entity_id, events, as_of)
            inactivity = inactivity_multiplier(last, as_of, regime.inactivity)

        final = compose_price(
            regime.base_price, contribution, demand, streak, inactivity,
            precision=self.config.currency_precision,
        )
        snapshot = PriceSnapshot(
            entity_id=view.entity_id,
            as_of=as_of,
            regime=regime.name,
            base_price=regime.base_price,
            activity_contribution_percent=contribution,
            demand_multiplier=demand,
            streak_multiplier=streak,
            inactivity_multiplier=inactivity,
            final_price=final,
            event_count=int(sum(b.count for b in buckets)),
            total_shares=view.total_shares,
        )
        logger.debug(
            "[Valuation] {} regime={} as_of={} contribution={:.4f}% demand={:.4f} price={}",
            view.entity_id, regime.name, as_of.isoformat(), contribution, demand, final,
        )
        return snapshot

    def value(self, entity_id: str, as_of: Optional[datetime] = None, regime: Optional[str] = None) -> PriceSnapshot:
        as_of = self.pin(as_of)
        resolved = self.registry.get(regime)
        view = self.read_view(entity_id, as_of, [resolved])
        return self.price_view(view, resolved)

    def refresh(self, entity_id: str, as_of: Optional[datetime] = None, regime: Optional[str] = None) -> PriceSnapshot:
        """
        Value and publish. When the ledger is unavailable the last published
        snapshot is served instead; with nothing published the error propagates.
        """
        try:
            snapshot = self.value(entity_id, as_of, regime)
        except LedgerUnavailable as exc:
            stale = self.store.current(entity_id)
            if stale is None:
                raise
            logger.warning("[Valuation] serving stale price for {} ({})", entity_id, exc)
            return stale
        self.store.publish(snapshot)
        return snapshot

    def price_series(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        points: int = 12,
        regime: Optional[str] = None,
    ) -> List[PriceSnapshot]:
        """
        Replay the regime at evenly spaced instants from start to end.

        One ledger read covers the whole range; holdings are read once, so the
        series isolates how activity alone moved the price.
        """
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise InvalidInput("end must be after start")
        if points < 2:
            raise InvalidInput("points must be >= 2")

        resolved = self.registry.get(regime)
        span_days = math.ceil((end - start) / timedelta(days=1))
        view = self.read_view(entity_id, end, [resolved], extra_days=span_days)

        span = (end - start).total_seconds()
        instants = [start + timedelta(seconds=float(o)) for o in np.linspace(0.0, span, num=points)]
        instants[-1] = end
        return [self.price_view(view, resolved, t) for t in instants]

    # ── Batch ──

    def _entity_ids(self, entity_ids: Optional[Iterable[str]]) -> List[str]:
        if entity_ids is not None:
            return list(dict.fromkeys(entity_ids))
        lister = getattr(self.ledger, "entity_ids", None)
        if lister is None:
            raise InvalidInput("entity_ids are required when the ledger cannot enumerate entities")
        return list(bounded_read("entity_ids", lister, timeout=self.config.ledger_timeout_seconds))

    @timed("revalue_all")
    def revalue_all(
        self,
        entity_ids: Optional[Iterable[str]] = None,
        as_of: Optional[datetime] = None,
        regime: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """
        Recompute and publish every entity's price at one pinned as_of.

        Entities are valued in parallel with no shared accumulator. A snapshot
        is published only after its composition succeeds; one entity failing
        does not affect the others. Once cancel_event is set, nothing further
        is published and unfinished entities are reported as cancelled.
        """
        as_of = self.pin(as_of)
        resolved = self.registry.get(regime)
        ids = self._entity_ids(entity_ids)
        result = BatchResult(as_of=as_of, regime=resolved.name)
        logger.info("[Revalue] start entities={} regime={} as_of={}", len(ids), resolved.name, as_of.isoformat())

        def _one(entity_id: str) -> PriceSnapshot:
            view = self.read_view(entity_id, as_of, [resolved])
            return self.price_view(view, resolved)

        workers = max(1, min(self.config.batch_workers, len(ids) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="revalue") as pool:
            futures = {pool.submit(_one, entity_id): entity_id for entity_id in ids}
            for future in as_completed(futures):
                entity_id = futures[future]
                if cancel_event is not None and cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
                    result.cancelled.append(entity_id)
                    continue
                try:
                    snapshot = future.result()
                except ValuationError as exc:
                    result.failed[entity_id] = str(exc)
                    logger.warning("[Revalue] {} failed: {}", entity_id, exc)
                    continue
                except Exception as exc:
                    result.failed[entity_id] = f"{type(exc).__name__}: {exc}"
                    logger.exception("[Revalue] {} crashed", entity_id)
                    continue
                self.store.publish(snapshot)
                result.published.append(entity_id)

        result.published.sort()
        result.cancelled.sort()
        logger.info(
            "[Revalue] done published={} failed={} cancelled={}",
            len(result.published), len(result.failed), len(result.cancelled),
        )
        return result

    def leaderboard(
        self,
        entity_ids: Optional[Iterable[str]] = None,
        limit: int = 10,
        as_of: Optional[datetime] = None,
        regime: Optional[str] = None,
    ) -> List[PriceSnapshot]:
        """Top entities by price at one pinned as_of; entities that fail are left out."""
        as_of = self.pin(as_of)
        resolved = self.registry.get(regime)
        ids = self._entity_ids(entity_ids)

        def _one(entity_id: str) -> Optional[PriceSnapshot]:
            try:
                return self.price_view(self.read_view(entity_id, as_of, [resolved]), resolved)
            except ValuationError as exc:
                logger.warning("[Leaderboard] skipping {}: {}", entity_id, exc)
                return None

        workers = max(1, min(self.config.batch_workers, len(ids) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="leaderboard") as pool:
            snapshots = [s for s in pool.map(_one, ids) if s is not None]
        snapshots.sort(key=lambda s: (-s.final_price, s.entity_id))
        return snapshots[:limit]
