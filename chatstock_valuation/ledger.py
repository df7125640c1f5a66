"""
Read interfaces for the two external collaborators (activity ledger, holdings)
plus in-memory implementations used by the HTTP demo and the tests.

The engine never writes events. Every read goes through `bounded_read`, which
turns a hung collaborator into a LedgerTimeout and any other collaborator
failure into LedgerUnavailable.
"""

import bisect
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from chatstock_valuation.errors import InvalidInput, LedgerTimeout, LedgerUnavailable, ValuationError
from chatstock_valuation.schemas import ActivityEvent, as_utc
from chatstock_valuation.utils.logger import logger

T = TypeVar("T")

# Shared pool for collaborator reads; a timed-out read keeps its worker until it returns.
_READ_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="ledger-read")


class ActivityLedger(Protocol):
    def list_events(
        self, entity_id: str, since: datetime, kinds: Optional[Iterable[str]] = None
    ) -> Iterable[ActivityEvent]:
        """Events for entity_id with timestamp > since, ordered by timestamp."""
        ...


class SupportsLastEvent(Protocol):
    """Optional ledger capability used by inactivity decay."""

    def last_event_at(
        self, entity_id: str, until: datetime, kinds: Optional[Iterable[str]] = None
    ) -> Optional[datetime]:
        ...


class HoldingsReader(Protocol):
    def total_shares(self, entity_id: str) -> int:
        ...


def bounded_read(label: str, fn: Callable[..., T], *args, timeout: Optional[float] = None) -> T:
    """Run one collaborator read with a timeout. No retry; the caller owns retry policy."""
    future = _READ_POOL.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        logger.warning("[Ledger] {} timed out after {}s", label, timeout)
        raise LedgerTimeout(f"{label} timed out after {timeout}s") from exc
    except ValuationError:
        raise
    except Exception as exc:
        logger.warning("[Ledger] {} failed: {}", label, exc)
        raise LedgerUnavailable(f"{label} failed: {exc}") from exc


class InMemoryLedger:
    """Append-only, per-entity event lists kept sorted by timestamp."""

    def __init__(self, events: Iterable[ActivityEvent] = ()):
        self._lock = threading.Lock()
        self._events: Dict[str, List[ActivityEvent]] = {}
        self._keys: Dict[str, List[datetime]] = {}
        for event in events:
            self.append(event)

    def append(self, event: ActivityEvent) -> None:
        with self._lock:
            rows = self._events.setdefault(event.entity_id, [])
            keys = self._keys.setdefault(event.entity_id, [])
            # stable for equal timestamps: new event goes after existing ones
            idx = bisect.bisect_right(keys, event.timestamp)
            keys.insert(idx, event.timestamp)
            rows.insert(idx, event)

    def record(self, entity_id: str, timestamp: datetime, kind: str = "message") -> ActivityEvent:
        event = ActivityEvent(entity_id=entity_id, timestamp=timestamp, kind=kind)
        self.append(event)
        return event

    def list_events(
        self, entity_id: str, since: datetime, kinds: Optional[Iterable[str]] = None
    ) -> List[ActivityEvent]:
        since = as_utc(since)
        wanted = set(kinds) if kinds is not None else None
        with self._lock:
            keys = self._keys.get(entity_id, [])
            start = bisect.bisect_right(keys, since)
            rows = list(self._events.get(entity_id, [])[start:])
        if wanted is None:
            return rows
        return [e for e in rows if e.kind in wanted]

    def last_event_at(
        self, entity_id: str, until: datetime, kinds: Optional[Iterable[str]] = None
    ) -> Optional[datetime]:
        until = as_utc(until)
        wanted = set(kinds) if kinds is not None else None
        with self._lock:
            keys = self._keys.get(entity_id, [])
            rows = self._events.get(entity_id, [])
            end = bisect.bisect_right(keys, until)
            for event in reversed(rows[:end]):
                if wanted is None or event.kind in wanted:
                    return event.timestamp
        return None

    def entity_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._events)


class InMemoryHoldings:
    def __init__(self, shares: Optional[Dict[str, int]] = None):
        self._lock = threading.Lock()
        self._shares: Dict[str, int] = {}
        for entity_id, count in (shares or {}).items():
            self.set_total(entity_id, count)

    def set_total(self, entity_id: str, shares: int) -> None:
        if shares < 0:
            raise InvalidInput("total shares must be >= 0")
        with self._lock:
            self._shares[entity_id] = int(shares)

    def total_shares(self, entity_id: str) -> int:
        with self._lock:
            return self._shares.get(entity_id, 0)
