import math
from datetime import date, datetime, timezone
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def as_utc(v: datetime) -> datetime:
    # naive instants are read as UTC
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class ActivityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: str
    timestamp: datetime
    kind: str = "message"

    @field_validator("timestamp")
    @classmethod
    def utc_timestamp(cls, v):
        return as_utc(v)


class DailyBucket(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: date
    count: int

    @field_validator("count")
    @classmethod
    def non_negative_count(cls, v):
        if v < 0:
            raise ValueError("count must be >= 0")
        return v


# ── Tier schedules ──

class Tier(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Upper bound on cumulative units absorbed through this tier; None = unbounded
    threshold: Optional[int] = None
    # Percent contribution per unit inside this tier
    rate: float

    @field_validator("rate")
    @classmethod
    def rate_non_negative(cls, v):
        if v < 0 or not math.isfinite(v):
            raise ValueError("tier rate must be a finite number >= 0")
        return v

    @field_validator("threshold")
    @classmethod
    def threshold_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError("tier threshold must be > 0")
        return v


class TierSchedule(BaseModel):
    """
    Ordered rate bands that turn an event count into a percent contribution.

    basis="daily":  each calendar day is run through the tiers on its own and
                     the per-day results are summed (diminishing returns per day).
    basis="window": the whole window's count is run through the tiers once
                     (the flat legacy formula, whose cap binds on the window total).

    cap_percent bounds the summed contribution, not any single tier.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "custom"
    tiers: List[Tier]
    cap_percent: Optional[float] = None
    basis: Literal["daily", "window"] = "daily"

    @field_validator("cap_percent")
    @classmethod
    def cap_non_negative(cls, v):
        if v is not None and (v < 0 or not math.isfinite(v)):
            raise ValueError("cap_percent must be a finite number >= 0")
        return v

    @model_validator(mode="after")
    def ordered_tiers(self):
        if not self.tiers:
            raise ValueError(f"Schedule '{self.name}': at least one tier is required")
        *bounded, final = self.tiers
        if final.threshold is not None:
            raise ValueError(f"Schedule '{self.name}': the final tier must be unbounded (threshold=null)")
        previous = 0
        for i, tier in enumerate(bounded):
            if tier.threshold is None:
                raise ValueError(f"Schedule '{self.name}': only the final tier may be unbounded (tier {i + 1})")
            if tier.threshold <= previous:
                raise ValueError(
                    f"Schedule '{self.name}': thresholds must be strictly increasing "
                    f"(tier {i + 1} threshold {tier.threshold} <= {previous})"
                )
            previous = tier.threshold
        return self

    def bands(self) -> List[Tuple[int, Optional[int], float]]:
        """(lower, width, rate) per tier; width is None for the unbounded tier."""
        out = []
        lower = 0
        for tier in self.tiers:
            if tier.threshold is None:
                out.append((lower, None, tier.rate))
            else:
                out.append((lower, tier.threshold - lower, tier.rate))
                lower = tier.threshold
        return out

    def saturation_count(self) -> Optional[int]:
        """
        Event count after which more events stop adding contribution, or None
        when the schedule never saturates. Only window-basis schedules have a
        single count that saturates; daily schedules reset every day.
        """
        if self.basis != "window":
            return None

        candidates = []

        # trailing run of zero-rate tiers (including the unbounded one)
        bands = self.bands()
        if bands[-1][2] == 0:
            start = len(bands) - 1
            while start > 0 and bands[start - 1][2] == 0:
                start -= 1
            candidates.append(bands[start][0])

        if self.cap_percent is not None:
            cumulative = 0.0
            for lower, width, rate in bands:
                span = math.inf if width is None else width * rate
                if cumulative + span >= self.cap_percent:
                    if rate > 0:
                        needed = (self.cap_percent - cumulative) / rate
                        candidates.append(lower + math.ceil(round(needed, 9)))
                    else:
                        candidates.append(lower)
                    break
                cumulative += span

        return min(candidates) if candidates else None


class DemandCurve(BaseModel):
    model_config = ConfigDict(frozen=True)

    rate_per_share: float = 0.003
    cap: Optional[float] = 0.30  # bound on the multiplier increment; None = uncapped

    @field_validator("rate_per_share")
    @classmethod
    def rate_non_negative(cls, v):
        if v < 0 or not math.isfinite(v):
            raise ValueError("rate_per_share must be a finite number >= 0")
        return v

    @field_validator("cap")
    @classmethod
    def cap_non_negative(cls, v):
        if v is not None and (v < 0 or not math.isfinite(v)):
            raise ValueError("demand cap must be a finite number >= 0")
        return v


class StreakRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    lookback_days: int = 60
    # (consecutive days, bonus percent), ascending
    tiers: List[Tuple[int, float]] = Field(default_factory=lambda: [(7, 2.0), (14, 4.0), (30, 7.0)])
    # the top tier only pays for this many days after it is reached
    max_tier_duration_days: Optional[int] = 7
    allow_idle_today: bool = True

    @field_validator("lookback_days")
    @classmethod
    def lookback_positive(cls, v):
        if v < 1:
            raise ValueError("lookback_days must be >= 1")
        return v

    @field_validator("tiers")
    @classmethod
    def ascending_tiers(cls, v):
        previous = 0
        for days, bonus in v:
            if days <= previous:
                raise ValueError("streak tiers must have strictly increasing day counts")
            if bonus < 0:
                raise ValueError("streak bonus must be >= 0")
            previous = days
        return v


class InactivityRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    grace_days: int = 3
    decay_percent_per_day: float = 3.0
    max_decay_percent: float = 30.0

    @field_validator("grace_days")
    @classmethod
    def grace_non_negative(cls, v):
        if v < 0:
            raise ValueError("grace_days must be >= 0")
        return v

    @field_validator("decay_percent_per_day", "max_decay_percent")
    @classmethod
    def pct_range(cls, v, info):
        if v < 0 or v > 100:
            raise ValueError(f"{info.field_name} must be between 0 and 100")
        return v


class Regime(BaseModel):
    """One complete valuation formula version, referenced by name."""

    model_config = ConfigDict(frozen=True)

    name: str
    window_days: int = 15
    schedule: TierSchedule
    demand: DemandCurve = Field(default_factory=DemandCurve)
    base_price: float = 100.0
    streak: StreakRule = Field(default_factory=StreakRule)
    inactivity: InactivityRule = Field(default_factory=InactivityRule)

    @field_validator("window_days")
    @classmethod
    def window_positive(cls, v):
        if v < 1:
            raise ValueError("window_days must be >= 1")
        return v

    @field_validator("base_price")
    @classmethod
    def price_positive(cls, v):
        if v <= 0:
            raise ValueError("base_price must be > 0")
        return v


# ── Produced records ──

class PriceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: str
    as_of: datetime
    regime: str
    base_price: float
    activity_contribution_percent: float
    demand_multiplier: float
    streak_multiplier: float = 1.0
    inactivity_multiplier: float = 1.0
    final_price: float
    event_count: int = 0
    total_shares: int = 0


class RegimeComparisonReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: str
    as_of: datetime
    regime_a: PriceSnapshot
    regime_b: PriceSnapshot
    delta: float
    delta_percent: Optional[float] = None


class CapLiftForecast(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: str
    as_of: datetime
    current_count: int
    threshold: int
    capped: bool
    lift_date: Optional[date] = None
    days_until_lift: Optional[int] = None
    expiring_day: Optional[date] = None


class BucketExpiry(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: date
    count: int
    expires_on: date
    days_until_expiry: int
    contribution_percent: float


class BatchResult(BaseModel):
    as_of: datetime
    regime: str
    published: List[str] = Field(default_factory=list)
    failed: dict = Field(default_factory=dict)  # entity_id -> error message
    cancelled: List[str] = Field(default_factory=list)


# ── API request bodies ──

class ValuationRequest(BaseModel):
    entity_id: str
    as_of: Optional[datetime] = None
    regime: Optional[str] = None


class CompareRequest(BaseModel):
    entity_id: str
    as_of: Optional[datetime] = None
    regime_a: str
    regime_b: str


class HistoryRequest(BaseModel):
    entity_id: str
    start: datetime
    end: datetime
    points: int = 12
    regime: Optional[str] = None

    @field_validator("points")
    @classmethod
    def points_range(cls, v):
        if v < 2 or v > 500:
            raise ValueError("points must be between 2 and 500")
        return v

    @model_validator(mode="after")
    def ordered_range(self):
        if as_utc(self.end) <= as_utc(self.start):
            raise ValueError("end must be after start")
        return self


class RevalueRequest(BaseModel):
    entity_ids: Optional[List[str]] = None
    as_of: Optional[datetime] = None
    regime: Optional[str] = None


class HoldingsUpdate(BaseModel):
    total_shares: int

    @field_validator("total_shares")
    @classmethod
    def shares_non_negative(cls, v):
        if v < 0:
            raise ValueError("total_shares must be >= 0")
        return v


class StreakInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: int
    tier: int  # 0 = no bonus tier reached
    bonus_percent: float
    expired: bool = False
