from chatstock_valuation.services.comparator import compare_regimes, expiry_schedule, forecast_cap_lift
from chatstock_valuation.services.composer import compose_price
from chatstock_valuation.services.demand import demand_multiplier
from chatstock_valuation.services.tiers import tier_contribution, total_contribution
from chatstock_valuation.services.valuation import SnapshotStore, ValuationEngine
from chatstock_valuation.services.window import aggregate_daily, bucket_day

__all__ = [
    "aggregate_daily",
    "bucket_day",
    "compare_regimes",
    "compose_price",
    "demand_multiplier",
    "expiry_schedule",
    "forecast_cap_lift",
    "SnapshotStore",
    "tier_contribution",
    "total_contribution",
    "ValuationEngine",
]
