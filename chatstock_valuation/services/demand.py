from chatstock_valuation.errors import InvalidInput
from chatstock_valuation.schemas import DemandCurve


def demand_multiplier(total_shares: int, curve: DemandCurve) -> float:
    """
    Price scaling from shares outstanding (summed across all holders).

    capped:   max(1, 1 + min(shares * rate, cap))
    uncapped: 1 + shares * rate
    """
    if total_shares < 0:
        raise InvalidInput(f"total shares must be >= 0, got {total_shares}")
    if total_shares == 0:
        return 1.0

    growth = total_shares * curve.rate_per_share
    if curve.cap is not None:
        growth = min(growth, curve.cap)
    return max(1.0, 1.0 + growth)
