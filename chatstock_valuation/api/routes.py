import asyncio
from functools import partial

from fastapi import APIRouter, Depends, HTTPException, Request

from chatstock_valuation.config import parse_regime
from chatstock_valuation.errors import InvalidInput, LedgerUnavailable
from chatstock_valuation.schemas import (
    ActivityEvent,
    CompareRequest,
    HistoryRequest,
    HoldingsUpdate,
    RevalueRequest,
    ValuationRequest,
)
from chatstock_valuation.services.comparator import cap_lift_for_entity, compare_regimes, expiry_for_entity
from chatstock_valuation.services.valuation import ValuationEngine


router = APIRouter()


def get_engine(request: Request) -> ValuationEngine:
    return request.app.state.engine


async def _run(fn, *args, **kwargs):
    """Engine calls block on collaborator reads; keep them off the event loop."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
    except InvalidInput as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except LedgerUnavailable as exc:
        raise HTTPException(status_code=503, detail={"error": str(exc), "retryable": True})


@router.get("/health")
async def health():
    return {"status": "ok"}


# ── Regimes ──

@router.get("/regimes")
async def list_regimes(engine: ValuationEngine = Depends(get_engine)):
    registry = engine.registry
    return {
        "active": registry.active,
        "regimes": {name: registry.get(name).model_dump() for name in registry.names()},
    }


@router.put("/regimes/{name}")
async def put_regime(name: str, body: dict, engine: ValuationEngine = Depends(get_engine)):
    try:
        regime = parse_regime(body, name=name)
    except InvalidInput as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    engine.registry.put(regime)
    return regime.model_dump()


@router.post("/regimes/{name}/activate")
async def activate_regime(name: str, engine: ValuationEngine = Depends(get_engine)):
    try:
        engine.registry.activate(name)
    except InvalidInput as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"active": name}


# ── Valuation ──

@router.post("/valuation")
async def api_valuation(data: ValuationRequest, engine: ValuationEngine = Depends(get_engine)):
    return await _run(engine.value, data.entity_id, data.as_of, data.regime)


@router.post("/compare")
async def api_compare(data: CompareRequest, engine: ValuationEngine = Depends(get_engine)):
    return await _run(compare_regimes, engine, data.entity_id, data.regime_a, data.regime_b, data.as_of)


@router.post("/cap-lift")
async def api_cap_lift(data: ValuationRequest, engine: ValuationEngine = Depends(get_engine)):
    return await _run(cap_lift_for_entity, engine, data.entity_id, data.as_of, data.regime)


@router.post("/expiry")
async def api_expiry(data: ValuationRequest, engine: ValuationEngine = Depends(get_engine)):
    return await _run(expiry_for_entity, engine, data.entity_id, data.as_of, data.regime)


@router.post("/history")
async def api_history(data: HistoryRequest, engine: ValuationEngine = Depends(get_engine)):
    return await _run(engine.price_series, data.entity_id, data.start, data.end, data.points, data.regime)


@router.post("/revalue")
async def api_revalue(data: RevalueRequest, engine: ValuationEngine = Depends(get_engine)):
    return await _run(engine.revalue_all, data.entity_ids, data.as_of, data.regime)


@router.get("/snapshots/{entity_id}")
async def api_snapshot(entity_id: str, engine: ValuationEngine = Depends(get_engine)):
    snapshot = engine.store.current(entity_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No published price for '{entity_id}'")
    return snapshot


@router.get("/leaderboard")
async def api_leaderboard(limit: int = 10, regime: str = None, engine: ValuationEngine = Depends(get_engine)):
    if limit < 1 or limit > 100:
        raise HTTPException(status_code=422, detail="limit must be between 1 and 100")
    return await _run(engine.leaderboard, None, limit, None, regime)


# ── Demo collaborators (in-memory ledger / holdings only) ──

@router.post("/events")
async def api_append_event(event: ActivityEvent, engine: ValuationEngine = Depends(get_engine)):
    append = getattr(engine.ledger, "append", None)
    if append is None:
        raise HTTPException(status_code=405, detail="The configured ledger is read-only")
    append(event)
    return {"ok": True}


@router.put("/holdings/{entity_id}")
async def api_set_holdings(entity_id: str, data: HoldingsUpdate, engine: ValuationEngine = Depends(get_engine)):
    set_total = getattr(engine.holdings, "set_total", None)
    if set_total is None:
        raise HTTPException(status_code=405, detail="The configured holdings source is read-only")
    set_total(entity_id, data.total_shares)
    return {"entity_id": entity_id, "total_shares": data.total_shares}
