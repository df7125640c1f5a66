from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatstock_valuation.api.routes import router as api_router
from chatstock_valuation.config import EngineConfig
from chatstock_valuation.ledger import InMemoryHoldings, InMemoryLedger
from chatstock_valuation.services.valuation import ValuationEngine
from chatstock_valuation.utils.logger import configure_logging, logger


def build_engine(config: Optional[EngineConfig] = None) -> ValuationEngine:
    """Engine wired to the in-memory collaborators; real deployments pass their own."""
    config = config or EngineConfig.load()
    return ValuationEngine(InMemoryLedger(), InMemoryHoldings(), config=config)


def create_app(engine: Optional[ValuationEngine] = None) -> FastAPI:
    if engine is None:
        engine = build_engine()
        configure_logging(engine.config.log)

    app = FastAPI(title="Chat-Stock Valuation Engine")
    app.state.engine = engine

    # ── CORS (local dev dashboards) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:8000", "http://localhost:8000"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── API routes ──
    app.include_router(api_router, prefix="/api")

    logger.info(
        "[App] regimes={} active={}", engine.registry.names(), engine.registry.active,
    )
    return app


def run():
    import uvicorn

    uvicorn.run(create_app(), host="127.0.0.1", port=8000)
