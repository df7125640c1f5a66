"""
Engine configuration and the hot-swappable regime registry.

Configuration is a YAML file validated into pydantic models. The path comes
from the caller, then the CHATSTOCK_CONFIG environment variable (a project
.env file is honoured), and falls back to the built-in defaults below, which
reproduce the two historical formulas:

    legacy       0.2% per message in the window, hard cap 60% (300 messages)
    diminishing  per-day tiers 20@0.5%, 50@0.25%, 100@0.15%, then 0.05% uncapped
"""

import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from chatstock_valuation.errors import InvalidInput
from chatstock_valuation.schemas import DemandCurve, Regime, Tier, TierSchedule
from chatstock_valuation.utils.logger import logger

CONFIG_ENV_VAR = "CHATSTOCK_CONFIG"

LEGACY_SCHEDULE = TierSchedule(
    name="legacy",
    tiers=[Tier(threshold=None, rate=0.2)],
    cap_percent=60.0,
    basis="window",
)

DIMINISHING_SCHEDULE = TierSchedule(
    name="diminishing",
    tiers=[
        Tier(threshold=20, rate=0.5),
        Tier(threshold=50, rate=0.25),
        Tier(threshold=100, rate=0.15),
        Tier(threshold=None, rate=0.05),
    ],
    basis="daily",
)


def default_regimes() -> Dict[str, Regime]:
    demand = DemandCurve(rate_per_share=0.003, cap=0.30)
    return {
        "legacy": Regime(name="legacy", window_days=15, schedule=LEGACY_SCHEDULE, demand=demand),
        "diminishing": Regime(name="diminishing", window_days=15, schedule=DIMINISHING_SCHEDULE, demand=demand),
    }


class LogConfig(BaseModel):
    dir: Optional[str] = None
    rotation: str = "1 day"
    retention: str = "30 days"
    level: str = "INFO"


class EngineConfig(BaseModel):
    regimes: Dict[str, Regime] = Field(default_factory=default_regimes)
    active_regime: str = "diminishing"
    currency_precision: int = 2
    ledger_timeout_seconds: float = 5.0
    batch_workers: int = 8
    activity_kinds: List[str] = Field(default_factory=lambda: ["message"])
    log: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "EngineConfig":
        load_dotenv()
        if path is None:
            path = os.getenv(CONFIG_ENV_VAR)
        if path is None:
            return cls()

        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        # regime names come from the mapping keys
        regimes = raw.get("regimes")
        if isinstance(regimes, dict):
            for name, body in regimes.items():
                if isinstance(body, dict):
                    body.setdefault("name", name)

        try:
            config = cls(**raw)
        except ValidationError as exc:
            raise InvalidInput(f"Invalid engine config {Path(path).name}: {exc}") from exc
        config.check()
        return config

    def check(self) -> None:
        if self.active_regime not in self.regimes:
            raise InvalidInput(f"active_regime '{self.active_regime}' is not a configured regime")
        for name, regime in self.regimes.items():
            if regime.name != name:
                raise InvalidInput(f"regime key '{name}' does not match its name '{regime.name}'")


def parse_regime(data: dict, name: Optional[str] = None) -> Regime:
    """Validate a raw regime mapping, turning pydantic errors into InvalidInput."""
    body = dict(data)
    if name is not None:
        body["name"] = name
    try:
        return Regime(**body)
    except ValidationError as exc:
        raise InvalidInput(f"Invalid regime '{body.get('name')}': {exc}") from exc


class RegimeRegistry:
    """
    Named regimes that can be replaced while the engine is running.

    Readers always get a whole Regime (models are frozen), so a swap is never
    observed half-applied by a valuation already in flight.
    """

    def __init__(self, regimes: Dict[str, Regime], active: str):
        self._lock = threading.Lock()
        self._regimes = dict(regimes)
        if active not in self._regimes:
            raise InvalidInput(f"Unknown regime '{active}'")
        self._active = active

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RegimeRegistry":
        return cls(config.regimes, config.active_regime)

    @property
    def active(self) -> str:
        return self._active

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._regimes)

    def get(self, name: Optional[str] = None) -> Regime:
        with self._lock:
            key = self._active if name is None else name
            regime = self._regimes.get(key)
        if regime is None:
            raise InvalidInput(f"Unknown regime '{key}'")
        return regime

    def put(self, regime: Regime) -> None:
        with self._lock:
            replaced = regime.name in self._regimes
            self._regimes[regime.name] = regime
        logger.info("[Regimes] {} '{}'", "replaced" if replaced else "added", regime.name)

    def remove(self, name: str) -> None:
        with self._lock:
            if name == self._active:
                raise InvalidInput(f"Cannot remove the active regime '{name}'")
            if name not in self._regimes:
                raise InvalidInput(f"Unknown regime '{name}'")
            del self._regimes[name]
        logger.info("[Regimes] removed '{}'", name)

    def activate(self, name: str) -> None:
        with self._lock:
            if name not in self._regimes:
                raise InvalidInput(f"Unknown regime '{name}'")
            previous, self._active = self._active, name
        logger.info("[Regimes] active regime '{}' -> '{}'", previous, name)
