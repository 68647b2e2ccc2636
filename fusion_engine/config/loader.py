"""Environment aware configuration loader for the market-data engine."""

from __future__ import annotations

import copy
import os
from datetime import datetime, time
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fusion_engine.scanner.gates import GateConfig
from fusion_engine.scoring.config import DEFAULT_SCORER_CONFIG

DEFAULT_SETTINGS: Dict[str, Any] = {
    "universe": {
        "default": ["SPY", "QQQ", "IWM"],
    },
    "risk_free_rate": 0.045,
    "fetcher": {},
    "feeds": {},
    "pipeline": {},
    "gates": {},
    "scoring": copy.deepcopy(DEFAULT_SCORER_CONFIG),
    "volatility": {},
    "sweeps": {},
}

CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
ENVIRONMENT_VARIABLE = "APP_ENV"

POLYGON_KEY_VARIABLE = "POLYGON_API_KEY"
BROKER_USERNAME_VARIABLE = "TASTYTRADE_USERNAME"
BROKER_PASSWORD_VARIABLE = "TASTYTRADE_PASSWORD"
QUOTE_TOKEN_VARIABLE = "TASTYTRADE_QUOTE_TOKEN"


def _parse_clock(value: Any) -> time:
    if isinstance(value, time):
        return value
    return datetime.strptime(str(value).strip(), "%H:%M").time()


class Credentials(BaseModel):
    """Secrets read from the environment only, never from YAML."""

    model_config = ConfigDict(frozen=True)

    polygon_api_key: Optional[str] = Field(default=None, repr=False)
    broker_username: Optional[str] = None
    broker_password: Optional[str] = Field(default=None, repr=False)
    quote_token: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Credentials":
        source = os.environ if environ is None else environ

        def read(name: str) -> Optional[str]:
            value = (source.get(name) or "").strip()
            return value or None

        return cls(
            polygon_api_key=read(POLYGON_KEY_VARIABLE),
            broker_username=read(BROKER_USERNAME_VARIABLE),
            broker_password=read(BROKER_PASSWORD_VARIABLE),
            quote_token=read(QUOTE_TOKEN_VARIABLE),
        )

    @property
    def has_broker_login(self) -> bool:
        return bool(self.broker_username and self.broker_password)


class FetcherSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str = "https://api.polygon.io"
    max_concurrent: int = 5
    min_spacing_ms: int = 200
    reservoir: Optional[int] = 25
    refill_seconds: float = 60.0
    bulk_max_concurrent: int = 2
    bulk_min_spacing_ms: int = 100
    timeout_ms: int = 10_000
    max_retries: int = 3
    congestion_threshold: int = 10
    max_pages: int = 4


class FeedSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: List[str] = Field(default_factory=lambda: ["dxlink", "polygon"])
    dxlink_url: str = "wss://tasty-openapi-ws.dxfeed.com/realtime"
    broker_api_url: str = "https://api.tastyworks.com"
    polygon_url: str = "wss://socket.polygon.io/options"
    quote_freshness_seconds: float = 10.0
    option_freshness_seconds: float = 60.0
    stale_after_seconds: float = 30.0
    evict_interval_seconds: float = 60.0
    backoff_base_seconds: float = 5.0
    backoff_cap_seconds: float = 60.0

    @field_validator("enabled", mode="before")
    @classmethod
    def _lower_names(cls, value: Any) -> List[str]:
        return [str(name).strip().lower() for name in (value or [])]


class PipelineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_size: int = 50
    timeout_seconds: float = 30.0
    top_n: int = 3
    chain_limit: int = 250
    mode_cutoff: time = time(14, 0)
    same_day_exit: time = time(15, 50)
    next_day_exit: time = time(9, 32)
    target_multiplier: float = 1.78
    stop_multiplier: float = 0.78
    rsi_period: int = 14

    @field_validator("mode_cutoff", "same_day_exit", "next_day_exit", mode="before")
    @classmethod
    def _coerce_clock(cls, value: Any) -> time:
        return _parse_clock(value)


class ScoringSettings(BaseModel):
    """Scorer configuration wrapper for :class:`SignalScorer`."""

    model_config = ConfigDict(frozen=True)

    enabled: List[str] = Field(default_factory=lambda: list(DEFAULT_SCORER_CONFIG["enabled"]))
    points: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_SCORER_CONFIG["points"]))
    thresholds: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_SCORER_CONFIG["thresholds"]))
    min_composite: int = 85
    min_active_layers: int = 2
    detected_sweeps: bool = True

    @field_validator("points", mode="before")
    @classmethod
    def _coerce_points(cls, value: Mapping[str, Any]) -> Dict[str, int]:
        return {key: int(val) for key, val in dict(value or {}).items()}

    def to_scorer_config(self) -> Dict[str, Any]:
        return {
            "enabled": list(self.enabled),
            "points": dict(self.points),
            "thresholds": dict(self.thresholds),
            "min_composite": self.min_composite,
            "min_active_layers": self.min_active_layers,
            "detected_sweeps": self.detected_sweeps,
        }


class VolatilitySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    window: int = 30
    trading_days: int = 252
    default_hv: float = 0.20
    min_bars: int = 20
    secondary_provider: Optional[str] = "yfinance"
    breaker_failures: int = 3
    breaker_reset_seconds: float = 60.0


class SweepSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    min_premium: float = 2_000_000.0
    window_minutes: int = 30


class AppSettings(BaseModel):
    """Fully resolved application settings loaded from YAML and the environment."""

    model_config = ConfigDict(frozen=True)

    env: str
    universe: Dict[str, List[str]]
    risk_free_rate: float = 0.045
    fetcher: FetcherSettings = Field(default_factory=FetcherSettings)
    feeds: FeedSettings = Field(default_factory=FeedSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    gates: GateConfig = Field(default_factory=GateConfig)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    volatility: VolatilitySettings = Field(default_factory=VolatilitySettings)
    sweeps: SweepSettings = Field(default_factory=SweepSettings)
    credentials: Credentials = Field(default_factory=Credentials)

    @field_validator("env")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return value.lower()

    @field_validator("universe", mode="before")
    @classmethod
    def _coerce_universe(cls, value: Mapping[str, Any]) -> Dict[str, List[str]]:
        return {key: [str(symbol).upper() for symbol in items or []] for key, items in dict(value or {}).items()}

    def get_watchlist(self, name: str = "default") -> List[str]:
        return list(self.universe.get(name, []))

    def scoring_dict(self) -> Dict[str, Any]:
        return self.scoring.to_scorer_config()


def _deep_merge(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> MutableMapping[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, Mapping):
            existing = base.get(key)
            if isinstance(existing, MutableMapping):
                base[key] = _deep_merge(copy.deepcopy(existing), value)
            else:
                base[key] = copy.deepcopy(value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping at the root.")
    return data


def _build_settings(env: str) -> AppSettings:
    config_path = CONFIG_DIR / f"{env}.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file for environment '{env}' not found at {config_path}")

    merged = copy.deepcopy(DEFAULT_SETTINGS)
    merged = _deep_merge(merged, _load_yaml(config_path))
    # Secrets in YAML are ignored.
    merged.pop("credentials", None)
    merged["env"] = env
    merged["credentials"] = Credentials.from_env()
    return AppSettings.model_validate(merged)


@lru_cache(maxsize=None)
def _cached_settings(env: str) -> AppSettings:
    return _build_settings(env)


def get_settings(env: Optional[str] = None) -> AppSettings:
    """Load settings for the requested environment (default: APP_ENV or 'dev')."""

    resolved_env = (env or os.getenv(ENVIRONMENT_VARIABLE, "dev")).strip().lower()
    return _cached_settings(resolved_env)


def reset_settings_cache() -> None:
    """Clear the cached settings, primarily used during tests."""

    _cached_settings.cache_clear()


__all__ = [
    "AppSettings",
    "CONFIG_DIR",
    "Credentials",
    "ENVIRONMENT_VARIABLE",
    "FeedSettings",
    "FetcherSettings",
    "PipelineSettings",
    "ScoringSettings",
    "SweepSettings",
    "VolatilitySettings",
    "get_settings",
    "reset_settings_cache",
]
