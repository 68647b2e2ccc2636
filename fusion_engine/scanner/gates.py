"""Entry gates applied to every contract before it is scored.

Gates run cheapest first.  Each check returns the name of the gate that
rejected the contract, or ``None`` when it passes; the pipeline tallies those
names into the scan diagnostics.
"""

from __future__ import annotations

import math
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fusion_engine.models import GreeksResult, OptionContractSnapshot, ScanMode


class GateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_premium: float = 0.42
    max_premium: float = 1.85
    max_spread: Dict[str, float] = Field(default_factory=lambda: {"same_day": 0.05, "next_day": 0.03})
    min_volume: Dict[str, int] = Field(default_factory=lambda: {"same_day": 8000, "next_day": 8000})
    min_open_interest: Dict[str, int] = Field(default_factory=lambda: {"same_day": 45000, "next_day": 45000})
    iv_ceilings: Dict[str, float] = Field(default_factory=lambda: {"SPY": 0.28, "QQQ": 0.38, "IWM": 0.45})
    default_iv_ceiling: float = 0.60
    min_abs_delta: float = 0.12
    max_abs_delta: float = 0.27
    max_theta: float = -0.08
    min_gamma: float = 0.12
    max_iv_percentile: float = 18.0
    # Percent move of the underlying needed to reach the target premium.
    max_required_move_pct: float = 0.28

    @field_validator("iv_ceilings", mode="before")
    @classmethod
    def _upper_symbols(cls, value: Dict[str, float]) -> Dict[str, float]:
        return {str(symbol).upper(): float(ceiling) for symbol, ceiling in dict(value or {}).items()}

    def spread_ceiling(self, mode: ScanMode) -> float:
        return float(self.max_spread.get(mode.value, 0.05))

    def volume_floor(self, mode: ScanMode) -> int:
        return int(self.min_volume.get(mode.value, 0))

    def open_interest_floor(self, mode: ScanMode) -> int:
        return int(self.min_open_interest.get(mode.value, 0))

    def iv_ceiling(self, symbol: str) -> float:
        return self.iv_ceilings.get(symbol.upper(), self.default_iv_ceiling)


class EntryGates:
    def __init__(self, config: Optional[GateConfig] = None) -> None:
        self.config = config or GateConfig()

    def check_quote(self, contract: OptionContractSnapshot, mode: ScanMode) -> Optional[str]:
        config = self.config
        mark = contract.mid
        if not (config.min_premium <= mark <= config.max_premium):
            return "premium"
        if contract.spread > config.spread_ceiling(mode):
            return "spread"
        if contract.volume < config.volume_floor(mode):
            return "volume"
        if contract.open_interest < config.open_interest_floor(mode):
            return "open_interest"
        return None

    def check_volatility(self, symbol: str, iv: Optional[float]) -> Optional[str]:
        if iv is None or not math.isfinite(iv) or iv <= 0:
            return "iv_missing"
        if iv > self.config.iv_ceiling(symbol):
            return "iv_ceiling"
        return None

    def check_greeks(self, greeks: GreeksResult) -> Optional[str]:
        config = self.config
        if not (config.min_abs_delta <= abs(greeks.delta) <= config.max_abs_delta):
            return "delta"
        if not greeks.theta < config.max_theta:
            return "theta"
        if not greeks.gamma > config.min_gamma:
            return "gamma"
        return None

    def check_iv_percentile(self, percentile: float) -> Optional[str]:
        if percentile > self.config.max_iv_percentile:
            return "iv_percentile"
        return None

    def check_required_move(self, required_move_pct: float) -> Optional[str]:
        if abs(required_move_pct) > self.config.max_required_move_pct:
            return "required_move"
        return None

    def evaluate(
        self,
        contract: OptionContractSnapshot,
        mode: ScanMode,
        iv: Optional[float],
        greeks: GreeksResult,
        iv_percentile: float,
    ) -> Optional[str]:
        """Run every gate in order; handy when all inputs are already known."""

        return (
            self.check_quote(contract, mode)
            or self.check_volatility(contract.underlying, iv)
            or self.check_greeks(greeks)
            or self.check_iv_percentile(iv_percentile)
        )


__all__ = ["EntryGates", "GateConfig"]
