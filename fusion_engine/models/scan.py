from __future__ import annotations

import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .quotes import GreeksResult, OptionContractSnapshot


class ScanMode(str, Enum):
    SAME_DAY = "same_day"
    NEXT_DAY = "next_day"


class ScoreBreakdown(BaseModel):
    """Per-layer points awarded to a contract."""

    model_config = ConfigDict(frozen=True)

    max_pain: int = 0
    iv_skew: int = 0
    sweep: int = 0
    rsi_extreme: int = 0
    reasons: List[str] = Field(default_factory=list)

    @property
    def layers(self) -> Dict[str, int]:
        return {
            "max_pain": self.max_pain,
            "iv_skew": self.iv_skew,
            "sweep": self.sweep,
            "rsi_extreme": self.rsi_extreme,
        }

    @property
    def composite(self) -> int:
        return sum(self.layers.values())

    @property
    def active_layers(self) -> int:
        return sum(1 for value in self.layers.values() if value > 0)


class Candidate(BaseModel):
    """Gate-passed, scored contract with exit levels."""

    model_config = ConfigDict(frozen=True)

    contract: OptionContractSnapshot
    greeks: GreeksResult
    breakdown: ScoreBreakdown
    underlying_price: float
    mark: float
    target_premium: float
    stop_premium: float
    target_underlying: float
    stop_underlying: float
    required_move_pct: float
    implied_volatility: float
    iv_percentile: float

    @property
    def composite(self) -> int:
        return self.breakdown.composite

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.contract.symbol,
            "ticker": self.contract.underlying,
            "type": self.contract.option_type,
            "strike": self.contract.strike,
            "expiration": self.contract.expiration.isoformat(),
            "bid": self.contract.bid,
            "ask": self.contract.ask,
            "mark": self.mark,
            "volume": self.contract.volume,
            "openInterest": self.contract.open_interest,
            "stockPrice": self.underlying_price,
            "impliedVolatility": self.implied_volatility,
            "ivPercentile": self.iv_percentile,
            "greeks": self.greeks.model_dump(exclude_none=True),
            "score": self.breakdown.composite,
            "layers": self.breakdown.layers,
            "reasons": list(self.breakdown.reasons),
            "targetPremium": self.target_premium,
            "stopPremium": self.stop_premium,
            "targetUnderlying": self.target_underlying,
            "stopUnderlying": self.stop_underlying,
            "requiredMovePct": self.required_move_pct,
        }


class ScanDiagnostics(BaseModel):
    symbols_attempted: int = 0
    symbols_scanned: int = 0
    symbols_failed: int = 0
    contracts_analyzed: int = 0
    contracts_filtered: int = 0
    api_calls: int = 0
    elapsed_ms: float = 0.0
    timed_out: bool = False
    rejections: Dict[str, int] = Field(default_factory=dict)


class ScanResult(BaseModel):
    """Ranked candidates plus the diagnostics of one scan."""

    top_plays: List[Candidate] = Field(default_factory=list)
    mode: ScanMode
    market_open: bool = False
    expiry: Optional[date] = None
    diagnostics: ScanDiagnostics = Field(default_factory=ScanDiagnostics)
    scan_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        diagnostics = self.diagnostics
        return {
            "topPlays": [candidate.to_dict() for candidate in self.top_plays],
            "scanTime": round(diagnostics.elapsed_ms),
            "apiCalls": diagnostics.api_calls,
            "contractsAnalyzed": diagnostics.contracts_analyzed,
            "contractsFiltered": diagnostics.contracts_filtered,
            "timestamp": self.scan_time.isoformat(),
            "mode": self.mode.value,
            "marketOpen": self.market_open,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "diagnostics": diagnostics.model_dump(),
        }

    def to_json(self, *, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)


__all__ = [
    "Candidate",
    "ScanDiagnostics",
    "ScanMode",
    "ScanResult",
    "ScoreBreakdown",
]
