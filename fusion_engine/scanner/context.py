"""Scan-scoped state.  A fresh :class:`ScanContext` is built for every scan."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, FrozenSet, List, Optional

from fusion_engine.math.indicators import IVSkew
from fusion_engine.models import Candidate, OptionContractSnapshot, ScanDiagnostics

from .market_clock import ModeSelection
from .volatility import CHEAP_FALLBACK_PERCENTILE, NEUTRAL_FALLBACK_PERCENTILE, VolatilityDistribution


@dataclass
class SymbolContext:
    """Chain-wide inputs shared by every contract of one underlying."""

    symbol: str
    spot: float
    expiry: date
    contracts: List[OptionContractSnapshot]
    days_to_expiration: int
    hv30: float
    max_pain: Optional[float] = None
    skew: Optional[IVSkew] = None
    rsi: Optional[float] = None
    distribution: Optional[VolatilityDistribution] = None
    swept_symbols: FrozenSet[str] = frozenset()

    def iv_percentile(self, iv: float) -> float:
        if self.distribution is not None and len(self.distribution):
            return self.distribution.percentile(iv)
        return CHEAP_FALLBACK_PERCENTILE if iv < self.hv30 else NEUTRAL_FALLBACK_PERCENTILE


@dataclass
class ScanContext:
    selection: ModeSelection
    calls_at_start: int = 0
    symbols: Dict[str, SymbolContext] = field(default_factory=dict)
    candidates: List[Candidate] = field(default_factory=list)
    rejections: Counter = field(default_factory=Counter)
    symbols_attempted: int = 0
    symbols_scanned: int = 0
    symbols_failed: int = 0
    provider_failures: int = 0
    contracts_analyzed: int = 0
    contracts_filtered: int = 0

    def reject(self, gate: str) -> None:
        self.rejections[gate] += 1

    def diagnostics(self, *, api_calls: int, elapsed_ms: float, timed_out: bool) -> ScanDiagnostics:
        return ScanDiagnostics(
            symbols_attempted=self.symbols_attempted,
            symbols_scanned=self.symbols_scanned,
            symbols_failed=self.symbols_failed,
            contracts_analyzed=self.contracts_analyzed,
            contracts_filtered=self.contracts_filtered,
            api_calls=api_calls,
            elapsed_ms=round(elapsed_ms, 1),
            timed_out=timed_out,
            rejections=dict(self.rejections),
        )


__all__ = ["ScanContext", "SymbolContext"]
