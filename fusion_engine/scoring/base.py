from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Protocol, Tuple

from fusion_engine.math.indicators import IVSkew
from fusion_engine.models import GreeksResult, OptionContractSnapshot


@dataclass(frozen=True)
class LayerContext:
    """Everything a signal layer may look at for one contract."""

    contract: OptionContractSnapshot
    greeks: GreeksResult
    underlying_price: float
    days_to_expiration: int
    config: Dict[str, object]
    max_pain: Optional[float] = None
    skew: Optional[IVSkew] = None
    rsi: Optional[float] = None
    swept_symbols: FrozenSet[str] = field(default_factory=frozenset)

    def get_points(self, layer_key: str, default: int) -> int:
        return int(self.config.get("points", {}).get(layer_key, default))

    def threshold(self, name: str, default: float) -> float:
        return float(self.config.get("thresholds", {}).get(name, default))


class SignalLayer(Protocol):
    """Protocol each scoring layer must implement."""

    key: str
    default_points: int

    def score(self, context: LayerContext) -> Tuple[int, List[str]]:
        """Return points awarded and reasoning strings."""


__all__ = ["LayerContext", "SignalLayer"]
