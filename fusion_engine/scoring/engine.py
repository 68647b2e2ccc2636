from __future__ import annotations

from typing import Dict, List, Type

from fusion_engine.models import ScoreBreakdown

from .base import LayerContext
from .config import merge_config
from .layers import IVSkewLayer, MaxPainLayer, RSIExtremeLayer, SweepLayer

LAYER_REGISTRY = {
    MaxPainLayer.key: MaxPainLayer,
    IVSkewLayer.key: IVSkewLayer,
    SweepLayer.key: SweepLayer,
    RSIExtremeLayer.key: RSIExtremeLayer,
}


class SignalScorer:
    """Sums the enabled layers into a composite and judges eligibility."""

    def __init__(self, config: Dict[str, object] | None = None):
        self.config = merge_config(config)
        enabled = self.config.get("enabled", list(LAYER_REGISTRY))
        self._layers = [self._instantiate(key) for key in enabled if key in LAYER_REGISTRY]

    def _instantiate(self, key: str):
        layer_cls: Type = LAYER_REGISTRY[key]
        return layer_cls()

    @property
    def min_composite(self) -> int:
        return int(self.config.get("min_composite", 85))

    @property
    def min_active_layers(self) -> int:
        return int(self.config.get("min_active_layers", 2))

    @property
    def enabled_layers(self) -> List[str]:
        return [layer.key for layer in self._layers]

    def score(self, context: LayerContext) -> ScoreBreakdown:
        points: Dict[str, int] = {}
        reasons: List[str] = []
        for layer in self._layers:
            awarded, layer_reasons = layer.score(context)
            points[layer.key] = max(0, int(awarded))
            if awarded > 0:
                reasons.extend(layer_reasons)
        return ScoreBreakdown(reasons=reasons, **points)

    def is_eligible(self, breakdown: ScoreBreakdown) -> bool:
        return breakdown.composite >= self.min_composite and breakdown.active_layers >= self.min_active_layers


__all__ = ["LAYER_REGISTRY", "SignalScorer"]
