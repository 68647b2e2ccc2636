"""Signal scoring layers and the composite scorer."""

from .base import LayerContext, SignalLayer
from .config import DEFAULT_SCORER_CONFIG, merge_config
from .engine import LAYER_REGISTRY, SignalScorer
from .layers import IVSkewLayer, MaxPainLayer, RSIExtremeLayer, SweepLayer

__all__ = [
    "DEFAULT_SCORER_CONFIG",
    "IVSkewLayer",
    "LAYER_REGISTRY",
    "LayerContext",
    "MaxPainLayer",
    "RSIExtremeLayer",
    "SignalLayer",
    "SignalScorer",
    "SweepLayer",
    "merge_config",
]
