"""The four all-or-nothing signal layers."""

from __future__ import annotations

from typing import List, Tuple

from .base import LayerContext


class MaxPainLayer:
    """Spot pinned near the strike carrying the most open interest."""

    key = "max_pain"
    default_points = 30

    def score(self, context: LayerContext) -> Tuple[int, List[str]]:
        if context.max_pain is None or context.underlying_price <= 0:
            return 0, []
        proximity = abs(context.underlying_price - context.max_pain) / context.underlying_price
        if proximity < context.threshold("max_pain_proximity", 0.007):
            points = context.get_points(self.key, self.default_points)
            return points, [f"Gamma trap: spot {proximity:.2%} from max pain {context.max_pain:g}"]
        return 0, []


class IVSkewLayer:
    key = "iv_skew"
    default_points = 25

    def score(self, context: LayerContext) -> Tuple[int, List[str]]:
        skew = context.skew
        if skew is None:
            return 0, []
        if skew.call_iv < skew.put_iv * context.threshold("iv_skew_ratio", 0.92):
            points = context.get_points(self.key, self.default_points)
            return points, [f"IV skew inversion: calls {skew.call_iv:.1%} vs puts {skew.put_iv:.1%}"]
        return 0, []


class SweepLayer:
    """Volume running well ahead of open interest, or a detected sweep."""

    key = "sweep"
    default_points = 30

    def score(self, context: LayerContext) -> Tuple[int, List[str]]:
        contract = context.contract
        points = context.get_points(self.key, self.default_points)
        if context.config.get("detected_sweeps", True) and contract.symbol in context.swept_symbols:
            return points, [f"Block sweep detected on {contract.symbol}"]
        ratio = context.threshold("sweep_volume_oi_ratio", 0.5)
        if contract.volume > contract.open_interest * ratio:
            return points, [f"Volume vacuum: {contract.volume:,} traded vs {contract.open_interest:,} open"]
        return 0, []


class RSIExtremeLayer:
    key = "rsi_extreme"
    default_points = 15

    def score(self, context: LayerContext) -> Tuple[int, List[str]]:
        if context.rsi is None:
            return 0, []
        if context.days_to_expiration > context.threshold("rsi_max_dte", 3):
            return 0, []
        if context.rsi < context.threshold("rsi_oversold", 30.0):
            label = "oversold"
        elif context.rsi > context.threshold("rsi_overbought", 70.0):
            label = "overbought"
        else:
            return 0, []
        points = context.get_points(self.key, self.default_points)
        return points, [f"RSI {context.rsi:.0f} {label} with {context.days_to_expiration}d to expiry"]


__all__ = ["IVSkewLayer", "MaxPainLayer", "RSIExtremeLayer", "SweepLayer"]
