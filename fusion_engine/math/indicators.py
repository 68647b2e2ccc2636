"""Chain-level and price-series indicators used by the signal layers."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence

import numpy as np

from fusion_engine.models import OptionContractSnapshot


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Simple-average RSI over the last ``period`` price changes.

    Returns the neutral 50 when fewer than ``period + 1`` prices are given.
    """

    if len(prices) < period + 1:
        return 50.0
    changes = np.diff(np.asarray(prices[-(period + 1):], dtype=float))
    avg_gain = float(changes[changes > 0].sum()) / period
    avg_loss = float(-changes[changes < 0].sum()) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def wilder_rsi(prices: Sequence[float], period: int = 14) -> float:
    """RSI with Wilder smoothing across the whole series."""

    if len(prices) < period + 1:
        return 50.0
    changes = np.diff(np.asarray(prices, dtype=float))
    gains = np.clip(changes, 0, None)
    losses = np.clip(-changes, 0, None)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    return float(100.0 - 100.0 / (1.0 + avg_gain / avg_loss))


def max_pain_strike(contracts: Iterable[OptionContractSnapshot]) -> Optional[float]:
    """Strike carrying the most combined call and put open interest."""

    totals: Dict[float, int] = defaultdict(int)
    for contract in contracts:
        totals[contract.strike] += contract.open_interest
    if not totals:
        return None
    # Ties resolve to the lower strike.
    return max(sorted(totals), key=lambda strike: totals[strike])


@dataclass(frozen=True)
class IVSkew:
    call_iv: float
    put_iv: float

    @property
    def ratio(self) -> float:
        return self.call_iv / self.put_iv if self.put_iv > 0 else 1.0


def iv_skew(contracts: Iterable[OptionContractSnapshot]) -> Optional[IVSkew]:
    """Mean call IV versus mean put IV for contracts quoting an IV."""

    call_ivs = []
    put_ivs = []
    for contract in contracts:
        if not contract.implied_volatility:
            continue
        bucket = call_ivs if contract.option_type == "call" else put_ivs
        bucket.append(contract.implied_volatility)
    if not call_ivs or not put_ivs:
        return None
    return IVSkew(call_iv=float(np.mean(call_ivs)), put_iv=float(np.mean(put_ivs)))


__all__ = ["IVSkew", "iv_skew", "max_pain_strike", "rsi", "wilder_rsi"]
