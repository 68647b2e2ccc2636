"""Large multi-exchange option sweeps detected from the live trade stream."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, FrozenSet, List, Optional

from fusion_engine.adapters.symbols import parse_option_symbol

from .messages import TradeEvent

logger = logging.getLogger(__name__)

SWEEP_CONDITIONS: FrozenSet[int] = frozenset({10, 11, 12, 13})
MIN_SWEEP_PREMIUM = 2_000_000.0
CONTRACT_MULTIPLIER = 100


@dataclass(frozen=True)
class Sweep:
    symbol: str
    underlying: str
    option_type: str
    strike: float
    price: float
    size: float
    premium: float
    timestamp: datetime


class SweepDetector:
    """Keeps a rolling window of option trades that qualify as sweeps.

    Register :meth:`on_trade` with a feed's trade handlers.  Trades received
    while ``health_check`` reports the feed unhealthy are ignored.
    """

    def __init__(
        self,
        min_premium: float = MIN_SWEEP_PREMIUM,
        conditions: FrozenSet[int] = SWEEP_CONDITIONS,
        window: timedelta = timedelta(minutes=30),
        health_check: Optional[Callable[[], bool]] = None,
        now_provider: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.min_premium = min_premium
        self.conditions = conditions
        self.window = window
        self._health_check = health_check
        self._now = now_provider
        self._sweeps: Deque[Sweep] = deque()

    def on_trade(self, event: TradeEvent) -> Optional[Sweep]:
        if self._health_check is not None and not self._health_check():
            return None
        parsed = parse_option_symbol(event.symbol)
        if parsed is None:
            return None
        premium = event.size * event.price * CONTRACT_MULTIPLIER
        if premium < self.min_premium or not self.conditions.intersection(event.conditions):
            return None
        sweep = Sweep(
            symbol=event.symbol,
            underlying=parsed.underlying,
            option_type=parsed.option_type,
            strike=parsed.strike,
            price=event.price,
            size=event.size,
            premium=premium,
            timestamp=event.timestamp,
        )
        self._sweeps.append(sweep)
        self._prune()
        logger.info(
            "Sweep %s %s %.1f x%.0f @ %.2f = $%.0f",
            sweep.underlying,
            sweep.option_type,
            sweep.strike,
            sweep.size,
            sweep.price,
            sweep.premium,
        )
        return sweep

    def _prune(self) -> None:
        cutoff = self._now() - self.window
        while self._sweeps and self._sweeps[0].timestamp < cutoff:
            self._sweeps.popleft()

    def recent_sweeps(self, underlying: Optional[str] = None) -> List[Sweep]:
        self._prune()
        if underlying is None:
            return list(self._sweeps)
        wanted = underlying.upper()
        return [sweep for sweep in self._sweeps if sweep.underlying == wanted]


__all__ = ["MIN_SWEEP_PREMIUM", "SWEEP_CONDITIONS", "Sweep", "SweepDetector"]
