"""Freshness-stamped quote and Greeks caches shared between a feed and its readers."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fusion_engine.models import GreeksResult, QuoteSnapshot

from .messages import AggregateEvent, GreeksEvent, QuoteEvent, TradeEvent

Now = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuoteCache:
    """Latest quote per canonical symbol, last-write-wins by event timestamp.

    Stored snapshots are immutable, so readers can use them without holding
    the lock.
    """

    def __init__(self, source: str, now_provider: Now = utc_now) -> None:
        self.source = source
        self._now = now_provider
        self._quotes: Dict[str, QuoteSnapshot] = {}
        self._lock = asyncio.Lock()

    async def apply(self, event: QuoteEvent | TradeEvent | AggregateEvent) -> Optional[QuoteSnapshot]:
        """Merge an event into the cached snapshot; returns the stored snapshot.

        Events older than the cached snapshot are dropped and ``None`` is
        returned.
        """

        async with self._lock:
            current = self._quotes.get(event.symbol)
            if current is not None and event.timestamp < current.timestamp:
                return None
            update: Dict[str, object] = {"timestamp": event.timestamp}
            if isinstance(event, QuoteEvent):
                if event.bid is not None:
                    update["bid"] = event.bid
                if event.ask is not None:
                    update["ask"] = event.ask
            elif isinstance(event, TradeEvent):
                update["last"] = event.price
                update["volume"] = (current.volume if current else 0) + int(event.size or 0)
            else:
                update["last"] = event.close
                update["volume"] = int(event.volume or 0)
            if current is None:
                snapshot = QuoteSnapshot(symbol=event.symbol, source=self.source, **update)
            else:
                snapshot = QuoteSnapshot(**{**current.model_dump(), **update})
            self._quotes[event.symbol] = snapshot
            return snapshot

    async def get(self, symbol: str, max_age_seconds: float) -> Optional[QuoteSnapshot]:
        async with self._lock:
            snapshot = self._quotes.get(symbol)
        if snapshot is None or not snapshot.is_fresh(max_age_seconds, self._now()):
            return None
        return snapshot

    async def evict_stale(self, max_age_seconds: float) -> int:
        now = self._now()
        async with self._lock:
            stale = [key for key, snap in self._quotes.items() if not snap.is_fresh(max_age_seconds, now)]
            for key in stale:
                del self._quotes[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._quotes)


class GreeksCache:
    """Latest streamed Greeks per canonical option symbol."""

    def __init__(self, now_provider: Now = utc_now) -> None:
        self._now = now_provider
        self._entries: Dict[str, tuple[datetime, GreeksResult]] = {}
        self._lock = asyncio.Lock()

    async def apply(self, event: GreeksEvent) -> Optional[GreeksResult]:
        async with self._lock:
            current = self._entries.get(event.symbol)
            if current is not None and event.timestamp < current[0]:
                return None
            greeks = GreeksResult(
                delta=event.delta,
                gamma=event.gamma,
                theta=event.theta,
                vega=event.vega,
                rho=event.rho,
                implied_volatility=event.volatility,
            )
            self._entries[event.symbol] = (event.timestamp, greeks)
            return greeks

    async def get(self, symbol: str, max_age_seconds: float) -> Optional[GreeksResult]:
        async with self._lock:
            entry = self._entries.get(symbol)
        if entry is None:
            return None
        stamped, greeks = entry
        if (self._now() - stamped).total_seconds() > max_age_seconds:
            return None
        return greeks

    async def evict_stale(self, max_age_seconds: float) -> int:
        now = self._now()
        async with self._lock:
            stale = [
                key for key, (stamped, _) in self._entries.items() if (now - stamped).total_seconds() > max_age_seconds
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["GreeksCache", "QuoteCache", "utc_now"]
