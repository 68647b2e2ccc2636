"""Provider-neutral events decoded at the WebSocket boundary.

Each feed turns raw frames into these variants; nothing provider-shaped is
passed further in.  Symbols on market events are already canonical.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Tuple, Union


def finite_number(value: Any) -> Optional[float]:
    """Float value, or ``None`` for missing, non-numeric or non-finite input."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def epoch_millis(*candidates: Any) -> datetime:
    """First non-zero epoch-millisecond candidate as UTC; falls back to now."""

    for value in candidates:
        millis = finite_number(value)
        if millis:
            return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuoteEvent:
    symbol: str
    timestamp: datetime
    bid: Optional[float] = None
    ask: Optional[float] = None
    bid_size: Optional[float] = None
    ask_size: Optional[float] = None


@dataclass(frozen=True)
class TradeEvent:
    symbol: str
    timestamp: datetime
    price: float
    size: float = 0.0
    conditions: Tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AggregateEvent:
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class GreeksEvent:
    symbol: str
    timestamp: datetime
    delta: float
    gamma: float
    theta: float
    vega: float
    rho: float
    volatility: Optional[float] = None
    price: Optional[float] = None


@dataclass(frozen=True)
class AuthStateEvent:
    authorized: bool
    detail: str = ""


@dataclass(frozen=True)
class ChannelOpenedEvent:
    channel: int


@dataclass(frozen=True)
class KeepaliveEvent:
    channel: int = 0


@dataclass(frozen=True)
class StatusEvent:
    status: str
    message: str = ""


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    message: str = ""


MarketEvent = Union[QuoteEvent, TradeEvent, AggregateEvent, GreeksEvent]
ControlEvent = Union[AuthStateEvent, ChannelOpenedEvent, KeepaliveEvent, StatusEvent, ErrorEvent]
FeedEvent = Union[MarketEvent, ControlEvent]

MARKET_EVENT_TYPES = (QuoteEvent, TradeEvent, AggregateEvent, GreeksEvent)


__all__ = [
    "AggregateEvent",
    "AuthStateEvent",
    "ChannelOpenedEvent",
    "ControlEvent",
    "ErrorEvent",
    "FeedEvent",
    "GreeksEvent",
    "KeepaliveEvent",
    "MARKET_EVENT_TYPES",
    "MarketEvent",
    "QuoteEvent",
    "StatusEvent",
    "TradeEvent",
    "epoch_millis",
    "finite_number",
]
