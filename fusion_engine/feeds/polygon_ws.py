"""``{action, params}`` socket protocol with ``ev``-tagged JSON event arrays."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from fusion_engine.adapters.base import AuthError
from fusion_engine.adapters.symbols import canonical_symbol, to_polygon_symbol

from .base import LiveQuoteFeed
from .messages import AggregateEvent, FeedEvent, QuoteEvent, StatusEvent, TradeEvent, epoch_millis, finite_number

logger = logging.getLogger(__name__)

OPTIONS_SOCKET_URL = "wss://socket.polygon.io/options"
STOCKS_SOCKET_URL = "wss://socket.polygon.io/stocks"


def _event(item: Mapping[str, Any]) -> Optional[FeedEvent]:
    kind = item.get("ev")
    if kind == "status":
        return StatusEvent(status=str(item.get("status", "")), message=str(item.get("message", "")))
    symbol = item.get("sym")
    if not symbol:
        return None
    symbol = canonical_symbol(str(symbol))
    try:
        if kind == "T":
            price = float(item["p"])
            if price <= 0:
                return None
            return TradeEvent(
                symbol=symbol,
                timestamp=epoch_millis(item.get("t")),
                price=price,
                size=float(item.get("s") or 0),
                conditions=tuple(int(code) for code in item.get("c") or ()),
            )
        if kind == "Q":
            return QuoteEvent(
                symbol=symbol,
                timestamp=epoch_millis(item.get("t")),
                bid=finite_number(item.get("bp")),
                ask=finite_number(item.get("ap")),
                bid_size=finite_number(item.get("bs")),
                ask_size=finite_number(item.get("as")),
            )
        if kind in ("A", "AM"):
            return AggregateEvent(
                symbol=symbol,
                timestamp=epoch_millis(item.get("e") or item.get("s")),
                open=float(item["o"]),
                high=float(item["h"]),
                low=float(item["l"]),
                close=float(item["c"]),
                volume=float(item.get("v") or 0),
            )
    except (KeyError, TypeError, ValueError) as exc:
        logger.debug("Dropping malformed %s event for %s: %s", kind, symbol, exc)
    return None


def decode_messages(raw: str) -> List[FeedEvent]:
    """Decode one text frame, which may hold several newline-delimited arrays."""

    events: List[FeedEvent] = []
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON socket line: %.120s", line)
            continue
        items = payload if isinstance(payload, list) else [payload]
        for item in items:
            if isinstance(item, dict):
                event = _event(item)
                if event is not None:
                    events.append(event)
    return events


def topics_for(symbol: str) -> List[str]:
    """Channel topics for a canonical symbol or a raw ``EV.pattern`` topic."""

    if "." in symbol and symbol.split(".", 1)[0] in {"T", "Q", "A", "AM"}:
        return [symbol]
    wire = to_polygon_symbol(symbol)
    return [f"T.{wire}", f"Q.{wire}"]


class PolygonSocketFeed(LiveQuoteFeed):
    """Trades, quotes and aggregates for equities and options."""

    source = "polygon"

    def __init__(self, url: str = OPTIONS_SOCKET_URL, api_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(url, **kwargs)
        self.api_key = api_key

    async def on_open(self) -> None:
        if not self.api_key:
            raise AuthError("No socket API key configured")
        await self.send_json({"action": "auth", "params": self.api_key})

    def decode(self, raw: str) -> List[FeedEvent]:
        return decode_messages(raw)

    async def handle_control(self, event: FeedEvent) -> None:
        if not isinstance(event, StatusEvent):
            return
        if event.status == "auth_success":
            logger.info("Socket authenticated")
            await self.mark_subscribed()
        elif event.status == "auth_failed":
            raise AuthError(f"Socket authentication failed: {event.message}")
        elif event.status == "error":
            logger.warning("Socket error status: %s", event.message)
        else:
            logger.debug("Socket status %s: %s", event.status, event.message)

    async def subscribe_pattern(self, pattern: str) -> None:
        """Subscribe to a raw topic such as ``T.O:SPY*``."""

        await self.subscribe([pattern])

    def _params(self, symbols: Iterable[str]) -> str:
        topics: Dict[str, None] = {}
        for symbol in symbols:
            for topic in topics_for(symbol):
                topics[topic] = None
        return ",".join(topics)

    async def send_subscribe(self, symbols: Iterable[str]) -> None:
        await self.send_json({"action": "subscribe", "params": self._params(symbols)})

    async def send_unsubscribe(self, symbols: Iterable[str]) -> None:
        await self.send_json({"action": "unsubscribe", "params": self._params(symbols)})


__all__ = [
    "OPTIONS_SOCKET_URL",
    "PolygonSocketFeed",
    "STOCKS_SOCKET_URL",
    "decode_messages",
    "topics_for",
]
