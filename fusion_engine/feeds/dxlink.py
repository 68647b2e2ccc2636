"""DXLink streaming protocol (SETUP/AUTH/CHANNEL_*/FEED_* JSON frames).

Market data arrives as ``FEED_DATA`` frames in COMPACT format: a flat array of
values per event type, one record every ``len(fields)`` entries in the field
order declared in ``FEED_SETUP``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import aiohttp

from fusion_engine.adapters.base import AuthError, TransportError
from fusion_engine.adapters.symbols import canonical_symbol, is_option_symbol, to_streamer_symbol

from .base import LiveQuoteFeed
from .messages import (
    AuthStateEvent,
    ChannelOpenedEvent,
    ErrorEvent,
    FeedEvent,
    GreeksEvent,
    KeepaliveEvent,
    QuoteEvent,
    TradeEvent,
    epoch_millis,
    finite_number,
)

logger = logging.getLogger(__name__)

CONTROL_CHANNEL = 0
FEED_CHANNEL = 1
PROTOCOL_VERSION = "0.1-py/1.0.0"
KEEPALIVE_TIMEOUT = 60
AGGREGATION_PERIOD = 10.0

QUOTE_FIELDS: Tuple[str, ...] = (
    "eventType",
    "eventSymbol",
    "eventTime",
    "sequence",
    "timeNanoPart",
    "bidTime",
    "bidExchangeCode",
    "bidPrice",
    "bidSize",
    "askTime",
    "askExchangeCode",
    "askPrice",
    "askSize",
)
TRADE_FIELDS: Tuple[str, ...] = (
    "eventType",
    "eventSymbol",
    "eventTime",
    "time",
    "timeNanoPart",
    "sequence",
    "exchangeCode",
    "price",
    "change",
    "size",
    "dayVolume",
    "dayTurnover",
    "tickDirection",
)
GREEKS_FIELDS: Tuple[str, ...] = (
    "eventType",
    "eventSymbol",
    "eventTime",
    "time",
    "price",
    "volatility",
    "delta",
    "gamma",
    "theta",
    "rho",
    "vega",
    "index",
)
EVENT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "Quote": QUOTE_FIELDS,
    "Trade": TRADE_FIELDS,
    "Greeks": GREEKS_FIELDS,
}

TokenProvider = Callable[[], Awaitable[Tuple[str, str]]]


def stride_records(values: Sequence[Any], fields: Sequence[str]) -> Iterator[Dict[str, Any]]:
    """Split a COMPACT value array into one mapping per record."""

    width = len(fields)
    for start in range(0, len(values) - width + 1, width):
        yield dict(zip(fields, values[start : start + width]))


def _record_to_event(event_type: str, record: Dict[str, Any]) -> Optional[FeedEvent]:
    raw_symbol = record.get("eventSymbol")
    if not raw_symbol:
        return None
    symbol = canonical_symbol(str(raw_symbol))
    if event_type == "Quote":
        bid, ask = finite_number(record.get("bidPrice")), finite_number(record.get("askPrice"))
        if bid is None and ask is None:
            return None
        return QuoteEvent(
            symbol=symbol,
            timestamp=epoch_millis(record.get("eventTime"), record.get("bidTime"), record.get("askTime")),
            bid=bid,
            ask=ask,
            bid_size=finite_number(record.get("bidSize")),
            ask_size=finite_number(record.get("askSize")),
        )
    if event_type == "Trade":
        price = finite_number(record.get("price"))
        if price is None or price <= 0:
            return None
        return TradeEvent(
            symbol=symbol,
            timestamp=epoch_millis(record.get("eventTime"), record.get("time")),
            price=price,
            size=finite_number(record.get("size")) or 0.0,
        )
    if event_type == "Greeks":
        greeks = [finite_number(record.get(name)) for name in ("delta", "gamma", "theta", "vega", "rho")]
        if any(value is None for value in greeks):
            return None
        delta, gamma, theta, vega, rho = greeks
        return GreeksEvent(
            symbol=symbol,
            timestamp=epoch_millis(record.get("eventTime"), record.get("time")),
            delta=delta,
            gamma=gamma,
            theta=theta,
            vega=vega,
            rho=rho,
            volatility=finite_number(record.get("volatility")),
            price=finite_number(record.get("price")),
        )
    return None


def decode_feed_data(data: Sequence[Any]) -> List[FeedEvent]:
    """Decode ``FEED_DATA.data``: ``[type, values, type, values, ...]``."""

    events: List[FeedEvent] = []
    for index in range(0, len(data) - 1, 2):
        event_type, values = data[index], data[index + 1]
        fields = EVENT_FIELDS.get(event_type) if isinstance(event_type, str) else None
        if fields is None or not isinstance(values, list):
            continue
        for record in stride_records(values, fields):
            event = _record_to_event(event_type, record)
            if event is not None:
                events.append(event)
    return events


def decode_frame(raw: str) -> List[FeedEvent]:
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Ignoring non-JSON DXLink frame: %.120s", raw)
        return []
    if not isinstance(frame, dict):
        return []
    frame_type = frame.get("type")
    if frame_type == "FEED_DATA":
        return decode_feed_data(frame.get("data") or [])
    if frame_type == "AUTH_STATE":
        return [AuthStateEvent(authorized=frame.get("state") == "AUTHORIZED", detail=str(frame.get("state", "")))]
    if frame_type in ("CHANNEL_OPENED", "KEEPALIVE"):
        default = -1 if frame_type == "CHANNEL_OPENED" else CONTROL_CHANNEL
        try:
            channel = int(frame.get("channel", default))
        except (TypeError, ValueError):
            logger.debug("Dropping %s frame with bad channel: %.120s", frame_type, raw)
            return []
        if frame_type == "CHANNEL_OPENED":
            return [ChannelOpenedEvent(channel=channel)]
        return [KeepaliveEvent(channel=channel)]
    if frame_type == "ERROR":
        return [ErrorEvent(error=str(frame.get("error", "UNKNOWN")), message=str(frame.get("message", "")))]
    return []


class QuoteTokenProvider:
    """Fetch a streaming token and DXLink URL from the brokerage REST API."""

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self._session = session

    async def __call__(self) -> Tuple[str, str]:
        if not self.username or not self.password:
            raise AuthError("Brokerage credentials are not configured")
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.post(
                f"{self.base_url}/sessions",
                json={"login": self.username, "password": self.password},
            ) as response:
                if response.status in (401, 403):
                    raise AuthError(f"Session login rejected (HTTP {response.status})")
                if response.status >= 400:
                    raise TransportError(f"Session login failed (HTTP {response.status})")
                session_token = (await response.json())["data"]["session-token"]
            async with session.get(
                f"{self.base_url}/api-quote-tokens",
                headers={"Authorization": session_token},
            ) as response:
                if response.status in (401, 403):
                    raise AuthError(f"Quote token request rejected (HTTP {response.status})")
                if response.status >= 400:
                    raise TransportError(f"Quote token request failed (HTTP {response.status})")
                data = (await response.json())["data"]
            return data["token"], data["dxlink-url"]
        except (aiohttp.ClientError, KeyError, TypeError) as exc:
            raise TransportError(f"Could not obtain quote token: {exc}") from exc
        finally:
            if owns_session:
                await session.close()


class DXLinkFeed(LiveQuoteFeed):
    """Quote, trade and Greeks feed over the DXLink protocol."""

    source = "dxlink"

    def __init__(
        self,
        url: str = "",
        token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(url, **kwargs)
        self._token = token
        self._token_provider = token_provider
        self._unauthorized_seen = 0

    async def resolve_url(self) -> str:
        if self._token_provider is not None:
            self._token, url = await self._token_provider()
            if url:
                self.url = url
        if not self._token:
            raise AuthError("No DXLink token available")
        return self.url

    async def on_open(self) -> None:
        self._unauthorized_seen = 0
        await self.send_json(
            {
                "type": "SETUP",
                "channel": CONTROL_CHANNEL,
                "keepaliveTimeout": KEEPALIVE_TIMEOUT,
                "acceptKeepaliveTimeout": KEEPALIVE_TIMEOUT,
                "version": PROTOCOL_VERSION,
            }
        )
        await self.send_json({"type": "AUTH", "channel": CONTROL_CHANNEL, "token": self._token})

    def decode(self, raw: str) -> List[FeedEvent]:
        return decode_frame(raw)

    async def handle_control(self, event: FeedEvent) -> None:
        if isinstance(event, AuthStateEvent):
            if event.authorized:
                logger.info("DXLink authorized; requesting feed channel")
                await self.send_json(
                    {
                        "type": "CHANNEL_REQUEST",
                        "channel": FEED_CHANNEL,
                        "service": "FEED",
                        "parameters": {"contract": "AUTO"},
                    }
                )
                return
            # The server announces UNAUTHORIZED once before it processes AUTH.
            self._unauthorized_seen += 1
            if self._unauthorized_seen > 1:
                raise AuthError("DXLink rejected the streaming token")
        elif isinstance(event, ChannelOpenedEvent):
            if event.channel != FEED_CHANNEL:
                return
            await self.send_json(
                {
                    "type": "FEED_SETUP",
                    "channel": FEED_CHANNEL,
                    "acceptAggregationPeriod": AGGREGATION_PERIOD,
                    "acceptDataFormat": "COMPACT",
                    "acceptEventFields": {name: list(fields) for name, fields in EVENT_FIELDS.items()},
                }
            )
            await self.mark_subscribed()
        elif isinstance(event, KeepaliveEvent):
            await self.send_json({"type": "KEEPALIVE", "channel": CONTROL_CHANNEL})
        elif isinstance(event, ErrorEvent):
            if not self.connected:
                raise AuthError(f"DXLink error during setup: {event.error} {event.message}")
            logger.warning("DXLink error frame: %s %s", event.error, event.message)

    @staticmethod
    def _entries(symbols: Iterable[str]) -> List[Dict[str, str]]:
        entries: List[Dict[str, str]] = []
        for symbol in symbols:
            streamer = to_streamer_symbol(symbol)
            entries.append({"type": "Quote", "symbol": streamer})
            entries.append({"type": "Trade", "symbol": streamer})
            if is_option_symbol(symbol):
                entries.append({"type": "Greeks", "symbol": streamer})
        return entries

    async def send_subscribe(self, symbols: Iterable[str]) -> None:
        await self.send_json({"type": "FEED_SUBSCRIPTION", "channel": FEED_CHANNEL, "add": self._entries(symbols)})

    async def send_unsubscribe(self, symbols: Iterable[str]) -> None:
        await self.send_json({"type": "FEED_SUBSCRIPTION", "channel": FEED_CHANNEL, "remove": self._entries(symbols)})


__all__ = [
    "DXLinkFeed",
    "EVENT_FIELDS",
    "GREEKS_FIELDS",
    "QUOTE_FIELDS",
    "QuoteTokenProvider",
    "TRADE_FIELDS",
    "decode_feed_data",
    "decode_frame",
    "stride_records",
]
