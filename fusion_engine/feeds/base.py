"""Connection lifecycle shared by every real-time quote feed.

A feed owns one WebSocket.  ``run`` loops through connect, authenticate,
subscribe and receive, and on any transport failure sleeps according to
:class:`ReconnectBackoff` before reconnecting.  Authentication failures stop
the loop and mark the feed unavailable.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import aiohttp

from fusion_engine.adapters.base import AuthError, TransportError
from fusion_engine.adapters.symbols import canonical_symbol, is_option_symbol
from fusion_engine.models import GreeksResult, QuoteSnapshot

from .cache import GreeksCache, QuoteCache
from .messages import (
    AggregateEvent,
    FeedEvent,
    GreeksEvent,
    MARKET_EVENT_TYPES,
    QuoteEvent,
    TradeEvent,
)

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
TradeHandler = Callable[[TradeEvent], None]


class FeedState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"
    RECEIVING = "receiving"
    RECONNECTING = "reconnecting"


class ReconnectBackoff:
    """Doubling reconnect delay, capped, reset after a successful login."""

    def __init__(self, base: float = 5.0, cap: float = 60.0) -> None:
        self.base = base
        self.cap = cap
        self.attempts = 0

    def next_delay(self) -> float:
        self.attempts += 1
        return min(self.base * (2 ** (self.attempts - 1)), self.cap)

    def reset(self) -> None:
        self.attempts = 0


@dataclass(frozen=True)
class FeedHealth:
    source: str
    state: FeedState
    available: bool
    healthy: bool
    last_message_age: Optional[float]
    subscriptions: int
    reconnect_attempts: int


class LiveQuoteFeed(ABC):
    """Base class for a provider's real-time quote connection."""

    source = "feed"

    def __init__(
        self,
        url: str,
        quote_cache: Optional[QuoteCache] = None,
        greeks_cache: Optional[GreeksCache] = None,
        connector: Optional[Connector] = None,
        backoff: Optional[ReconnectBackoff] = None,
        quote_freshness: float = 10.0,
        option_freshness: float = 60.0,
        stale_after: float = 30.0,
        evict_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.quotes = quote_cache or QuoteCache(self.source)
        self.greeks = greeks_cache or GreeksCache()
        self.backoff = backoff or ReconnectBackoff()
        self.quote_freshness = quote_freshness
        self.option_freshness = option_freshness
        self.stale_after = stale_after
        self.evict_interval = evict_interval
        self._connector = connector
        self._clock = clock
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._last_message_at: Optional[float] = None
        self._evicted_at = clock()
        self._subscriptions: Set[str] = set()
        self._pending: Dict[str, List[asyncio.Future]] = {}
        self._trade_handlers: Dict[int, TradeHandler] = {}
        self._handler_ids = itertools.count(1)
        self.state = FeedState.DISCONNECTED
        self.available = True

    # ------------------------------------------------------------------
    # Protocol hooks
    # ------------------------------------------------------------------
    @abstractmethod
    async def on_open(self) -> None:
        """Send the setup/auth frames for a fresh connection."""

    @abstractmethod
    def decode(self, raw: str) -> List[FeedEvent]:
        """Decode one text frame into events."""

    @abstractmethod
    async def handle_control(self, event: FeedEvent) -> None:
        """React to protocol frames (auth state, channels, keepalive)."""

    @abstractmethod
    async def send_subscribe(self, symbols: Iterable[str]) -> None:
        """Send an add-subscription frame for canonical symbols."""

    @abstractmethod
    async def send_unsubscribe(self, symbols: Iterable[str]) -> None:
        """Send a remove-subscription frame for canonical symbols."""

    async def resolve_url(self) -> str:
        return self.url

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self.state in (FeedState.SUBSCRIBED, FeedState.RECEIVING)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._closed = False
            self.available = True
            self._task = asyncio.create_task(self.run(), name=f"{self.source}-feed")
        return self._task

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_socket()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        for futures in self._pending.values():
            for future in futures:
                future.cancel()
        self._pending.clear()
        self.state = FeedState.DISCONNECTED

    async def _connect(self, url: str) -> Any:
        if self._connector is not None:
            return await self._connector(url)
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url, heartbeat=None)

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (aiohttp.ClientError, OSError) as exc:
                logger.debug("%s socket close failed: %s", self.source, exc)

    async def _messages(self) -> AsyncIterator[str]:
        async for message in self._ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                yield message.data
            elif message.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

    async def connect_once(self) -> None:
        """Run a single connection until it closes; raises on failure."""

        self.state = FeedState.CONNECTING
        url = await self.resolve_url()
        try:
            self._ws = await self._connect(url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{self.source} connect failed: {exc}") from exc
        logger.info("%s connected to %s", self.source, url)
        self.state = FeedState.AUTHENTICATING
        try:
            await self.on_open()
            async for raw in self._messages():
                self._last_message_at = self._clock()
                if self.state == FeedState.SUBSCRIBED:
                    self.state = FeedState.RECEIVING
                for event in self.decode(raw):
                    await self.dispatch(event)
                if self._last_message_at - self._evicted_at >= self.evict_interval:
                    await self.evict_stale()
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{self.source} receive failed: {exc}") from exc
        finally:
            await self._close_socket()
        raise TransportError(f"{self.source} connection closed")

    async def run(self) -> None:
        while not self._closed:
            try:
                await self.connect_once()
            except AuthError as exc:
                logger.error("%s authentication failed; feed unavailable: %s", self.source, exc)
                self.available = False
                self.state = FeedState.DISCONNECTED
                return
            except TransportError as exc:
                logger.warning("%s transport error: %s", self.source, exc)
            if self._closed:
                break
            self.state = FeedState.RECONNECTING
            delay = self.backoff.next_delay()
            logger.info("%s reconnecting in %.0fs (attempt %d)", self.source, delay, self.backoff.attempts)
            await self._sleep(delay)
        self.state = FeedState.DISCONNECTED

    async def mark_subscribed(self) -> None:
        """Called by subclasses once the provider accepts the login."""

        self.state = FeedState.SUBSCRIBED
        self.backoff.reset()
        if self._subscriptions:
            logger.info("%s restoring %d subscriptions", self.source, len(self._subscriptions))
            await self.send_subscribe(sorted(self._subscriptions))

    async def send_json(self, payload: Any) -> None:
        if self._ws is None:
            raise TransportError(f"{self.source} is not connected")
        try:
            await self._ws.send_str(json.dumps(payload))
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"{self.source} send failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    async def dispatch(self, event: FeedEvent) -> None:
        if not isinstance(event, MARKET_EVENT_TYPES):
            await self.handle_control(event)
            return
        if isinstance(event, GreeksEvent):
            await self.greeks.apply(event)
            return
        snapshot = await self.quotes.apply(event)
        if isinstance(event, TradeEvent) and is_option_symbol(event.symbol):
            for handler_id, handler in list(self._trade_handlers.items()):
                try:
                    handler(event)
                except Exception:
                    logger.exception("%s trade handler %d failed", self.source, handler_id)
        if snapshot is not None and isinstance(event, (QuoteEvent, TradeEvent, AggregateEvent)):
            self._resolve_pending(snapshot)

    def _resolve_pending(self, snapshot: QuoteSnapshot) -> None:
        for future in self._pending.pop(snapshot.symbol, []):
            if not future.done():
                future.set_result(snapshot)

    def add_trade_handler(self, handler: TradeHandler) -> int:
        handler_id = next(self._handler_ids)
        self._trade_handlers[handler_id] = handler
        return handler_id

    def remove_trade_handler(self, handler_id: int) -> None:
        self._trade_handlers.pop(handler_id, None)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscriptions)

    async def subscribe(self, symbols: Iterable[str]) -> None:
        added = [canonical_symbol(symbol) for symbol in symbols]
        added = [symbol for symbol in added if symbol not in self._subscriptions]
        if not added:
            return
        self._subscriptions.update(added)
        if self.connected:
            await self.send_subscribe(added)

    async def unsubscribe(self, symbols: Iterable[str]) -> None:
        removed = [canonical_symbol(symbol) for symbol in symbols]
        removed = [symbol for symbol in removed if symbol in self._subscriptions]
        if not removed:
            return
        self._subscriptions.difference_update(removed)
        if self.connected:
            await self.send_unsubscribe(removed)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def freshness_for(self, symbol: str) -> float:
        return self.option_freshness if is_option_symbol(symbol) else self.quote_freshness

    async def get_quote(self, symbol: str) -> Optional[QuoteSnapshot]:
        key = canonical_symbol(symbol)
        return await self.quotes.get(key, self.freshness_for(key))

    async def get_greeks(self, symbol: str) -> Optional[GreeksResult]:
        return await self.greeks.get(canonical_symbol(symbol), self.option_freshness)

    async def wait_for_quote(self, symbol: str, timeout: float = 5.0) -> Optional[QuoteSnapshot]:
        """Return a fresh quote, waiting up to ``timeout`` for the next tick."""

        key = canonical_symbol(symbol)
        cached = await self.quotes.get(key, self.freshness_for(key))
        if cached is not None:
            return cached
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.setdefault(key, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            waiters = self._pending.get(key)
            if waiters is not None:
                if future in waiters:
                    waiters.remove(future)
                if not waiters:
                    self._pending.pop(key, None)

    async def evict_stale(self) -> int:
        """Drop cached quotes and Greeks too old for any reader to accept."""

        self._evicted_at = self._clock()
        max_age = max(self.quote_freshness, self.option_freshness)
        dropped = await self.quotes.evict_stale(max_age) + await self.greeks.evict_stale(self.option_freshness)
        if dropped:
            logger.debug("%s evicted %d stale cache entries", self.source, dropped)
        return dropped

    @property
    def pending_requests(self) -> int:
        return sum(len(waiters) for waiters in self._pending.values())

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def last_message_age(self) -> Optional[float]:
        if self._last_message_at is None:
            return None
        return self._clock() - self._last_message_at

    def is_healthy(self) -> bool:
        age = self.last_message_age()
        return self.connected and age is not None and age <= self.stale_after

    def health(self) -> FeedHealth:
        return FeedHealth(
            source=self.source,
            state=self.state,
            available=self.available,
            healthy=self.is_healthy(),
            last_message_age=self.last_message_age(),
            subscriptions=len(self._subscriptions),
            reconnect_attempts=self.backoff.attempts,
        )


__all__ = [
    "Connector",
    "FeedHealth",
    "FeedState",
    "LiveQuoteFeed",
    "ReconnectBackoff",
    "TradeHandler",
]
