"""Shared outbound HTTP client with rate limiting, retries and response caching."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import aiohttp

from .base import AdapterError, AuthError, DataNotAvailable, RateLimitError, TransportError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class Priority(str, Enum):
    STANDARD = "standard"
    BULK = "bulk"


class AuthScheme(str, Enum):
    BEARER = "bearer"
    QUERY = "query"


class RateLimiter:
    """Concurrency cap, minimum spacing between call starts and an optional reservoir.

    The reservoir holds ``reservoir`` calls and refills completely every
    ``refill_interval`` seconds.  A limiter without a reservoir only enforces
    concurrency and spacing.
    """

    def __init__(
        self,
        name: str,
        max_concurrent: int = 5,
        min_spacing: float = 0.2,
        reservoir: Optional[int] = 25,
        refill_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self.max_concurrent = max(1, max_concurrent)
        self.min_spacing = max(0.0, min_spacing)
        self.reservoir = reservoir
        self.refill_interval = refill_interval
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._lock = asyncio.Lock()
        self._tokens = reservoir if reservoir is not None else 0
        self._refilled_at = clock()
        self._last_start: Optional[float] = None
        self._waiting = 0
        self._active = 0
        self.calls_started = 0

    @property
    def queue_depth(self) -> int:
        return self._waiting

    @property
    def active(self) -> int:
        return self._active

    def _refill(self, now: float) -> None:
        if self.reservoir is not None and now - self._refilled_at >= self.refill_interval:
            self._tokens = self.reservoir
            self._refilled_at = now

    async def _take_token(self) -> None:
        if self.reservoir is None:
            return
        while True:
            now = self._clock()
            self._refill(now)
            if self._tokens > 0:
                self._tokens -= 1
                return
            wait = max(0.0, self.refill_interval - (now - self._refilled_at))
            logger.info("%s limiter reservoir empty; waiting %.1fs for refill", self.name, wait)
            await self._sleep(wait)

    async def _respect_spacing(self) -> None:
        if self._last_start is not None and self.min_spacing:
            wait = self._last_start + self.min_spacing - self._clock()
            if wait > 0:
                await self._sleep(wait)
        self._last_start = self._clock()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        self._waiting += 1
        try:
            await self._semaphore.acquire()
            try:
                async with self._lock:
                    await self._take_token()
                    await self._respect_spacing()
            except BaseException:
                self._semaphore.release()
                raise
        finally:
            self._waiting -= 1
        self._active += 1
        self.calls_started += 1
        try:
            yield
        finally:
            self._active -= 1
            self._semaphore.release()

    def status(self) -> Dict[str, Any]:
        self._refill(self._clock())
        return {
            "name": self.name,
            "calls_used": (self.reservoir - self._tokens) if self.reservoir is not None else self.calls_started,
            "calls_remaining": self._tokens if self.reservoir is not None else None,
            "queued": self._waiting,
            "active": self._active,
        }


class ResponseCache:
    """TTL cache for idempotent GET bodies keyed by URL and parameters.

    Writes sweep out expired entries at most once per ``sweep_interval``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._swept_at = clock()
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, body = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return body

    async def set(self, key: str, body: Any, ttl_seconds: float) -> None:
        async with self._lock:
            now = self._clock()
            if now - self._swept_at >= self.sweep_interval:
                self._drop_expired(now)
            self._entries[key] = (now + ttl_seconds, body)

    async def purge(self) -> int:
        async with self._lock:
            return self._drop_expired(self._clock())

    def _drop_expired(self, now: float) -> int:
        self._swept_at = now
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RateLimitedFetcher:
    """Outbound REST client shared by every provider adapter.

    ``fetch`` never raises for provider-side failures: 404, other 4xx, an
    exhausted retry budget or a rejected key all yield ``None``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        standard: Optional[RateLimiter] = None,
        bulk: Optional[RateLimiter] = None,
        timeout_ms: int = 10_000,
        max_retries: int = 3,
        base_backoff: float = 0.5,
        jitter: float = 0.2,
        congestion_threshold: int = 10,
        auth_param: str = "apiKey",
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self._session = session
        self._owns_session = session is None
        self.standard = standard or RateLimiter("standard", clock=clock, sleep=sleep)
        self.bulk = bulk or RateLimiter(
            "bulk", max_concurrent=2, min_spacing=0.1, reservoir=None, clock=clock, sleep=sleep
        )
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.jitter = jitter
        self.congestion_threshold = congestion_threshold
        self.auth_param = auth_param
        self.auth_scheme = AuthScheme.BEARER
        self.cache = ResponseCache(clock=clock)
        self._sleep = sleep
        self.calls_made = 0
        self.backoff_waits = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or getattr(self._session, "closed", False):
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def limiter(self, priority: Priority) -> RateLimiter:
        return self.bulk if priority == Priority.BULK else self.standard

    def is_congested(self, threshold: Optional[int] = None) -> bool:
        limit = self.congestion_threshold if threshold is None else threshold
        return self.standard.queue_depth > limit

    def status(self) -> Dict[str, Any]:
        return {
            "standard": self.standard.status(),
            "bulk": self.bulk.status(),
            "auth_scheme": self.auth_scheme.value,
            "calls_made": self.calls_made,
            "cached_responses": len(self.cache),
        }

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    @staticmethod
    def cache_key(url: str, params: Optional[Mapping[str, Any]] = None) -> str:
        if not params:
            return url
        query = "&".join(f"{key}={params[key]}" for key in sorted(params))
        return f"{url}?{query}"

    def _auth(self, params: Dict[str, Any]) -> Dict[str, str]:
        if not self.api_key:
            return {}
        if self.auth_scheme == AuthScheme.QUERY:
            params[self.auth_param] = self.api_key
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]],
        timeout_seconds: float,
    ) -> Tuple[int, Any]:
        query: Dict[str, Any] = dict(params or {})
        headers = self._auth(query)
        session = self._get_session()
        self.calls_made += 1
        async with session.request(
            method,
            url,
            params=query or None,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout_seconds),
        ) as response:
            if 200 <= response.status < 300:
                return response.status, await response.json(content_type=None)
            return response.status, None

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[int] = None,
        cache_ttl_ms: int = 0,
        max_retries: Optional[int] = None,
        priority: Priority = Priority.STANDARD,
    ) -> Any:
        """Return the decoded body, or ``None`` on any provider-side failure."""

        try:
            return await self.fetch_or_raise(
                url,
                method=method,
                params=params,
                timeout_ms=timeout_ms,
                cache_ttl_ms=cache_ttl_ms,
                max_retries=max_retries,
                priority=priority,
            )
        except DataNotAvailable:
            logger.debug("No data at %s", url)
        except AuthError as exc:
            logger.error("Credentials rejected: %s", exc)
        except AdapterError as exc:
            logger.warning("Request failed: %s", exc)
        return None

    async def fetch_or_raise(
        self,
        url: str,
        *,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[int] = None,
        cache_ttl_ms: int = 0,
        max_retries: Optional[int] = None,
        priority: Priority = Priority.STANDARD,
    ) -> Any:
        """Like :meth:`fetch` but raises the adapter error describing the failure."""

        method = method.upper()
        cacheable = method == "GET" and cache_ttl_ms > 0
        key = self.cache_key(url, params)
        if cacheable:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        limiter = self.limiter(priority)
        retries = self.max_retries if max_retries is None else max_retries
        timeout_seconds = (timeout_ms or self.timeout_ms) / 1000.0
        attempt = 0
        flipped = False

        while True:
            status: Optional[int] = None
            body: Any = None
            error: Optional[AdapterError] = None
            async with limiter.slot():
                try:
                    status, body = await self._send(method, url, params, timeout_seconds)
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                    error = TransportError(f"{type(exc).__name__} calling {url}: {exc}")

            if status == 401 and not flipped and self.api_key and self.auth_scheme == AuthScheme.BEARER:
                # Flipping schemes does not consume the retry budget.
                flipped = True
                self.auth_scheme = AuthScheme.QUERY
                logger.warning("Bearer auth rejected for %s; switching to query-parameter auth", url)
                continue

            if status is not None and 200 <= status < 300:
                if cacheable and body is not None:
                    await self.cache.set(key, body, cache_ttl_ms / 1000.0)
                return body

            if status == 404:
                raise DataNotAvailable(f"HTTP 404 for {url}")
            if status in (401, 403):
                raise AuthError(f"HTTP {status} for {url} using {self.auth_scheme.value} auth")

            retriable = error is not None or status == 429 or (status is not None and status >= 500)
            if not retriable:
                raise AdapterError(f"HTTP {status} for {url}")

            if attempt >= retries:
                if status == 429:
                    raise RateLimitError(f"Still rate limited on {url} after {retries} retries")
                raise error or TransportError(f"HTTP {status} for {url} after {retries} retries")

            attempt += 1
            delay = self.base_backoff * (2 ** (attempt - 1)) + random.uniform(0, self.jitter)
            self.backoff_waits += 1
            logger.warning(
                "Retry %d/%d for %s after %s; sleeping %.2fs",
                attempt,
                retries,
                url,
                status if status is not None else error,
                delay,
            )
            await self._sleep(delay)


__all__ = [
    "AuthScheme",
    "Priority",
    "RateLimitedFetcher",
    "RateLimiter",
    "ResponseCache",
]
