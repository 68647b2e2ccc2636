"""Core abstractions and error taxonomy for market-data providers."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Optional, Sequence

from fusion_engine.models import HistoricalBar, OptionContractSnapshot

logger = logging.getLogger(__name__)


class AdapterError(Exception):
    """Base exception raised for adapter related failures."""


class TransportError(AdapterError):
    """Socket, DNS, TLS or timeout failure talking to a provider."""


class AuthError(AdapterError):
    """Credentials or session rejected by a provider."""


class RateLimitError(AdapterError):
    """Raised when a provider reports rate limiting errors."""


class DataNotAvailable(AdapterError):
    """Raised when requested data is not available from a provider."""


class DataValidationError(AdapterError):
    """A provider row is unusable (missing fields, non-finite or zero price)."""


class HistoricalDataProvider(ABC):
    """Capability interface for daily/intraday aggregate bars."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human readable provider name."""

    @abstractmethod
    async def get_bars(
        self,
        symbol: str,
        start: date,
        end: date,
        timespan: str = "day",
        multiplier: int = 1,
    ) -> List[HistoricalBar]:
        """Return bars ordered oldest first; raise :class:`AdapterError` on failure."""

    def is_congested(self) -> bool:
        return False


class ChainProvider(ABC):
    """Capability interface for option chain snapshots."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human readable provider name."""

    @abstractmethod
    async def get_chain(
        self,
        underlying: str,
        expiration: Optional[date] = None,
        limit: int = 250,
        expiration_gte: Optional[date] = None,
        contract_type: Optional[str] = None,
    ) -> Optional[List[OptionContractSnapshot]]:
        """Return the chain snapshot, or ``None`` when the provider has none."""


@dataclass
class CircuitBreaker:
    """Opens after consecutive failures, half-opens after ``reset_after`` seconds."""

    failure_threshold: int = 3
    reset_after: float = 60.0
    clock: Callable[[], float] = time.monotonic
    failures: int = 0
    opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        if self.opened_at is None:
            return False
        if self.clock() - self.opened_at >= self.reset_after:
            # Half-open: allow one trial call through.
            return False
        return True

    def record_success(self) -> None:
        self.failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.failure_threshold:
            self.opened_at = self.clock()


@dataclass
class ProviderChain(HistoricalDataProvider):
    """Ordered historical providers tried in turn behind per-provider breakers."""

    providers: Sequence[HistoricalDataProvider]
    failure_threshold: int = 3
    reset_after: float = 60.0
    clock: Callable[[], float] = time.monotonic
    breakers: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        for provider in self.providers:
            self.breakers.setdefault(
                provider.name,
                CircuitBreaker(self.failure_threshold, self.reset_after, clock=self.clock),
            )

    @property
    def name(self) -> str:
        return "+".join(provider.name for provider in self.providers)

    def breaker(self, provider: HistoricalDataProvider) -> CircuitBreaker:
        return self.breakers[provider.name]

    async def get_bars(
        self,
        symbol: str,
        start: date,
        end: date,
        timespan: str = "day",
        multiplier: int = 1,
    ) -> List[HistoricalBar]:
        for provider in self.providers:
            breaker = self.breaker(provider)
            if breaker.is_open:
                logger.debug("Skipping %s for %s: circuit open", provider.name, symbol)
                continue
            if provider.is_congested():
                logger.info("Skipping %s for %s: request queue congested", provider.name, symbol)
                continue
            try:
                bars = await provider.get_bars(symbol, start, end, timespan=timespan, multiplier=multiplier)
            except DataNotAvailable as exc:
                breaker.record_success()
                logger.debug("%s has no bars for %s: %s", provider.name, symbol, exc)
                continue
            except AdapterError as exc:
                breaker.record_failure()
                logger.warning("%s failed to return bars for %s: %s", provider.name, symbol, exc)
                continue
            breaker.record_success()
            if bars:
                return bars
        return []


__all__ = [
    "AdapterError",
    "AuthError",
    "ChainProvider",
    "CircuitBreaker",
    "DataNotAvailable",
    "DataValidationError",
    "HistoricalDataProvider",
    "ProviderChain",
    "RateLimitError",
    "TransportError",
]
