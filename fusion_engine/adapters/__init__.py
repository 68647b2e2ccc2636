"""Provider adapters for REST market data."""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict, Type

from .base import (
    AdapterError,
    AuthError,
    ChainProvider,
    CircuitBreaker,
    DataNotAvailable,
    DataValidationError,
    HistoricalDataProvider,
    ProviderChain,
    RateLimitError,
    TransportError,
)
from .fetcher import Priority, RateLimitedFetcher, RateLimiter

_ADAPTER_REGISTRY: Dict[str, str] = {
    "polygon": "fusion_engine.adapters.polygon:PolygonRestAdapter",
    "yfinance": "fusion_engine.adapters.yfinance:YFinanceHistoryAdapter",
}


def create_adapter(provider: str, **kwargs: Any) -> HistoricalDataProvider:
    """Instantiate a provider adapter by name.

    Args:
        provider: The lowercase name of the provider to load.
        **kwargs: Constructor arguments (``fetcher`` for REST providers).

    Raises:
        KeyError: If the provider name is unknown.
    """

    normalized = provider.lower()
    try:
        dotted_path = _ADAPTER_REGISTRY[normalized]
    except KeyError as exc:
        raise KeyError(f"Unknown market data provider: {provider}") from exc

    module_name, class_name = dotted_path.split(":", 1)
    module = import_module(module_name)
    adapter_cls: Type[HistoricalDataProvider] = getattr(module, class_name)
    return adapter_cls(**kwargs)


__all__ = [
    "AdapterError",
    "AuthError",
    "ChainProvider",
    "CircuitBreaker",
    "DataNotAvailable",
    "DataValidationError",
    "HistoricalDataProvider",
    "Priority",
    "ProviderChain",
    "RateLimitError",
    "RateLimitedFetcher",
    "RateLimiter",
    "TransportError",
    "create_adapter",
]
