"""Polygon-style REST adapter: chain snapshots, aggregates and reference tickers.

Every request goes through the shared :class:`RateLimitedFetcher`.

Expected environment variables:
    * ``POLYGON_API_KEY`` - API key used to authenticate requests.
    * ``POLYGON_BASE_URL`` - Optional override for the REST endpoint.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from fusion_engine.models import GreeksResult, HistoricalBar, OptionContractSnapshot

from .base import ChainProvider, DataNotAvailable, DataValidationError, HistoricalDataProvider
from .fetcher import Priority, RateLimitedFetcher
from .symbols import canonical_symbol, format_option_symbol

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.polygon.io"
AGGREGATES_CACHE_TTL_MS = 300_000
CHAIN_CACHE_TTL_MS = 15_000


def decode_snapshot_row(row: Mapping[str, Any], underlying: str) -> OptionContractSnapshot:
    """Convert one chain-snapshot result into an :class:`OptionContractSnapshot`."""

    details = row.get("details") or {}
    if not details.get("strike_price") or not details.get("expiration_date") or not details.get("contract_type"):
        raise DataValidationError(f"Snapshot row for {underlying} is missing contract details")

    quote = row.get("last_quote") or {}
    day = row.get("day") or {}
    trade = row.get("last_trade") or {}
    raw_greeks = row.get("greeks") or {}
    greeks: Optional[GreeksResult] = None
    if raw_greeks.get("delta") is not None:
        try:
            greeks = GreeksResult(
                delta=raw_greeks.get("delta"),
                gamma=raw_greeks.get("gamma"),
                theta=raw_greeks.get("theta"),
                vega=raw_greeks.get("vega"),
                rho=raw_greeks.get("rho"),
            )
        except ValidationError:
            greeks = None

    try:
        ticker = details.get("ticker")
        if ticker:
            symbol = canonical_symbol(ticker)
        else:
            symbol = format_option_symbol(
                underlying,
                datetime.strptime(str(details["expiration_date"])[:10], "%Y-%m-%d").date(),
                str(details["contract_type"]),
                float(details["strike_price"]),
            )
        return OptionContractSnapshot(
            symbol=symbol,
            underlying=underlying.upper(),
            strike=details["strike_price"],
            expiration=details["expiration_date"],
            type=details["contract_type"],
            bid=quote.get("bid") or 0.0,
            ask=quote.get("ask") or 0.0,
            last=trade.get("price") or day.get("close") or 0.0,
            volume=day.get("volume") or 0,
            openInterest=row.get("open_interest") or 0,
            impliedVolatility=row.get("implied_volatility"),
            greeks=greeks,
            underlying_price=(row.get("underlying_asset") or {}).get("price"),
        )
    except (ValidationError, TypeError, ValueError) as exc:
        raise DataValidationError(f"Invalid snapshot row for {underlying}: {exc}") from exc


class PolygonRestAdapter(HistoricalDataProvider, ChainProvider):
    """Primary provider for chains, aggregates and the reference ticker list."""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        base_url: str = DEFAULT_BASE_URL,
        max_pages: int = 4,
        congestion_threshold: Optional[int] = None,
    ) -> None:
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.max_pages = max_pages
        self.congestion_threshold = congestion_threshold

    @property
    def name(self) -> str:
        return "polygon"

    def is_congested(self) -> bool:
        return self.fetcher.is_congested(self.congestion_threshold)

    async def get_bars(
        self,
        symbol: str,
        start: date,
        end: date,
        timespan: str = "day",
        multiplier: int = 1,
    ) -> List[HistoricalBar]:
        url = (
            f"{self.base_url}/v2/aggs/ticker/{symbol.upper()}/range/"
            f"{multiplier}/{timespan}/{start.isoformat()}/{end.isoformat()}"
        )
        body = await self.fetcher.fetch_or_raise(
            url,
            params={"adjusted": "true", "sort": "asc", "limit": 50000},
            cache_ttl_ms=AGGREGATES_CACHE_TTL_MS,
        )
        results = (body or {}).get("results") or []
        if not results:
            raise DataNotAvailable(f"No {timespan} bars for {symbol}")
        bars: List[HistoricalBar] = []
        for item in results:
            try:
                bars.append(
                    HistoricalBar(
                        timestamp=item["t"],
                        open=item["o"],
                        high=item["h"],
                        low=item["l"],
                        close=item["c"],
                        volume=item.get("v", 0.0),
                    )
                )
            except (KeyError, ValidationError):
                logger.debug("Skipping malformed bar for %s: %s", symbol, item)
        return bars

    async def get_chain(
        self,
        underlying: str,
        expiration: Optional[date] = None,
        limit: int = 250,
        expiration_gte: Optional[date] = None,
        contract_type: Optional[str] = None,
        priority: Priority = Priority.STANDARD,
    ) -> Optional[List[OptionContractSnapshot]]:
        """Fetch the chain snapshot, following ``next_url`` up to ``max_pages``.

        Returns ``None`` when the first page cannot be fetched.
        """

        params: Dict[str, Any] = {"limit": limit}
        if expiration is not None:
            params["expiration_date"] = expiration.isoformat()
        if expiration_gte is not None:
            params["expiration_date.gte"] = expiration_gte.isoformat()
        if contract_type is not None:
            params["contract_type"] = contract_type

        url: Optional[str] = f"{self.base_url}/v3/snapshot/options/{underlying.upper()}"
        contracts: List[OptionContractSnapshot] = []
        rejected = 0
        pages = 0
        while url and pages < self.max_pages:
            body = await self.fetcher.fetch(
                url,
                params=params if pages == 0 else None,
                cache_ttl_ms=CHAIN_CACHE_TTL_MS,
                priority=priority,
            )
            if body is None:
                if pages == 0:
                    return None
                break
            pages += 1
            for row in body.get("results") or []:
                try:
                    contracts.append(decode_snapshot_row(row, underlying))
                except DataValidationError as exc:
                    rejected += 1
                    logger.debug("%s", exc)
            url = body.get("next_url")
        if rejected:
            logger.debug("Dropped %d malformed rows from %s chain", rejected, underlying)
        return contracts

    async def list_tickers(
        self,
        market: str = "stocks",
        ticker_type: str = "CS",
        max_pages: int = 5,
    ) -> List[str]:
        """Reference ticker list, fetched with the bulk limiter."""

        url: Optional[str] = f"{self.base_url}/v3/reference/tickers"
        params: Optional[Dict[str, Any]] = {
            "market": market,
            "type": ticker_type,
            "active": "true",
            "limit": 1000,
        }
        tickers: List[str] = []
        pages = 0
        while url and pages < max_pages:
            body = await self.fetcher.fetch(
                url,
                params=params,
                cache_ttl_ms=AGGREGATES_CACHE_TTL_MS,
                priority=Priority.BULK,
            )
            if body is None:
                break
            pages += 1
            tickers.extend(item["ticker"] for item in body.get("results") or [] if item.get("ticker"))
            url = body.get("next_url")
            params = None
        return tickers


__all__ = ["DEFAULT_BASE_URL", "PolygonRestAdapter", "decode_snapshot_row"]
