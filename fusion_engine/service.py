"""Outbound interface: one object wiring feeds, providers and the pipeline."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from fusion_engine.adapters import ProviderChain, create_adapter
from fusion_engine.adapters.base import ChainProvider
from fusion_engine.adapters.fetcher import RateLimitedFetcher, RateLimiter
from fusion_engine.config import AppSettings, get_settings
from fusion_engine.feeds import DXLinkFeed, LiveQuoteFeed, PolygonSocketFeed, QuoteTokenProvider, ReconnectBackoff
from fusion_engine.feeds.sweeps import Sweep, SweepDetector
from fusion_engine.math import BlackScholesEngine, GreeksSurfaceCache
from fusion_engine.models import GreeksResult, OptionContractSnapshot, QuoteSnapshot, ScanResult
from fusion_engine.scanner import CandidatePipeline, EntryGates, VolatilityAnalyzer, select_expiry
from fusion_engine.scanner.market_clock import EXCHANGE_TZ, MARKET_CLOSE, time_to_expiry_years, to_exchange_time
from fusion_engine.scoring import SignalScorer

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MarketDataEngine:
    """Live quotes, option Greeks and ranked scans behind one lifecycle."""

    def __init__(
        self,
        chains: ChainProvider,
        pipeline: CandidatePipeline,
        engine: BlackScholesEngine,
        feeds: Sequence[LiveQuoteFeed] = (),
        sweeps: Optional[SweepDetector] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        universe: Optional[Sequence[str]] = None,
        now_provider: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.chains = chains
        self.pipeline = pipeline
        self.engine = engine
        self.feeds = list(feeds)
        self.sweeps = sweeps
        self.fetcher = fetcher
        self.universe = list(universe or pipeline.universe)
        self._now = now_provider
        self._trade_handlers: Dict[int, int] = {}
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[AppSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        watchlist: str = "default",
    ) -> "MarketDataEngine":
        settings = settings or get_settings()
        credentials = settings.credentials
        fetcher_settings = settings.fetcher
        fetcher = RateLimitedFetcher(
            api_key=credentials.polygon_api_key,
            session=session,
            standard=RateLimiter(
                "standard",
                max_concurrent=fetcher_settings.max_concurrent,
                min_spacing=fetcher_settings.min_spacing_ms / 1000,
                reservoir=fetcher_settings.reservoir,
                refill_interval=fetcher_settings.refill_seconds,
            ),
            bulk=RateLimiter(
                "bulk",
                max_concurrent=fetcher_settings.bulk_max_concurrent,
                min_spacing=fetcher_settings.bulk_min_spacing_ms / 1000,
                reservoir=None,
            ),
            timeout_ms=fetcher_settings.timeout_ms,
            max_retries=fetcher_settings.max_retries,
            congestion_threshold=fetcher_settings.congestion_threshold,
        )
        primary = create_adapter(
            "polygon",
            fetcher=fetcher,
            base_url=fetcher_settings.base_url,
            max_pages=fetcher_settings.max_pages,
        )
        vol_settings = settings.volatility
        history_providers = [primary]
        if vol_settings.secondary_provider:
            history_providers.append(create_adapter(vol_settings.secondary_provider))
        history = ProviderChain(
            history_providers,
            failure_threshold=vol_settings.breaker_failures,
            reset_after=vol_settings.breaker_reset_seconds,
        )
        volatility = VolatilityAnalyzer(
            history,
            window=vol_settings.window,
            trading_days=vol_settings.trading_days,
            default_hv=vol_settings.default_hv,
            min_bars=vol_settings.min_bars,
        )

        feeds = cls._build_feeds(settings, session)
        sweeps = None
        if settings.sweeps.enabled:
            healthy = (lambda: any(feed.is_healthy() for feed in feeds)) if feeds else None
            sweeps = SweepDetector(
                min_premium=settings.sweeps.min_premium,
                window=timedelta(minutes=settings.sweeps.window_minutes),
                health_check=healthy,
            )

        engine = BlackScholesEngine(risk_free_rate=settings.risk_free_rate)
        pipeline_settings = settings.pipeline
        universe = settings.get_watchlist(watchlist)
        pipeline = CandidatePipeline(
            chains=primary,
            volatility=volatility,
            engine=engine,
            scorer=SignalScorer(settings.scoring_dict()),
            gates=EntryGates(settings.gates),
            surface=GreeksSurfaceCache(engine),
            quote_feeds=feeds,
            sweeps=sweeps,
            fetcher=fetcher,
            universe=universe,
            batch_size=pipeline_settings.batch_size,
            timeout_seconds=pipeline_settings.timeout_seconds,
            top_n=pipeline_settings.top_n,
            chain_limit=pipeline_settings.chain_limit,
            target_multiplier=pipeline_settings.target_multiplier,
            stop_multiplier=pipeline_settings.stop_multiplier,
            rsi_period=pipeline_settings.rsi_period,
            mode_cutoff=pipeline_settings.mode_cutoff,
            same_day_exit=pipeline_settings.same_day_exit,
            next_day_exit=pipeline_settings.next_day_exit,
        )
        return cls(
            chains=primary,
            pipeline=pipeline,
            engine=engine,
            feeds=feeds,
            sweeps=sweeps,
            fetcher=fetcher,
            universe=universe,
        )

    @staticmethod
    def _build_feeds(settings: AppSettings, session: Optional[aiohttp.ClientSession]) -> List[LiveQuoteFeed]:
        feed_settings = settings.feeds
        credentials = settings.credentials
        common: Dict[str, Any] = {
            "quote_freshness": feed_settings.quote_freshness_seconds,
            "option_freshness": feed_settings.option_freshness_seconds,
            "stale_after": feed_settings.stale_after_seconds,
            "evict_interval": feed_settings.evict_interval_seconds,
        }

        def backoff() -> ReconnectBackoff:
            return ReconnectBackoff(feed_settings.backoff_base_seconds, feed_settings.backoff_cap_seconds)

        feeds: List[LiveQuoteFeed] = []
        for name in feed_settings.enabled:
            if name == "dxlink":
                if credentials.quote_token:
                    feeds.append(
                        DXLinkFeed(feed_settings.dxlink_url, token=credentials.quote_token, backoff=backoff(), **common)
                    )
                elif credentials.has_broker_login:
                    provider = QuoteTokenProvider(
                        feed_settings.broker_api_url,
                        credentials.broker_username,
                        credentials.broker_password,
                        session=session,
                    )
                    feeds.append(
                        DXLinkFeed(feed_settings.dxlink_url, token_provider=provider, backoff=backoff(), **common)
                    )
                else:
                    logger.info("DXLink feed enabled but no broker credentials configured; skipping")
            elif name == "polygon":
                if credentials.polygon_api_key:
                    feeds.append(
                        PolygonSocketFeed(
                            feed_settings.polygon_url,
                            api_key=credentials.polygon_api_key,
                            backoff=backoff(),
                            **common,
                        )
                    )
                else:
                    logger.info("Polygon socket enabled but POLYGON_API_KEY is not set; skipping")
            else:
                logger.warning("Unknown feed %r in configuration", name)
        return feeds

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for feed in self.feeds:
            if self.sweeps is not None:
                self._trade_handlers[id(feed)] = feed.add_trade_handler(self.sweeps.on_trade)
            await feed.subscribe(self.universe)
            if isinstance(feed, PolygonSocketFeed) and self.sweeps is not None:
                for symbol in self.universe:
                    await feed.subscribe_pattern(f"T.O:{symbol}*")
            feed.start()
        logger.info("Engine started with %d feeds for %d symbols", len(self.feeds), len(self.universe))

    async def close(self) -> None:
        for feed in self.feeds:
            handler_id = self._trade_handlers.pop(id(feed), None)
            if handler_id is not None:
                feed.remove_trade_handler(handler_id)
            await feed.close()
        if self.fetcher is not None:
            await self.fetcher.close()
        self._started = False

    async def __aenter__(self) -> "MarketDataEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def scan(self, universe: Optional[Sequence[str]] = None) -> ScanResult:
        return await self.pipeline.scan(universe)

    async def get_quote(self, symbol: str) -> Optional[QuoteSnapshot]:
        """First fresh quote from the feeds, in configured order."""

        for feed in self.feeds:
            quote = await feed.get_quote(symbol)
            if quote is not None:
                return quote
        return None

    async def get_options_greeks(self, symbol: str, option_type: str = "call") -> Optional[GreeksResult]:
        """Greeks of the most active contract of the nearest expiration.

        Streamed Greeks win, then provider Greeks, then the engine's own from
        the provider's implied volatility.  The chosen contract is subscribed
        on every feed so repeat calls can be served from the stream.
        """

        wanted = "put" if option_type.lower().startswith("p") else "call"
        now = self._now()
        today = to_exchange_time(now).date()
        chain = await self.chains.get_chain(symbol, expiration_gte=today, contract_type=wanted)
        if not chain:
            return None
        expiry = select_expiry(chain, today)
        candidates = [
            contract for contract in chain if contract.expiration == expiry and contract.option_type == wanted
        ]
        if not candidates:
            return None
        contract = max(candidates, key=lambda item: item.volume)

        for feed in self.feeds:
            # Streams Greeks for later calls; the first one falls through.
            await feed.subscribe([contract.symbol])
            streamed = await feed.get_greeks(contract.symbol)
            if streamed is not None:
                return streamed
        if contract.greeks is not None:
            return contract.greeks
        return await self._computed_greeks(contract, now)

    async def _spot(self, contract: OptionContractSnapshot) -> Optional[float]:
        quote = await self.get_quote(contract.underlying)
        if quote is not None and quote.price:
            return quote.price
        return contract.underlying_price

    async def _computed_greeks(self, contract: OptionContractSnapshot, now: datetime) -> Optional[GreeksResult]:
        spot = await self._spot(contract)
        if contract.implied_volatility is None or not spot:
            return None
        expires_at = datetime.combine(contract.expiration, MARKET_CLOSE, tzinfo=EXCHANGE_TZ)
        return self.engine.greeks(
            spot,
            contract.strike,
            time_to_expiry_years(expires_at, now),
            None,
            contract.implied_volatility,
            contract.option_type,
        )

    def recent_sweeps(self, underlying: Optional[str] = None) -> List[Sweep]:
        if self.sweeps is None:
            return []
        return self.sweeps.recent_sweeps(underlying)

    def health(self) -> Dict[str, Any]:
        return {
            "feeds": [feed.health() for feed in self.feeds],
            "fetcher": self.fetcher.status() if self.fetcher is not None else None,
        }


__all__ = ["MarketDataEngine"]
