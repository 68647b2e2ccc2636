"""Scan a universe of underlyings and rank the best short-dated contracts.

For each underlying the pipeline fetches one chain snapshot, derives the
chain-wide inputs (spot, max pain, IV skew, RSI, HV30 and the HV
distribution), primes the Greeks surface and then walks every contract of the
selected expiry through the entry gates and the signal scorer.  Symbols are
processed in concurrent batches and the whole scan races a single timer; on
timeout whatever has been scored so far is returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime, time as clock_time, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from fusion_engine.adapters.base import AdapterError, ChainProvider
from fusion_engine.adapters.fetcher import RateLimitedFetcher
from fusion_engine.feeds.base import LiveQuoteFeed
from fusion_engine.feeds.sweeps import SweepDetector
from fusion_engine.math.black_scholes import BlackScholesEngine
from fusion_engine.math.indicators import iv_skew, max_pain_strike, rsi
from fusion_engine.math.surface import GreeksSurfaceCache
from fusion_engine.models import Candidate, GreeksResult, OptionContractSnapshot, ScanResult, ScoreBreakdown
from fusion_engine.scoring import LayerContext, SignalScorer

from .context import ScanContext, SymbolContext
from .gates import EntryGates
from .market_clock import (
    MODE_CUTOFF,
    NEXT_DAY_EXIT,
    SAME_DAY_EXIT,
    is_market_open,
    select_mode,
    to_exchange_time,
)
from .universe import DEFAULT_UNIVERSE, batched, normalize_universe
from .volatility import HV_LOOKBACK_DAYS, VolatilityAnalyzer

logger = logging.getLogger("fusion_engine.pipeline")

TARGET_MULTIPLIER = 1.78
STOP_MULTIPLIER = 0.78


def select_expiry(contracts: Iterable[OptionContractSnapshot], target: date) -> Optional[date]:
    """Nearest listed expiration on or after ``target``."""

    expirations = {contract.expiration for contract in contracts if contract.expiration >= target}
    return min(expirations) if expirations else None


def rank_candidates(candidates: Iterable[Candidate], top_n: int) -> List[Candidate]:
    ordered = sorted(candidates, key=lambda item: (-item.composite, -item.contract.volume))
    return ordered[:top_n]


class CandidatePipeline:
    """Drives a full scan and returns a well-formed :class:`ScanResult`."""

    def __init__(
        self,
        chains: ChainProvider,
        volatility: VolatilityAnalyzer,
        engine: BlackScholesEngine,
        scorer: Optional[SignalScorer] = None,
        gates: Optional[EntryGates] = None,
        surface: Optional[GreeksSurfaceCache] = None,
        quote_feeds: Sequence[LiveQuoteFeed] = (),
        sweeps: Optional[SweepDetector] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        universe: Optional[Sequence[str]] = None,
        batch_size: int = 50,
        timeout_seconds: float = 30.0,
        top_n: int = 3,
        chain_limit: int = 250,
        target_multiplier: float = TARGET_MULTIPLIER,
        stop_multiplier: float = STOP_MULTIPLIER,
        rsi_period: int = 14,
        mode_cutoff: clock_time = MODE_CUTOFF,
        same_day_exit: clock_time = SAME_DAY_EXIT,
        next_day_exit: clock_time = NEXT_DAY_EXIT,
        now_provider: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.chains = chains
        self.volatility = volatility
        self.engine = engine
        self.scorer = scorer or SignalScorer()
        self.gates = gates or EntryGates()
        self.surface = surface or GreeksSurfaceCache(engine)
        self.quote_feeds = list(quote_feeds)
        self.sweeps = sweeps
        self.fetcher = fetcher
        self.universe = list(universe or DEFAULT_UNIVERSE)
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds
        self.top_n = top_n
        self.chain_limit = chain_limit
        self.target_multiplier = target_multiplier
        self.stop_multiplier = stop_multiplier
        self.rsi_period = rsi_period
        self.mode_cutoff = mode_cutoff
        self.same_day_exit = same_day_exit
        self.next_day_exit = next_day_exit
        self._now = now_provider
        self._clock = clock

    def _calls_made(self) -> int:
        return self.fetcher.calls_made if self.fetcher is not None else 0

    async def scan(self, universe: Optional[Sequence[str]] = None) -> ScanResult:
        now = self._now()
        selection = select_mode(now, self.mode_cutoff, self.same_day_exit, self.next_day_exit)
        context = ScanContext(selection=selection, calls_at_start=self._calls_made())
        symbols = normalize_universe(universe if universe is not None else self.universe)
        logger.info(
            "Scanning %d symbols in %s mode (expiry %s, T=%.6f)",
            len(symbols),
            selection.mode.value,
            selection.expiry,
            selection.time_to_expiry,
        )

        started = self._clock()
        timed_out = False
        try:
            await asyncio.wait_for(self._run(symbols, context), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                "Scan budget of %.0fs exhausted after %d/%d symbols; returning partial results",
                self.timeout_seconds,
                context.symbols_scanned,
                len(symbols),
            )
        elapsed_ms = (self._clock() - started) * 1000

        if context.symbols_attempted and context.provider_failures == context.symbols_attempted:
            logger.error("No symbols could be scanned: every provider call failed")

        diagnostics = context.diagnostics(
            api_calls=self._calls_made() - context.calls_at_start,
            elapsed_ms=elapsed_ms,
            timed_out=timed_out,
        )
        top_plays = rank_candidates(context.candidates, self.top_n)
        logger.info(
            "Scan complete: %d contracts analyzed, %d passed gates, %d eligible, top %d returned in %.0fms",
            diagnostics.contracts_analyzed,
            diagnostics.contracts_filtered,
            len(context.candidates),
            len(top_plays),
            elapsed_ms,
        )
        return ScanResult(
            top_plays=top_plays,
            mode=selection.mode,
            market_open=is_market_open(now),
            expiry=selection.expiry,
            diagnostics=diagnostics,
            scan_time=now,
        )

    async def _run(self, symbols: Sequence[str], context: ScanContext) -> None:
        for batch in batched(symbols, self.batch_size):
            context.symbols_attempted += len(batch)
            results = await asyncio.gather(
                *(self._scan_symbol(symbol, context) for symbol in batch),
                return_exceptions=True,
            )
            for symbol, outcome in zip(batch, results):
                if isinstance(outcome, Exception):
                    context.symbols_failed += 1
                    logger.error("%s: unexpected scan failure", symbol, exc_info=outcome)

    async def _scan_symbol(self, symbol: str, context: ScanContext) -> None:
        try:
            symbol_context = await self.build_symbol_context(symbol, context)
        except AdapterError as exc:
            context.symbols_failed += 1
            context.provider_failures += 1
            logger.warning("%s: provider error: %s", symbol, exc)
            return
        except (ValidationError, ValueError) as exc:
            context.symbols_failed += 1
            logger.warning("%s: invalid market data: %s", symbol, exc)
            return
        if symbol_context is None:
            context.symbols_failed += 1
            return
        context.symbols[symbol] = symbol_context
        context.symbols_scanned += 1
        for contract in symbol_context.contracts:
            candidate = self.evaluate_contract(contract, symbol_context, context)
            if candidate is not None:
                context.candidates.append(candidate)

    async def _spot_price(self, symbol: str, chain: Sequence[OptionContractSnapshot]) -> Optional[float]:
        for feed in self.quote_feeds:
            quote = await feed.get_quote(symbol)
            if quote is not None and quote.price:
                return quote.price
        for contract in chain:
            if contract.underlying_price:
                return contract.underlying_price
        return None

    async def _fetch_chain(self, symbol: str, target: date) -> Optional[List[OptionContractSnapshot]]:
        chain = await self.chains.get_chain(symbol, expiration=target, limit=self.chain_limit)
        if chain is None:
            return None
        if chain:
            return chain
        # The target date is not listed; take whatever the provider has and
        # pick the nearest later expiration from it.
        return await self.chains.get_chain(symbol, limit=self.chain_limit, expiration_gte=target)

    async def build_symbol_context(self, symbol: str, context: ScanContext) -> Optional[SymbolContext]:
        selection = context.selection
        chain = await self._fetch_chain(symbol, selection.expiry)
        if not chain:
            logger.debug("%s: no chain data", symbol)
            return None
        expiry = select_expiry(chain, selection.expiry)
        if expiry is None:
            logger.debug("%s: no expiration on or after %s", symbol, selection.expiry)
            return None
        contracts = [contract for contract in chain if contract.expiration == expiry]

        spot = await self._spot_price(symbol, chain)
        if spot is None or spot <= 0:
            logger.debug("%s: no underlying price", symbol)
            return None

        closes, distribution = await asyncio.gather(
            self.volatility.closes(symbol, HV_LOOKBACK_DAYS),
            self.volatility.distribution(symbol, allow_stale=True),
        )
        hv30 = await self.volatility.historical_volatility_30d(symbol, closes=closes)
        swept = frozenset()
        if self.sweeps is not None:
            swept = frozenset(sweep.symbol for sweep in self.sweeps.recent_sweeps(symbol))

        self.surface.clear(symbol)
        self.surface.prime(
            symbol,
            spot,
            [(contract.strike, contract.option_type) for contract in contracts],
            selection.time_to_expiry,
            {
                (contract.strike, contract.option_type): contract.implied_volatility
                for contract in contracts
                if contract.implied_volatility
            },
        )

        today = to_exchange_time(self._now()).date()
        return SymbolContext(
            symbol=symbol,
            spot=spot,
            expiry=expiry,
            contracts=contracts,
            days_to_expiration=(expiry - today).days,
            hv30=hv30,
            max_pain=max_pain_strike(contracts),
            skew=iv_skew(contracts),
            rsi=rsi(closes, self.rsi_period) if closes else None,
            distribution=distribution,
            swept_symbols=swept,
        )

    def evaluate_contract(
        self,
        contract: OptionContractSnapshot,
        symbol_context: SymbolContext,
        context: ScanContext,
    ) -> Optional[Candidate]:
        """Gate, price and score a single contract; ``None`` when it is rejected."""

        context.contracts_analyzed += 1
        mode = context.selection.mode
        time_to_expiry = context.selection.time_to_expiry
        spot = symbol_context.spot

        reason = self.gates.check_quote(contract, mode)
        if reason is None:
            iv = contract.implied_volatility or self.engine.implied_volatility(
                contract.mid, spot, contract.strike, time_to_expiry, contract.option_type
            )
            reason = self.gates.check_volatility(symbol_context.symbol, iv)
        if reason is not None:
            context.reject(reason)
            return None

        greeks = self.surface.greeks(
            symbol_context.symbol, spot, contract.strike, time_to_expiry, iv, contract.option_type
        )
        reason = self.gates.check_greeks(greeks)
        iv_percentile = symbol_context.iv_percentile(iv)
        if reason is None:
            reason = self.gates.check_iv_percentile(iv_percentile)
        if reason is not None:
            context.reject(reason)
            return None

        context.contracts_filtered += 1
        breakdown = self.scorer.score(
            LayerContext(
                contract=contract,
                greeks=greeks,
                underlying_price=spot,
                days_to_expiration=symbol_context.days_to_expiration,
                config=self.scorer.config,
                max_pain=symbol_context.max_pain,
                skew=symbol_context.skew,
                rsi=symbol_context.rsi,
                swept_symbols=symbol_context.swept_symbols,
            )
        )
        if not self.scorer.is_eligible(breakdown):
            context.reject("score")
            return None
        candidate = self.enrich(contract, greeks, breakdown, spot, iv, iv_percentile, time_to_expiry)
        reason = self.gates.check_required_move(candidate.required_move_pct)
        if reason is not None:
            context.reject(reason)
            return None
        logger.info("%s scored %d (%s)", contract.symbol, breakdown.composite, "; ".join(breakdown.reasons))
        return candidate

    def enrich(
        self,
        contract: OptionContractSnapshot,
        greeks: GreeksResult,
        breakdown: ScoreBreakdown,
        spot: float,
        iv: float,
        iv_percentile: float,
        time_to_expiry: float,
    ) -> Candidate:
        mark = contract.mid
        target_premium = round(mark * self.target_multiplier, 2)
        stop_premium = round(mark * self.stop_multiplier, 2)
        target_underlying = self.engine.underlying_for_premium(
            target_premium, mark, spot, contract.strike, time_to_expiry, iv, contract.option_type
        )
        stop_underlying = self.engine.underlying_for_premium(
            stop_premium, mark, spot, contract.strike, time_to_expiry, iv, contract.option_type
        )
        return Candidate(
            contract=contract,
            greeks=greeks,
            breakdown=breakdown,
            underlying_price=spot,
            mark=mark,
            target_premium=target_premium,
            stop_premium=stop_premium,
            target_underlying=round(target_underlying, 2),
            stop_underlying=round(stop_underlying, 2),
            required_move_pct=round((target_underlying - spot) / spot * 100, 2),
            implied_volatility=round(iv, 4),
            iv_percentile=round(iv_percentile, 1),
        )


__all__ = ["CandidatePipeline", "rank_candidates", "select_expiry"]
