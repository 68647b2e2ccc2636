"""Universe scanning: volatility context, gates and the candidate pipeline."""

from .context import ScanContext, SymbolContext
from .gates import EntryGates, GateConfig
from .market_clock import ModeSelection, is_market_open, next_trading_day, select_mode
from .pipeline import CandidatePipeline, rank_candidates, select_expiry
from .universe import DEFAULT_UNIVERSE, batched, normalize_universe
from .volatility import VolatilityAnalyzer, VolatilityDistribution, annualized_volatility

__all__ = [
    "CandidatePipeline",
    "DEFAULT_UNIVERSE",
    "EntryGates",
    "GateConfig",
    "ModeSelection",
    "ScanContext",
    "SymbolContext",
    "VolatilityAnalyzer",
    "VolatilityDistribution",
    "annualized_volatility",
    "batched",
    "is_market_open",
    "next_trading_day",
    "normalize_universe",
    "rank_candidates",
    "select_expiry",
    "select_mode",
]
