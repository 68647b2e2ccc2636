from .quotes import GreeksResult, HistoricalBar, OptionContractSnapshot, OptionType, QuoteSnapshot
from .scan import Candidate, ScanDiagnostics, ScanMode, ScanResult, ScoreBreakdown

__all__ = [
    "Candidate",
    "GreeksResult",
    "HistoricalBar",
    "OptionContractSnapshot",
    "OptionType",
    "QuoteSnapshot",
    "ScanDiagnostics",
    "ScanMode",
    "ScanResult",
    "ScoreBreakdown",
]
