from __future__ import annotations

from typing import Iterable, Iterator, List, Sequence

DEFAULT_UNIVERSE: List[str] = ["SPY", "QQQ", "IWM"]


def normalize_universe(symbols: Iterable[str]) -> List[str]:
    """Uppercase, strip and de-duplicate while keeping the caller's order."""

    seen = set()
    ordered: List[str] = []
    for symbol in symbols:
        cleaned = str(symbol or "").strip().upper()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            ordered.append(cleaned)
    return ordered


def batched(symbols: Sequence[str], size: int) -> Iterator[List[str]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(symbols), size):
        yield list(symbols[start : start + size])


__all__ = ["DEFAULT_UNIVERSE", "batched", "normalize_universe"]
