"""Canonical option-contract symbols and provider dialect translation.

Canonical form is the OCC root without padding, e.g. ``SPY251017C00580000``:
ticker, ``YYMMDD`` expiry, ``C``/``P`` and strike x 1000 padded to 8 digits.
Provider dialects (``O:`` prefix on REST/socket topics, DXLink streamer
symbols such as ``.SPY251017C580``) are converted at the feed boundary.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

_CANONICAL_RE = re.compile(r"^([A-Z]{1,6})(\d{6})([CP])(\d{8})$")
_STREAMER_RE = re.compile(r"^\.([A-Z]{1,6})(\d{6})([CP])(\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class ParsedOptionSymbol:
    underlying: str
    expiration: date
    option_type: str
    strike: float


def format_option_symbol(underlying: str, expiration: date, option_type: str, strike: float) -> str:
    flag = "C" if option_type.lower().startswith("c") else "P"
    strike_code = f"{int(round(strike * 1000)):08d}"
    return f"{underlying.upper()}{expiration:%y%m%d}{flag}{strike_code}"


def parse_option_symbol(symbol: str) -> Optional[ParsedOptionSymbol]:
    """Parse any supported dialect; returns ``None`` for equity symbols."""

    text = symbol.strip().upper()
    if text.startswith("O:"):
        text = text[2:]
    match = _CANONICAL_RE.match(text)
    if match:
        root, expiry, flag, strike_code = match.groups()
        strike = int(strike_code) / 1000.0
    else:
        match = _STREAMER_RE.match(text)
        if not match:
            return None
        root, expiry, flag, strike_text = match.groups()
        strike = float(strike_text)
    return ParsedOptionSymbol(
        underlying=root,
        expiration=datetime.strptime(expiry, "%y%m%d").date(),
        option_type="call" if flag == "C" else "put",
        strike=strike,
    )


def is_option_symbol(symbol: str) -> bool:
    return parse_option_symbol(symbol) is not None


def canonical_symbol(symbol: str) -> str:
    """Normalise any dialect to the canonical form; equities are upper-cased."""

    parsed = parse_option_symbol(symbol)
    if parsed is None:
        return symbol.strip().upper()
    return format_option_symbol(parsed.underlying, parsed.expiration, parsed.option_type, parsed.strike)


def to_polygon_symbol(symbol: str) -> str:
    canonical = canonical_symbol(symbol)
    return f"O:{canonical}" if is_option_symbol(canonical) else canonical


def to_streamer_symbol(symbol: str) -> str:
    """DXLink streamer form, e.g. ``.SPY251017C580`` or ``.SPY251017P582.5``."""

    parsed = parse_option_symbol(symbol)
    if parsed is None:
        return symbol.strip().upper()
    strike = f"{parsed.strike:g}"
    flag = "C" if parsed.option_type == "call" else "P"
    return f".{parsed.underlying}{parsed.expiration:%y%m%d}{flag}{strike}"


__all__ = [
    "ParsedOptionSymbol",
    "canonical_symbol",
    "format_option_symbol",
    "is_option_symbol",
    "parse_option_symbol",
    "to_polygon_symbol",
    "to_streamer_symbol",
]
