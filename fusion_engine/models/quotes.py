from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

OptionType = Literal["call", "put"]


def _utc(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Providers stamp events in epoch milliseconds.
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError("Unsupported timestamp format")


class QuoteSnapshot(BaseModel):
    """Point-in-time quote for an equity or option symbol."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    last: Optional[float] = None
    bid: Optional[float] = None
    ask: Optional[float] = None
    volume: int = 0
    timestamp: datetime
    source: str

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, value: Any) -> datetime:
        return _utc(value)

    @field_validator("last", "bid", "ask", mode="before")
    @classmethod
    def drop_non_finite(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        number = float(value)
        return number if math.isfinite(number) else None

    @property
    def mid(self) -> Optional[float]:
        if self.bid is not None and self.ask is not None and self.bid > 0 and self.ask > 0:
            return round((self.bid + self.ask) / 2, 4)
        return self.last

    @property
    def price(self) -> Optional[float]:
        return self.last if self.last is not None else self.mid

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        current = now or datetime.now(timezone.utc)
        return (current - self.timestamp).total_seconds()

    def is_fresh(self, max_age_seconds: float, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) <= max_age_seconds


class GreeksResult(BaseModel):
    """Option sensitivities: theta per calendar day, vega and rho per 1 point."""

    model_config = ConfigDict(frozen=True)

    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0
    rho: float = 0.0
    implied_volatility: Optional[float] = None

    @field_validator("delta", "gamma", "theta", "vega", "rho", mode="before")
    @classmethod
    def round_value(cls, value: Any) -> float:
        number = float(value or 0.0)
        if not math.isfinite(number):
            raise ValueError("Greek values must be finite")
        return round(number, 4)


class OptionContractSnapshot(BaseModel):
    """Option contract row as fetched for a single scan cycle."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    symbol: str
    underlying: str
    strike: float
    expiration: date
    option_type: OptionType = Field(alias="type")
    bid: float = 0.0
    ask: float = 0.0
    last: float = 0.0
    volume: int = 0
    open_interest: int = Field(default=0, alias="openInterest")
    implied_volatility: Optional[float] = Field(default=None, alias="impliedVolatility")
    greeks: Optional[GreeksResult] = None
    underlying_price: Optional[float] = None

    @field_validator("expiration", mode="before")
    @classmethod
    def parse_expiration(cls, value: Any) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            return datetime.strptime(value[:10], "%Y-%m-%d").date()
        raise ValueError("Unsupported expiration format")

    @field_validator("option_type", mode="before")
    @classmethod
    def normalise_type(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        if text in {"c", "call"}:
            return "call"
        if text in {"p", "put"}:
            return "put"
        raise ValueError(f"Unknown contract type: {value!r}")

    @field_validator("volume", "open_interest", mode="before")
    @classmethod
    def coerce_int(cls, value: Any) -> int:
        return int(value or 0)

    @field_validator("bid", "ask", "last", "strike", mode="before")
    @classmethod
    def coerce_float(cls, value: Any) -> float:
        number = float(value or 0.0)
        if not math.isfinite(number):
            raise ValueError("Prices must be finite")
        return number

    @field_validator("implied_volatility", "underlying_price", mode="before")
    @classmethod
    def coerce_optional(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        number = float(value)
        return number if math.isfinite(number) and number > 0 else None

    @property
    def mid(self) -> float:
        if self.bid > 0 and self.ask > 0:
            return round((self.bid + self.ask) / 2, 4)
        return self.last

    @property
    def spread(self) -> float:
        if self.bid > 0 and self.ask > 0:
            return round(self.ask - self.bid, 4)
        return math.inf

    def days_to_expiration(self, today: Optional[date] = None) -> int:
        return (self.expiration - (today or date.today())).days


class HistoricalBar(BaseModel):
    """Daily or intraday OHLCV aggregate."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, value: Any) -> datetime:
        return _utc(value)


__all__ = [
    "GreeksResult",
    "HistoricalBar",
    "OptionContractSnapshot",
    "OptionType",
    "QuoteSnapshot",
]
