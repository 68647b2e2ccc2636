"""Black-Scholes pricing, Greeks and solvers for European equity options.

The normal CDF is evaluated through an :class:`ErfLookupTable` so that a scan
can price thousands of contracts without calling transcendental erf for each
one.  ``precise=True`` swaps the table for ``scipy.special.ndtr``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from scipy.special import ndtr

from fusion_engine.models import GreeksResult

from .erf import ErfLookupTable

logger = logging.getLogger(__name__)

INV_SQRT_2PI = 1.0 / math.sqrt(2.0 * math.pi)
MIN_VOLATILITY = 0.001
MAX_VOLATILITY = 5.0
DEGENERATE_DELTA = 1e-4


class SolverError(ValueError):
    """Raised when a numerical solver cannot produce a trustworthy answer."""


@dataclass(frozen=True)
class SurfaceTerms:
    """Intermediate Black-Scholes terms for one (spot, strike, expiry, vol)."""

    spot: float
    strike: float
    time_to_expiry: float
    rate: float
    volatility: float
    d1: float
    d2: float
    nd1_cdf: float
    nd2_cdf: float
    nd1_pdf: float


def normal_pdf(x: float) -> float:
    return INV_SQRT_2PI * math.exp(-0.5 * x * x)


def intrinsic_value(spot: float, strike: float, option_type: str) -> float:
    if option_type == "call":
        return max(0.0, spot - strike)
    return max(0.0, strike - spot)


class BlackScholesEngine:
    """Closed-form European pricing with table-accelerated normal CDF."""

    def __init__(
        self,
        risk_free_rate: float = 0.045,
        erf_table: Optional[ErfLookupTable] = None,
        precise: bool = False,
    ) -> None:
        self.risk_free_rate = risk_free_rate
        self.precise = precise
        if precise:
            self._cdf: Callable[[float], float] = lambda x: float(ndtr(x))
            self.erf_table = erf_table
        else:
            self.erf_table = erf_table or ErfLookupTable()
            self._cdf = self.erf_table.cdf

    def cdf(self, x: float) -> float:
        return self._cdf(x)

    def _rate(self, rate: Optional[float]) -> float:
        return self.risk_free_rate if rate is None else rate

    # ------------------------------------------------------------------
    # Core terms
    # ------------------------------------------------------------------
    def terms(
        self,
        spot: float,
        strike: float,
        time_to_expiry: float,
        volatility: float,
        rate: Optional[float] = None,
    ) -> SurfaceTerms:
        r = self._rate(rate)
        if spot <= 0 or strike <= 0:
            raise ValueError("Spot and strike must be positive")
        if time_to_expiry <= 0 or volatility <= 0:
            raise ValueError("Time to expiry and volatility must be positive")
        sqrt_t = math.sqrt(time_to_expiry)
        d1 = (math.log(spot / strike) + (r + 0.5 * volatility * volatility) * time_to_expiry) / (volatility * sqrt_t)
        d2 = d1 - volatility * sqrt_t
        return SurfaceTerms(
            spot=spot,
            strike=strike,
            time_to_expiry=time_to_expiry,
            rate=r,
            volatility=volatility,
            d1=d1,
            d2=d2,
            nd1_cdf=self._cdf(d1),
            nd2_cdf=self._cdf(d2),
            nd1_pdf=normal_pdf(d1),
        )

    def price_from_terms(self, terms: SurfaceTerms, option_type: str) -> float:
        discount = math.exp(-terms.rate * terms.time_to_expiry)
        if option_type == "call":
            value = terms.spot * terms.nd1_cdf - terms.strike * discount * terms.nd2_cdf
        else:
            value = terms.strike * discount * (1.0 - terms.nd2_cdf) - terms.spot * (1.0 - terms.nd1_cdf)
        return max(0.0, value)

    def _raw_greeks(self, terms: SurfaceTerms, option_type: str) -> tuple[float, float, float, float, float]:
        S, K, T, r, sigma = terms.spot, terms.strike, terms.time_to_expiry, terms.rate, terms.volatility
        sqrt_t = math.sqrt(T)
        discount = math.exp(-r * T)
        decay = -(S * terms.nd1_pdf * sigma) / (2.0 * sqrt_t)
        if option_type == "call":
            delta = terms.nd1_cdf
            theta = decay - r * K * discount * terms.nd2_cdf
            rho = K * T * discount * terms.nd2_cdf
        else:
            delta = terms.nd1_cdf - 1.0
            theta = decay + r * K * discount * (1.0 - terms.nd2_cdf)
            rho = -K * T * discount * (1.0 - terms.nd2_cdf)
        gamma = terms.nd1_pdf / (S * sigma * sqrt_t)
        vega = S * terms.nd1_pdf * sqrt_t
        return delta, gamma, theta / 365.0, vega / 100.0, rho / 100.0

    def greeks_from_terms(self, terms: SurfaceTerms, option_type: str) -> GreeksResult:
        delta, gamma, theta, vega, rho = self._raw_greeks(terms, option_type)
        return GreeksResult(delta=delta, gamma=gamma, theta=theta, vega=vega, rho=rho)

    # ------------------------------------------------------------------
    # Public pricing API
    # ------------------------------------------------------------------
    def price(
        self,
        spot: float,
        strike: float,
        time_to_expiry: float,
        rate: Optional[float],
        volatility: float,
        option_type: str,
    ) -> float:
        """Option value; intrinsic value once expired or with zero volatility."""

        if time_to_expiry <= 0 or volatility <= 0:
            return intrinsic_value(spot, strike, option_type)
        return self.price_from_terms(self.terms(spot, strike, time_to_expiry, volatility, rate), option_type)

    def greeks(
        self,
        spot: float,
        strike: float,
        time_to_expiry: float,
        rate: Optional[float],
        volatility: float,
        option_type: str,
    ) -> GreeksResult:
        if time_to_expiry <= 0 or volatility <= 0:
            return self._expired_greeks(spot, strike, option_type)
        return self.greeks_from_terms(self.terms(spot, strike, time_to_expiry, volatility, rate), option_type)

    def _expired_greeks(self, spot: float, strike: float, option_type: str) -> GreeksResult:
        if option_type == "call":
            delta = 1.0 if spot > strike else 0.0
        else:
            delta = -1.0 if spot < strike else 0.0
        return GreeksResult(delta=delta)

    def delta(
        self,
        spot: float,
        strike: float,
        time_to_expiry: float,
        rate: Optional[float],
        volatility: float,
        option_type: str,
    ) -> float:
        """Unrounded delta, used as the Newton derivative by the solvers."""

        if time_to_expiry <= 0 or volatility <= 0:
            return self._expired_greeks(spot, strike, option_type).delta
        terms = self.terms(spot, strike, time_to_expiry, volatility, rate)
        return terms.nd1_cdf if option_type == "call" else terms.nd1_cdf - 1.0

    # ------------------------------------------------------------------
    # Solvers
    # ------------------------------------------------------------------
    def implied_volatility(
        self,
        market_price: float,
        spot: float,
        strike: float,
        time_to_expiry: float,
        option_type: str,
        rate: Optional[float] = None,
        initial_guess: float = 0.3,
        tolerance: float = 1e-4,
        max_iterations: int = 100,
    ) -> Optional[float]:
        """Newton-Raphson implied volatility bounded to [0.001, 5].

        Returns ``None`` when the premium cannot be produced by the model,
        e.g. below intrinsic value or non-positive time.
        """

        if market_price <= 0 or time_to_expiry <= 0 or spot <= 0 or strike <= 0:
            return None
        r = self._rate(rate)
        if market_price < intrinsic_value(spot, strike * math.exp(-r * time_to_expiry), option_type) - tolerance:
            return None

        sigma = initial_guess
        for _ in range(max_iterations):
            terms = self.terms(spot, strike, time_to_expiry, sigma, r)
            diff = self.price_from_terms(terms, option_type) - market_price
            if abs(diff) < tolerance:
                return round(sigma, 4)
            vega = spot * terms.nd1_pdf * math.sqrt(time_to_expiry)
            if vega < 1e-10:
                break
            sigma = min(MAX_VOLATILITY, max(MIN_VOLATILITY, sigma - diff / vega))

        final = self.price(spot, strike, time_to_expiry, r, sigma, option_type)
        if abs(final - market_price) < tolerance * 10:
            return round(sigma, 4)
        logger.debug(
            "IV solver did not converge: price=%.4f S=%.2f K=%.2f T=%.6f last_sigma=%.4f",
            market_price,
            spot,
            strike,
            time_to_expiry,
            sigma,
        )
        return None

    def solve_underlying_for_premium(
        self,
        target_premium: float,
        spot: float,
        strike: float,
        time_to_expiry: float,
        volatility: float,
        option_type: str,
        rate: Optional[float] = None,
        tolerance: float = 1e-4,
        max_expansions: int = 5,
        bisection_steps: int = 8,
        newton_steps: int = 20,
    ) -> float:
        """Find the underlying price at which the option is worth ``target_premium``.

        Brackets around spot, widens the bracket geometrically, narrows it by
        bisection and finishes with Newton-Raphson using delta.  Raises
        :class:`SolverError` when the target cannot be bracketed or delta is
        degenerate.
        """

        if target_premium <= 0 or spot <= 0:
            raise SolverError("Target premium and spot must be positive")
        r = self._rate(rate)

        def value(s: float) -> float:
            return self.price(s, strike, time_to_expiry, r, volatility, option_type)

        width = 0.2
        lower, upper = spot * (1 - width), spot * (1 + width)
        for _ in range(max_expansions + 1):
            low_value, high_value = value(lower), value(upper)
            if min(low_value, high_value) <= target_premium <= max(low_value, high_value):
                break
            width *= 2
            lower, upper = max(spot * 1e-3, spot * (1 - min(width, 0.999))), spot * (1 + width)
        else:
            raise SolverError(f"Premium {target_premium:.4f} not bracketed around spot {spot:.2f}")

        increasing = option_type == "call"
        for _ in range(bisection_steps):
            middle = 0.5 * (lower + upper)
            if (value(middle) < target_premium) == increasing:
                lower = middle
            else:
                upper = middle

        guess = 0.5 * (lower + upper)
        for _ in range(newton_steps):
            diff = value(guess) - target_premium
            if abs(diff) < tolerance:
                return guess
            slope = self.delta(guess, strike, time_to_expiry, r, volatility, option_type)
            if abs(slope) < DEGENERATE_DELTA:
                raise SolverError(f"Degenerate delta {slope:.2e} at underlying {guess:.4f}")
            stepped = guess - diff / slope
            # Keep Newton inside the bracket established above.
            guess = stepped if lower <= stepped <= upper else 0.5 * (lower + upper)
            if (value(guess) < target_premium) == increasing:
                lower = guess
            else:
                upper = guess
        if abs(value(guess) - target_premium) < tolerance * 10:
            return guess
        raise SolverError(f"Newton refinement did not converge for premium {target_premium:.4f}")

    @staticmethod
    def estimate_underlying_move(
        target_premium: float,
        current_premium: float,
        spot: float,
        delta: float,
        max_move_pct: float = 0.15,
    ) -> float:
        """Linear delta-ratio estimate of the underlying price for a premium change."""

        if abs(delta) < DEGENERATE_DELTA:
            return spot
        move = (target_premium - current_premium) / delta
        limit = spot * max_move_pct
        return spot + max(-limit, min(limit, move))

    def underlying_for_premium(
        self,
        target_premium: float,
        current_premium: float,
        spot: float,
        strike: float,
        time_to_expiry: float,
        volatility: float,
        option_type: str,
        rate: Optional[float] = None,
    ) -> float:
        try:
            return self.solve_underlying_for_premium(
                target_premium, spot, strike, time_to_expiry, volatility, option_type, rate=rate
            )
        except (SolverError, ValueError) as exc:
            logger.debug("Falling back to delta-ratio estimate: %s", exc)
        delta = self.delta(spot, strike, time_to_expiry, rate, volatility, option_type)
        return self.estimate_underlying_move(target_premium, current_premium, spot, delta)


__all__ = [
    "BlackScholesEngine",
    "SolverError",
    "SurfaceTerms",
    "intrinsic_value",
    "normal_pdf",
]
