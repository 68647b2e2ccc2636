from datetime import date

import pytest

from fusion_engine.models import GreeksResult, OptionContractSnapshot, ScanMode
from fusion_engine.scanner.gates import EntryGates, GateConfig


def contract(**overrides):
    fields = {
        "symbol": "SPY251017C00585000",
        "underlying": "SPY",
        "strike": 585.0,
        "expiration": date(2025, 10, 17),
        "type": "call",
        "bid": 0.60,
        "ask": 0.63,
        "volume": 20_000,
        "openInterest": 50_000,
        "impliedVolatility": 0.15,
    }
    fields.update(overrides)
    return OptionContractSnapshot(**fields)


GOOD_GREEKS = GreeksResult(delta=0.2, gamma=0.15, theta=-0.12, vega=0.05, rho=0.01)


@pytest.fixture
def gates():
    return EntryGates(GateConfig())


def test_good_contract_passes_every_gate(gates):
    assert gates.evaluate(contract(), ScanMode.SAME_DAY, 0.15, GOOD_GREEKS, 10.0) is None


@pytest.mark.parametrize(
    "overrides, gate",
    [
        ({"bid": 0.30, "ask": 0.32}, "premium"),
        ({"bid": 1.90, "ask": 1.94}, "premium"),
        ({"bid": 0.60, "ask": 0.70}, "spread"),
        ({"bid": 0.0, "ask": 0.0, "last": 0.6}, "spread"),
        ({"volume": 7_999}, "volume"),
        ({"openInterest": 44_999}, "open_interest"),
    ],
)
def test_quote_gates(gates, overrides, gate):
    assert gates.check_quote(contract(**overrides), ScanMode.SAME_DAY) == gate


def test_spread_ceiling_depends_on_mode(gates):
    wide = contract(bid=0.60, ask=0.64)

    assert gates.check_quote(wide, ScanMode.SAME_DAY) is None
    assert gates.check_quote(wide, ScanMode.NEXT_DAY) == "spread"


def test_premium_bounds_are_inclusive(gates):
    assert gates.check_quote(contract(bid=0.41, ask=0.43), ScanMode.SAME_DAY) is None


def test_volatility_gates(gates):
    assert gates.check_volatility("SPY", None) == "iv_missing"
    assert gates.check_volatility("SPY", float("nan")) == "iv_missing"
    assert gates.check_volatility("SPY", 0.29) == "iv_ceiling"
    assert gates.check_volatility("QQQ", 0.29) is None
    assert gates.check_volatility("nvda", 0.59) is None
    assert gates.check_volatility("NVDA", 0.61) == "iv_ceiling"


@pytest.mark.parametrize(
    "greeks, gate",
    [
        (GreeksResult(delta=0.11, gamma=0.2, theta=-0.1), "delta"),
        (GreeksResult(delta=-0.30, gamma=0.2, theta=-0.1), "delta"),
        (GreeksResult(delta=-0.20, gamma=0.2, theta=-0.05), "theta"),
        (GreeksResult(delta=0.20, gamma=0.12, theta=-0.1), "gamma"),
        (GreeksResult(delta=-0.20, gamma=0.2, theta=-0.1), None),
    ],
)
def test_greeks_gates(gates, greeks, gate):
    assert gates.check_greeks(greeks) == gate


def test_iv_percentile_gate(gates):
    assert gates.check_iv_percentile(18.0) is None
    assert gates.check_iv_percentile(18.5) == "iv_percentile"


def test_config_normalizes_symbols():
    config = GateConfig(iv_ceilings={"spy": 0.3})

    assert config.iv_ceiling("SPY") == 0.3
    assert config.iv_ceiling("QQQ") == config.default_iv_ceiling
