from datetime import date

import pytest

from fusion_engine.math.indicators import IVSkew
from fusion_engine.models import GreeksResult, OptionContractSnapshot
from fusion_engine.scoring import DEFAULT_SCORER_CONFIG, LayerContext, SignalScorer, merge_config
from fusion_engine.scoring.layers import IVSkewLayer, MaxPainLayer, RSIExtremeLayer, SweepLayer

SYMBOL = "SPY251017C00581000"


def build_contract(volume=1_000, open_interest=50_000):
    return OptionContractSnapshot(
        symbol=SYMBOL,
        underlying="SPY",
        strike=581.0,
        expiration=date(2025, 10, 17),
        type="call",
        bid=0.60,
        ask=0.64,
        volume=volume,
        openInterest=open_interest,
        impliedVolatility=0.15,
    )


def build_context(scorer, **overrides):
    fields = {
        "contract": build_contract(),
        "greeks": GreeksResult(delta=0.2, gamma=0.15, theta=-0.1),
        "underlying_price": 580.0,
        "days_to_expiration": 0,
        "config": scorer.config,
    }
    fields.update(overrides)
    return LayerContext(**fields)


def test_no_signals_scores_zero():
    scorer = SignalScorer()

    breakdown = scorer.score(build_context(scorer))

    assert breakdown.composite == 0
    assert breakdown.reasons == []
    assert not scorer.is_eligible(breakdown)


def test_all_layers_firing_reaches_one_hundred():
    scorer = SignalScorer()
    context = build_context(
        scorer,
        contract=build_contract(volume=40_000, open_interest=50_000),
        max_pain=580.0,
        skew=IVSkew(call_iv=0.14, put_iv=0.20),
        rsi=25.0,
    )

    breakdown = scorer.score(context)

    assert breakdown.layers == {"max_pain": 30, "iv_skew": 25, "sweep": 30, "rsi_extreme": 15}
    assert breakdown.composite == 100
    assert breakdown.active_layers == 4
    assert len(breakdown.reasons) == 4
    assert scorer.is_eligible(breakdown)


def test_single_layer_cannot_qualify_even_above_threshold():
    scorer = SignalScorer({"points": {"max_pain": 90}})

    breakdown = scorer.score(build_context(scorer, max_pain=580.0))

    assert breakdown.composite == 90
    assert breakdown.active_layers == 1
    assert not scorer.is_eligible(breakdown)


def test_composite_at_exactly_the_minimum_qualifies():
    scorer = SignalScorer()
    breakdown = scorer.score(
        build_context(
            scorer,
            contract=build_contract(volume=30_000, open_interest=50_000),
            max_pain=580.0,
            skew=IVSkew(call_iv=0.14, put_iv=0.20),
        )
    )

    assert breakdown.composite == 85
    assert scorer.is_eligible(breakdown)


def test_max_pain_proximity_threshold():
    scorer = SignalScorer()

    near = MaxPainLayer().score(build_context(scorer, max_pain=583.9))
    far = MaxPainLayer().score(build_context(scorer, max_pain=584.1))

    assert near[0] == 30
    assert far == (0, [])


def test_iv_skew_requires_calls_below_ratio_of_puts():
    scorer = SignalScorer()

    assert IVSkewLayer().score(build_context(scorer, skew=IVSkew(0.18, 0.20)))[0] == 25
    assert IVSkewLayer().score(build_context(scorer, skew=IVSkew(0.19, 0.20)))[0] == 0
    assert IVSkewLayer().score(build_context(scorer))[0] == 0


def test_detected_sweep_scores_without_volume_vacuum():
    scorer = SignalScorer()

    points, reasons = SweepLayer().score(build_context(scorer, swept_symbols=frozenset({SYMBOL})))

    assert points == 30
    assert "sweep" in reasons[0].lower()


def test_detected_sweeps_can_be_switched_off():
    scorer = SignalScorer({"detected_sweeps": False})

    points, reasons = SweepLayer().score(build_context(scorer, swept_symbols=frozenset({SYMBOL})))

    assert points == 0
    assert reasons == []


@pytest.mark.parametrize(
    "rsi_value, dte, expected",
    [(25.0, 0, 15), (75.0, 3, 15), (50.0, 0, 0), (25.0, 4, 0)],
)
def test_rsi_extreme_only_near_expiry(rsi_value, dte, expected):
    scorer = SignalScorer()

    points, _ = RSIExtremeLayer().score(build_context(scorer, rsi=rsi_value, days_to_expiration=dte))

    assert points == expected


def test_disabled_layers_are_skipped():
    scorer = SignalScorer({"enabled": ["max_pain", "sweep"]})

    breakdown = scorer.score(build_context(scorer, skew=IVSkew(0.10, 0.20), max_pain=580.0))

    assert scorer.enabled_layers == ["max_pain", "sweep"]
    assert breakdown.iv_skew == 0
    assert breakdown.max_pain == 30


def test_merge_config_overrides_without_mutating_defaults():
    merged = merge_config({"points": {"sweep": 40}, "thresholds": {"rsi_max_dte": 5}, "min_composite": 70})

    assert merged["points"] == {"max_pain": 30, "iv_skew": 25, "sweep": 40, "rsi_extreme": 15}
    assert merged["thresholds"]["rsi_max_dte"] == 5
    assert merged["thresholds"]["iv_skew_ratio"] == 0.92
    assert merged["min_composite"] == 70
    assert DEFAULT_SCORER_CONFIG["points"]["sweep"] == 30
    assert merge_config(None) == DEFAULT_SCORER_CONFIG
