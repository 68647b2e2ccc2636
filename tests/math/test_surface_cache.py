import pytest

from fusion_engine.math.black_scholes import BlackScholesEngine
from fusion_engine.math.surface import GreeksSurfaceCache, surface_key


@pytest.fixture
def engine():
    return BlackScholesEngine()


def calls(*strikes):
    return [(strike, "call") for strike in strikes]


def test_primed_surface_serves_identical_greeks(engine):
    cache = GreeksSurfaceCache(engine)
    stored = cache.prime("spy", 580.0, calls(575.0, 580.0, 585.0), 0.002, 0.18)

    assert stored == 3
    greeks = cache.greeks("SPY", 580.0, 585.0, 0.002, 0.18, "call")
    assert cache.hits == 1 and cache.misses == 0
    assert greeks == engine.greeks(580.0, 585.0, 0.002, None, 0.18, "call")


def test_per_point_volatility_mapping_skips_missing_points(engine):
    cache = GreeksSurfaceCache(engine)
    stored = cache.prime(
        "QQQ",
        500.0,
        calls(495.0, 500.0, 505.0),
        0.01,
        {(495.0, "call"): 0.22, (500.0, "call"): 0.2},
    )

    assert stored == 2
    assert len(cache) == 2


def test_two_sided_chain_is_served_without_misses(engine):
    chain = [
        (580.0, "call", 0.15),
        (581.0, "call", 0.15),
        (580.0, "put", 0.20),
        (579.0, "put", 0.21),
    ]
    cache = GreeksSurfaceCache(engine)
    cache.prime(
        "SPY",
        580.0,
        [(strike, side) for strike, side, _ in chain],
        0.002,
        {(strike, side): iv for strike, side, iv in chain},
    )

    for strike, side, iv in chain:
        assert cache.greeks("SPY", 580.0, strike, 0.002, iv, side) == engine.greeks(
            580.0, strike, 0.002, None, iv, side
        )

    assert cache.misses == 0
    assert cache.hits == 4
    assert len(cache) == 4


def test_spot_change_forces_recompute(engine):
    cache = GreeksSurfaceCache(engine)
    cache.prime("SPY", 580.0, [(580.0, "put")], 0.002, 0.18)

    assert cache.lookup("SPY", 580.0, "put", 0.002, 581.0, 0.18) is None
    greeks = cache.greeks("SPY", 581.0, 580.0, 0.002, 0.18, "put")
    assert cache.misses == 1
    assert greeks == engine.greeks(581.0, 580.0, 0.002, None, 0.18, "put")
    # The recomputed terms replace the stale entry.
    assert cache.lookup("SPY", 580.0, "put", 0.002, 581.0, 0.18) is not None


def test_clear_by_symbol(engine):
    cache = GreeksSurfaceCache(engine)
    cache.prime("SPY", 580.0, calls(580.0, 585.0), 0.002, 0.18)
    cache.prime("IWM", 220.0, calls(220.0), 0.002, 0.25)

    cache.clear("spy")
    assert len(cache) == 1
    cache.clear()
    assert len(cache) == 0


def test_surface_key_rounds_time_and_normalises_side():
    assert surface_key("spy", 580.0, "C", 0.0020000001) == surface_key("SPY", 580.0, "call", 0.002)
    assert surface_key("SPY", 580.0, "put", 0.002) != surface_key("SPY", 580.0, "call", 0.002)


def test_expired_inputs_bypass_surface(engine):
    cache = GreeksSurfaceCache(engine)

    greeks = cache.greeks("SPY", 590.0, 580.0, 0.0, 0.2, "call")
    assert greeks.delta == 1.0
    assert len(cache) == 0
