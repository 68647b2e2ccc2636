import math

import numpy as np
import pytest
from scipy.special import erf

from fusion_engine.math.erf import ErfLookupTable, polynomial_erf


def test_table_matches_reference_erf_across_domain():
    table = ErfLookupTable()
    grid = np.linspace(-4.0, 4.0, 16001)
    errors = [abs(table.lookup(float(x)) - float(erf(x))) for x in grid]

    assert max(errors) < 1e-4


def test_lookup_clamps_outside_domain():
    table = ErfLookupTable()

    assert table.lookup(-12.0) == table.lookup(-4.0)
    assert table.lookup(9.0) == table.lookup(4.0)
    assert table.lookup(9.0) == pytest.approx(1.0, abs=1e-7)


def test_cdf_is_symmetric_and_centered():
    table = ErfLookupTable()

    assert table.cdf(0.0) == pytest.approx(0.5, abs=1e-7)
    for x in (0.3, 1.1, 2.4):
        assert table.cdf(x) + table.cdf(-x) == pytest.approx(1.0, abs=1e-6)
    assert table.cdf(1.96) == pytest.approx(0.975, abs=1e-4)


def test_polynomial_erf_is_odd():
    values = polynomial_erf(np.array([-1.5, 0.0, 1.5]))

    assert math.isclose(values[0], -values[2], rel_tol=1e-12)
    assert values[1] == 0.0


def test_invalid_domain_rejected():
    with pytest.raises(ValueError):
        ErfLookupTable(step=0)
    with pytest.raises(ValueError):
        ErfLookupTable(x_min=1.0, x_max=-1.0)


def test_table_size_covers_grid():
    table = ErfLookupTable(step=0.5, x_min=-1.0, x_max=1.0)

    assert len(table) == 5
