"""
Unit tests for return-level grids, isoline tracing, resampling and merging.
"""

import tracemalloc

import numpy as np
import pandas as pd
import pytest
from statsmodels.distributions.copula.api import GumbelCopula, IndependenceCopula

from compound_events.errors import NoIsolineError
from compound_events.isolines import (
    LOWER_SENTINEL,
    close_isoline,
    conditional_isoline,
    extract_isoline,
    isoline_to_physical,
    merge_isolines,
    resample_isoline,
    return_level_grid,
    uniform_grid,
    years_of_record,
)
from compound_events.marginals import GaussianMarginal
from compound_events.univariate import TailModel


@pytest.fixture
def linear_field():
    """Grid with z(u, v) = u + v, whose level sets are straight lines."""
    u = uniform_grid(0.01)
    v = uniform_grid(0.01)
    return u, v, np.add.outer(v, u)


def _grid_isoline(x, y):
    return pd.DataFrame({'x': np.round(x, 10), 'y': y})


# Tests for grids

def test_uniform_grid():
    grid = uniform_grid(0.01)
    assert len(grid) == 99
    assert grid[0] == pytest.approx(0.01)
    assert grid[-1] == pytest.approx(0.99)
    with pytest.raises(ValueError):
        uniform_grid(0.6)
    with pytest.raises(ValueError):
        uniform_grid(-0.1)


def test_years_of_record_counts_complete_rows():
    data = pd.DataFrame({'a': [1.0, np.nan, 3.0, 4.0], 'b': [1.0, 2.0, np.nan, 4.0]})
    assert years_of_record(data, 'a', 'b', mu=2.0) == pytest.approx(1.0)
    with pytest.raises(ValueError):
        years_of_record(data, 'a', 'b', mu=0.0)


def test_return_level_grid_independence():
    grid = return_level_grid(IndependenceCopula(), n_conditional=50, years=10.0, step=0.01)
    assert grid['el'] == pytest.approx(0.2)
    assert grid['z'].shape == (99, 99)
    # z[j, i] sits at (u[i], v[j])
    i, j = 49, 9
    expected = 0.2 / ((1 - grid['u'][i]) * (1 - grid['v'][j]))
    assert grid['z'][j, i] == pytest.approx(expected)


def test_return_level_grid_blocks_match_single_pass():
    copula = GumbelCopula(theta=1.5)
    blocked = return_level_grid(copula, n_conditional=50, years=10.0, step=0.01, block_size=500)
    single = return_level_grid(copula, n_conditional=50, years=10.0, step=0.01, block_size=10 ** 6)
    np.testing.assert_allclose(blocked['z'], single['z'])


def test_return_level_grid_memory_is_bounded():
    step = 0.002
    n = len(uniform_grid(step))
    tracemalloc.start()
    try:
        grid = return_level_grid(IndependenceCopula(), n_conditional=50, years=10.0,
                                 step=step, block_size=10_000)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert grid['z'].shape == (n, n)
    # Output grid plus a few block-sized temporaries, never several full grids
    assert peak < grid['z'].nbytes + 2_000_000


def test_return_level_grid_rejects_empty_regime():
    with pytest.raises(ValueError):
        return_level_grid(IndependenceCopula(), n_conditional=0, years=10.0, step=0.01)


# Tests for extract_isoline

def test_extract_isoline_follows_level(linear_field):
    u, v, z = linear_field
    contour = extract_isoline(u, v, z, 1.0)
    assert contour.shape[1] == 2
    np.testing.assert_allclose(contour.sum(axis=1), 1.0, atol=1e-9)


def test_extract_isoline_out_of_range(linear_field):
    u, v, z = linear_field
    with pytest.raises(NoIsolineError):
        extract_isoline(u, v, z, 5.0)
    with pytest.raises(NoIsolineError):
        extract_isoline(u, v, z, 0.0)


def test_return_period_too_large_for_grid():
    grid = return_level_grid(IndependenceCopula(), n_conditional=50, years=10.0, step=0.01)
    with pytest.raises(NoIsolineError):
        extract_isoline(grid['u'], grid['v'], grid['z'], 1e6)


# Tests for mapping and resampling

def test_isoline_to_physical_components():
    contour = np.array([[0.5, 0.5], [0.9, 0.1]])
    tail = TailModel(threshold=2.0, scale=1.0, shape=0.0, exceedance_rate=0.05)
    bulk = GaussianMarginal(mean=0.0, sd=1.0)

    out = isoline_to_physical(contour, 0, tail, bulk)
    # Conditioning coordinate uses the GPD with rate 1
    np.testing.assert_allclose(out[:, 0], 2.0 - np.log(1.0 - contour[:, 0]))
    np.testing.assert_allclose(out[:, 1], bulk.quantile(contour[:, 1]))

    swapped = isoline_to_physical(contour, 1, tail, bulk)
    np.testing.assert_allclose(swapped[:, 1], 2.0 - np.log(1.0 - contour[:, 1]))
    with pytest.raises(ValueError):
        isoline_to_physical(contour, 2, tail, bulk)


def test_resample_isoline_both_directions():
    points = np.column_stack([np.linspace(0, 1, 11), np.linspace(1, 0, 11)])
    iso = resample_isoline(points, resolution=0.1)

    assert list(iso.columns) == ['x', 'y']
    assert len(iso) == 22
    assert iso['x'].is_monotonic_increasing
    np.testing.assert_allclose(iso['x'] + iso['y'], 1.0, atol=1e-9)


def test_resample_isoline_averages_ties():
    points = np.array([[0.0, 1.0], [0.0, 3.0], [1.0, 0.0]])
    iso = resample_isoline(points, resolution=0.5)
    assert iso.loc[iso['x'] == 0.0, 'y'].iloc[0] == pytest.approx(2.0)


def test_conditional_isoline_pipeline():
    tail = TailModel(threshold=2.0, scale=1.0, shape=0.1, exceedance_rate=0.05)
    bulk = GaussianMarginal(mean=0.0, sd=1.0)
    branch = conditional_isoline(IndependenceCopula(), n_conditional=50, years=10.0,
                                 return_period=20.0, conditioning=0, tail=tail, bulk=bulk,
                                 grid_step=0.01, resolution=0.01)
    assert set(branch) == {'contour', 'points', 'isoline'}
    assert branch['points'][:, 0].min() >= 2.0
    assert branch['isoline']['x'].is_monotonic_increasing


# Tests for merging and closing

def test_merge_takes_larger_y():
    x = np.arange(0, 201) * 0.01
    iso1 = _grid_isoline(x, 2.0 - x)
    iso2 = _grid_isoline(x, 2.5 - 1.5 * x)
    merged = merge_isolines(iso1, iso2, resolution=0.01)

    expected = np.maximum(2.0 - x, 2.5 - 1.5 * x)
    np.testing.assert_allclose(merged['x'], x, atol=1e-12)
    np.testing.assert_allclose(merged['y'], expected)
    assert np.all(merged['y'].values >= iso1['y'].values - 1e-12)
    assert np.all(merged['y'].values >= iso2['y'].values - 1e-12)
    assert set(merged['source']) <= {'con1', 'con2', 'both'}
    assert merged['source'].iloc[0] == 'con2'
    assert merged['source'].iloc[100] == 'both'
    assert merged['source'].iloc[-1] == 'con1'


def test_merge_keeps_single_regime_values():
    iso1 = _grid_isoline(np.arange(50, 101) * 0.01, np.full(51, 1.0))
    iso2 = _grid_isoline(np.arange(0, 61) * 0.01, np.full(61, 0.5))
    merged = merge_isolines(iso1, iso2, resolution=0.01)

    assert len(merged) == 101
    low = merged[merged['x'] < 0.495]
    assert np.all(low['y'] == 0.5) and np.all(low['source'] == 'con2')
    high = merged[merged['x'] > 0.605]
    assert np.all(high['y'] == 1.0) and np.all(high['source'] == 'con1')


def test_merge_drops_gaps_and_rejects_negative_support():
    iso1 = _grid_isoline(np.array([0.0, 0.01]), np.array([1.0, 0.9]))
    iso2 = _grid_isoline(np.array([0.05]), np.array([0.2]))
    merged = merge_isolines(iso1, iso2, resolution=0.01)
    np.testing.assert_allclose(merged['x'], [0.0, 0.01, 0.05])

    negative = _grid_isoline(np.array([-2.0, -1.0]), np.array([1.0, 0.5]))
    with pytest.raises(NoIsolineError):
        merge_isolines(negative, negative, resolution=0.01)


def test_close_isoline():
    merged = pd.DataFrame({'x': [0.0, 0.5, 1.0], 'y': [2.0, 1.0, 0.5], 'source': 'con1'})
    closed = close_isoline(merged)

    assert list(closed.columns) == ['x', 'y']
    # (0, 2) already exists, so only the sentinel point is added
    assert len(closed) == 4
    assert tuple(closed.iloc[0]) == (0.0, 2.0)
    assert tuple(closed.iloc[-1]) == (1.0, LOWER_SENTINEL)
    assert not closed.duplicated().any()


def test_close_isoline_prepends_axis_point():
    merged = pd.DataFrame({'x': [0.3, 0.5], 'y': [1.0, 0.8], 'source': 'con2'})
    closed = close_isoline(merged, sentinel=-1.0)
    assert tuple(closed.iloc[0]) == (0.0, 1.0)
    assert tuple(closed.iloc[-1]) == (0.5, -1.0)
    assert len(closed) == 4


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
