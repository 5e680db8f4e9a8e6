"""
Unit tests for the bulk marginal families.
"""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from compound_events.errors import UnsupportedFamilyError
from compound_events.marginals import (
    MARGINAL_CLASSES,
    BulkMarginal,
    EmpiricalMarginal,
    GaussianMarginal,
    MarginalFamily,
    TweedieMarginal,
    as_bulk_marginal,
    fit_bulk_marginal,
    get_family,
)

# Reference distributions used to generate samples for each parametric family
REFERENCE = {
    'exponential': stats.expon(scale=2.0),
    'gamma': stats.gamma(2.0, scale=1.5),
    'gaussian': stats.norm(5.0, 2.0),
    'inverse_gaussian': stats.invgauss(0.5, scale=4.0),
    'logistic': stats.logistic(3.0, 1.0),
    'lognormal': stats.lognorm(0.5, scale=2.0),
    'weibull': stats.weibull_min(1.5, scale=2.0),
    'birnbaum_saunders': stats.fatiguelife(0.5, scale=2.0),
}


@pytest.fixture
def tweedie_sample():
    """Compound Poisson-gamma draws with power 1.5, mean 2 and dispersion 1."""
    rng = np.random.default_rng(5)
    p, mu, phi = 1.5, 2.0, 1.0
    lam = mu ** (2 - p) / (phi * (2 - p))
    alpha = (2 - p) / (p - 1)
    theta = phi * (p - 1) * mu ** (p - 1)
    counts = rng.poisson(lam, 3000)
    sample = np.zeros(counts.size)
    pos = counts > 0
    sample[pos] = rng.gamma(counts[pos] * alpha, theta)
    return sample


# Tests for family resolution

@pytest.mark.parametrize("name,expected", [
    ('LogN', MarginalFamily.LOGNORMAL),
    ('BS', MarginalFamily.BIRNBAUM_SAUNDERS),
    ('Gaus', MarginalFamily.GAUSSIAN),
    ('InvG', MarginalFamily.INVERSE_GAUSSIAN),
    ('Twe', MarginalFamily.TWEEDIE),
    ('Weib', MarginalFamily.WEIBULL),
    ('Wei', MarginalFamily.WEIBULL),
    ('gamma', MarginalFamily.GAMMA),
    (' Exponential ', MarginalFamily.EXPONENTIAL),
    (MarginalFamily.LOGISTIC, MarginalFamily.LOGISTIC),
])
def test_get_family(name, expected):
    assert get_family(name) is expected


@pytest.mark.parametrize("name", ['Pareto', '', None, 3])
def test_get_family_unsupported(name):
    with pytest.raises(UnsupportedFamilyError):
        get_family(name)


def test_every_family_has_a_class():
    assert set(MARGINAL_CLASSES) == set(MarginalFamily)


# Tests for fitting

@pytest.mark.parametrize("family", sorted(REFERENCE))
def test_fit_recovers_median(family):
    sample = REFERENCE[family].rvs(size=2000, random_state=42)
    model = fit_bulk_marginal(sample, family)

    assert isinstance(model, BulkMarginal)
    assert model.family.value == family
    median = float(model.quantile([0.5])[0])
    assert median == pytest.approx(float(np.median(sample)), rel=0.1)


@pytest.mark.parametrize("family", sorted(REFERENCE))
def test_quantile_is_monotone(family):
    sample = REFERENCE[family].rvs(size=500, random_state=1)
    model = fit_bulk_marginal(sample, family)
    q = model.quantile(np.linspace(0.01, 0.99, 50))
    assert np.all(np.isfinite(q))
    assert np.all(np.diff(q) > 0)


def test_gaussian_uses_population_sd():
    sample = np.array([1.0, 2.0, 3.0, 4.0])
    model = fit_bulk_marginal(sample, 'Gaus')
    assert model.params['sd'] == pytest.approx(np.std(sample))
    np.testing.assert_allclose(
        model.quantile([0.25, 0.75]),
        stats.norm.ppf([0.25, 0.75], loc=2.5, scale=np.std(sample))
    )


def test_fit_ignores_missing_values():
    model = fit_bulk_marginal(pd.Series([1.0, np.nan, 2.0, 3.0]), 'gaussian')
    assert model.params['mean'] == pytest.approx(2.0)


@pytest.mark.parametrize("family", ['exponential', 'gamma', 'lognormal', 'weibull', 'BS', 'InvG'])
def test_positive_families_reject_non_positive_data(family):
    with pytest.raises(ValueError):
        fit_bulk_marginal([-1.0, 2.0, 3.0], family)


def test_quantile_rejects_out_of_range():
    model = GaussianMarginal(mean=0.0, sd=1.0)
    with pytest.raises(ValueError):
        model.quantile([1.5])


# Tests for the Tweedie family

def test_tweedie_fit(tweedie_sample):
    model = fit_bulk_marginal(tweedie_sample, 'Twe')
    assert isinstance(model, TweedieMarginal)
    assert 1 < model.params['power'] < 2
    assert model.params['mu'] == pytest.approx(np.mean(tweedie_sample))


def test_tweedie_quantile_inverts_cdf(tweedie_sample):
    model = TweedieMarginal.fit(tweedie_sample)
    p0 = float(model.cdf(0.0)[0])
    u = np.array([p0 / 2, p0 + 0.05, 0.5, 0.9, 0.99])
    q = model.quantile(u)

    assert q[0] == 0.0
    assert np.all(np.diff(q) >= 0)
    np.testing.assert_allclose(model.cdf(q[1:]), u[1:], atol=1e-6)


def test_tweedie_point_mass_matches_zero_fraction(tweedie_sample):
    model = TweedieMarginal.fit(tweedie_sample)
    observed = np.mean(tweedie_sample == 0)
    assert float(model.cdf(0.0)[0]) == pytest.approx(observed, abs=0.05)


def test_tweedie_quantile_beyond_truncated_series():
    model = TweedieMarginal(power=1.5, mu=1.0, phi=1.0)
    c_max = float(model.cdf(np.inf)[0])
    assert c_max <= 1.0

    q = model.quantile([0.9999, 1 - 1e-14, c_max, 1.0])
    assert np.isfinite(q[0]) and q[0] > 0
    assert np.all(np.isinf(q[1:]))


def test_tweedie_rejects_power_outside_range():
    with pytest.raises(ValueError):
        TweedieMarginal(power=2.5, mu=1.0, phi=1.0)


def test_tweedie_rejects_negative_data():
    with pytest.raises(ValueError):
        fit_bulk_marginal([-0.5, 1.0, 2.0], 'tweedie')


# Tests for the empirical family and argument resolution

def test_empirical_quantile():
    model = EmpiricalMarginal([4.0, 1.0, 3.0, 2.0])
    np.testing.assert_allclose(model.quantile([0.0, 0.5, 1.0]), [1.0, 2.5, 4.0])


def test_as_bulk_marginal_variants():
    sample = REFERENCE['gaussian'].rvs(size=200, random_state=3)
    fitted = GaussianMarginal(mean=0.0, sd=1.0)

    assert as_bulk_marginal(fitted) is fitted
    assert isinstance(as_bulk_marginal('LogN', np.abs(sample)), BulkMarginal)
    assert isinstance(as_bulk_marginal(sample), EmpiricalMarginal)
    with pytest.raises(ValueError):
        as_bulk_marginal('gaussian')
    with pytest.raises(UnsupportedFamilyError):
        as_bulk_marginal('Pareto', sample)


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
