# src/compound_events/design_events.py
"""
Module: design_events.py
Responsibilities:
- Simulate physical-scale pairs from each conditioning regime's copula
- Pool both regimes in proportion to their conditional sample sizes
- Score composite-isoline points with a bivariate kernel density estimate
- Select the most-likely, full-dependence and ensemble design events
- Orchestrate the complete bivariate design-event estimation
"""

import numpy as np
import pandas as pd
import logging
from typing import Any, Dict, Optional, Tuple, Union

from scipy.stats import gaussian_kde

from compound_events.copula_fit import RandomState, resolve_random_state, simulate_copula
from compound_events.errors import InsufficientDataError, SamplingError
from compound_events.isolines import (
    DEFAULT_GRID_STEP,
    DEFAULT_RESOLUTION,
    LOWER_SENTINEL,
    close_isoline,
    conditional_isoline,
    merge_isolines,
    years_of_record
)
from compound_events.joint_sim import DEFAULT_MU, model_table
from compound_events.marginals import BulkMarginal, as_bulk_marginal
from compound_events.univariate import TailModel, as_tail_model, gpd_inverse

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

DEFAULT_N_SIM = 10000  # Size of the pooled copula sample used for the KDE
DEFAULT_N_ENSEMBLE = 100


def simulate_regime(
    copula: Any,
    count: int,
    conditioning: int,
    tail: TailModel,
    bulk: BulkMarginal,
    random_state: RandomState = None
) -> np.ndarray:
    """
    Simulate (x, y) pairs in physical units from one conditioning regime.

    Copula column ``conditioning`` is mapped through the GPD tail with
    rate 1 (the regime is conditioned on exceedance) and the other column
    through the bulk marginal of the non-conditioned variable.

    Returns
    -------
    np.ndarray
        (count, 2) array of (x, y) pairs
    """
    tail = as_tail_model(tail)
    u = simulate_copula(copula, count, random_state=random_state)
    if u.shape[1] < 2:
        raise SamplingError("Conditional regime copula must be bivariate")
    other = 1 - conditioning

    out = np.empty((count, 2))
    out[:, conditioning] = gpd_inverse(u[:, conditioning], tail.threshold, tail.scale,
                                       tail.shape, rate=1.0)
    out[:, other] = bulk.quantile(u[:, other])
    return out


def regime_counts(n_total: int, n_con1: int, n_con2: int) -> Tuple[int, int]:
    """Split ``n_total`` draws in proportion to the conditional sample sizes."""
    if n_con1 + n_con2 <= 0:
        raise InsufficientDataError("Both conditional samples are empty")
    share = n_con1 / (n_con1 + n_con2)
    return int(round(n_total * share)), int(round(n_total * (1 - share)))


def pooled_sample(
    regimes: Tuple[Dict[str, Any], Dict[str, Any]],
    n_sim: int,
    random_state: RandomState = None
) -> pd.DataFrame:
    """
    Pool copula-simulated pairs from both conditioning regimes.

    Parameters
    ----------
    regimes : tuple of two dicts
        Each with keys 'copula', 'n_conditional', 'tail', 'bulk'; the first
        is conditioned on x, the second on y.
    n_sim : int
        Total number of pairs, split by conditional sample size.

    Returns
    -------
    pd.DataFrame
        Columns ['x', 'y', 'regime']
    """
    rng = resolve_random_state(random_state)
    counts = regime_counts(n_sim, regimes[0]['n_conditional'], regimes[1]['n_conditional'])

    frames = []
    for conditioning, (regime, count) in enumerate(zip(regimes, counts)):
        if count == 0:
            logger.warning(f"Regime {conditioning + 1} receives no simulated pairs")
            continue
        xy = simulate_regime(regime['copula'], count, conditioning, regime['tail'],
                             regime['bulk'], random_state=rng)
        frames.append(pd.DataFrame({'x': xy[:, 0], 'y': xy[:, 1],
                                    'regime': f'con{conditioning + 1}'}))
    if not frames:
        raise SamplingError(f"Pooled sample size {n_sim} leaves no draws for either regime")
    return pd.concat(frames, ignore_index=True)


def score_isoline(
    points: np.ndarray,
    sample: np.ndarray,
    bw_method: Union[str, float, None] = 'scott'
) -> np.ndarray:
    """
    Bivariate kernel density of ``sample`` evaluated at isoline points.

    The Gaussian kernel uses the full sample covariance scaled by a
    normal-reference bandwidth factor (Scott's rule by default).

    Parameters
    ----------
    points : np.ndarray
        (N, 2) isoline points.
    sample : np.ndarray
        (M, 2) pooled simulated sample.
    bw_method : str, float or None
        Passed to ``scipy.stats.gaussian_kde``.

    Returns
    -------
    np.ndarray
        Density at each point
    """
    sample = np.asarray(sample, dtype=float)
    if sample.shape[0] < 3:
        raise InsufficientDataError(f"Too few simulated pairs ({sample.shape[0]}) for a KDE")
    try:
        kde = gaussian_kde(sample.T, bw_method=bw_method)
    except np.linalg.LinAlgError as e:
        raise InsufficientDataError(f"Simulated sample is degenerate: {e}") from e
    return kde(np.asarray(points, dtype=float).T)


def select_design_events(
    isoline: pd.DataFrame,
    density: np.ndarray,
    n_ensemble: int = DEFAULT_N_ENSEMBLE,
    random_state: RandomState = None
) -> Dict[str, Any]:
    """
    Pick design events on a closed composite isoline.

    - most likely: the point of highest density (first one on ties)
    - full dependence: (max x, max y) over the isoline, the corner reached
      when both variables attain their univariate return levels
    - ensemble: ``n_ensemble`` points drawn with replacement with
      probability proportional to density

    Parameters
    ----------
    isoline : pd.DataFrame
        Closed isoline with columns ['x', 'y'].
    density : np.ndarray
        Density at each isoline point.

    Returns
    -------
    dict
        {'most_likely': (x, y), 'full_dependence': (x, y),
         'ensemble': DataFrame ['x', 'y'], 'ensemble_index': np.ndarray}

    Raises
    ------
    SamplingError
        If the density weights are unusable or ``n_ensemble`` is not positive
    """
    density = np.asarray(density, dtype=float)
    if len(isoline) != density.size:
        raise ValueError(f"Isoline has {len(isoline)} points but {density.size} densities")
    if isinstance(n_ensemble, bool) or int(n_ensemble) != n_ensemble or n_ensemble <= 0:
        raise SamplingError(f"Ensemble size must be a positive integer, got {n_ensemble!r}")
    if not np.all(np.isfinite(density)) or np.any(density < 0) or density.sum() <= 0:
        raise SamplingError("Isoline densities are not usable sampling weights")

    x = isoline['x'].values
    y = isoline['y'].values

    best = int(np.argmax(density))
    most_likely = (float(x[best]), float(y[best]))
    # The synthetic first point repeats the largest merged y, so it cannot
    # raise the maximum
    full_dependence = (float(x.max()), float(y.max()))

    rng = resolve_random_state(random_state)
    index = rng.choice(density.size, size=int(n_ensemble), replace=True, p=density / density.sum())
    ensemble = pd.DataFrame({'x': x[index], 'y': y[index]})

    return {
        'most_likely': most_likely,
        'full_dependence': full_dependence,
        'ensemble': ensemble,
        'ensemble_index': index
    }


def _resolve_variables(table: pd.DataFrame, con1: Optional[str], con2: Optional[str]) -> Tuple[str, str]:
    if con1 is None or con2 is None:
        if table.shape[1] < 2:
            raise ValueError("Data must contain two variable columns")
        con1 = con1 if con1 is not None else str(table.columns[0])
        con2 = con2 if con2 is not None else str(table.columns[1])
    for name in (con1, con2):
        if name not in table.columns:
            raise ValueError(f"Variable '{name}' not found in data")
    return con1, con2


def estimate_design_events(
    data: pd.DataFrame,
    con_sample1: pd.DataFrame,
    con_sample2: pd.DataFrame,
    tail1: Union[TailModel, Dict[str, Any]],
    tail2: Union[TailModel, Dict[str, Any]],
    copula1: Any,
    copula2: Any,
    marginal1: Any,
    marginal2: Any,
    return_period: float,
    con1: Optional[str] = None,
    con2: Optional[str] = None,
    mu: float = DEFAULT_MU,
    n_sim: int = DEFAULT_N_SIM,
    n_ensemble: int = DEFAULT_N_ENSEMBLE,
    grid_step: float = DEFAULT_GRID_STEP,
    resolution: float = DEFAULT_RESOLUTION,
    sentinel: float = LOWER_SENTINEL,
    bw_method: Union[str, float, None] = 'scott',
    random_state: RandomState = None
) -> Dict[str, Any]:
    """
    Derive bivariate design events for a joint return period.

    Parameters
    ----------
    data : pd.DataFrame
        Concurrent record of both variables (leading index column allowed).
    con_sample1, con_sample2 : pd.DataFrame
        Conditional samples conditioned on ``con1`` and ``con2``; both carry
        columns ``con1`` and ``con2``.
    tail1, tail2 : TailModel or dict
        GPD tails of ``con1`` and ``con2`` above their fixed thresholds.
    copula1, copula2 : Any
        Bivariate copulas fitted to each conditional sample, variables in
        (con1, con2) order.
    marginal1 : BulkMarginal, family tag or raw sample
        Bulk marginal of ``con2`` in the first regime; a family tag is fitted
        to ``con_sample1[con2]``.
    marginal2 : BulkMarginal, family tag or raw sample
        Bulk marginal of ``con1`` in the second regime; a family tag is fitted
        to ``con_sample2[con1]``.
    return_period : float
        Joint return period in years.
    con1, con2 : str, optional
        Variable names; default to the first two variable columns of ``data``.
    mu : float, optional
        Average number of observations per year.
    n_sim : int, optional
        Size of the pooled simulated sample used for the KDE.
    n_ensemble : int, optional
        Number of ensemble design events.
    grid_step : float, optional
        Spacing of the (u, v) return-level grid.
    resolution : float, optional
        Spacing of resampled isolines in physical units.
    sentinel : float, optional
        y of the point closing the composite isoline.
    bw_method : str, float or None, optional
        KDE bandwidth rule passed to ``scipy.stats.gaussian_kde``.
    random_state : None, int or np.random.Generator
        Seed or generator; the only source of randomness in the call.

    Returns
    -------
    dict
        {
          'full_dependence': pd.Series,
          'most_likely': pd.Series,
          'ensemble': pd.DataFrame,
          'isoline': pd.DataFrame (closed composite isoline + 'density'),
          'merged_isoline': pd.DataFrame (+ 'source'),
          'regime_isolines': {con1: DataFrame, con2: DataFrame},
          'simulated_sample': pd.DataFrame (+ 'regime'),
          'con_sample1', 'con_sample2': the conditional samples,
          'return_period': float
        }
    """
    if return_period <= 0:
        raise ValueError(f"Return period must be positive, got {return_period}")

    table = model_table(data)
    con1, con2 = _resolve_variables(table, con1, con2)
    for name, sample in (('con_sample1', con_sample1), ('con_sample2', con_sample2)):
        missing = {con1, con2} - set(sample.columns)
        if missing:
            raise ValueError(f"{name} is missing columns {sorted(missing)}")

    rng = resolve_random_state(random_state)
    years = years_of_record(table, con1, con2, mu)
    logger.info(f"Estimating {return_period}-year design events for ({con1}, {con2}) "
                f"from {years:.2f} years of record")

    regimes = (
        {
            'copula': copula1,
            'n_conditional': len(con_sample1),
            'tail': as_tail_model(tail1),
            'bulk': as_bulk_marginal(marginal1, con_sample1[con2])
        },
        {
            'copula': copula2,
            'n_conditional': len(con_sample2),
            'tail': as_tail_model(tail2),
            'bulk': as_bulk_marginal(marginal2, con_sample2[con1])
        }
    )

    branches = [
        conditional_isoline(
            regime['copula'], regime['n_conditional'], years, return_period,
            conditioning, regime['tail'], regime['bulk'],
            grid_step=grid_step, resolution=resolution
        )
        for conditioning, regime in enumerate(regimes)
    ]

    merged = merge_isolines(branches[0]['isoline'], branches[1]['isoline'], resolution)
    closed = close_isoline(merged, sentinel=sentinel)
    logger.info(f"Composite isoline: {len(merged)} merged points, {len(closed)} after closing")

    simulated = pooled_sample(regimes, n_sim, random_state=rng)
    density = score_isoline(closed[['x', 'y']].values, simulated[['x', 'y']].values, bw_method)
    events = select_design_events(closed, density, n_ensemble, random_state=rng)

    names = {'x': con1, 'y': con2}
    full_dependence = pd.Series(dict(zip((con1, con2), events['full_dependence'])),
                                name='full_dependence')
    most_likely = pd.Series(dict(zip((con1, con2), events['most_likely'])), name='most_likely')
    logger.info(f"Most-likely event: {most_likely.to_dict()}; "
                f"full-dependence event: {full_dependence.to_dict()}")

    isoline = closed.rename(columns=names)
    isoline['density'] = density

    return {
        'full_dependence': full_dependence,
        'most_likely': most_likely,
        'ensemble': events['ensemble'].rename(columns=names),
        'isoline': isoline,
        'merged_isoline': merged.rename(columns=names),
        'regime_isolines': {
            con1: branches[0]['isoline'].rename(columns=names),
            con2: branches[1]['isoline'].rename(columns=names)
        },
        'simulated_sample': simulated.rename(columns=names),
        'con_sample1': con_sample1,
        'con_sample2': con_sample2,
        'return_period': float(return_period)
    }
