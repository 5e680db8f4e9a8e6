# src/compound_events/isolines.py
"""
Module: isolines.py
Responsibilities:
- Build the joint return-level grid of one conditioning regime
- Trace the isoline of a target return period (marching squares)
- Map isolines from the copula scale to physical units
- Resample isolines in both coordinate directions
- Merge the two regime isolines into one closed composite isoline
"""
import numpy as np
import pandas as pd
import logging
from typing import Any, Dict

import contourpy

from compound_events.copula_fit import CDF_CHUNK_SIZE, compute_joint_exceedance
from compound_events.errors import NoIsolineError
from compound_events.marginals import BulkMarginal
from compound_events.univariate import TailModel, as_tail_model, gpd_inverse

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
DEFAULT_GRID_STEP = 1e-4  # Spacing of the (u, v) grid
DEFAULT_RESOLUTION = 0.01  # Spacing of resampled isolines, in physical units
LOWER_SENTINEL = -100.0  # y of the point closing the composite isoline
MIN_SURVIVAL = 1e-300  # Floor on 1 - u - v + C(u, v)


def uniform_grid(step: float = DEFAULT_GRID_STEP) -> np.ndarray:
    """
    Interior grid step, 2*step, ..., 1 - step on the unit interval.

    Raises
    ------
    ValueError
        If the step does not leave at least two interior nodes
    """
    if not np.isfinite(step) or step <= 0:
        raise ValueError(f"Grid step must be positive, got {step}")
    n = int(round(1.0 / step))
    if n < 3:
        raise ValueError(f"Grid step {step} is too coarse")
    return np.round(np.arange(1, n) * step, 12)


def years_of_record(data: pd.DataFrame, con1: str, con2: str, mu: float) -> float:
    """Length of the concurrent record in years: complete rows divided by ``mu``."""
    if mu <= 0:
        raise ValueError(f"Events per year must be positive, got {mu}")
    complete = int((data[con1].notna() & data[con2].notna()).sum())
    if complete == 0:
        raise ValueError("Data contain no concurrent observations")
    return complete / mu


def return_level_grid(
    copula: Any,
    n_conditional: int,
    years: float,
    step: float = DEFAULT_GRID_STEP,
    block_size: int = CDF_CHUNK_SIZE
) -> Dict[str, Any]:
    """
    Joint return level on a dense (u, v) grid for one conditioning regime.

    With lambda = n_conditional / years the annual rate of conditional
    events and EL = 1 / lambda, the return level at (u, v) is

        EL / (1 - u - v + C(u, v))

    The grid is filled in blocks of rows of v, so apart from the output
    only about ``block_size`` nodes are held in memory at once.

    Parameters
    ----------
    copula : Any
        Fitted bivariate copula of the regime (must expose ``cdf``).
    n_conditional : int
        Number of events in the regime's conditional sample.
    years : float
        Length of the record in years.
    step : float, optional
        Grid spacing.
    block_size : int, optional
        Approximate number of grid nodes evaluated per block.

    Returns
    -------
    dict
        {'u': (nu,), 'v': (nv,), 'z': (nv, nu) with z[j, i] at (u[i], v[j]),
         'el': mean inter-arrival time in years}
    """
    if n_conditional <= 0:
        raise ValueError(f"Conditional sample must contain events, got {n_conditional}")
    if years <= 0:
        raise ValueError(f"Years of record must be positive, got {years}")
    if block_size <= 0:
        raise ValueError(f"Block size must be positive, got {block_size}")

    grid = uniform_grid(step)
    el = 1.0 / (n_conditional / years)
    n = grid.size
    rows = max(1, int(block_size) // n)
    logger.info(f"Evaluating copula CDF on {n * n} grid nodes (step={step}, {rows} rows per block)")

    z = np.empty((n, n), dtype=float)
    for start in range(0, n, rows):
        stop = min(start + rows, n)
        uu, vv = np.meshgrid(grid, grid[start:stop])
        survival = compute_joint_exceedance(copula, uu, vv)
        z[start:stop] = el / np.maximum(survival, MIN_SURVIVAL)
    return {'u': grid, 'v': grid, 'z': z, 'el': el}


def extract_isoline(
    u: np.ndarray,
    v: np.ndarray,
    z: np.ndarray,
    level: float
) -> np.ndarray:
    """
    Trace the level set z == level with marching squares.

    When the tracer returns several disjoint branches the first one emitted
    is used.

    Parameters
    ----------
    u, v : np.ndarray
        Grid coordinates, z[j, i] sits at (u[i], v[j]).
    z : np.ndarray
        Gridded return levels.
    level : float
        Return period to contour.

    Returns
    -------
    np.ndarray
        Ordered (N, 2) array of (u, v) points

    Raises
    ------
    NoIsolineError
        If ``level`` lies outside the grid's value range or no line is found
    """
    finite = z[np.isfinite(z)]
    if finite.size == 0:
        raise NoIsolineError("Return-level grid contains no finite values")
    z_min, z_max = float(finite.min()), float(finite.max())
    if not z_min <= level <= z_max:
        raise NoIsolineError(
            f"Return period {level} outside the achievable range [{z_min:.4g}, {z_max:.4g}]"
        )

    generator = contourpy.contour_generator(u, v, z, line_type='Separate')
    lines = [line for line in generator.lines(level) if len(line) > 1]
    if not lines:
        raise NoIsolineError(f"No isoline found for return period {level}")
    if len(lines) > 1:
        logger.warning(f"{len(lines)} isoline branches found for return period {level}, "
                       f"using the first")
    return np.asarray(lines[0], dtype=float)


def isoline_to_physical(
    contour: np.ndarray,
    conditioning: int,
    tail: TailModel,
    bulk: BulkMarginal
) -> np.ndarray:
    """
    Map a copula-scale isoline to physical units.

    The conditioning coordinate goes through the GPD tail (rate 1, the
    sample is already conditioned on exceedance); the other coordinate goes
    through the bulk marginal quantile function.

    Parameters
    ----------
    contour : np.ndarray
        (N, 2) array of (u, v) points.
    conditioning : int
        0 if the regime is conditioned on the first variable, 1 otherwise.
    """
    if conditioning not in (0, 1):
        raise ValueError(f"Conditioning index must be 0 or 1, got {conditioning}")
    tail = as_tail_model(tail)
    other = 1 - conditioning
    uv = np.clip(np.asarray(contour, dtype=float), 0.0, 1.0)

    out = np.empty_like(uv)
    out[:, conditioning] = gpd_inverse(uv[:, conditioning], tail.threshold, tail.scale,
                                       tail.shape, rate=1.0)
    out[:, other] = bulk.quantile(uv[:, other])
    if not np.all(np.isfinite(out)):
        raise NoIsolineError("Isoline maps to non-finite physical values")
    return out


def _regular_seq(start: float, stop: float, step: float) -> np.ndarray:
    n = int(np.floor((stop - start) / step + 1e-9)) + 1
    return start + step * np.arange(n)


def _interp_ties_mean(xp: np.ndarray, fp: np.ndarray, xout: np.ndarray) -> np.ndarray:
    """Linear interpolation after sorting and averaging tied abscissae."""
    collapsed = pd.Series(fp).groupby(xp).mean()
    return np.interp(xout, collapsed.index.values, collapsed.values)


def resample_isoline(points: np.ndarray, resolution: float = DEFAULT_RESOLUTION) -> pd.DataFrame:
    """
    Resample a physical-unit isoline in both coordinate directions.

    y is interpolated on a regular x grid and x on a regular y grid; both
    sets are pooled and ordered by x. Near its turning point the isoline is
    not a single function of x, so the reverse direction is needed to keep
    its steep part.

    Returns
    -------
    pd.DataFrame
        Columns ['x', 'y'] ordered by x
    """
    if resolution <= 0:
        raise ValueError(f"Resolution must be positive, got {resolution}")
    pts = np.asarray(points, dtype=float)
    x, y = pts[:, 0], pts[:, 1]

    fwd_x = _regular_seq(x.min(), x.max(), resolution)
    fwd_y = _interp_ties_mean(x, y, fwd_x)
    rev_y = _regular_seq(y.min(), y.max(), resolution)
    rev_x = _interp_ties_mean(y, x, rev_y)

    all_x = np.concatenate([fwd_x, rev_x])
    all_y = np.concatenate([fwd_y, rev_y])
    order = np.argsort(all_x, kind='stable')
    return pd.DataFrame({'x': all_x[order], 'y': all_y[order]})


def conditional_isoline(
    copula: Any,
    n_conditional: int,
    years: float,
    return_period: float,
    conditioning: int,
    tail: TailModel,
    bulk: BulkMarginal,
    grid_step: float = DEFAULT_GRID_STEP,
    resolution: float = DEFAULT_RESOLUTION
) -> Dict[str, Any]:
    """
    Isoline of one conditioning regime, from grid to resampled physical points.

    Returns
    -------
    dict
        {'contour': (u, v) points, 'points': physical points,
         'isoline': resampled DataFrame ['x', 'y']}
    """
    if return_period <= 0:
        raise ValueError(f"Return period must be positive, got {return_period}")
    grid = return_level_grid(copula, n_conditional, years, step=grid_step)
    contour = extract_isoline(grid['u'], grid['v'], grid['z'], return_period)
    points = isoline_to_physical(contour, conditioning, tail, bulk)
    isoline = resample_isoline(points, resolution)
    logger.info(f"Regime {conditioning + 1}: {len(contour)} contour points, "
                f"{len(isoline)} resampled isoline points")
    return {'contour': contour, 'points': points, 'isoline': isoline}


def merge_isolines(
    iso1: pd.DataFrame,
    iso2: pd.DataFrame,
    resolution: float = DEFAULT_RESOLUTION
) -> pd.DataFrame:
    """
    Combine two regime isolines into one curve on a common x grid.

    Both isolines are snapped to the grid 0, resolution, ..., max(x). At each
    grid x the merged y is the largest y of either regime there; x with no
    value from either regime is dropped.

    Parameters
    ----------
    iso1, iso2 : pd.DataFrame
        Resampled isolines with columns ['x', 'y'], conditioned on the first
        and second variable respectively.

    Returns
    -------
    pd.DataFrame
        Columns ['x', 'y', 'source'], source in {'con1', 'con2', 'both'}
    """
    x_max = max(iso1['x'].max(), iso2['x'].max())
    if not np.isfinite(x_max) or x_max < 0:
        raise NoIsolineError("Isolines do not reach non-negative x values")
    n_max = int(np.rint(x_max / resolution))

    def per_key(iso):
        keys = np.rint(iso['x'].values / resolution).astype(np.int64)
        return pd.Series(iso['y'].values).groupby(keys).max()

    table = pd.concat({'con1': per_key(iso1), 'con2': per_key(iso2)}, axis=1)
    table = table.reindex(np.arange(n_max + 1))
    table['y'] = table[['con1', 'con2']].max(axis=1)
    table = table.dropna(subset=['y'])
    if table.empty:
        raise NoIsolineError("Merged isoline is empty")

    from1 = table['con1'] == table['y']
    from2 = table['con2'] == table['y']
    source = np.where(from1 & from2, 'both', np.where(from1, 'con1', 'con2'))
    return pd.DataFrame({
        'x': table.index.values * resolution,
        'y': table['y'].values,
        'source': source
    })


def close_isoline(merged: pd.DataFrame, sentinel: float = LOWER_SENTINEL) -> pd.DataFrame:
    """
    Close the merged isoline into the boundary of the exceedance region.

    A point (0, max y) is prepended and a point (last x, sentinel) appended;
    duplicate (x, y) pairs are removed keeping the first occurrence.

    Returns
    -------
    pd.DataFrame
        Columns ['x', 'y']
    """
    pts = merged[['x', 'y']].reset_index(drop=True)
    head = pd.DataFrame({'x': [0.0], 'y': [pts['y'].max()]})
    tail = pd.DataFrame({'x': [pts['x'].iloc[-1]], 'y': [sentinel]})
    closed = pd.concat([head, pts, tail], ignore_index=True)
    return closed.drop_duplicates(subset=['x', 'y']).reset_index(drop=True)
