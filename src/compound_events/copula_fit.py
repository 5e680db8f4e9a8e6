# src/compound_events/copula_fit.py

"""
Module: copula_fit.py
Responsibilities:
- Convert raw conditional samples to pseudo-observations
- Fit a copula of a caller-chosen family by Kendall's tau inversion
- Draw reproducible uniform samples from a fitted copula
- Evaluate the joint CDF and joint survival probability on large point sets
"""

import numpy as np
import pandas as pd
import logging
from typing import Any, Tuple, Union

from scipy.integrate import quad
from scipy.optimize import root_scalar
from scipy.stats import kendalltau

from statsmodels.distributions.copula.api import (
    ClaytonCopula,
    FrankCopula,
    GaussianCopula,
    GumbelCopula,
    IndependenceCopula,
    StudentTCopula
)

from compound_events.errors import InsufficientDataError, SamplingError

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

COPULA_FAMILIES = ('independence', 'gaussian', 'student', 'gumbel', 'frank', 'clayton')
CDF_CHUNK_SIZE = 250_000  # Grid nodes per copula.cdf call
MIN_PSEUDO_OBS = 3

RandomState = Union[None, int, np.random.Generator]


def resolve_random_state(random_state: RandomState = None) -> np.random.Generator:
    """Normalise a seed or generator into a ``numpy.random.Generator``."""
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


def create_pseudo_observations(
    x: np.ndarray,
    y: np.ndarray,
    ties_method: str = 'average'
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert raw data to pseudo-observations (ranks scaled by n + 1).

    Pairs with a missing value in either series are dropped.

    Parameters
    ----------
    x, y : np.ndarray
        Raw data arrays
    ties_method : str, optional
        Method for handling ties ('average', 'min', 'max', 'dense', 'ordinal')

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        Pseudo-observations in (0, 1)
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"x and y must have same shape, got {x.shape} vs {y.shape}")

    valid = ~(np.isnan(x) | np.isnan(y))
    if valid.sum() < MIN_PSEUDO_OBS:
        raise InsufficientDataError(
            f"Insufficient complete pairs ({valid.sum()}) for pseudo-observations"
        )

    n = int(valid.sum())
    df = pd.DataFrame({'x': x[valid], 'y': y[valid]})
    u = df['x'].rank(method=ties_method) / (n + 1)
    v = df['y'].rank(method=ties_method) / (n + 1)
    return u.values, v.values


def estimate_theta_gumbel(tau: float) -> float:
    """
    Gumbel parameter from Kendall's tau, theta = 1 / (1 - tau).
    Non-positive dependence maps to independence (theta = 1).
    """
    if not np.isfinite(tau) or tau <= 0.0:
        return 1.0
    tau = min(tau, 0.99)
    return 1.0 / (1.0 - tau)


def frank_tau(theta: float) -> float:
    """
    Kendall's tau of a Frank copula: tau = 1 + 4/theta * (D1(theta) - 1),
    with D1 the first Debye function.
    """
    if abs(theta) < 1e-10:
        return 0.0

    def integrand(t):
        return 1.0 if t == 0 else t / np.expm1(t)

    debye = quad(integrand, 0.0, theta)[0] / theta
    return float(np.clip(1.0 + 4.0 * (debye - 1.0) / theta, -1.0, 1.0))


def estimate_theta_frank(tau: float, bracket: Tuple[float, float] = (-50.0, 50.0)) -> float:
    """Frank parameter from Kendall's tau by root-finding on ``frank_tau``."""
    if not np.isfinite(tau) or abs(tau) < 0.01:
        return 0.0
    lo, hi = bracket
    tau = float(np.clip(tau, frank_tau(lo) + 1e-6, frank_tau(hi) - 1e-6))
    sol = root_scalar(lambda th: frank_tau(th) - tau, bracket=bracket, method='brentq')
    return float(sol.root)


def estimate_theta_clayton(tau: float) -> float:
    """Clayton parameter from Kendall's tau, theta = 2 tau / (1 - tau)."""
    if not np.isfinite(tau) or tau <= 0.0:
        return 0.0
    tau = min(tau, 0.99)
    return 2.0 * tau / (1.0 - tau)


def estimate_corr_from_kendall(tau: float) -> float:
    """Elliptical-copula correlation from Kendall's tau, rho = sin(pi * tau / 2)."""
    if not np.isfinite(tau):
        return 0.0
    return float(np.clip(np.sin(0.5 * np.pi * tau), -0.99, 0.99))


def fit_copula(
    u: np.ndarray,
    v: np.ndarray,
    family: str = 'gaussian',
    df: float = 5.0
) -> Any:
    """
    Fit a bivariate copula of a caller-chosen family.

    Parameters
    ----------
    u, v : np.ndarray
        Pseudo-observations in (0, 1)
    family : str, optional
        One of COPULA_FAMILIES
    df : float, optional
        Degrees of freedom of the Student-t copula (fixed, not estimated)

    Returns
    -------
    statsmodels copula
        Fitted copula exposing ``rvs`` and ``cdf``

    Notes
    -----
    Archimedean families without a valid parameter for the observed
    dependence (e.g. Gumbel with negative tau) collapse to their
    independence member.
    """
    family = family.lower()
    if family not in COPULA_FAMILIES:
        raise ValueError(f"Unknown copula family: {family}. Use one of {COPULA_FAMILIES}")

    u = np.asarray(u, dtype=float)
    v = np.asarray(v, dtype=float)
    if u.shape != v.shape:
        raise ValueError(f"u and v must have same shape, got {u.shape} vs {v.shape}")
    if np.any((u <= 0) | (u >= 1)) or np.any((v <= 0) | (v >= 1)):
        raise ValueError("Pseudo-observations must lie in the open interval (0, 1)")
    if u.size < MIN_PSEUDO_OBS:
        raise InsufficientDataError(f"Insufficient pseudo-observations ({u.size}) for copula fitting")

    if family == 'independence':
        return IndependenceCopula()

    tau, _ = kendalltau(u, v)
    if np.isnan(tau):
        logger.warning(f"NaN tau while fitting {family} copula, using tau = 0")
        tau = 0.0
    logger.info(f"Fitting {family} copula to {u.size} pairs (Kendall's tau = {tau:.4f})")

    if family == 'gaussian':
        rho = estimate_corr_from_kendall(tau)
        return GaussianCopula(corr=np.array([[1.0, rho], [rho, 1.0]]))
    if family == 'student':
        rho = estimate_corr_from_kendall(tau)
        return StudentTCopula(corr=np.array([[1.0, rho], [rho, 1.0]]), df=df)
    if family == 'gumbel':
        theta = estimate_theta_gumbel(tau)
        return IndependenceCopula() if theta == 1.0 else GumbelCopula(theta=theta)
    if family == 'frank':
        theta = estimate_theta_frank(tau)
        return IndependenceCopula() if theta == 0.0 else FrankCopula(theta=theta)
    theta = estimate_theta_clayton(tau)
    return IndependenceCopula() if theta == 0.0 else ClaytonCopula(theta=theta)


def simulate_copula(
    copula: Any,
    count: int,
    random_state: RandomState = None
) -> np.ndarray:
    """
    Draw uniform vectors carrying the copula's dependence structure.

    Parameters
    ----------
    copula : Any
        Fitted copula. statsmodels copulas (``rvs(nobs, random_state=...)``)
        and objects exposing ``simulate(n, seed)`` are supported.
    count : int
        Number of draws (> 0)
    random_state : None, int or np.random.Generator
        Seed or generator for reproducible draws

    Returns
    -------
    np.ndarray
        Array of shape (count, k_dim) with values in [0, 1]

    Raises
    ------
    SamplingError
        If ``count`` is not a positive integer, the copula cannot simulate,
        or the draws are not valid uniforms
    """
    if isinstance(count, (bool, np.bool_)) or not isinstance(count, (int, np.integer)) or count <= 0:
        raise SamplingError(f"Simulation count must be a positive integer, got {count!r}")

    rng = resolve_random_state(random_state)
    if callable(getattr(copula, 'rvs', None)):
        sample = copula.rvs(nobs=int(count), random_state=rng)
    elif callable(getattr(copula, 'simulate', None)):
        sample = copula.simulate(int(count), rng)
    else:
        raise SamplingError(f"{type(copula).__name__} object has no simulation capability")

    sample = np.asarray(sample, dtype=float)
    if sample.ndim == 1:
        sample = sample[:, None]
    if sample.shape[0] != count:
        raise SamplingError(f"Copula returned {sample.shape[0]} draws, expected {count}")
    if not np.all(np.isfinite(sample)) or np.any(sample < 0) or np.any(sample > 1):
        raise SamplingError("Copula draws are not valid uniforms in [0, 1]")
    return sample


def copula_cdf(
    copula: Any,
    u: np.ndarray,
    v: np.ndarray,
    chunk_size: int = CDF_CHUNK_SIZE
) -> np.ndarray:
    """
    Joint CDF C(u, v) evaluated pairwise, in chunks to bound memory use.

    Returns
    -------
    np.ndarray
        C(u, v) with the shape of ``u``
    """
    u = np.asarray(u, dtype=float)
    v = np.asarray(v, dtype=float)
    if u.shape != v.shape:
        raise ValueError(f"u and v must have same shape, got {u.shape} vs {v.shape}")
    if not callable(getattr(copula, 'cdf', None)):
        raise TypeError(f"{type(copula).__name__} object has no cdf method")

    flat_u, flat_v = u.ravel(), v.ravel()
    out = np.empty(flat_u.size, dtype=float)
    for start in range(0, flat_u.size, chunk_size):
        stop = start + chunk_size
        pts = np.column_stack((flat_u[start:stop], flat_v[start:stop]))
        out[start:stop] = np.asarray(copula.cdf(pts), dtype=float).ravel()
    return out.reshape(u.shape)


def compute_joint_exceedance(copula: Any, u: np.ndarray, v: np.ndarray) -> np.ndarray:
    """
    Joint exceedance probability P(U>u, V>v) = 1 - u - v + C(u, v),
    floored at zero.
    """
    u = np.asarray(u, dtype=float)
    v = np.asarray(v, dtype=float)
    return np.maximum(1.0 - u - v + copula_cdf(copula, u, v), 0.0)
