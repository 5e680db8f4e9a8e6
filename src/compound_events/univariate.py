# src/compound_events/univariate.py
"""
Module: univariate.py
Responsibilities:
- Hold the generalized Pareto (GPD) tail model of a single variable
- Invert the GPD tail (uniform -> physical) including the exponential limit
- Empirical quantiles and ranks of a bulk reference sample
- Hybrid empirical/GPD quantile mapping used by every simulation routine
- Convenience fit of a GPD to excesses above a fixed threshold
"""
import numpy as np
import xarray as xr
import pandas as pd
import logging
from dataclasses import dataclass
from scipy.stats import genpareto
from typing import Dict, Optional, Union, Any

from compound_events.errors import DegenerateShapeError, InsufficientDataError

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
MIN_OBSERVATIONS = 2  # Minimum non-missing values for an empirical quantile
MIN_EXCEEDANCES = 30  # Minimum number of exceedances for a reliable GPD fit
XI_TOLERANCE = 1e-6  # |xi| below this uses the exponential (xi -> 0) limit

ArrayLike = Union[np.ndarray, pd.Series, xr.DataArray, list]


@dataclass(frozen=True)
class TailModel:
    """
    Generalized Pareto model of the excesses of one variable.

    Attributes
    ----------
    threshold : float
        POT threshold in physical units (fixed by the caller).
    scale : float
        GPD scale parameter (sigma > 0).
    shape : float
        GPD shape parameter (xi).
    exceedance_rate : float
        Fraction of observations above the threshold, in (0, 1].
    """
    threshold: float
    scale: float
    shape: float
    exceedance_rate: float = 1.0

    def __post_init__(self):
        if not np.isfinite(self.threshold):
            raise ValueError(f"Threshold must be finite, got {self.threshold}")
        if not np.isfinite(self.scale) or self.scale <= 0:
            raise ValueError(f"Scale parameter must be positive, got {self.scale}")
        if not np.isfinite(self.shape):
            raise ValueError(f"Shape parameter must be finite, got {self.shape}")
        _validate_rate(self.exceedance_rate)

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> 'TailModel':
        """Build from a dict such as the one returned by ``fit_tail_model``."""
        rate = params.get('exceedance_rate', params.get('rate', 1.0))
        return cls(
            threshold=float(params['threshold']),
            scale=float(params['scale']),
            shape=float(params['shape']),
            exceedance_rate=float(rate)
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            'threshold': self.threshold,
            'scale': self.scale,
            'shape': self.shape,
            'exceedance_rate': self.exceedance_rate
        }


def as_tail_model(model: Union[TailModel, Dict[str, Any]]) -> TailModel:
    """Accept either a TailModel or a parameter dict."""
    if isinstance(model, TailModel):
        return model
    if isinstance(model, dict):
        return TailModel.from_dict(model)
    raise TypeError(f"Expected TailModel or dict, got {type(model).__name__}")


def _validate_rate(rate: float) -> None:
    if not np.isfinite(rate) or not 0 < rate <= 1:
        raise ValueError(f"Exceedance rate must be in (0, 1], got {rate}")


def validate_uniform(u: ArrayLike) -> np.ndarray:
    """
    Convert to a float array and check every value lies in [0, 1].

    Raises
    ------
    ValueError
        If any value is NaN or outside [0, 1].
    """
    arr = np.asarray(u, dtype=float)
    if np.isnan(arr).any():
        raise ValueError("Uniform values contain NaN")
    if np.any(arr < 0) or np.any(arr > 1):
        raise ValueError("Uniform values must lie in [0, 1]")
    return arr


def clean_sample(data: ArrayLike, min_size: int = MIN_OBSERVATIONS) -> np.ndarray:
    """
    Flatten a sample and drop missing values.

    Parameters
    ----------
    data : array-like, pd.Series or xr.DataArray
        Raw observations. NaNs ignored.
    min_size : int, optional
        Minimum number of non-missing values required.

    Returns
    -------
    np.ndarray
        1-D array of finite observations

    Raises
    ------
    InsufficientDataError
        If fewer than ``min_size`` non-missing values remain
    """
    arr = np.asarray(getattr(data, 'values', data), dtype=float).flatten()
    arr = arr[~np.isnan(arr)]
    if arr.size < min_size:
        raise InsufficientDataError(
            f"Insufficient non-missing observations ({arr.size}), minimum required: {min_size}"
        )
    return arr


def empirical_quantile(sample: ArrayLike, u: ArrayLike) -> np.ndarray:
    """
    Empirical quantile with linear interpolation between order statistics.

    Parameters
    ----------
    sample : array-like
        Reference sample; missing values are ignored.
    u : array-like
        Probabilities in [0, 1].

    Returns
    -------
    np.ndarray
        Quantiles with the same shape as ``u``
    """
    arr = clean_sample(sample)
    probs = validate_uniform(u)
    return np.quantile(arr, probs)


def empirical_rank(sample: ArrayLike, x: ArrayLike) -> np.ndarray:
    """
    Inverse of ``empirical_quantile``: map values to probabilities by linear
    interpolation between the order statistics of the reference sample.
    Values outside the sample range are clamped to 0 or 1.
    """
    arr = np.sort(clean_sample(sample))
    probs = np.linspace(0.0, 1.0, arr.size)
    return np.interp(np.asarray(x, dtype=float), arr, probs)


def gpd_inverse(
    u: ArrayLike,
    threshold: float,
    scale: float,
    shape: float,
    rate: float = 1.0
) -> np.ndarray:
    """
    Map uniform values to physical values through a GPD tail.

    x = threshold + (scale/shape) * (((1-u)/rate)^(-shape) - 1)

    and for shape -> 0 the exponential limit

    x = threshold - scale * log((1-u)/rate)

    Parameters
    ----------
    u : array-like
        Non-exceedance probabilities in [0, 1].
    threshold, scale, shape : float
        GPD threshold, scale (sigma) and shape (xi).
    rate : float, optional
        Probability of exceeding the threshold, in (0, 1]. Use 1 for samples
        that are already conditioned on exceedance.

    Returns
    -------
    np.ndarray
        Physical values

    Raises
    ------
    ValueError
        If ``u`` is outside [0, 1], ``rate`` outside (0, 1] or scale <= 0
    DegenerateShapeError
        If the inverse is not finite for some ``u``
    """
    probs = validate_uniform(u)
    _validate_rate(rate)
    if not np.isfinite(scale) or scale <= 0:
        raise ValueError(f"Scale parameter must be positive, got {scale}")
    if not np.isfinite(shape):
        raise ValueError(f"Invalid GPD shape parameter: {shape}")

    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        tail_prob = (1.0 - probs) / rate
        if abs(shape) < XI_TOLERANCE:
            x = threshold - scale * np.log(tail_prob)
        else:
            x = threshold + (scale / shape) * (tail_prob ** (-shape) - 1.0)

    if not np.all(np.isfinite(x)):
        bad = int(np.sum(~np.isfinite(x)))
        raise DegenerateShapeError(
            f"GPD inverse is not finite for {bad} value(s) "
            f"(shape={shape}, scale={scale}, rate={rate})"
        )
    return x


def uniform_to_physical(
    u: ArrayLike,
    bulk_sample: ArrayLike,
    tail: Union[TailModel, Dict[str, Any]],
    rate: Optional[float] = None
) -> np.ndarray:
    """
    Hybrid empirical/GPD quantile mapping.

    Each ``u`` is first mapped through the empirical quantile function of the
    bulk sample. Entries whose mapped value exceeds the tail threshold are
    then overwritten with the GPD inverse of the *same* ``u``, so ranks are
    preserved across the threshold.

    Parameters
    ----------
    u : array-like
        Uniform values in [0, 1].
    bulk_sample : array-like
        Raw observations used as the empirical reference.
    tail : TailModel or dict
        GPD tail of the variable.
    rate : float, optional
        Exceedance rate used in the GPD inverse. Defaults to the tail
        model's own exceedance rate.

    Returns
    -------
    np.ndarray
        Physical values, same length as ``u``
    """
    tail = as_tail_model(tail)
    p = tail.exceedance_rate if rate is None else rate
    probs = validate_uniform(u)

    x = empirical_quantile(bulk_sample, probs)
    above = x > tail.threshold
    if above.any():
        x[above] = gpd_inverse(probs[above], tail.threshold, tail.scale, tail.shape, rate=p)
    return x


def threshold_from_quantile(data: ArrayLike, level: float) -> float:
    """
    Convert a quantile level (e.g. 0.97) into a physical threshold using the
    empirical quantile of the non-missing record.
    """
    if not 0 <= level <= 1:
        raise ValueError(f"Quantile level must be between 0 and 1, got {level}")
    arr = clean_sample(data)
    return float(np.quantile(arr, level))


def fit_tail_model(
    data: ArrayLike,
    threshold: float,
    min_exceedances: int = MIN_EXCEEDANCES
) -> Dict[str, Any]:
    """
    Fit a Generalized Pareto Distribution to exceedances over a fixed threshold.

    Parameters
    ----------
    data : array-like, pd.Series or xr.DataArray
        Values of one variable. NaNs ignored.
    threshold : float
        POT threshold; not re-estimated.
    min_exceedances : int, optional
        Minimum number of exceedances required for a fit.

    Returns
    -------
    dict
        {'threshold', 'scale', 'shape', 'exceedance_rate', 'n_exceed',
         'neg_log_likelihood'}; ``TailModel.from_dict`` accepts it directly.

    Raises
    ------
    InsufficientDataError
        If fewer than ``min_exceedances`` values exceed the threshold
    """
    arr = clean_sample(data)
    exceed = arr[arr > threshold] - threshold
    n_exc = exceed.size

    if n_exc < max(min_exceedances, MIN_OBSERVATIONS):
        raise InsufficientDataError(
            f"Insufficient exceedances ({n_exc}), minimum required: {min_exceedances}"
        )
    if np.std(exceed) == 0:
        raise InsufficientDataError("Exceedances have zero variance (all values are identical)")

    logger.info(f"Fitting GPD to {n_exc} exceedances above threshold {threshold:.4f}")
    xi, _, sigma = genpareto.fit(exceed, floc=0)
    neg_log_like = -np.sum(genpareto.logpdf(exceed, xi, loc=0, scale=sigma))

    return {
        'threshold': float(threshold),
        'scale': float(sigma),
        'shape': float(xi),
        'exceedance_rate': float(n_exc / arr.size),
        'n_exceed': int(n_exc),
        'neg_log_likelihood': float(neg_log_like)
    }
