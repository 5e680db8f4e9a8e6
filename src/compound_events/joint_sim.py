# src/compound_events/joint_sim.py
"""
Module: joint_sim.py
Responsibilities:
- Simulate n-variate extremes from a fitted copula and GPD tail models
- Return aligned uniform-scale and physical-scale samples
"""
import numpy as np
import pandas as pd
import xarray as xr
import logging
from typing import Any, Dict, Mapping, Sequence, Union

from compound_events.copula_fit import RandomState, resolve_random_state, simulate_copula
from compound_events.errors import SamplingError
from compound_events.univariate import TailModel, as_tail_model, clean_sample, uniform_to_physical

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

DEFAULT_MU = 365.25  # Events per year (daily data)
DEFAULT_YEARS = 10000


def model_table(data: Union[pd.DataFrame, xr.Dataset]) -> pd.DataFrame:
    """
    Return the modelling columns of a data table.

    An ``xr.Dataset`` is flattened with its coordinates as leading columns.
    A leading date/datetime/categorical/text column is treated as an index
    and dropped.
    """
    if isinstance(data, xr.Dataset):
        data = data.to_dataframe().reset_index()
    if not isinstance(data, pd.DataFrame):
        raise TypeError(f"Expected a pandas DataFrame or xarray Dataset, got {type(data).__name__}")
    if data.shape[1] == 0:
        raise ValueError("Data table has no columns")

    first = data.iloc[:, 0]
    is_index = (
        pd.api.types.is_datetime64_any_dtype(first)
        or isinstance(first.dtype, pd.CategoricalDtype)
        or pd.api.types.is_object_dtype(first)
        or pd.api.types.is_string_dtype(first)
    )
    if is_index:
        logger.info(f"Ignoring leading index column '{data.columns[0]}'")
        data = data.iloc[:, 1:]
    if data.shape[1] == 0:
        raise ValueError("Data table has no variable columns")
    return data


def _tail_for(
    tail_models: Union[Mapping[str, Any], Sequence[Any]],
    variable: str,
    position: int
) -> TailModel:
    if isinstance(tail_models, Mapping):
        if variable not in tail_models:
            raise ValueError(f"No tail model supplied for variable '{variable}'")
        return as_tail_model(tail_models[variable])
    return as_tail_model(tail_models[position])


def simulate_joint(
    data: Union[pd.DataFrame, xr.Dataset],
    tail_models: Union[Mapping[str, Any], Sequence[Any]],
    copula: Any,
    mu: float = DEFAULT_MU,
    n_years: float = DEFAULT_YEARS,
    random_state: RandomState = None
) -> Dict[str, pd.DataFrame]:
    """
    Simulate joint realisations from a copula with hybrid empirical/GPD margins.

    Parameters
    ----------
    data : pd.DataFrame or xr.Dataset
        Concurrent records, one column per variable, optionally preceded by a
        date or categorical index column.
    tail_models : mapping or sequence
        GPD tail model (``TailModel`` or dict) per variable, keyed by column
        name or given in column order.
    copula : Any
        Fitted n-variate copula (statsmodels copula or ``simulate(n, seed)``).
    mu : float, optional
        Average number of events per year.
    n_years : float, optional
        Number of years worth of events to simulate.
    random_state : None, int or np.random.Generator
        Seed or generator for reproducible draws.

    Returns
    -------
    dict
        {'uniform_sample': DataFrame on [0, 1]^n,
         'physical_sample': DataFrame in physical units},
        both with the variable names of ``data`` as columns.

    Raises
    ------
    InsufficientDataError
        If a variable has fewer than two non-missing observations
    SamplingError
        If the event count rounds to zero or the copula dimension does not
        match the number of variables
    """
    table = model_table(data)
    variables = [str(c) for c in table.columns]

    # Fail on unusable margins before spending time on simulation
    tails = [_tail_for(tail_models, var, i) for i, var in enumerate(variables)]
    bulk = [clean_sample(table.iloc[:, i]) for i in range(len(variables))]

    events = int(round(mu * n_years))
    logger.info(f"Simulating {events} events ({mu} per year over {n_years} years) "
                f"for variables {variables}")

    rng = resolve_random_state(random_state)
    u = simulate_copula(copula, events, random_state=rng)
    if u.shape[1] != len(variables):
        raise SamplingError(
            f"Copula dimension ({u.shape[1]}) does not match number of variables ({len(variables)})"
        )

    x = np.empty_like(u)
    for i, (var, tail) in enumerate(zip(variables, tails)):
        x[:, i] = uniform_to_physical(u[:, i], bulk[i], tail)
        n_tail = int(np.sum(x[:, i] > tail.threshold))
        logger.info(f"{var}: {n_tail} simulated values above threshold {tail.threshold:.4f}")

    return {
        'uniform_sample': pd.DataFrame(u, columns=variables),
        'physical_sample': pd.DataFrame(x, columns=variables)
    }
