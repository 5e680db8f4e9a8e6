"""
Shared fixtures for the compound_events test suite.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Make the src/ layout importable without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from compound_events.univariate import TailModel


@pytest.fixture
def design_scenario():
    """Ten years of synthetic daily rainfall / sea level with conditional samples."""
    rng = np.random.default_rng(2024)
    n = 3652
    dates = pd.date_range("2000-01-01", periods=n, freq="D")
    rainfall = rng.exponential(5.0, n)
    sea_level = rng.normal(1.0, 0.3, n)
    rainfall[::97] = np.nan  # a few gaps

    data = pd.DataFrame({"date": dates, "Rainfall": rainfall, "OsWL": sea_level})

    th1 = float(np.nanquantile(rainfall, 0.97))
    th2 = float(np.nanquantile(sea_level, 0.97))
    con_sample1 = data.loc[data["Rainfall"] > th1, ["Rainfall", "OsWL"]].reset_index(drop=True)
    con_sample2 = data.loc[data["OsWL"] > th2, ["Rainfall", "OsWL"]].dropna().reset_index(drop=True)

    return {
        "data": data,
        "con_sample1": con_sample1,
        "con_sample2": con_sample2,
        "tail1": TailModel(threshold=th1, scale=5.0, shape=0.05, exceedance_rate=0.03),
        "tail2": TailModel(threshold=th2, scale=0.1, shape=-0.1, exceedance_rate=0.03),
    }
