# src/compound_events/viz.py
"""
Visualization utilities for compound design events.

Optional consumer of ``estimate_design_events`` results; the core modules
never import it.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from typing import Any, Dict, Optional


def plot_design_events(
    result: Dict[str, Any],
    data: Optional[pd.DataFrame] = None,
    ax: Optional[plt.Axes] = None,
    cmap: str = 'YlOrRd',
    x_label: Optional[str] = None,
    y_label: Optional[str] = None
) -> plt.Axes:
    """
    Plot observations, conditional samples, the composite isoline coloured by
    relative density, the most-likely event (diamond) and the full-dependence
    event (triangle).

    Parameters
    ----------
    result : dict
        Output of ``estimate_design_events``.
    data : pd.DataFrame, optional
        Full concurrent record, drawn in light grey.
    ax : plt.Axes, optional
        Axis to draw on; a new figure is created when omitted.

    Returns
    -------
    plt.Axes
    """
    if ax is None:
        _, ax = plt.subplots(figsize=(8, 6))

    con1, con2 = list(result['most_likely'].index)
    isoline = result['isoline']
    visible = isoline[isoline[con2] > result['merged_isoline'][con2].min() - 1e-9]

    if data is not None:
        ax.scatter(data[con1], data[con2], color='lightgrey', s=10, label='Observations')
    ax.scatter(result['con_sample1'][con1], result['con_sample1'][con2],
               facecolors='none', edgecolors='tab:blue', s=40, label=f'Conditioned on {con1}')
    ax.scatter(result['con_sample2'][con1], result['con_sample2'][con2],
               color='tab:red', marker='x', s=40, label=f'Conditioned on {con2}')

    density = visible['density'].values
    span = density.max() - density.min()
    scaled = (density - density.min()) / span if span > 0 else np.zeros_like(density)
    ax.plot(visible[con1], visible[con2], color=plt.get_cmap(cmap)(0.1), lw=3, zorder=2)
    ax.scatter(visible[con1], visible[con2], c=scaled, cmap=cmap, s=25, zorder=3)

    ax.scatter(*result['most_likely'].values, marker='D', color='black', s=70,
               zorder=4, label='Most likely')
    ax.scatter(*result['full_dependence'].values, marker='^', color='black', s=70,
               zorder=4, label='Full dependence')

    ax.set_xlabel(x_label or con1)
    ax.set_ylabel(y_label or con2)
    ax.set_title(f"{result['return_period']:g}-year joint return period")
    ax.legend(loc='best', fontsize='small')
    return ax
