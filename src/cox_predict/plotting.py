"""
Plots of predicted curves with their confidence intervals and bands.
"""

from typing import List, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np

from .cumulative_incidence import CumulativeIncidencePrediction
from .exceptions import InvalidArgumentError
from .prediction import CoxPrediction

YLABELS = {
    'cumhazard': 'Cumulative Hazard',
    'survival': 'Survival Probability',
    'absolute_risk': 'Cumulative Incidence',
}


def plot_prediction(
    prediction,
    quantity: Optional[str] = None,
    subjects: Optional[Sequence[int]] = None,
    ci: bool = True,
    band: bool = True,
    title: Optional[str] = None,
    xlabel: str = 'Time',
    figsize: Tuple[int, int] = (10, 6),
    colors: Optional[List[str]] = None,
    ax: Optional[plt.Axes] = None,
) -> plt.Axes:
    """
    Plot predicted step curves for some query subjects.

    Parameters
    ----------
    prediction : CoxPrediction or CumulativeIncidencePrediction
        Result of ``predict_cox`` or ``predict_cumulative_incidence``.
    quantity : str, optional
        'cumhazard' or 'survival' for a CoxPrediction; ignored for
        absolute risks. Defaults to 'survival' when predicted.
    subjects : Sequence[int], optional
        Rows of the prediction to draw (all by default).
    ci : bool
        Shade pointwise confidence intervals when available.
    band : bool
        Draw confidence bands (dashed) when available.
    title : str, optional
        Plot title
    xlabel : str
        X-axis label
    figsize : Tuple[int, int]
        Figure size
    colors : List[str], optional
        Colors for each subject
    ax : plt.Axes, optional
        Existing axes to plot on

    Returns
    -------
    plt.Axes
        Plot axes
    """
    if isinstance(prediction, CumulativeIncidencePrediction):
        estimate = prediction.absolute_risk
        quantity = 'absolute_risk'
        default_title = f'Cumulative Incidence of Cause {prediction.cause}'
    elif isinstance(prediction, CoxPrediction):
        if quantity is None:
            quantity = 'survival' if 'survival' in prediction else 'cumhazard'
        if quantity == 'hazard':
            raise InvalidArgumentError("Hazard increments are not drawn as a curve")
        if quantity not in prediction:
            raise InvalidArgumentError(f"{quantity!r} was not predicted")
        estimate = prediction[quantity]
        default_title = 'Predicted ' + YLABELS[quantity]
    else:
        raise InvalidArgumentError(f"Cannot plot a {type(prediction).__name__}")

    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)

    if colors is None:
        colors = plt.cm.tab10.colors

    order = np.argsort(prediction.times, kind='mergesort')
    times = prediction.times[order]
    if subjects is None:
        subjects = range(estimate.estimate.shape[0])

    for i, j in enumerate(subjects):
        color = colors[i % len(colors)]
        ax.step(times, estimate.estimate[j, order], where='post', color=color, label=f'Subject {j}')
        if ci and estimate.lower is not None:
            ax.fill_between(
                times, estimate.lower[j, order], estimate.upper[j, order],
                step='post', color=color, alpha=0.2,
            )
        if band and estimate.lower_band is not None:
            ax.step(times, estimate.lower_band[j, order], where='post', color=color, linestyle='--', alpha=0.7)
            ax.step(times, estimate.upper_band[j, order], where='post', color=color, linestyle='--', alpha=0.7)

    ax.set_xlabel(xlabel)
    ax.set_ylabel(YLABELS[quantity])
    ax.set_title(title or default_title)
    ax.legend()
    ax.grid(True, alpha=0.3)
    if quantity != 'cumhazard':
        ax.set_ylim(0, 1)

    return ax
