"""
Pointwise confidence intervals and simultaneous confidence bands.

The band multiplier of a query subject is obtained by a multiplier
bootstrap of its influence function: for replicate b draw N standard
normal weights G_b, form

    Z_b(t) = sum_i G_bi * IF_i(t) / se(t)

and keep max_t |Z_b(t)|. The conf_level quantile of these maxima is the
multiplier q such that estimate(t) +/- q * se(t) covers the whole curve
with the requested probability. No refitting is involved.
"""

import logging
from typing import Optional

import numpy as np
from scipy.stats import norm

from .config import DEFAULT_BAND_CHUNK_SIZE, DEFAULT_CONF_LEVEL, DEFAULT_N_SIM_BAND

logger = logging.getLogger(__name__)


def normal_quantile(conf_level: float) -> float:
    """Two-sided standard normal quantile for ``conf_level``."""
    return float(norm.ppf(1 - (1 - conf_level) / 2))


def subject_band_quantile(
    iid: np.ndarray,
    se: np.ndarray,
    n_sim: int = DEFAULT_N_SIM_BAND,
    conf_level: float = DEFAULT_CONF_LEVEL,
    rng: Optional[np.random.Generator] = None,
    chunk_size: int = DEFAULT_BAND_CHUNK_SIZE,
) -> float:
    """
    Band multiplier of a single curve.

    Parameters
    ----------
    iid : np.ndarray
        Influence function of the curve, shape (P times, N subjects).
    se : np.ndarray
        Standard error at each time (P).
    n_sim : int
        Number of bootstrap replicates.
    conf_level : float
        Simultaneous coverage.
    rng : np.random.Generator, optional
        Source of the normal multipliers.
    chunk_size : int
        Replicates drawn at once.

    Returns
    -------
    float
        The multiplier; NaN when every se(t) is 0.
    """
    if rng is None:
        rng = np.random.default_rng()

    keep = se > 0
    if not keep.any():
        return np.nan

    # normalise each time by its own se so no time dominates the max
    scaled = iid[keep] / se[keep][:, None]          # (P', N)
    n_train = scaled.shape[1]

    maxima = np.empty(n_sim)
    done = 0
    while done < n_sim:
        size = min(chunk_size, n_sim - done)
        weights = rng.standard_normal((size, n_train))
        maxima[done:done + size] = np.abs(weights @ scaled.T).max(axis=1)
        done += size

    return float(np.quantile(maxima, conf_level))


def confidence_band_quantile(
    iid: np.ndarray,
    se: np.ndarray,
    n_sim: int = DEFAULT_N_SIM_BAND,
    conf_level: float = DEFAULT_CONF_LEVEL,
    random_state: Optional[int] = None,
    chunk_size: int = DEFAULT_BAND_CHUNK_SIZE,
) -> np.ndarray:
    """
    Band multipliers for every query subject.

    Parameters
    ----------
    iid : np.ndarray
        Influence array (M subjects, P times, N training subjects).
    se : np.ndarray
        Standard errors (M, P).
    n_sim : int
        Replicates per subject.
    conf_level : float
        Simultaneous coverage.
    random_state : int, optional
        Seed for reproducible multipliers.

    Returns
    -------
    np.ndarray
        One multiplier per query subject (M).
    """
    rng = np.random.default_rng(random_state)
    quantiles = np.array([
        subject_band_quantile(iid[j], se[j], n_sim, conf_level, rng, chunk_size)
        for j in range(iid.shape[0])
    ])
    logger.debug(f"Band quantiles: min={np.nanmin(quantiles) if len(quantiles) else np.nan:.3f}")
    return quantiles


def _limits(estimate, spread, kind, log_transform):
    """Lower/upper limits of estimate +/- spread on the requested scale."""
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        if kind == 'cumhazard':
            if log_transform:
                log_est = np.log(estimate)
                lower = np.exp(log_est - spread)
                upper = np.exp(log_est + spread)
            else:
                lower = np.maximum(estimate - spread, 0.0)
                upper = estimate + spread
        elif kind in ('survival', 'absolute_risk'):
            if log_transform:
                loglog = np.log(-np.log(estimate))
                lower = np.exp(-np.exp(loglog + spread))
                upper = np.exp(-np.exp(loglog - spread))
            else:
                lower = np.clip(estimate - spread, 0.0, 1.0)
                upper = np.clip(estimate + spread, 0.0, 1.0)
        else:
            raise ValueError(f"No interval is defined for {kind!r}")

    # zero spread (degenerate se) collapses the interval on the estimate
    flat = spread == 0
    lower = np.where(flat, estimate, lower)
    upper = np.where(flat, estimate, upper)
    return lower, upper


def pointwise_limits(
    estimate: np.ndarray,
    se: np.ndarray,
    kind: str,
    conf_level: float = DEFAULT_CONF_LEVEL,
    log_transform: bool = True,
):
    """
    Pointwise confidence limits.

    ``se`` is on the transformed scale when ``log_transform`` is True
    (log for the cumulative hazard, log-log for survival and absolute risk).

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (lower, upper)
    """
    z = normal_quantile(conf_level)
    return _limits(estimate, z * se, kind, log_transform)


def band_limits(
    estimate: np.ndarray,
    se: np.ndarray,
    quantile: np.ndarray,
    kind: str,
    log_transform: bool = True,
):
    """
    Simultaneous band limits: estimate +/- quantile[subject] * se.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (lower_band, upper_band)
    """
    quantile = np.nan_to_num(np.asarray(quantile, dtype=float), nan=0.0)
    return _limits(estimate, quantile[:, None] * se, kind, log_transform)
