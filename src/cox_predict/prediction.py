"""
Subject-specific predictions from a fitted Cox model.

Maps the baseline hazard and the linear predictor of query subjects to
hazard, cumulative hazard and survival at arbitrary (possibly unsorted)
query times, with optional influence functions, standard errors,
pointwise confidence intervals and simultaneous confidence bands.
"""

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .bands import band_limits, pointwise_limits, subject_band_quantile
from .baseline import BaselineHazard, check_times, estimate_baseline
from .config import PREDICTION_TYPES, PredictionOptions, resolve_options
from .exceptions import InvalidArgumentError, report_degeneracy
from .influence import (
    AverageInfluence,
    CoxInfluenceSource,
    CoxLinearization,
    FullInfluence,
    InfluenceOutput,
    NotComputed,
    log_scale_factor,
    make_provider,
)

logger = logging.getLogger(__name__)


@dataclass
class QuantityEstimate:
    """
    A predicted quantity with its uncertainty.

    Attributes
    ----------
    name : str
        'hazard', 'cumhazard', 'survival' or 'absolute_risk'.
    estimate : np.ndarray
        Point estimates (M subjects x P times).
    se : np.ndarray, optional
        Standard errors; on the log (cumhazard) or log-log (survival,
        absolute risk) scale when computed with log_transform.
    lower, upper : np.ndarray, optional
        Pointwise confidence limits.
    lower_band, upper_band : np.ndarray, optional
        Simultaneous confidence band.
    influence : InfluenceOutput
        NotComputed, FullInfluence or AverageInfluence.
    """

    name: str
    estimate: np.ndarray
    se: Optional[np.ndarray] = None
    lower: Optional[np.ndarray] = None
    upper: Optional[np.ndarray] = None
    lower_band: Optional[np.ndarray] = None
    upper_band: Optional[np.ndarray] = None
    influence: InfluenceOutput = field(default_factory=NotComputed)

    @property
    def iid(self) -> Optional[np.ndarray]:
        if isinstance(self.influence, FullInfluence):
            return self.influence.array
        return None

    @property
    def average_iid(self) -> Optional[np.ndarray]:
        return getattr(self.influence, 'average', None)

    def columns(self) -> Dict[str, np.ndarray]:
        """Non-empty (M x P) outputs keyed by column name."""
        out = {self.name: self.estimate}
        for suffix in ('se', 'lower', 'upper', 'lower_band', 'upper_band'):
            value = getattr(self, suffix)
            if value is not None:
                out[f"{self.name}_{suffix}"] = value
        return out


def quantities_to_frame(
    quantities: Sequence[QuantityEstimate],
    times: np.ndarray,
    strata: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Long table with one row per query subject and time."""
    n_subjects, n_times = quantities[0].estimate.shape
    frame = pd.DataFrame({
        'observation': np.repeat(np.arange(n_subjects), n_times),
        'time': np.tile(times, n_subjects),
    })
    if strata is not None:
        frame['strata'] = np.repeat(np.asarray(strata), n_times)
    for quantity in quantities:
        for column, values in quantity.columns().items():
            frame[column] = np.asarray(values).ravel()
    return frame


@dataclass
class CoxPrediction:
    """
    Predictions for M query subjects at P query times.

    All (M x P) matrices follow the order of the query times as given.
    """

    times: np.ndarray
    strata: np.ndarray
    strata_levels: List[str]
    last_event_time: np.ndarray
    extrapolated: np.ndarray
    quantities: Dict[str, QuantityEstimate]
    conf_level: float
    log_transform: bool
    band_quantile: Optional[np.ndarray] = None
    n_sim_band: Optional[int] = None

    def __getitem__(self, name: str) -> QuantityEstimate:
        if name not in self.quantities:
            raise KeyError(f"'{name}' was not predicted; available: {list(self.quantities)}")
        return self.quantities[name]

    def __contains__(self, name: str) -> bool:
        return name in self.quantities

    @property
    def hazard(self) -> Optional[np.ndarray]:
        return self.quantities['hazard'].estimate if 'hazard' in self.quantities else None

    @property
    def cumhazard(self) -> Optional[np.ndarray]:
        return self.quantities['cumhazard'].estimate if 'cumhazard' in self.quantities else None

    @property
    def survival(self) -> Optional[np.ndarray]:
        return self.quantities['survival'].estimate if 'survival' in self.quantities else None

    @property
    def strata_labels(self) -> List[str]:
        return [self.strata_levels[s] for s in self.strata]

    def to_frame(self) -> pd.DataFrame:
        """Long table of all predicted quantities."""
        frame = quantities_to_frame(list(self.quantities.values()), self.times, self.strata_labels)
        frame['extrapolated'] = self.extrapolated.ravel()
        return frame


def check_types(types: Union[str, Sequence[str]]) -> List[str]:
    """Lower-case and validate the requested prediction types."""
    if isinstance(types, str):
        types = [types]
    types = [str(t).lower() for t in types]
    unknown = [t for t in types if t not in PREDICTION_TYPES]
    if unknown or not types:
        raise InvalidArgumentError(
            f"type can only be {', '.join(repr(t) for t in PREDICTION_TYPES)}; got {types}"
        )
    return list(dict.fromkeys(types))


def evaluate_step_function(
    baseline: BaselineHazard,
    new_eXb: np.ndarray,
    new_strata: np.ndarray,
    times: np.ndarray,
    types: Sequence[str],
) -> Dict[str, np.ndarray]:
    """
    Scale the baseline step functions to the query subjects.

    Times are sorted once for the lookup; the returned matrices follow the
    original order of ``times``.

    Returns
    -------
    Dict[str, np.ndarray]
        (M x P) matrices for the requested types.
    """
    order = np.argsort(times, kind='mergesort')
    restore = np.argsort(order, kind='mergesort')
    sorted_times = times[order]

    n_subjects = len(new_eXb)
    hazard = np.zeros((n_subjects, len(times)))
    cumhazard = np.zeros((n_subjects, len(times)))
    for s in np.unique(new_strata):
        rows = np.flatnonzero(new_strata == s)
        sh = baseline.strata[s]
        hazard[rows] = np.outer(new_eXb[rows], sh.hazard_at(sorted_times))
        cumhazard[rows] = np.outer(new_eXb[rows], sh.cumhazard_at(sorted_times))

    out = {}
    if 'hazard' in types:
        out['hazard'] = hazard[:, restore]
    if 'cumhazard' in types:
        out['cumhazard'] = cumhazard[:, restore]
    if 'survival' in types:
        out['survival'] = np.exp(-cumhazard)[:, restore]
    return out


def _check_influence_request(types: List[str], opts: PredictionOptions, has_newdata: bool):
    if not has_newdata and (opts.se or opts.iid or opts.band or opts.average_iid):
        raise InvalidArgumentError(
            "Argument 'newdata' is missing. Cannot compute standard errors, influence "
            "functions or bands in this case"
        )
    if 'hazard' in types:
        if opts.se:
            raise InvalidArgumentError("Confidence intervals cannot be computed for the hazard")
        if opts.band:
            raise InvalidArgumentError("Confidence bands cannot be computed for the hazard")
        if opts.iid or opts.average_iid:
            raise InvalidArgumentError("Influence functions cannot be computed for the hazard")


def predict_cox(
    model,
    newdata: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    times: Optional[Sequence[float]] = None,
    types: Union[str, Sequence[str]] = ('cumhazard', 'survival'),
    options: Optional[PredictionOptions] = None,
    **overrides,
) -> Union[CoxPrediction, BaselineHazard]:
    """
    Predict hazard, cumulative hazard and survival from a fitted Cox model.

    Parameters
    ----------
    model : CoxModelAdapter
        Fitted model.
    newdata : pd.DataFrame or np.ndarray, optional
        Covariate profiles of the query subjects. Without newdata the
        baseline hazard is returned (centered according to
        ``options.centered``).
    times : array-like
        Query times, in any order. Required with newdata.
    types : str or sequence of str
        Any of 'hazard', 'cumhazard', 'survival'.
    options : PredictionOptions, optional
        se, band, iid, average_iid, log_transform, store_iid, conf_level,
        n_sim_band, random_state, ... Keyword arguments override fields.

    Returns
    -------
    CoxPrediction or BaselineHazard
    """
    opts = resolve_options(options, **overrides)
    types = check_types(types)
    _check_influence_request(types, opts, newdata is not None)
    times = check_times(times)

    if newdata is None:
        return estimate_baseline(
            model,
            times=times if len(times) else None,
            centered=opts.centered,
            strict=opts.strict,
        )

    if len(times) == 0:
        raise InvalidArgumentError("Time points at which to evaluate the predictions are missing")

    # bands need the influence function and the standard error
    want_iid = opts.iid or opts.band

    baseline = estimate_baseline(model, times=times, centered=False, strict=opts.strict)
    new_eXb = np.exp(model.linear_predictor(newdata, centered=False))
    new_strata = model.strata_assignment(newdata)

    table = baseline.event_table
    for s in np.unique(new_strata):
        if table.status[table.strata == s].sum() == 0:
            report_degeneracy(
                f"Stratum {baseline.strata_levels[s]} has no events: predicted hazard is 0",
                strict=opts.strict,
            )

    estimates = evaluate_step_function(baseline, new_eXb, new_strata, times, types)
    quantities = {name: QuantityEstimate(name, estimates[name]) for name in types}

    last_event_time = baseline.last_event_times
    extrapolated = times[None, :] > last_event_time[new_strata][:, None]

    band_quantile = None
    if opts.needs_influence:
        cumhazard = estimates.get('cumhazard')
        if cumhazard is None:
            cumhazard = -np.log(estimates['survival'])

        linearization = CoxLinearization.from_model(model, strict=opts.strict)
        if model.n_covariates:
            new_design = model.design_matrix(newdata)
        else:
            new_design = np.zeros((len(new_eXb), 0))
        source = CoxInfluenceSource(linearization, new_eXb, new_design, new_strata, times)

        scales = {}
        if 'cumhazard' in types:
            scales['cumhazard'] = log_scale_factor(cumhazard) if opts.log_transform else np.ones_like(cumhazard)
        if 'survival' in types:
            scales['survival'] = (log_scale_factor(cumhazard) if opts.log_transform
                                  else -estimates['survival'])

        band_fn = None
        if opts.band:
            band_fn = partial(
                subject_band_quantile,
                n_sim=opts.n_sim_band,
                conf_level=opts.conf_level,
                rng=np.random.default_rng(opts.random_state),
                chunk_size=opts.band_chunk_size,
            )

        logger.debug(f"Influence functions with store_iid='{opts.store_iid}' for {len(new_eXb)} subjects")
        provider = make_provider(source, opts.store_iid, max_iid_size=opts.max_iid_size)
        summaries = provider.compute(
            scales,
            iid=want_iid,
            se=True,
            average_iid=opts.average_iid,
            band_type=types[0],
            band_fn=band_fn,
        )

        for name, summary in summaries.items():
            quantity = quantities[name]
            if opts.se:
                quantity.se = summary.se
                quantity.lower, quantity.upper = pointwise_limits(
                    quantity.estimate, summary.se, name, opts.conf_level, opts.log_transform,
                )
            if opts.iid or opts.average_iid:
                quantity.influence = _keep_requested(summary.influence, opts)
            if summary.band_quantile is not None:
                band_quantile = summary.band_quantile

        if opts.band:
            for name, summary in summaries.items():
                quantity = quantities[name]
                quantity.lower_band, quantity.upper_band = band_limits(
                    quantity.estimate, summary.se, band_quantile, name, opts.log_transform,
                )

    return CoxPrediction(
        times=times,
        strata=new_strata,
        strata_levels=baseline.strata_levels,
        last_event_time=last_event_time,
        extrapolated=extrapolated,
        quantities=quantities,
        conf_level=opts.conf_level,
        log_transform=opts.log_transform,
        band_quantile=band_quantile,
        n_sim_band=opts.n_sim_band if opts.band else None,
    )


def _keep_requested(influence: InfluenceOutput, opts: PredictionOptions) -> InfluenceOutput:
    """Drop the full array when only the average was asked for."""
    if isinstance(influence, FullInfluence) and not opts.iid:
        return AverageInfluence(influence.average)
    return influence
