"""
Cumulative Incidence Function (CIF) estimation for competing risks.

The cumulative incidence gives the probability of experiencing a specific
event by time t, accounting for competing risks. From cause-specific Cox
models it is the Riemann sum

    F(t) = sum_{u <= t} S(u-) * h_cause(u)

over the union of the event times of all models, where S is the event-free
survival. Two parameterisations are supported:

- 'hazard'   : one cause-specific model per cause; S(u-) combines all of
               them, either as exp(-sum of cumulative hazards) or as the
               product limit prod_{v<u} (1 - sum of hazards).
- 'survival' : a cause-specific model for the cause of interest and a
               model for the overall (all-cause) survival.

The influence function of F is propagated exactly through the product and
sum rules, so the correlation between the models (fitted on the same
subjects) enters the standard errors.

Key distinction:
- 1 - Kaplan-Meier is NOT the same as CIF when competing risks exist
- CIF properly accounts for subjects who experience competing events
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from lifelines import AalenJohansenFitter

from .bands import band_limits, pointwise_limits, subject_band_quantile
from .baseline import BaselineHazard, check_times, estimate_baseline
from .config import SURV_TYPES, PredictionOptions, resolve_options
from .exceptions import InvalidArgumentError, report_degeneracy
from .influence import CoxLinearization, InfluenceSource, loglog_scale_factor, make_provider
from .prediction import QuantityEstimate, _keep_requested, quantities_to_frame

logger = logging.getLogger(__name__)

# Key of the all-cause model in 'survival' mode
OVERALL = 'overall'


@dataclass
class CumulativeIncidencePrediction:
    """
    Absolute risk of one cause for M query subjects at P times.

    Attributes
    ----------
    times : np.ndarray
        Query times, in the order given.
    cause : object
        Cause of interest.
    absolute_risk : QuantityEstimate
        CIF with optional se, intervals, bands and influence.
    survival : np.ndarray
        Event-free survival used in the combination (M x P).
    last_event_time : np.ndarray
        Per subject, the time after which the CIF is frozen (M).
    extrapolated : np.ndarray
        Query times beyond ``last_event_time`` (M x P).
    landmark : float, optional
        Conditioning time.
    """

    times: np.ndarray
    cause: object
    absolute_risk: QuantityEstimate
    survival: np.ndarray
    last_event_time: np.ndarray
    extrapolated: np.ndarray
    surv_type: str
    product_limit: bool
    conf_level: float
    log_transform: bool
    landmark: Optional[float] = None
    band_quantile: Optional[np.ndarray] = None

    @property
    def estimate(self) -> np.ndarray:
        return self.absolute_risk.estimate

    def to_frame(self) -> pd.DataFrame:
        frame = quantities_to_frame([self.absolute_risk], self.times)
        frame['survival'] = self.survival.ravel()
        frame['extrapolated'] = self.extrapolated.ravel()
        frame['cause'] = self.cause
        return frame


@dataclass
class _ModelTerms:
    """One sub-model evaluated for the query subjects on the union grid."""

    key: object
    model: object
    baseline: BaselineHazard
    eXb: np.ndarray         # (M,)
    strata: np.ndarray      # (M,)
    hazard: np.ndarray      # (M, U) subject hazard increments
    cum_before: np.ndarray  # (M, U) subject cumulative hazard at u-


def _model_terms(key, model, newdata, grid: np.ndarray, strict: bool) -> _ModelTerms:
    baseline = estimate_baseline(model, centered=False, strict=strict)
    eXb = np.exp(model.linear_predictor(newdata, centered=False))
    strata = model.strata_assignment(newdata)

    hazard = np.zeros((len(eXb), len(grid)))
    cum_before = np.zeros((len(eXb), len(grid)))
    for s in np.unique(strata):
        rows = np.flatnonzero(strata == s)
        sh = baseline.strata[s]
        hazard[rows] = np.outer(eXb[rows], sh.hazard_at(grid))
        cum_before[rows] = np.outer(eXb[rows], sh.cumhazard_before(grid))
    return _ModelTerms(key, model, baseline, eXb, strata, hazard, cum_before)


def _product_limit_factors(total_hazard: np.ndarray, within: np.ndarray, strict: bool):
    """
    Product-limit factors 1 - sum of hazards, clamped at 0.

    A subject whose summed hazard increment exceeds 1 (large relative risk
    against a small risk set) would get a negative survival. The factor is
    set to 0 there, which ends the subject's integration, and the hazards
    at that time are scaled by 1 / sum so that the causes still absorb
    exactly the remaining survival.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (factors, shrink), both (M x U).
    """
    overshoot = within & (total_hazard > 1)
    if overshoot.any():
        report_degeneracy(
            f"Summed hazard increment above 1 for {int(overshoot.any(axis=1).sum())} subject(s): "
            "product-limit survival set to 0 from that time on",
            strict=strict,
        )
    with np.errstate(divide='ignore', invalid='ignore'):
        shrink = np.where(overshoot, 1.0 / total_hazard, 1.0)
    factors = np.where(overshoot, 0.0, 1.0 - total_hazard)
    return factors, shrink


def _survival_before(factors: np.ndarray, total_cum_before: np.ndarray, product_limit: bool):
    """Event-free survival just before each grid time."""
    if product_limit:
        ones = np.ones((factors.shape[0], 1))
        return np.hstack([ones, np.cumprod(factors, axis=1)[:, :-1]])
    return np.exp(-total_cum_before)


def _check_models(models: Mapping, cause, surv_type: str) -> List:
    if surv_type not in SURV_TYPES:
        raise InvalidArgumentError(f"surv_type must be one of {SURV_TYPES}, got {surv_type!r}")
    if isinstance(cause, (list, tuple, np.ndarray)):
        raise InvalidArgumentError(f"Can only predict one cause. Provided are: {list(cause)}")

    causes = [k for k in models if k != OVERALL]
    if cause not in causes:
        raise InvalidArgumentError(
            f"Cannot find the requested cause {cause!r}. Available causes: {causes}"
        )
    if surv_type == 'hazard':
        if OVERALL in models:
            raise InvalidArgumentError("surv_type='hazard' takes cause-specific models only")
        if len(causes) < 2:
            raise InvalidArgumentError("surv_type='hazard' needs one model per cause (at least two)")
    else:
        if OVERALL not in models or len(models) != 2:
            raise InvalidArgumentError(
                f"surv_type='survival' takes exactly two models: the cause and '{OVERALL}'"
            )

    n_train = {len(m.event_table()) for m in models.values()}
    if len(n_train) != 1:
        raise InvalidArgumentError("All models must be fitted on the same training subjects")
    return causes


class CumulativeIncidenceSource(InfluenceSource):
    """
    Influence of the training subjects on the CIF of each query subject.

    Parameters
    ----------
    terms : Dict
        Evaluated sub-models keyed as in ``models``.
    cause : object
        Key of the cause of interest.
    survival_keys : List
        Keys of the models entering the event-free survival.
    grid : np.ndarray
        Union event time grid (U).
    times : np.ndarray
        Query times (P).
    survival_before : np.ndarray
        Event-free survival at u- (M x U).
    in_range : np.ndarray
        Grid times a subject's CIF integrates over (M x U).
    product_limit : bool
        How the event-free survival was computed.
    newdata
        Query covariates, for the design matrices.
    factors : np.ndarray, optional
        Product-limit factors after clamping (M x U).
    shrink : np.ndarray, optional
        Scaling of the hazards where the factor was clamped (M x U).
    """

    def __init__(
        self,
        terms: Dict,
        cause,
        survival_keys: List,
        grid: np.ndarray,
        times: np.ndarray,
        survival_before: np.ndarray,
        in_range: np.ndarray,
        product_limit: bool,
        newdata,
        factors: Optional[np.ndarray] = None,
        shrink: Optional[np.ndarray] = None,
        strict: bool = False,
    ):
        self.terms = terms
        self.cause = cause
        self.survival_keys = survival_keys
        self.grid = grid
        self.times = np.asarray(times, dtype=float)
        self.survival_before = survival_before
        self.in_range = in_range
        self.product_limit = product_limit

        total_hazard = sum(terms[k].hazard for k in survival_keys)
        self.factors = 1.0 - total_hazard if factors is None else factors
        self.shrink = np.ones_like(total_hazard) if shrink is None else shrink

        self.linearizations = {
            key: CoxLinearization.from_model(t.model, strict=strict) for key, t in terms.items()
        }
        self.designs = {
            key: (t.model.design_matrix(newdata) if t.model.n_covariates
                  else np.zeros((len(t.eXb), 0)))
            for key, t in terms.items()
        }
        self._increments: Dict = {}

        first = next(iter(terms.values()))
        self.n_subjects = len(first.eXb)
        self.n_times = len(self.times)
        self.n_train = next(iter(self.linearizations.values())).n_train
        # cumulative sums are read at the last grid time <= t
        self._time_pos = np.searchsorted(grid, self.times, side='right') - 1

    def _stratum_increments(self, key, s: int):
        """(N, G_s) influence on h0 and positions of the stratum grid in the union grid."""
        if (key, s) not in self._increments:
            lin = self.linearizations[key]
            sh = lin.stratum(s)
            n_grid = int(np.searchsorted(sh.times, self.grid[-1], side='right')) if len(self.grid) else 0
            increments = lin.baseline_increment_iid(s, n_grid=n_grid)
            positions = np.searchsorted(self.grid, sh.times[:n_grid])
            self._increments[(key, s)] = (increments, positions, sh.hazard[:n_grid])
        return self._increments[(key, s)]

    def _hazard_iid(self, key, j: int) -> np.ndarray:
        """Influence on the subject's hazard increments of model ``key`` (N, U)."""
        t = self.terms[key]
        s = int(t.strata[j])
        increments, positions, h0 = self._stratum_increments(key, s)
        out = np.zeros((self.n_train, len(self.grid)))
        block = increments.copy()
        lin = self.linearizations[key]
        if lin.p:
            beta_term = lin.iid_beta @ self.designs[key][j]
            block += beta_term[:, None] * h0[None, :]
        out[:, positions] = t.eXb[j] * block
        return out

    def subject_iid(self, j: int) -> np.ndarray:
        U = len(self.grid)
        if U == 0:
            return np.zeros((self.n_times, self.n_train))

        hazard_iid = {key: self._hazard_iid(key, j) for key in self.terms}
        total_iid = sum(hazard_iid[k] for k in self.survival_keys)
        surv_before = self.survival_before[j]

        if self.product_limit:
            # clamped factors are constant (0) and contribute nothing
            factor = self.factors[j]
            with np.errstate(divide='ignore', invalid='ignore'):
                inv_factor = np.where(factor != 0, 1.0 / factor, 0.0)
            log_iid = total_iid * inv_factor[None, :]
        else:
            log_iid = total_iid

        # IF of S(u-): sums over grid times strictly before u
        cum = np.cumsum(log_iid, axis=1)
        before = np.hstack([np.zeros((self.n_train, 1)), cum[:, :-1]])
        surv_iid = -surv_before[None, :] * before

        # where clamped the cause hazard enters as h_cause / sum of hazards
        shrink = self.shrink[j]
        raw_hazard = self.terms[self.cause].hazard[j]
        cause_hazard = raw_hazard * shrink
        cause_iid = hazard_iid[self.cause] * shrink[None, :]
        clamped = shrink < 1
        if clamped.any():
            cause_iid[:, clamped] -= total_iid[:, clamped] * (raw_hazard * shrink ** 2)[clamped][None, :]

        increment_iid = surv_iid * cause_hazard[None, :] + surv_before[None, :] * cause_iid
        increment_iid = increment_iid * self.in_range[j][None, :]

        cif_iid = np.cumsum(increment_iid, axis=1)
        out = np.zeros((self.n_times, self.n_train))
        valid = self._time_pos >= 0
        out[valid] = cif_iid[:, self._time_pos[valid]].T
        return out


def predict_cumulative_incidence(
    models: Mapping,
    cause,
    newdata: Union[pd.DataFrame, np.ndarray],
    times: Sequence[float],
    landmark: Optional[float] = None,
    surv_type: str = 'hazard',
    options: Optional[PredictionOptions] = None,
    **overrides,
) -> CumulativeIncidencePrediction:
    """
    Predict the absolute risk of ``cause`` from cause-specific Cox models.

    Parameters
    ----------
    models : Mapping
        'hazard' mode: {cause: CoxModelAdapter} for every cause.
        'survival' mode: {cause: CoxModelAdapter, 'overall': CoxModelAdapter}.
    cause : object
        Cause of interest (a key of ``models``).
    newdata : pd.DataFrame or np.ndarray
        Covariates of the query subjects.
    times : array-like
        Query times, in any order.
    landmark : float, optional
        Compute the risk conditional on being event-free at ``landmark``.
        Standard errors are not available in that case.
    surv_type : str
        'hazard' or 'survival'.
    options : PredictionOptions, optional
        product_limit, se, band, iid, average_iid, log_transform, ...

    Returns
    -------
    CumulativeIncidencePrediction
    """
    opts = resolve_options(options, **overrides)
    causes = _check_models(models, cause, surv_type)
    times = check_times(times)
    if len(times) == 0:
        raise InvalidArgumentError("Time points at which to evaluate the predictions are missing")
    if landmark is not None:
        if np.ndim(landmark) != 0:
            raise InvalidArgumentError("'landmark' must have length one")
        landmark = float(landmark)
        if np.isnan(landmark):
            landmark = None
    if landmark is not None and opts.needs_influence:
        raise InvalidArgumentError(
            "Standard errors, influence functions and bands are not available for the "
            "conditional (landmark) absolute risk"
        )

    # union of the event times of all models, up to the last query time
    all_times = np.unique(np.concatenate([
        np.concatenate(m.distinct_event_times() or [np.array([])]) for m in models.values()
    ]))
    grid = all_times[all_times <= times.max()]

    terms = {key: _model_terms(key, m, newdata, grid, opts.strict) for key, m in models.items()}
    if surv_type == 'hazard':
        survival_keys = causes
        horizon_keys = causes
    else:
        survival_keys = [OVERALL]
        horizon_keys = [cause]

    # a subject's hazards are defined up to the last follow-up time of its strata
    last_event_time = np.min(np.column_stack([
        terms[k].baseline.last_event_times[terms[k].strata] for k in horizon_keys
    ]), axis=1)
    within = grid[None, :] <= last_event_time[:, None]
    in_range = within
    if landmark is not None:
        in_range = within & (grid[None, :] >= landmark)

    total_hazard = sum(terms[k].hazard for k in survival_keys)
    total_cum_before = sum(terms[k].cum_before for k in survival_keys)
    if opts.product_limit:
        factors, shrink = _product_limit_factors(total_hazard, within, opts.strict)
    else:
        factors, shrink = 1.0 - total_hazard, np.ones_like(total_hazard)
    survival_before = _survival_before(factors, total_cum_before, opts.product_limit)

    increments = survival_before * terms[cause].hazard * shrink * in_range
    cif_grid = np.cumsum(increments, axis=1)

    # event-free survival at the grid times, frozen after the horizon
    if opts.product_limit:
        step = np.where(within, factors, 1.0)
        survival_grid = np.cumprod(step, axis=1)
    else:
        survival_grid = np.exp(-np.cumsum(np.where(within, total_hazard, 0.0), axis=1))

    pos = np.searchsorted(grid, times, side='right') - 1
    n_subjects = len(last_event_time)
    cif = np.zeros((n_subjects, len(times)))
    survival = np.ones((n_subjects, len(times)))
    valid = pos >= 0
    cif[:, valid] = cif_grid[:, pos[valid]]
    survival[:, valid] = survival_grid[:, pos[valid]]

    if landmark is not None:
        # S(t0-): survival at the last grid time strictly before t0
        t0_pos = np.searchsorted(grid, landmark, side='left') - 1
        s_t0 = survival_grid[:, t0_pos] if t0_pos >= 0 else np.ones(n_subjects)
        if (s_t0 <= 0).any():
            report_degeneracy("Event-free survival is 0 at the landmark time", strict=opts.strict)
        with np.errstate(divide='ignore', invalid='ignore'):
            cif = cif / s_t0[:, None]
            survival = survival / s_t0[:, None]
        before_landmark = times < landmark
        cif[:, before_landmark] = np.nan
        survival[:, before_landmark] = np.nan

    absolute_risk = QuantityEstimate('absolute_risk', cif)
    extrapolated = times[None, :] > last_event_time[:, None]

    band_quantile = None
    if opts.needs_influence:
        source = CumulativeIncidenceSource(
            terms, cause, survival_keys, grid, times, survival_before, in_range,
            opts.product_limit, newdata, factors=factors, shrink=shrink, strict=opts.strict,
        )
        scale = loglog_scale_factor(cif) if opts.log_transform else np.ones_like(cif)

        band_fn = None
        if opts.band:
            band_fn = partial(
                subject_band_quantile,
                n_sim=opts.n_sim_band,
                conf_level=opts.conf_level,
                rng=np.random.default_rng(opts.random_state),
                chunk_size=opts.band_chunk_size,
            )

        provider = make_provider(source, opts.store_iid, max_iid_size=opts.max_iid_size)
        summary = provider.compute(
            {'absolute_risk': scale},
            iid=opts.iid or opts.band,
            se=True,
            average_iid=opts.average_iid,
            band_type='absolute_risk',
            band_fn=band_fn,
        )['absolute_risk']

        if opts.se:
            absolute_risk.se = summary.se
            absolute_risk.lower, absolute_risk.upper = pointwise_limits(
                cif, summary.se, 'absolute_risk', opts.conf_level, opts.log_transform,
            )
        if opts.iid or opts.average_iid:
            absolute_risk.influence = _keep_requested(summary.influence, opts)
        if opts.band:
            band_quantile = summary.band_quantile
            absolute_risk.lower_band, absolute_risk.upper_band = band_limits(
                cif, summary.se, band_quantile, 'absolute_risk', opts.log_transform,
            )

    logger.debug(f"Absolute risk of cause {cause!r} on a grid of {len(grid)} event times")
    return CumulativeIncidencePrediction(
        times=times,
        cause=cause,
        absolute_risk=absolute_risk,
        survival=survival,
        last_event_time=last_event_time,
        extrapolated=extrapolated,
        surv_type=surv_type,
        product_limit=opts.product_limit,
        conf_level=opts.conf_level,
        log_transform=opts.log_transform,
        landmark=landmark,
        band_quantile=band_quantile,
    )


def estimate_cif_aalen_johansen(
    durations: np.ndarray,
    event_codes: np.ndarray,
    times: Sequence[float],
    event_of_interest=1,
) -> np.ndarray:
    """
    Non-parametric (Aalen-Johansen) cumulative incidence at ``times``.

    Reference for the covariate-free case: the product-limit absolute risk
    of cause-specific Breslow models without covariates equals this
    estimator at every time.

    Parameters
    ----------
    durations : np.ndarray
        Exit times.
    event_codes : np.ndarray
        Event codes (0 = censored).
    times : array-like
        Query times, in any order.
    event_of_interest : int
        Cause whose incidence is estimated.

    Returns
    -------
    np.ndarray
        Cumulative incidence at each query time (right-continuous).
    """
    times = check_times(times)
    event_codes = np.asarray(event_codes)
    if not (event_codes == event_of_interest).any():
        raise InvalidArgumentError(f"No event of type {event_of_interest!r} in the data")

    ajf = AalenJohansenFitter()
    ajf.fit(np.asarray(durations, dtype=float), event_codes, event_of_interest=event_of_interest)
    cdf = ajf.cumulative_density_.iloc[:, 0]

    pos = np.searchsorted(cdf.index.to_numpy(dtype=float), times, side='right') - 1
    out = np.zeros(len(times))
    valid = pos >= 0
    out[valid] = cdf.to_numpy()[pos[valid]]
    return out
