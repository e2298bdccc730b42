"""
First-order influence functions (von Mises expansion) of Cox predictions.

The cumulative hazard of a query subject j,

    H_j(t) = exp(x_j' beta) * H0(t),

is linearised as a sum over the training subjects i of

    IF_i(H_j(t)) = eXb_j * [ W_i(t) + (H0(t) x_j - dH0(t)) ' IF_i(beta) ]

where
- W_i(t) is the derivative of the baseline estimator with respect to the
  case weight of subject i (its martingale residual relative to the risk
  set, accumulated over the event times <= t of its stratum),
- IF_i(beta) = V U_i with U_i the score residual and V the coefficient
  variance,
- dH0(t) = sum_{u <= t} xbar(u) / R(u) is the sensitivity of the baseline
  to the coefficients.

Tied events follow the estimator: under Efron every tied event is one
pseudo-increment with its own risk-set weight R_k = R - (k/d) E and mean
covariate xbar_k. Breslow is the special case with all k/d = 0.

Summed over training subjects, W_i is exactly zero and U_i equals the
score, so the influence functions average to zero at the fitted
coefficients. Squared and summed they give the variance of the estimator.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

from .baseline import BaselineHazard, StratumHazard, efron_slots, estimate_baseline_hazard
from .event_table import EventTable
from .exceptions import InvalidArgumentError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tagged influence output
# ---------------------------------------------------------------------------

class InfluenceOutput:
    """Influence function returned to the caller (see subclasses)."""


@dataclass(frozen=True)
class NotComputed(InfluenceOutput):
    """No influence function was requested."""


@dataclass(frozen=True)
class FullInfluence(InfluenceOutput):
    """
    Complete influence array.

    Attributes
    ----------
    array : np.ndarray
        Shape (M query subjects, P times, N training subjects).
    """

    array: np.ndarray

    @property
    def average(self) -> np.ndarray:
        """Average over the query subjects, shape (N, P)."""
        return self.array.mean(axis=0).T


@dataclass(frozen=True)
class AverageInfluence(InfluenceOutput):
    """
    Influence function averaged over the query subjects.

    Attributes
    ----------
    average : np.ndarray
        Shape (N training subjects, P times).
    """

    average: np.ndarray


# ---------------------------------------------------------------------------
# Risk-set sums
# ---------------------------------------------------------------------------

def _risk_set_sums(
    start: np.ndarray,
    stop: np.ndarray,
    weights: np.ndarray,
    times: np.ndarray,
) -> np.ndarray:
    """Sum of ``weights`` rows over {i : start_i < t <= stop_i} for each t."""
    weights = weights.reshape(len(stop), -1)
    q = weights.shape[1]
    if len(times) == 0:
        return np.zeros((0, q))

    stop_order = np.argsort(stop, kind='mergesort')
    stop_tail = np.vstack([np.cumsum(weights[stop_order][::-1], axis=0)[::-1], np.zeros((1, q))])
    start_order = np.argsort(start, kind='mergesort')
    start_tail = np.vstack([np.cumsum(weights[start_order][::-1], axis=0)[::-1], np.zeros((1, q))])

    pos_stop = np.searchsorted(stop[stop_order], times, side='left')
    pos_start = np.searchsorted(start[start_order], times, side='left')
    return stop_tail[pos_stop] - start_tail[pos_start]


def _event_sums(
    stop: np.ndarray,
    status: np.ndarray,
    weights: np.ndarray,
    times: np.ndarray,
) -> np.ndarray:
    """Sum of ``weights`` rows over the events at each grid time."""
    weights = weights.reshape(len(stop), -1)
    out = np.zeros((len(times), weights.shape[1]))
    is_event = status == 1
    pos = np.searchsorted(times, stop[is_event])
    keep = pos < len(times)
    keep[keep] = times[pos[keep]] == stop[is_event][keep]
    np.add.at(out, pos[keep], weights[is_event][keep])
    return out


@dataclass(frozen=True)
class _StratumTerms:
    """Risk-set summaries of one stratum, aggregated over tie slots."""

    index: np.ndarray        # training subjects of the stratum
    times: np.ndarray
    n_events: np.ndarray
    B: np.ndarray            # sum_k 1/R_k^2
    C: np.ndarray            # sum_k frac_k/R_k^2
    C1: np.ndarray           # sum_k frac_k/R_k
    Bx: np.ndarray           # sum_k xbar_k/R_k           (G x p)
    C1x: np.ndarray          # sum_k frac_k xbar_k/R_k    (G x p)
    xbar_mean: np.ndarray    # mean_k xbar_k              (G x p)
    hazard: np.ndarray       # sum_k 1/R_k
    lo: np.ndarray           # first grid index with t > start_i
    hi: np.ndarray           # first grid index with t > stop_i
    event_pos: np.ndarray    # grid index of the event of i (-1 if none)


def _stratum_terms(
    table: EventTable,
    design: np.ndarray,
    sh: StratumHazard,
    tie_mode: str,
) -> _StratumTerms:
    idx = table.stratum_index(sh.stratum)
    start, stop = table.start[idx], table.stop[idx]
    status, eXb = table.status[idx], table.eXb[idx]
    X = design[idx]
    p = X.shape[1]
    times = sh.times
    G = len(times)

    owner, frac = efron_slots(sh.n_events, tie_mode)
    R_k = sh.risk_weight[owner] - frac * sh.event_weight[owner]
    with np.errstate(divide='ignore', invalid='ignore'):
        inv_R = np.where(R_k > 0, 1.0 / R_k, 0.0)

    if p:
        S1 = _risk_set_sums(start, stop, eXb[:, None] * X, times)
        E1 = _event_sums(stop, status, eXb[:, None] * X, times)
        xbar_k = (S1[owner] - frac[:, None] * E1[owner]) * inv_R[:, None]
    else:
        xbar_k = np.zeros((len(owner), 0))

    def per_grid(values):
        if values.ndim == 1:
            return np.bincount(owner, weights=values, minlength=G)
        out = np.zeros((G, values.shape[1]))
        np.add.at(out, owner, values)
        return out

    d = np.maximum(sh.n_events, 1)
    lo = np.searchsorted(times, start, side='right')
    hi = np.searchsorted(times, stop, side='right')
    event_pos = np.where((status == 1) & (hi > 0), hi - 1, -1)
    # events after the evaluated grid (times restricted) do not count
    on_grid = event_pos >= 0
    on_grid[on_grid] = times[event_pos[on_grid]] == stop[on_grid]
    event_pos = np.where(on_grid, event_pos, -1)

    return _StratumTerms(
        index=idx,
        times=times,
        n_events=sh.n_events,
        B=per_grid(inv_R ** 2),
        C=per_grid(frac * inv_R ** 2),
        C1=per_grid(frac * inv_R),
        Bx=per_grid(xbar_k * inv_R[:, None]),
        C1x=per_grid(frac[:, None] * xbar_k * inv_R[:, None]),
        xbar_mean=per_grid(xbar_k) / d[:, None],
        hazard=per_grid(inv_R),
        lo=lo,
        hi=hi,
        event_pos=event_pos,
    )


def _prefix(values: np.ndarray) -> np.ndarray:
    """Cumulative sum with a leading zero row: prefix[k] = sum_{g<k}."""
    zero = np.zeros((1,) + values.shape[1:])
    return np.concatenate([zero, np.cumsum(values, axis=0)], axis=0)


def cox_information_matrix(
    table: EventTable,
    design: np.ndarray,
    tie_mode: str = 'breslow',
) -> np.ndarray:
    """
    Observed information of the (stratified) partial likelihood.

    Parameters
    ----------
    table : EventTable
        Training data with eXb at the coefficients of interest.
    design : np.ndarray
        Training design matrix (N x p).
    tie_mode : str
        'breslow' or 'efron'.

    Returns
    -------
    np.ndarray
        p x p information matrix.
    """
    design = np.asarray(design, dtype=float).reshape(len(table), -1)
    p = design.shape[1]
    info = np.zeros((p, p))
    if p == 0:
        return info

    baseline = estimate_baseline_hazard(table, tie_mode=tie_mode)
    for sh in baseline.strata:
        if len(sh) == 0:
            continue
        idx = table.stratum_index(sh.stratum)
        start, stop = table.start[idx], table.stop[idx]
        status, eXb, X = table.status[idx], table.eXb[idx], design[idx]

        outer = (X[:, :, None] * X[:, None, :]).reshape(len(idx), p * p)
        S1 = _risk_set_sums(start, stop, eXb[:, None] * X, sh.times)
        E1 = _event_sums(stop, status, eXb[:, None] * X, sh.times)
        S2 = _risk_set_sums(start, stop, eXb[:, None] * outer, sh.times)
        E2 = _event_sums(stop, status, eXb[:, None] * outer, sh.times)

        owner, frac = efron_slots(sh.n_events, tie_mode)
        R_k = sh.risk_weight[owner] - frac * sh.event_weight[owner]
        xbar_k = (S1[owner] - frac[:, None] * E1[owner]) / R_k[:, None]
        S2_k = (S2[owner] - frac[:, None] * E2[owner]) / R_k[:, None]
        info += S2_k.sum(axis=0).reshape(p, p) - xbar_k.T @ xbar_k
    return info


class CoxLinearization:
    """
    Influence of every training subject on the estimators of one Cox model.

    Built once per fitted model from its training EventTable (uncentered
    eXb), design matrix and coefficient variance.

    Parameters
    ----------
    table : EventTable
        Training data, eXb = exp(X beta) without centering.
    design : np.ndarray
        Training design matrix (N x p).
    variance : np.ndarray
        Coefficient variance (p x p).
    tie_mode : str
        'breslow' or 'efron'.
    """

    def __init__(
        self,
        table: EventTable,
        design: np.ndarray,
        variance: np.ndarray,
        tie_mode: str = 'breslow',
        strict: bool = False,
    ):
        self.table = table
        self.design = np.asarray(design, dtype=float).reshape(len(table), -1)
        self.p = self.design.shape[1]
        self.variance = np.asarray(variance, dtype=float).reshape(self.p, self.p)
        self.tie_mode = tie_mode
        self.baseline = estimate_baseline_hazard(table, tie_mode=tie_mode, strict=strict)
        self._terms = [
            _stratum_terms(table, self.design, sh, tie_mode)
            for sh in self.baseline.strata
        ]
        self.score_residuals = self._score_residuals()
        self.iid_beta = self.score_residuals @ self.variance
        logger.debug(
            f"Linearised Cox model: {len(table)} subjects, {self.p} covariates, "
            f"{self.baseline.n_strata} strata"
        )

    @classmethod
    def from_model(cls, model, strict: bool = False) -> 'CoxLinearization':
        """Linearise a fitted model exposed through a CoxModelAdapter."""
        table = model.event_table(centered=False)
        if model.n_covariates:
            variance = model.coefficient_variance()
            design = model.design_matrix(None)
        else:
            variance = np.zeros((0, 0))
            design = np.zeros((len(table), 0))
        return cls(table, design, variance, tie_mode=model.tie_mode, strict=strict)

    @property
    def n_train(self) -> int:
        return len(self.table)

    def stratum(self, s: int) -> StratumHazard:
        return self.baseline.strata[s]

    def _score_residuals(self) -> np.ndarray:
        U = np.zeros((self.n_train, self.p))
        if self.p == 0:
            return U
        for terms in self._terms:
            if len(terms.times) == 0:
                continue
            idx = terms.index
            X = self.design[idx]
            eXb = self.table.eXb[idx]
            cum_A = _prefix(terms.hazard)
            cum_Bx = _prefix(terms.Bx)

            at_risk_A = np.maximum(cum_A[terms.hi] - cum_A[terms.lo], 0.0)
            at_risk_Bx = cum_Bx[terms.hi] - cum_Bx[terms.lo]
            at_risk_Bx[terms.hi <= terms.lo] = 0.0
            U_s = -eXb[:, None] * (X * at_risk_A[:, None] - at_risk_Bx)

            has_event = terms.event_pos >= 0
            g = terms.event_pos[has_event]
            U_s[has_event] += X[has_event] - terms.xbar_mean[g]
            U_s[has_event] += eXb[has_event, None] * (
                X[has_event] * terms.C1[g][:, None] - terms.C1x[g]
            )
            U[idx] = U_s
        return U

    def baseline_increment_iid(self, s: int, n_grid: Optional[int] = None) -> np.ndarray:
        """
        Influence of each training subject on each hazard increment.

        Parameters
        ----------
        s : int
            Stratum code.
        n_grid : int, optional
            Only the first ``n_grid`` event times of the stratum.

        Returns
        -------
        np.ndarray
            Shape (N, G): influence on h0 at every grid time of stratum s.
        """
        terms = self._terms[s]
        G = len(terms.times) if n_grid is None else min(n_grid, len(terms.times))
        out = np.zeros((self.n_train, G))
        if G == 0:
            return out

        idx = terms.index
        grid = np.arange(G)
        eXb = self.table.eXb[idx]
        at_risk = (terms.lo[:, None] <= grid[None, :]) & (grid[None, :] < terms.hi[:, None])
        event = terms.event_pos[:, None] == grid[None, :]

        d = np.maximum(terms.n_events[:G], 1)
        out[idx] = (
            event * (terms.hazard[:G] / d)[None, :]
            - eXb[:, None] * (at_risk * terms.B[None, :G] - event * terms.C[None, :G])
        )
        if self.p:
            out -= self.iid_beta @ terms.Bx[:G].T
        return out

    def cumhazard_iid(self, s: int, times: np.ndarray) -> np.ndarray:
        """
        Influence on the baseline cumulative hazard H0(t) of stratum s.

        Evaluated in closed form per query time, without the (N, G)
        increment matrix.

        Returns
        -------
        np.ndarray
            Shape (N, P).
        """
        terms = self._terms[s]
        times = np.asarray(times, dtype=float)
        out = np.zeros((self.n_train, len(times)))
        if len(terms.times) == 0:
            return out

        pos = np.searchsorted(terms.times, times, side='right')   # grid indices < pos count
        idx = terms.index
        eXb = self.table.eXb[idx]
        cum_B = _prefix(terms.B)

        upper = np.minimum(terms.hi[:, None], pos[None, :])
        at_risk = np.where(upper > terms.lo[:, None], cum_B[upper] - cum_B[terms.lo][:, None], 0.0)

        has_event = terms.event_pos >= 0
        g = np.where(has_event, terms.event_pos, 0)
        counted = has_event[:, None] & (g[:, None] < pos[None, :])
        d = np.maximum(terms.n_events, 1)
        event_term = (terms.hazard[g] / d[g] + eXb * terms.C[g])[:, None]

        out[idx] = counted * event_term - eXb[:, None] * at_risk
        if self.p:
            cum_Bx = _prefix(terms.Bx)
            out -= self.iid_beta @ cum_Bx[pos].T
        return out


# ---------------------------------------------------------------------------
# Influence providers
# ---------------------------------------------------------------------------

class InfluenceSource(ABC):
    """Produces the influence of the training subjects on one query subject."""

    n_subjects: int
    n_times: int
    n_train: int

    @abstractmethod
    def subject_iid(self, j: int) -> np.ndarray:
        """Influence for query subject j, shape (P, N)."""

    def all_iid(self) -> np.ndarray:
        """Influence for every query subject, shape (M, P, N)."""
        out = np.zeros((self.n_subjects, self.n_times, self.n_train))
        for j in range(self.n_subjects):
            out[j] = self.subject_iid(j)
        return out


class CoxInfluenceSource(InfluenceSource):
    """
    Influence on the predicted cumulative hazard of query subjects.

    Parameters
    ----------
    linearization : CoxLinearization
        Linearised training model.
    new_eXb : np.ndarray
        eXb of the query subjects (M).
    new_design : np.ndarray
        Design matrix of the query subjects (M x p).
    new_strata : np.ndarray
        Stratum codes of the query subjects (M).
    times : np.ndarray
        Query times (P), in the order of the output.
    """

    def __init__(
        self,
        linearization: CoxLinearization,
        new_eXb: np.ndarray,
        new_design: np.ndarray,
        new_strata: np.ndarray,
        times: np.ndarray,
    ):
        self.lin = linearization
        self.new_eXb = np.asarray(new_eXb, dtype=float)
        self.new_design = np.asarray(new_design, dtype=float).reshape(len(self.new_eXb), -1)
        self.new_strata = np.asarray(new_strata, dtype=int)
        self.times = np.asarray(times, dtype=float)
        self.n_subjects = len(self.new_eXb)
        self.n_times = len(self.times)
        self.n_train = linearization.n_train
        self._cache: Dict[int, np.ndarray] = {}
        self._cumhazard0 = {
            s: linearization.stratum(s).cumhazard_at(self.times)
            for s in np.unique(self.new_strata)
        }

    def _baseline_iid(self, s: int) -> np.ndarray:
        # (N, P) per stratum; strata are few so this is kept
        if s not in self._cache:
            self._cache[s] = self.lin.cumhazard_iid(s, self.times)
        return self._cache[s]

    def subject_iid(self, j: int) -> np.ndarray:
        s = int(self.new_strata[j])
        out = self._baseline_iid(s).T.copy()
        if self.lin.p:
            beta_term = self.lin.iid_beta @ self.new_design[j]          # (N,)
            out += self._cumhazard0[s][:, None] * beta_term[None, :]
        return self.new_eXb[j] * out

    def all_iid(self) -> np.ndarray:
        """Dense path: cumulative sums of the per-increment influence."""
        out = np.zeros((self.n_subjects, self.n_times, self.n_train))
        for s in np.unique(self.new_strata):
            rows = np.flatnonzero(self.new_strata == s)
            sh = self.lin.stratum(s)
            pos = sh.grid_position(self.times)
            n_grid = int(pos.max()) + 1 if len(pos) else 0
            increments = self.lin.baseline_increment_iid(s, n_grid=n_grid)
            cumulative = np.cumsum(increments, axis=1)
            base = np.zeros((self.n_train, self.n_times))
            valid = pos >= 0
            base[:, valid] = cumulative[:, pos[valid]]

            block = np.broadcast_to(base.T, (len(rows), self.n_times, self.n_train)).copy()
            if self.lin.p:
                beta_term = self.new_design[rows] @ self.lin.iid_beta.T       # (m, N)
                block += self._cumhazard0[s][None, :, None] * beta_term[:, None, :]
            out[rows] = self.new_eXb[rows][:, None, None] * block
        return out


@dataclass
class InfluenceSummary:
    """Influence-based outputs of one predicted quantity."""

    se: Optional[np.ndarray]
    influence: InfluenceOutput
    band_quantile: Optional[np.ndarray] = None


BandFunction = Callable[[np.ndarray, np.ndarray], float]


class InfluenceProvider(ABC):
    """
    Turns an InfluenceSource into standard errors, influence arrays and
    band quantiles for one or several scaled quantities.

    ``scales`` maps a quantity name to an (M, P) factor multiplying the
    source influence (e.g. -S(t) for the survival).
    """

    def __init__(self, source: InfluenceSource, max_iid_size: Optional[int] = None):
        self.source = source
        self.max_iid_size = max_iid_size

    @abstractmethod
    def compute(
        self,
        scales: Dict[str, np.ndarray],
        iid: bool = False,
        se: bool = True,
        average_iid: bool = False,
        band_type: Optional[str] = None,
        band_fn: Optional[BandFunction] = None,
    ) -> Dict[str, InfluenceSummary]:
        """Compute the requested outputs for every quantity in ``scales``."""

    @staticmethod
    def _wrap(iid_array, average, iid: bool, average_iid: bool) -> InfluenceOutput:
        if iid:
            return FullInfluence(iid_array)
        if average_iid:
            return AverageInfluence(average)
        return NotComputed()


class FullInfluenceProvider(InfluenceProvider):
    """Materialises the (M, P, N) influence array once."""

    def compute(self, scales, iid=False, se=True, average_iid=False, band_type=None, band_fn=None):
        src = self.source
        size = src.n_subjects * src.n_times * src.n_train
        if self.max_iid_size is not None and size > self.max_iid_size:
            raise InvalidArgumentError(
                f"The influence array would hold {size:,} values (limit {self.max_iid_size:,}); "
                "use store_iid='minimal' or raise max_iid_size"
            )
        base = src.all_iid()

        out = {}
        for name, scale in scales.items():
            array = base * scale[:, :, None]
            std = np.sqrt(np.sum(array ** 2, axis=2))
            quantile = None
            if band_fn is not None and name == band_type:
                quantile = np.array([band_fn(array[j], std[j]) for j in range(src.n_subjects)])
            average = array.mean(axis=0).T if average_iid else None
            out[name] = InfluenceSummary(
                se=std if se else None,
                influence=self._wrap(array, average, iid, average_iid),
                band_quantile=quantile,
            )
        return out


class MinimalInfluenceProvider(InfluenceProvider):
    """Reduces the influence subject by subject; the array is only kept if asked for."""

    def compute(self, scales, iid=False, se=True, average_iid=False, band_type=None, band_fn=None):
        src = self.source
        M, P, N = src.n_subjects, src.n_times, src.n_train

        std = {name: np.zeros((M, P)) for name in scales}
        average = {name: np.zeros((P, N)) for name in scales}
        arrays = {name: np.zeros((M, P, N)) for name in scales} if iid else {}
        quantile = np.zeros(M) if band_fn is not None else None

        for j in range(M):
            block = src.subject_iid(j)
            for name, scale in scales.items():
                scaled = block * scale[j][:, None]
                std[name][j] = np.sqrt(np.sum(scaled ** 2, axis=1))
                if average_iid:
                    average[name] += scaled / M
                if iid:
                    arrays[name][j] = scaled
                if quantile is not None and name == band_type:
                    quantile[j] = band_fn(scaled, std[name][j])

        return {
            name: InfluenceSummary(
                se=std[name] if se else None,
                influence=self._wrap(arrays.get(name), average[name].T, iid, average_iid),
                band_quantile=quantile if name == band_type else None,
            )
            for name in scales
        }


def make_provider(source: InfluenceSource, store_iid: str, max_iid_size: Optional[int] = None) -> InfluenceProvider:
    """Select the storage strategy by name ('full' or 'minimal')."""
    if store_iid == 'full':
        return FullInfluenceProvider(source, max_iid_size=max_iid_size)
    if store_iid == 'minimal':
        return MinimalInfluenceProvider(source, max_iid_size=max_iid_size)
    raise InvalidArgumentError(f"store_iid must be 'full' or 'minimal', got {store_iid!r}")


def log_scale_factor(values: np.ndarray) -> np.ndarray:
    """1/values where values > 0, else 0 (influence on the log scale)."""
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.where(values > 0, 1.0 / values, 0.0)


def loglog_scale_factor(values: np.ndarray) -> np.ndarray:
    """Derivative of log(-log(x)) for x in (0, 1), 0 at the boundary."""
    inside = (values > 0) & (values < 1)
    safe = np.where(inside, values, 0.5)
    return np.where(inside, 1.0 / (safe * np.log(safe)), 0.0)
