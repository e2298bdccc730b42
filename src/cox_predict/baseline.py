"""
Baseline hazard estimation for (stratified) Cox models.

For each stratum the subjects are sorted by stop time (ties: entry time,
then events before censorings) and the weight of the risk set
``{i : start_i < t <= stop_i}`` is accumulated at every distinct event
time. With ``d`` tied events and risk-set weight ``R``:

- Breslow : h(t) = d / R
- Efron   : h(t) = sum_{k=0}^{d-1} 1 / (R - k * wbar),  wbar = E / d

where ``E`` is the summed eXb of the tied events. The cumulative hazard is
the running sum of the increments.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import TIE_MODES
from .event_table import EventTable
from .exceptions import InvalidArgumentError, report_degeneracy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StratumHazard:
    """
    Baseline hazard step function of one stratum.

    Attributes
    ----------
    stratum : int
        Stratum code.
    times : np.ndarray
        Distinct event times (increasing).
    n_events : np.ndarray
        Tied events at each time.
    n_at_risk : np.ndarray
        Subjects in the risk set at each time.
    risk_weight : np.ndarray
        Summed eXb of the risk set (R).
    event_weight : np.ndarray
        Summed eXb of the tied events (E).
    hazard : np.ndarray
        Hazard increments h(t).
    cumhazard : np.ndarray
        Cumulative hazard H(t).
    last_event_time : float
        Largest stop time in the stratum (``-inf`` when empty).
    """

    stratum: int
    times: np.ndarray
    n_events: np.ndarray
    n_at_risk: np.ndarray
    risk_weight: np.ndarray
    event_weight: np.ndarray
    hazard: np.ndarray
    cumhazard: np.ndarray
    last_event_time: float

    def __len__(self) -> int:
        return len(self.times)

    def grid_position(self, times: np.ndarray) -> np.ndarray:
        """Index of the last grid time <= t (-1 when none)."""
        return np.searchsorted(self.times, times, side='right') - 1

    def cumhazard_at(self, times: np.ndarray) -> np.ndarray:
        """Right-continuous step lookup of H(t); 0 before the first event."""
        pos = self.grid_position(np.asarray(times, dtype=float))
        out = np.zeros(len(pos))
        valid = pos >= 0
        out[valid] = self.cumhazard[pos[valid]]
        return out

    def cumhazard_before(self, times: np.ndarray) -> np.ndarray:
        """Left limit H(t-)."""
        pos = np.searchsorted(self.times, np.asarray(times, dtype=float), side='left') - 1
        out = np.zeros(len(pos))
        valid = pos >= 0
        out[valid] = self.cumhazard[pos[valid]]
        return out

    def hazard_at(self, times: np.ndarray) -> np.ndarray:
        """Hazard increment at t; 0 unless t is an event time."""
        times = np.asarray(times, dtype=float)
        pos = self.grid_position(times)
        out = np.zeros(len(pos))
        valid = pos >= 0
        on_grid = np.zeros(len(pos), dtype=bool)
        on_grid[valid] = self.times[pos[valid]] == times[valid]
        out[on_grid] = self.hazard[pos[on_grid]]
        return out


@dataclass(frozen=True)
class BaselineHazard:
    """Per-stratum baseline hazard of a fitted model."""

    strata: List[StratumHazard]
    strata_levels: List[str]
    tie_mode: str
    centered: bool = False
    event_table: Optional[EventTable] = field(default=None, repr=False, compare=False)

    @property
    def n_strata(self) -> int:
        return len(self.strata)

    @property
    def last_event_times(self) -> np.ndarray:
        return np.array([s.last_event_time for s in self.strata])

    def to_frame(self, types: Sequence[str] = ('hazard', 'cumhazard', 'survival')) -> pd.DataFrame:
        """
        Long table of the baseline hazard.

        Returns
        -------
        pd.DataFrame
            One row per stratum and event time with columns
            'time', the requested types and 'strata'.
        """
        frames = []
        for s in self.strata:
            frame = pd.DataFrame({'time': s.times})
            if 'hazard' in types:
                frame['hazard'] = s.hazard
            if 'cumhazard' in types:
                frame['cumhazard'] = s.cumhazard
            if 'survival' in types:
                frame['survival'] = np.exp(-s.cumhazard)
            frame['strata'] = self.strata_levels[s.stratum]
            frames.append(frame)
        if not frames:
            return pd.DataFrame(columns=['time', *types, 'strata'])
        return pd.concat(frames, ignore_index=True)


def efron_slots(n_events: np.ndarray, tie_mode: str):
    """
    Expand tied events into one pseudo-increment per event.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (grid index of each slot, fraction k/d of the tied event weight
        removed from the risk set; always 0 under Breslow)
    """
    n_events = np.asarray(n_events, dtype=int)
    owner = np.repeat(np.arange(len(n_events)), n_events)
    if tie_mode == 'efron' and len(owner):
        first = np.repeat(np.cumsum(n_events) - n_events, n_events)
        k = np.arange(len(owner)) - first
        frac = k / n_events[owner]
    else:
        frac = np.zeros(len(owner))
    return owner, frac


def _stratum_hazard(
    stratum: int,
    start: np.ndarray,
    stop: np.ndarray,
    status: np.ndarray,
    eXb: np.ndarray,
    tie_mode: str,
    max_time: float,
    strict: bool,
) -> StratumHazard:
    if len(stop) == 0:
        empty = np.array([])
        return StratumHazard(stratum, empty, empty.astype(int), empty.astype(int),
                             empty, empty, empty, empty, -np.inf)

    last_event_time = float(stop.max())

    # stop ascending, start ascending, events before censorings
    order = np.lexsort((-status, start, stop))
    start, stop, status, eXb = start[order], stop[order], status[order], eXb[order]

    is_event = status == 1
    times, n_events = np.unique(stop[is_event], return_counts=True)
    keep = times <= max_time
    times, n_events = times[keep], n_events[keep]
    event_weight = np.zeros(len(times))
    if len(times):
        grid_pos = np.searchsorted(times, stop[is_event])
        in_grid = grid_pos < len(times)
        in_grid[in_grid] = times[grid_pos[in_grid]] == stop[is_event][in_grid]
        np.add.at(event_weight, grid_pos[in_grid], eXb[is_event][in_grid])

    # risk set at t: stop >= t minus those not yet entered (start >= t)
    stop_sorted_weight = np.concatenate([np.cumsum(eXb[::-1])[::-1], [0.0]])
    start_order = np.argsort(start, kind='mergesort')
    start_sorted = start[start_order]
    entry_tail = np.concatenate([np.cumsum(eXb[start_order][::-1])[::-1], [0.0]])

    pos_stop = np.searchsorted(stop, times, side='left')
    pos_start = np.searchsorted(start_sorted, times, side='left')
    risk_weight = stop_sorted_weight[pos_stop] - entry_tail[pos_start]
    n_at_risk = (len(stop) - pos_stop) - (len(start_sorted) - pos_start)

    degenerate = risk_weight <= 0
    if degenerate.any():
        report_degeneracy(
            f"Zero risk-set weight at {degenerate.sum()} event time(s) of stratum {stratum}; "
            "hazard set to 0 there",
            strict=strict,
        )

    owner, frac = efron_slots(n_events, tie_mode)
    denom = risk_weight[owner] - frac * event_weight[owner]
    with np.errstate(divide='ignore', invalid='ignore'):
        increments = np.where(denom > 0, 1.0 / denom, 0.0)
    hazard = np.bincount(owner, weights=increments, minlength=len(times))
    hazard[degenerate] = 0.0

    return StratumHazard(
        stratum=stratum,
        times=times,
        n_events=n_events,
        n_at_risk=n_at_risk,
        risk_weight=risk_weight,
        event_weight=event_weight,
        hazard=hazard,
        cumhazard=np.cumsum(hazard),
        last_event_time=last_event_time,
    )


def check_times(times: Optional[Sequence[float]]) -> np.ndarray:
    """Validate query times (no NaN); returns a float array."""
    if times is None:
        return np.array([])
    times = np.atleast_1d(np.asarray(times, dtype=float))
    if np.isnan(times).any():
        raise InvalidArgumentError("Missing (NaN) values in argument 'times' are not allowed")
    return times


def estimate_baseline_hazard(
    table: EventTable,
    times: Optional[Sequence[float]] = None,
    tie_mode: str = 'breslow',
    centered: bool = False,
    strict: bool = False,
) -> BaselineHazard:
    """
    Estimate the baseline hazard of every stratum of an EventTable.

    Parameters
    ----------
    table : EventTable
        Training data with the eXb the baseline refers to.
    times : array-like, optional
        Query times. Only event times up to the largest query time are
        evaluated. All event times when absent.
    tie_mode : str
        'breslow' or 'efron'. 'exact' is rejected.
    centered : bool
        Recorded on the result; whether ``table.eXb`` was centered.
    strict : bool
        Raise on numeric degeneracy instead of warning.

    Returns
    -------
    BaselineHazard
    """
    tie_mode = str(tie_mode).lower()
    if tie_mode == 'exact':
        raise InvalidArgumentError("Prediction with exact handling of ties is not implemented")
    if tie_mode not in TIE_MODES:
        raise InvalidArgumentError(f"Unknown tie mode {tie_mode!r}; expected one of {TIE_MODES}")

    times = check_times(times)
    max_time = times.max() if len(times) else np.inf

    if table.has_delayed_entry:
        logger.debug("Delayed entry present: risk sets use start < t <= stop within each stratum")

    strata = []
    for s in range(table.n_strata):
        idx = table.stratum_index(s)
        hazard = _stratum_hazard(
            s,
            table.start[idx],
            table.stop[idx],
            table.status[idx],
            table.eXb[idx],
            tie_mode,
            max_time,
            strict,
        )
        if len(hazard) == 0:
            logger.debug(f"Stratum {table.strata_levels[s]} has no event time to evaluate")
        strata.append(hazard)

    return BaselineHazard(
        strata=strata,
        strata_levels=list(table.strata_levels) or ['0'],
        tie_mode=tie_mode,
        centered=centered,
        event_table=table,
    )


def estimate_baseline(
    model,
    times: Optional[Sequence[float]] = None,
    tie_mode: Optional[str] = None,
    centered: bool = False,
    strict: bool = False,
) -> BaselineHazard:
    """
    Baseline hazard of a fitted model.

    Parameters
    ----------
    model : CoxModelAdapter
        Fitted model.
    times : array-like, optional
        Restrict the computation to event times up to max(times).
    tie_mode : str, optional
        Overrides the tie handling the model was fitted with.
    centered : bool
        Baseline at the mean covariate profile (True) or at zero covariates.

    Returns
    -------
    BaselineHazard
    """
    table = model.event_table(centered=centered)
    return estimate_baseline_hazard(
        table,
        times=times,
        tie_mode=tie_mode or model.tie_mode,
        centered=centered,
        strict=strict,
    )
