"""
Minimal summary of the training data of a fitted Cox model.

An EventTable holds, for each training subject, the entry (start) and exit
(stop) times, the event status, the stratum code and the exponentiated
linear predictor. It is built once per fitted model and never modified;
everything downstream (baseline hazard, predictions, influence functions)
reads from it.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import InvalidArgumentError, UnsupportedModelFeatureError


@dataclass(frozen=True)
class EventTimeGrid:
    """
    Distinct event times of one stratum.

    Attributes
    ----------
    stratum : int
        Stratum code.
    times : np.ndarray
        Strictly increasing stop times with at least one event.
    n_events : np.ndarray
        Number of (tied) events at each time.
    last_event_time : float
        Largest stop time in the stratum, events and censorings alike.
        ``-inf`` for a stratum without subjects.
    """

    stratum: int
    times: np.ndarray
    n_events: np.ndarray
    last_event_time: float

    def __len__(self) -> int:
        return len(self.times)


@dataclass(frozen=True)
class EventTable:
    """
    Per-subject training data needed by the estimators.

    Attributes
    ----------
    start : np.ndarray
        Entry times (0 without delayed entry).
    stop : np.ndarray
        Exit times, strictly greater than start.
    status : np.ndarray
        1 for an event, 0 for a censoring.
    strata : np.ndarray
        Integer stratum codes in 0..K-1.
    eXb : np.ndarray
        Exponentiated linear predictor, strictly positive.
    strata_levels : List[str]
        Labels of the K strata.
    """

    start: np.ndarray
    stop: np.ndarray
    status: np.ndarray
    strata: np.ndarray
    eXb: np.ndarray
    strata_levels: List[str] = field(default_factory=list)

    def __post_init__(self):
        n = len(self.stop)
        for name in ('start', 'status', 'strata', 'eXb'):
            if len(getattr(self, name)) != n:
                raise InvalidArgumentError(
                    f"EventTable column '{name}' has length "
                    f"{len(getattr(self, name))}, expected {n}"
                )
        if np.isnan(self.start).any() or np.isnan(self.stop).any():
            raise InvalidArgumentError("Missing (NaN) start or stop times are not allowed")
        if (self.start < 0).any():
            raise UnsupportedModelFeatureError(
                "Negative entry times found: left-censoring beyond left-truncation "
                "is not supported"
            )
        if (self.stop <= self.start).any():
            raise InvalidArgumentError("Every subject needs stop > start")
        if not np.isin(self.status, (0, 1)).all():
            raise InvalidArgumentError("status must be coded 0 (censored) or 1 (event)")
        if not np.all(np.isfinite(self.eXb)) or (self.eXb <= 0).any():
            raise InvalidArgumentError("eXb must be finite and strictly positive")
        if n and (self.strata.min() < 0 or self.strata.max() >= self.n_strata):
            raise InvalidArgumentError(
                f"strata codes must lie in 0..{self.n_strata - 1}"
            )

    @classmethod
    def from_arrays(
        cls,
        stop: Sequence[float],
        status: Sequence[int],
        start: Optional[Sequence[float]] = None,
        strata: Optional[Sequence[int]] = None,
        eXb: Optional[Sequence[float]] = None,
        strata_levels: Optional[List[str]] = None,
    ) -> 'EventTable':
        """
        Build an EventTable from plain arrays.

        Parameters
        ----------
        stop : array-like
            Exit times.
        status : array-like
            Event indicator (0/1).
        start : array-like, optional
            Entry times; absent start means entry at time 0.
        strata : array-like, optional
            Integer stratum codes; a single stratum when absent.
        eXb : array-like, optional
            Exponentiated linear predictor; 1 for every subject when absent.
        strata_levels : List[str], optional
            Stratum labels. Defaults to the string form of the codes.

        Returns
        -------
        EventTable
        """
        stop = np.asarray(stop, dtype=float)
        n = len(stop)
        start = np.zeros(n) if start is None else np.asarray(start, dtype=float)
        status = np.asarray(status).astype(int)
        strata = np.zeros(n, dtype=int) if strata is None else np.asarray(strata).astype(int)
        eXb = np.ones(n) if eXb is None else np.asarray(eXb, dtype=float)

        if strata_levels is None:
            n_levels = int(strata.max()) + 1 if n else 1
            strata_levels = [str(k) for k in range(n_levels)]

        return cls(
            start=start,
            stop=stop,
            status=status,
            strata=strata,
            eXb=eXb,
            strata_levels=list(strata_levels),
        )

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        duration_col: str = 'duration',
        event_col: str = 'event',
        entry_col: Optional[str] = None,
        strata_cols: Optional[List[str]] = None,
        eXb: Optional[Sequence[float]] = None,
    ) -> 'EventTable':
        """
        Build an EventTable from a one-row-per-subject DataFrame.

        Strata are the observed combinations of ``strata_cols``, coded in
        sorted order.
        """
        if strata_cols:
            codes, levels = encode_strata(df, strata_cols)
        else:
            codes, levels = None, None

        return cls.from_arrays(
            stop=df[duration_col].to_numpy(dtype=float),
            status=df[event_col].to_numpy(),
            start=None if entry_col is None else df[entry_col].to_numpy(dtype=float),
            strata=codes,
            eXb=eXb,
            strata_levels=levels,
        )

    def __len__(self) -> int:
        return len(self.stop)

    @property
    def n_strata(self) -> int:
        return max(len(self.strata_levels), 1)

    @property
    def is_stratified(self) -> bool:
        return self.n_strata > 1

    @property
    def has_delayed_entry(self) -> bool:
        return bool((self.start != 0).any())

    def with_eXb(self, eXb: np.ndarray) -> 'EventTable':
        """Copy of the table with another linear predictor."""
        return EventTable(
            start=self.start,
            stop=self.stop,
            status=self.status,
            strata=self.strata,
            eXb=np.asarray(eXb, dtype=float),
            strata_levels=self.strata_levels,
        )

    def stratum_index(self, stratum: int) -> np.ndarray:
        """Positions of the subjects belonging to ``stratum``."""
        return np.flatnonzero(self.strata == stratum)

    def last_event_times(self) -> np.ndarray:
        """Largest stop time per stratum (``-inf`` for empty strata)."""
        out = np.full(self.n_strata, -np.inf)
        for s in range(self.n_strata):
            idx = self.stratum_index(s)
            if len(idx):
                out[s] = self.stop[idx].max()
        return out

    def event_time_grid(self) -> List[EventTimeGrid]:
        """Distinct event times and tie counts for every stratum."""
        last = self.last_event_times()
        grids = []
        for s in range(self.n_strata):
            idx = self.stratum_index(s)
            event_stop = self.stop[idx][self.status[idx] == 1]
            times, counts = np.unique(event_stop, return_counts=True)
            grids.append(EventTimeGrid(
                stratum=s,
                times=times,
                n_events=counts,
                last_event_time=float(last[s]),
            ))
        return grids


def encode_strata(
    df: pd.DataFrame,
    strata_cols: List[str],
    levels: Optional[List[str]] = None,
):
    """
    Map the combinations of ``strata_cols`` to integer codes.

    Parameters
    ----------
    df : pd.DataFrame
        Data holding the strata columns.
    strata_cols : List[str]
        Columns defining the strata.
    levels : List[str], optional
        Known labels (from the training data). Query rows whose stratum is
        not among them are rejected.

    Returns
    -------
    Tuple[np.ndarray, List[str]]
        (codes, levels)
    """
    missing = [c for c in strata_cols if c not in df.columns]
    if missing:
        raise InvalidArgumentError(f"Strata column(s) missing from data: {missing}")

    labels = df[strata_cols].astype(str).apply(
        lambda row: ' '.join(f"{col}={val}" for col, val in zip(strata_cols, row)),
        axis=1,
    )
    if levels is None:
        levels = sorted(labels.unique())

    lookup = {label: code for code, label in enumerate(levels)}
    unknown = sorted(set(labels) - set(lookup))
    if unknown:
        raise InvalidArgumentError(
            f"Strata not present in the training data: {', '.join(unknown)}"
        )

    codes = labels.map(lookup).to_numpy(dtype=int)
    return codes, list(levels)
