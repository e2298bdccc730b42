"""
Capability interface between fitted Cox models and the estimators.

The estimators never look at a model object directly. They ask an adapter
for the training EventTable, the design matrix of new data, the strata of
new data and the coefficient variance. Each supported fitting backend gets
its own adapter:

- ArrayCoxModel : plain arrays (coefficients known or supplied)
- LifelinesCoxAdapter : lifelines.CoxPHFitter
- SksurvCoxAdapter : sksurv.linear_model.CoxPHSurvivalAnalysis
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import TIE_MODES
from .event_table import EventTable, encode_strata
from .exceptions import InvalidArgumentError, UnsupportedModelFeatureError

logger = logging.getLogger(__name__)

NewData = Union[pd.DataFrame, np.ndarray]


class CoxModelAdapter(ABC):
    """
    What the estimators need to know about a fitted Cox model.

    Subclasses provide the training outcome, the design matrix (training or
    new data), the strata of new data, the coefficients and their variance.
    Linear predictors, event tables and event time grids are derived here.
    """

    tie_mode: str = 'breslow'

    @property
    @abstractmethod
    def coefficients(self) -> np.ndarray:
        """Estimated regression coefficients (length p, possibly 0)."""

    @property
    @abstractmethod
    def strata_levels(self) -> List[str]:
        """Labels of the training strata."""

    @abstractmethod
    def training_outcome(self):
        """Return (start, stop, status, strata) arrays of the training data."""

    @abstractmethod
    def design_matrix(self, newdata: Optional[NewData] = None) -> np.ndarray:
        """Covariate matrix (no response, no intercept); training data if None."""

    @abstractmethod
    def strata_assignment(self, newdata: NewData) -> np.ndarray:
        """Training stratum code of every row of ``newdata``."""

    @abstractmethod
    def coefficient_variance(self) -> np.ndarray:
        """Estimated variance matrix of the coefficients (p x p)."""

    @property
    def n_covariates(self) -> int:
        return len(self.coefficients)

    def linear_predictor(
        self,
        newdata: Optional[NewData] = None,
        centered: bool = False,
    ) -> np.ndarray:
        """
        Linear predictor of the training data (``newdata=None``) or new data.

        With ``centered=True`` the covariates are centered at their training
        means, i.e. the mean training linear predictor is subtracted.
        """
        beta = self.coefficients
        if len(beta) == 0:
            n = len(self.training_outcome()[1]) if newdata is None else len(newdata)
            return np.zeros(n)

        lp = self.design_matrix(newdata) @ beta
        if centered:
            lp = lp - self.design_matrix(None).mean(axis=0) @ beta
        return lp

    def event_table(self, centered: bool = False) -> EventTable:
        """Training EventTable with the (optionally centered) eXb."""
        start, stop, status, strata = self.training_outcome()
        return EventTable.from_arrays(
            stop=stop,
            status=status,
            start=start,
            strata=strata,
            eXb=np.exp(self.linear_predictor(None, centered=centered)),
            strata_levels=self.strata_levels,
        )

    def distinct_event_times(self) -> List[np.ndarray]:
        """Sorted distinct event times of every stratum."""
        return [grid.times for grid in self.event_table().event_time_grid()]

    def last_event_time_per_stratum(self) -> np.ndarray:
        return self.event_table().last_event_times()


def _check_tie_mode(tie_mode: str) -> str:
    tie_mode = str(tie_mode).lower()
    if tie_mode == 'exact':
        raise InvalidArgumentError("Prediction with exact handling of ties is not implemented")
    if tie_mode not in TIE_MODES:
        raise InvalidArgumentError(f"Unknown tie mode {tie_mode!r}; expected one of {TIE_MODES}")
    return tie_mode


def _as_frame(newdata: NewData, columns: List[str]) -> pd.DataFrame:
    if isinstance(newdata, pd.DataFrame):
        return newdata
    newdata = np.atleast_2d(np.asarray(newdata, dtype=float))
    if newdata.shape[1] != len(columns):
        raise InvalidArgumentError(
            f"newdata has {newdata.shape[1]} columns, expected {len(columns)}"
        )
    return pd.DataFrame(newdata, columns=columns)


def _select_covariates(df: pd.DataFrame, feature_names: List[str]) -> np.ndarray:
    missing = [c for c in feature_names if c not in df.columns]
    if missing:
        raise InvalidArgumentError(f"newdata is missing covariate column(s): {missing}")
    X = df[feature_names].to_numpy(dtype=float)
    if np.isnan(X).any():
        raise InvalidArgumentError("newdata contains missing (NaN) covariate values")
    return X


class ArrayCoxModel(CoxModelAdapter):
    """
    Cox model described by arrays.

    Parameters
    ----------
    stop : array-like
        Exit times of the training subjects.
    status : array-like
        Event indicator (0/1).
    X : array-like, optional
        Training design matrix (n x p). No covariates when absent.
    coefficients : array-like, optional
        Regression coefficients (length p). Zeros when absent.
    start : array-like, optional
        Entry times (delayed entry).
    strata : array-like, optional
        Training stratum codes.
    strata_levels : List[str], optional
        Stratum labels.
    variance : array-like, optional
        Coefficient variance. Computed as the inverse observed information
        at ``coefficients`` when absent.
    tie_mode : str
        'breslow' or 'efron'.
    feature_names : List[str], optional
        Column names used to read covariates from a newdata DataFrame.
    strata_col : str
        Column of newdata holding the stratum (code or label).
    """

    def __init__(
        self,
        stop: Sequence[float],
        status: Sequence[int],
        X: Optional[np.ndarray] = None,
        coefficients: Optional[Sequence[float]] = None,
        start: Optional[Sequence[float]] = None,
        strata: Optional[Sequence[int]] = None,
        strata_levels: Optional[List[str]] = None,
        variance: Optional[np.ndarray] = None,
        tie_mode: str = 'breslow',
        feature_names: Optional[List[str]] = None,
        strata_col: str = 'strata',
    ):
        self.stop = np.asarray(stop, dtype=float)
        n = len(self.stop)
        self.status = np.asarray(status).astype(int)
        self.start = np.zeros(n) if start is None else np.asarray(start, dtype=float)
        self.strata = np.zeros(n, dtype=int) if strata is None else np.asarray(strata).astype(int)
        if strata_levels is None:
            strata_levels = [str(k) for k in range(int(self.strata.max()) + 1 if n else 1)]
        self._strata_levels = list(strata_levels)

        self.X = np.zeros((n, 0)) if X is None else np.asarray(X, dtype=float).reshape(n, -1)
        p = self.X.shape[1]
        self._coefficients = np.zeros(p) if coefficients is None else np.asarray(coefficients, dtype=float)
        if len(self._coefficients) != p:
            raise InvalidArgumentError(
                f"{len(self._coefficients)} coefficients given for {p} covariates"
            )
        self.feature_names = feature_names or [f"x{j}" for j in range(p)]
        self.strata_col = strata_col
        self.tie_mode = _check_tie_mode(tie_mode)
        self._variance = None if variance is None else np.asarray(variance, dtype=float)

    @property
    def coefficients(self) -> np.ndarray:
        return self._coefficients

    @property
    def strata_levels(self) -> List[str]:
        return self._strata_levels

    def training_outcome(self):
        return self.start, self.stop, self.status, self.strata

    def design_matrix(self, newdata: Optional[NewData] = None) -> np.ndarray:
        if newdata is None:
            return self.X
        if len(self.feature_names) == 0:
            return np.zeros((len(newdata), 0))
        return _select_covariates(_as_frame(newdata, self.feature_names), self.feature_names)

    def strata_assignment(self, newdata: NewData) -> np.ndarray:
        n = len(newdata)
        if len(self._strata_levels) <= 1:
            return np.zeros(n, dtype=int)
        if not isinstance(newdata, pd.DataFrame) or self.strata_col not in newdata.columns:
            raise InvalidArgumentError(
                f"Stratified model: newdata needs a '{self.strata_col}' column"
            )
        values = newdata[self.strata_col]
        if pd.api.types.is_integer_dtype(values):
            codes = values.to_numpy(dtype=int)
        else:
            lookup = {label: code for code, label in enumerate(self._strata_levels)}
            unknown = sorted(set(values.astype(str)) - set(lookup))
            if unknown:
                raise InvalidArgumentError(f"Strata not present in the training data: {unknown}")
            codes = values.astype(str).map(lookup).to_numpy(dtype=int)
        if (codes < 0).any() or (codes >= len(self._strata_levels)).any():
            raise InvalidArgumentError("Stratum code of newdata outside the training strata")
        return codes

    def coefficient_variance(self) -> np.ndarray:
        if self._variance is None:
            from .influence import cox_information_matrix

            p = self.n_covariates
            if p == 0:
                self._variance = np.zeros((0, 0))
            else:
                info = cox_information_matrix(self.event_table(), self.X, self.tie_mode)
                self._variance = np.linalg.inv(info)
        return self._variance


class LifelinesCoxAdapter(CoxModelAdapter):
    """
    Adapter for a fitted ``lifelines.CoxPHFitter``.

    lifelines does not keep the training frame, so it is passed alongside
    the fitter. lifelines fits with Efron's tie correction.

    Parameters
    ----------
    fitter : lifelines.CoxPHFitter
        Fitted model (Breslow baseline estimation).
    df : pd.DataFrame
        The frame the model was fitted on.
    """

    tie_mode = 'efron'

    def __init__(self, fitter, df: pd.DataFrame):
        if type(fitter).__name__ == 'CoxTimeVaryingFitter':
            raise UnsupportedModelFeatureError(
                "Cox models with time-varying covariates are not supported"
            )
        if not hasattr(fitter, 'params_'):
            raise InvalidArgumentError("The lifelines model has not been fitted")
        if getattr(fitter, 'baseline_estimation_method', 'breslow') != 'breslow':
            raise UnsupportedModelFeatureError(
                "Only semi-parametric (Breslow baseline) lifelines Cox models are supported"
            )
        if getattr(fitter, 'weights_col', None):
            raise UnsupportedModelFeatureError(
                "Cox models fitted with case weights are not supported"
            )

        self.fitter = fitter
        self.df = df
        self.duration_col = fitter.duration_col
        self.event_col = fitter.event_col
        self.entry_col = getattr(fitter, 'entry_col', None)
        strata = getattr(fitter, 'strata', None)
        if strata is None:
            self.strata_cols = []
        elif isinstance(strata, str):
            self.strata_cols = [strata]
        else:
            self.strata_cols = list(strata)
        self.feature_names = list(fitter.params_.index)

        if self.strata_cols:
            self._train_strata, self._strata_levels = encode_strata(df, self.strata_cols)
        else:
            self._train_strata, self._strata_levels = np.zeros(len(df), dtype=int), ['0']

    @property
    def coefficients(self) -> np.ndarray:
        return self.fitter.params_.to_numpy(dtype=float)

    @property
    def strata_levels(self) -> List[str]:
        return self._strata_levels

    def training_outcome(self):
        stop = self.df[self.duration_col].to_numpy(dtype=float)
        if self.event_col is None:
            status = np.ones(len(stop), dtype=int)
        else:
            status = self.df[self.event_col].to_numpy().astype(int)
        if self.entry_col:
            start = self.df[self.entry_col].to_numpy(dtype=float)
        else:
            start = np.zeros(len(stop))
        return start, stop, status, self._train_strata

    def design_matrix(self, newdata: Optional[NewData] = None) -> np.ndarray:
        df = self.df if newdata is None else _as_frame(newdata, self.feature_names)
        return _select_covariates(df, self.feature_names)

    def strata_assignment(self, newdata: NewData) -> np.ndarray:
        if not self.strata_cols:
            return np.zeros(len(newdata), dtype=int)
        codes, _ = encode_strata(newdata, self.strata_cols, levels=self._strata_levels)
        return codes

    def coefficient_variance(self) -> np.ndarray:
        return np.asarray(self.fitter.variance_matrix_, dtype=float)


class SksurvCoxAdapter(CoxModelAdapter):
    """
    Adapter for a fitted ``sksurv.linear_model.CoxPHSurvivalAnalysis``.

    scikit-survival reports no coefficient variance, so the inverse
    observed information (plus the ridge penalty) is used.

    Parameters
    ----------
    estimator : CoxPHSurvivalAnalysis
        Fitted estimator.
    X : array-like
        Training covariates, as passed to ``fit`` (before ``scaler``).
    y : structured array
        Training outcome (event indicator, time).
    feature_names : List[str], optional
        Column names used to read covariates from a newdata DataFrame.
    scaler : sklearn transformer, optional
        Fitted transformer applied to covariates before the linear predictor.
    """

    def __init__(
        self,
        estimator,
        X: Union[pd.DataFrame, np.ndarray],
        y: np.ndarray,
        feature_names: Optional[List[str]] = None,
        scaler=None,
    ):
        from sksurv.util import check_y_survival

        if not hasattr(estimator, 'coef_'):
            raise InvalidArgumentError("The scikit-survival model has not been fitted")
        event, time = check_y_survival(y)

        if isinstance(X, pd.DataFrame):
            feature_names = feature_names or list(X.columns)
            X = X.to_numpy(dtype=float)
        X = np.asarray(X, dtype=float)

        self.estimator = estimator
        self.scaler = scaler
        self.feature_names = feature_names or [f"x{j}" for j in range(X.shape[1])]
        self._X_raw = X
        self._time = np.asarray(time, dtype=float)
        self._event = np.asarray(event).astype(int)
        self.tie_mode = _check_tie_mode(getattr(estimator, 'ties', 'breslow'))
        self._variance = None

    @property
    def coefficients(self) -> np.ndarray:
        return np.asarray(self.estimator.coef_, dtype=float).ravel()

    @property
    def strata_levels(self) -> List[str]:
        return ['0']

    def training_outcome(self):
        n = len(self._time)
        return np.zeros(n), self._time, self._event, np.zeros(n, dtype=int)

    def _transform(self, X: np.ndarray) -> np.ndarray:
        if self.scaler is not None:
            X = self.scaler.transform(X)
        return np.asarray(X, dtype=float)

    def design_matrix(self, newdata: Optional[NewData] = None) -> np.ndarray:
        if newdata is None:
            return self._transform(self._X_raw)
        X = _select_covariates(_as_frame(newdata, self.feature_names), self.feature_names)
        return self._transform(X)

    def strata_assignment(self, newdata: NewData) -> np.ndarray:
        return np.zeros(len(newdata), dtype=int)

    def coefficient_variance(self) -> np.ndarray:
        if self._variance is None:
            from .influence import cox_information_matrix

            info = cox_information_matrix(self.event_table(), self.design_matrix(None), self.tie_mode)
            alpha = np.broadcast_to(np.asarray(getattr(self.estimator, 'alpha', 0.0), dtype=float),
                                    (self.n_covariates,))
            self._variance = np.linalg.inv(info + np.diag(alpha))
        return self._variance
