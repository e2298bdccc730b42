"""
Cause-specific Cox proportional hazards models for competing risks.

In cause-specific analysis, competing events are treated as censored.
This gives the hazard of the event among those still at risk, which
differs from the Fine-Gray subdistribution hazard.

``CauseSpecificCox`` fits one model per cause (and, with
``surv_type='survival'``, one model for the all-cause survival) on the
same subjects, then combines them into absolute risks through
:func:`cox_predict.cumulative_incidence.predict_cumulative_incidence`.
"""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from sklearn.preprocessing import StandardScaler
from sksurv.linear_model import CoxPHSurvivalAnalysis

from .adapters import CoxModelAdapter, LifelinesCoxAdapter, SksurvCoxAdapter
from .config import SURV_TYPES, PredictionOptions
from .cumulative_incidence import OVERALL, CumulativeIncidencePrediction, predict_cumulative_incidence
from .exceptions import InvalidArgumentError, UnsupportedModelFeatureError

logger = logging.getLogger(__name__)

BACKENDS = ('lifelines', 'sksurv')


class CauseSpecificCox:
    """
    Cause-specific Cox proportional hazards model wrapper.

    This class provides a unified interface for fitting cause-specific
    Cox models using either lifelines or scikit-survival.

    Parameters
    ----------
    causes : Sequence[int], optional
        Event codes to model. Defaults to every non-zero code in the data.
    penalizer : float
        L2 regularization penalty
    backend : str
        'lifelines' or 'sksurv'
    surv_type : str
        'hazard' (one model per cause) or 'survival' (models per cause
        plus one all-cause model)

    Attributes
    ----------
    adapters_ : Dict
        Fitted models, keyed by cause (and 'overall').
    causes_ : List[int]
        Modelled causes.
    feature_names_ : List[str]
        Names of features used in fitting
    """

    def __init__(
        self,
        causes: Optional[Sequence[int]] = None,
        penalizer: float = 0.0,
        backend: str = 'lifelines',
        surv_type: str = 'hazard',
    ):
        if backend not in BACKENDS:
            raise InvalidArgumentError(f"Unknown backend: {backend}")
        if surv_type not in SURV_TYPES:
            raise InvalidArgumentError(f"surv_type must be one of {SURV_TYPES}, got {surv_type!r}")
        self.causes = causes
        self.penalizer = penalizer
        self.backend = backend
        self.surv_type = surv_type

        self.adapters_: Dict[object, CoxModelAdapter] = {}
        self.causes_: List = []
        self.feature_names_: List[str] = []
        self.scaler_ = None

    def fit(
        self,
        df: pd.DataFrame,
        feature_cols: List[str],
        duration_col: str = 'duration',
        event_col: str = 'event_code',
        entry_col: Optional[str] = None,
        strata: Optional[List[str]] = None,
        standardize: bool = True,
    ) -> 'CauseSpecificCox':
        """
        Fit the cause-specific Cox models.

        Parameters
        ----------
        df : pd.DataFrame
            Data with one row per subject (terminal record)
        feature_cols : List[str]
            Feature columns to use
        duration_col : str
            Column with survival time
        event_col : str
            Column with event code (0 = censored)
        entry_col : str, optional
            Delayed entry time (lifelines only)
        strata : List[str], optional
            Stratification columns (lifelines only)
        standardize : bool
            Whether to standardize features (sksurv only)

        Returns
        -------
        self
        """
        strata = list(strata or [])
        extra = ([entry_col] if entry_col else []) + strata
        if self.backend == 'sksurv' and extra:
            raise UnsupportedModelFeatureError(
                "Delayed entry and strata require the lifelines backend"
            )

        # every model is fitted on the same rows
        cols = list(feature_cols) + [duration_col, event_col] + extra
        df_fit = df[cols].dropna().reset_index(drop=True)
        if len(df_fit) < len(df):
            logger.info(f"Dropped {len(df) - len(df_fit):,} rows with missing values")

        codes = df_fit[event_col].to_numpy()
        if self.causes is None:
            self.causes_ = sorted(int(c) for c in np.unique(codes) if c != 0)
        else:
            self.causes_ = list(self.causes)
        if not self.causes_:
            raise InvalidArgumentError("No event observed: nothing to model")

        self.feature_names_ = list(feature_cols)
        targets = {cause: (codes == cause).astype(int) for cause in self.causes_}
        if self.surv_type == 'survival':
            targets[OVERALL] = (codes != 0).astype(int)

        self.adapters_ = {}
        self.scaler_ = None
        for key, status in targets.items():
            if self.backend == 'lifelines':
                self.adapters_[key] = self._fit_lifelines(
                    df_fit, status, duration_col, entry_col, strata,
                )
            else:
                self.adapters_[key] = self._fit_sksurv(df_fit, status, duration_col, standardize)
            logger.info(f"Fitted cause-specific Cox model for {key!r}: {int(status.sum()):,} events")

        return self

    def _fit_lifelines(self, df_fit, status, duration_col, entry_col, strata) -> LifelinesCoxAdapter:
        # lifelines uses every non-outcome column as a covariate
        cols = self.feature_names_ + [duration_col] + ([entry_col] if entry_col else []) + strata
        df_model = df_fit[cols].copy()
        df_model['event_cs'] = status

        cph = CoxPHFitter(penalizer=self.penalizer)
        cph.fit(
            df_model,
            duration_col=duration_col,
            event_col='event_cs',
            entry_col=entry_col,
            strata=strata or None,
        )
        return LifelinesCoxAdapter(cph, df_model)

    def _fit_sksurv(self, df_fit, status, duration_col, standardize) -> SksurvCoxAdapter:
        X = df_fit[self.feature_names_].to_numpy(dtype=float)
        if standardize and self.scaler_ is None:
            self.scaler_ = StandardScaler().fit(X)
        X_model = self.scaler_.transform(X) if self.scaler_ is not None else X

        # scikit-survival needs structured array for y
        y = np.array(
            list(zip(status.astype(bool), df_fit[duration_col].astype(float))),
            dtype=[('event', bool), ('time', float)],
        )

        model = CoxPHSurvivalAnalysis(alpha=self.penalizer, ties='breslow')
        model.fit(X_model, y)
        return SksurvCoxAdapter(model, X, y, feature_names=self.feature_names_, scaler=self.scaler_)

    def _check_fitted(self):
        if not self.adapters_:
            raise InvalidArgumentError("The model has not been fitted")

    def models_for(self, cause) -> Dict[object, CoxModelAdapter]:
        """Models entering the absolute risk of ``cause``."""
        self._check_fitted()
        if cause not in self.causes_:
            raise InvalidArgumentError(
                f"Cannot find the requested cause {cause!r}. Available causes: {self.causes_}"
            )
        if self.surv_type == 'hazard':
            return {c: self.adapters_[c] for c in self.causes_}
        return {cause: self.adapters_[cause], OVERALL: self.adapters_[OVERALL]}

    def predict(
        self,
        newdata: pd.DataFrame,
        times: Sequence[float],
        cause,
        landmark: Optional[float] = None,
        options: Optional[PredictionOptions] = None,
        **overrides,
    ) -> CumulativeIncidencePrediction:
        """
        Absolute risk of ``cause`` for the rows of ``newdata``.

        See :func:`predict_cumulative_incidence` for the options.
        """
        return predict_cumulative_incidence(
            self.models_for(cause),
            cause,
            newdata,
            times,
            landmark=landmark,
            surv_type=self.surv_type,
            options=options,
            **overrides,
        )

    def get_summary(self) -> pd.DataFrame:
        """
        Get coefficient summary with hazard ratios.

        Returns
        -------
        pd.DataFrame
            One row per model and feature.
        """
        self._check_fitted()
        frames = []
        for key, adapter in self.adapters_.items():
            coefs = adapter.coefficients
            se = np.sqrt(np.diag(adapter.coefficient_variance()))
            frames.append(pd.DataFrame({
                'model': key,
                'feature': self.feature_names_,
                'coef': coefs,
                'exp(coef)': np.exp(coefs),
                'se(coef)': se,
            }))
        return pd.concat(frames, ignore_index=True)
