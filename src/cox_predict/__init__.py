"""
Prediction and inference for fitted Cox proportional hazards models.

Baseline hazards, subject-specific cumulative hazard and survival,
influence functions, pointwise confidence intervals, simultaneous
confidence bands and absolute risks (cumulative incidence) from
cause-specific Cox models.

Modules:
--------
event_table : Training outcome in counting-process form
adapters : Uniform access to fitted lifelines / scikit-survival models
baseline : Breslow / Efron baseline hazard estimation
prediction : Subject-specific hazard, cumulative hazard and survival
influence : Influence functions and storage strategies
bands : Confidence intervals and multiplier-bootstrap bands
cumulative_incidence : Absolute risk from cause-specific Cox models
cause_specific : Cause-specific Cox model wrappers
plotting : Curves with intervals and bands
config : Prediction options and logging setup
exceptions : Error taxonomy
"""

from .exceptions import (
    CoxPredictError,
    InvalidArgumentError,
    UnsupportedModelFeatureError,
    NumericDegeneracyError,
    NumericDegeneracyWarning,
)

from .config import (
    PredictionOptions,
    configure_logging,
)

from .event_table import (
    EventTable,
    EventTimeGrid,
)

from .adapters import (
    CoxModelAdapter,
    ArrayCoxModel,
    LifelinesCoxAdapter,
    SksurvCoxAdapter,
)

from .baseline import (
    BaselineHazard,
    StratumHazard,
    estimate_baseline,
    estimate_baseline_hazard,
)

from .influence import (
    AverageInfluence,
    CoxLinearization,
    FullInfluence,
    NotComputed,
    cox_information_matrix,
)

from .bands import (
    confidence_band_quantile,
    pointwise_limits,
    band_limits,
)

from .prediction import (
    CoxPrediction,
    QuantityEstimate,
    predict_cox,
)

from .cumulative_incidence import (
    CumulativeIncidencePrediction,
    predict_cumulative_incidence,
    estimate_cif_aalen_johansen,
)

from .cause_specific import CauseSpecificCox

from .plotting import plot_prediction

__all__ = [
    # Errors
    'CoxPredictError',
    'InvalidArgumentError',
    'UnsupportedModelFeatureError',
    'NumericDegeneracyError',
    'NumericDegeneracyWarning',
    # Configuration
    'PredictionOptions',
    'configure_logging',
    # Models
    'EventTable',
    'EventTimeGrid',
    'CoxModelAdapter',
    'ArrayCoxModel',
    'LifelinesCoxAdapter',
    'SksurvCoxAdapter',
    # Baseline hazard
    'BaselineHazard',
    'StratumHazard',
    'estimate_baseline',
    'estimate_baseline_hazard',
    # Influence functions
    'AverageInfluence',
    'CoxLinearization',
    'FullInfluence',
    'NotComputed',
    'cox_information_matrix',
    # Intervals and bands
    'confidence_band_quantile',
    'pointwise_limits',
    'band_limits',
    # Prediction
    'CoxPrediction',
    'QuantityEstimate',
    'predict_cox',
    # Cumulative incidence
    'CumulativeIncidencePrediction',
    'predict_cumulative_incidence',
    'estimate_cif_aalen_johansen',
    'CauseSpecificCox',
    'plot_prediction',
]

__version__ = '0.1.0'
