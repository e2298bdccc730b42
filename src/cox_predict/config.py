"""
Defaults, option handling and logging setup for cox_predict.
"""

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Union

from .exceptions import InvalidArgumentError


# Tie handling supported by the baseline hazard estimator
TIE_MODES = ['breslow', 'efron']

# Quantities the prediction engine can return
PREDICTION_TYPES = ['hazard', 'cumhazard', 'survival']

# Influence function storage strategies
STORE_IID_MODES = ['full', 'minimal']

# Competing risks parameterisations
SURV_TYPES = ['hazard', 'survival']

DEFAULT_CONF_LEVEL = 0.95
DEFAULT_N_SIM_BAND = 10_000

# Replicates simulated at once when computing band quantiles
DEFAULT_BAND_CHUNK_SIZE = 1_000

# Largest M x P x N influence array the full store will materialise
DEFAULT_MAX_IID_SIZE = 50_000_000

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

logger = logging.getLogger('cox_predict')


@dataclass(frozen=True)
class PredictionOptions:
    """
    Options shared by the single-model and competing risks predictors.

    Parameters
    ----------
    se : bool
        Return standard errors and pointwise confidence intervals.
    band : bool
        Return simultaneous confidence bands (forces iid and se internally).
    iid : bool
        Return the influence function of each training subject.
    average_iid : bool
        Return the influence function averaged over the query subjects.
    log_transform : bool
        Compute intervals on the log / log-log scale and back-transform.
    store_iid : str
        'full' materialises the influence array, 'minimal' reduces it
        subject by subject.
    conf_level : float
        Confidence level of intervals and bands.
    n_sim_band : int
        Number of multiplier bootstrap replicates for the bands.
    centered : bool
        Baseline at the mean covariate profile (True) or at zero (False).
        Only used when no newdata is given.
    product_limit : bool
        Competing risks only: product-limit rather than exponential
        approximation of the event-free survival.
    random_state : int, optional
        Seed of the band simulation.
    max_iid_size : int
        Upper bound on M * P * N for the full store.
    band_chunk_size : int
        Replicates simulated per chunk.
    strict : bool
        Raise NumericDegeneracyError instead of warning.
    """

    se: bool = False
    band: bool = False
    iid: bool = False
    average_iid: bool = False
    log_transform: bool = True
    store_iid: str = 'full'
    conf_level: float = DEFAULT_CONF_LEVEL
    n_sim_band: int = DEFAULT_N_SIM_BAND
    centered: bool = True
    product_limit: bool = True
    random_state: Optional[int] = None
    max_iid_size: int = DEFAULT_MAX_IID_SIZE
    band_chunk_size: int = DEFAULT_BAND_CHUNK_SIZE
    strict: bool = False

    def __post_init__(self):
        if self.store_iid not in STORE_IID_MODES:
            raise InvalidArgumentError(
                f"store_iid must be one of {STORE_IID_MODES}, got {self.store_iid!r}"
            )
        if not 0 < self.conf_level < 1:
            raise InvalidArgumentError(
                f"conf_level must lie in (0, 1), got {self.conf_level}"
            )
        if self.n_sim_band < 1:
            raise InvalidArgumentError("n_sim_band must be a positive integer")
        if self.band_chunk_size < 1:
            raise InvalidArgumentError("band_chunk_size must be a positive integer")
        if self.max_iid_size < 1:
            raise InvalidArgumentError("max_iid_size must be a positive integer")

    @property
    def needs_influence(self) -> bool:
        return self.se or self.band or self.iid or self.average_iid

    def with_overrides(self, **overrides) -> 'PredictionOptions':
        """Return a copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise InvalidArgumentError(
                f"Unknown prediction option(s): {', '.join(sorted(unknown))}"
            )
        return replace(self, **overrides)


def resolve_options(
    options: Optional[PredictionOptions] = None,
    **overrides,
) -> PredictionOptions:
    """Merge keyword overrides into an options object (or the defaults)."""
    if options is None:
        options = PredictionOptions()
    if overrides:
        options = options.with_overrides(**overrides)
    return options


def configure_logging(
    level: int = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Attach console (and optionally file) handlers to the package logger.

    Parameters
    ----------
    level : int
        Logging level for the package logger.
    log_file : str or Path, optional
        Also write records to this file.

    Returns
    -------
    logging.Logger
        The configured 'cox_predict' logger.
    """
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
