"""
Shared fixtures: synthetic survival data and Cox models fitted to it.

Models with covariates are fitted here by Newton-Raphson on the partial
likelihood, using the package's own score residuals and information
matrix, so that the coefficients are the maximum partial likelihood
estimate to machine precision for either tie correction.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cox_predict.adapters import ArrayCoxModel
from cox_predict.influence import CoxLinearization, cox_information_matrix

RANDOM_SEED = 42
N_SUBJECTS = 60
TRUE_BETA = np.array([0.5, -0.3])


def fit_array_cox(stop, status, X, start=None, strata=None, tie_mode='breslow', max_iter=50):
    """Maximum partial likelihood fit of an ArrayCoxModel."""
    X = np.asarray(X, dtype=float)
    beta = np.zeros(X.shape[1])
    for _ in range(max_iter):
        model = ArrayCoxModel(stop, status, X=X, coefficients=beta, start=start,
                              strata=strata, tie_mode=tie_mode, variance=np.eye(len(beta)))
        table = model.event_table()
        lin = CoxLinearization(table, X, np.eye(len(beta)), tie_mode=tie_mode)
        score = lin.score_residuals.sum(axis=0)
        info = cox_information_matrix(table, X, tie_mode)
        step = np.linalg.solve(info, score)
        beta = beta + step
        if np.max(np.abs(step)) < 1e-12:
            break
    return ArrayCoxModel(stop, status, X=X, coefficients=beta, start=start,
                         strata=strata, tie_mode=tie_mode)


def simulate_survival(n=N_SUBJECTS, seed=RANDOM_SEED, n_causes=1, ties=False):
    """Exponential event times with uniform censoring; event codes 1..n_causes."""
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, 2))
    rate = np.exp(X @ TRUE_BETA)
    event_time = rng.exponential(1 / rate)
    censor_time = rng.uniform(0.5, 3.0, size=n)
    stop = np.minimum(event_time, censor_time)
    if ties:
        stop = np.ceil(stop * 5) / 5
    observed = event_time <= censor_time
    cause = rng.integers(1, n_causes + 1, size=n)
    event_code = np.where(observed, cause, 0)
    return pd.DataFrame({
        'x0': X[:, 0],
        'x1': X[:, 1],
        'duration': stop,
        'event': observed.astype(int),
        'event_code': event_code,
        'group': rng.integers(0, 2, size=n),
    })


@pytest.fixture
def survival_df():
    return simulate_survival()


@pytest.fixture
def competing_df():
    return simulate_survival(n=80, n_causes=2)


@pytest.fixture
def fitted_model(survival_df):
    """Breslow model with two covariates at its MLE."""
    return fit_array_cox(
        survival_df['duration'], survival_df['event'], survival_df[['x0', 'x1']].to_numpy(),
    )


@pytest.fixture
def efron_stratified_model():
    """Efron model with tied times, delayed entry and two strata."""
    df = simulate_survival(ties=True, seed=7)
    rng = np.random.default_rng(7)
    start = np.where(rng.uniform(size=len(df)) < 0.3, df['duration'] * 0.4, 0.0)
    return fit_array_cox(
        df['duration'], df['event'], df[['x0', 'x1']].to_numpy(),
        start=start, strata=df['group'], tie_mode='efron',
    )


@pytest.fixture
def newdata():
    return pd.DataFrame({'x0': [0.0, 1.0, -0.5], 'x1': [0.0, -1.0, 0.8]})
