"""
Tests for influence functions, standard errors and the two storage strategies.

Usage:
    pytest tests/test_influence.py -v
"""

import numpy as np
import pandas as pd
import pytest

from conftest import simulate_survival

from cox_predict.adapters import ArrayCoxModel
from cox_predict.exceptions import InvalidArgumentError
from cox_predict.influence import (
    CoxInfluenceSource,
    CoxLinearization,
    FullInfluenceProvider,
    MinimalInfluenceProvider,
    cox_information_matrix,
    loglog_scale_factor,
    make_provider,
)
from cox_predict.prediction import predict_cox

TOLERANCE = 1e-8
RANDOM_SEED = 42
QUERY_TIMES = [0.3, 0.1, 0.7, 1.1, 1.5]


def test_nelson_aalen_influence_by_hand():
    """Breslow without covariates: IF_i(t) = sum_k dN_i(t_k)/R_k - Y_i(t_k) d_k / R_k^2."""
    model = ArrayCoxModel(stop=[1, 2, 2, 3], status=[1, 1, 0, 1])
    lin = CoxLinearization.from_model(model)
    iid = lin.cumhazard_iid(0, np.array([3.0]))[:, 0]

    expected = np.array([
        1 / 4 - 1 / 16,
        -1 / 16 + 1 / 3 - 1 / 9,
        -1 / 16 - 1 / 9,
        -1 / 16 - 1 / 9 + 1 - 1,
    ])
    np.testing.assert_allclose(iid, expected, atol=1e-12)

    pred = predict_cox(model, pd.DataFrame(index=range(1)), times=[3.0], iid=True,
                       log_transform=False, types='cumhazard')
    np.testing.assert_allclose(pred['cumhazard'].iid[0, 0], expected, atol=1e-12)


def test_increments_sum_to_closed_form(efron_stratified_model):
    lin = CoxLinearization.from_model(efron_stratified_model)
    for s in range(2):
        sh = lin.stratum(s)
        increments = lin.baseline_increment_iid(s)
        closed_form = lin.cumhazard_iid(s, sh.times)
        np.testing.assert_allclose(np.cumsum(increments, axis=1), closed_form, atol=1e-12)


def test_score_is_zero_at_mle(fitted_model, efron_stratified_model):
    for model in (fitted_model, efron_stratified_model):
        lin = CoxLinearization.from_model(model)
        np.testing.assert_allclose(lin.score_residuals.sum(axis=0), 0, atol=TOLERANCE)
        np.testing.assert_allclose(lin.iid_beta.sum(axis=0), 0, atol=TOLERANCE)


@pytest.mark.parametrize('tie_mode', ['breslow', 'efron'])
def test_information_matrix_is_score_derivative(tie_mode):
    """-d score / d beta by central differences."""
    df = simulate_survival(ties=True, seed=11)
    X = df[['x0', 'x1']].to_numpy()
    beta = np.array([0.2, -0.1])
    step = 1e-6

    def score(b):
        model = ArrayCoxModel(df['duration'], df['event'], X=X, coefficients=b,
                              tie_mode=tie_mode, variance=np.eye(2))
        lin = CoxLinearization(model.event_table(), X, np.eye(2), tie_mode=tie_mode)
        return lin.score_residuals.sum(axis=0)

    numeric = np.column_stack([
        -(score(beta + step * e) - score(beta - step * e)) / (2 * step) for e in np.eye(2)
    ])
    model = ArrayCoxModel(df['duration'], df['event'], X=X, coefficients=beta, tie_mode=tie_mode)
    info = cox_information_matrix(model.event_table(), X, tie_mode)
    np.testing.assert_allclose(info, numeric, rtol=1e-5)


@pytest.mark.parametrize('model_name', ['fitted_model', 'efron_stratified_model'])
def test_influence_is_zero_mean(model_name, request):
    model = request.getfixturevalue(model_name)
    query = pd.DataFrame({'x0': [0.0, 1.0, -0.5], 'x1': [0.0, -1.0, 0.8], 'strata': [0, 1, 1]})
    pred = predict_cox(model, query, times=QUERY_TIMES, iid=True, log_transform=False)
    for name in ('cumhazard', 'survival'):
        iid = pred[name].iid
        np.testing.assert_allclose(iid.sum(axis=2), 0, atol=TOLERANCE,
                                   err_msg=f"{name} influence not centred")


@pytest.mark.parametrize('log_transform', [True, False])
def test_se_is_root_sum_of_squares(fitted_model, newdata, log_transform):
    pred = predict_cox(fitted_model, newdata, times=QUERY_TIMES, se=True, iid=True,
                       log_transform=log_transform)
    for name in ('cumhazard', 'survival'):
        quantity = pred[name]
        np.testing.assert_allclose(quantity.se, np.sqrt(np.sum(quantity.iid ** 2, axis=2)), rtol=1e-12)


def test_transformed_scales(fitted_model, newdata):
    raw = predict_cox(fitted_model, newdata, times=QUERY_TIMES, se=True, log_transform=False)
    log = predict_cox(fitted_model, newdata, times=QUERY_TIMES, se=True, log_transform=True)

    H = raw.cumhazard
    S = raw.survival
    positive = H > 0
    np.testing.assert_allclose(log['cumhazard'].se[positive], raw['cumhazard'].se[positive] / H[positive])
    np.testing.assert_allclose(raw['survival'].se, S * raw['cumhazard'].se)
    # log(-log S) = log H
    np.testing.assert_allclose(log['survival'].se, log['cumhazard'].se)


@pytest.mark.parametrize('model_name', ['fitted_model', 'efron_stratified_model'])
def test_full_and_minimal_agree(model_name, request):
    model = request.getfixturevalue(model_name)
    query = pd.DataFrame({'x0': [0.3, -1.0], 'x1': [0.5, 0.2], 'strata': [1, 0]})
    kwargs = dict(times=QUERY_TIMES, se=True, band=True, iid=True, average_iid=True,
                  n_sim_band=200, random_state=RANDOM_SEED)

    full = predict_cox(model, query, store_iid='full', **kwargs)
    minimal = predict_cox(model, query, store_iid='minimal', **kwargs)

    for name in ('cumhazard', 'survival'):
        a, b = full[name], minimal[name]
        np.testing.assert_allclose(a.se, b.se, rtol=1e-10, atol=1e-14)
        np.testing.assert_allclose(a.iid, b.iid, atol=1e-12)
        np.testing.assert_allclose(a.lower_band, b.lower_band, rtol=1e-10)
    np.testing.assert_allclose(full.band_quantile, minimal.band_quantile, rtol=1e-10)


def test_dense_and_closed_form_sources_agree(efron_stratified_model):
    lin = CoxLinearization.from_model(efron_stratified_model)
    query = pd.DataFrame({'x0': [0.3, -1.0, 0.0], 'x1': [0.5, 0.2, 0.0], 'strata': [1, 0, 1]})
    source = CoxInfluenceSource(
        lin,
        np.exp(efron_stratified_model.linear_predictor(query)),
        efron_stratified_model.design_matrix(query),
        efron_stratified_model.strata_assignment(query),
        np.array(QUERY_TIMES),
    )
    dense = source.all_iid()
    for j in range(3):
        np.testing.assert_allclose(dense[j], source.subject_iid(j), atol=1e-12)


def test_full_store_size_limit(fitted_model, newdata):
    with pytest.raises(InvalidArgumentError, match='minimal'):
        predict_cox(fitted_model, newdata, times=QUERY_TIMES, se=True, max_iid_size=10)
    pred = predict_cox(fitted_model, newdata, times=QUERY_TIMES, se=True, max_iid_size=10,
                       store_iid='minimal')
    assert pred['survival'].se.shape == (3, len(QUERY_TIMES))


def test_make_provider():
    model = ArrayCoxModel(stop=[1, 2, 3], status=[1, 1, 1])
    lin = CoxLinearization.from_model(model)
    source = CoxInfluenceSource(lin, np.ones(1), np.zeros((1, 0)), np.zeros(1, dtype=int), np.array([2.0]))
    assert isinstance(make_provider(source, 'full'), FullInfluenceProvider)
    assert isinstance(make_provider(source, 'minimal'), MinimalInfluenceProvider)
    with pytest.raises(InvalidArgumentError):
        make_provider(source, 'sparse')


def test_loglog_scale_factor_boundaries():
    values = np.array([0.0, 0.5, 1.0])
    factor = loglog_scale_factor(values)
    assert factor[0] == 0 and factor[2] == 0
    assert abs(factor[1] - 1 / (0.5 * np.log(0.5))) < 1e-12
