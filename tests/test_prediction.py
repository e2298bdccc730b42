"""
Tests for subject-specific predictions (hazard, cumulative hazard, survival).

Usage:
    pytest tests/test_prediction.py -v
"""

import numpy as np
import pandas as pd
import pytest

from cox_predict.adapters import ArrayCoxModel
from cox_predict.baseline import BaselineHazard, estimate_baseline
from cox_predict.config import PredictionOptions
from cox_predict.exceptions import (
    InvalidArgumentError,
    NumericDegeneracyError,
    NumericDegeneracyWarning,
)
from cox_predict.influence import AverageInfluence, FullInfluence, NotComputed
from cox_predict.prediction import predict_cox

TOLERANCE = 1e-10
RANDOM_SEED = 42
QUERY_TIMES = [0.2, 0.5, 0.8, 1.2, 1.6]


def test_unsorted_times_invariance(fitted_model, newdata):
    sorted_pred = predict_cox(fitted_model, newdata, times=[0.1, 0.4, 0.9], se=True)
    shuffled_pred = predict_cox(fitted_model, newdata, times=[0.9, 0.1, 0.4], se=True)
    perm = [2, 0, 1]

    for name in ('cumhazard', 'survival'):
        np.testing.assert_allclose(shuffled_pred[name].estimate, sorted_pred[name].estimate[:, perm])
        np.testing.assert_allclose(shuffled_pred[name].se, sorted_pred[name].se[:, perm])
        np.testing.assert_allclose(shuffled_pred[name].lower, sorted_pred[name].lower[:, perm])
    np.testing.assert_array_equal(shuffled_pred.times, [0.9, 0.1, 0.4])


def test_zero_covariate_subject_matches_baseline(fitted_model):
    times = np.array(QUERY_TIMES)
    pred = predict_cox(fitted_model, pd.DataFrame({'x0': [0.0], 'x1': [0.0]}), times=times)
    baseline = estimate_baseline(fitted_model, centered=False).strata[0]
    np.testing.assert_allclose(pred.cumhazard[0], baseline.cumhazard_at(times), atol=TOLERANCE)
    np.testing.assert_allclose(pred.survival[0], np.exp(-baseline.cumhazard_at(times)))


def test_proportional_hazards(fitted_model, newdata):
    pred = predict_cox(fitted_model, newdata, times=QUERY_TIMES)
    lp = fitted_model.linear_predictor(newdata)
    ratio = pred.cumhazard[1] / pred.cumhazard[0]
    np.testing.assert_allclose(ratio, np.exp(lp[1] - lp[0]))


def test_population_baseline_without_newdata(fitted_model):
    centered = predict_cox(fitted_model)
    uncentered = predict_cox(fitted_model, centered=False)
    assert isinstance(centered, BaselineHazard)
    assert centered.centered and not uncentered.centered

    reference = estimate_baseline(fitted_model, centered=False)
    np.testing.assert_allclose(uncentered.strata[0].cumhazard, reference.strata[0].cumhazard)

    mean_lp = fitted_model.linear_predictor().mean()
    np.testing.assert_allclose(
        centered.strata[0].cumhazard, np.exp(mean_lp) * reference.strata[0].cumhazard, rtol=1e-10,
    )


def test_centered_flag_does_not_change_subject_predictions(fitted_model, newdata):
    a = predict_cox(fitted_model, newdata, times=QUERY_TIMES, centered=True)
    b = predict_cox(fitted_model, newdata, times=QUERY_TIMES, centered=False)
    np.testing.assert_allclose(a.cumhazard, b.cumhazard)


def test_hazard_only_at_event_times():
    model = ArrayCoxModel(stop=[1, 2, 2, 3], status=[1, 1, 0, 1])
    pred = predict_cox(model, pd.DataFrame(index=range(1)), times=[1, 1.5, 2, 3], types='hazard')
    np.testing.assert_allclose(pred.hazard[0], [1 / 4, 0, 1 / 3, 1])


def test_extrapolation_is_flat_and_flagged():
    model = ArrayCoxModel(stop=[1, 2, 2, 3], status=[1, 1, 0, 1])
    pred = predict_cox(model, pd.DataFrame(index=range(2)), times=[2.5, 3, 10])
    np.testing.assert_array_equal(pred.extrapolated[0], [False, False, True])
    assert pred.cumhazard[0, 1] == pred.cumhazard[0, 2]
    assert pred.last_event_time[0] == 3


@pytest.mark.parametrize('log_transform', [True, False])
def test_survival_bounds(fitted_model, newdata, log_transform):
    pred = predict_cox(fitted_model, newdata, times=QUERY_TIMES + [5.0], se=True,
                       log_transform=log_transform)
    surv = pred['survival']
    for values in (surv.estimate, surv.lower, surv.upper):
        assert np.all((values >= 0) & (values <= 1))
    assert np.all(surv.lower <= surv.estimate + TOLERANCE)
    assert np.all(surv.estimate <= surv.upper + TOLERANCE)
    assert np.all(pred['cumhazard'].lower >= 0)


def test_stratified_prediction_uses_own_stratum(efron_stratified_model):
    query = pd.DataFrame({'x0': [0.0, 0.0], 'x1': [0.0, 0.0], 'strata': [0, 1]})
    times = np.array([0.4, 1.0])
    pred = predict_cox(efron_stratified_model, query, times=times)
    baseline = estimate_baseline(efron_stratified_model)
    for j in range(2):
        np.testing.assert_allclose(pred.cumhazard[j], baseline.strata[j].cumhazard_at(times))
    assert pred.strata_labels == ['0', '1']


def test_strata_labels_accepted_in_newdata():
    model = ArrayCoxModel(stop=[1, 2, 3, 4], status=[1, 1, 1, 1], strata=[0, 0, 1, 1],
                          strata_levels=['east', 'west'], strata_col='region')
    pred = predict_cox(model, pd.DataFrame({'region': ['west', 'east']}), times=[3.5])
    np.testing.assert_allclose(pred.cumhazard[:, 0], [1 / 2, 3 / 2])

    with pytest.raises(InvalidArgumentError):
        predict_cox(model, pd.DataFrame({'region': ['north']}), times=[1])


def test_stratum_without_events_warns():
    model = ArrayCoxModel(stop=[1, 2, 3, 4], status=[1, 1, 0, 0], strata=[0, 0, 1, 1])
    query = pd.DataFrame({'strata': [1]})
    with pytest.warns(NumericDegeneracyWarning):
        pred = predict_cox(model, query, times=[2.0])
    assert pred.cumhazard[0, 0] == 0
    assert pred.survival[0, 0] == 1

    with pytest.raises(NumericDegeneracyError):
        predict_cox(model, query, times=[2.0], strict=True)


def test_se_without_newdata_rejected(fitted_model):
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, se=True)


def test_hazard_with_se_rejected(fitted_model, newdata):
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, newdata, times=[1.0], types=['hazard'], se=True)
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, newdata, times=[1.0], types=['hazard', 'survival'], band=True)


def test_missing_or_nan_times_rejected(fitted_model, newdata):
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, newdata)
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, newdata, times=[1.0, np.nan])


def test_unknown_type_and_option_rejected(fitted_model, newdata):
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, newdata, times=[1.0], types='density')
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, newdata, times=[1.0], n_sim=10)


def test_missing_covariate_rejected(fitted_model):
    with pytest.raises(InvalidArgumentError):
        predict_cox(fitted_model, pd.DataFrame({'x0': [1.0]}), times=[1.0])


def test_influence_outputs_are_tagged(fitted_model, newdata):
    plain = predict_cox(fitted_model, newdata, times=QUERY_TIMES, se=True)
    assert isinstance(plain['survival'].influence, NotComputed)
    assert plain['survival'].iid is None

    full = predict_cox(fitted_model, newdata, times=QUERY_TIMES, iid=True)
    assert isinstance(full['cumhazard'].influence, FullInfluence)
    assert full['cumhazard'].iid.shape == (3, len(QUERY_TIMES), len(fitted_model.stop))

    average = predict_cox(fitted_model, newdata, times=QUERY_TIMES, average_iid=True)
    assert isinstance(average['cumhazard'].influence, AverageInfluence)
    np.testing.assert_allclose(
        average['cumhazard'].average_iid,
        full['cumhazard'].iid.mean(axis=0).T,
        atol=TOLERANCE,
    )


def test_options_object_and_overrides(fitted_model, newdata):
    options = PredictionOptions(se=True, conf_level=0.9)
    pred = predict_cox(fitted_model, newdata, times=QUERY_TIMES, options=options, log_transform=False)
    assert pred.conf_level == 0.9
    assert not pred.log_transform
    assert pred['survival'].se is not None


def test_to_frame(fitted_model, newdata):
    pred = predict_cox(fitted_model, newdata, times=QUERY_TIMES, se=True)
    frame = pred.to_frame()
    assert len(frame) == 3 * len(QUERY_TIMES)
    for column in ('observation', 'time', 'strata', 'cumhazard', 'survival',
                   'survival_se', 'survival_lower', 'survival_upper', 'extrapolated'):
        assert column in frame.columns, f"missing column {column}"
    np.testing.assert_allclose(frame['survival'], pred.survival.ravel())


def test_no_covariate_model_accepts_array_newdata():
    model = ArrayCoxModel(stop=[1, 2, 2, 3], status=[1, 1, 0, 1])
    pred = predict_cox(model, np.zeros((2, 0)), times=[3])
    np.testing.assert_allclose(pred.cumhazard[:, 0], 1 / 4 + 1 / 3 + 1)
