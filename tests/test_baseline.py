"""
Tests for the Breslow / Efron baseline hazard estimator.

Usage:
    pytest tests/test_baseline.py -v
"""

import numpy as np
import pandas as pd
import pytest
from lifelines import CoxPHFitter

from conftest import simulate_survival

from cox_predict.adapters import ArrayCoxModel, LifelinesCoxAdapter
from cox_predict.baseline import efron_slots, estimate_baseline, estimate_baseline_hazard
from cox_predict.event_table import EventTable
from cox_predict.exceptions import InvalidArgumentError

TOLERANCE = 1e-10


def test_four_subject_breslow():
    """h(1)=1/4, h(2)=1/3 (censoring at 2 still at risk), h(3)=1."""
    table = EventTable.from_arrays(stop=[1, 2, 2, 3], status=[1, 1, 0, 1], eXb=[1, 1, 1, 1])
    baseline = estimate_baseline_hazard(table, tie_mode='breslow')
    sh = baseline.strata[0]

    np.testing.assert_allclose(sh.times, [1, 2, 3])
    np.testing.assert_allclose(sh.hazard, [1 / 4, 1 / 3, 1], atol=TOLERANCE)
    np.testing.assert_allclose(sh.n_at_risk, [4, 3, 1])
    assert abs(sh.cumhazard[-1] - (1 / 4 + 1 / 3 + 1)) < TOLERANCE
    assert sh.last_event_time == 3


def test_efron_tied_events():
    """Two tied events among three at risk: 1/3 + 1/(3 - 1/2 * 2)."""
    table = EventTable.from_arrays(stop=[1, 1, 2], status=[1, 1, 1])
    breslow = estimate_baseline_hazard(table, tie_mode='breslow').strata[0]
    efron = estimate_baseline_hazard(table, tie_mode='efron').strata[0]

    assert abs(breslow.hazard[0] - 2 / 3) < TOLERANCE
    assert abs(efron.hazard[0] - (1 / 3 + 1 / 2)) < TOLERANCE
    assert abs(efron.hazard[1] - 1) < TOLERANCE


def test_efron_slots():
    owner, frac = efron_slots(np.array([1, 3]), 'efron')
    np.testing.assert_array_equal(owner, [0, 1, 1, 1])
    np.testing.assert_allclose(frac, [0, 0, 1 / 3, 2 / 3])

    _, frac = efron_slots(np.array([1, 3]), 'breslow')
    assert not frac.any()


def test_breslow_equals_efron_without_ties(fitted_model):
    breslow = estimate_baseline(fitted_model, tie_mode='breslow')
    efron = estimate_baseline(fitted_model, tie_mode='efron')
    np.testing.assert_allclose(breslow.strata[0].hazard, efron.strata[0].hazard, atol=TOLERANCE)


@pytest.mark.parametrize('tie_mode', ['breslow', 'efron'])
def test_cumulative_hazard_monotone(efron_stratified_model, tie_mode):
    baseline = estimate_baseline(efron_stratified_model, tie_mode=tie_mode)
    assert baseline.n_strata == 2
    for sh in baseline.strata:
        assert (sh.hazard >= 0).all()
        assert (np.diff(sh.cumhazard) >= 0).all(), f"H not monotone in stratum {sh.stratum}"
        assert sh.cumhazard_at([0.0])[0] == 0


def test_delayed_entry_risk_set():
    """A subject entering at 1.5 is not at risk at t=1 but is at t=2."""
    table = EventTable.from_arrays(stop=[1, 2, 3], status=[1, 1, 0], start=[0, 0, 1.5])
    sh = estimate_baseline_hazard(table).strata[0]
    np.testing.assert_allclose(sh.n_at_risk, [2, 2])
    np.testing.assert_allclose(sh.hazard, [1 / 2, 1 / 2])


def test_entry_equal_to_event_time_not_at_risk():
    table = EventTable.from_arrays(stop=[1, 2], status=[1, 0], start=[0, 1])
    sh = estimate_baseline_hazard(table).strata[0]
    assert sh.n_at_risk[0] == 1


def test_restriction_to_query_times():
    table = EventTable.from_arrays(stop=[1, 2, 2, 3], status=[1, 1, 0, 1])
    sh = estimate_baseline_hazard(table, times=[2.5]).strata[0]
    np.testing.assert_allclose(sh.times, [1, 2])
    assert sh.last_event_time == 3


def test_step_lookups():
    table = EventTable.from_arrays(stop=[1, 2, 2, 3], status=[1, 1, 0, 1])
    sh = estimate_baseline_hazard(table).strata[0]

    np.testing.assert_allclose(sh.cumhazard_at([0.5, 1, 1.5, 10]), [0, 1 / 4, 1 / 4, 1 / 4 + 1 / 3 + 1])
    np.testing.assert_allclose(sh.cumhazard_before([1, 2]), [0, 1 / 4])
    np.testing.assert_allclose(sh.hazard_at([1, 1.5, 3]), [1 / 4, 0, 1])


def test_empty_stratum():
    table = EventTable.from_arrays(stop=[1, 2, 3], status=[1, 0, 1], strata=[0, 0, 0],
                                   strata_levels=['a', 'b'])
    baseline = estimate_baseline_hazard(table)
    assert len(baseline.strata[1]) == 0
    assert baseline.strata[1].last_event_time == -np.inf


def test_stratum_without_events_has_zero_hazard():
    table = EventTable.from_arrays(stop=[1, 2, 3, 4], status=[1, 1, 0, 0], strata=[0, 0, 1, 1])
    baseline = estimate_baseline_hazard(table)
    assert len(baseline.strata[1]) == 0
    assert baseline.last_event_times[1] == 4


def test_exact_ties_rejected():
    table = EventTable.from_arrays(stop=[1, 2], status=[1, 1])
    with pytest.raises(InvalidArgumentError) as excinfo:
        estimate_baseline_hazard(table, tie_mode='exact')
    assert excinfo.value.code == 'invalid_argument'


def test_nan_times_rejected():
    table = EventTable.from_arrays(stop=[1, 2], status=[1, 1])
    with pytest.raises(InvalidArgumentError):
        estimate_baseline_hazard(table, times=[1.0, np.nan])


def test_centered_baseline_scales_by_mean_linear_predictor(fitted_model):
    uncentered = estimate_baseline(fitted_model, centered=False)
    centered = estimate_baseline(fitted_model, centered=True)
    mean_lp = fitted_model.design_matrix().mean(axis=0) @ fitted_model.coefficients
    np.testing.assert_allclose(
        centered.strata[0].cumhazard,
        np.exp(mean_lp) * uncentered.strata[0].cumhazard,
        rtol=1e-10,
    )


def test_to_frame():
    table = EventTable.from_arrays(stop=[1, 2, 3, 4], status=[1, 1, 1, 0], strata=[0, 0, 1, 1],
                                   strata_levels=['g=0', 'g=1'])
    frame = estimate_baseline_hazard(table).to_frame()
    assert list(frame.columns) == ['time', 'hazard', 'cumhazard', 'survival', 'strata']
    assert list(frame['strata']) == ['g=0', 'g=0', 'g=1']
    np.testing.assert_allclose(frame['survival'], np.exp(-frame['cumhazard']))


def test_agrees_with_lifelines_baseline():
    """lifelines reports the Breslow baseline at the mean covariates."""
    df = simulate_survival(seed=3)[['x0', 'x1', 'duration', 'event']]
    cph = CoxPHFitter().fit(df, duration_col='duration', event_col='event')
    adapter = LifelinesCoxAdapter(cph, df)

    baseline = estimate_baseline(adapter, centered=True).strata[0]
    expected = cph.baseline_cumulative_hazard_.iloc[:, 0]
    expected = expected.loc[baseline.times].to_numpy()
    np.testing.assert_allclose(baseline.cumhazard, expected, rtol=1e-5)


def test_stratified_frame_input():
    df = pd.DataFrame({
        'duration': [1, 2, 3, 4, 5, 6],
        'event': [1, 0, 1, 1, 1, 0],
        'region': ['a', 'b', 'a', 'b', 'a', 'b'],
    })
    table = EventTable.from_frame(df, strata_cols=['region'])
    assert table.strata_levels == ['region=a', 'region=b']
    model = ArrayCoxModel(table.stop, table.status, strata=table.strata,
                          strata_levels=table.strata_levels)
    baseline = estimate_baseline(model)
    np.testing.assert_allclose(baseline.strata[0].hazard, [1 / 3, 1 / 2, 1])
    np.testing.assert_allclose(baseline.strata[1].hazard, [1 / 2])
