"""Income forecasting: refusal, smoothing, intervals, trend and backtest accuracy."""

import math
from dataclasses import replace
from datetime import datetime, timedelta

import numpy as np
import pytest
from scipy.stats import norm

from forecast import (
    ForecastEngine, InsufficientData, backtest, classify_trend, detect_seasonality,
    forecast_summary, history_series, holt,
)
from models import ForecastConfig, TimeSeriesData

MONDAY = datetime(2025, 1, 6)


def weekly(values, start=MONDAY, skip=()):
    return [TimeSeriesData(date=start + timedelta(weeks=i), income=v, fees=0.0, net_income=v)
            for i, v in enumerate(values) if i not in skip]


def monthly(values):
    return [TimeSeriesData(date=datetime(2025, m + 1, 1), income=v, fees=0.0, net_income=v)
            for m, v in enumerate(values)]


# ── Refusal ───────────────────────────────────────────────────────────────────

def test_three_months_with_four_required_is_refused():
    engine = ForecastEngine(ForecastConfig(min_history=4))
    outcome = engine.forecast(monthly([1300.0, 1250.0, 1400.0]), 'month')
    assert isinstance(outcome, InsufficientData)
    assert (outcome.available, outcome.required) == (3, 4)
    assert forecast_summary(outcome).startswith('No monthly forecast')


def test_empty_history_is_refused():
    assert isinstance(ForecastEngine().forecast([], 'week'), InsufficientData)


# ── Projections ───────────────────────────────────────────────────────────────

def test_linear_history_extrapolates():
    history = weekly([100.0 + 10 * i for i in range(8)])
    f = ForecastEngine().forecast(history, 'week')
    assert f.trend == 'increasing'
    assert len(f.points) == 8
    assert f.points[0].date == MONDAY + timedelta(weeks=8)
    assert f.points[1].date == MONDAY + timedelta(weeks=9)
    assert f.points[0].predicted == pytest.approx(180.0)
    assert f.points[7].predicted == pytest.approx(250.0)
    assert f.accuracy.confidence == pytest.approx(0.95)
    assert f.accuracy.mape == pytest.approx(0.0, abs=1e-9)


def test_flat_history_has_no_spread():
    f = ForecastEngine().forecast(weekly([100.0] * 10), 'week')
    assert f.trend == 'stable'
    assert f.volatility == 0.0
    assert f.average == pytest.approx(100.0)
    for p in f.points:
        assert p.predicted == pytest.approx(100.0)
        assert p.lower == pytest.approx(p.upper)


def test_interval_widens_with_sqrt_horizon():
    values = [100.0, 140.0, 90.0, 160.0, 120.0, 150.0, 110.0, 170.0, 130.0, 180.0]
    cfg = ForecastConfig(confidence_level=0.9)
    f = ForecastEngine(cfg).forecast(weekly(values), 'week')
    _, _, errors = holt(np.array(values), cfg.alpha, cfg.beta)
    sigma = math.sqrt(np.mean(errors ** 2))

    w1 = f.points[0].upper - f.points[0].predicted
    w4 = f.points[3].upper - f.points[3].predicted
    assert w1 == pytest.approx(norm.ppf(0.95) * sigma)
    assert w4 == pytest.approx(2 * w1)
    assert f.points[0].predicted - f.points[0].lower == pytest.approx(w1)
    assert all(p.confidence == 0.9 for p in f.points)


def test_horizon_is_configurable():
    cfg = replace(ForecastConfig(), horizon=3, min_history=2)
    f = ForecastEngine(cfg).forecast(monthly([10.0, 20.0, 30.0]), 'month')
    assert [p.date for p in f.points] == [datetime(2025, 4, 1), datetime(2025, 5, 1),
                                          datetime(2025, 6, 1)]


def test_missing_weeks_are_zero_income():
    series = history_series(weekly([50.0, 60.0, 70.0, 80.0], skip={2}), 'week')
    assert list(series) == [50.0, 60.0, 0.0, 80.0]
    assert series.index[2] == MONDAY + timedelta(weeks=2)


# ── Patterns & accuracy ───────────────────────────────────────────────────────

@pytest.mark.parametrize('values, expected', [
    ([100, 100, 104, 104], 'stable'),
    ([100, 100, 120, 120], 'increasing'),
    ([200, 190, 150, 140], 'decreasing'),
    ([0, 0, 50, 50], 'increasing'),
    ([0, 0, 0, 0], 'stable'),
])
def test_classify_trend(values, expected):
    assert classify_trend(np.array(values, dtype=float), 0.05) == expected


def test_seasonality_detection():
    pattern = np.array([0.0, 100.0, 0.0, 100.0] * 6)
    assert detect_seasonality(pattern, 4)
    assert not detect_seasonality(pattern, None)
    assert not detect_seasonality(pattern[:20], 12)
    assert not detect_seasonality(np.full(24, 5.0), 4)


def test_backtest_all_zero_holdout():
    acc = backtest(np.zeros(8), ForecastConfig())
    assert acc.mape is None
    assert acc.confidence == 0.5
    assert acc.rmse == 0.0


def test_backtest_confidence_is_clamped():
    wild = np.array([100.0, 100.0, 100.0, 100.0, 100.0, 100.0, 10.0, 1000.0])
    acc = backtest(wild, ForecastConfig())
    assert acc.mape > 0.5
    assert acc.confidence == 0.5


def test_summary_mentions_trend_and_confidence():
    f = ForecastEngine().forecast(weekly([100.0 + 10 * i for i in range(8)]), 'week')
    text = forecast_summary(f)
    assert 'Next week' in text
    assert 'increasing' in text
    assert '95%' in text
