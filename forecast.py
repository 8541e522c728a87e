"""
FlexWheel — Income Forecasting
===============================
Confidence-banded projections of weekly / monthly net option income.

Public API
----------
  ForecastEngine(config)
    .forecast(buckets, frequency)        → Forecast | InsufficientData
  history_series(buckets, frequency)     → pd.Series  (gap-filled, indexed by bucket start)
  holt(values, alpha, beta)              → (level, trend, one_step_errors)
  classify_trend(values, threshold)      → Trend
  detect_seasonality(values, period)     → bool
  backtest(values, config)               → ForecastAccuracy
  forecast_summary(outcome)              → str

Model
-----
Holt double exponential smoothing. The h-step prediction is
level + h·trend; its interval half-width is z·σ·√h, where σ is the RMS of
the in-sample one-step-ahead errors and z the two-sided normal quantile for
the configured confidence level.

Predictions are not floored at zero: a bucket's net income goes negative
whenever buy-backs and fees outweigh premium.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from scipy.stats import norm

from config import (
    BUCKET_FREQ, SEASONALITY_ACF_THRESHOLD, CONFIDENCE_FLOOR, CONFIDENCE_CEILING,
)
from models import (
    Forecast, ForecastAccuracy, ForecastConfig, ForecastOutcome, ForecastPoint,
    Frequency, InsufficientData, TimeSeriesData, Trend,
)

logger = logging.getLogger(__name__)

__all__ = [
    'ForecastEngine', 'InsufficientData', 'history_series', 'holt',
    'classify_trend', 'detect_seasonality', 'backtest', 'forecast_summary',
]


# ── History ───────────────────────────────────────────────────────────────────

def history_series(buckets: Iterable[TimeSeriesData], frequency: Frequency) -> pd.Series:
    """
    Net income per bucket start, with every missing bucket between the first
    and last one filled as a zero-income bucket.
    """
    s = pd.Series({pd.Timestamp(b.date): b.net_income for b in buckets}, dtype=float)
    if s.empty:
        return s
    s = s.groupby(level=0).sum().sort_index()
    full = pd.date_range(s.index[0], s.index[-1], freq=BUCKET_FREQ[frequency])
    return s.reindex(full.union(s.index), fill_value=0.0)


# ── Model pieces ──────────────────────────────────────────────────────────────

def holt(values: np.ndarray, alpha: float, beta: float) -> tuple[float, float, np.ndarray]:
    """
    Fit Holt smoothing. The level starts at the first value and the trend
    at the first difference (0 with a single value).

    Returns the final level, final trend and the one-step-ahead errors for
    values[1:].
    """
    level  = float(values[0])
    trend  = float(values[1] - values[0]) if len(values) > 1 else 0.0
    errors = []
    for y in values[1:]:
        errors.append(float(y) - (level + trend))
        prev  = level
        level = alpha * float(y) + (1 - alpha) * (level + trend)
        trend = beta * (level - prev) + (1 - beta) * trend
    return level, trend, np.asarray(errors, dtype=float)


def classify_trend(values: np.ndarray, threshold: float) -> Trend:
    """
    Recent-half mean against earlier-half mean. A relative change within
    ±threshold is 'stable'; a zero earlier mean falls back to the sign of
    the recent mean.
    """
    half = len(values) // 2
    if half == 0:
        return 'stable'
    early  = float(np.mean(values[:half]))
    recent = float(np.mean(values[half:]))
    if early == 0:
        change = recent
    else:
        change = (recent - early) / abs(early)
        if abs(change) <= threshold:
            return 'stable'
    if change > 0:
        return 'increasing'
    if change < 0:
        return 'decreasing'
    return 'stable'


def detect_seasonality(values: np.ndarray, period: Optional[int]) -> bool:
    """Autocorrelation at lag `period` above 0.3; needs two full periods."""
    if not period or len(values) < 2 * period:
        return False
    dev   = values - values.mean()
    denom = float(np.sum(dev ** 2))
    if denom == 0:
        return False
    acf = float(np.sum(dev[:-period] * dev[period:])) / denom
    return acf > SEASONALITY_ACF_THRESHOLD


def backtest(values: np.ndarray, config: ForecastConfig) -> ForecastAccuracy:
    """
    Fit on the leading share of history and score predictions for the
    held-out tail. MAPE skips zero actuals and is None when all are zero;
    confidence is 1 - MAPE clamped to [0.5, 0.95] (0.5 without a MAPE).
    """
    split = int(math.floor(len(values) * (1 - config.holdout_fraction)))
    train, test = values[:split], values[split:]
    if len(train) == 0 or len(test) == 0:
        return ForecastAccuracy(mape=None, rmse=0.0, confidence=CONFIDENCE_FLOOR)

    level, trend, _ = holt(train, config.alpha, config.beta)
    predicted = level + trend * np.arange(1, len(test) + 1)
    rmse      = float(np.sqrt(np.mean((test - predicted) ** 2)))
    nonzero   = test != 0
    if nonzero.any():
        mape = float(np.mean(np.abs((test[nonzero] - predicted[nonzero]) / test[nonzero])))
        confidence = min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, 1 - mape))
    else:
        mape, confidence = None, CONFIDENCE_FLOOR
    return ForecastAccuracy(mape=mape, rmse=rmse, confidence=confidence)


# ── Engine ────────────────────────────────────────────────────────────────────

class ForecastEngine:
    """Stateless apart from its configuration; one instance serves any number of series."""

    def __init__(self, config: Optional[ForecastConfig] = None):
        self.config = config or ForecastConfig()

    def forecast(self, buckets: Iterable[TimeSeriesData], frequency: Frequency) -> ForecastOutcome:
        cfg     = self.config
        buckets = list(buckets)
        if len(buckets) < cfg.min_history:
            logger.info('Not forecasting %sly income: %d bucket(s), %d required',
                        frequency, len(buckets), cfg.min_history)
            return InsufficientData(frequency=frequency, available=len(buckets),
                                    required=cfg.min_history)

        series = history_series(buckets, frequency)
        values = series.to_numpy(dtype=float)

        level, trend, errors = holt(values, cfg.alpha, cfg.beta)
        sigma = float(np.sqrt(np.mean(errors ** 2))) if len(errors) else 0.0
        z     = float(norm.ppf((1 + cfg.confidence_level) / 2))
        dates = pd.date_range(series.index[-1], periods=cfg.horizon + 1,
                              freq=BUCKET_FREQ[frequency])[1:]

        points = []
        for h, date in enumerate(dates, start=1):
            predicted = level + h * trend
            width     = z * sigma * math.sqrt(h)
            points.append(ForecastPoint(
                date=date.to_pydatetime(),
                predicted=predicted,
                lower=predicted - width,
                upper=predicted + width,
                confidence=cfg.confidence_level,
            ))

        average = float(values.mean())
        std     = float(values.std())
        logger.debug('%sly forecast: level=%.2f trend=%.2f sigma=%.2f', frequency, level, trend, sigma)
        return Forecast(
            frequency=frequency,
            points=points,
            trend=classify_trend(values, cfg.trend_threshold),
            seasonality=detect_seasonality(values, cfg.seasonality_period),
            average=average,
            volatility=std / average if average > 0 else 0.0,
            accuracy=backtest(values, cfg),
        )


def forecast_summary(outcome: ForecastOutcome) -> str:
    """One line for display: next bucket, trend and model confidence."""
    if isinstance(outcome, InsufficientData):
        return f'No {outcome.frequency}ly forecast: {outcome.reason}'
    if not outcome.points:
        return f'No {outcome.frequency}ly forecast points requested'
    nxt = outcome.points[0]
    return (f'Next {outcome.frequency}: {nxt.predicted:,.2f} '
            f'({nxt.lower:,.2f} to {nxt.upper:,.2f}), trend {outcome.trend}, '
            f'confidence {outcome.accuracy.confidence:.0%}')
