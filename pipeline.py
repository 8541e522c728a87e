"""
FlexWheel — Analysis Pipeline
==============================
One analysis run, end to end: parse → reconstruct → aggregate → forecast,
plus reconciliation when a broker position feed is supplied.

Public API
----------
  run_analysis(paths, fetch_positions, as_of, forecast_config, clock)  → AnalysisResult  (async)
  analyse_trades(parsed, as_of, forecast_config, clock)                → AnalysisResult

as_of defaults to clock(), so written legs past expiry with no closing
trade are settled as expired worthless.

Every service is created per call; nothing persists between runs.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from analytics import AnalyticsEngine
from forecast import ForecastEngine
from ingestion import TradeParser
from mechanics import reconstruct
from models import AnalysisResult, ForecastConfig, ParsedTrades
from validation import PositionValidator

logger = logging.getLogger(__name__)


def analyse_trades(parsed: ParsedTrades, as_of: Optional[datetime] = None,
                   forecast_config: Optional[ForecastConfig] = None,
                   clock: Callable[[], datetime] = datetime.now) -> AnalysisResult:
    """Synchronous core of a run, for callers that already hold parsed trades."""
    if as_of is None:
        as_of = clock()
    recon    = reconstruct(parsed.trades, as_of)
    engine   = AnalyticsEngine(parsed.trades, recon.cycles)
    forecast = ForecastEngine(forecast_config)
    return AnalysisResult(
        parsed=parsed,
        cycles=recon.cycles,
        positions=recon.positions,
        analytics=engine.all_symbol_analytics(),
        total_income=engine.total_income(),
        weekly_forecast=forecast.forecast(engine.aggregate_series('week'), 'week'),
        monthly_forecast=forecast.forecast(engine.aggregate_series('month'), 'month'),
    )


async def run_analysis(paths: Iterable[Union[str, Path]],
                       fetch_positions: Optional[Callable[[], Awaitable[Any]]] = None,
                       as_of: Optional[datetime] = None,
                       forecast_config: Optional[ForecastConfig] = None,
                       clock: Callable[[], datetime] = datetime.now) -> AnalysisResult:
    """
    Parse every export in paths and analyse the combined trade set.

    Reconstruction starts only after every file is parsed; validation only
    after both the positions and the broker snapshot exist. A feed failure
    propagates as ReconciliationSourceError.
    """
    parsed = await TradeParser().load_files(paths)
    if parsed.failed_documents:
        logger.warning('%d export(s) could not be read', parsed.failed_documents)
    if parsed.skipped:
        logger.warning('%d malformed record(s) skipped during ingestion', parsed.skipped)
    result = analyse_trades(parsed, as_of, forecast_config, clock)
    if fetch_positions is not None:
        result.validation = await PositionValidator(fetch_positions, clock).validate_all(
            result.positions)
    return result
