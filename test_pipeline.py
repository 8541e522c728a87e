"""End-to-end run: Flex files on disk through reconciliation and JSON export."""

import asyncio
import json
from datetime import datetime

import pytest

from config import CYCLE_PUT_EXPIRED
from models import Forecast, ForecastConfig, InsufficientData
from pipeline import run_analysis
from report import analysis_to_dict
from validation import ReconciliationSourceError

AS_OF = datetime(2025, 3, 1)


@pytest.fixture
def exports(tmp_path, flex_doc, stock_attrs, option_attrs):
    a = flex_doc(
        option_attrs('P1', when='20250102;101500', net_cash=149.0, strike=50, expiry='20250117'),
        stock_attrs('A1', when='20250117;162000', side='BUY', qty=100, price=50.0, commission=0.0),
        option_attrs('P1X', when='20250117;162000', side='BUY', net_cash=0.0, commission=0.0,
                     strike=50, expiry='20250117'),
    )
    b = flex_doc(
        option_attrs('C1', when='20250121;100000', net_cash=119.0, put_call='C', strike=55,
                     expiry='20250221'),
        option_attrs('Y1', when='20250110;100000', net_cash=60.0, symbol='Y', expiry='20250124'),
        stock_attrs('A1', when='20250117;162000', side='BUY', qty=100, price=50.0, commission=0.0),
    )
    (tmp_path / 'a.xml').write_text(a)
    (tmp_path / 'b.xml').write_text(b)
    return [tmp_path / 'a.xml', tmp_path / 'b.xml']


async def broker_feed():
    return {'X': {'quantity': 100, 'averageCost': 50.0}, 'Y': {'quantity': 0}}


def test_full_run(exports):
    result = asyncio.run(run_analysis(exports, broker_feed, as_of=AS_OF))

    assert len(result.parsed.trades) == 5
    assert result.parsed.duplicates == 1
    assert result.positions['X'].quantity == 100

    (x_cycle,) = result.cycles['X']
    assert x_cycle.status == 'active'
    assert x_cycle.phase == 'assigned'
    assert x_cycle.total_premium == pytest.approx(268.0)
    assert x_cycle.safe_strike == pytest.approx(50 - 268 / 100)

    (y_cycle,) = result.cycles['Y']
    assert y_cycle.status == 'completed'
    assert y_cycle.cycle_type == CYCLE_PUT_EXPIRED

    assert result.analytics['Y'].win_rate == 1.0
    assert result.total_income.by_symbol['X'] == pytest.approx(149.0 + 119.0 - 2.0)

    assert isinstance(result.weekly_forecast, InsufficientData)
    assert isinstance(result.monthly_forecast, InsufficientData)

    assert result.validation.total_positions == 2
    assert result.validation.critical_errors == 0
    assert all(r.severity == 'ok' for r in result.validation.results)


def test_run_without_feed_skips_validation(exports):
    result = asyncio.run(run_analysis(exports))
    assert result.validation is None


def test_forecast_config_is_honoured(exports):
    cfg = ForecastConfig(min_history=2, horizon=2)
    result = asyncio.run(run_analysis(exports, forecast_config=cfg))
    assert isinstance(result.weekly_forecast, Forecast)
    assert len(result.weekly_forecast.points) == 2


def test_feed_failure_blocks_run(exports):
    async def broken_feed():
        raise TimeoutError('no answer')

    with pytest.raises(ReconciliationSourceError):
        asyncio.run(run_analysis(exports, broken_feed))


def test_result_serialises_to_json(exports):
    result = asyncio.run(run_analysis(exports, broker_feed, as_of=AS_OF))
    doc = json.loads(json.dumps(analysis_to_dict(result)))

    assert doc['duplicates'] == 1
    trade = next(t for t in doc['trades'] if t['tradeId'] == 'P1')
    assert trade['dateTime'] == '2025-01-02T10:15:00'
    assert trade['option']['expiry'] == '2025-01-17T00:00:00'
    assert doc['cycles']['Y'][0]['endDate'] == '2025-01-24T00:00:00'
    assert doc['weeklyForecast']['insufficient'] is True
    assert doc['validation']['totalPositions'] == 2
    assert doc['analytics']['X']['weekly'][0]['date'] == '2024-12-30T00:00:00'


def test_stale_put_expires_against_the_clock(tmp_path, flex_doc, option_attrs):
    path = tmp_path / 'put.xml'
    path.write_text(flex_doc(option_attrs('P1', net_cash=149.0, expiry='20250117')))
    result = asyncio.run(run_analysis([path], clock=lambda: AS_OF))
    (cycle,) = result.cycles['X']
    assert cycle.status == 'completed'
    assert cycle.cycle_type == CYCLE_PUT_EXPIRED


def test_explicit_as_of_wins_over_clock(tmp_path, flex_doc, option_attrs):
    path = tmp_path / 'put.xml'
    path.write_text(flex_doc(option_attrs('P1', net_cash=149.0, expiry='20250117')))
    result = asyncio.run(run_analysis([path], as_of=datetime(2025, 1, 10), clock=lambda: AS_OF))
    assert result.cycles['X'][0].status == 'active'


def test_unreadable_export_does_not_stop_the_run(exports):
    broken = exports[0].parent / 'broken.xml'
    broken.write_text('not xml <')
    result = asyncio.run(run_analysis([broken] + exports, as_of=AS_OF))
    assert result.parsed.failed_documents == 1
    assert result.positions['X'].quantity == 100
