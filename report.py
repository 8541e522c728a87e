"""
report.py — JSON-ready export for FlexWheel results.

Turns core results into plain dicts / lists of str, float, int, bool and
None, with every date as an ISO-8601 string, ready for json.dumps by an
API layer. Nothing here computes: values are copied as they are.

No web framework dependency — importable and testable standalone.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from models import (
    AnalysisResult, ForecastOutcome, InsufficientData, SymbolAnalytics,
    TimeSeriesData, Trade, ValidationReport, WheelCycle,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ══════════════════════════════════════════════════════════════════════════════
# TRADES & CYCLES
# ══════════════════════════════════════════════════════════════════════════════

def trade_to_dict(t: Trade) -> dict:
    d = {
        'tradeId':        t.trade_id,
        'dateTime':       _iso(t.date_time),
        'orderTime':      _iso(t.order_time),
        'tradeDate':      _iso(t.trade_date),
        'reportDate':     _iso(t.report_date),
        'symbol':         t.symbol,
        'underlying':     t.underlying,
        'assetCategory':  t.asset_category,
        'currency':       t.currency,
        'side':           t.side,
        'quantity':       t.quantity,
        'price':          t.price,
        'proceeds':       t.proceeds,
        'commission':     t.commission,
        'netCash':        t.net_cash,
        'transactionId':  t.transaction_id,
        'orderReference': t.order_reference,
        'exchange':       t.exchange,
        'notes':          t.notes,
        'dateFallback':   t.date_fallback,
        'option':         None,
    }
    if t.option is not None:
        d['option'] = {
            'putCall':    t.option.put_call,
            'strike':     t.option.strike,
            'expiry':     _iso(t.option.expiry),
            'multiplier': t.option.multiplier,
        }
    return d


def cycle_to_dict(c: WheelCycle) -> dict:
    return {
        'cycleId':         c.cycle_id,
        'symbol':          c.symbol,
        'status':          c.status,
        'phase':           c.phase,
        'cycleType':       c.cycle_type,
        'startDate':       _iso(c.start_date),
        'endDate':         _iso(c.end_date),
        'totalPremium':    c.total_premium,
        'totalFees':       c.total_fees,
        'assignmentPrice': c.assignment_price,
        'sharesAssigned':  c.shares_assigned,
        'safeStrike':      c.safe_strike,
        'netProfit':       c.net_profit,
        'tradeIds':        [t.trade_id for t in c.trades],
    }


def cycles_by_symbol(cycles: dict[str, list[WheelCycle]]) -> dict[str, list[dict]]:
    return {sym: [cycle_to_dict(c) for c in camps] for sym, camps in sorted(cycles.items())}


# ══════════════════════════════════════════════════════════════════════════════
# ANALYTICS
# ══════════════════════════════════════════════════════════════════════════════

def bucket_to_dict(b: TimeSeriesData) -> dict:
    return {
        'date':      _iso(b.date),
        'income':    b.income,
        'fees':      b.fees,
        'netIncome': b.net_income,
        'tradeIds':  [t.trade_id for t in b.trades],
        'cycleIds':  [c.cycle_id for c in b.cycles],
    }


def symbol_analytics_to_dict(a: SymbolAnalytics) -> dict:
    return {
        'symbol':                 a.symbol,
        'totalPremium':           a.total_premium,
        'totalFees':              a.total_fees,
        'netIncome':              a.net_income,
        'winRate':                a.win_rate,
        'averagePremiumPerTrade': a.average_premium_per_trade,
        'activeCycles':           a.active_cycles,
        'completedCycles':        a.completed_cycles,
        'weekly':                 [bucket_to_dict(b) for b in a.weekly],
        'monthly':                [bucket_to_dict(b) for b in a.monthly],
    }


# ══════════════════════════════════════════════════════════════════════════════
# VALIDATION & FORECAST
# ══════════════════════════════════════════════════════════════════════════════

def validation_report_to_dict(r: ValidationReport) -> dict:
    return {
        'timestamp':        _iso(r.timestamp),
        'totalPositions':   r.total_positions,
        'validPositions':   r.valid_positions,
        'invalidPositions': r.invalid_positions,
        'criticalErrors':   r.critical_errors,
        'warnings':         r.warnings,
        'results':          [asdict(res) for res in r.results],
    }


def forecast_to_dict(f: ForecastOutcome) -> dict:
    if isinstance(f, InsufficientData):
        return {
            'frequency':    f.frequency,
            'insufficient': True,
            'available':    f.available,
            'required':     f.required,
            'reason':       f.reason,
        }
    return {
        'frequency':    f.frequency,
        'insufficient': False,
        'points': [{
            'date':       _iso(p.date),
            'predicted':  p.predicted,
            'lower':      p.lower,
            'upper':      p.upper,
            'confidence': p.confidence,
        } for p in f.points],
        'patterns': {
            'trend':       f.trend,
            'seasonality': f.seasonality,
            'average':     f.average,
            'volatility':  f.volatility,
        },
        'accuracy': {
            'mape':       f.accuracy.mape,
            'rmse':       f.accuracy.rmse,
            'confidence': f.accuracy.confidence,
        },
    }


def analysis_to_dict(result: AnalysisResult) -> dict:
    """Full pipeline output in one document."""
    return {
        'trades':          [trade_to_dict(t) for t in result.parsed.trades],
        'skipped':         result.parsed.skipped,
        'duplicates':      result.parsed.duplicates,
        'dateFallbacks':   list(result.parsed.date_fallbacks),
        'cycles':          cycles_by_symbol(result.cycles),
        'analytics':       {s: symbol_analytics_to_dict(a) for s, a in sorted(result.analytics.items())},
        'totalIncome': {
            'total':    result.total_income.total,
            'bySymbol': dict(sorted(result.total_income.by_symbol.items())),
        },
        'weeklyForecast':  forecast_to_dict(result.weekly_forecast),
        'monthlyForecast': forecast_to_dict(result.monthly_forecast),
        'validation':      (validation_report_to_dict(result.validation)
                            if result.validation is not None else None),
    }
