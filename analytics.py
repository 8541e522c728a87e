"""
FlexWheel — Income Analytics
=============================
Weekly / monthly income series and per-symbol summaries, computed from
option cash flow. Read-only over Trades and WheelCycles.

Public API
----------
  trades_frame(trades)                          → pd.DataFrame  (one row per option trade)
  AnalyticsEngine(trades, cycles)
    .symbol_analytics(symbol)                   → SymbolAnalytics
    .all_symbol_analytics()                     → dict[str, SymbolAnalytics]
    .weekly_analytics(symbol=None)              → list[TimeSeriesData]
    .monthly_analytics(symbol=None)             → list[TimeSeriesData]
    .aggregate_series(frequency)                → list[TimeSeriesData]  (all symbols)
    .total_income()                             → TotalIncome
    .active_positions_with_safe_strikes()       → list[AssignedPosition]

Income targets
  compare_to_target(actual, target)             → TargetComparison
  consistency_score(comparisons)                → int  (0-100)
  target_streak(comparisons)                    → Streak
  compare_series(buckets, target)               → list[TargetComparison]

Bucket income is the signed option cash of the trades inside the bucket:
sells add |net cash|, buys subtract |net cash|, and every commission is a
fee. Cycle totals are never allocated across buckets.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from config import PERIOD_FREQ, TARGET_EXCEEDED_PCT, TARGET_MET_PCT
from mechanics import chronological
from models import (
    AssignedPosition, Frequency, Streak, SymbolAnalytics, TargetComparison,
    TimeSeriesData, TotalIncome, Trade, WheelCycle,
)

FRAME_COLUMNS = ['trade_id', 'date_time', 'symbol', 'side', 'income', 'fee']


# ── FRAME ─────────────────────────────────────────────────────────────────────
def trades_frame(trades: Iterable[Trade]) -> pd.DataFrame:
    """
    Option trades as a DataFrame in (date_time, trade_id) order.

    The fixed row order is what makes bucket sums bit-identical however the
    caller ordered its trade list.
    """
    rows = [{
        'trade_id':  t.trade_id,
        'date_time': t.date_time,
        'symbol':    t.underlying,
        'side':      t.side,
        'income':    abs(t.net_cash) if not t.is_buy else -abs(t.net_cash),
        'fee':       t.fee,
    } for t in trades if t.is_option]
    if not rows:
        return pd.DataFrame(columns=FRAME_COLUMNS)
    df = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    df['date_time'] = pd.to_datetime(df['date_time'])
    return df.sort_values(['date_time', 'trade_id'], kind='mergesort').reset_index(drop=True)


def _bucket_start(dates: pd.Series, frequency: Frequency) -> pd.Series:
    # Period 'W-SUN' spans Monday..Sunday, so its start_time is the Monday.
    return dates.dt.to_period(PERIOD_FREQ[frequency]).dt.start_time


# ── ENGINE ────────────────────────────────────────────────────────────────────
class AnalyticsEngine:
    """
    Analytics over one reconstruction. Holds references to the trades and
    cycles it was given and never mutates them.
    """

    def __init__(self, trades: Iterable[Trade], cycles: dict[str, list[WheelCycle]]):
        self._trades   = chronological(trades)
        self._by_id    = {t.trade_id: t for t in self._trades}
        self._cycles   = cycles
        self._df       = trades_frame(self._trades)
        self._cycle_of = {t.trade_id: c for camps in cycles.values() for c in camps for t in c.trades}

    @property
    def symbols(self) -> list[str]:
        return sorted(set(self._cycles) | set(self._df['symbol']))

    def _series(self, frame: pd.DataFrame, frequency: Frequency) -> list[TimeSeriesData]:
        if frame.empty:
            return []
        buckets = []
        for start, grp in frame.groupby(_bucket_start(frame['date_time'], frequency), sort=True):
            income = float(grp['income'].sum())
            fees   = float(grp['fee'].sum())
            trades = [self._by_id[i] for i in grp['trade_id']]
            cycles: list[WheelCycle] = []
            for t in trades:
                c = self._cycle_of.get(t.trade_id)
                if c is not None and all(c is not seen for seen in cycles):
                    cycles.append(c)
            buckets.append(TimeSeriesData(
                date=start.to_pydatetime(),
                income=income,
                fees=fees,
                net_income=income - fees,
                trades=trades,
                cycles=cycles,
            ))
        return buckets

    def _frame_for(self, symbol: Optional[str]) -> pd.DataFrame:
        if symbol is None:
            return self._df
        return self._df[self._df['symbol'] == symbol]

    def weekly_analytics(self, symbol: Optional[str] = None) -> list[TimeSeriesData]:
        """Monday-start weekly buckets for one symbol, or every symbol when None."""
        return self._series(self._frame_for(symbol), 'week')

    def monthly_analytics(self, symbol: Optional[str] = None) -> list[TimeSeriesData]:
        return self._series(self._frame_for(symbol), 'month')

    def aggregate_series(self, frequency: Frequency) -> list[TimeSeriesData]:
        return self._series(self._df, frequency)

    def symbol_analytics(self, symbol: str) -> SymbolAnalytics:
        """
        Per-symbol summary.

        total_premium / total_fees  summed over the symbol's cycles
        net_income                  total_premium - total_fees (option income only)
        win_rate                    completed cycles with net_profit > 0, as a 0..1 fraction
        average_premium_per_trade   total_premium / trades attributed to cycles
        """
        cycles    = self._cycles.get(symbol, [])
        completed = [c for c in cycles if c.status == 'completed']
        active    = [c for c in cycles if c.status == 'active']
        premium   = sum(c.total_premium for c in cycles)
        fees      = sum(c.total_fees for c in cycles)
        n_trades  = sum(len(c.trades) for c in cycles)
        wins      = sum(1 for c in completed if c.net_profit > 0)
        return SymbolAnalytics(
            symbol=symbol,
            total_premium=premium,
            total_fees=fees,
            net_income=premium - fees,
            win_rate=wins / len(completed) if completed else 0.0,
            average_premium_per_trade=premium / n_trades if n_trades else 0.0,
            active_cycles=len(active),
            completed_cycles=len(completed),
            weekly=self.weekly_analytics(symbol),
            monthly=self.monthly_analytics(symbol),
            cycles=list(cycles),
        )

    def all_symbol_analytics(self) -> dict[str, SymbolAnalytics]:
        return {s: self.symbol_analytics(s) for s in self.symbols}

    def total_income(self) -> TotalIncome:
        """
        Net option income over every ingested option trade, independent of
        bucketing: per symbol, signed premium less fees.
        """
        if self._df.empty:
            return TotalIncome(total=0.0, by_symbol={})
        by_symbol = {}
        for symbol, grp in self._df.groupby('symbol', sort=True):
            by_symbol[symbol] = float(grp['income'].sum()) - float(grp['fee'].sum())
        return TotalIncome(total=sum(by_symbol.values()), by_symbol=by_symbol)

    def active_positions_with_safe_strikes(self) -> list[AssignedPosition]:
        rows = []
        for symbol in sorted(self._cycles):
            for c in self._cycles[symbol]:
                if c.status != 'active' or c.assignment_price is None or c.safe_strike is None:
                    continue
                rows.append(AssignedPosition(
                    symbol=symbol,
                    assignment_price=c.assignment_price,
                    safe_strike=c.safe_strike,
                    shares=c.shares_assigned,
                    premium=c.total_premium,
                    cycle=c,
                ))
        return rows


# ── INCOME TARGETS ────────────────────────────────────────────────────────────
def compare_to_target(actual: float, target: float) -> TargetComparison:
    """
    'exceeded' at 110 % of target or more, 'met' from 95 %, else 'below'.
    A non-positive target is unreachable by definition and reports 0 %.
    """
    pct = actual / target * 100 if target > 0 else 0.0
    if pct >= TARGET_EXCEEDED_PCT:
        status = 'exceeded'
    elif pct >= TARGET_MET_PCT:
        status = 'met'
    else:
        status = 'below'
    return TargetComparison(target=target, actual=actual, variance=actual - target,
                            percentage_achieved=pct, status=status)


def compare_series(buckets: Iterable[TimeSeriesData], target: float) -> list[TargetComparison]:
    return [compare_to_target(b.net_income, target) for b in buckets]


def consistency_score(comparisons: list[TargetComparison]) -> int:
    """
    0-100 score: 70 % weight on the share of buckets at or above target,
    30 % on stability of achievement (population std of achievement %,
    where a std of 50 points or more scores zero stability).
    """
    if not comparisons:
        return 0
    hit_rate  = sum(1 for c in comparisons if c.status != 'below') / len(comparisons)
    std       = float(np.std([c.percentage_achieved for c in comparisons]))
    stability = max(0.0, 1 - std / 50)
    return int(math.floor((hit_rate * 0.7 + stability * 0.3) * 100 + 0.5))


def target_streak(comparisons: list[TargetComparison]) -> Streak:
    """comparisons are chronological; current is the run ending at the last one."""
    best = run = 0
    for c in comparisons:
        run  = run + 1 if c.status != 'below' else 0
        best = max(best, run)
    return Streak(current=run, best=best)
