"""
FlexWheel — Data Models
========================
Single source of truth for all dataclasses and named tuples used across
the library. No I/O, no pandas state — fully importable from any module
including tests and ingestion.

Classes
-------
  OptionDetails     Option-only payload of a Trade (strike, expiry, put/call, multiplier)
  Trade             One executed transaction, immutable once parsed
  ParsedTrades      Output of TradeParser — trades plus data-quality counters
  WheelCycle        One wheel iteration for a symbol (active or completed)
  Position          Per-symbol running share state plus its cycles
  Reconstruction    Cycle and position maps for every symbol
  CashFlow          Portfolio-wide cash movement summary
  TimeSeriesData    One weekly or monthly aggregation bucket
  SymbolAnalytics   Per-symbol totals, win rate and bucket breakdowns
  TotalIncome       Aggregate option income, overall and per symbol
  TargetComparison  Actual bucket income measured against a target
  Streak            Current and best target-achievement runs
  AssignedPosition  Active assigned cycle with its safe strike
  ExternalPosition  One row of the broker-reported position snapshot
  ValidationResult  Per-symbol reconciliation outcome
  ValidationReport  All reconciliation outcomes for one run
  ForecastConfig    Tuneable forecast parameters
  ForecastPoint     One predicted bucket with confidence bounds
  ForecastAccuracy  Backtest accuracy metrics
  Forecast          Full forecast result
  InsufficientData  Typed "cannot forecast" result
  AnalysisResult    Everything one pipeline run produces
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, NamedTuple, Optional, Union

from config import (
    OPT_CATEGORIES, ASSET_STOCK,
    FORECAST_HORIZON, FORECAST_CONFIDENCE, FORECAST_MIN_HISTORY,
    FORECAST_SEASONAL_PERIOD, FORECAST_TREND_THRESHOLD,
    FORECAST_ALPHA, FORECAST_BETA, FORECAST_HOLDOUT_FRACTION,
)

AssetCategory = Literal['STK', 'OPT', 'FOP']
Side          = Literal['BUY', 'SELL']
Severity      = Literal['critical', 'warning', 'minor', 'ok']
Trend         = Literal['increasing', 'decreasing', 'stable']
Frequency     = Literal['week', 'month']


# ── Trades ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OptionDetails:
    """Contract terms carried only by OPT / FOP trades."""
    put_call:   Literal['P', 'C']
    strike:     float
    expiry:     datetime
    multiplier: float


@dataclass(frozen=True)
class Trade:
    """
    One executed transaction from a Flex report.

    The envelope is shared by every asset category; option-only fields live
    in `option`, which is None for stock trades and always set for OPT/FOP.

    Fields
    ------
    trade_id        Broker trade identifier — the deduplication key
    date_time       Execution timestamp (order time, else trade date)
    order_time      Order timestamp as reported
    trade_date      Trade date as reported
    report_date     Report date as reported (trade date when absent)
    symbol          Raw instrument symbol, e.g. 'AAPL  250417P00190000'
    underlying      Underlying symbol, e.g. 'AAPL'
    asset_category  'STK', 'OPT' or 'FOP'
    side            'BUY' or 'SELL'
    quantity        Signed quantity: positive on buys, negative on sells
    price           Trade price per share / per contract unit
    proceeds        Gross trade amount
    commission      Commission and tax (as reported, usually negative)
    net_cash        Net cash movement
    date_fallback   True when a timestamp was missing and replaced by the
                    parse time — a data-quality flag, not an error
    """
    trade_id:        str
    date_time:       datetime
    order_time:      datetime
    trade_date:      datetime
    report_date:     datetime
    symbol:          str
    underlying:      str
    asset_category:  AssetCategory
    currency:        str
    side:            Side
    quantity:        float
    price:           float
    proceeds:        float
    commission:      float
    net_cash:        float
    option:          Optional[OptionDetails] = None
    transaction_id:  str = ''
    order_reference: str = ''
    exchange:        str = ''
    notes:           str = ''
    date_fallback:   bool = False

    @property
    def is_option(self) -> bool:
        return self.asset_category in OPT_CATEGORIES

    @property
    def is_stock(self) -> bool:
        return self.asset_category == ASSET_STOCK

    @property
    def is_buy(self) -> bool:
        return self.side == 'BUY'

    @property
    def abs_quantity(self) -> float:
        return abs(self.quantity)

    @property
    def fee(self) -> float:
        return abs(self.commission)


class ParsedTrades(NamedTuple):
    """
    Output of TradeParser — bundles the deduplicated trades with the
    data-quality counters so callers can surface them without re-scanning.

    Fields
    ------
    trades            Deduplicated trades in document order.
    skipped           Records dropped as malformed.
    duplicates        Records discarded because their trade id was already seen.
    date_fallbacks    Trade ids whose timestamp fell back to the parse time.
    errors            One human-readable reason per skipped record or failed
                      document.
    failed_documents  Documents in a batch rejected as a whole (not XML, or
                      not a Flex response); the rest of the batch still parsed.
    """
    trades:           list[Trade]
    skipped:          int
    duplicates:       int
    date_fallbacks:   list[str]
    errors:           list[str]
    failed_documents: int = 0


# ── Wheel cycles & positions ──────────────────────────────────────────────────

@dataclass
class WheelCycle:
    """
    One wheel iteration for a symbol: cash-secured put (or covered call)
    through assignment and eventual call-away or expiry.

    A cycle cannot exist without the trade that opened it — constructing one
    with an empty trade list raises ValueError, so an 'active' cycle always
    has at least one contributing trade.

    Fields
    ------
    symbol            Underlying symbol
    start_date        Timestamp of the opening trade
    trades            Ordered trades attributed to this cycle
    status            'active' or 'completed'
    phase             'option_open', 'assigned' or 'closed'
    total_premium     Option sells minus option buy-backs (absolute net cash)
    total_fees        Every commission attributed to the cycle
    assignment_price  Strike of the assigned put (None until assigned)
    shares_assigned   Shares received through put assignment
    safe_strike       assignment_price - total_premium / shares_assigned
    net_profit        Realized result; final once completed
    stock_proceeds    Gross proceeds of shares sold inside the cycle
    stock_cost        Average cost of the shares sold inside the cycle
    end_date          Timestamp of the closing event
    cycle_type        Outcome classification (see config.CYCLE_*)
    """
    symbol:           str
    start_date:       datetime
    trades:           list[Trade]
    status:           Literal['active', 'completed'] = 'active'
    phase:            Literal['option_open', 'assigned', 'closed'] = 'option_open'
    total_premium:    float = 0.0
    total_fees:       float = 0.0
    assignment_price: Optional[float] = None
    shares_assigned:  float = 0.0
    safe_strike:      Optional[float] = None
    net_profit:       float = 0.0
    stock_proceeds:   float = 0.0
    stock_cost:       float = 0.0
    end_date:         Optional[datetime] = None
    cycle_type:       str = 'put-expired'
    cycle_id:         str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if not self.trades:
            raise ValueError(f'WheelCycle for {self.symbol} needs an opening trade')


@dataclass
class Position:
    """
    Per-symbol share state. quantity is the signed sum of every stock trade
    for the symbol; average_cost is weighted-average cost, moved only by buys.

    realized_pnl is the summed net profit of completed cycles; stock_realized_pnl
    is share-sale P/L against average cost, whether or not a cycle was open.
    """
    symbol:             str
    quantity:           float = 0.0
    average_cost:       float = 0.0
    realized_pnl:       float = 0.0
    stock_realized_pnl: float = 0.0
    active_cycles:      list[WheelCycle] = field(default_factory=list)
    completed_cycles:   list[WheelCycle] = field(default_factory=list)


class Reconstruction(NamedTuple):
    """Output of mechanics.reconstruct() — both maps keyed by underlying symbol."""
    cycles:    dict[str, list[WheelCycle]]
    positions: dict[str, Position]


class CashFlow(NamedTuple):
    total_cash_flow:          float
    stock_purchases:          float
    stock_sales:              float
    option_premiums_received: float
    option_premiums_paid:     float
    commissions_fees:         float


# ── Analytics ─────────────────────────────────────────────────────────────────

@dataclass
class TimeSeriesData:
    """
    One aggregation bucket. income / fees / net_income come from option
    trades only, and trades holds exactly those option trades. Stock legs
    are reachable through cycles, which is informational and never feeds
    the totals.
    """
    date:       datetime
    income:     float
    fees:       float
    net_income: float
    trades:     list[Trade] = field(default_factory=list)
    cycles:     list[WheelCycle] = field(default_factory=list)


@dataclass
class SymbolAnalytics:
    symbol:                      str
    total_premium:               float
    total_fees:                  float
    net_income:                  float
    win_rate:                    float
    average_premium_per_trade:   float
    active_cycles:               int
    completed_cycles:            int
    weekly:                      list[TimeSeriesData] = field(default_factory=list)
    monthly:                     list[TimeSeriesData] = field(default_factory=list)
    cycles:                      list[WheelCycle] = field(default_factory=list)


class TotalIncome(NamedTuple):
    total:     float
    by_symbol: dict[str, float]


class TargetComparison(NamedTuple):
    target:              float
    actual:              float
    variance:            float
    percentage_achieved: float
    status:              Literal['exceeded', 'met', 'below']


class Streak(NamedTuple):
    """Consecutive buckets at or above target: the run ending at the latest
    bucket, and the longest run anywhere in the history."""
    current: int
    best:    int


class AssignedPosition(NamedTuple):
    """An active assigned cycle with the exit price that breaks even."""
    symbol:           str
    assignment_price: float
    safe_strike:      float
    shares:           float
    premium:          float
    cycle:            WheelCycle


# ── Validation ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExternalPosition:
    """One broker-reported position row."""
    symbol:         str
    quantity:       float
    average_cost:   float = 0.0
    market_value:   float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl:   float = 0.0
    account:        str = ''


@dataclass
class ValidationResult:
    """
    discrepancy is |calculated - external| and never negative;
    signed_discrepancy keeps the direction (calculated - external).
    """
    symbol:                 str
    is_valid:               bool
    calculated_quantity:    float
    external_quantity:      float
    signed_discrepancy:     float
    discrepancy:            float
    discrepancy_percentage: float
    severity:               Severity
    message:                str
    suggestions:            list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    timestamp:         datetime
    total_positions:   int
    valid_positions:   int
    invalid_positions: int
    critical_errors:   int
    warnings:          int
    results:           list[ValidationResult] = field(default_factory=list)


# ── Forecasting ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ForecastConfig:
    horizon:            int = FORECAST_HORIZON
    confidence_level:   float = FORECAST_CONFIDENCE
    min_history:        int = FORECAST_MIN_HISTORY
    seasonality_period: Optional[int] = FORECAST_SEASONAL_PERIOD
    trend_threshold:    float = FORECAST_TREND_THRESHOLD
    alpha:              float = FORECAST_ALPHA
    beta:               float = FORECAST_BETA
    holdout_fraction:   float = FORECAST_HOLDOUT_FRACTION


class ForecastPoint(NamedTuple):
    date:       datetime
    predicted:  float
    lower:      float
    upper:      float
    confidence: float


class ForecastAccuracy(NamedTuple):
    mape:       Optional[float]   # None when every held-out bucket was zero
    rmse:       float
    confidence: float


@dataclass
class Forecast:
    frequency:   Frequency
    points:      list[ForecastPoint]
    trend:       Trend
    seasonality: bool
    average:     float
    volatility:  float
    accuracy:    ForecastAccuracy


@dataclass(frozen=True)
class InsufficientData:
    """Returned instead of a Forecast when history is too short to model."""
    frequency: Frequency
    available: int
    required:  int

    @property
    def reason(self) -> str:
        return (f'{self.available} {self.frequency}ly buckets available, '
                f'{self.required} required')


ForecastOutcome = Union[Forecast, InsufficientData]


# ── Pipeline output ───────────────────────────────────────────────────────────

@dataclass
class AnalysisResult:
    """
    Typed container for everything one pipeline run produces.
    validation is None when no position feed was supplied.
    """
    parsed:          ParsedTrades
    cycles:          dict[str, list[WheelCycle]]
    positions:       dict[str, Position]
    analytics:       dict[str, SymbolAnalytics]
    total_income:    TotalIncome
    weekly_forecast: ForecastOutcome
    monthly_forecast: ForecastOutcome
    validation:      Optional[ValidationReport] = None
