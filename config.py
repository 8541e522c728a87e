"""
FlexWheel — Configuration & Constants
======================================
All tuneable parameters and Flex report field values live here.
Change a value once and it applies everywhere.
"""

# ── Flex asset category codes ─────────────────────────────────────────────────
ASSET_STOCK         = 'STK'
ASSET_OPTION        = 'OPT'
ASSET_FUTURE_OPTION = 'FOP'
OPT_CATEGORIES      = {ASSET_OPTION, ASSET_FUTURE_OPTION}
ASSET_CATEGORIES    = {ASSET_STOCK} | OPT_CATEGORIES

# ── Flex record layout ────────────────────────────────────────────────────────
# Activity-style Flex queries export <Trades><Trade .../></Trades>; the
# trade-confirmation query exports <TradeConfirms><TradeConfirm .../>.
# Both carry the same attribute set, so both are accepted.
FLEX_ROOT_TAG    = 'FlexQueryResponse'
TRADE_RECORD_TAGS = ('TradeConfirm', 'Trade')

# ── Flex date layouts ─────────────────────────────────────────────────────────
# IB writes dates as YYYYMMDD and timestamps as YYYYMMDD;HHMMSS.
FLEX_DATE_FORMAT     = '%Y%m%d'
FLEX_DATETIME_FORMAT = '%Y%m%d;%H%M%S'
FLEX_DATETIME_SEP    = ';'

# ── Options ───────────────────────────────────────────────────────────────────
# Standard equity option contract size. Flex reports include a multiplier
# attribute; this is only used when it is absent.
DEFAULT_MULTIPLIER = 100

# ── Share arithmetic precision ────────────────────────────────────────────────
# Floating-point epsilon used to test whether a share or contract count is
# effectively zero, and the rounding precision applied to running counts so
# accumulated error doesn't leave phantom fractional shares.
QTY_EPSILON = 1e-9
QTY_ROUND   = 9

# ── Wheel cycle classification ────────────────────────────────────────────────
CYCLE_PUT_EXPIRED           = 'put-expired'
CYCLE_PUT_ASSIGNED_CALL_EXP = 'put-assigned-call-expired'
CYCLE_PUT_ASSIGNED_CALL_ASN = 'put-assigned-call-assigned'

# ── Position validation thresholds ────────────────────────────────────────────
# A discrepancy reaching EITHER the share count OR the percentage threshold
# escalates to that severity. Percentages are of the broker-reported quantity.
CRITICAL_SHARES = 100
CRITICAL_PCT    = 100.0
WARNING_SHARES  = 10
WARNING_PCT     = 10.0

SEVERITY_ORDER = {'critical': 0, 'warning': 1, 'minor': 2, 'ok': 3}

# ── Income targets ────────────────────────────────────────────────────────────
TARGET_EXCEEDED_PCT = 110.0
TARGET_MET_PCT      = 95.0

# ── Forecasting defaults ──────────────────────────────────────────────────────
FORECAST_HORIZON          = 8
FORECAST_CONFIDENCE       = 0.95
FORECAST_MIN_HISTORY      = 8
FORECAST_SEASONAL_PERIOD  = 12
# Relative change between the early-half and recent-half means below which
# the series is called 'stable'.
FORECAST_TREND_THRESHOLD  = 0.05
# Holt double exponential smoothing: level and trend smoothing factors.
FORECAST_ALPHA            = 0.3
FORECAST_BETA             = 0.1
# Share of history held out at the end for backtest accuracy metrics.
FORECAST_HOLDOUT_FRACTION = 0.25
# Autocorrelation at the seasonal lag above which seasonality is flagged.
SEASONALITY_ACF_THRESHOLD = 0.3
# Model confidence is 1 - MAPE, clamped into this band.
CONFIDENCE_FLOOR   = 0.5
CONFIDENCE_CEILING = 0.95

# pandas offset aliases for the two bucket sizes. Weeks start on Monday.
BUCKET_FREQ = {'week': 'W-MON', 'month': 'MS'}
PERIOD_FREQ = {'week': 'W-SUN', 'month': 'M'}
