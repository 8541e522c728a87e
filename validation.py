"""
FlexWheel — Position Reconciliation
====================================
Compares reconstructed positions against a broker-reported snapshot and
scores every discrepancy.

Public API
----------
  PositionValidator(fetch_positions)
    .validate_all(calculated)                 → ValidationReport   (async)
  coerce_snapshot(raw)                        → dict[str, ExternalPosition]
  classify(discrepancy, percentage)           → Severity
  validate_position(symbol, calc, ext)        → ValidationResult
  build_report(calculated, external, now)     → ValidationReport
  reconciliation_steps(result)                → list[str]
  propose_auto_fix(report)                    → dict[str, float]
  apply_auto_fix(positions, fixes, confirmed) → dict[str, Position]

Severity
--------
  critical  discrepancy ≥ 100 shares, or ≥ 100 % of the broker quantity
  warning   discrepancy ≥ 10 shares, or ≥ 10 %
  minor     any smaller non-zero discrepancy
  ok        exact match
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

from config import (
    CRITICAL_SHARES, CRITICAL_PCT, WARNING_SHARES, WARNING_PCT,
    QTY_ROUND, SEVERITY_ORDER,
)
from models import ExternalPosition, Position, Severity, ValidationReport, ValidationResult

logger = logging.getLogger(__name__)


class ReconciliationSourceError(Exception):
    """The broker position snapshot could not be obtained or read.
    Reconciliation cannot proceed; there is no fallback snapshot."""


class AutoFixNotConfirmedError(Exception):
    """An auto-fix proposal was applied without explicit confirmation."""


# ── Snapshot ──────────────────────────────────────────────────────────────────

def _finite(symbol: str, field: str, raw: Any) -> float:
    val = float(raw)
    # A NaN quantity fails every threshold test and would score as minor.
    if not math.isfinite(val):
        raise ReconciliationSourceError(f'snapshot {field} for {symbol!r} is not finite: {raw!r}')
    return val


def _to_external(symbol: str, row: Any) -> ExternalPosition:
    if isinstance(row, ExternalPosition):
        _finite(symbol, 'quantity', row.quantity)
        return row
    if not isinstance(row, Mapping):
        raise ReconciliationSourceError(f'snapshot row for {symbol!r} is not a mapping: {row!r}')
    try:
        return ExternalPosition(
            symbol=str(row.get('symbol') or symbol),
            quantity=_finite(symbol, 'quantity', row['quantity']),
            average_cost=_finite(symbol, 'average cost',
                                 row.get('average_cost', row.get('averageCost', 0.0)) or 0.0),
            market_value=_finite(symbol, 'market value',
                                 row.get('market_value', row.get('marketValue', 0.0)) or 0.0),
            unrealized_pnl=_finite(symbol, 'unrealized P/L',
                                   row.get('unrealized_pnl', row.get('unrealizedPnL', 0.0)) or 0.0),
            realized_pnl=_finite(symbol, 'realized P/L',
                                 row.get('realized_pnl', row.get('realizedPnL', 0.0)) or 0.0),
            account=str(row.get('account', row.get('accountId', '')) or ''),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ReconciliationSourceError(
            f'snapshot row for {symbol!r} is unreadable: {exc}'
        ) from exc


def coerce_snapshot(raw: Any) -> dict[str, ExternalPosition]:
    """
    Normalise a snapshot into symbol → ExternalPosition.

    Accepts a mapping keyed by symbol (values ExternalPosition or plain
    dicts) or an iterable of rows that carry their own symbol.
    """
    if raw is None:
        raise ReconciliationSourceError('position feed returned no snapshot')
    if isinstance(raw, Mapping):
        return {str(sym): _to_external(str(sym), row) for sym, row in raw.items()}
    try:
        rows = list(raw)
    except TypeError as exc:
        raise ReconciliationSourceError(f'unreadable position snapshot: {raw!r}') from exc
    snapshot = {}
    for row in rows:
        symbol = row.symbol if isinstance(row, ExternalPosition) else (
            row.get('symbol') if isinstance(row, Mapping) else None)
        if not symbol:
            raise ReconciliationSourceError(f'snapshot row has no symbol: {row!r}')
        snapshot[symbol] = _to_external(symbol, row)
    return snapshot


# ── Scoring ───────────────────────────────────────────────────────────────────

def classify(discrepancy: float, percentage: float) -> Severity:
    if discrepancy == 0:
        return 'ok'
    if discrepancy >= CRITICAL_SHARES or percentage >= CRITICAL_PCT:
        return 'critical'
    if discrepancy >= WARNING_SHARES or percentage >= WARNING_PCT:
        return 'warning'
    return 'minor'


def _fmt(qty: float) -> str:
    return f'{qty:g}'


def validate_position(symbol: str, calc: Optional[Position],
                      ext: Optional[ExternalPosition]) -> ValidationResult:
    """
    Score one symbol. Either side may be None when the symbol is missing
    from it; a symbol missing from both reconciles trivially.
    """
    calc_qty = calc.quantity if calc is not None else 0.0
    ext_qty  = ext.quantity if ext is not None else 0.0
    signed   = round(calc_qty - ext_qty, QTY_ROUND)
    disc     = abs(signed)

    if ext is None and calc_qty != 0:
        return ValidationResult(
            symbol=symbol, is_valid=False,
            calculated_quantity=calc_qty, external_quantity=0.0,
            signed_discrepancy=signed, discrepancy=disc, discrepancy_percentage=100.0,
            severity='critical',
            message=f'Position shows {_fmt(calc_qty)} shares but the broker reports no position',
            suggestions=[
                'Check that every trade was imported',
                'Verify whether the position was closed at the broker but not in the exports',
                'Ensure all Flex exports are up to date',
            ],
        )
    if calc is None and ext_qty != 0:
        return ValidationResult(
            symbol=symbol, is_valid=False,
            calculated_quantity=0.0, external_quantity=ext_qty,
            signed_discrepancy=signed, discrepancy=disc, discrepancy_percentage=100.0,
            severity='warning',
            message=f'Broker reports {_fmt(ext_qty)} shares but no trades were found for {symbol}',
            suggestions=[
                'Check that the Flex export includes all accounts',
                'Verify trades for this symbol were imported',
                'The position may predate the export date range',
            ],
        )

    if ext_qty != 0:
        pct = disc / abs(ext_qty) * 100
    else:
        pct = 100.0 if disc > 0 else 0.0
    severity = classify(disc, pct)

    if disc == 0:
        message = ('Position matches the broker exactly' if calc is not None and ext is not None
                   else 'No position in calculations or at the broker')
        suggestions = []
    elif signed > 0:
        message = (f'Calculated {_fmt(calc_qty)} shares is higher than the broker '
                   f'quantity {_fmt(ext_qty)}')
        suggestions = [
            'Check for duplicate trades across exports',
            'Verify every SELL trade was recorded',
            'Look for corporate actions (splits) not reflected in the trades',
        ]
    else:
        message = (f'Calculated {_fmt(calc_qty)} shares is lower than the broker '
                   f'quantity {_fmt(ext_qty)}')
        suggestions = [
            'Check for trades missing from the Flex export',
            'Verify the export date range covers every trade',
            'Look for manual adjustments at the broker not captured in trades',
        ]

    return ValidationResult(
        symbol=symbol,
        is_valid=severity in ('ok', 'minor'),
        calculated_quantity=calc_qty,
        external_quantity=ext_qty,
        signed_discrepancy=signed,
        discrepancy=disc,
        discrepancy_percentage=pct,
        severity=severity,
        message=message,
        suggestions=suggestions,
    )


def build_report(calculated: Mapping[str, Position],
                 external: Mapping[str, ExternalPosition],
                 now: Optional[datetime] = None) -> ValidationReport:
    """Score every symbol on either side; results sorted critical first, then by symbol."""
    results = [validate_position(sym, calculated.get(sym), external.get(sym))
               for sym in sorted(set(calculated) | set(external))]
    results.sort(key=lambda r: (SEVERITY_ORDER[r.severity], r.symbol))
    return ValidationReport(
        timestamp=now or datetime.now(),
        total_positions=len(results),
        valid_positions=sum(1 for r in results if r.is_valid),
        invalid_positions=sum(1 for r in results if not r.is_valid),
        critical_errors=sum(1 for r in results if r.severity == 'critical'),
        warnings=sum(1 for r in results if r.severity == 'warning'),
        results=results,
    )


# ── Validator ─────────────────────────────────────────────────────────────────

class PositionValidator:
    """
    Reconciles one run's positions against a broker feed.

    fetch_positions is an async callable returning the snapshot in any shape
    coerce_snapshot() accepts. The validator holds no state between calls.
    """

    def __init__(self, fetch_positions: Callable[[], Awaitable[Any]],
                 clock: Callable[[], datetime] = datetime.now):
        self._fetch = fetch_positions
        self._clock = clock

    async def validate_all(self, calculated: Mapping[str, Position]) -> ValidationReport:
        """
        Raises
        ------
        ReconciliationSourceError — the feed failed, returned nothing, or
        returned a snapshot that cannot be read.
        """
        try:
            raw = await self._fetch()
        except ReconciliationSourceError:
            raise
        except Exception as exc:
            logger.error('Position feed failed: %s', exc)
            raise ReconciliationSourceError(f'position feed failed: {exc}') from exc
        try:
            external = coerce_snapshot(raw)
        except ReconciliationSourceError as exc:
            logger.error('Position snapshot rejected: %s', exc)
            raise
        report = build_report(calculated, external, self._clock())
        logger.info('Validated %d position(s): %d critical, %d warning(s)',
                    report.total_positions, report.critical_errors, report.warnings)
        return report


# ── Remediation ───────────────────────────────────────────────────────────────

def reconciliation_steps(result: ValidationResult) -> list[str]:
    steps = []
    if result.severity == 'critical':
        steps += [
            '1. Export a fresh Flex query covering all dates',
            '2. Clear the parsed trade cache and re-import',
            '3. Check the broker activity statement for manual adjustments',
            '4. Verify no trades are missing from the export',
        ]
    elif result.severity == 'warning':
        steps += [
            '1. Review recent trades for this symbol',
            '2. Check for partial fills or corrections',
            '3. Verify option assignments were recorded',
        ]
    # Whole-contract gaps usually mean a missed assignment
    if result.discrepancy > 0 and result.discrepancy % 100 == 0:
        steps.append('Discrepancy is a multiple of 100 shares: likely an option assignment')
    return steps


def propose_auto_fix(report: ValidationReport) -> dict[str, float]:
    """Broker quantity for every critical or warning symbol. Nothing is applied."""
    return {r.symbol: r.external_quantity for r in report.results
            if r.severity in ('critical', 'warning')}


def apply_auto_fix(positions: Mapping[str, Position], fixes: Mapping[str, float],
                   confirmed: bool = False) -> dict[str, Position]:
    """
    Return a copy of positions with the proposed quantities applied.
    The input map and its Positions are left untouched.

    Raises AutoFixNotConfirmedError unless confirmed=True.
    """
    if not confirmed:
        raise AutoFixNotConfirmedError(
            f'{len(fixes)} position fix(es) proposed; pass confirmed=True to apply'
        )
    fixed = {sym: replace(p, active_cycles=list(p.active_cycles),
                          completed_cycles=list(p.completed_cycles))
             for sym, p in positions.items()}
    for sym, qty in fixes.items():
        if sym in fixed:
            fixed[sym] = replace(fixed[sym], quantity=qty)
        else:
            fixed[sym] = Position(symbol=sym, quantity=qty)
        logger.info('Auto-fix applied: %s → %g', sym, qty)
    return fixed
