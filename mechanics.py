"""
FlexWheel — Wheel-Cycle Reconstruction
=======================================
All computation that folds parsed trades into wheel cycles and per-symbol
positions. No I/O — fully importable and testable standalone.

Public API
----------
  chronological(trades)                   → list[Trade]  (the sort every entry point applies)
  group_by_symbol(trades)                 → dict[str, list[Trade]]
  build_cycles(trades, symbol, as_of)     → (list[WheelCycle], Position)
  reconstruct(trades, as_of)              → Reconstruction(cycles, positions)
  safe_strike(cycle)                      → float | None
  active_cycles(cycles)                   → list[WheelCycle]  (most recent start first)
  completed_cycles(cycles)                → list[WheelCycle]  (most recent end first)
  open_option_legs(trades, as_of)         → list[Trade]
  latest_prices(trades)                   → dict[str, float]
  cash_flow(trades)                       → CashFlow

Internal helpers (also importable and testable)
  _OptionLeg                              one short option series inside a cycle
  _match_assignment(legs, trade)          → _OptionLeg | None
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Optional

from config import (
    QTY_EPSILON, QTY_ROUND,
    CYCLE_PUT_EXPIRED, CYCLE_PUT_ASSIGNED_CALL_EXP, CYCLE_PUT_ASSIGNED_CALL_ASN,
)
from models import CashFlow, Position, Reconstruction, Trade, WheelCycle

logger = logging.getLogger(__name__)


# ── ORDERING ──────────────────────────────────────────────────────────────────
def _trade_sort_key(trade: Trade) -> tuple:
    # Stock before options at the same timestamp: an assignment delivers the
    # shares and closes the option leg in the same instant, and the share
    # delivery has to be seen while the short put is still open.
    return (trade.date_time, 0 if trade.is_stock else 1, trade.trade_id)


def chronological(trades: Iterable[Trade]) -> list[Trade]:
    """
    Return trades in processing order: timestamp, then stock before option,
    then trade id. Every reconstruction entry point sorts through here, so
    the caller's list order never changes the result.
    """
    return sorted(trades, key=_trade_sort_key)


def group_by_symbol(trades: Iterable[Trade]) -> dict[str, list[Trade]]:
    groups: dict[str, list[Trade]] = defaultdict(list)
    for t in trades:
        groups[t.underlying].append(t)
    return dict(groups)


# ── OPTION LEGS ───────────────────────────────────────────────────────────────
@dataclass
class _OptionLeg:
    """
    One option series written inside a cycle.

    sold             Contracts sold to open, cumulative
    open             Contracts still short (never below zero)
    assigned_shares  Shares delivered against this series so far
    """
    put_call:        str
    strike:          float
    expiry:          datetime
    multiplier:      float
    sold:            float = 0.0
    open:            float = 0.0
    assigned_shares: float = 0.0

    @property
    def assignable_shares(self) -> float:
        return round(self.sold * self.multiplier - self.assigned_shares, QTY_ROUND)


def _leg_key(trade: Trade) -> tuple:
    o = trade.option
    return (o.put_call, o.strike, o.expiry)


def _match_assignment(legs: dict, trade: Trade, put_call: str = 'P') -> Optional[_OptionLeg]:
    """
    Find the written option series a share movement was delivered against.

    A delivery matches a series of the given type when the series still has
    undelivered shares covering the trade's size and either the trade lands
    on the series' expiry date or (early exercise) the trade price equals the
    strike on or before expiry. Partial deliveries on the same expiry keep
    matching the same series until its contract-implied shares are used up.
    """
    qty = trade.abs_quantity
    candidates = sorted(
        (leg for leg in legs.values() if leg.put_call == put_call),
        key=lambda leg: (leg.expiry, leg.strike),
    )
    for leg in candidates:
        if leg.assignable_shares + QTY_EPSILON < qty:
            continue
        on_expiry = trade.date_time.date() == leg.expiry.date()
        early     = (abs(trade.price - leg.strike) < QTY_EPSILON
                     and trade.date_time.date() <= leg.expiry.date())
        if on_expiry or early:
            return leg
    return None


# ── CYCLE ACCOUNTING ──────────────────────────────────────────────────────────
def safe_strike(cycle: WheelCycle) -> Optional[float]:
    """
    Breakeven exit price for an assigned cycle: the assignment price less the
    premium banked per assigned share. None until shares have been assigned.

    Example: put assigned at 50 on 100 shares, 150 premium + 120 call premium
             → 50 - 270 / 100 = 47.30
    """
    if cycle.assignment_price is None or cycle.shares_assigned < QTY_EPSILON:
        return None
    return cycle.assignment_price - cycle.total_premium / cycle.shares_assigned


def _refresh(cycle: WheelCycle) -> None:
    # Single P/L formula for every state: option-only cycles have zero stock
    # terms, so this collapses to premium - fees.
    cycle.safe_strike = safe_strike(cycle)
    cycle.net_profit  = (cycle.total_premium
                         + (cycle.stock_proceeds - cycle.stock_cost)
                         - cycle.total_fees)


def _close(cycle: WheelCycle, end_date: datetime, cycle_type: str) -> None:
    _refresh(cycle)
    cycle.status     = 'completed'
    cycle.phase      = 'closed'
    cycle.end_date   = end_date
    cycle.cycle_type = cycle_type


def _all_legs_closed(legs: dict) -> bool:
    return all(leg.open < QTY_EPSILON for leg in legs.values())


# ── STATE MACHINE ─────────────────────────────────────────────────────────────
def build_cycles(trades: Iterable[Trade], symbol: str,
                 as_of: Optional[datetime] = None) -> tuple[list[WheelCycle], Position]:
    """
    Fold one symbol's trades into wheel cycles and a running Position.

    Trades for other symbols are ignored; the rest are sorted with
    chronological() before processing.

    States
    ------
      no_cycle      nothing written, or the last cycle closed
      option_open   a put (no shares) or call (shares held) has been written
      assigned      shares arrived through put assignment; calls follow
      closed        shares called away / sold to zero, or every option leg
                    expired or was bought back with no shares held

    Transitions
    -----------
      Option SELL, no cycle     → opens a cycle in option_open
      Option SELL, in cycle     → adds premium to the current cycle
      Option BUY,  in cycle     → subtracts buy-back cost; closes the cycle
                                  when no leg is left open and no shares held
      Stock BUY matching a put  → assigned; assignment price = strike
      Stock SELL to zero        → closed; P/L includes the share result

    Accounting
    ----------
      premium   += |net cash| on option sells, -= |net cash| on option buys
      fees      += |commission| on every trade in the cycle
      net       =  premium + (sale proceeds - average cost of shares sold) - fees

    as_of: when given, written legs still open whose expiry date is before
    as_of's date are treated as expired worthless. A leg is still live on its
    expiry day. Without as_of nothing is inferred from dates.

    Examples
    --------
    1. Put expires worthless — STO 1 put for 150 net, fee 1, then expiry:

       SELL put   → cycle opens   premium=150  fees=1
       BUY  put@0 → all legs shut, no shares → completed, net = 149

    2. Full wheel — STO put 50 (150), assigned 100 @ 50, STO call 55 (120),
       called away 100 @ 55:

       assigned:    assignment_price=50  shares_assigned=100  safe_strike=48.50
       call sold:   premium=270  safe_strike=47.30
       called away: stock result = 5500 - 5000 = 500
                    net = 270 + 500 - fees
    """
    position  = Position(symbol=symbol)
    cycles:   list[WheelCycle] = []
    current:  Optional[WheelCycle] = None
    legs:     dict = {}
    shares    = 0.0

    for t in chronological(tr for tr in trades if tr.underlying == symbol):
        qty = t.abs_quantity

        # ── Option written ─────────────────────────────────────────────────
        if t.is_option and not t.is_buy:
            if current is None:
                current = WheelCycle(symbol=symbol, start_date=t.date_time, trades=[t])
                legs    = {}
                if shares > QTY_EPSILON:
                    logger.debug('%s: cycle opened against %.4g shares already held',
                                 symbol, shares)
            else:
                current.trades.append(t)
            key = _leg_key(t)
            if key not in legs:
                legs[key] = _OptionLeg(put_call=t.option.put_call, strike=t.option.strike,
                                       expiry=t.option.expiry, multiplier=t.option.multiplier)
            legs[key].sold += qty
            legs[key].open += qty
            current.total_premium += abs(t.net_cash)
            current.total_fees    += t.fee
            _refresh(current)

        # ── Option bought (buy-back, expiry or assignment close-out) ──────
        elif t.is_option:
            if current is None:
                logger.debug('%s: option buy %s outside any cycle, not attributed',
                             symbol, t.trade_id)
                continue
            current.trades.append(t)
            leg = legs.get(_leg_key(t))
            if leg is not None:
                leg.open = max(0.0, round(leg.open - qty, QTY_ROUND))
            current.total_premium -= abs(t.net_cash)
            current.total_fees    += t.fee
            _refresh(current)
            if _all_legs_closed(legs) and shares < QTY_EPSILON:
                _close(current, t.date_time, CYCLE_PUT_EXPIRED)
                cycles.append(current)
                current = None

        # ── Shares bought (assignment or outright) ─────────────────────────
        elif t.is_buy:
            held = max(shares, 0.0)
            new_held = held + qty
            if new_held > QTY_EPSILON:
                position.average_cost = (position.average_cost * held + qty * t.price) / new_held
            shares = round(shares + qty, QTY_ROUND)

            if current is not None:
                current.trades.append(t)
                current.total_fees += t.fee
                leg = _match_assignment(legs, t, 'P')
                if leg is not None:
                    prior = current.shares_assigned
                    current.assignment_price = (
                        ((current.assignment_price or 0.0) * prior + leg.strike * qty)
                        / (prior + qty)
                    )
                    current.shares_assigned = round(prior + qty, QTY_ROUND)
                    leg.assigned_shares     = round(leg.assigned_shares + qty, QTY_ROUND)
                    leg.open = max(0.0, round(leg.open - qty / leg.multiplier, QTY_ROUND))
                    current.phase      = 'assigned'
                    current.cycle_type = CYCLE_PUT_ASSIGNED_CALL_EXP
                _refresh(current)

        # ── Shares sold (called away or outright) ──────────────────────────
        else:
            proceeds = qty * t.price
            cost     = qty * position.average_cost
            position.stock_realized_pnl += proceeds - cost
            prior  = shares
            shares = round(shares - qty, QTY_ROUND)
            if shares < -QTY_EPSILON:
                logger.warning('%s: sell %s takes shares to %.4g; short stock is not modelled',
                               symbol, t.trade_id, shares)

            if current is not None:
                current.trades.append(t)
                current.total_fees     += t.fee
                current.stock_proceeds += proceeds
                current.stock_cost     += cost
                leg = _match_assignment(legs, t, 'C')
                if leg is not None:
                    leg.assigned_shares = round(leg.assigned_shares + qty, QTY_ROUND)
                    leg.open = max(0.0, round(leg.open - qty / leg.multiplier, QTY_ROUND))
                _refresh(current)
                if prior > QTY_EPSILON and shares < QTY_EPSILON:
                    _close(current, t.date_time, CYCLE_PUT_ASSIGNED_CALL_ASN)
                    cycles.append(current)
                    current = None

    # ── Expiry inference ───────────────────────────────────────────────────
    if current is not None and as_of is not None:
        expired = [leg for leg in legs.values() if leg.open > QTY_EPSILON
                   and leg.expiry.date() < as_of.date()]
        for leg in expired:
            leg.open = 0.0
        if expired and _all_legs_closed(legs) and shares < QTY_EPSILON:
            _close(current, max(leg.expiry for leg in expired), CYCLE_PUT_EXPIRED)
            cycles.append(current)
            current = None

    if current is not None:
        cycles.append(current)

    position.quantity         = shares
    position.completed_cycles = sorted(
        (c for c in cycles if c.status == 'completed'),
        key=lambda c: c.end_date, reverse=True,
    )
    position.active_cycles    = sorted(
        (c for c in cycles if c.status == 'active'),
        key=lambda c: c.start_date, reverse=True,
    )
    position.realized_pnl     = sum(c.net_profit for c in position.completed_cycles)
    return cycles, position


def reconstruct(trades: Iterable[Trade], as_of: Optional[datetime] = None) -> Reconstruction:
    """
    Build cycles and positions for every symbol present in trades.
    Symbols are processed in sorted order so both maps iterate identically
    on every run.
    """
    by_symbol = group_by_symbol(chronological(trades))
    all_cycles:    dict[str, list[WheelCycle]] = {}
    all_positions: dict[str, Position] = {}
    for symbol in sorted(by_symbol):
        cycles, position = build_cycles(by_symbol[symbol], symbol, as_of)
        all_cycles[symbol]    = cycles
        all_positions[symbol] = position
    logger.info('Reconstructed %d symbol(s), %d cycle(s)',
                len(all_positions), sum(len(c) for c in all_cycles.values()))
    return Reconstruction(cycles=all_cycles, positions=all_positions)


# ── QUERIES ───────────────────────────────────────────────────────────────────
def active_cycles(cycles: dict[str, list[WheelCycle]]) -> list[WheelCycle]:
    found = [c for camps in cycles.values() for c in camps
             if c.status == 'active' and c.trades]
    return sorted(found, key=lambda c: c.start_date, reverse=True)


def completed_cycles(cycles: dict[str, list[WheelCycle]]) -> list[WheelCycle]:
    found = [c for camps in cycles.values() for c in camps if c.status == 'completed']
    return sorted(found, key=lambda c: c.end_date, reverse=True)


def open_option_legs(trades: Iterable[Trade], as_of: datetime) -> list[Trade]:
    """
    Net open option positions that have not yet expired at as_of.

    Each entry is the most recent trade of its series with quantity replaced
    by the series' net contract count (positive long, negative short).
    """
    series: dict[tuple, list[Trade]] = defaultdict(list)
    for t in trades:
        if t.is_option and t.option.expiry.date() >= as_of.date():
            series[(t.underlying,) + _leg_key(t)].append(t)

    legs = []
    for key in sorted(series, key=lambda k: (k[0], k[3], k[2], k[1])):
        group = chronological(series[key])
        net = round(sum(t.quantity for t in group), QTY_ROUND)
        if abs(net) > QTY_EPSILON:
            legs.append(replace(group[-1], quantity=net))
    return legs


def latest_prices(trades: Iterable[Trade]) -> dict[str, float]:
    """Last traded price per underlying, from stock trades only."""
    prices: dict[str, float] = {}
    for t in chronological(trades):
        if t.is_stock and t.price > 0:
            prices[t.underlying] = t.price
    return prices


def cash_flow(trades: Iterable[Trade]) -> CashFlow:
    """
    Portfolio cash movement by bucket. Every total is a sum of absolute
    values except total_cash_flow, which is the signed net cash.
    """
    total = stock_buys = stock_sells = opt_in = opt_out = fees = 0.0
    for t in chronological(trades):
        total += t.net_cash
        fees  += t.fee
        if t.is_stock:
            if t.is_buy:
                stock_buys  += abs(t.net_cash)
            else:
                stock_sells += abs(t.net_cash)
        elif t.is_buy:
            opt_out += abs(t.net_cash)
        else:
            opt_in  += abs(t.net_cash)
    return CashFlow(
        total_cash_flow=total,
        stock_purchases=stock_buys,
        stock_sales=stock_sells,
        option_premiums_received=opt_in,
        option_premiums_paid=opt_out,
        commissions_fees=fees,
    )
