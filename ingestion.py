"""
FlexWheel — Data Ingestion
===========================
Interactive Brokers Flex XML parsing pipeline. No network or UI dependency —
fully importable and testable without a running server.

Public API
----------
  TradeParser()                        → parser owning one run's trade-id cache
  TradeParser.parse_document(xml)      → ParsedTrades (cumulative for this parser)
  TradeParser.parse_documents(docs)    → ParsedTrades
  TradeParser.load_files(paths)        → ParsedTrades   (async)
  TradeParser.load_directory(path)     → ParsedTrades   (async)
  TradeParser.clear_cache()            → None
  parse_flex_reports(*docs)            → ParsedTrades   (fresh parser, one call)

Internal helpers (also importable for use in analysis functions)
  parse_flex_date(value, fallback)     → (datetime, used_fallback)
  parse_number(attrs, key, required)   → float
  underlying_symbol(symbol)            → str
  iter_trade_records(root)             → yields attribute dicts
  build_trade(attrs, now)              → Trade
"""

from __future__ import annotations

import asyncio
import logging
import math
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from config import (
    ASSET_CATEGORIES, OPT_CATEGORIES,
    FLEX_ROOT_TAG, TRADE_RECORD_TAGS,
    FLEX_DATE_FORMAT, FLEX_DATETIME_FORMAT, FLEX_DATETIME_SEP,
    DEFAULT_MULTIPLIER,
)
from models import OptionDetails, ParsedTrades, Trade

logger = logging.getLogger(__name__)


# ── Flex parse exceptions ─────────────────────────────────────────────────────

class FlexParseError(Exception):
    """Base exception for all ingestion failures.
    Every subclass carries a message safe to show directly to the user."""


class FlexStructureError(FlexParseError):
    """Document is not well-formed XML or is not a Flex query response.
    Fatal for that document only — other documents in the batch still parse."""


class MalformedRecordError(FlexParseError):
    """A single trade record is missing a required field or carries a value
    that cannot be used (non-numeric, NaN, unknown side or asset category).
    Never escapes the parser: the record is skipped and counted."""


# ── Field helpers ─────────────────────────────────────────────────────────────

def parse_flex_date(value: Optional[str], fallback: datetime) -> tuple[datetime, bool]:
    """
    Parse a Flex date ('20250417') or timestamp ('20250417;093015') into a
    naive local datetime.

    A missing, empty or unreadable value does not fail the record: it returns
    (fallback, True) so the caller can flag the trade for inspection.
    """
    text = (value or '').strip()
    if not text:
        return fallback, True
    fmt = FLEX_DATETIME_FORMAT if FLEX_DATETIME_SEP in text else FLEX_DATE_FORMAT
    try:
        return datetime.strptime(text, fmt), False
    except ValueError:
        logger.warning('Unreadable Flex date %r, using parse time', text)
        return fallback, True


def parse_number(attrs: dict, key: str, required: bool = True) -> float:
    """
    Read a numeric attribute. Optional attributes default to 0.0 when absent
    or empty; any present value must be a finite number. A NaN here would
    silently poison every downstream total, so it rejects the record instead.
    """
    raw = attrs.get(key)
    if raw is None or str(raw).strip() in ('', '--'):
        if required:
            raise MalformedRecordError(f"missing required field '{key}'")
        return 0.0
    try:
        val = float(str(raw).replace(',', ''))
    except ValueError as exc:
        raise MalformedRecordError(f"field '{key}' is not numeric: {raw!r}") from exc
    if not math.isfinite(val):
        raise MalformedRecordError(f"field '{key}' is not finite: {raw!r}")
    return val


def underlying_symbol(symbol: str) -> str:
    """Strip the contract suffix: 'AAPL  250417P00190000' → 'AAPL'."""
    return symbol.strip().split()[0] if symbol.strip() else ''


def iter_trade_records(root: ET.Element) -> Iterator[dict]:
    """Yield the attribute dict of every trade record in every statement."""
    for statement in root.iter('FlexStatement'):
        for tag in TRADE_RECORD_TAGS:
            for rec in statement.iter(tag):
                yield dict(rec.attrib)


def build_trade(attrs: dict, now: datetime) -> Trade:
    """
    Convert one record's attributes into a Trade.

    Steps
    -----
    1. Identify the record (tradeID) and its asset category / side.
    2. Parse the numeric fields; reject non-finite values.
    3. Parse timestamps, falling back to `now` when missing.
    4. For OPT / FOP, derive the underlying and attach OptionDetails.

    Raises MalformedRecordError on any unusable field.
    """
    trade_id = (attrs.get('tradeID') or '').strip()
    if not trade_id:
        raise MalformedRecordError("missing required field 'tradeID'")

    category = (attrs.get('assetCategory') or '').strip().upper()
    if category not in ASSET_CATEGORIES:
        raise MalformedRecordError(f'unsupported asset category {category!r}')

    # Flex marks cancellations as 'BUY (Ca.)' / 'SELL (Ca.)'
    side_raw = (attrs.get('buySell') or '').strip().upper()
    if side_raw.startswith('BUY'):
        side = 'BUY'
    elif side_raw.startswith('SELL'):
        side = 'SELL'
    else:
        raise MalformedRecordError(f'unrecognised buySell {side_raw!r}')

    symbol = (attrs.get('symbol') or '').strip()
    if not symbol:
        raise MalformedRecordError("missing required field 'symbol'")

    quantity   = parse_number(attrs, 'quantity')
    price      = parse_number(attrs, 'price' if 'price' in attrs else 'tradePrice')
    proceeds   = parse_number(attrs, 'amount' if 'amount' in attrs else 'proceeds', required=False)
    commission = parse_number(attrs, 'commission' if 'commission' in attrs else 'ibCommission',
                              required=False)
    net_cash   = parse_number(attrs, 'netCash')
    # Flex already signs sells negative on most queries; normalise either way
    signed_qty = abs(quantity) if side == 'BUY' else -abs(quantity)

    trade_date, trade_fb = parse_flex_date(attrs.get('tradeDate'), now)
    order_time, order_fb = parse_flex_date(attrs.get('orderTime') or attrs.get('dateTime'), now)
    # Either timestamp stands in for the other; only losing both is a fallback.
    if order_fb and not trade_fb:
        order_time = trade_date
    elif trade_fb and not order_fb:
        trade_date = order_time.replace(hour=0, minute=0, second=0, microsecond=0)
    report_date, _ = parse_flex_date(attrs.get('reportDate'), trade_date)
    date_time      = order_time
    date_fallback  = trade_fb and order_fb

    option = None
    underlying = symbol
    if category in OPT_CATEGORIES:
        underlying = underlying_symbol(symbol) or (attrs.get('underlyingSymbol') or '').strip()
        put_call = (attrs.get('putCall') or '').strip().upper()[:1]
        if put_call not in ('P', 'C'):
            raise MalformedRecordError(f'option record has putCall {put_call!r}')
        strike = parse_number(attrs, 'strike')
        expiry_raw = (attrs.get('expiry') or '').strip()
        if not expiry_raw:
            raise MalformedRecordError("option record missing 'expiry'")
        try:
            expiry = datetime.strptime(expiry_raw.split(FLEX_DATETIME_SEP)[0], FLEX_DATE_FORMAT)
        except ValueError as exc:
            raise MalformedRecordError(f'option expiry unreadable: {expiry_raw!r}') from exc
        multiplier = parse_number(attrs, 'multiplier', required=False) or DEFAULT_MULTIPLIER
        option = OptionDetails(put_call=put_call, strike=strike,
                               expiry=expiry, multiplier=multiplier)

    return Trade(
        trade_id=trade_id,
        date_time=date_time,
        order_time=order_time,
        trade_date=trade_date,
        report_date=report_date,
        symbol=symbol,
        underlying=underlying,
        asset_category=category,
        currency=(attrs.get('currency') or '').strip(),
        side=side,
        quantity=signed_qty,
        price=price,
        proceeds=proceeds,
        commission=commission,
        net_cash=net_cash,
        option=option,
        transaction_id=(attrs.get('transactionID') or trade_id).strip(),
        order_reference=(attrs.get('orderReference') or '').strip(),
        exchange=(attrs.get('exchange') or '').strip(),
        notes=(attrs.get('notes') or '').strip(),
        date_fallback=date_fallback,
    )


# ── Parser ────────────────────────────────────────────────────────────────────

class TradeParser:
    """
    Parses Flex documents into a deduplicated trade collection.

    One parser instance is one ingestion run: the trade-id map it owns
    persists across parse_document() calls so a trade re-exported in a
    later statement is discarded, and is only emptied by clear_cache().
    Create a fresh parser for an unrelated run.
    """

    def __init__(self, clock=datetime.now):
        self._clock          = clock
        self._trades:        dict[str, Trade] = {}
        self._skipped        = 0
        self._duplicates     = 0
        self._date_fallbacks: list[str] = []
        self._errors:        list[str] = []
        self._failed_docs    = 0

    @property
    def trades(self) -> list[Trade]:
        return list(self._trades.values())

    def result(self) -> ParsedTrades:
        return ParsedTrades(
            trades=self.trades,
            skipped=self._skipped,
            duplicates=self._duplicates,
            date_fallbacks=list(self._date_fallbacks),
            errors=list(self._errors),
            failed_documents=self._failed_docs,
        )

    def clear_cache(self) -> None:
        self._trades.clear()
        self._skipped    = 0
        self._duplicates = 0
        self._date_fallbacks.clear()
        self._errors.clear()
        self._failed_docs = 0

    def parse_document(self, xml_text: Union[str, bytes], source: str = '<document>') -> ParsedTrades:
        """
        Parse one Flex document and merge its trades into this parser's cache.

        Raises
        ------
        FlexStructureError — not XML, or the root is not a Flex query response.
        """
        try:
            root = ET.fromstring(xml_text)
        except ET.ParseError as exc:
            raise FlexStructureError(f'{source}: not well-formed XML ({exc})') from exc
        if root.tag != FLEX_ROOT_TAG:
            raise FlexStructureError(
                f'{source}: root element is <{root.tag}>, expected <{FLEX_ROOT_TAG}>'
            )

        # One invocation time per document, so every fallback in it agrees.
        now = self._clock()
        for idx, attrs in enumerate(iter_trade_records(root)):
            try:
                trade = build_trade(attrs, now)
            except MalformedRecordError as exc:
                self._skipped += 1
                reason = f"{source} record {idx} (tradeID={attrs.get('tradeID', '?')}): {exc}"
                self._errors.append(reason)
                logger.warning('Skipping malformed trade record: %s', reason)
                continue

            if trade.trade_id in self._trades:
                self._duplicates += 1
                logger.debug('Duplicate tradeID %s discarded', trade.trade_id)
                continue
            if trade.date_fallback:
                self._date_fallbacks.append(trade.trade_id)
                logger.warning('Trade %s has no usable date, stamped with parse time',
                               trade.trade_id)
            self._trades[trade.trade_id] = trade

        return self.result()

    def _parse_in_batch(self, xml_text: Union[str, bytes], source: str) -> None:
        # A rejected document costs only its own trades.
        try:
            self.parse_document(xml_text, source)
        except FlexStructureError as exc:
            self._failed_docs += 1
            self._errors.append(str(exc))
            logger.error('Skipping document: %s', exc)

    def parse_documents(self, docs: Iterable[Union[str, bytes]]) -> ParsedTrades:
        """
        Parse a batch. A document that is not a Flex response is counted in
        failed_documents and the rest of the batch still parses.
        """
        for i, doc in enumerate(docs):
            self._parse_in_batch(doc, f'<document {i}>')
        return self.result()

    async def load_files(self, paths: Iterable[Union[str, Path]]) -> ParsedTrades:
        """
        Read export files concurrently off the event loop, then parse them in
        the order given so duplicate resolution is deterministic.
        """
        paths = [Path(p) for p in paths]
        contents = await asyncio.gather(*(asyncio.to_thread(p.read_bytes) for p in paths))
        for path, content in zip(paths, contents):
            self._parse_in_batch(content, path.name)
        logger.info('Parsed %d file(s): %d trades, %d skipped, %d duplicates, %d failed',
                    len(paths), len(self._trades), self._skipped, self._duplicates,
                    self._failed_docs)
        return self.result()

    async def load_directory(self, directory: Union[str, Path]) -> ParsedTrades:
        """Parse every *.xml file in a directory, in filename order."""
        paths = sorted(Path(directory).glob('*.xml'))
        return await self.load_files(paths)


def parse_flex_reports(*docs: Union[str, bytes]) -> ParsedTrades:
    """Parse documents with a fresh parser — no state survives the call."""
    return TradeParser().parse_documents(docs)
