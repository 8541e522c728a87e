"""Flex XML parsing: field mapping, deduplication, skipped records, date fallback."""

import asyncio
from datetime import datetime

import pytest

from ingestion import (
    FlexParseError, FlexStructureError, TradeParser,
    parse_flex_date, parse_flex_reports, underlying_symbol,
)

FIXED_NOW = datetime(2025, 3, 1, 12, 0, 0)


def fixed_clock():
    return FIXED_NOW


# ── Field helpers ─────────────────────────────────────────────────────────────

def test_parse_flex_date_layouts():
    assert parse_flex_date('20250117', FIXED_NOW) == (datetime(2025, 1, 17), False)
    assert parse_flex_date('20250117;093015', FIXED_NOW) == (datetime(2025, 1, 17, 9, 30, 15), False)


@pytest.mark.parametrize('value', [None, '', '   ', 'not-a-date'])
def test_parse_flex_date_falls_back(value):
    assert parse_flex_date(value, FIXED_NOW) == (FIXED_NOW, True)


def test_underlying_symbol_strips_contract_suffix():
    assert underlying_symbol('AAPL  250417P00190000') == 'AAPL'
    assert underlying_symbol('MSFT') == 'MSFT'


# ── Record mapping ────────────────────────────────────────────────────────────

def test_stock_and_option_records(flex_doc, stock_attrs, option_attrs):
    doc = flex_doc(
        option_attrs('O1', side='SELL', net_cash=149.0, strike=50, expiry='20250117'),
        stock_attrs('S1', side='SELL', qty=30, price=52.5),
    )
    parsed = parse_flex_reports(doc)
    assert parsed.skipped == 0
    by_id = {t.trade_id: t for t in parsed.trades}

    opt = by_id['O1']
    assert opt.is_option and not opt.is_stock
    assert opt.underlying == 'X'
    assert opt.quantity == -1
    assert opt.date_time == datetime(2025, 1, 2, 10, 15)
    assert opt.option.put_call == 'P'
    assert opt.option.strike == 50
    assert opt.option.expiry == datetime(2025, 1, 17)
    assert opt.option.multiplier == 100
    assert opt.net_cash == 149.0
    assert opt.fee == 1.0

    stk = by_id['S1']
    assert stk.option is None
    assert stk.quantity == -30
    assert stk.side == 'SELL'
    assert stk.underlying == 'X'


def test_positive_sell_quantity_is_signed_negative(flex_doc, stock_attrs):
    rec = stock_attrs('S1', side='SELL', qty=30)
    rec['quantity'] = 30
    parsed = parse_flex_reports(flex_doc(rec))
    assert parsed.trades[0].quantity == -30


def test_activity_style_trade_records_are_accepted(flex_doc, stock_attrs):
    doc = flex_doc(stock_attrs('S1'), tag='Trade', container='Trades')
    assert [t.trade_id for t in parse_flex_reports(doc).trades] == ['S1']


def test_missing_multiplier_defaults_to_100(flex_doc, option_attrs):
    rec = option_attrs('O1')
    del rec['multiplier']
    assert parse_flex_reports(flex_doc(rec)).trades[0].option.multiplier == 100


# ── Deduplication ─────────────────────────────────────────────────────────────

def test_parsing_the_same_export_twice_is_idempotent(flex_doc, stock_attrs, option_attrs):
    doc = flex_doc(option_attrs('O1'), stock_attrs('S1'), stock_attrs('S2', side='SELL'))
    parser = TradeParser()
    first  = parser.parse_document(doc)
    second = parser.parse_document(doc)
    assert [t.trade_id for t in first.trades] == ['O1', 'S1', 'S2']
    assert [t.trade_id for t in second.trades] == ['O1', 'S1', 'S2']
    assert second.duplicates == 3


def test_duplicate_within_one_document_keeps_first(flex_doc, stock_attrs):
    doc = flex_doc(stock_attrs('S1', price=50.0), stock_attrs('S1', price=99.0))
    parsed = parse_flex_reports(doc)
    assert len(parsed.trades) == 1
    assert parsed.trades[0].price == 50.0
    assert parsed.duplicates == 1


def test_clear_cache_resets_parser(flex_doc, stock_attrs):
    doc = flex_doc(stock_attrs('S1'))
    parser = TradeParser()
    parser.parse_document(doc)
    parser.clear_cache()
    assert parser.trades == []
    again = parser.parse_document(doc)
    assert len(again.trades) == 1
    assert again.duplicates == 0


def test_separate_parsers_share_nothing(flex_doc, stock_attrs):
    doc = flex_doc(stock_attrs('S1'))
    TradeParser().parse_document(doc)
    assert TradeParser().parse_document(doc).duplicates == 0


# ── Malformed records ─────────────────────────────────────────────────────────

def test_malformed_records_are_skipped_and_counted(flex_doc, stock_attrs, option_attrs):
    no_cash = stock_attrs('BAD1')
    del no_cash['netCash']
    nan_qty = stock_attrs('BAD2')
    nan_qty['quantity'] = 'NaN'
    cash_row = stock_attrs('BAD3')
    cash_row['assetCategory'] = 'CASH'
    no_expiry = option_attrs('BAD4')
    del no_expiry['expiry']
    bad_side = stock_attrs('BAD5')
    bad_side['buySell'] = 'HOLD'

    doc = flex_doc(stock_attrs('OK1'), no_cash, nan_qty, cash_row, no_expiry, bad_side,
                   option_attrs('OK2'))
    parsed = parse_flex_reports(doc)
    assert [t.trade_id for t in parsed.trades] == ['OK1', 'OK2']
    assert parsed.skipped == 5
    assert len(parsed.errors) == 5
    assert any('BAD2' in e and 'finite' in e for e in parsed.errors)


def test_not_xml_raises_structure_error():
    with pytest.raises(FlexStructureError):
        TradeParser().parse_document('this is not xml <')


def test_wrong_root_raises_structure_error(flex_doc, stock_attrs):
    doc = flex_doc(stock_attrs('S1'), root_tag='ActivityStatement')
    with pytest.raises(FlexParseError, match='FlexQueryResponse'):
        TradeParser().parse_document(doc)


# ── Date fallback ─────────────────────────────────────────────────────────────

def test_missing_dates_fall_back_to_parse_time(flex_doc, stock_attrs):
    rec = stock_attrs('S1')
    del rec['orderTime']
    del rec['tradeDate']
    parsed = TradeParser(clock=fixed_clock).parse_document(flex_doc(rec))
    trade = parsed.trades[0]
    assert trade.date_time == FIXED_NOW
    assert trade.date_fallback
    assert parsed.date_fallbacks == ['S1']
    assert parsed.skipped == 0


def test_trade_date_alone_is_not_a_fallback(flex_doc, stock_attrs):
    rec = stock_attrs('S1', when='20250117;162000')
    del rec['orderTime']
    trade = TradeParser(clock=fixed_clock).parse_document(flex_doc(rec)).trades[0]
    assert trade.date_time == datetime(2025, 1, 17)
    assert not trade.date_fallback


def test_order_time_alone_sets_trade_date(flex_doc, stock_attrs):
    rec = stock_attrs('S1', when='20250117;162000')
    del rec['tradeDate']
    trade = TradeParser(clock=fixed_clock).parse_document(flex_doc(rec)).trades[0]
    assert trade.trade_date == datetime(2025, 1, 17)
    assert trade.date_time == datetime(2025, 1, 17, 16, 20)
    assert not trade.date_fallback


# ── File loading ──────────────────────────────────────────────────────────────

def test_load_directory_reads_every_export(tmp_path, flex_doc, stock_attrs, option_attrs):
    (tmp_path / 'a.xml').write_text(flex_doc(option_attrs('O1'), stock_attrs('S1')))
    (tmp_path / 'b.xml').write_text(flex_doc(stock_attrs('S1'), stock_attrs('S2', side='SELL')))
    (tmp_path / 'notes.txt').write_text('ignored')

    parsed = asyncio.run(TradeParser().load_directory(tmp_path))
    assert sorted(t.trade_id for t in parsed.trades) == ['O1', 'S1', 'S2']
    assert parsed.duplicates == 1


def test_load_files_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        asyncio.run(TradeParser().load_files([tmp_path / 'missing.xml']))


# ── Batches with a bad document ───────────────────────────────────────────────

def test_bad_document_does_not_abort_batch(flex_doc, stock_attrs):
    parsed = TradeParser().parse_documents(['not xml <', flex_doc(stock_attrs('S1'))])
    assert [t.trade_id for t in parsed.trades] == ['S1']
    assert parsed.failed_documents == 1
    assert any('<document 0>' in e for e in parsed.errors)


def test_corrupt_file_in_directory_is_counted(tmp_path, flex_doc, stock_attrs):
    (tmp_path / 'a.xml').write_text('<FlexQueryResponse><FlexStatements>')
    (tmp_path / 'b.xml').write_text(flex_doc(stock_attrs('S1')))
    parser = TradeParser()
    parsed = asyncio.run(parser.load_directory(tmp_path))
    assert [t.trade_id for t in parsed.trades] == ['S1']
    assert parsed.failed_documents == 1
    parser.clear_cache()
    assert parser.result().failed_documents == 0
