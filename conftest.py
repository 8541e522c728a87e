"""
Shared pytest fixtures: Trade builders and a Flex XML document builder.

Builders are exposed as fixtures returning factories so each test reads as
a short list of trades.
"""

import xml.etree.ElementTree as ET
from datetime import datetime

import pytest

from models import OptionDetails, Trade


def _when(value):
    return value if isinstance(value, datetime) else datetime.fromisoformat(value)


def _stock(trade_id, when, side, qty, price, commission=-1.0, symbol='X'):
    when   = _when(when)
    signed = qty if side == 'BUY' else -qty
    gross  = -signed * price
    return Trade(
        trade_id=trade_id, date_time=when, order_time=when,
        trade_date=when.replace(hour=0, minute=0, second=0), report_date=when,
        symbol=symbol, underlying=symbol, asset_category='STK', currency='USD',
        side=side, quantity=signed, price=price, proceeds=gross,
        commission=commission, net_cash=gross + commission,
    )


def _option(trade_id, when, side, qty, net_cash, put_call='P', strike=50.0,
            expiry='2025-01-17', commission=-1.0, symbol='X', category='OPT', multiplier=100):
    when   = _when(when)
    expiry = _when(expiry)
    signed = qty if side == 'BUY' else -qty
    return Trade(
        trade_id=trade_id, date_time=when, order_time=when,
        trade_date=when.replace(hour=0, minute=0, second=0), report_date=when,
        symbol=f'{symbol}  {expiry:%y%m%d}{put_call}{int(strike * 1000):08d}',
        underlying=symbol, asset_category=category, currency='USD',
        side=side, quantity=signed, price=abs(net_cash) / (qty * multiplier) if qty else 0.0,
        proceeds=net_cash - commission, commission=commission, net_cash=net_cash,
        option=OptionDetails(put_call=put_call, strike=strike, expiry=expiry,
                             multiplier=multiplier),
    )


def _flex_doc(*records, tag='TradeConfirm', container='TradeConfirms', root_tag='FlexQueryResponse'):
    root  = ET.Element(root_tag, queryName='wheel', type='TCF')
    stmts = ET.SubElement(root, 'FlexStatements', count='1')
    stmt  = ET.SubElement(stmts, 'FlexStatement', accountId='U1234567')
    conf  = ET.SubElement(stmt, container)
    for rec in records:
        ET.SubElement(conf, tag, {k: str(v) for k, v in rec.items()})
    return ET.tostring(root, encoding='unicode')


def _stock_attrs(trade_id, when='20250117;162000', side='BUY', qty=100, price=50.0,
                 commission=-1.0, symbol='X'):
    signed = qty if side == 'BUY' else -qty
    gross  = -signed * price
    return {
        'tradeID': trade_id, 'orderTime': when, 'tradeDate': when.split(';')[0],
        'symbol': symbol, 'assetCategory': 'STK', 'currency': 'USD',
        'quantity': signed, 'price': price, 'amount': gross,
        'commission': commission, 'netCash': gross + commission, 'buySell': side,
    }


def _option_attrs(trade_id, when='20250102;101500', side='SELL', qty=1, net_cash=149.0,
                  put_call='P', strike=50, expiry='20250117', commission=-1.0, symbol='X'):
    signed = qty if side == 'BUY' else -qty
    return {
        'tradeID': trade_id, 'orderTime': when, 'tradeDate': when.split(';')[0],
        'symbol': f'{symbol}  {expiry[2:]}{put_call}{int(strike * 1000):08d}',
        'assetCategory': 'OPT', 'currency': 'USD', 'quantity': signed,
        'price': abs(net_cash) / 100, 'amount': net_cash - commission,
        'commission': commission, 'netCash': net_cash, 'buySell': side,
        'putCall': put_call, 'strike': strike, 'expiry': expiry, 'multiplier': 100,
    }


@pytest.fixture
def make_stock():
    return _stock


@pytest.fixture
def make_option():
    return _option


@pytest.fixture
def flex_doc():
    return _flex_doc


@pytest.fixture
def stock_attrs():
    return _stock_attrs


@pytest.fixture
def option_attrs():
    return _option_attrs
