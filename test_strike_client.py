#!/usr/bin/env python3
"""
Tests for the exchange client. The HTTP session is a MagicMock.
"""

from unittest.mock import MagicMock

import pytest
import requests

from drawdown_trading.errors import StrikeAPIError
from drawdown_trading.strike_client import StrikeClient


def _response(payload=None, status_code=200, text=''):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.content = b'{}' if payload is not None else b''
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def strike(cfg, session):
    return StrikeClient(cfg, session=session)


def test_missing_api_key_is_rejected(cfg):
    with pytest.raises(StrikeAPIError):
        StrikeClient(cfg.with_overrides(strike_api_key=None))


def test_balances_always_include_eur_and_btc(strike, session):
    session.request.return_value = _response([{'currency': 'EUR', 'available': '250.5'},
                                              {'currency': 'USD', 'available': '3'}])

    balances = strike.get_balances()

    assert balances == {'EUR': 250.5, 'BTC': 0.0, 'USD': 3.0}
    method, url = session.request.call_args[0]
    assert (method, url) == ('GET', 'https://api.example.test/v1/balances')
    assert session.request.call_args[1]['headers']['Authorization'] == 'Bearer test-key'


def test_buy_quote_body(strike, session):
    session.request.return_value = _response({'id': 'q1'})

    assert strike.create_buy_quote(12.345)['id'] == 'q1'

    body = session.request.call_args[1]['json']
    assert body['amount'] == {'amount': '12.35', 'currency': 'EUR'}
    assert (body['sell'], body['buy']) == ('EUR', 'BTC')


def test_execute_and_poll_paths(strike, session):
    session.request.return_value = _response(None)

    assert strike.execute_quote('q1') == {}
    assert session.request.call_args[0] == ('PATCH', 'https://api.example.test/v1/currency-exchange-quotes/q1/execute')

    session.request.return_value = _response({'state': 'PENDING'})
    strike.get_quote('q1')
    assert session.request.call_args[1]['timeout'] == 5.0


def test_http_error_carries_status(strike, session):
    session.request.return_value = _response({'error': 'nope'}, status_code=422, text='invalid amount')

    with pytest.raises(StrikeAPIError) as exc:
        strike.create_sell_quote(0.001)

    assert exc.value.status_code == 422


def test_transport_error_becomes_api_error(strike, session):
    session.request.side_effect = requests.exceptions.Timeout('read timed out')

    with pytest.raises(StrikeAPIError):
        strike.get_balances()


def test_invoice_truncates_description_and_requires_id(strike, session):
    session.request.return_value = _response({'invoiceId': 'inv-9'})

    invoice = strike.create_invoice('q1', 'x' * 300, '10.00', 'EUR')

    assert invoice['invoiceId'] == 'inv-9'
    body = session.request.call_args[1]['json']
    assert len(body['description']) == 200
    assert body['issuer'] == 'TRADING_BOT'
    assert body['metadata']['type'] == 'BITCOIN_TRADE'

    session.request.return_value = _response({'state': 'UNPAID'})
    with pytest.raises(StrikeAPIError):
        strike.create_invoice('q2', 'receipt', '10.00', 'EUR')
