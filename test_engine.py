#!/usr/bin/env python3
"""
End-to-end tests for the trading engine entry points.

The exchange client and the price aggregator are mocks; the ledger, guard,
lease, reconciler and audit log run for real against a temporary data dir.
"""

import sys
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, call

import pytest

from conftest import LIGHT_TIER, make_trade
from drawdown_trading.cycle_lease import CycleLease
from drawdown_trading.engine import TradingEngine, main
from drawdown_trading.errors import DataUnavailable
from drawdown_trading.models import ConsolidatedPrice, OrderSide
from drawdown_trading.trade_ledger import JsonTradeLedger
from drawdown_trading.utils import read_recent_audit_events, utc_now

QUOTES = {
    'q-sell': {'id': 'q-sell', 'state': 'COMPLETED', 'exchangeRate': '43300'},
    'q-buy': {'id': 'q-buy', 'state': 'COMPLETED', 'target': {'amount': '0.003'}},
}


def _price(price=43300.0):
    return ConsolidatedPrice(price=price, six_months_high=48000.0, six_months_low=30000.0,
                             sources_used=5, total_sources=6)


@pytest.fixture
def ledger(cfg):
    return JsonTradeLedger(cfg.trades_file)


@pytest.fixture
def aggregator():
    mock = MagicMock()
    mock.collect.return_value = _price()
    return mock


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(cfg, client, ledger, aggregator, sleeps):
    client.create_sell_quote.return_value = {'id': 'q-sell'}
    client.create_buy_quote.return_value = {'id': 'q-buy'}
    client.get_quote.side_effect = lambda quote_id: QUOTES[quote_id]
    return TradingEngine(cfg, client=client, ledger=ledger, aggregator=aggregator,
                         sleep=sleeps.append)


def _old_trade(trade_id='t1', **kwargs):
    return make_trade(trade_id, entry_time=utc_now() - timedelta(days=3), **kwargs)


def _call_names(client):
    return [name for name, _, _ in client.method_calls]


# =============================================================================
# CYCLE
# =============================================================================

def test_cycle_sells_before_buying(engine, client, ledger):
    ledger.insert_trade(_old_trade(entry_price=40000.0, take_profit_price=43200.0))

    report = engine.run_cycle()

    assert report.success is True
    assert report.action == 'BUY_EXECUTED'
    assert report.sells_executed == 1
    assert report.tier_name == LIGHT_TIER
    assert '1/1 sells executed' in report.reason

    calls = _call_names(client)
    assert calls.index('create_sell_quote') < calls.index('create_buy_quote')

    assert ledger.get_trade('t1').closed is True
    assert ledger.get_trade('t1').pnl_percent == pytest.approx(8.25)
    open_trades = ledger.query_open_buy_trades()
    assert len(open_trades) == 1
    assert open_trades[0].invested_amount == pytest.approx(130.0)
    assert read_recent_audit_events(engine.cfg.audit_log_file, 'CYCLE_COMPLETED')


def test_second_cycle_same_day_does_not_buy_again(engine, client):
    first = engine.run_cycle()
    second = engine.run_cycle()

    assert first.action == 'BUY_EXECUTED'
    assert second.success is True
    assert second.action == 'NO_ACTION'
    assert 'Already bought today' in second.reason
    assert client.create_buy_quote.call_count == 1


def test_price_failure_fails_cycle_without_orders(engine, client, aggregator, sleeps):
    aggregator.collect.side_effect = DataUnavailable('every source failed')

    report = engine.run_cycle()

    assert report.success is False
    assert report.reason.startswith('price collection failed')
    assert aggregator.collect.call_count == engine.cfg.price_retry[0]
    assert sleeps == [engine.cfg.price_retry[1]]
    client.create_buy_quote.assert_not_called()
    client.create_sell_quote.assert_not_called()


def test_cycle_is_skipped_while_lease_is_held(cfg, engine, aggregator):
    holder = CycleLease(cfg.cycle_lease_file, cfg.cycle_lease_ttl)
    assert holder.acquire()
    try:
        report = engine.run_cycle()
    finally:
        holder.release()

    assert report.success is False
    assert report.action == 'SKIPPED'
    assert report.reason == 'cycle already running'
    aggregator.collect.assert_not_called()


def test_disabled_trading_only_evaluates(cfg, client, ledger, aggregator):
    engine = TradingEngine(cfg.with_overrides(trading_enabled=False), client=client,
                           ledger=ledger, aggregator=aggregator, sleep=lambda s: None)

    report = engine.run_cycle()

    assert report.success is True
    assert report.action == 'TRADING_DISABLED'
    assert report.buy_decision['allowed'] is True
    client.create_buy_quote.assert_not_called()


def test_failed_buy_is_reported_not_raised(engine, client, ledger):
    client.get_quote.side_effect = lambda quote_id: {'id': quote_id, 'state': 'FAILED'}

    report = engine.run_cycle()

    assert report.action == 'BUY_FAILED'
    assert report.buy_result['success'] is False
    assert ledger.query_open_buy_trades() == []


def test_failed_sell_does_not_block_other_sells_or_buy(engine, client, ledger):
    ledger.insert_trade(make_trade('t1', entry_time=utc_now() - timedelta(days=4)))
    ledger.insert_trade(_old_trade('t2', quantity=0.002))
    sell_quotes = {
        'q-s1': {'id': 'q-s1', 'state': 'FAILED'},
        'q-s2': {'id': 'q-s2', 'state': 'COMPLETED', 'exchangeRate': '43300'},
    }
    client.create_sell_quote.side_effect = lambda quantity: {'id': 'q-s1' if quantity == 0.001 else 'q-s2'}
    client.get_quote.side_effect = lambda quote_id: {**QUOTES, **sell_quotes}[quote_id]

    report = engine.run_cycle()

    assert report.success is True
    assert report.sells_executed == 1
    assert '1/2 sells executed' in report.reason
    assert [r['success'] for r in report.sell_results] == [False, True]
    # the failed quote is retried once, the other trade is sold once
    assert client.create_sell_quote.call_count == 3
    assert ledger.get_trade('t1').closed is False
    assert ledger.get_trade('t2').closed is True
    assert report.action == 'BUY_EXECUTED'
    client.create_buy_quote.assert_called_once()


def test_unreadable_buy_fill_is_not_bought_twice(engine, client, ledger):
    client.get_quote.side_effect = lambda quote_id: {'id': quote_id, 'state': 'COMPLETED'}

    report = engine.run_cycle()

    assert report.action == 'BUY_FAILED'
    assert client.create_buy_quote.call_count == 1
    assert client.execute_quote.call_args_list == [call('q-buy')]
    assert ledger.query_open_buy_trades() == []
    gaps = engine.reconciler.get_unrecorded_fills()
    assert [(g['quote_id'], g['kind']) for g in gaps] == [('q-buy', 'FILL_UNREADABLE')]


def test_unreadable_sell_fill_is_not_sold_twice(engine, client, ledger):
    ledger.insert_trade(_old_trade())
    quotes = {**QUOTES, 'q-sell': {'id': 'q-sell', 'state': 'COMPLETED', 'exchangeRate': 'n/a'}}
    client.get_quote.side_effect = lambda quote_id: quotes[quote_id]

    report = engine.run_cycle()

    assert report.sells_executed == 0
    assert client.create_sell_quote.call_count == 1
    assert client.execute_quote.call_args_list == [call('q-sell'), call('q-buy')]
    assert ledger.get_trade('t1').closed is False
    gaps = engine.reconciler.get_unrecorded_fills()
    assert [(g['quote_id'], g['trade_id']) for g in gaps] == [('q-sell', 't1')]
    assert report.action == 'BUY_EXECUTED'


def test_manual_run_places_no_orders(engine, client):
    report = engine.manual_run()

    assert report.success is True
    assert report.action == 'MANUAL_EVALUATION'
    assert report.buy_decision['allowed'] is True
    client.create_buy_quote.assert_not_called()
    client.create_sell_quote.assert_not_called()


# =============================================================================
# ADMIN ACTIONS
# =============================================================================

def test_force_buy_refused_when_bought_today(engine, ledger, aggregator, client):
    ledger.insert_trade(make_trade('t1'))

    report = engine.force_buy_now()

    assert report.success is False
    assert report.action == 'FORCE_BUY_REFUSED'
    aggregator.collect.assert_not_called()
    client.create_buy_quote.assert_not_called()


def test_force_buy_small_position(engine, client, ledger, aggregator):
    client.get_balances.return_value = {'EUR': 50.0, 'BTC': 0.0}
    aggregator.collect.return_value = _price(41000.0)
    forced_quotes = {'q-buy': {'id': 'q-buy', 'state': 'COMPLETED', 'target': {'amount': '0.000125'}}}
    client.get_quote.side_effect = lambda quote_id: forced_quotes[quote_id]

    report = engine.force_buy_now()

    assert report.success is True
    assert report.action == 'FORCE_BUY'
    client.create_buy_quote.assert_called_once_with(pytest.approx(5.0))
    trade = ledger.query_open_buy_trades()[0]
    assert trade.invested_amount == pytest.approx(5.0)
    assert trade.take_profit_price == pytest.approx(41000.0 * 1.08)


def test_force_sell_all_pauses_between_sells(engine, client, ledger, sleeps):
    ledger.insert_trade(_old_trade('t1'))
    ledger.insert_trade(_old_trade('t2', entry_price=50000.0, take_profit_price=54000.0))
    client.create_sell_quote.side_effect = [{'id': 'q-s1'}, {'id': 'q-s2'}]
    client.get_quote.side_effect = lambda quote_id: {'id': quote_id, 'state': 'COMPLETED',
                                                     'exchangeRate': '43300'}

    report = engine.force_sell_all()

    assert report.success is True
    assert report.action == 'FORCE_SELL'
    assert report.sells_executed == 2
    assert sleeps == [engine.cfg.sell_pause_seconds]
    assert ledger.query_open_buy_trades() == []
    assert ledger.get_trade('t2').pnl_percent == pytest.approx(-13.4)
    client.create_buy_quote.assert_not_called()


def test_force_sell_with_nothing_open(engine, client):
    report = engine.force_sell_all()

    assert report.success is True
    assert report.reason == 'no open trades to sell'
    client.create_sell_quote.assert_not_called()


# =============================================================================
# STATUS AND REPORTS
# =============================================================================

def test_system_status(engine, client, ledger):
    ledger.insert_trade(make_trade('t1'))
    ledger.insert_trade(_old_trade('t2'))
    client.get_balances.return_value = {'EUR': 1000.0, 'BTC': 0.002}

    status = engine.system_status()

    assert status['success'] is True
    assert status['price']['price'] == 43300.0
    assert status['tier']['key'] == 'light'
    assert status['balances'] == {'EUR': 1000.0, 'BTC': 0.002}
    assert status['balance_reconciliation'] == {'synced': True, 'discrepancy': None}
    assert status['open_trades']['count'] == 2
    assert status['open_trades']['total_quantity'] == pytest.approx(0.002)
    assert status['buys_today_by_tier'] == {LIGHT_TIER: 1}
    assert status['unrecorded_fills'] == 0
    assert status['config_errors'] == []


def test_system_status_survives_price_failure(engine, aggregator):
    aggregator.collect.side_effect = DataUnavailable('down')

    status = engine.system_status()

    assert status['success'] is False
    assert status['price'] is None
    assert status['balances'] is not None


def test_system_status_reports_balance_discrepancy(engine, ledger):
    ledger.insert_trade(_old_trade('t1', quantity=0.002))

    status = engine.system_status()

    reconciliation = status['balance_reconciliation']
    assert reconciliation['synced'] is False
    assert reconciliation['discrepancy']['type'] == 'missing_at_exchange'
    assert reconciliation['discrepancy']['difference'] == pytest.approx(-0.002)


def test_resolve_unrecorded_fill(engine):
    engine.reconciler.record_unrecorded_fill({'quote_id': 'q-buy', 'side': 'BUY'}, 'disk full')
    assert engine.system_status()['unrecorded_fills'] == 1

    resolved = engine.resolve_unrecorded_fill('q-buy', 'inserted by hand')

    assert resolved == {'success': True, 'quote_id': 'q-buy', 'remaining_unrecorded_fills': 0}
    assert engine.system_status()['unrecorded_fills'] == 0
    assert engine.resolve_unrecorded_fill('q-buy')['success'] is False
    events = read_recent_audit_events(engine.cfg.audit_log_file, 'RECONCILIATION_RESOLVED')
    assert events[0]['data'] == {'quote_id': 'q-buy', 'note': 'inserted by hand'}


def test_resolve_command_requires_quote_id(monkeypatch):
    monkeypatch.setattr(sys, 'argv', ['engine', 'resolve'])

    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 2


def test_daily_report_counts_one_paris_day(engine, ledger):
    # 2026-03-10 in Paris runs from 23:00 UTC on the 9th to 23:00 UTC on the 10th
    bought = make_trade('bought', entry_time=datetime(2026, 3, 9, 23, 30, tzinfo=timezone.utc))
    sold = make_trade('sold', entry_time=datetime(2026, 3, 8, 10, 0, tzinfo=timezone.utc))
    sold.closed = True
    sold.exit_price = 43200.0
    sold.exit_amount = 43.2
    sold.exit_time = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    sold.pnl_percent = 8.0
    next_day = make_trade('next', entry_time=datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc),
                          tier_name='Correction forte ATR+RSI')
    for trade in (bought, sold, next_day):
        ledger.insert_trade(trade)

    report = engine.daily_report(date(2026, 3, 10))

    assert report['success'] is True
    assert report['buys'] == 1
    assert report['sells'] == 1
    assert report['invested_amount'] == 40.0
    assert report['sold_amount'] == 43.2
    assert report['buys_by_tier'] == {LIGHT_TIER: 1}
    assert report['average_pnl_percent'] == 8.0
    assert {t['id'] for t in report['trades']} == {'bought', 'sold'}
    assert all(t['side'] == OrderSide.BUY.value for t in report['trades'])
