#!/usr/bin/env python3
"""
Tests for the trade ledger and the duplicate guard built on it.
"""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import LIGHT_TIER, MODERATE_TIER, make_trade
from drawdown_trading.duplicate_guard import DuplicateGuard
from drawdown_trading.errors import DuplicateGuardTripped, LedgerQueryError, LedgerWriteError
from drawdown_trading.trade_ledger import JsonTradeLedger
from drawdown_trading.utils import read_recent_audit_events, utc_now

# 00:30 in Paris (CET, UTC+1) on 2026-03-11
PARIS_JUST_AFTER_MIDNIGHT = datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc)


@pytest.fixture
def ledger(cfg):
    return JsonTradeLedger(cfg.trades_file)


# =============================================================================
# LEDGER
# =============================================================================

def test_insert_and_query_open_buys(ledger):
    ledger.insert_trade(make_trade('t1'))
    ledger.insert_trade(make_trade('t2', closed=True))

    open_trades = ledger.query_open_buy_trades()

    assert [t.id for t in open_trades] == ['t1']
    assert ledger.get_trade('t2').closed is True


def test_insert_rejects_duplicate_id(ledger):
    ledger.insert_trade(make_trade('t1'))
    with pytest.raises(LedgerWriteError):
        ledger.insert_trade(make_trade('t1'))


def test_update_closes_trade(ledger):
    ledger.insert_trade(make_trade('t1'))

    updated = ledger.update_trade('t1', {
        'closed': True,
        'exit_price': 43300.0,
        'exit_amount': 43.3,
        'exit_time': utc_now(),
        'exit_kind': 'TAKE_PROFIT',
        'pnl_percent': 8.25
    })

    assert updated.closed is True
    assert ledger.query_open_buy_trades() == []
    assert ledger.get_trade('t1').exit_price == 43300.0


def test_update_unknown_or_invalid_trade_fails(ledger):
    with pytest.raises(LedgerWriteError):
        ledger.update_trade('missing', {'closed': True, 'exit_price': 1.0})

    ledger.insert_trade(make_trade('t1'))
    with pytest.raises(LedgerWriteError):
        ledger.update_trade('t1', {'closed': True})  # closed without exit price
    assert ledger.get_trade('t1').closed is False


def test_query_by_tier_since_filters_tier_and_time(ledger):
    now = utc_now()
    ledger.insert_trade(make_trade('old', entry_time=now - timedelta(hours=30)))
    ledger.insert_trade(make_trade('recent', entry_time=now - timedelta(hours=2)))
    ledger.insert_trade(make_trade('other', tier_name=MODERATE_TIER, entry_time=now))

    trades = ledger.query_trades_by_tier_since(LIGHT_TIER, now - timedelta(hours=24))

    assert [t.id for t in trades] == ['recent']


def test_corrupted_ledger_raises_query_error(cfg, ledger):
    with open(cfg.trades_file, 'w') as f:
        f.write('{not json')

    with pytest.raises(LedgerQueryError):
        ledger.query_open_buy_trades()


# =============================================================================
# GUARD
# =============================================================================

def test_second_buy_same_tier_same_day_is_rejected(cfg, ledger):
    ledger.insert_trade(make_trade('t1', tier_name=LIGHT_TIER))
    guard = DuplicateGuard(cfg, ledger)

    assert guard.already_bought_today(LIGHT_TIER) is True
    with pytest.raises(DuplicateGuardTripped) as exc:
        guard.check(LIGHT_TIER)
    assert exc.value.tier_name == LIGHT_TIER


def test_other_tier_is_not_a_duplicate(cfg, ledger):
    ledger.insert_trade(make_trade('t1', tier_name=LIGHT_TIER))
    guard = DuplicateGuard(cfg, ledger)

    assert guard.already_bought_today(MODERATE_TIER) is False
    guard.check(MODERATE_TIER)


def test_closed_trade_today_still_counts_for_cooldown(cfg, ledger):
    ledger.insert_trade(make_trade('t1', closed=True))
    guard = DuplicateGuard(cfg, ledger)

    assert guard.already_bought_today(LIGHT_TIER) is False
    assert guard.recently_bought(LIGHT_TIER, 24) is True
    with pytest.raises(DuplicateGuardTripped):
        guard.check(LIGHT_TIER)


def test_today_starts_at_midnight_in_paris(cfg, ledger):
    # 23:50 Paris on the 10th: yesterday, but inside the 24h cooldown
    ledger.insert_trade(make_trade('t1', entry_time=PARIS_JUST_AFTER_MIDNIGHT - timedelta(minutes=40)))
    guard = DuplicateGuard(cfg, ledger, clock=lambda: PARIS_JUST_AFTER_MIDNIGHT)

    assert guard.already_bought_today(LIGHT_TIER) is False
    assert guard.recently_bought(LIGHT_TIER) is True

    # 00:10 Paris on the 11th: today
    ledger.insert_trade(make_trade('t2', entry_time=PARIS_JUST_AFTER_MIDNIGHT - timedelta(minutes=20)))
    assert guard.already_bought_today(LIGHT_TIER) is True


def test_cooldown_expires_after_window(cfg, ledger):
    ledger.insert_trade(make_trade('t1', closed=True, entry_time=utc_now() - timedelta(hours=25)))
    guard = DuplicateGuard(cfg, ledger)

    assert guard.recently_bought(LIGHT_TIER, 24) is False


def test_query_error_falls_back_to_shorter_window(cfg):
    ledger = MagicMock()
    ledger.query_trades_by_tier_since.side_effect = [
        LedgerQueryError('index missing'),
        [make_trade('t1')],
    ]
    now = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
    guard = DuplicateGuard(cfg, ledger, clock=lambda: now)

    assert guard.already_bought_today(LIGHT_TIER) is True

    fallback_args = ledger.query_trades_by_tier_since.call_args_list[1]
    assert fallback_args[0][1] == now - timedelta(hours=cfg.fallback_window_hours)


def test_fallback_keeps_the_open_buy_rule(cfg):
    ledger = MagicMock()
    ledger.query_trades_by_tier_since.side_effect = [
        LedgerQueryError('index missing'),
        [make_trade('t1', closed=True)],
        LedgerQueryError('index missing'),
        [make_trade('t1', closed=True)],
    ]
    guard = DuplicateGuard(cfg, ledger)

    # a buy that was already sold does not block today's buy, but still counts for the cooldown
    assert guard.already_bought_today(LIGHT_TIER) is False
    assert guard.recently_bought(LIGHT_TIER) is True


def test_degraded_guard_fails_open_loudly(cfg, caplog):
    ledger = MagicMock()
    ledger.query_trades_by_tier_since.side_effect = LedgerQueryError('ledger down')
    guard = DuplicateGuard(cfg, ledger)

    with caplog.at_level(logging.WARNING):
        assert guard.already_bought_today(LIGHT_TIER) is False

    assert 'DEGRADED' in caplog.text
    events = read_recent_audit_events(cfg.audit_log_file, 'DUPLICATE_GUARD_DEGRADED')
    assert len(events) == 1
    assert events[0]['data']['decision'] == 'ALLOW'
    assert events[0]['outcome'] == 'WARNING'


def test_degraded_guard_can_fail_closed(cfg):
    strict = cfg.with_overrides(duplicate_guard_fail_open=False)
    ledger = MagicMock()
    ledger.query_trades_by_tier_since.side_effect = LedgerQueryError('ledger down')
    guard = DuplicateGuard(strict, ledger)

    assert guard.already_bought_today(LIGHT_TIER) is True
    with pytest.raises(DuplicateGuardTripped):
        guard.check(LIGHT_TIER)
