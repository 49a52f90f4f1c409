# conftest.py
"""Shared fixtures for the drawdown trading tests. No network access."""

from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import MagicMock

import pytest

from drawdown_trading.config import TradingConfig
from drawdown_trading.models import Trade
from drawdown_trading.utils import utc_now

LIGHT_TIER = 'Correction légère ATR+RSI'
MODERATE_TIER = 'Correction modérée ATR+RSI'


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def cfg(tmp_path):
    return TradingConfig(
        trading_enabled=True,
        strike_api_key='test-key',
        strike_base_url='https://api.example.test/v1',
        duplicate_guard_fail_open=True,
        timezone='Europe/Paris',
        data_dir=str(tmp_path)
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def client():
    """Exchange client double with a funded account."""
    mock = MagicMock()
    mock.get_balances.return_value = {'EUR': 1000.0, 'BTC': 0.0}
    mock.create_invoice.return_value = {'invoiceId': 'inv-1'}
    return mock


def make_trade(
    trade_id: str = 'BUY_q0',
    tier_name: str = LIGHT_TIER,
    entry_time: Optional[datetime] = None,
    entry_price: float = 40000.0,
    quantity: float = 0.001,
    take_profit_price: float = 43200.0,
    closed: bool = False
) -> Trade:
    invested = entry_price * quantity
    trade = Trade(
        id=trade_id,
        quantity=quantity,
        entry_price=entry_price,
        invested_amount=invested,
        take_profit_price=take_profit_price,
        take_profit_percent=(take_profit_price / entry_price - 1) * 100,
        tier={'name': tier_name},
        quote_id=f"quote-{trade_id}",
        entry_time=entry_time or utc_now()
    )
    if closed:
        trade.closed = True
        trade.exit_price = take_profit_price
        trade.exit_amount = take_profit_price * quantity
        trade.exit_time = trade.entry_time + timedelta(hours=1)
    return trade
