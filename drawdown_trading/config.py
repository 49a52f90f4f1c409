# drawdown_trading/config.py
"""
Configuration for the Drawdown Trading Engine

This module contains all configuration parameters for the live trading system.
Defaults are read from the environment (and a local .env file), then frozen into
a TradingConfig value that is passed explicitly into every component.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / '.env')


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == 'true'


# =============================================================================
# TRADING MODE
# =============================================================================
# Manual kill switch - set to 'false' to halt all order execution
TRADING_ENABLED = _env_bool('TRADING_ENABLED', 'true')

# =============================================================================
# EXCHANGE (STRIKE) API
# =============================================================================
STRIKE_API_KEY = os.getenv('STRIKE_API_KEY')
STRIKE_BASE_URL = os.getenv('STRIKE_BASE_URL', 'https://api.strike.me/v1')
STRIKE_TIMEOUT_SECONDS = 30.0

BASE_CURRENCY = 'BTC'
QUOTE_CURRENCY = 'EUR'

# =============================================================================
# PRICE SOURCES
# =============================================================================
SOURCE_TIMEOUT_SECONDS = 10.0
FALLBACK_SOURCE = 'coinbase'
MIN_SUCCESSFUL_SOURCES = 2

# Sanity range for the consolidated price (EUR)
MIN_SANE_PRICE = 10_000.0
MAX_SANE_PRICE = 100_000.0

# =============================================================================
# STRATEGY PARAMETERS
# =============================================================================
MIN_CAPITAL_PCT = 5.0
MAX_CAPITAL_PCT = 70.0
MIN_TAKE_PROFIT_PCT = 5.0
MAX_TAKE_PROFIT_PCT = 200.0
MAX_RSI_THRESHOLD = 80.0

MIN_BUY_AMOUNT = 0.01            # EUR
MAX_BUY_AMOUNT = 5000.0          # EUR
ENTRY_PRICE_DISCOUNT = 0.995     # informational target entry price

# Forced buy (admin) sizing
FORCED_BUY_MAX_AMOUNT = 10.0     # EUR
FORCED_BUY_BALANCE_PCT = 0.10
FORCED_BUY_DRAWDOWN_PCT = -10.0
FORCED_BUY_TAKE_PROFIT_PCT = 8.0

# =============================================================================
# DUPLICATE GUARD
# =============================================================================
COOLDOWN_HOURS = 24
FALLBACK_WINDOW_HOURS = 12
CHECK_SAME_DAY_BUY = True
# Availability over strict duplicate prevention when the ledger cannot be queried
DUPLICATE_GUARD_FAIL_OPEN = _env_bool('DUPLICATE_GUARD_FAIL_OPEN', 'true')
LEDGER_QUERY_LIMIT = 100

# Calendar-day boundary used by the duplicate guard and reports
TIMEZONE = os.getenv('TRADING_TIMEZONE', 'Europe/Paris')

# =============================================================================
# ORDER EXECUTION
# =============================================================================
QUOTE_POLL_INTERVAL_SECONDS = 2.0
QUOTE_POLL_TIMEOUT_SECONDS = 30.0
SELL_PAUSE_SECONDS = 3.0         # pause between sells (exchange rate limits)
RECEIPT_DESCRIPTION_MAX_CHARS = 200

# Whole-operation retry (attempts, delay seconds)
PRICE_RETRY = (2, 3.0)
STRATEGY_RETRY = (2, 2.0)
ORDER_RETRY = (2, 3.0)

# =============================================================================
# CYCLE LEASE
# =============================================================================
CYCLE_LEASE_TTL_SECONDS = 540

# =============================================================================
# DATA FILES
# =============================================================================
DATA_DIR = os.getenv('TRADING_DATA_DIR', os.path.join(os.path.dirname(__file__), 'data'))

# =============================================================================
# LOGGING
# =============================================================================
LOG_LEVEL = os.getenv('TRADING_LOG_LEVEL', 'INFO')


@dataclass(frozen=True)
class TradingConfig:
    """Immutable configuration value handed to every component."""

    trading_enabled: bool = TRADING_ENABLED

    strike_api_key: Optional[str] = STRIKE_API_KEY
    strike_base_url: str = STRIKE_BASE_URL
    strike_timeout: float = STRIKE_TIMEOUT_SECONDS
    base_currency: str = BASE_CURRENCY
    quote_currency: str = QUOTE_CURRENCY

    source_timeout: float = SOURCE_TIMEOUT_SECONDS
    fallback_source: str = FALLBACK_SOURCE
    min_successful_sources: int = MIN_SUCCESSFUL_SOURCES
    min_sane_price: float = MIN_SANE_PRICE
    max_sane_price: float = MAX_SANE_PRICE

    min_capital_pct: float = MIN_CAPITAL_PCT
    max_capital_pct: float = MAX_CAPITAL_PCT
    min_take_profit_pct: float = MIN_TAKE_PROFIT_PCT
    max_take_profit_pct: float = MAX_TAKE_PROFIT_PCT
    max_rsi_threshold: float = MAX_RSI_THRESHOLD
    min_buy_amount: float = MIN_BUY_AMOUNT
    max_buy_amount: float = MAX_BUY_AMOUNT
    entry_price_discount: float = ENTRY_PRICE_DISCOUNT

    forced_buy_max_amount: float = FORCED_BUY_MAX_AMOUNT
    forced_buy_balance_pct: float = FORCED_BUY_BALANCE_PCT
    forced_buy_drawdown_pct: float = FORCED_BUY_DRAWDOWN_PCT
    forced_buy_take_profit_pct: float = FORCED_BUY_TAKE_PROFIT_PCT

    cooldown_hours: float = COOLDOWN_HOURS
    fallback_window_hours: float = FALLBACK_WINDOW_HOURS
    check_same_day_buy: bool = CHECK_SAME_DAY_BUY
    duplicate_guard_fail_open: bool = DUPLICATE_GUARD_FAIL_OPEN
    ledger_query_limit: int = LEDGER_QUERY_LIMIT
    timezone: str = TIMEZONE

    quote_poll_interval: float = QUOTE_POLL_INTERVAL_SECONDS
    quote_poll_timeout: float = QUOTE_POLL_TIMEOUT_SECONDS
    sell_pause_seconds: float = SELL_PAUSE_SECONDS
    receipt_description_max_chars: int = RECEIPT_DESCRIPTION_MAX_CHARS

    price_retry: Tuple[int, float] = PRICE_RETRY
    strategy_retry: Tuple[int, float] = STRATEGY_RETRY
    order_retry: Tuple[int, float] = ORDER_RETRY

    cycle_lease_ttl: float = CYCLE_LEASE_TTL_SECONDS

    data_dir: str = DATA_DIR
    log_level: str = LOG_LEVEL

    # File locations derived from data_dir
    @property
    def trades_file(self) -> str:
        return os.path.join(self.data_dir, 'trades.json')

    @property
    def source_stats_file(self) -> str:
        return os.path.join(self.data_dir, 'source_statistics.json')

    @property
    def audit_log_file(self) -> str:
        return os.path.join(self.data_dir, 'audit_log.jsonl')

    @property
    def unrecorded_fills_file(self) -> str:
        return os.path.join(self.data_dir, 'unrecorded_fills.json')

    @property
    def cycle_lease_file(self) -> str:
        return os.path.join(self.data_dir, 'cycle.lease')

    @property
    def log_file(self) -> str:
        return os.path.join(self.data_dir, 'drawdown_trading.log')

    @classmethod
    def from_env(cls) -> 'TradingConfig':
        """Build a config from the current environment."""
        return cls(
            trading_enabled=_env_bool('TRADING_ENABLED', 'true'),
            strike_api_key=os.getenv('STRIKE_API_KEY'),
            strike_base_url=os.getenv('STRIKE_BASE_URL', 'https://api.strike.me/v1'),
            duplicate_guard_fail_open=_env_bool('DUPLICATE_GUARD_FAIL_OPEN', 'true'),
            timezone=os.getenv('TRADING_TIMEZONE', 'Europe/Paris'),
            data_dir=os.getenv('TRADING_DATA_DIR', DATA_DIR),
            log_level=os.getenv('TRADING_LOG_LEVEL', 'INFO'),
        )

    def with_overrides(self, **changes) -> 'TradingConfig':
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    def validate(self) -> List[str]:
        """Validate critical configuration settings."""
        errors = []

        if not self.strike_api_key:
            errors.append("Missing STRIKE_API_KEY")

        if self.min_successful_sources < 2:
            errors.append(
                f"min_successful_sources ({self.min_successful_sources}) must be at least 2"
            )

        if self.min_sane_price >= self.max_sane_price:
            errors.append(
                f"Invalid sanity range: {self.min_sane_price} >= {self.max_sane_price}"
            )

        if not 0 < self.min_capital_pct <= self.max_capital_pct <= 100:
            errors.append(
                f"Invalid capital range: {self.min_capital_pct}% - {self.max_capital_pct}%"
            )

        if not 0 < self.min_take_profit_pct <= self.max_take_profit_pct:
            errors.append(
                f"Invalid take-profit range: {self.min_take_profit_pct}% - {self.max_take_profit_pct}%"
            )

        if self.min_buy_amount > self.max_buy_amount:
            errors.append(
                f"MIN_BUY_AMOUNT ({self.min_buy_amount}) > MAX_BUY_AMOUNT ({self.max_buy_amount})"
            )

        if self.quote_poll_interval <= 0 or self.quote_poll_timeout <= 0:
            errors.append("Quote polling interval and timeout must be positive")

        for name, (attempts, delay) in (
            ('price_retry', self.price_retry),
            ('strategy_retry', self.strategy_retry),
            ('order_retry', self.order_retry),
        ):
            if attempts < 1 or delay < 0:
                errors.append(f"Invalid {name}: {attempts} attempts, {delay}s delay")

        return errors


def print_config_summary(cfg: TradingConfig) -> None:
    """Print a summary of current configuration."""
    enabled_status = "✅ ENABLED" if cfg.trading_enabled else "🛑 DISABLED"
    guard_mode = "fail-open" if cfg.duplicate_guard_fail_open else "fail-closed"

    print(f"""
{'='*60}
DRAWDOWN TRADING CONFIGURATION
{'='*60}

Status:         {enabled_status}
Exchange:       {cfg.strike_base_url}
Pair:           {cfg.base_currency}/{cfg.quote_currency}

Capital Allocation:
  Range:        {cfg.min_capital_pct:.1f}% - {cfg.max_capital_pct:.1f}%
  Buy Amount:   {cfg.min_buy_amount:.2f} - {cfg.max_buy_amount:.2f} {cfg.quote_currency}

Take Profit:
  Range:        {cfg.min_take_profit_pct:.1f}% - {cfg.max_take_profit_pct:.1f}%

Duplicate Guard:
  Cooldown:     {cfg.cooldown_hours}h
  Timezone:     {cfg.timezone}
  On Error:     {guard_mode}

Data Dir:       {cfg.data_dir}

{'='*60}
""")


if __name__ == '__main__':
    # Run validation when module is executed directly
    cfg = TradingConfig.from_env()
    print_config_summary(cfg)

    errors = cfg.validate()
    if errors:
        print("⚠️  Configuration Errors:")
        for err in errors:
            print(f"  - {err}")
    else:
        print("✅ Configuration validated successfully")
