# drawdown_trading/__init__.py
"""
BTC/EUR Drawdown Trading Engine

Buys bitcoin in tiers as the price falls below its reference high and sells
each position at its take-profit target, against a custodial exchange account
(Strike API). Every fill is persisted as an auditable Trade record.

Directory Structure:
    drawdown_trading/
    ├── __init__.py           # This file
    ├── config.py             # Immutable TradingConfig built from the environment
    ├── errors.py             # Exception taxonomy
    ├── models.py             # Record types (prices, tiers, decisions, trades)
    ├── price_sources.py      # Public ticker endpoints and parsers
    ├── price_aggregator.py   # Median consensus with single-source fallback
    ├── source_stats.py       # Per-source reliability counters
    ├── tier_engine.py        # Drawdown tiers with ATR/RSI adjustments
    ├── confidence.py         # Diagnostic confidence score
    ├── duplicate_guard.py    # One buy per tier per day + cooldown
    ├── strategy.py           # Buy and sell decisions
    ├── strike_client.py      # Exchange API wrapper
    ├── order_executor.py     # Quote state machine
    ├── trade_ledger.py       # Trade store (JSON file)
    ├── reconciliation.py     # Unrecorded fills and balance checks
    ├── cycle_lease.py        # At-most-one concurrent cycle
    ├── engine.py             # Cycle, admin actions, CLI
    ├── init_data_dir.py      # First-run data directory setup
    ├── utils.py              # Retry, audit log, locked JSON IO, time helpers
    └── data/
        ├── trades.json             # Trade ledger
        ├── source_statistics.json  # Price source health
        ├── unrecorded_fills.json   # Reconciliation gaps
        └── audit_log.jsonl         # Append-only audit trail

Safety Features:
    - Median of at least two independent price sources, sanity-bounded
    - One buy per tier per calendar day, plus a rolling cooldown
    - Duplicate re-check between quote creation and execution
    - Cycle lease against overlapping runs
    - Unrecorded fills surfaced loudly for reconciliation
    - Manual kill switch (TRADING_ENABLED)
"""

__version__ = "1.0.0"
__author__ = "Drawdown Trading"
