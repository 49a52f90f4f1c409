# drawdown_trading/trade_ledger.py
"""
Trade Ledger

Durable store of Trade records. The engine only talks to the narrow TradeLedger
interface; JsonTradeLedger keeps the records in one JSON document with atomic
writes and file locking.

Storage format:
    {
        "trades": {"<trade id>": {...Trade.to_dict()...}, ...},
        "last_updated": "<iso timestamp>"
    }
"""

import os
import json
import fcntl
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import LedgerQueryError, LedgerWriteError
from .models import OrderSide, Trade
from .utils import ensure_utc, read_json_file, save_json_file, utc_now

logger = logging.getLogger(__name__)


class TradeLedger:
    """Read/write surface consumed by the duplicate guard and the order executor."""

    def insert_trade(self, trade: Trade) -> None:
        raise NotImplementedError

    def update_trade(self, trade_id: str, fields: Dict[str, Any]) -> Trade:
        raise NotImplementedError

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        raise NotImplementedError

    def query_open_buy_trades(self, limit: int = 100) -> List[Trade]:
        raise NotImplementedError

    def query_trades_by_tier_since(self, tier_name: str, since: datetime,
                                   limit: int = 100) -> List[Trade]:
        raise NotImplementedError

    def query_trades_since(self, since: datetime, limit: int = 1000) -> List[Trade]:
        raise NotImplementedError


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, OrderSide):
        return value.value
    return value


class JsonTradeLedger(TradeLedger):
    """TradeLedger backed by a single JSON file."""

    def __init__(self, trades_file: str):
        self.trades_file = trades_file

    @contextmanager
    def _mutation_lock(self):
        """Serialize read-modify-write sequences across processes."""
        mutex_path = f"{self.trades_file}.mutex"
        os.makedirs(os.path.dirname(mutex_path) or '.', exist_ok=True)
        with open(mutex_path, 'w') as mf:
            fcntl.flock(mf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(mf.fileno(), fcntl.LOCK_UN)

    def _load(self) -> Dict[str, Any]:
        try:
            data = read_json_file(self.trades_file, default=None)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerQueryError(f"Cannot read trades from {self.trades_file}: {e}")

        if data is None:
            return {'trades': {}, 'last_updated': None}
        if not isinstance(data, dict) or not isinstance(data.get('trades'), dict):
            raise LedgerQueryError(f"Unexpected ledger format in {self.trades_file}")
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        data['last_updated'] = utc_now().isoformat()
        if not save_json_file(self.trades_file, data):
            raise LedgerWriteError(f"Failed to write {self.trades_file}")

    def _all_trades(self) -> List[Trade]:
        data = self._load()
        trades = []
        for trade_id, record in data['trades'].items():
            try:
                trades.append(Trade.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping malformed trade record {trade_id}: {e}")
        return trades

    # =========================================================================
    # WRITES
    # =========================================================================

    def insert_trade(self, trade: Trade) -> None:
        """
        Persist a new trade.

        Raises:
            LedgerWriteError: duplicate id or failed write
        """
        with self._mutation_lock():
            try:
                data = self._load()
            except LedgerQueryError as e:
                raise LedgerWriteError(str(e))

            if trade.id in data['trades']:
                raise LedgerWriteError(f"Trade {trade.id} already exists")

            now = utc_now()
            trade.created_at = now
            trade.updated_at = now
            data['trades'][trade.id] = trade.to_dict()
            self._save(data)

        logger.info(f"✅ Trade saved: {trade.id}")

    def update_trade(self, trade_id: str, fields: Dict[str, Any]) -> Trade:
        """
        Apply a partial update to an existing trade.

        The merged record is validated before it is written.

        Raises:
            LedgerWriteError: unknown id, invalid result or failed write
        """
        with self._mutation_lock():
            try:
                data = self._load()
            except LedgerQueryError as e:
                raise LedgerWriteError(str(e))

            record = data['trades'].get(trade_id)
            if record is None:
                raise LedgerWriteError(f"Trade {trade_id} not found")

            merged = dict(record)
            merged.update({key: _serialize(value) for key, value in fields.items()})
            merged['updated_at'] = utc_now().isoformat()

            try:
                updated = Trade.from_dict(merged)
            except (KeyError, TypeError, ValueError) as e:
                raise LedgerWriteError(f"Update would corrupt trade {trade_id}: {e}")

            data['trades'][trade_id] = updated.to_dict()
            self._save(data)

        logger.info(f"✅ Trade updated: {trade_id}")
        return updated

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        record = self._load()['trades'].get(trade_id)
        return Trade.from_dict(record) if record else None

    def query_open_buy_trades(self, limit: int = 100) -> List[Trade]:
        """Open BUY trades, oldest first."""
        trades = [t for t in self._all_trades() if t.is_open_buy]
        trades.sort(key=lambda t: t.entry_time)
        return trades[:limit]

    def query_trades_by_tier_since(self, tier_name: str, since: datetime,
                                   limit: int = 100) -> List[Trade]:
        """BUY trades of one tier entered at or after `since`, newest first."""
        since = ensure_utc(since)
        trades = [
            t for t in self._all_trades()
            if t.side == OrderSide.BUY and t.tier_name == tier_name and t.entry_time >= since
        ]
        trades.sort(key=lambda t: t.entry_time, reverse=True)
        return trades[:limit]

    def query_trades_since(self, since: datetime, limit: int = 1000) -> List[Trade]:
        """Every trade entered or exited at or after `since`, newest entry first."""
        since = ensure_utc(since)
        trades = [
            t for t in self._all_trades()
            if t.entry_time >= since or (t.exit_time is not None and t.exit_time >= since)
        ]
        trades.sort(key=lambda t: t.entry_time, reverse=True)
        return trades[:limit]
