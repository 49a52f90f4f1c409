# drawdown_trading/reconciliation.py
"""
Exchange State Reconciliation

Surfaces gaps between the local ledger and the exchange:
- Fills that happened at the exchange but could not be recorded locally
- Quotes whose outcome is unknown (polling timed out after execution)
- BTC balance that does not match the open trades
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import TradingConfig
from .trade_ledger import TradeLedger
from .utils import load_json_file, log_audit_event, save_json_file, utc_now

logger = logging.getLogger(__name__)

# Differences below this are treated as rounding (BTC)
BALANCE_TOLERANCE_BTC = 0.000001


class BalanceDiscrepancy:
    """Represents a difference between ledger holdings and the exchange balance."""

    MISSING_AT_EXCHANGE = 'missing_at_exchange'   # Ledger holds more BTC than the exchange
    UNTRACKED_BALANCE = 'untracked_balance'       # Exchange holds BTC no open trade accounts for

    def __init__(self, discrepancy_type: str, ledger_qty: float, exchange_qty: float):
        self.type = discrepancy_type
        self.ledger_qty = ledger_qty
        self.exchange_qty = exchange_qty
        self.detected_at = utc_now()

    @property
    def difference(self) -> float:
        return self.exchange_qty - self.ledger_qty

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'ledger_qty': self.ledger_qty,
            'exchange_qty': self.exchange_qty,
            'difference': self.difference,
            'detected_at': self.detected_at.isoformat()
        }

    def __str__(self) -> str:
        if self.type == self.MISSING_AT_EXCHANGE:
            return (f"Ledger holds {self.ledger_qty:.8f} BTC but exchange only "
                    f"{self.exchange_qty:.8f} BTC")
        return (f"Exchange holds {self.exchange_qty:.8f} BTC, open trades account for "
                f"{self.ledger_qty:.8f} BTC")


class Reconciler:
    """Records reconciliation gaps and compares ledger vs exchange holdings."""

    def __init__(self, cfg: TradingConfig):
        self.cfg = cfg
        self.fills_file = cfg.unrecorded_fills_file

    def _load(self) -> List[Dict[str, Any]]:
        return load_json_file(self.fills_file, default=[]) or []

    def record_unrecorded_fill(self, fill: Dict[str, Any], error: str,
                               kind: str = 'LEDGER_WRITE_FAILED') -> Dict[str, Any]:
        """
        Persist a fill that has no (or an unconfirmed) local record.

        Args:
            fill: quote_id, side, quantity, amount, price, trade_id, ...
            error: What went wrong
            kind: LEDGER_WRITE_FAILED, FILL_UNREADABLE or OUTCOME_UNKNOWN

        Returns:
            The stored entry
        """
        entry = dict(fill)
        entry.update({
            'kind': kind,
            'error': error,
            'recorded_at': utc_now().isoformat(),
            'resolved': False
        })

        fills = self._load()
        fills.append(entry)
        if not save_json_file(self.fills_file, fills):
            logger.critical(f"🚨 Could not persist reconciliation entry: {entry}")

        logger.critical(
            f"🚨 RECONCILIATION GAP ({kind}): {fill.get('side')} quote {fill.get('quote_id')} "
            f"has no confirmed local record: {error}"
        )
        log_audit_event(self.cfg.audit_log_file, 'RECONCILIATION_GAP', entry, outcome='CRITICAL')
        return entry

    def get_unrecorded_fills(self, include_resolved: bool = False) -> List[Dict[str, Any]]:
        fills = self._load()
        if include_resolved:
            return fills
        return [f for f in fills if not f.get('resolved')]

    def mark_resolved(self, quote_id: str, note: str = '') -> bool:
        """Mark every entry for a quote as handled. Returns True if any matched."""
        fills = self._load()
        matched = False
        for entry in fills:
            if entry.get('quote_id') == quote_id and not entry.get('resolved'):
                entry['resolved'] = True
                entry['resolved_at'] = utc_now().isoformat()
                entry['resolution_note'] = note
                matched = True

        if matched:
            save_json_file(self.fills_file, fills)
            log_audit_event(self.cfg.audit_log_file, 'RECONCILIATION_RESOLVED', {
                'quote_id': quote_id,
                'note': note
            })
        return matched

    def reconcile_balance(
        self,
        ledger: TradeLedger,
        client
    ) -> Tuple[bool, Optional[BalanceDiscrepancy]]:
        """
        Compare the exchange BTC balance with the open trades.

        Returns:
            (is_synced, discrepancy or None)
        """
        open_trades = ledger.query_open_buy_trades(limit=self.cfg.ledger_query_limit)
        ledger_qty = sum(t.quantity for t in open_trades)
        exchange_qty = client.get_balances().get(self.cfg.base_currency, 0.0)

        difference = exchange_qty - ledger_qty
        if abs(difference) <= BALANCE_TOLERANCE_BTC:
            logger.info(f"✅ Ledger in sync with exchange: {ledger_qty:.8f} BTC")
            return True, None

        if difference < 0:
            discrepancy = BalanceDiscrepancy(
                BalanceDiscrepancy.MISSING_AT_EXCHANGE, ledger_qty, exchange_qty
            )
            logger.error(f"❌ {discrepancy}")
        else:
            discrepancy = BalanceDiscrepancy(
                BalanceDiscrepancy.UNTRACKED_BALANCE, ledger_qty, exchange_qty
            )
            logger.warning(f"⚠️ {discrepancy}")

        log_audit_event(self.cfg.audit_log_file, 'BALANCE_DISCREPANCY',
                        discrepancy.to_dict(), outcome='WARNING')
        return False, discrepancy
