# drawdown_trading/duplicate_guard.py
"""
Duplicate Guard

At most one buy per tier per calendar day, and no repeat buy of a tier within
the cooldown window.

"Today" starts at midnight in the configured reference timezone
(Europe/Paris by default).

When the ledger query fails, a narrower fallback query (shorter lookback) is
tried. If that fails too the guard is degraded: with fail_open it answers
"not a duplicate" and says so loudly (WARNING log + DUPLICATE_GUARD_DEGRADED
audit event); with fail_open disabled it blocks the buy.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .config import TradingConfig
from .errors import DuplicateGuardTripped
from .models import OrderSide, Trade
from .trade_ledger import TradeLedger
from .utils import hours_ago, log_audit_event, start_of_day, utc_now

logger = logging.getLogger(__name__)

FALLBACK_QUERY_LIMIT = 50


class DuplicateGuard:
    """Read-only checks against the TradeLedger before any buy."""

    def __init__(
        self,
        cfg: TradingConfig,
        ledger: TradeLedger,
        clock: Callable[[], datetime] = utc_now
    ):
        self.cfg = cfg
        self.ledger = ledger
        self.clock = clock

    def already_bought_today(self, tier_name: str) -> bool:
        """True if an open buy of this tier was entered today."""
        now = self.clock()
        since = start_of_day(self.cfg.timezone, now)

        try:
            trades = self.ledger.query_trades_by_tier_since(
                tier_name, since, limit=self.cfg.ledger_query_limit
            )
        except Exception as e:
            logger.error(f"Same-day buy check failed for '{tier_name}': {e}")
            return self._fallback_check(tier_name, 'already_bought_today', e,
                                        matches=lambda t: t.is_open_buy)

        duplicate = any(t.is_open_buy for t in trades)
        if duplicate:
            logger.info(f"🛑 Buy already made today for tier: {tier_name}")
        return duplicate

    def recently_bought(self, tier_name: str, window_hours: Optional[float] = None) -> bool:
        """True if any buy of this tier happened within the last window_hours."""
        if window_hours is None:
            window_hours = self.cfg.cooldown_hours
        since = hours_ago(window_hours, self.clock())

        try:
            trades = self.ledger.query_trades_by_tier_since(
                tier_name, since, limit=self.cfg.ledger_query_limit
            )
        except Exception as e:
            logger.error(f"Cooldown check failed for '{tier_name}': {e}")
            return self._fallback_check(tier_name, 'recently_bought', e,
                                        matches=lambda t: t.side == OrderSide.BUY)

        recent = _buys(trades)
        if recent:
            logger.info(
                f"⏳ Cooldown active for tier {tier_name}: "
                f"{len(recent)} buy(s) in the last {window_hours}h"
            )
        return bool(recent)

    def check(self, tier_name: str) -> None:
        """
        Raises:
            DuplicateGuardTripped: same-day buy or cooldown active for this tier
        """
        if self.cfg.check_same_day_buy and self.already_bought_today(tier_name):
            raise DuplicateGuardTripped(tier_name, 'already bought today')
        if self.recently_bought(tier_name):
            raise DuplicateGuardTripped(
                tier_name, f"bought within the last {self.cfg.cooldown_hours}h"
            )

    def _fallback_check(self, tier_name: str, check_name: str, cause: Exception,
                        matches: Callable[[Trade], bool]) -> bool:
        since = hours_ago(self.cfg.fallback_window_hours, self.clock())

        try:
            trades = self.ledger.query_trades_by_tier_since(
                tier_name, since, limit=FALLBACK_QUERY_LIMIT
            )
        except Exception as fallback_error:
            return self._degraded(tier_name, check_name, cause, fallback_error)

        logger.info(
            f"🔄 Fallback duplicate check ({self.cfg.fallback_window_hours}h) "
            f"for '{tier_name}' succeeded"
        )
        return any(matches(t) for t in trades)

    def _degraded(self, tier_name: str, check_name: str,
                  cause: Exception, fallback_error: Exception) -> bool:
        blocked = not self.cfg.duplicate_guard_fail_open
        decision = 'BLOCK' if blocked else 'ALLOW'

        logger.warning(
            f"⚠️ Duplicate guard DEGRADED for '{tier_name}' ({check_name}): "
            f"ledger unavailable ({cause}; fallback: {fallback_error}). Decision: {decision}"
        )
        log_audit_event(self.cfg.audit_log_file, 'DUPLICATE_GUARD_DEGRADED', {
            'tier': tier_name,
            'check': check_name,
            'error': str(cause),
            'fallback_error': str(fallback_error),
            'fail_open': self.cfg.duplicate_guard_fail_open,
            'decision': decision
        }, outcome='WARNING')

        return blocked


def _buys(trades: List[Trade]) -> List[Trade]:
    return [t for t in trades if t.side == OrderSide.BUY]
