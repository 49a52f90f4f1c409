# drawdown_trading/engine.py
"""
Trading Engine

Entry points called by the scheduler and the admin surface:
- run_cycle():      full cycle (price -> strategy -> sells -> buy)
- manual_run():     price + strategy evaluation, no orders
- force_sell_all(): sell every open trade
- force_buy_now():  small admin buy in the light tier
- system_status():  price, balances, open trades, today's buys, source health,
                    ledger vs exchange BTC balance
- daily_report():   buys/sells/invested for one calendar day
- resolve_unrecorded_fill(): mark a reconciliation entry as handled

Every entry point returns a structured result and never raises to the caller.

Usage:
    python -m drawdown_trading.engine cycle
    python -m drawdown_trading.engine status
    python -m drawdown_trading.engine resolve --quote-id <id> --note 'inserted by hand'
"""

import os
import sys
import json
import time
import uuid
import logging
from collections import Counter
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from .config import TradingConfig
from .cycle_lease import CycleLease
from .duplicate_guard import DuplicateGuard
from .errors import DuplicateGuardTripped, LedgerWriteError, QuoteTimeout, TradingDisabled
from .models import (
    BuyDecision,
    CycleReport,
    OrderResult,
    OrderSide,
    OrderState,
    SellDecision,
)
from .order_executor import OrderExecutor
from .price_aggregator import PriceAggregator
from .reconciliation import Reconciler
from .source_stats import SourceStatistics
from .strategy import StrategyEvaluator, forced_sell_decisions
from .strike_client import StrikeClient, create_strike_client
from .tier_engine import TierEngine
from .trade_ledger import JsonTradeLedger, TradeLedger
from .utils import (
    day_bounds,
    format_currency,
    format_percentage,
    get_local_now,
    log_audit_event,
    read_recent_audit_events,
    start_of_day,
    utc_now,
    with_retry,
)

logger = logging.getLogger(__name__)

# Re-running these would repeat an order that may already have filled
NON_RETRYABLE_ORDER_ERRORS = (DuplicateGuardTripped, LedgerWriteError, QuoteTimeout, TradingDisabled)


def setup_logging(cfg: TradingConfig) -> None:
    """Configure root logging: file in the data dir plus stderr."""
    os.makedirs(cfg.data_dir, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(cfg.log_file),
            logging.StreamHandler()
        ]
    )


def _execution_id(kind: str) -> str:
    return f"{kind}_{utc_now().strftime('%Y%m%d-%H%M%S')}_{uuid.uuid4().hex[:6]}"


class TradingEngine:
    """
    Wires the components together and runs cycles and admin actions.

    Components can be injected (tests); otherwise they are built from cfg.
    """

    def __init__(
        self,
        cfg: Optional[TradingConfig] = None,
        client: Optional[StrikeClient] = None,
        ledger: Optional[TradeLedger] = None,
        aggregator: Optional[PriceAggregator] = None,
        tier_engine: Optional[TierEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now
    ):
        self.cfg = cfg or TradingConfig.from_env()
        self.sleep = sleep
        self.clock = clock

        self.client = client or create_strike_client(self.cfg)
        self.ledger = ledger or JsonTradeLedger(self.cfg.trades_file)
        self.aggregator = aggregator or PriceAggregator(self.cfg)
        self.tier_engine = tier_engine or TierEngine(self.cfg)
        self.source_stats = SourceStatistics(self.cfg.source_stats_file)
        self.reconciler = Reconciler(self.cfg)
        self.guard = DuplicateGuard(self.cfg, self.ledger, clock=clock)
        self.strategy = StrategyEvaluator(self.cfg, self.client, self.ledger,
                                          self.guard, self.tier_engine)
        self.executor = OrderExecutor(self.cfg, self.client, self.ledger, self.guard,
                                      self.reconciler, sleep=sleep)

        logger.info(f"Trading engine initialized (trading {'ENABLED' if self.cfg.trading_enabled else 'DISABLED'})")

    def _lease(self) -> CycleLease:
        return CycleLease(self.cfg.cycle_lease_file, self.cfg.cycle_lease_ttl,
                          audit_file=self.cfg.audit_log_file)

    def _finish(self, report: CycleReport, event_type: str) -> CycleReport:
        if report.finished_at is None:
            report.finish(False, report.reason or 'not completed')
        log_audit_event(self.cfg.audit_log_file, event_type, report.to_dict(),
                        outcome='SUCCESS' if report.success else 'FAILURE')
        status = '✅' if report.success else '❌'
        logger.info(f"{status} {event_type} {report.execution_id}: {report.reason} [{report.action}]")
        return report

    def _guarded(self, kind: str, event_type: str,
                 body: Callable[[CycleReport], None]) -> CycleReport:
        """Run body under the cycle lease; always return a finished report."""
        report = CycleReport(execution_id=_execution_id(kind))
        lease = self._lease()

        if not lease.acquire():
            report.action = 'SKIPPED'
            report.finish(False, 'cycle already running')
            return self._finish(report, event_type)

        try:
            body(report)
        except Exception as e:
            logger.exception(f"Unexpected error in {kind}: {e}")
            report.finish(False, f"unexpected error: {e}", error=str(e))
        finally:
            lease.release()

        return self._finish(report, event_type)

    # =========================================================================
    # SHARED STEPS
    # =========================================================================

    def _collect_price(self, report: CycleReport):
        attempts, delay = self.cfg.price_retry
        outcome = with_retry(self.aggregator.collect, attempts, delay,
                             name='price collection', sleep=self.sleep)
        if not outcome.ok:
            report.finish(False, f"price collection failed: {outcome.error}", error=str(outcome.error))
            return None

        price = outcome.value
        self.source_stats.record(price.samples)
        report.price = price.price
        report.drawdown_percent = price.drawdown_percent
        report.sources_used = price.sources_used
        return price

    def _failed_result(self, side: OrderSide, error: BaseException,
                       trade_id: Optional[str] = None) -> OrderResult:
        return OrderResult(
            side=side,
            state=OrderState.FAILED,
            success=False,
            quote_id=getattr(error, 'quote_id', None),
            trade_id=trade_id,
            error=str(error)
        )

    def _execute_sells(self, decisions: List[SellDecision], report: CycleReport,
                       drawdown_percent: Optional[float]) -> None:
        attempts, delay = self.cfg.order_retry

        for i, decision in enumerate(decisions):
            if i > 0:
                self.sleep(self.cfg.sell_pause_seconds)

            outcome = with_retry(
                lambda d=decision: self.executor.execute_sell(d, drawdown_percent),
                attempts, delay,
                name=f"sell {decision.trade.id}",
                sleep=self.sleep,
                no_retry=NON_RETRYABLE_ORDER_ERRORS
            )
            if outcome.ok:
                result = outcome.value
                report.sells_executed += 1
            else:
                logger.error(f"❌ Sell of {decision.trade.id} failed: {outcome.error}")
                result = self._failed_result(OrderSide.SELL, outcome.error, decision.trade.id)
            report.sell_results.append(result.to_dict())

    def _execute_buy(self, decision: BuyDecision, report: CycleReport) -> Optional[OrderResult]:
        attempts, delay = self.cfg.order_retry
        outcome = with_retry(
            lambda: self.executor.execute_buy(decision),
            attempts, delay,
            name='buy',
            sleep=self.sleep,
            no_retry=NON_RETRYABLE_ORDER_ERRORS
        )

        if outcome.ok:
            report.action = 'BUY_EXECUTED'
            report.buy_result = outcome.value.to_dict()
            return outcome.value

        result = self._failed_result(OrderSide.BUY, outcome.error)
        report.buy_result = result.to_dict()

        if isinstance(outcome.error, DuplicateGuardTripped):
            logger.info(f"🛑 Buy skipped: {outcome.error}")
            report.action = 'BUY_SKIPPED_DUPLICATE'
            log_audit_event(self.cfg.audit_log_file, 'BUY_SKIPPED_DUPLICATE', {
                'tier': outcome.error.tier_name,
                'reason': outcome.error.reason,
                'quote_id': result.quote_id
            })
        else:
            logger.error(f"❌ Buy failed: {outcome.error}")
            report.action = 'BUY_FAILED'
        return None

    # =========================================================================
    # CYCLE
    # =========================================================================

    def run_cycle(self) -> CycleReport:
        """Run one scheduled trading cycle."""
        logger.info("=" * 60)
        logger.info("TRADING CYCLE")
        logger.info("=" * 60)
        return self._guarded('cycle', 'CYCLE_COMPLETED', self._cycle_body)

    def _cycle_body(self, report: CycleReport) -> None:
        price = self._collect_price(report)
        if price is None:
            return

        attempts, delay = self.cfg.strategy_retry
        outcome = with_retry(lambda: self.strategy.evaluate(price), attempts, delay,
                             name='strategy evaluation', sleep=self.sleep)
        if not outcome.ok:
            report.finish(False, f"strategy evaluation failed: {outcome.error}", error=str(outcome.error))
            return

        evaluation = outcome.value
        report.tier_name = evaluation.tier.name
        report.available_capital = evaluation.available_capital
        report.open_trades = len(evaluation.open_trades)
        report.sell_decisions = [d.to_dict() for d in evaluation.sell_decisions]
        report.buy_decision = evaluation.buy_decision.to_dict()

        if not self.cfg.trading_enabled:
            report.action = 'TRADING_DISABLED'
            report.finish(True, 'evaluation only: trading disabled')
            return

        self._execute_sells(evaluation.sell_decisions, report, evaluation.drawdown_percent)

        decision = evaluation.buy_decision
        if decision.allowed:
            self._execute_buy(decision, report)

        if report.action == 'NO_ACTION' and report.sells_executed:
            report.action = 'SELLS_EXECUTED'

        report.finish(True, f"{decision.reason}; "
                            f"{report.sells_executed}/{len(evaluation.sell_decisions)} sells executed")

    def manual_run(self) -> CycleReport:
        """Collect and evaluate without placing any order."""
        report = CycleReport(execution_id=_execution_id('manual'), action='MANUAL_EVALUATION')

        try:
            price = self._collect_price(report)
            if price is not None:
                evaluation = self.strategy.evaluate(price)
                report.tier_name = evaluation.tier.name
                report.available_capital = evaluation.available_capital
                report.open_trades = len(evaluation.open_trades)
                report.sell_decisions = [d.to_dict() for d in evaluation.sell_decisions]
                report.buy_decision = evaluation.buy_decision.to_dict()
                report.finish(True, f"evaluation only: {evaluation.buy_decision.reason}")
        except Exception as e:
            logger.exception(f"Manual run failed: {e}")
            report.finish(False, f"manual run failed: {e}", error=str(e))

        return self._finish(report, 'MANUAL_RUN')

    # =========================================================================
    # ADMIN ACTIONS
    # =========================================================================

    def force_sell_all(self) -> CycleReport:
        """Sell every open trade through the regular executor."""
        return self._guarded('force_sell', 'FORCE_SELL_ALL', self._force_sell_body)

    def _force_sell_body(self, report: CycleReport) -> None:
        price = self._collect_price(report)
        if price is None:
            return

        open_trades = self.ledger.query_open_buy_trades(limit=self.cfg.ledger_query_limit)
        report.open_trades = len(open_trades)
        if not open_trades:
            report.finish(True, 'no open trades to sell')
            return

        decisions = forced_sell_decisions(open_trades, price.price)
        report.sell_decisions = [d.to_dict() for d in decisions]
        self._execute_sells(decisions, report, price.drawdown_percent)

        report.action = 'FORCE_SELL'
        report.finish(
            report.sells_executed == len(decisions),
            f"{report.sells_executed}/{len(decisions)} trades sold"
        )

    def force_buy_now(self) -> CycleReport:
        """Small admin buy; refused if anything was bought today."""
        return self._guarded('force_buy', 'FORCE_BUY', self._force_buy_body)

    def _force_buy_body(self, report: CycleReport) -> None:
        since = start_of_day(self.cfg.timezone, self.clock())
        buys_today = [t for t in self.ledger.query_trades_since(since)
                      if t.side == OrderSide.BUY and t.entry_time >= since]
        if buys_today:
            report.action = 'FORCE_BUY_REFUSED'
            report.finish(False, f"a buy was already made today ({len(buys_today)})")
            return

        price = self._collect_price(report)
        if price is None:
            return

        balances = self.client.get_balances()
        capital = balances.get(self.cfg.quote_currency, 0.0)
        report.available_capital = capital

        decision = self.strategy.forced_buy_decision(price, capital)
        report.tier_name = decision.tier.name if decision.tier else None
        report.buy_decision = decision.to_dict()
        if not decision.allowed:
            report.action = 'FORCE_BUY_REFUSED'
            report.finish(False, decision.reason)
            return

        result = self._execute_buy(decision, report)
        if result is None:
            report.finish(False, f"forced buy failed: {report.buy_result.get('error')}")
            return

        report.action = 'FORCE_BUY'
        report.finish(True, f"forced buy of {decision.invested_amount:.2f} {self.cfg.quote_currency}")

    # =========================================================================
    # STATUS AND REPORTS
    # =========================================================================

    def system_status(self) -> Dict[str, Any]:
        """Snapshot of price, balances, open trades and source health."""
        status: Dict[str, Any] = {
            'timestamp': utc_now().isoformat(),
            'trading_enabled': self.cfg.trading_enabled,
            'config_errors': self.cfg.validate(),
            'success': True
        }

        try:
            price = self.aggregator.collect()
            status['price'] = price.to_dict()
            status['tier'] = self.tier_engine.classify(price.drawdown_percent, price.price).to_dict()
        except Exception as e:
            logger.error(f"Status: price unavailable: {e}")
            status['price'] = None
            status['price_error'] = str(e)
            status['success'] = False

        try:
            status['balances'] = self.client.get_balances()
        except Exception as e:
            logger.error(f"Status: balances unavailable: {e}")
            status['balances'] = None
            status['balance_error'] = str(e)
            status['success'] = False

        try:
            open_trades = self.ledger.query_open_buy_trades(limit=self.cfg.ledger_query_limit)
            since = start_of_day(self.cfg.timezone, self.clock())
            todays = [t for t in self.ledger.query_trades_since(since)
                      if t.side == OrderSide.BUY and t.entry_time >= since]
            status['open_trades'] = {
                'count': len(open_trades),
                'total_invested': sum(t.invested_amount for t in open_trades),
                'total_quantity': sum(t.quantity for t in open_trades)
            }
            status['buys_today_by_tier'] = dict(Counter(t.tier_name for t in todays))
        except Exception as e:
            logger.error(f"Status: ledger unavailable: {e}")
            status['open_trades'] = None
            status['ledger_error'] = str(e)
            status['success'] = False

        try:
            synced, discrepancy = self.reconciler.reconcile_balance(self.ledger, self.client)
            status['balance_reconciliation'] = {
                'synced': synced,
                'discrepancy': discrepancy.to_dict() if discrepancy else None
            }
        except Exception as e:
            logger.error(f"Status: balance reconciliation unavailable: {e}")
            status['balance_reconciliation'] = None
            status['reconciliation_error'] = str(e)

        status['source_statistics'] = self.source_stats.get_summary()
        status['unrecorded_fills'] = len(self.reconciler.get_unrecorded_fills())
        status['recent_guard_degradations'] = len(
            read_recent_audit_events(self.cfg.audit_log_file, 'DUPLICATE_GUARD_DEGRADED', limit=20)
        )
        return status

    def resolve_unrecorded_fill(self, quote_id: str, note: str = '') -> Dict[str, Any]:
        """Mark a reconciliation entry as handled once the ledger has been fixed by hand."""
        resolved = self.reconciler.mark_resolved(quote_id, note)
        if resolved:
            logger.info(f"✅ Reconciliation entry for quote {quote_id} resolved")
        else:
            logger.warning(f"⚠️ No open reconciliation entry for quote {quote_id}")
        return {
            'success': resolved,
            'quote_id': quote_id,
            'remaining_unrecorded_fills': len(self.reconciler.get_unrecorded_fills())
        }

    def daily_report(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Buys, sells and invested amount for one calendar day."""
        if day is None:
            day = get_local_now(self.cfg.timezone, self.clock()).date()
        start, end = day_bounds(self.cfg.timezone, day)

        try:
            trades = self.ledger.query_trades_since(start)
        except Exception as e:
            logger.error(f"Daily report failed: {e}")
            return {'success': False, 'date': day.isoformat(), 'error': str(e)}

        buys = [t for t in trades if t.side == OrderSide.BUY and start <= t.entry_time < end]
        sells = [t for t in trades if t.closed and t.exit_time and start <= t.exit_time < end]
        pnls = [t.pnl_percent for t in sells if t.pnl_percent is not None]
        touched = {t.id: t for t in buys + sells}

        report = {
            'success': True,
            'date': day.isoformat(),
            'timezone': self.cfg.timezone,
            'buys': len(buys),
            'sells': len(sells),
            'invested_amount': round(sum(t.invested_amount for t in buys), 2),
            'sold_amount': round(sum(t.exit_amount or 0.0 for t in sells), 2),
            'buys_by_tier': dict(Counter(t.tier_name for t in buys)),
            'average_pnl_percent': round(sum(pnls) / len(pnls), 2) if pnls else None,
            'trades': [t.to_dict() for t in touched.values()]
        }
        logger.info(
            f"📊 Daily report {day.isoformat()}: {report['buys']} buys "
            f"({format_currency(report['invested_amount'], self.cfg.quote_currency)}), "
            f"{report['sells']} sells, average PnL {format_percentage(report['average_pnl_percent'])}"
        )
        log_audit_event(self.cfg.audit_log_file, 'DAILY_REPORT', {
            k: v for k, v in report.items() if k != 'trades'
        })
        return report


def main():
    """Main entry point for the trading engine."""
    import argparse

    parser = argparse.ArgumentParser(description='BTC/EUR Drawdown Trading Engine')
    parser.add_argument('command',
                        choices=['cycle', 'manual', 'force-sell', 'force-buy', 'status', 'report',
                                 'resolve'],
                        help='Command to run')
    parser.add_argument('--date', help='Report date (YYYY-MM-DD), defaults to today')
    parser.add_argument('--quote-id', help='Quote to mark as reconciled (resolve)')
    parser.add_argument('--note', default='', help='Resolution note (resolve)')

    args = parser.parse_args()
    if args.command == 'resolve' and not args.quote_id:
        parser.error('resolve requires --quote-id')

    cfg = TradingConfig.from_env()
    setup_logging(cfg)

    for err in cfg.validate():
        logger.warning(f"⚠️ Configuration: {err}")

    try:
        engine = TradingEngine(cfg)

        if args.command == 'cycle':
            result = engine.run_cycle().to_dict()
        elif args.command == 'manual':
            result = engine.manual_run().to_dict()
        elif args.command == 'force-sell':
            result = engine.force_sell_all().to_dict()
        elif args.command == 'force-buy':
            result = engine.force_buy_now().to_dict()
        elif args.command == 'status':
            result = engine.system_status()
        elif args.command == 'resolve':
            result = engine.resolve_unrecorded_fill(args.quote_id, args.note)
        else:
            day = date.fromisoformat(args.date) if args.date else None
            result = engine.daily_report(day)

        print(json.dumps(result, indent=2, default=str))

    except Exception as e:
        logger.error(f"Engine error: {e}")
        sys.exit(1)

    sys.exit(0 if result.get('success') else 1)


if __name__ == '__main__':
    main()
