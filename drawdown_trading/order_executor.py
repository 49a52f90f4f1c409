# drawdown_trading/order_executor.py
"""
Order Executor

Drives one exchange quote from creation to a recorded fill:

    CREATING_QUOTE -> QUOTE_CREATED -> EXECUTING -> POLLING -> COMPLETED | FAILED

Buys re-run the duplicate guard's same-day check between QUOTE_CREATED and
EXECUTING; a duplicate at that point leaves the quote unexecuted.

A failed buy never inserts a Trade and a failed sell never closes one. A fill
that cannot be written to the ledger is handed to the Reconciler and raised as
LedgerWriteError. Receipts (invoices) are best-effort.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional

from .config import TradingConfig
from .duplicate_guard import DuplicateGuard
from .errors import (
    DuplicateGuardTripped,
    LedgerWriteError,
    OrderError,
    QuoteCreationFailed,
    QuoteTerminalFailure,
    QuoteTimeout,
    ReceiptCreationFailed,
    StrikeAPIError,
    TradingDisabled,
)
from .models import (
    BuyDecision,
    OrderResult,
    OrderSide,
    OrderState,
    QuoteState,
    SellDecision,
    Trade,
)
from .reconciliation import Reconciler
from .strike_client import StrikeClient
from .trade_ledger import TradeLedger
from .utils import calculate_pnl_pct, generate_trade_id, log_audit_event, utc_now

logger = logging.getLogger(__name__)


def format_buy_description(quantity: float, price: float, drawdown_percent: float) -> str:
    return (f"STRATÉGIE ACHAT BTC:{quantity:.8f}, EUR:{price:.2f}, "
            f"Drawdown%:{drawdown_percent:.2f}")


def format_sell_description(quantity: float, price: float, drawdown_percent: float,
                            pnl_percent: float) -> str:
    return (f"STRATÉGIE VENTE BTC:{quantity:.8f}, EUR:{price:.2f}, "
            f"Drawdown%:{drawdown_percent:.2f}, PnL%:{pnl_percent:.2f}")


class OrderExecutor:
    """Runs the quote state machine for buys and sells."""

    def __init__(
        self,
        cfg: TradingConfig,
        client: StrikeClient,
        ledger: TradeLedger,
        guard: DuplicateGuard,
        reconciler: Reconciler,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.cfg = cfg
        self.client = client
        self.ledger = ledger
        self.guard = guard
        self.reconciler = reconciler
        self.sleep = sleep
        self.clock = clock

    # =========================================================================
    # STATE MACHINE HELPERS
    # =========================================================================

    def _transition(self, result: OrderResult, state: OrderState, **data) -> None:
        result.state = state
        result.transitions.append(state.value)

        logger.info(f"🔄 {result.side.value} order -> {state.value}"
                    + (f" (quote {result.quote_id})" if result.quote_id else ""))
        log_audit_event(self.cfg.audit_log_file, f"ORDER_{state.name}", {
            'side': result.side.value,
            'quote_id': result.quote_id,
            'trade_id': result.trade_id,
            **data
        }, outcome='FAILURE' if state == OrderState.FAILED else 'SUCCESS')

    def _fail(self, result: OrderResult, error: Exception) -> None:
        result.success = False
        result.error = str(error)
        self._transition(result, OrderState.FAILED, error=str(error),
                         error_type=type(error).__name__)

    def _create_quote(self, result: OrderResult, create: Callable[[], Dict[str, Any]]) -> str:
        self._transition(result, OrderState.CREATING_QUOTE)
        try:
            quote = create()
        except StrikeAPIError as e:
            raise QuoteCreationFailed(f"Quote creation failed: {e}")

        quote_id = quote.get('id') if isinstance(quote, dict) else None
        if not quote_id:
            raise QuoteCreationFailed("Quote creation failed: response has no id")

        result.quote_id = quote_id
        self._transition(result, OrderState.QUOTE_CREATED)
        return quote_id

    def _execute_quote(self, result: OrderResult, quote_id: str) -> None:
        self._transition(result, OrderState.EXECUTING)
        try:
            self.client.execute_quote(quote_id)
        except StrikeAPIError as e:
            raise OrderError(f"Quote execution failed: {e}", quote_id=quote_id)

    def await_completion(self, quote_id: str) -> Dict[str, Any]:
        """
        Poll a quote until it completes.

        Transient poll errors are logged and polling continues.

        Raises:
            QuoteTerminalFailure: FAILED / EXPIRED / CANCELLED
            QuoteTimeout: not completed within quote_poll_timeout
        """
        start = self.clock()
        attempts = 0

        while self.clock() - start < self.cfg.quote_poll_timeout:
            attempts += 1
            try:
                details = self.client.get_quote(quote_id)
            except StrikeAPIError as e:
                logger.warning(f"Error checking quote {quote_id}: {e}")
                self.sleep(self.cfg.quote_poll_interval)
                continue

            state = QuoteState.parse(details.get('state'))
            logger.info(f"🔍 Quote {quote_id} state: {details.get('state')} (attempt {attempts})")

            if state == QuoteState.COMPLETED:
                return details
            if state is not None and state.is_terminal_failure:
                raise QuoteTerminalFailure(quote_id, state.value)

            self.sleep(self.cfg.quote_poll_interval)

        raise QuoteTimeout(quote_id, self.cfg.quote_poll_timeout)

    def _poll(self, result: OrderResult, quote_id: str, fill_context: Dict[str, Any]) -> Dict[str, Any]:
        self._transition(result, OrderState.POLLING)
        try:
            return self.await_completion(quote_id)
        except QuoteTimeout as e:
            # Executed but unconfirmed: the fill may still land at the exchange
            self.reconciler.record_unrecorded_fill(
                {'quote_id': quote_id, 'side': result.side.value, **fill_context},
                str(e),
                kind='OUTCOME_UNKNOWN'
            )
            raise

    def _read_fill_value(self, result: OrderResult, details: Dict[str, Any],
                         read: Callable[[Dict[str, Any]], float], label: str,
                         fill_context: Dict[str, Any]) -> float:
        """
        Read a positive number from a COMPLETED quote.

        The exchange has already filled the quote: a missing or non-positive
        value goes to the Reconciler and is raised as LedgerWriteError.
        """
        try:
            value = read(details)
        except (KeyError, TypeError, ValueError) as e:
            reason = f"Completed quote {result.quote_id} has no readable {label}: {e!r}"
        else:
            if value > 0:
                return value
            reason = f"Completed quote {result.quote_id} has {label} {value}"

        fill = {'quote_id': result.quote_id, 'side': result.side.value, **fill_context,
                'exchange_details': details}
        self.reconciler.record_unrecorded_fill(fill, reason, kind='FILL_UNREADABLE')
        raise LedgerWriteError(f"{reason}; filled but not recorded", fill)

    def _create_receipt(self, correlation_id: str, description: str,
                        amount: str, currency: str) -> str:
        try:
            invoice = self.client.create_invoice(correlation_id, description, amount, currency)
        except StrikeAPIError as e:
            raise ReceiptCreationFailed(f"Receipt for {correlation_id} failed: {e}")
        return invoice['invoiceId']

    def _try_receipt(self, result: OrderResult, description: str,
                     amount: str, currency: str) -> None:
        try:
            result.receipt_id = self._create_receipt(result.quote_id, description, amount, currency)
        except ReceiptCreationFailed as e:
            logger.error(f"❌ {e}")
            log_audit_event(self.cfg.audit_log_file, 'RECEIPT_FAILED', {
                'quote_id': result.quote_id,
                'trade_id': result.trade_id,
                'error': str(e)
            }, outcome='WARNING')

    def _check_enabled(self) -> None:
        if not self.cfg.trading_enabled:
            raise TradingDisabled("Trading is disabled (TRADING_ENABLED=false)")

    # =========================================================================
    # BUY
    # =========================================================================

    def execute_buy(self, decision: BuyDecision) -> OrderResult:
        """
        Execute an allowed buy decision.

        Returns:
            Completed OrderResult

        Raises:
            DuplicateGuardTripped: tier bought meanwhile (quote left unexecuted)
            OrderError: quote creation/execution/polling failure
            LedgerWriteError: filled but not recorded (handed to the Reconciler)
        """
        self._check_enabled()
        if not decision.allowed or decision.tier is None or decision.invested_amount <= 0:
            raise OrderError(f"Buy decision is not executable: {decision.reason}")

        tier = decision.tier
        amount = decision.invested_amount
        result = OrderResult(side=OrderSide.BUY, amount=amount)

        logger.info(f"💰 BUY START: {amount:.2f} {self.cfg.quote_currency} ({tier.name})")

        try:
            quote_id = self._create_quote(result, lambda: self.client.create_buy_quote(amount))

            if self.guard.already_bought_today(tier.name):
                raise DuplicateGuardTripped(
                    tier.name, f"another buy was recorded for this tier before quote {quote_id} executed"
                )

            self._execute_quote(result, quote_id)
            details = self._poll(result, quote_id, {'amount': amount, 'tier': tier.name})

            quantity = self._read_fill_value(
                result, details, lambda d: float(d['target']['amount']), 'target amount',
                {'amount': amount, 'tier': tier.name}
            )

            entry_price = amount / quantity
            now = utc_now()
            trade = Trade(
                id=generate_trade_id('BUY', quote_id, now),
                quantity=quantity,
                entry_price=entry_price,
                invested_amount=amount,
                take_profit_price=decision.take_profit_price,
                take_profit_percent=tier.take_profit_percent,
                tier=tier.to_dict(),
                quote_id=quote_id,
                entry_time=now
            )
            result.trade_id = trade.id
            result.quantity = quantity
            result.price = entry_price

            self._record_buy(result, trade)

        except Exception as e:
            self._fail(result, e)
            logger.error(f"❌ Buy failed: {e}")
            raise

        result.success = True
        self._transition(result, OrderState.COMPLETED, quantity=quantity,
                         price=entry_price, amount=amount, tier=tier.name)

        description = format_buy_description(quantity, entry_price, decision.drawdown_percent or 0.0)
        self._try_receipt(result, description, f"{amount:.2f}", self.cfg.quote_currency)

        logger.info(f"🎉 BUY COMPLETED: {quantity:.8f} BTC at {entry_price:.2f} EUR")
        return result

    def _record_buy(self, result: OrderResult, trade: Trade) -> None:
        try:
            self.ledger.insert_trade(trade)
        except Exception as e:
            fill = {
                'quote_id': result.quote_id,
                'side': OrderSide.BUY.value,
                'trade_id': trade.id,
                'quantity': trade.quantity,
                'amount': trade.invested_amount,
                'price': trade.entry_price,
                'trade': trade.to_dict()
            }
            self.reconciler.record_unrecorded_fill(fill, str(e))
            raise LedgerWriteError(f"Buy {result.quote_id} filled but not recorded: {e}", fill) from e

        log_audit_event(self.cfg.audit_log_file, 'TRADE_OPENED', trade.to_dict())

    # =========================================================================
    # SELL
    # =========================================================================

    def execute_sell(self, decision: SellDecision,
                     drawdown_percent: Optional[float] = None) -> OrderResult:
        """
        Sell the full quantity of an open trade and close it.

        Args:
            decision: Which trade to sell and why
            drawdown_percent: Current drawdown, for the receipt description

        Returns:
            Completed OrderResult

        Raises:
            OrderError: quote creation/execution/polling failure
            LedgerWriteError: filled but trade not closed (handed to the Reconciler)
        """
        self._check_enabled()
        trade = decision.trade
        if not trade.is_open_buy:
            raise OrderError(f"Trade {trade.id} is not an open buy")

        result = OrderResult(side=OrderSide.SELL, trade_id=trade.id, quantity=trade.quantity)

        logger.info(f"💰 SELL START: {trade.quantity:.8f} BTC (trade {trade.id}, {decision.kind.value})")

        try:
            quote_id = self._create_quote(
                result, lambda: self.client.create_sell_quote(trade.quantity)
            )
            self._execute_quote(result, quote_id)
            details = self._poll(result, quote_id, {'trade_id': trade.id, 'quantity': trade.quantity})

            price = self._read_fill_value(
                result, details, lambda d: float(d['exchangeRate']), 'exchange rate',
                {'trade_id': trade.id, 'quantity': trade.quantity}
            )

            amount = trade.quantity * price
            pnl_percent = calculate_pnl_pct(trade.entry_price, price)
            result.price = price
            result.amount = amount
            result.pnl_percent = pnl_percent

            self._record_sell(result, decision, price, amount, pnl_percent)

        except Exception as e:
            self._fail(result, e)
            logger.error(f"❌ Sell failed for trade {trade.id}: {e}")
            raise

        result.success = True
        self._transition(result, OrderState.COMPLETED, quantity=trade.quantity,
                         price=price, amount=amount, pnl_percent=pnl_percent)

        description = format_sell_description(trade.quantity, price, drawdown_percent or 0.0, pnl_percent)
        self._try_receipt(result, description, f"{trade.quantity:.8f}", self.cfg.base_currency)

        logger.info(f"🎉 SELL COMPLETED: {trade.quantity:.8f} BTC at {price:.2f} EUR "
                    f"(PnL {pnl_percent:+.2f}%, {amount:.2f} EUR)")
        return result

    def _record_sell(self, result: OrderResult, decision: SellDecision,
                     price: float, amount: float, pnl_percent: float) -> None:
        trade = decision.trade
        fields = {
            'closed': True,
            'exit_price': price,
            'exit_amount': amount,
            'exit_time': utc_now(),
            'exit_kind': decision.kind.value,
            'exit_quote_id': result.quote_id,
            'pnl_percent': pnl_percent
        }

        try:
            self.ledger.update_trade(trade.id, fields)
        except Exception as e:
            fill = {
                'quote_id': result.quote_id,
                'side': OrderSide.SELL.value,
                'trade_id': trade.id,
                'quantity': trade.quantity,
                'amount': amount,
                'price': price,
                'pnl_percent': pnl_percent
            }
            self.reconciler.record_unrecorded_fill(fill, str(e))
            raise LedgerWriteError(f"Sell {result.quote_id} filled but trade not closed: {e}", fill) from e

        log_audit_event(self.cfg.audit_log_file, 'TRADE_CLOSED', {
            'trade_id': trade.id,
            'quote_id': result.quote_id,
            'exit_kind': decision.kind.value,
            'exit_price': price,
            'exit_amount': amount,
            'pnl_percent': pnl_percent
        })
