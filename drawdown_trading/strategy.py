# drawdown_trading/strategy.py
"""
Strategy Evaluation

Turns one consolidated price into the cycle's decisions:
- Take-profit sell decisions for open trades
- A buy decision for the current tier (sized, guarded, capped)

Decisions only; orders are placed by the OrderExecutor.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .config import TradingConfig
from .duplicate_guard import DuplicateGuard
from .models import (
    BuyDecision,
    ConsolidatedPrice,
    SellDecision,
    SellKind,
    Tier,
    Trade,
)
from .strike_client import StrikeClient
from .tier_engine import TierEngine
from .trade_ledger import TradeLedger
from .utils import calculate_pnl_pct, calculate_target_price, clamp

logger = logging.getLogger(__name__)


def evaluate_sells(open_trades: List[Trade], current_price: float) -> List[SellDecision]:
    """
    One take-profit decision per open trade whose target is reached.

    There is no stop-loss path. Pure.
    """
    decisions = []
    for trade in open_trades:
        if not trade.is_open_buy:
            continue
        if current_price >= trade.take_profit_price:
            profit = calculate_pnl_pct(trade.entry_price, current_price)
            decisions.append(SellDecision(
                trade=trade,
                kind=SellKind.TAKE_PROFIT,
                reason=(f"take-profit reached: {current_price:.2f} >= "
                        f"{trade.take_profit_price:.2f} ({profit:+.2f}%)"),
                target_price=trade.take_profit_price,
                current_profit_percent=profit
            ))
    return decisions


def forced_sell_decisions(open_trades: List[Trade], current_price: float) -> List[SellDecision]:
    """Sell decisions for every open trade, regardless of target."""
    return [
        SellDecision(
            trade=trade,
            kind=SellKind.FORCED,
            reason='forced sell (admin)',
            target_price=trade.take_profit_price,
            current_profit_percent=calculate_pnl_pct(trade.entry_price, current_price)
        )
        for trade in open_trades
        if trade.is_open_buy
    ]


@dataclass
class StrategyEvaluation:
    price: ConsolidatedPrice
    drawdown_percent: float
    tier: Tier
    balances: Dict[str, float]
    available_capital: float
    open_trades: List[Trade] = field(default_factory=list)
    sell_decisions: List[SellDecision] = field(default_factory=list)
    buy_decision: Optional[BuyDecision] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'price': self.price.price,
            'drawdown_percent': round(self.drawdown_percent, 4),
            'tier': self.tier.to_dict(),
            'balances': self.balances,
            'available_capital': self.available_capital,
            'open_trades': len(self.open_trades),
            'sell_decisions': [d.to_dict() for d in self.sell_decisions],
            'buy_decision': self.buy_decision.to_dict() if self.buy_decision else None
        }


class StrategyEvaluator:
    """Builds the cycle's buy and sell decisions."""

    def __init__(
        self,
        cfg: TradingConfig,
        client: StrikeClient,
        ledger: TradeLedger,
        guard: DuplicateGuard,
        tier_engine: TierEngine
    ):
        self.cfg = cfg
        self.client = client
        self.ledger = ledger
        self.guard = guard
        self.tier_engine = tier_engine

    def evaluate(self, price: ConsolidatedPrice) -> StrategyEvaluation:
        """
        Evaluate the strategy against a consolidated price.

        Raises:
            StrikeAPIError: balances unavailable
            LedgerQueryError: open trades unavailable
        """
        balances = self.client.get_balances()
        available_capital = balances.get(self.cfg.quote_currency, 0.0)
        drawdown = price.drawdown_percent

        logger.info(
            f"📈 Evaluating strategy: price {price.price:.2f}, drawdown {drawdown:.2f}%, "
            f"capital {available_capital:.2f} {self.cfg.quote_currency}"
        )

        tier = self.tier_engine.classify(drawdown, price.price)
        open_trades = self.ledger.query_open_buy_trades(limit=self.cfg.ledger_query_limit)
        sell_decisions = self.evaluate_sells(open_trades, price.price)
        buy_decision = self.evaluate_buy(tier, drawdown, price.price, available_capital)

        return StrategyEvaluation(
            price=price,
            drawdown_percent=drawdown,
            tier=tier,
            balances=balances,
            available_capital=available_capital,
            open_trades=open_trades,
            sell_decisions=sell_decisions,
            buy_decision=buy_decision
        )

    def evaluate_sells(self, open_trades: List[Trade], current_price: float) -> List[SellDecision]:
        decisions = evaluate_sells(open_trades, current_price)
        for decision in decisions:
            logger.info(f"🎯 Sell signal for {decision.trade.id}: {decision.reason}")
        return decisions

    def evaluate_buy(
        self,
        tier: Tier,
        drawdown_percent: float,
        price: float,
        available_capital: float
    ) -> BuyDecision:
        """
        Decide whether to buy in the current tier and how much.

        Checks, in order: minimum capital, same-day duplicate, cooldown,
        RSI ceiling, then sizing against the available capital.
        """
        def reject(reason: str) -> BuyDecision:
            logger.info(f"❌ No buy: {reason}")
            return BuyDecision(
                allowed=False,
                reason=reason,
                tier=tier,
                available_capital=available_capital,
                drawdown_percent=drawdown_percent
            )

        if available_capital < self.cfg.min_buy_amount:
            return reject(f"Insufficient capital: {available_capital:.2f} {self.cfg.quote_currency}")

        if self.cfg.check_same_day_buy and self.guard.already_bought_today(tier.name):
            return reject(f"Already bought today in tier {tier.name}")

        if self.guard.recently_bought(tier.name, self.cfg.cooldown_hours):
            return reject(f"Cooldown active for tier {tier.name} ({self.cfg.cooldown_hours}h)")

        if tier.rsi_value > self.cfg.max_rsi_threshold:
            return reject(f"RSI too high: {tier.rsi_value:.1f} > {self.cfg.max_rsi_threshold:.0f}")

        amount = clamp(
            available_capital * tier.capital_percent / 100,
            self.cfg.min_buy_amount,
            self.cfg.max_buy_amount
        )
        if amount > available_capital:
            return reject(f"Amount {amount:.2f} exceeds available capital {available_capital:.2f}")

        take_profit_price = calculate_target_price(price, tier.take_profit_percent)
        target_entry_price = price * self.cfg.entry_price_discount

        logger.info(
            f"✅ Buy approved: {amount:.2f} {self.cfg.quote_currency} in {tier.name} "
            f"({tier.capital_percent:.2f}% of capital), take-profit {take_profit_price:.2f} "
            f"(+{tier.take_profit_percent:.2f}%)"
        )

        return BuyDecision(
            allowed=True,
            reason=f"Buy approved in tier {tier.name}",
            tier=tier,
            invested_amount=amount,
            target_entry_price=target_entry_price,
            take_profit_price=take_profit_price,
            available_capital=available_capital,
            drawdown_percent=drawdown_percent
        )

    def forced_buy_decision(self, price: ConsolidatedPrice, available_capital: float) -> BuyDecision:
        """
        Admin buy: small fixed-size position in the light tier.

        Amount is min(forced_buy_max_amount, capital x forced_buy_balance_pct);
        take-profit is a flat forced_buy_take_profit_pct.
        """
        base_tier = self.tier_engine.classify(self.cfg.forced_buy_drawdown_pct, price.price)
        tier = replace(base_tier, take_profit_percent=self.cfg.forced_buy_take_profit_pct)
        amount = min(self.cfg.forced_buy_max_amount,
                     available_capital * self.cfg.forced_buy_balance_pct)

        if amount < self.cfg.min_buy_amount:
            return BuyDecision(
                allowed=False,
                reason=f"Insufficient capital for forced buy: {available_capital:.2f} {self.cfg.quote_currency}",
                tier=tier,
                available_capital=available_capital,
                drawdown_percent=price.drawdown_percent,
                forced=True
            )

        return BuyDecision(
            allowed=True,
            reason='Forced buy (admin)',
            tier=tier,
            invested_amount=amount,
            target_entry_price=price.price,
            take_profit_price=calculate_target_price(price.price, self.cfg.forced_buy_take_profit_pct),
            available_capital=available_capital,
            drawdown_percent=price.drawdown_percent,
            forced=True
        )
