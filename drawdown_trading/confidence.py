# drawdown_trading/confidence.py
"""
Diagnostic confidence score for a tier.

Four piecewise-linear sub-scores (volatility, momentum, drawdown depth,
take-profit magnitude) combined into a weighted 0-100 score with a label.
Nothing in the buy/sell path reads this score.
"""

from typing import Dict, Optional

from .models import ConfidenceScore
from .utils import clamp

WEIGHTS: Dict[str, float] = {
    'volatility': 0.20,
    'momentum': 0.25,
    'drawdown': 0.40,
    'take_profit': 0.15,
}

LABEL_THRESHOLDS = (
    (80, 'very high'),
    (60, 'high'),
    (40, 'medium'),
    (20, 'low'),
)


def volatility_score(atr_percent: float) -> float:
    return clamp(100 - atr_percent * 15, 0, 100)


def momentum_score(rsi: float) -> float:
    if rsi > 70:
        score = 60 - (rsi - 70) * 2
    elif rsi > 50:
        score = 40 + (rsi - 50)
    elif rsi > 30:
        score = 60 - (50 - rsi)
    else:
        score = 40 - (30 - rsi) * 2
    return clamp(score, 0, 100)


def drawdown_score(drawdown_abs: float) -> float:
    if drawdown_abs <= 5.0:
        score = 90 - drawdown_abs * 4
    elif drawdown_abs <= 15.0:
        score = 70 - (drawdown_abs - 5) * 4
    elif drawdown_abs <= 25.0:
        score = 30 - (drawdown_abs - 15) * 3
    else:
        score = 0
    return clamp(score, 0, 100)


def take_profit_score(take_profit_percent: float) -> float:
    return clamp(take_profit_percent * 3, 0, 100)


def confidence_label(score: float) -> str:
    for threshold, label in LABEL_THRESHOLDS:
        if score >= threshold:
            return label
    return 'very low'


class ConfidenceScorer:
    """Combines the sub-scores with fixed weights."""

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = dict(weights or WEIGHTS)

    def score(
        self,
        drawdown: float,
        atr_percent: float,
        rsi: float,
        take_profit_percent: float
    ) -> ConfidenceScore:
        """
        Args:
            drawdown: Drawdown percent (sign ignored)
            atr_percent: ATR as a percentage of price
            rsi: Momentum oscillator value (0-100)
            take_profit_percent: Final take-profit percent of the tier

        Returns:
            ConfidenceScore with rounded sub-scores and a label
        """
        volatility = volatility_score(atr_percent)
        momentum = momentum_score(rsi)
        depth = drawdown_score(abs(drawdown))
        take_profit = take_profit_score(take_profit_percent)

        overall = (
            volatility * self.weights['volatility']
            + momentum * self.weights['momentum']
            + depth * self.weights['drawdown']
            + take_profit * self.weights['take_profit']
        )

        return ConfidenceScore(
            overall=round(overall),
            volatility=round(volatility),
            momentum=round(momentum),
            drawdown=round(depth),
            take_profit=round(take_profit),
            label=confidence_label(overall)
        )
