# drawdown_trading/tier_engine.py
"""
Tier Engine

Maps a drawdown (plus ATR/RSI signals) to one of five named risk tiers, each
carrying a capital-allocation percent and a take-profit percent.

Bands by |drawdown|:
    <= 15%  light     base 10%  factor 1.0  take-profit base  8%
    <= 20%  moderate  base 20%  factor 1.2  take-profit base 12%
    <= 25%  strong    base 30%  factor 1.5  take-profit base 18%
    <= 30%  bear      base 40%  factor 2.0  take-profit base 25%
    >  30%  crisis    base 50%  factor 2.5  take-profit base 35%

Every drawdown, including zero, maps to a tier. Deterministic: no randomness,
no I/O.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .config import TradingConfig
from .confidence import ConfidenceScorer
from .models import MarketSignals, Tier
from .utils import clamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierBand:
    key: str
    name: str
    max_drawdown: Optional[float]
    capital_base_percent: float
    drawdown_factor: float
    take_profit_base_percent: float


TIER_BANDS: List[TierBand] = [
    TierBand('light', 'Correction légère ATR+RSI', 15.0, 10.0, 1.0, 8.0),
    TierBand('moderate', 'Correction modérée ATR+RSI', 20.0, 20.0, 1.2, 12.0),
    TierBand('strong', 'Correction forte ATR+RSI', 25.0, 30.0, 1.5, 18.0),
    TierBand('bear', 'Bear market ATR+RSI', 30.0, 40.0, 2.0, 25.0),
    TierBand('crisis', 'Crise majeure ATR+RSI', None, 50.0, 2.5, 35.0),
]

# Half-width of the informational drawdown band stored on a Tier
DRAWDOWN_BAND_HALF_WIDTH = 2.0


def band_for(drawdown_abs: float) -> TierBand:
    for band in TIER_BANDS:
        if band.max_drawdown is None or drawdown_abs <= band.max_drawdown:
            return band
    return TIER_BANDS[-1]


def rsi_adjustment(rsi: float) -> float:
    """
    Momentum multiplier applied to capital and take-profit.

    Oversold (<= 30) gives 1.3, overbought (>= 70) gives 0.7; in between it
    peaks at 1.3 for RSI 50 and falls to 1.0 just inside the boundaries.
    """
    if rsi <= 30.0:
        return 1.3
    if rsi >= 70.0:
        return 0.7
    distance_from_neutral = abs(rsi - 50.0) / 20.0
    return 1.0 + 0.3 * (1 - distance_from_neutral)


def atr_adjustment(atr: float) -> float:
    return clamp(atr / 1000.0, 0.8, 1.5)


# =============================================================================
# MARKET SIGNALS
# =============================================================================

class MarketSignalProvider:
    """Supplies ATR and RSI for the current price."""

    def signals(self, price: float) -> MarketSignals:
        raise NotImplementedError


class StaticSignalProvider(MarketSignalProvider):
    """ATR fixed at 2% of price, RSI neutral at 50."""

    def __init__(self, atr_pct_of_price: float = 0.02, rsi: float = 50.0):
        self.atr_pct_of_price = atr_pct_of_price
        self.rsi = rsi

    def signals(self, price: float) -> MarketSignals:
        return MarketSignals(atr=price * self.atr_pct_of_price, rsi=self.rsi)


# =============================================================================
# ENGINE
# =============================================================================

class TierEngine:
    """Classifies a drawdown into a Tier with sized capital and exit target."""

    def __init__(
        self,
        cfg: TradingConfig,
        signal_provider: Optional[MarketSignalProvider] = None,
        scorer: Optional[ConfidenceScorer] = None
    ):
        self.cfg = cfg
        self.signal_provider = signal_provider or StaticSignalProvider()
        self.scorer = scorer or ConfidenceScorer()

    def capital_percent(self, band: TierBand, rsi_adj: float) -> float:
        raw = band.capital_base_percent * band.drawdown_factor * rsi_adj
        return clamp(raw, self.cfg.min_capital_pct, self.cfg.max_capital_pct)

    def take_profit_percent(self, band: TierBand, rsi_adj: float, atr_adj: float) -> float:
        raw = band.take_profit_base_percent * rsi_adj * atr_adj
        return clamp(raw, self.cfg.min_take_profit_pct, self.cfg.max_take_profit_pct)

    def classify(
        self,
        drawdown_percent: Optional[float],
        price: float,
        signals: Optional[MarketSignals] = None
    ) -> Tier:
        """
        Args:
            drawdown_percent: Signed drawdown (e.g. -14.58); None counts as 0
            price: Current consolidated price
            signals: ATR/RSI override; defaults to the signal provider

        Returns:
            Tier
        """
        drawdown = drawdown_percent or 0.0
        drawdown_abs = abs(drawdown)
        band = band_for(drawdown_abs)

        if signals is None:
            signals = self.signal_provider.signals(price)

        rsi_adj = rsi_adjustment(signals.rsi)
        atr_adj = atr_adjustment(signals.atr)
        capital_pct = self.capital_percent(band, rsi_adj)
        take_profit_pct = self.take_profit_percent(band, rsi_adj, atr_adj)

        atr_percent = (signals.atr / price) * 100 if price > 0 else 0.0
        confidence = self.scorer.score(drawdown_abs, atr_percent, signals.rsi, take_profit_pct)

        logger.info(
            f"🏷️ Tier: {band.name} (drawdown {drawdown_abs:.2f}%, factor {band.drawdown_factor}) "
            f"capital {capital_pct:.2f}% take-profit {take_profit_pct:.2f}% "
            f"confidence {confidence.overall} ({confidence.label})"
        )

        return Tier(
            name=band.name,
            key=band.key,
            drawdown_min=drawdown - DRAWDOWN_BAND_HALF_WIDTH,
            drawdown_max=drawdown + DRAWDOWN_BAND_HALF_WIDTH,
            capital_base_percent=band.capital_base_percent,
            drawdown_factor=band.drawdown_factor,
            capital_percent=capital_pct,
            take_profit_base_percent=band.take_profit_base_percent,
            take_profit_percent=take_profit_pct,
            rsi_adjustment=rsi_adj,
            atr_adjustment=atr_adj,
            atr_value=signals.atr,
            rsi_value=signals.rsi,
            confidence=confidence
        )
