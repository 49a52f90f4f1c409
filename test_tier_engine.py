#!/usr/bin/env python3
"""
Tests for tier classification and the diagnostic confidence score.
"""

import pytest

from drawdown_trading.confidence import (
    ConfidenceScorer,
    confidence_label,
    drawdown_score,
    momentum_score,
    volatility_score,
)
from drawdown_trading.models import MarketSignals
from drawdown_trading.tier_engine import (
    StaticSignalProvider,
    TierEngine,
    atr_adjustment,
    rsi_adjustment,
)

BOUNDARY_DRAWDOWNS = [0, 5, 14.99, 15, 15.01, 19.99, 20, 20.01, 24.99, 25, 25.01, 29.99, 30, 30.01, 45, 80]


@pytest.fixture
def engine(cfg):
    return TierEngine(cfg)


# =============================================================================
# ADJUSTMENTS
# =============================================================================

@pytest.mark.parametrize('rsi,expected', [
    (50, 1.3),
    (30, 1.3),
    (70, 0.7),
    (10, 1.3),
    (90, 0.7),
    (40, 1.15),
    (60, 1.15),
])
def test_rsi_adjustment(rsi, expected):
    assert rsi_adjustment(rsi) == pytest.approx(expected)


def test_rsi_adjustment_just_inside_boundaries_is_close_to_one():
    assert rsi_adjustment(30.01) == pytest.approx(1.0, abs=0.001)
    assert rsi_adjustment(69.99) == pytest.approx(1.0, abs=0.001)


@pytest.mark.parametrize('atr,expected', [(0, 0.8), (500, 0.8), (1000, 1.0), (1200, 1.2), (5000, 1.5)])
def test_atr_adjustment_is_clamped(atr, expected):
    assert atr_adjustment(atr) == pytest.approx(expected)


# =============================================================================
# CLASSIFICATION
# =============================================================================

def test_scenario_light_tier(engine):
    tier = engine.classify(-14.58, 41000.0)

    assert tier.name == 'Correction légère ATR+RSI'
    assert tier.key == 'light'
    assert tier.capital_base_percent == 10.0
    # Static signals: RSI 50 (x1.3), ATR 820 (clamped to 0.8)
    assert tier.capital_percent == pytest.approx(13.0)
    assert tier.take_profit_percent == pytest.approx(8.0 * 1.3 * 0.8)
    assert tier.atr_value == pytest.approx(820.0)
    assert tier.drawdown_min == pytest.approx(-16.58)
    assert tier.drawdown_max == pytest.approx(-12.58)


@pytest.mark.parametrize('drawdown,key', [
    (None, 'light'), (0, 'light'), (-15, 'light'), (-15.01, 'moderate'), (-20, 'moderate'),
    (-22, 'strong'), (-25, 'strong'), (-27, 'bear'), (-30, 'bear'), (-30.5, 'crisis'), (-90, 'crisis'),
])
def test_every_drawdown_maps_to_a_band(engine, drawdown, key):
    assert engine.classify(drawdown, 40000.0).key == key


def test_classification_is_monotonic_in_drawdown(engine):
    tiers = [engine.classify(-d, 40000.0) for d in BOUNDARY_DRAWDOWNS]
    for previous, current in zip(tiers, tiers[1:]):
        assert current.capital_base_percent >= previous.capital_base_percent
        assert current.take_profit_base_percent >= previous.take_profit_base_percent
        assert current.drawdown_factor >= previous.drawdown_factor


def test_sign_of_drawdown_does_not_matter(engine):
    assert engine.classify(-22.0, 40000.0).key == engine.classify(22.0, 40000.0).key


@pytest.mark.parametrize('drawdown', BOUNDARY_DRAWDOWNS)
@pytest.mark.parametrize('rsi', [0, 10, 29.9, 30, 45, 50, 55, 70, 85, 100])
@pytest.mark.parametrize('atr', [0, 300, 800, 1000, 2500, 100000])
def test_outputs_stay_within_clamps(engine, drawdown, rsi, atr):
    tier = engine.classify(-drawdown, 40000.0, MarketSignals(atr=atr, rsi=rsi))
    assert 5.0 <= tier.capital_percent <= 70.0
    assert 5.0 <= tier.take_profit_percent <= 200.0


def test_crisis_capital_is_capped(engine):
    tier = engine.classify(-60.0, 40000.0, MarketSignals(atr=2000, rsi=20))
    # 50 x 2.5 x 1.3 = 162.5 -> 70
    assert tier.capital_percent == 70.0


def test_classification_is_deterministic(engine):
    first = engine.classify(-23.4, 38500.0)
    second = engine.classify(-23.4, 38500.0)
    assert first == second


def test_signal_provider_is_pluggable(cfg):
    engine = TierEngine(cfg, signal_provider=StaticSignalProvider(atr_pct_of_price=0.05, rsi=80))
    tier = engine.classify(-10.0, 40000.0)
    assert tier.rsi_value == 80
    assert tier.atr_value == pytest.approx(2000.0)
    assert tier.rsi_adjustment == 0.7


# =============================================================================
# CONFIDENCE
# =============================================================================

def test_sub_scores():
    assert volatility_score(2.0) == 70
    assert volatility_score(10.0) == 0
    assert momentum_score(50) == 60
    assert momentum_score(80) == 40
    assert momentum_score(40) == 50
    assert momentum_score(20) == 20
    assert momentum_score(0) == 0
    assert drawdown_score(0) == 90
    assert drawdown_score(10) == 50
    assert drawdown_score(20) == 15
    assert drawdown_score(40) == 0


@pytest.mark.parametrize('score,label', [
    (95, 'very high'), (80, 'very high'), (79.9, 'high'), (60, 'high'),
    (45, 'medium'), (20, 'low'), (19.9, 'very low'), (0, 'very low'),
])
def test_confidence_labels(score, label):
    assert confidence_label(score) == label


def test_weighted_overall_score():
    score = ConfidenceScorer().score(drawdown=-14.58, atr_percent=2.0, rsi=50, take_profit_percent=8.32)
    # 70*0.20 + 60*0.25 + 31.68*0.40 + 24.96*0.15
    assert score.volatility == 70
    assert score.momentum == 60
    assert score.drawdown == 32
    assert score.take_profit == 25
    assert score.overall == round(70 * 0.20 + 60 * 0.25 + 31.68 * 0.40 + 24.96 * 0.15)
    assert score.label == 'medium'


def test_tier_carries_confidence(engine):
    tier = engine.classify(-14.58, 41000.0)
    assert tier.confidence is not None
    assert 0 <= tier.confidence.overall <= 100
