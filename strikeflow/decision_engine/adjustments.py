"""
Confidence Adjustments

The three layered terms added to base confidence. Each function returns
the clamped term and the reasoning lines that explain it.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from strikeflow.decision_engine.config import ConfidenceConfig, GexConfig
from strikeflow.market_data.schemas import GexSignal, MarketContext, Positioning, Regime, Trend
from strikeflow.signals.schemas import Direction, direction_value

Adjustment = Tuple[float, List[str]]

# Context
LOW_VIX = 15.0
HIGH_VIX = 30.0
LOW_VIX_BONUS = 5.0
HIGH_VIX_PENALTY = -10.0
TREND_ALIGNED_BONUS = 10.0
TREND_COUNTER_PENALTY = -20.0
BIAS_THRESHOLD = 0.5
BIAS_ADJUSTMENT = 5.0
REGIME_ADJUSTMENT = {Regime.LOW_VOL: 5.0, Regime.NORMAL: 0.0, Regime.HIGH_VOL: -5.0}

# Positioning
PUT_CALL_ADJUSTMENT = 5.0
LEVEL_ADJUSTMENT = 5.0


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sign_for(direction: Direction, bullish: bool) -> float:
    """+1 when a bullish/bearish reading agrees with the direction, else -1"""
    return 1.0 if direction.bullish == bullish else -1.0


def context_adjustment(direction: Direction, context: MarketContext, config: ConfidenceConfig) -> Adjustment:
    """
    VIX level, trend alignment, directional bias and volatility regime.

    Clamped to +/- config.context_adjustment_range.
    """
    total = 0.0
    reasons = []

    if context.vix < LOW_VIX:
        total += LOW_VIX_BONUS
        reasons.append(f"Low VIX ({context.vix:.1f}): {LOW_VIX_BONUS:+.0f}")
    elif context.vix > HIGH_VIX:
        total += HIGH_VIX_PENALTY
        reasons.append(f"High VIX ({context.vix:.1f}): {HIGH_VIX_PENALTY:+.0f}")

    if context.trend is not Trend.NEUTRAL:
        if _sign_for(direction, context.trend is Trend.BULLISH) > 0:
            total += TREND_ALIGNED_BONUS
            reasons.append(f"Trend aligned ({context.trend.value}): {TREND_ALIGNED_BONUS:+.0f}")
        else:
            total += TREND_COUNTER_PENALTY
            reasons.append(f"Counter-trend ({context.trend.value}): {TREND_COUNTER_PENALTY:+.0f}")

    if abs(context.bias) > BIAS_THRESHOLD:
        value = BIAS_ADJUSTMENT * _sign_for(direction, context.bias > 0)
        total += value
        reasons.append(f"Market bias {context.bias:+.2f}: {value:+.0f}")

    regime_value = REGIME_ADJUSTMENT.get(context.regime, 0.0)
    if regime_value:
        total += regime_value
        reasons.append(f"Regime {context.regime.value}: {regime_value:+.0f}")

    limit = config.context_adjustment_range
    clamped = clamp(total, -limit, limit)
    if clamped != total:
        reasons.append(f"Context adjustment clamped {total:+.1f} -> {clamped:+.1f}")
    return clamped, reasons


def positioning_adjustment(
    direction: Direction,
    positioning: Positioning,
    price: Optional[float],
    config: ConfidenceConfig,
    gex_config: GexConfig,
) -> Adjustment:
    """
    Put/call skew and proximity to support/resistance.

    Clamped to +/- config.positioning_adjustment_range.
    """
    total = 0.0
    reasons = []

    ratio = positioning.put_call_ratio
    if ratio is not None:
        if ratio >= gex_config.bearish_put_call_ratio:
            value = PUT_CALL_ADJUSTMENT * _sign_for(direction, bullish=False)
            total += value
            reasons.append(f"Put/call ratio {ratio:.2f} bearish: {value:+.0f}")
        elif ratio <= gex_config.bullish_put_call_ratio:
            value = PUT_CALL_ADJUSTMENT * _sign_for(direction, bullish=True)
            total += value
            reasons.append(f"Put/call ratio {ratio:.2f} bullish: {value:+.0f}")

    if price:
        proximity = gex_config.level_proximity_pct / 100.0
        if positioning.support and abs(price - positioning.support) / price <= proximity:
            # Near support favours calls
            value = LEVEL_ADJUSTMENT * _sign_for(direction, bullish=True)
            total += value
            reasons.append(f"Price near support {positioning.support:.2f}: {value:+.0f}")
        if positioning.resistance and abs(positioning.resistance - price) / price <= proximity:
            value = LEVEL_ADJUSTMENT * _sign_for(direction, bullish=False)
            total += value
            reasons.append(f"Price near resistance {positioning.resistance:.2f}: {value:+.0f}")

    limit = config.positioning_adjustment_range
    clamped = clamp(total, -limit, limit)
    if clamped != total:
        reasons.append(f"Positioning adjustment clamped {total:+.1f} -> {clamped:+.1f}")
    return clamped, reasons


def gex_adjustment(
    direction: Direction,
    gex: GexSignal,
    now: datetime,
    config: ConfidenceConfig,
    gex_config: GexConfig,
) -> Adjustment:
    """
    strength * weight * range, negative when GEX points the other way.

    Weight drops by stale_weight_reduction once the reading is older than
    max_stale_minutes.
    """
    reasons = []
    weight = 1.0
    age = gex.age_minutes(now)
    if age > gex_config.max_stale_minutes:
        weight = 1.0 - gex_config.stale_weight_reduction
        reasons.append(f"GEX signal stale ({age:.0f} min), weight {weight:.2f}")

    strength = clamp(float(gex.strength), 0.0, 1.0)
    aligned = direction_value(gex.direction) == direction.value
    value = strength * weight * config.gex_adjustment_range * (1.0 if aligned else -1.0)

    limit = config.gex_adjustment_range
    value = clamp(value, -limit, limit)
    reasons.append(
        f"GEX {'aligned' if aligned else 'opposed'} (strength {strength:.2f}): {value:+.1f}"
    )
    return value, reasons
