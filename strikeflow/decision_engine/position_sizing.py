"""
Position Sizing

Confidence-scaled fractional Kelly sizing with regime and confluence
multipliers.

    size = base_size * kelly * regime * confluence
    kelly      = 1 + (confidence / 100) * kelly_fraction
    regime     = LOW_VOL 1.2 / NORMAL 1.0 / HIGH_VOL 0.7
                 (times vix_position_size_reduction when VIX is elevated)
    confluence = confluence_floor + confluence_span * score

The product is capped at min(caller ceiling, max_size). Contracts are
whole numbers unless whole_contracts is disabled.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import math

from strikeflow.decision_engine.config import RiskConfig, SizingConfig
from strikeflow.market_data.schemas import Regime


@dataclass
class SizingResult:
    """Result from a sizing calculation"""
    base_sizing: float
    kelly_multiplier: float
    regime_multiplier: float
    confluence_multiplier: float
    raw_size: float
    final_size: float
    position_size: float
    ceiling: float
    is_valid: bool
    rejection_reason: Optional[str] = None
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'base_sizing': float(self.base_sizing),
            'kelly_multiplier': float(self.kelly_multiplier),
            'regime_multiplier': float(self.regime_multiplier),
            'confluence_multiplier': float(self.confluence_multiplier),
            'raw_size': float(self.raw_size),
            'final_size': float(self.final_size),
            'position_size': float(self.position_size),
            'ceiling': float(self.ceiling),
            'is_valid': bool(self.is_valid),
            'rejection_reason': self.rejection_reason,
        }


class PositionSizer:
    """Sizing calculator"""

    def __init__(self, config: Optional[SizingConfig] = None, risk_config: Optional[RiskConfig] = None):
        self.config = config or SizingConfig()
        self.risk_config = risk_config or RiskConfig()

    def kelly_multiplier(self, confidence: float) -> float:
        return 1.0 + (confidence / 100.0) * self.config.kelly_fraction

    def regime_multiplier(self, regime: Regime, vix: Optional[float] = None) -> float:
        multiplier = self.config.regime_multipliers.get(regime.value, 1.0)
        if vix is not None and vix > self.risk_config.high_vix_threshold:
            multiplier *= self.risk_config.vix_position_size_reduction
        return multiplier

    def confluence_multiplier(self, score: float) -> float:
        score = max(0.0, min(1.0, score))
        return self.config.confluence_floor + self.config.confluence_span * score

    def calculate(
        self,
        confidence: float,
        regime: Regime,
        confluence_score: float,
        vix: Optional[float] = None,
        max_size: Optional[float] = None,
    ) -> SizingResult:
        """
        Size a position.

        Args:
            confidence: Final clamped confidence (0-100)
            regime: Volatility regime
            confluence_score: 0-1 agreement score
            vix: Current VIX (applies the elevated-VIX reduction)
            max_size: Caller ceiling, combined with config max_size

        Returns:
            SizingResult; is_valid is False when the size rounds below min_size
        """
        base = self.config.base_size
        kelly = self.kelly_multiplier(confidence)
        regime_mult = self.regime_multiplier(regime, vix)
        confluence_mult = self.confluence_multiplier(confluence_score)

        ceiling = self.config.max_size if max_size is None else min(max_size, self.config.max_size)
        raw_size = base * kelly * regime_mult * confluence_mult
        final_size = min(raw_size, ceiling)
        position_size = math.floor(final_size) if self.config.whole_contracts else final_size

        reasons = [
            f"Size {base:g} x kelly {kelly:.3f} x regime {regime_mult:.2f} x confluence "
            f"{confluence_mult:.2f} = {raw_size:.3f}"
        ]
        if final_size < raw_size:
            reasons.append(f"Size capped at {ceiling:g}")
        if vix is not None and vix > self.risk_config.high_vix_threshold:
            reasons.append(f"Elevated VIX {vix:.1f}: size reduced x{self.risk_config.vix_position_size_reduction:g}")

        is_valid = position_size > 0 and position_size >= self.config.min_size
        rejection_reason = None
        if not is_valid:
            rejection_reason = f"Position size {position_size:g} below minimum {self.config.min_size:g}"

        return SizingResult(
            base_sizing=base,
            kelly_multiplier=kelly,
            regime_multiplier=regime_mult,
            confluence_multiplier=confluence_mult,
            raw_size=raw_size,
            final_size=final_size,
            position_size=position_size,
            ceiling=ceiling,
            is_valid=is_valid,
            rejection_reason=rejection_reason,
            reasons=reasons,
        )
