"""
Market Data Schemas

Context, positioning and exit-time snapshots consumed by the decision engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Trend(str, Enum):
    """Broad market trend"""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class Regime(str, Enum):
    """Volatility regime"""
    LOW_VOL = "LOW_VOL"
    NORMAL = "NORMAL"
    HIGH_VOL = "HIGH_VOL"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class MarketContext:
    """
    Base market context.

    Required for every entry decision. Missing context rejects the entry.
    """

    vix: float
    trend: Trend = Trend.NEUTRAL
    regime: Regime = Regime.NORMAL
    bias: float = 0.0  # -1 (bearish) .. 1 (bullish)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'vix': float(self.vix),
            'trend': self.trend.value,
            'regime': self.regime.value,
            'bias': float(self.bias),
            'timestamp': _iso(self.timestamp),
        }


@dataclass
class GexSignal:
    """Gamma exposure directional signal"""

    symbol: str
    strength: float  # 0-1
    direction: str  # CALL / PUT
    timeframe: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    # True when the dealer gamma direction changed since the previous reading
    flipped: bool = False

    def age_minutes(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds() / 60.0

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'symbol': self.symbol,
            'strength': float(self.strength),
            'direction': self.direction,
            'timeframe': self.timeframe,
            'timestamp': _iso(self.timestamp),
            'flipped': bool(self.flipped),
        }


@dataclass
class Positioning:
    """Options positioning snapshot for one symbol"""

    symbol: str
    gex: Optional[GexSignal] = None
    put_call_ratio: Optional[float] = None
    support: Optional[float] = None
    resistance: Optional[float] = None
    max_pain: Optional[float] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'symbol': self.symbol,
            'gex': self.gex.to_dict() if self.gex else None,
            'put_call_ratio': self.put_call_ratio,
            'support': self.support,
            'resistance': self.resistance,
            'max_pain': self.max_pain,
            'timestamp': _iso(self.timestamp),
        }


@dataclass
class ExitMarketData:
    """Market snapshot used to evaluate exit rules for one position"""

    price: float
    as_of: datetime = field(default_factory=_utcnow)
    days_to_expiration: Optional[int] = None
    positioning: Optional[Positioning] = None
    extra: Dict[str, Any] = field(default_factory=dict)
