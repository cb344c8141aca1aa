"""
Decision Engine Schemas

Decision records are immutable audit entries: every number that went into
a decision is kept in `calculations` so the outcome can be replayed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
import uuid

from strikeflow.signals.schemas import Signal, utcnow


class Decision(str, Enum):
    """Decision outcomes (entry path: ENTER/REJECT, exit path: EXIT/HOLD)"""
    ENTER = "ENTER"
    REJECT = "REJECT"
    EXIT = "EXIT"
    HOLD = "HOLD"


class ExitReason(str, Enum):
    """Exit rules, in evaluation priority order"""
    PROFIT_TARGET = "PROFIT_TARGET"
    STOP_LOSS = "STOP_LOSS"
    GEX_FLIP = "GEX_FLIP"
    TIME_EXIT = "TIME_EXIT"


class TimeExitTrigger(str, Enum):
    """Which time rule produced a TIME_EXIT"""
    EXPIRATION_IMMINENT = "EXPIRATION_IMMINENT"  # expires today
    EXPIRATION_SOON = "EXPIRATION_SOON"
    SESSION_CLOSE = "SESSION_CLOSE"
    MAX_HOLD_TIME = "MAX_HOLD_TIME"


@dataclass(frozen=True)
class DecisionCalculations:
    """
    Entry decision math.

    final_confidence = clamp(base + context + positioning + gex, 0, 100)
    final_size = min(base_sizing * kelly * regime * confluence, ceiling)
    """

    base_confidence: float = 0.0
    context_adjustment: float = 0.0
    positioning_adjustment: float = 0.0
    gex_adjustment: float = 0.0
    final_confidence: float = 0.0
    base_sizing: float = 0.0
    kelly_multiplier: float = 0.0
    regime_multiplier: float = 0.0
    confluence_multiplier: float = 0.0
    final_size: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'base_confidence': float(self.base_confidence),
            'context_adjustment': float(self.context_adjustment),
            'positioning_adjustment': float(self.positioning_adjustment),
            'gex_adjustment': float(self.gex_adjustment),
            'final_confidence': float(self.final_confidence),
            'base_sizing': float(self.base_sizing),
            'kelly_multiplier': float(self.kelly_multiplier),
            'regime_multiplier': float(self.regime_multiplier),
            'confluence_multiplier': float(self.confluence_multiplier),
            'final_size': float(self.final_size),
        }


@dataclass(frozen=True)
class ExitCalculations:
    """Exit rule evaluation"""

    profit_target: bool = False
    stop_loss: bool = False
    gex_flip: bool = False
    time_exit: bool = False
    current_pnl: float = 0.0
    current_pnl_percent: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'profit_target': bool(self.profit_target),
            'stop_loss': bool(self.stop_loss),
            'gex_flip': bool(self.gex_flip),
            'time_exit': bool(self.time_exit),
            'current_pnl': float(self.current_pnl),
            'current_pnl_percent': float(self.current_pnl_percent),
        }


@dataclass(frozen=True)
class DecisionResult:
    """Outcome of one entry or exit evaluation"""

    decision: Decision
    confidence: float = 0.0
    position_size: float = 0.0
    reasoning: List[str] = field(default_factory=list)
    calculations: DecisionCalculations = field(default_factory=DecisionCalculations)
    signal: Optional[Signal] = None

    reference_price: Optional[float] = None
    degraded_inputs: List[str] = field(default_factory=list)

    # Exit path
    position_id: Optional[str] = None
    exit_reason: Optional[ExitReason] = None
    time_exit_trigger: Optional[TimeExitTrigger] = None
    exit_calculations: Optional[ExitCalculations] = None

    config_hash: str = ""
    decision_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_entry(self) -> bool:
        return self.decision is Decision.ENTER

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'decision_id': self.decision_id,
            'decision': self.decision.value,
            'confidence': float(self.confidence),
            'position_size': float(self.position_size),
            'reasoning': list(self.reasoning),
            'calculations': self.calculations.to_dict(),
            'signal_id': self.signal.id if self.signal else None,
            'symbol': self.signal.symbol if self.signal else None,
            'reference_price': self.reference_price,
            'degraded_inputs': list(self.degraded_inputs),
            'position_id': self.position_id,
            'exit_reason': self.exit_reason.value if self.exit_reason else None,
            'time_exit_trigger': self.time_exit_trigger.value if self.time_exit_trigger else None,
            'exit_calculations': self.exit_calculations.to_dict() if self.exit_calculations else None,
            'config_hash': self.config_hash,
            'created_at': self.created_at.isoformat(),
        }
