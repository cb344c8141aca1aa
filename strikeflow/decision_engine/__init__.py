"""
Decision Engine

Turns validated signals into ENTER/REJECT decisions and open positions into
EXIT/HOLD decisions.

Confidence is layered:
    final = clamp(base + context + positioning + GEX, 0, 100)

Sizing is multiplicative:
    size = min(base x kelly x regime x confluence, ceiling)

Every decision carries its full calculation record and an ordered
reasoning trail, and is persisted as an audit entry.
"""

from strikeflow.decision_engine.config import (
    DecisionEngineConfig,
    ConfidenceConfig,
    SizingConfig,
    RiskConfig,
    GexConfig,
    ExitConfig,
)
from strikeflow.decision_engine.schemas import (
    Decision,
    DecisionResult,
    DecisionCalculations,
    ExitCalculations,
    ExitReason,
    TimeExitTrigger,
)
from strikeflow.decision_engine.confluence import ConfluenceCalculator
from strikeflow.decision_engine.degraded_mode import DegradedModeTracker
from strikeflow.decision_engine.position_sizing import PositionSizer, SizingResult
from strikeflow.decision_engine.orchestrator import DecisionOrchestrator

__version__ = "1.0.0"

__all__ = [
    'DecisionEngineConfig',
    'ConfidenceConfig',
    'SizingConfig',
    'RiskConfig',
    'GexConfig',
    'ExitConfig',
    'Decision',
    'DecisionResult',
    'DecisionCalculations',
    'ExitCalculations',
    'ExitReason',
    'TimeExitTrigger',
    'ConfluenceCalculator',
    'DegradedModeTracker',
    'PositionSizer',
    'SizingResult',
    'DecisionOrchestrator',
]
