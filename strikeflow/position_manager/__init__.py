"""
Position Manager

Owns the position lifecycle once an ENTER decision has been made.

State machine:
    OPEN -> CLOSED (terminal)
    Partial closes split off CLOSED lots; the remainder stays OPEN.

Responsibilities:
    1. Open positions from ENTER decisions (one per signal)
    2. Refresh prices and unrealized P&L
    3. Close fully or partially behind an atomic claim
    4. Monitor open positions and raise prioritized exit alerts

Flow:
    Decision Engine -> Position Manager -> Execution Adapter
"""

from strikeflow.position_manager.config import PositionManagerConfig
from strikeflow.position_manager.schemas import (
    Position,
    PositionStatus,
    CloseResult,
    ExitAlert,
    ExitMonitorReport,
    AlertPriority,
    RecommendedAction,
)
from strikeflow.position_manager.manager import PositionManager
from strikeflow.position_manager.exit_monitor import ExitMonitor, alert_priority

__version__ = "1.0.0"

__all__ = [
    'PositionManagerConfig',
    'Position',
    'PositionStatus',
    'CloseResult',
    'ExitAlert',
    'ExitMonitorReport',
    'AlertPriority',
    'RecommendedAction',
    'PositionManager',
    'ExitMonitor',
    'alert_priority',
]
