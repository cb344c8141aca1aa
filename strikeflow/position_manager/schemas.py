"""
Position Manager Schemas

Positions are immutable snapshots; every state change produces a new
snapshot with a higher version, committed through the store's conditional
update.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from strikeflow.signals.schemas import Direction, utcnow


class PositionStatus(str, Enum):
    """Position lifecycle states (CLOSED is terminal)"""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class AlertPriority(str, Enum):
    """Exit alert urgency"""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


class RecommendedAction(str, Enum):
    CLOSE_POSITION_IMMEDIATELY = "CLOSE_POSITION_IMMEDIATELY"
    CLOSE_POSITION = "CLOSE_POSITION"
    REVIEW_POSITION = "REVIEW_POSITION"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Position:
    """
    Option position (or closed lot of one).

    realized_pnl is set if and only if status is CLOSED.
    """

    id: str
    signal_id: str
    symbol: str
    direction: Direction
    quantity: float
    entry_price: float
    entry_time: datetime
    status: PositionStatus = PositionStatus.OPEN

    current_price: Optional[float] = None
    unrealized_pnl: float = 0.0

    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    realized_pnl: Optional[float] = None

    timeframe: Optional[str] = None
    expiration: Optional[date] = None
    strike: Optional[float] = None

    # Set on closed lots split off by a partial close
    parent_position_id: Optional[str] = None

    version: int = 1
    claim_token: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def mark_price(self) -> float:
        """Last refreshed price, or the entry price before any refresh"""
        return self.current_price if self.current_price is not None else self.entry_price

    @property
    def cost_basis(self) -> float:
        return self.entry_price * self.quantity

    def pnl_at(self, price: float) -> float:
        return (price - self.entry_price) * self.quantity

    def pnl_percent_at(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0

    def days_to_expiration(self, today: date) -> Optional[int]:
        if self.expiration is None:
            return None
        return (self.expiration - today).days

    def evolve(self, **changes) -> 'Position':
        """New snapshot with changes applied and the version bumped"""
        changes.setdefault('version', self.version + 1)
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'id': self.id,
            'signal_id': self.signal_id,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'quantity': float(self.quantity),
            'entry_price': float(self.entry_price),
            'entry_time': _iso(self.entry_time),
            'status': self.status.value,
            'current_price': self.current_price,
            'unrealized_pnl': float(self.unrealized_pnl),
            'exit_price': self.exit_price,
            'exit_time': _iso(self.exit_time),
            'realized_pnl': self.realized_pnl,
            'timeframe': self.timeframe,
            'expiration': _iso(self.expiration),
            'strike': self.strike,
            'parent_position_id': self.parent_position_id,
            'version': self.version,
            'claimed': self.claim_token is not None,
            'updated_at': _iso(self.updated_at),
        }


@dataclass
class CloseResult:
    """
    Outcome of close_position.

    closed_lot carries the exited quantity and its realized P&L. For a full
    close it is the position itself; for a partial close it is a new lot and
    `remaining` is the still-open position.
    """

    closed_lot: Position
    remaining: Optional[Position] = None
    order_id: Optional[str] = None

    @property
    def fully_closed(self) -> bool:
        return self.remaining is None

    @property
    def realized_pnl(self) -> float:
        return float(self.closed_lot.realized_pnl or 0.0)

    def to_dict(self) -> dict:
        return {
            'closed_lot': self.closed_lot.to_dict(),
            'remaining': self.remaining.to_dict() if self.remaining else None,
            'fully_closed': self.fully_closed,
            'realized_pnl': self.realized_pnl,
            'order_id': self.order_id,
        }


@dataclass
class ExitAlert:
    """Exit condition raised by the monitor for one position"""

    position_id: str
    symbol: str
    direction: Direction
    quantity: float
    entry_price: float
    current_price: float
    unrealized_pnl: float
    unrealized_pnl_percent: float
    priority: AlertPriority
    reason: str
    recommended_action: RecommendedAction
    details: Dict[str, Any] = field(default_factory=dict)
    auto_closed: bool = False
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'position_id': self.position_id,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'quantity': float(self.quantity),
            'entry_price': float(self.entry_price),
            'current_price': float(self.current_price),
            'unrealized_pnl': float(self.unrealized_pnl),
            'unrealized_pnl_percent': float(self.unrealized_pnl_percent),
            'priority': self.priority.value,
            'reason': self.reason,
            'recommended_action': self.recommended_action.value,
            'details': dict(self.details),
            'auto_closed': bool(self.auto_closed),
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class ExitMonitorReport:
    """Statistics for one monitor pass"""

    positions_monitored: int = 0
    alerts: List[ExitAlert] = field(default_factory=list)
    exits_executed: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    duration_ms: float = 0.0

    def count(self, priority: AlertPriority) -> int:
        return sum(1 for a in self.alerts if a.priority is priority)

    def to_dict(self) -> dict:
        return {
            'positions_monitored': self.positions_monitored,
            'alerts_generated': len(self.alerts),
            'exits_executed': self.exits_executed,
            'critical_alerts': self.count(AlertPriority.CRITICAL),
            'high_alerts': self.count(AlertPriority.HIGH),
            'medium_alerts': self.count(AlertPriority.MEDIUM),
            'alerts': [a.to_dict() for a in self.alerts],
            'errors': list(self.errors),
            'started_at': self.started_at.isoformat(),
            'duration_ms': float(self.duration_ms),
        }
