"""
Signal Schemas

Canonical signal, validation result and pipeline failure records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class SignalSource(str, Enum):
    """Where a signal originated"""
    TRADINGVIEW = "TRADINGVIEW"
    GEX = "GEX"
    MTF = "MTF"
    MANUAL = "MANUAL"


class Direction(str, Enum):
    """Option direction (both are long premium positions)"""
    CALL = "CALL"
    PUT = "PUT"

    @property
    def bullish(self) -> bool:
        return self is Direction.CALL


class PipelineStage(str, Enum):
    """Pipeline stages, in processing order"""
    RECEPTION = "RECEPTION"
    NORMALIZATION = "NORMALIZATION"
    VALIDATION = "VALIDATION"
    DEDUPLICATION = "DEDUPLICATION"
    DECISION = "DECISION"
    EXECUTION = "EXECUTION"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Signal:
    """
    Canonical trading signal.

    Created only by SignalNormalizer. `id` is the tracking ID carried
    through every later stage and failure record.
    """

    id: str
    source: SignalSource
    symbol: str
    direction: Direction
    timeframe: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    payload_hash: str = ""
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'id': self.id,
            'source': self.source.value,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'timeframe': self.timeframe,
            'timestamp': self.timestamp.isoformat(),
            'metadata': dict(self.metadata),
            'payload_hash': self.payload_hash,
            'received_at': self.received_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Signal':
        """Rebuild a Signal from to_dict() output"""
        return cls(
            id=data['id'],
            source=SignalSource(data['source']),
            symbol=data['symbol'],
            direction=Direction(data['direction']),
            timeframe=data['timeframe'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            metadata=dict(data.get('metadata') or {}),
            payload_hash=data.get('payload_hash', ''),
            received_at=datetime.fromisoformat(data['received_at']) if data.get('received_at') else utcnow(),
        )


@dataclass
class ValidationResult:
    """Outcome of the validation gate battery"""

    valid: bool
    checks: Dict[str, bool] = field(default_factory=dict)
    rejection_reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'valid': bool(self.valid),
            'checks': dict(self.checks),
            'rejection_reason': self.rejection_reason,
            'details': dict(self.details),
        }


@dataclass
class PipelineFailure:
    """
    Durable record of a signal that failed a pipeline stage.

    Exactly one is created per failing signal.
    """

    tracking_id: str
    stage: PipelineStage
    reason: str
    signal_id: Optional[str] = None
    signal_data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'tracking_id': self.tracking_id,
            'stage': self.stage.value,
            'reason': self.reason,
            'signal_id': self.signal_id,
            'signal_data': dict(self.signal_data),
            'timestamp': self.timestamp.isoformat(),
        }


def direction_value(value: Any) -> str:
    """'CALL'/'PUT' from a Direction or a raw string"""
    if isinstance(value, Enum):
        return str(value.value)
    return str(value).strip().upper()
