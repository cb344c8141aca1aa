"""
Pipeline Output Schemas
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from strikeflow.decision_engine.schemas import DecisionResult
from strikeflow.position_manager.schemas import Position
from strikeflow.signals.schemas import PipelineStage, Signal, utcnow


@dataclass
class PipelineResult:
    """
    Outcome of processing one raw signal.

    `stage` is the last stage reached: the failing stage when success is
    False, EXECUTION (position opened) when True.
    """

    success: bool
    tracking_id: str
    stage: PipelineStage
    signal: Optional[Signal] = None
    decision: Optional[DecisionResult] = None
    position: Optional[Position] = None
    failure_reason: Optional[str] = None
    processing_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'success': bool(self.success),
            'tracking_id': self.tracking_id,
            'stage': self.stage.value,
            'signal': self.signal.to_dict() if self.signal else None,
            'decision': self.decision.to_dict() if self.decision else None,
            'position': self.position.to_dict() if self.position else None,
            'failure_reason': self.failure_reason,
            'processing_time_ms': float(self.processing_time_ms),
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class PipelineHealth:
    """Health metrics for pipeline monitoring"""

    signals_processed: int = 0
    signals_succeeded: int = 0
    signals_failed: int = 0

    failures_by_stage: Dict[str, int] = field(default_factory=dict)
    decisions_by_type: Dict[str, int] = field(default_factory=dict)
    positions_opened: int = 0

    batches_processed: int = 0
    batch_items_abandoned: int = 0

    avg_processing_time_ms: float = 0.0
    last_processed: Optional[datetime] = None
    degraded_services: List[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.signals_processed == 0:
            return 0.0
        return self.signals_succeeded / self.signals_processed

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'signals_processed': self.signals_processed,
            'signals_succeeded': self.signals_succeeded,
            'signals_failed': self.signals_failed,
            'success_rate': round(self.success_rate, 4),
            'failures_by_stage': dict(self.failures_by_stage),
            'decisions_by_type': dict(self.decisions_by_type),
            'positions_opened': self.positions_opened,
            'batches_processed': self.batches_processed,
            'batch_items_abandoned': self.batch_items_abandoned,
            'avg_processing_time_ms': round(self.avg_processing_time_ms, 3),
            'last_processed': self.last_processed.isoformat() if self.last_processed else None,
            'degraded_services': list(self.degraded_services),
        }
