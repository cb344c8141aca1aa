"""
Trade Store

Persistence interface for audit records (signals, decisions, failures),
positions and the raw signal queue, plus the in-memory implementation.

Concurrency contract (both implementations):
    - reserve_entry is an atomic insert-if-absent per signal ID
    - reserve_exposure checks open plus reserved exposure against the
      limit and records the new reservation in one step; insert_position
      drops the reservation of the position's signal
    - claim_position succeeds for exactly one caller per (id, version)
      while the position is OPEN and unclaimed
    - commit_close only applies while the caller still holds the claim
    - claim_pending_signals hands each queued payload to one worker;
      requeue_raw_signals and release_stale_signal_claims put claimed
      rows back to PENDING
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import itertools
import threading

from strikeflow.decision_engine.schemas import DecisionResult
from strikeflow.position_manager.schemas import Position, PositionStatus
from strikeflow.signals.schemas import PipelineFailure, PipelineStage, Signal, utcnow

QueuedSignal = Tuple[int, Dict[str, Any]]


class TradeStore(ABC):
    """Persistence interface"""

    # Audit records
    @abstractmethod
    def save_signal(self, signal: Signal):
        pass

    @abstractmethod
    def get_signal(self, signal_id: str) -> Optional[Signal]:
        pass

    @abstractmethod
    def get_recent_signals(self, symbol: str, timeframe: str, since: datetime) -> List[Signal]:
        pass

    @abstractmethod
    def save_decision(self, decision: DecisionResult):
        pass

    @abstractmethod
    def get_decisions(self, signal_id: Optional[str] = None, position_id: Optional[str] = None) -> List[dict]:
        pass

    @abstractmethod
    def save_failure(self, failure: PipelineFailure):
        pass

    @abstractmethod
    def get_failures(
        self,
        tracking_id: Optional[str] = None,
        stage: Optional[PipelineStage] = None,
        since: Optional[datetime] = None,
    ) -> List[PipelineFailure]:
        pass

    @abstractmethod
    def delete_failures_before(self, cutoff: datetime) -> int:
        pass

    # Raw signal queue
    @abstractmethod
    def enqueue_raw_signal(self, payload: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def claim_pending_signals(self, worker_id: str, limit: int) -> List[QueuedSignal]:
        pass

    @abstractmethod
    def complete_raw_signal(self, queue_id: int, tracking_id: str, success: bool):
        pass

    @abstractmethod
    def count_pending_signals(self) -> int:
        pass

    @abstractmethod
    def requeue_raw_signals(self, queue_ids: List[int]) -> int:
        """Return claimed (PROCESSING) rows to PENDING"""

    @abstractmethod
    def release_stale_signal_claims(self, claimed_before: datetime) -> int:
        """Return rows claimed before the cutoff and never completed to PENDING"""

    # Positions
    @abstractmethod
    def reserve_entry(self, signal_id: str) -> bool:
        """Atomically reserve the right to open a position for signal_id"""

    @abstractmethod
    def release_entry(self, signal_id: str):
        pass

    @abstractmethod
    def reserve_exposure(self, signal_id: str, notional: float, limit: float, multiplier: float) -> bool:
        """
        Reserve notional for an entry in flight.

        Succeeds only if open exposure (mark x quantity x multiplier) plus
        all outstanding reservations plus notional stays within limit.
        """

    @abstractmethod
    def release_exposure(self, signal_id: str):
        pass

    @abstractmethod
    def insert_position(self, position: Position):
        pass

    @abstractmethod
    def get_position(self, position_id: str) -> Optional[Position]:
        pass

    @abstractmethod
    def get_position_by_signal(self, signal_id: str) -> Optional[Position]:
        pass

    @abstractmethod
    def get_positions(self, status: Optional[PositionStatus] = None) -> List[Position]:
        pass

    def get_open_positions(self) -> List[Position]:
        return self.get_positions(PositionStatus.OPEN)

    @abstractmethod
    def get_lots(self, parent_position_id: str) -> List[Position]:
        """Closed lots split from a position by partial closes"""

    @abstractmethod
    def update_position_price(
        self, position_id: str, price: float, unrealized_pnl: float, updated_at: datetime
    ) -> Optional[Position]:
        """Refresh price fields of an OPEN position (no version change)"""

    @abstractmethod
    def claim_position(self, position_id: str, expected_version: int, claim_token: str) -> Optional[Position]:
        """
        Claim an OPEN, unclaimed position at expected_version.

        Returns the claimed snapshot (version + 1) or None if the claim lost.
        """

    @abstractmethod
    def release_claim(self, position_id: str, claim_token: str) -> bool:
        pass

    @abstractmethod
    def commit_close(self, updated: Position, claim_token: str, lot: Optional[Position] = None) -> bool:
        """
        Write the post-close snapshot (and optional closed lot) atomically.

        Applies only while the position is OPEN and claimed with claim_token.
        """

    def close(self):
        pass


class InMemoryTradeStore(TradeStore):
    """Thread-safe in-process store"""

    def __init__(self):
        self._lock = threading.RLock()
        self._signals: Dict[str, Signal] = {}
        self._decisions: List[DecisionResult] = []
        self._failures: List[PipelineFailure] = []
        self._queue: Dict[int, Dict[str, Any]] = {}
        self._queue_ids = itertools.count(1)
        self._reservations: set = set()
        self._exposure_reservations: Dict[str, float] = {}
        self._positions: Dict[str, Position] = {}

    def save_signal(self, signal: Signal):
        with self._lock:
            self._signals[signal.id] = signal

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        with self._lock:
            return self._signals.get(signal_id)

    def get_recent_signals(self, symbol: str, timeframe: str, since: datetime) -> List[Signal]:
        with self._lock:
            return [
                s for s in self._signals.values()
                if s.symbol == symbol and s.timeframe == timeframe and s.timestamp >= since
            ]

    def save_decision(self, decision: DecisionResult):
        with self._lock:
            self._decisions.append(decision)

    def get_decisions(self, signal_id: Optional[str] = None, position_id: Optional[str] = None) -> List[dict]:
        with self._lock:
            decisions = list(self._decisions)
        if signal_id is not None:
            decisions = [d for d in decisions if d.signal is not None and d.signal.id == signal_id]
        if position_id is not None:
            decisions = [d for d in decisions if d.position_id == position_id]
        return [d.to_dict() for d in decisions]

    def save_failure(self, failure: PipelineFailure):
        with self._lock:
            self._failures.append(failure)

    def get_failures(self, tracking_id=None, stage=None, since=None) -> List[PipelineFailure]:
        with self._lock:
            failures = list(self._failures)
        if tracking_id is not None:
            failures = [f for f in failures if f.tracking_id == tracking_id]
        if stage is not None:
            failures = [f for f in failures if f.stage is stage]
        if since is not None:
            failures = [f for f in failures if f.timestamp >= since]
        return failures

    def delete_failures_before(self, cutoff: datetime) -> int:
        with self._lock:
            before = len(self._failures)
            self._failures = [f for f in self._failures if f.timestamp >= cutoff]
            return before - len(self._failures)

    def enqueue_raw_signal(self, payload: Dict[str, Any]) -> int:
        with self._lock:
            queue_id = next(self._queue_ids)
            self._queue[queue_id] = {
                'payload': payload,
                'status': 'PENDING',
                'worker_id': None,
                'claimed_at': None,
                'tracking_id': None,
            }
            return queue_id

    def claim_pending_signals(self, worker_id: str, limit: int) -> List[QueuedSignal]:
        claimed_at = utcnow()
        with self._lock:
            claimed = []
            for queue_id in sorted(self._queue):
                if len(claimed) >= limit:
                    break
                row = self._queue[queue_id]
                if row['status'] == 'PENDING':
                    row['status'] = 'PROCESSING'
                    row['worker_id'] = worker_id
                    row['claimed_at'] = claimed_at
                    claimed.append((queue_id, row['payload']))
            return claimed

    def complete_raw_signal(self, queue_id: int, tracking_id: str, success: bool):
        with self._lock:
            row = self._queue.get(queue_id)
            if row is not None:
                row['status'] = 'PROCESSED' if success else 'FAILED'
                row['tracking_id'] = tracking_id

    def count_pending_signals(self) -> int:
        with self._lock:
            return sum(1 for row in self._queue.values() if row['status'] == 'PENDING')

    def requeue_raw_signals(self, queue_ids: List[int]) -> int:
        with self._lock:
            rows = [self._queue.get(queue_id) for queue_id in queue_ids]
            return self._requeue([row for row in rows if row is not None])

    def release_stale_signal_claims(self, claimed_before: datetime) -> int:
        with self._lock:
            return self._requeue([
                row for row in self._queue.values()
                if row['claimed_at'] is not None and row['claimed_at'] < claimed_before
            ])

    def _requeue(self, rows: List[Dict[str, Any]]) -> int:
        count = 0
        for row in rows:
            if row['status'] == 'PROCESSING':
                row.update(status='PENDING', worker_id=None, claimed_at=None)
                count += 1
        return count

    def reserve_entry(self, signal_id: str) -> bool:
        with self._lock:
            if signal_id in self._reservations:
                return False
            self._reservations.add(signal_id)
            return True

    def release_entry(self, signal_id: str):
        with self._lock:
            self._reservations.discard(signal_id)

    def reserve_exposure(self, signal_id: str, notional: float, limit: float, multiplier: float) -> bool:
        with self._lock:
            open_exposure = sum(
                p.mark_price * p.quantity * multiplier for p in self._positions.values() if p.is_open
            )
            reserved = sum(self._exposure_reservations.values())
            if open_exposure + reserved + notional > limit:
                return False
            self._exposure_reservations[signal_id] = notional
            return True

    def release_exposure(self, signal_id: str):
        with self._lock:
            self._exposure_reservations.pop(signal_id, None)

    def insert_position(self, position: Position):
        with self._lock:
            if position.id in self._positions:
                raise ValueError(f"Position {position.id} already exists")
            self._positions[position.id] = position
            self._exposure_reservations.pop(position.signal_id, None)

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(position_id)

    def get_position_by_signal(self, signal_id: str) -> Optional[Position]:
        with self._lock:
            for position in self._positions.values():
                if position.signal_id == signal_id and position.parent_position_id is None:
                    return position
            return None

    def get_positions(self, status: Optional[PositionStatus] = None) -> List[Position]:
        with self._lock:
            positions = list(self._positions.values())
        if status is not None:
            positions = [p for p in positions if p.status is status]
        return sorted(positions, key=lambda p: p.entry_time)

    def get_lots(self, parent_position_id: str) -> List[Position]:
        with self._lock:
            lots = [p for p in self._positions.values() if p.parent_position_id == parent_position_id]
        return sorted(lots, key=lambda p: p.exit_time or p.entry_time)

    def update_position_price(self, position_id, price, unrealized_pnl, updated_at) -> Optional[Position]:
        with self._lock:
            current = self._positions.get(position_id)
            if current is None or not current.is_open:
                return None
            updated = replace(current, current_price=price, unrealized_pnl=unrealized_pnl, updated_at=updated_at)
            self._positions[position_id] = updated
            return updated

    def claim_position(self, position_id: str, expected_version: int, claim_token: str) -> Optional[Position]:
        with self._lock:
            current = self._positions.get(position_id)
            if (current is None or not current.is_open or current.claim_token is not None
                    or current.version != expected_version):
                return None
            claimed = current.evolve(claim_token=claim_token, updated_at=utcnow())
            self._positions[position_id] = claimed
            return claimed

    def release_claim(self, position_id: str, claim_token: str) -> bool:
        with self._lock:
            current = self._positions.get(position_id)
            if current is None or current.claim_token != claim_token:
                return False
            self._positions[position_id] = current.evolve(claim_token=None, updated_at=utcnow())
            return True

    def commit_close(self, updated: Position, claim_token: str, lot: Optional[Position] = None) -> bool:
        with self._lock:
            current = self._positions.get(updated.id)
            if current is None or not current.is_open or current.claim_token != claim_token:
                return False
            if lot is not None and lot.id in self._positions:
                return False
            self._positions[updated.id] = updated
            if lot is not None:
                self._positions[lot.id] = lot
            return True
