"""
Signal Pipeline

Runs one raw payload through the full sequence:

    Normalize -> Validate -> Deduplicate -> Decide -> Open position

Any stage failure short-circuits, writes exactly one PipelineFailure
tagged with the tracking ID and the failing stage, and returns a
PipelineResult with success=False. Per-signal errors never escape;
StoreUnavailableError is the only exception that propagates.
"""

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional
import logging
import threading
import time
import uuid

import numpy as np

from strikeflow.decision_engine.orchestrator import DecisionOrchestrator
from strikeflow.errors import (
    BatchAbortedError,
    DuplicateEntryError,
    ExecutionError,
    ExposureLimitError,
    NormalizationError,
    StoreUnavailableError,
)
from strikeflow.pipeline.config import PipelineConfig
from strikeflow.pipeline.schemas import PipelineHealth, PipelineResult
from strikeflow.position_manager.manager import PositionManager
from strikeflow.signals.dedup_cache import DeduplicationCache
from strikeflow.signals.normalizer import SignalNormalizer
from strikeflow.signals.schemas import PipelineFailure, PipelineStage, Signal, utcnow
from strikeflow.signals.validator import SignalValidator

if TYPE_CHECKING:
    from strikeflow.event_bus.core import EventBus
    from strikeflow.persistence.store import TradeStore

LOG = logging.getLogger(__name__)

DUPLICATE_REASON = "Duplicate signal detected"


def _raw_snapshot(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    return {'raw': repr(raw)}


class SignalPipeline:
    """
    Signal-to-position pipeline.

    Safe to call from several threads: every collaborator guards its own
    state and health counters sit behind a lock.
    """

    def __init__(
        self,
        normalizer: SignalNormalizer,
        validator: SignalValidator,
        dedup_cache: DeduplicationCache,
        orchestrator: DecisionOrchestrator,
        position_manager: PositionManager,
        store: 'TradeStore',
        config: Optional[PipelineConfig] = None,
        event_bus: Optional['EventBus'] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.normalizer = normalizer
        self.validator = validator
        self.dedup_cache = dedup_cache
        self.orchestrator = orchestrator
        self.position_manager = position_manager
        self.store = store
        self.config = config or PipelineConfig()
        self.event_bus = event_bus
        self._clock = clock

        self.health = PipelineHealth()
        self._processing_times: deque = deque(maxlen=1000)
        self._health_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Single signal
    # ------------------------------------------------------------------

    def process_signal(self, raw: Any) -> PipelineResult:
        """
        Process one raw signal payload.

        Args:
            raw: Deserialized webhook payload

        Returns:
            PipelineResult (never raises for per-signal problems)

        Raises:
            StoreUnavailableError: persistence layer unreachable
        """
        start_time = time.perf_counter()
        result = self._process(raw)
        result.processing_time_ms = (time.perf_counter() - start_time) * 1000
        self._update_health(result)
        return result

    def _process(self, raw: Any) -> PipelineResult:
        tracking_id = str(uuid.uuid4())
        signal: Optional[Signal] = None
        stage = PipelineStage.NORMALIZATION

        try:
            try:
                signal = self.normalizer.normalize(raw)
            except NormalizationError as e:
                return self._fail(tracking_id, stage, str(e), raw=raw)

            tracking_id = signal.id
            self.store.save_signal(signal)
            self._publish('SIGNAL_RECEIVED', signal.symbol, signal.to_dict())
            LOG.debug(f"[{tracking_id}] normalized {signal.symbol} {signal.direction.value} {signal.timeframe}")

            stage = PipelineStage.VALIDATION
            validation = self.validator.validate(signal)
            if not validation.valid:
                reason = validation.rejection_reason or "Validation failed"
                return self._fail(tracking_id, stage, reason, signal=signal)

            stage = PipelineStage.DEDUPLICATION
            if self.dedup_cache.is_duplicate(signal):
                return self._fail(tracking_id, stage, DUPLICATE_REASON, signal=signal)

            stage = PipelineStage.DECISION
            decision = self.orchestrator.orchestrate_entry_decision(
                signal,
                validation,
                related_signals=self._related_signals(signal),
            )
            self.store.save_decision(decision)
            self._publish('DECISION_MADE', signal.symbol, decision.to_dict())
            if decision.degraded_inputs:
                self._publish('DEGRADED_MODE', signal.symbol, {
                    'signal_id': signal.id,
                    'services': list(decision.degraded_inputs),
                })
            if not decision.is_entry:
                return self._fail(tracking_id, stage, "; ".join(decision.reasoning), signal=signal,
                                  decision=decision)

            stage = PipelineStage.EXECUTION
            try:
                position = self.position_manager.open_position(decision)
            except (ExecutionError, DuplicateEntryError, ExposureLimitError) as e:
                return self._fail(tracking_id, stage, str(e), signal=signal, decision=decision)

        except StoreUnavailableError:
            raise
        except Exception as e:
            LOG.error(f"[{tracking_id}] unexpected error at {stage.value}: {e}", exc_info=True)
            return self._fail(tracking_id, stage, f"Unexpected error: {e}", raw=raw, signal=signal)

        LOG.info(f"[{tracking_id}] {signal.symbol} {signal.direction.value}: position {position.id} opened")
        return PipelineResult(
            success=True,
            tracking_id=tracking_id,
            stage=stage,
            signal=signal,
            decision=decision,
            position=position,
            timestamp=self._clock(),
        )

    def _fail(
        self,
        tracking_id: str,
        stage: PipelineStage,
        reason: str,
        raw: Any = None,
        signal: Optional[Signal] = None,
        decision=None,
    ) -> PipelineResult:
        reason = reason or f"{stage.value} failed"
        failure = PipelineFailure(
            tracking_id=tracking_id,
            stage=stage,
            reason=reason,
            signal_id=signal.id if signal else None,
            signal_data=signal.to_dict() if signal else _raw_snapshot(raw),
            timestamp=self._clock(),
        )
        self.store.save_failure(failure)
        LOG.info(f"[{tracking_id}] failed at {stage.value}: {reason}")
        self._publish('SIGNAL_REJECTED', signal.symbol if signal else None, failure.to_dict())

        return PipelineResult(
            success=False,
            tracking_id=tracking_id,
            stage=stage,
            signal=signal,
            decision=decision,
            failure_reason=reason,
            timestamp=failure.timestamp,
        )

    def _related_signals(self, signal: Signal) -> List[Signal]:
        since = signal.timestamp - timedelta(minutes=self.config.confluence_lookback_minutes)
        recent = self.store.get_recent_signals(signal.symbol, signal.timeframe, since)
        return [s for s in recent if s.id != signal.id]

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_signal_batch(
        self,
        raws: Iterable[Any],
        deadline_seconds: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> List[PipelineResult]:
        """
        Process a batch of raw signals with per-signal error isolation.

        Args:
            raws: Raw payloads
            deadline_seconds: Items not started by then are abandoned
                (default: config.batch_deadline_seconds)
            max_workers: >1 processes on a thread pool
                (default: config.batch_max_workers)

        Returns:
            One result per processed item, in input order

        Raises:
            BatchAbortedError: store outage; carries the results produced so far
        """
        raws = list(raws)
        if deadline_seconds is None:
            deadline_seconds = self.config.batch_deadline_seconds
        workers = max_workers or self.config.batch_max_workers
        deadline = time.monotonic() + deadline_seconds if deadline_seconds is not None else None

        results: List[Optional[PipelineResult]] = [None] * len(raws)
        abort = threading.Event()
        store_error: Optional[StoreUnavailableError] = None

        if workers <= 1:
            for i, raw in enumerate(raws):
                if deadline is not None and time.monotonic() >= deadline:
                    break
                try:
                    results[i] = self.process_signal(raw)
                except StoreUnavailableError as e:
                    store_error = e
                    break
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="signal-batch") as pool:
                futures = [pool.submit(self._batch_item, raw, deadline, abort) for raw in raws]
                for i, future in enumerate(futures):
                    try:
                        results[i] = future.result()
                    except StoreUnavailableError as e:
                        abort.set()
                        store_error = store_error or e

        processed = [r for r in results if r is not None]
        abandoned = len(raws) - len(processed)

        with self._health_lock:
            self.health.batches_processed += 1
            if store_error is None:
                self.health.batch_items_abandoned += abandoned

        if store_error is not None:
            LOG.error(f"Batch aborted after {len(processed)} of {len(raws)} signals: {store_error}")
            raise BatchAbortedError(f"Store unavailable: {store_error}", processed) from store_error

        if abandoned:
            LOG.warning(
                f"Batch deadline of {deadline_seconds:g}s reached: "
                f"{abandoned} of {len(raws)} signals not started"
            )
        LOG.info(
            f"Batch complete: {sum(1 for r in processed if r.success)} succeeded, "
            f"{sum(1 for r in processed if not r.success)} failed"
        )
        return processed

    def _batch_item(self, raw: Any, deadline: Optional[float], abort: threading.Event) -> Optional[PipelineResult]:
        if abort.is_set():
            return None
        if deadline is not None and time.monotonic() >= deadline:
            return None
        return self.process_signal(raw)

    # ------------------------------------------------------------------
    # Health and failure records
    # ------------------------------------------------------------------

    def _update_health(self, result: PipelineResult):
        with self._health_lock:
            health = self.health
            health.signals_processed += 1
            if result.success:
                health.signals_succeeded += 1
                health.positions_opened += 1
            else:
                health.signals_failed += 1
                stage = result.stage.value
                health.failures_by_stage[stage] = health.failures_by_stage.get(stage, 0) + 1

            if result.decision is not None:
                kind = result.decision.decision.value
                health.decisions_by_type[kind] = health.decisions_by_type.get(kind, 0) + 1

            self._processing_times.append(result.processing_time_ms)
            health.avg_processing_time_ms = float(np.mean(self._processing_times))
            health.last_processed = result.timestamp

    def get_health(self) -> PipelineHealth:
        """Current health metrics (degraded services refreshed)"""
        with self._health_lock:
            self.health.degraded_services = self.orchestrator.degraded_tracker.degraded_services()
            return self.health

    def get_pipeline_status(self) -> dict:
        health = self.get_health()
        degraded = self.orchestrator.degraded_tracker.get_status()
        return {
            'status': 'degraded' if degraded['degraded'] else 'healthy',
            'health': health.to_dict(),
            'degraded_mode': degraded,
            'deduplication': self.dedup_cache.get_stats(),
            'pending_signals': self.store.count_pending_signals(),
            'open_positions': len(self.position_manager.get_open_positions()),
            'config_hash': self.orchestrator.config_hash,
        }

    def get_failures(
        self,
        tracking_id: Optional[str] = None,
        stage: Optional[PipelineStage] = None,
        since_hours: Optional[float] = None,
    ) -> List[PipelineFailure]:
        since = self._clock() - timedelta(hours=since_hours) if since_hours is not None else None
        return self.store.get_failures(tracking_id=tracking_id, stage=stage, since=since)

    def clear_old_failures(self, older_than_hours: Optional[float] = None) -> int:
        """Delete failure records past retention, returns number removed"""
        hours = self.config.failure_retention_hours if older_than_hours is None else older_than_hours
        removed = self.store.delete_failures_before(self._clock() - timedelta(hours=hours))
        if removed:
            LOG.info(f"Cleared {removed} pipeline failures older than {hours:g}h")
        return removed

    def reset_health(self):
        with self._health_lock:
            self.health = PipelineHealth()
            self._processing_times.clear()

    def _publish(self, event_name: str, symbol: Optional[str], data: Dict[str, Any]):
        if self.event_bus is None:
            return
        from strikeflow.event_bus.core import Event, EventType
        self.event_bus.publish(Event(event_type=EventType[event_name], symbol=symbol, data=data))
