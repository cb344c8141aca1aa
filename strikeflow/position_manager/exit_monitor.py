"""
Exit Monitor

Periodically re-evaluates every open position against the exit rules:

    1. Fetch current price (failure: skip position, count error)
    2. Refresh price / unrealized P&L
    3. Fetch positioning (failure: degraded, GEX flip check skipped)
    4. Orchestrator exit path -> EXIT / HOLD
    5. EXIT -> ExitAlert; CRITICAL alerts are closed automatically

One position's failure never stops the pass. run_once persists the EXIT
decision when a position starts alerting or its exit reason changes;
scan() is read-only.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple
import logging
import threading
import time

from dateutil import tz

from strikeflow.decision_engine.orchestrator import DecisionOrchestrator
from strikeflow.decision_engine.schemas import Decision, DecisionResult, ExitReason, TimeExitTrigger
from strikeflow.errors import ExecutionError, InvalidCloseError, PositionClaimError
from strikeflow.market_data.provider import MarketDataProvider
from strikeflow.market_data.schemas import ExitMarketData
from strikeflow.position_manager.config import PositionManagerConfig
from strikeflow.position_manager.manager import PositionManager
from strikeflow.position_manager.schemas import (
    AlertPriority,
    ExitAlert,
    ExitMonitorReport,
    Position,
    RecommendedAction,
)
from strikeflow.signals.schemas import utcnow

LOG = logging.getLogger(__name__)

TIME_TRIGGER_PRIORITY = {
    TimeExitTrigger.EXPIRATION_IMMINENT: AlertPriority.CRITICAL,
    TimeExitTrigger.EXPIRATION_SOON: AlertPriority.HIGH,
    TimeExitTrigger.SESSION_CLOSE: AlertPriority.HIGH,
    TimeExitTrigger.MAX_HOLD_TIME: AlertPriority.MEDIUM,
}

REASON_PRIORITY = {
    ExitReason.STOP_LOSS: AlertPriority.CRITICAL,
    ExitReason.PROFIT_TARGET: AlertPriority.HIGH,
    ExitReason.GEX_FLIP: AlertPriority.HIGH,
}

PRIORITY_ACTION = {
    AlertPriority.CRITICAL: RecommendedAction.CLOSE_POSITION_IMMEDIATELY,
    AlertPriority.HIGH: RecommendedAction.CLOSE_POSITION,
    AlertPriority.MEDIUM: RecommendedAction.REVIEW_POSITION,
}


def alert_priority(decision: DecisionResult) -> AlertPriority:
    """Map an EXIT decision to alert urgency"""
    if decision.exit_reason is ExitReason.TIME_EXIT:
        return TIME_TRIGGER_PRIORITY.get(decision.time_exit_trigger, AlertPriority.MEDIUM)
    return REASON_PRIORITY.get(decision.exit_reason, AlertPriority.MEDIUM)


class ExitMonitor:
    """Exit rule evaluation loop over open positions"""

    def __init__(
        self,
        manager: PositionManager,
        orchestrator: DecisionOrchestrator,
        market_data: MarketDataProvider,
        config: Optional[PositionManagerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.manager = manager
        self.orchestrator = orchestrator
        self.market_data = market_data
        self.config = config or manager.config
        self._clock = clock
        self._market_tz = tz.gettz(orchestrator.config.exit.market_timezone)

        self._lock = threading.RLock()
        self._last_report: Optional[ExitMonitorReport] = None
        # position_id -> exit reason of the last persisted EXIT decision
        self._recorded_exits: Dict[str, str] = {}
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

    # ------------------------------------------------------------------
    # Single pass
    # ------------------------------------------------------------------

    def run_once(self) -> ExitMonitorReport:
        """Evaluate all open positions and auto-close CRITICAL exits"""
        return self._run(auto_close=self.config.auto_close_critical, record=True)

    def scan(self) -> List[ExitAlert]:
        """Evaluate all open positions without closing anything"""
        return self._run(auto_close=False, record=False).alerts

    def _run(self, auto_close: bool, record: bool) -> ExitMonitorReport:
        started = time.perf_counter()
        report = ExitMonitorReport(started_at=self._clock())

        open_positions = self.manager.get_open_positions()
        positions = [p for p in open_positions if p.claim_token is None]
        report.positions_monitored = len(positions)
        if not positions:
            LOG.debug("No open positions to monitor")

        for position in positions:
            try:
                errors_before = len(report.errors)
                evaluated = self._evaluate(position, report)
                if evaluated is None:
                    if record and len(report.errors) == errors_before:
                        self._forget_exit(position.id)
                    continue
                alert, decision = evaluated
                if auto_close and alert.priority is AlertPriority.CRITICAL:
                    alert.auto_closed = self._auto_close(position, alert, report)
                if record:
                    self._record_exit(alert, decision)
                report.alerts.append(alert)
                self._publish_alert(alert)
            except Exception as e:
                LOG.error(f"Exit evaluation failed for position {position.id}: {e}", exc_info=True)
                report.errors.append(f"{position.id}: {e}")

        report.duration_ms = (time.perf_counter() - started) * 1000.0
        with self._lock:
            self._last_report = report
            if record:
                self._prune_recorded({p.id for p in open_positions})

        if report.alerts or report.errors:
            LOG.info(
                f"Exit monitor: {report.positions_monitored} positions, {len(report.alerts)} alerts "
                f"({report.count(AlertPriority.CRITICAL)} critical), {report.exits_executed} closed, "
                f"{len(report.errors)} errors"
            )
        return report

    def _evaluate(
        self, position: Position, report: ExitMonitorReport
    ) -> Optional[Tuple[ExitAlert, DecisionResult]]:
        price, error = self._fetch_price(position.symbol)
        if price is None:
            LOG.warning(f"Skipping position {position.id}: price unavailable ({error})")
            report.errors.append(f"{position.id}: price unavailable ({error})")
            return None

        position = self.manager.refresh_price(position, price)
        if not position.is_open:
            return None

        positioning = None
        try:
            positioning = self.market_data.get_positioning(position.symbol)
        except Exception as e:
            self.orchestrator.degraded_tracker.record_failure('POSITIONING', str(e))
        else:
            self.orchestrator.degraded_tracker.record_success('POSITIONING')

        now = self._clock()
        market_date = now.astimezone(self._market_tz).date()
        snapshot = ExitMarketData(
            price=price,
            as_of=now,
            days_to_expiration=position.days_to_expiration(market_date),
            positioning=positioning,
        )

        decision = self.orchestrator.orchestrate_exit_decision(position, snapshot)
        if decision.decision is not Decision.EXIT:
            return None

        priority = alert_priority(decision)
        reason = decision.exit_reason.value
        if decision.time_exit_trigger is not None:
            reason = f"{reason}:{decision.time_exit_trigger.value}"

        calcs = decision.exit_calculations
        alert = ExitAlert(
            position_id=position.id,
            symbol=position.symbol,
            direction=position.direction,
            quantity=position.quantity,
            entry_price=position.entry_price,
            current_price=price,
            unrealized_pnl=calcs.current_pnl,
            unrealized_pnl_percent=calcs.current_pnl_percent,
            priority=priority,
            reason=reason,
            recommended_action=PRIORITY_ACTION[priority],
            details={
                'decision_id': decision.decision_id,
                'days_to_expiration': snapshot.days_to_expiration,
                'reasoning': list(decision.reasoning),
                'degraded_inputs': list(decision.degraded_inputs),
            },
            timestamp=now,
        )
        return alert, decision

    def _record_exit(self, alert: ExitAlert, decision: DecisionResult):
        with self._lock:
            unchanged = self._recorded_exits.get(alert.position_id) == alert.reason
            if unchanged and not alert.auto_closed:
                return
            self.manager.store.save_decision(decision)
            if alert.auto_closed:
                self._recorded_exits.pop(alert.position_id, None)
            else:
                self._recorded_exits[alert.position_id] = alert.reason

    def _forget_exit(self, position_id: str):
        with self._lock:
            self._recorded_exits.pop(position_id, None)

    def _prune_recorded(self, open_ids: Set[str]):
        for position_id in [pid for pid in self._recorded_exits if pid not in open_ids]:
            del self._recorded_exits[position_id]

    def _fetch_price(self, symbol: str) -> Tuple[Optional[float], Optional[str]]:
        error = None
        for _ in range(max(1, self.config.max_refresh_retries)):
            try:
                price = self.market_data.get_current_price(symbol)
            except Exception as e:
                error = str(e)
                continue
            if price is not None and price > 0:
                self.orchestrator.degraded_tracker.record_success('PRICE')
                return price, None
            error = f"invalid price {price!r}"
        self.orchestrator.degraded_tracker.record_failure('PRICE', error or 'unknown')
        return None, error

    def _auto_close(self, position: Position, alert: ExitAlert, report: ExitMonitorReport) -> bool:
        latest = self.manager.get_position(position.id) or position
        try:
            result = self.manager.close_position(latest, exit_price=alert.current_price)
        except (PositionClaimError, InvalidCloseError) as e:
            LOG.info(f"Auto-close skipped for {position.id}: {e}")
            return False
        except ExecutionError as e:
            LOG.warning(f"Auto-close failed for {position.id}: {e}")
            report.errors.append(f"{position.id}: {e}")
            return False

        report.exits_executed += 1
        LOG.warning(
            f"AUTO-CLOSED {position.symbol} position {position.id} ({alert.reason}), "
            f"realized P&L {result.realized_pnl:+.2f}"
        )
        return True

    def _publish_alert(self, alert: ExitAlert):
        bus = self.manager.event_bus
        if bus is None:
            return
        from strikeflow.event_bus.core import Event, EventType
        bus.publish(Event(event_type=EventType.EXIT_ALERT, symbol=alert.symbol, data=alert.to_dict()))

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self, interval_seconds: Optional[float] = None):
        """Run passes on a daemon thread"""
        if self._running:
            return
        interval = interval_seconds or self.config.monitor_interval_seconds
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(interval,),
            name="ExitMonitor",
            daemon=True
        )
        self._thread.start()
        LOG.info(f"Exit monitor started (interval {interval:g}s)")

    def stop(self):
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
        LOG.info("Exit monitor stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[ExitMonitorReport]:
        with self._lock:
            return self._last_report

    def _loop(self, interval: float):
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                LOG.error(f"Exit monitor pass failed: {e}", exc_info=True)
            self._stop_event.wait(interval)
