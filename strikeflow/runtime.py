"""
Runtime wiring

Builds every component from one StrikeflowConfig and hands back a single
object the API, CLI and tests share.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import logging

from strikeflow.config import StrikeflowConfig, load_config
from strikeflow.decision_engine.confluence import ConfluenceCalculator
from strikeflow.decision_engine.degraded_mode import DegradedModeTracker
from strikeflow.decision_engine.orchestrator import DecisionOrchestrator
from strikeflow.errors import ConfigValidationError
from strikeflow.event_bus.core import EventBus
from strikeflow.execution.adapter import ExecutionAdapter, PaperExecutionAdapter
from strikeflow.market_data.provider import (
    CachedMarketDataProvider,
    InMemoryMarketDataProvider,
    MarketDataProvider,
)
from strikeflow.persistence.sqlite_store import SQLiteTradeStore
from strikeflow.persistence.store import InMemoryTradeStore, TradeStore
from strikeflow.pipeline.pipeline import SignalPipeline
from strikeflow.pipeline.worker import SignalWorker
from strikeflow.position_manager.exit_monitor import ExitMonitor
from strikeflow.position_manager.manager import PositionManager
from strikeflow.signals.dedup_cache import DeduplicationCache
from strikeflow.signals.normalizer import SignalNormalizer
from strikeflow.signals.schemas import utcnow
from strikeflow.signals.validator import SignalValidator

LOG = logging.getLogger(__name__)


@dataclass
class TradingRuntime:
    """All live components of one strikeflow process"""

    config: StrikeflowConfig
    config_hash: str
    store: TradeStore
    market_data: MarketDataProvider
    execution: ExecutionAdapter
    event_bus: Optional[EventBus]
    degraded_tracker: DegradedModeTracker
    orchestrator: DecisionOrchestrator
    position_manager: PositionManager
    exit_monitor: ExitMonitor
    pipeline: SignalPipeline
    worker: SignalWorker

    def start_background(self):
        """Start the exit monitor, queue worker and event dispatcher"""
        if self.event_bus is not None:
            self.event_bus.start()
        self.exit_monitor.start()
        self.worker.start()

    def shutdown(self):
        self.worker.stop()
        self.exit_monitor.stop()
        if self.event_bus is not None:
            self.event_bus.stop()
        self.orchestrator.shutdown()
        self.store.close()
        LOG.info("Runtime shut down")


def build_runtime(
    config: Optional[StrikeflowConfig] = None,
    store: Optional[TradeStore] = None,
    market_data: Optional[MarketDataProvider] = None,
    upstream_market_data: Optional[MarketDataProvider] = None,
    execution: Optional[ExecutionAdapter] = None,
    event_bus: Optional[EventBus] = None,
    clock: Callable[[], datetime] = utcnow,
) -> TradingRuntime:
    """
    Wire a runtime.

    Args:
        config: Validated configuration (load_config() if None)
        store: Persistence (SQLite when config.db_path is set, else in-memory)
        market_data: Provider used as is (push-fed in-memory provider if None)
        upstream_market_data: Pull-based provider, wrapped in a TTL cache
            with stale fallback. Ignored when market_data is given.
        execution: Adapter (paper adapter if None)
        event_bus: Optional bus for lifecycle events
        clock: UTC clock shared by every component

    Raises:
        ConfigValidationError: config fails validation
    """
    config = config or load_config()
    errors = config.validate()
    if errors:
        raise ConfigValidationError("Invalid configuration", errors)
    config_hash = config.compute_hash()

    if store is None:
        store = SQLiteTradeStore(config.db_path) if config.db_path else InMemoryTradeStore()
    if market_data is None and upstream_market_data is not None:
        market_data = CachedMarketDataProvider(
            upstream_market_data, config.market_data, clock=lambda: clock().timestamp()
        )
    elif market_data is None:
        market_data = InMemoryMarketDataProvider(config.market_data, clock=lambda: clock().timestamp())
    if execution is None:
        execution = PaperExecutionAdapter(market_data, config.execution, clock=clock)

    degraded_tracker = DegradedModeTracker(clock)
    position_manager = PositionManager(
        store,
        execution,
        config.position_manager,
        contract_multiplier=config.decision_engine.risk.contract_multiplier,
        exposure_limit=config.decision_engine.risk.max_total_exposure,
        event_bus=event_bus,
        clock=clock,
    )
    orchestrator = DecisionOrchestrator(
        config.decision_engine,
        market_data=market_data,
        exposure_provider=position_manager.total_exposure,
        confluence_calculator=ConfluenceCalculator(),
        degraded_tracker=degraded_tracker,
        clock=clock,
        config_hash=config_hash,
    )
    exit_monitor = ExitMonitor(position_manager, orchestrator, market_data, config.position_manager, clock=clock)
    pipeline = SignalPipeline(
        normalizer=SignalNormalizer(clock),
        validator=SignalValidator(config.signals.validation, clock),
        dedup_cache=DeduplicationCache(config.signals.deduplication, clock),
        orchestrator=orchestrator,
        position_manager=position_manager,
        store=store,
        config=config.pipeline,
        event_bus=event_bus,
        clock=clock,
    )
    worker = SignalWorker(pipeline, store)

    LOG.info(
        f"Runtime built: env={config.environment} store={type(store).__name__} "
        f"execution={type(execution).__name__} config_hash={config_hash}"
    )
    return TradingRuntime(
        config=config,
        config_hash=config_hash,
        store=store,
        market_data=market_data,
        execution=execution,
        event_bus=event_bus,
        degraded_tracker=degraded_tracker,
        orchestrator=orchestrator,
        position_manager=position_manager,
        exit_monitor=exit_monitor,
        pipeline=pipeline,
        worker=worker,
    )
