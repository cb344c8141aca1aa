"""
Decision Orchestrator

Entry path (ENTER / REJECT):
    1. Validation must have passed
    2. Base context and reference price are required (failure -> REJECT)
    3. Market filter: VIX ceiling
    4. Layered confidence: base + context + positioning + GEX, clamped once
    5. Sizing: base x kelly x regime x confluence, capped
    6. Threshold, minimum size and exposure checks

Exit path (EXIT / HOLD), first matching rule wins:
    profit target -> stop loss -> GEX flip -> time exit

Optional inputs (positioning, GEX) degrade to a neutral term instead of
failing the decision.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence, Tuple
import logging

from dateutil import tz

from strikeflow.decision_engine.adjustments import (
    clamp,
    context_adjustment,
    gex_adjustment,
    positioning_adjustment,
)
from strikeflow.decision_engine.config import DecisionEngineConfig
from strikeflow.decision_engine.confluence import ConfluenceCalculator
from strikeflow.decision_engine.degraded_mode import DegradedModeTracker
from strikeflow.decision_engine.position_sizing import PositionSizer
from strikeflow.decision_engine.schemas import (
    Decision,
    DecisionCalculations,
    DecisionResult,
    ExitCalculations,
    ExitReason,
    TimeExitTrigger,
)
from strikeflow.errors import FatalMarketDataError, MarketDataUnavailableError
from strikeflow.market_data.provider import MarketDataProvider
from strikeflow.market_data.schemas import ExitMarketData, GexSignal, MarketContext, Positioning
from strikeflow.signals.schemas import Signal, ValidationResult, direction_value, utcnow

if TYPE_CHECKING:
    from strikeflow.position_manager.schemas import Position

LOG = logging.getLogger(__name__)

# Metadata keys that may carry the signal's reference price, in priority order
PRICE_FIELDS = (
    'price', 'entryPrice', 'entry_price', 'limit_price', 'limitPrice',
    'last', 'close', 'current_price', 'underlying_price',
)


def resolve_signal_price(signal: Signal) -> Optional[float]:
    """First positive numeric price found in signal metadata"""
    for key in PRICE_FIELDS:
        value = signal.metadata.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            price = float(value)
        except (TypeError, ValueError):
            continue
        if price > 0:
            return price
    return None


class DecisionOrchestrator:
    """
    Produces ENTER/REJECT and EXIT/HOLD decisions.

    Market data calls run on a small thread pool so each one can be given
    a timeout.
    """

    def __init__(
        self,
        config: Optional[DecisionEngineConfig] = None,
        market_data: Optional[MarketDataProvider] = None,
        exposure_provider: Optional[Callable[[], float]] = None,
        confluence_calculator: Optional[ConfluenceCalculator] = None,
        degraded_tracker: Optional[DegradedModeTracker] = None,
        clock: Callable[[], datetime] = utcnow,
        config_hash: str = "",
    ):
        self.config = config or DecisionEngineConfig()
        self.market_data = market_data
        self.exposure_provider = exposure_provider
        self.confluence_calculator = confluence_calculator or ConfluenceCalculator()
        self.degraded_tracker = degraded_tracker or DegradedModeTracker(clock)
        self.sizer = PositionSizer(self.config.sizing, self.config.risk)
        self.config_hash = config_hash
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="market-data")

        self._market_tz = tz.gettz(self.config.exit.market_timezone)
        self._session_exit = datetime.strptime(self.config.exit.session_exit_time, "%H:%M").time()

    def shutdown(self):
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Entry path
    # ------------------------------------------------------------------

    def orchestrate_entry_decision(
        self,
        signal: Signal,
        validation_result: ValidationResult,
        context: Optional[MarketContext] = None,
        positioning: Optional[Positioning] = None,
        gex: Optional[GexSignal] = None,
        related_signals: Sequence[Signal] = (),
        max_size: Optional[float] = None,
    ) -> DecisionResult:
        """
        Decide whether to enter on a validated signal.

        Args:
            signal: Normalized signal
            validation_result: Output of SignalValidator
            context: Base market context (fetched from the provider if None)
            positioning: Options positioning (fetched if None, optional)
            gex: GEX reading (taken from positioning if None, optional)
            related_signals: Recent signals used for confluence scoring
            max_size: Caller ceiling on position size

        Returns:
            DecisionResult with decision ENTER or REJECT
        """
        if not validation_result.valid:
            return self._reject(signal, [], f"Validation failed: {validation_result.rejection_reason}")

        reasoning: List[str] = []
        degraded: List[str] = []

        try:
            if context is None:
                context = self._require('CONTEXT', self.market_data.get_context if self.market_data else None)
            price = resolve_signal_price(signal)
            if price is None:
                price = self._require(
                    'PRICE',
                    self.market_data.get_current_price if self.market_data else None,
                    signal.symbol,
                )
        except FatalMarketDataError as e:
            LOG.warning(f"Entry for {signal.id} rejected: {e}")
            return self._reject(signal, reasoning, f"Market data unavailable: {e}")

        reasoning.append(f"Context: VIX {context.vix:.1f}, trend {context.trend.value}, regime {context.regime.value}")

        risk = self.config.risk
        if context.vix > risk.max_vix_for_entry:
            return self._reject(
                signal, reasoning,
                f"VIX {context.vix:.1f} exceeds maximum {risk.max_vix_for_entry:g}",
                reference_price=price,
            )

        confidence_config = self.config.confidence
        base = confidence_config.base_confidence_by_source.get(
            signal.source.value, confidence_config.base_confidence
        )
        reasoning.append(f"Base confidence ({signal.source.value}): {base:g}")

        context_adj, lines = context_adjustment(signal.direction, context, confidence_config)
        reasoning.extend(lines)

        if positioning is None:
            positioning = self._optional('POSITIONING', degraded, reasoning,
                                         self.market_data.get_positioning if self.market_data else None,
                                         signal.symbol)

        positioning_adj = 0.0
        if positioning is not None:
            positioning_adj, lines = positioning_adjustment(
                signal.direction, positioning, price, confidence_config, self.config.gex
            )
            reasoning.extend(lines)

        if gex is None and positioning is not None:
            gex = positioning.gex
        gex_adj = 0.0
        if gex is not None:
            gex_adj, lines = gex_adjustment(
                signal.direction, gex, self._clock(), confidence_config, self.config.gex
            )
            reasoning.extend(lines)
        elif 'POSITIONING' not in degraded:
            self._note_degraded('GEX', 'no GEX signal available', degraded, reasoning)

        confidence = clamp(base + context_adj + positioning_adj + gex_adj, 0.0, 100.0)
        reasoning.append(f"Final confidence: {confidence:.1f}")

        confluence_score = self._confluence_score(signal, related_signals)
        sizing = self.sizer.calculate(
            confidence=confidence,
            regime=context.regime,
            confluence_score=confluence_score,
            vix=context.vix,
            max_size=max_size,
        )
        reasoning.extend(sizing.reasons)

        calculations = DecisionCalculations(
            base_confidence=base,
            context_adjustment=context_adj,
            positioning_adjustment=positioning_adj,
            gex_adjustment=gex_adj,
            final_confidence=confidence,
            base_sizing=sizing.base_sizing,
            kelly_multiplier=sizing.kelly_multiplier,
            regime_multiplier=sizing.regime_multiplier,
            confluence_multiplier=sizing.confluence_multiplier,
            final_size=sizing.final_size,
        )

        rejections = []
        if confidence < confidence_config.min_entry_confidence:
            rejections.append(
                f"Confidence {confidence:.1f} below threshold {confidence_config.min_entry_confidence:g}"
            )
        if not sizing.is_valid:
            rejections.append(sizing.rejection_reason)
        elif self.exposure_provider is not None:
            new_exposure = price * sizing.position_size * risk.contract_multiplier
            current = self.exposure_provider()
            if current + new_exposure > risk.max_total_exposure:
                rejections.append(
                    f"Exposure limit exceeded: {current:,.0f} + {new_exposure:,.0f} > {risk.max_total_exposure:,.0f}"
                )

        if rejections:
            for reason in rejections:
                reasoning.append(f"REJECTED: {reason}")
            return DecisionResult(
                decision=Decision.REJECT,
                confidence=confidence,
                position_size=0.0,
                reasoning=reasoning,
                calculations=calculations,
                signal=signal,
                reference_price=price,
                degraded_inputs=degraded,
                config_hash=self.config_hash,
                created_at=self._clock(),
            )

        reasoning.append(f"ENTER {sizing.position_size:g} x {signal.symbol} {signal.direction.value}")
        LOG.info(
            f"ENTER {signal.symbol} {signal.direction.value} size={sizing.position_size:g} "
            f"confidence={confidence:.1f} (signal {signal.id})"
        )
        return DecisionResult(
            decision=Decision.ENTER,
            confidence=confidence,
            position_size=sizing.position_size,
            reasoning=reasoning,
            calculations=calculations,
            signal=signal,
            reference_price=price,
            degraded_inputs=degraded,
            config_hash=self.config_hash,
            created_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Exit path
    # ------------------------------------------------------------------

    def orchestrate_exit_decision(self, position: 'Position', market_data: ExitMarketData) -> DecisionResult:
        """
        Evaluate exit rules for an open position.

        Args:
            position: Open position
            market_data: Current price, time, DTE and (optional) positioning

        Returns:
            DecisionResult with decision EXIT or HOLD
        """
        exit_config = self.config.exit
        price = market_data.price
        entry = position.entry_price

        pnl = (price - entry) * position.quantity
        pnl_percent = (price - entry) / entry * 100.0 if entry > 0 else 0.0

        reasoning = [f"P&L {pnl:+.2f} ({pnl_percent:+.2f}%) at {price:.2f}"]
        degraded: List[str] = []

        profit_target = pnl_percent >= exit_config.profit_target_percent
        stop_loss = pnl_percent <= exit_config.stop_loss_percent

        gex_flip = False
        if exit_config.enable_gex_flip_exit:
            if market_data.positioning is None:
                self._note_degraded('POSITIONING', 'GEX flip check skipped', degraded, reasoning)
            else:
                gex = market_data.positioning.gex
                gex_flip = bool(
                    gex is not None and gex.flipped
                    and direction_value(gex.direction) != position.direction.value
                )

        trigger = self._time_exit_trigger(position, market_data)
        time_exit = trigger is not None

        calculations = ExitCalculations(
            profit_target=profit_target,
            stop_loss=stop_loss,
            gex_flip=gex_flip,
            time_exit=time_exit,
            current_pnl=pnl,
            current_pnl_percent=pnl_percent,
        )

        exit_reason = None
        if profit_target:
            exit_reason = ExitReason.PROFIT_TARGET
            reasoning.append(f"Profit target reached ({exit_config.profit_target_percent:g}%)")
        elif stop_loss:
            exit_reason = ExitReason.STOP_LOSS
            reasoning.append(f"Stop loss hit ({exit_config.stop_loss_percent:g}%)")
        elif gex_flip:
            exit_reason = ExitReason.GEX_FLIP
            reasoning.append("GEX flipped against position")
        elif time_exit:
            exit_reason = ExitReason.TIME_EXIT
            reasoning.append(f"Time exit: {trigger.value}")
        else:
            trigger = None
            reasoning.append("No exit condition met")

        decision = Decision.EXIT if exit_reason else Decision.HOLD
        if decision is Decision.EXIT:
            LOG.info(f"EXIT {position.symbol} position {position.id}: {exit_reason.value}")

        return DecisionResult(
            decision=decision,
            confidence=0.0,
            position_size=float(position.quantity) if decision is Decision.EXIT else 0.0,
            reasoning=reasoning,
            reference_price=price,
            degraded_inputs=degraded,
            position_id=position.id,
            exit_reason=exit_reason,
            time_exit_trigger=trigger if exit_reason is ExitReason.TIME_EXIT else None,
            exit_calculations=calculations,
            config_hash=self.config_hash,
            created_at=self._clock(),
        )

    def _time_exit_trigger(self, position: 'Position', market_data: ExitMarketData) -> Optional[TimeExitTrigger]:
        exit_config = self.config.exit
        dte = market_data.days_to_expiration
        if dte is not None:
            if dte <= 0:
                return TimeExitTrigger.EXPIRATION_IMMINENT
            if dte <= exit_config.time_stop_dte:
                return TimeExitTrigger.EXPIRATION_SOON

        as_of = market_data.as_of
        if exit_config.enable_session_close_exit:
            local = as_of.astimezone(self._market_tz)
            if local.weekday() < 5 and local.time() >= self._session_exit:
                return TimeExitTrigger.SESSION_CLOSE

        if position.entry_time is not None:
            held_days = (as_of - position.entry_time).total_seconds() / 86400.0
            if held_days >= exit_config.max_hold_days:
                return TimeExitTrigger.MAX_HOLD_TIME
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., Any], *args) -> Any:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.config.data_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise MarketDataUnavailableError(f"timed out after {self.config.data_timeout_seconds:g}s")

    def _require(self, service: str, fn: Optional[Callable[..., Any]], *args) -> Any:
        """Fetch required data, raising FatalMarketDataError on any failure"""
        if fn is None:
            raise FatalMarketDataError(f"{service} unavailable: no market data provider")
        try:
            value = self._call(fn, *args)
        except Exception as e:
            self.degraded_tracker.record_failure(service, str(e))
            raise FatalMarketDataError(f"{service} unavailable: {e}") from e
        self.degraded_tracker.record_success(service)
        return value

    def _optional(self, service: str, degraded: List[str], reasoning: List[str],
                  fn: Optional[Callable[..., Any]], *args) -> Any:
        """Fetch optional data; failures are logged as degraded and return None"""
        if fn is None:
            self._note_degraded(service, 'no market data provider', degraded, reasoning)
            return None
        try:
            value = self._call(fn, *args)
        except Exception as e:
            self.degraded_tracker.record_failure(service, str(e))
            self._note_degraded(service, str(e), degraded, reasoning)
            return None
        self.degraded_tracker.record_success(service)
        return value

    @staticmethod
    def _note_degraded(service: str, cause: str, degraded: List[str], reasoning: List[str]):
        degraded.append(service)
        reasoning.append(f"Degraded: {service} unavailable ({cause}), term set to 0")
        LOG.warning(f"DEGRADED MODE: {service} input unavailable ({cause}), continuing without it")

    def _confluence_score(self, signal: Signal, related_signals: Sequence[Signal]) -> float:
        if related_signals:
            others = [s for s in related_signals if s.id != signal.id]
            return self.confluence_calculator.calculate(signal, [signal] + others)
        value = signal.metadata.get('confluence', signal.metadata.get('confluence_score'))
        if value is not None and not isinstance(value, bool):
            try:
                return clamp(float(value), 0.0, 1.0)
            except (TypeError, ValueError):
                pass
        return 0.5

    def _reject(self, signal: Signal, reasoning: List[str], reason: str,
                reference_price: Optional[float] = None) -> DecisionResult:
        reasoning = list(reasoning) + [f"REJECTED: {reason}"]
        LOG.info(f"REJECT {signal.symbol} {signal.direction.value} (signal {signal.id}): {reason}")
        return DecisionResult(
            decision=Decision.REJECT,
            confidence=0.0,
            position_size=0.0,
            reasoning=reasoning,
            calculations=DecisionCalculations(),
            signal=signal,
            reference_price=reference_price,
            config_hash=self.config_hash,
            created_at=self._clock(),
        )
