"""
Tests for DecisionOrchestrator and PositionSizer

Entry layering and clamping, sizing multipliers, rejection paths,
degraded inputs and exit rule priority.
"""

from datetime import timedelta

import pytest

from strikeflow.decision_engine.config import DecisionEngineConfig, SizingConfig
from strikeflow.decision_engine.orchestrator import DecisionOrchestrator, resolve_signal_price
from strikeflow.decision_engine.position_sizing import PositionSizer
from strikeflow.decision_engine.schemas import Decision, ExitReason, TimeExitTrigger
from strikeflow.market_data.provider import InMemoryMarketDataProvider
from strikeflow.market_data.schemas import ExitMarketData, GexSignal, Positioning, Regime, Trend
from strikeflow.position_manager.schemas import Position
from strikeflow.signals.schemas import Direction, ValidationResult

from conftest import create_context, create_signal


PASSED = ValidationResult(valid=True)


@pytest.fixture
def market_data(clock):
    provider = InMemoryMarketDataProvider(clock=clock.epoch)
    provider.update_context(create_context())
    provider.update_price('SPY', 2.50)
    return provider


@pytest.fixture
def orchestrator(market_data, clock):
    orch = DecisionOrchestrator(market_data=market_data, clock=clock)
    yield orch
    orch.shutdown()


def create_positioning(clock, strength=1.0, direction="CALL", put_call_ratio=None,
                       support=None, flipped=False, gex_age_minutes=0):
    gex = None
    if strength is not None:
        gex = GexSignal(
            symbol='SPY',
            strength=strength,
            direction=direction,
            timestamp=clock.now - timedelta(minutes=gex_age_minutes),
            flipped=flipped,
        )
    return Positioning(symbol='SPY', gex=gex, put_call_ratio=put_call_ratio,
                       support=support, timestamp=clock.now)


def create_position(clock, quantity=2.0, entry_price=2.0, entry_time=None, direction=Direction.CALL):
    return Position(
        id='pos-1',
        signal_id='sig-1',
        symbol='SPY',
        direction=direction,
        quantity=quantity,
        entry_price=entry_price,
        entry_time=entry_time or clock.now,
    )


class TestEntryDecision:

    def test_baseline_signal_enters_with_one_contract(self, orchestrator, clock):
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), PASSED)

        assert result.decision is Decision.ENTER
        assert result.confidence == 50.0
        assert result.position_size == 1
        assert result.reference_price == 2.50
        assert result.degraded_inputs == ['POSITIONING']
        assert result.calculations.base_confidence == 50.0
        assert result.calculations.kelly_multiplier == pytest.approx(1.125)
        assert result.calculations.confluence_multiplier == pytest.approx(1.0)

    def test_failed_validation_rejects(self, orchestrator, clock):
        failed = ValidationResult(valid=False, rejection_reason="Cooldown active")
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), failed)

        assert result.decision is Decision.REJECT
        assert result.position_size == 0
        assert any("Cooldown active" in line for line in result.reasoning)

    def test_vix_ceiling(self, orchestrator, market_data, clock):
        market_data.update_context(create_context(vix=55.0))
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), PASSED)

        assert result.decision is Decision.REJECT
        assert "VIX 55.0 exceeds maximum 50" in result.reasoning[-1]

    def test_missing_context_rejects_with_zeroed_calculations(self, clock):
        orch = DecisionOrchestrator(market_data=InMemoryMarketDataProvider(clock=clock.epoch), clock=clock)
        try:
            result = orch.orchestrate_entry_decision(create_signal(clock), PASSED)
        finally:
            orch.shutdown()

        assert result.decision is Decision.REJECT
        assert "Market data unavailable" in result.reasoning[-1]
        assert result.calculations.final_confidence == 0.0
        assert not orch.degraded_tracker.is_service_healthy('CONTEXT')

    def test_missing_price_rejects(self, orchestrator, clock):
        result = orchestrator.orchestrate_entry_decision(create_signal(clock, symbol="QQQ"), PASSED)
        assert result.decision is Decision.REJECT
        assert "PRICE unavailable" in result.reasoning[-1]

    def test_metadata_price_used_before_provider(self, orchestrator, clock):
        result = orchestrator.orchestrate_entry_decision(create_signal(clock, symbol="QQQ", price="4.10"), PASSED)
        assert result.decision is Decision.ENTER
        assert result.reference_price == 4.10

    def test_counter_trend_below_threshold(self, orchestrator, market_data, clock):
        market_data.update_context(create_context(trend=Trend.BEARISH))
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), PASSED)

        assert result.decision is Decision.REJECT
        assert result.confidence == 30.0
        assert result.calculations.context_adjustment == -20.0
        assert result.position_size == 0
        assert any("below threshold" in line for line in result.reasoning)

    def test_context_term_clamped(self, orchestrator, market_data, clock):
        market_data.update_context(create_context(vix=12.0, trend=Trend.BULLISH, regime=Regime.LOW_VOL, bias=0.8))
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), PASSED)

        # +5 low VIX, +10 trend, +5 bias, +5 regime = 25, clamped to 20
        assert result.calculations.context_adjustment == 20.0
        assert any("clamped" in line for line in result.reasoning)

    def test_final_confidence_clamped_to_100(self, market_data, clock):
        config = DecisionEngineConfig()
        config.confidence.base_confidence_by_source['TRADINGVIEW'] = 90.0
        market_data.update_context(create_context(vix=12.0, trend=Trend.BULLISH))
        market_data.update_positioning(create_positioning(clock, put_call_ratio=0.5))

        orch = DecisionOrchestrator(config, market_data=market_data, clock=clock)
        try:
            result = orch.orchestrate_entry_decision(create_signal(clock), PASSED)
        finally:
            orch.shutdown()

        assert result.confidence == 100.0
        assert result.calculations.final_confidence == 100.0
        assert result.degraded_inputs == []

    def test_opposed_gex_lowers_confidence(self, orchestrator, market_data, clock):
        market_data.update_positioning(create_positioning(clock, strength=0.5, direction="PUT"))
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), PASSED)

        assert result.calculations.gex_adjustment == pytest.approx(-7.5)
        assert result.decision is Decision.REJECT

    def test_stale_gex_weight_reduced(self, orchestrator, market_data, clock):
        market_data.update_positioning(create_positioning(clock, strength=1.0, gex_age_minutes=300))
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), PASSED)

        assert result.calculations.gex_adjustment == pytest.approx(7.5)

    def test_positioning_without_gex_marks_gex_degraded(self, orchestrator, market_data, clock):
        market_data.update_positioning(create_positioning(clock, strength=None))
        result = orchestrator.orchestrate_entry_decision(create_signal(clock), PASSED)

        assert result.degraded_inputs == ['GEX']
        assert result.decision is Decision.ENTER

    def test_exposure_limit(self, market_data, clock):
        orch = DecisionOrchestrator(market_data=market_data, exposure_provider=lambda: 49_900.0, clock=clock)
        try:
            result = orch.orchestrate_entry_decision(create_signal(clock), PASSED)
        finally:
            orch.shutdown()

        assert result.decision is Decision.REJECT
        assert any("Exposure limit exceeded" in line for line in result.reasoning)

    def test_disagreeing_related_signals_shrink_size_to_zero(self, orchestrator, clock):
        signal = create_signal(clock)
        opposing = [create_signal(clock, action="SELL", type="PUT", n=i) for i in range(4)]
        result = orchestrator.orchestrate_entry_decision(signal, PASSED, related_signals=opposing)

        assert result.calculations.confluence_multiplier == pytest.approx(0.8 + 0.4 / 5)
        assert result.decision is Decision.REJECT
        assert any("below minimum" in line for line in result.reasoning)

    def test_caller_max_size(self, clock):
        config = DecisionEngineConfig()
        config.sizing.base_size = 5.0
        provider = InMemoryMarketDataProvider(clock=clock.epoch)
        provider.update_context(create_context())
        provider.update_price('SPY', 2.50)
        orch = DecisionOrchestrator(config, market_data=provider, clock=clock)
        try:
            result = orch.orchestrate_entry_decision(create_signal(clock), PASSED, max_size=2)
        finally:
            orch.shutdown()

        assert result.position_size == 2
        assert result.calculations.final_size == 2

    def test_resolve_signal_price(self, clock):
        assert resolve_signal_price(create_signal(clock, entryPrice="3.25")) == 3.25
        assert resolve_signal_price(create_signal(clock, price=0, close=1.5)) == 1.5
        assert resolve_signal_price(create_signal(clock, price="n/a")) is None


class TestPositionSizer:

    def test_baseline(self):
        result = PositionSizer().calculate(confidence=50.0, regime=Regime.NORMAL, confluence_score=0.5)
        assert result.raw_size == pytest.approx(1.125)
        assert result.position_size == 1
        assert result.is_valid

    def test_capped_at_max_size(self):
        sizer = PositionSizer(SizingConfig(base_size=10.0))
        result = sizer.calculate(confidence=100.0, regime=Regime.LOW_VOL, confluence_score=1.0)

        assert result.raw_size == pytest.approx(18.0)
        assert result.final_size == 10.0
        assert result.position_size == 10

    def test_elevated_vix_reduction_can_invalidate(self):
        result = PositionSizer().calculate(confidence=50.0, regime=Regime.NORMAL, confluence_score=0.5, vix=35.0)

        assert result.regime_multiplier == pytest.approx(0.5)
        assert result.position_size == 0
        assert not result.is_valid
        assert "below minimum" in result.rejection_reason

    def test_fractional_contracts(self):
        sizer = PositionSizer(SizingConfig(whole_contracts=False, min_size=0.5))
        result = sizer.calculate(confidence=50.0, regime=Regime.NORMAL, confluence_score=0.5)
        assert result.position_size == pytest.approx(1.125)

    def test_confluence_score_clamped(self):
        sizer = PositionSizer()
        assert sizer.confluence_multiplier(2.0) == pytest.approx(1.2)
        assert sizer.confluence_multiplier(-1.0) == pytest.approx(0.8)


class TestExitDecision:

    def exit_data(self, clock, price, dte=10, positioning=None, as_of=None):
        return ExitMarketData(price=price, as_of=as_of or clock.now, days_to_expiration=dte,
                              positioning=positioning)

    def test_profit_target(self, orchestrator, clock):
        result = orchestrator.orchestrate_exit_decision(create_position(clock), self.exit_data(clock, 3.0))

        assert result.decision is Decision.EXIT
        assert result.exit_reason is ExitReason.PROFIT_TARGET
        assert result.position_size == 2
        assert result.exit_calculations.current_pnl == pytest.approx(2.0)
        assert result.exit_calculations.current_pnl_percent == pytest.approx(50.0)

    def test_stop_loss(self, orchestrator, clock):
        result = orchestrator.orchestrate_exit_decision(create_position(clock), self.exit_data(clock, 1.4))
        assert result.exit_reason is ExitReason.STOP_LOSS

    def test_hold_notes_missing_positioning(self, orchestrator, clock):
        result = orchestrator.orchestrate_exit_decision(create_position(clock), self.exit_data(clock, 2.1))

        assert result.decision is Decision.HOLD
        assert result.exit_reason is None
        assert result.position_size == 0
        assert result.degraded_inputs == ['POSITIONING']

    def test_stop_loss_beats_time_exit(self, orchestrator, clock):
        result = orchestrator.orchestrate_exit_decision(create_position(clock), self.exit_data(clock, 1.0, dte=0))

        assert result.exit_reason is ExitReason.STOP_LOSS
        assert result.time_exit_trigger is None
        assert result.exit_calculations.time_exit is True

    def test_profit_target_beats_time_exit(self, orchestrator, clock):
        result = orchestrator.orchestrate_exit_decision(create_position(clock), self.exit_data(clock, 3.5, dte=0))
        assert result.exit_reason is ExitReason.PROFIT_TARGET

    def test_gex_flip_against_position(self, orchestrator, clock):
        positioning = create_positioning(clock, direction="PUT", flipped=True)
        result = orchestrator.orchestrate_exit_decision(
            create_position(clock), self.exit_data(clock, 2.1, positioning=positioning)
        )
        assert result.exit_reason is ExitReason.GEX_FLIP
        assert result.degraded_inputs == []

    def test_gex_flip_in_favour_holds(self, orchestrator, clock):
        positioning = create_positioning(clock, direction="CALL", flipped=True)
        result = orchestrator.orchestrate_exit_decision(
            create_position(clock), self.exit_data(clock, 2.1, positioning=positioning)
        )
        assert result.decision is Decision.HOLD

    @pytest.mark.parametrize("dte,trigger", [
        (0, TimeExitTrigger.EXPIRATION_IMMINENT),
        (-1, TimeExitTrigger.EXPIRATION_IMMINENT),
        (1, TimeExitTrigger.EXPIRATION_SOON),
    ])
    def test_expiration_triggers(self, orchestrator, clock, dte, trigger):
        result = orchestrator.orchestrate_exit_decision(create_position(clock), self.exit_data(clock, 2.1, dte=dte))

        assert result.exit_reason is ExitReason.TIME_EXIT
        assert result.time_exit_trigger is trigger

    def test_session_close_trigger(self, orchestrator, clock):
        position = create_position(clock)
        as_of = clock.now.replace(hour=20, minute=50)  # 15:50 ET
        result = orchestrator.orchestrate_exit_decision(position, self.exit_data(clock, 2.1, as_of=as_of))
        assert result.time_exit_trigger is TimeExitTrigger.SESSION_CLOSE

    def test_max_hold_time_trigger(self, orchestrator, clock):
        position = create_position(clock, entry_time=clock.now - timedelta(days=6))
        result = orchestrator.orchestrate_exit_decision(position, self.exit_data(clock, 2.1, dte=None))
        assert result.time_exit_trigger is TimeExitTrigger.MAX_HOLD_TIME
