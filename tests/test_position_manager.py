"""
Tests for PositionManager

Entry reservation, refresh, full/partial close accounting and the
claim protocol that keeps a position from being exited twice.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date
import threading
import time

import pytest

from strikeflow.decision_engine.schemas import Decision, DecisionResult
from strikeflow.errors import (
    DuplicateEntryError,
    ExecutionError,
    ExposureLimitError,
    InvalidCloseError,
    PositionClaimError,
)
from strikeflow.event_bus.core import EventBus, EventType
from strikeflow.execution.adapter import ExecutionAdapter, OrderAction, PaperExecutionAdapter
from strikeflow.market_data.provider import InMemoryMarketDataProvider
from strikeflow.persistence.store import InMemoryTradeStore
from strikeflow.position_manager.manager import PositionManager
from strikeflow.position_manager.schemas import CloseResult, Position, PositionStatus

from conftest import create_signal


ENTRY_FILL = 2.0 * 1.0005


class FlakyAdapter(ExecutionAdapter):
    """Delegates to a paper adapter unless told to fail"""

    def __init__(self, inner, error=None, fail_on=None):
        self.inner = inner
        self.error = error
        self.fail_on = fail_on

    def submit_order(self, symbol, direction, quantity, action=OrderAction.OPEN, reference_price=None):
        if self.error is not None and (self.fail_on is None or self.fail_on is action):
            raise self.error
        return self.inner.submit_order(symbol, direction, quantity, action, reference_price)


class SlowAdapter(ExecutionAdapter):
    """Paper fills after a delay, keeping concurrent callers in flight together"""

    def __init__(self, inner, delay=0.05):
        self.inner = inner
        self.delay = delay

    def submit_order(self, symbol, direction, quantity, action=OrderAction.OPEN, reference_price=None):
        time.sleep(self.delay)
        return self.inner.submit_order(symbol, direction, quantity, action, reference_price)


def run_together(count, func):
    """Call func(i) from count threads released at the same moment"""
    barrier = threading.Barrier(count)

    def call(i):
        barrier.wait()
        try:
            return func(i)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(call, range(count)))


def create_decision(clock, size=2.0, reference_price=2.0, **signal_fields):
    return DecisionResult(
        decision=Decision.ENTER,
        confidence=60.0,
        position_size=size,
        signal=create_signal(clock, **signal_fields),
        reference_price=reference_price,
    )


@pytest.fixture
def market_data(clock):
    provider = InMemoryMarketDataProvider(clock=clock.epoch)
    provider.update_price('SPY', 2.0)
    return provider


@pytest.fixture
def store():
    return InMemoryTradeStore()


@pytest.fixture
def paper(market_data, clock):
    return PaperExecutionAdapter(market_data, clock=clock)


@pytest.fixture
def manager(store, paper, clock):
    return PositionManager(store, paper, clock=clock)


class TestOpenPosition:

    def test_open_from_enter_decision(self, manager, store, clock):
        decision = create_decision(clock)
        position = manager.open_position(decision)

        assert position.status is PositionStatus.OPEN
        assert position.signal_id == decision.signal.id
        assert position.quantity == 2.0
        assert position.entry_price == pytest.approx(ENTRY_FILL)
        assert position.entry_time == clock.now
        assert position.version == 1
        assert position.realized_pnl is None
        assert store.get_position(position.id) == position

    def test_option_details_from_metadata(self, manager, clock):
        position = manager.open_position(create_decision(clock, expiration="2024-03-08", strike="510"))

        assert position.expiration == date(2024, 3, 8)
        assert position.strike == 510.0
        assert position.days_to_expiration(clock.now.date()) == 3

    def test_only_enter_decisions_open(self, manager, clock):
        reject = DecisionResult(decision=Decision.REJECT, signal=create_signal(clock))
        with pytest.raises(ValueError):
            manager.open_position(reject)

        with pytest.raises(ValueError):
            manager.open_position(create_decision(clock, size=0))

    def test_second_open_for_same_signal_rejected(self, manager, store, clock):
        decision = create_decision(clock)
        position = manager.open_position(decision)

        with pytest.raises(DuplicateEntryError, match=f"Position {position.id} already exists"):
            manager.open_position(decision)
        assert len(store.get_open_positions()) == 1

    def test_execution_failure_releases_reservation(self, store, paper, clock):
        adapter = FlakyAdapter(paper, error=ExecutionError("broker offline"))
        manager = PositionManager(store, adapter, clock=clock)
        decision = create_decision(clock)

        with pytest.raises(ExecutionError):
            manager.open_position(decision)
        assert store.get_open_positions() == []

        adapter.error = None
        assert manager.open_position(decision).is_open

    def test_unexpected_adapter_exception_wrapped(self, store, paper, clock):
        manager = PositionManager(store, FlakyAdapter(paper, error=RuntimeError("socket closed")), clock=clock)
        decision = create_decision(clock)

        with pytest.raises(ExecutionError, match="socket closed"):
            manager.open_position(decision)
        assert store.reserve_entry(decision.signal.id)


class TestRefreshPrice:

    def test_refresh_updates_unrealized_pnl(self, manager, clock):
        position = manager.open_position(create_decision(clock))
        refreshed = manager.refresh_price(position, 3.0)

        assert refreshed.current_price == 3.0
        assert refreshed.unrealized_pnl == pytest.approx((3.0 - ENTRY_FILL) * 2)
        assert refreshed.status is PositionStatus.OPEN
        assert refreshed.version == position.version

    def test_non_positive_price_rejected(self, manager, clock):
        position = manager.open_position(create_decision(clock))
        with pytest.raises(ValueError):
            manager.refresh_price(position, 0)

    def test_refresh_on_closed_position_is_noop(self, manager, clock):
        position = manager.open_position(create_decision(clock))
        closed = manager.close_position(position, exit_price=2.5).closed_lot

        assert manager.refresh_price(closed, 9.9) is closed


class TestClosePosition:

    def test_full_close(self, manager, store, clock):
        position = manager.open_position(create_decision(clock))
        clock.advance(minutes=30)
        result = manager.close_position(position, exit_price=3.0)

        assert result.fully_closed
        assert result.realized_pnl == pytest.approx((3.0 - ENTRY_FILL) * 2)

        stored = store.get_position(position.id)
        assert stored.status is PositionStatus.CLOSED
        assert stored.exit_price == 3.0
        assert stored.exit_time == clock.now
        assert stored.realized_pnl == pytest.approx(result.realized_pnl)
        assert stored.claim_token is None
        assert stored.version > position.version

    def test_partial_then_remainder_equals_whole_close(self, manager, store, clock):
        position = manager.open_position(create_decision(clock))

        first = manager.close_position(position, exit_price=3.0, exit_quantity=1)
        assert not first.fully_closed
        assert first.closed_lot.parent_position_id == position.id
        assert first.closed_lot.status is PositionStatus.CLOSED
        assert first.remaining.quantity == 1
        assert first.remaining.status is PositionStatus.OPEN

        second = manager.close_position(first.remaining, exit_price=3.0)
        assert second.fully_closed

        whole = (3.0 - ENTRY_FILL) * 2
        assert first.realized_pnl + second.realized_pnl == pytest.approx(whole)
        assert [lot.id for lot in manager.get_lots(position.id)] == [first.closed_lot.id]
        assert store.get_position(position.id).quantity == 1

    def test_close_closed_position_rejected(self, manager, clock):
        position = manager.open_position(create_decision(clock))
        result = manager.close_position(position, exit_price=2.5)

        with pytest.raises(InvalidCloseError):
            manager.close_position(result.closed_lot, exit_price=2.5)

    def test_stale_snapshot_of_closed_position_rejected(self, manager, clock):
        position = manager.open_position(create_decision(clock))
        manager.close_position(position, exit_price=2.5)

        with pytest.raises(InvalidCloseError):
            manager.close_position(position, exit_price=2.5)

    @pytest.mark.parametrize("quantity", [0, -1, 3])
    def test_invalid_quantity(self, manager, clock, quantity):
        position = manager.open_position(create_decision(clock))
        with pytest.raises(InvalidCloseError):
            manager.close_position(position, exit_price=2.5, exit_quantity=quantity)

    def test_stale_snapshot_retried_against_latest_version(self, manager, store, clock):
        position = manager.open_position(create_decision(clock))
        manager.close_position(position, exit_price=2.5, exit_quantity=1)

        result = manager.close_position(position, exit_price=2.6, exit_quantity=1)
        assert result.fully_closed
        assert store.get_position(position.id).status is PositionStatus.CLOSED

    def test_stale_snapshot_over_remaining_quantity_keeps_position_closeable(self, manager, store, clock):
        position = manager.open_position(create_decision(clock))
        manager.close_position(position, exit_price=2.5, exit_quantity=1)

        # Full close of the 2-contract snapshot against the 1 still open
        with pytest.raises(InvalidCloseError, match="exceeds open quantity"):
            manager.close_position(position, exit_price=2.5)

        latest = store.get_position(position.id)
        assert latest.claim_token is None
        result = manager.close_position(latest, exit_price=2.6)
        assert result.fully_closed
        assert store.get_position(position.id).status is PositionStatus.CLOSED

    def test_claimed_position_cannot_be_closed(self, manager, store, clock):
        position = manager.open_position(create_decision(clock))
        assert store.claim_position(position.id, position.version, 'other-worker') is not None

        with pytest.raises(PositionClaimError):
            manager.close_position(position, exit_price=2.5)
        assert store.get_position(position.id).is_open

    def test_execution_failure_releases_claim(self, store, paper, clock):
        adapter = FlakyAdapter(paper, error=ExecutionError("rejected"), fail_on=OrderAction.CLOSE)
        manager = PositionManager(store, adapter, clock=clock)
        position = manager.open_position(create_decision(clock))

        with pytest.raises(ExecutionError):
            manager.close_position(position)

        stored = store.get_position(position.id)
        assert stored.is_open
        assert stored.claim_token is None

        adapter.error = None
        assert manager.close_position(stored).fully_closed

    def test_close_through_adapter_uses_fill(self, manager, clock):
        position = manager.open_position(create_decision(clock))
        refreshed = manager.refresh_price(position, 3.0)
        result = manager.close_position(refreshed)

        assert result.order_id is not None
        assert result.closed_lot.exit_price == pytest.approx(3.0 * 0.9995)


class TestQueriesAndEvents:

    def test_exposure_and_unrealized(self, manager, clock):
        position = manager.open_position(create_decision(clock))
        assert manager.total_exposure() == pytest.approx(ENTRY_FILL * 2 * 100)

        manager.refresh_price(position, 3.0)
        assert manager.total_exposure() == pytest.approx(3.0 * 2 * 100)
        assert manager.total_unrealized_pnl() == pytest.approx((3.0 - ENTRY_FILL) * 2)

    def test_lifecycle_events_published(self, store, paper, clock):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.POSITION_CLOSED, received.append)
        manager = PositionManager(store, paper, event_bus=bus, clock=clock)

        position = manager.open_position(create_decision(clock))
        manager.refresh_price(position, 2.5)
        manager.close_position(position, exit_price=2.5)
        bus.dispatch_pending()

        types = [e.event_type for e in bus.recent_events()]
        assert types == [EventType.POSITION_OPENED, EventType.POSITION_UPDATED, EventType.POSITION_CLOSED]
        assert received[0].data['position_id'] == position.id
        assert received[0].data['fully_closed'] is True


class TestConcurrentClose:

    def test_racing_closes_exit_once(self, store, paper, clock):
        manager = PositionManager(store, SlowAdapter(paper), clock=clock)
        position = manager.open_position(create_decision(clock))

        outcomes = run_together(6, lambda _: manager.close_position(position))

        wins = [o for o in outcomes if isinstance(o, CloseResult)]
        losses = [o for o in outcomes if not isinstance(o, CloseResult)]
        assert len(wins) == 1
        assert all(isinstance(e, (PositionClaimError, InvalidCloseError)) for e in losses)

        assert len(store.get_positions(PositionStatus.CLOSED)) == 1
        stored = store.get_position(position.id)
        assert stored.status is PositionStatus.CLOSED
        assert stored.claim_token is None
        assert paper.orders_submitted == 2

    def test_racing_partial_closes_never_oversell(self, store, paper, clock):
        manager = PositionManager(store, SlowAdapter(paper), clock=clock)
        position = manager.open_position(create_decision(clock, size=3.0))

        def close_one(_):
            latest = store.get_position(position.id)
            return manager.close_position(latest, exit_price=2.5, exit_quantity=1)

        outcomes = run_together(5, close_one)

        wins = [o for o in outcomes if isinstance(o, CloseResult)]
        closed_quantity = sum(lot.quantity for lot in store.get_positions(PositionStatus.CLOSED))
        assert closed_quantity == sum(w.closed_lot.quantity for w in wins)
        assert closed_quantity <= 3
        assert store.get_position(position.id).claim_token is None


class TestExposureLimit:

    @pytest.fixture
    def limited(self, store, paper, clock):
        # One 2-lot at 2.0 is 400 notional
        return PositionManager(store, paper, exposure_limit=500.0, clock=clock)

    def test_entry_past_limit_rejected(self, limited, store, clock):
        limited.open_position(create_decision(clock))
        second = create_decision(clock)

        with pytest.raises(ExposureLimitError, match="Exposure limit exceeded"):
            limited.open_position(second)

        assert len(store.get_open_positions()) == 1
        assert store.reserve_entry(second.signal.id)

    def test_entry_within_limit(self, limited, clock):
        limited.open_position(create_decision(clock, size=1.0))
        assert limited.open_position(create_decision(clock, size=1.0)).is_open

    def test_closing_frees_exposure(self, limited, clock):
        position = limited.open_position(create_decision(clock))
        limited.close_position(position, exit_price=2.5)

        assert limited.open_position(create_decision(clock)).is_open

    def test_failed_entry_gives_back_reserved_exposure(self, store, paper, clock):
        adapter = FlakyAdapter(paper, error=ExecutionError("broker offline"))
        manager = PositionManager(store, adapter, exposure_limit=500.0, clock=clock)

        with pytest.raises(ExecutionError):
            manager.open_position(create_decision(clock))

        adapter.error = None
        assert manager.open_position(create_decision(clock)).is_open

    def test_parallel_entries_respect_limit(self, store, paper, clock):
        manager = PositionManager(store, SlowAdapter(paper, delay=0.1), exposure_limit=500.0, clock=clock)
        decisions = [create_decision(clock) for _ in range(4)]

        outcomes = run_together(4, lambda i: manager.open_position(decisions[i]))

        opened = [o for o in outcomes if isinstance(o, Position)]
        assert len(opened) == 1
        assert all(isinstance(o, ExposureLimitError) for o in outcomes if o not in opened)
        assert manager.total_exposure() <= 500.0
