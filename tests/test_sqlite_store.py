from datetime import timedelta
import sqlite3

from strikeflow.decision_engine.schemas import Decision, DecisionResult
from strikeflow.persistence.sqlite_store import SQLiteTradeStore
from strikeflow.position_manager.schemas import Position, PositionStatus
from strikeflow.signals.schemas import Direction, PipelineFailure, PipelineStage, utcnow

from conftest import FakeClock, create_signal


def create_position(clock, position_id='pos-1', signal_id='sig-1', quantity=2.0):
    return Position(
        id=position_id,
        signal_id=signal_id,
        symbol='SPY',
        direction=Direction.CALL,
        quantity=quantity,
        entry_price=2.0,
        entry_time=clock.now,
        current_price=2.0,
        timeframe='5m',
        updated_at=clock.now,
    )


def test_signal_roundtrip_and_recent_window(tmp_path):
    clock = FakeClock()
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        old = create_signal(clock)
        clock.advance(minutes=20)
        recent = create_signal(clock, note="fresh")
        other_tf = create_signal(clock, timeframe="15m")
        for signal in (old, recent, other_tf):
            store.save_signal(signal)

        assert store.get_signal(recent.id) == recent
        assert store.get_signal('missing') is None

        window = store.get_recent_signals('SPY', '5m', clock.now - timedelta(minutes=15))
        assert [s.id for s in window] == [recent.id]
    finally:
        store.close()


def test_decisions_and_failures(tmp_path):
    clock = FakeClock()
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        signal = create_signal(clock)
        store.save_decision(DecisionResult(decision=Decision.REJECT, signal=signal, created_at=clock.now))
        store.save_decision(DecisionResult(decision=Decision.EXIT, position_id='pos-1', created_at=clock.now))

        assert [d['decision'] for d in store.get_decisions(signal_id=signal.id)] == ['REJECT']
        assert [d['decision'] for d in store.get_decisions(position_id='pos-1')] == ['EXIT']
        assert len(store.get_decisions()) == 2

        store.save_failure(PipelineFailure('t-1', PipelineStage.VALIDATION, "Cooldown active",
                                           signal_id=signal.id, signal_data=signal.to_dict(),
                                           timestamp=clock.now - timedelta(hours=30)))
        store.save_failure(PipelineFailure('t-2', PipelineStage.NORMALIZATION, "Missing required fields: symbol",
                                           signal_data={'action': 'BUY'}, timestamp=clock.now))

        [failure] = store.get_failures(tracking_id='t-2')
        assert failure.stage is PipelineStage.NORMALIZATION
        assert failure.signal_data == {'action': 'BUY'}
        assert failure.timestamp == clock.now
        assert len(store.get_failures(stage=PipelineStage.VALIDATION)) == 1

        assert store.delete_failures_before(clock.now - timedelta(hours=24)) == 1
        assert [f.tracking_id for f in store.get_failures()] == ['t-2']
    finally:
        store.close()


def test_raw_signal_queue(tmp_path):
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        ids = [store.enqueue_raw_signal({'symbol': s, 'action': 'BUY', 'timeframe': '5m'}) for s in ('SPY', 'QQQ', 'IWM')]
        assert store.count_pending_signals() == 3

        first = store.claim_pending_signals('worker-a', limit=2)
        second = store.claim_pending_signals('worker-b', limit=5)

        assert [queue_id for queue_id, _ in first] == ids[:2]
        assert [queue_id for queue_id, _ in second] == ids[2:]
        assert first[0][1]['symbol'] == 'SPY'
        assert store.count_pending_signals() == 0

        store.complete_raw_signal(ids[0], 'tracking-1', success=True)
        assert store.claim_pending_signals('worker-c', limit=5) == []
    finally:
        store.close()


def test_unfinished_claims_return_to_pending(tmp_path):
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        ids = [store.enqueue_raw_signal({'symbol': s}) for s in ('SPY', 'QQQ', 'IWM')]
        store.claim_pending_signals('worker-a', limit=3)
        store.complete_raw_signal(ids[0], 'tracking-1', success=True)

        assert store.requeue_raw_signals(ids) == 2
        assert store.requeue_raw_signals([]) == 0
        assert store.count_pending_signals() == 2
        assert [queue_id for queue_id, _ in store.claim_pending_signals('worker-b', limit=5)] == ids[1:]
    finally:
        store.close()


def test_stale_claims_released_by_age(tmp_path):
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        store.enqueue_raw_signal({'symbol': 'SPY'})
        store.claim_pending_signals('worker-a', limit=1)

        assert store.release_stale_signal_claims(utcnow() - timedelta(minutes=5)) == 0
        assert store.count_pending_signals() == 0

        assert store.release_stale_signal_claims(utcnow() + timedelta(seconds=1)) == 1
        assert store.count_pending_signals() == 1
    finally:
        store.close()


def test_exposure_reservations_count_against_limit(tmp_path):
    clock = FakeClock()
    path = str(tmp_path / "trades.db")
    store = SQLiteTradeStore(path)
    other = SQLiteTradeStore(path)
    try:
        # Open 2-lot at 2.0 is 400 notional with a 100 multiplier
        store.insert_position(create_position(clock))

        assert store.reserve_exposure('sig-2', 300.0, limit=1000.0, multiplier=100.0) is True
        assert other.reserve_exposure('sig-3', 400.0, limit=1000.0, multiplier=100.0) is False
        assert other.reserve_exposure('sig-3', 300.0, limit=1000.0, multiplier=100.0) is True

        store.release_exposure('sig-3')
        other.insert_position(create_position(clock, position_id='pos-2', signal_id='sig-2', quantity=1.5))
        # sig-2 reservation became the pos-2 position
        assert store.reserve_exposure('sig-4', 300.0, limit=1000.0, multiplier=100.0) is True
        assert store.reserve_exposure('sig-5', 1.0, limit=1000.0, multiplier=100.0) is False
    finally:
        other.close()
        store.close()


def test_older_queue_table_gains_claimed_at(tmp_path):
    path = str(tmp_path / "trades.db")
    conn = sqlite3.connect(path)
    conn.execute(
        """CREATE TABLE raw_signals (
            id INTEGER PRIMARY KEY AUTOINCREMENT, payload TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'PENDING', worker_id TEXT, claim_token TEXT,
            tracking_id TEXT, received_at REAL NOT NULL, updated_at REAL
        )"""
    )
    conn.commit()
    conn.close()

    store = SQLiteTradeStore(path)
    try:
        store.enqueue_raw_signal({'symbol': 'SPY'})
        assert len(store.claim_pending_signals('worker-a', limit=1)) == 1
        assert store.release_stale_signal_claims(utcnow() + timedelta(seconds=1)) == 1
    finally:
        store.close()


def test_entry_reservation_is_exclusive(tmp_path):
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        assert store.reserve_entry('sig-1') is True
        assert store.reserve_entry('sig-1') is False
        store.release_entry('sig-1')
        assert store.reserve_entry('sig-1') is True
    finally:
        store.close()


def test_position_claim_protocol(tmp_path):
    clock = FakeClock()
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        position = create_position(clock)
        store.insert_position(position)
        assert store.get_position(position.id) == position

        refreshed = store.update_position_price(position.id, 2.5, 1.0, clock.now)
        assert refreshed.current_price == 2.5
        assert refreshed.version == 1

        claimed = store.claim_position(position.id, 1, 'token-a')
        assert claimed.claim_token == 'token-a'
        assert claimed.version == 2

        # Same version cannot be claimed twice
        assert store.claim_position(position.id, 1, 'token-b') is None
        assert store.claim_position(position.id, 2, 'token-b') is None

        assert store.release_claim(position.id, 'token-b') is False
        assert store.release_claim(position.id, 'token-a') is True
        assert store.get_position(position.id).claim_token is None
    finally:
        store.close()


def test_commit_close_with_lot(tmp_path):
    clock = FakeClock()
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        position = create_position(clock)
        store.insert_position(position)
        claimed = store.claim_position(position.id, 1, 'token-a')

        lot = create_position(clock, position_id='lot-1', quantity=1.0).evolve(
            status=PositionStatus.CLOSED, exit_price=3.0, exit_time=clock.now,
            realized_pnl=1.0, parent_position_id=position.id, version=1,
        )
        remaining = claimed.evolve(quantity=1.0, claim_token=None)

        assert store.commit_close(remaining, 'wrong-token', lot) is False
        assert store.commit_close(remaining, 'token-a', lot) is True

        assert store.get_position(position.id).quantity == 1.0
        assert [l.id for l in store.get_lots(position.id)] == ['lot-1']
        assert [p.id for p in store.get_open_positions()] == [position.id]
        assert len(store.get_positions(PositionStatus.CLOSED)) == 1
        assert store.get_position_by_signal('sig-1').id == position.id
    finally:
        store.close()


def test_commit_close_requires_open_position(tmp_path):
    clock = FakeClock()
    store = SQLiteTradeStore(str(tmp_path / "trades.db"))
    try:
        position = create_position(clock)
        store.insert_position(position)
        claimed = store.claim_position(position.id, 1, 'token-a')
        closed = claimed.evolve(status=PositionStatus.CLOSED, exit_price=2.5, exit_time=clock.now,
                                realized_pnl=1.0, claim_token=None)

        assert store.commit_close(closed, 'token-a') is True
        assert store.commit_close(closed, 'token-a') is False
        assert store.update_position_price(position.id, 9.0, 0.0, clock.now) is None
        assert store.get_open_positions() == []
    finally:
        store.close()


def test_reopening_the_file_keeps_state(tmp_path):
    clock = FakeClock()
    path = str(tmp_path / "trades.db")
    store = SQLiteTradeStore(path)
    store.insert_position(create_position(clock))
    store.enqueue_raw_signal({'symbol': 'SPY'})
    store.close()

    store = SQLiteTradeStore(path)
    try:
        assert store.get_position('pos-1') is not None
        assert store.count_pending_signals() == 1
    finally:
        store.close()
