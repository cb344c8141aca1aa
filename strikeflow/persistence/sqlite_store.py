import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from strikeflow.decision_engine.schemas import DecisionResult
from strikeflow.errors import StoreUnavailableError
from strikeflow.persistence.store import QueuedSignal, TradeStore
from strikeflow.position_manager.schemas import Position, PositionStatus
from strikeflow.signals.schemas import Direction, PipelineFailure, PipelineStage, Signal, utcnow


_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS signals (
        id TEXT PRIMARY KEY,
        symbol TEXT NOT NULL,
        timeframe TEXT NOT NULL,
        direction TEXT NOT NULL,
        source TEXT NOT NULL,
        ts REAL NOT NULL,
        data TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_signals_symbol_tf_ts ON signals(symbol, timeframe, ts)",
    """CREATE TABLE IF NOT EXISTS decisions (
        id TEXT PRIMARY KEY,
        signal_id TEXT,
        position_id TEXT,
        decision TEXT NOT NULL,
        created_at REAL NOT NULL,
        data TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_decisions_signal ON decisions(signal_id)",
    "CREATE INDEX IF NOT EXISTS ix_decisions_position ON decisions(position_id)",
    """CREATE TABLE IF NOT EXISTS pipeline_failures (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tracking_id TEXT NOT NULL,
        signal_id TEXT,
        stage TEXT NOT NULL,
        reason TEXT NOT NULL,
        signal_data TEXT,
        ts REAL NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_failures_tracking ON pipeline_failures(tracking_id)",
    """CREATE TABLE IF NOT EXISTS raw_signals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        worker_id TEXT,
        claim_token TEXT,
        claimed_at REAL,
        tracking_id TEXT,
        received_at REAL NOT NULL,
        updated_at REAL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_raw_signals_status ON raw_signals(status, id)",
    """CREATE TABLE IF NOT EXISTS entry_reservations (
        signal_id TEXT PRIMARY KEY,
        reserved_at REAL NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS exposure_reservations (
        signal_id TEXT PRIMARY KEY,
        notional REAL NOT NULL,
        reserved_at REAL NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS positions (
        id TEXT PRIMARY KEY,
        signal_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        direction TEXT NOT NULL,
        quantity REAL NOT NULL,
        entry_price REAL NOT NULL,
        entry_time TEXT NOT NULL,
        status TEXT NOT NULL,
        current_price REAL,
        unrealized_pnl REAL NOT NULL DEFAULT 0,
        exit_price REAL,
        exit_time TEXT,
        realized_pnl REAL,
        timeframe TEXT,
        expiration TEXT,
        strike REAL,
        parent_position_id TEXT,
        version INTEGER NOT NULL,
        claim_token TEXT,
        updated_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_positions_status ON positions(status)",
    "CREATE INDEX IF NOT EXISTS ix_positions_parent ON positions(parent_position_id)",
    "CREATE INDEX IF NOT EXISTS ix_positions_signal ON positions(signal_id)",
)

_POSITION_COLUMNS = (
    'id', 'signal_id', 'symbol', 'direction', 'quantity', 'entry_price', 'entry_time', 'status',
    'current_price', 'unrealized_pnl', 'exit_price', 'exit_time', 'realized_pnl', 'timeframe',
    'expiration', 'strike', 'parent_position_id', 'version', 'claim_token', 'updated_at',
)
_POSITION_SELECT = f"SELECT {', '.join(_POSITION_COLUMNS)} FROM positions"


def _epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _position_row(position: Position) -> tuple:
    return (
        position.id, position.signal_id, position.symbol, position.direction.value,
        position.quantity, position.entry_price, position.entry_time.isoformat(), position.status.value,
        position.current_price, position.unrealized_pnl, position.exit_price,
        position.exit_time.isoformat() if position.exit_time else None, position.realized_pnl,
        position.timeframe, position.expiration.isoformat() if position.expiration else None,
        position.strike, position.parent_position_id, position.version, position.claim_token,
        position.updated_at.isoformat(),
    )


def _position_from_row(row: tuple) -> Position:
    data = dict(zip(_POSITION_COLUMNS, row))
    return Position(
        id=data['id'],
        signal_id=data['signal_id'],
        symbol=data['symbol'],
        direction=Direction(data['direction']),
        quantity=data['quantity'],
        entry_price=data['entry_price'],
        entry_time=_dt(data['entry_time']),
        status=PositionStatus(data['status']),
        current_price=data['current_price'],
        unrealized_pnl=data['unrealized_pnl'],
        exit_price=data['exit_price'],
        exit_time=_dt(data['exit_time']),
        realized_pnl=data['realized_pnl'],
        timeframe=data['timeframe'],
        expiration=date.fromisoformat(data['expiration']) if data['expiration'] else None,
        strike=data['strike'],
        parent_position_id=data['parent_position_id'],
        version=data['version'],
        claim_token=data['claim_token'],
        updated_at=_dt(data['updated_at']),
    )


class SQLiteTradeStore(TradeStore):
    """Durable on-disk store using SQLite.

    One connection shared across threads behind an RLock. Conditional
    updates (WHERE version/status/claim_token) plus rowcount checks give
    the atomic claim semantics across processes sharing the file.

    sqlite3 operational failures surface as StoreUnavailableError.
    """

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self._path, check_same_thread=False, timeout=10.0)
            for statement in _SCHEMA:
                self._conn.execute(statement)
            self._migrate()
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open store at {path}: {e}") from e

    def _migrate(self):
        # Files created before claimed_at existed
        columns = {row[1] for row in self._conn.execute("PRAGMA table_info(raw_signals)")}
        if 'claimed_at' not in columns:
            self._conn.execute("ALTER TABLE raw_signals ADD COLUMN claimed_at REAL")

    @contextmanager
    def _cursor(self):
        with self._lock:
            cur = self._conn.cursor()
            try:
                yield cur
                self._conn.commit()
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreUnavailableError(str(e)) from e
            except Exception:
                self._conn.rollback()
                raise

    # Audit records

    def save_signal(self, signal: Signal):
        with self._cursor() as cur:
            cur.execute(
                "INSERT OR REPLACE INTO signals(id, symbol, timeframe, direction, source, ts, data) VALUES (?,?,?,?,?,?,?)",
                (signal.id, signal.symbol, signal.timeframe, signal.direction.value, signal.source.value,
                 _epoch(signal.timestamp), json.dumps(signal.to_dict(), default=str)),
            )

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        with self._cursor() as cur:
            cur.execute("SELECT data FROM signals WHERE id=?", (signal_id,))
            row = cur.fetchone()
        return Signal.from_dict(json.loads(row[0])) if row else None

    def get_recent_signals(self, symbol: str, timeframe: str, since: datetime) -> List[Signal]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT data FROM signals WHERE symbol=? AND timeframe=? AND ts>=? ORDER BY ts ASC",
                (symbol, timeframe, _epoch(since)),
            )
            rows = cur.fetchall()
        return [Signal.from_dict(json.loads(r[0])) for r in rows]

    def save_decision(self, decision: DecisionResult):
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO decisions(id, signal_id, position_id, decision, created_at, data) VALUES (?,?,?,?,?,?)",
                (decision.decision_id, decision.signal.id if decision.signal else None, decision.position_id,
                 decision.decision.value, _epoch(decision.created_at), json.dumps(decision.to_dict(), default=str)),
            )

    def get_decisions(self, signal_id: Optional[str] = None, position_id: Optional[str] = None) -> List[dict]:
        query = "SELECT data FROM decisions"
        clauses, params = [], []
        if signal_id is not None:
            clauses.append("signal_id=?")
            params.append(signal_id)
        if position_id is not None:
            clauses.append("position_id=?")
            params.append(position_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC"
        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [json.loads(r[0]) for r in rows]

    def save_failure(self, failure: PipelineFailure):
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO pipeline_failures(tracking_id, signal_id, stage, reason, signal_data, ts) VALUES (?,?,?,?,?,?)",
                (failure.tracking_id, failure.signal_id, failure.stage.value, failure.reason,
                 json.dumps(failure.signal_data, default=str), _epoch(failure.timestamp)),
            )

    def get_failures(self, tracking_id=None, stage=None, since=None) -> List[PipelineFailure]:
        query = "SELECT tracking_id, signal_id, stage, reason, signal_data, ts FROM pipeline_failures"
        clauses, params = [], []
        if tracking_id is not None:
            clauses.append("tracking_id=?")
            params.append(tracking_id)
        if stage is not None:
            clauses.append("stage=?")
            params.append(stage.value)
        if since is not None:
            clauses.append("ts>=?")
            params.append(_epoch(since))
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY ts ASC, id ASC"
        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [
            PipelineFailure(
                tracking_id=r[0],
                signal_id=r[1],
                stage=PipelineStage(r[2]),
                reason=r[3],
                signal_data=json.loads(r[4]) if r[4] else {},
                timestamp=datetime.fromtimestamp(r[5], tz=timezone.utc),
            )
            for r in rows
        ]

    def delete_failures_before(self, cutoff: datetime) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM pipeline_failures WHERE ts<?", (_epoch(cutoff),))
            return cur.rowcount

    # Raw signal queue

    def enqueue_raw_signal(self, payload: Dict[str, Any]) -> int:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO raw_signals(payload, status, received_at) VALUES (?, 'PENDING', ?)",
                (json.dumps(payload, default=str), _epoch(utcnow())),
            )
            return cur.lastrowid

    def claim_pending_signals(self, worker_id: str, limit: int) -> List[QueuedSignal]:
        token = str(uuid.uuid4())
        now = _epoch(utcnow())
        with self._cursor() as cur:
            cur.execute(
                """UPDATE raw_signals SET status='PROCESSING', worker_id=?, claim_token=?, claimed_at=?, updated_at=?
                   WHERE id IN (SELECT id FROM raw_signals WHERE status='PENDING' ORDER BY id ASC LIMIT ?)""",
                (worker_id, token, now, now, int(limit)),
            )
            cur.execute("SELECT id, payload FROM raw_signals WHERE claim_token=? ORDER BY id ASC", (token,))
            rows = cur.fetchall()
        return [(r[0], json.loads(r[1])) for r in rows]

    def complete_raw_signal(self, queue_id: int, tracking_id: str, success: bool):
        with self._cursor() as cur:
            cur.execute(
                "UPDATE raw_signals SET status=?, tracking_id=?, updated_at=? WHERE id=?",
                ('PROCESSED' if success else 'FAILED', tracking_id, _epoch(utcnow()), queue_id),
            )

    def count_pending_signals(self) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM raw_signals WHERE status='PENDING'")
            return int(cur.fetchone()[0])

    def requeue_raw_signals(self, queue_ids: List[int]) -> int:
        if not queue_ids:
            return 0
        placeholders = ",".join("?" for _ in queue_ids)
        with self._cursor() as cur:
            cur.execute(
                f"""UPDATE raw_signals SET status='PENDING', worker_id=NULL, claim_token=NULL, claimed_at=NULL, updated_at=?
                    WHERE status='PROCESSING' AND id IN ({placeholders})""",
                (_epoch(utcnow()), *queue_ids),
            )
            return cur.rowcount

    def release_stale_signal_claims(self, claimed_before: datetime) -> int:
        with self._cursor() as cur:
            cur.execute(
                """UPDATE raw_signals SET status='PENDING', worker_id=NULL, claim_token=NULL, claimed_at=NULL, updated_at=?
                   WHERE status='PROCESSING' AND claimed_at<?""",
                (_epoch(utcnow()), _epoch(claimed_before)),
            )
            return cur.rowcount

    # Positions

    def reserve_entry(self, signal_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "INSERT OR IGNORE INTO entry_reservations(signal_id, reserved_at) VALUES (?, ?)",
                (signal_id, _epoch(utcnow())),
            )
            return cur.rowcount == 1

    def release_entry(self, signal_id: str):
        with self._cursor() as cur:
            cur.execute("DELETE FROM entry_reservations WHERE signal_id=?", (signal_id,))

    def reserve_exposure(self, signal_id: str, notional: float, limit: float, multiplier: float) -> bool:
        with self._cursor() as cur:
            # Holds the write lock across the sums and the insert
            if not self._conn.in_transaction:
                cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """INSERT OR IGNORE INTO exposure_reservations(signal_id, notional, reserved_at)
                   SELECT ?, ?, ?
                   WHERE (SELECT COALESCE(SUM(COALESCE(current_price, entry_price) * quantity), 0)
                          FROM positions WHERE status='OPEN') * ?
                       + (SELECT COALESCE(SUM(notional), 0) FROM exposure_reservations)
                       + ? <= ?""",
                (signal_id, notional, _epoch(utcnow()), multiplier, notional, limit),
            )
            return cur.rowcount == 1

    def release_exposure(self, signal_id: str):
        with self._cursor() as cur:
            cur.execute("DELETE FROM exposure_reservations WHERE signal_id=?", (signal_id,))

    def insert_position(self, position: Position):
        placeholders = ",".join("?" for _ in _POSITION_COLUMNS)
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO positions({', '.join(_POSITION_COLUMNS)}) VALUES ({placeholders})",
                _position_row(position),
            )
            cur.execute("DELETE FROM exposure_reservations WHERE signal_id=?", (position.signal_id,))

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._cursor() as cur:
            cur.execute(f"{_POSITION_SELECT} WHERE id=?", (position_id,))
            row = cur.fetchone()
        return _position_from_row(row) if row else None

    def get_position_by_signal(self, signal_id: str) -> Optional[Position]:
        with self._cursor() as cur:
            cur.execute(
                f"{_POSITION_SELECT} WHERE signal_id=? AND parent_position_id IS NULL LIMIT 1",
                (signal_id,),
            )
            row = cur.fetchone()
        return _position_from_row(row) if row else None

    def get_positions(self, status: Optional[PositionStatus] = None) -> List[Position]:
        with self._cursor() as cur:
            if status is None:
                cur.execute(f"{_POSITION_SELECT} ORDER BY entry_time ASC")
            else:
                cur.execute(f"{_POSITION_SELECT} WHERE status=? ORDER BY entry_time ASC", (status.value,))
            rows = cur.fetchall()
        return [_position_from_row(r) for r in rows]

    def get_lots(self, parent_position_id: str) -> List[Position]:
        with self._cursor() as cur:
            cur.execute(
                f"{_POSITION_SELECT} WHERE parent_position_id=? ORDER BY exit_time ASC",
                (parent_position_id,),
            )
            rows = cur.fetchall()
        return [_position_from_row(r) for r in rows]

    def update_position_price(self, position_id, price, unrealized_pnl, updated_at) -> Optional[Position]:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE positions SET current_price=?, unrealized_pnl=?, updated_at=? WHERE id=? AND status='OPEN'",
                (price, unrealized_pnl, updated_at.isoformat(), position_id),
            )
            if cur.rowcount != 1:
                return None
        return self.get_position(position_id)

    def claim_position(self, position_id: str, expected_version: int, claim_token: str) -> Optional[Position]:
        with self._cursor() as cur:
            cur.execute(
                """UPDATE positions SET claim_token=?, version=version+1, updated_at=?
                   WHERE id=? AND status='OPEN' AND claim_token IS NULL AND version=?""",
                (claim_token, utcnow().isoformat(), position_id, expected_version),
            )
            if cur.rowcount != 1:
                return None
        return self.get_position(position_id)

    def release_claim(self, position_id: str, claim_token: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE positions SET claim_token=NULL, version=version+1, updated_at=? WHERE id=? AND claim_token=?",
                (utcnow().isoformat(), position_id, claim_token),
            )
            return cur.rowcount == 1

    def commit_close(self, updated: Position, claim_token: str, lot: Optional[Position] = None) -> bool:
        assignments = ", ".join(f"{col}=?" for col in _POSITION_COLUMNS[1:])
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE positions SET {assignments} WHERE id=? AND status='OPEN' AND claim_token=?",
                _position_row(updated)[1:] + (updated.id, claim_token),
            )
            if cur.rowcount != 1:
                return False
            if lot is not None:
                placeholders = ",".join("?" for _ in _POSITION_COLUMNS)
                cur.execute(
                    f"INSERT INTO positions({', '.join(_POSITION_COLUMNS)}) VALUES ({placeholders})",
                    _position_row(lot),
                )
            return True

    def close(self):
        with self._lock:
            self._conn.close()
