"""
Position Manager

Applies ENTER and EXIT decisions to the position state machine:

    OPEN --close(full)--> CLOSED
    OPEN --close(partial)--> OPEN (reduced) + CLOSED lot

Double-entry is prevented by an atomic per-signal reservation; double
exits by an atomic claim (version + status + claim token) taken before
the closing order is sent.
"""

from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple
import logging
import uuid

from dateutil import parser as date_parser

from strikeflow.decision_engine.schemas import Decision, DecisionResult
from strikeflow.errors import (
    DuplicateEntryError,
    ExposureLimitError,
    ExecutionError,
    InvalidCloseError,
    PositionClaimError,
)
from strikeflow.execution.adapter import ExecutionAdapter, OrderAction
from strikeflow.position_manager.config import PositionManagerConfig
from strikeflow.position_manager.schemas import CloseResult, Position, PositionStatus
from strikeflow.signals.schemas import Signal, utcnow

if TYPE_CHECKING:
    from strikeflow.event_bus.core import EventBus
    from strikeflow.persistence.store import TradeStore

LOG = logging.getLogger(__name__)

EXPIRATION_FIELDS = ('expiration', 'expiry', 'expiration_date', 'exp')
STRIKE_FIELDS = ('strike', 'strike_price')


def _metadata_expiration(signal: Signal) -> Optional[date]:
    for key in EXPIRATION_FIELDS:
        value = signal.metadata.get(key)
        if not value:
            continue
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return date_parser.parse(str(value)).date()
        except (ValueError, OverflowError):
            LOG.warning(f"Ignoring unparseable expiration {value!r} on signal {signal.id}")
    return None


def _metadata_strike(signal: Signal) -> Optional[float]:
    for key in STRIKE_FIELDS:
        value = signal.metadata.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


class PositionManager:
    """
    Position lifecycle.

    Thread-safe through the store's conditional writes; instances hold no
    mutable position state of their own.
    """

    def __init__(
        self,
        store: 'TradeStore',
        execution: ExecutionAdapter,
        config: Optional[PositionManagerConfig] = None,
        contract_multiplier: float = 100.0,
        exposure_limit: Optional[float] = None,
        event_bus: Optional['EventBus'] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.execution = execution
        self.config = config or PositionManagerConfig()
        self.contract_multiplier = contract_multiplier
        self.exposure_limit = exposure_limit
        self.event_bus = event_bus
        self._clock = clock

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    def open_position(self, decision: DecisionResult) -> Position:
        """
        Open a position from an ENTER decision.

        Args:
            decision: ENTER decision carrying its signal

        Returns:
            New OPEN position priced at the fill

        Raises:
            ValueError: decision is not an ENTER with a signal and size
            DuplicateEntryError: a position for this signal exists or is being opened
            ExposureLimitError: open plus in-flight exposure would pass the limit
            ExecutionError: the entry order failed (reservations are released)
        """
        if decision.decision is not Decision.ENTER or decision.signal is None:
            raise ValueError(f"Cannot open position from {decision.decision.value} decision")
        if decision.position_size <= 0:
            raise ValueError("Cannot open position with zero size")

        signal = decision.signal
        if not self.store.reserve_entry(signal.id):
            existing = self.store.get_position_by_signal(signal.id)
            if existing is not None:
                raise DuplicateEntryError(f"Position {existing.id} already exists for signal {signal.id}")
            raise DuplicateEntryError(f"Position for signal {signal.id} is already being opened")

        notional = self.entry_notional(decision)
        if self.exposure_limit is not None and not self.store.reserve_exposure(
            signal.id, notional, self.exposure_limit, self.contract_multiplier
        ):
            self.store.release_entry(signal.id)
            raise ExposureLimitError(
                f"Exposure limit exceeded: {self.total_exposure():,.0f} open + {notional:,.0f} "
                f"> {self.exposure_limit:,.0f} (including entries in flight)"
            )

        try:
            fill = self.execution.submit_order(
                signal.symbol,
                signal.direction,
                decision.position_size,
                action=OrderAction.OPEN,
                reference_price=decision.reference_price,
            )
        except Exception as e:
            self.store.release_exposure(signal.id)
            self.store.release_entry(signal.id)
            if isinstance(e, ExecutionError):
                raise
            raise ExecutionError(f"Execution adapter failure: {e}") from e

        now = self._clock()
        position = Position(
            id=str(uuid.uuid4()),
            signal_id=signal.id,
            symbol=signal.symbol,
            direction=signal.direction,
            quantity=decision.position_size,
            entry_price=fill.fill_price,
            entry_time=now,
            current_price=fill.fill_price,
            unrealized_pnl=0.0,
            timeframe=signal.timeframe,
            expiration=_metadata_expiration(signal),
            strike=_metadata_strike(signal),
            updated_at=now,
        )
        # Converts the exposure reservation into the open position
        self.store.insert_position(position)

        LOG.info(
            f"Opened position {position.id}: {position.quantity:g} x {position.symbol} "
            f"{position.direction.value} @ {position.entry_price:.4f} (signal {signal.id})"
        )
        self._publish('POSITION_OPENED', position.symbol, position.to_dict())
        return position

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh_price(self, position: Position, current_price: float) -> Position:
        """
        Update current price and unrealized P&L. No state transition.

        Returns the refreshed snapshot, or the input unchanged if the
        position is no longer open.
        """
        if current_price <= 0:
            raise ValueError(f"Price must be positive, got {current_price}")
        if not position.is_open:
            return position

        unrealized = position.pnl_at(current_price)
        refreshed = self.store.update_position_price(position.id, current_price, unrealized, self._clock())
        if refreshed is None:
            LOG.debug(f"Position {position.id} closed before price refresh")
            latest = self.store.get_position(position.id)
            return latest or position

        self._publish('POSITION_UPDATED', refreshed.symbol, {
            'position_id': refreshed.id,
            'current_price': current_price,
            'unrealized_pnl': unrealized,
        })
        return refreshed

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close_position(
        self,
        position: Position,
        exit_price: Optional[float] = None,
        exit_quantity: Optional[float] = None,
    ) -> CloseResult:
        """
        Close all or part of an open position.

        Args:
            position: Position snapshot (its version is used for the claim)
            exit_price: Fill price. None sends a closing order through the
                execution adapter and uses its fill.
            exit_quantity: Quantity to close (default: all)

        Returns:
            CloseResult with the closed lot and any remaining open position

        Raises:
            InvalidCloseError: already closed, or quantity <= 0 or > open quantity
            PositionClaimError: another worker holds or won the claim
            ExecutionError: the closing order failed (claim is released)
        """
        quantity = position.quantity if exit_quantity is None else exit_quantity
        self._check_closeable(position, quantity)
        if exit_price is not None and exit_price <= 0:
            raise InvalidCloseError(f"Exit price must be positive, got {exit_price}")

        claim_token = str(uuid.uuid4())
        claimed = self.store.claim_position(position.id, position.version, claim_token)
        if claimed is None:
            claimed = self._reclaim(position, claim_token)

        # Every exit path from here on either commits or gives the claim back
        try:
            self._check_closeable(claimed, quantity)
            order_id = None
            if exit_price is None:
                exit_price, order_id = self._submit_close(claimed, quantity)
            closed, lot, remaining, realized = self._split_close(claimed, quantity, exit_price)
            committed = closed if remaining is None else remaining
            if not self.store.commit_close(committed, claim_token, lot):
                raise PositionClaimError(f"Lost claim on position {claimed.id} before commit")
        except Exception:
            self.store.release_claim(claimed.id, claim_token)
            raise

        LOG.info(
            f"Closed {quantity:g} of position {claimed.id} ({claimed.symbol}) @ {exit_price:.4f}, "
            f"realized P&L {realized:+.2f}" + ("" if remaining is None else f", {remaining.quantity:g} remain open")
        )
        self._publish('POSITION_CLOSED', claimed.symbol, {
            'position_id': claimed.id,
            'exit_price': exit_price,
            'quantity': quantity,
            'realized_pnl': realized,
            'fully_closed': remaining is None,
        })
        return CloseResult(closed_lot=closed, remaining=remaining, order_id=order_id)

    def _submit_close(self, claimed: Position, quantity: float) -> Tuple[float, Optional[str]]:
        try:
            fill = self.execution.submit_order(
                claimed.symbol,
                claimed.direction,
                quantity,
                action=OrderAction.CLOSE,
                reference_price=claimed.current_price,
            )
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"Execution adapter failure: {e}") from e
        return fill.fill_price, fill.order_id

    def _split_close(self, claimed: Position, quantity: float, exit_price: float):
        """
        Build the post-close records.

        Returns (closed record, lot or None, remaining or None, realized P&L).
        A full close returns the position itself as the closed record.
        """
        now = self._clock()
        realized = (exit_price - claimed.entry_price) * quantity

        if quantity >= claimed.quantity:
            closed = claimed.evolve(
                status=PositionStatus.CLOSED,
                current_price=exit_price,
                unrealized_pnl=0.0,
                exit_price=exit_price,
                exit_time=now,
                realized_pnl=realized,
                claim_token=None,
                updated_at=now,
            )
            return closed, None, None, realized

        lot = Position(
            id=str(uuid.uuid4()),
            signal_id=claimed.signal_id,
            symbol=claimed.symbol,
            direction=claimed.direction,
            quantity=quantity,
            entry_price=claimed.entry_price,
            entry_time=claimed.entry_time,
            status=PositionStatus.CLOSED,
            current_price=exit_price,
            unrealized_pnl=0.0,
            exit_price=exit_price,
            exit_time=now,
            realized_pnl=realized,
            timeframe=claimed.timeframe,
            expiration=claimed.expiration,
            strike=claimed.strike,
            parent_position_id=claimed.id,
            updated_at=now,
        )
        remaining_qty = claimed.quantity - quantity
        mark = claimed.current_price if claimed.current_price is not None else exit_price
        remaining = claimed.evolve(
            quantity=remaining_qty,
            current_price=mark,
            unrealized_pnl=(mark - claimed.entry_price) * remaining_qty,
            claim_token=None,
            updated_at=now,
        )
        return lot, lot, remaining, realized

    def _check_closeable(self, position: Position, quantity: float):
        if position.status is PositionStatus.CLOSED:
            raise InvalidCloseError(f"Position {position.id} is already closed")
        if quantity <= 0:
            raise InvalidCloseError(f"Exit quantity must be positive, got {quantity}")
        if quantity > position.quantity:
            raise InvalidCloseError(
                f"Exit quantity {quantity:g} exceeds open quantity {position.quantity:g}"
            )

    def _reclaim(self, position: Position, claim_token: str) -> Position:
        """
        The caller's snapshot was out of date. Retry once against the
        latest version if nobody holds the claim.
        """
        latest = self.store.get_position(position.id)
        if latest is None:
            raise InvalidCloseError(f"Position {position.id} not found")
        if latest.status is PositionStatus.CLOSED:
            raise InvalidCloseError(f"Position {position.id} is already closed")
        if latest.claim_token is not None:
            raise PositionClaimError(f"Position {position.id} is being closed by another worker")

        claimed = self.store.claim_position(latest.id, latest.version, claim_token)
        if claimed is None:
            latest = self.store.get_position(position.id)
            if latest is not None and latest.status is PositionStatus.CLOSED:
                raise InvalidCloseError(f"Position {position.id} is already closed")
            raise PositionClaimError(f"Position {position.id} was modified concurrently")
        return claimed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, position_id: str) -> Optional[Position]:
        return self.store.get_position(position_id)

    def get_open_positions(self) -> List[Position]:
        return self.store.get_open_positions()

    def get_lots(self, position_id: str) -> List[Position]:
        return self.store.get_lots(position_id)

    def total_exposure(self) -> float:
        """Premium at risk across open positions"""
        return sum(
            p.mark_price * p.quantity * self.contract_multiplier
            for p in self.store.get_open_positions()
        )

    def entry_notional(self, decision: DecisionResult) -> float:
        return (decision.reference_price or 0.0) * decision.position_size * self.contract_multiplier

    def total_unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.store.get_open_positions())

    def _publish(self, event_name: str, symbol: str, data: Any):
        if self.event_bus is None:
            return
        from strikeflow.event_bus.core import Event, EventType
        self.event_bus.publish(Event(event_type=EventType[event_name], symbol=symbol, data=data))
