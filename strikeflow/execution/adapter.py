"""
Execution Adapter

Order submission interface used only by the PositionManager. The
PaperExecutionAdapter fills market orders at the current (or reference)
price adjusted for slippage.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
import logging
import threading
import uuid

from strikeflow.errors import ExecutionError
from strikeflow.execution.config import ExecutionConfig
from strikeflow.market_data.provider import MarketDataProvider
from strikeflow.signals.schemas import Direction, utcnow

LOG = logging.getLogger(__name__)


class OrderAction(str, Enum):
    """Opening buys premium, closing sells it"""
    OPEN = "OPEN"
    CLOSE = "CLOSE"


@dataclass
class OrderFill:
    """Confirmed execution"""
    order_id: str
    symbol: str
    direction: Direction
    action: OrderAction
    quantity: float
    fill_price: float
    reference_price: float
    slippage_bps: float = 0.0
    filled_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'action': self.action.value,
            'quantity': float(self.quantity),
            'fill_price': float(self.fill_price),
            'reference_price': float(self.reference_price),
            'slippage_bps': float(self.slippage_bps),
            'filled_at': self.filled_at.isoformat(),
        }


class ExecutionAdapter(ABC):
    """Broker / simulator interface"""

    @abstractmethod
    def submit_order(
        self,
        symbol: str,
        direction: Direction,
        quantity: float,
        action: OrderAction = OrderAction.OPEN,
        reference_price: Optional[float] = None,
    ) -> OrderFill:
        """
        Submit a market order.

        Raises:
            ExecutionError: order rejected or not filled
        """


class PaperExecutionAdapter(ExecutionAdapter):
    """
    Simulated fills.

    Price source: reference_price if given, else the market data provider.
    Opening orders pay the slippage, closing orders give it up.
    """

    def __init__(
        self,
        market_data: Optional[MarketDataProvider] = None,
        config: Optional[ExecutionConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.market_data = market_data
        self.config = config or ExecutionConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._fills: List[OrderFill] = []
        self.orders_submitted = 0
        self.orders_rejected = 0

    def submit_order(
        self,
        symbol: str,
        direction: Direction,
        quantity: float,
        action: OrderAction = OrderAction.OPEN,
        reference_price: Optional[float] = None,
    ) -> OrderFill:
        with self._lock:
            self.orders_submitted += 1

        if quantity <= 0:
            self._reject(symbol, f"Invalid quantity {quantity}")

        price = reference_price
        if price is None:
            if self.market_data is None:
                self._reject(symbol, "No reference price and no market data provider")
            try:
                price = self.market_data.get_current_price(symbol)
            except Exception as e:
                self._reject(symbol, f"No price available: {e}")
        if price is None or price <= 0:
            self._reject(symbol, f"Invalid price {price}")

        slip = self.config.slippage_bps / 10000.0
        fill_price = price * (1 + slip) if action is OrderAction.OPEN else price * (1 - slip)

        fill = OrderFill(
            order_id=str(uuid.uuid4()),
            symbol=symbol,
            direction=direction,
            action=action,
            quantity=quantity,
            fill_price=fill_price,
            reference_price=price,
            slippage_bps=self.config.slippage_bps,
            filled_at=self._clock(),
        )
        with self._lock:
            self._fills.append(fill)

        LOG.info(
            f"[PAPER] {action.value} {quantity:g} {symbol} {direction.value} "
            f"filled @ {fill_price:.4f} (ref {price:.4f})"
        )
        return fill

    def get_fills(self) -> List[OrderFill]:
        with self._lock:
            return list(self._fills)

    def _reject(self, symbol: str, reason: str):
        with self._lock:
            self.orders_rejected += 1
        LOG.warning(f"[PAPER] Order for {symbol} rejected: {reason}")
        raise ExecutionError(reason)
