"""
Trade Performance Analytics

Realized performance over closed positions and closed lots:
    - Win rate, profit factor, expectancy
    - Cumulative P&L curve and max drawdown
    - Breakdown by symbol and direction

Every CLOSED record (full close or partial lot) counts as one trade.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from strikeflow.position_manager.schemas import Position, PositionStatus

COLUMNS = [
    'id', 'parent_position_id', 'symbol', 'direction', 'quantity',
    'entry_price', 'exit_price', 'entry_time', 'exit_time', 'realized_pnl',
]


@dataclass
class PerformanceSummary:
    """Aggregate realized performance"""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0

    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: Optional[float] = None  # None when there are no losses
    expectancy: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    max_drawdown: float = 0.0

    by_symbol: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'win_rate': round(self.win_rate, 4),
            'total_pnl': round(self.total_pnl, 4),
            'avg_pnl': round(self.avg_pnl, 4),
            'avg_win': round(self.avg_win, 4),
            'avg_loss': round(self.avg_loss, 4),
            'profit_factor': round(self.profit_factor, 4) if self.profit_factor is not None else None,
            'expectancy': round(self.expectancy, 4),
            'best_trade': round(self.best_trade, 4),
            'worst_trade': round(self.worst_trade, 4),
            'max_drawdown': round(self.max_drawdown, 4),
            'by_symbol': list(self.by_symbol),
        }


def closed_trades_frame(positions: Iterable[Position]) -> pd.DataFrame:
    """DataFrame of CLOSED positions and lots, ordered by exit time"""
    rows = [
        {
            'id': p.id,
            'parent_position_id': p.parent_position_id,
            'symbol': p.symbol,
            'direction': p.direction.value,
            'quantity': float(p.quantity),
            'entry_price': float(p.entry_price),
            'exit_price': float(p.exit_price) if p.exit_price is not None else np.nan,
            'entry_time': p.entry_time,
            'exit_time': p.exit_time,
            'realized_pnl': float(p.realized_pnl or 0.0),
        }
        for p in positions
        if p.status is PositionStatus.CLOSED
    ]
    df = pd.DataFrame(rows, columns=COLUMNS)
    if df.empty:
        return df
    return df.sort_values('exit_time', kind='stable').reset_index(drop=True)


def max_drawdown(pnl: pd.Series) -> float:
    """Largest peak-to-trough fall of the cumulative P&L curve (>= 0)"""
    if pnl.empty:
        return 0.0
    equity = pnl.cumsum()
    peak = np.maximum.accumulate(np.concatenate([[0.0], equity.to_numpy()]))[1:]
    return float((peak - equity.to_numpy()).max())


def performance_summary(positions: Iterable[Position]) -> PerformanceSummary:
    """
    Summarize realized performance.

    Args:
        positions: Any positions; only CLOSED ones are counted

    Returns:
        PerformanceSummary (all zeros when nothing has closed)
    """
    df = closed_trades_frame(positions)
    if df.empty:
        return PerformanceSummary()

    pnl = df['realized_pnl']
    wins = pnl[pnl > 0]
    losses = pnl[pnl < 0]

    total = len(df)
    win_rate = len(wins) / total
    avg_win = float(wins.mean()) if not wins.empty else 0.0
    avg_loss = float(losses.mean()) if not losses.empty else 0.0
    gross_loss = float(-losses.sum())
    profit_factor = float(wins.sum()) / gross_loss if gross_loss > 0 else None

    return PerformanceSummary(
        total_trades=total,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=win_rate,
        total_pnl=float(pnl.sum()),
        avg_pnl=float(pnl.mean()),
        avg_win=avg_win,
        avg_loss=avg_loss,
        profit_factor=profit_factor,
        expectancy=win_rate * avg_win + (1 - win_rate) * avg_loss,
        best_trade=float(pnl.max()),
        worst_trade=float(pnl.min()),
        max_drawdown=max_drawdown(pnl),
        by_symbol=_breakdown(df),
    )


def _breakdown(df: pd.DataFrame) -> List[Dict]:
    grouped = df.groupby(['symbol', 'direction'])['realized_pnl']
    table = grouped.agg(
        trades='count',
        total_pnl='sum',
        avg_pnl='mean',
        win_rate=lambda s: float((s > 0).mean()),
    ).reset_index()
    return [
        {
            'symbol': row.symbol,
            'direction': row.direction,
            'trades': int(row.trades),
            'total_pnl': round(float(row.total_pnl), 4),
            'avg_pnl': round(float(row.avg_pnl), 4),
            'win_rate': round(float(row.win_rate), 4),
        }
        for row in table.itertuples(index=False)
    ]
