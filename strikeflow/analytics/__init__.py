"""Realized trade performance analytics (pandas)"""

from strikeflow.analytics.performance import (
    PerformanceSummary,
    closed_trades_frame,
    max_drawdown,
    performance_summary,
)

__all__ = [
    'PerformanceSummary',
    'closed_trades_frame',
    'max_drawdown',
    'performance_summary',
]
