"""
Execution Layer

Order submission behind a narrow adapter interface. Paper trading is the
built-in adapter; live brokers plug in by implementing ExecutionAdapter.
"""

from strikeflow.execution.config import ExecutionConfig
from strikeflow.execution.adapter import (
    ExecutionAdapter,
    PaperExecutionAdapter,
    OrderAction,
    OrderFill,
)

__version__ = "1.0.0"

__all__ = [
    'ExecutionConfig',
    'ExecutionAdapter',
    'PaperExecutionAdapter',
    'OrderAction',
    'OrderFill',
]
