"""
Persistence Layer

Durable storage for the audit trail (signals, decisions, pipeline
failures), positions and closed lots, and the raw signal queue.

Implementations:
    InMemoryTradeStore - process-local, used for tests and paper runs
    SQLiteTradeStore   - single-file durable store
"""

from strikeflow.persistence.store import TradeStore, InMemoryTradeStore
from strikeflow.persistence.sqlite_store import SQLiteTradeStore

__version__ = "1.0.0"

__all__ = [
    'TradeStore',
    'InMemoryTradeStore',
    'SQLiteTradeStore',
]
