"""
Strikeflow

Options signal pipeline and decision orchestration engine.

Layers (leaves first):
    signals          - normalize, validate, deduplicate
    market_data      - context, positioning, prices
    decision_engine  - ENTER/REJECT and EXIT/HOLD decisions
    execution        - order submission
    position_manager - position lifecycle and exit monitoring
    persistence      - audit records, positions, raw signal queue
    pipeline         - per-signal orchestration, worker loop, HTTP ingestion
"""

__version__ = "1.0.0"
