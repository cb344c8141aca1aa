"""
Execution Configuration
"""

from dataclasses import dataclass


@dataclass
class ExecutionConfig:
    """Execution adapter configuration"""

    mode: str = "paper"
    slippage_bps: float = 5.0
