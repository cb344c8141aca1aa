"""
Position Manager Configuration
"""

from dataclasses import dataclass


@dataclass
class PositionManagerConfig:
    """Position lifecycle and exit monitor configuration"""

    # Exit monitor loop
    monitor_interval_seconds: float = 60.0
    auto_close_critical: bool = True

    # Retry budget for optimistic price refresh conflicts
    max_refresh_retries: int = 3
