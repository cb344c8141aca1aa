"""
Signals Configuration

Validation gates and the deduplication window.
"""

from dataclasses import dataclass, field
from typing import List, Tuple


@dataclass
class ValidationConfig:
    """Signal validation gate configuration"""

    # Cooldown gate (per symbol + direction)
    enable_cooldown: bool = True
    cooldown_seconds: int = 300

    # Market hours gate (exchange local time)
    enable_market_hours: bool = True
    market_timezone: str = "America/New_York"
    market_hours_start: str = "09:30"
    market_hours_end: str = "15:30"
    trading_days: List[int] = field(default_factory=lambda: [0, 1, 2, 3, 4])

    # Multi-timeframe alignment gate
    enable_mtf: bool = True
    min_mtf_alignment: float = 0.5  # Applies when the payload carries a score

    # Confluence gate
    enable_confluence: bool = True
    min_confluence: float = 0.5

    # Time filters
    enable_time_filters: bool = True
    max_signal_age_minutes: int = 5
    blocked_windows: List[Tuple[str, str]] = field(default_factory=list)  # ("09:30", "09:35")


@dataclass
class DeduplicationConfig:
    """Duplicate signal detection configuration"""

    window_seconds: int = 300
    max_entries: int = 50000


@dataclass
class SignalsConfig:
    """Signal intake configuration"""

    validation: ValidationConfig = field(default_factory=ValidationConfig)
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
