"""
Pipeline Configuration
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class PipelineConfig:
    """Batch processing and worker loop configuration"""

    batch_max_workers: int = 1
    batch_deadline_seconds: Optional[float] = None

    # Failure records older than this are purged by clear_old_failures()
    failure_retention_hours: int = 24

    # Window of recent signals used for confluence scoring
    confluence_lookback_minutes: int = 15

    worker_poll_interval_seconds: float = 1.0
    worker_batch_size: int = 50

    # PROCESSING rows claimed longer ago than this go back to PENDING
    worker_claim_timeout_seconds: float = 300.0
