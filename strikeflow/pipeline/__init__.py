"""
Signal Pipeline

End-to-end processing of inbound signals:

    Normalize -> Validate -> Deduplicate -> Decide -> Open position

Guarantees:
    - Every signal gets one tracking ID, carried through all stages
    - Every failing signal leaves exactly one PipelineFailure record
    - One signal's failure never affects its siblings in a batch
    - Only a store outage aborts a batch

The REST surface lives in strikeflow.pipeline.api and is not imported here.
"""

from strikeflow.pipeline.config import PipelineConfig
from strikeflow.pipeline.schemas import PipelineResult, PipelineHealth
from strikeflow.pipeline.pipeline import SignalPipeline, DUPLICATE_REASON
from strikeflow.pipeline.worker import SignalWorker

__version__ = "1.0.0"

__all__ = [
    'PipelineConfig',
    'PipelineResult',
    'PipelineHealth',
    'SignalPipeline',
    'DUPLICATE_REASON',
    'SignalWorker',
]
