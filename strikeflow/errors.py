"""
Strikeflow Exceptions

Rejections (validation, duplicate, low confidence) are results, not
exceptions. The classes below cover conditions a caller has to handle.
"""

from typing import List, Optional


class StrikeflowError(Exception):
    """Base class for all strikeflow errors"""
    pass


class NormalizationError(StrikeflowError):
    """Raw payload cannot be turned into a canonical Signal"""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])


class FatalMarketDataError(StrikeflowError):
    """Required market data (base context or price) is unavailable"""
    pass


class ExecutionError(StrikeflowError):
    """Execution adapter rejected or failed to fill an order"""
    pass


class InvalidCloseError(StrikeflowError):
    """Close requested on a closed position or with an invalid quantity"""
    pass


class PositionClaimError(StrikeflowError):
    """
    Another worker holds the close claim on this position.

    Raised when the optimistic version/claim check fails and the position
    is still open.
    """
    pass


class DuplicateEntryError(StrikeflowError):
    """A position already exists (or is being opened) for this signal"""
    pass


class ExposureLimitError(StrikeflowError):
    """
    Opening the position would push open exposure past the limit.

    Checked atomically with any other in-flight entries when the
    position is opened.
    """
    pass


class StoreUnavailableError(StrikeflowError):
    """Persistence store cannot be reached. Aborts batch processing."""
    pass


class ConfigValidationError(StrikeflowError):
    """Configuration failed validation"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        return f"{super().__str__()}: " + "; ".join(self.errors)


class MarketDataUnavailableError(StrikeflowError):
    """Provider has no usable data for the request (missing or too stale)"""
    pass


class BatchAbortedError(StoreUnavailableError):
    """
    Store outage during batch processing.

    `results` holds the PipelineResults produced before the outage; they
    remain valid.
    """

    def __init__(self, message: str, results: Optional[list] = None):
        super().__init__(message)
        self.results = list(results or [])
