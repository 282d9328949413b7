"""Exception taxonomy for the monitoring engine."""
from typing import List, Optional


class MonitorError(Exception):
    """Base class for all monitoring engine errors."""


class InsufficientDataError(MonitorError):
    """Fewer candles than the HMA period were supplied."""

    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class InsufficientHistoryError(InsufficientDataError):
    """Look-back day cap reached before enough session candles were collected."""


class QuoteFetchError(MonitorError):
    """Bulk quote request failed; the batch is retried on a later tick."""


class OrderValidationError(MonitorError):
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class PersistenceError(MonitorError):
    """State store could not save, load or clear a snapshot."""


class DuplicateInstrumentError(MonitorError):
    """Symbol is already being monitored."""


class InstrumentConfigError(MonitorError):
    """Missing or invalid monitor configuration on add."""


class UnknownIndexError(MonitorError):
    """No lot-size configuration for the requested index."""


class UnknownInstrumentError(MonitorError):
    """No monitored instrument with the given id."""
