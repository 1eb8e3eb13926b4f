"""
Error taxonomy for the query engine.

Nothing here is fatal to the process. Errors are caught at the operation
boundary (fetch, pipeline, frame parsing) and logged; Query-facing errors
are additionally surfaced to the subscriber's status callback while the
Query is active.
"""

from typing import Any, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    #: Prefix used when the error is reported through a status sink.
    status_prefix = "Engine Error"

    def status_message(self) -> str:
        return f"{self.status_prefix}: {self}"


class TransportError(EngineError):
    """The event channel dropped or could not be opened.

    Recovered by reconnecting with backoff, never surfaced as a Query failure.
    """

    status_prefix = "Connection Failed"


class FetchError(EngineError):
    """A dataset query returned a non-ok response or the request itself failed."""

    status_prefix = "Query Failed"

    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.status = status
        self.data = data


class ProcessingError(EngineError):
    """An analyzer or preprocessor raised while building output."""

    status_prefix = "Processing Failed"


class MalformedEvent(EngineError):
    """An inbound frame could not be parsed into an Event."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw
