"""
Exception taxonomy for the ingestion pipeline.
"""


class ScreenmemError(Exception):
    """Base class for all screenmem errors."""


class CaptureSourceError(ScreenmemError):
    """The capture source could not be reached or returned an unusable response."""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class EmbeddingProviderError(ScreenmemError):
    """The embedding provider failed. Transient failures are retried with backoff."""

    def __init__(self, message: str, transient: bool = True, status_code: int = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class InvalidEventError(ScreenmemError):
    """A capture event is missing required fields and is skipped."""

    def __init__(self, reason: str, event_id: str = None):
        super().__init__(f"Invalid event {event_id or '<unknown>'}: {reason}")
        self.reason = reason
        self.event_id = event_id


class StartupError(ScreenmemError):
    """Fatal initialization failure. The process exits non-zero."""
