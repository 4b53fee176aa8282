"""
Error types raised by the discovery pipeline.

Only a handful of conditions are raised as exceptions. Everything the pipeline
can survive (a broken URL, an unparseable body, a weak pattern) is recorded as
a DiscoveryWarning instead and the session keeps going.
"""


class DiscoveryError(Exception):
    """Base class for discovery pipeline errors."""
    pass


class MalformedExchange(DiscoveryError):
    """Raised when an exchange URL or body cannot be interpreted."""

    def __init__(self, message: str, exchange_id: str | None = None):
        super().__init__(message)
        self.exchange_id = exchange_id


class SessionAborted(DiscoveryError):
    """Raised when a session is used after abort() was called."""
    pass


class SpecStoreError(DiscoveryError):
    """Raised when persisted spec versions cannot be read or written."""
    pass
