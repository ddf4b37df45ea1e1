"""
Error taxonomy for the relay core.

- ParseError: malformed payload or item. Skipped, logged, counted.
- ValidationError: caller input rejected before any mutation.
- StorageError: store failure other than a duplicate key.
- FeedDisruption: the change feed could not be read.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class ParseError(RelayError):
    """A payload blob, payload object or item could not be resolved."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source

    def __str__(self) -> str:
        if self.source:
            return f"{self.source}: {self.message}"
        return self.message


class ValidationError(RelayError):
    """Missing or invalid field on a send/status request."""


class StorageError(RelayError):
    """Connectivity or constraint failure other than a duplicate key."""


class FeedDisruption(RelayError):
    """Reading the change log failed."""
