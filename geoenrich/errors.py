"""Exceptions raised inside geoenrich.

Provider failures are never exceptions: clients return a ``ProviderResponse``
carrying a ``ProviderErrorKind``. The classes here cover the few conditions
that can abort an operation or that storage backends signal upward.
"""


class GeoEnrichError(Exception):
    """Base class for all geoenrich errors."""


class RowSourceError(GeoEnrichError):
    """The row source could not be read. Aborts the run."""


class CheckpointMismatchError(GeoEnrichError):
    """A resume was requested with a snapshot taken from a different source."""

    def __init__(self, expected: str, found: str | None):
        super().__init__(f"Checkpoint belongs to source '{found}', not '{expected}'")
        self.expected = expected
        self.found = found


class StorageError(GeoEnrichError):
    """A key-value backend failed to read or write."""


class RunInProgressError(GeoEnrichError):
    """Another enrichment run is still active."""
