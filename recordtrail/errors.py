from __future__ import annotations


class RecordTrailError(Exception):
    """Base class for errors raised by the capture engine."""


class UpstreamUnavailableError(RecordTrailError):
    """The upstream record source cannot be reached or rejected our credentials."""


class InvalidSnapshotError(RecordTrailError):
    """Record data is malformed and no snapshot can be built from it."""


class ConcurrentWriteConflict(RecordTrailError):
    """Another writer already committed this position in the record's history."""


class StoreUnavailableError(RecordTrailError):
    """The snapshot store cannot be reached."""
