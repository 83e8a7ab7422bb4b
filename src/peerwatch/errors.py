"""Exception types for peerwatch."""


class PeerwatchError(Exception):
    """Base class for peerwatch errors."""


class SourceError(PeerwatchError):
    """A data source was unreachable or returned an unusable payload."""


class MalformedRecordError(SourceError):
    """A single raw record could not be normalized."""


class GeoLookupError(SourceError):
    """The geo-lookup service could not be reached."""


class HistoryIntegrityError(PeerwatchError):
    """A stored history record violates an invariant (e.g. no first-seen time)."""


class EmptyBatchError(PeerwatchError):
    """A poll produced no usable node observations."""


class CycleFailedError(PeerwatchError):
    """A whole poll cycle failed and nothing was committed for it."""
