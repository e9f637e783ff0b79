"""Exception types raised by the timeline and geocoding modules.

The API layer maps these onto HTTP status codes; background workers record
them on the job instead of letting them escape.
"""


class TimelineError(Exception):
    """Base class for all domain errors."""


class InvalidArgument(TimelineError, ValueError):
    """A spatial or statistical helper was called with null or empty input."""


class ValidationError(TimelineError, ValueError):
    pass


class InvalidInput(ValidationError):
    """Caller supplied bad data (time range, points, user id)."""


class InvalidConfig(ValidationError):
    """A timeline or geocoding setting violates its invariant."""


class ProviderUnavailable(TimelineError):
    """A geocoding provider is disabled, tripped, busy, or failed to answer."""


class PersistenceConflict(TimelineError):
    """A commit failed because another transaction touched the same rows."""


class PermissionDenied(TimelineError):
    """A user tried to modify a record owned by someone else."""


class NotFound(TimelineError):
    pass
