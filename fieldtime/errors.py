"""
Domain error taxonomy.

Every failure a service can raise derives from FieldTimeError and carries the
HTTP status the API layer renders it with.
"""
from typing import Optional


class FieldTimeError(Exception):
    """Base exception for business rule violations."""

    status_code = 400
    code = "error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationError(FieldTimeError):
    """Input data is malformed or violates domain rules."""

    status_code = 422
    code = "validation_error"


class InvalidTransition(FieldTimeError):
    """The requested state change is not allowed from the current state."""

    status_code = 409
    code = "invalid_transition"


class Forbidden(FieldTimeError):
    """The caller lacks permission for this action."""

    status_code = 403
    code = "forbidden"


class NotFound(FieldTimeError):
    """The requested record does not exist."""

    status_code = 404
    code = "not_found"


class PersistenceError(FieldTimeError):
    """The data store rejected the write."""

    status_code = 503
    code = "persistence_error"


class InvalidTimeRange(FieldTimeError):
    """The end of a time range precedes its start."""

    status_code = 422
    code = "invalid_time_range"


class MissingStartTime(FieldTimeError):
    """The job is in progress but has no recorded start time."""

    status_code = 409
    code = "missing_start_time"


class LocationUnavailable(FieldTimeError):
    """A GPS position could not be acquired."""

    status_code = 422
    code = "location_unavailable"

    def __init__(self, reason, message: Optional[str] = None):
        # reason is a services.location.LocationFailure
        self.reason = reason
        super().__init__(message or f"Location unavailable: {getattr(reason, 'value', reason)}")
