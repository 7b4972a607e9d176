"""
Call Queue Exceptions
Domain errors raised by the queue, admission and campaign services.
The API layer maps them onto HTTP status codes.
"""


class CallQueueError(Exception):
    """Base class for call queue errors."""
    def __init__(self, message: str = "Call queue error"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(CallQueueError):
    """A campaign or job does not exist for the requesting tenant."""
    def __init__(self, resource: str = "Resource", resource_id: str = ""):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found" + (f": {resource_id}" if resource_id else ""))


class ValidationError(CallQueueError):
    """Input or state rejected before anything was written."""
    def __init__(self, message: str = "Validation failed"):
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """A campaign status change not allowed from its current status."""
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move campaign from '{current}' to '{target}'")


class ConcurrencyConflict(CallQueueError):
    """A guarded update matched no row: another writer got there first."""
    def __init__(self, message: str = "Job was claimed or removed concurrently"):
        super().__init__(message)


class TransientDispatchFailure(CallQueueError):
    """The external call could not be started; the claim must be released."""
    def __init__(self, message: str = "Call dispatch failed to start"):
        super().__init__(message)


class ConstraintViolationError(CallQueueError):
    """The database rejected a write (unique key, foreign key, not-null)."""
    def __init__(self, message: str = "Database constraint violated"):
        super().__init__(message)


class TransientBackendError(CallQueueError):
    """The database was unreachable or timed out; the caller may retry."""
    def __init__(self, message: str = "Database temporarily unavailable"):
        super().__init__(message)
