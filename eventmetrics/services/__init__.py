"""Service layer — business logic orchestration."""


class ServiceError(Exception):
    """Base service exception."""


class NotFoundError(ServiceError):
    """Resource not found (-> exit code 1)."""


class ConflictError(ServiceError):
    """Business rule conflict."""


class ValidationError(ServiceError):
    """Input validation or state transition error."""


class AlreadyQueuedError(ConflictError):
    """The event already has a job; a second one is never created."""


class InvalidEventError(ValidationError):
    """The event lacks the configuration needed to compute statistics."""


class InsufficientQuotaError(ServiceError):
    """No replica capacity left; retry on the next scheduled run."""


class ComputationError(ServiceError):
    """Statistics computation for an event failed (original error chained)."""
