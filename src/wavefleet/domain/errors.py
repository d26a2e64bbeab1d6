"""Domain exceptions for task dispatch operations."""


class DispatchError(Exception):
    """Base class for dispatch errors."""


class ControlPlaneError(DispatchError):
    """Raised when an external control-plane call fails.

    `code` carries the provider error code (for example `SlowDown` or
    `ThrottlingException`) and `status_code` the HTTP status when known.
    Whether the failure is retried is decided by `RetryPolicy`.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ObjectStoreError(ControlPlaneError):
    """Raised when the object store rejects or fails a request."""


class WorkerLaunchError(ControlPlaneError):
    """Raised when a remote worker cannot be started."""


class DispatchNotFoundError(DispatchError):
    """Raised when a session or task cannot be found."""


class SessionNotFoundError(DispatchNotFoundError):
    """Raised when a session manifest does not exist."""


class TaskNotFoundError(DispatchNotFoundError):
    """Raised when a task status record does not exist."""


class DispatchConflictError(DispatchError):
    """Raised when an operation conflicts with current state."""


class SessionExistsError(DispatchConflictError):
    """Raised when creating a session whose manifest already exists."""


class ManifestConflictError(DispatchConflictError):
    """Raised when a manifest update keeps losing optimistic-concurrency races."""


class TaskOwnershipError(DispatchConflictError):
    """Raised when a worker mutates a task it does not own."""


class TaskConflictError(DispatchConflictError):
    """Raised when a claim owner's conditional write unexpectedly loses."""


class DispatchValidationError(DispatchError):
    """Raised when input or stored data is invalid."""


class RecordValidationError(DispatchValidationError):
    """Raised when a stored record cannot be decoded."""


class PayloadResolutionError(DispatchValidationError):
    """Raised when a task payload references an unknown callable."""


class TaskNotResolvedError(DispatchValidationError):
    """Raised when a result is requested before the task reached a terminal state."""


class SessionExpiredError(DispatchValidationError):
    """Raised when attaching to a terminated or timed-out session."""


__all__ = [
    "ControlPlaneError",
    "DispatchConflictError",
    "DispatchError",
    "DispatchNotFoundError",
    "DispatchValidationError",
    "ManifestConflictError",
    "ObjectStoreError",
    "PayloadResolutionError",
    "RecordValidationError",
    "SessionExistsError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "TaskConflictError",
    "TaskNotFoundError",
    "TaskNotResolvedError",
    "TaskOwnershipError",
    "WorkerLaunchError",
]
