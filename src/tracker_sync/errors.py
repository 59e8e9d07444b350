"""Error taxonomy for document mutation, status resolution and external calls."""

from __future__ import annotations

from dataclasses import dataclass

from tracker_sync.models import RETRYABLE_ERROR_CLASSES, ErrorClass


@dataclass(slots=True)
class TrackerSyncError(Exception):
    """Base error with a stable machine-readable code."""

    message: str
    code: str = "tracker_sync_error"

    def __str__(self) -> str:
        return self.message

    @property
    def retryable(self) -> bool:
        return False


@dataclass(slots=True)
class LockTimeoutError(TrackerSyncError):
    """Lock could not be acquired within the retry budget. Nothing was written."""

    lock_path: str = ""
    attempts: int = 0

    @property
    def retryable(self) -> bool:
        return True


@dataclass(slots=True)
class TaskNotFoundError(TrackerSyncError):
    """Target task id is absent from the document."""

    task_id: str = ""


@dataclass(slots=True)
class DocumentCorruptError(TrackerSyncError):
    """Document could not be parsed as a task store."""

    path: str = ""


@dataclass(slots=True)
class RollbackFailedError(TrackerSyncError):
    """Restoring the backup failed; manual recovery from ``backup_path`` is required."""

    backup_path: str = ""
    document_path: str = ""


@dataclass(slots=True)
class NoStatesAvailableError(TrackerSyncError):
    """External service returned no workflow states for a team."""

    team_key: str = ""


@dataclass(slots=True)
class ResolutionExhaustedError(TrackerSyncError):
    """Every resolution tier failed for a status."""

    status: str = ""
    tried_names: tuple[str, ...] = ()
    available_names: tuple[str, ...] = ()


@dataclass(slots=True)
class ExternalServiceError(TrackerSyncError):
    """Classified failure talking to the external tracker."""

    error_class: ErrorClass = ErrorClass.UNKNOWN
    status_code: int | None = None
    attempts: int = 0
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return self.error_class in RETRYABLE_ERROR_CLASSES


@dataclass(slots=True)
class ExternalAuthError(ExternalServiceError):
    """Credentials rejected by the external service."""


@dataclass(slots=True)
class ExternalPermissionError(ExternalServiceError):
    """Credentials accepted but access to the resource is denied."""


@dataclass(slots=True)
class ExternalNotFoundError(ExternalServiceError):
    """Referenced team, state or issue does not exist."""


@dataclass(slots=True)
class ExternalRateLimitError(ExternalServiceError):
    """External service throttled the request."""


@dataclass(slots=True)
class ExternalNetworkError(ExternalServiceError):
    """Transport failure or timeout before a response arrived."""


@dataclass(slots=True)
class ExternalServerError(ExternalServiceError):
    """External service responded with a 5xx status."""


@dataclass(slots=True)
class ExternalValidationError(ExternalServiceError):
    """External service rejected the request payload."""


EXTERNAL_ERROR_TYPES: dict[ErrorClass, type[ExternalServiceError]] = {
    ErrorClass.AUTHENTICATION: ExternalAuthError,
    ErrorClass.PERMISSION: ExternalPermissionError,
    ErrorClass.NOT_FOUND: ExternalNotFoundError,
    ErrorClass.RATE_LIMIT: ExternalRateLimitError,
    ErrorClass.NETWORK: ExternalNetworkError,
    ErrorClass.SERVER: ExternalServerError,
    ErrorClass.VALIDATION: ExternalValidationError,
    ErrorClass.UNKNOWN: ExternalServiceError,
}
