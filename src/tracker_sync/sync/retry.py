"""Classification-aware retry executor for external tracker calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from tracker_sync.errors import EXTERNAL_ERROR_TYPES, ExternalServiceError
from tracker_sync.models import RETRYABLE_ERROR_CLASSES, ErrorClass

logger = logging.getLogger(__name__)

ERROR_CLASSIFIER_VERSION = 1

T = TypeVar("T")

_AUTH_PATTERNS: tuple[str, ...] = (
    "authentication",
    "unauthorized",
    "invalid api key",
    "not authenticated",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "forbidden",
    "permission denied",
    "access denied",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "not found",
    "entity not found",
    "does not exist",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "ratelimited",
    "too many requests",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "validation",
    "invalid input",
    "required field",
    "argument validation error",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "could not resolve host",
)


@dataclass(slots=True)
class RetryPolicy:
    """Backoff and retryability configuration for one family of calls."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    retryable_classes: frozenset[ErrorClass] = RETRYABLE_ERROR_CLASSES

    def delay_for(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based) before the next one."""

        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(attempt - 1, 0)))


@dataclass(slots=True)
class ErrorClassification:
    """Normalized failure classification result."""

    error_class: ErrorClass
    matched_rule: str
    matched_pattern: str | None = None
    status_code: int | None = None

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": ERROR_CLASSIFIER_VERSION,
            "error_class": self.error_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "status_code": self.status_code,
        }


def classify_error(error: BaseException) -> ErrorClassification:  # noqa: PLR0911
    """Classify an exception raised by an external call into a retry class."""

    if isinstance(error, ExternalServiceError) and error.error_class != ErrorClass.UNKNOWN:
        return ErrorClassification(
            error_class=error.error_class,
            matched_rule="preclassified",
            status_code=error.status_code,
        )
    if isinstance(error, httpx.TransportError):
        return ErrorClassification(error_class=ErrorClass.NETWORK, matched_rule="transport")

    status_code = _status_code_of(error)
    if status_code is not None:
        by_status = _classify_status(status_code)
        if by_status is not None:
            return ErrorClassification(
                error_class=by_status,
                matched_rule="http_status",
                status_code=status_code,
            )

    haystack = str(error).lower()
    for error_class, patterns in (
        (ErrorClass.AUTHENTICATION, _AUTH_PATTERNS),
        (ErrorClass.PERMISSION, _PERMISSION_PATTERNS),
        (ErrorClass.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
        (ErrorClass.NOT_FOUND, _NOT_FOUND_PATTERNS),
        (ErrorClass.VALIDATION, _VALIDATION_PATTERNS),
        (ErrorClass.NETWORK, _NETWORK_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(
                error_class=error_class,
                matched_rule=error_class.value,
                matched_pattern=pattern,
                status_code=status_code,
            )

    return ErrorClassification(
        error_class=ErrorClass.UNKNOWN,
        matched_rule="fallback_unknown",
        status_code=status_code,
    )


def to_external_error(
    error: BaseException,
    classification: ErrorClassification,
    *,
    operation_name: str,
    attempts: int,
) -> ExternalServiceError:
    """Wrap any failure as the typed external error for its classification."""

    error_type = EXTERNAL_ERROR_TYPES[classification.error_class]
    if isinstance(error, ExternalServiceError):
        if type(error) is ExternalServiceError and error_type is not ExternalServiceError:
            return error_type(
                message=error.message,
                code=error.code,
                error_class=classification.error_class,
                status_code=error.status_code,
                attempts=attempts,
                retry_after=error.retry_after,
            )
        error.error_class = classification.error_class
        error.attempts = attempts
        return error
    return error_type(
        message=f"{operation_name} failed ({classification.error_class.value}): {error}",
        code=f"external_{classification.error_class.value}",
        error_class=classification.error_class,
        status_code=classification.status_code,
        attempts=attempts,
    )


class RetryExecutor:
    """Run zero-argument coroutines with exponential backoff on retryable failures."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str = "external call",
        policy: RetryPolicy | None = None,
    ) -> T:
        """Return the operation result or raise the last classified error."""

        effective = policy or self.policy
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                classification = classify_error(exc)
                error = to_external_error(
                    exc,
                    classification,
                    operation_name=operation_name,
                    attempts=attempt,
                )
                retryable = classification.error_class in effective.retryable_classes
                if not retryable or attempt >= effective.max_attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): class=%s retryable=%s",
                        operation_name,
                        attempt,
                        classification.error_class.value,
                        retryable,
                    )
                    if error is exc:
                        raise
                    raise error from exc

                delay = effective.delay_for(attempt)
                if error.retry_after is not None:
                    delay = min(effective.max_delay_seconds, max(delay, error.retry_after))
                logger.debug(
                    "%s attempt %d/%d failed (%s); retrying in %.2fs",
                    operation_name,
                    attempt,
                    effective.max_attempts,
                    classification.error_class.value,
                    delay,
                )
                await self._sleep(delay)


def _classify_status(status_code: int) -> ErrorClass | None:  # noqa: PLR0911
    if status_code == 401:  # noqa: PLR2004
        return ErrorClass.AUTHENTICATION
    if status_code == 403:  # noqa: PLR2004
        return ErrorClass.PERMISSION
    if status_code == 404:  # noqa: PLR2004
        return ErrorClass.NOT_FOUND
    if status_code == 429:  # noqa: PLR2004
        return ErrorClass.RATE_LIMIT
    if status_code in {400, 422}:
        return ErrorClass.VALIDATION
    if 500 <= status_code < 600:  # noqa: PLR2004
        return ErrorClass.SERVER
    return None


def _status_code_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, ExternalServiceError):
        return error.status_code
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
