from __future__ import annotations

import asyncio

import allure
import httpx
import pytest

from tracker_sync.errors import (
    ExternalAuthError,
    ExternalNetworkError,
    ExternalNotFoundError,
    ExternalRateLimitError,
    ExternalServerError,
    ExternalServiceError,
)
from tracker_sync.models import ErrorClass
from tracker_sync.sync.retry import (
    ERROR_CLASSIFIER_VERSION,
    RetryExecutor,
    RetryPolicy,
    classify_error,
)

pytestmark = [
    allure.epic("External Calls"),
    allure.feature("Retry Executor & Error Classification"),
]


class _Flaky:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def test_classifier_version_is_stable() -> None:
    assert ERROR_CLASSIFIER_VERSION == 1


def test_classifier_keeps_preclassified_errors() -> None:
    error = ExternalRateLimitError(message="slow down", error_class=ErrorClass.RATE_LIMIT)

    classified = classify_error(error)

    assert classified.error_class == ErrorClass.RATE_LIMIT
    assert classified.matched_rule == "preclassified"


def test_classifier_maps_transport_errors_to_network() -> None:
    classified = classify_error(httpx.ConnectError("connection refused"))

    assert classified.error_class == ErrorClass.NETWORK
    assert classified.matched_rule == "transport"


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, ErrorClass.AUTHENTICATION),
        (403, ErrorClass.PERMISSION),
        (404, ErrorClass.NOT_FOUND),
        (429, ErrorClass.RATE_LIMIT),
        (422, ErrorClass.VALIDATION),
        (503, ErrorClass.SERVER),
    ],
)
def test_classifier_maps_http_status(status: int, expected: ErrorClass) -> None:
    error = ExternalServiceError(message=f"HTTP {status}", status_code=status)

    classified = classify_error(error)

    assert classified.error_class == expected
    assert classified.matched_rule == "http_status"
    assert classified.status_code == status


def test_classifier_matches_message_patterns() -> None:
    classified = classify_error(RuntimeError("Invalid API key supplied"))

    assert classified.error_class == ErrorClass.AUTHENTICATION
    assert classified.matched_pattern == "invalid api key"


def test_classifier_falls_back_to_unknown() -> None:
    classified = classify_error(RuntimeError("something odd"))

    assert classified.error_class == ErrorClass.UNKNOWN
    assert classified.matched_rule == "fallback_unknown"
    assert classified.to_details()["classifier_version"] == 1


def test_policy_delay_grows_exponentially_and_is_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_executor_retries_retryable_errors_until_success(recording_sleep) -> None:
    operation = _Flaky(
        [
            ExternalServerError(message="boom", error_class=ErrorClass.SERVER, status_code=502),
            httpx.ReadTimeout("timed out"),
        ],
    )
    executor = RetryExecutor(
        RetryPolicy(max_attempts=3, base_delay_seconds=0.5),
        sleep=recording_sleep,
    )

    result = asyncio.run(executor.execute(operation, operation_name="fetch states"))

    assert result == "ok"
    assert operation.calls == 3
    assert recording_sleep.delays == [0.5, 1.0]


def test_executor_raises_non_retryable_immediately(recording_sleep) -> None:
    operation = _Flaky(
        [ExternalAuthError(message="bad key", error_class=ErrorClass.AUTHENTICATION)],
    )
    executor = RetryExecutor(RetryPolicy(max_attempts=5), sleep=recording_sleep)

    with pytest.raises(ExternalAuthError):
        asyncio.run(executor.execute(operation))

    assert operation.calls == 1
    assert recording_sleep.delays == []


def test_executor_retypes_generic_error_classified_from_message(recording_sleep) -> None:
    original = ExternalServiceError(
        message="Tracker GraphQL error: Issue not found",
        code="graphql_error",
    )
    operation = _Flaky([original])
    executor = RetryExecutor(RetryPolicy(max_attempts=3), sleep=recording_sleep)

    with pytest.raises(ExternalNotFoundError) as excinfo:
        asyncio.run(executor.execute(operation, operation_name="update issue"))

    assert operation.calls == 1
    assert excinfo.value.error_class == ErrorClass.NOT_FOUND
    assert excinfo.value.code == "graphql_error"
    assert excinfo.value.message == original.message
    assert excinfo.value.attempts == 1
    assert excinfo.value.__cause__ is original


def test_executor_surfaces_classified_error_after_budget(recording_sleep) -> None:
    operation = _Flaky([httpx.ConnectError("refused")] * 3)
    executor = RetryExecutor(
        RetryPolicy(max_attempts=3, base_delay_seconds=0),
        sleep=recording_sleep,
    )

    with pytest.raises(ExternalNetworkError) as excinfo:
        asyncio.run(executor.execute(operation, operation_name="fetch states"))

    assert operation.calls == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.retryable is True
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


def test_executor_honours_retry_after(recording_sleep) -> None:
    operation = _Flaky(
        [
            ExternalRateLimitError(
                message="throttled",
                error_class=ErrorClass.RATE_LIMIT,
                status_code=429,
                retry_after=7.0,
            ),
        ],
    )
    executor = RetryExecutor(
        RetryPolicy(max_attempts=2, base_delay_seconds=1.0, max_delay_seconds=30.0),
        sleep=recording_sleep,
    )

    asyncio.run(executor.execute(operation))

    assert recording_sleep.delays == [7.0]
