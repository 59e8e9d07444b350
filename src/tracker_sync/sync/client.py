"""Async GraphQL client for the external workflow tracker."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from tracker_sync.errors import EXTERNAL_ERROR_TYPES, ExternalServiceError
from tracker_sync.models import ErrorClass

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.linear.app/graphql"
DEFAULT_TIMEOUT_SECONDS = 30.0

_WORKFLOW_STATES_QUERY = """
query WorkflowStates(
  $first: Int!, $after: String, $filter: WorkflowStateFilter, $includeArchived: Boolean
) {
  workflowStates(first: $first, after: $after, filter: $filter, includeArchived: $includeArchived) {
    nodes { id name type color position description archivedAt }
    pageInfo { hasNextPage endCursor }
  }
}
"""

_ISSUE_CREATE_MUTATION = """
mutation IssueCreate($input: IssueCreateInput!) {
  issueCreate(input: $input) {
    success
    issue { id identifier url title branchName number createdAt updatedAt state { id name type } }
  }
}
"""

_ISSUE_UPDATE_MUTATION = """
mutation IssueUpdate($id: String!, $input: IssueUpdateInput!) {
  issueUpdate(id: $id, input: $input) {
    success
    issue { id identifier url updatedAt state { id name type } }
  }
}
"""

_GRAPHQL_CODE_CLASSES: dict[str, ErrorClass] = {
    "AUTHENTICATION_ERROR": ErrorClass.AUTHENTICATION,
    "FORBIDDEN": ErrorClass.PERMISSION,
    "RATELIMITED": ErrorClass.RATE_LIMIT,
    "ENTITY_NOT_FOUND": ErrorClass.NOT_FOUND,
    "INVALID_INPUT": ErrorClass.VALIDATION,
    "GRAPHQL_VALIDATION_FAILED": ErrorClass.VALIDATION,
    "INTERNAL_SERVER_ERROR": ErrorClass.SERVER,
}

_STATUS_CLASSES: dict[int, ErrorClass] = {
    400: ErrorClass.VALIDATION,
    401: ErrorClass.AUTHENTICATION,
    403: ErrorClass.PERMISSION,
    404: ErrorClass.NOT_FOUND,
    422: ErrorClass.VALIDATION,
    429: ErrorClass.RATE_LIMIT,
}


@dataclass(slots=True)
class WorkflowStatesPage:
    """One page of raw workflow state nodes."""

    nodes: list[dict[str, Any]] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None


@dataclass(slots=True)
class IssueReference:
    """External issue fields recorded back into the task store."""

    id: str
    identifier: str
    url: str
    title: str | None = None
    branch_name: str | None = None
    number: int | None = None
    state: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def to_update_data(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "externalId": self.id,
            "identifier": self.identifier,
            "url": self.url,
        }
        optional = {
            "title": self.title,
            "branchName": self.branch_name,
            "number": self.number,
            "state": self.state,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


class TrackerClient:
    """Thin GraphQL wrapper; retries are the caller's concern."""

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": api_key, "Content-Type": "application/json"},
            transport=transport,
        )

    async def fetch_workflow_states(
        self,
        team_key: str,
        *,
        include_archived: bool = False,
        page_size: int = 100,
        after: str | None = None,
    ) -> WorkflowStatesPage:
        """Fetch one page of workflow states for a team."""

        variables: dict[str, Any] = {
            "first": page_size,
            "after": after,
            "filter": {"team": {"id": {"eq": team_key}}},
            "includeArchived": include_archived,
        }
        data = await self._execute(_WORKFLOW_STATES_QUERY, variables)
        connection = data.get("workflowStates")
        if not isinstance(connection, dict) or not isinstance(connection.get("nodes"), list):
            raise ExternalServiceError(
                message="Invalid workflow states response structure",
                code="invalid_response",
                error_class=ErrorClass.VALIDATION,
            )
        page_info = connection.get("pageInfo") or {}
        return WorkflowStatesPage(
            nodes=[node for node in connection["nodes"] if isinstance(node, dict)],
            has_next_page=bool(page_info.get("hasNextPage")),
            end_cursor=page_info.get("endCursor"),
        )

    async def create_issue(
        self,
        *,
        team_key: str,
        title: str,
        description: str | None = None,
        state_id: str | None = None,
        project_id: str | None = None,
    ) -> IssueReference:
        issue_input: dict[str, Any] = {"teamId": team_key, "title": title}
        if description:
            issue_input["description"] = description
        if state_id:
            issue_input["stateId"] = state_id
        if project_id:
            issue_input["projectId"] = project_id
        data = await self._execute(_ISSUE_CREATE_MUTATION, {"input": issue_input})
        return _parse_issue_payload(data.get("issueCreate"), operation="issueCreate")

    async def update_issue_state(self, *, issue_id: str, state_id: str) -> IssueReference:
        data = await self._execute(
            _ISSUE_UPDATE_MUTATION,
            {"id": issue_id, "input": {"stateId": state_id}},
        )
        return _parse_issue_payload(data.get("issueUpdate"), operation="issueUpdate")

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(
            self.api_url,
            json={"query": query, "variables": variables},
        )
        if not response.is_success:
            raise _http_error(response)
        payload = response.json()
        if not isinstance(payload, dict):
            raise ExternalServiceError(
                message="Tracker returned a non-object JSON payload",
                code="invalid_response",
                error_class=ErrorClass.VALIDATION,
            )
        errors = payload.get("errors")
        if errors:
            raise _graphql_error(errors)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ExternalServiceError(
                message="Tracker response has no data object",
                code="invalid_response",
                error_class=ErrorClass.VALIDATION,
            )
        return data

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> TrackerClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def _http_error(response: httpx.Response) -> ExternalServiceError:
    status = response.status_code
    error_class = _STATUS_CLASSES.get(status)
    if error_class is None:
        error_class = ErrorClass.SERVER if status >= 500 else ErrorClass.UNKNOWN  # noqa: PLR2004
    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
    logger.debug("Tracker HTTP %d classified as %s", status, error_class.value)
    return EXTERNAL_ERROR_TYPES[error_class](
        message=f"Tracker HTTP error {status}",
        code=f"http_{status}",
        error_class=error_class,
        status_code=status,
        retry_after=retry_after,
    )


def _graphql_error(errors: object) -> ExternalServiceError:
    first = errors[0] if isinstance(errors, list) and errors else {}
    message = str(first.get("message", "Unknown GraphQL error")) if isinstance(first, dict) else ""
    extensions = first.get("extensions", {}) if isinstance(first, dict) else {}
    code = str(extensions.get("code", "")).upper() if isinstance(extensions, dict) else ""
    error_class = _GRAPHQL_CODE_CLASSES.get(code, ErrorClass.UNKNOWN)
    return EXTERNAL_ERROR_TYPES[error_class](
        message=f"Tracker GraphQL error: {message}",
        code=code.lower() or "graphql_error",
        error_class=error_class,
    )


def _parse_issue_payload(payload: object, *, operation: str) -> IssueReference:
    if not isinstance(payload, dict) or not payload.get("success"):
        raise ExternalServiceError(
            message=f"{operation} did not succeed",
            code="mutation_failed",
            error_class=ErrorClass.VALIDATION,
        )
    issue = payload.get("issue")
    if not isinstance(issue, dict) or not issue.get("id"):
        raise ExternalServiceError(
            message=f"{operation} returned no issue",
            code="invalid_response",
            error_class=ErrorClass.VALIDATION,
        )
    return IssueReference(
        id=str(issue["id"]),
        identifier=str(issue.get("identifier", "")),
        url=str(issue.get("url", "")),
        title=issue.get("title"),
        branch_name=issue.get("branchName"),
        number=issue.get("number"),
        state=issue.get("state"),
        created_at=issue.get("createdAt"),
        updated_at=issue.get("updatedAt"),
    )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
