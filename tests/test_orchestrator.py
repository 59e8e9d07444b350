from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import httpx
import pytest

from tracker_sync.config import RetrySettings, Settings, TrackerApiSettings
from tracker_sync.errors import LockTimeoutError
from tracker_sync.sync.orchestrator import SyncOrchestrator, SyncResult, error_result

pytestmark = [
    allure.epic("Sync"),
    allure.feature("Orchestrator"),
]

TODO_ID = "11111111-1111-4111-8111-111111111111"
DONE_ID = "44444444-4444-4444-8444-444444444444"

CREATED_ISSUE = {
    "id": "issue-1",
    "identifier": "ENG-7",
    "url": "https://tracker.test/ENG-7",
    "title": "Ship sync",
    "number": 7,
    "state": {"id": TODO_ID, "name": "Todo", "type": "unstarted"},
}


def _settings(tmp_path: Path, **retry) -> Settings:
    return Settings(
        tasks_path=tmp_path / "tasks.json",
        config_path=tmp_path / "config.json",
        api=TrackerApiSettings(
            api_url="https://tracker.test/graphql",
            api_key="lin_api_test",
            team_id="team-1",
        ),
        retry=RetrySettings(**({"base_delay_seconds": 0.0} | retry)),
    )


def _run(settings: Settings, transport, scenario, sleep=None) -> SyncResult:
    async def _main() -> SyncResult:
        kwargs = {"transport": transport}
        if sleep is not None:
            kwargs["sleep"] = sleep
        async with SyncOrchestrator.from_settings(settings, **kwargs) as orchestrator:
            return await scenario(orchestrator)

    return asyncio.run(_main())


def _tracker(path: Path, task_id: int) -> dict:
    payload = json.loads(path.read_text(encoding="utf-8"))
    task = next(task for task in payload["tasks"] if task["id"] == task_id)
    return task.get("integrations", {}).get("tracker", {})


@pytest.fixture()
def tracker_handler(standard_nodes, states_response):
    """GraphQL handler answering states, issue create and issue update."""

    def _handle(body: dict) -> httpx.Response:
        query = body["query"]
        if "workflowStates" in query:
            return states_response(standard_nodes)
        if "issueCreate" in query:
            return httpx.Response(
                200,
                json={"data": {"issueCreate": {"success": True, "issue": CREATED_ISSUE}}},
            )
        if "issueUpdate" in query:
            state_id = body["variables"]["input"]["stateId"]
            issue = {
                "id": body["variables"]["id"],
                "identifier": "ENG-7",
                "url": "https://tracker.test/ENG-7",
                "state": {"id": state_id, "name": "Done", "type": "completed"},
            }
            return httpx.Response(
                200,
                json={"data": {"issueUpdate": {"success": True, "issue": issue}}},
            )
        return httpx.Response(400, json={"errors": [{"message": "unexpected query"}]})

    return _handle


def test_resolve_status_reports_match(tmp_path: Path, graphql_transport, tracker_handler) -> None:
    result = _run(
        _settings(tmp_path),
        graphql_transport(tracker_handler),
        lambda orchestrator: orchestrator.resolve_status("pending"),
    )

    assert result.success is True
    assert result.data == {
        "status": "pending",
        "externalId": TODO_ID,
        "stateName": "Todo",
        "matchType": "exact",
        "confidence": 1.0,
    }
    assert result.warnings == []


def test_resolve_status_prefers_stored_id_mapping(
    tmp_path: Path,
    graphql_transport,
    tracker_handler,
) -> None:
    (tmp_path / "config.json").write_text(
        json.dumps({"statusUuidMapping": {"done": DONE_ID}}),
        encoding="utf-8",
    )
    calls: list[dict] = []

    result = _run(
        _settings(tmp_path),
        graphql_transport(tracker_handler, calls),
        lambda orchestrator: orchestrator.resolve_status("done"),
    )

    assert result.success is True
    assert result.data["externalId"] == DONE_ID
    assert result.data["matchType"] is None
    assert calls == []


def test_resolve_status_rejects_unknown_status(
    tmp_path: Path,
    graphql_transport,
    tracker_handler,
) -> None:
    result = _run(
        _settings(tmp_path),
        graphql_transport(tracker_handler),
        lambda orchestrator: orchestrator.resolve_status("blocked"),
    )

    assert result.success is False
    assert result.error is not None
    assert result.error.type == "ResolutionError"
    assert result.error.code == "invalid_status"


def test_task_created_creates_issue_and_links_it(
    tmp_path: Path,
    flat_tasks_file: Path,
    graphql_transport,
    tracker_handler,
) -> None:
    calls: list[dict] = []
    task = {"id": 7, "title": "Ship sync", "status": "pending"}

    result = _run(
        _settings(tmp_path),
        graphql_transport(tracker_handler, calls),
        lambda orchestrator: orchestrator.handle_task_created(task),
    )

    assert result.success is True
    assert result.data["issue"] == {
        "id": "issue-1",
        "identifier": "ENG-7",
        "url": "https://tracker.test/ENG-7",
    }
    create_input = calls[-1]["variables"]["input"]
    assert create_input == {"teamId": "team-1", "title": "Ship sync", "stateId": TODO_ID}
    record = _tracker(flat_tasks_file, 7)
    assert record["externalId"] == "issue-1"
    assert record["identifier"] == "ENG-7"
    assert record["number"] == 7
    assert record["status"] == "synced"


def test_task_already_linked_is_skipped(
    tmp_path: Path,
    graphql_transport,
    tracker_handler,
) -> None:
    calls: list[dict] = []
    task = {"id": 7, "integrations": {"tracker": {"externalId": "issue-1"}}}

    result = _run(
        _settings(tmp_path),
        graphql_transport(tracker_handler, calls),
        lambda orchestrator: orchestrator.handle_task_created(task),
    )

    assert result.success is True
    assert result.data == {"skipped": True, "externalId": "issue-1"}
    assert calls == []


def test_status_change_updates_issue_and_records_state(
    tmp_path: Path,
    write_tasks,
    graphql_transport,
    tracker_handler,
) -> None:
    linked = {"id": 7, "title": "Ship sync", "integrations": {"tracker": {"externalId": "issue-1"}}}
    tasks_path = write_tasks(tmp_path / "tasks.json", {"tasks": [linked]})
    calls: list[dict] = []

    result = _run(
        _settings(tmp_path),
        graphql_transport(tracker_handler, calls),
        lambda orchestrator: orchestrator.handle_task_status_changed(linked, "done"),
    )

    assert result.success is True
    assert result.data["stateId"] == DONE_ID
    update = calls[-1]["variables"]
    assert update == {"id": "issue-1", "input": {"stateId": DONE_ID}}
    record = _tracker(tasks_path, 7)
    assert record["externalId"] == "issue-1"
    assert record["state"]["id"] == DONE_ID


def test_status_change_on_unlinked_task_fails(
    tmp_path: Path,
    graphql_transport,
    tracker_handler,
) -> None:
    result = _run(
        _settings(tmp_path),
        graphql_transport(tracker_handler),
        lambda orchestrator: orchestrator.handle_task_status_changed({"id": 8}, "done"),
    )

    assert result.success is False
    assert result.error is not None
    assert result.error.type == "TaskNotLinked"
    assert result.error.code == "task_not_linked"


def test_status_change_without_states_reports_taxonomy_error(
    tmp_path: Path,
    write_tasks,
    graphql_transport,
    states_response,
) -> None:
    linked = {"id": 7, "integrations": {"tracker": {"externalId": "issue-1"}}}
    write_tasks(tmp_path / "tasks.json", {"tasks": [linked]})

    result = _run(
        _settings(tmp_path),
        graphql_transport(lambda _body: states_response([])),
        lambda orchestrator: orchestrator.handle_task_status_changed(linked, "done"),
    )

    assert result.success is False
    assert result.error is not None
    assert result.error.type == "NoStatesAvailableError"
    assert result.error.code == "no_states_available"


def test_auth_failure_marks_task_and_is_not_retried(
    tmp_path: Path,
    flat_tasks_file: Path,
    graphql_transport,
    recording_sleep,
) -> None:
    calls: list[dict] = []
    task = {"id": 7, "title": "Ship sync", "status": "pending"}

    result = _run(
        _settings(tmp_path, base_delay_seconds=1.0),
        graphql_transport(lambda _body: httpx.Response(401, json={}), calls),
        lambda orchestrator: orchestrator.handle_task_created(task),
        sleep=recording_sleep,
    )

    assert result.success is False
    assert result.error is not None
    assert result.error.type == "ExternalAuthError"
    assert result.error.code == "http_401"
    assert result.error.retryable is False
    assert any("without state" in warning for warning in result.warnings)
    assert len(calls) == 2
    assert recording_sleep.delays == []
    record = _tracker(flat_tasks_file, 7)
    assert record["status"] == "error"
    assert "401" in record["lastError"]


def test_server_errors_are_retried_with_backoff(
    tmp_path: Path,
    flat_tasks_file: Path,
    graphql_transport,
    tracker_handler,
    recording_sleep,
) -> None:
    failures = {"issueCreate": 2}

    def _flaky(body: dict) -> httpx.Response:
        if "issueCreate" in body["query"] and failures["issueCreate"]:
            failures["issueCreate"] -= 1
            return httpx.Response(503, json={})
        return tracker_handler(body)

    result = _run(
        _settings(tmp_path, base_delay_seconds=1.0),
        graphql_transport(_flaky),
        lambda orchestrator: orchestrator.handle_task_created({"id": 8, "title": "Write docs"}),
        sleep=recording_sleep,
    )

    assert result.success is True
    assert recording_sleep.delays == [1.0, 2.0]
    assert _tracker(flat_tasks_file, 8)["externalId"] == "issue-1"


def test_error_result_maps_expected_failures() -> None:
    lock_error = error_result(
        LockTimeoutError(message="busy", code="lock_timeout", lock_path="x.lock", attempts=10),
        warnings=["first"],
    )
    validation = error_result(ValueError("bad input"))
    storage = error_result(OSError("disk full"))

    assert lock_error.error is not None
    assert lock_error.error.to_dict() == {
        "type": "LockTimeoutError",
        "code": "lock_timeout",
        "message": "busy",
        "retryable": True,
    }
    assert lock_error.warnings == ["first"]
    assert validation.error is not None
    assert validation.error.type == "ValidationError"
    assert storage.error is not None
    assert storage.error.code == "io_error"


def test_error_result_reraises_unexpected_exceptions() -> None:
    with pytest.raises(RuntimeError):
        error_result(RuntimeError("bug"))


def test_task_created_without_team_id_warns_instead_of_raising(
    tmp_path: Path,
    flat_tasks_file: Path,
    graphql_transport,
    tracker_handler,
) -> None:
    settings = _settings(tmp_path)
    settings.api.team_id = ""
    calls: list[dict] = []

    result = _run(
        settings,
        graphql_transport(tracker_handler, calls),
        lambda orchestrator: orchestrator.handle_task_created({"id": 7, "title": "Ship sync"}),
    )

    assert result.success is True
    assert any("Team key is required" in warning for warning in result.warnings)
    assert [call["variables"]["input"] for call in calls] == [{"teamId": "", "title": "Ship sync"}]
    assert _tracker(flat_tasks_file, 7)["externalId"] == "issue-1"
