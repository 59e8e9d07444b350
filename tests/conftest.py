"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from tracker_sync.models import WorkflowState
from tracker_sync.sync.state_cache import StateSnapshot

STANDARD_NODES = [
    {
        "id": "66666666-6666-4666-8666-666666666666",
        "name": "Backlog",
        "type": "backlog",
        "position": 0,
    },
    {
        "id": "11111111-1111-4111-8111-111111111111",
        "name": "Todo",
        "type": "unstarted",
        "position": 1,
    },
    {
        "id": "22222222-2222-4222-8222-222222222222",
        "name": "In Progress",
        "type": "started",
        "position": 2,
    },
    {
        "id": "33333333-3333-4333-8333-333333333333",
        "name": "In Review",
        "type": "started",
        "position": 3,
    },
    {
        "id": "44444444-4444-4444-8444-444444444444",
        "name": "Done",
        "type": "completed",
        "position": 4,
    },
    {
        "id": "55555555-5555-4555-8555-555555555555",
        "name": "Canceled",
        "type": "canceled",
        "position": 5,
    },
]


class RecordingSleep:
    """Async sleep stand-in recording requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _make_snapshot(
    states: list[tuple[str, str, str]],
    *,
    team_key: str = "team-1",
) -> StateSnapshot:
    return StateSnapshot.build(
        team_key,
        [
            WorkflowState(id=state_id, name=name, type=state_type, position=float(index))
            for index, (state_id, name, state_type) in enumerate(states)
        ],
    )


def _graphql_transport(
    handler: Callable[[dict[str, Any]], httpx.Response],
    calls: list[dict[str, Any]] | None = None,
) -> httpx.MockTransport:
    def _handle(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        return handler(body)

    return httpx.MockTransport(_handle)


def _states_response(
    nodes: list[dict[str, Any]],
    *,
    has_next_page: bool = False,
    end_cursor: str | None = None,
) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "data": {
                "workflowStates": {
                    "nodes": nodes,
                    "pageInfo": {"hasNextPage": has_next_page, "endCursor": end_cursor},
                },
            },
        },
    )


@pytest.fixture()
def standard_nodes() -> list[dict[str, Any]]:
    return [dict(node) for node in STANDARD_NODES]


@pytest.fixture()
def make_snapshot() -> Callable[..., StateSnapshot]:
    """Build a snapshot from ``(id, name, type)`` triples, positioned in list order."""

    return _make_snapshot


@pytest.fixture()
def standard_snapshot() -> StateSnapshot:
    return _make_snapshot([(node["id"], node["name"], node["type"]) for node in STANDARD_NODES])


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def graphql_transport() -> Callable[..., httpx.MockTransport]:
    """Factory for a MockTransport that hands the decoded GraphQL body to a handler."""

    return _graphql_transport


@pytest.fixture()
def states_response() -> Callable[..., httpx.Response]:
    return _states_response


@pytest.fixture()
def write_tasks() -> Callable[[Path, dict[str, Any]], Path]:
    def _write(path: Path, payload: dict[str, Any]) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def flat_tasks_file(tmp_path: Path, write_tasks) -> Path:
    return write_tasks(
        tmp_path / "tasks.json",
        {
            "tasks": [
                {"id": 7, "title": "Ship sync", "status": "pending"},
                {"id": 8, "title": "Write docs", "status": "in-progress"},
            ],
        },
    )


@pytest.fixture()
def tracker_env(monkeypatch, tmp_path: Path) -> Path:
    """Point settings at temp files and a fake API key and team."""

    monkeypatch.setenv("TRACKER_SYNC_API_KEY", "lin_api_test")
    monkeypatch.setenv("TRACKER_SYNC_TEAM_ID", "team-1")
    monkeypatch.setenv("TRACKER_SYNC_API_URL", "https://tracker.test/graphql")
    monkeypatch.setenv("TRACKER_SYNC_CONFIG_PATH", str(tmp_path / "config.json"))
    monkeypatch.setenv("TRACKER_SYNC_TASKS_PATH", str(tmp_path / "tasks.json"))
    monkeypatch.setenv("TRACKER_SYNC_RETRY_BASE_DELAY_SECONDS", "0")
    monkeypatch.delenv("TRACKER_SYNC_CURRENT_TAG", raising=False)
    return tmp_path
