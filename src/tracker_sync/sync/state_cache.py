"""Time-bounded cache of external workflow states per team."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from tracker_sync.models import WorkflowState
from tracker_sync.sync.client import WorkflowStatesPage
from tracker_sync.sync.retry import RetryExecutor

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 50
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 10

_NON_ALNUM = re.compile(r"[^a-z0-9]")


class WorkflowStatesSource(Protocol):
    """Anything that can fetch one page of workflow states."""

    async def fetch_workflow_states(
        self,
        team_key: str,
        *,
        include_archived: bool = False,
        page_size: int = 100,
        after: str | None = None,
    ) -> WorkflowStatesPage:
        """Fetch one page of raw workflow state nodes."""
        raise NotImplementedError


def normalize_name(name: str) -> str:
    """Lowercase alphanumeric-only form used for tolerant name lookups."""

    return _NON_ALNUM.sub("", name.lower())


@dataclass(slots=True)
class StateSnapshot:
    """Immutable view of one team's workflow states with O(1) name lookups."""

    team_key: str
    states: tuple[WorkflowState, ...]
    fetched_at: datetime
    page_count: int = 0
    truncated: bool = False
    state_by_id: dict[str, WorkflowState] = field(default_factory=dict)
    state_by_name: dict[str, WorkflowState] = field(default_factory=dict)
    state_by_lower_name: dict[str, WorkflowState] = field(default_factory=dict)
    state_by_normalized_name: dict[str, WorkflowState] = field(default_factory=dict)
    states_by_type: dict[str, list[WorkflowState]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        team_key: str,
        states: list[WorkflowState] | tuple[WorkflowState, ...],
        *,
        fetched_at: datetime | None = None,
        page_count: int = 0,
        truncated: bool = False,
    ) -> StateSnapshot:
        snapshot = cls(
            team_key=team_key,
            states=tuple(states),
            fetched_at=fetched_at or datetime.now(tz=UTC),
            page_count=page_count,
            truncated=truncated,
        )
        for state in snapshot.states:
            snapshot.state_by_id.setdefault(state.id, state)
            snapshot.state_by_name.setdefault(state.name, state)
            snapshot.state_by_lower_name.setdefault(state.name.lower(), state)
            snapshot.state_by_normalized_name.setdefault(normalize_name(state.name), state)
            snapshot.states_by_type.setdefault(state.type, []).append(state)
        for typed in snapshot.states_by_type.values():
            typed.sort(key=lambda item: item.position)
        return snapshot

    @property
    def active_states(self) -> tuple[WorkflowState, ...]:
        return tuple(state for state in self.states if not state.archived)

    def lookup_name(self, name: str) -> WorkflowState | None:
        """Exact, then lowercase, then normalized name lookup."""

        return (
            self.state_by_name.get(name)
            or self.state_by_lower_name.get(name.lower())
            or self.state_by_normalized_name.get(normalize_name(name))
        )


@dataclass(slots=True)
class _CacheEntry:
    snapshot: StateSnapshot
    cached_at: float


class WorkflowStateCache:
    """Per-team snapshot cache: populate on miss, expire on TTL, evict oldest on overflow."""

    def __init__(  # noqa: PLR0913
        self,
        source: WorkflowStatesSource,
        *,
        executor: RetryExecutor | None = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        include_archived: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.executor = executor or RetryExecutor()
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.page_size = page_size
        self.max_pages = max_pages
        self.include_archived = include_archived
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, team_key: object) -> bool:
        return team_key in self._entries

    async def get_states(self, team_key: str, *, force_refresh: bool = False) -> StateSnapshot:
        """Return a cached snapshot or fetch a fresh one through the retry executor."""

        if not team_key or not isinstance(team_key, str):
            raise ValueError("Team key is required and must be a string")
        if not force_refresh:
            cached = self._get_fresh(team_key)
            if cached is not None:
                return cached

        lock = self._refresh_locks.setdefault(team_key, asyncio.Lock())
        try:
            async with lock:
                if not force_refresh:
                    cached = self._get_fresh(team_key)
                    if cached is not None:
                        return cached
                snapshot = await self._fetch_snapshot(team_key)
                if snapshot.states:
                    self._store(team_key, snapshot)
        finally:
            if team_key not in self._entries:
                self._drop_idle_lock(team_key)
        logger.info(
            "Fetched %d workflow states for team %s in %d page(s)",
            len(snapshot.states),
            team_key,
            snapshot.page_count,
        )
        return snapshot

    def peek(self, team_key: str) -> StateSnapshot | None:
        """Return the cached snapshot without fetching, honouring TTL."""

        return self._get_fresh(team_key)

    def clear(self, team_key: str | None = None) -> None:
        if team_key is None:
            self._entries.clear()
            for key in list(self._refresh_locks):
                self._drop_idle_lock(key)
            logger.debug("Cleared all workflow state cache entries")
            return
        self._entries.pop(team_key, None)
        self._drop_idle_lock(team_key)
        logger.debug("Cleared workflow state cache for team %s", team_key)

    def _get_fresh(self, team_key: str) -> StateSnapshot | None:
        entry = self._entries.get(team_key)
        if entry is None:
            return None
        age = self._clock() - entry.cached_at
        if age > self.ttl_seconds:
            logger.debug("Workflow state cache expired for team %s (age %.0fs)", team_key, age)
            self._entries.pop(team_key, None)
            return None
        return entry.snapshot

    def _store(self, team_key: str, snapshot: StateSnapshot) -> None:
        if team_key in self._entries:
            self._entries.move_to_end(team_key)
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Workflow state cache full, evicted oldest team %s", evicted)
            self._drop_idle_lock(evicted)
        self._entries[team_key] = _CacheEntry(snapshot=snapshot, cached_at=self._clock())

    def _drop_idle_lock(self, team_key: str) -> None:
        lock = self._refresh_locks.get(team_key)
        if lock is not None and not lock.locked():
            del self._refresh_locks[team_key]

    async def _fetch_snapshot(self, team_key: str) -> StateSnapshot:
        raw_nodes: list[dict[str, Any]] = []
        cursor: str | None = None
        has_next_page = True
        page_count = 0
        while has_next_page and page_count < self.max_pages:
            page_number = page_count + 1

            async def _fetch_page(after: str | None = cursor) -> WorkflowStatesPage:
                return await self.source.fetch_workflow_states(
                    team_key,
                    include_archived=self.include_archived,
                    page_size=self.page_size,
                    after=after,
                )

            page = await self.executor.execute(
                _fetch_page,
                operation_name=f"fetch workflow states page {page_number} for team {team_key}",
            )
            raw_nodes.extend(page.nodes)
            has_next_page = page.has_next_page and page.end_cursor is not None
            cursor = page.end_cursor
            page_count = page_number

        if has_next_page:
            logger.warning(
                "Reached page limit (%d) fetching workflow states for team %s",
                self.max_pages,
                team_key,
            )
        return StateSnapshot.build(
            team_key,
            normalize_states(raw_nodes),
            page_count=page_count,
            truncated=has_next_page,
        )


def normalize_states(raw_nodes: list[dict[str, Any]]) -> list[WorkflowState]:
    """Convert raw API nodes into workflow states, skipping malformed ones."""

    states: list[WorkflowState] = []
    for index, node in enumerate(raw_nodes):
        state_id = node.get("id")
        name = node.get("name")
        if not state_id or not isinstance(name, str) or not name:
            logger.warning("Workflow state %d missing required fields (id or name)", index)
            continue
        position = node.get("position")
        states.append(
            WorkflowState(
                id=str(state_id),
                name=name,
                type=str(node.get("type") or "unstarted"),
                position=float(position) if isinstance(position, int | float) else float(index),
                archived=bool(node.get("archivedAt") or node.get("archived")),
                color=node.get("color"),
                description=node.get("description"),
            ),
        )
    return states
