"""Glue between task store events, status resolution and the external tracker."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from tracker_sync.config import Settings
from tracker_sync.errors import TrackerSyncError
from tracker_sync.models import Resolution
from tracker_sync.store.mutator import DocumentMutator
from tracker_sync.sync.client import IssueReference, TrackerClient
from tracker_sync.sync.mapping_store import MappingStore
from tracker_sync.sync.resolver import StatusResolver, require_resolution
from tracker_sync.sync.retry import RetryExecutor, RetryPolicy
from tracker_sync.sync.state_cache import WorkflowStateCache

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncError:
    """Structured failure handed to the CLI layer instead of a raw exception."""

    type: str
    code: str
    message: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


@dataclass(slots=True)
class SyncResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    error: SyncError | None = None


def error_result(exc: Exception, *, warnings: list[str] | None = None) -> SyncResult:
    """Convert an expected failure into ``SyncResult``; other exceptions are re-raised."""

    if isinstance(exc, TrackerSyncError):
        error = SyncError(
            type=type(exc).__name__,
            code=exc.code,
            message=exc.message,
            retryable=exc.retryable,
        )
    elif isinstance(exc, ValueError):
        error = SyncError(type="ValidationError", code="invalid_input", message=str(exc))
    elif isinstance(exc, OSError):
        error = SyncError(type="StorageError", code="io_error", message=str(exc))
    else:
        raise exc
    return SyncResult(success=False, warnings=list(warnings or []), error=error)


class SyncOrchestrator:
    """Resolve states, call the tracker and record references in the task store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: TrackerClient,
        resolver: StatusResolver,
        mutator: DocumentMutator,
        executor: RetryExecutor,
        team_key: str,
        tasks_path: Path,
        id_mapping: Mapping[str, str] | None = None,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.mutator = mutator
        self.executor = executor
        self.team_key = team_key
        self.tasks_path = tasks_path
        self.id_mapping = dict(id_mapping or {})

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> SyncOrchestrator:
        config = MappingStore(settings.config_path).load()
        client = TrackerClient(
            api_key=settings.api.api_key,
            api_url=settings.api.api_url,
            timeout_seconds=settings.api.request_timeout_seconds,
            transport=transport,
        )
        executor = RetryExecutor(
            RetryPolicy(
                max_attempts=settings.retry.max_attempts,
                base_delay_seconds=settings.retry.base_delay_seconds,
                max_delay_seconds=settings.retry.max_delay_seconds,
            ),
            sleep=sleep,
        )
        cache = WorkflowStateCache(
            client,
            executor=executor,
            ttl_seconds=settings.state_cache.ttl_seconds,
            max_entries=settings.state_cache.max_entries,
            page_size=settings.state_cache.page_size,
            max_pages=settings.state_cache.max_pages,
        )
        return cls(
            client=client,
            resolver=StatusResolver(cache, name_overrides=config.status_mapping),
            mutator=DocumentMutator(
                integration_name=settings.integration_name,
                lock_settings=settings.lock,
                current_tag=settings.current_tag,
            ),
            executor=executor,
            team_key=settings.api.team_id or config.team_id or "",
            tasks_path=settings.tasks_path,
            id_mapping=config.status_uuid_mapping,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> SyncOrchestrator:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def resolve_status(
        self,
        status: str,
        *,
        use_cache: bool = True,
        allow_fuzzy_fallback: bool = True,
    ) -> SyncResult:
        resolution = await self._resolve(
            status,
            use_cache=use_cache,
            allow_fuzzy_fallback=allow_fuzzy_fallback,
        )
        if not resolution.success:
            return SyncResult(
                success=False,
                error=SyncError(
                    type="ResolutionError",
                    code=resolution.error_code or "resolution_failed",
                    message=resolution.error or "Status resolution failed",
                ),
            )
        return SyncResult(
            success=True,
            data={
                "status": resolution.status,
                "externalId": resolution.external_id,
                "stateName": resolution.state_name,
                "matchType": resolution.match_type.value if resolution.match_type else None,
                "confidence": resolution.confidence,
            },
            warnings=[resolution.warning] if resolution.warning else [],
        )

    async def record_external_reference(
        self,
        task_id: object,
        update_data: Mapping[str, Any],
    ) -> SyncResult:
        try:
            task = await self.mutator.apply_operation(
                self.tasks_path,
                task_id,
                "link-issue",
                update_data,
            )
        except (TrackerSyncError, ValueError, OSError) as exc:
            logger.warning("Failed to record reference for task %s: %s", task_id, exc)
            return error_result(exc)
        return SyncResult(success=True, data={"task": task})

    async def handle_task_created(self, task: Mapping[str, Any]) -> SyncResult:
        """Create the external issue for a new task and link it back."""

        task_id = task.get("id")
        existing = self._integration(task).get("externalId")
        if existing:
            logger.debug("Task %s already linked to %s", task_id, existing)
            return SyncResult(success=True, data={"skipped": True, "externalId": existing})

        warnings: list[str] = []
        state_id: str | None = None
        status = str(task.get("status") or "pending")
        resolution = await self._resolve(status)
        if resolution.success:
            state_id = resolution.external_id
            if resolution.warning:
                warnings.append(resolution.warning)
        else:
            warnings.append(f"Creating issue without state: {resolution.error}")

        title = str(task.get("title") or f"Task {task_id}")
        description = task.get("description")
        try:
            issue = await self.executor.execute(
                lambda: self.client.create_issue(
                    team_key=self.team_key,
                    title=title,
                    description=str(description) if description else None,
                    state_id=state_id,
                ),
                operation_name=f"create issue for task {task_id}",
            )
        except TrackerSyncError as exc:
            await self._mark_error(task_id, exc)
            return error_result(exc, warnings=warnings)

        result = await self.record_external_reference(task_id, issue.to_update_data())
        result.warnings[:0] = warnings
        if result.success:
            result.data["issue"] = _issue_summary(issue)
            logger.info("Linked task %s to issue %s", task_id, issue.identifier or issue.id)
        return result

    async def handle_task_status_changed(
        self,
        task: Mapping[str, Any],
        new_status: str,
    ) -> SyncResult:
        """Move the linked issue to the state mapped from ``new_status``."""

        task_id = task.get("id")
        issue_id = self._integration(task).get("externalId")
        if not issue_id:
            return SyncResult(
                success=False,
                error=SyncError(
                    type="TaskNotLinked",
                    code="task_not_linked",
                    message=f"Task {task_id} has no linked external issue",
                ),
            )

        try:
            resolution = require_resolution(await self._resolve(new_status), team_key=self.team_key)
            state_id = resolution.external_id or ""
            issue = await self.executor.execute(
                lambda: self.client.update_issue_state(issue_id=str(issue_id), state_id=state_id),
                operation_name=f"update issue state for task {task_id}",
            )
            updated = await self.mutator.apply_operation(
                self.tasks_path,
                task_id,
                "set-state",
                {"state": issue.state or {"id": state_id, "name": resolution.state_name}},
            )
        except (TrackerSyncError, ValueError, OSError) as exc:
            logger.warning("Status sync failed for task %s: %s", task_id, exc)
            return error_result(exc)
        return SyncResult(
            success=True,
            data={"task": updated, "stateId": state_id},
            warnings=[resolution.warning] if resolution.warning else [],
        )

    async def _resolve(
        self,
        status: str,
        *,
        use_cache: bool = True,
        allow_fuzzy_fallback: bool = True,
    ) -> Resolution:
        stored_id = self.id_mapping.get(status.strip().lower())
        if stored_id:
            return Resolution(success=True, status=status, external_id=stored_id)
        return await self.resolver.resolve(
            self.team_key,
            status,
            use_cache=use_cache,
            allow_fuzzy_fallback=allow_fuzzy_fallback,
        )

    async def _mark_error(self, task_id: object, exc: Exception) -> None:
        try:
            await self.mutator.apply_operation(
                self.tasks_path,
                task_id,
                "mark-error",
                {"error": str(exc)},
            )
        except (TrackerSyncError, OSError) as record_exc:
            logger.warning("Could not record sync error on task %s: %s", task_id, record_exc)

    def _integration(self, task: Mapping[str, Any]) -> Mapping[str, Any]:
        integrations = task.get("integrations")
        if not isinstance(integrations, dict):
            return {}
        record = integrations.get(self.mutator.integration_name)
        return record if isinstance(record, dict) else {}


def _issue_summary(issue: IssueReference) -> dict[str, Any]:
    return {"id": issue.id, "identifier": issue.identifier, "url": issue.url}
