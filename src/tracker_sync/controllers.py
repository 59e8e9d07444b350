"""Controllers for tracker-sync CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from tracker_sync.config import Settings
from tracker_sync.errors import TrackerSyncError
from tracker_sync.sync.drift import apply_safe_updates, detect_drift
from tracker_sync.sync.mapping_store import MappingStore
from tracker_sync.sync.orchestrator import SyncOrchestrator, SyncResult
from tracker_sync.sync.resolver import unmapped_statuses, validate_mapping, validate_workflow


@dataclass(slots=True)
class StatesCommand:
    """CLI inputs for listing workflow states."""

    include_archived: bool = False


@dataclass(slots=True)
class ResolveCommand:
    """CLI inputs for single status resolution."""

    status: str
    use_cache: bool = True
    allow_fuzzy_fallback: bool = True


@dataclass(slots=True)
class MapCommand:
    """CLI inputs for complete mapping generation."""

    save: bool = False


@dataclass(slots=True)
class DriftCommand:
    """CLI inputs for drift detection."""

    apply: bool = False


@dataclass(slots=True)
class LinkCommand:
    """CLI inputs for recording an external issue on a task."""

    task_id: str
    external_id: str
    url: str
    identifier: str | None = None
    tasks_path: Path | None = None


@dataclass(slots=True)
class CommandResult:
    lines: list[str] = field(default_factory=list)
    success: bool = True


class TrackerSyncCliController:
    """Coordinates tracker-sync command execution."""

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.sleep = sleep

    def states(self, command: StatesCommand) -> CommandResult:
        return self._run(
            lambda orchestrator, settings: self._states(orchestrator, settings, command),
        )

    def resolve(self, command: ResolveCommand) -> CommandResult:
        return self._run(
            lambda orchestrator, settings: self._resolve(orchestrator, settings, command),
        )

    def map(self, command: MapCommand) -> CommandResult:
        return self._run(
            lambda orchestrator, settings: self._map(orchestrator, settings, command),
        )

    def validate(self) -> CommandResult:
        return self._run(self._validate)

    def drift(self, command: DriftCommand) -> CommandResult:
        return self._run(
            lambda orchestrator, settings: self._drift(orchestrator, settings, command),
        )

    def link(self, command: LinkCommand) -> CommandResult:
        settings = Settings.from_env(tasks_path=command.tasks_path)
        try:
            settings.validate_for_sync(require_api=False)
        except ValueError as error:
            return CommandResult(lines=[str(error)], success=False)
        update_data = {"externalId": command.external_id, "url": command.url}
        if command.identifier:
            update_data["identifier"] = command.identifier

        async def _link() -> SyncResult:
            async with SyncOrchestrator.from_settings(
                settings,
                transport=self.transport,
                sleep=self.sleep,
            ) as orchestrator:
                return await orchestrator.record_external_reference(command.task_id, update_data)

        result = asyncio.run(_link())
        if not result.success:
            return _failure_lines(result)
        integration = result.data["task"]["integrations"][settings.integration_name]
        return CommandResult(
            lines=[
                f"Task {command.task_id} linked: externalId={integration['externalId']} "
                f"url={integration['url']} syncedAt={integration['syncedAt']}",
            ],
        )

    def _run(
        self,
        handler: Callable[[SyncOrchestrator, Settings], Awaitable[CommandResult]],
    ) -> CommandResult:
        settings = Settings.from_env()
        try:
            settings.validate_for_sync()
        except ValueError as error:
            return CommandResult(lines=[str(error)], success=False)

        async def _execute() -> CommandResult:
            async with SyncOrchestrator.from_settings(
                settings,
                transport=self.transport,
                sleep=self.sleep,
            ) as orchestrator:
                try:
                    return await handler(orchestrator, settings)
                except TrackerSyncError as error:
                    return CommandResult(lines=[f"Error ({error.code}): {error}"], success=False)

        return asyncio.run(_execute())

    async def _states(
        self,
        orchestrator: SyncOrchestrator,
        _settings: Settings,
        command: StatesCommand,
    ) -> CommandResult:
        cache = orchestrator.resolver.cache
        cache.include_archived = command.include_archived
        snapshot = await cache.get_states(orchestrator.team_key)
        lines = [f"Workflow states for team {orchestrator.team_key}: {len(snapshot.states)}"]
        for state in sorted(snapshot.states, key=lambda item: (item.type, item.position)):
            archived = " archived" if state.archived else ""
            lines.append(f"- {state.name} [{state.type}] id={state.id}{archived}")
        if snapshot.truncated:
            lines.append("Warning: page limit reached, list may be incomplete.")
        return CommandResult(lines=lines)

    async def _resolve(
        self,
        orchestrator: SyncOrchestrator,
        _settings: Settings,
        command: ResolveCommand,
    ) -> CommandResult:
        result = await orchestrator.resolve_status(
            command.status,
            use_cache=command.use_cache,
            allow_fuzzy_fallback=command.allow_fuzzy_fallback,
        )
        if not result.success:
            return _failure_lines(result)
        data = result.data
        lines = [
            f"{data['status']} -> {data['stateName'] or '(stored id)'} "
            f"id={data['externalId']} match={data['matchType'] or 'stored'}",
        ]
        lines.extend(f"Warning: {warning}" for warning in result.warnings)
        return CommandResult(lines=lines)

    async def _map(
        self,
        orchestrator: SyncOrchestrator,
        settings: Settings,
        command: MapCommand,
    ) -> CommandResult:
        mapping = await orchestrator.resolver.generate_complete_mapping(orchestrator.team_key)
        lines = [
            f"Status mapping for team {orchestrator.team_key}: "
            f"{mapping.successful}/{mapping.total} resolved",
        ]
        for status, entry in mapping.entries.items():
            lines.append(
                f"- {status} -> {entry.state_name} id={entry.external_id} "
                f"match={entry.match_type.value} confidence={entry.confidence:.2f}",
            )
        for status, error in mapping.failures.items():
            lines.append(f"- {status}: FAILED {error}")
        lines.extend(f"Warning ({status}): {text}" for status, text in mapping.warnings.items())
        if mapping.failures:
            snapshot = orchestrator.resolver.cache.peek(orchestrator.team_key)
            if snapshot is not None:
                workflow = validate_workflow(snapshot)
                lines.extend(f"Hint: {text}" for text in workflow.recommendations)
        if command.save and mapping.entries:
            store = MappingStore(settings.config_path)
            errors = store.set_id_mapping(mapping.id_mapping(), team_id=orchestrator.team_key)
            if errors:
                lines.extend(f"Not saved: {error}" for error in errors)
                return CommandResult(lines=lines, success=False)
            store.set_name_mapping(mapping.name_mapping(), team_id=orchestrator.team_key)
            lines.append(f"Saved mapping to {store.path}")
        return CommandResult(lines=lines, success=mapping.complete or not command.save)

    async def _validate(
        self,
        orchestrator: SyncOrchestrator,
        settings: Settings,
    ) -> CommandResult:
        config = MappingStore(settings.config_path).load()
        kind, mapping = config.effective_mapping()
        if not mapping:
            return CommandResult(lines=["No stored status mapping to validate."], success=False)
        lines = [f"Validating {kind} mapping ({len(mapping)} statuses)"]
        if kind == "uuid":
            snapshot = await orchestrator.resolver.cache.get_states(orchestrator.team_key)
            validation = validate_mapping(mapping, snapshot)
            lines.extend(f"Error: {error}" for error in validation.errors)
            missing = validation.missing_statuses
            valid = validation.valid
        else:
            missing = unmapped_statuses(mapping)
            valid = True
        if missing:
            lines.append(f"Unmapped statuses: {', '.join(missing)}")
        lines.append("Mapping is valid." if valid else "Mapping is invalid.")
        return CommandResult(lines=lines, success=valid)

    async def _drift(
        self,
        orchestrator: SyncOrchestrator,
        settings: Settings,
        command: DriftCommand,
    ) -> CommandResult:
        store = MappingStore(settings.config_path)
        snapshot = await orchestrator.resolver.cache.get_states(orchestrator.team_key)
        report = detect_drift(store.load(), snapshot)
        if not report.changes_detected:
            return CommandResult(lines=["No mapping drift detected."])
        lines = [
            f"Mapping drift for team {report.team_key}: renamed={len(report.renamed)} "
            f"broken={len(report.broken)} deleted={len(report.deleted)} "
            f"new_states={len(report.new_states)}",
        ]
        lines.extend(
            f"- {entry.kind.value}: {entry.message}" for entry in report.entries if entry.message
        )
        lines.extend(f"- new state: {state.name} id={state.id}" for state in report.new_states)
        if command.apply:
            warnings = apply_safe_updates(report, store)
            lines.append(f"Applied {len(report.renamed)} rename(s).")
            lines.extend(f"Needs manual fix: {warning}" for warning in warnings)
        elif report.renamed:
            lines.append("Run with --apply to store renamed state names.")
        return CommandResult(lines=lines, success=not report.breaking)


def _failure_lines(result: SyncResult) -> CommandResult:
    error = result.error
    lines = [f"Warning: {warning}" for warning in result.warnings]
    if error is not None:
        retry_hint = " (retryable)" if error.retryable else ""
        lines.append(f"Error [{error.type}/{error.code}]{retry_hint}: {error.message}")
    return CommandResult(lines=lines, success=False)
