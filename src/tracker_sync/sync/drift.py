"""Compare stored status mappings with the current workflow states."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tracker_sync.models import DriftKind, WorkflowState
from tracker_sync.sync.mapping_store import MappingConfig, MappingStore
from tracker_sync.sync.state_cache import StateSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DriftEntry:
    """Classification of one stored status mapping."""

    status: str
    kind: DriftKind
    external_id: str | None = None
    stored_name: str | None = None
    current_name: str | None = None
    message: str = ""


@dataclass(slots=True)
class DriftReport:
    team_key: str
    entries: list[DriftEntry] = field(default_factory=list)
    new_states: list[WorkflowState] = field(default_factory=list)

    def _of_kind(self, kind: DriftKind) -> list[DriftEntry]:
        return [entry for entry in self.entries if entry.kind == kind]

    @property
    def renamed(self) -> list[DriftEntry]:
        return self._of_kind(DriftKind.RENAMED)

    @property
    def broken(self) -> list[DriftEntry]:
        return self._of_kind(DriftKind.BROKEN)

    @property
    def deleted(self) -> list[DriftEntry]:
        return self._of_kind(DriftKind.DELETED)

    @property
    def breaking(self) -> list[DriftEntry]:
        return self.broken + self.deleted

    @property
    def changes_detected(self) -> bool:
        return bool(self.renamed or self.breaking or self.new_states)


def detect_drift(config: MappingConfig, snapshot: StateSnapshot) -> DriftReport:
    """Report-only classification; never writes anything."""

    report = DriftReport(team_key=snapshot.team_key)
    statuses = list(dict.fromkeys([*config.status_uuid_mapping, *config.status_mapping]))
    for status in statuses:
        external_id = config.status_uuid_mapping.get(status)
        stored_name = config.status_mapping.get(status)
        if external_id:
            report.entries.append(_classify_id(status, external_id, stored_name, snapshot))
            continue
        if stored_name and snapshot.lookup_name(stored_name) is None:
            report.entries.append(
                DriftEntry(
                    status=status,
                    kind=DriftKind.DELETED,
                    stored_name=stored_name,
                    message=f"State {stored_name!r} for {status!r} no longer exists",
                ),
            )
        else:
            current = snapshot.lookup_name(stored_name) if stored_name else None
            report.entries.append(
                DriftEntry(
                    status=status,
                    kind=DriftKind.VALID,
                    external_id=current.id if current else None,
                    stored_name=stored_name,
                    current_name=current.name if current else None,
                ),
            )

    known_ids = set(config.status_uuid_mapping.values())
    known_names = {name.lower() for name in config.status_mapping.values()}
    report.new_states = [
        state
        for state in snapshot.active_states
        if state.id not in known_ids and state.name.lower() not in known_names
    ]

    for entry in report.breaking:
        logger.warning("Mapping drift for team %s: %s", snapshot.team_key, entry.message)
    if report.renamed:
        logger.info(
            "Detected %d renamed workflow state(s) for team %s",
            len(report.renamed),
            snapshot.team_key,
        )
    return report


def apply_safe_updates(report: DriftReport, store: MappingStore) -> list[str]:
    """Persist new names for renamed states; broken and deleted entries are left alone.

    Returns warnings describing entries that still need manual attention.
    """

    warnings = [entry.message for entry in report.breaking]
    if not report.renamed:
        return warnings
    config = store.load()
    for entry in report.renamed:
        if entry.current_name:
            config.status_mapping[entry.status] = entry.current_name
    store.save(config)
    logger.info("Applied %d renamed state mapping(s)", len(report.renamed))
    return warnings


def _classify_id(
    status: str,
    external_id: str,
    stored_name: str | None,
    snapshot: StateSnapshot,
) -> DriftEntry:
    state = snapshot.state_by_id.get(external_id)
    if state is None:
        return DriftEntry(
            status=status,
            kind=DriftKind.BROKEN,
            external_id=external_id,
            stored_name=stored_name,
            message=f"State id {external_id} for {status!r} no longer exists",
        )
    if stored_name and stored_name != state.name:
        return DriftEntry(
            status=status,
            kind=DriftKind.RENAMED,
            external_id=external_id,
            stored_name=stored_name,
            current_name=state.name,
            message=f"State for {status!r} renamed from {stored_name!r} to {state.name!r}",
        )
    return DriftEntry(
        status=status,
        kind=DriftKind.VALID,
        external_id=external_id,
        stored_name=stored_name,
        current_name=state.name,
    )
