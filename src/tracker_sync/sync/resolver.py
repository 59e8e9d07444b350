"""Status resolution pipeline: local status to external workflow state id."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Mapping
from datetime import UTC, datetime

from tracker_sync.errors import (
    ExternalServiceError,
    NoStatesAvailableError,
    ResolutionExhaustedError,
)
from tracker_sync.models import (
    TASK_STATUSES,
    CompleteMapping,
    MappingValidation,
    MatchType,
    Resolution,
    TaskStatus,
    WorkflowState,
    WorkflowValidation,
)
from tracker_sync.sync.matching import (
    DEFAULT_TIERS,
    STATUS_DEFAULT_NAMES,
    MatchTier,
    best_fuzzy_match,
)
from tracker_sync.sync.state_cache import StateSnapshot, WorkflowStateCache

logger = logging.getLogger(__name__)

REQUIRED_STATE_TYPES: tuple[str, ...] = ("unstarted", "started", "completed")

_EXTERNAL_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_external_id(value: object) -> bool:
    """Syntactic check only; existence is verified against a snapshot."""

    return isinstance(value, str) and bool(_EXTERNAL_ID_PATTERN.match(value))


def candidate_names(
    status: TaskStatus,
    name_overrides: Mapping[str, str] | None = None,
) -> tuple[str, ...]:
    """Configured name first, then defaults, without duplicates."""

    names: list[str] = []
    override = (name_overrides or {}).get(status.value)
    if override:
        names.append(override)
    for name in STATUS_DEFAULT_NAMES.get(status, ()):
        if name not in names:
            names.append(name)
    return tuple(names)


def resolve_against(
    snapshot: StateSnapshot,
    status: TaskStatus,
    *,
    candidates: tuple[str, ...],
    allow_fuzzy_fallback: bool = True,
    allow_fallbacks: bool = True,
    tiers: tuple[MatchTier, ...] = DEFAULT_TIERS,
) -> Resolution:
    """Run the tier chain over one snapshot; deterministic for identical inputs."""

    active = StateSnapshot.build(
        snapshot.team_key,
        snapshot.active_states,
        fetched_at=snapshot.fetched_at,
    )
    for tier in tiers:
        if tier.fuzzy and not allow_fuzzy_fallback:
            continue
        if tier.fallback and not allow_fallbacks:
            continue
        match = tier.match(status, candidates, active)
        if match is None:
            continue
        warning = _fallback_warning(status, match.match_type, match.state)
        if warning:
            logger.warning("%s", warning)
        else:
            logger.debug(
                "Resolved %s -> %r (%s) via %s",
                status.value,
                match.state.name,
                match.state.id,
                match.match_type.value,
            )
        return Resolution(
            success=True,
            status=status.value,
            external_id=match.state.id,
            state_name=match.state.name,
            state_type=match.state.type,
            match_type=match.match_type,
            confidence=match.confidence,
            warning=warning,
            tried_names=candidates,
            resolved_at=datetime.now(tz=UTC),
        )

    available = ", ".join(state.name for state in snapshot.states)
    return Resolution(
        success=False,
        status=status.value,
        error=(
            f"Could not find workflow state matching status {status.value!r}. "
            f"Tried: {', '.join(candidates)}. Available states: {available}"
        ),
        error_code="resolution_exhausted",
        tried_names=candidates,
        available_states=snapshot.states,
    )


def require_resolution(resolution: Resolution, *, team_key: str) -> Resolution:
    """Raise the taxonomy error for a failed resolution, else pass it through."""

    if resolution.success:
        return resolution
    if resolution.error_code == "no_states_available":
        raise NoStatesAvailableError(
            message=resolution.error or "No workflow states found",
            code="no_states_available",
            team_key=team_key,
        )
    raise ResolutionExhaustedError(
        message=resolution.error or "Status resolution exhausted",
        code=resolution.error_code or "resolution_exhausted",
        status=resolution.status,
        tried_names=resolution.tried_names,
        available_names=tuple(state.name for state in resolution.available_states),
    )


class StatusResolver:
    """Resolve local statuses using cached workflow state snapshots."""

    def __init__(
        self,
        cache: WorkflowStateCache,
        *,
        name_overrides: Mapping[str, str] | None = None,
        tiers: tuple[MatchTier, ...] = DEFAULT_TIERS,
    ) -> None:
        self.cache = cache
        self.name_overrides = dict(name_overrides or {})
        self.tiers = tiers

    async def resolve(
        self,
        team_key: str,
        status: str,
        *,
        use_cache: bool = True,
        allow_fuzzy_fallback: bool = True,
        allow_fallbacks: bool = True,
    ) -> Resolution:
        """Resolve one status; failures come back as ``success=False``, never raised."""

        parsed = TaskStatus.parse(status) if isinstance(status, str) else None
        if parsed is None:
            return Resolution(
                success=False,
                status=str(status),
                error=f"Invalid status: {status!r}. Valid statuses: {', '.join(TASK_STATUSES)}",
                error_code="invalid_status",
            )

        try:
            snapshot = await self.cache.get_states(team_key, force_refresh=not use_cache)
        except ValueError as exc:
            return Resolution(
                success=False,
                status=parsed.value,
                error=f"Resolution failed: {exc}",
                error_code="invalid_team",
            )
        except ExternalServiceError as exc:
            logger.warning("Failed to fetch workflow states for team %s: %s", team_key, exc)
            return Resolution(
                success=False,
                status=parsed.value,
                error=f"Resolution failed: {exc}",
                error_code=exc.code,
            )
        return self.resolve_in_snapshot(
            snapshot,
            parsed,
            allow_fuzzy_fallback=allow_fuzzy_fallback,
            allow_fallbacks=allow_fallbacks,
        )

    def resolve_in_snapshot(
        self,
        snapshot: StateSnapshot,
        status: TaskStatus,
        *,
        allow_fuzzy_fallback: bool = True,
        allow_fallbacks: bool = True,
    ) -> Resolution:
        if not snapshot.active_states:
            return Resolution(
                success=False,
                status=status.value,
                error=f"No workflow states found for team {snapshot.team_key}",
                error_code="no_states_available",
            )
        return resolve_against(
            snapshot,
            status,
            candidates=candidate_names(status, self.name_overrides),
            allow_fuzzy_fallback=allow_fuzzy_fallback,
            allow_fallbacks=allow_fallbacks,
            tiers=self.tiers,
        )

    async def generate_complete_mapping(
        self,
        team_key: str,
        *,
        use_cache: bool = True,
        allow_fuzzy_fallback: bool = True,
        allow_fallbacks: bool = True,
    ) -> CompleteMapping:
        """Resolve every local status once; partial success is a valid outcome."""

        result = CompleteMapping(team_key=team_key, generated_at=datetime.now(tz=UTC))
        try:
            snapshot = await self.cache.get_states(team_key, force_refresh=not use_cache)
        except (ExternalServiceError, ValueError) as exc:
            logger.warning("Mapping generation failed for team %s: %s", team_key, exc)
            for status in TaskStatus:
                result.failures[status.value] = f"Resolution failed: {exc}"
            return result

        for status in TaskStatus:
            resolution = self.resolve_in_snapshot(
                snapshot,
                status,
                allow_fuzzy_fallback=allow_fuzzy_fallback,
                allow_fallbacks=allow_fallbacks,
            )
            entry = resolution.to_entry()
            if entry is None:
                result.failures[status.value] = resolution.error or "unresolved"
                logger.warning("Failed to map %r: %s", status.value, resolution.error)
                continue
            result.entries[status.value] = entry
            if resolution.warning:
                result.warnings[status.value] = resolution.warning
        logger.info(
            "Generated %d/%d status mappings for team %s",
            result.successful,
            result.total,
            team_key,
        )
        return result

    async def find_state_by_name(
        self,
        team_key: str,
        name: str,
        *,
        fuzzy: bool = True,
        use_cache: bool = True,
    ) -> WorkflowState | None:
        """Free-text state lookup: exact, lowercase, normalized, then fuzzy score."""

        snapshot = await self.cache.get_states(team_key, force_refresh=not use_cache)
        state = snapshot.lookup_name(name)
        if state is not None:
            return state
        if not fuzzy:
            return None
        scored = best_fuzzy_match(snapshot.active_states, name)
        return scored[0] if scored is not None else None


def validate_mapping(
    mapping: Mapping[str, object],
    snapshot: StateSnapshot | None = None,
) -> MappingValidation:
    """Check keys are known statuses and values are well-formed ids; existence if snapshot."""

    errors: list[str] = []
    unknown_ids: dict[str, str] = {}
    for status, external_id in mapping.items():
        if status not in TASK_STATUSES:
            errors.append(
                f"Invalid status: {status!r}. Valid statuses: {', '.join(TASK_STATUSES)}",
            )
        if not is_valid_external_id(external_id):
            errors.append(f"Invalid id format for status {status!r}: {external_id!r}")
            continue
        if snapshot is not None and external_id not in snapshot.state_by_id:
            unknown_ids[status] = str(external_id)
            errors.append(f"Id {external_id} for status {status!r} not found in workspace")
    missing = [status for status in TASK_STATUSES if not mapping.get(status)]
    return MappingValidation(
        valid=not errors,
        errors=errors,
        missing_statuses=missing,
        unknown_ids=unknown_ids,
    )


def unmapped_statuses(mapping: Mapping[str, object]) -> list[str]:
    return [status for status in TASK_STATUSES if not mapping.get(status)]


def validate_workflow(snapshot: StateSnapshot) -> WorkflowValidation:
    """Advisory checks on a team's workflow; never blocks resolution."""

    validation = WorkflowValidation(is_valid=True)
    if not snapshot.states:
        validation.is_valid = False
        validation.issues.append("No workflow states found for team")
        return validation

    available_types = {state.type for state in snapshot.states}
    missing_types = [kind for kind in REQUIRED_STATE_TYPES if kind not in available_types]
    if missing_types:
        validation.warnings.append(f"Missing state types: {', '.join(missing_types)}")
        validation.recommendations.append(
            "Add workflow states for missing types to improve status mapping",
        )

    name_counts = Counter(state.name for state in snapshot.states)
    duplicates = sorted(name for name, count in name_counts.items() if count > 1)
    if duplicates:
        validation.warnings.append(f"Duplicate state names detected: {', '.join(duplicates)}")
        validation.recommendations.append(
            "Consider renaming duplicate states to avoid mapping conflicts",
        )

    archived = [state for state in snapshot.states if state.archived]
    if archived:
        validation.warnings.append(f"{len(archived)} archived states found")
        validation.recommendations.append(
            "Archived states may cause mapping issues if referenced in configuration",
        )

    lower_names = {state.name.lower() for state in snapshot.states}
    uncovered = [
        status.value
        for status, names in STATUS_DEFAULT_NAMES.items()
        if not any(name.lower() in lower_names for name in names)
    ]
    if uncovered:
        validation.warnings.append(
            f"Statuses without default mappings: {', '.join(uncovered)}",
        )
        validation.recommendations.append("Configure custom state mappings for unmapped statuses")
    return validation


def _fallback_warning(
    status: TaskStatus,
    match_type: MatchType,
    state: WorkflowState,
) -> str | None:
    if match_type == MatchType.TYPE_BASED:
        return (
            f"Using type-based fallback {state.name!r} for {status.value!r}. "
            "Consider configuring an explicit mapping."
        )
    if match_type == MatchType.LAST_RESORT:
        return (
            f"Using last resort fallback state {state.name!r} for {status.value!r}. "
            "Manual configuration strongly recommended."
        )
    return None
