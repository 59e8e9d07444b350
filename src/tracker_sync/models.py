"""Domain models for status resolution and tracker sync."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Closed set of local task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"

    @classmethod
    def parse(cls, value: str) -> TaskStatus | None:
        normalized = value.strip().lower()
        for status in cls:
            if status.value == normalized:
                return status
        return None


TASK_STATUSES: tuple[str, ...] = tuple(status.value for status in TaskStatus)


class ErrorClass(str, Enum):
    """Normalized external failure classes used by retry policy."""

    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVER = "server"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


RETRYABLE_ERROR_CLASSES = frozenset(
    {ErrorClass.RATE_LIMIT, ErrorClass.NETWORK, ErrorClass.SERVER, ErrorClass.UNKNOWN},
)


class MatchType(str, Enum):
    """Resolution tier that produced a match."""

    EXACT = "exact"
    CASE_INSENSITIVE = "case-insensitive"
    NORMALIZED = "normalized"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic-fallback"
    TYPE_BASED = "type-based-fallback"
    LAST_RESORT = "last-resort-fallback"


class DriftKind(str, Enum):
    """Classification of one stored mapping entry against a fresh snapshot."""

    VALID = "valid"
    RENAMED = "renamed"
    BROKEN = "broken"
    DELETED = "deleted"


@dataclass(slots=True, frozen=True)
class WorkflowState:
    """Normalized external workflow state snapshot."""

    id: str
    name: str
    type: str
    position: float
    archived: bool = False
    color: str | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "position": self.position,
            "archived": self.archived,
        }


@dataclass(slots=True)
class StateMatch:
    """One successful tier match."""

    state: WorkflowState
    match_type: MatchType
    confidence: float


@dataclass(slots=True)
class Resolution:
    """Result of resolving one local status to an external state id."""

    success: bool
    status: str
    external_id: str | None = None
    state_name: str | None = None
    state_type: str | None = None
    match_type: MatchType | None = None
    confidence: float | None = None
    warning: str | None = None
    error: str | None = None
    error_code: str | None = None
    tried_names: tuple[str, ...] = ()
    available_states: tuple[WorkflowState, ...] = ()
    resolved_at: datetime | None = None

    def to_entry(self) -> StatusMappingEntry | None:
        if not self.success or self.external_id is None or self.match_type is None:
            return None
        return StatusMappingEntry(
            status=self.status,
            external_id=self.external_id,
            state_name=self.state_name or "",
            match_type=self.match_type,
            confidence=self.confidence or 0.0,
            resolved_at=self.resolved_at,
        )


@dataclass(slots=True)
class StatusMappingEntry:
    """Local status to external state id pair with provenance."""

    status: str
    external_id: str
    state_name: str
    match_type: MatchType
    confidence: float
    resolved_at: datetime | None = None


@dataclass(slots=True)
class CompleteMapping:
    """Outcome of resolving every local status for one team."""

    team_key: str
    entries: dict[str, StatusMappingEntry] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    warnings: dict[str, str] = field(default_factory=dict)
    generated_at: datetime | None = None

    @property
    def total(self) -> int:
        return len(self.entries) + len(self.failures)

    @property
    def successful(self) -> int:
        return len(self.entries)

    @property
    def complete(self) -> bool:
        return not self.failures

    def id_mapping(self) -> dict[str, str]:
        return {status: entry.external_id for status, entry in self.entries.items()}

    def name_mapping(self) -> dict[str, str]:
        return {status: entry.state_name for status, entry in self.entries.items()}


@dataclass(slots=True)
class MappingValidation:
    """Well-formedness and existence check of a stored id mapping."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    missing_statuses: list[str] = field(default_factory=list)
    unknown_ids: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class WorkflowValidation:
    """Advisory diagnostics about a team's workflow configuration."""

    is_valid: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
