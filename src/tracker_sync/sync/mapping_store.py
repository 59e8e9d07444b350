"""Persisted status mapping configuration (names and external ids)."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tracker_sync.errors import DocumentCorruptError
from tracker_sync.models import TASK_STATUSES
from tracker_sync.store.document import write_json_atomic
from tracker_sync.sync.resolver import validate_mapping
from tracker_sync.sync.state_cache import StateSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MappingConfig:
    """In-memory form of the mapping config file."""

    team_id: str | None = None
    status_mapping: dict[str, str] = field(default_factory=dict)
    status_uuid_mapping: dict[str, str] = field(default_factory=dict)
    mappings_updated_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> MappingConfig:
        known = {"teamId", "statusMapping", "statusUuidMapping", "mappingsUpdatedAt"}
        return cls(
            team_id=payload.get("teamId") or None,
            status_mapping=_string_map(payload.get("statusMapping")),
            status_uuid_mapping=_string_map(payload.get("statusUuidMapping")),
            mappings_updated_at=payload.get("mappingsUpdatedAt"),
            extra={key: value for key, value in payload.items() if key not in known},
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        if self.team_id:
            payload["teamId"] = self.team_id
        payload["statusMapping"] = dict(self.status_mapping)
        payload["statusUuidMapping"] = dict(self.status_uuid_mapping)
        if self.mappings_updated_at:
            payload["mappingsUpdatedAt"] = self.mappings_updated_at
        return payload

    def effective_mapping(self) -> tuple[str, dict[str, str]]:
        """Id mapping when present, otherwise the name mapping."""

        if self.status_uuid_mapping:
            return "uuid", dict(self.status_uuid_mapping)
        return "name", dict(self.status_mapping)


class MappingStore:
    """Load and atomically persist ``MappingConfig`` at one path."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> MappingConfig:
        if not self.path.exists():
            return MappingConfig()
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise DocumentCorruptError(
                message=f"Mapping config is not valid JSON: {self.path} ({error.msg})",
                code="config_corrupt",
                path=str(self.path),
            ) from error
        if not isinstance(payload, dict):
            raise DocumentCorruptError(
                message=f"Expected JSON object in {self.path}",
                code="config_corrupt",
                path=str(self.path),
            )
        return MappingConfig.from_payload(payload)

    def save(self, config: MappingConfig) -> None:
        config.mappings_updated_at = datetime.now(tz=UTC).isoformat()
        write_json_atomic(self.path, config.to_payload())
        logger.info("Saved status mappings to %s", self.path)

    def set_id_mapping(
        self,
        mapping: Mapping[str, str],
        *,
        snapshot: StateSnapshot | None = None,
        team_id: str | None = None,
    ) -> list[str]:
        """Validate and store an id mapping; returns errors and writes nothing on failure."""

        validation = validate_mapping(mapping, snapshot)
        if not validation.valid:
            logger.warning("Rejected status id mapping: %s", "; ".join(validation.errors))
            return validation.errors
        config = self.load()
        config.status_uuid_mapping = dict(mapping)
        if team_id:
            config.team_id = team_id
        self.save(config)
        return []

    def set_name_mapping(self, mapping: Mapping[str, str], *, team_id: str | None = None) -> None:
        unknown = [status for status in mapping if status not in TASK_STATUSES]
        if unknown:
            raise ValueError(f"Unknown statuses in name mapping: {', '.join(sorted(unknown))}")
        config = self.load()
        config.status_mapping = dict(mapping)
        if team_id:
            config.team_id = team_id
        self.save(config)


def _string_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): str(item) for key, item in value.items() if item}
