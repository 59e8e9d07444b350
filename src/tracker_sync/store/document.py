"""Task store document shapes, lookup and durable file writes."""

from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tracker_sync.errors import DocumentCorruptError, TaskNotFoundError

DEFAULT_TAG = "master"


def read_document(path: Path) -> dict[str, Any]:
    """Load the store and validate top-level object type."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise DocumentCorruptError(
            message=f"Task store is not valid JSON: {path} ({error.msg} at line {error.lineno})",
            code="document_corrupt",
            path=str(path),
        ) from error
    if not isinstance(payload, dict):
        raise DocumentCorruptError(
            message=f"Expected JSON object in {path}",
            code="document_corrupt",
            path=str(path),
        )
    return payload


def serialize_document(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"


def write_temp_file(target: Path, text: str) -> Path:
    """Write ``text`` to ``<target>.tmp-<hex>`` beside the target and fsync it."""

    temp_path = target.with_name(f"{target.name}.tmp-{secrets.token_hex(6)}")
    with temp_path.open("w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    return temp_path


def atomic_replace(temp_path: Path, target: Path) -> None:
    """Rename ``temp_path`` over ``target``; the only commit point for a write."""

    os.replace(temp_path, target)


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON through a same-directory temp file and atomic rename."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = write_temp_file(path, serialize_document(payload))
    try:
        atomic_replace(temp_path, path)
    finally:
        temp_path.unlink(missing_ok=True)


def same_task_id(left: object, right: object) -> bool:
    """Ids match across int/str spellings, so ``7`` and ``"7"`` are one task."""

    if left is None or right is None:
        return False
    return left == right or str(left) == str(right)


@dataclass(slots=True)
class TaskDocument:
    """Parsed store with the active context's task list.

    Flat stores look like ``{"tasks": [...]}``; tagged stores hold one
    ``{"tasks": [...]}`` object per context name. ``payload`` keeps whichever
    shape was read so writes reproduce it.
    """

    payload: dict[str, Any]
    tag: str | None
    tasks: list[dict[str, Any]]

    @classmethod
    def parse(
        cls,
        payload: dict[str, Any],
        *,
        tag: str | None = None,
        path: Path | None = None,
    ) -> TaskDocument:
        location = str(path) if path is not None else "<document>"
        if isinstance(payload.get("tasks"), list):
            if tag is not None and tag != DEFAULT_TAG:
                raise DocumentCorruptError(
                    message=f"Context {tag!r} not found in flat task store {location}",
                    code="context_not_found",
                    path=location,
                )
            return cls(payload=payload, tag=None, tasks=payload["tasks"])

        contexts = {
            name: value
            for name, value in payload.items()
            if isinstance(value, dict) and isinstance(value.get("tasks"), list)
        }
        if not contexts:
            raise DocumentCorruptError(
                message=f"No valid tasks found in {location}",
                code="document_corrupt",
                path=location,
            )
        selected = tag or (DEFAULT_TAG if DEFAULT_TAG in contexts else next(iter(contexts)))
        if selected not in contexts:
            raise DocumentCorruptError(
                message=f"Context {selected!r} not found in {location}",
                code="context_not_found",
                path=location,
            )
        return cls(payload=payload, tag=selected, tasks=contexts[selected]["tasks"])

    @property
    def is_tagged(self) -> bool:
        return self.tag is not None

    def find_index(self, task_id: object) -> int:
        for index, task in enumerate(self.tasks):
            if isinstance(task, dict) and same_task_id(task.get("id"), task_id):
                return index
        raise TaskNotFoundError(
            message=f"Task {task_id} not found in task store",
            code="task_not_found",
            task_id=str(task_id),
        )

    def get_task(self, task_id: object) -> dict[str, Any]:
        return self.tasks[self.find_index(task_id)]

    def replace_task(self, index: int, task: dict[str, Any]) -> None:
        self.tasks[index] = task

    def to_text(self) -> str:
        return serialize_document(self.payload)
