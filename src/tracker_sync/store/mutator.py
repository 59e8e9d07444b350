"""Crash-safe task store mutation: lock, backup, write temp, rename, clean up."""

from __future__ import annotations

import asyncio
import copy
import logging
import secrets
import shutil
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tracker_sync.config import LockSettings
from tracker_sync.errors import RollbackFailedError
from tracker_sync.store.document import (
    TaskDocument,
    atomic_replace,
    read_document,
    write_temp_file,
)
from tracker_sync.store.lock import DocumentLock

logger = logging.getLogger(__name__)

DEFAULT_INTEGRATION_NAME = "tracker"

IntegrationPatch = Mapping[str, Any]
UpdateFn = Callable[[dict[str, Any]], IntegrationPatch]
OperationBuilder = Callable[[Mapping[str, Any], str], dict[str, Any]]

_LINK_FIELDS = (
    "identifier",
    "title",
    "state",
    "team",
    "project",
    "branchName",
    "number",
    "createdAt",
    "updatedAt",
)


def _link_issue(data: Mapping[str, Any], synced_at: str) -> dict[str, Any]:
    if not data.get("externalId") or not data.get("url"):
        raise ValueError("link-issue requires 'externalId' and 'url'")
    patch: dict[str, Any] = {"externalId": data["externalId"], "url": data["url"]}
    for key in _LINK_FIELDS:
        if data.get(key) is not None:
            patch[key] = data[key]
    patch["syncedAt"] = synced_at
    patch["status"] = "synced"
    return patch


def _set_state(data: Mapping[str, Any], synced_at: str) -> dict[str, Any]:
    if data.get("state") is None:
        raise ValueError("set-state requires 'state'")
    return {"state": data["state"], "syncedAt": synced_at, "status": "synced"}


def _mark_error(data: Mapping[str, Any], synced_at: str) -> dict[str, Any]:
    return {
        "status": "error",
        "lastError": str(data.get("error") or data.get("lastError") or "unknown error"),
        "syncedAt": synced_at,
    }


OPERATIONS: dict[str, OperationBuilder] = {
    "link-issue": _link_issue,
    "set-state": _set_state,
    "mark-error": _mark_error,
}


def backup_path_for(document_path: Path, now: datetime) -> Path:
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return document_path.with_name(
        f"{document_path.name}.backup-{stamp}-{secrets.token_hex(4)}",
    )


def merge_integration(
    task: dict[str, Any],
    integration_name: str,
    patch: IntegrationPatch,
) -> dict[str, Any]:
    """Return a copy of ``task`` with ``patch`` merged into one integration record."""

    updated = copy.deepcopy(task)
    integrations = updated.get("integrations")
    if not isinstance(integrations, dict):
        integrations = {}
    current = integrations.get(integration_name)
    merged = dict(current) if isinstance(current, dict) else {}
    merged.update(patch)
    integrations[integration_name] = merged
    updated["integrations"] = integrations
    return updated


class DocumentMutator:
    """The only writer of the task store.

    Every call runs acquire lock, backup, read, locate, apply, write temp,
    rename, remove backup. A failure after the backup exists copies it back
    over the document before the error propagates.
    """

    def __init__(
        self,
        *,
        integration_name: str = DEFAULT_INTEGRATION_NAME,
        lock_settings: LockSettings | None = None,
        current_tag: str | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.integration_name = integration_name
        self.lock_settings = lock_settings or LockSettings()
        self.current_tag = current_tag
        self._sleep = sleep

    def _lock(self, document_path: Path, operation: str) -> DocumentLock:
        settings = self.lock_settings
        return DocumentLock(
            document_path,
            operation=operation,
            stale_after_seconds=settings.stale_after_seconds,
            max_attempts=settings.max_attempts,
            retry_delay_seconds=settings.retry_delay_seconds,
            max_hold_seconds=settings.max_hold_seconds,
            sleep=self._sleep,
        )

    async def apply_operation(
        self,
        document_path: Path,
        task_id: object,
        operation: str,
        update_data: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Apply a named integration update; unknown names raise ``ValueError`` up front."""

        builder = OPERATIONS.get(operation)
        if builder is None:
            raise ValueError(
                f"Unknown operation: {operation!r}. Known operations: {', '.join(OPERATIONS)}",
            )

        def _update(_task: dict[str, Any]) -> IntegrationPatch:
            return builder(update_data, datetime.now(tz=UTC).isoformat())

        return await self.mutate(document_path, task_id, _update, operation=operation)

    async def mutate(
        self,
        document_path: Path,
        task_id: object,
        update_fn: UpdateFn,
        *,
        operation: str = "update",
    ) -> dict[str, Any]:
        """Merge ``update_fn(task)`` into the task's integration record and commit atomically."""

        async with self._lock(document_path, operation):
            # Synchronous on the loop: nothing else runs between backup and rename.
            return self._mutate_locked(document_path, task_id, update_fn, operation)

    def _mutate_locked(
        self,
        document_path: Path,
        task_id: object,
        update_fn: UpdateFn,
        operation: str,
    ) -> dict[str, Any]:
        backup_path = backup_path_for(document_path, datetime.now(tz=UTC))
        shutil.copy2(document_path, backup_path)
        temp_path: Path | None = None
        committed = False
        try:
            document = TaskDocument.parse(
                read_document(document_path),
                tag=self.current_tag,
                path=document_path,
            )
            index = document.find_index(task_id)
            updated = merge_integration(
                document.tasks[index],
                self.integration_name,
                update_fn(document.tasks[index]),
            )
            document.replace_task(index, updated)
            temp_path = write_temp_file(document_path, document.to_text())
            atomic_replace(temp_path, document_path)
            committed = True
        except Exception as exc:
            self._rollback(document_path, backup_path, exc)
            raise
        finally:
            _remove_quietly(temp_path)
            if committed:
                _remove_quietly(backup_path)

        logger.info(
            "Applied %s to task %s in %s",
            operation,
            task_id,
            document_path,
        )
        return updated

    def _rollback(self, document_path: Path, backup_path: Path, cause: Exception) -> None:
        try:
            shutil.copyfile(backup_path, document_path)
        except OSError as exc:
            logger.error(
                "Rollback of %s failed; manual recovery required from %s",
                document_path,
                backup_path,
            )
            raise RollbackFailedError(
                message=(
                    f"Rollback failed after error ({cause}); restore {document_path} "
                    f"manually from {backup_path}"
                ),
                code="rollback_failed",
                backup_path=str(backup_path),
                document_path=str(document_path),
            ) from exc
        logger.warning("Rolled back %s after error: %s", document_path, cause)
        _remove_quietly(backup_path)


def _remove_quietly(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove %s: %s", path, exc)
