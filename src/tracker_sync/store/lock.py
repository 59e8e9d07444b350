"""Cross-process lock file guarding one task store document."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from filelock import FileLock, Timeout

from tracker_sync.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_RETRY_DELAY_SECONDS = 0.02
DEFAULT_MAX_HOLD_SECONDS = 10.0


def lock_path_for(document_path: Path) -> Path:
    return document_path.with_name(f"{document_path.name}.lock")


def guard_path_for(document_path: Path, guard_dir: Path | None = None) -> Path:
    """Kernel lock file for a document, kept outside the document directory."""

    digest = hashlib.sha256(str(document_path.resolve()).encode("utf-8")).hexdigest()[:16]
    return (guard_dir or Path(tempfile.gettempdir())) / f"tracker-sync-{digest}.lock"


def pid_alive(pid: int) -> bool:
    """Signal-0 liveness check; a permission error still means the process exists."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass(slots=True, frozen=True)
class LockRecord:
    """Lock owner marker serialized into the lock file."""

    pid: int
    timestamp: datetime
    operation: str

    def to_text(self) -> str:
        return json.dumps(
            {
                "pid": self.pid,
                "timestamp": self.timestamp.isoformat(),
                "operation": self.operation,
            },
        )

    @classmethod
    def parse(cls, text: str) -> LockRecord | None:
        try:
            payload = json.loads(text)
            timestamp = datetime.fromisoformat(str(payload["timestamp"]))
            pid = int(payload["pid"])
        except (ValueError, KeyError, TypeError):
            return None
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return cls(pid=pid, timestamp=timestamp, operation=str(payload.get("operation", "")))


class DocumentLock:
    """Exclusive ``<document>.lock`` marker with stale reclamation and a hold timer.

    Use as ``async with DocumentLock(path, operation="..."):``. Acquisition
    retries with a linearly growing delay and raises ``LockTimeoutError`` once
    the attempt budget is spent.

    Each attempt first takes a non-blocking ``FileLock`` guard, so the kernel
    serializes marker creation and stale reclamation between processes and
    drops the guard when its owner dies. The JSON marker beside the document
    carries the owner pid, timestamp and operation for diagnostics and for
    writers that only honour the marker.
    """

    def __init__(  # noqa: PLR0913
        self,
        document_path: Path,
        *,
        operation: str,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_hold_seconds: float = DEFAULT_MAX_HOLD_SECONDS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
        is_pid_alive: Callable[[int], bool] = pid_alive,
        guard_dir: Path | None = None,
    ) -> None:
        self.document_path = document_path
        self.path = lock_path_for(document_path)
        self.guard_path = guard_path_for(document_path, guard_dir)
        self._guard = FileLock(str(self.guard_path))
        self.operation = operation
        self.stale_after_seconds = stale_after_seconds
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.max_hold_seconds = max_hold_seconds
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._is_pid_alive = is_pid_alive
        self._owned_text: str | None = None
        self._timer: asyncio.TimerHandle | None = None
        self.force_released = False

    @property
    def held(self) -> bool:
        return self._owned_text is not None

    async def __aenter__(self) -> DocumentLock:
        await self.acquire()
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        self.release()

    async def acquire(self) -> LockRecord:
        for attempt in range(1, self.max_attempts + 1):
            record = self._attempt()
            if record is not None:
                self._arm_safety_timer()
                logger.debug("Acquired lock %s on attempt %d", self.path, attempt)
                return record
            if attempt < self.max_attempts:
                await self._sleep(self.retry_delay_seconds * attempt)

        raise LockTimeoutError(
            message=(
                f"Could not acquire lock {self.path} after {self.max_attempts} attempts; "
                "another process is modifying the task store"
            ),
            code="lock_timeout",
            lock_path=str(self.path),
            attempts=self.max_attempts,
        )

    def release(self) -> None:
        """Remove the lock if this instance still owns it. Never raises."""

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._owned_text is None:
            return
        owned = self._owned_text
        self._owned_text = None
        try:
            self._remove_marker(owned)
        finally:
            self._release_guard()

    def _remove_marker(self, owned: str) -> None:
        try:
            current = self._read_text()
            if current is None:
                logger.warning("Lock %s vanished before release", self.path)
                return
            if current != owned:
                logger.warning("Lock %s was taken over by another owner; not removing", self.path)
                return
            self.path.unlink(missing_ok=True)
            logger.debug("Released lock %s", self.path)
        except OSError as exc:
            logger.warning("Failed to release lock %s: %s", self.path, exc)

    def _attempt(self) -> LockRecord | None:
        """One guarded attempt; the guard stays held only when a record is returned."""

        try:
            self._guard.acquire(blocking=False)
        except Timeout:
            logger.debug("Lock guard %s is held by another writer", self.guard_path)
            return None
        try:
            record = self._try_create()
            if record is None and self._reclaim_if_stale():
                record = self._try_create()
        except BaseException:
            self._release_guard()
            raise
        if record is None:
            self._release_guard()
        return record

    def _release_guard(self) -> None:
        try:
            self._guard.release()
        except OSError as exc:
            logger.warning("Failed to release lock guard %s: %s", self.guard_path, exc)

    def _try_create(self) -> LockRecord | None:
        record = LockRecord(pid=os.getpid(), timestamp=self._clock(), operation=self.operation)
        text = record.to_text()
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError:
            self.path.unlink(missing_ok=True)
            raise
        self._owned_text = text
        return record

    def _read_text(self) -> str | None:
        try:
            return self.path.read_text("utf-8")
        except FileNotFoundError:
            return None

    def _is_stale(self, text: str) -> bool:
        record = LockRecord.parse(text)
        if record is None:
            try:
                modified = datetime.fromtimestamp(self.path.stat().st_mtime, tz=UTC)
            except FileNotFoundError:
                return False
            return (self._clock() - modified).total_seconds() > self.stale_after_seconds
        age = (self._clock() - record.timestamp).total_seconds()
        return age > self.stale_after_seconds or not self._is_pid_alive(record.pid)

    def _reclaim_if_stale(self) -> bool:
        """Delete a stale lock, re-reading it first so a fresh owner is never evicted."""

        observed = self._read_text()
        if observed is None:
            return True
        if not self._is_stale(observed):
            return False
        confirmed = self._read_text()
        if confirmed != observed or confirmed is None or not self._is_stale(confirmed):
            logger.debug("Lock %s changed owner during stale check", self.path)
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return True
        record = LockRecord.parse(observed)
        logger.warning(
            "Removed stale lock %s (pid %s, operation %s)",
            self.path,
            record.pid if record else "?",
            record.operation if record else "?",
        )
        return True

    def _arm_safety_timer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self.max_hold_seconds, self._force_release)

    def _force_release(self) -> None:
        self._timer = None
        if self._owned_text is None:
            return
        logger.error(
            "Lock %s held longer than %.1fs; force-releasing",
            self.path,
            self.max_hold_seconds,
        )
        self.force_released = True
        self.release()
