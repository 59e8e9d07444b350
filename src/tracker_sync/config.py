"""Runtime configuration for tracker sync."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class TrackerApiSettings:
    """External tracker connection settings."""

    api_url: str = "https://api.linear.app/graphql"
    api_key: str = ""
    team_id: str = ""
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class RetrySettings:
    """Retry executor backoff settings."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


@dataclass(slots=True)
class StateCacheSettings:
    """Workflow state cache and pagination settings."""

    ttl_seconds: float = 300.0
    max_entries: int = 50
    page_size: int = 100
    max_pages: int = 10


@dataclass(slots=True)
class LockSettings:
    """Task store lock acquisition settings."""

    stale_after_seconds: float = 30.0
    max_attempts: int = 10
    retry_delay_seconds: float = 0.02
    max_hold_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    tasks_path: Path = Path(".tracker-sync/tasks/tasks.json")
    config_path: Path = Path(".tracker-sync/config.json")
    current_tag: str | None = None
    integration_name: str = "tracker"
    log_level: str = "WARNING"
    api: TrackerApiSettings = field(default_factory=TrackerApiSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    state_cache: StateCacheSettings = field(default_factory=StateCacheSettings)
    lock: LockSettings = field(default_factory=LockSettings)

    @classmethod
    def from_env(cls, tasks_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            tasks_path=tasks_path
            or Path(os.getenv("TRACKER_SYNC_TASKS_PATH", ".tracker-sync/tasks/tasks.json")),
            config_path=Path(os.getenv("TRACKER_SYNC_CONFIG_PATH", ".tracker-sync/config.json")),
            current_tag=os.getenv("TRACKER_SYNC_CURRENT_TAG", "").strip() or None,
            integration_name=os.getenv("TRACKER_SYNC_INTEGRATION_NAME", "tracker").strip(),
            log_level=os.getenv("TRACKER_SYNC_LOG_LEVEL", "WARNING").strip().upper(),
            api=TrackerApiSettings(
                api_url=os.getenv("TRACKER_SYNC_API_URL", "https://api.linear.app/graphql"),
                api_key=os.getenv("TRACKER_SYNC_API_KEY", ""),
                team_id=os.getenv("TRACKER_SYNC_TEAM_ID", "").strip(),
                request_timeout_seconds=float(
                    os.getenv("TRACKER_SYNC_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("TRACKER_SYNC_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(
                    os.getenv("TRACKER_SYNC_RETRY_BASE_DELAY_SECONDS", "1.0"),
                ),
                max_delay_seconds=float(
                    os.getenv("TRACKER_SYNC_RETRY_MAX_DELAY_SECONDS", "30.0"),
                ),
            ),
            state_cache=StateCacheSettings(
                ttl_seconds=float(os.getenv("TRACKER_SYNC_STATES_CACHE_TTL_SECONDS", "300")),
                max_entries=int(os.getenv("TRACKER_SYNC_STATES_CACHE_MAX_ENTRIES", "50")),
                page_size=int(os.getenv("TRACKER_SYNC_STATES_PAGE_SIZE", "100")),
                max_pages=int(os.getenv("TRACKER_SYNC_STATES_MAX_PAGES", "10")),
            ),
            lock=LockSettings(
                stale_after_seconds=float(os.getenv("TRACKER_SYNC_LOCK_STALE_SECONDS", "30")),
                max_attempts=int(os.getenv("TRACKER_SYNC_LOCK_MAX_ATTEMPTS", "10")),
                retry_delay_seconds=float(
                    os.getenv("TRACKER_SYNC_LOCK_RETRY_DELAY_SECONDS", "0.02"),
                ),
                max_hold_seconds=float(os.getenv("TRACKER_SYNC_LOCK_MAX_HOLD_SECONDS", "10")),
            ),
        )

    def validate_for_sync(self, *, require_api: bool = True) -> None:
        """Raise configuration error if values are missing or out of range."""

        if require_api:
            if not self.api.api_key.strip():
                raise ValueError("TRACKER_SYNC_API_KEY is required for tracker access.")
            if not self.api.team_id:
                raise ValueError("TRACKER_SYNC_TEAM_ID is required for tracker access.")
            _validate_api_url(self.api.api_url)
        if not self.integration_name:
            raise ValueError("TRACKER_SYNC_INTEGRATION_NAME must be non-empty.")
        if self.api.request_timeout_seconds <= 0:
            raise ValueError("TRACKER_SYNC_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.retry.max_attempts < 1:
            raise ValueError("TRACKER_SYNC_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("TRACKER_SYNC_RETRY_*_DELAY_SECONDS must be >= 0.")
        if self.state_cache.ttl_seconds < 0:
            raise ValueError("TRACKER_SYNC_STATES_CACHE_TTL_SECONDS must be >= 0.")
        if self.state_cache.max_entries < 1:
            raise ValueError("TRACKER_SYNC_STATES_CACHE_MAX_ENTRIES must be >= 1.")
        if self.state_cache.page_size < 1 or self.state_cache.max_pages < 1:
            raise ValueError("TRACKER_SYNC_STATES_PAGE_SIZE and MAX_PAGES must be >= 1.")
        if self.lock.stale_after_seconds <= 0:
            raise ValueError("TRACKER_SYNC_LOCK_STALE_SECONDS must be > 0.")
        if self.lock.max_attempts < 1:
            raise ValueError("TRACKER_SYNC_LOCK_MAX_ATTEMPTS must be >= 1.")


def _validate_api_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid tracker API URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
