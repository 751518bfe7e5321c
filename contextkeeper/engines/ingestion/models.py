"""Data models for the ingestion engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    PERSISTING = "persisting"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class SyncResult:
    """Summary of one sync cycle for a (project, platform) pair."""

    project_id: str
    platform: str
    state: SyncState = SyncState.IDLE
    since: datetime | None = None
    previous_checkpoint: datetime | None = None
    checkpoint: datetime | None = None
    fetched: int = 0
    persisted: int = 0
    failed_events: int = 0
    entities_written: int = 0
    relationships_written: int = 0
    relationships_skipped: int = 0
    retry_after: timedelta | None = None
    error: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is SyncState.IDLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "platform": self.platform,
            "state": self.state.value,
            "since": _iso(self.since),
            "previous_checkpoint": _iso(self.previous_checkpoint),
            "checkpoint": _iso(self.checkpoint),
            "fetched": self.fetched,
            "persisted": self.persisted,
            "failed_events": self.failed_events,
            "entities_written": self.entities_written,
            "relationships_written": self.relationships_written,
            "relationships_skipped": self.relationships_skipped,
            "retry_after": self.retry_after.total_seconds() if self.retry_after else None,
            "error": self.error,
        }


@dataclass
class IntegrationHealth:
    project_id: str
    platform: str
    status: str  # healthy | degraded | failed | inactive
    sync_status: str = "idle"
    running: bool = False
    last_synced_at: datetime | None = None
    last_run_at: datetime | None = None
    error_count: int = 0
    last_error: str | None = None
    total_events_processed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "platform": self.platform,
            "status": self.status,
            "sync_status": self.sync_status,
            "running": self.running,
            "last_synced_at": _iso(self.last_synced_at),
            "last_run_at": _iso(self.last_run_at),
            "error_count": self.error_count,
            "last_error": self.last_error,
            "total_events_processed": self.total_events_processed,
        }


@dataclass
class ProjectHealth:
    project_id: str
    overall_status: str  # healthy | degraded | partial | failed
    active_integrations: int = 0
    healthy_integrations: int = 0
    failed_integrations: int = 0
    last_synced_at: datetime | None = None
    integrations: list[IntegrationHealth] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "overall_status": self.overall_status,
            "active_integrations": self.active_integrations,
            "healthy_integrations": self.healthy_integrations,
            "failed_integrations": self.failed_integrations,
            "last_synced_at": _iso(self.last_synced_at),
            "integrations": [i.to_dict() for i in self.integrations],
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
