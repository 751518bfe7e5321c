"""Data models for platform connectors (no DB dependency)."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")


class EventType(str, Enum):
    PULL_REQUEST = "pull_request"
    ISSUE = "issue"
    COMMIT = "commit"
    MESSAGE = "message"
    THREAD = "thread"
    REACTION = "reaction"
    FILE_CHANGE = "file_change"
    DISCUSSION = "discussion"


@dataclass
class AuthResult:
    """Outcome of a successful ``authenticate`` call.

    Transient: callers must not persist it verbatim. The token is kept out
    of ``repr`` so it never lands in a log line.
    """

    access_token: str = field(repr=False)
    user_id: str
    user_login: str
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    refresh_token: str | None = field(default=None, repr=False)


@dataclass
class PlatformEvent:
    """Raw activity unit produced by ``fetch_events``."""

    id: str
    type: EventType
    timestamp: datetime
    author: str
    content: str
    platform: str
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    references: list[str] = field(default_factory=list)


@dataclass
class NormalizedEvent:
    """Canonical, platform-agnostic event handed to the context processor."""

    platform_id: str
    event_type: EventType
    timestamp: datetime
    author: str
    content: str
    platform: str
    title: str = ""
    thread_id: str | None = None
    parent_id: str | None = None
    file_refs: list[str] = field(default_factory=list)
    feature_refs: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    state: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitInfo:
    requests_per_hour: int
    requests_per_minute: int
    burst_limit: int
    backoff_strategy: str = "exponential"
    retry_after_header: str = "Retry-After"


@dataclass(frozen=True)
class PlatformInfo:
    """Static capability descriptor of one connector variant."""

    name: str
    display_name: str
    version: str
    description: str
    supported_events: tuple[EventType, ...]
    rate_limits: RateLimitInfo
    auth_type: str
    required_scopes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "version": self.version,
            "description": self.description,
            "supported_events": [e.value for e in self.supported_events],
            "rate_limits": {
                "requests_per_hour": self.rate_limits.requests_per_hour,
                "requests_per_minute": self.rate_limits.requests_per_minute,
                "burst_limit": self.rate_limits.burst_limit,
                "backoff_strategy": self.rate_limits.backoff_strategy,
                "retry_after_header": self.rate_limits.retry_after_header,
            },
            "auth_type": self.auth_type,
            "required_scopes": list(self.required_scopes),
        }


@dataclass
class RateLimiterState:
    tokens: float
    last_refill: float
    failure_count: int


def max_timestamp(events: list[NormalizedEvent]) -> datetime | None:
    """Latest timestamp in *events*, or None for an empty batch."""
    if not events:
        return None
    return max(ev.timestamp for ev in events)


class EventBatch(list[PlatformEvent]):
    """The events of one ``fetch_events`` call.

    ``horizon`` is set when a stream had more events after ``since`` than
    its cap. Everything older than the horizon was delivered; events at or
    after it may not have been, so a checkpoint must not move past it.
    """

    def __init__(
        self, events: Iterable[PlatformEvent] = (), horizon: datetime | None = None
    ) -> None:
        super().__init__(events)
        self.horizon = horizon

    def merge(self, other: EventBatch) -> None:
        self.extend(other)
        if other.horizon is not None and (self.horizon is None or other.horizon < self.horizon):
            self.horizon = other.horizon


def oldest_window(
    found: list[tuple[datetime, T]], cap: int
) -> tuple[list[tuple[datetime, T]], datetime | None]:
    """Keep the *cap* oldest entries of *found*, in their original order.

    Returns the kept entries and, when some were cut, the newest kept
    timestamp as the stream's horizon.
    """
    if len(found) <= cap:
        return found, None
    if cap <= 0:
        return [], min(ts for ts, _ in found)
    ranked = sorted(range(len(found)), key=lambda i: found[i][0])[:cap]
    return [found[i] for i in sorted(ranked)], found[ranked[-1]][0]
