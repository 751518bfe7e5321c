"""Platform connector interface and the shared base implementation."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import ClassVar, Protocol, runtime_checkable

import httpx
import structlog

from contextkeeper.connectors.config import AuthConfig, ConnectorConfig
from contextkeeper.connectors.errors import ConnectorError, ErrorRule, classify_error
from contextkeeper.connectors.http import PlatformClient
from contextkeeper.connectors.models import (
    AuthResult,
    NormalizedEvent,
    PlatformEvent,
    PlatformInfo,
)
from contextkeeper.connectors.normalizer import EventNormalizer
from contextkeeper.connectors.rate_limiter import RateLimiter

log = structlog.get_logger("contextkeeper.connectors")

CONNECTOR_OPERATIONS = (
    "authenticate",
    "fetch_events",
    "normalize_data",
    "schedule_sync",
    "get_platform_info",
)


@runtime_checkable
class PlatformConnector(Protocol):
    """The five operations every platform connector exposes."""

    async def authenticate(self, config: AuthConfig) -> AuthResult: ...

    # An EventBatch result carries a horizon the checkpoint must not pass.
    async def fetch_events(self, since: datetime, limit: int) -> list[PlatformEvent]: ...

    def normalize_data(self, events: list[PlatformEvent]) -> list[NormalizedEvent]: ...

    def schedule_sync(self, last_sync: datetime | None) -> timedelta: ...

    def get_platform_info(self) -> PlatformInfo: ...


class BaseConnector:
    """Shared plumbing: frozen config, one rate limiter, HTTP client, normalizer.

    Subclasses set the class attributes and implement ``authenticate``,
    ``fetch_events`` and ``get_platform_info``.
    """

    platform: ClassVar[str] = ""
    base_url: ClassVar[str] = ""
    default_sync_interval: ClassVar[timedelta] = timedelta(minutes=5)
    error_rules: ClassVar[tuple[ErrorRule, ...]] = ()

    def __init__(
        self,
        config: ConnectorConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._rate_limiter = RateLimiter(config.rate_limit)
        self._normalizer = EventNormalizer(self.platform)
        self._transport = transport
        self._last_sync: datetime | None = None
        self._lock = threading.Lock()
        self._client = PlatformClient(
            self.platform,
            str(config.setting("api_url") or self.base_url),
            headers=self._default_headers(),
            rate_limiter=self._rate_limiter,
            error_rules=self.error_rules,
            max_retries=config.rate_limit.max_retries,
            transport=transport,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> BaseConnector:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── properties ─────────────────────────────────────────────────────────

    @property
    def config(self) -> ConnectorConfig:
        return self._config

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def last_sync(self) -> datetime | None:
        with self._lock:
            return self._last_sync

    def mark_synced(self, when: datetime) -> None:
        with self._lock:
            if self._last_sync is None or when > self._last_sync:
                self._last_sync = when

    # ── shared operations ──────────────────────────────────────────────────

    def normalize_data(self, events: list[PlatformEvent]) -> list[NormalizedEvent]:
        return self._normalizer.normalize_all(events)

    def schedule_sync(self, last_sync: datetime | None = None) -> timedelta:
        return self._config.sync_config.sync_interval or self.default_sync_interval

    async def wait_for_rate_limit(self) -> None:
        await self._rate_limiter.wait()

    def handle_rate_limit_error(self, err: ConnectorError) -> timedelta:
        """Delay before retrying after *err*: its own hint, else limiter backoff."""
        delay = err.retry_after
        if delay is None:
            delay = self._rate_limiter.get_backoff_delay()
        log.info(
            "connector.retry_scheduled",
            platform=self.platform,
            code=err.code.value,
            delay=delay.total_seconds(),
        )
        return delay

    def classify(self, exc: BaseException) -> ConnectorError:
        return classify_error(self.platform, exc, self.error_rules)

    # ── hooks ──────────────────────────────────────────────────────────────

    def _default_headers(self) -> dict[str, str]:
        return {}

    def _client_for_token(self, headers: dict[str, str]) -> PlatformClient:
        """One-off client for validating credentials other than the configured ones."""
        return PlatformClient(
            self.platform,
            str(self._config.setting("api_url") or self.base_url),
            headers=headers,
            rate_limiter=self._rate_limiter,
            error_rules=self.error_rules,
            max_retries=1,
            transport=self._transport,
        )
