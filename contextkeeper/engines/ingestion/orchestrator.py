"""IngestionOrchestrator — checkpointed sync cycles from connectors into the graph.

One cycle for a (project, platform) pair:

1. Read the checkpoint (epoch zero, or ``now - max_lookback``, when absent)
2. ``fetch_events(since, batch_size)``; a retryable error leaves the
   checkpoint untouched and asks for a retry, a non-retryable one disables
   the pair until :meth:`IngestionOrchestrator.enable`
3. ``normalize_data`` then, per event, context processor → graph upserts
   (one transaction per event; a failing event is logged and skipped)
4. Advance the checkpoint to the batch's latest timestamp, held back to
   the batch horizon when a connector had to cut a stream at its cap
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextkeeper.connectors.base import PlatformConnector
from contextkeeper.connectors.config import SyncConfig
from contextkeeper.connectors.errors import ConnectorError, classify_error
from contextkeeper.connectors.models import NormalizedEvent, max_timestamp
from contextkeeper.connectors.registry import ConnectorManager, ConnectorNotAvailableError
from contextkeeper.core.database import utcnow
from contextkeeper.dao.sync_checkpoint_dao import SyncCheckpointDAO
from contextkeeper.engines.context_processor.processor import ContextProcessor
from contextkeeper.engines.ingestion.models import (
    IntegrationHealth,
    ProjectHealth,
    SyncResult,
    SyncState,
)
from contextkeeper.models.sync_checkpoint import SyncCheckpoint
from contextkeeper.scheduler import Scheduler, SyncLoop
from contextkeeper.services import ReferentialIntegrityError
from contextkeeper.services.knowledge_graph_service import KnowledgeGraphService, NaturalKey

log = structlog.get_logger("contextkeeper.ingestion")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_MAX_CONCURRENCY = 5
_DEFAULT_RETRY_DELAY = timedelta(minutes=1)
_DEFAULT_INTERVAL = timedelta(minutes=5)


class IngestionOrchestrator:
    """Runs sync cycles per (project, platform) with bounded concurrency."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        manager: ConnectorManager,
        processor: ContextProcessor,
        store: KnowledgeGraphService,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        *,
        checkpoint_dao: SyncCheckpointDAO | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self._session_factory = session_factory
        self._manager = manager
        self._processor = processor
        self._store = store
        self._checkpoint_dao = checkpoint_dao or SyncCheckpointDAO()
        self._scheduler = scheduler or Scheduler()
        self._sem = asyncio.Semaphore(max_concurrency)
        self._pair_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._pair_locks_guard = threading.Lock()

    # ── cycles ────────────────────────────────────────────────────────────

    async def run_cycle(self, project_id: str, platform: str) -> SyncResult:
        """Run one sync cycle; cycles of the same pair never overlap.

        Raises :class:`ConnectorNotAvailableError` if *platform* has no live
        connector. Cancellation propagates and leaves the checkpoint as it was.
        """
        connector = self._manager.get_connector(platform)
        async with self._sem:
            async with self._pair_lock(project_id, platform):
                return await self._run_cycle(project_id, platform, connector)

    async def sync_project(
        self, project_id: str, platforms: list[str] | None = None
    ) -> list[SyncResult]:
        """One cycle for each platform (all live connectors when omitted), concurrently."""
        targets = platforms or sorted(self._manager.get_all_connectors())

        async def _run_one(platform: str) -> SyncResult:
            try:
                return await self.run_cycle(project_id, platform)
            except ConnectorNotAvailableError as exc:
                log.warning("ingestion.connector_missing", project=project_id, platform=platform)
                return SyncResult(
                    project_id=project_id,
                    platform=platform,
                    state=SyncState.FAILED,
                    error=str(exc),
                )

        return list(await asyncio.gather(*(_run_one(p) for p in targets)))

    async def _run_cycle(
        self, project_id: str, platform: str, connector: PlatformConnector
    ) -> SyncResult:
        result = SyncResult(project_id=project_id, platform=platform)
        sync_config = self._sync_config(platform)
        now = utcnow()

        async with self._session_factory() as session:
            async with session.begin():
                checkpoint = await self._checkpoint_dao.get(session, project_id, platform)
                last_synced = checkpoint.last_synced_at if checkpoint else None
                disabled = checkpoint is not None and checkpoint.status == "disabled"
                last_error = checkpoint.last_error if checkpoint else None

        result.previous_checkpoint = last_synced
        result.checkpoint = last_synced
        if disabled:
            result.state = SyncState.DISABLED
            result.error = last_error
            return result

        # 1. fetch
        since = _since(last_synced, sync_config, now)
        result.since = since
        result.state = SyncState.FETCHING
        try:
            events = await connector.fetch_events(since, sync_config.batch_size)
        except ConnectorError as err:
            return await self._fetch_failed(result, connector, err)
        except Exception as exc:
            return await self._fetch_failed(result, connector, _classify(connector, platform, exc))
        result.fetched = len(events)
        limiter = getattr(connector, "rate_limiter", None)
        if limiter is not None:
            limiter.reset_backoff()

        # 2. normalize
        result.state = SyncState.NORMALIZING
        normalized = connector.normalize_data(events)

        # 3. persist, one transaction per event
        result.state = SyncState.PERSISTING
        for event in normalized:
            try:
                await self._persist_event(project_id, event, result)
            except Exception as exc:
                log.exception(
                    "ingestion.event_failed",
                    project=project_id,
                    platform=platform,
                    event_id=event.platform_id,
                )
                result.failed_events += 1
                result.errors.append(f"{event.platform_id}: {exc}")
                continue
            result.persisted += 1

        # 4. checkpoint, only after the whole batch and never past a cut-off stream
        latest = max_timestamp(normalized)
        horizon = getattr(events, "horizon", None)
        if latest is not None and horizon is not None and horizon < latest:
            log.info(
                "ingestion.checkpoint_held",
                project=project_id,
                platform=platform,
                latest=latest.isoformat(),
                horizon=horizon.isoformat(),
            )
            latest = horizon
        if latest is not None and (last_synced is None or latest > last_synced):
            result.checkpoint = latest

        async with self._session_factory() as session:
            async with session.begin():
                cp = await self._checkpoint_dao.get_for_update(session, project_id, platform)
                cp.last_synced_at = result.checkpoint
                cp.status = "idle"
                cp.last_run_at = now
                cp.last_batch_size = result.fetched
                cp.total_events_processed += result.persisted
                if result.failed_events:
                    cp.error_count += result.failed_events
                    cp.last_error = result.errors[-1]
                else:
                    cp.error_count = 0
                    cp.last_error = None

        mark_synced = getattr(connector, "mark_synced", None)
        if mark_synced is not None and result.checkpoint is not None:
            mark_synced(result.checkpoint)

        result.state = SyncState.IDLE
        log.info(
            "ingestion.cycle_done",
            project=project_id,
            platform=platform,
            fetched=result.fetched,
            persisted=result.persisted,
            failed=result.failed_events,
            checkpoint=result.checkpoint.isoformat() if result.checkpoint else None,
        )
        return result

    async def _persist_event(
        self, project_id: str, event: NormalizedEvent, result: SyncResult
    ) -> None:
        extraction = await self._processor.process(project_id, event)
        async with self._session_factory() as session:
            async with session.begin():
                for draft in extraction.entities:
                    await self._store.upsert_entity(
                        session,
                        project_id,
                        NaturalKey(draft.platform, draft.platform_id, draft.entity_type),
                        title=draft.title,
                        content=draft.content,
                        participants=draft.participants,
                        attributes=draft.attributes,
                        source_event_id=event.platform_id,
                        observed_at=event.timestamp,
                    )
                    result.entities_written += 1
                for rel in extraction.relationships:
                    try:
                        await self._store.upsert_relationship(
                            session,
                            project_id,
                            NaturalKey(**rel.source.model_dump()),
                            NaturalKey(**rel.target.model_dump()),
                            rel.relationship_type,
                            strength=rel.strength,
                            attributes=rel.attributes,
                        )
                    except ReferentialIntegrityError as exc:
                        log.info(
                            "ingestion.relationship_skipped",
                            project=project_id,
                            event_id=event.platform_id,
                            reason=str(exc),
                        )
                        result.relationships_skipped += 1
                        continue
                    result.relationships_written += 1

    async def _fetch_failed(
        self, result: SyncResult, connector: PlatformConnector, err: ConnectorError
    ) -> SyncResult:
        result.error = err.message
        result.errors.append(err.message)
        if err.retryable:
            result.state = SyncState.FAILED
            result.retry_after = _retry_delay(connector, err)
            status = "failed"
            log.warning(
                "ingestion.fetch_failed",
                project=result.project_id,
                platform=result.platform,
                code=err.code.value,
                retry_after=result.retry_after.total_seconds(),
                error=err.message,
            )
        else:
            result.state = SyncState.DISABLED
            status = "disabled"
            log.error(
                "ingestion.disabled",
                project=result.project_id,
                platform=result.platform,
                code=err.code.value,
                error=err.message,
            )

        async with self._session_factory() as session:
            async with session.begin():
                cp = await self._checkpoint_dao.get_for_update(
                    session, result.project_id, result.platform
                )
                cp.status = status
                cp.error_count += 1
                cp.last_error = f"{err.code.value}: {err.message}"
                cp.last_run_at = utcnow()
        return result

    # ── lifecycle ─────────────────────────────────────────────────────────

    def start_integration(self, project_id: str, platform: str) -> bool:
        """Start the recurring loop for one pair; False if already running.

        Must be called from within a running event loop.
        """
        connector = self._manager.get_connector(platform)
        interval = connector.schedule_sync(None) or _DEFAULT_INTERVAL

        async def _cycle() -> timedelta | None:
            try:
                result = await self.run_cycle(project_id, platform)
            except ConnectorNotAvailableError:
                log.warning("ingestion.connector_gone", project=project_id, platform=platform)
                return None
            if result.state is SyncState.DISABLED:
                return None
            if result.state is SyncState.FAILED:
                return result.retry_after or _DEFAULT_RETRY_DELAY
            return self._manager.get_connector(platform).schedule_sync(result.checkpoint)

        loop = SyncLoop(_loop_name(project_id, platform), _cycle, interval.total_seconds())
        return self._scheduler.add(loop)

    def start_project(self, project_id: str, platforms: list[str] | None = None) -> list[str]:
        """Start loops for *platforms*, or every live connector; returns those started."""
        started = []
        for platform in platforms or sorted(self._manager.get_all_connectors()):
            try:
                if self.start_integration(project_id, platform):
                    started.append(platform)
            except ConnectorNotAvailableError:
                log.warning("ingestion.connector_missing", project=project_id, platform=platform)
        log.info("ingestion.project_started", project=project_id, platforms=started)
        return started

    async def stop_integration(self, project_id: str, platform: str) -> bool:
        return await self._scheduler.remove(_loop_name(project_id, platform))

    async def stop_project(self, project_id: str) -> int:
        prefix = _loop_name(project_id, "")
        stopped = 0
        for name in self._scheduler.names():
            if name.startswith(prefix) and await self._scheduler.remove(name):
                stopped += 1
        log.info("ingestion.project_stopped", project=project_id, stopped=stopped)
        return stopped

    def is_running(self, project_id: str, platform: str) -> bool:
        return self._scheduler.is_running(_loop_name(project_id, platform))

    async def enable(self, project_id: str, platform: str) -> None:
        """Clear a disabled/failed status, typically after reconfiguration."""
        async with self._session_factory() as session:
            async with session.begin():
                await self._checkpoint_dao.update_fields(
                    session, project_id, platform, status="idle", error_count=0, last_error=None
                )
        log.info("ingestion.enabled", project=project_id, platform=platform)

    async def retry_failed(self, project_id: str) -> list[SyncResult]:
        """Immediately rerun every pair of *project_id* whose last fetch failed."""
        async with self._session_factory() as session:
            async with session.begin():
                checkpoints = await self._checkpoint_dao.list_by_project(session, project_id)
        failed = [cp.platform for cp in checkpoints if cp.status == "failed"]
        if not failed:
            return []
        return await self.sync_project(project_id, failed)

    async def shutdown(self) -> None:
        """Cancel every running loop; in-flight cycles abort before checkpointing."""
        await self._scheduler.stop()
        log.info("ingestion.shutdown")

    # ── health ────────────────────────────────────────────────────────────

    async def get_integration_health(self, project_id: str, platform: str) -> IntegrationHealth:
        async with self._session_factory() as session:
            async with session.begin():
                checkpoint = await self._checkpoint_dao.get(session, project_id, platform)
        return self._health(project_id, platform, checkpoint)

    async def get_project_health(self, project_id: str) -> ProjectHealth:
        """Roll up integration health.

        ``degraded`` if any integration failed (``failed`` if all did),
        ``healthy`` if every active one is healthy, else ``partial``.
        """
        async with self._session_factory() as session:
            async with session.begin():
                checkpoints = await self._checkpoint_dao.list_by_project(session, project_id)

        by_platform: dict[str, SyncCheckpoint | None] = {cp.platform: cp for cp in checkpoints}
        prefix = _loop_name(project_id, "")
        for name in self._scheduler.names():
            if name.startswith(prefix):
                by_platform.setdefault(name[len(prefix):], None)

        health = ProjectHealth(project_id=project_id, overall_status="healthy")
        for platform in sorted(by_platform):
            item = self._health(project_id, platform, by_platform[platform])
            health.integrations.append(item)
            if item.status in ("healthy", "degraded"):
                health.active_integrations += 1
            if item.status == "healthy":
                health.healthy_integrations += 1
            elif item.status == "failed":
                health.failed_integrations += 1
            if item.last_synced_at is not None and (
                health.last_synced_at is None or item.last_synced_at > health.last_synced_at
            ):
                health.last_synced_at = item.last_synced_at

        if health.failed_integrations:
            health.overall_status = "failed" if health.active_integrations == 0 else "degraded"
        elif health.healthy_integrations == health.active_integrations:
            health.overall_status = "healthy"
        else:
            health.overall_status = "partial"
        return health

    def _health(
        self, project_id: str, platform: str, checkpoint: SyncCheckpoint | None
    ) -> IntegrationHealth:
        running = self.is_running(project_id, platform)
        if checkpoint is None:
            return IntegrationHealth(
                project_id=project_id,
                platform=platform,
                status="healthy" if running else "inactive",
                running=running,
            )
        if checkpoint.status == "disabled":
            status = "failed"
        elif checkpoint.status == "failed" or checkpoint.error_count > 0:
            status = "degraded"
        else:
            status = "healthy"
        return IntegrationHealth(
            project_id=project_id,
            platform=platform,
            status=status,
            sync_status=checkpoint.status,
            running=running,
            last_synced_at=checkpoint.last_synced_at,
            last_run_at=checkpoint.last_run_at,
            error_count=checkpoint.error_count,
            last_error=checkpoint.last_error,
            total_events_processed=checkpoint.total_events_processed,
        )

    # ── internal ──────────────────────────────────────────────────────────

    def _sync_config(self, platform: str) -> SyncConfig:
        config = self._manager.registry.get_config(platform)
        return config.sync_config if config is not None else SyncConfig()

    def _pair_lock(self, project_id: str, platform: str) -> asyncio.Lock:
        with self._pair_locks_guard:
            lock = self._pair_locks.get((project_id, platform))
            if lock is None:
                lock = self._pair_locks[(project_id, platform)] = asyncio.Lock()
            return lock


def _loop_name(project_id: str, platform: str) -> str:
    return f"{project_id}:{platform}"


def _since(last_synced: datetime | None, sync_config: SyncConfig, now: datetime) -> datetime:
    floor = now - sync_config.max_lookback if sync_config.max_lookback else EPOCH
    if last_synced is None or not sync_config.incremental_sync:
        return floor
    return last_synced


def _classify(connector: PlatformConnector, platform: str, exc: Exception) -> ConnectorError:
    classify = getattr(connector, "classify", None)
    if classify is not None:
        return classify(exc)
    return classify_error(platform, exc, ())


def _retry_delay(connector: PlatformConnector, err: ConnectorError) -> timedelta:
    handler = getattr(connector, "handle_rate_limit_error", None)
    if handler is not None:
        return handler(err)
    return err.retry_after or _DEFAULT_RETRY_DELAY
