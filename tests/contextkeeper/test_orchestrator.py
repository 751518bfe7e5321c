"""Tests for IngestionOrchestrator with a fake connector and a SQLite graph."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from contextkeeper.connectors.config import ConnectorConfig, SyncConfig
from contextkeeper.connectors.errors import AuthError, ConnectorError, RateLimitError
from contextkeeper.connectors.github import GitHubConnector
from contextkeeper.connectors.models import (
    EventBatch,
    EventType,
    PlatformEvent,
    PlatformInfo,
    RateLimitInfo,
)
from contextkeeper.connectors.normalizer import EventNormalizer
from contextkeeper.connectors.rate_limiter import RateLimiter
from contextkeeper.connectors.registry import (
    ConnectorManager,
    ConnectorNotAvailableError,
    ConnectorRegistry,
)
from contextkeeper.dao.sync_checkpoint_dao import SyncCheckpointDAO
from contextkeeper.engines.context_processor import RuleBasedContextProcessor
from contextkeeper.engines.ingestion import IngestionOrchestrator, SyncState
from contextkeeper.engines.ingestion.orchestrator import EPOCH

P = "proj-a"
T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _events() -> list[PlatformEvent]:
    return [
        PlatformEvent(
            id="pr-1",
            type=EventType.PULL_REQUEST,
            timestamp=T0 + timedelta(hours=1),
            author="alice",
            title="Add session cache",
            content="We decided to use Redis because it is fast",
            platform="fake",
            references=["cache/redis.go"],
        ),
        PlatformEvent(
            id="issue-2",
            type=EventType.ISSUE,
            timestamp=T0 + timedelta(hours=2),
            author="bob",
            title="Cache misses on login",
            content="see api/auth.go",
            platform="fake",
        ),
        PlatformEvent(
            id="commit-3",
            type=EventType.COMMIT,
            timestamp=T0 + timedelta(hours=3),
            author="alice",
            title="Tune TTL",
            content="Tune TTL",
            platform="fake",
            references=["cache/redis.go"],
        ),
    ]


class FakeConnector:
    """In-memory connector: filters a fixed event list by ``since``."""

    platform = "fake"

    def __init__(self, config: ConnectorConfig) -> None:
        self.config = config
        self.events = _events()
        self.horizon: datetime | None = None
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[datetime, int]] = []
        self.active = 0
        self.max_active = 0
        self.rate_limiter = RateLimiter(config.rate_limit)
        self.synced: list[datetime] = []
        self._normalizer = EventNormalizer("fake")

    async def authenticate(self, config):
        raise NotImplementedError

    async def fetch_events(self, since: datetime, limit: int) -> EventBatch:
        self.calls.append((since, limit))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            found = [e for e in self.events if e.timestamp >= since][:limit]
            return EventBatch(found, horizon=self.horizon)
        finally:
            self.active -= 1

    def normalize_data(self, events):
        return self._normalizer.normalize_all(events)

    def schedule_sync(self, last_sync=None) -> timedelta:
        return timedelta(seconds=60)

    def get_platform_info(self) -> PlatformInfo:
        return PlatformInfo(
            name="fake",
            display_name="Fake",
            version="0",
            description="test double",
            supported_events=(EventType.PULL_REQUEST,),
            rate_limits=RateLimitInfo(1, 1, 1),
            auth_type="none",
        )

    def mark_synced(self, when: datetime) -> None:
        self.synced.append(when)


class FlakyProcessor(RuleBasedContextProcessor):
    def __init__(self, fail_ids: set[str]) -> None:
        self.fail_ids = fail_ids

    async def process(self, project_id, event):
        if event.platform_id in self.fail_ids:
            raise RuntimeError(f"cannot process {event.platform_id}")
        return await super().process(project_id, event)


def _manager(sync_config: SyncConfig | None = None, platforms=("fake",)) -> ConnectorManager:
    registry = ConnectorRegistry()
    for name in platforms:
        registry.register(name, FakeConnector)
        registry.set_config(
            name,
            ConnectorConfig(platform=name, sync_config=sync_config or SyncConfig(batch_size=10)),
        )
    manager = ConnectorManager(registry)
    manager.initialize_connectors()
    return manager


@pytest.fixture
def manager():
    return _manager()


@pytest.fixture
def connector(manager) -> FakeConnector:
    return manager.get_connector("fake")


@pytest.fixture
def orchestrator(session_factory, manager, graph):
    return IngestionOrchestrator(session_factory, manager, RuleBasedContextProcessor(), graph)


async def _checkpoint(session_factory, platform="fake"):
    async with session_factory() as session:
        return await SyncCheckpointDAO().get(session, P, platform)


async def _entity_count(session_factory, graph) -> int:
    async with session_factory() as session:
        return await graph.count_entities(session, P)


# ── cycles ────────────────────────────────────────────────────────────────


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_first_cycle(self, orchestrator, connector, session_factory, graph):
        result = await orchestrator.run_cycle(P, "fake")

        assert result.state is SyncState.IDLE
        assert result.ok
        assert result.since == EPOCH
        assert (result.fetched, result.persisted, result.failed_events) == (3, 3, 0)
        assert result.checkpoint == T0 + timedelta(hours=3)
        assert result.entities_written > 0
        assert connector.calls == [(EPOCH, 10)]
        assert connector.synced == [T0 + timedelta(hours=3)]

        cp = await _checkpoint(session_factory)
        assert cp.last_synced_at == T0 + timedelta(hours=3)
        assert cp.status == "idle"
        assert cp.total_events_processed == 3
        assert cp.last_batch_size == 3

        async with session_factory() as session:
            hits = await graph.search_by_query(session, P, "redis", entity_types=["decision"])
            ctx = await graph.get_context_for_file(session, P, "cache/redis.go")
        assert [h.entity.platform_id for h in hits] == ["decision-pr-1"]
        assert ctx.entity is not None
        assert {r.entity.platform_id for r in ctx.related} >= {"pr-1", "commit-3", "alice"}

    @pytest.mark.asyncio
    async def test_repeated_cycles_are_idempotent(
        self, orchestrator, connector, session_factory, graph
    ):
        first = await orchestrator.run_cycle(P, "fake")
        count = await _entity_count(session_factory, graph)

        second = await orchestrator.run_cycle(P, "fake")

        assert second.since == first.checkpoint
        assert second.fetched == 1  # the boundary event is inclusive
        assert second.checkpoint == first.checkpoint
        assert await _entity_count(session_factory, graph) == count
        cp = await _checkpoint(session_factory)
        assert cp.last_synced_at == first.checkpoint

    @pytest.mark.asyncio
    async def test_horizon_holds_checkpoint(self, orchestrator, connector, session_factory):
        connector.horizon = T0 + timedelta(hours=1)

        result = await orchestrator.run_cycle(P, "fake")

        assert result.persisted == 3
        assert result.checkpoint == T0 + timedelta(hours=1)
        cp = await _checkpoint(session_factory)
        assert cp.last_synced_at == T0 + timedelta(hours=1)

        connector.horizon = None
        second = await orchestrator.run_cycle(P, "fake")
        assert second.since == T0 + timedelta(hours=1)
        assert second.checkpoint == T0 + timedelta(hours=3)

    @pytest.mark.asyncio
    async def test_checkpoint_never_moves_backwards(self, orchestrator, connector, session_factory):
        await orchestrator.run_cycle(P, "fake")
        connector.events = [
            PlatformEvent(
                id="late-1",
                type=EventType.MESSAGE,
                timestamp=T0 + timedelta(hours=3),
                author="carol",
                content="late arrival",
                platform="fake",
            )
        ]
        result = await orchestrator.run_cycle(P, "fake")
        assert result.checkpoint == T0 + timedelta(hours=3)

    @pytest.mark.asyncio
    async def test_empty_batch_keeps_checkpoint(self, orchestrator, connector, session_factory):
        connector.events = []
        result = await orchestrator.run_cycle(P, "fake")
        assert result.state is SyncState.IDLE
        assert result.checkpoint is None
        cp = await _checkpoint(session_factory)
        assert cp.last_synced_at is None
        assert cp.last_run_at is not None

    @pytest.mark.asyncio
    async def test_max_lookback_bounds_first_sync(self, session_factory, graph):
        manager = _manager(SyncConfig(batch_size=5, max_lookback=timedelta(days=1)))
        orchestrator = IngestionOrchestrator(
            session_factory, manager, RuleBasedContextProcessor(), graph
        )
        before = datetime.now(timezone.utc)

        result = await orchestrator.run_cycle(P, "fake")

        since, limit = manager.get_connector("fake").calls[0]
        assert limit == 5
        assert before - timedelta(days=1, seconds=5) <= since <= datetime.now(timezone.utc)
        assert result.fetched == 0

    @pytest.mark.asyncio
    async def test_non_incremental_always_uses_floor(self, session_factory, graph):
        manager = _manager(SyncConfig(batch_size=10, incremental_sync=False))
        orchestrator = IngestionOrchestrator(
            session_factory, manager, RuleBasedContextProcessor(), graph
        )
        await orchestrator.run_cycle(P, "fake")
        await orchestrator.run_cycle(P, "fake")
        assert [since for since, _ in manager.get_connector("fake").calls] == [EPOCH, EPOCH]

    @pytest.mark.asyncio
    async def test_unknown_platform(self, orchestrator):
        with pytest.raises(ConnectorNotAvailableError):
            await orchestrator.run_cycle(P, "jira")

    def test_invalid_concurrency(self, session_factory, manager, graph):
        with pytest.raises(ValueError):
            IngestionOrchestrator(
                session_factory, manager, RuleBasedContextProcessor(), graph, max_concurrency=0
            )


# ── failures ──────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_retryable_error_keeps_checkpoint(
        self, orchestrator, connector, session_factory
    ):
        first = await orchestrator.run_cycle(P, "fake")
        connector.error = RateLimitError("fake", "slow down", retry_after=timedelta(seconds=30))

        result = await orchestrator.run_cycle(P, "fake")

        assert result.state is SyncState.FAILED
        assert result.retry_after == timedelta(seconds=30)
        assert result.checkpoint == first.checkpoint
        cp = await _checkpoint(session_factory)
        assert cp.last_synced_at == first.checkpoint
        assert cp.status == "failed"
        assert cp.error_count == 1
        assert cp.last_error == "rate_limit: slow down"

    @pytest.mark.asyncio
    async def test_retry_without_hint_uses_default(self, orchestrator, connector):
        connector.error = ConnectorError("fake", "upstream 500")
        result = await orchestrator.run_cycle(P, "fake")
        assert result.state is SyncState.FAILED
        assert result.retry_after == timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_classified(self, orchestrator, connector):
        connector.error = RuntimeError("socket exploded")
        result = await orchestrator.run_cycle(P, "fake")
        assert result.state is SyncState.FAILED
        assert "socket exploded" in result.error

    @pytest.mark.asyncio
    async def test_success_after_failure_resets_errors(
        self, orchestrator, connector, session_factory
    ):
        connector.error = ConnectorError("fake", "flaky")
        await orchestrator.run_cycle(P, "fake")
        connector.error = None

        result = await orchestrator.run_cycle(P, "fake")

        assert result.state is SyncState.IDLE
        cp = await _checkpoint(session_factory)
        assert cp.status == "idle"
        assert cp.error_count == 0
        assert cp.last_error is None

    @pytest.mark.asyncio
    async def test_non_retryable_disables_until_enabled(
        self, orchestrator, connector, session_factory
    ):
        connector.error = AuthError("fake", "token revoked")

        result = await orchestrator.run_cycle(P, "fake")
        assert result.state is SyncState.DISABLED
        assert len(connector.calls) == 1

        again = await orchestrator.run_cycle(P, "fake")
        assert again.state is SyncState.DISABLED
        assert len(connector.calls) == 1  # no fetch while disabled
        assert (await _checkpoint(session_factory)).status == "disabled"

        connector.error = None
        await orchestrator.enable(P, "fake")
        resumed = await orchestrator.run_cycle(P, "fake")
        assert resumed.state is SyncState.IDLE
        assert resumed.persisted == 3

    @pytest.mark.asyncio
    async def test_event_failure_is_counted_and_checkpoint_advances(
        self, session_factory, manager, graph
    ):
        orchestrator = IngestionOrchestrator(
            session_factory, manager, FlakyProcessor({"commit-3"}), graph
        )

        result = await orchestrator.run_cycle(P, "fake")

        assert result.state is SyncState.IDLE
        assert (result.persisted, result.failed_events) == (2, 1)
        assert result.errors == ["commit-3: cannot process commit-3"]
        assert result.checkpoint == T0 + timedelta(hours=3)
        cp = await _checkpoint(session_factory)
        assert cp.error_count == 1
        assert cp.total_events_processed == 2
        assert cp.last_error.startswith("commit-3")

    @pytest.mark.asyncio
    async def test_cancellation_leaves_checkpoint(self, orchestrator, connector, session_factory):
        connector.gate = asyncio.Event()
        task = asyncio.create_task(orchestrator.run_cycle(P, "fake"))
        while not connector.calls:
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await _checkpoint(session_factory) is None

    @pytest.mark.asyncio
    async def test_dangling_reply_edge_is_skipped(self, orchestrator, connector):
        connector.events = [
            PlatformEvent(
                id="msg-9",
                type=EventType.MESSAGE,
                timestamp=T0,
                author="dana",
                content="replying to something we never saw",
                platform="fake",
                metadata={"thread_id": "t1", "parent_id": "msg-unknown"},
            )
        ]
        result = await orchestrator.run_cycle(P, "fake")
        assert result.persisted == 1
        assert result.relationships_skipped == 1


# ── concurrency ───────────────────────────────────────────────────────────


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_pair_never_overlaps(self, orchestrator, connector):
        connector.gate = asyncio.Event()
        tasks = [asyncio.create_task(orchestrator.run_cycle(P, "fake")) for _ in range(3)]
        while not connector.calls:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert connector.active == 1

        connector.gate.set()
        results = await asyncio.gather(*tasks)
        assert connector.max_active == 1
        assert all(r.state is SyncState.IDLE for r in results)

    @pytest.mark.asyncio
    async def test_sync_project_runs_all_platforms(self, session_factory, graph):
        manager = _manager(platforms=("fake", "fake2"))
        orchestrator = IngestionOrchestrator(
            session_factory, manager, RuleBasedContextProcessor(), graph, max_concurrency=2
        )

        results = await orchestrator.sync_project(P)

        assert sorted(r.platform for r in results) == ["fake", "fake2"]
        assert all(r.state is SyncState.IDLE for r in results)

    @pytest.mark.asyncio
    async def test_sync_project_reports_missing_connector(self, orchestrator):
        [result] = await orchestrator.sync_project(P, ["jira"])
        assert result.state is SyncState.FAILED
        assert "jira" in result.error

    @pytest.mark.asyncio
    async def test_retry_failed(self, orchestrator, connector):
        connector.error = ConnectorError("fake", "flaky")
        await orchestrator.run_cycle(P, "fake")
        connector.error = None

        results = await orchestrator.retry_failed(P)

        assert [r.state for r in results] == [SyncState.IDLE]
        assert await orchestrator.retry_failed(P) == []


# ── scheduling ────────────────────────────────────────────────────────────


class TestScheduling:
    @pytest.mark.asyncio
    async def test_start_and_stop_integration(self, orchestrator, connector):
        assert orchestrator.start_integration(P, "fake")
        assert not orchestrator.start_integration(P, "fake")
        try:
            while not connector.synced:
                await asyncio.sleep(0.01)
            assert orchestrator.is_running(P, "fake")
        finally:
            assert await orchestrator.stop_integration(P, "fake")
        assert not orchestrator.is_running(P, "fake")

    @pytest.mark.asyncio
    async def test_disabled_integration_loop_ends(self, orchestrator, connector):
        connector.error = AuthError("fake", "revoked")
        orchestrator.start_integration(P, "fake")
        for _ in range(100):
            if not orchestrator.is_running(P, "fake"):
                break
            await asyncio.sleep(0.01)
        assert not orchestrator.is_running(P, "fake")
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_start_and_stop_project(self, orchestrator, connector):
        assert orchestrator.start_project(P, ["fake", "jira"]) == ["fake"]
        while not connector.synced:
            await asyncio.sleep(0.01)
        assert await orchestrator.stop_project(P) == 1
        await orchestrator.shutdown()


# ── capped streams ────────────────────────────────────────────────────────


def _pull(n: int, updated: datetime) -> dict:
    stamp = updated.isoformat().replace("+00:00", "Z")
    return {
        "id": 5000 + n,
        "number": n,
        "title": f"Refactor module {n}",
        "body": "",
        "state": "open",
        "created_at": stamp,
        "updated_at": stamp,
        "user": {"login": "alice"},
    }


class TestCappedStreams:
    @pytest.mark.asyncio
    async def test_repeated_cycles_deliver_every_pull_request(
        self, session_factory, graph, github_config
    ):
        """60 PRs against a PR share of 10 per cycle: nothing is skipped."""
        pulls = [_pull(n, T0 + timedelta(minutes=n)) for n in reversed(range(60))]

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/repos/acme/widgets/pulls":
                return httpx.Response(200, json=pulls)
            return httpx.Response(200, json=[])

        config = github_config(include_files=False).model_copy(
            update={"sync_config": SyncConfig(batch_size=30)}
        )
        registry = ConnectorRegistry()
        registry.register(
            "github", lambda cfg: GitHubConnector(cfg, transport=httpx.MockTransport(handler))
        )
        registry.set_config("github", config)
        manager = ConnectorManager(registry)
        manager.initialize_connectors()
        orchestrator = IngestionOrchestrator(
            session_factory, manager, RuleBasedContextProcessor(), graph
        )

        checkpoints = []
        try:
            for _ in range(10):
                result = await orchestrator.run_cycle(P, "github")
                assert result.ok
                assert result.fetched <= 10
                if checkpoints and result.checkpoint == checkpoints[-1]:
                    break
                checkpoints.append(result.checkpoint)
        finally:
            await manager.shutdown()

        assert checkpoints == sorted(checkpoints)
        assert checkpoints[0] == T0 + timedelta(minutes=9)
        assert checkpoints[-1] == T0 + timedelta(minutes=59)
        async with session_factory() as session:
            assert await graph.count_entities(session, P, "discussion") == 60


# ── health ────────────────────────────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_unknown_integration_inactive(self, orchestrator):
        health = await orchestrator.get_integration_health(P, "fake")
        assert health.status == "inactive"
        assert not health.running

    @pytest.mark.asyncio
    async def test_healthy_after_success(self, orchestrator):
        await orchestrator.run_cycle(P, "fake")
        health = await orchestrator.get_project_health(P)
        assert health.overall_status == "healthy"
        assert (health.active_integrations, health.healthy_integrations) == (1, 1)
        assert health.last_synced_at == T0 + timedelta(hours=3)
        assert health.integrations[0].total_events_processed == 3

    @pytest.mark.asyncio
    async def test_degraded_after_retryable_failure(self, orchestrator, connector):
        connector.error = ConnectorError("fake", "flaky")
        await orchestrator.run_cycle(P, "fake")
        health = await orchestrator.get_project_health(P)
        assert health.integrations[0].status == "degraded"
        assert health.overall_status == "partial"

    @pytest.mark.asyncio
    async def test_rollup_with_failed_integration(self, session_factory, graph):
        manager = _manager(platforms=("fake", "fake2"))
        orchestrator = IngestionOrchestrator(
            session_factory, manager, RuleBasedContextProcessor(), graph
        )
        await orchestrator.run_cycle(P, "fake")
        manager.get_connector("fake2").error = AuthError("fake2", "revoked")
        await orchestrator.run_cycle(P, "fake2")

        health = await orchestrator.get_project_health(P)

        assert health.overall_status == "degraded"
        assert health.failed_integrations == 1
        statuses = {i.platform: i.status for i in health.integrations}
        assert statuses == {"fake": "healthy", "fake2": "failed"}

    @pytest.mark.asyncio
    async def test_all_failed(self, orchestrator, connector):
        connector.error = AuthError("fake", "revoked")
        await orchestrator.run_cycle(P, "fake")
        health = await orchestrator.get_project_health(P)
        assert health.overall_status == "failed"
        assert health.to_dict()["overall_status"] == "failed"
