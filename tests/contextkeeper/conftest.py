"""Shared fixtures for contextkeeper tests.

Database-backed tests run against a throwaway SQLite file per test
(``sqlite+aiosqlite``), so no external services are needed.
"""

import logging
from typing import Any

import pytest
import pytest_asyncio
import structlog

from contextkeeper.connectors.config import (
    DISCORD,
    GITHUB,
    SLACK,
    AuthConfig,
    ConnectorConfig,
    RateLimitConfig,
    SyncConfig,
)
from contextkeeper.core.database import create_all, create_engine, create_session_factory
from contextkeeper.dao.knowledge_entity_dao import KnowledgeEntityDAO
from contextkeeper.dao.knowledge_relationship_dao import KnowledgeRelationshipDAO
from contextkeeper.services.knowledge_graph_service import KnowledgeGraphService

# Generous limits so tests never block on the token bucket.
FAST_LIMITS = RateLimitConfig(
    requests_per_hour=100_000,
    requests_per_minute=100_000,
    burst_limit=10_000,
    backoff_multiplier=2.0,
    max_retries=3,
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    """Session with an open transaction, committed at teardown."""
    async with session_factory() as sess:
        async with sess.begin():
            yield sess


@pytest.fixture
def graph():
    return KnowledgeGraphService(KnowledgeEntityDAO(), KnowledgeRelationshipDAO())


def _github_config(**metadata: Any) -> ConnectorConfig:
    meta = {"access_token": "ghp_test", "owner": "acme", "repo": "widgets", **metadata}
    return ConnectorConfig(
        platform=GITHUB,
        auth_config=AuthConfig(
            client_id="cid",
            client_secret="secret",
            scopes=["repo", "read:user"],
            metadata=meta,
        ),
        rate_limit=FAST_LIMITS,
    )


def _slack_config(**metadata: Any) -> ConnectorConfig:
    return ConnectorConfig(
        platform=SLACK,
        auth_config=AuthConfig(metadata={"bot_token": "xoxb-test"}),
        rate_limit=FAST_LIMITS,
        sync_config=SyncConfig(batch_size=50),
        metadata={"channels": ["C1"], "thread_depth": 10, **metadata},
    )


def _discord_config(**metadata: Any) -> ConnectorConfig:
    return ConnectorConfig(
        platform=DISCORD,
        auth_config=AuthConfig(metadata={"bot_token": "discord-token"}),
        rate_limit=FAST_LIMITS,
        sync_config=SyncConfig(batch_size=50),
        metadata={"channel_ids": ["100"], "thread_depth": 10, **metadata},
    )


@pytest.fixture
def github_config():
    """Builder for a valid GitHub config; keyword arguments override metadata."""
    return _github_config


@pytest.fixture
def slack_config():
    return _slack_config


@pytest.fixture
def discord_config():
    return _discord_config


@pytest.fixture
def reset_logging():
    """Undo ``setup_logging`` so later tests never write to a closed capture stream."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    structlog.reset_defaults()
