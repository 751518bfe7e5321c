"""CLI entry point: contextkeeper.

Subcommands:
    contextkeeper init-db                          # Create tables
    contextkeeper platforms                        # Describe configured connectors
    contextkeeper sync PROJECT [--platform P]      # One sync cycle per platform
    contextkeeper run PROJECT                      # Continuous ingestion
    contextkeeper search PROJECT QUERY             # Top-K entity search
    contextkeeper file-context PROJECT PATH        # History around one file
    contextkeeper decisions PROJECT TARGET         # Decisions about a file/feature/topic
    contextkeeper history PROJECT PLATFORM ID TYPE # Revisions of one entity
    contextkeeper health PROJECT                   # Sync health rollup
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import click
from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextkeeper.connectors.config import ConfigManager
from contextkeeper.connectors.registry import ConnectorManager, create_default_registry
from contextkeeper.core.database import create_all, create_engine, create_session_factory
from contextkeeper.core.logging import setup_logging
from contextkeeper.dao.knowledge_entity_dao import KnowledgeEntityDAO
from contextkeeper.dao.knowledge_relationship_dao import KnowledgeRelationshipDAO
from contextkeeper.engines.context_processor.processor import create_context_processor
from contextkeeper.engines.ingestion.orchestrator import IngestionOrchestrator
from contextkeeper.models.knowledge_entity import KnowledgeEntity
from contextkeeper.services import NotFoundError
from contextkeeper.services.knowledge_graph_service import KnowledgeGraphService, NaturalKey


def _env_int(key: str, default: int) -> int:
    return int(os.environ.get(key, default))


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _entity_dict(entity: KnowledgeEntity, **extra: Any) -> dict[str, Any]:
    data = {
        "id": str(entity.id),
        "entity_type": entity.entity_type,
        "platform": entity.platform,
        "platform_id": entity.platform_id,
        "title": entity.title,
        "content": entity.content,
        "participants": entity.participants,
        "attributes": entity.attributes,
        "version": entity.version,
        "observed_at": entity.observed_at.isoformat() if entity.observed_at else None,
        "updated_at": entity.updated_at.isoformat(),
    }
    data.update(extra)
    return data


def _graph_service() -> KnowledgeGraphService:
    return KnowledgeGraphService(KnowledgeEntityDAO(), KnowledgeRelationshipDAO())


@asynccontextmanager
async def _database(database_url: str | None) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_engine(database_url)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@asynccontextmanager
async def _connectors(config_path: str | None) -> AsyncIterator[ConnectorManager]:
    config_manager = ConfigManager(config_path)
    config_manager.load()
    manager = ConnectorManager(create_default_registry(config_manager))
    for platform, exc in manager.initialize_connectors().items():
        click.echo(f"{platform}: connector unavailable ({exc})", err=True)
    try:
        yield manager
    finally:
        await manager.shutdown()


@asynccontextmanager
async def _orchestrator(
    obj: dict[str, Any], *, connect: bool = True
) -> AsyncIterator[IngestionOrchestrator]:
    processor = create_context_processor()
    try:
        async with _database(obj["database_url"]) as session_factory:
            if connect:
                async with _connectors(obj["config_path"]) as manager:
                    yield IngestionOrchestrator(
                        session_factory,
                        manager,
                        processor,
                        _graph_service(),
                        max_concurrency=_env_int("CONTEXTKEEPER_MAX_WORKERS", 5),
                    )
            else:
                manager = ConnectorManager(create_default_registry())
                yield IngestionOrchestrator(session_factory, manager, processor, _graph_service())
    finally:
        close = getattr(processor, "close", None)
        if close is not None:
            await close()


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.option("--database-url", default=None, help="Database URL (CONTEXTKEEPER_DATABASE_URL)")
@click.option("--config", "config_path", default=None, help="Connector config JSON file")
@click.pass_context
def main(
    ctx: click.Context, verbose: bool, database_url: str | None, config_path: str | None
) -> None:
    """ContextKeeper: engineering-activity knowledge graph."""
    load_dotenv()
    setup_logging("DEBUG" if verbose else None)
    ctx.obj = {"database_url": database_url, "config_path": config_path}


@main.command("init-db")
@click.pass_obj
def init_db(obj: dict[str, Any]) -> None:
    """Create all tables."""

    async def _run() -> None:
        engine = create_engine(obj["database_url"])
        try:
            await create_all(engine)
        finally:
            await engine.dispose()

    asyncio.run(_run())
    click.echo("Tables created")


@main.command("platforms")
@click.pass_obj
def platforms(obj: dict[str, Any]) -> None:
    """Print capabilities of every registered platform."""

    async def _run() -> list[dict[str, Any]]:
        async with _connectors(obj["config_path"]) as manager:
            live = manager.get_all_connectors()
            rows = []
            for platform in manager.registry.list_platforms():
                connector = live.get(platform)
                if connector is None:
                    rows.append({"name": platform, "available": False})
                else:
                    rows.append({**connector.get_platform_info().to_dict(), "available": True})
            return rows

    _echo_json(asyncio.run(_run()))


@main.command("sync")
@click.argument("project")
@click.option("--platform", "platform_names", multiple=True, help="Limit to these platforms")
@click.pass_obj
def sync(obj: dict[str, Any], project: str, platform_names: tuple[str, ...]) -> None:
    """Run one ingestion cycle per platform and print the results."""

    async def _run() -> list[dict[str, Any]]:
        async with _orchestrator(obj) as orchestrator:
            results = await orchestrator.sync_project(project, list(platform_names) or None)
            return [r.to_dict() for r in results]

    results = asyncio.run(_run())
    _echo_json(results)
    if any(r["state"] != "idle" for r in results):
        sys.exit(1)


@main.command("run")
@click.argument("project")
@click.pass_obj
def run(obj: dict[str, Any], project: str) -> None:
    """Ingest continuously until interrupted."""

    async def _run() -> None:
        async with _orchestrator(obj) as orchestrator:
            started = orchestrator.start_project(project)
            if not started:
                click.echo("No connectors available", err=True)
                return
            click.echo(f"Ingesting {project} from: {', '.join(started)} (Ctrl-C to stop)")
            try:
                await asyncio.Event().wait()
            finally:
                await orchestrator.shutdown()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped")


@main.command("search")
@click.argument("project")
@click.argument("query")
@click.option("--top-k", default=10, show_default=True, help="Maximum results")
@click.option("--type", "entity_types", multiple=True, help="Restrict to entity types")
@click.pass_obj
def search(
    obj: dict[str, Any], project: str, query: str, top_k: int, entity_types: tuple[str, ...]
) -> None:
    """Search the project's knowledge graph."""

    async def _run() -> list[dict[str, Any]]:
        service = _graph_service()
        async with _database(obj["database_url"]) as session_factory:
            async with session_factory() as session:
                hits = await service.search_by_query(
                    session, project, query, top_k, entity_types=list(entity_types) or None
                )
                return [_entity_dict(h.entity, score=round(h.score, 4)) for h in hits]

    _echo_json(asyncio.run(_run()))


@main.command("file-context")
@click.argument("project")
@click.argument("path")
@click.pass_obj
def file_context(obj: dict[str, Any], project: str, path: str) -> None:
    """History, related entities and decisions for one file."""

    async def _run() -> dict[str, Any]:
        service = _graph_service()
        async with _database(obj["database_url"]) as session_factory:
            async with session_factory() as session:
                ctx = await service.get_context_for_file(session, project, path)
                return {
                    "file_path": ctx.file_path,
                    "entity": _entity_dict(ctx.entity) if ctx.entity else None,
                    "history": [
                        {
                            "version": rev.version,
                            "title": rev.title,
                            "source_event_id": rev.source_event_id,
                            "recorded_at": rev.recorded_at.isoformat(),
                        }
                        for rev in ctx.history
                    ],
                    "related": [
                        _entity_dict(
                            r.entity, relationship_type=r.relationship_type, direction=r.direction
                        )
                        for r in ctx.related
                    ],
                    "decisions": [_entity_dict(d) for d in ctx.decisions],
                }

    _echo_json(asyncio.run(_run()))


@main.command("decisions")
@click.argument("project")
@click.argument("target")
@click.pass_obj
def decisions(obj: dict[str, Any], project: str, target: str) -> None:
    """Decision records about a file path, feature or topic."""

    async def _run() -> list[dict[str, Any]]:
        service = _graph_service()
        async with _database(obj["database_url"]) as session_factory:
            async with session_factory() as session:
                history = await service.get_decision_history(session, project, target)
                return [_entity_dict(d) for d in history.decisions]

    _echo_json(asyncio.run(_run()))


@main.command("history")
@click.argument("project")
@click.argument("platform")
@click.argument("platform_id")
@click.argument("entity_type")
@click.pass_obj
def history(
    obj: dict[str, Any], project: str, platform: str, platform_id: str, entity_type: str
) -> None:
    """Every recorded revision of one entity."""

    async def _run() -> dict[str, Any]:
        service = _graph_service()
        async with _database(obj["database_url"]) as session_factory:
            async with session_factory() as session:
                result = await service.get_entity_history(
                    session, project, NaturalKey(platform, platform_id, entity_type)
                )
                return {
                    "entity": _entity_dict(result.entity),
                    "revisions": [
                        {
                            "version": rev.version,
                            "title": rev.title,
                            "content": rev.content,
                            "source_event_id": rev.source_event_id,
                            "recorded_at": rev.recorded_at.isoformat(),
                        }
                        for rev in result.revisions
                    ],
                }

    try:
        _echo_json(asyncio.run(_run()))
    except NotFoundError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)


@main.command("health")
@click.argument("project")
@click.pass_obj
def health(obj: dict[str, Any], project: str) -> None:
    """Sync health of every integration of the project."""

    async def _run() -> dict[str, Any]:
        async with _orchestrator(obj, connect=False) as orchestrator:
            return (await orchestrator.get_project_health(project)).to_dict()

    _echo_json(asyncio.run(_run()))


if __name__ == "__main__":
    main()
