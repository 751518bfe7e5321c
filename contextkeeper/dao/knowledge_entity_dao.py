"""KnowledgeEntityDAO — knowledge_entities + revision log operations."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from contextkeeper.core.database import dialect_insert, utcnow
from contextkeeper.dao.base import BaseDAO
from contextkeeper.models.knowledge_entity import KnowledgeEntity, KnowledgeEntityRevision

_NATURAL_KEY = ("project_id", "platform", "platform_id", "entity_type")
_MAX_SOURCE_EVENTS = 50


def _merge(existing: list[str] | None, new: list[str]) -> list[str]:
    merged = list(existing or [])
    for item in new:
        if item and item not in merged:
            merged.append(item)
    return merged


def _escape_like(token: str) -> str:
    return token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class KnowledgeEntityDAO(BaseDAO[KnowledgeEntity]):
    model = KnowledgeEntity

    # ── write ─────────────────────────────────────────────────────────────

    async def upsert(
        self,
        session: AsyncSession,
        *,
        project_id: str,
        entity_type: str,
        platform: str,
        platform_id: str,
        title: str = "",
        content: str = "",
        participants: list[str] | None = None,
        attributes: dict[str, Any] | None = None,
        source_event_id: str | None = None,
        observed_at: datetime | None = None,
    ) -> KnowledgeEntity:
        """Insert or update by natural key, then append a revision.

        ``INSERT .. ON CONFLICT DO UPDATE`` makes concurrent writers to the
        same key converge on one row (last write wins on scalar fields).
        The row stays locked by this transaction, so merging the list
        columns afterwards cannot interleave with another writer.
        """
        now = utcnow()
        participants = participants or []
        sources = [source_event_id] if source_event_id else []
        stmt = dialect_insert(session, KnowledgeEntity).values(
            id=uuid.uuid4(),
            project_id=project_id,
            entity_type=entity_type,
            platform=platform,
            platform_id=platform_id,
            title=title,
            content=content,
            participants=participants,
            source_event_ids=sources,
            attributes=attributes or {},
            observed_at=observed_at,
            version=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_NATURAL_KEY),
            set_={
                "title": stmt.excluded.title,
                "content": stmt.excluded.content,
                "attributes": stmt.excluded.attributes,
                "observed_at": stmt.excluded.observed_at,
                "version": KnowledgeEntity.version + 1,
                "updated_at": now,
            },
        ).returning(KnowledgeEntity.id, KnowledgeEntity.version)
        row = (await session.execute(stmt)).one()

        entity = await session.get_one(KnowledgeEntity, row.id, populate_existing=True)
        merged_participants = _merge(entity.participants, participants)
        merged_sources = _merge(entity.source_event_ids, sources)[-_MAX_SOURCE_EVENTS:]
        if merged_participants != entity.participants:
            entity.participants = merged_participants
        if merged_sources != entity.source_event_ids:
            entity.source_event_ids = merged_sources

        session.add(
            KnowledgeEntityRevision(
                entity_id=entity.id,
                project_id=project_id,
                version=row.version,
                title=title,
                content=content,
                attributes=attributes or {},
                source_event_id=source_event_id,
                observed_at=observed_at,
                recorded_at=now,
            )
        )
        await session.flush()
        return entity

    # ── read ──────────────────────────────────────────────────────────────

    async def get_by_natural_key(
        self,
        session: AsyncSession,
        project_id: str,
        platform: str,
        platform_id: str,
        entity_type: str,
    ) -> KnowledgeEntity | None:
        return await self.get_by_field(
            session,
            project_id=project_id,
            platform=platform,
            platform_id=platform_id,
            entity_type=entity_type,
        )

    async def get_in_project(
        self, session: AsyncSession, project_id: str, pk: uuid.UUID
    ) -> KnowledgeEntity | None:
        entity = await self.get_by_id(session, pk)
        if entity is None or entity.project_id != project_id:
            return None
        return entity

    async def list_by_ids(
        self, session: AsyncSession, project_id: str, ids: list[uuid.UUID]
    ) -> list[KnowledgeEntity]:
        if not ids:
            return []
        stmt = select(KnowledgeEntity).where(
            KnowledgeEntity.project_id == project_id,
            KnowledgeEntity.id.in_(ids),
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def search_candidates(
        self,
        session: AsyncSession,
        project_id: str,
        tokens: list[str],
        *,
        entity_types: list[str] | None = None,
        since: datetime | None = None,
        limit: int = 200,
    ) -> list[KnowledgeEntity]:
        """Entities of *project_id* whose title or content contains any token."""
        if not tokens:
            return []
        matches = []
        for token in tokens:
            pattern = f"%{_escape_like(token)}%"
            matches.append(KnowledgeEntity.title.ilike(pattern, escape="\\"))
            matches.append(KnowledgeEntity.content.ilike(pattern, escape="\\"))
            matches.append(KnowledgeEntity.platform_id.ilike(pattern, escape="\\"))
        stmt = select(KnowledgeEntity).where(
            KnowledgeEntity.project_id == project_id,
            or_(*matches),
        )
        if entity_types:
            stmt = stmt.where(KnowledgeEntity.entity_type.in_(entity_types))
        if since is not None:
            stmt = stmt.where(KnowledgeEntity.observed_at >= since)
        stmt = stmt.order_by(KnowledgeEntity.updated_at.desc(), KnowledgeEntity.id).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_revisions(
        self, session: AsyncSession, entity_id: uuid.UUID
    ) -> list[KnowledgeEntityRevision]:
        stmt = (
            select(KnowledgeEntityRevision)
            .where(KnowledgeEntityRevision.entity_id == entity_id)
            .order_by(KnowledgeEntityRevision.version)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_project(
        self,
        session: AsyncSession,
        project_id: str,
        entity_type: str | None = None,
    ) -> int:
        query = select(KnowledgeEntity).where(KnowledgeEntity.project_id == project_id)
        if entity_type is not None:
            query = query.where(KnowledgeEntity.entity_type == entity_type)
        return await self.count(session, query)
