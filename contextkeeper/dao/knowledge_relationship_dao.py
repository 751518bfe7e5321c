"""KnowledgeRelationshipDAO — knowledge_relationships table operations."""

import uuid
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from contextkeeper.core.database import dialect_insert, utcnow
from contextkeeper.dao.base import BaseDAO
from contextkeeper.models.knowledge_relationship import KnowledgeRelationship


class KnowledgeRelationshipDAO(BaseDAO[KnowledgeRelationship]):
    model = KnowledgeRelationship

    async def upsert(
        self,
        session: AsyncSession,
        *,
        project_id: str,
        source_entity_id: uuid.UUID,
        target_entity_id: uuid.UUID,
        relationship_type: str,
        strength: float = 1.0,
        attributes: dict[str, Any] | None = None,
    ) -> KnowledgeRelationship:
        """Insert an edge or refresh strength/attributes of the existing one.

        Callers are responsible for checking that both endpoints exist.
        """
        now = utcnow()
        stmt = dialect_insert(session, KnowledgeRelationship).values(
            id=uuid.uuid4(),
            project_id=project_id,
            source_entity_id=source_entity_id,
            target_entity_id=target_entity_id,
            relationship_type=relationship_type,
            strength=strength,
            attributes=attributes or {},
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_entity_id", "target_entity_id", "relationship_type"],
            set_={
                "strength": stmt.excluded.strength,
                "attributes": stmt.excluded.attributes,
                "updated_at": now,
            },
        ).returning(KnowledgeRelationship.id)
        rel_id = (await session.execute(stmt)).scalar_one()
        return await session.get_one(KnowledgeRelationship, rel_id, populate_existing=True)

    async def list_for_entity(
        self,
        session: AsyncSession,
        entity_id: uuid.UUID,
        *,
        relationship_types: list[str] | None = None,
    ) -> list[KnowledgeRelationship]:
        """Edges touching *entity_id* in either direction."""
        stmt = select(KnowledgeRelationship).where(
            or_(
                KnowledgeRelationship.source_entity_id == entity_id,
                KnowledgeRelationship.target_entity_id == entity_id,
            )
        )
        if relationship_types:
            stmt = stmt.where(KnowledgeRelationship.relationship_type.in_(relationship_types))
        stmt = stmt.order_by(KnowledgeRelationship.created_at, KnowledgeRelationship.id)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_project(self, session: AsyncSession, project_id: str) -> int:
        query = select(KnowledgeRelationship).where(
            KnowledgeRelationship.project_id == project_id
        )
        return await self.count(session, query)
